import os
import shutil
import subprocess
from types import SimpleNamespace

import pytest

from tpm2luks import agent
from tpm2luks.model import Settings

ADDR = 0x1500016
KEY = b"A1" * 32


@pytest.fixture
def settings(tmp_path):
    return Settings(marker_dir=str(tmp_path / "run" / "tpm2-getkey"), askpass=str(tmp_path / "askpass"))


def _prompter(answers):
    prompts = []

    def prompt(text):
        prompts.append(text)
        return answers.pop(0)

    prompt.prompts = prompts
    return prompt


def test_first_attempt_reads_tpm_then_falls_back(fake_tpm, settings):
    fake_tpm.indices[ADDR] = bytearray(KEY)
    prompt = _prompter([b"typed passphrase"])

    assert agent.retrieve("vol1", "/dev/sdX", settings, prompt_fn=prompt) == KEY
    reads = fake_tpm.tools().count("tpm2_nvread")
    assert agent.retrieve("vol1", "/dev/sdX", settings, prompt_fn=prompt) == b"typed passphrase"

    assert fake_tpm.tools().count("tpm2_nvread") == reads == 1
    assert prompt.prompts == ["Automatic disk unlock via TPM failed for (/dev/sdX) Enter passphrase: "]


def test_failed_read_emits_nothing_and_is_not_retried(fake_tpm, settings):
    prompt = _prompter([b"typed"])
    assert agent.retrieve("vol1", "UUID=abcd", settings, prompt_fn=prompt) == b""
    calls = len(fake_tpm.calls)
    assert agent.retrieve("vol1", "UUID=abcd", settings, prompt_fn=prompt) == b"typed"
    assert len(fake_tpm.calls) == calls


def test_markers_are_per_volume(fake_tpm, settings):
    fake_tpm.indices[ADDR] = bytearray(KEY)
    prompt = _prompter([])
    assert agent.retrieve("vol1", "/dev/sda3", settings, prompt_fn=prompt) == KEY
    assert agent.retrieve("vol2", "/dev/sdb3", settings, prompt_fn=prompt) == KEY
    assert prompt.prompts == []


def test_marker_path_flattens_slashes(tmp_path):
    markers = agent.AttemptMarkers(str(tmp_path))
    assert markers.path_for("luks/root") == str(tmp_path / "luks_root.attempted")
    assert not markers.exists("luks/root")
    markers.mark("luks/root")
    assert markers.exists("luks/root")


def test_askpass_binary_used_when_executable(settings, monkeypatch):
    with open(settings.askpass, "w", encoding="utf-8") as fh:
        fh.write("#!/bin/sh\n")
    os.chmod(settings.askpass, 0o755)
    seen = []

    def fake_run(cmd, **kwargs):
        seen.append((list(cmd), kwargs))
        return SimpleNamespace(rc=0, out=b"secret", err="")

    monkeypatch.setattr(agent, "run", fake_run)
    assert agent.askpass(settings, "Enter passphrase: ") == b"secret"
    assert seen[0][0] == [settings.askpass, "Enter passphrase: "]
    assert seen[0][1]["text"] is False


def test_askpass_falls_back_to_getpass(settings, monkeypatch):
    monkeypatch.setattr(agent.getpass, "getpass", lambda prompt: "typed")
    assert agent.askpass(settings, "Enter passphrase: ") == b"typed"


def test_main_writes_key_to_stdout(fake_tpm, tmp_path, capsysbinary):
    fake_tpm.indices[ADDR] = bytearray(KEY)
    env = {
        "CRYPTTAB_NAME": "vol1",
        "CRYPTTAB_SOURCE": "/dev/sdX",
        "TPM2LUKS_MARKER_DIR": str(tmp_path / "markers"),
    }
    assert agent.main(environ=env) == 0
    assert capsysbinary.readouterr().out == KEY
    assert (tmp_path / "markers" / "vol1.attempted").exists()


def test_rendered_keyscript(settings):
    script = agent.render_keyscript(settings)
    assert script.startswith("#!/bin/sh\n")
    assert f'MARKER_DIR="{settings.marker_dir}"' in script
    assert "exec tpm2_nvread -s 64 0x1500016 2>/dev/null" in script
    assert f"exec {settings.askpass} " in script
    assert "${CRYPTTAB_SOURCE}" in script
    assert "{size}" not in script


def test_main_ignores_arguments_without_crypttab_name(fake_tpm, tmp_path, monkeypatch, capsysbinary):
    fake_tpm.indices[ADDR] = bytearray(KEY)
    monkeypatch.setattr(agent.sys, "argv", ["tpm2-luks-getkey", "none"])
    env = {"TPM2LUKS_MARKER_DIR": str(tmp_path / "markers")}
    assert agent.main(environ=env) == 0
    assert capsysbinary.readouterr().out == KEY
    assert (tmp_path / "markers" / "unknown.attempted").exists()
    assert not (tmp_path / "markers" / "none.attempted").exists()


def test_unwritable_marker_dir_still_reads_tpm(fake_tpm, tmp_path):
    fake_tpm.indices[ADDR] = bytearray(KEY)
    blocker = tmp_path / "run"
    blocker.write_text("not a directory", encoding="utf-8")
    settings = Settings(marker_dir=str(blocker / "tpm2-getkey"), askpass=str(tmp_path / "askpass"))
    prompt = _prompter([])

    assert agent.retrieve("vol1", "/dev/sdX", settings, prompt_fn=prompt) == KEY
    assert prompt.prompts == []
    assert fake_tpm.tools().count("tpm2_nvread") == 1


@pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")
def test_installed_keyscript_reads_tpm_once_then_asks(tmp_path):
    calls = tmp_path / "calls"
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    nvread = bin_dir / "tpm2_nvread"
    nvread.write_text(f"#!/bin/sh\necho nvread >> {calls}\nprintf KEY\n", encoding="utf-8")
    nvread.chmod(0o755)
    askpass = tmp_path / "askpass"
    askpass.write_text(f"#!/bin/sh\necho \"askpass $1\" >> {calls}\nprintf TYPED\n", encoding="utf-8")
    askpass.chmod(0o755)
    settings = Settings(marker_dir=str(tmp_path / "run" / "tpm2-getkey"), askpass=str(askpass))
    script = tmp_path / "tpm2-getkey"
    script.write_text(agent.render_keyscript(settings), encoding="utf-8")
    env = {
        "PATH": f"{bin_dir}:/usr/bin:/bin",
        "CRYPTTAB_NAME": "vol1",
        "CRYPTTAB_SOURCE": "/dev/sdX",
    }

    first = subprocess.run(["sh", str(script)], env=env, capture_output=True, check=False)
    second = subprocess.run(["sh", str(script)], env=env, capture_output=True, check=False)

    assert (first.returncode, first.stdout) == (0, b"KEY")
    assert (second.returncode, second.stdout) == (0, b"TYPED")
    assert calls.read_text(encoding="utf-8").splitlines() == [
        "nvread",
        "askpass Automatic disk unlock via TPM failed for (/dev/sdX) Enter passphrase: ",
    ]
    assert (tmp_path / "run" / "tpm2-getkey" / "vol1.attempted").exists()
