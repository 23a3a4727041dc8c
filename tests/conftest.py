import ast
import json
import sys
import threading
from collections import defaultdict
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Set

import pytest

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "tpm2luks").absolute()

if str(_ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(_ROOT_DIR))

from tpm2luks import cli, devices, executil, keyslots, keysync, nvstore  # noqa: E402


# --------------------------------------------------------------------------
# fakes for the external tools
# --------------------------------------------------------------------------


def _result(rc=0, out="", err=""):
    return SimpleNamespace(rc=rc, out=out, err=err, duration=0.0)


class FakeTpm:
    """In-memory stand-in for the tpm2-tools NV commands."""

    def __init__(self):
        self.indices: Dict[int, bytearray] = {}
        self.calls: List[List[str]] = []
        self.available = True
        self.torn_write = False
        self.reject_writes = False

    def tools(self) -> List[str]:
        return [cmd[0] for cmd in self.calls]

    def __call__(self, cmd, check=False, dry_run=False, timeout=None, env=None, input=None, text=True,
                 interactive=False):  # noqa: ARG002
        cmd = list(cmd)
        self.calls.append(cmd)
        if not self.available:
            return _result(1, "" if text else b"", "ERROR:tcti:src/tss2-tcti/tcti-device.c: No such file")
        tool = cmd[0]
        if tool == "tpm2_getcap":
            out = "".join(f"- 0x{index:x}\n" for index in sorted(self.indices))
            return _result(0, out)
        address = int(cmd[-1], 0)
        if tool == "tpm2_nvreadpublic":
            if address not in self.indices:
                return _result(1, "", "ERROR: handle not found")
            return _result(0, f"0x{address:x}:\n  name: 000b\n  size: {len(self.indices[address])}\n")
        if tool == "tpm2_nvdefine":
            if address in self.indices:
                return _result(1, "", "ERROR: NV index already defined")
            self.indices[address] = bytearray(int(cmd[cmd.index("-s") + 1]))
            return _result(0, f"nv-index: 0x{address:x}\n")
        if tool == "tpm2_nvundefine":
            if address not in self.indices:
                return _result(1, "", "ERROR: handle not found")
            del self.indices[address]
            return _result(0)
        if tool == "tpm2_nvwrite":
            region = self.indices.get(address)
            data = bytes(input or b"")
            if region is None or len(data) > len(region) or self.reject_writes:
                return _result(1, "", "ERROR: nvwrite failed")
            if self.torn_write:
                data = data[: len(data) // 2]
            region[: len(data)] = data
            return _result(0)
        if tool == "tpm2_nvread":
            region = self.indices.get(address)
            size = int(cmd[cmd.index("-s") + 1]) if "-s" in cmd else len(region or b"")
            if region is None or size > len(region):
                return _result(1, b"", "ERROR: nvread failed")
            return _result(0, bytes(region[:size]))
        return _result(127, "", f"{tool}: command not found")


class FakeCryptsetup:
    """Tracks which key files each fake LUKS device accepts."""

    def __init__(self):
        self.mapped: Dict[str, str] = {}
        self.luks: Set[str] = set()
        self.keys: Dict[str, List[bytes]] = defaultdict(list)
        self.calls: List[List[str]] = []
        self.add_failures = 0
        self.add_takes_effect = True

    def add_volume(self, name, device, passphrase=b"correct horse"):
        self.mapped[name] = device
        self.luks.add(device)
        self.keys[device].append(passphrase)

    def actions(self) -> List[str]:
        return [cmd[1] for cmd in self.calls]

    @staticmethod
    def _read(path):
        try:
            with open(path, "rb") as fh:
                return fh.read()
        except FileNotFoundError:
            return None

    def __call__(self, cmd, check=False, dry_run=False, timeout=None, env=None, input=None, text=True,
                 interactive=False):  # noqa: ARG002
        cmd = list(cmd)
        self.calls.append(cmd)
        action = cmd[1]
        if action == "status":
            device = self.mapped.get(cmd[2])
            if device is None:
                return _result(4, f"/dev/mapper/{cmd[2]} is inactive.\n")
            return _result(0, f"/dev/mapper/{cmd[2]} is active.\n  type:    LUKS2\n  device:  {device}\n")
        if action == "isLuks":
            return _result(0 if cmd[2] in self.luks else 1)
        if action == "luksAddKey":
            device, key_file = cmd[2], cmd[3]
            if self.add_failures > 0:
                self.add_failures -= 1
                return _result(2)
            if self.add_takes_effect:
                self.keys[device].append(self._read(key_file))
            return _result(0)
        if action == "open":
            key = self._read(cmd[cmd.index("--key-file") + 1])
            return _result(0 if key is not None and key in self.keys.get(cmd[-1], []) else 2)
        if action == "luksDump":
            slots = {str(i): {"type": "luks2"} for i in range(len(self.keys.get(cmd[-1], [])))}
            return _result(0, json.dumps({"keyslots": slots}))
        return _result(1, "", f"unsupported action {action}")


@pytest.fixture
def fake_tpm(monkeypatch):
    tpm = FakeTpm()
    monkeypatch.setattr(nvstore, "run", tpm)
    return tpm


@pytest.fixture
def fake_cryptsetup(monkeypatch):
    fake = FakeCryptsetup()
    monkeypatch.setattr(devices, "run", fake)
    monkeypatch.setattr(keyslots, "run", fake)
    return fake


@pytest.fixture(autouse=True)
def _isolated_logs(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    monkeypatch.setattr(cli, "RESULT_LOG_PATH", None)


@pytest.fixture(autouse=True)
def _no_shred(monkeypatch):
    monkeypatch.setattr(keysync, "run", lambda cmd, **kwargs: _result(127, "", "shred: not found"))


# --------------------------------------------------------------------------
# line coverage summary for the tpm2luks package
# --------------------------------------------------------------------------

_EXECUTED: Dict[Path, Set[int]] = defaultdict(set)
_STATEMENTS: Dict[Path, Set[int]] = {}
_SAVED_TRACE = None
_SAVED_THREAD_TRACE = None
_TRACING = False


def _statement_lines(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError:
        return set()
    source_lines = source.splitlines()
    lines: Set[int] = set()
    for node in ast.walk(tree):
        if not isinstance(node, ast.stmt):
            continue
        text = source_lines[node.lineno - 1].strip()
        if text and not text.startswith("#"):
            lines.add(node.lineno)
    return lines


for _path in sorted(_PACKAGE_DIR.rglob("*.py")):
    _STATEMENTS[_path.absolute()] = _statement_lines(_path)


def _tracer(frame, event, arg):
    if event == "line":
        filename = Path(frame.f_code.co_filename)
        if filename in _STATEMENTS:
            _EXECUTED[filename].add(frame.f_lineno)
    return _tracer


def pytest_sessionstart(session):
    global _SAVED_TRACE, _SAVED_THREAD_TRACE, _TRACING
    if _TRACING:
        return
    _TRACING = True
    _EXECUTED.clear()
    _SAVED_TRACE = sys.gettrace()
    _SAVED_THREAD_TRACE = threading.gettrace()
    sys.settrace(_tracer)
    threading.settrace(_tracer)


def pytest_sessionfinish(session, exitstatus):
    global _TRACING
    if not _TRACING:
        return
    _TRACING = False
    sys.settrace(_SAVED_TRACE)
    threading.settrace(_SAVED_THREAD_TRACE)
    _coverage_summary(session)


def _coverage_summary(session) -> None:
    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = terminal.write_line if terminal else print
    header = f"{'Name':<40} {'Stmts':>6} {'Miss':>6} {'Cover':>7}"
    write_line("")
    write_line("Coverage summary for 'tpm2luks':")
    write_line(header)
    write_line("-" * len(header))
    total = hit = 0
    for path, statements in sorted(_STATEMENTS.items()):
        if not statements:
            continue
        executed = _EXECUTED.get(path, set()) & statements
        total += len(statements)
        hit += len(executed)
        pct = len(executed) / len(statements) * 100.0
        name = str(path.relative_to(_ROOT_DIR))
        write_line(f"{name:<40} {len(statements):>6} {len(statements) - len(executed):>6} {pct:>6.1f}%")
    if total:
        write_line("-" * len(header))
        write_line(f"{'TOTAL':<40} {total:>6} {total - hit:>6} {hit / total * 100.0:>6.1f}%")
