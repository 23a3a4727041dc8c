from __future__ import annotations

"""Subprocess wrapper, dry-run hook and JSONL trace logging."""

import datetime as _dt
import json
import os
import shlex
import subprocess
import time
from typing import Sequence

from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "tpm2luks.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/tpm2luks",
        "/tmp/tpm2luks-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, mode=0o700, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


class Result:
    def __init__(self, rc: int, out, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("TPM2LUKS_LOG_LEVEL", "INFO").upper()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    try:
        if path:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(obj) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def _decode(data) -> str | None:
    if data is None or isinstance(data, str):
        return data
    return f"<{len(data)} bytes>"


def run(
    cmd: Sequence[str],
    check: bool = True,
    dry_run: bool = False,
    timeout: float | None = 60.0,
    env: dict | None = None,
    input: bytes | None = None,
    text: bool = True,
    interactive: bool = False,
) -> Result:
    """Run ``cmd`` and return a :class:`Result`.

    ``text=False`` keeps stdout as raw bytes; such output is never written to
    the log.  ``interactive=True`` leaves the child attached to the terminal
    so tools such as ``cryptsetup luksAddKey`` can prompt the operator; no
    output is captured and no timeout applies in that mode.
    """

    trace("exec.start", cmd=list(cmd), interactive=interactive)
    started = time.time()
    if dry_run:
        text_out = "DRY-RUN: " + " ".join(shlex.quote(c) for c in cmd)
        return Result(0, text_out, "", 0.0)
    env2 = (env or os.environ).copy()
    env2.setdefault("TPM2LUKS_LOG_LEVEL", LOG_LEVEL)
    if interactive:
        proc = subprocess.run(list(cmd), env=env2)
        out, err = "", ""
    else:
        proc = subprocess.run(
            list(cmd),
            capture_output=True,
            input=input,
            timeout=timeout,
            env=env2,
        )
        out = proc.stdout if proc.stdout is not None else b""
        err = (proc.stderr or b"").decode("utf-8", errors="replace")
        if text:
            out = out.decode("utf-8", errors="replace")
    dur = time.time() - started
    log(
        "TRACE" if proc.returncode == 0 else "WARN",
        "exec.done",
        cmd=list(cmd),
        rc=proc.returncode,
        dur=dur,
        out=_decode(out) if text else _decode(bytes(out)),
        err=err,
    )
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, list(cmd), out, err)
    return Result(proc.returncode, out, err, dur)


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False) + "\n")
    except OSError:
        pass
