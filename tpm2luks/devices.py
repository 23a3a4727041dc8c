"""Map crypttab entries to block devices and check they are LUKS."""
from __future__ import annotations

import os
import re
from typing import Iterable, Optional

from .errors import DeviceNotFound
from .executil import run, trace
from .model import CrypttabEntry

DEV_DISK = "/dev/disk"

_SOURCE_PREFIXES = {
    "UUID": "by-uuid",
    "PARTUUID": "by-partuuid",
    "LABEL": "by-label",
    "PARTLABEL": "by-partlabel",
}

_STATUS_DEVICE_RE = re.compile(r"^\s*device:\s+(\S+)\s*$", re.M)


def resolve_source(source: str) -> Optional[str]:
    """Resolve a crypttab source field (``UUID=...``, a path, ...) to a node."""

    source = (source or "").strip()
    if not source:
        return None
    if "=" in source:
        kind, _, value = source.partition("=")
        subdir = _SOURCE_PREFIXES.get(kind.upper())
        if not subdir or not value:
            return None
        candidate = os.path.join(DEV_DISK, subdir, value.strip('"'))
    else:
        candidate = source
    if not os.path.exists(candidate):
        return None
    return os.path.realpath(candidate)


def _status_device(name: str) -> Optional[str]:
    res = run(["cryptsetup", "status", name], check=False)
    if res.rc not in (0, 4):
        return None
    match = _STATUS_DEVICE_RE.search(res.out or "")
    return match.group(1) if match else None


def resolve_device_path(name: str, source: Optional[str] = None) -> str:
    """Return the block device behind crypttab volume ``name``."""

    path = resolve_source(source) if source else None
    if not path:
        path = _status_device(name)
    if not path:
        raise DeviceNotFound(f"could not find the device for encrypted volume {name}")
    trace("devices.resolve", name=name, source=source, path=path)
    return path


def is_luks(path: str) -> bool:
    res = run(["cryptsetup", "isLuks", path], check=False)
    return res.rc == 0


def entry_for_device(path: str, entries: Iterable[CrypttabEntry]) -> Optional[CrypttabEntry]:
    """Find the crypttab entry whose source points at ``path``."""

    target = os.path.realpath(path)
    entries = list(entries)
    for entry in entries:
        resolved = resolve_source(entry.source)
        if resolved and resolved == target:
            return entry
    for entry in entries:
        if _status_device(entry.name) in (path, target):
            return entry
    return None
