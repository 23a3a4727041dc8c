"""Read /etc/crypttab and register the TPM keyscript on selected entries."""

from __future__ import annotations

import os
import re
import shutil
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import RegistryAmbiguous
from .executil import log, trace
from .model import CrypttabEntry

_FIELD_RE = re.compile(r"\S+")

MANUAL_HINT = (
    "e.g. this line: sda3_crypt UUID=d4a5a9a4-a2da-4c2e-a24c-1c1f764a66d2 none luks,discard\n"
    "should become : sda3_crypt UUID=d4a5a9a4-a2da-4c2e-a24c-1c1f764a66d2 none luks,discard,keyscript={keyscript}"
)


def _is_entry(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and not stripped.startswith("#")


def parse_line(line: str, lineno: int = 0) -> Optional[CrypttabEntry]:
    if not _is_entry(line):
        return None
    parts = line.split()
    if len(parts) < 2:
        return None
    options = [opt for opt in parts[3].split(",") if opt] if len(parts) > 3 else []
    keyfile = parts[2] if len(parts) > 2 else "none"
    return CrypttabEntry(name=parts[0], source=parts[1], keyfile=keyfile, options=options, lineno=lineno)


def parse(text: str) -> List[CrypttabEntry]:
    entries: List[CrypttabEntry] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        entry = parse_line(line, lineno)
        if entry is not None:
            entries.append(entry)
    return entries


def read_entries(path: str) -> List[CrypttabEntry]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return parse(fh.read())
    except FileNotFoundError:
        return []


def first_entry(path: str) -> Optional[CrypttabEntry]:
    entries = read_entries(path)
    return entries[0] if entries else None


def keyscript_option(keyscript: str) -> str:
    return f"keyscript={keyscript}"


def is_registered(entry: CrypttabEntry, keyscript: str) -> bool:
    return keyscript_option(keyscript) in entry.options


def _with_keyscript(line: str, entry: CrypttabEntry, keyscript: str, initramfs: bool) -> str:
    additions: List[str] = []
    if initramfs and "initramfs" not in entry.options:
        additions.append("initramfs")
    additions.append(keyscript_option(keyscript))
    fields = list(_FIELD_RE.finditer(line))
    if len(fields) >= 4:
        end = fields[3].end()
        joined = ",".join(additions)
        sep = "," if fields[3].group(0) and not fields[3].group(0).endswith(",") else ""
        return line[:end] + sep + joined + line[end:]
    base = line.rstrip()
    if len(fields) == 2:
        base += "  none"
    return base + "  " + ",".join(additions) + line[len(line.rstrip()):]


def _write_file(path: str, content: str) -> None:
    mode = None
    try:
        mode = os.stat(path).st_mode & 0o7777
    except FileNotFoundError:
        pass
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as fh:
        fh.write(content)
        fh.flush()
        os.fsync(fh.fileno())
    if mode is not None:
        os.chmod(tmp_path, mode)
    os.replace(tmp_path, path)


def backup_once(path: str, backup_path: Optional[str] = None) -> Dict[str, Any]:
    """Copy ``path`` to ``backup_path`` unless a backup already exists."""

    backup_path = backup_path or path + ".bak"
    if os.path.exists(backup_path):
        return {"path": backup_path, "created": False}
    shutil.copy2(path, backup_path)
    return {"path": backup_path, "created": True}


def plan_registration(
        path: str,
        names: Iterable[str],
        keyscript: str,
) -> Tuple[List[str], Dict[int, CrypttabEntry], List[str]]:
    """Check that every name can take ``keyscript=`` without writing anything.

    Returns the file lines, the entries still to update (by line index) and
    the names already registered.  Every name must appear on exactly one
    uncommented line and carry no other keyscript, else
    :class:`RegistryAmbiguous` is raised.
    """

    with open(path, "r", encoding="utf-8") as fh:
        lines = fh.read().splitlines(keepends=True)
    hint = MANUAL_HINT.format(keyscript=keyscript)

    pending: Dict[int, CrypttabEntry] = {}
    skipped: List[str] = []
    for name in dict.fromkeys(names):
        matches = []
        for idx, line in enumerate(lines):
            entry = parse_line(line, idx + 1)
            if entry is not None and entry.name == name:
                matches.append((idx, entry))
        if not matches:
            raise RegistryAmbiguous(f"{path} has no entry for {name}; please update it manually.\n{hint}")
        if len(matches) > 1:
            linenos = ", ".join(str(entry.lineno) for _, entry in matches)
            raise RegistryAmbiguous(
                f"{path} lists {name} on lines {linenos}; please update it manually.\n{hint}"
            )
        idx, entry = matches[0]
        if is_registered(entry, keyscript):
            skipped.append(name)
            continue
        foreign = [opt for opt in entry.options if opt.startswith("keyscript=")]
        if foreign:
            raise RegistryAmbiguous(
                f"{name} already uses {foreign[0]} in {path}; please check it manually.\n{hint}"
            )
        pending[idx] = entry
    return lines, pending, skipped


def register_keyscript(
        path: str,
        names: Iterable[str],
        keyscript: str,
        *,
        initramfs: bool = False,
        backup_path: Optional[str] = None,
) -> Dict[str, Any]:
    """Append ``keyscript=`` to the crypttab line of every name in ``names``.

    Validation runs through :func:`plan_registration` first, so a rejected
    name leaves the file untouched.  Entries already pointing at
    ``keyscript`` are skipped.
    """

    lines, pending, skipped = plan_registration(path, names, keyscript)
    meta: Dict[str, Any] = {"path": path, "updated": [], "skipped": skipped, "backup": None}
    if not pending:
        trace("crypttab.register.noop", path=path, skipped=skipped)
        return meta

    meta["backup"] = backup_once(path, backup_path)
    for idx, entry in pending.items():
        line = lines[idx]
        body = line.rstrip("\r\n")
        newline = line[len(body):]
        lines[idx] = _with_keyscript(body, entry, keyscript, initramfs) + newline
        meta["updated"].append(entry.name)
    _write_file(path, "".join(lines))
    log("INFO", "crypttab.register", path=path, updated=meta["updated"], skipped=skipped)
    return meta
