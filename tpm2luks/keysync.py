"""Generate-or-reuse decision and local/TPM key verification."""

from __future__ import annotations

import hmac
import os
import secrets
import shutil
import stat
import string
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from . import nvstore
from .errors import Cancelled, StorageSizeMismatch, StorageUnavailable, SynchronizationError
from .executil import log, run, trace
from .model import Settings

ALPHABET = string.ascii_letters + string.digits

NEEDS_DECISION = "NEEDS_DECISION"
SYNCHRONIZED = "SYNCHRONIZED"


@dataclass
class SyncResult:
    state: str
    action: str
    key_file: str
    size: int
    prior_content: bool


def generate_key(size: int) -> bytes:
    """Return ``size`` random alphanumeric bytes from a CSPRNG."""

    if size < 1:
        raise ValueError("key size must be at least 1")
    return "".join(secrets.choice(ALPHABET) for _ in range(size)).encode("ascii")


def write_key_file(path: str, data: bytes) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, mode=0o700, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())
    os.chmod(path, 0o600)
    mode = stat.S_IMODE(os.stat(path).st_mode)
    if mode != 0o600:
        raise PermissionError(f"key file {path} must have mode 0600")


def read_key_file(path: str) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()


def _overwrite_and_unlink(path: str, passes: int) -> None:
    size = os.path.getsize(path)
    with open(path, "r+b") as fh:
        for _ in range(passes):
            fh.seek(0)
            fh.write(os.urandom(size))
            fh.flush()
            os.fsync(fh.fileno())
        fh.seek(0)
        fh.write(b"\0" * size)
        fh.flush()
        os.fsync(fh.fileno())
    os.unlink(path)


def destroy_key_file(path: str, passes: int = 10) -> Dict[str, Any]:
    """Securely erase the key file: overwrite its content, then unlink it."""

    meta: Dict[str, Any] = {"path": path, "existed": os.path.exists(path), "method": None}
    if not meta["existed"]:
        return meta
    if shutil.which("shred"):
        res = run(["shred", "-n", str(passes), "-z", "-u", path], check=False)
        if res.rc == 0 and not os.path.exists(path):
            meta["method"] = "shred"
            trace("keysync.destroy", **meta)
            return meta
        log("WARN", "keysync.destroy.shred_failed", path=path, rc=res.rc)
    _overwrite_and_unlink(path, passes)
    meta["method"] = "overwrite"
    trace("keysync.destroy", **meta)
    return meta


def verify(settings: Settings) -> None:
    """Compare the local key file with the TPM content byte for byte."""

    local = read_key_file(settings.key_file)
    try:
        stored = nvstore.read(settings.nv_index, settings.key_size)
    except StorageUnavailable as exc:
        raise SynchronizationError(
            f"could not read back {settings.nv_address} to verify the key: {exc}"
        ) from exc
    if len(local) != settings.key_size or not hmac.compare_digest(local, stored):
        raise SynchronizationError(
            f"the key file {settings.key_file} does not match what is stored in the TPM"
        )


def synchronize(
        settings: Settings,
        choose_reuse: Callable[[], bool],
        confirm_replace: Optional[Callable[[int], bool]] = None,
) -> SyncResult:
    """Leave identical key material in the key file and the TPM NV index.

    ``choose_reuse`` is consulted only when the index already holds a key of
    the configured size.  ``confirm_replace`` is consulted when the index
    exists with a different size; replacing it breaks every volume that
    depends on the old key, so declining cancels the run.
    """

    state = NEEDS_DECISION
    prior: Optional[bytes] = None
    try:
        prior = nvstore.read(settings.nv_index, settings.key_size)
    except StorageSizeMismatch as exc:
        trace("keysync.probe.size_mismatch", defined=exc.defined, requested=exc.requested)
        if confirm_replace is None or not confirm_replace(exc.defined):
            raise Cancelled(
                f"{settings.nv_address} already holds a {exc.defined} byte key; left untouched"
            ) from exc
    except StorageUnavailable as exc:
        trace("keysync.probe.empty", address=settings.nv_address, reason=str(exc))

    if prior is not None and choose_reuse():
        key = prior
        action = "reused"
    else:
        nvstore.deallocate(settings.nv_index)
        nvstore.allocate(settings.nv_index, settings.key_size)
        key = generate_key(settings.key_size)
        nvstore.write(settings.nv_index, key)
        action = "generated"

    write_key_file(settings.key_file, key)
    verify(settings)
    state = SYNCHRONIZED
    log("INFO", "keysync.synchronized", action=action, address=settings.nv_address, size=settings.key_size)
    return SyncResult(
        state=state,
        action=action,
        key_file=settings.key_file,
        size=settings.key_size,
        prior_content=prior is not None,
    )
