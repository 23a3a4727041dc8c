"""TPM2 NV index lifecycle via tpm2-tools."""

from __future__ import annotations

from typing import Any, Dict, Optional, Set

import yaml

from .errors import StorageSizeMismatch, StorageUnavailable, StorageWriteError
from .executil import run, trace

TPM_TIMEOUT = 30.0


def _fmt(address: int) -> str:
    return f"0x{address:x}"


def _load_yaml(text: str) -> Any:
    text = (text or "").strip()
    if not text:
        return None
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise StorageUnavailable(f"unexpected tpm2-tools output: {exc}") from exc


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 0)
    except (TypeError, ValueError):
        return None


def defined_indices() -> Set[int]:
    """Return every NV index currently defined on the TPM."""

    res = run(["tpm2_getcap", "handles-nv-index"], check=False, timeout=TPM_TIMEOUT)
    if res.rc != 0:
        raise StorageUnavailable(f"TPM not accessible: {(res.err or '').strip() or f'rc={res.rc}'}")
    payload = _load_yaml(res.out)
    if not payload:
        return set()
    if not isinstance(payload, list):
        raise StorageUnavailable("unexpected tpm2_getcap output")
    indices = {_as_int(item) for item in payload}
    indices.discard(None)
    return indices


def public(address: int) -> Optional[Dict[str, Any]]:
    """Return the NV public area of ``address`` or None when undefined."""

    if address not in defined_indices():
        return None
    res = run(["tpm2_nvreadpublic", _fmt(address)], check=False, timeout=TPM_TIMEOUT)
    if res.rc != 0:
        raise StorageUnavailable(f"tpm2_nvreadpublic failed for {_fmt(address)}: rc={res.rc}")
    payload = _load_yaml(res.out) or {}
    for key, value in payload.items():
        if _as_int(key) == address and isinstance(value, dict):
            return value
    raise StorageUnavailable(f"tpm2_nvreadpublic did not report {_fmt(address)}")


def defined_size(address: int) -> Optional[int]:
    meta = public(address)
    if meta is None:
        return None
    size = _as_int(meta.get("size"))
    if size is None:
        raise StorageUnavailable(f"no size reported for {_fmt(address)}")
    return size


def deallocate(address: int) -> bool:
    """Undefine ``address``. Returns False when there was nothing to remove."""

    if address not in defined_indices():
        trace("nvstore.deallocate.absent", address=_fmt(address))
        return False
    res = run(["tpm2_nvundefine", _fmt(address)], check=False, timeout=TPM_TIMEOUT)
    if res.rc != 0:
        raise StorageWriteError(f"tpm2_nvundefine failed for {_fmt(address)}: rc={res.rc}")
    trace("nvstore.deallocate", address=_fmt(address))
    return True


def allocate(address: int, size: int) -> None:
    """Define a fresh ``size`` byte region at ``address``.

    Any previous definition is removed first; running this twice with the
    same arguments leaves exactly one region behind.
    """

    if size < 1:
        raise ValueError("NV region size must be positive")
    run(["tpm2_nvundefine", _fmt(address)], check=False, timeout=TPM_TIMEOUT)
    res = run(["tpm2_nvdefine", "-s", str(size), _fmt(address)], check=False, timeout=TPM_TIMEOUT)
    if res.rc != 0:
        raise StorageWriteError(
            f"tpm2_nvdefine failed for {_fmt(address)} ({size} bytes): rc={res.rc}"
        )
    trace("nvstore.allocate", address=_fmt(address), size=size)


def write(address: int, data: bytes) -> None:
    try:
        size = defined_size(address)
    except StorageUnavailable as exc:
        raise StorageWriteError(str(exc)) from exc
    if size is None:
        raise StorageWriteError(f"NV index {_fmt(address)} is not allocated")
    if size != len(data):
        raise StorageWriteError(
            f"NV index {_fmt(address)} holds {size} bytes, refusing to write {len(data)}"
        )
    res = run(
        ["tpm2_nvwrite", "-i", "-", _fmt(address)],
        check=False,
        timeout=TPM_TIMEOUT,
        input=bytes(data),
    )
    if res.rc != 0:
        raise StorageWriteError(
            f"tpm2_nvwrite rejected by {_fmt(address)}: {(res.err or '').strip() or f'rc={res.rc}'}"
        )
    trace("nvstore.write", address=_fmt(address), size=len(data))


def read(address: int, size: int) -> bytes:
    defined = defined_size(address)
    if defined is None:
        raise StorageUnavailable(f"NV index {_fmt(address)} is not defined")
    if defined != size:
        raise StorageSizeMismatch(address, defined, size)
    res = run(
        ["tpm2_nvread", "-s", str(size), _fmt(address)],
        check=False,
        timeout=TPM_TIMEOUT,
        text=False,
    )
    if res.rc != 0:
        raise StorageUnavailable(f"tpm2_nvread failed for {_fmt(address)}: rc={res.rc}")
    data = bytes(res.out or b"")
    if len(data) != size:
        raise StorageUnavailable(
            f"tpm2_nvread returned {len(data)} bytes from {_fmt(address)}, expected {size}"
        )
    trace("nvstore.read", address=_fmt(address), size=size)
    return data
