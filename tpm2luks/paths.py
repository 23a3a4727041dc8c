from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/var/lib/tpm2luks"

KEYSCRIPT_PATH = "/usr/local/sbin/tpm2-getkey"
HOOK_PATH = "/etc/initramfs-tools/hooks/tpm2-decryptkey"
CRYPTTAB_PATH = "/etc/crypttab"
KEY_FILE_PATH = "/root/.tpm2.key"
BOOT_DIR = "/boot"
MARKER_DIR = "/run/tpm2-getkey"
ASKPASS_PATH = "/lib/cryptsetup/askpass"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the base directory for tpm2luks state and logs.

    The location can be overridden via the ``TPM2LUKS_BASE_PATH`` environment
    variable.
    """

    override = os.environ.get("TPM2LUKS_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def logs_dir() -> str:
    return str(Path(base_path()) / "logs")


def initrd_path(boot_dir: str, kernel: str) -> str:
    return os.path.join(boot_dir, f"initrd.img-{kernel}")
