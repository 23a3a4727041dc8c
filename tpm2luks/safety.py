"""Preflight guards (root, required tools)."""

from __future__ import annotations

import os
import shutil
from typing import Dict, Iterable, Optional

from .errors import DependencyMissing, PermissionDenied

REQUIRED_TOOLS: Dict[str, str] = {
    "cryptsetup": "cryptsetup-bin",
    "mkinitramfs": "initramfs-tools-core",
    "tpm2_getcap": "tpm2-tools",
    "tpm2_nvreadpublic": "tpm2-tools",
    "tpm2_nvdefine": "tpm2-tools",
    "tpm2_nvundefine": "tpm2-tools",
    "tpm2_nvwrite": "tpm2-tools",
    "tpm2_nvread": "tpm2-tools",
}


def require_root(euid: Optional[int] = None) -> None:
    euid = os.geteuid() if euid is None else euid
    if euid != 0:
        raise PermissionDenied("this program needs to run as root (try: sudo)")


def require_tools(tools: Optional[Iterable[str]] = None) -> None:
    """Raise :class:`DependencyMissing` for the first tool not on ``PATH``."""

    for tool in tools or REQUIRED_TOOLS:
        if shutil.which(tool) is None:
            raise DependencyMissing(tool, REQUIRED_TOOLS.get(tool))
