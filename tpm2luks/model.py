from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from . import paths

DEFAULT_NV_INDEX = 0x1500016
DEFAULT_KEY_SIZE = 64
REUSE_POLICIES = ("ask", "reuse", "regenerate")


@dataclass
class Flags:
    plan: bool = False
    assume_yes: bool = False
    all_volumes: bool = False


@dataclass
class Settings:
    nv_index: int = DEFAULT_NV_INDEX
    key_size: int = DEFAULT_KEY_SIZE
    key_file: str = paths.KEY_FILE_PATH
    crypttab: str = paths.CRYPTTAB_PATH
    keyscript_path: str = paths.KEYSCRIPT_PATH
    hook_path: str = paths.HOOK_PATH
    boot_dir: str = paths.BOOT_DIR
    marker_dir: str = paths.MARKER_DIR
    askpass: str = paths.ASKPASS_PATH
    add_initramfs_option: bool = False
    reuse_policy: str = "ask"

    def __post_init__(self):
        if self.key_size < 1:
            raise ValueError("key size must be at least 1 byte")
        if self.reuse_policy not in REUSE_POLICIES:
            raise ValueError(f"reuse policy must be one of {', '.join(REUSE_POLICIES)}")

    @property
    def nv_address(self) -> str:
        return f"0x{self.nv_index:x}"

    @classmethod
    def from_env(cls, environ: Optional[dict] = None, **overrides) -> "Settings":
        """Build settings from ``TPM2LUKS_*`` variables, then ``overrides``."""

        env = os.environ if environ is None else environ
        values: dict = {}
        if env.get("TPM2LUKS_NV_INDEX"):
            values["nv_index"] = int(env["TPM2LUKS_NV_INDEX"], 0)
        if env.get("TPM2LUKS_KEY_SIZE"):
            values["key_size"] = int(env["TPM2LUKS_KEY_SIZE"])
        for name, key in (
            ("TPM2LUKS_KEY_FILE", "key_file"),
            ("TPM2LUKS_CRYPTTAB", "crypttab"),
            ("TPM2LUKS_BOOT_DIR", "boot_dir"),
            ("TPM2LUKS_MARKER_DIR", "marker_dir"),
            ("TPM2LUKS_KEYSCRIPT_PATH", "keyscript_path"),
            ("TPM2LUKS_HOOK_PATH", "hook_path"),
            ("TPM2LUKS_ASKPASS", "askpass"),
        ):
            if env.get(name):
                values[key] = env[name]
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class CrypttabEntry:
    name: str
    source: str
    keyfile: str = "none"
    options: List[str] = field(default_factory=list)
    lineno: int = 0


@dataclass
class Volume:
    name: str
    path: str
    source: str = ""
    slots_before: List[int] = field(default_factory=list)
    slots_after: List[int] = field(default_factory=list)
    already_enrolled: bool = False
    key_added: bool = False
