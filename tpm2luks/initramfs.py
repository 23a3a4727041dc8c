"""Install the keyscript and hook, register them, rebuild the initramfs."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any, Dict, Iterable, List

from . import crypttab
from .agent import render_keyscript
from .errors import InitramfsError
from .executil import log, run
from .model import Settings
from .paths import initrd_path

INITRAMFS_TIMEOUT = 360

HOOK_CONTENT = """#!/bin/sh
PREREQ=""
prereqs()
{
	echo "${PREREQ}"
}
case $1 in
	prereqs)
		prereqs
		exit 0
		;;
esac
. /usr/share/initramfs-tools/hook-functions
copy_exec "$(command -v tpm2_nvread)"
for lib in /usr/lib/*/libtss2-tcti-device.so* /usr/lib/libtss2-tcti-device.so* /lib/*/libtss2-tcti-device.so*
do
	[ -e "$lib" ] && copy_exec "$lib"
done
exit 0
"""


def _write_file(path: Path, content: str, mode: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as fh:
        fh.write(content)
        fh.flush()
        os.fsync(fh.fileno())
    os.chmod(tmp_path, mode)
    os.replace(tmp_path, path)
    if os.geteuid() == 0:
        os.chown(path, 0, 0)


def install_keyscript(settings: Settings) -> Dict[str, Any]:
    path = Path(settings.keyscript_path)
    _write_file(path, render_keyscript(settings), 0o750)
    return {"path": str(path), "mode": "0750"}


def install_hook(settings: Settings) -> Dict[str, Any]:
    path = Path(settings.hook_path)
    _write_file(path, HOOK_CONTENT, 0o755)
    return {"path": str(path), "mode": "0755"}


def kernel_version() -> str:
    return os.uname().release


def backup_image(boot_dir: str, kernel: str) -> Dict[str, Any]:
    """Keep the pre-automation initrd as ``<image>.orig`` (never overwritten)."""

    image = initrd_path(boot_dir, kernel)
    backup = image + ".orig"
    meta: Dict[str, Any] = {"image": image, "backup": backup, "created": False}
    if os.path.exists(backup):
        meta["existing"] = True
        return meta
    if not os.path.isfile(image):
        meta["missing_image"] = True
        return meta
    shutil.copy2(image, backup)
    meta["created"] = True
    return meta


def rebuild(boot_dir: str, kernel: str) -> Dict[str, Any]:
    image = initrd_path(boot_dir, kernel)
    res = run(
        ["mkinitramfs", "-o", image, kernel],
        check=False,
        timeout=INITRAMFS_TIMEOUT,
    )
    telemetry: Dict[str, Any] = {
        "kernel": kernel,
        "image": image,
        "rc": res.rc,
        "duration_sec": getattr(res, "duration", None),
    }
    if res.rc != 0:
        raise InitramfsError(f"mkinitramfs failed for {kernel}: rc={res.rc}")
    return telemetry


def verify_image(image: str, entries: Iterable[str]) -> Dict[str, Any]:
    """Check that every path in ``entries`` is listed by ``lsinitramfs``."""

    res = run(["lsinitramfs", image], check=False, timeout=INITRAMFS_TIMEOUT)
    listing = (res.out or "") if res.rc == 0 else ""
    lines = {line.strip().lstrip("./") for line in listing.splitlines() if line.strip()}
    included: Dict[str, bool] = {}
    for entry in entries:
        rel = entry.lstrip("/")
        included[entry] = any(line == rel or line.endswith("/" + os.path.basename(rel)) for line in lines)
    result: Dict[str, Any] = {"image": image, "rc": res.rc, "included": included}
    result["ok"] = res.rc == 0 and all(included.values())
    if res.rc != 0:
        result["error"] = (res.err or res.out or "").strip()
    return result


def integrate(names: List[str], settings: Settings, kernel: str | None = None) -> Dict[str, Any]:
    """Wire the keyscript into crypttab and the initramfs for ``names``."""

    kernel = kernel or kernel_version()
    meta: Dict[str, Any] = {"kernel": kernel}
    crypttab.plan_registration(settings.crypttab, names, settings.keyscript_path)
    meta["keyscript"] = install_keyscript(settings)
    meta["hook"] = install_hook(settings)
    meta["crypttab"] = crypttab.register_keyscript(
        settings.crypttab,
        names,
        settings.keyscript_path,
        initramfs=settings.add_initramfs_option,
    )
    meta["backup"] = backup_image(settings.boot_dir, kernel)
    meta["rebuild"] = rebuild(settings.boot_dir, kernel)
    meta["verify"] = verify_image(
        meta["rebuild"]["image"],
        [settings.keyscript_path, "tpm2_nvread"],
    )
    if not meta["verify"]["ok"]:
        log("WARN", "initramfs.verify.incomplete", **meta["verify"])
    log("INFO", "initramfs.integrated", kernel=kernel, volumes=list(names))
    return meta
