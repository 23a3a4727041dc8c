"""CLI entrypoint: provision the TPM key and wire it into the boot chain."""

from __future__ import annotations

import argparse
import dataclasses
import json
import os
import sys
import time
from typing import Any, Dict, List, Optional

from . import crypttab, devices, initramfs, keyslots, keysync, nvstore, prompts, safety
from .errors import Cancelled, CredentialAddError, DeviceNotFound, RegistryAmbiguous, StorageError, Tpm2LuksError
from .executil import LOG_NAME, append_jsonl, resolve_log_path, trace
from .model import CrypttabEntry, Flags, Settings, Volume
from .paths import initrd_path, logs_dir

RESULT_CODES: Dict[str, int] = {
    "AUTOUNLOCK_OK": 0,
    "PLAN_OK": 0,
    "ALREADY_CONFIGURED": 0,
    "FAIL_PERMISSION": 2,
    "FAIL_DEPENDENCY": 3,
    "FAIL_INVALID_DEVICE": 4,
    "FAIL_STORAGE": 5,
    "FAIL_SYNC_MISMATCH": 6,
    "FAIL_CREDENTIAL_ADD": 7,
    "FAIL_REGISTRY_AMBIGUOUS": 8,
    "FAIL_INITRAMFS": 9,
    "FAIL_CANCELLED": 10,
    "FAIL_UNHANDLED": 12,
}

NO_CHANGES = "No changes have been made to the boot environment."
NO_FURTHER_CHANGES = "No further changes have been made to the boot environment."

RESULT_LOG_PATH: Optional[str] = None
CLI_START_MONO = time.perf_counter()
_SELECTED: List[Volume] = []
_BOOT_ENV_STARTED = False
_KEY_FILE: Optional[str] = None


def _result_log_path() -> str:
    global RESULT_LOG_PATH
    if RESULT_LOG_PATH:
        return RESULT_LOG_PATH
    RESULT_LOG_PATH = resolve_log_path() or os.path.join(logs_dir(), LOG_NAME)
    return RESULT_LOG_PATH


def _say(prefix: str, message: str) -> None:
    print(f"[{prefix}] {message}", file=sys.stderr)


def _emit_result(
        kind: str,
        extra: Optional[Dict[str, Any]] = None,
        exit_code: Optional[int] = None,
) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    payload.setdefault("log_path", _result_log_path())
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    append_jsonl(_result_log_path(), payload)
    print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tpm2-luks-autounlock",
        description="Store a random key in the TPM and use it to unlock LUKS volumes at boot.",
    )
    parser.add_argument("device", nargs="?", help="LUKS block device (default: first /etc/crypttab entry)")
    select = parser.add_mutually_exclusive_group()
    select.add_argument("--volume", dest="volumes", action="append", metavar="NAME",
                        help="crypttab volume name; may be repeated")
    select.add_argument("--all", dest="all_volumes", action="store_true",
                        help="every LUKS volume listed in crypttab")
    reuse = parser.add_mutually_exclusive_group()
    reuse.add_argument("--reuse-key", dest="reuse_policy", action="store_const", const="reuse")
    reuse.add_argument("--new-key", dest="reuse_policy", action="store_const", const="regenerate")
    parser.add_argument("--yes", dest="assume_yes", action="store_true")
    parser.add_argument("--plan", action="store_true")
    parser.add_argument("--initramfs", dest="add_initramfs_option", action="store_true",
                        help="also add the initramfs option to the crypttab entries")
    parser.add_argument("--nv-index", type=lambda value: int(value, 0), default=None)
    parser.add_argument("--key-size", type=int, default=None)
    parser.add_argument("--crypttab", default=None)
    parser.set_defaults(reuse_policy="ask")
    return parser


def _settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings.from_env(
        nv_index=args.nv_index,
        key_size=args.key_size,
        crypttab=args.crypttab,
        add_initramfs_option=args.add_initramfs_option or None,
        reuse_policy=args.reuse_policy,
    )


def _ask(question: str, default: str) -> bool:
    return prompts.ask_yes_no(question, default=default)


def _select_entries(args: argparse.Namespace, entries: List[CrypttabEntry], settings: Settings) -> List[CrypttabEntry]:
    if args.all_volumes:
        if not entries:
            raise DeviceNotFound(f"{settings.crypttab} lists no encrypted volumes")
        return list(entries)
    if args.volumes:
        by_name = {entry.name: entry for entry in entries}
        missing = [name for name in args.volumes if name not in by_name]
        if missing:
            raise DeviceNotFound(f"{', '.join(missing)} not listed in {settings.crypttab}")
        return [by_name[name] for name in dict.fromkeys(args.volumes)]
    if args.device:
        if not os.path.exists(args.device):
            raise DeviceNotFound(f"{args.device} does not exist")
        entry = devices.entry_for_device(args.device, entries)
        if entry is None:
            raise RegistryAmbiguous(
                f"{args.device} has no entry in {settings.crypttab}; add one, then run this again.\n"
                + crypttab.MANUAL_HINT.format(keyscript=settings.keyscript_path)
            )
        return [entry]
    if not entries:
        raise DeviceNotFound(
            f"No device specified at the command line, and couldn't find one in {settings.crypttab}."
        )
    return [entries[0]]


def _select_volumes(args: argparse.Namespace, settings: Settings) -> List[Volume]:
    entries = crypttab.read_entries(settings.crypttab)
    volumes: List[Volume] = []
    for entry in _select_entries(args, entries, settings):
        if args.device:
            path = os.path.realpath(args.device)
        else:
            path = devices.resolve_device_path(entry.name, entry.source)
        if not devices.is_luks(path):
            if args.all_volumes:
                _say("WARN", f"Skipping {entry.name}: {path} is not a LUKS device.")
                continue
            raise DeviceNotFound(
                f'Device "{path}" does not appear to be a valid LUKS encrypted device. '
                "Please specify a device on the command line, e.g. sudo tpm2-luks-autounlock /dev/sda3"
            )
        _say("INFO", f'Using "{path}" ({entry.name}), which appears to be a valid LUKS encrypted device.')
        volumes.append(Volume(name=entry.name, path=path, source=entry.source))
    if not volumes:
        raise DeviceNotFound(f"no LUKS volumes found in {settings.crypttab}")
    return volumes


def _already_configured(volumes: List[Volume], settings: Settings) -> bool:
    """True when crypttab, the keyscript and every volume already use the TPM key."""

    entries = {entry.name: entry for entry in crypttab.read_entries(settings.crypttab)}
    for volume in volumes:
        entry = entries.get(volume.name)
        if entry is None or not crypttab.is_registered(entry, settings.keyscript_path):
            return False
    if not os.path.exists(settings.keyscript_path):
        return False
    try:
        key = nvstore.read(settings.nv_index, settings.key_size)
    except StorageError:
        return False
    keysync.write_key_file(settings.key_file, key)
    try:
        return all(keyslots.credential_unlocks(v.path, settings.key_file) for v in volumes)
    finally:
        keysync.destroy_key_file(settings.key_file)


def _planned_steps(settings: Settings) -> List[str]:
    steps = [
        f"nvstore.read({settings.nv_address}, {settings.key_size}) -> reuse or regenerate",
        f"keysync.write_key_file({settings.key_file})/verify()",
        "keyslots.propagate(volumes) -> cryptsetup luksAddKey",
        f"keysync.destroy_key_file({settings.key_file})",
        f"initramfs.install_keyscript({settings.keyscript_path})",
        f"initramfs.install_hook({settings.hook_path})",
        f"crypttab.register_keyscript({settings.crypttab})",
        "initramfs.backup_image()/rebuild()/verify_image()",
    ]
    return steps


def _plan_payload(volumes: List[Volume], settings: Settings, flags: Flags) -> Dict[str, Any]:
    settings_meta = dataclasses.asdict(settings)
    settings_meta["nv_index"] = settings.nv_address
    return {
        "mode": "plan",
        "volumes": [{"name": v.name, "path": v.path, "source": v.source} for v in volumes],
        "settings": settings_meta,
        "flags": vars(flags),
        "steps": _planned_steps(settings),
    }


def _choose_reuse(settings: Settings, flags: Flags):
    def choose() -> bool:
        if settings.reuse_policy != "ask":
            return settings.reuse_policy == "reuse"
        if flags.assume_yes:
            return True
        return _ask(
            f"The TPM already holds a key at {settings.nv_address}. Reuse it? "
            "Answering no replaces it, and any other volume using the old key will need its passphrase",
            prompts.YES,
        )

    return choose


def _confirm_replace(settings: Settings, flags: Flags):
    def confirm(defined: int) -> bool:
        if settings.reuse_policy == "regenerate":
            return True
        if flags.assume_yes:
            return False
        return _ask(
            f"{settings.nv_address} holds a {defined} byte key, not {settings.key_size}. Replace it?",
            prompts.NO,
        )

    return confirm


def _confirm_retry(flags: Flags):
    def confirm(volume: Volume) -> bool:
        if flags.assume_yes:
            return True
        return _ask(f"Try adding the key to {volume.name} again?", prompts.YES)

    return confirm


def _print_epilogue(volumes: List[Volume], settings: Settings, kernel: str) -> None:
    lines = [
        "",
        "At this point you are ready to reboot and try it out!",
        "",
        "If the volumes unlock as expected you may remove the original passphrase and rely on the",
        "key stored in the TPM. Keep a copy of that key on a DIFFERENT system first; to print it, run:",
        f"  sudo tpm2_nvread -s {settings.key_size} {settings.nv_address}",
        "Without that backup a TPM or motherboard failure means losing everything on the volumes.",
        "Once you are SURE you have the backup, this removes the original passphrase:",
    ]
    lines += [f"  sudo cryptsetup luksRemoveKey {volume.path}" for volume in volumes]
    lines += [
        "",
        "If booting fails, press esc at the start of the boot to reach the grub menu, edit the entry",
        "and add .orig to the end of the initrd line to boot the original initramfs once, e.g.",
        f"  initrd {initrd_path(settings.boot_dir, kernel)}.orig",
    ]
    print("\n".join(lines), file=sys.stderr)


def _main_impl(argv: Optional[List[str]] = None) -> int:
    global _BOOT_ENV_STARTED, _KEY_FILE
    _BOOT_ENV_STARTED = False
    _KEY_FILE = None
    del _SELECTED[:]

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.device and (args.volumes or args.all_volumes):
        parser.error("a device path cannot be combined with --volume or --all")
    try:
        settings = _settings_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))
    flags = Flags(plan=args.plan, assume_yes=args.assume_yes, all_volumes=args.all_volumes)
    trace(
        "cli.args",
        device=args.device,
        volumes=args.volumes,
        all_volumes=args.all_volumes,
        plan=args.plan,
        assume_yes=args.assume_yes,
        reuse_policy=settings.reuse_policy,
        nv_index=settings.nv_address,
        key_size=settings.key_size,
    )

    safety.require_root()
    safety.require_tools()

    volumes = _select_volumes(args, settings)
    _SELECTED.extend(volumes)
    crypttab.plan_registration(settings.crypttab, [v.name for v in volumes], settings.keyscript_path)

    if flags.plan:
        _emit_result("PLAN_OK", _plan_payload(volumes, settings, flags))

    _KEY_FILE = settings.key_file
    if _already_configured(volumes, settings):
        _say("INFO", "The TPM key is already defined in LUKS and crypttab, no changes needed.")
        _emit_result("ALREADY_CONFIGURED", {"volumes": [v.name for v in volumes]})

    if not flags.assume_yes:
        names = ", ".join(f"{v.name} ({v.path})" for v in volumes)
        if not _ask(f"Add a TPM-stored key to {names} and unlock automatically at boot?", prompts.NO):
            raise Cancelled("cancelled by the operator")

    try:
        sync = keysync.synchronize(
            settings,
            choose_reuse=_choose_reuse(settings, flags),
            confirm_replace=_confirm_replace(settings, flags),
        )
        _say("INFO", f"Key {sync.action}; the key file matches what is stored in the TPM.")
        _say("INFO", "Adding the key to LUKS. You will need to enter the current passphrase of each volume.")
        report = keyslots.propagate(volumes, settings.key_file, _confirm_retry(flags))
    finally:
        keysync.destroy_key_file(settings.key_file)

    _BOOT_ENV_STARTED = True
    meta = initramfs.integrate([v.name for v in volumes], settings)
    _print_epilogue(volumes, settings, meta["kernel"])
    _emit_result(
        "AUTOUNLOCK_OK",
        {
            "key": {"action": sync.action, "nv_index": settings.nv_address, "size": sync.size},
            "volumes": report["volumes"],
            "key_file": report["destroyed"],
            "crypttab": meta["crypttab"],
            "initramfs": {
                "kernel": meta["kernel"],
                "backup": meta["backup"],
                "rebuild": meta["rebuild"],
                "verify": meta["verify"],
            },
        },
    )
    return 0


def _abort(kind: str, exc: BaseException) -> None:
    if _KEY_FILE:
        try:
            keysync.destroy_key_file(_KEY_FILE)
        except OSError as err:
            _say("WARN", f"could not erase {_KEY_FILE}: {err}")
    _say("FAIL", str(exc))
    extra: Dict[str, Any] = {"error": str(exc)}
    updated = [v.name for v in _SELECTED if v.key_added]
    if updated:
        _say("INFO", f"These volumes already accept the TPM key and keep it: {', '.join(updated)}")
        extra["updated_volumes"] = updated
    if isinstance(exc, CredentialAddError):
        extra["volume"] = exc.volume
    _say("INFO", NO_FURTHER_CHANGES if _BOOT_ENV_STARTED else NO_CHANGES)
    extra["boot_environment_changed"] = _BOOT_ENV_STARTED
    _emit_result(kind, extra)


def main(argv: Optional[List[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except Tpm2LuksError as exc:
        _abort(exc.result, exc)
    except Exception as exc:  # noqa: BLE001
        _abort("FAIL_UNHANDLED", exc)
    return 0


if __name__ == "__main__":
    sys.exit(main())
