"""Add the TPM key as a LUKS passphrase on each selected volume."""

from __future__ import annotations

import json
import sys
from typing import Any, Callable, Dict, Iterable, List

from .errors import CredentialAddError
from .executil import log, run
from .keysync import destroy_key_file
from .model import Volume


def add_credential(volume: Volume, key_file: str) -> None:
    """Run ``cryptsetup luksAddKey``; the operator answers its passphrase prompt."""

    res = run(
        ["cryptsetup", "luksAddKey", volume.path, key_file],
        check=False,
        timeout=None,
        interactive=True,
    )
    if res.rc != 0:
        raise CredentialAddError(volume.name)


def credential_unlocks(luks_device: str, key_file: str) -> bool:
    cmd = [
        "cryptsetup",
        "open",
        "--test-passphrase",
        "--key-file",
        key_file,
        luks_device,
    ]
    res = run(cmd, check=False, timeout=120.0)
    return res.rc == 0


def luks_active_slots(luks_device: str) -> set[int]:
    res = run(["cryptsetup", "luksDump", "--dump-json-metadata", luks_device], check=False, timeout=120.0)
    if res.rc != 0:
        raise RuntimeError(f"cryptsetup luksDump failed: rc={res.rc}")
    try:
        payload = json.loads(res.out or "{}")
    except json.JSONDecodeError as exc:
        raise RuntimeError("failed to parse cryptsetup luksDump output") from exc
    slots: set[int] = set()
    keyslots = payload.get("keyslots")
    if isinstance(keyslots, dict):
        for key in keyslots:
            try:
                slots.add(int(str(key)))
            except (TypeError, ValueError):
                continue
    return slots


def _slots(luks_device: str) -> List[int]:
    try:
        return sorted(luks_active_slots(luks_device))
    except RuntimeError:
        return []


def _add_with_retry(volume: Volume, key_file: str, confirm_retry: Callable[[Volume], bool]) -> None:
    try:
        add_credential(volume, key_file)
        return
    except CredentialAddError:
        print(
            "\nSomething went wrong adding the key, possibly the wrong passphrase was used.",
            file=sys.stderr,
        )
        log("WARN", "keyslots.add.failed", volume=volume.name, attempt=1)
        if not confirm_retry(volume):
            raise
    print(f"\nAdding key to {volume.name} ({volume.path})...", file=sys.stderr)
    add_credential(volume, key_file)


def propagate(
        volumes: Iterable[Volume],
        key_file: str,
        confirm_retry: Callable[[Volume], bool],
) -> Dict[str, Any]:
    """Enroll ``key_file`` on every volume, then erase ``key_file``.

    A failed ``luksAddKey`` is retried once when ``confirm_retry`` agrees; a
    second failure raises :class:`CredentialAddError` and stops the loop.
    Volumes that already accept the key are left alone.
    """

    report: Dict[str, Any] = {"volumes": [], "destroyed": None}
    try:
        for volume in volumes:
            volume.slots_before = _slots(volume.path)
            if credential_unlocks(volume.path, key_file):
                volume.already_enrolled = True
                volume.slots_after = list(volume.slots_before)
                print(f"\nThe TPM key already unlocks {volume.name} ({volume.path}), no key added.", file=sys.stderr)
                report["volumes"].append(_volume_meta(volume))
                continue
            print(f"\nAdding key to {volume.name} ({volume.path})...", file=sys.stderr)
            _add_with_retry(volume, key_file, confirm_retry)
            if not credential_unlocks(volume.path, key_file):
                raise CredentialAddError(
                    volume.name,
                    f"the new key was added but does not unlock {volume.name}",
                )
            volume.key_added = True
            volume.slots_after = _slots(volume.path)
            log("INFO", "keyslots.added", volume=volume.name, slots=volume.slots_after)
            report["volumes"].append(_volume_meta(volume))
    finally:
        report["destroyed"] = destroy_key_file(key_file)
    return report


def _volume_meta(volume: Volume) -> Dict[str, Any]:
    return {
        "name": volume.name,
        "path": volume.path,
        "already_enrolled": volume.already_enrolled,
        "key_added": volume.key_added,
        "slots_before": volume.slots_before,
        "slots_after": volume.slots_after,
    }
