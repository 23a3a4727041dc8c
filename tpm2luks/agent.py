"""Boot-time key retrieval (crypttab keyscript).

cryptsetup runs the keyscript once per unlock attempt with ``CRYPTTAB_NAME``
and ``CRYPTTAB_SOURCE`` set and reads the candidate passphrase from stdout.
The first call for a volume in a given boot reads the key from the TPM.
If that key is wrong or the read fails, cryptsetup calls the script again,
and every later call for that volume goes straight to the passphrase prompt
so a broken TPM can never stall the boot.

Whether a volume was already tried is an :class:`AttemptMarkers` flag kept
under ``/run``, a tmpfs that starts empty at every boot.

The initramfs has no Python, so the installed keyscript is the POSIX shell
rendering from :func:`render_keyscript`; :func:`retrieve` is the same state
machine for hosts that unlock volumes outside the initramfs.
"""

from __future__ import annotations

import getpass
import os
import sys
from typing import Callable, Optional

from . import nvstore
from .errors import StorageError
from .executil import log, run
from .model import Settings

PROMPT = "Automatic disk unlock via TPM failed for ({source}) Enter passphrase: "


class AttemptMarkers:
    """Per-volume "TPM already tried this boot" flags in one directory."""

    def __init__(self, directory: str):
        self.directory = directory

    def path_for(self, volume: str) -> str:
        safe = (volume or "unknown").replace("/", "_")
        return os.path.join(self.directory, f"{safe}.attempted")

    def exists(self, volume: str) -> bool:
        return os.path.exists(self.path_for(volume))

    def mark(self, volume: str) -> None:
        os.makedirs(self.directory, mode=0o700, exist_ok=True)
        with open(self.path_for(volume), "a", encoding="utf-8"):
            pass


def askpass(settings: Settings, prompt: str) -> bytes:
    if os.access(settings.askpass, os.X_OK):
        res = run([settings.askpass, prompt], check=False, timeout=None, text=False)
        return bytes(res.out or b"")
    return getpass.getpass(prompt).encode("utf-8")


def retrieve(
        volume: str,
        source: str,
        settings: Settings,
        markers: Optional[AttemptMarkers] = None,
        prompt_fn: Optional[Callable[[str], bytes]] = None,
) -> bytes:
    """Return the candidate passphrase for ``volume`` for this attempt."""

    markers = markers or AttemptMarkers(settings.marker_dir)
    prompt_fn = prompt_fn or (lambda prompt: askpass(settings, prompt))
    if markers.exists(volume):
        log("INFO", "agent.fallback", volume=volume)
        return prompt_fn(PROMPT.format(source=source))
    try:
        markers.mark(volume)
    except OSError as exc:
        log("WARN", "agent.marker_failed", volume=volume, error=str(exc))
    try:
        key = nvstore.read(settings.nv_index, settings.key_size)
    except StorageError as exc:
        log("WARN", "agent.tpm_read_failed", volume=volume, error=str(exc))
        return b""
    log("INFO", "agent.tpm_read", volume=volume, size=len(key))
    return key


def main(environ: Optional[dict] = None) -> int:
    env = os.environ if environ is None else environ
    settings = Settings.from_env(env)
    volume = env.get("CRYPTTAB_NAME") or "unknown"
    source = env.get("CRYPTTAB_SOURCE", "")
    key = retrieve(volume, source, settings)
    sys.stdout.buffer.write(key)
    sys.stdout.buffer.flush()
    return 0


KEYSCRIPT_TEMPLATE = """#!/bin/sh
# tpm2-getkey: crypttab keyscript installed by tpm2-luks-autounlock.
# The first call for a volume in this boot reads the key from the TPM.
# Later calls for the same volume ask for the passphrase instead.
MARKER_DIR="{marker_dir}"
NAME=$(printf '%s' "${{CRYPTTAB_NAME:-unknown}}" | tr '/' '_')
MARKER="$MARKER_DIR/$NAME.attempted"

if [ -f "$MARKER" ]
then
	exec {askpass} "Automatic disk unlock via TPM failed for (${{CRYPTTAB_SOURCE}}) Enter passphrase: "
fi

mkdir -p "$MARKER_DIR"
touch "$MARKER"
exec tpm2_nvread -s {size} {address} 2>/dev/null
"""


def render_keyscript(settings: Settings) -> str:
    return KEYSCRIPT_TEMPLATE.format(
        marker_dir=settings.marker_dir,
        askpass=settings.askpass,
        size=settings.key_size,
        address=settings.nv_address,
    )


if __name__ == "__main__":
    sys.exit(main())
