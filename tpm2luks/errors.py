"""Error kinds raised by the provisioning workflow and the boot agent."""

from __future__ import annotations


class Tpm2LuksError(RuntimeError):
    result = "FAIL_UNHANDLED"


class PermissionDenied(Tpm2LuksError):
    result = "FAIL_PERMISSION"


class DependencyMissing(Tpm2LuksError):
    result = "FAIL_DEPENDENCY"

    def __init__(self, tool: str, package: str | None = None):
        hint = f" (install it with: apt-get install {package})" if package else ""
        super().__init__(f"{tool} could not be found{hint}")
        self.tool = tool
        self.package = package


class DeviceNotFound(Tpm2LuksError):
    result = "FAIL_INVALID_DEVICE"


class StorageError(Tpm2LuksError):
    result = "FAIL_STORAGE"


class StorageUnavailable(StorageError):
    """No NV region at the index, or the TPM could not be reached."""


class StorageSizeMismatch(StorageUnavailable):
    def __init__(self, address: int, defined: int, requested: int):
        super().__init__(
            f"NV index 0x{address:x} holds {defined} bytes, {requested} requested"
        )
        self.address = address
        self.defined = defined
        self.requested = requested


class StorageWriteError(StorageError):
    pass


class SynchronizationError(Tpm2LuksError):
    result = "FAIL_SYNC_MISMATCH"


class CredentialAddError(Tpm2LuksError):
    result = "FAIL_CREDENTIAL_ADD"

    def __init__(self, volume: str, message: str | None = None):
        super().__init__(message or f"could not add the new key to {volume}")
        self.volume = volume


class RegistryAmbiguous(Tpm2LuksError):
    result = "FAIL_REGISTRY_AMBIGUOUS"


class InitramfsError(Tpm2LuksError):
    result = "FAIL_INITRAMFS"


class Cancelled(Tpm2LuksError):
    result = "FAIL_CANCELLED"
