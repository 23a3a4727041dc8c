"""Unlock LUKS volumes at boot with a key kept in TPM2 NV storage."""

__version__ = "0.1.0"
