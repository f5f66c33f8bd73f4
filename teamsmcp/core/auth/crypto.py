"""At-rest encryption for the session blob.

AES-256-GCM under a scrypt key derived from ``hostname:username``. This keeps
the session unreadable on another machine or account; it is not a substitute
for OS-level secret storage.
"""

from __future__ import annotations

import getpass
import os
import socket
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

ENCRYPTION_VERSION = 1
KEY_SALT = b"teams-mcp-credential-salt-v1"
IV_BYTES = 16
TAG_BYTES = 16


class DecryptionError(ValueError):
    """Raised when an encrypted blob cannot be opened on this machine."""


def machine_identity() -> str:
    return f"{socket.gethostname()}:{getpass.getuser()}"


def derive_key(identity: str | None = None) -> bytes:
    kdf = Scrypt(salt=KEY_SALT, length=32, n=2**14, r=8, p=1)
    return kdf.derive((identity or machine_identity()).encode("utf-8"))


def encrypt(plaintext: str, *, key: bytes | None = None) -> dict[str, Any]:
    """Encrypt *plaintext* into the hex envelope stored on disk."""
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(key or derive_key()).encrypt(iv, plaintext.encode("utf-8"), None)
    return {
        "iv": iv.hex(),
        "content": sealed[:-TAG_BYTES].hex(),
        "tag": sealed[-TAG_BYTES:].hex(),
        "version": ENCRYPTION_VERSION,
    }


def decrypt(envelope: dict[str, Any], *, key: bytes | None = None) -> str:
    if envelope.get("version") != ENCRYPTION_VERSION:
        raise DecryptionError(f"Unsupported encryption version: {envelope.get('version')}")
    try:
        iv = bytes.fromhex(envelope["iv"])
        sealed = bytes.fromhex(envelope["content"]) + bytes.fromhex(envelope["tag"])
        plaintext = AESGCM(key or derive_key()).decrypt(iv, sealed, None)
    except (InvalidTag, KeyError, ValueError) as exc:
        raise DecryptionError("Session blob could not be decrypted") from exc
    return plaintext.decode("utf-8")


def is_encrypted(payload: Any) -> bool:
    """Check whether *payload* has the encrypted envelope shape."""
    if not isinstance(payload, dict):
        return False
    return (
        isinstance(payload.get("iv"), str)
        and isinstance(payload.get("content"), str)
        and isinstance(payload.get("tag"), str)
        and isinstance(payload.get("version"), int)
    )
