"""Encrypted, local-only persistence of the browser session state."""

from __future__ import annotations

import json
import logging
import os
import platform
import time
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from teamsmcp.core.auth.crypto import DecryptionError, decrypt, encrypt, is_encrypted
from teamsmcp.models.session import SessionState
from teamsmcp.utils.state import session_state_path

logger = logging.getLogger(__name__)

SESSION_EXPIRY_HOURS = 12


class SessionStore:
    """Reads and writes the single session-state blob.

    The blob lives at ``<config_dir>/session-state.json``, encrypted at rest
    and readable by the owner only. It is always written whole.
    """

    def __init__(
        self,
        config_dir: Path,
        *,
        key: bytes | None = None,
        expiry_hours: float = SESSION_EXPIRY_HOURS,
    ) -> None:
        self.config_dir = Path(config_dir)
        self.state_path = session_state_path(self.config_dir)
        self.expiry_hours = expiry_hours
        self._key = key

    def exists(self) -> bool:
        return self.state_path.exists()

    def read(self) -> SessionState | None:
        """Load the session. Returns None if missing or unreadable."""
        payload = self._read_secure()
        if payload is None:
            return None
        try:
            return SessionState.from_storage_state(payload)
        except ValidationError as exc:
            logger.warning("Ignoring malformed session state at %s: %s", self.state_path, exc)
            return None

    def write(self, state: SessionState | dict[str, Any]) -> Path:
        """Persist the whole session state, replacing the previous blob."""
        payload = state.to_storage_state() if isinstance(state, SessionState) else dict(state)
        self._write_secure(payload)
        return self.state_path

    def clear(self) -> bool:
        """Delete the session. Returns True if it existed."""
        if not self.state_path.exists():
            return False
        self.state_path.unlink()
        return True

    def age_hours(self, now: float | None = None) -> float | None:
        """Hours since the session was last written, or None when absent."""
        if not self.state_path.exists():
            return None
        mtime = self.state_path.stat().st_mtime
        return ((now if now is not None else time.time()) - mtime) / 3600

    def is_likely_expired(self, now: float | None = None) -> bool:
        age = self.age_hours(now)
        if age is None:
            return True
        return age > self.expiry_hours

    def ensure_config_dir(self) -> Path:
        if not self.config_dir.exists():
            self.config_dir.mkdir(parents=True, exist_ok=True)
            _set_secure_permissions(self.config_dir, 0o700)
        return self.config_dir

    def _read_secure(self) -> dict[str, Any] | None:
        if not self.state_path.exists():
            return None
        try:
            loaded = json.loads(self.state_path.read_text(encoding="utf-8"))
            if is_encrypted(loaded):
                loaded = json.loads(decrypt(loaded, key=self._key))
            else:
                # Plaintext written by an older release: re-encrypt in place.
                logger.info("Encrypting plaintext session state at %s", self.state_path)
                self._write_secure(loaded)
        except (OSError, ValueError, DecryptionError) as exc:
            logger.warning("Failed to read %s: %s", self.state_path, exc)
            return None
        return loaded if isinstance(loaded, dict) else None

    def _write_secure(self, payload: dict[str, Any]) -> None:
        self.ensure_config_dir()
        envelope = encrypt(json.dumps(payload), key=self._key)
        tmp_path = self.state_path.with_name(f"{self.state_path.name}.tmp")
        tmp_path.write_text(json.dumps(envelope, indent=2), encoding="utf-8")
        _set_secure_permissions(tmp_path, 0o600)
        os.replace(tmp_path, self.state_path)


def _set_secure_permissions(path: Path, mode: int) -> None:
    """Restrict permissions on POSIX systems."""
    if platform.system() == "Windows":
        return
    try:
        os.chmod(path, mode)
    except OSError:
        logger.warning("Could not set secure permissions on %s", path)
