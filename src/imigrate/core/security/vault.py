# src/imigrate/core/security/vault.py
"""Credential vault: per-environment passwords and bearer tokens.

Process-wide state, but never ambient: one CredentialVault is created at
startup and passed by handle to the client, the orchestrator and the
keyring. Each environment id has its own re-entrant lock so token refresh
for one environment never blocks another.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from imigrate.contracts import MissingCredentialsError

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class _Credentials:
    password: str | None = None
    token: str | None = None
    token_expires_at: datetime | None = None


class CredentialVault:
    """Keyed store environment id → {password, token, token expiry}.

    Tokens are treated as expired ``expiry_margin`` before the server's
    stated expiry so a request is never sent with a token about to lapse.

    Example:
        vault = CredentialVault()
        vault.set_password("prod", "secret")
        with vault.lock("prod"):
            if vault.get_token("prod") is None:
                vault.set_token("prod", token, expires_at)
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        expiry_margin: timedelta = timedelta(seconds=30),
    ) -> None:
        self._clock = clock
        self._expiry_margin = expiry_margin
        self._entries: dict[str, _Credentials] = {}
        self._locks: dict[str, threading.RLock] = {}
        # Guards creation of per-key locks and entries
        self._registry_lock = threading.Lock()
        self._master_key: bytes | None = None

    def _entry(self, environment_id: str) -> _Credentials:
        with self._registry_lock:
            entry = self._entries.get(environment_id)
            if entry is None:
                entry = _Credentials()
                self._entries[environment_id] = entry
            return entry

    def _key_lock(self, environment_id: str) -> threading.RLock:
        with self._registry_lock:
            key_lock = self._locks.get(environment_id)
            if key_lock is None:
                key_lock = threading.RLock()
                self._locks[environment_id] = key_lock
            return key_lock

    @contextmanager
    def lock(self, environment_id: str) -> Iterator[None]:
        """Hold the environment's lock, e.g. around a token refresh."""
        with self._key_lock(environment_id):
            yield

    # === Passwords ===

    def get_password(self, environment_id: str) -> str | None:
        with self.lock(environment_id):
            return self._entry(environment_id).password

    def require_password(self, environment_id: str) -> str:
        """Return the password or raise MissingCredentialsError."""
        password = self.get_password(environment_id)
        if password is None:
            raise MissingCredentialsError(environment_id)
        return password

    def has_password(self, environment_id: str) -> bool:
        return self.get_password(environment_id) is not None

    def set_password(self, environment_id: str, password: str) -> None:
        with self.lock(environment_id):
            entry = self._entry(environment_id)
            if entry.password != password:
                # A token minted for other credentials must not outlive them
                entry.token = None
                entry.token_expires_at = None
            entry.password = password
        logger.debug("Password set", environment_id=environment_id)

    def environment_ids(self) -> list[str]:
        """Environments with a resident password."""
        with self._registry_lock:
            return sorted(env_id for env_id, entry in self._entries.items() if entry.password is not None)

    # === Tokens ===

    def get_token(self, environment_id: str) -> str | None:
        """Return the cached token, or None if absent or expired.

        An expired token is discarded as a side effect.
        """
        with self.lock(environment_id):
            entry = self._entry(environment_id)
            if entry.token is None or entry.token_expires_at is None:
                return None
            if self._clock() >= entry.token_expires_at - self._expiry_margin:
                entry.token = None
                entry.token_expires_at = None
                logger.debug("Cached token expired", environment_id=environment_id)
                return None
            return entry.token

    def set_token(self, environment_id: str, token: str, expires_at: datetime) -> None:
        with self.lock(environment_id):
            entry = self._entry(environment_id)
            entry.token = token
            entry.token_expires_at = expires_at

    def clear_token(self, environment_id: str) -> None:
        """Drop the cached token but keep the password for re-authentication."""
        with self.lock(environment_id):
            entry = self._entry(environment_id)
            entry.token = None
            entry.token_expires_at = None

    def clear_session(self, environment_id: str) -> None:
        """Forget everything held for the environment, password included."""
        with self.lock(environment_id), self._registry_lock:
            self._entries.pop(environment_id, None)
        logger.debug("Session cleared", environment_id=environment_id)

    # === Master key ===

    @property
    def master_key(self) -> bytes | None:
        with self._registry_lock:
            return self._master_key

    def set_master_key(self, key: bytes | None) -> None:
        with self._registry_lock:
            self._master_key = key
