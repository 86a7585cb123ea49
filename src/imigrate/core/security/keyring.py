# src/imigrate/core/security/keyring.py
"""Optional at-rest storage of environment passwords under a master password.

When enabled, the store keeps a SHA-256 verifier of the master password
and one blob per environment, each ``base64(iv || ciphertext || tag)``
under a key derived from the master password. The derived key lives only
in the vault and only while unlocked.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from imigrate.contracts import DecryptionError, MasterPasswordError
from imigrate.core.security.encryption import (
    decrypt_with_key,
    derive_master_key,
    encrypt_with_key,
    hash_password,
    verify_password,
)

if TYPE_CHECKING:
    from imigrate.core.security.vault import CredentialVault
    from imigrate.core.store import Persistence

logger = structlog.get_logger(__name__)

MASTER_PASSWORD_HASH_KEY = "master_password_hash"


class PasswordKeyring:
    """Persists vault passwords encrypted under a master password.

    Example:
        keyring = PasswordKeyring(vault, persistence)
        keyring.enable("correct horse")      # first time
        keyring.set_password("prod", "pw")   # vault + encrypted copy on disk
        ...
        keyring.unlock("correct horse")      # next process: restores passwords
    """

    def __init__(self, vault: CredentialVault, persistence: Persistence) -> None:
        self._vault = vault
        self._persistence = persistence

    @property
    def is_enabled(self) -> bool:
        return self._persistence.get_setting(MASTER_PASSWORD_HASH_KEY) is not None

    @property
    def is_unlocked(self) -> bool:
        return self._vault.master_key is not None

    def enable(self, master_password: str) -> None:
        """Turn on password storage and persist every resident password.

        Raises:
            MasterPasswordError: If storage is already enabled
        """
        if self.is_enabled:
            raise MasterPasswordError("Password storage is already enabled; use change() to rotate the master password")
        self._persistence.set_setting(MASTER_PASSWORD_HASH_KEY, hash_password(master_password))
        self._vault.set_master_key(derive_master_key(master_password))
        self._persist_resident_passwords()
        logger.info("Password storage enabled")

    def unlock(self, master_password: str) -> list[str]:
        """Verify the master password and load stored passwords into the vault.

        Returns:
            Environment ids whose passwords were restored

        Raises:
            MasterPasswordError: Storage not enabled or wrong master password
        """
        expected = self._persistence.get_setting(MASTER_PASSWORD_HASH_KEY)
        if expected is None:
            raise MasterPasswordError("Password storage is not enabled")
        if not verify_password(master_password, expected):
            raise MasterPasswordError("Incorrect master password")
        key = derive_master_key(master_password)
        self._vault.set_master_key(key)

        restored: list[str] = []
        for environment_id, blob in self._persistence.list_stored_passwords().items():
            try:
                password = decrypt_with_key(blob, key)
            except DecryptionError:
                # Written under a previous master key; the user must re-enter it
                logger.warning("Stored password could not be decrypted", environment_id=environment_id)
                continue
            self._vault.set_password(environment_id, password)
            restored.append(environment_id)
        logger.info("Keyring unlocked", restored=len(restored))
        return restored

    def lock(self) -> None:
        """Forget the master key. Resident passwords stay in the vault."""
        self._vault.set_master_key(None)

    def set_password(self, environment_id: str, password: str) -> None:
        """Set a password in the vault, persisting it too when unlocked."""
        self._vault.set_password(environment_id, password)
        key = self._vault.master_key
        if key is not None:
            self._persistence.save_stored_password(environment_id, encrypt_with_key(password, key))

    def change(self, current_password: str, new_password: str) -> None:
        """Re-encrypt stored passwords under a new master password.

        Raises:
            MasterPasswordError: Storage not enabled or wrong current password
        """
        self.unlock(current_password)
        self._persistence.set_setting(MASTER_PASSWORD_HASH_KEY, hash_password(new_password))
        self._vault.set_master_key(derive_master_key(new_password))
        self._persist_resident_passwords()
        logger.info("Master password changed")

    def disable(self) -> None:
        """Delete every stored password and the master password verifier."""
        self._persistence.delete_stored_passwords()
        self._persistence.delete_setting(MASTER_PASSWORD_HASH_KEY)
        self._vault.set_master_key(None)
        logger.info("Password storage disabled")

    def _persist_resident_passwords(self) -> None:
        key = self._vault.master_key
        if key is None:
            raise MasterPasswordError("Keyring is locked")
        for environment_id in self._vault.environment_ids():
            password = self._vault.get_password(environment_id)
            if password is not None:
                self._persistence.save_stored_password(environment_id, encrypt_with_key(password, key))
