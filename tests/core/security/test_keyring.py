# tests/core/security/test_keyring.py
"""Tests for PasswordKeyring (master-password storage of environment passwords)."""

import pytest

from imigrate.contracts import MasterPasswordError
from imigrate.core.security import CredentialVault, PasswordKeyring
from imigrate.core.security.encryption import decrypt_with_key, derive_master_key
from imigrate.core.store import Persistence


class TestPasswordKeyring:
    def test_disabled_by_default(self, persistence: Persistence) -> None:
        keyring = PasswordKeyring(CredentialVault(), persistence)

        assert not keyring.is_enabled
        assert not keyring.is_unlocked

    def test_enable_persists_resident_passwords(self, persistence: Persistence, vault: CredentialVault) -> None:
        keyring = PasswordKeyring(vault, persistence)

        keyring.enable("master")

        stored = persistence.list_stored_passwords()
        assert set(stored) == {"legacy", "cloud"}
        assert decrypt_with_key(stored["legacy"], derive_master_key("master")) == "source-secret"
        assert keyring.is_enabled
        assert keyring.is_unlocked

    def test_enable_twice_rejected(self, persistence: Persistence) -> None:
        keyring = PasswordKeyring(CredentialVault(), persistence)
        keyring.enable("master")

        with pytest.raises(MasterPasswordError):
            keyring.enable("master")

    def test_unlock_restores_into_fresh_vault(self, persistence: Persistence, vault: CredentialVault) -> None:
        PasswordKeyring(vault, persistence).enable("master")

        fresh = CredentialVault()
        restored = PasswordKeyring(fresh, persistence).unlock("master")

        assert sorted(restored) == ["cloud", "legacy"]
        assert fresh.get_password("cloud") == "dest-secret"

    def test_unlock_wrong_password(self, persistence: Persistence, vault: CredentialVault) -> None:
        PasswordKeyring(vault, persistence).enable("master")

        fresh = CredentialVault()
        with pytest.raises(MasterPasswordError, match="Incorrect"):
            PasswordKeyring(fresh, persistence).unlock("nope")
        assert fresh.get_password("cloud") is None

    def test_unlock_when_not_enabled(self, persistence: Persistence) -> None:
        with pytest.raises(MasterPasswordError, match="not enabled"):
            PasswordKeyring(CredentialVault(), persistence).unlock("master")

    def test_set_password_persists_only_when_unlocked(self, persistence: Persistence) -> None:
        vault = CredentialVault()
        keyring = PasswordKeyring(vault, persistence)

        keyring.set_password("legacy", "pw1")
        assert persistence.list_stored_passwords() == {}

        keyring.enable("master")
        keyring.set_password("cloud", "pw2")

        assert set(persistence.list_stored_passwords()) == {"legacy", "cloud"}

    def test_change_reencrypts(self, persistence: Persistence, vault: CredentialVault) -> None:
        keyring = PasswordKeyring(vault, persistence)
        keyring.enable("old")

        keyring.change("old", "new")

        fresh = CredentialVault()
        PasswordKeyring(fresh, persistence).unlock("new")
        assert fresh.get_password("legacy") == "source-secret"
        with pytest.raises(MasterPasswordError):
            PasswordKeyring(CredentialVault(), persistence).unlock("old")

    def test_disable_deletes_everything(self, persistence: Persistence, vault: CredentialVault) -> None:
        keyring = PasswordKeyring(vault, persistence)
        keyring.enable("master")

        keyring.disable()

        assert not keyring.is_enabled
        assert not keyring.is_unlocked
        assert persistence.list_stored_passwords() == {}
        # Resident passwords are untouched
        assert vault.get_password("legacy") == "source-secret"
