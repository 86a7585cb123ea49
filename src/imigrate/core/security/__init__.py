"""Credential handling: vault, payload encryption, master-password keyring."""

from imigrate.core.security.keyring import PasswordKeyring
from imigrate.core.security.vault import CredentialVault

__all__ = [
    "CredentialVault",
    "PasswordKeyring",
]
