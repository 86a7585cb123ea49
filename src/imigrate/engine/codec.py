# src/imigrate/engine/codec.py
"""Row codec: field mapping, at-rest row encryption, identity extraction.

The raw extracted row (before mapping) is what gets encrypted and stored,
so a retry can re-apply the mapping to exactly what the source returned.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from imigrate.contracts import PropertyMapping, is_binary_blob
from imigrate.core.security.encryption import decrypt_json, encrypt_json
from imigrate.imis.normalize import InsertResponse, parse, unwrap_value

if TYPE_CHECKING:
    from imigrate.core.security.vault import CredentialVault

_PRIMITIVES = (str, int, float, bool)


def is_insertable(value: Any) -> bool:
    """Values the destination accepts as a GenericPropertyData value."""
    return value is None or isinstance(value, _PRIMITIVES) or is_binary_blob(value)


def transform_row(row: dict[str, Any], mappings: list[PropertyMapping]) -> dict[str, Any]:
    """Apply a mapping to one extracted row.

    Columns mapped to None are dropped, as are values of a shape the
    destination cannot accept (nested objects, arrays). Binary blobs are
    passed through in their envelope.
    """
    properties: dict[str, Any] = {}
    for mapping in mappings:
        if mapping.destination_property is None:
            continue
        value = row.get(mapping.source_property)
        if is_insertable(value):
            properties[mapping.destination_property] = value
    return properties


def extract_identity(payload: Any, endpoint: str) -> list[str]:
    """Identity elements of a freshly inserted entity (may be empty).

    The shape is whatever the destination defines as its key: a single
    ID for most business objects, several elements for composite keys.
    """
    response = parse(InsertResponse, payload, endpoint)
    if response.identity is None or response.identity.identity_elements is None:
        return []
    return [str(unwrap_value(element)) for element in response.identity.identity_elements.entries]


class RowCodec:
    """Encrypts rows under the source environment's password.

    The password must still be resident in the vault to decrypt; a row
    stored under a password that has since been changed fails with
    DecryptionError.
    """

    def __init__(self, vault: CredentialVault) -> None:
        self._vault = vault

    def encode(self, environment_id: str, row: dict[str, Any]) -> str:
        """Raises MissingCredentialsError if the password is not resident."""
        return encrypt_json(row, self._vault.require_password(environment_id))

    def decode(self, environment_id: str, blob: str) -> dict[str, Any]:
        """Raises MissingCredentialsError or DecryptionError."""
        row: dict[str, Any] = decrypt_json(blob, self._vault.require_password(environment_id))
        return row
