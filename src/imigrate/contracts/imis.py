"""Canonical shapes returned by the iMIS client.

Both API generations are normalized into these types at the client
boundary. Nothing downstream of ImisClient inspects ``$type`` envelopes or
cares which API version produced a value.
"""

from dataclasses import dataclass, field
from typing import Any

from imigrate.contracts.enums import PropertyType

# Type marker the API uses for byte arrays. Values carrying it are passed
# through as {"$type": ..., "$value": <base64>} rather than unwrapped.
BINARY_BLOB_TYPE = "System.Byte[], mscorlib"

# Audit columns the destination maintains itself; inserting them is rejected.
RESTRICTED_DESTINATION_PROPERTIES: frozenset[str] = frozenset({"Ordinal", "UpdatedOn", "UpdatedBy", "UpdatedByUserKey"})


def is_binary_blob(value: Any) -> bool:
    """True for a {"$type": "System.Byte[], mscorlib", "$value": str} envelope."""
    return isinstance(value, dict) and value.get("$type") == BINARY_BLOB_TYPE and isinstance(value.get("$value"), str)


@dataclass(frozen=True)
class Page:
    """One page of extracted rows.

    Each row is a flat ``{column: value}`` dict whose values are JSON
    primitives or binary blob envelopes.
    """

    rows: list[dict[str, Any]]
    offset: int
    limit: int
    total_count: int
    has_next: bool
    next_offset: int | None = None


@dataclass(frozen=True)
class DestinationProperty:
    name: str
    property_type: PropertyType | None
    max_length: int | None = None
    is_identity: bool = False
    required: bool = False


@dataclass(frozen=True)
class DestinationDefinition:
    """Schema of a destination business object."""

    entity_type: str
    properties: list[DestinationProperty] = field(default_factory=list)

    @property
    def property_names(self) -> set[str]:
        return {prop.name for prop in self.properties}

    @property
    def identity_field_names(self) -> list[str]:
        return [prop.name for prop in self.properties if prop.is_identity]


@dataclass(frozen=True)
class QueryDefinition:
    """A saved IQA query.

    ``name`` is synthesized from the last path segment when the server
    does not return a document name.
    """

    path: str
    name: str
    properties: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DataSource:
    """A business object that can be paged as a raw feed."""

    entity_type: str
    description: str | None = None
