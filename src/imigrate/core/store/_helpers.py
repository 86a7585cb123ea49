"""Common helper functions shared by the store modules."""

import json
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

E = TypeVar("E", bound=Enum)


def now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_id() -> str:
    """Generate a unique ID (UUID4 hex)."""
    return uuid.uuid4().hex


def coerce_enum(value: str | E, enum_type: type[E]) -> E:
    """Coerce a string or enum value to the target enum type.

    Raises:
        ValueError: If string is not a valid enum value
    """
    if isinstance(value, enum_type):
        return value
    return enum_type(value)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on the way back; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def dump_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def load_json(value: str | None) -> Any:
    return None if value is None else json.loads(value)
