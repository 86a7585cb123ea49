# tests/fixtures/fake_client.py
"""In-memory stand-in for ImisClient used by engine tests.

Counts calls and tracks how many inserts are in flight at once so tests
can assert concurrency bounds and cancellation without a network.
"""

import threading
import time
from collections.abc import Callable
from typing import Any

from imigrate.contracts import (
    DestinationDefinition,
    DestinationProperty,
    Environment,
    ImisResponseError,
    Page,
    PropertyType,
    QueryDefinition,
)

QUERY_PATH = "$/Migration/AllContacts"
DEST_ENTITY = "CsContact"
SOURCE_COLUMNS = ["ID", "FirstName", "LastName", "Notes", "Ordinal"]


def make_rows(count: int) -> list[dict[str, Any]]:
    return [
        {"ID": index, "FirstName": f"First{index}", "LastName": f"Last{index}", "Notes": {"nested": True}, "Ordinal": index}
        for index in range(count)
    ]


def contact_definition() -> DestinationDefinition:
    return DestinationDefinition(
        entity_type=DEST_ENTITY,
        properties=[
            DestinationProperty("ContactId", PropertyType.STRING, is_identity=True),
            DestinationProperty("LegacyId", PropertyType.INTEGER, required=True),
            DestinationProperty("FirstName", PropertyType.STRING),
            DestinationProperty("LastName", PropertyType.STRING),
            DestinationProperty("Ordinal", PropertyType.INTEGER),
        ],
    )


class FakeImisClient:
    """Serves ``rows`` as a query and a business-object feed; accepts inserts.

    Inserts whose LegacyId is in ``fail_ids`` are rejected with HTTP 400.
    Page fetches at an offset in ``failing_offsets`` fail with HTTP 503.
    """

    def __init__(
        self,
        rows: list[dict[str, Any]],
        *,
        fail_ids: set[int] | None = None,
        failing_offsets: set[int] | None = None,
        insert_delay: float = 0.0,
        before_insert: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.rows = rows
        self.fail_ids = set(fail_ids or ())
        self.failing_offsets = set(failing_offsets or ())
        self.insert_delay = insert_delay
        self.before_insert = before_insert
        self.definitions: dict[str, DestinationDefinition] = {DEST_ENTITY: contact_definition()}
        self.queries: dict[str, QueryDefinition] = {QUERY_PATH: QueryDefinition(QUERY_PATH, "AllContacts", list(SOURCE_COLUMNS))}

        self._lock = threading.Lock()
        self._active_inserts = 0
        self.max_active_inserts = 0
        self.fetched_offsets: list[int] = []
        self.inserted: list[dict[str, Any]] = []
        self.insert_calls = 0
        self._next_identity = 1000

    # === Definitions ===

    def get_entity_definition(self, environment: Environment, entity_type: str) -> DestinationDefinition:
        if entity_type not in self.definitions:
            raise ImisResponseError(404, f"No entity {entity_type}")
        return self.definitions[entity_type]

    def get_query_definition(self, environment: Environment, query_path: str) -> QueryDefinition | None:
        return self.queries.get(query_path)

    # === Extraction ===

    def _page(self, offset: int, limit: int) -> Page:
        with self._lock:
            self.fetched_offsets.append(offset)
        if offset in self.failing_offsets:
            raise ImisResponseError(503, "Service Unavailable")
        chunk = [dict(row) for row in self.rows[offset : offset + limit]]
        next_offset = offset + len(chunk)
        return Page(
            rows=chunk,
            offset=offset,
            limit=limit,
            total_count=len(self.rows),
            has_next=next_offset < len(self.rows),
            next_offset=next_offset,
        )

    def fetch_query_page(self, environment: Environment, query_path: str, *, offset: int, limit: int = 500) -> Page:
        return self._page(offset, limit)

    def fetch_entity_page(self, environment: Environment, entity_type: str, *, offset: int, limit: int = 500) -> Page:
        return self._page(offset, limit)

    # === Insertion ===

    def insert_entity(self, environment: Environment, entity_type: str, properties: dict[str, Any]) -> Any:
        with self._lock:
            self.insert_calls += 1
            self._active_inserts += 1
            self.max_active_inserts = max(self.max_active_inserts, self._active_inserts)
        try:
            if self.before_insert is not None:
                self.before_insert(properties)
            if self.insert_delay:
                time.sleep(self.insert_delay)
            if properties.get("LegacyId") in self.fail_ids:
                raise ImisResponseError(400, f"Rejected LegacyId {properties.get('LegacyId')}")
            with self._lock:
                self.inserted.append(properties)
                self._next_identity += 1
                identity = str(self._next_identity)
            return {"Identity": {"IdentityElements": {"$values": [identity]}}}
        finally:
            with self._lock:
                self._active_inserts -= 1
