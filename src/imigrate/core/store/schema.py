# src/imigrate/core/store/schema.py
"""SQLAlchemy table definitions for the local migration store.

Uses SQLAlchemy Core (not ORM) for explicit control over queries.
JSON-valued columns are stored as Text and (de)serialized by the
repository layer.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

# === Environments (read-only to the execution core) ===

environments_table = Table(
    "environments",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("base_url", String(1024), nullable=False),
    Column("username", String(255), nullable=False),
    Column("api_version", String(8), nullable=False),
    Column("query_concurrency", Integer, nullable=False, default=5),
    Column("insert_concurrency", Integer, nullable=False, default=50),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# === Jobs ===

jobs_table = Table(
    "jobs",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("status", String(16), nullable=False),
    Column("mode", String(16), nullable=False),
    Column("source_environment_id", String(64), ForeignKey("environments.id"), nullable=False),
    Column("source_query_path", String(1024)),
    Column("source_entity_type", String(255)),
    Column("dest_environment_id", String(64), ForeignKey("environments.id"), nullable=False),
    Column("dest_entity_type", String(255), nullable=False),
    Column("mappings_json", Text, nullable=False),
    Column("total_rows", Integer),
    # Counters are refreshed from the rows table; the rows table is authoritative
    Column("processed_rows", Integer, nullable=False, default=0),
    Column("successful_rows", Integer, nullable=False, default=0),
    Column("failed_rows", Integer, nullable=False, default=0),
    Column("failed_offsets_json", Text, nullable=False, default="[]"),
    Column("identity_field_names_json", Text, nullable=False, default="[]"),
    Column("error_message", Text),
    Column("started_at", DateTime(timezone=True)),
    Column("completed_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

Index("ix_jobs_status", jobs_table.c.status)

# === Rows and attempts ===

rows_table = Table(
    "rows",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("job_id", String(64), ForeignKey("jobs.id"), nullable=False),
    Column("row_index", Integer, nullable=False),
    Column("encrypted_payload", Text, nullable=False),
    Column("status", String(16), nullable=False),
    Column("identity_elements_json", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("job_id", "row_index"),
)

Index("ix_rows_job_status", rows_table.c.job_id, rows_table.c.status)

attempts_table = Table(
    "attempts",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("row_id", String(64), ForeignKey("rows.id"), nullable=False),
    Column("sequence", Integer, nullable=False),
    Column("reason", String(16), nullable=False),
    Column("success", Boolean, nullable=False),
    Column("error_message", Text),
    Column("identity_elements_json", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("row_id", "sequence"),
)

# === Credential storage ===

stored_passwords_table = Table(
    "stored_passwords",
    metadata,
    Column("environment_id", String(64), primary_key=True),
    # base64(iv || ciphertext || tag) under the master key
    Column("encrypted_password", Text, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

settings_table = Table(
    "settings",
    metadata,
    Column("key", String(64), primary_key=True),
    Column("value", Text, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
