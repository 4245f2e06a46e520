"""SQLite-backed local cache of objects and their satellites.

The store is the durability boundary: once a call returns, the write is
committed. It has no network awareness. Every call opens its own
connection, so each operation is its own transaction.

Cache location: $NEXUS_HOME/nexus.sqlite (see config.get_db_path)
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from .errors import ValidationFailedError
from .models import (
    Asset,
    CalendarEvent,
    MailMessage,
    NexusObject,
    PropertyDefinition,
    TagConfig,
    TypeSchema,
    normalize_date,
)

log = logging.getLogger(__name__)

SCHEMA_VERSION = 1
CURSOR_KEY = "change_cursor"


class ObjectStore(Protocol):
    """The subset of the local store the sync core depends on."""

    def get_object_by_id(self, object_id: str) -> NexusObject | None: ...

    def get_all_objects(self) -> list[NexusObject]: ...

    def get_object_by_remote_id(self, file_id: str) -> NexusObject | None: ...

    def upsert(self, obj: NexusObject) -> None: ...

    def delete(self, object_id: str) -> bool: ...


DEFAULT_SCHEMAS: list[TypeSchema] = [
    TypeSchema(
        type="Person",
        color="#f59e0b",
        properties=[
            PropertyDefinition(key="fullName", label="Full Name", type="text", required=True),
            PropertyDefinition(key="email", label="Email", type="text"),
            PropertyDefinition(key="phone", label="Phone", type="text"),
            PropertyDefinition(key="birthdate", label="Birth Date", type="date"),
        ],
    ),
    TypeSchema(
        type="Meeting",
        color="#8b5cf6",
        properties=[
            PropertyDefinition(key="date", label="Date", type="date", required=True),
            PropertyDefinition(key="location", label="Location", type="text"),
            PropertyDefinition(
                key="attendees", label="Attendees", type="documents", allowed_types=["Person"]
            ),
        ],
    ),
    TypeSchema(
        type="Project",
        color="#10b981",
        properties=[
            PropertyDefinition(key="status", label="Status", type="text", default_value="Planning"),
            PropertyDefinition(key="startDate", label="Start Date", type="date"),
            PropertyDefinition(key="endDate", label="End Date", type="date"),
            PropertyDefinition(key="owner", label="Owner", type="document", allowed_types=["Person"]),
            PropertyDefinition(key="budget", label="Budget", type="number"),
        ],
    ),
    TypeSchema(type="Page", color="#3b82f6", properties=[]),
]


class LocalStore:
    """Keyed persistent cache for objects, schemas, tags, events, mail and assets."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._path))
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        self._ensure_schema(conn)
        return conn

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS objects (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                remote_id TEXT,
                last_modified TEXT NOT NULL,
                data TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_objects_remote_id ON objects(remote_id);
            CREATE INDEX IF NOT EXISTS idx_objects_type ON objects(type);
            CREATE TABLE IF NOT EXISTS type_schemas (
                type TEXT PRIMARY KEY,
                data TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS tag_configs (
                name TEXT PRIMARY KEY,
                data TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS calendar_events (
                id TEXT PRIMARY KEY,
                start TEXT NOT NULL,
                data TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS mail_messages (
                id TEXT PRIMARY KEY,
                date TEXT NOT NULL,
                data TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS assets (
                id TEXT PRIMARY KEY,
                filename TEXT NOT NULL,
                mime_type TEXT NOT NULL,
                data BLOB NOT NULL,
                remote_id TEXT,
                remote_url TEXT
            );
            CREATE TABLE IF NOT EXISTS sync_metadata (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );
            """
        )
        row = conn.execute("SELECT value FROM sync_metadata WHERE key = 'schema_version'").fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO sync_metadata (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
        conn.commit()

    # ─────────────────────────────────────────────────────────────────────
    # Objects
    # ─────────────────────────────────────────────────────────────────────

    @staticmethod
    def _load_object(data: str) -> NexusObject | None:
        try:
            return NexusObject.model_validate_json(data)
        except ValidationError as e:
            log.warning("Skipping unreadable object record: %s", e)
            return None

    def get_object_by_id(self, object_id: str) -> NexusObject | None:
        with self._connect() as conn:
            row = conn.execute("SELECT data FROM objects WHERE id = ?", (object_id,)).fetchone()
        return self._load_object(row[0]) if row else None

    def get_object_by_remote_id(self, file_id: str) -> NexusObject | None:
        with self._connect() as conn:
            row = conn.execute("SELECT data FROM objects WHERE remote_id = ?", (file_id,)).fetchone()
        return self._load_object(row[0]) if row else None

    def get_all_objects(self) -> list[NexusObject]:
        with self._connect() as conn:
            rows = conn.execute("SELECT data FROM objects ORDER BY last_modified DESC").fetchall()
        return [obj for obj in (self._load_object(row[0]) for row in rows) if obj is not None]

    def get_objects_by_type(self, type_name: str) -> list[NexusObject]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data FROM objects WHERE type = ? ORDER BY last_modified DESC", (type_name,)
            ).fetchall()
        return [obj for obj in (self._load_object(row[0]) for row in rows) if obj is not None]

    def get_objects_by_tag(self, tag: str) -> list[NexusObject]:
        return [obj for obj in self.get_all_objects() if tag in obj.tags]

    def get_recents(self, limit: int = 5, exclude_id: str | None = None) -> list[NexusObject]:
        """Most recently modified objects, optionally leaving one out."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data FROM objects WHERE id != ? ORDER BY last_modified DESC LIMIT ?",
                (exclude_id or "", limit),
            ).fetchall()
        return [obj for obj in (self._load_object(row[0]) for row in rows) if obj is not None]

    @staticmethod
    def _object_dates(obj: NexusObject) -> set[str]:
        days = set()
        for prop in obj.metadata:
            if prop.type == "date" and prop.value:
                day = normalize_date(prop.value)
                if day:
                    days.add(day)
        return days

    def get_active_dates(self) -> list[str]:
        """Every calendar day (YYYY-MM-DD) named by a date property, ascending."""
        days: set[str] = set()
        for obj in self.get_all_objects():
            days |= self._object_dates(obj)
        return sorted(days)

    def get_objects_by_date(self, day: str) -> list[NexusObject]:
        """Objects with a date property falling on day (any accepted date format)."""
        target = normalize_date(day)
        if target is None:
            return []
        return [obj for obj in self.get_all_objects() if target in self._object_dates(obj)]

    def upsert(self, obj: NexusObject) -> None:
        """Insert or replace an object, validating it first.

        Raises:
            ValidationFailedError: If the record does not validate.
        """
        try:
            validated = NexusObject.model_validate(obj.model_dump())
        except ValidationError as e:
            raise ValidationFailedError(f"Invalid object {obj.id}: {e}") from e

        remote_id = validated.remote.file_id if validated.remote else None
        with self._connect() as conn:
            # A remote file maps to exactly one local record
            if remote_id:
                conn.execute(
                    "DELETE FROM objects WHERE remote_id = ? AND id != ?",
                    (remote_id, validated.id),
                )
            conn.execute(
                """
                INSERT INTO objects (id, type, remote_id, last_modified, data)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    type = excluded.type,
                    remote_id = excluded.remote_id,
                    last_modified = excluded.last_modified,
                    data = excluded.data
                """,
                (
                    validated.id,
                    validated.type,
                    remote_id,
                    validated.last_modified.isoformat(),
                    validated.model_dump_json(),
                ),
            )

    def delete(self, object_id: str) -> bool:
        """Delete an object. Returns False if it did not exist."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM objects WHERE id = ?", (object_id,))
            return cursor.rowcount > 0

    def clear_objects(self) -> int:
        """Remove every object and the change cursor. Returns the count removed."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM objects")
            conn.execute("DELETE FROM sync_metadata WHERE key = ?", (CURSOR_KEY,))
            return cursor.rowcount

    def count_objects(self) -> int:
        with self._connect() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM objects").fetchone()[0])

    # ─────────────────────────────────────────────────────────────────────
    # Change cursor
    # ─────────────────────────────────────────────────────────────────────

    def get_cursor(self) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM sync_metadata WHERE key = ?", (CURSOR_KEY,)).fetchone()
        return row[0] if row else None

    def set_cursor(self, cursor: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_metadata (key, value) VALUES (?, ?)",
                (CURSOR_KEY, cursor),
            )

    def clear_cursor(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM sync_metadata WHERE key = ?", (CURSOR_KEY,))

    # ─────────────────────────────────────────────────────────────────────
    # Type schemas
    # ─────────────────────────────────────────────────────────────────────

    def get_type_schema(self, type_name: str) -> TypeSchema | None:
        with self._connect() as conn:
            row = conn.execute("SELECT data FROM type_schemas WHERE type = ?", (type_name,)).fetchone()
        return TypeSchema.model_validate_json(row[0]) if row else None

    def get_all_type_schemas(self) -> list[TypeSchema]:
        with self._connect() as conn:
            rows = conn.execute("SELECT data FROM type_schemas ORDER BY type").fetchall()
        return [TypeSchema.model_validate_json(row[0]) for row in rows]

    def save_type_schema(self, schema: TypeSchema) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO type_schemas (type, data) VALUES (?, ?)",
                (schema.type, schema.model_dump_json()),
            )

    def delete_type_schema(self, type_name: str) -> bool:
        with self._connect() as conn:
            return conn.execute("DELETE FROM type_schemas WHERE type = ?", (type_name,)).rowcount > 0

    def seed_default_schemas(self) -> bool:
        """Install the built-in schemas on first run.

        Returns:
            True if schemas were seeded, False if any schema already existed.
        """
        if self.get_all_type_schemas():
            return False
        for schema in DEFAULT_SCHEMAS:
            self.save_type_schema(schema)
        log.info("Initialized %d default type schemas", len(DEFAULT_SCHEMAS))
        return True

    # ─────────────────────────────────────────────────────────────────────
    # Tag configuration
    # ─────────────────────────────────────────────────────────────────────

    def get_tag_config(self, name: str) -> TagConfig | None:
        with self._connect() as conn:
            row = conn.execute("SELECT data FROM tag_configs WHERE name = ?", (name,)).fetchone()
        return TagConfig.model_validate_json(row[0]) if row else None

    def get_all_tag_configs(self) -> list[TagConfig]:
        with self._connect() as conn:
            rows = conn.execute("SELECT data FROM tag_configs ORDER BY name").fetchall()
        return [TagConfig.model_validate_json(row[0]) for row in rows]

    def save_tag_config(self, config: TagConfig) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO tag_configs (name, data) VALUES (?, ?)",
                (config.name, config.model_dump_json()),
            )

    def delete_tag_config(self, name: str) -> bool:
        with self._connect() as conn:
            return conn.execute("DELETE FROM tag_configs WHERE name = ?", (name,)).rowcount > 0

    def tag_stats(self) -> dict[str, int]:
        """Count of objects per tag, most used first."""
        counts: dict[str, int] = {}
        for obj in self.get_all_objects():
            for tag in obj.tags:
                counts[tag] = counts.get(tag, 0) + 1
        return dict(sorted(counts.items(), key=lambda item: (-item[1], item[0])))

    # ─────────────────────────────────────────────────────────────────────
    # Calendar events and mail (data shape only)
    # ─────────────────────────────────────────────────────────────────────

    def upsert_calendar_event(self, event: CalendarEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO calendar_events (id, start, data) VALUES (?, ?, ?)",
                (event.id, event.start.isoformat(), event.model_dump_json()),
            )

    def get_calendar_events(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CalendarEvent]:
        with self._connect() as conn:
            rows = conn.execute("SELECT data FROM calendar_events ORDER BY start").fetchall()
        events = [CalendarEvent.model_validate_json(row[0]) for row in rows]
        if start is not None:
            events = [e for e in events if e.start >= start]
        if end is not None:
            events = [e for e in events if e.start <= end]
        return events

    def delete_calendar_event(self, event_id: str) -> bool:
        with self._connect() as conn:
            return conn.execute("DELETE FROM calendar_events WHERE id = ?", (event_id,)).rowcount > 0

    def upsert_mail_message(self, message: MailMessage) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO mail_messages (id, date, data) VALUES (?, ?, ?)",
                (message.id, message.date.isoformat(), message.model_dump_json()),
            )

    def get_mail_message(self, message_id: str) -> MailMessage | None:
        with self._connect() as conn:
            row = conn.execute("SELECT data FROM mail_messages WHERE id = ?", (message_id,)).fetchone()
        return MailMessage.model_validate_json(row[0]) if row else None

    def get_mail_messages(self, limit: int = 10) -> list[MailMessage]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data FROM mail_messages ORDER BY date DESC LIMIT ?", (limit,)
            ).fetchall()
        return [MailMessage.model_validate_json(row[0]) for row in rows]

    def delete_mail_message(self, message_id: str) -> bool:
        with self._connect() as conn:
            return conn.execute("DELETE FROM mail_messages WHERE id = ?", (message_id,)).rowcount > 0

    # ─────────────────────────────────────────────────────────────────────
    # Assets
    # ─────────────────────────────────────────────────────────────────────

    def save_asset(self, asset: Asset) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO assets (id, filename, mime_type, data, remote_id, remote_url)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (asset.id, asset.filename, asset.mime_type, asset.data, asset.remote_id, asset.remote_url),
            )

    def get_asset(self, asset_id: str) -> Asset | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, filename, mime_type, data, remote_id, remote_url FROM assets WHERE id = ?",
                (asset_id,),
            ).fetchone()
        if row is None:
            return None
        return Asset(
            id=row[0],
            filename=row[1],
            mime_type=row[2],
            data=bytes(row[3]),
            remote_id=row[4],
            remote_url=row[5],
        )

    def mark_asset_uploaded(self, asset_id: str, remote_id: str, remote_url: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE assets SET remote_id = ?, remote_url = ? WHERE id = ?",
                (remote_id, remote_url, asset_id),
            )
