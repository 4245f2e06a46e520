"""Pydantic models for the knowledge base."""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from .config import DOCUMENT_MIME_TYPE, FOLDER_MIME_TYPE

PropertyType = Literal["text", "number", "date", "select", "multiselect", "document", "documents"]

# Property types whose values are object identifiers
REFERENCE_TYPES: frozenset[str] = frozenset({"document", "documents"})


def new_object_id() -> str:
    """Return a fresh object identifier. Identifiers are never reused."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _ensure_aware(dt: datetime | None) -> datetime | None:
    """Assume UTC for naive datetimes."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def normalize_date(value: str) -> str | None:
    """Calendar day (YYYY-MM-DD) of an ISO date/datetime or a DD/MM/YYYY string.

    Datetimes with an offset are converted to their UTC day. Returns None
    for anything else.
    """
    value = (value or "").strip()
    if not value:
        return None
    if "/" in value:
        parts = [part.strip() for part in value.split("/")]
        if len(parts) != 3:
            return None
        try:
            return date(int(parts[2]), int(parts[1]), int(parts[0])).isoformat()
        except ValueError:
            return None
    try:
        if len(value) <= 10:
            return date.fromisoformat(value).isoformat()
        return _ensure_aware(datetime.fromisoformat(value)).astimezone(UTC).date().isoformat()
    except ValueError:
        return None


def _as_list(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if v not in (None, "")]


# ─────────────────────────────────────────────────────────────────────────────
# Metadata properties (tagged union on declared type)
# ─────────────────────────────────────────────────────────────────────────────


class _PropertyBase(BaseModel):
    key: str
    label: str

    def values(self) -> list[str]:
        """Value(s) as a list of display strings."""
        value = getattr(self, "value", None)
        if isinstance(value, list):
            return [str(v) for v in value]
        if value is None or value == "":
            return []
        if isinstance(value, float) and value.is_integer():
            return [str(int(value))]
        return [str(value)]


class TextProperty(_PropertyBase):
    type: Literal["text"] = "text"
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class NumberProperty(_PropertyBase):
    type: Literal["number"] = "number"
    value: float | None = None

    @field_validator("value", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class DateProperty(_PropertyBase):
    """ISO date, datetime or DD/MM/YYYY, kept as the string the user entered."""

    type: Literal["date"] = "date"
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def _validate_date(cls, v: Any) -> Any:
        if v is None:
            return ""
        if isinstance(v, (date, datetime)):
            return v.isoformat()
        if isinstance(v, str) and v.strip():
            if normalize_date(v) is None:
                raise ValueError(f"Not a date: {v!r}")
            return v.strip()
        return v


class SelectProperty(_PropertyBase):
    type: Literal["select"] = "select"
    value: str = ""
    options: list[str] = Field(default_factory=list)

    @field_validator("value", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class MultiSelectProperty(_PropertyBase):
    type: Literal["multiselect"] = "multiselect"
    value: list[str] = Field(default_factory=list)
    options: list[str] = Field(default_factory=list)

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_list(cls, v: Any) -> list[str]:
        return _as_list(v)


class DocumentProperty(_PropertyBase):
    """Single reference to another object by id."""

    type: Literal["document"] = "document"
    value: str | None = None
    allowed_types: list[str] = Field(default_factory=list)

    @field_validator("value", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, list):
            v = v[0] if v else None
        return v or None


class DocumentsProperty(_PropertyBase):
    """Multiple references to other objects by id."""

    type: Literal["documents"] = "documents"
    value: list[str] = Field(default_factory=list)
    allowed_types: list[str] = Field(default_factory=list)

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_list(cls, v: Any) -> list[str]:
        return _as_list(v)


MetadataProperty = Annotated[
    Union[
        TextProperty,
        NumberProperty,
        DateProperty,
        SelectProperty,
        MultiSelectProperty,
        DocumentProperty,
        DocumentsProperty,
    ],
    Field(discriminator="type"),
]

_property_adapter: TypeAdapter[MetadataProperty] = TypeAdapter(MetadataProperty)


def make_property(key: str, label: str, type: PropertyType, value: Any = None, **extra: Any) -> MetadataProperty:
    """Build a validated metadata property of the given declared type."""
    data: dict[str, Any] = {"key": key, "label": label, "type": type, **extra}
    if value is not None:
        data["value"] = value
    return _property_adapter.validate_python(data)


# ─────────────────────────────────────────────────────────────────────────────
# Schemas and configuration
# ─────────────────────────────────────────────────────────────────────────────


class PropertyDefinition(BaseModel):
    """Declares one property that objects of a type receive."""

    key: str
    label: str
    type: PropertyType
    required: bool = False
    default_value: str | None = None
    allowed_types: list[str] = Field(default_factory=list)  # document/documents only
    options: list[str] = Field(default_factory=list)  # select/multiselect only

    def new_property(self) -> MetadataProperty:
        extra: dict[str, Any] = {}
        if self.type in REFERENCE_TYPES:
            extra["allowed_types"] = list(self.allowed_types)
        elif self.type in ("select", "multiselect"):
            extra["options"] = list(self.options)
        return make_property(self.key, self.label, self.type, self.default_value, **extra)


class TypeSchema(BaseModel):
    """Ordered property definitions for a type name, plus presentation."""

    type: str
    properties: list[PropertyDefinition] = Field(default_factory=list)
    icon: str | None = None
    color: str | None = None


class TagConfig(BaseModel):
    name: str
    color: str | None = None
    description: str | None = None
    last_modified: datetime = Field(default_factory=utcnow)


# ─────────────────────────────────────────────────────────────────────────────
# Objects
# ─────────────────────────────────────────────────────────────────────────────


class RemoteRef(BaseModel):
    """Counterpart of an object in the remote document store."""

    file_id: str
    revision: str | None = None


class NexusObject(BaseModel):
    """The atomic knowledge unit."""

    id: str = Field(default_factory=new_object_id)
    title: str
    type: str = "Page"
    content: str = ""  # HTML
    metadata: list[MetadataProperty] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    last_modified: datetime = Field(default_factory=utcnow)
    remote: RemoteRef | None = None  # None until the first successful push

    @field_validator("last_modified", mode="after")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        return _ensure_aware(v)  # type: ignore[return-value]

    @property
    def is_synced(self) -> bool:
        return self.remote is not None

    def get_property(self, key: str) -> MetadataProperty | None:
        for prop in self.metadata:
            if prop.key == key:
                return prop
        return None


def new_object_from_schema(
    type_name: str,
    title: str,
    schema: TypeSchema | None = None,
    **fields: Any,
) -> NexusObject:
    """Create an object whose metadata follows the type's schema."""
    metadata = [definition.new_property() for definition in schema.properties] if schema else []
    return NexusObject(title=title, type=type_name, metadata=metadata, **fields)


class Asset(BaseModel):
    """Binary embedded in content via an ``asset:<id>`` placeholder."""

    id: str
    filename: str
    mime_type: str = "application/octet-stream"
    data: bytes = b""
    remote_id: str | None = None
    remote_url: str | None = None  # set once uploaded; never re-uploaded


class CalendarEvent(BaseModel):
    id: str
    summary: str = ""
    start: datetime
    end: datetime | None = None
    calendar_id: str | None = None
    description: str = ""
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    raw: dict[str, Any] = Field(default_factory=dict)

    @field_validator("start", "end", mode="after")
    @classmethod
    def _aware(cls, v: datetime | None) -> datetime | None:
        return _ensure_aware(v)


class MailMessage(BaseModel):
    id: str
    sender: str
    to: str = ""
    cc: str | None = None
    subject: str = ""
    date: datetime
    snippet: str = ""
    body: str = ""  # HTML or plain text
    body_plain: str = ""
    has_attachments: bool = False
    labels: list[str] = Field(default_factory=list)
    owner: str | None = None

    @field_validator("date", mode="after")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        return _ensure_aware(v)  # type: ignore[return-value]


# ─────────────────────────────────────────────────────────────────────────────
# Remote provider records
# ─────────────────────────────────────────────────────────────────────────────


class RemoteFile(BaseModel):
    """File metadata as reported by the provider."""

    id: str
    name: str = ""
    mime_type: str = ""
    modified_time: datetime | None = None
    version: str | None = None
    app_properties: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteFile":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", ""),
            modified_time=data.get("modifiedTime"),
            version=str(data["version"]) if data.get("version") is not None else None,
            app_properties=data.get("appProperties") or {},
        )

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @property
    def is_document(self) -> bool:
        return self.mime_type == DOCUMENT_MIME_TYPE


class ChangeRecord(BaseModel):
    """One entry of the change feed: a removal or an upsert."""

    file_id: str
    removed: bool = False
    file: RemoteFile | None = None


class ChangePage(BaseModel):
    changes: list[ChangeRecord] = Field(default_factory=list)
    next_cursor: str


# ─────────────────────────────────────────────────────────────────────────────
# Backlinks and graph
# ─────────────────────────────────────────────────────────────────────────────


class MentionContext(BaseModel):
    context_text: str
    mention_position: int  # ordinal of the mention within its source
    block_id: str | None = None


class BacklinkContext(BaseModel):
    """All mentions of one target found in one source object."""

    source_id: str
    source_title: str
    source_type: str
    source_last_modified: datetime
    mentions: list[MentionContext] = Field(default_factory=list)


class GraphNode(BaseModel):
    id: str
    title: str
    type: str
    tags: list[str] = Field(default_factory=list)


class GraphEdge(BaseModel):
    """A directed edge. `origin` says which marker produced it."""

    source: str
    target: str
    origin: Literal["mention", "link", "property"]
    property_key: str | None = None


class ObjectGraph(BaseModel):
    nodes: dict[str, GraphNode] = Field(default_factory=dict)
    edges: list[GraphEdge] = Field(default_factory=list)


class GraphQueryResult(BaseModel):
    root: str
    depth: int
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# Operation results
# ─────────────────────────────────────────────────────────────────────────────


class SaveResult(BaseModel):
    """Outcome of a save. The local write has always happened."""

    obj: NexusObject
    pushed: bool = False  # remote create/update succeeded
    created: bool = False  # the create path was taken
    error: str | None = None  # remote failure, sync is degraded
    error_code: str | None = None


class DeleteResult(BaseModel):
    deleted: str
    title: str
    remote_deleted: bool = False
    warnings: list[str] = Field(default_factory=list)


class SyncReport(BaseModel):
    """Outcome of one incremental sync pass."""

    applied: int = 0
    removed: int = 0
    skipped: int = 0
    failed: int = 0
    cursor: str | None = None
    errors: list[str] = Field(default_factory=list)


class FullSyncResult(BaseModel):
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    failures: list[str] = Field(default_factory=list)
    cursor: str | None = None
