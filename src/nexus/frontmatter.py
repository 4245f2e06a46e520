"""Frontmatter and backmatter blocks embedded in document bodies.

The frontmatter is a two-column table (Type, ID, Last Modified, Tags,
then one row per metadata property in schema order) followed by a divider.
The Tags row is always written but optional on read. Line breaks in
values are written as <br>.

The backmatter is a divider, a "Linked References" heading and one entry
per referencing source with its quoted contexts.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime
from typing import Any, Literal, NamedTuple

from bs4 import Tag
from jinja2 import BaseLoader, Environment, select_autoescape
from pydantic import ValidationError

from .config import BACKMATTER_HEADING
from .models import (
    REFERENCE_TYPES,
    BacklinkContext,
    MetadataProperty,
    NexusObject,
    PropertyDefinition,
    TextProperty,
    _ensure_aware,
    make_property,
)
from .parser import (
    BACKMATTER_CLASS,
    FRONTMATTER_CLASS,
    MENTION_ATTR,
    block_text,
    mention_target,
    multiline_text,
)

log = logging.getLogger(__name__)

ReferenceState = Literal["synced", "local", "unresolved"]


class ResolvedRef(NamedTuple):
    """How a referenced object id should be rendered."""

    id: str
    state: ReferenceState
    title: str | None = None
    url: str | None = None


ReferenceResolver = Callable[[str], ResolvedRef]


def unresolved(object_id: str) -> ResolvedRef:
    return ResolvedRef(id=object_id, state="unresolved")


_REFERENCE_MACRO = """
{%- macro reference(ref, attr) -%}
{%- if ref.state == "synced" -%}
<a href="{{ ref.url }}" {{ attr }}="{{ ref.id }}">{{ ref.title }}</a>
{%- elif ref.state == "local" -%}
<span {{ attr }}="{{ ref.id }}">{{ ref.title }}</span> <span style="color:#9ca3af">(not synced)</span>
{%- else -%}
<span {{ attr }}="{{ ref.id }}">{{ ref.id }}</span>
{%- endif -%}
{%- endmacro -%}
"""

FRONTMATTER_TEMPLATE = (
    _REFERENCE_MACRO
    + """
<table class="{{ table_class }}">
<tr><td><strong>Type</strong></td><td>{{ obj.type }}</td></tr>
<tr><td><strong>ID</strong></td><td>{{ obj.id }}</td></tr>
<tr><td><strong>Last Modified</strong></td><td>{{ last_modified }}</td></tr>
<tr><td><strong>Tags</strong></td><td>{{ tags }}</td></tr>
{%- for row in rows %}
<tr><td><strong>{{ row.label }}</strong></td><td>
{%- if row.refs is not none -%}
{%- for ref in row.refs -%}{{ reference(ref, attr) }}{% if not loop.last %}, {% endif %}{%- endfor -%}
{%- else -%}
{%- for line in row.lines -%}{{ line }}{% if not loop.last %}<br>{% endif %}{%- endfor -%}
{%- endif -%}
</td></tr>
{%- endfor %}
</table>
<hr>
"""
)

BACKMATTER_TEMPLATE = """
<div class="{{ div_class }}">
<hr>
<h3>{{ heading }}</h3>
{%- for source in sources %}
<h4>
{%- if source.url -%}
<a href="{{ source.url }}">{{ source.title }}</a>
{%- else -%}
{{ source.title }}
{%- endif -%}
</h4>
{%- for mention in source.mentions %}
<blockquote>{{ mention.context_text }}</blockquote>
{%- endfor %}
{%- endfor %}
</div>
"""


def _get_env() -> Environment:
    """Create Jinja2 environment with autoescape enabled."""
    return Environment(
        loader=BaseLoader(),
        autoescape=select_autoescape(default=True, default_for_string=True),
    )


def format_tags(tags: list[str]) -> str:
    return ", ".join(f"#{tag}" for tag in tags)


def parse_tags(text: str) -> list[str]:
    tags: list[str] = []
    for part in text.split(","):
        tag = part.strip().lstrip("#").strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def _display_value(prop: MetadataProperty) -> str:
    return ", ".join(prop.values())


def build_frontmatter(obj: NexusObject, resolve: ReferenceResolver) -> str:
    """Render the frontmatter table and trailing divider for an object."""
    rows: list[dict[str, Any]] = []
    for prop in obj.metadata:
        if prop.type in REFERENCE_TYPES:
            rows.append({"label": prop.label, "refs": [resolve(target) for target in prop.values()]})
        else:
            rows.append({"label": prop.label, "refs": None, "lines": _display_value(prop).split("\n")})

    tmpl = _get_env().from_string(FRONTMATTER_TEMPLATE)
    return tmpl.render(
        obj=obj,
        attr=MENTION_ATTR,
        table_class=FRONTMATTER_CLASS,
        last_modified=obj.last_modified.isoformat(),
        tags=format_tags(obj.tags),
        rows=rows,
    ).strip()


def build_backmatter(backlinks: list[BacklinkContext], resolve: ReferenceResolver) -> str:
    """Render the backlink block. Empty when nothing references the object."""
    if not backlinks:
        return ""

    sources = []
    for backlink in backlinks:
        ref = resolve(backlink.source_id)
        sources.append(
            {
                "title": backlink.source_title,
                "url": ref.url if ref.state == "synced" else None,
                "mentions": backlink.mentions,
            }
        )

    tmpl = _get_env().from_string(BACKMATTER_TEMPLATE)
    return tmpl.render(div_class=BACKMATTER_CLASS, heading=BACKMATTER_HEADING, sources=sources).strip()


# ─────────────────────────────────────────────────────────────────────────────
# Decoding
# ─────────────────────────────────────────────────────────────────────────────


class ParsedFrontmatter(NamedTuple):
    type: str | None
    id: str | None
    last_modified: datetime | None
    tags: list[str] | None
    metadata: list[MetadataProperty]


def _normalize_label(label: str) -> str:
    return re.sub(r"[^a-z0-9]", "", label.lower())


def _slug(label: str) -> str:
    words = re.findall(r"[A-Za-z0-9]+", label)
    if not words:
        return "property"
    return words[0].lower() + "".join(word.capitalize() for word in words[1:])


def _reference_ids(cell: Tag) -> list[str]:
    ids: list[str] = []
    for tag in cell.find_all(True):
        target = mention_target(tag)
        if target is not None and target[0] not in ids:
            ids.append(target[0])
    if ids:
        return ids
    # Bare identifiers typed by hand
    text = block_text(cell).replace("(not synced)", "")
    return [part.strip() for part in text.split(",") if part.strip()]


def _parse_datetime(text: str) -> datetime | None:
    try:
        return _ensure_aware(datetime.fromisoformat(text.strip()))
    except ValueError:
        log.debug("Ignoring unparseable Last Modified value %r", text)
        return None


def _cell_value(prop_type: str, cell: Tag) -> Any:
    if prop_type in REFERENCE_TYPES:
        ids = _reference_ids(cell)
        return ids if prop_type == "documents" else (ids[0] if ids else None)
    if prop_type == "text":
        return multiline_text(cell)
    text = block_text(cell)
    if prop_type == "multiselect":
        return [part.strip() for part in text.split(",") if part.strip()]
    return text


def _decode_property(
    label: str,
    cell: Tag,
    definition: PropertyDefinition | None,
    existing: MetadataProperty | None,
) -> MetadataProperty:
    """Decode one property row. Invalid values degrade, never raise."""
    if existing is not None:
        key, prop_type = existing.key, existing.type
        extra = {
            name: getattr(existing, name)
            for name in ("allowed_types", "options")
            if hasattr(existing, name)
        }
    elif definition is not None:
        key, prop_type = definition.key, definition.type
        extra = {}
        if prop_type in REFERENCE_TYPES:
            extra["allowed_types"] = list(definition.allowed_types)
        elif prop_type in ("select", "multiselect"):
            extra["options"] = list(definition.options)
    else:
        return TextProperty(key=_slug(label), label=label, value=multiline_text(cell))

    try:
        return make_property(key, label, prop_type, _cell_value(prop_type, cell), **extra)
    except (ValidationError, ValueError) as e:
        log.debug("Invalid %s value for %r: %s", prop_type, label, e)
        if existing is not None:
            return existing
        return TextProperty(key=key, label=label, value=block_text(cell))


# Fixed leading rows, in order
SYSTEM_ROWS = ("type", "id", "lastmodified")
TAGS_ROW = "tags"


def parse_frontmatter_rows(
    rows: list[tuple[str, Tag]],
    definitions: list[PropertyDefinition] | None = None,
    existing: NexusObject | None = None,
) -> ParsedFrontmatter:
    """Turn frontmatter (label, cell) rows back into object fields.

    The first three rows are Type, ID and Last Modified by position. A
    fourth row labelled Tags holds the tags. Every later row is a metadata
    property whatever its label, matched by label to the existing object's
    properties first, then to the type's schema definitions. Unknown labels
    become text properties.
    """
    by_label_existing = {_normalize_label(p.label): p for p in existing.metadata} if existing else {}
    by_label_definition = {_normalize_label(d.label): d for d in definitions or []}

    system = rows[: len(SYSTEM_ROWS)]
    properties = rows[len(SYSTEM_ROWS) :]
    for (label, _), expected in zip(system, SYSTEM_ROWS):
        if _normalize_label(label) != expected:
            log.debug("Frontmatter row %r read as %s by position", label, expected)
    texts = [block_text(cell) for _, cell in system] + [""] * (len(SYSTEM_ROWS) - len(system))

    type_name = texts[0] or None
    object_id = texts[1] or None
    last_modified = _parse_datetime(texts[2]) if texts[2] else None

    tags: list[str] | None = None
    if properties and _normalize_label(properties[0][0]) == TAGS_ROW:
        tags = parse_tags(block_text(properties[0][1]))
        properties = properties[1:]

    metadata: list[MetadataProperty] = []
    for label, cell in properties:
        normalized = _normalize_label(label)
        metadata.append(
            _decode_property(
                label,
                cell,
                by_label_definition.get(normalized),
                by_label_existing.get(normalized),
            )
        )

    return ParsedFrontmatter(
        type=type_name,
        id=object_id,
        last_modified=last_modified,
        tags=tags,
        metadata=metadata,
    )
