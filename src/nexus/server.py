"""FastMCP server for nexus.

This module provides MCP protocol wrappers around the sync orchestrator,
the local store and the derived indexes. No logic lives here; this file
just handles MCP serialization.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Literal

from fastmcp import Context, FastMCP

from .backlinks import get_backlinks_with_context
from .context import build_context
from .errors import ObjectNotFoundError, ValidationFailedError
from .models import (
    BacklinkContext,
    DeleteResult,
    GraphQueryResult,
    NexusObject,
    SaveResult,
    SyncReport,
    normalize_date,
)
from .relations_graph import build_object_graph, query_object_graph
from .sync import SyncOrchestrator

log = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Lifespan
# ─────────────────────────────────────────────────────────────────────────────


@asynccontextmanager
async def nexus_lifespan(server: FastMCP) -> AsyncIterator[SyncOrchestrator]:
    """Build the orchestrator once per server run and hand it to every tool."""
    orchestrator = SyncOrchestrator(build_context())
    log.info("nexus MCP server ready (cache: %s)", orchestrator.store.path)
    try:
        yield orchestrator
    finally:
        log.info("nexus MCP server stopping")


mcp = FastMCP(
    name="nexus",
    instructions=(
        "Local-first knowledge base of typed objects synced with a remote document store. "
        "Use list/get to read, save to create or update, backlinks/graph for relationships, "
        "daily to open today's journal note."
    ),
    lifespan=nexus_lifespan,
)


def _orchestrator(ctx: Context) -> SyncOrchestrator:
    return ctx.request_context.lifespan_context


def _summaries(objects: list[NexusObject]) -> list[dict]:
    return [
        {"id": obj.id, "title": obj.title, "type": obj.type, "tags": obj.tags, "synced": obj.is_synced}
        for obj in objects
    ]


# ─────────────────────────────────────────────────────────────────────────────
# MCP Tool Wrappers
# ─────────────────────────────────────────────────────────────────────────────


@mcp.tool(
    name="get",
    description="Get an object with its metadata properties, tags and content.",
)
async def get_tool(ctx: Context, object_id: str) -> NexusObject:
    """Read an object from the local cache."""
    obj = _orchestrator(ctx).store.get_object_by_id(object_id)
    if obj is None:
        raise ObjectNotFoundError(f"Object not found: {object_id}", {"id": object_id})
    return obj


@mcp.tool(
    name="list",
    description=(
        "List cached objects, optionally filtered by type, tag or a day named by a date "
        "property, most recent first."
    ),
)
async def list_tool(
    ctx: Context,
    type_name: str | None = None,
    tag: str | None = None,
    day: str | None = None,
    limit: int = 50,
) -> list[dict]:
    """List objects."""
    store = _orchestrator(ctx).store
    if day:
        objects = [obj for obj in store.get_objects_by_date(day) if not type_name or obj.type == type_name]
    else:
        objects = store.get_objects_by_type(type_name) if type_name else store.get_all_objects()
    if tag:
        objects = [obj for obj in objects if tag in obj.tags]
    return _summaries(objects[:limit])


@mcp.tool(
    name="recent",
    description="Most recently modified objects, optionally leaving one out (e.g. the one being edited).",
)
async def recent_tool(ctx: Context, limit: int = 5, exclude_id: str | None = None) -> list[dict]:
    return _summaries(_orchestrator(ctx).store.get_recents(limit, exclude_id))


@mcp.tool(
    name="backlinks",
    description="Find objects that mention an object, with the text around each mention.",
)
async def backlinks_tool(ctx: Context, object_id: str) -> list[BacklinkContext]:
    """Mentions of an object grouped by source."""
    return get_backlinks_with_context(object_id, _orchestrator(ctx).store.get_all_objects())


@mcp.tool(
    name="graph",
    description="Neighbourhood of an object in the relationship graph (mentions, links, reference properties).",
)
async def graph_tool(
    ctx: Context,
    object_id: str,
    depth: int = 1,
    direction: Literal["outgoing", "incoming", "both"] = "both",
    origin: list[Literal["mention", "link", "property"]] | None = None,
) -> GraphQueryResult:
    """Query the relationship graph."""
    graph = build_object_graph(_orchestrator(ctx).store.get_all_objects())
    return query_object_graph(
        graph,
        object_id,
        depth=depth,
        direction=direction,
        origin=set(origin) if origin else None,
    )


@mcp.tool(
    name="sync",
    description="Bootstrap remote folders if needed and apply remote changes since the last sync.",
)
async def sync_tool(ctx: Context) -> SyncReport | None:
    """Run one sync pass."""
    return await _orchestrator(ctx).start()


@mcp.tool(
    name="save",
    description=(
        "Create or update an object. Without object_id a new object of the given type is "
        "created from its schema. The local write always succeeds; remote push errors are "
        "reported on the result."
    ),
)
async def save_tool(
    ctx: Context,
    title: str,
    type_name: str = "Page",
    object_id: str | None = None,
    content: str | None = None,
    tags: list[str] | None = None,
    properties: dict[str, Any] | None = None,
) -> SaveResult:
    """Save an object."""
    orchestrator = _orchestrator(ctx)
    if object_id is None:
        return await orchestrator.new_object(
            type_name, title, content=content or "", tags=tags, properties=properties
        )
    return await orchestrator.update_object(
        object_id, title=title, content=content, tags=tags, properties=properties
    )


@mcp.tool(
    name="daily",
    description="Open the daily journal note for a day (YYYY-MM-DD, default today in UTC), creating it on first use.",
)
async def daily_tool(ctx: Context, day: str | None = None) -> SaveResult:
    """Open or create a daily note."""
    target = None
    if day:
        stamp = normalize_date(day)
        if stamp is None:
            raise ValidationFailedError(f"Not a date: {day}", {"day": day})
        target = date.fromisoformat(stamp)
    return await _orchestrator(ctx).get_or_create_daily_note(target)


@mcp.tool(
    name="delete",
    description="Delete an object locally; remote deletion is best effort and reported as warnings.",
)
async def delete_tool(ctx: Context, object_id: str) -> DeleteResult:
    """Delete an object."""
    return await _orchestrator(ctx).delete_object(object_id)


def main():
    """Run the MCP server."""
    from ._logging import configure_logging

    configure_logging()
    log.info("Starting nexus MCP server")

    mcp.run()


if __name__ == "__main__":
    main()
