#!/usr/bin/env python3
"""
nx: CLI for the nexus knowledge base

Usage:
    nx status                      # Cache and sync state
    nx sync                        # Bootstrap and apply remote changes
    nx list --type=Meeting         # Browse cached objects
    nx get <id>                    # Read an object
    nx new Person "Ada Lovelace"   # Create an object
    nx backlinks <id>              # Who mentions this object
    nx daily                       # Open today's daily note
"""

from __future__ import annotations

import asyncio
import difflib
import json
import sys
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, NoReturn

import click
from click.exceptions import ClickException, UsageError

from . import __version__ as NEXUS_VERSION

if TYPE_CHECKING:
    from datetime import datetime

    from .sync import SyncOrchestrator


def run_async(coro):
    """Run async function synchronously."""
    return asyncio.run(coro)


# ─────────────────────────────────────────────────────────────────────────────
# Output Formatting
# ─────────────────────────────────────────────────────────────────────────────


def format_table(rows: list[dict], columns: list[str], max_widths: dict | None = None) -> str:
    """Format rows as a simple table."""
    if not rows:
        return ""

    max_widths = max_widths or {}
    widths = {col: len(col) for col in columns}

    def cell(row: dict, col: str) -> str:
        val = str(row.get(col, ""))
        limit = max_widths.get(col, 50)
        if len(val) > limit:
            val = val[: limit - 3] + "..."
        return val

    for row in rows:
        for col in columns:
            widths[col] = max(widths[col], len(cell(row, col)))

    header = "  ".join(col.upper().ljust(widths[col]) for col in columns)
    separator = "  ".join("-" * widths[col] for col in columns)
    lines = [header, separator]
    for row in rows:
        lines.append("  ".join(cell(row, col).ljust(widths[col]) for col in columns))
    return "\n".join(lines)


def output(data, as_json: bool = False):
    """Output data as JSON or formatted text."""
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(data)


def _handle_error(ctx: click.Context, error: Exception, exit_code: int = 1) -> NoReturn:
    """Report an error as text or, with --json-errors, as structured JSON."""
    from .config import ConfigurationError
    from .errors import ErrorCode, NexusError, format_error_json

    json_errors = ctx.obj.get("json_errors", False) if ctx.obj else False

    if isinstance(error, NexusError):
        if json_errors:
            click.echo(error.to_json(), err=True)
        else:
            click.echo(f"Error: {error.message}", err=True)
    else:
        code = ErrorCode.CONFIGURATION_ERROR if isinstance(error, ConfigurationError) else ErrorCode.INTERNAL_ERROR
        if json_errors:
            click.echo(format_error_json(code, str(error)), err=True)
        else:
            click.echo(f"Error: {error}", err=True)

    sys.exit(exit_code)


def get_error_code_for_exception(exc: Exception) -> str:
    """Map Click exceptions to error codes."""
    if isinstance(exc, click.BadParameter):
        return "INVALID_ARGUMENT"
    elif isinstance(exc, click.MissingParameter):
        return "MISSING_ARGUMENT"
    elif isinstance(exc, click.NoSuchOption):
        return "UNKNOWN_OPTION"
    elif isinstance(exc, UsageError):
        return "USAGE_ERROR"
    elif isinstance(exc, ClickException):
        return "CLI_ERROR"
    return "UNKNOWN_ERROR"


# ─────────────────────────────────────────────────────────────────────────────
# JSON Error Handling
# ─────────────────────────────────────────────────────────────────────────────


class JsonErrorGroup(click.Group):
    """Click group that formats errors as JSON when --json-errors is set.

    Also suggests the closest command name on typos.
    """

    def resolve_command(self, ctx, args):
        try:
            return super().resolve_command(ctx, args)
        except UsageError as e:
            cmd_name = args[0] if args else ""
            if cmd_name and "No such command" in str(e):
                matches = difflib.get_close_matches(cmd_name, self.list_commands(ctx), n=1, cutoff=0.6)
                if matches:
                    raise UsageError(f"No such command '{cmd_name}'. Did you mean '{matches[0]}'?")
            raise

    def main(
        self,
        args: Sequence[str] | None = None,
        prog_name: str | None = None,
        complete_var: str | None = None,
        standalone_mode: bool = True,
        **extra: Any,
    ) -> Any:
        """Catch argument parsing errors when --json-errors is anywhere in argv."""
        from .errors import format_error_json

        argv = list(args) if args is not None else list(sys.argv[1:])
        if "--json-errors" not in argv:
            return super().main(args, prog_name, complete_var, standalone_mode, **extra)

        # Treat a misplaced --json-errors as the global flag
        argv = [a for a in argv if a != "--json-errors"]
        argv.insert(0, "--json-errors")

        try:
            return super().main(argv, prog_name, complete_var, standalone_mode=False, **extra)
        except ClickException as e:
            click.echo(format_error_json(get_error_code_for_exception(e), e.format_message()), err=True)
            raise SystemExit(1)
        except SystemExit:
            raise
        except Exception as e:
            click.echo(format_error_json("INTERNAL_ERROR", str(e)), err=True)
            raise SystemExit(1)


# ─────────────────────────────────────────────────────────────────────────────
# Context helpers
# ─────────────────────────────────────────────────────────────────────────────


def _orchestrator(ctx: click.Context) -> "SyncOrchestrator":
    """The orchestrator for this invocation, built on first use."""
    from .context import build_context
    from datetime import datetime

    from .sync import SyncOrchestrator

    obj = ctx.find_root().obj
    orchestrator = obj.get("orchestrator")
    if orchestrator is None:
        try:
            orchestrator = SyncOrchestrator(build_context())
        except Exception as e:
            _handle_error(ctx, e)
        obj["orchestrator"] = orchestrator
    return orchestrator


def _require_object(ctx: click.Context, orchestrator: "SyncOrchestrator", object_id: str):
    from .errors import ObjectNotFoundError

    obj = orchestrator.store.get_object_by_id(object_id)
    if obj is None:
        _handle_error(ctx, ObjectNotFoundError(f"Object not found: {object_id}", {"id": object_id}))
    return obj


def _warn(ctx: click.Context, message: str) -> None:
    if not ctx.find_root().obj.get("quiet"):
        click.echo(f"Warning: {message}", err=True)


# ─────────────────────────────────────────────────────────────────────────────
# Main CLI Group
# ─────────────────────────────────────────────────────────────────────────────


@click.group(cls=JsonErrorGroup)
@click.version_option(version=NEXUS_VERSION, prog_name="nx")
@click.option(
    "--json-errors",
    "json_errors",
    is_flag=True,
    help="Output errors as JSON (for programmatic use)",
)
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    envvar="NEXUS_QUIET",
    help="Suppress warnings, show only errors and essential output",
)
@click.pass_context
def cli(ctx: click.Context, json_errors: bool, quiet: bool):
    """nx: local-first knowledge base synced with a remote document store.

    \b
    Quick start:
      nx sync                          # Bootstrap and pull remote changes
      nx list                          # Browse cached objects
      nx new Meeting "Weekly sync"     # Create an object
      nx backlinks <id>                # Mentions of an object

    \b
    For programmatic error handling:
      nx --json-errors get <id>        # Errors as JSON with error codes
    """
    from ._logging import configure_logging, set_quiet_mode

    ctx.ensure_object(dict)
    ctx.obj["json_errors"] = json_errors
    ctx.obj["quiet"] = quiet

    if quiet:
        set_quiet_mode(True)
    configure_logging()


# ─────────────────────────────────────────────────────────────────────────────
# Sync Commands
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool):
    """Show cache location, object count and sync state."""
    orchestrator = _orchestrator(ctx)
    info = orchestrator.status()

    if as_json:
        output(info, as_json=True)
        return

    click.echo(f"Cache:   {info['db_path']}")
    click.echo(f"Objects: {info['objects']}")
    click.echo(f"Mode:    {'offline' if info['offline'] else 'online'}")
    click.echo(f"Cursor:  {info['cursor'] or '(none)'}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def sync(ctx: click.Context, as_json: bool):
    """Bootstrap remote folders and apply changes since the last sync."""
    from .errors import NexusError

    orchestrator = _orchestrator(ctx)
    try:
        report = run_async(orchestrator.start())
    except NexusError as e:
        _handle_error(ctx, e)

    if report is None:
        _warn(ctx, "Offline mode; nothing to sync")
        return

    if as_json:
        output(report.model_dump(mode="json"), as_json=True)
        return

    click.echo(
        f"Synced: {report.applied} updated, {report.removed} removed, "
        f"{report.skipped} skipped, {report.failed} failed"
    )
    for error in report.errors:
        _warn(ctx, error)


@cli.command()
@click.option("--wipe", is_flag=True, help="Clear the local cache before importing")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def resync(ctx: click.Context, wipe: bool, as_json: bool):
    """Re-import every remote document.

    \b
    Examples:
      nx resync           # Import on top of the current cache
      nx resync --wipe    # Clear the cache first
    """
    from .errors import NexusError

    orchestrator = _orchestrator(ctx)

    async def _run():
        if wipe:
            return await orchestrator.wipe_and_resync()
        await orchestrator.remote.ensure_folder_structure(
            [schema.type for schema in orchestrator.store.get_all_type_schemas()]
        )
        return await orchestrator.full_resync()

    try:
        result = run_async(_run())
    except NexusError as e:
        _handle_error(ctx, e)

    if as_json:
        output(result.model_dump(mode="json"), as_json=True)
        return

    click.echo(f"Imported: {result.imported} ({result.skipped} skipped, {result.errors} errors)")
    for failure in result.failures:
        _warn(ctx, failure)


# ─────────────────────────────────────────────────────────────────────────────
# Object Commands
# ─────────────────────────────────────────────────────────────────────────────


def _object_rows(objects) -> list[dict]:
    return [
        {
            "id": obj.id,
            "type": obj.type,
            "title": obj.title,
            "tags": ", ".join(obj.tags),
            "synced": "yes" if obj.is_synced else "no",
        }
        for obj in objects
    ]


@cli.command("list")
@click.option("--type", "type_name", help="Filter by object type")
@click.option("--tag", help="Filter by tag")
@click.option("--date", "day", metavar="DAY", help="Objects with a date property on this day")
@click.option("--limit", "-n", default=50, type=click.IntRange(min=1), help="Max results")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def list_objects(
    ctx: click.Context,
    type_name: str | None,
    tag: str | None,
    day: str | None,
    limit: int,
    as_json: bool,
):
    """List cached objects, most recently modified first.

    \b
    Examples:
      nx list
      nx list --type=Person
      nx list --tag=work
      nx list --date=2024-03-01
    """
    orchestrator = _orchestrator(ctx)
    store = orchestrator.store

    if day:
        objects = store.get_objects_by_date(day)
        if type_name:
            objects = [obj for obj in objects if obj.type == type_name]
    else:
        objects = store.get_objects_by_type(type_name) if type_name else store.get_all_objects()
    if tag:
        objects = [obj for obj in objects if tag in obj.tags]
    rows = _object_rows(objects[:limit])

    if as_json:
        output(rows, as_json=True)
        return
    if not rows:
        click.echo("No objects found.")
        return
    click.echo(format_table(rows, ["id", "type", "title", "tags", "synced"], {"title": 40, "tags": 30}))


@cli.command()
@click.argument("object_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def get(ctx: click.Context, object_id: str, as_json: bool):
    """Show one object with its properties and content."""
    from .parser import HEADING_TAGS, block_text, parse_html

    orchestrator = _orchestrator(ctx)
    obj = _require_object(ctx, orchestrator, object_id)

    if as_json:
        output(obj.model_dump(mode="json"), as_json=True)
        return

    click.echo(f"# {obj.title}")
    click.echo(f"Type:     {obj.type}")
    click.echo(f"ID:       {obj.id}")
    click.echo(f"Modified: {obj.last_modified.isoformat()}")
    if obj.tags:
        click.echo(f"Tags:     {', '.join(obj.tags)}")
    if obj.remote:
        click.echo(f"Remote:   {orchestrator.remote.document_url(obj.remote.file_id)}")
    for prop in obj.metadata:
        click.echo(f"{prop.label}: {', '.join(prop.values())}")
    if obj.content:
        click.echo()
        tree = parse_html(obj.content)
        blocks = tree.find_all(["p", "li", *HEADING_TAGS])
        for block in blocks or [tree]:
            click.echo(block_text(block))


@cli.command()
@click.argument("type_name", metavar="TYPE")
@click.argument("title")
@click.option("--tags", help="Comma-separated tags")
@click.option("--content", default="", help="Body HTML")
@click.option("--set", "props", multiple=True, metavar="KEY=VALUE", help="Set a property value")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def new(
    ctx: click.Context,
    type_name: str,
    title: str,
    tags: str | None,
    content: str,
    props: tuple[str, ...],
    as_json: bool,
):
    """Create an object from its type schema.

    \b
    Examples:
      nx new Person "Ada Lovelace" --set email=ada@example.com
      nx new Meeting "Planning" --tags=work --set date=2024-03-01
    """
    from .errors import NexusError

    properties: dict[str, str] = {}
    for item in props:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{item}'", param_hint="--set")
        properties[key.strip()] = value

    tag_list = [t.strip() for t in tags.split(",") if t.strip()] if tags else []
    orchestrator = _orchestrator(ctx)
    try:
        result = run_async(
            orchestrator.new_object(type_name, title, content=content, tags=tag_list, properties=properties)
        )
    except NexusError as e:
        _handle_error(ctx, e)

    if as_json:
        output(result.model_dump(mode="json"), as_json=True)
        return

    click.echo(f"Created: {result.obj.id} ({result.obj.title})")
    if result.error:
        _warn(ctx, f"Saved locally; remote push failed: {result.error}")


@cli.command()
@click.argument("object_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def delete(ctx: click.Context, object_id: str, as_json: bool):
    """Delete an object locally and, best effort, remotely."""
    from .errors import NexusError

    orchestrator = _orchestrator(ctx)
    try:
        result = run_async(orchestrator.delete_object(object_id))
    except NexusError as e:
        _handle_error(ctx, e)

    if as_json:
        output(result.model_dump(mode="json"), as_json=True)
        return

    for warning in result.warnings:
        _warn(ctx, warning)
    click.echo(f"Deleted: {result.deleted} ({result.title})")


@cli.command()
@click.option("--date", "day", type=click.DateTime(formats=["%Y-%m-%d"]), help="Day to open (default: today, UTC)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def daily(ctx: click.Context, day: datetime | None, as_json: bool):
    """Open the daily note, creating it on first use.

    \b
    Examples:
      nx daily
      nx daily --date=2024-03-01
    """
    from .errors import NexusError

    orchestrator = _orchestrator(ctx)
    try:
        result = run_async(orchestrator.get_or_create_daily_note(day.date() if day else None))
    except NexusError as e:
        _handle_error(ctx, e)

    if as_json:
        output(result.model_dump(mode="json"), as_json=True)
        return

    verb = "Created" if result.created else "Opened"
    click.echo(f"{verb}: {result.obj.id} ({result.obj.title})")
    if result.error:
        _warn(ctx, f"Saved locally; remote push failed: {result.error}")


@cli.command()
@click.option("--limit", "-n", default=5, type=click.IntRange(min=1), help="Max results")
@click.option("--exclude", "exclude_id", metavar="ID", help="Leave this object out")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def recent(ctx: click.Context, limit: int, exclude_id: str | None, as_json: bool):
    """Show the most recently modified objects."""
    rows = _object_rows(_orchestrator(ctx).store.get_recents(limit, exclude_id))

    if as_json:
        output(rows, as_json=True)
        return
    if not rows:
        click.echo("No objects found.")
        return
    click.echo(format_table(rows, ["id", "type", "title", "tags", "synced"], {"title": 40, "tags": 30}))


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def dates(ctx: click.Context, as_json: bool):
    """List days that objects refer to through date properties."""
    days = _orchestrator(ctx).store.get_active_dates()

    if as_json:
        output(days, as_json=True)
        return
    if not days:
        click.echo("No dated objects.")
        return
    for day in days:
        click.echo(day)


# ─────────────────────────────────────────────────────────────────────────────
# Relationship Commands
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("object_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def backlinks(ctx: click.Context, object_id: str, as_json: bool):
    """Show objects that mention OBJECT_ID, with context."""
    from .backlinks import get_backlinks_with_context

    orchestrator = _orchestrator(ctx)
    _require_object(ctx, orchestrator, object_id)
    results = get_backlinks_with_context(object_id, orchestrator.store.get_all_objects())

    if as_json:
        output([r.model_dump(mode="json") for r in results], as_json=True)
        return
    if not results:
        click.echo("No backlinks found.")
        return

    for source in results:
        click.echo(f"{source.source_title} ({source.source_type}, {source.source_id})")
        for mention in source.mentions:
            click.echo(f"  > {mention.context_text}")


@cli.command()
@click.argument("object_id", required=False)
@click.option("--depth", default=1, type=click.IntRange(min=1), help="Hops to traverse")
@click.option(
    "--direction",
    type=click.Choice(["outgoing", "incoming", "both"]),
    default="both",
    help="Edge direction to follow",
)
@click.option(
    "--origin",
    type=click.Choice(["mention", "link", "property"]),
    multiple=True,
    help="Only follow edges of this origin (repeatable)",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def graph(
    ctx: click.Context,
    object_id: str | None,
    depth: int,
    direction: str,
    origin: tuple[str, ...],
    as_json: bool,
):
    """Show the relationship graph, or the neighbourhood of one object.

    \b
    Examples:
      nx graph
      nx graph <id> --depth=2 --direction=outgoing
      nx graph <id> --origin=property
    """
    from .errors import NexusError
    from .relations_graph import build_object_graph, query_object_graph

    orchestrator = _orchestrator(ctx)
    full = build_object_graph(orchestrator.store.get_all_objects())

    if object_id is None:
        if as_json:
            output(full.model_dump(mode="json"), as_json=True)
            return
        click.echo(f"{len(full.nodes)} nodes, {len(full.edges)} edges")
        for edge in full.edges:
            click.echo(f"  {full.nodes[edge.source].title} -> {full.nodes[edge.target].title} [{edge.origin}]")
        return

    try:
        result = query_object_graph(
            full,
            object_id,
            depth=depth,
            direction=direction,  # type: ignore[arg-type]
            origin=set(origin) or None,  # type: ignore[arg-type]
        )
    except NexusError as e:
        _handle_error(ctx, e)

    if as_json:
        output(result.model_dump(mode="json"), as_json=True)
        return

    titles = {node.id: node.title for node in result.nodes}
    click.echo(f"{titles[result.root]}: {len(result.nodes) - 1} related, {len(result.edges)} edges")
    for edge in result.edges:
        label = f"{edge.origin}:{edge.property_key}" if edge.property_key else edge.origin
        click.echo(f"  {titles.get(edge.source, edge.source)} -> {titles.get(edge.target, edge.target)} [{label}]")


# ─────────────────────────────────────────────────────────────────────────────
# Schema and Tag Commands
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def schemas(ctx: click.Context, as_json: bool):
    """List type schemas and their properties."""
    orchestrator = _orchestrator(ctx)
    result = orchestrator.store.get_all_type_schemas()

    if as_json:
        output([schema.model_dump(mode="json") for schema in result], as_json=True)
        return

    for schema in result:
        click.echo(schema.type)
        for definition in schema.properties:
            required = " (required)" if definition.required else ""
            click.echo(f"  {definition.key}: {definition.type}{required}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def tags(ctx: click.Context, as_json: bool):
    """List all tags with usage counts."""
    orchestrator = _orchestrator(ctx)
    result = [{"tag": tag, "count": count} for tag, count in orchestrator.store.tag_stats().items()]

    if as_json:
        output(result, as_json=True)
        return
    if not result:
        click.echo("No tags found.")
        return
    for tag_info in result:
        click.echo(f"  {tag_info['tag']}: {tag_info['count']}")


@cli.command("tag-rename")
@click.argument("old")
@click.argument("new")
@click.pass_context
def tag_rename(ctx: click.Context, old: str, new: str):
    """Rename a tag on every object that carries it."""
    from .errors import NexusError

    orchestrator = _orchestrator(ctx)
    try:
        results = run_async(orchestrator.rename_tag(old, new))
    except NexusError as e:
        _handle_error(ctx, e)

    click.echo(f"Renamed #{old} to #{new} on {len(results)} objects")
    failed = [r for r in results if r.error]
    if failed:
        _warn(ctx, f"{len(failed)} objects saved locally but not pushed")


def main():
    cli()


if __name__ == "__main__":
    main()
