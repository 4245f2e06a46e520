"""Sync orchestrator: the stateful loop between local store and remote.

State machine::

    uninitialized -> bootstrapping -> ready
                          ^             |
                          +-- wipe -----+

Writes always land in the local store first. Remote pushes follow, and a
remote failure never undoes the local write. No polling loop runs: sync is
triggered explicitly (start, sync, resync).
"""

from __future__ import annotations

import logging
from datetime import date
from enum import Enum
from typing import Any

from pydantic import ValidationError

from .config import (
    DAILY_NOTE_CONTENT,
    DAILY_NOTE_ID_TEMPLATE,
    DAILY_NOTE_TAG,
    DEFAULT_OBJECT_TYPE,
    FULL_SYNC_MAX_CONSECUTIVE_ERRORS,
)
from .context import NexusContext
from .errors import (
    NexusError,
    NotInitializedError,
    ObjectNotFoundError,
    SyncAbortedError,
    ValidationFailedError,
)
from .models import (
    DeleteResult,
    FullSyncResult,
    NexusObject,
    SaveResult,
    SyncReport,
    TagConfig,
    make_property,
    new_object_from_schema,
    utcnow,
)
from .result import attempt

log = logging.getLogger(__name__)


class SyncState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPING = "bootstrapping"
    READY = "ready"


class SyncOrchestrator:
    """Fronts every write and every sync pass."""

    def __init__(self, ctx: NexusContext) -> None:
        self.ctx = ctx
        self.state = SyncState.UNINITIALIZED

    @property
    def store(self):
        return self.ctx.store

    @property
    def remote(self):
        return self.ctx.remote

    @property
    def offline(self) -> bool:
        return self.ctx.auth.is_offline_mode()

    def _require_online(self) -> None:
        if self.offline:
            raise NotInitializedError("Remote sync is unavailable in offline mode")

    def _known_types(self) -> list[str]:
        return [schema.type for schema in self.store.get_all_type_schemas()]

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    async def start(self) -> SyncReport | None:
        """Bootstrap folders, obtain a cursor and run one incremental pass.

        Stays uninitialized in offline mode. A first run against an empty
        cache imports everything with a full resync.
        """
        if self.offline:
            log.info("Offline mode; remote sync disabled")
            return None

        self.state = SyncState.BOOTSTRAPPING
        try:
            await self.remote.ensure_folder_structure(self._known_types())
            if self.store.get_cursor() is None:
                if self.store.count_objects() == 0:
                    log.info("Empty cache; importing all remote documents")
                    await self.full_resync()
                else:
                    self.store.set_cursor(await self.remote.get_start_cursor())
            report = await self.incremental_sync()
        except NexusError:
            self.state = SyncState.UNINITIALIZED
            raise

        self.state = SyncState.READY
        return report

    async def wipe_and_resync(self) -> FullSyncResult:
        """Clear the local cache and re-import everything from the remote."""
        self._require_online()
        self.state = SyncState.BOOTSTRAPPING
        try:
            removed = self.store.clear_objects()
            log.info("Cleared %d cached objects", removed)
            await self.remote.ensure_folder_structure(self._known_types())
            result = await self.full_resync()
        except NexusError:
            self.state = SyncState.UNINITIALIZED
            raise

        self.state = SyncState.READY
        return result

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "offline": self.offline,
            "cursor": self.store.get_cursor(),
            "objects": self.store.count_objects(),
            "db_path": str(self.store.path),
        }

    # ─────────────────────────────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────────────────────────────

    async def save_object(self, obj: NexusObject) -> SaveResult:
        """Write locally, then push: create without a remote ref, else update.

        Raises:
            ValidationFailedError: If the local write is rejected. Remote
                failures are reported on the result, never raised.
        """
        existing = self.store.get_object_by_id(obj.id)
        update: dict[str, Any] = {"last_modified": utcnow()}
        if obj.remote is None and existing is not None and existing.remote is not None:
            update["remote"] = existing.remote
        obj = obj.model_copy(update=update)
        self.store.upsert(obj)

        if self.offline:
            log.debug("Offline mode; %s saved locally only", obj.id)
            return SaveResult(obj=obj)

        created = obj.remote is None
        if created:
            result = await attempt(self.remote.create_object(obj))
        else:
            result = await attempt(self.remote.update_object(obj.remote, obj))

        if not result.ok:
            error = result.error
            log.warning("Saved %s locally; remote push failed: %s", obj.id, error.message)
            return SaveResult(obj=obj, created=created, error=error.message, error_code=error.code.value)

        obj = obj.model_copy(update={"remote": result.value})
        self.store.upsert(obj)
        return SaveResult(obj=obj, pushed=True, created=created)

    async def new_object(
        self,
        type_name: str,
        title: str,
        *,
        content: str = "",
        tags: list[str] | None = None,
        properties: dict[str, Any] | None = None,
    ) -> SaveResult:
        """Create an object from its type schema and save it.

        Raises:
            ValidationFailedError: If a property value is invalid.
        """
        schema = self.store.get_type_schema(type_name)
        obj = new_object_from_schema(type_name, title, schema, content=content, tags=list(tags or []))
        for key, value in (properties or {}).items():
            obj = with_property(obj, key, value)
        return await self.save_object(obj)

    async def update_object(
        self,
        object_id: str,
        *,
        title: str | None = None,
        content: str | None = None,
        tags: list[str] | None = None,
        properties: dict[str, Any] | None = None,
    ) -> SaveResult:
        """Change selected fields of an existing object and save it.

        Raises:
            ObjectNotFoundError: If no local object has this id.
            ValidationFailedError: If a property value is invalid.
        """
        obj = self.store.get_object_by_id(object_id)
        if obj is None:
            raise ObjectNotFoundError(f"Object not found: {object_id}", {"id": object_id})
        update: dict[str, Any] = {}
        if title is not None:
            update["title"] = title
        if content is not None:
            update["content"] = content
        if tags is not None:
            update["tags"] = list(tags)
        obj = obj.model_copy(update=update)
        for key, value in (properties or {}).items():
            obj = with_property(obj, key, value)
        return await self.save_object(obj)

    async def get_or_create_daily_note(self, day: date | None = None) -> SaveResult:
        """Open the daily note for day (UTC today by default), creating it once.

        An existing note is returned untouched with created=False.
        """
        day = day or utcnow().date()
        stamp = day.isoformat()
        note_id = DAILY_NOTE_ID_TEMPLATE.format(date=stamp)

        existing = self.store.get_object_by_id(note_id)
        if existing is not None:
            return SaveResult(obj=existing, pushed=False, created=False)

        note = NexusObject(
            id=note_id,
            title=f"Daily Note: {stamp}",
            type=DEFAULT_OBJECT_TYPE,
            content=DAILY_NOTE_CONTENT.format(date=stamp),
            tags=[DAILY_NOTE_TAG],
            metadata=[make_property("date", "Date", "date", stamp)],
        )
        log.info("Creating daily note %s", note_id)
        result = await self.save_object(note)
        return result.model_copy(update={"created": True})

    async def delete_object(self, object_id: str) -> DeleteResult:
        """Delete locally, then best-effort remotely.

        Remote failures become warnings; the local delete always stands.

        Raises:
            ObjectNotFoundError: If no local object has this id.
        """
        obj = self.store.get_object_by_id(object_id)
        if obj is None:
            raise ObjectNotFoundError(f"Object not found: {object_id}", {"id": object_id})

        self.store.delete(object_id)
        result = DeleteResult(deleted=object_id, title=obj.title)
        if obj.remote is None or self.offline:
            return result

        file_id = obj.remote.file_id
        info = await attempt(self.remote.get_file_info(file_id))
        if not info.ok:
            message = f"Remote lookup failed for {file_id}: {info.error.message}"
            log.warning(message)
            result.warnings.append(message)
            return result
        if info.value.is_folder:
            result.warnings.append(f"Remote file {file_id} is a folder; not deleted")
            return result

        deleted = await attempt(self.remote.delete_object(file_id))
        if deleted.ok:
            result.remote_deleted = True
        else:
            message = f"Remote delete failed for {file_id}: {deleted.error.message}"
            log.warning(message)
            result.warnings.append(message)
        return result

    # ─────────────────────────────────────────────────────────────────────
    # Sync passes
    # ─────────────────────────────────────────────────────────────────────

    async def full_resync(self) -> FullSyncResult:
        """Import every remote document below the root folder.

        Already-imported objects stay in place if the run fails, so the
        operation can simply be retried.

        Raises:
            SyncAbortedError: After FULL_SYNC_MAX_CONSECUTIVE_ERRORS failures in a row.
        """
        self._require_online()
        files = await self.remote.list_all_recursive()
        result = FullSyncResult()
        consecutive = 0

        for file in files:
            if file.is_folder:
                result.skipped += 1
                continue

            read = await attempt(self.remote.read_object(file.id))
            if not read.ok:
                consecutive += 1
                result.errors += 1
                result.failures.append(f"{file.id}: {read.error.message}")
                log.warning("Failed to import %s: %s", file.id, read.error.message)
                if consecutive >= FULL_SYNC_MAX_CONSECUTIVE_ERRORS:
                    raise SyncAbortedError(
                        f"Full resync aborted after {consecutive} consecutive errors",
                        {"imported": result.imported, "errors": result.errors},
                    ) from read.error
                continue

            consecutive = 0
            if read.value is None:
                result.skipped += 1
                continue
            try:
                self.store.upsert(read.value)
            except ValidationFailedError as e:
                result.errors += 1
                result.failures.append(f"{file.id}: {e.message}")
                log.warning("Rejected import of %s: %s", file.id, e.message)
                continue
            result.imported += 1

        cursor = await self.remote.get_start_cursor()
        self.store.set_cursor(cursor)
        result.cursor = cursor
        log.info("Full resync imported %d objects (%d errors)", result.imported, result.errors)
        return result

    async def incremental_sync(self) -> SyncReport:
        """Apply the change feed since the stored cursor.

        The cursor always advances to what the feed returns, even when some
        records fail. If the feed itself cannot be fetched the cursor is
        left unchanged.
        """
        self._require_online()
        cursor = self.store.get_cursor()
        if cursor is None:
            cursor = await self.remote.get_start_cursor()
            self.store.set_cursor(cursor)
            log.info("Obtained initial change cursor")
            return SyncReport(cursor=cursor)

        page = await self.remote.fetch_changes(cursor)
        report = SyncReport(cursor=page.next_cursor)

        for change in page.changes:
            if change.removed:
                local = self.store.get_object_by_remote_id(change.file_id)
                if local is None:
                    report.skipped += 1
                    continue
                self.store.delete(local.id)
                report.removed += 1
                continue

            if change.file is None or change.file.is_folder:
                log.debug("Skipping change for %s", change.file_id)
                report.skipped += 1
                continue

            read = await attempt(self.remote.read_object(change.file_id))
            if not read.ok:
                report.failed += 1
                report.errors.append(f"{change.file_id}: {read.error.message}")
                log.warning("Failed to apply change for %s: %s", change.file_id, read.error.message)
                continue
            if read.value is None:
                report.skipped += 1
                continue

            try:
                self.store.upsert(read.value)
            except ValidationFailedError as e:
                report.failed += 1
                report.errors.append(f"{change.file_id}: {e.message}")
                log.warning("Rejected change for %s: %s", change.file_id, e.message)
                continue
            report.applied += 1

        self.store.set_cursor(page.next_cursor)
        log.info(
            "Incremental sync: %d applied, %d removed, %d failed",
            report.applied,
            report.removed,
            report.failed,
        )
        return report

    # ─────────────────────────────────────────────────────────────────────
    # Tag maintenance
    # ─────────────────────────────────────────────────────────────────────

    async def _retag(self, mapping: dict[str, str | None]) -> list[SaveResult]:
        """Replace (or drop, when mapped to None) tags on every affected object."""
        results: list[SaveResult] = []
        for obj in self.store.get_all_objects():
            if not any(tag in mapping for tag in obj.tags):
                continue
            tags: list[str] = []
            for tag in obj.tags:
                replacement = mapping.get(tag, tag)
                if replacement and replacement not in tags:
                    tags.append(replacement)
            results.append(await self.save_object(obj.model_copy(update={"tags": tags})))
        return results

    async def rename_tag(self, old: str, new: str) -> list[SaveResult]:
        results = await self._retag({old: new})
        config = self.store.get_tag_config(old)
        if config is not None:
            self.store.delete_tag_config(old)
            if self.store.get_tag_config(new) is None:
                self.store.save_tag_config(config.model_copy(update={"name": new, "last_modified": utcnow()}))
        log.info("Renamed tag %s to %s on %d objects", old, new, len(results))
        return results

    async def merge_tags(self, sources: list[str], target: str) -> list[SaveResult]:
        results = await self._retag({source: target for source in sources if source != target})
        for source in sources:
            if source != target:
                self.store.delete_tag_config(source)
        if self.store.get_tag_config(target) is None:
            self.store.save_tag_config(TagConfig(name=target))
        return results

    async def delete_tag(self, tag: str) -> list[SaveResult]:
        results = await self._retag({tag: None})
        self.store.delete_tag_config(tag)
        return results


def with_property(obj: NexusObject, key: str, value: Any) -> NexusObject:
    """Copy of obj with one property's value replaced or added as text."""
    metadata = list(obj.metadata)
    for index, prop in enumerate(metadata):
        if prop.key != key:
            continue
        extra = {name: getattr(prop, name) for name in ("allowed_types", "options") if hasattr(prop, name)}
        try:
            metadata[index] = make_property(prop.key, prop.label, prop.type, value, **extra)
        except (ValidationError, ValueError) as e:
            raise ValidationFailedError(f"Invalid value for {key}: {e}", {"key": key}) from e
        break
    else:
        metadata.append(make_property(key, key, "text", str(value)))
    return obj.model_copy(update={"metadata": metadata})
