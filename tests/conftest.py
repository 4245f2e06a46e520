"""Shared test fixtures for the nexus test suite.

Design:
- store: isolated SQLite LocalStore in tmp_path, default schemas seeded
- FakeAuth / FakeRemote: in-memory collaborators for orchestrator tests
- runner: CliRunner for CLI tests
- Async tests use pytest-asyncio with @pytest.mark.asyncio
"""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from nexus.config import Settings
from nexus.context import NexusContext
from nexus.errors import RemoteUnavailableError
from nexus.models import (
    ChangePage,
    NexusObject,
    RemoteFile,
    RemoteRef,
)
from nexus.store import LocalStore
from nexus.sync import SyncOrchestrator

FOLDER_MIME = "application/vnd.google-apps.folder"
DOC_MIME = "application/vnd.google-apps.document"


# ─────────────────────────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────────────────────────


class FakeAuth:
    def __init__(self, token: str | None = "token-1", offline: bool = False) -> None:
        self.token = token
        self.offline = offline
        self.refreshes = 0

    def get_access_token(self) -> str | None:
        return self.token

    async def request_new_token(self) -> str | None:
        self.refreshes += 1
        return self.token

    def is_offline_mode(self) -> bool:
        return self.offline


class FakeRemote:
    """In-memory remote provider recording every call."""

    def __init__(self) -> None:
        self.documents: dict[str, NexusObject] = {}
        self.files: dict[str, RemoteFile] = {}
        self.created: list[str] = []
        self.updated: list[str] = []
        self.deleted: list[str] = []
        self.ensure_calls = 0
        self.change_pages: list[ChangePage] = []
        self.fetched_cursors: list[str] = []
        self.read_errors: dict[str, Exception] = {}
        self.fail_create: Exception | None = None
        self.fail_update: Exception | None = None
        self.fail_delete: Exception | None = None
        self.fail_fetch: Exception | None = None
        self.start_cursor = "cursor-start"
        self._next_id = 0

    def _new_file_id(self) -> str:
        self._next_id += 1
        return f"file-{self._next_id}"

    def add_document(self, obj: NexusObject, file_id: str | None = None) -> RemoteFile:
        """Put a document on the remote side as if created elsewhere."""
        file_id = file_id or self._new_file_id()
        file = RemoteFile(
            id=file_id,
            name=obj.title,
            mime_type=DOC_MIME,
            app_properties={"nexus_object_id": obj.id, "nexus_type_id": obj.type},
        )
        self.files[file_id] = file
        self.documents[file_id] = obj.model_copy(update={"remote": RemoteRef(file_id=file_id)})
        return file

    def add_folder(self, name: str, file_id: str | None = None) -> RemoteFile:
        file_id = file_id or self._new_file_id()
        file = RemoteFile(id=file_id, name=name, mime_type=FOLDER_MIME)
        self.files[file_id] = file
        return file

    async def ensure_folder_structure(self, types=()) -> str:
        self.ensure_calls += 1
        return "root"

    async def create_object(self, obj: NexusObject) -> RemoteRef:
        if self.fail_create:
            raise self.fail_create
        file_id = self._new_file_id()
        self.created.append(obj.id)
        self.add_document(obj, file_id)
        return RemoteRef(file_id=file_id, revision="1")

    async def update_object(self, ref: RemoteRef, obj: NexusObject) -> RemoteRef:
        if self.fail_update:
            raise self.fail_update
        self.updated.append(obj.id)
        self.documents[ref.file_id] = obj
        return RemoteRef(file_id=ref.file_id, revision="2")

    async def read_object(self, file_id: str) -> NexusObject | None:
        if file_id in self.read_errors:
            raise self.read_errors[file_id]
        file = self.files.get(file_id)
        if file is None or file.mime_type == FOLDER_MIME:
            return None
        return self.documents[file_id]

    async def delete_object(self, file_id: str) -> None:
        if self.fail_delete:
            raise self.fail_delete
        self.deleted.append(file_id)
        self.files.pop(file_id, None)
        self.documents.pop(file_id, None)

    async def get_file_info(self, file_id: str) -> RemoteFile:
        file = self.files.get(file_id)
        if file is None:
            raise RemoteUnavailableError(f"no such file {file_id}")
        return file

    async def get_start_cursor(self) -> str:
        return self.start_cursor

    async def fetch_changes(self, cursor: str) -> ChangePage:
        if self.fail_fetch:
            raise self.fail_fetch
        self.fetched_cursors.append(cursor)
        if self.change_pages:
            return self.change_pages.pop(0)
        return ChangePage(changes=[], next_cursor=cursor)

    async def list_all_recursive(self, container_id: str | None = None) -> list[RemoteFile]:
        return list(self.files.values())

    @staticmethod
    def document_url(file_id: str) -> str:
        return f"https://docs.google.com/document/d/{file_id}/edit"


# ─────────────────────────────────────────────────────────────────────────────
# Core Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def runner() -> CliRunner:
    """CLI runner with isolated environment; logging kept off stderr."""
    return CliRunner(env={"NEXUS_LOG_LEVEL": "ERROR"})


@pytest.fixture
def store(tmp_path: Path) -> LocalStore:
    """Isolated local store with the default schemas."""
    local = LocalStore(tmp_path / "nexus.sqlite")
    local.seed_default_schemas()
    return local


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        home=tmp_path,
        db_path=tmp_path / "nexus.sqlite",
        token_path=tmp_path / "token",
    )


@pytest.fixture
def fake_auth() -> FakeAuth:
    return FakeAuth()


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def orchestrator(settings, store, fake_auth, fake_remote) -> SyncOrchestrator:
    """Orchestrator over a real store and fake remote/auth."""
    ctx = NexusContext(settings=settings, store=store, auth=fake_auth, remote=fake_remote)
    return SyncOrchestrator(ctx)


@pytest.fixture
def nexus_home(tmp_path: Path, monkeypatch) -> Path:
    """NEXUS_HOME in tmp_path, offline, for CLI tests that build their own context."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("NEXUS_HOME", str(home))
    monkeypatch.delenv("NEXUS_DB_PATH", raising=False)
    monkeypatch.delenv("NEXUS_TOKEN_FILE", raising=False)
    monkeypatch.setenv("NEXUS_OFFLINE", "1")
    return home
