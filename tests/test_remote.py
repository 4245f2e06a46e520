"""Tests for the remote document client against a mocked HTTP transport."""

import json
import re
from datetime import UTC, datetime

import httpx
import pytest

from nexus.auth import StaticTokenAuth
from nexus.codec import DocumentCodec, render_document
from nexus.config import DOCUMENT_MIME_TYPE as DOC_MIME
from nexus.config import FOLDER_MIME_TYPE as FOLDER_MIME
from nexus.errors import (
    AuthExpiredError,
    DocumentDecodeError,
    NotInitializedError,
    RemoteError,
    RemoteUnavailableError,
)
from nexus.frontmatter import unresolved
from nexus.models import Asset, NexusObject, RemoteRef
from nexus.remote import DriveClient, build_multipart

BOUNDARY = "-------314159265358979323846"


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def respond(status: int = 200, data=None, content: bytes | None = None):
    """Route handler returning a fresh response on every call."""

    def handler(request: httpx.Request) -> httpx.Response:
        if content is not None:
            return httpx.Response(status, content=content)
        return httpx.Response(status, json=data if data is not None else {})

    return handler


def sequence(*handlers):
    """Route handler answering with each handler in turn, repeating the last."""
    calls = list(handlers)

    def handler(request: httpx.Request) -> httpx.Response:
        current = calls.pop(0) if len(calls) > 1 else calls[0]
        return current(request)

    return handler


class FakeDrive:
    """Minimal provider: folder search/create plus explicit routes."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.folders: dict[str, str] = {}
        self.routes: dict[tuple[str, str], object] = {}
        self.fail_folders: int | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method, path = request.method, request.url.path
        query = request.url.params.get("q", "")

        if method == "GET" and path == "/drive/v3/files" and FOLDER_MIME in query:
            if self.fail_folders:
                return httpx.Response(self.fail_folders, json={})
            name = re.search(r"name='([^']*)'", query).group(1)
            files = [{"id": self.folders[name], "name": name}] if name in self.folders else []
            return httpx.Response(200, json={"files": files})

        if method == "POST" and path == "/drive/v3/files":
            body = json.loads(request.content)
            folder_id = f"folder-{body['name']}"
            self.folders[body["name"]] = folder_id
            return httpx.Response(200, json={"id": folder_id})

        route = self.routes.get((method, path))
        if route is None:
            return httpx.Response(404, json={"error": {"message": "not found"}})
        return route(request)

    def paths(self, method: str | None = None) -> list[str]:
        return [r.url.path for r in self.requests if method is None or r.method == method]


@pytest.fixture
def drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def client(store, fake_auth, drive) -> DriveClient:
    return DriveClient(fake_auth, DocumentCodec(store), transport=httpx.MockTransport(drive))


def _multipart_parts(request: httpx.Request) -> tuple[dict, str]:
    body = request.content.decode("utf-8")
    parts = body.split(f"--{BOUNDARY}")
    metadata = json.loads(parts[1].split("\r\n\r\n", 1)[1].strip())
    payload = parts[2].split("\r\n\r\n", 1)[1]
    return metadata, payload


# ─────────────────────────────────────────────────────────────────────────────
# Transport and auth
# ─────────────────────────────────────────────────────────────────────────────


class TestRequests:
    @pytest.mark.asyncio
    async def test_bearer_token_sent(self, client, drive):
        drive.routes[("GET", "/drive/v3/changes/startPageToken")] = respond(data={"startPageToken": "42"})

        assert await client.get_start_cursor() == "42"
        assert drive.requests[0].headers["Authorization"] == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_401_refreshes_once_and_retries(self, client, drive, fake_auth):
        drive.routes[("GET", "/drive/v3/changes/startPageToken")] = sequence(
            respond(401), respond(data={"startPageToken": "42"})
        )

        assert await client.get_start_cursor() == "42"
        assert fake_auth.refreshes == 1
        assert len(drive.requests) == 2

    @pytest.mark.asyncio
    async def test_second_401_is_auth_expired(self, client, drive, fake_auth):
        drive.routes[("GET", "/drive/v3/changes/startPageToken")] = respond(401)

        with pytest.raises(AuthExpiredError):
            await client.get_start_cursor()
        assert fake_auth.refreshes == 1

    @pytest.mark.asyncio
    async def test_no_token_is_auth_expired(self, store, drive):
        client = DriveClient(StaticTokenAuth(None), DocumentCodec(store), transport=httpx.MockTransport(drive))
        with pytest.raises(AuthExpiredError):
            await client.get_start_cursor()
        assert drive.requests == []

    @pytest.mark.asyncio
    async def test_5xx_is_unavailable(self, client, drive):
        drive.routes[("GET", "/drive/v3/changes/startPageToken")] = respond(503)
        with pytest.raises(RemoteUnavailableError):
            await client.get_start_cursor()

    @pytest.mark.asyncio
    async def test_transport_failure_is_unavailable(self, store, fake_auth):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = DriveClient(fake_auth, DocumentCodec(store), transport=httpx.MockTransport(handler))
        with pytest.raises(RemoteUnavailableError):
            await client.get_start_cursor()

    @pytest.mark.asyncio
    async def test_other_errors_carry_status(self, client, drive):
        with pytest.raises(RemoteError) as exc_info:
            await client.get_file_info("missing")
        assert exc_info.value.status_code == 404


# ─────────────────────────────────────────────────────────────────────────────
# Folder bootstrap
# ─────────────────────────────────────────────────────────────────────────────


class TestFolders:
    @pytest.mark.asyncio
    async def test_creates_root_and_type_folders_once(self, client, drive):
        root = await client.ensure_folder_structure(["Person", "Meeting"])
        assert root == "folder-Nexus"
        assert set(drive.folders) == {"Nexus", "Persons", "Meetings"}
        assert client.initialized

        count = len(drive.requests)
        await client.ensure_folder_structure(["Person", "Meeting"])
        assert len(drive.requests) == count

    @pytest.mark.asyncio
    async def test_existing_folders_reused(self, client, drive):
        drive.folders["Nexus"] = "existing-root"
        assert await client.ensure_folder_structure(()) == "existing-root"
        assert drive.paths("POST") == []

    @pytest.mark.asyncio
    async def test_root_failure_after_retry(self, client, drive):
        drive.fail_folders = 500
        with pytest.raises(NotInitializedError):
            await client.ensure_folder_structure(["Person"])
        # One attempt plus one retry
        assert len(drive.requests) == 2
        assert not client.initialized

    @pytest.mark.asyncio
    async def test_auth_failure_not_retried(self, client, drive):
        drive.fail_folders = 401
        with pytest.raises(AuthExpiredError):
            await client.ensure_folder_structure(())

    @pytest.mark.asyncio
    async def test_configured_folder_names(self, store, fake_auth, drive):
        client = DriveClient(
            fake_auth,
            DocumentCodec(store),
            transport=httpx.MockTransport(drive),
            root_folder="Team",
            type_folders={"Person": "People"},
        )
        await client.ensure_folder_structure(["Person"])
        assert set(drive.folders) == {"Team", "People"}


# ─────────────────────────────────────────────────────────────────────────────
# Documents
# ─────────────────────────────────────────────────────────────────────────────


class TestDocuments:
    @pytest.mark.asyncio
    async def test_create_bootstraps_lazily_and_uploads(self, client, drive):
        drive.routes[("POST", "/upload/drive/v3/files")] = respond(data={"id": "doc-1", "version": "1"})
        obj = NexusObject(id="m1", title="Weekly", type="Meeting", content="<p>Agenda</p>")

        ref = await client.create_object(obj)

        assert ref == RemoteRef(file_id="doc-1", revision="1")
        upload = drive.requests[-1]
        assert upload.url.params["uploadType"] == "multipart"
        assert upload.headers["Content-Type"] == f"multipart/related; boundary={BOUNDARY}"

        metadata, payload = _multipart_parts(upload)
        assert metadata["name"] == "Weekly"
        assert metadata["mimeType"] == DOC_MIME
        assert metadata["parents"] == ["folder-Meetings"]
        assert metadata["appProperties"] == {"nexus_object_id": "m1", "nexus_type_id": "Meeting"}
        assert "<p>Agenda</p>" in payload

    @pytest.mark.asyncio
    async def test_create_without_root_is_not_initialized(self, client, drive):
        drive.fail_folders = 500
        with pytest.raises(NotInitializedError):
            await client.create_object(NexusObject(title="x"))
        assert "/upload/drive/v3/files" not in drive.paths()

    @pytest.mark.asyncio
    async def test_update_is_two_phase(self, client, drive):
        drive.routes[("PATCH", "/drive/v3/files/f1")] = respond(data={"id": "f1"})
        drive.routes[("PATCH", "/upload/drive/v3/files/f1")] = respond(data={"id": "f1", "version": "5"})
        obj = NexusObject(id="p1", title="Renamed", type="Person")

        ref = await client.update_object(RemoteRef(file_id="f1", revision="4"), obj)

        assert ref.revision == "5"
        patches = [r for r in drive.requests if r.method == "PATCH"]
        assert [r.url.path for r in patches] == ["/drive/v3/files/f1", "/upload/drive/v3/files/f1"]
        assert json.loads(patches[0].content)["appProperties"]["nexus_object_id"] == "p1"

    @pytest.mark.asyncio
    async def test_read_document(self, client, drive):
        obj = NexusObject(
            id="p1",
            title="Ada",
            type="Person",
            content="<p>Bio</p>",
            last_modified=datetime(2024, 1, 1, tzinfo=UTC),
        )
        drive.routes[("GET", "/drive/v3/files/f1")] = respond(
            data={
                "id": "f1",
                "name": "Ada",
                "mimeType": DOC_MIME,
                "version": "9",
                "appProperties": {"nexus_object_id": "p1", "nexus_type_id": "Person"},
            }
        )
        drive.routes[("GET", "/drive/v3/files/f1/export")] = respond(
            content=render_document(obj, unresolved).encode("utf-8")
        )

        decoded = await client.read_object("f1")

        assert decoded.id == "p1"
        assert decoded.type == "Person"
        assert decoded.content == "<p>Bio</p>"
        assert decoded.remote == RemoteRef(file_id="f1", revision="9")

    @pytest.mark.asyncio
    async def test_read_folder_is_none(self, client, drive):
        drive.routes[("GET", "/drive/v3/files/f1")] = respond(
            data={"id": "f1", "name": "Persons", "mimeType": FOLDER_MIME}
        )
        assert await client.read_object("f1") is None
        assert "/drive/v3/files/f1/export" not in drive.paths()

    @pytest.mark.asyncio
    async def test_undecodable_body(self, client, drive):
        drive.routes[("GET", "/drive/v3/files/f1")] = respond(data={"id": "f1", "mimeType": DOC_MIME})
        drive.routes[("GET", "/drive/v3/files/f1/export")] = respond(content=b"\xff\xfe\xfa")
        with pytest.raises(DocumentDecodeError):
            await client.read_object("f1")

    @pytest.mark.asyncio
    async def test_delete(self, client, drive):
        drive.routes[("DELETE", "/drive/v3/files/f1")] = respond(204, content=b"")
        await client.delete_object("f1")
        assert drive.paths("DELETE") == ["/drive/v3/files/f1"]

    @pytest.mark.asyncio
    async def test_upload_asset_shares_by_link(self, client, drive):
        drive.folders["Nexus"] = "root"
        drive.routes[("POST", "/upload/drive/v3/files")] = respond(data={"id": "img-1"})
        drive.routes[("POST", "/drive/v3/files/img-1/permissions")] = respond(data={"id": "perm"})

        file_id, url = await client.upload_asset(Asset(id="a1", filename="pic.png", mime_type="image/png", data=b"png"))

        assert file_id == "img-1"
        assert url.endswith("id=img-1")
        permission = drive.requests[-1]
        assert json.loads(permission.content) == {"role": "reader", "type": "anyone"}


# ─────────────────────────────────────────────────────────────────────────────
# Change feed and listing
# ─────────────────────────────────────────────────────────────────────────────


class TestChanges:
    @pytest.mark.asyncio
    async def test_follows_pages_to_new_start_token(self, client, drive):
        pages = {
            "c1": {
                "nextPageToken": "c2",
                "changes": [
                    {"fileId": "f1", "removed": False, "file": {"id": "f1", "mimeType": DOC_MIME}},
                ],
            },
            "c2": {
                "newStartPageToken": "c3",
                "changes": [
                    {"fileId": "f2", "removed": True},
                    {"fileId": "f3", "file": {"id": "f3", "mimeType": DOC_MIME, "trashed": True}},
                ],
            },
        }
        drive.routes[("GET", "/drive/v3/changes")] = lambda request: httpx.Response(
            200, json=pages[request.url.params["pageToken"]]
        )

        page = await client.fetch_changes("c1")

        assert page.next_cursor == "c3"
        assert [(c.file_id, c.removed) for c in page.changes] == [("f1", False), ("f2", True), ("f3", True)]
        assert page.changes[0].file.is_document
        assert page.changes[2].file is None

    @pytest.mark.asyncio
    async def test_feed_failure_propagates(self, client, drive):
        drive.routes[("GET", "/drive/v3/changes")] = respond(500)
        with pytest.raises(RemoteUnavailableError):
            await client.fetch_changes("c1")

    @pytest.mark.asyncio
    async def test_list_all_recursive_depth_first(self, client, drive):
        listings = {
            ("root", None): {"files": [{"id": "fp", "mimeType": FOLDER_MIME}, {"id": "d1", "mimeType": DOC_MIME}]},
            ("fp", None): {"files": [{"id": "d2", "mimeType": DOC_MIME}], "nextPageToken": "t2"},
            ("fp", "t2"): {"files": [{"id": "d3", "mimeType": DOC_MIME}]},
        }

        def handler(request):
            parent = re.match(r"'([^']+)' in parents", request.url.params["q"]).group(1)
            return httpx.Response(200, json=listings[(parent, request.url.params.get("pageToken"))])

        drive.routes[("GET", "/drive/v3/files")] = handler

        files = await client.list_all_recursive("root")
        assert [f.id for f in files] == ["fp", "d2", "d3", "d1"]


def test_build_multipart_layout():
    body, content_type = build_multipart({"name": "x"}, "<p>hi</p>", "text/html")

    assert content_type == f"multipart/related; boundary={BOUNDARY}"
    text = body.decode("utf-8")
    assert text.startswith(f"\r\n--{BOUNDARY}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n")
    assert "Content-Type: text/html\r\n\r\n<p>hi</p>" in text
    assert text.endswith(f"\r\n--{BOUNDARY}--")
