"""Remote document provider client.

Stateless per call: every request opens its own ``httpx.AsyncClient`` and
re-reads the bearer token from the auth collaborator. The only session
state is the cache of resolved folder ids.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any, Protocol

import httpx

from .auth import AuthProvider
from .codec import DocumentCodec, document_url
from .config import (
    APP_PROPERTY_OBJECT_ID,
    APP_PROPERTY_TYPE,
    ASSET_URL_TEMPLATE,
    DEFAULT_ROOT_FOLDER,
    DOCUMENT_MIME_TYPE,
    DRIVE_API_URL,
    DRIVE_UPLOAD_URL,
    FOLDER_MIME_TYPE,
    HTTP_TIMEOUT,
    LIST_PAGE_SIZE,
    MULTIPART_BOUNDARY,
    TYPE_FOLDER_NAMES,
    type_folder_name,
)
from .errors import (
    AuthExpiredError,
    DocumentDecodeError,
    NexusError,
    NotInitializedError,
    RemoteError,
    RemoteUnavailableError,
)
from .models import Asset, ChangePage, ChangeRecord, NexusObject, RemoteFile, RemoteRef

log = logging.getLogger(__name__)

FILE_FIELDS = "id, name, mimeType, modifiedTime, version, appProperties, trashed"


class RemoteProvider(Protocol):
    """The remote operations the sync orchestrator depends on."""

    async def ensure_folder_structure(self, types: Iterable[str] = ...) -> str: ...

    async def create_object(self, obj: NexusObject) -> RemoteRef: ...

    async def update_object(self, ref: RemoteRef, obj: NexusObject) -> RemoteRef: ...

    async def read_object(self, file_id: str) -> NexusObject | None: ...

    async def delete_object(self, file_id: str) -> None: ...

    async def get_file_info(self, file_id: str) -> RemoteFile: ...

    async def get_start_cursor(self) -> str: ...

    async def fetch_changes(self, cursor: str) -> ChangePage: ...

    async def list_all_recursive(self, container_id: str | None = None) -> list[RemoteFile]: ...


def _quote(value: str) -> str:
    """Escape a value for a Drive query string literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def build_multipart(metadata: dict[str, Any], payload: str | bytes, mime_type: str) -> tuple[bytes, str]:
    """Build a multipart/related body with a JSON part and a media part.

    Returns:
        Tuple of (body bytes, Content-Type header value).
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    delimiter = f"\r\n--{MULTIPART_BOUNDARY}\r\n".encode()
    close = f"\r\n--{MULTIPART_BOUNDARY}--".encode()
    body = (
        delimiter
        + b"Content-Type: application/json; charset=UTF-8\r\n\r\n"
        + json.dumps(metadata).encode("utf-8")
        + delimiter
        + f"Content-Type: {mime_type}\r\n\r\n".encode()
        + payload
        + close
    )
    return body, f"multipart/related; boundary={MULTIPART_BOUNDARY}"


def _revision(data: dict[str, Any]) -> str | None:
    version = data.get("version")
    return str(version) if version is not None else None


class DriveClient:
    """Client for the remote document store."""

    def __init__(
        self,
        auth: AuthProvider,
        codec: DocumentCodec,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        root_folder: str = DEFAULT_ROOT_FOLDER,
        type_folders: dict[str, str] | None = None,
    ) -> None:
        self.auth = auth
        self.codec = codec
        self.root_folder = root_folder
        self.type_folders = dict(type_folders or {})
        self._transport = transport
        self._root_id: str | None = None
        self._folder_ids: dict[str, str] = {}

    @property
    def initialized(self) -> bool:
        return self._root_id is not None

    @staticmethod
    def document_url(file_id: str) -> str:
        return document_url(file_id)

    # ─────────────────────────────────────────────────────────────────────
    # Transport
    # ─────────────────────────────────────────────────────────────────────

    async def _send(self, method: str, url: str, token: str, **kwargs: Any) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}", **kwargs.pop("headers", {})}
        try:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=self._transport) as client:
                return await client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise RemoteUnavailableError(f"{method} {url} timed out") from e
        except httpx.TransportError as e:
            raise RemoteUnavailableError(f"{method} {url} failed: {e}") from e

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, refreshing the token once on a 401.

        Raises:
            AuthExpiredError: No token, or a 401 after one refresh.
            RemoteUnavailableError: Network failure, timeout or 5xx.
            RemoteError: Any other non-2xx response.
        """
        token = self.auth.get_access_token() or await self.auth.request_new_token()
        if not token:
            raise AuthExpiredError("No access token available")

        response = await self._send(method, url, token, **kwargs)
        if response.status_code == 401:
            log.info("Access token rejected; requesting a new one")
            token = await self.auth.request_new_token()
            if not token:
                raise AuthExpiredError("Token refresh returned no token")
            response = await self._send(method, url, token, **kwargs)
            if response.status_code == 401:
                raise AuthExpiredError("Authentication failed after token refresh")

        if response.status_code >= 500:
            raise RemoteUnavailableError(
                f"{method} {url} returned {response.status_code}",
                {"status": response.status_code},
            )
        if response.is_error:
            raise RemoteError(f"{method} {url} returned {response.status_code}", response.status_code)
        return response

    # ─────────────────────────────────────────────────────────────────────
    # Folders
    # ─────────────────────────────────────────────────────────────────────

    async def _find_folder(self, name: str, parent_id: str | None) -> str | None:
        query = f"mimeType='{FOLDER_MIME_TYPE}' and name='{_quote(name)}' and trashed=false"
        if parent_id:
            query += f" and '{parent_id}' in parents"
        response = await self._request(
            "GET",
            f"{DRIVE_API_URL}/files",
            params={"q": query, "fields": "files(id, name)", "spaces": "drive"},
        )
        files = response.json().get("files", [])
        return files[0]["id"] if files else None

    async def _create_folder(self, name: str, parent_id: str | None) -> str:
        body: dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if parent_id:
            body["parents"] = [parent_id]
        response = await self._request("POST", f"{DRIVE_API_URL}/files", params={"fields": "id"}, json=body)
        folder_id = response.json()["id"]
        log.info("Created remote folder %s (%s)", name, folder_id)
        return folder_id

    async def _find_or_create_folder(self, name: str, parent_id: str | None) -> str:
        return await self._find_folder(name, parent_id) or await self._create_folder(name, parent_id)

    async def ensure_folder_structure(self, types: Iterable[str] = tuple(TYPE_FOLDER_NAMES)) -> str:
        """Find or create the root folder and one subfolder per type.

        Idempotent; resolved ids are cached for the session. Only a root
        folder that cannot be created after one retry is fatal.

        Raises:
            NotInitializedError: If the root folder cannot be resolved.
        """
        if self._root_id is None:
            for attempt in (1, 2):
                try:
                    self._root_id = await self._find_or_create_folder(self.root_folder, None)
                    break
                except AuthExpiredError:
                    raise
                except NexusError as e:
                    if attempt == 2:
                        raise NotInitializedError(
                            f"Cannot create root folder '{self.root_folder}': {e.message}"
                        ) from e
                    log.warning("Root folder bootstrap failed, retrying: %s", e.message)

        for type_name in types:
            try:
                await self.get_or_create_type_folder(type_name)
            except AuthExpiredError:
                raise
            except NexusError as e:
                log.warning("Cannot create folder for type %s: %s", type_name, e.message)

        return self._root_id  # type: ignore[return-value]

    async def _require_root(self) -> str:
        """Root folder id, bootstrapping lazily once if needed."""
        if self._root_id is not None:
            return self._root_id
        log.info("Folder structure not initialized; bootstrapping")
        try:
            return await self.ensure_folder_structure(())
        except (NotInitializedError, AuthExpiredError):
            raise
        except NexusError as e:
            raise NotInitializedError(f"Folder bootstrap failed: {e.message}") from e

    async def get_or_create_type_folder(self, type_name: str) -> str:
        name = type_folder_name(type_name, self.type_folders)
        cached = self._folder_ids.get(name)
        if cached:
            return cached
        root_id = await self._require_root()
        folder_id = await self._find_or_create_folder(name, root_id)
        self._folder_ids[name] = folder_id
        return folder_id

    # ─────────────────────────────────────────────────────────────────────
    # Documents
    # ─────────────────────────────────────────────────────────────────────

    @staticmethod
    def _app_properties(obj: NexusObject) -> dict[str, str]:
        return {APP_PROPERTY_OBJECT_ID: obj.id, APP_PROPERTY_TYPE: obj.type}

    async def create_object(self, obj: NexusObject) -> RemoteRef:
        """Upload a new document for obj and return its remote reference."""
        folder_id = await self.get_or_create_type_folder(obj.type)
        html = await self.codec.encode(obj, self.upload_asset)
        metadata = {
            "name": obj.title,
            "mimeType": DOCUMENT_MIME_TYPE,
            "parents": [folder_id],
            "appProperties": self._app_properties(obj),
        }
        body, content_type = build_multipart(metadata, html, "text/html")
        response = await self._request(
            "POST",
            f"{DRIVE_UPLOAD_URL}/files",
            params={"uploadType": "multipart", "fields": FILE_FIELDS},
            content=body,
            headers={"Content-Type": content_type},
        )
        data = response.json()
        log.info("Created remote document %s for %s", data["id"], obj.id)
        return RemoteRef(file_id=data["id"], revision=_revision(data))

    async def update_object(self, ref: RemoteRef, obj: NexusObject) -> RemoteRef:
        """Two-phase update: name and app properties, then the body.

        A failure between the phases leaves the body stale until the next
        successful update.
        """
        await self._require_root()
        html = await self.codec.encode(obj, self.upload_asset)

        await self._request(
            "PATCH",
            f"{DRIVE_API_URL}/files/{ref.file_id}",
            params={"fields": "id"},
            json={"name": obj.title, "appProperties": self._app_properties(obj)},
        )

        body, content_type = build_multipart({"mimeType": DOCUMENT_MIME_TYPE}, html, "text/html")
        response = await self._request(
            "PATCH",
            f"{DRIVE_UPLOAD_URL}/files/{ref.file_id}",
            params={"uploadType": "multipart", "fields": FILE_FIELDS},
            content=body,
            headers={"Content-Type": content_type},
        )
        log.debug("Updated remote document %s", ref.file_id)
        return RemoteRef(file_id=ref.file_id, revision=_revision(response.json()) or ref.revision)

    async def get_file_info(self, file_id: str) -> RemoteFile:
        response = await self._request("GET", f"{DRIVE_API_URL}/files/{file_id}", params={"fields": FILE_FIELDS})
        return RemoteFile.from_api(response.json())

    async def read_object(self, file_id: str) -> NexusObject | None:
        """Fetch and decode a document. Non-document kinds yield None.

        Raises:
            DocumentDecodeError: If the exported body is not valid text.
        """
        file = await self.get_file_info(file_id)
        if not file.is_document:
            log.debug("Skipping %s (%s)", file_id, file.mime_type)
            return None

        response = await self._request(
            "GET",
            f"{DRIVE_API_URL}/files/{file_id}/export",
            params={"mimeType": "text/html"},
        )
        try:
            html = response.content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DocumentDecodeError(f"Cannot decode body of {file_id}: {e}", {"file_id": file_id}) from e
        return self.codec.decode(html, file)

    async def delete_object(self, file_id: str) -> None:
        await self._request("DELETE", f"{DRIVE_API_URL}/files/{file_id}")
        log.info("Deleted remote document %s", file_id)

    # ─────────────────────────────────────────────────────────────────────
    # Change feed and listing
    # ─────────────────────────────────────────────────────────────────────

    async def get_start_cursor(self) -> str:
        response = await self._request("GET", f"{DRIVE_API_URL}/changes/startPageToken")
        return str(response.json()["startPageToken"])

    async def fetch_changes(self, cursor: str) -> ChangePage:
        """All changes since cursor, following pagination to the end.

        Removal records carry only a file id; trashed files are reported as
        removals too. Folder records are returned and left to the caller.
        """
        changes: list[ChangeRecord] = []
        page_token = cursor
        while True:
            response = await self._request(
                "GET",
                f"{DRIVE_API_URL}/changes",
                params={
                    "pageToken": page_token,
                    "pageSize": LIST_PAGE_SIZE,
                    "includeRemoved": "true",
                    "fields": f"nextPageToken, newStartPageToken, changes(fileId, removed, file({FILE_FIELDS}))",
                },
            )
            data = response.json()
            for item in data.get("changes", []):
                raw_file = item.get("file")
                removed = bool(item.get("removed")) or bool(raw_file and raw_file.get("trashed"))
                changes.append(
                    ChangeRecord(
                        file_id=item["fileId"],
                        removed=removed,
                        file=RemoteFile.from_api(raw_file) if raw_file and not removed else None,
                    )
                )

            next_page = data.get("nextPageToken")
            if next_page:
                page_token = next_page
                continue
            return ChangePage(changes=changes, next_cursor=str(data.get("newStartPageToken") or page_token))

    async def list_all_recursive(self, container_id: str | None = None) -> list[RemoteFile]:
        """Depth-first listing of every file below a folder, folders included."""
        root_id = container_id or await self._require_root()
        results: list[RemoteFile] = []

        async def walk(folder_id: str) -> None:
            page_token: str | None = None
            while True:
                params: dict[str, Any] = {
                    "q": f"'{folder_id}' in parents and trashed=false",
                    "fields": f"nextPageToken, files({FILE_FIELDS})",
                    "pageSize": LIST_PAGE_SIZE,
                }
                if page_token:
                    params["pageToken"] = page_token
                response = await self._request("GET", f"{DRIVE_API_URL}/files", params=params)
                data = response.json()
                for item in data.get("files", []):
                    file = RemoteFile.from_api(item)
                    results.append(file)
                    if file.is_folder:
                        await walk(file.id)
                page_token = data.get("nextPageToken")
                if not page_token:
                    break

        await walk(root_id)
        return results

    # ─────────────────────────────────────────────────────────────────────
    # Assets
    # ─────────────────────────────────────────────────────────────────────

    async def upload_asset(self, asset: Asset) -> tuple[str, str]:
        """Upload a binary and make it readable by link.

        Returns:
            Tuple of (remote file id, permanent URL).
        """
        parent_id = await self._require_root()
        metadata = {"name": asset.filename, "mimeType": asset.mime_type, "parents": [parent_id]}
        body, content_type = build_multipart(metadata, asset.data, asset.mime_type)
        response = await self._request(
            "POST",
            f"{DRIVE_UPLOAD_URL}/files",
            params={"uploadType": "multipart", "fields": "id"},
            content=body,
            headers={"Content-Type": content_type},
        )
        file_id = response.json()["id"]
        await self._request(
            "POST",
            f"{DRIVE_API_URL}/files/{file_id}/permissions",
            json={"role": "reader", "type": "anyone"},
        )
        log.info("Uploaded asset %s as %s", asset.id, file_id)
        return file_id, ASSET_URL_TEMPLATE.format(file_id=file_id)
