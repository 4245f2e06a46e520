"""Explicit collaborator wiring.

There are no module-level singletons: the CLI and MCP server build one
NexusContext and pass it to the orchestrator. Tests build their own with
fakes.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from .auth import AuthProvider, TokenFileAuth
from .codec import DocumentCodec
from .config import Settings, load_settings
from .remote import DriveClient, RemoteProvider
from .store import LocalStore


@dataclass
class NexusContext:
    settings: Settings
    store: LocalStore
    auth: AuthProvider
    remote: RemoteProvider


def build_context(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> NexusContext:
    """Wire the local store, auth and remote client from settings.

    Default type schemas are seeded on first run.
    """
    settings = settings or load_settings()
    store = LocalStore(settings.db_path)
    store.seed_default_schemas()

    auth = TokenFileAuth(settings.token_path, offline=settings.offline)
    remote = DriveClient(
        auth,
        DocumentCodec(store),
        transport=transport,
        root_folder=settings.root_folder,
        type_folders=settings.type_folders,
    )
    return NexusContext(settings=settings, store=store, auth=auth, remote=remote)
