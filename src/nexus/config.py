"""Configuration management for nexus.

This module contains all configurable constants for the sync engine.
Magic numbers are documented here rather than scattered throughout the codebase.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


class ConfigurationError(Exception):
    """Raised when required configuration is missing or unusable."""

    pass


# =============================================================================
# Locations
# =============================================================================

# Settings file inside the nexus home directory
CONFIG_FILENAME = "config.yaml"

# SQLite file holding the local cache
DB_FILENAME = "nexus.sqlite"

# Plain-text file holding the current bearer token
TOKEN_FILENAME = "token"

# Name of the root container created in the remote store
DEFAULT_ROOT_FOLDER = "Nexus"


def get_nexus_home() -> Path:
    """Get the nexus home directory.

    Discovery order:
    1. NEXUS_HOME environment variable (explicit override)
    2. ~/.nexus/
    """
    root = os.environ.get("NEXUS_HOME")
    if root:
        return Path(root)
    return Path.home() / ".nexus"


def get_db_path() -> Path:
    """Get the path of the local SQLite store."""
    path = os.environ.get("NEXUS_DB_PATH")
    if path:
        return Path(path)
    return get_nexus_home() / DB_FILENAME


def get_token_path() -> Path:
    """Get the path of the bearer token file."""
    path = os.environ.get("NEXUS_TOKEN_FILE")
    if path:
        return Path(path)
    return get_nexus_home() / TOKEN_FILENAME


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Resolved runtime settings."""

    home: Path
    db_path: Path
    token_path: Path
    root_folder: str = DEFAULT_ROOT_FOLDER
    offline: bool = False
    type_folders: dict[str, str] = field(default_factory=dict)
    source_file: Path | None = None
    """Path to the config.yaml that was loaded, if any."""

    @classmethod
    def from_dict(cls, data: dict[str, Any], **paths: Any) -> "Settings":
        """Create Settings from a parsed YAML dict plus resolved paths."""
        type_folders = data.get("type_folders") or {}
        if not isinstance(type_folders, dict):
            type_folders = {}
        return cls(
            root_folder=str(data.get("root_folder") or DEFAULT_ROOT_FOLDER),
            offline=bool(data.get("offline", False)),
            type_folders={str(k): str(v) for k, v in type_folders.items()},
            **paths,
        )


def load_settings_file(home: Path) -> dict[str, Any] | None:
    """Load config.yaml from the nexus home directory.

    Returns:
        Parsed mapping, or None if the file is missing or invalid.
    """
    config_file = home / CONFIG_FILENAME
    if not config_file.exists():
        return None

    try:
        data = yaml.safe_load(config_file.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return None

    # Empty or all-comments file
    if data is None:
        return {}
    if not isinstance(data, dict):
        return None
    return data


def load_settings() -> Settings:
    """Resolve settings from the environment and the optional config file.

    Environment variables win over config.yaml.

    Raises:
        ConfigurationError: If the home directory cannot be created.
    """
    home = get_nexus_home()
    try:
        home.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(
            f"Cannot create nexus home at {home}: {e}. Set NEXUS_HOME to a writable directory."
        ) from e

    data = load_settings_file(home)
    settings = Settings.from_dict(
        data or {},
        home=home,
        db_path=get_db_path(),
        token_path=get_token_path(),
    )
    if data is not None:
        settings.source_file = home / CONFIG_FILENAME

    root_folder = os.environ.get("NEXUS_ROOT_FOLDER")
    if root_folder:
        settings.root_folder = root_folder
    if _env_flag("NEXUS_OFFLINE"):
        settings.offline = True

    return settings


# =============================================================================
# Remote Provider
# =============================================================================

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"

# Link to a document in the provider's editor
DOCUMENT_URL_TEMPLATE = "https://docs.google.com/document/d/{file_id}/edit"

# Direct link to an uploaded asset (requires "anyone with link" permission)
ASSET_URL_TEMPLATE = "https://drive.google.com/uc?export=view&id={file_id}"

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
DOCUMENT_MIME_TYPE = "application/vnd.google-apps.document"

# Application-scoped properties: the only durable place the remote side
# learns the local object id and type. Set on every create and update.
APP_PROPERTY_OBJECT_ID = "nexus_object_id"
APP_PROPERTY_TYPE = "nexus_type_id"

# Boundary for multipart/related upload bodies
MULTIPART_BOUNDARY = "-------314159265358979323846"

# Per-call HTTP timeout in seconds. Timeouts surface as RemoteUnavailable.
HTTP_TIMEOUT = 30.0

# Page size for folder listing and change feed requests
LIST_PAGE_SIZE = 100

# Folder names for built-in types. Unknown types use "<type>s".
TYPE_FOLDER_NAMES: dict[str, str] = {
    "Page": "Pages",
    "Person": "Persons",
    "Meeting": "Meetings",
    "Project": "Projects",
}


def type_folder_name(type_name: str, overrides: dict[str, str] | None = None) -> str:
    """Return the remote subfolder name for an object type."""
    if overrides and type_name in overrides:
        return overrides[type_name]
    return TYPE_FOLDER_NAMES.get(type_name, f"{type_name}s")


# =============================================================================
# Backlink Context
# =============================================================================

# Block text longer than this is windowed around the mention
CONTEXT_MAX_LENGTH = 300

# Characters kept on each side of the mention when windowing
CONTEXT_HALF_WINDOW = 100

# Marker added at a truncated end of a context window
CONTEXT_ELLIPSIS = "..."

# Heading of the generated backlink block
BACKMATTER_HEADING = "Linked References"


# =============================================================================
# Sync
# =============================================================================

# Full resync aborts after this many consecutive per-document failures.
# A run of failures this long usually means auth or permissions are broken,
# not that individual documents are bad.
FULL_SYNC_MAX_CONSECUTIVE_ERRORS = 10

# Default object type when neither app properties nor frontmatter name one
DEFAULT_OBJECT_TYPE = "Page"


# =============================================================================
# Daily Notes
# =============================================================================

# Daily notes are Pages with a deterministic id per calendar day
DAILY_NOTE_ID_TEMPLATE = "daily-{date}"
DAILY_NOTE_TAG = "daily-journal"
DAILY_NOTE_CONTENT = (
    "<h1>Daily Log: {date}</h1>"
    "<p>What's on your mind today? Mention objects to link ideas, or tag the note.</p>"
)
