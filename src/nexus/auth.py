"""Authentication collaborator.

Token acquisition happens elsewhere; the sync core only consumes the
capability to read the current bearer token and ask for a fresh one.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

log = logging.getLogger(__name__)


class AuthProvider(Protocol):
    def get_access_token(self) -> str | None: ...

    async def request_new_token(self) -> str | None: ...

    def is_offline_mode(self) -> bool: ...


class TokenFileAuth:
    """Reads the bearer token from a plain-text file.

    The file is re-read on every call, so an external helper can refresh
    it between requests.
    """

    def __init__(self, token_path: Path, offline: bool = False) -> None:
        self.token_path = token_path
        self.offline = offline

    def _read(self) -> str | None:
        try:
            token = self.token_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            log.warning("Cannot read token file %s: %s", self.token_path, e)
            return None
        return token or None

    def get_access_token(self) -> str | None:
        return self._read()

    async def request_new_token(self) -> str | None:
        token = self._read()
        if token is None:
            log.warning("No token available at %s", self.token_path)
        return token

    def is_offline_mode(self) -> bool:
        return self.offline or self._read() is None


class StaticTokenAuth:
    """Fixed token for programmatic use. Refreshing returns the same token."""

    def __init__(self, token: str | None, offline: bool = False) -> None:
        self.token = token
        self.offline = offline

    def get_access_token(self) -> str | None:
        return self.token

    async def request_new_token(self) -> str | None:
        return self.token

    def is_offline_mode(self) -> bool:
        return self.offline or not self.token
