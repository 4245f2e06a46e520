"""Explicit success/failure values for remote calls.

The orchestrator wraps each remote call with `attempt` and decides per call
whether a failure is fatal to the operation or logged and skipped.
"""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Generic, TypeVar

from .errors import NexusError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    value: T | None = None
    error: NexusError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, re-raising the captured error on failure."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


async def attempt(awaitable: Awaitable[T]) -> Result[T]:
    """Await a remote call and capture a NexusError as a failed Result.

    Anything that is not a NexusError is a bug and propagates.
    """
    try:
        return Result(value=await awaitable)
    except NexusError as e:
        return Result(error=e)
