"""Coordination-service client interface.

The lock engine only needs a handful of primitives from a ZooKeeper-style
service: node creation, children listing, existence checks with a one-shot
watch, deletion, and session lifecycle events. This module describes that
surface so the engine can run against kazoo in production and against the
in-memory service in tests.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class SessionEvent(str, Enum):
    """Lifecycle events reported by a coordination client."""

    CONNECTED = "connected"
    """Session established and writable."""

    DISCONNECTED = "disconnected"
    """Connection to the cluster dropped; the session may still recover."""

    CONNECTED_READ_ONLY = "connectedReadOnly"
    """Connected to a read-only server; unusable for write-based locking."""

    EXPIRED = "expired"
    """Session expired; its ephemeral nodes are gone."""

    AUTH_FAILED = "authenticationFailed"
    """Cluster rejected the session credentials."""


@dataclass(frozen=True)
class NodeStat:
    """The parts of a node's stat the tree tools care about."""

    ephemeral_owner: int
    num_children: int

    @property
    def ephemeral(self) -> bool:
        return self.ephemeral_owner != 0


SessionListener = Callable[[SessionEvent], None]
WatchCallback = Callable[[], None]


class CoordinationClient(Protocol):
    """Async client for one session against a coordination-service cluster.

    Listeners and watch callbacks are always invoked on the event loop that
    owns the client.
    """

    def add_listener(self, listener: SessionListener) -> None:
        """Subscribe to session lifecycle events."""

    def connect(self) -> None:
        """Start connecting. Completion is reported through listeners."""

    def close(self) -> None:
        """Close the session. No further events are delivered."""

    async def mkdir_all(self, path: str) -> None:
        """Create every missing node along path (idempotent)."""

    async def create(
        self,
        path: str,
        payload: bytes = b"",
        *,
        ephemeral: bool = False,
        sequential: bool = False,
    ) -> str:
        """Create a node and return its actual path (with sequence suffix)."""

    async def get_children(self, path: str) -> list[str]:
        """List the names of path's children."""

    async def get_children_with_stat(self, path: str) -> tuple[list[str], NodeStat]:
        """List path's children together with path's own stat."""

    async def exists(self, path: str, watch: WatchCallback | None = None) -> bool:
        """Return whether path exists, optionally leaving a one-shot watch on it.

        The watch fires at most once, on the next change to path.
        """

    async def remove(self, path: str) -> None:
        """Delete path."""


ClientFactory = Callable[[str, "float | None"], CoordinationClient]
"""Builds a fresh client from a comma-separated host list and session timeout."""


__all__ = [
    "ClientFactory",
    "CoordinationClient",
    "NodeStat",
    "SessionEvent",
    "SessionListener",
    "WatchCallback",
]
