"""In-memory coordination service.

A single-process stand-in for a ZooKeeper ensemble, used by the test suite
and handy for local experiments. It models the parts of the service the lock
engine relies on:

- hierarchical nodes with persistent, ephemeral and sequential create modes
- 10-digit zero-padded sequence suffixes, monotonically increasing per parent
- one-shot existence watches fired on create/delete of the watched path
- sessions: closing or expiring a session deletes its ephemeral nodes

Every client operation yields to the event loop once before touching the
tree, and listener/watch notifications are delivered with ``call_soon``, so
interleavings look like a real networked client.

Example:
    >>> service = InMemoryCoordinationService()
    >>> cxn = Connection("sim:2181", client_factory=service.client_factory())
    >>> await cxn.lock("/critical/section", b"vroom")
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass

import structlog

from zk_ultralight.client import (
    ClientFactory,
    NodeStat,
    SessionEvent,
    SessionListener,
    WatchCallback,
)
from zk_ultralight.exceptions import CoordinationServiceError

logger = structlog.get_logger(__name__)

SEQUENCE_WIDTH = 10


def _parent(path: str) -> str:
    parent = path.rsplit("/", 1)[0]
    return parent or "/"


def _basename(path: str) -> str:
    return path.rsplit("/", 1)[1]


@dataclass
class _Node:
    data: bytes = b""
    ephemeral_owner: int = 0


class InMemoryCoordinationService:
    """Node tree, sequence counters, watches and sessions shared by clients.

    Fault injection:
        reachable: when False, connect() never completes (for timeout tests)
        read_only: sessions connect as read-only
        auth_failure: sessions fail authentication
        fail_next(): make the next call of an operation raise
    """

    def __init__(self) -> None:
        self._nodes: dict[str, _Node] = {"/": _Node()}
        self._sequences: dict[str, int] = {}
        self._watches: dict[str, list[tuple[int, WatchCallback]]] = {}
        self._session_ids = itertools.count(0x100)
        self._failures: dict[str, list[Exception]] = {}
        self.clients: list[InMemoryCoordinationClient] = []
        self.reachable = True
        self.read_only = False
        self.auth_failure = False

    def client_factory(self) -> ClientFactory:
        """Return a factory building clients bound to this service."""

        def factory(hosts: str, session_timeout: float | None) -> InMemoryCoordinationClient:
            client = InMemoryCoordinationClient(self, hosts, session_timeout)
            self.clients.append(client)
            return client

        return factory

    def fail_next(self, operation: str, error: Exception | None = None) -> None:
        """Make the next call to ``operation`` (e.g. "create") raise ``error``."""
        failure = error or CoordinationServiceError(f"injected {operation} failure")
        self._failures.setdefault(operation, []).append(failure)

    # Inspection helpers

    def node_exists(self, path: str) -> bool:
        return path in self._nodes

    def get_data(self, path: str) -> bytes:
        return self._nodes[path].data

    def children(self, path: str) -> list[str]:
        return sorted(self._children_of(path))

    def watch_count(self, path: str) -> int:
        """Number of pending one-shot watches on path."""
        return len(self._watches.get(path, []))

    def create_node(self, path: str, data: bytes = b"", *, ephemeral_owner: int = 0) -> None:
        """Create a node (and its parents) outside any client session.

        A non-zero ephemeral_owner marks the node ephemeral for stat purposes;
        it is only cleaned up if a session with that id ends.
        """
        self._mkdir_all(_parent(path))
        self._nodes[path] = _Node(data=data, ephemeral_owner=ephemeral_owner)

    # Operations used by clients

    def _check_failure(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _new_session(self) -> int:
        return next(self._session_ids)

    def _mkdir_all(self, path: str) -> None:
        if path == "/":
            return
        current = ""
        for segment in path.strip("/").split("/"):
            current = f"{current}/{segment}"
            if current not in self._nodes:
                self._nodes[current] = _Node()
                self._fire(current)

    def _create(
        self, path: str, data: bytes, ephemeral: bool, sequential: bool, session_id: int
    ) -> str:
        parent = _parent(path)
        if parent not in self._nodes:
            raise CoordinationServiceError(f"NoNode: {parent}", path=path)
        if self._nodes[parent].ephemeral_owner:
            raise CoordinationServiceError(f"NoChildrenForEphemerals: {parent}", path=path)
        if sequential:
            counter = self._sequences.get(parent, 0)
            self._sequences[parent] = counter + 1
            path = f"{path}{counter:0{SEQUENCE_WIDTH}d}"
        if path in self._nodes:
            raise CoordinationServiceError(f"NodeExists: {path}", path=path)
        self._nodes[path] = _Node(data=data, ephemeral_owner=session_id if ephemeral else 0)
        self._fire(path)
        return path

    def _children_of(self, path: str) -> list[str]:
        if path not in self._nodes:
            raise CoordinationServiceError(f"NoNode: {path}", path=path)
        # Creation order, not sorted: callers must order siblings themselves.
        prefix = path if path.endswith("/") else path + "/"
        return [
            p[len(prefix) :]
            for p in self._nodes
            if p != "/" and p.startswith(prefix) and "/" not in p[len(prefix) :]
        ]

    def _stat(self, path: str) -> NodeStat:
        return NodeStat(
            ephemeral_owner=self._nodes[path].ephemeral_owner,
            num_children=len(self._children_of(path)),
        )

    def _exists(self, path: str, watch: WatchCallback | None, session_id: int) -> bool:
        if watch is not None:
            self._watches.setdefault(path, []).append((session_id, watch))
        return path in self._nodes

    def _remove(self, path: str) -> None:
        if path not in self._nodes:
            raise CoordinationServiceError(f"NoNode: {path}", path=path)
        if self._children_of(path):
            raise CoordinationServiceError(f"NotEmpty: {path}", path=path)
        del self._nodes[path]
        self._fire(path)

    def _end_session(self, session_id: int) -> None:
        owned = [p for p, n in self._nodes.items() if n.ephemeral_owner == session_id]
        for path in owned:
            del self._nodes[path]
        for path, watchers in list(self._watches.items()):
            self._watches[path] = [w for w in watchers if w[0] != session_id]
        for path in owned:
            self._fire(path)
        logger.debug("simulated_session_ended", session_id=session_id, ephemerals=len(owned))

    def _fire(self, path: str) -> None:
        watchers = self._watches.pop(path, [])
        if not watchers:
            return
        loop = asyncio.get_running_loop()
        for _, callback in watchers:
            loop.call_soon(callback)


class InMemoryCoordinationClient:
    """One client session against an InMemoryCoordinationService."""

    def __init__(
        self,
        service: InMemoryCoordinationService,
        hosts: str,
        session_timeout: float | None = None,
    ):
        self.service = service
        self.hosts = hosts
        self.session_timeout = session_timeout
        self.session_id: int | None = None
        self.closed = False
        self.connect_calls = 0
        self._listeners: list[SessionListener] = []
        self._writable = False

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def connect(self) -> None:
        self.connect_calls += 1
        if self.closed or not self.service.reachable:
            return
        if self.service.auth_failure:
            self._emit(SessionEvent.AUTH_FAILED)
            return
        self.session_id = self.service._new_session()
        if self.service.read_only:
            self._emit(SessionEvent.CONNECTED_READ_ONLY)
            return
        self._writable = True
        self._emit(SessionEvent.CONNECTED)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._writable = False
        if self.session_id is not None:
            self.service._end_session(self.session_id)

    # Test controls

    def expire(self) -> None:
        """Expire the session: ephemerals vanish and EXPIRED is reported."""
        if self.session_id is not None:
            self.service._end_session(self.session_id)
        self._writable = False
        self._emit(SessionEvent.EXPIRED)

    def disconnect(self) -> None:
        """Drop the connection without ending the session."""
        self._writable = False
        self._emit(SessionEvent.DISCONNECTED)

    def reconnect(self) -> None:
        """Recover the same session after disconnect()."""
        if self.closed or self.session_id is None:
            return
        self._writable = True
        self._emit(SessionEvent.CONNECTED)

    def _emit(self, event: SessionEvent) -> None:
        loop = asyncio.get_running_loop()
        for listener in list(self._listeners):
            loop.call_soon(self._deliver, listener, event)

    def _deliver(self, listener: SessionListener, event: SessionEvent) -> None:
        if not self.closed:
            listener(event)

    async def _call(self, operation: str) -> int:
        await asyncio.sleep(0)
        if not self._writable or self.session_id is None:
            raise CoordinationServiceError(f"ConnectionLoss during {operation}")
        self.service._check_failure(operation)
        return self.session_id

    # CoordinationClient operations

    async def mkdir_all(self, path: str) -> None:
        await self._call("mkdir_all")
        self.service._mkdir_all(path)

    async def create(
        self,
        path: str,
        payload: bytes = b"",
        *,
        ephemeral: bool = False,
        sequential: bool = False,
    ) -> str:
        session_id = await self._call("create")
        return self.service._create(path, payload, ephemeral, sequential, session_id)

    async def get_children(self, path: str) -> list[str]:
        await self._call("get_children")
        return self.service._children_of(path)

    async def get_children_with_stat(self, path: str) -> tuple[list[str], NodeStat]:
        await self._call("get_children")
        return self.service._children_of(path), self.service._stat(path)

    async def exists(self, path: str, watch: WatchCallback | None = None) -> bool:
        session_id = await self._call("exists")
        return self.service._exists(path, watch, session_id)

    async def remove(self, path: str) -> None:
        await self._call("remove")
        self.service._remove(path)


__all__ = ["InMemoryCoordinationClient", "InMemoryCoordinationService", "SEQUENCE_WIDTH"]
