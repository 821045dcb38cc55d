"""Connection state machine and lock negotiation.

A Connection owns one session against a coordination-service cluster and
the table of locks held through it. Callers use two operations:

    cxn = registry.get(["127.0.0.1:2181"])
    await cxn.lock("/critical/section", b"vroom")
    ...critical section...
    await cxn.unlock("/critical/section")

or the equivalent ``async with cxn.held("/critical/section", b"vroom"):``.

State Machine:
    CLOSED     initial; also after a disconnect or close()
    CONNECTING connect issued, waiting for the session
    CONNECTED  session usable
    ERROR      timeout, expiry, read-only session or auth failure

    CLOSED/ERROR --_connect()--> CONNECTING --connected--> CONNECTED
    any --disconnected--> CLOSED
    any --expired/connectedReadOnly/authenticationFailed/timeout--> ERROR

Every lock/unlock first waits for CONNECTED and re-checks the state before
each service call, because the state can change while a call is in flight.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Coroutine, Sequence
from contextlib import asynccontextmanager, suppress
from enum import Enum
from typing import Any

import structlog

from zk_ultralight.client import ClientFactory, CoordinationClient, SessionEvent
from zk_ultralight.exceptions import (
    ConnectionTimeoutError,
    CoordinationServiceError,
    InvalidPathError,
    LockAlreadyHeldError,
    NoSuchLockError,
    NotConnectedError,
    SessionError,
    UltralightError,
)
from zk_ultralight.negotiation import (
    parent_node,
    predecessor,
    sequence_suffix,
    sibling_sequences,
    split_lock_name,
)
from zk_ultralight.telemetry import get_tracer

logger = structlog.get_logger(__name__)

DEFAULT_CONNECT_TIMEOUT = 16.0
"""Seconds wait_connected() waits before failing with ConnectionTimeoutError."""

MAX_MISSING_NODE_RETRIES = 3
"""Consecutive listings without our own node before negotiation gives up."""


class ConnectionState(str, Enum):
    """States a Connection can be in."""

    CLOSED = "CLOSED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


_EVENT_TRANSITIONS = {
    SessionEvent.CONNECTED: ConnectionState.CONNECTED,
    SessionEvent.DISCONNECTED: ConnectionState.CLOSED,
    SessionEvent.CONNECTED_READ_ONLY: ConnectionState.ERROR,
    SessionEvent.EXPIRED: ConnectionState.ERROR,
    SessionEvent.AUTH_FAILED: ConnectionState.ERROR,
}


class Connection:
    """One session to a coordination-service cluster plus its lock table.

    Thread Safety:
        Not thread-safe. All methods must run on one event loop; the loop's
        serialization of callbacks is the only synchronization used.
    """

    def __init__(
        self,
        hosts: str | Sequence[str],
        session_timeout: float | None = None,
        *,
        connect_timeout: float | None = None,
        client_factory: ClientFactory | None = None,
    ):
        """Create a Connection in CLOSED state. Nothing connects until first use.

        Args:
            hosts: "host:port" strings, or one comma-separated string
            session_timeout: Session timeout in seconds (client default when None)
            connect_timeout: Seconds to wait for CONNECTED
                (default: session_timeout, then DEFAULT_CONNECT_TIMEOUT)
            client_factory: Builds the underlying client (default: kazoo)
        """
        if client_factory is None:
            from zk_ultralight.kazoo_client import kazoo_client_factory

            client_factory = kazoo_client_factory

        self.hosts = hosts if isinstance(hosts, str) else ",".join(hosts)
        self.session_timeout = session_timeout
        if connect_timeout is None:
            connect_timeout = session_timeout or DEFAULT_CONNECT_TIMEOUT
        self.connect_timeout = connect_timeout
        self._client_factory = client_factory
        self._state = ConnectionState.CLOSED
        self._client: CoordinationClient | None = None
        self._waiters: list[asyncio.Future[None]] = []
        self._session_lost: asyncio.Event | None = None
        self._error: UltralightError | None = None  # what put us in ERROR
        self._locks: dict[str, str] = {}  # lock name -> held node path
        # Abandoned lock nodes still owned by the current client's session.
        self._orphans: list[str] = []
        self._background: set[asyncio.Task[None]] = set()

    def __repr__(self) -> str:
        return f"Connection(hosts={self.hosts!r}, state={self._state.value})"

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def client(self) -> CoordinationClient | None:
        """The live client handle; replaced on every reconnect."""
        return self._client

    @property
    def locks(self) -> dict[str, str]:
        """Snapshot of the lock table (lock name -> held node path)."""
        return dict(self._locks)

    # Connection state machine

    async def wait_connected(self, timeout: float | None = None) -> None:
        """Return once the Connection is CONNECTED.

        From CLOSED or ERROR this starts a new session; from CONNECTING it
        joins the attempt already in flight. Concurrent callers share one
        connect attempt and all see the same outcome.

        Args:
            timeout: Seconds to wait (default: self.connect_timeout)

        Raises:
            ConnectionTimeoutError: No CONNECTED/ERROR transition in time;
                the Connection is forced into ERROR
            SessionError: The session reported expiry, read-only mode or an
                authentication failure
            NotConnectedError: The Connection was closed while waiting
        """
        if timeout is None:
            timeout = self.connect_timeout
        if self._state is ConnectionState.CONNECTED:
            # Always complete asynchronously so callers see uniform ordering.
            await asyncio.sleep(0)
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            if self._state in (ConnectionState.CLOSED, ConnectionState.ERROR):
                self._connect()
            await asyncio.wait_for(waiter, timeout)
        except UltralightError as e:
            logger.debug("connection_wait_failed", hosts=self.hosts, error=str(e))
            raise
        except TimeoutError:
            error = ConnectionTimeoutError(timeout)
            logger.debug("connection_wait_timeout", hosts=self.hosts, timeout=timeout)
            self._change_state(ConnectionState.ERROR, error)
            raise error from None
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def _connect(self) -> None:
        logger.debug("connection_connect", hosts=self.hosts, state=self._state.value)
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            logger.warning("Unexpected state in _connect", state=self._state.value)
            return

        if self._client is not None:
            self._client.close()
        self._orphans.clear()
        self._drop_locks("reconnect")

        client = self._client_factory(self.hosts, self.session_timeout)
        self._client = client
        client.add_listener(lambda event: self._on_session_event(client, event))
        self._change_state(ConnectionState.CONNECTING)
        client.connect()

    def _on_session_event(self, client: CoordinationClient, event: SessionEvent) -> None:
        if client is not self._client:
            logger.debug("stale_session_event_ignored", session_event=event.value)
            return
        to = _EVENT_TRANSITIONS[event]
        error = SessionError(event.value) if to is ConnectionState.ERROR else None
        self._change_state(to, error)

    def _change_state(self, to: ConnectionState, error: UltralightError | None = None) -> None:
        if self._state is to and to is not ConnectionState.ERROR:
            return
        logger.debug(
            "connection_state_change",
            hosts=self.hosts,
            from_state=self._state.value,
            to_state=to.value,
            error=str(error) if error else None,
        )
        previous, self._state = self._state, to

        if previous is ConnectionState.CONNECTED and self._session_lost is not None:
            self._session_lost.set()

        if to is ConnectionState.CONNECTED:
            self._error = None
            self._session_lost = asyncio.Event()
            if self._orphans and self._client is not None:
                # Same session recovered after a disconnect: its abandoned
                # nodes are still queued ahead of every later request.
                orphans, self._orphans = self._orphans, []
                self._spawn(self._remove_orphans(self._client, orphans))
            self._settle_waiters(None)
        elif to is ConnectionState.ERROR:
            self._error = error or SessionError("unknown")
            self._settle_waiters(self._error)

    def _settle_waiters(self, error: UltralightError | None) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if waiter.done():
                continue
            if error is None:
                waiter.set_result(None)
            else:
                waiter.set_exception(error)

    def _drop_locks(self, reason: str) -> None:
        # Ephemeral lock nodes die with the session that created them.
        if self._locks:
            logger.warning("locks_lost_with_session", reason=reason, locks=sorted(self._locks))
            self._locks.clear()

    async def close(self) -> None:
        """Close the session and move to CLOSED. Always succeeds.

        Pending wait_connected() callers fail with NotConnectedError, and
        the lock table is emptied since the session's lock nodes are gone.
        """
        logger.debug("connection_close", hosts=self.hosts, state=self._state.value)
        client, self._client = self._client, None
        if client is not None:
            # Reachable from CLOSED too, when a disconnect raced a close.
            client.close()
        self._orphans.clear()
        self._drop_locks("close")
        self._change_state(ConnectionState.CLOSED)
        self._settle_waiters(NotConnectedError(f"Connection to {self.hosts} closed"))

    def _require_connected(self, action: str, name: str) -> CoordinationClient:
        if self._state is ConnectionState.ERROR and self._error is not None:
            raise self._error
        if self._state is not ConnectionState.CONNECTED or self._client is None:
            raise NotConnectedError(
                f"Connection {self._state.value} while attempting to {action} {name}"
            )
        return self._client

    # Locking

    async def lock(self, name: str, owner: bytes | str = b"") -> str:
        """Acquire the lock ``name``, waiting for it to become available.

        Creates an ephemeral sequential node next to ``name`` and waits until
        it has the lowest sequence number among the lock's siblings. Waiters
        are served strictly in sequence order.

        Args:
            name: Fully-qualified lock path, e.g. "/critical/section"
            owner: Owner token written to the lock node, good for debugging

        Returns:
            Path of the lock node now held, e.g. "/critical/section0000000007"

        Raises:
            InvalidPathError: name does not begin with "/"
            LockAlreadyHeldError: this Connection already holds name
            UltralightConnectionError: connecting failed or the session was
                lost mid-negotiation
            CoordinationServiceError: a service call failed
        """
        logger.debug("lock_requested", lock=name, owner=owner)
        if not name.startswith("/"):
            raise InvalidPathError(name)
        if name in self._locks:
            raise LockAlreadyHeldError(name, self._locks[name])

        payload = owner.encode("utf-8") if isinstance(owner, str) else bytes(owner)
        lockpath, _ = split_lock_name(name)

        with get_tracer(__name__).start_as_current_span("zk.lock") as span:
            span.set_attribute("zk.lock.name", name)
            await self.wait_connected()

            client = self._require_connected("lock", name)
            await client.mkdir_all(parent_node(lockpath))

            client = self._require_connected("lock", name)
            session = self._session_lost
            create = asyncio.ensure_future(
                client.create(name, payload, ephemeral=True, sequential=True)
            )
            try:
                node = await asyncio.shield(create)
            except asyncio.CancelledError:
                # The create still lands on the service; remove it once it does.
                create.add_done_callback(lambda done: self._abandon_created(name, done))
                raise
            span.set_attribute("zk.lock.node", node)

            try:
                await self._negotiate(name, node, session)
            except BaseException:
                await self._abandon(name, node)
                raise
        return node

    async def _negotiate(self, name: str, node: str, session: asyncio.Event | None) -> None:
        lockpath, basename = split_lock_name(name)
        parent = parent_node(lockpath)
        own = sequence_suffix(node, lockpath, basename)
        misses = 0

        while True:
            client = self._require_session(name, session)
            try:
                children = await client.get_children(parent)
            except CoordinationServiceError as e:
                logger.error("Error obtaining children", lock=name, path=parent, error=str(e))
                raise
            self._require_session(name, session)

            sequences = sibling_sequences(children, basename)
            if sequences and sequences[0] == own:
                logger.debug("lock_acquired", lock=name, node=node)
                self._locks[name] = node
                return

            previous = predecessor(sequences, own)
            if previous is None:
                misses += 1
                if misses >= MAX_MISSING_NODE_RETRIES:
                    raise CoordinationServiceError(
                        f"Lock node {node} is no longer listed under {parent}", path=node
                    )
                continue
            misses = 0

            watched = lockpath + basename + previous
            changed = asyncio.Event()
            if await client.exists(watched, changed.set):
                logger.debug("lock_negotiation_watch", lock=name, node=node, watching=watched)
                await self._wait_for_change(changed, session)

    def _require_session(self, name: str, session: asyncio.Event | None) -> CoordinationClient:
        client = self._require_connected("lock", name)
        if session is None or session.is_set():
            raise NotConnectedError(f"Session changed while attempting to lock {name}")
        return client

    @staticmethod
    async def _wait_for_change(changed: asyncio.Event, session: asyncio.Event | None) -> None:
        """Wait for the predecessor watch, or for the session to leave CONNECTED."""
        if session is None:
            return
        waits = {
            asyncio.ensure_future(changed.wait()),
            asyncio.ensure_future(session.wait()),
        }
        try:
            await asyncio.wait(waits, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in waits:
                pending.cancel()

    async def _abandon(self, name: str, node: str) -> None:
        """Best-effort removal of a lock node whose negotiation failed.

        While disconnected the session may still come back with the node
        alive, so it is remembered and removed on the next CONNECTED. After
        ERROR or close the session is gone and the node with it.
        """
        if self._client is None:
            return
        if self._state is ConnectionState.CLOSED:
            logger.debug("lock_orphaned", lock=name, node=node)
            self._orphans.append(node)
            return
        if self._state is not ConnectionState.CONNECTED:
            return
        with suppress(UltralightError):
            await self._client.remove(node)
            logger.debug("lock_abandoned", lock=name, node=node)

    def _abandon_created(self, name: str, create: asyncio.Future[str]) -> None:
        if create.cancelled() or create.exception() is not None:
            return
        self._spawn(self._abandon(name, create.result()))

    async def _remove_orphans(self, client: CoordinationClient, nodes: list[str]) -> None:
        for node in nodes:
            if client is not self._client:
                return
            with suppress(UltralightError):
                await client.remove(node)
                logger.debug("orphan_removed", node=node)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def unlock(self, name: str) -> str:
        """Release the lock ``name`` held through this Connection.

        The lock table entry is dropped even when the delete fails: an
        ephemeral node is removed by the service anyway once its session ends.

        Returns:
            Path of the released lock node

        Raises:
            NoSuchLockError: This Connection does not hold name
            UltralightConnectionError: Connecting failed
            CoordinationServiceError: The delete failed
        """
        logger.debug("unlock_requested", lock=name, node=self._locks.get(name))
        with get_tracer(__name__).start_as_current_span("zk.unlock") as span:
            span.set_attribute("zk.lock.name", name)
            await self.wait_connected()

            client = self._require_connected("unlock", name)
            node = self._locks.pop(name, None)
            if node is None:
                raise NoSuchLockError(name)
            span.set_attribute("zk.lock.node", node)
            await client.remove(node)

        logger.debug("lock_released", lock=name, node=node)
        return node

    @asynccontextmanager
    async def held(self, name: str, owner: bytes | str = b"") -> AsyncIterator[str]:
        """Hold ``name`` for the duration of an ``async with`` block.

        Example:
            >>> async with cxn.held("/critical/section", b"vroom") as node:
            ...     await perform_action()
        """
        node = await self.lock(name, owner)
        try:
            yield node
        finally:
            await self.unlock(name)


__all__ = [
    "DEFAULT_CONNECT_TIMEOUT",
    "MAX_MISSING_NODE_RETRIES",
    "Connection",
    "ConnectionState",
]
