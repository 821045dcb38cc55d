"""Tests for the Connection state machine (src/zk_ultralight/connection.py).

Coverage targets:
- wait_connected from every state, shared connect attempts
- connect timeout forcing ERROR and failing every pending waiter
- session events: expired, read-only, auth failure, disconnect
- close() from every state
- stale events from replaced clients
"""

import asyncio

import pytest

from zk_ultralight.client import SessionEvent
from zk_ultralight.connection import DEFAULT_CONNECT_TIMEOUT, Connection, ConnectionState
from zk_ultralight.exceptions import (
    ConnectionTimeoutError,
    NotConnectedError,
    SessionError,
    UltralightConnectionError,
)
from zk_ultralight.memory import InMemoryCoordinationService

LOCK = "/critical/section"


class TestConstruction:
    """Tests for Connection defaults."""

    def test_starts_closed_without_client(self, connection: Connection) -> None:
        assert connection.state is ConnectionState.CLOSED
        assert connection.client is None
        assert connection.locks == {}

    def test_host_sequence_is_joined(self, service: InMemoryCoordinationService) -> None:
        cxn = Connection(["a:2181", "b:2181"], client_factory=service.client_factory())

        assert cxn.hosts == "a:2181,b:2181"

    def test_connect_timeout_defaults(self, service: InMemoryCoordinationService) -> None:
        factory = service.client_factory()

        assert Connection("a:2181", client_factory=factory).connect_timeout == (
            DEFAULT_CONNECT_TIMEOUT
        )
        assert Connection("a:2181", 30.0, client_factory=factory).connect_timeout == 30.0
        assert (
            Connection("a:2181", 30.0, connect_timeout=2.0, client_factory=factory).connect_timeout
            == 2.0
        )
        assert (
            Connection("a:2181", 30.0, connect_timeout=0, client_factory=factory).connect_timeout
            == 0
        )


class TestWaitConnected:
    """Tests for establishing a session."""

    @pytest.mark.asyncio
    async def test_connects_from_closed(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        await connection.wait_connected()

        assert connection.state is ConnectionState.CONNECTED
        assert len(service.clients) == 1
        assert connection.client is service.clients[0]
        assert service.clients[0].hosts == connection.hosts

    @pytest.mark.asyncio
    async def test_connected_returns_without_new_session(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        await connection.wait_connected()
        client = connection.client

        await connection.wait_connected()

        assert connection.client is client
        assert len(service.clients) == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_attempt(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        await asyncio.gather(*(connection.wait_connected() for _ in range(5)))

        assert connection.state is ConnectionState.CONNECTED
        assert len(service.clients) == 1
        assert service.clients[0].connect_calls == 1

    @pytest.mark.asyncio
    async def test_timeout_forces_error(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        service.reachable = False

        with pytest.raises(ConnectionTimeoutError) as exc_info:
            await connection.wait_connected(timeout=0.05)

        assert connection.state is ConnectionState.ERROR
        assert isinstance(exc_info.value, UltralightConnectionError)
        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.timeout == 0.05

    @pytest.mark.asyncio
    async def test_timeout_fails_every_pending_waiter_with_same_error(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        """A patient waiter is failed by an impatient waiter's timeout."""
        service.reachable = False
        patient = asyncio.create_task(connection.wait_connected(timeout=5.0))
        await asyncio.sleep(0)
        assert connection.state is ConnectionState.CONNECTING

        with pytest.raises(ConnectionTimeoutError) as impatient:
            await connection.wait_connected(timeout=0.05)

        with pytest.raises(ConnectionTimeoutError) as patient_error:
            await patient
        assert patient_error.value is impatient.value

    @pytest.mark.asyncio
    async def test_explicit_zero_timeout_is_honoured(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        service.reachable = False

        with pytest.raises(ConnectionTimeoutError) as exc_info:
            await connection.wait_connected(timeout=0)

        assert exc_info.value.timeout == 0

    @pytest.mark.asyncio
    async def test_recovers_after_timeout(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        service.reachable = False
        with pytest.raises(ConnectionTimeoutError):
            await connection.wait_connected(timeout=0.05)
        first = connection.client

        service.reachable = True
        await connection.wait_connected()

        assert connection.state is ConnectionState.CONNECTED
        assert connection.client is not first
        assert first.closed


class TestSessionEvents:
    """Tests for transitions driven by the client's session listener."""

    @pytest.mark.asyncio
    async def test_expiry_fails_pending_waiters(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        service.reachable = False
        waiters = [asyncio.create_task(connection.wait_connected()) for _ in range(3)]
        await asyncio.sleep(0)

        connection.client.expire()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(r, SessionError) for r in results)
        assert results[0] is results[1] is results[2]
        assert results[0].reason == "expired"
        assert connection.state is ConnectionState.ERROR

    @pytest.mark.asyncio
    async def test_lock_after_expiry_reconnects(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        await connection.wait_connected()
        connection.client.expire()
        await asyncio.sleep(0)
        assert connection.state is ConnectionState.ERROR

        node = await connection.lock(LOCK)

        assert connection.state is ConnectionState.CONNECTED
        assert len(service.clients) == 2
        assert service.node_exists(node)

    @pytest.mark.asyncio
    async def test_read_only_session_is_an_error(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        service.read_only = True

        with pytest.raises(SessionError) as exc_info:
            await connection.lock(LOCK)

        assert exc_info.value.reason == "connectedReadOnly"
        assert connection.state is ConnectionState.ERROR
        assert not service.node_exists("/critical")

    @pytest.mark.asyncio
    async def test_auth_failure_is_an_error(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        service.auth_failure = True

        with pytest.raises(SessionError) as exc_info:
            await connection.wait_connected()

        assert exc_info.value.reason == "authenticationFailed"
        assert connection.state is ConnectionState.ERROR

    @pytest.mark.asyncio
    async def test_disconnect_moves_to_closed(self, connection: Connection) -> None:
        await connection.wait_connected()

        connection.client.disconnect()
        await asyncio.sleep(0)

        assert connection.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_reconnect_after_disconnect_drops_lock_table(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        old_node = await connection.lock(LOCK)
        old_client = connection.client
        old_client.disconnect()
        await asyncio.sleep(0)

        await connection.lock("/critical/other")

        assert connection.client is not old_client
        assert old_client.closed
        assert LOCK not in connection.locks
        assert not service.node_exists(old_node)

    @pytest.mark.asyncio
    async def test_stale_client_events_are_ignored(self, connection: Connection) -> None:
        await connection.wait_connected()
        old_client = connection.client
        await connection.close()
        await connection.wait_connected()

        connection._on_session_event(old_client, SessionEvent.EXPIRED)

        assert connection.state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_repeated_error_fails_new_waiters(self, connection: Connection) -> None:
        """ERROR -> ERROR is not suppressed, so waiters still get settled."""
        connection._change_state(ConnectionState.ERROR, SessionError("expired"))
        waiter = asyncio.get_running_loop().create_future()
        connection._waiters.append(waiter)

        second = SessionError("authenticationFailed")
        connection._change_state(ConnectionState.ERROR, second)

        assert waiter.exception() is second


class TestReentrantConnect:
    """_connect must not replace a live or pending client."""

    @pytest.mark.asyncio
    async def test_connect_while_connected_keeps_client(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        await connection.wait_connected()
        client = connection.client

        connection._connect()

        assert connection.client is client
        assert connection.state is ConnectionState.CONNECTED
        assert len(service.clients) == 1

    @pytest.mark.asyncio
    async def test_connect_while_connecting_keeps_client(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        service.reachable = False
        pending = asyncio.create_task(connection.wait_connected(timeout=0.1))
        await asyncio.sleep(0)
        client = connection.client

        connection._connect()

        assert connection.client is client
        assert client.connect_calls == 1
        assert connection.state is ConnectionState.CONNECTING
        with pytest.raises(ConnectionTimeoutError):
            await pending


class TestClose:
    """Tests for close() from each state."""

    @pytest.mark.asyncio
    async def test_close_when_never_connected(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        await connection.close()

        assert connection.state is ConnectionState.CLOSED
        assert service.clients == []

    @pytest.mark.asyncio
    async def test_close_releases_session_and_locks(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        node = await connection.lock(LOCK)
        client = connection.client

        await connection.close()

        assert connection.state is ConnectionState.CLOSED
        assert connection.client is None
        assert connection.locks == {}
        assert client.closed
        assert not service.node_exists(node)

    @pytest.mark.asyncio
    async def test_close_fails_pending_waiters(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        service.reachable = False
        pending = asyncio.create_task(connection.wait_connected())
        await asyncio.sleep(0)

        await connection.close()

        with pytest.raises(NotConnectedError):
            await pending
        assert connection.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_close_from_error(
        self, connection: Connection, service: InMemoryCoordinationService
    ) -> None:
        service.auth_failure = True
        with pytest.raises(SessionError):
            await connection.wait_connected()

        await connection.close()

        assert connection.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_close_twice(self, connection: Connection) -> None:
        await connection.wait_connected()

        await connection.close()
        await connection.close()

        assert connection.state is ConnectionState.CLOSED
