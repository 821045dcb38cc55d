"""Shared pytest fixtures for zk-ultralight tests."""

import os
from collections.abc import Iterator

import pytest
import structlog

from zk_ultralight.connection import Connection
from zk_ultralight.memory import InMemoryCoordinationService

HOSTS = "sim1:2181,sim2:2181"


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    """Undo CLI logging configuration so later tests don't write to a closed stream."""
    yield
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Clear ZK_ULTRALIGHT_ env vars so tests see the defaults."""
    for key in list(os.environ.keys()):
        if key.startswith("ZK_ULTRALIGHT_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def service() -> InMemoryCoordinationService:
    """A fresh in-memory coordination service."""
    return InMemoryCoordinationService()


@pytest.fixture
def connection(service: InMemoryCoordinationService) -> Connection:
    """A CLOSED Connection bound to the in-memory service."""
    return Connection(HOSTS, client_factory=service.client_factory(), connect_timeout=1.0)


@pytest.fixture
def make_connection(service: InMemoryCoordinationService):
    """Factory for extra Connections sharing the same service (other processes)."""

    def _make(connect_timeout: float = 1.0) -> Connection:
        return Connection(
            HOSTS, client_factory=service.client_factory(), connect_timeout=connect_timeout
        )

    return _make
