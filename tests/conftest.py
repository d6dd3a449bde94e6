"""
Shared pytest fixtures for GATT session tests.
"""

import pytest  # type: ignore[import-untyped]  # pylint: disable=E0401
from pubsub import pub

from fakes import (
    ADDRESS,
    FakePairingAgent,
    FakeTransport,
    FakeTransportFactory,
    ManualScheduler,
)
from gattsession.registry import OperationRegistry
from gattsession.session import Session


@pytest.fixture(autouse=True)
def reset_pubsub():
    """
    Drop every pypubsub subscription made during a test.

    Sessions and tests subscribe to package topics; clearing them afterwards
    keeps listeners from one test out of the next.
    """
    yield
    pub.unsubAll()


@pytest.fixture
def scheduler():
    """Deterministic clock standing in for the session's event loop."""
    return ManualScheduler()


@pytest.fixture
def registry(scheduler):
    return OperationRegistry(scheduler)


@pytest.fixture
def transport():
    """Stand-alone fake transport with the default service table."""
    return FakeTransport()


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def pairing_agent():
    return FakePairingAgent()


@pytest.fixture
def session(scheduler, transport_factory, pairing_agent):
    """
    Disconnected session wired to fakes.

    Yields:
        Session: closed again at teardown.
    """
    session = Session(
        ADDRESS,
        transport_factory=transport_factory,
        pairing_agent=pairing_agent,
        coordinator=scheduler,
    )
    yield session
    session.close()


@pytest.fixture
def connected_session(session, transport_factory):
    """Session whose fake transport has already confirmed the connection."""
    responses = []
    session.connect(callback=responses.append)
    transport_factory.last.finish("connect", True)
    assert responses[0].success
    return session
