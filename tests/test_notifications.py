"""Tests for standing notification handlers and their configuration writes."""

import pytest

from fakes import CHAR_1, CHAR_2, MISSING, SERVICE_1
from gattsession.constants import CLIENT_CHARACTERISTIC_CONFIG
from gattsession.conversion import CallbackResponse, HexCodec, operation_key
from gattsession.notifications import NotificationRouter


@pytest.fixture
def router(registry):
    return NotificationRouter(registry)


def _enable(router, transport, characteristic, handler, responses, timeout=10.0):
    router.set_notifications(
        transport, SERVICE_1, characteristic, True, handler, responses.append, timeout
    )


def test_enable_uses_configuration_descriptor_key(router, transport, registry):
    responses = []
    _enable(router, transport, CHAR_1, lambda _r: None, responses)

    assert registry.keys() == [
        operation_key("writeDescriptor", SERVICE_1, CHAR_1, CLIENT_CHARACTERISTIC_CONFIG)
    ]
    assert transport.operations() == ["start_notifications"]

    transport.finish("start_notifications")

    assert responses == [CallbackResponse(True, "")]
    assert len(registry) == 0


def test_values_are_delivered_in_order(router, transport):
    """Two value changes reach the handler in arrival order."""
    received, responses = [], []
    _enable(router, transport, CHAR_1, received.append, responses)
    transport.finish("start_notifications")

    router.dispatch(SERVICE_1, CHAR_1, b"v1")
    router.dispatch(SERVICE_1, CHAR_1, b"v2")

    assert received == [CallbackResponse(True, "v1"), CallbackResponse(True, "v2")]


def test_handlers_are_isolated_per_characteristic(router, transport):
    """A value change for A reaches only A's handler."""
    received_a, received_b, responses = [], [], []
    _enable(router, transport, CHAR_1, received_a.append, responses)
    transport.finish("start_notifications")
    _enable(router, transport, CHAR_2, received_b.append, responses)
    transport.finish("start_notifications")

    router.dispatch(SERVICE_1, CHAR_1, b"a")

    assert received_a == [CallbackResponse(True, "a")]
    assert received_b == []
    assert len(router) == 2


def test_handler_replacement(router, transport):
    old, new, responses = [], [], []
    _enable(router, transport, CHAR_1, old.append, responses)
    transport.finish("start_notifications")
    _enable(router, transport, CHAR_1, new.append, responses)
    transport.finish("start_notifications")

    router.dispatch(SERVICE_1, CHAR_1.upper(), b"x")

    assert old == []
    assert new == [CallbackResponse(True, "x")]
    assert len(router) == 1


def test_missing_characteristic(router, transport, scheduler):
    responses = []
    _enable(router, transport, MISSING, lambda _r: None, responses)

    assert responses == [CallbackResponse(False, "Characteristic not found.")]
    assert transport.calls == []
    assert scheduler.armed == 0
    assert len(router) == 0


def test_failed_enable_removes_handler(router, transport):
    responses = []
    _enable(router, transport, CHAR_1, lambda _r: None, responses)

    transport.finish("start_notifications", error=OSError("write not permitted"))

    assert responses == [CallbackResponse(False, "Setting notification failed.")]
    assert router.get_handler(SERVICE_1, CHAR_1) is None


def test_enable_timeout_removes_handler(router, transport, scheduler):
    responses = []
    _enable(router, transport, CHAR_1, lambda _r: None, responses, timeout=10.0)

    scheduler.advance(10.0)

    assert responses == [CallbackResponse(False, "Set notifications timeout.")]
    assert len(router) == 0


def test_start_failure(router, transport):
    transport.fail_start.add("start_notifications")
    responses = []

    _enable(router, transport, CHAR_1, lambda _r: None, responses)

    assert responses == [CallbackResponse(False, "Setting notification failed.")]
    assert len(router) == 0


def test_failed_replacement_keeps_newer_handler(router, transport):
    """Only the handler installed by the failed request is removed."""
    first, second, responses = [], [], []
    _enable(router, transport, CHAR_1, first.append, responses)
    transport.finish("start_notifications")
    _enable(router, transport, CHAR_1, second.append, responses)
    transport.finish("start_notifications")

    _enable(router, transport, CHAR_1, first.append, responses)
    router._set_handler(router._handler_key(SERVICE_1, CHAR_1), second.append)
    transport.finish("start_notifications", error=OSError("busy"))

    assert router.get_handler(SERVICE_1, CHAR_1) == second.append


def test_failed_replacement_restores_previous_handler(router, transport):
    """A replacement whose configuration write fails leaves the working handler in place."""
    working, replacement, responses = [], [], []
    _enable(router, transport, CHAR_1, working.append, responses)
    transport.finish("start_notifications")
    _enable(router, transport, CHAR_1, replacement.append, responses)

    transport.finish("start_notifications", error=OSError("busy"))
    router.dispatch(SERVICE_1, CHAR_1, b"v")

    assert responses[-1] == CallbackResponse(False, "Setting notification failed.")
    assert working == [CallbackResponse(True, "v")]
    assert replacement == []
    assert router.get_handler(SERVICE_1, CHAR_1) is not None


def test_disable_removes_handler_and_stops(router, transport):
    received, responses = [], []
    _enable(router, transport, CHAR_1, received.append, responses)
    transport.finish("start_notifications")

    router.set_notifications(
        transport, SERVICE_1, CHAR_1, False, None, responses.append, 10.0
    )
    router.dispatch(SERVICE_1, CHAR_1, b"after")

    assert transport.operations()[-1] == "stop_notifications"
    assert received == []
    transport.finish("stop_notifications")
    assert responses == [CallbackResponse(True, ""), CallbackResponse(True, "")]


def test_pending_configuration_rejects_second_request(router, transport):
    first, second = [], []
    _enable(router, transport, CHAR_1, first.append, [])
    _enable(router, transport, CHAR_1, second.append, second)

    assert second[0].success is False
    assert second[0].value.startswith("Operation already in progress: writeDescriptor|")
    # The rejected request left the pending handler alone
    router.dispatch(SERVICE_1, CHAR_1, b"z")
    assert first == [CallbackResponse(True, "z")]


def test_dispatch_without_handler_is_dropped(router, caplog):
    with caplog.at_level("DEBUG", logger="gattsession"):
        router.dispatch(SERVICE_1, CHAR_1, b"orphan")
    assert "no handler" in caplog.text


def test_handler_exception_is_contained(router, transport, caplog):
    def explode(_response):
        raise RuntimeError("handler bug")

    _enable(router, transport, CHAR_1, explode, [])
    transport.finish("start_notifications")

    with caplog.at_level("ERROR", logger="gattsession"):
        router.dispatch(SERVICE_1, CHAR_1, b"x")

    assert "Notification handler" in caplog.text


def test_codec_applies_to_notifications(registry, transport):
    router = NotificationRouter(registry, codec=HexCodec())
    received = []
    _enable(router, transport, CHAR_1, received.append, [])
    transport.finish("start_notifications")

    router.dispatch(SERVICE_1, CHAR_1, b"\x00\x10")

    assert received == [CallbackResponse(True, "00 10")]


def test_clear(router, transport):
    _enable(router, transport, CHAR_1, lambda _r: None, [])
    transport.finish("start_notifications")

    router.clear()

    assert len(router) == 0
