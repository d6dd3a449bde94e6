"""Tests for the GATT operation façade."""

import pytest

from fakes import (
    BATTERY_LEVEL,
    CHAR_1,
    MISSING,
    SERVICE_1,
    SERVICE_2,
    USER_DESCRIPTION,
    FakeServiceCollection,
    FakeTransport,
)
from gattsession.conversion import CallbackResponse, HexCodec, WriteType, operation_key
from gattsession.gatt import (
    GattOperations,
    resolve_characteristic,
    resolve_descriptor,
    resolve_service,
)


@pytest.fixture
def gatt(registry, transport):
    return GattOperations(registry, lambda: transport)


def test_resolve_helpers(transport):
    services = transport.services
    service, error = resolve_service(services, SERVICE_1.upper())
    assert service is not None and error == ""

    assert resolve_service(None, SERVICE_1) == (None, "Service not found.")
    assert resolve_characteristic(services, MISSING, CHAR_1) == (None, "Service not found.")
    assert resolve_characteristic(services, SERVICE_2, CHAR_1) == (
        None,
        "Characteristic not found.",
    )
    assert resolve_descriptor(services, SERVICE_1, CHAR_1, MISSING) == (
        None,
        "Descriptor not found.",
    )
    descriptor, _ = resolve_descriptor(services, SERVICE_1, CHAR_1, "2901")
    assert descriptor.handle == 12


def test_missing_characteristic_starts_nothing(gatt, transport, scheduler, registry):
    """A handle that cannot be resolved fails at once with no timer and no command."""
    responses = []

    gatt.read_characteristic(SERVICE_1, MISSING, responses.append, 10.0)

    assert responses == [CallbackResponse(False, "Characteristic not found.")]
    assert scheduler.armed == 0
    assert len(registry) == 0
    assert transport.calls == []


def test_missing_service(gatt, transport):
    responses = []
    gatt.write_characteristic(MISSING, CHAR_1, "x", responses.append)
    assert responses == [CallbackResponse(False, "Service not found.")]
    assert transport.calls == []


def test_read_characteristic_decodes_payload(gatt, transport, registry):
    responses = []
    gatt.read_characteristic(SERVICE_1, CHAR_1, responses.append, 10.0)

    assert registry.keys() == [operation_key("read", SERVICE_1, CHAR_1)]
    transport.finish("read_characteristic", bytearray(b"hello"))

    assert responses == [CallbackResponse(True, "hello")]
    assert len(registry) == 0


def test_read_timeout(gatt, scheduler):
    responses = []
    gatt.read_characteristic(SERVICE_1, CHAR_1, responses.append, 3.0)

    scheduler.advance(3.0)

    assert responses == [CallbackResponse(False, "Read timeout.")]


def test_late_completion_after_timeout_is_ignored(gatt, transport, scheduler):
    responses = []
    gatt.read_characteristic(SERVICE_1, CHAR_1, responses.append, 3.0)
    scheduler.advance(3.0)

    transport.finish("read_characteristic", b"late")

    assert responses == [CallbackResponse(False, "Read timeout.")]


def test_transport_error_completion(gatt, transport):
    responses = []
    gatt.read_characteristic(SERVICE_1, CHAR_1, responses.append)

    transport.finish("read_characteristic", error=OSError("GATT error 0x85"))

    assert responses == [CallbackResponse(False, "Reading characteristic failed.")]


def test_start_failure_resolves_immediately(gatt, transport, registry, scheduler):
    transport.fail_start.add("write_characteristic")
    responses = []

    gatt.write_characteristic(SERVICE_1, CHAR_1, "on", responses.append)

    assert responses == [CallbackResponse(False, "Writing characteristic failed.")]
    assert len(registry) == 0
    assert scheduler.armed == 0


def test_write_passes_write_type_and_reports_written_bytes(gatt, transport):
    responses = []
    gatt.write_characteristic(
        SERVICE_1, CHAR_1, "ping", responses.append, WriteType.WITHOUT_RESPONSE
    )

    op, characteristic, data, write_type = transport.calls[0]
    assert op == "write_characteristic"
    assert characteristic.uuid == CHAR_1
    assert data == b"ping"
    assert write_type is WriteType.WITHOUT_RESPONSE

    transport.finish("write_characteristic", b"ping")
    assert responses == [CallbackResponse(True, "ping")]


def test_echo_round_trip(registry):
    """A string written to an echoing stack reads back unchanged."""
    transport = FakeTransport(echo=True)
    gatt = GattOperations(registry, lambda: transport)
    responses = []

    gatt.write_characteristic(SERVICE_1, CHAR_1, "grüße", responses.append)
    gatt.read_characteristic(SERVICE_1, CHAR_1, responses.append)

    assert responses == [
        CallbackResponse(True, "grüße"),
        CallbackResponse(True, "grüße"),
    ]


def test_invalid_value_is_rejected_before_submission(registry, transport):
    gatt = GattOperations(registry, lambda: transport, codec=HexCodec())
    responses = []

    gatt.write_characteristic(SERVICE_1, CHAR_1, "not hex", responses.append)

    assert responses == [CallbackResponse(False, "Invalid value.")]
    assert transport.calls == []
    assert len(registry) == 0


def test_hex_codec_payloads(registry, transport):
    gatt = GattOperations(registry, lambda: transport, codec=HexCodec())
    responses = []

    gatt.write_characteristic(SERVICE_1, CHAR_1, "01 ff", responses.append)
    assert transport.calls[0][2] == b"\x01\xff"
    transport.finish("write_characteristic", b"\x01\xff")

    assert responses == [CallbackResponse(True, "01 ff")]


def test_descriptor_read_and_write(gatt, transport, registry):
    responses = []

    gatt.write_descriptor(SERVICE_1, CHAR_1, USER_DESCRIPTION, "Temp", responses.append)
    assert registry.keys() == [
        operation_key("writeDescriptor", SERVICE_1, CHAR_1, USER_DESCRIPTION)
    ]
    transport.finish("write_descriptor", b"Temp")

    gatt.read_descriptor(SERVICE_1, CHAR_1, USER_DESCRIPTION, responses.append)
    assert transport.calls[-1][1].handle == 12
    transport.finish("read_descriptor", b"Temp")

    assert responses == [CallbackResponse(True, "Temp"), CallbackResponse(True, "Temp")]


def test_descriptor_timeouts(gatt, scheduler):
    responses = []
    gatt.read_descriptor(SERVICE_1, CHAR_1, USER_DESCRIPTION, responses.append, 1.0)
    gatt.write_descriptor(SERVICE_1, CHAR_1, USER_DESCRIPTION, "x", responses.append, 2.0)

    scheduler.advance(2.0)

    assert responses == [
        CallbackResponse(False, "Read descriptor timeout."),
        CallbackResponse(False, "Write descriptor timeout."),
    ]


def test_read_rssi(gatt, transport):
    responses = []
    gatt.read_rssi(responses.append)

    transport.finish("read_rssi", -72)

    assert responses == [CallbackResponse(True, "-72")]


def test_read_rssi_never_answered(gatt, scheduler):
    """An unanswered RSSI query fails after its timeout with the RSSI timeout message."""
    responses = []
    gatt.read_rssi(responses.append, 5.0)

    scheduler.advance(4.0)
    assert responses == []
    scheduler.advance(1.0)

    assert responses == [CallbackResponse(False, "Reading RSSI timeout.")]


def test_untranslatable_rssi_fails(gatt, transport):
    responses = []
    gatt.read_rssi(responses.append)

    transport.finish("read_rssi", None)

    assert responses == [CallbackResponse(False, "Reading RSSI failed.")]


def test_concurrent_operations_on_different_keys(gatt, transport):
    reads, rssi = [], []
    gatt.read_characteristic(SERVICE_2, BATTERY_LEVEL, reads.append)
    gatt.read_rssi(rssi.append)

    transport.finish("read_rssi", -40)
    transport.finish("read_characteristic", b"\x64")

    assert rssi == [CallbackResponse(True, "-40")]
    assert reads == [CallbackResponse(True, "d")]


def test_same_key_is_rejected_while_pending(gatt, transport):
    first, second = [], []
    gatt.read_characteristic(SERVICE_1, CHAR_1, first.append)
    gatt.read_characteristic(SERVICE_1, CHAR_1.upper(), second.append)

    key = operation_key("read", SERVICE_1, CHAR_1)
    assert second == [CallbackResponse(False, f"Operation already in progress: {key}")]
    assert transport.operations() == ["read_characteristic"]

    transport.finish("read_characteristic", b"1")
    assert first == [CallbackResponse(True, "1")]


def test_discover_services_refreshes_cache_first(gatt, transport, caplog):
    responses = []
    with caplog.at_level("DEBUG", logger="gattsession"):
        gatt.discover_services(responses.append)

    assert transport.refresh_calls == 1
    assert "Device cache refresh False" in caplog.text
    transport.finish("discover_services", transport.services)

    assert responses == [CallbackResponse(True, "Service discovery succeeded.")]


def test_discover_services_timeout(gatt, scheduler):
    responses = []
    gatt.discover_services(responses.append, 20.0)

    scheduler.advance(20.0)

    assert responses == [CallbackResponse(False, "Service discovery timeout.")]


def test_handles_are_resolved_on_every_call(registry):
    """A refreshed service table takes effect without any cached handle."""
    transport = FakeTransport(echo=True)
    gatt = GattOperations(registry, lambda: transport)
    responses = []

    transport._services = FakeServiceCollection()
    gatt.read_characteristic(SERVICE_1, CHAR_1, responses.append)

    assert responses == [CallbackResponse(False, "Service not found.")]


def test_not_connected(registry):
    gatt = GattOperations(registry, lambda: None)
    responses = []

    gatt.read_rssi(responses.append)
    gatt.read_characteristic(SERVICE_1, CHAR_1, responses.append)

    assert responses == [CallbackResponse(False, "Not connected.")] * 2
