"""GATT operation façade: resolve handles, submit, await, translate."""

from typing import Any, Callable, Optional, Tuple

from bleak.exc import BleakError

from gattsession.constants import (
    BLEConfig,
    ERROR_CHARACTERISTIC_NOT_FOUND,
    ERROR_DESCRIPTOR_NOT_FOUND,
    ERROR_DISCOVERY_FAILED,
    ERROR_INVALID_VALUE,
    ERROR_NOT_CONNECTED,
    ERROR_READ_DESCRIPTOR_FAILED,
    ERROR_READ_FAILED,
    ERROR_RSSI_FAILED,
    ERROR_SERVICE_NOT_FOUND,
    ERROR_WRITE_DESCRIPTOR_FAILED,
    ERROR_WRITE_FAILED,
    OP_DISCOVER_SERVICES,
    OP_READ,
    OP_READ_DESCRIPTOR,
    OP_READ_RSSI,
    OP_WRITE,
    OP_WRITE_DESCRIPTOR,
    RESULT_SERVICES_DISCOVERED,
    TIMEOUT_DISCOVERY,
    TIMEOUT_READ,
    TIMEOUT_READ_DESCRIPTOR,
    TIMEOUT_RSSI,
    TIMEOUT_WRITE,
    TIMEOUT_WRITE_DESCRIPTOR,
    logger,
)
from gattsession.conversion import (
    CallbackResponse,
    ResponseCallback,
    Utf8Codec,
    ValueCodec,
    WriteType,
    normalize_uuid,
    operation_key,
)
from gattsession.errors import TransportStartError
from gattsession.registry import OperationRegistry
from gattsession.transport import Completion, GattTransport

__all__ = [
    "GattOperations",
    "resolve_characteristic",
    "resolve_descriptor",
    "resolve_service",
]


def resolve_service(services: Optional[Any], service_uuid: str) -> Tuple[Optional[Any], str]:
    """
    Look up a service in the transport's current service table.

    Returns:
        Tuple[Optional[Any], str]: The service and an empty message, or None and the NotFound message.
    """
    try:
        service = services.get_service(normalize_uuid(service_uuid)) if services else None
    except BleakError as exc:
        # e.g. several services share the UUID and cannot be told apart by it
        logger.debug("Service lookup for %s failed: %s", service_uuid, exc)
        service = None
    if service is None:
        return None, ERROR_SERVICE_NOT_FOUND
    return service, ""


def resolve_characteristic(
    services: Optional[Any], service_uuid: str, characteristic_uuid: str
) -> Tuple[Optional[Any], str]:
    service, error = resolve_service(services, service_uuid)
    if service is None:
        return None, error
    characteristic = service.get_characteristic(normalize_uuid(characteristic_uuid))
    if characteristic is None:
        return None, ERROR_CHARACTERISTIC_NOT_FOUND
    return characteristic, ""


def resolve_descriptor(
    services: Optional[Any],
    service_uuid: str,
    characteristic_uuid: str,
    descriptor_uuid: str,
) -> Tuple[Optional[Any], str]:
    characteristic, error = resolve_characteristic(
        services, service_uuid, characteristic_uuid
    )
    if characteristic is None:
        return None, error
    descriptor = characteristic.get_descriptor(normalize_uuid(descriptor_uuid))
    if descriptor is None:
        return None, ERROR_DESCRIPTOR_NOT_FOUND
    return descriptor, ""


class GattOperations:
    """
    Uniform request pattern for reads, writes, RSSI and service discovery.

    Every operation resolves its handles from the transport's service table
    at call time, registers a correlation key with the operation registry,
    submits the command and translates the transport's completion into a
    `CallbackResponse`. Handles are never cached between operations.
    """

    def __init__(
        self,
        registry: OperationRegistry,
        transport_getter: Callable[[], Optional[GattTransport]],
        codec: Optional[ValueCodec] = None,
    ):
        """
        Parameters:
            registry (OperationRegistry): Registry owning the pending callers.
            transport_getter (Callable[[], Optional[GattTransport]]): Returns the connected transport,
                or None when the session is not connected.
            codec (Optional[ValueCodec]): Translates between caller strings and payload bytes.
        """
        self._registry = registry
        self._transport_getter = transport_getter
        self._codec = codec or Utf8Codec()

    def read_characteristic(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        callback: ResponseCallback,
        timeout: Optional[float] = BLEConfig.GATT_IO_TIMEOUT,
    ) -> None:
        transport = self._connected_transport(callback)
        if transport is None:
            return
        characteristic, error = resolve_characteristic(
            transport.services, service_uuid, characteristic_uuid
        )
        if characteristic is None:
            callback(CallbackResponse(False, error))
            return
        self._execute(
            operation_key(OP_READ, service_uuid, characteristic_uuid),
            callback,
            timeout,
            TIMEOUT_READ,
            ERROR_READ_FAILED,
            lambda on_done: transport.read_characteristic(characteristic, on_done),
            self._codec.decode,
        )

    def write_characteristic(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        value: str,
        callback: ResponseCallback,
        write_type: WriteType = WriteType.WITH_RESPONSE,
        timeout: Optional[float] = BLEConfig.GATT_IO_TIMEOUT,
    ) -> None:
        transport = self._connected_transport(callback)
        if transport is None:
            return
        characteristic, error = resolve_characteristic(
            transport.services, service_uuid, characteristic_uuid
        )
        if characteristic is None:
            callback(CallbackResponse(False, error))
            return
        data = self._encode(value, callback)
        if data is None:
            return
        self._execute(
            operation_key(OP_WRITE, service_uuid, characteristic_uuid),
            callback,
            timeout,
            TIMEOUT_WRITE,
            ERROR_WRITE_FAILED,
            lambda on_done: transport.write_characteristic(
                characteristic, data, write_type, on_done
            ),
            self._codec.decode,
        )

    def read_descriptor(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        descriptor_uuid: str,
        callback: ResponseCallback,
        timeout: Optional[float] = BLEConfig.GATT_IO_TIMEOUT,
    ) -> None:
        transport = self._connected_transport(callback)
        if transport is None:
            return
        descriptor, error = resolve_descriptor(
            transport.services, service_uuid, characteristic_uuid, descriptor_uuid
        )
        if descriptor is None:
            callback(CallbackResponse(False, error))
            return
        self._execute(
            operation_key(OP_READ_DESCRIPTOR, service_uuid, characteristic_uuid, descriptor_uuid),
            callback,
            timeout,
            TIMEOUT_READ_DESCRIPTOR,
            ERROR_READ_DESCRIPTOR_FAILED,
            lambda on_done: transport.read_descriptor(descriptor, on_done),
            self._codec.decode,
        )

    def write_descriptor(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        descriptor_uuid: str,
        value: str,
        callback: ResponseCallback,
        timeout: Optional[float] = BLEConfig.GATT_IO_TIMEOUT,
    ) -> None:
        transport = self._connected_transport(callback)
        if transport is None:
            return
        descriptor, error = resolve_descriptor(
            transport.services, service_uuid, characteristic_uuid, descriptor_uuid
        )
        if descriptor is None:
            callback(CallbackResponse(False, error))
            return
        data = self._encode(value, callback)
        if data is None:
            return
        self._execute(
            operation_key(OP_WRITE_DESCRIPTOR, service_uuid, characteristic_uuid, descriptor_uuid),
            callback,
            timeout,
            TIMEOUT_WRITE_DESCRIPTOR,
            ERROR_WRITE_DESCRIPTOR_FAILED,
            lambda on_done: transport.write_descriptor(descriptor, data, on_done),
            self._codec.decode,
        )

    def read_rssi(
        self,
        callback: ResponseCallback,
        timeout: Optional[float] = BLEConfig.RSSI_TIMEOUT,
    ) -> None:
        transport = self._connected_transport(callback)
        if transport is None:
            return
        self._execute(
            OP_READ_RSSI,
            callback,
            timeout,
            TIMEOUT_RSSI,
            ERROR_RSSI_FAILED,
            transport.read_rssi,
            lambda rssi: str(int(rssi)),
        )

    def discover_services(
        self,
        callback: ResponseCallback,
        timeout: Optional[float] = BLEConfig.SERVICE_DISCOVERY_TIMEOUT,
    ) -> None:
        """Invalidate the stack's service cache where supported, then rediscover."""
        transport = self._connected_transport(callback)
        if transport is None:
            return

        def start(on_done: Completion) -> None:
            refreshed = transport.refresh_cache()
            logger.debug("Device cache refresh %s", refreshed)
            transport.discover_services(on_done)

        self._execute(
            OP_DISCOVER_SERVICES,
            callback,
            timeout,
            TIMEOUT_DISCOVERY,
            ERROR_DISCOVERY_FAILED,
            start,
            lambda _services: RESULT_SERVICES_DISCOVERED,
        )

    def _connected_transport(self, callback: ResponseCallback) -> Optional[GattTransport]:
        transport = self._transport_getter()
        if transport is None:
            callback(CallbackResponse(False, ERROR_NOT_CONNECTED))
        return transport

    def _encode(self, value: str, callback: ResponseCallback) -> Optional[bytes]:
        try:
            return self._codec.encode(value)
        except (ValueError, UnicodeError) as exc:
            logger.debug("Cannot encode value %r: %s", value, exc)
            callback(CallbackResponse(False, ERROR_INVALID_VALUE))
            return None

    def _execute(
        self,
        key: str,
        callback: ResponseCallback,
        timeout: Optional[float],
        timeout_message: str,
        failure_message: str,
        start: Callable[[Completion], None],
        translate: Callable[[Any], str],
    ) -> None:
        if not self._registry.register(key, callback, timeout, timeout_message):
            return

        def on_done(result, error: Optional[BaseException]) -> None:
            if error is not None:
                logger.debug("%s failed: %s", key, error)
                self._registry.resolve(key, False, failure_message)
                return
            try:
                value = translate(result)
            except (TypeError, ValueError) as exc:
                logger.debug("%s returned an untranslatable result %r: %s", key, result, exc)
                self._registry.resolve(key, False, failure_message)
                return
            self._registry.resolve(key, True, value)

        try:
            start(on_done)
        except TransportStartError as exc:
            logger.debug("%s could not start: %s", key, exc)
            self._registry.resolve(key, False, failure_message)
