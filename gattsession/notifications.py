"""Routing of unsolicited characteristic value changes to standing handlers."""

from functools import partial
from threading import RLock
from typing import Dict, Optional, Tuple

from gattsession.constants import (
    BLEConfig,
    CLIENT_CHARACTERISTIC_CONFIG,
    ERROR_NOTIFICATIONS_FAILED,
    OP_WRITE_DESCRIPTOR,
    TIMEOUT_NOTIFICATIONS,
    logger,
)
from gattsession.conversion import (
    CallbackResponse,
    ResponseCallback,
    Utf8Codec,
    ValueCodec,
    normalize_uuid,
    operation_key,
)
from gattsession.errors import TransportStartError
from gattsession.gatt import resolve_characteristic
from gattsession.registry import OperationRegistry
from gattsession.transport import GattTransport

__all__ = ["NotificationRouter"]

CharacteristicKey = Tuple[str, str]


class NotificationRouter:
    """
    Keep one standing handler per characteristic and deliver value changes to it.

    Enabling or disabling notifications is a one-shot configuration write that
    goes through the operation registry like any other request; the handler
    itself stays registered independently until it is replaced, removed, or
    the router is cleared.
    """

    def __init__(self, registry: OperationRegistry, codec: Optional[ValueCodec] = None):
        """
        Initialize a router with no handlers.

        Parameters:
            registry (OperationRegistry): Registry used for the configuration write.
            codec (Optional[ValueCodec]): Decodes notification payloads; UTF-8 by default.
        """
        self._registry = registry
        self._codec = codec or Utf8Codec()
        self._handlers: Dict[CharacteristicKey, ResponseCallback] = {}
        self._lock = RLock()

    def set_notifications(
        self,
        transport: GattTransport,
        service_uuid: str,
        characteristic_uuid: str,
        enable: bool,
        notify_handler: Optional[ResponseCallback],
        callback: ResponseCallback,
        timeout: Optional[float] = BLEConfig.NOTIFICATION_START_TIMEOUT,
    ) -> None:
        """
        Install or remove the standing handler and perform the configuration write.

        When enabling, `notify_handler` replaces any previous handler for the
        characteristic before the write is issued. If the write fails, the handler
        that was installed before it is put back. When disabling, the handler is
        removed first.

        Parameters:
            transport (GattTransport): Connected transport.
            service_uuid (str): Service containing the characteristic.
            characteristic_uuid (str): Characteristic to configure.
            enable (bool): Whether notifications should flow.
            notify_handler (Optional[ResponseCallback]): Receives `CallbackResponse(True, value)` per change.
            callback (ResponseCallback): Receives the result of the configuration write.
            timeout (Optional[float]): Deadline for the configuration write.
        """
        characteristic, error = resolve_characteristic(
            transport.services, service_uuid, characteristic_uuid
        )
        if characteristic is None:
            callback(CallbackResponse(False, error))
            return

        handler_key = self._handler_key(service_uuid, characteristic_uuid)
        key = operation_key(
            OP_WRITE_DESCRIPTOR,
            service_uuid,
            characteristic_uuid,
            CLIENT_CHARACTERISTIC_CONFIG,
        )
        previous = self.get_handler(service_uuid, characteristic_uuid) if enable else None
        finished = partial(
            self._configured, handler_key, enable, notify_handler, previous, callback
        )
        if not self._registry.register(key, finished, timeout, TIMEOUT_NOTIFICATIONS):
            return
        if enable and notify_handler is not None:
            self._set_handler(handler_key, notify_handler)
        elif not enable:
            self.remove_handler(service_uuid, characteristic_uuid)

        def on_done(_result, error: Optional[BaseException]) -> None:
            if error is not None:
                logger.debug("Notification configuration for %s failed: %s", key, error)
                self._registry.resolve(key, False, ERROR_NOTIFICATIONS_FAILED)
            else:
                self._registry.resolve(key, True, "")

        try:
            if enable:
                transport.start_notifications(characteristic, on_done)
            else:
                transport.stop_notifications(characteristic, on_done)
        except TransportStartError as exc:
            logger.debug("Notification configuration for %s could not start: %s", key, exc)
            self._registry.resolve(key, False, ERROR_NOTIFICATIONS_FAILED)

    def dispatch(self, service_uuid: str, characteristic_uuid: str, data: bytes) -> None:
        """
        Deliver one value change to the standing handler of its characteristic.

        Changes for characteristics without a handler are dropped. Handler
        exceptions are logged and never propagate to the transport.
        """
        handler = self.get_handler(service_uuid, characteristic_uuid)
        if handler is None:
            logger.debug(
                "Dropping value change for %s/%s: no handler",
                service_uuid,
                characteristic_uuid,
            )
            return
        try:
            handler(CallbackResponse(True, self._codec.decode(data)))
        except Exception:  # noqa: BLE001 - handler faults must not reach the transport thread
            logger.exception(
                "Notification handler for %s/%s raised", service_uuid, characteristic_uuid
            )

    def get_handler(
        self, service_uuid: str, characteristic_uuid: str
    ) -> Optional[ResponseCallback]:
        with self._lock:
            return self._handlers.get(self._handler_key(service_uuid, characteristic_uuid))

    def remove_handler(self, service_uuid: str, characteristic_uuid: str) -> None:
        with self._lock:
            self._handlers.pop(self._handler_key(service_uuid, characteristic_uuid), None)

    def clear(self) -> None:
        """Remove every standing handler."""
        with self._lock:
            self._handlers.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

    def _set_handler(self, handler_key: CharacteristicKey, handler: ResponseCallback) -> None:
        with self._lock:
            self._handlers[handler_key] = handler

    def _configured(
        self,
        handler_key: CharacteristicKey,
        enable: bool,
        notify_handler: Optional[ResponseCallback],
        previous: Optional[ResponseCallback],
        callback: ResponseCallback,
        response: CallbackResponse,
    ) -> None:
        if enable and not response.success and notify_handler is not None:
            with self._lock:
                if self._handlers.get(handler_key) is notify_handler:
                    if previous is None:
                        del self._handlers[handler_key]
                    else:
                        self._handlers[handler_key] = previous
        callback(response)

    @staticmethod
    def _handler_key(service_uuid: str, characteristic_uuid: str) -> CharacteristicKey:
        return normalize_uuid(service_uuid), normalize_uuid(characteristic_uuid)
