"""Per-device GATT session: the public request/response surface for one peripheral."""

from concurrent.futures import Future
from functools import partial
from typing import Any, Callable, List, Optional

from pubsub import pub

from gattsession.bonding import BondState, BondStateMachine, PairingAgent
from gattsession.client import BLEClient, BleakPairingAgent
from gattsession.constants import (
    BLEConfig,
    CONNECTION_ESTABLISHED_TOPIC,
    CONNECTION_LOST_TOPIC,
    ERROR_ALREADY_CONNECTED,
    ERROR_CONNECT_FAILED,
    ERROR_CONNECTION_ABORTED,
    ERROR_DISCONNECT_FAILED,
    ERROR_DISCONNECTED,
    ERROR_NOT_CONNECTED,
    ERROR_SESSION_CLOSED,
    OP_CONNECT,
    OP_DISCONNECT,
    RESULT_CONNECTED,
    RESULT_DISCONNECTED,
    TIMEOUT_CONNECT,
    TIMEOUT_DISCONNECT,
    logger,
)
from gattsession.conversion import (
    CallbackResponse,
    ResponseCallback,
    Utf8Codec,
    ValueCodec,
    WriteType,
)
from gattsession.coordination import LoopCoordinator
from gattsession.errors import BLEErrorHandler, TransportStartError
from gattsession.gatt import GattOperations
from gattsession.notifications import NotificationRouter
from gattsession.registry import OperationRegistry
from gattsession.state import ConnectionState, ConnectionStateMachine
from gattsession.transport import GattTransport

__all__ = ["Session", "TransportFactory"]

# (address, coordinator, value_listener, disconnected_callback) -> transport
TransportFactory = Callable[..., GattTransport]


class Session:
    """
    Own the connection lifecycle and GATT operations of a single peripheral.

    Every asynchronous operation accepts an optional ``callback``. With a
    callback the call returns None at once and the callback later receives
    exactly one `CallbackResponse`. Without one the call blocks the calling
    thread until that single response is available and returns it. Blocking
    from the coordinator's loop thread, where all completions are delivered,
    raises `RuntimeError`.

    Failures of every kind (missing handles, start failures, timeouts, invalid
    states, pairing failures) are reported as ``CallbackResponse(False, msg)``;
    only programming errors such as a non-positive timeout raise.
    """

    def __init__(
        self,
        address: str,
        *,
        transport_factory: Optional[TransportFactory] = None,
        pairing_agent: Optional[PairingAgent] = None,
        coordinator: Optional[Any] = None,
        codec: Optional[ValueCodec] = None,
        on_disconnect: Optional[Callable[[], None]] = None,
    ):
        """
        Create a disconnected session for `address`.

        Parameters:
            address (str): Peripheral address.
            transport_factory (Optional[TransportFactory]): Builds the transport for each connection
                attempt from (address, coordinator, value_listener, disconnected_callback);
                defaults to `BLEClient`.
            pairing_agent (Optional[PairingAgent]): Host pairing subsystem; defaults to `BleakPairingAgent`.
            coordinator: Provides ``call_later``, ``run_coroutine``, ``is_loop_thread`` and ``close``.
                When omitted the session creates a `LoopCoordinator` and closes it on `close()`.
            codec (Optional[ValueCodec]): Value codec shared by reads, writes and notifications.
            on_disconnect (Optional[Callable[[], None]]): Invoked when the link is lost.
        """
        self._address = address
        self._owns_coordinator = coordinator is None
        self._coordinator = coordinator or LoopCoordinator()
        self._transport_factory = transport_factory or BLEClient
        self._codec = codec or Utf8Codec()
        self._on_disconnect = on_disconnect
        self._closed = False

        self._registry = OperationRegistry(self._coordinator)
        self._state = ConnectionStateMachine()
        self._bond = BondStateMachine(
            address, self._registry, pairing_agent or BleakPairingAgent()
        )
        self._router = NotificationRouter(self._registry, self._codec)
        self._gatt = GattOperations(self._registry, self._connected_transport, self._codec)

    def __repr__(self) -> str:
        return f"Session(address={self._address!r}, state={self.connection_state.value})"

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.close()

    @property
    def address(self) -> str:
        return self._address

    @property
    def connection_state(self) -> ConnectionState:
        return self._state.state

    @property
    def bond_state(self) -> BondState:
        return self._bond.state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def mtu(self) -> int:
        """MTU of the current link, or BLEConfig.DEFAULT_MTU when not connected."""
        transport = self._connected_transport()
        return transport.mtu if transport is not None else BLEConfig.DEFAULT_MTU

    def is_connected(self) -> bool:
        return self._state.is_connected

    def is_bonded(self) -> bool:
        return self._bond.is_bonded()

    def get_services(self) -> List[Any]:
        """Services in the current service table; empty when not connected."""
        transport = self._connected_transport()
        return transport.list_services() if transport is not None else []

    def connect(
        self,
        timeout: Optional[float] = BLEConfig.CONNECTION_TIMEOUT,
        callback: Optional[ResponseCallback] = None,
    ) -> Optional[CallbackResponse]:
        """
        Open the link to the peripheral.

        Only valid while disconnected; otherwise fails at once without touching
        an attempt already in flight. Resolves with ``"connected"``.
        """
        return self._call(partial(self._connect, timeout), callback)

    def disconnect(
        self,
        timeout: Optional[float] = BLEConfig.DISCONNECT_TIMEOUT,
        callback: Optional[ResponseCallback] = None,
    ) -> Optional[CallbackResponse]:
        """
        Close the link.

        A connection attempt in progress is aborted. Whatever the transport
        reports, the session ends up disconnected with every pending operation
        rejected. Resolves with ``"disconnected"``.
        """
        return self._call(partial(self._disconnect, timeout), callback)

    def create_bond(
        self,
        timeout: Optional[float] = BLEConfig.BOND_TIMEOUT,
        callback: Optional[ResponseCallback] = None,
    ) -> Optional[CallbackResponse]:
        return self._call(
            lambda cb: self._bond.create_bond(self._state.transport, timeout, cb), callback
        )

    def discover_services(
        self,
        timeout: Optional[float] = BLEConfig.SERVICE_DISCOVERY_TIMEOUT,
        callback: Optional[ResponseCallback] = None,
    ) -> Optional[CallbackResponse]:
        return self._call(partial(self._gatt.discover_services, timeout=timeout), callback)

    def read_characteristic(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        timeout: Optional[float] = BLEConfig.GATT_IO_TIMEOUT,
        callback: Optional[ResponseCallback] = None,
    ) -> Optional[CallbackResponse]:
        return self._call(
            lambda cb: self._gatt.read_characteristic(
                service_uuid, characteristic_uuid, cb, timeout
            ),
            callback,
        )

    def write_characteristic(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        value: str,
        write_type: WriteType = WriteType.WITH_RESPONSE,
        timeout: Optional[float] = BLEConfig.GATT_IO_TIMEOUT,
        callback: Optional[ResponseCallback] = None,
    ) -> Optional[CallbackResponse]:
        return self._call(
            lambda cb: self._gatt.write_characteristic(
                service_uuid, characteristic_uuid, value, cb, write_type, timeout
            ),
            callback,
        )

    def read_descriptor(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        descriptor_uuid: str,
        timeout: Optional[float] = BLEConfig.GATT_IO_TIMEOUT,
        callback: Optional[ResponseCallback] = None,
    ) -> Optional[CallbackResponse]:
        return self._call(
            lambda cb: self._gatt.read_descriptor(
                service_uuid, characteristic_uuid, descriptor_uuid, cb, timeout
            ),
            callback,
        )

    def write_descriptor(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        descriptor_uuid: str,
        value: str,
        timeout: Optional[float] = BLEConfig.GATT_IO_TIMEOUT,
        callback: Optional[ResponseCallback] = None,
    ) -> Optional[CallbackResponse]:
        return self._call(
            lambda cb: self._gatt.write_descriptor(
                service_uuid, characteristic_uuid, descriptor_uuid, value, cb, timeout
            ),
            callback,
        )

    def set_notifications(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        enable: bool,
        notify_handler: Optional[ResponseCallback] = None,
        timeout: Optional[float] = BLEConfig.NOTIFICATION_START_TIMEOUT,
        callback: Optional[ResponseCallback] = None,
    ) -> Optional[CallbackResponse]:
        """
        Enable or disable value-change notifications for one characteristic.

        `notify_handler` becomes the standing handler of the characteristic and
        receives ``CallbackResponse(True, value)`` for every change until it is
        replaced, notifications are disabled, or the link goes away. The
        returned response only reports the configuration write.
        """

        def operation(cb: ResponseCallback) -> None:
            transport = self._connected_transport()
            if transport is None:
                cb(CallbackResponse(False, ERROR_NOT_CONNECTED))
                return
            self._router.set_notifications(
                transport,
                service_uuid,
                characteristic_uuid,
                enable,
                notify_handler,
                cb,
                timeout,
            )

        return self._call(operation, callback)

    def read_rssi(
        self,
        timeout: Optional[float] = BLEConfig.RSSI_TIMEOUT,
        callback: Optional[ResponseCallback] = None,
    ) -> Optional[CallbackResponse]:
        return self._call(partial(self._gatt.read_rssi, timeout=timeout), callback)

    def close(self) -> None:
        """
        Destroy the session.

        Idempotent. Every pending operation fails with ``"Session closed."``,
        notification handlers and the bond subscription are dropped, the
        transport is released, and an owned coordinator is shut down.
        """
        with self._state.lock:
            if self._closed:
                return
            self._closed = True
            transport = self._state.transport
            if transport is not None:
                self._state.transition_to(ConnectionState.DISCONNECTED)
        rejected = self._registry.reject_all(ERROR_SESSION_CLOSED)
        if rejected:
            logger.debug("Rejected %d pending operation(s) on close of %s", rejected, self._address)
        self._router.clear()
        self._bond.close()
        if transport is not None:
            BLEErrorHandler.safe_cleanup(transport.close, "transport close")
        if self._owns_coordinator:
            BLEErrorHandler.safe_cleanup(self._coordinator.close, "coordinator close")

    def _call(
        self,
        operation: Callable[[ResponseCallback], None],
        callback: Optional[ResponseCallback],
    ) -> Optional[CallbackResponse]:
        if callback is None:
            if self._coordinator.is_loop_thread():
                raise RuntimeError(
                    "Blocking session calls are not allowed on the event loop thread; pass a callback"
                )
            future: Future = Future()
            callback = future.set_result
        else:
            future = None
        if self._closed:
            callback(CallbackResponse(False, ERROR_SESSION_CLOSED))
        else:
            operation(callback)
        return future.result() if future is not None else None

    def _connected_transport(self) -> Optional[GattTransport]:
        with self._state.lock:
            if self._state.state != ConnectionState.CONNECTED:
                return None
            return self._state.transport

    def _connect(self, timeout: Optional[float], callback: ResponseCallback) -> None:
        with self._state.lock:
            if not self._state.can_connect:
                rejection = ERROR_ALREADY_CONNECTED
            else:
                rejection = None
                transport = self._transport_factory(
                    self._address,
                    self._coordinator,
                    self._router.dispatch,
                    self._on_link_lost,
                )
                try:
                    registered = self._registry.register(
                        OP_CONNECT,
                        partial(self._connected, transport, callback),
                        timeout,
                        TIMEOUT_CONNECT,
                    )
                except ValueError:
                    BLEErrorHandler.safe_cleanup(transport.close, "transport close")
                    raise
                if not registered:
                    BLEErrorHandler.safe_cleanup(transport.close, "transport close")
                    return
                self._state.transition_to(ConnectionState.CONNECTING, transport)
        if rejection is not None:
            logger.debug("Connect to %s rejected in state %s", self._address, self._state.state.value)
            callback(CallbackResponse(False, rejection))
            return

        def on_done(_result, error: Optional[BaseException]) -> None:
            # A late completion of an earlier attempt must not resolve this one.
            if self._state.transport is not transport:
                return
            if error is not None:
                logger.debug("Connection to %s failed: %s", self._address, error)
                self._registry.resolve(OP_CONNECT, False, ERROR_CONNECT_FAILED)
            else:
                self._registry.resolve(OP_CONNECT, True, RESULT_CONNECTED)

        try:
            transport.connect(timeout or BLEConfig.CONNECTION_TIMEOUT, on_done)
        except TransportStartError as exc:
            logger.debug("Connection to %s could not start: %s", self._address, exc)
            self._registry.resolve(OP_CONNECT, False, ERROR_CONNECT_FAILED)

    def _connected(
        self,
        transport: GattTransport,
        callback: ResponseCallback,
        response: CallbackResponse,
    ) -> None:
        established = False
        with self._state.lock:
            current = (
                self._state.transport is transport
                and self._state.state == ConnectionState.CONNECTING
            )
            if current and response.success:
                established = self._state.transition_to(ConnectionState.CONNECTED)
            elif current:
                self._state.transition_to(ConnectionState.DISCONNECTED)
        if not established:
            BLEErrorHandler.safe_cleanup(transport.close, "transport close")
            if response.success:
                response = CallbackResponse(False, ERROR_CONNECTION_ABORTED)
        else:
            logger.debug("Connected to %s", self._address)
            BLEErrorHandler.safe_execute(
                lambda: pub.sendMessage(CONNECTION_ESTABLISHED_TOPIC, session=self),
                error_msg="Error publishing connection established",
            )
        callback(response)

    def _disconnect(self, timeout: Optional[float], callback: ResponseCallback) -> None:
        with self._state.lock:
            state = self._state.state
            transport = self._state.transport

        if state == ConnectionState.DISCONNECTED or transport is None:
            callback(CallbackResponse(False, ERROR_NOT_CONNECTED))
            return

        if state == ConnectionState.CONNECTING:
            if self._registry.resolve(OP_CONNECT, False, ERROR_CONNECTION_ABORTED):
                callback(CallbackResponse(True, RESULT_DISCONNECTED))
            else:
                # The attempt finished meanwhile; act on whatever state it left.
                self._disconnect(timeout, callback)
            return

        if not self._registry.register(
            OP_DISCONNECT,
            partial(self._disconnected, transport, callback),
            timeout,
            TIMEOUT_DISCONNECT,
        ):
            return

        def on_done(_result, error: Optional[BaseException]) -> None:
            if error is not None:
                logger.debug("Disconnection from %s failed: %s", self._address, error)
                self._registry.resolve(OP_DISCONNECT, False, ERROR_DISCONNECT_FAILED)
            else:
                self._registry.resolve(OP_DISCONNECT, True, RESULT_DISCONNECTED)

        try:
            transport.disconnect(on_done)
        except TransportStartError as exc:
            logger.debug("Disconnection from %s could not start: %s", self._address, exc)
            self._registry.resolve(OP_DISCONNECT, False, ERROR_DISCONNECT_FAILED)

    def _disconnected(
        self,
        transport: GattTransport,
        callback: ResponseCallback,
        response: CallbackResponse,
    ) -> None:
        self._teardown(transport, ERROR_DISCONNECTED)
        callback(response)

    def _teardown(self, transport: GattTransport, message: str) -> bool:
        """Return to DISCONNECTED and release everything tied to `transport`."""
        with self._state.lock:
            if self._state.transport is not transport:
                return False
            self._state.transition_to(ConnectionState.DISCONNECTED)
        self._registry.reject_all(message)
        self._router.clear()
        BLEErrorHandler.safe_cleanup(transport.close, "transport close")
        return True

    def _on_link_lost(self, transport: GattTransport) -> None:
        with self._state.lock:
            current = self._state.transport is transport
            state = self._state.state
        if not current:
            logger.debug("Ignoring disconnect of stale transport for %s", self._address)
            return
        if state == ConnectionState.CONNECTING:
            self._registry.resolve(OP_CONNECT, False, ERROR_CONNECT_FAILED)
            return
        if self._registry.resolve(OP_DISCONNECT, True, RESULT_DISCONNECTED):
            return
        if not self._teardown(transport, ERROR_DISCONNECTED):
            return
        logger.debug("Link to %s lost", self._address)
        BLEErrorHandler.safe_execute(
            lambda: pub.sendMessage(CONNECTION_LOST_TOPIC, session=self),
            error_msg="Error publishing connection lost",
        )
        if self._on_disconnect is not None:
            BLEErrorHandler.safe_execute(
                self._on_disconnect, error_msg="Error in disconnect callback"
            )
