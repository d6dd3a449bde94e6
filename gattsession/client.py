"""bleak-backed transport and pairing agent."""

from concurrent.futures import Future
from functools import partial
from threading import RLock
from typing import Any, Dict, Optional, TYPE_CHECKING

from bleak import BleakClient as BleakRootClient
from bleak import BleakScanner

from gattsession.bonding import (
    BondState,
    BondStateChanged,
    PairingAgent,
    publish_bond_state,
)
from gattsession.constants import BLEConfig, logger
from gattsession.conversion import WriteType, sanitize_address
from gattsession.errors import BLEError, BLEErrorHandler, TransportStartError
from gattsession.transport import (
    Completion,
    DisconnectedCallback,
    GattTransport,
    ValueListener,
)

if TYPE_CHECKING:
    from gattsession.coordination import LoopCoordinator

__all__ = ["BLEClient", "BleakPairingAgent"]


class BLEClient(GattTransport):
    """
    Transport wrapper running Bleak's async operations on a coordinator's event loop.

    Commands are scheduled on the coordinator's loop thread and return
    immediately; each completion is delivered on that thread as
    ``on_done(result, error)``. Commands that cannot be scheduled raise
    `TransportStartError`.
    """

    def __init__(
        self,
        address: str,
        coordinator: "LoopCoordinator",
        value_listener: Optional[ValueListener] = None,
        disconnected_callback: Optional[DisconnectedCallback] = None,
        **kwargs,
    ) -> None:
        """
        Parameters:
            address (str): Peripheral address.
            coordinator (LoopCoordinator): Provides the event loop coroutines run on.
            value_listener (Optional[ValueListener]): Receives every notification payload.
            disconnected_callback (Optional[DisconnectedCallback]): Invoked with this transport on link loss.
            **kwargs: Forwarded to the underlying Bleak client constructor.
        """
        self.address = address
        self.error_handler = BLEErrorHandler()
        self._coordinator = coordinator
        self._value_listener = value_listener
        self._disconnected_callback = disconnected_callback
        self._client_kwargs = kwargs
        self._closed = False
        self.bleak_client: Optional[BleakRootClient] = None

    def __repr__(self) -> str:
        return f"BLEClient(address={self.address!r})"

    @property
    def services(self) -> Optional[Any]:
        bleak_client = self.bleak_client
        if bleak_client is None:
            return None
        # bleak raises when services are read before discovery has completed
        return self.error_handler.safe_execute(
            lambda: bleak_client.services,
            default_return=None,
            log_error=False,
        )

    @property
    def mtu(self) -> int:
        bleak_client = self.bleak_client
        if bleak_client is None:
            return BLEConfig.DEFAULT_MTU
        return self.error_handler.safe_execute(
            lambda: bleak_client.mtu_size,
            default_return=BLEConfig.DEFAULT_MTU,
            error_msg="Unable to read MTU",
        )

    def is_connected(self) -> bool:
        """
        Determine whether the underlying Bleak client is currently connected.

        Returns:
            `True` if the Bleak client reports an active connection; `False` otherwise,
            including when no Bleak client exists or its state cannot be read.
        """
        bleak_client = self.bleak_client
        if bleak_client is None:
            return False

        def _check_connection():
            connected = getattr(bleak_client, "is_connected", False)
            if callable(connected):
                connected = connected()
            return bool(connected)

        return self.error_handler.safe_execute(
            _check_connection,
            default_return=False,
            error_msg="Unable to read bleak connection state",
        )

    def connect(self, timeout: float, on_done: Completion) -> None:
        if self._closed:
            raise TransportStartError("Cannot connect: client closed")
        if self.bleak_client is None:
            self.bleak_client = BleakRootClient(
                self.address,
                disconnected_callback=self._on_ble_disconnect,
                timeout=timeout,
                **self._client_kwargs,
            )
        self._submit(self._connect(self.bleak_client), on_done, "connect")

    def disconnect(self, on_done: Completion) -> None:
        bleak_client = self._require_client("disconnect")
        self._submit(bleak_client.disconnect(), on_done, "disconnect")

    def discover_services(self, on_done: Completion) -> None:
        bleak_client = self._require_connected("discover services")
        self._submit(self._discover_services(bleak_client), on_done, "discover services")

    def read_characteristic(self, characteristic: Any, on_done: Completion) -> None:
        bleak_client = self._require_connected("read")
        self._submit(bleak_client.read_gatt_char(characteristic), on_done, "read")

    def write_characteristic(
        self,
        characteristic: Any,
        data: bytes,
        write_type: WriteType,
        on_done: Completion,
    ) -> None:
        bleak_client = self._require_connected("write")
        self._submit(
            self._write_char(bleak_client, characteristic, data, write_type.response),
            on_done,
            "write",
        )

    def read_descriptor(self, descriptor: Any, on_done: Completion) -> None:
        bleak_client = self._require_connected("read descriptor")
        self._submit(
            bleak_client.read_gatt_descriptor(descriptor.handle), on_done, "read descriptor"
        )

    def write_descriptor(self, descriptor: Any, data: bytes, on_done: Completion) -> None:
        bleak_client = self._require_connected("write descriptor")
        self._submit(
            self._write_descriptor(bleak_client, descriptor, data),
            on_done,
            "write descriptor",
        )

    def read_rssi(self, on_done: Completion) -> None:
        bleak_client = self._require_connected("read RSSI")
        self._submit(self._read_rssi(bleak_client), on_done, "read RSSI")

    def start_notifications(self, characteristic: Any, on_done: Completion) -> None:
        bleak_client = self._require_connected("start notify")
        self._submit(
            bleak_client.start_notify(
                characteristic, partial(self._on_notify, characteristic)
            ),
            on_done,
            "start notify",
        )

    def stop_notifications(self, characteristic: Any, on_done: Completion) -> None:
        bleak_client = self._require_connected("stop notify")
        self._submit(bleak_client.stop_notify(characteristic), on_done, "stop notify")

    def pair(self, on_done: Completion) -> None:
        """Ask the backend to pair; the completion result is True on success."""
        bleak_client = self._require_connected("pair")
        self._submit(self._pair(bleak_client), on_done, "pair")

    def close(self) -> None:
        """
        Release the link.

        Idempotent. A connected Bleak client is disconnected in the background;
        the event loop itself belongs to the coordinator and is left running.
        """
        if self._closed:
            return
        self._closed = True
        bleak_client = self.bleak_client
        if bleak_client is None or not self.is_connected():
            return
        self.error_handler.safe_cleanup(
            lambda: self._submit(
                bleak_client.disconnect(), self._log_close_result, "disconnect on close"
            ),
            "client close",
        )

    def _require_client(self, label: str) -> BleakRootClient:
        if self._closed or self.bleak_client is None:
            raise TransportStartError(f"Cannot {label}: BLE client not initialized")
        return self.bleak_client

    def _require_connected(self, label: str) -> BleakRootClient:
        bleak_client = self._require_client(label)
        if not self.is_connected():
            raise TransportStartError(f"Cannot {label}: not connected")
        return bleak_client

    def _submit(self, coro, on_done: Completion, label: str) -> None:
        try:
            future = self._coordinator.run_coroutine(coro)
        except RuntimeError as exc:
            coro.close()
            raise TransportStartError(f"Cannot {label}: event loop unavailable") from exc
        future.add_done_callback(partial(self._deliver, on_done, label))

    @staticmethod
    def _deliver(on_done: Completion, label: str, future: Future) -> None:
        if future.cancelled():
            on_done(None, BLEError(f"{label} cancelled"))
            return
        error = future.exception()
        if error is not None:
            logger.debug("BLE %s failed: %s", label, error)
            on_done(None, error)
            return
        on_done(future.result(), None)

    @staticmethod
    def _log_close_result(_result, error: Optional[BaseException]) -> None:
        if error is not None:
            logger.debug("Disconnect during close failed: %s", error)

    async def _connect(self, bleak_client: BleakRootClient) -> bool:
        await bleak_client.connect()
        await self._acquire_mtu(bleak_client)
        return True

    async def _acquire_mtu(self, bleak_client: BleakRootClient) -> None:
        # BlueZ only learns the negotiated MTU after an explicit acquire.
        backend = getattr(bleak_client, "_backend", None)
        acquire = getattr(backend, "_acquire_mtu", None)
        if acquire is None:
            return
        try:
            await acquire()
        except Exception as e:  # noqa: BLE001 - MTU stays at the backend default
            logger.debug("Failed to acquire MTU: %s", e)

    @staticmethod
    async def _discover_services(bleak_client: BleakRootClient):
        get_services = getattr(bleak_client, "get_services", None)
        if callable(get_services):
            return await get_services()
        return bleak_client.services

    @staticmethod
    async def _write_char(
        bleak_client: BleakRootClient, characteristic: Any, data: bytes, response: bool
    ) -> bytes:
        await bleak_client.write_gatt_char(characteristic, data, response=response)
        return data

    @staticmethod
    async def _write_descriptor(
        bleak_client: BleakRootClient, descriptor: Any, data: bytes
    ) -> bytes:
        await bleak_client.write_gatt_descriptor(descriptor.handle, data)
        return data

    async def _read_rssi(self, bleak_client: BleakRootClient) -> int:
        get_rssi = getattr(bleak_client, "get_rssi", None)
        if callable(get_rssi):
            return int(await get_rssi())
        # Fall back to the signal strength of the peripheral's latest advertisement.
        found = await BleakScanner.discover(
            timeout=BLEConfig.RSSI_SCAN_DURATION, return_adv=True
        )
        target = sanitize_address(self.address)
        for device, advertisement in found.values():
            if sanitize_address(device.address) == target:
                return int(advertisement.rssi)
        raise BLEError(f"No advertisement from {self.address} to read RSSI from")

    @staticmethod
    async def _pair(bleak_client: BleakRootClient) -> bool:
        result = await bleak_client.pair()
        # Older bleak releases report failure as False, newer ones raise.
        return result is not False

    def _on_notify(self, characteristic: Any, _sender: Any, data: bytearray) -> None:
        listener = self._value_listener
        if listener is None:
            return
        listener(characteristic.service_uuid, characteristic.uuid, bytes(data))

    def _on_ble_disconnect(self, _bleak_client: BleakRootClient) -> None:
        logger.debug("BLE client %s disconnected.", self.address)
        callback = self._disconnected_callback
        if callback is not None:
            callback(self)


class BleakPairingAgent(PairingAgent):
    """
    Pairing subsystem backed by `BleakClient.pair()`.

    bleak has no system-wide bond events, so this agent publishes the
    transitions of the pairings it starts itself. Bonded addresses are
    remembered for the lifetime of the agent only.
    """

    def __init__(self):
        self._lock = RLock()
        self._states: Dict[str, BondState] = {}

    def bond_state(self, address: str) -> BondState:
        with self._lock:
            return self._states.get(sanitize_address(address) or "", BondState.NONE)

    def create_bond(self, address: str, transport: Optional[GattTransport]) -> bool:
        if not isinstance(transport, BLEClient):
            logger.debug("Cannot pair with %s: no bleak transport", address)
            return False
        previous = self.bond_state(address)
        # Announce BONDING first; the pairing result may arrive on the loop thread at any time.
        self._publish(address, previous, BondState.BONDING)
        try:
            transport.pair(partial(self._paired, address))
        except TransportStartError as e:
            logger.debug("Cannot pair with %s: %s", address, e)
            self._publish(address, BondState.BONDING, previous)
            return False
        return True

    def _paired(self, address: str, result, error: Optional[BaseException]) -> None:
        if error is None and result:
            self._publish(address, BondState.BONDING, BondState.BONDED)
        else:
            logger.debug("Pairing with %s failed: %s", address, error)
            self._publish(address, BondState.BONDING, BondState.NONE)

    def _publish(self, address: str, previous: BondState, new: BondState) -> None:
        with self._lock:
            self._states[sanitize_address(address) or ""] = new
        BLEErrorHandler.safe_execute(
            lambda: publish_bond_state(BondStateChanged(address, previous, new)),
            error_msg="Error publishing bond state",
        )
