"""Interface to the host BLE stack consumed by a session."""

from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional

from gattsession.constants import BLEConfig
from gattsession.conversion import WriteType

__all__ = [
    "Completion",
    "DisconnectedCallback",
    "GattTransport",
    "ValueListener",
]

# Invoked exactly once per started command with (result, error); error is None on success.
Completion = Callable[[Any, Optional[BaseException]], None]
# Invoked for every characteristic value change with (service_uuid, characteristic_uuid, data).
ValueListener = Callable[[str, str, bytes], None]
DisconnectedCallback = Callable[["GattTransport"], None]


class GattTransport(ABC):
    """
    Command surface of one peripheral link on the host BLE stack.

    Every command either raises `TransportStartError` synchronously, in which
    case no completion follows, or returns and later calls its `on_done`
    completion once. Commands are serialized by the stack itself.

    Service tables returned by `services` expose ``get_service(uuid)``; services
    expose ``uuid`` and ``get_characteristic(uuid)``; characteristics expose
    ``uuid``, ``service_uuid`` and ``get_descriptor(uuid)``; descriptors expose
    ``uuid`` and ``handle``. bleak's GATT objects satisfy this shape.
    """

    address: str

    @property
    @abstractmethod
    def services(self) -> Optional[Any]:
        """Current service table, or None before discovery."""

    @property
    def mtu(self) -> int:
        return BLEConfig.DEFAULT_MTU

    def list_services(self) -> List[Any]:
        services = self.services
        return list(services) if services else []

    def refresh_cache(self) -> bool:
        """
        Invalidate the stack's cached service table before rediscovery.

        Returns:
            bool: True if the cache was invalidated; the default transport does not
                support this and returns False.
        """
        return False

    @abstractmethod
    def connect(self, timeout: float, on_done: Completion) -> None: ...

    @abstractmethod
    def disconnect(self, on_done: Completion) -> None: ...

    @abstractmethod
    def discover_services(self, on_done: Completion) -> None: ...

    @abstractmethod
    def read_characteristic(self, characteristic: Any, on_done: Completion) -> None: ...

    @abstractmethod
    def write_characteristic(
        self,
        characteristic: Any,
        data: bytes,
        write_type: WriteType,
        on_done: Completion,
    ) -> None:
        """Write `data`; the completion result is the payload actually written."""

    @abstractmethod
    def read_descriptor(self, descriptor: Any, on_done: Completion) -> None: ...

    @abstractmethod
    def write_descriptor(self, descriptor: Any, data: bytes, on_done: Completion) -> None: ...

    @abstractmethod
    def read_rssi(self, on_done: Completion) -> None: ...

    @abstractmethod
    def start_notifications(self, characteristic: Any, on_done: Completion) -> None:
        """Write the notification configuration so value changes start flowing."""

    @abstractmethod
    def stop_notifications(self, characteristic: Any, on_done: Completion) -> None: ...

    @abstractmethod
    def close(self) -> None:
        """Release the link and every resource held by the transport."""
