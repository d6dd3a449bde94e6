"""Request/response sessions over event-driven BLE GATT connections."""

from gattsession.constants import (
    BLEConfig,
    BOND_STATE_CHANGED_TOPIC,
    CLIENT_CHARACTERISTIC_CONFIG,
    CONNECTION_ESTABLISHED_TOPIC,
    CONNECTION_LOST_TOPIC,
    KEY_SEPARATOR,
    logger,
)
from gattsession.errors import *
from gattsession.conversion import *
from gattsession.coordination import *
from gattsession.registry import *
from gattsession.state import *
from gattsession.bonding import *
from gattsession.transport import *
from gattsession.gatt import *
from gattsession.notifications import *
from gattsession.client import *
from gattsession.session import *

__all__ = [
    # Core classes
    "Session",
    "BLEClient",
    "BleakPairingAgent",
    "GattTransport",
    "PairingAgent",
    "OperationRegistry",
    "PendingOperation",
    "ConnectionState",
    "ConnectionStateMachine",
    "BondState",
    "BondStateChanged",
    "BondStateMachine",
    "NotificationRouter",
    "GattOperations",
    "LoopCoordinator",
    "Deadline",
    "BLEError",
    "BLEErrorHandler",
    "TransportStartError",
    # Values
    "CallbackResponse",
    "WriteType",
    "ValueCodec",
    "Utf8Codec",
    "HexCodec",
    # Type aliases
    "Completion",
    "DisconnectedCallback",
    "ResponseCallback",
    "Scheduler",
    "TransportFactory",
    "ValueListener",
    # Constants/helpers
    "BLEConfig",
    "CLIENT_CHARACTERISTIC_CONFIG",
    "BOND_STATE_CHANGED_TOPIC",
    "CONNECTION_ESTABLISHED_TOPIC",
    "CONNECTION_LOST_TOPIC",
    "KEY_SEPARATOR",
    "normalize_uuid",
    "operation_key",
    "publish_bond_state",
    "resolve_characteristic",
    "resolve_descriptor",
    "resolve_service",
    "sanitize_address",
    "logger",
]
