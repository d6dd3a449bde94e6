"""Shared configuration, constants, and messages for GATT sessions."""

import logging

logger = logging.getLogger("gattsession")

# Client Characteristic Configuration descriptor (notifications/indications)
CLIENT_CHARACTERISTIC_CONFIG = "00002902-0000-1000-8000-00805f9b34fb"


class BLEConfig:
    """Configuration constants for GATT session operations."""

    CONNECTION_TIMEOUT = 10.0
    DISCONNECT_TIMEOUT = 5.0
    GATT_IO_TIMEOUT = 10.0
    NOTIFICATION_START_TIMEOUT = 10.0
    SERVICE_DISCOVERY_TIMEOUT = 20.0
    RSSI_TIMEOUT = 5.0
    RSSI_SCAN_DURATION = 2.0
    BOND_TIMEOUT = 30.0
    DEFAULT_MTU = 23
    EVENT_THREAD_JOIN_TIMEOUT = 2.0


# Operation kinds used as the first segment of correlation keys
OP_CONNECT = "connect"
OP_DISCONNECT = "disconnect"
OP_CREATE_BOND = "createBond"
OP_DISCOVER_SERVICES = "discoverServices"
OP_READ_RSSI = "readRssi"
OP_READ = "read"
OP_WRITE = "write"
OP_READ_DESCRIPTOR = "readDescriptor"
OP_WRITE_DESCRIPTOR = "writeDescriptor"

KEY_SEPARATOR = "|"

# pypubsub topics
BOND_STATE_CHANGED_TOPIC = "gattsession.bond.changed"
CONNECTION_ESTABLISHED_TOPIC = "gattsession.connection.established"
CONNECTION_LOST_TOPIC = "gattsession.connection.lost"

# Success values
RESULT_CONNECTED = "connected"
RESULT_DISCONNECTED = "disconnected"
RESULT_BOND_CREATED = "Creating bond succeeded."
RESULT_SERVICES_DISCOVERED = "Service discovery succeeded."

# Error message constants
ERROR_SERVICE_NOT_FOUND = "Service not found."
ERROR_CHARACTERISTIC_NOT_FOUND = "Characteristic not found."
ERROR_DESCRIPTOR_NOT_FOUND = "Descriptor not found."
ERROR_NOT_CONNECTED = "Not connected."
ERROR_ALREADY_CONNECTED = "Already connected or connection in progress."
ERROR_SESSION_CLOSED = "Session closed."
ERROR_DISCONNECTED = "Disconnected."
ERROR_OPERATION_PENDING = "Operation already in progress: {0}"
ERROR_INVALID_VALUE = "Invalid value."
ERROR_CONNECTION_ABORTED = "Connection aborted."

ERROR_CONNECT_FAILED = "Connection failed."
ERROR_DISCONNECT_FAILED = "Disconnection failed."
ERROR_DISCOVERY_FAILED = "Service discovery failed."
ERROR_RSSI_FAILED = "Reading RSSI failed."
ERROR_READ_FAILED = "Reading characteristic failed."
ERROR_WRITE_FAILED = "Writing characteristic failed."
ERROR_READ_DESCRIPTOR_FAILED = "Reading descriptor failed."
ERROR_WRITE_DESCRIPTOR_FAILED = "Writing descriptor failed."
ERROR_NOTIFICATIONS_FAILED = "Setting notification failed."
ERROR_BOND_FAILED = "Creating bond failed."

TIMEOUT_CONNECT = "Connection timeout."
TIMEOUT_DISCONNECT = "Disconnection timeout."
TIMEOUT_DISCOVERY = "Service discovery timeout."
TIMEOUT_RSSI = "Reading RSSI timeout."
TIMEOUT_READ = "Read timeout."
TIMEOUT_WRITE = "Write timeout."
TIMEOUT_READ_DESCRIPTOR = "Read descriptor timeout."
TIMEOUT_WRITE_DESCRIPTOR = "Write descriptor timeout."
TIMEOUT_NOTIFICATIONS = "Set notifications timeout."
TIMEOUT_BOND = "Creating bond timeout."

__all__ = [
    "BLEConfig",
    "BOND_STATE_CHANGED_TOPIC",
    "CLIENT_CHARACTERISTIC_CONFIG",
    "CONNECTION_ESTABLISHED_TOPIC",
    "CONNECTION_LOST_TOPIC",
    "KEY_SEPARATOR",
    "logger",
]
