"""Connection state management for one peripheral."""

from enum import Enum
from threading import RLock
from typing import Optional, TYPE_CHECKING

from gattsession.constants import logger

if TYPE_CHECKING:
    from gattsession.transport import GattTransport

__all__ = ["ConnectionState", "ConnectionStateMachine"]


class ConnectionState(Enum):
    """Enum for managing BLE connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionStateMachine:
    """Thread-safe connection state for a single peripheral address.

    The machine also owns the reference to the active transport: a transport is
    attached when a connection attempt starts and released whenever the state
    returns to DISCONNECTED.
    """

    _VALID_TRANSITIONS = {
        ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
        ConnectionState.CONNECTING: {
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        },
        ConnectionState.CONNECTED: {ConnectionState.DISCONNECTED},
    }

    def __init__(self):
        """Initialize state machine with disconnected state."""
        self._state_lock = RLock()
        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional["GattTransport"] = None

    @property
    def lock(self) -> RLock:
        """Expose the reentrant lock controlling state transitions."""
        return self._state_lock

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def can_connect(self) -> bool:
        """Check if a new connection can be initiated."""
        return self.state == ConnectionState.DISCONNECTED

    @property
    def transport(self) -> Optional["GattTransport"]:
        """Transport of the current connection attempt or link, None when disconnected."""
        with self._state_lock:
            return self._transport

    def transition_to(
        self,
        new_state: ConnectionState,
        transport: Optional["GattTransport"] = None,
    ) -> bool:
        """Thread-safe state transition with validation.

        Args:
        ----
            new_state: Target state to transition to
            transport: Transport associated with this transition (optional)

        Returns:
        -------
            True if transition was valid and applied, False otherwise

        """
        with self._state_lock:
            if new_state not in self._VALID_TRANSITIONS[self._state]:
                logger.warning(
                    "Invalid state transition: %s → %s",
                    self._state.value,
                    new_state.value,
                )
                return False
            old_state = self._state
            self._state = new_state
            if transport is not None:
                self._transport = transport
            elif new_state == ConnectionState.DISCONNECTED:
                self._transport = None
            logger.debug("State transition: %s → %s", old_state.value, new_state.value)
            return True
