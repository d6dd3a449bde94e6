"""Bond (pairing) state tracking driven by host pairing events."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from threading import RLock
from typing import Optional, TYPE_CHECKING

from pubsub import pub

from gattsession.constants import (
    BOND_STATE_CHANGED_TOPIC,
    ERROR_BOND_FAILED,
    OP_CREATE_BOND,
    RESULT_BOND_CREATED,
    TIMEOUT_BOND,
    logger,
)
from gattsession.conversion import ResponseCallback, sanitize_address
from gattsession.errors import BLEErrorHandler, TransportStartError
from gattsession.registry import OperationRegistry

if TYPE_CHECKING:
    from gattsession.transport import GattTransport

__all__ = [
    "BondState",
    "BondStateChanged",
    "BondStateMachine",
    "PairingAgent",
    "publish_bond_state",
]


class BondState(Enum):
    """Pairing state of a peripheral."""

    NONE = "none"
    BONDING = "bonding"
    BONDED = "bonded"

    @classmethod
    def parse(cls, value) -> Optional["BondState"]:
        """Map a platform state value onto a BondState; unknown values yield None."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class BondStateChanged:
    """A pairing transition reported by the host for any device system-wide.

    A state of None stands for an invalid or unknown state code.
    """

    address: str
    previous_state: Optional[BondState]
    new_state: Optional[BondState]


def publish_bond_state(event: BondStateChanged) -> None:
    """Publish a pairing transition on the bond event topic."""
    pub.sendMessage(BOND_STATE_CHANGED_TOPIC, event=event)


class PairingAgent(ABC):
    """Host pairing subsystem."""

    @abstractmethod
    def bond_state(self, address: str) -> BondState:
        """Return the host's current bond state for `address`."""

    @abstractmethod
    def create_bond(self, address: str, transport: Optional["GattTransport"]) -> bool:
        """
        Ask the host to start pairing with `address`.

        Outcomes are reported later as BondStateChanged events.

        Returns:
            bool: False if pairing could not be started.
        """


class BondStateMachine:
    """
    Track NONE/BONDING/BONDED for one address and resolve `create_bond` callers.

    The subscription to the bond event topic is made lazily on the first
    `create_bond` and kept until `close()`. Events for any other address are
    ignored.
    """

    def __init__(self, address: str, registry: OperationRegistry, agent: PairingAgent):
        self._address = address
        self._address_key = sanitize_address(address)
        self._registry = registry
        self._agent = agent
        self._lock = RLock()
        self._state = BondState.NONE
        self._subscribed = False

    @property
    def state(self) -> BondState:
        with self._lock:
            return self._state

    def is_bonded(self) -> bool:
        """Ask the pairing agent and fold the answer into the tracked state."""
        reported = self._agent.bond_state(self._address)
        with self._lock:
            # An in-flight pairing keeps BONDING until its bond event arrives.
            if reported == BondState.BONDED or self._state == BondState.BONDED:
                self._state = reported
        return reported == BondState.BONDED

    def create_bond(
        self,
        transport: Optional["GattTransport"],
        timeout: Optional[float],
        callback: ResponseCallback,
    ) -> None:
        """
        Start pairing and resolve `callback` from the resulting bond events.

        Resolves immediately, without a new pairing request, when the device is
        already bonded.
        """
        if not self._registry.register(OP_CREATE_BOND, callback, timeout, TIMEOUT_BOND):
            return
        try:
            self._ensure_subscribed()
        except Exception:  # noqa: BLE001 - reported to the caller as a bond failure
            logger.exception("Error while subscribing to bond state events")
            self._registry.resolve(OP_CREATE_BOND, False, ERROR_BOND_FAILED)
            return

        if self.is_bonded():
            self._registry.resolve(OP_CREATE_BOND, True, RESULT_BOND_CREATED)
            return

        try:
            started = self._agent.create_bond(self._address, transport)
        except TransportStartError as exc:
            logger.debug("Pairing with %s could not start: %s", self._address, exc)
            started = False
        if not started:
            self._registry.resolve(OP_CREATE_BOND, False, ERROR_BOND_FAILED)
            return
        with self._lock:
            if self._state == BondState.NONE and self._registry.is_pending(OP_CREATE_BOND):
                self._state = BondState.BONDING

    def close(self) -> None:
        """Drop the bond event subscription."""
        with self._lock:
            subscribed = self._subscribed
            self._subscribed = False
        if subscribed:
            BLEErrorHandler.safe_cleanup(
                lambda: pub.unsubscribe(self._on_bond_event, BOND_STATE_CHANGED_TOPIC),
                "bond event unsubscribe",
            )

    def _ensure_subscribed(self) -> None:
        with self._lock:
            if self._subscribed:
                return
            pub.subscribe(self._on_bond_event, BOND_STATE_CHANGED_TOPIC)
            self._subscribed = True

    def _on_bond_event(self, event: BondStateChanged) -> None:
        # The host reports transitions for every device; only ours matter.
        if sanitize_address(event.address) != self._address_key:
            return
        previous_state = BondState.parse(event.previous_state)
        new_state = BondState.parse(event.new_state)
        logger.debug(
            "Bond state transition %s -> %s for %s",
            previous_state.value if previous_state else None,
            new_state.value if new_state else None,
            self._address,
        )
        if new_state is not None:
            with self._lock:
                self._state = new_state

        if new_state == BondState.BONDED:
            self._registry.resolve(OP_CREATE_BOND, True, RESULT_BOND_CREATED)
        elif previous_state == BondState.BONDING and new_state == BondState.NONE:
            self._registry.resolve(OP_CREATE_BOND, False, ERROR_BOND_FAILED)
        elif new_state is None:
            self._registry.resolve(OP_CREATE_BOND, False, ERROR_BOND_FAILED)
