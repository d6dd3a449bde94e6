"""Correlation of asynchronous completions to their originating callers."""

from dataclasses import dataclass, field
from functools import partial
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Protocol

from gattsession.constants import ERROR_OPERATION_PENDING, ERROR_SESSION_CLOSED, logger
from gattsession.conversion import CallbackResponse, ResponseCallback
from gattsession.errors import BLEErrorHandler

__all__ = ["OperationRegistry", "PendingOperation", "Scheduler"]


class Scheduler(Protocol):
    """Anything able to run a callback after a delay and hand back a cancellable handle."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> Any: ...


@dataclass(eq=False)
class PendingOperation:
    """A registered caller waiting for exactly one resolution."""

    key: str
    callback: ResponseCallback
    timeout_message: str
    deadline: Optional[Any] = field(default=None, repr=False)


class OperationRegistry:
    """
    Map correlation keys to pending callers and resolve each caller exactly once.

    A completion from the transport, a start failure, a deadline expiry and a
    session teardown all funnel through the same removal step, so whichever
    happens first wins and every later attempt for that key is a no-op.

    A key that is already pending is never superseded: a second registration
    under it is rejected and only the new caller is told so.
    """

    def __init__(self, scheduler: Scheduler):
        """
        Create an empty registry.

        Parameters:
            scheduler (Scheduler): Provides `call_later(delay, callback)` used to arm deadlines.
        """
        self._scheduler = scheduler
        self._pending: Dict[str, PendingOperation] = {}
        self._lock = RLock()

    def register(
        self,
        key: str,
        callback: ResponseCallback,
        timeout: Optional[float],
        timeout_message: str,
    ) -> bool:
        """
        Register a caller under `key` and arm its deadline.

        Parameters:
            key (str): Correlation key identifying operation kind and target.
            callback (ResponseCallback): Single-use result callback.
            timeout (Optional[float]): Seconds until the operation fails with `timeout_message`;
                None registers the operation without a deadline.
            timeout_message (str): Value delivered when the deadline expires.

        Returns:
            bool: True if registered; False if `key` was already pending or the
                deadline could not be armed, in which case `callback` has already
                been invoked with a failure.

        Raises:
            ValueError: If `timeout` is not positive.
        """
        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {timeout}")
        rejection = None
        with self._lock:
            if key in self._pending:
                logger.warning("Rejecting %s: an operation is already pending", key)
                rejection = ERROR_OPERATION_PENDING.format(key)
            else:
                operation = PendingOperation(key, callback, timeout_message)
                self._pending[key] = operation
                if timeout is not None:
                    try:
                        operation.deadline = self._scheduler.call_later(
                            timeout, partial(self._expire, operation)
                        )
                    except RuntimeError as e:
                        # The event loop is gone, so nothing could ever time this out.
                        del self._pending[key]
                        logger.debug("Cannot arm deadline for %s: %s", key, e)
                        rejection = ERROR_SESSION_CLOSED
        if rejection is not None:
            self._invoke(key, callback, CallbackResponse(False, rejection))
            return False
        return True

    def resolve(self, key: str, success: bool, value: str) -> bool:
        """
        Deliver a result to the caller pending under `key`, if any.

        Returns:
            bool: True if a pending caller was resolved, False if `key` was absent
                (already resolved, timed out, or never registered).
        """
        return self._complete(key, success, value)

    def reject_all(self, message: str) -> int:
        """
        Fail every pending operation with `message` and cancel all deadlines.

        Returns:
            int: Number of operations rejected.
        """
        with self._lock:
            operations: List[PendingOperation] = list(self._pending.values())
            self._pending.clear()
        for operation in operations:
            self._finish(operation, CallbackResponse(False, message))
        return len(operations)

    def is_pending(self, key: str) -> bool:
        with self._lock:
            return key in self._pending

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def _expire(self, operation: PendingOperation) -> None:
        # Only the registration that armed this deadline may be timed out by it.
        self._complete(
            operation.key, False, operation.timeout_message, expected=operation
        )

    def _complete(
        self,
        key: str,
        success: bool,
        value: str,
        expected: Optional[PendingOperation] = None,
    ) -> bool:
        with self._lock:
            operation = self._pending.get(key)
            if operation is None or (expected is not None and operation is not expected):
                return False
            del self._pending[key]
        self._finish(operation, CallbackResponse(success, value))
        return True

    def _finish(self, operation: PendingOperation, response: CallbackResponse) -> None:
        deadline = operation.deadline
        if deadline is not None:
            BLEErrorHandler.safe_cleanup(deadline.cancel, "deadline cancel")
        logger.debug(
            "%s: %s %s",
            "resolve" if response.success else "reject",
            operation.key,
            response.value,
        )
        self._invoke(operation.key, operation.callback, response)

    @staticmethod
    def _invoke(key: str, callback: ResponseCallback, response: CallbackResponse) -> None:
        try:
            callback(response)
        except Exception:  # noqa: BLE001 - caller faults must not reach the transport thread
            logger.exception("Callback for %s raised", key)
