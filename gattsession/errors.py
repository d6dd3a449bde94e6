"""Error types and handling utilities for GATT session operations."""

from concurrent.futures import TimeoutError as FutureTimeoutError

from bleak.exc import BleakError

from gattsession.constants import logger

__all__ = ["BLEError", "BLEErrorHandler", "TransportStartError"]


class BLEError(Exception):
    """Base exception for GATT session errors."""


class TransportStartError(BLEError):
    """Raised by a transport when a command could not even be started.

    Typical causes are a busy stack, a link that is not connected, or an
    event loop that has already been shut down. No completion will ever be
    delivered for a command that raised this error.
    """


class BLEErrorHandler:
    """Helper class for consistent error handling in BLE operations.

    This class provides static methods for standardized error handling patterns
    used on best-effort paths (cleanup, event publishing, backend property
    queries) where a failure must be logged but never propagated.
    """

    @staticmethod
    def safe_execute(
        func,
        default_return=None,
        log_error: bool = True,
        error_msg: str = "Error in operation",
        reraise: bool = False,
    ):
        """
        Execute a zero-argument callable and return its result, falling back to a provided default on failure.

        Parameters:
            func (callable): A zero-argument callable to execute.
            default_return: Value to return if execution fails.
            log_error (bool): If True, log caught exceptions.
            error_msg (str): Message prefix used when logging errors.
            reraise (bool): If True, re-raise any caught exception instead of returning default_return.

        Returns:
            The value returned by `func()` on success, or `default_return` if execution failed.
        """
        try:
            return func()
        except (BleakError, BLEError, FutureTimeoutError) as e:
            if log_error:
                logger.debug("%s: %s", error_msg, e)
            if reraise:
                raise
            return default_return
        except Exception:
            if log_error:
                logger.exception("%s", error_msg)
            if reraise:
                raise
            return default_return

    @staticmethod
    def safe_cleanup(func, cleanup_name: str = "cleanup operation"):
        """
        Execute a cleanup callable and suppress any exceptions raised during its execution.

        Parameters:
            func (Callable[[], Any]): Zero-argument cleanup function to execute.
            cleanup_name (str): Human-readable name for the cleanup operation used in the log message.
        """
        try:
            func()
        except Exception as e:  # noqa: BLE001 - cleanup paths must not raise
            logger.debug("Error during %s: %s", cleanup_name, e)
