"""Exception taxonomy and error handling utilities for GATT operations."""

from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Optional

from bleak.exc import BleakError

from gattmanager.constants import (
    ERROR_CONNECT_FAILED,
    ERROR_DESCRIPTOR_WRITE_FAILED,
    ERROR_DISCOVERY_FAILED,
    ERROR_EMPTY_PAYLOAD,
    ERROR_LINK_LOST,
    ERROR_OPERATION_IN_PROGRESS,
    ERROR_READ_FAILED,
    ERROR_RSSI_FAILED,
    ERROR_UUID_NOT_FOUND,
    ERROR_WRITE_FAILED,
    logger,
)

__all__ = [
    "GattError",
    "ConnectionPreconditionError",
    "NotConnectedError",
    "EmptyPayloadError",
    "OperationInProgressError",
    "ResourceNotFoundError",
    "GattStatusError",
    "DiscoveryFailedError",
    "ReadFailedError",
    "WriteFailedError",
    "SubscriptionFailedError",
    "RssiReadFailedError",
    "LinkLostError",
    "ConnectionFailedError",
    "GattTimeoutError",
    "GattErrorHandler",
]


class GattError(Exception):
    """Base error for gattmanager."""


# Precondition errors: detected locally, transport untouched


class ConnectionPreconditionError(GattError):
    """Raised when a connect request is missing an identity or a usable adapter."""


class NotConnectedError(GattError):
    """Raised when an operation needs a connected link and there is none."""


class EmptyPayloadError(GattError):
    """Raised when a write is requested with no bytes to write."""

    def __init__(self, target: Any = None):
        self.target = target
        super().__init__(ERROR_EMPTY_PAYLOAD.format(_describe(target)))


class OperationInProgressError(GattError):
    """Raised when a request of a kind is issued while one of that kind is pending."""

    def __init__(self, kind: Any):
        self.kind = kind
        super().__init__(ERROR_OPERATION_IN_PROGRESS.format(getattr(kind, "value", kind)))


# Resource errors


class ResourceNotFoundError(GattError):
    """Raised when a UUID does not resolve in the discovered catalog."""

    def __init__(self, uuid: Any, message: Optional[str] = None):
        self.uuid = uuid
        super().__init__(message or ERROR_UUID_NOT_FOUND.format(uuid))


# Transport errors: carry the raw platform status code


class GattStatusError(GattError):
    """Base for failures reported by a transport callback with a non-zero status."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class DiscoveryFailedError(GattStatusError):
    """Raised when service discovery completes with a failure status."""

    def __init__(self, status: Optional[int]):
        super().__init__(ERROR_DISCOVERY_FAILED.format(status), status)


class ReadFailedError(GattStatusError):
    """Raised when a characteristic read completes with a failure status."""

    def __init__(self, characteristic: Any, status: Optional[int]):
        self.characteristic = characteristic
        super().__init__(
            ERROR_READ_FAILED.format(_describe(characteristic), status), status
        )


class WriteFailedError(GattStatusError):
    """Raised when a characteristic write is refused or completes with a failure status."""

    def __init__(self, characteristic: Any, status: Optional[int]):
        self.characteristic = characteristic
        super().__init__(
            ERROR_WRITE_FAILED.format(_describe(characteristic), status), status
        )


class SubscriptionFailedError(GattStatusError):
    """Raised when the configuration descriptor write for a subscription toggle fails."""

    def __init__(self, characteristic: Any, descriptor: Any, status: Optional[int]):
        self.characteristic = characteristic
        self.descriptor = descriptor
        super().__init__(
            ERROR_DESCRIPTOR_WRITE_FAILED.format(_describe(characteristic), status),
            status,
        )


class RssiReadFailedError(GattStatusError):
    """Raised when an RSSI read completes with a failure status."""

    def __init__(self, status: Optional[int]):
        super().__init__(ERROR_RSSI_FAILED.format(status), status)


# Lifecycle errors


class LinkLostError(GattStatusError):
    """Raised on every open stream when the link drops without being asked to."""

    def __init__(self, status: Optional[int] = None):
        super().__init__(ERROR_LINK_LOST.format(status), status)


class ConnectionFailedError(GattStatusError):
    """Raised when the transport reports a failure before the link was established."""

    def __init__(self, address: Optional[str], status: Optional[int]):
        self.address = address
        super().__init__(ERROR_CONNECT_FAILED.format(address, status), status)


class GattTimeoutError(GattError):
    """Raised when a blocking wait on a stream does not finish in time."""


def _describe(target: Any) -> str:
    uuid = getattr(target, "uuid", None)
    return str(uuid if uuid is not None else target)


class GattErrorHandler:
    """
    Helper class for consistent error handling in GATT operations.

    Centralizes the places where a failure is logged instead of propagated:
    observer callbacks, transport cleanup and timer cancellation.
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
        Execute a zero-argument callable and return its result, falling back to a default on failure.

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
        except (GattError, BleakError, FutureTimeoutError) as e:
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
        """Execute a cleanup callable, logging and suppressing any exception it raises."""
        try:
            func()
        except Exception as e:  # noqa: BLE001 - cleanup paths must not raise
            logger.debug("Error during %s: %s", cleanup_name, e)
