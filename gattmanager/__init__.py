"""Client-side GATT session engine with per-operation streams."""

from gattmanager.constants import (
    BATTERY_CHARACTERISTIC_UUID,
    BATTERY_SERVICE_UUID,
    BLOCKING_WAIT_TIMEOUT,
    CLIENT_CHARACTERISTIC_CONFIG_UUID,
    CONNECTION_TIMEOUT,
    DISABLE_NOTIFICATION_VALUE,
    DISCONNECT_TIMEOUT_SECONDS,
    ENABLE_INDICATION_VALUE,
    ENABLE_NOTIFICATION_VALUE,
    EVENT_THREAD_JOIN_TIMEOUT,
    GATT_FAILURE,
    GATT_IO_TIMEOUT,
    GATT_SUCCESS,
    RSSI_UPDATE_INTERVAL,
    TOPIC_CHARACTERISTIC_CHANGED,
    TOPIC_CONNECTION_ESTABLISHED,
    TOPIC_CONNECTION_LOST,
    GattConfig,
    logger,
)
from gattmanager.errors import *
from gattmanager.model import (
    GattCharacteristic,
    GattDescriptor,
    GattObserveData,
    GattService,
    ObserveState,
    PeripheralIdentity,
    ServiceCatalog,
    normalize_uuid,
)
from gattmanager.registry import OperationKind, Role
from gattmanager.state import ConnectionState, SessionStateManager
from gattmanager.streams import Observable, Subject, Subscription
from gattmanager.transport import Transport, TransportCallbacks
from gattmanager.session import GattSession
from gattmanager.bleak_transport import BleakLink, BleakTransport

__all__ = [
    # Core classes
    "GattSession",
    "GattConfig",
    "ConnectionState",
    "SessionStateManager",
    "GattErrorHandler",
    "BleakTransport",
    "BleakLink",
    "Transport",
    "TransportCallbacks",
    # Streams
    "Observable",
    "Subject",
    "Subscription",
    # Model
    "PeripheralIdentity",
    "GattService",
    "GattCharacteristic",
    "GattDescriptor",
    "GattObserveData",
    "ObserveState",
    "ServiceCatalog",
    "OperationKind",
    "Role",
    "normalize_uuid",
    # Errors
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
    # Constants
    "BATTERY_CHARACTERISTIC_UUID",
    "BATTERY_SERVICE_UUID",
    "BLOCKING_WAIT_TIMEOUT",
    "CLIENT_CHARACTERISTIC_CONFIG_UUID",
    "CONNECTION_TIMEOUT",
    "DISABLE_NOTIFICATION_VALUE",
    "DISCONNECT_TIMEOUT_SECONDS",
    "ENABLE_INDICATION_VALUE",
    "ENABLE_NOTIFICATION_VALUE",
    "EVENT_THREAD_JOIN_TIMEOUT",
    "GATT_FAILURE",
    "GATT_IO_TIMEOUT",
    "GATT_SUCCESS",
    "RSSI_UPDATE_INTERVAL",
    "TOPIC_CHARACTERISTIC_CHANGED",
    "TOPIC_CONNECTION_ESTABLISHED",
    "TOPIC_CONNECTION_LOST",
    "logger",
]
