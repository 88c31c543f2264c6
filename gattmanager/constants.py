"""GATT constants and configuration."""

import logging

logger = logging.getLogger("gattmanager")

# Bluetooth base UUID used to expand 16/32-bit short UUIDs
BLUETOOTH_BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"

# Standard GATT UUIDs
CLIENT_CHARACTERISTIC_CONFIG_UUID = "00002902-0000-1000-8000-00805f9b34fb"
BATTERY_SERVICE_UUID = "0000180f-0000-1000-8000-00805f9b34fb"
BATTERY_CHARACTERISTIC_UUID = "00002a19-0000-1000-8000-00805f9b34fb"

# Client Characteristic Configuration descriptor values
ENABLE_NOTIFICATION_VALUE = bytes([0x01, 0x00])
ENABLE_INDICATION_VALUE = bytes([0x02, 0x00])
DISABLE_NOTIFICATION_VALUE = bytes([0x00, 0x00])

# Status codes reported by transports
GATT_SUCCESS = 0
GATT_REQUEST_NOT_SUPPORTED = 0x06
GATT_CONN_TERMINATE_PEER_USER = 0x13
GATT_ERROR = 0x85
GATT_FAILURE = 0x101

# Characteristic property names as reported by transports
PROPERTY_READ = "read"
PROPERTY_WRITE = "write"
PROPERTY_WRITE_NO_RESPONSE = "write-without-response"
PROPERTY_NOTIFY = "notify"
PROPERTY_INDICATE = "indicate"


class GattConfig:
    """Configuration constants for GATT session operations."""

    RSSI_UPDATE_INTERVAL = 3.0
    CONNECTION_TIMEOUT = 30.0
    GATT_IO_TIMEOUT = 10.0
    DISCONNECT_TIMEOUT_SECONDS = 5.0
    EVENT_THREAD_JOIN_TIMEOUT = 2.0
    BLOCKING_WAIT_TIMEOUT = 30.0


# Module-level aliases sourced from GattConfig
RSSI_UPDATE_INTERVAL = GattConfig.RSSI_UPDATE_INTERVAL
CONNECTION_TIMEOUT = GattConfig.CONNECTION_TIMEOUT
GATT_IO_TIMEOUT = GattConfig.GATT_IO_TIMEOUT
DISCONNECT_TIMEOUT_SECONDS = GattConfig.DISCONNECT_TIMEOUT_SECONDS
EVENT_THREAD_JOIN_TIMEOUT = GattConfig.EVENT_THREAD_JOIN_TIMEOUT
BLOCKING_WAIT_TIMEOUT = GattConfig.BLOCKING_WAIT_TIMEOUT

# pypubsub topics
TOPIC_CONNECTION_ESTABLISHED = "gattmanager.connection.established"
TOPIC_CONNECTION_LOST = "gattmanager.connection.lost"
TOPIC_CHARACTERISTIC_CHANGED = "gattmanager.characteristic.changed"

# Error message constants
ERROR_NONE_IDENTITY = "Peripheral identity is missing"
ERROR_NONE_ADDRESS = "Peripheral address is empty"
ERROR_ADAPTER_DISABLED = "Bluetooth adapter is not available or disabled"
ERROR_ALREADY_CONNECTING = "Session is busy ({0}); cannot connect to {1}"
ERROR_OTHER_PERIPHERAL = "Session is bound to {0}; disconnect before connecting to {1}"
ERROR_NOT_CONNECTED = "GATT link is not connected"
ERROR_NO_LINK = "GATT link handle is not available"
ERROR_LINK_LOST = "GATT link lost (status {0})"
ERROR_CONNECT_FAILED = "GATT connect to {0} failed (status {1})"
ERROR_SERVICES_NOT_DISCOVERED = "GATT services have not been discovered"
ERROR_UUID_NOT_FOUND = "Characteristic {0} not found in discovered services"
ERROR_CCCD_NOT_FOUND = "Characteristic {0} has no client characteristic configuration descriptor"
ERROR_EMPTY_PAYLOAD = "Write payload for {0} is empty"
ERROR_OPERATION_IN_PROGRESS = "A {0} operation is already in progress"
ERROR_DISCOVERY_FAILED = "Service discovery failed (status {0})"
ERROR_READ_FAILED = "Read of {0} failed (status {1})"
ERROR_WRITE_FAILED = "Write to {0} failed (status {1})"
ERROR_DESCRIPTOR_WRITE_FAILED = "Descriptor write for {0} failed (status {1})"
ERROR_RSSI_FAILED = "RSSI read failed (status {0})"
ERROR_TIMEOUT = "{0} timed out after {1:.1f} seconds"
ERROR_SESSION_CLOSED = "GATT session is closed"
