"""Data models for peripherals, the discovered GATT catalog and stream payloads."""

import re
import uuid as uuid_module
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from gattmanager.constants import (
    BLUETOOTH_BASE_UUID_SUFFIX,
    CLIENT_CHARACTERISTIC_CONFIG_UUID,
    ENABLE_INDICATION_VALUE,
    ENABLE_NOTIFICATION_VALUE,
)

UuidLike = Union[str, uuid_module.UUID, int]

_SHORT_UUID = re.compile(r"^(0x)?[0-9a-f]{4}$|^(0x)?[0-9a-f]{8}$")


def normalize_uuid(value: UuidLike) -> str:
    """
    Normalize a UUID to its lowercase 128-bit string form.

    16-bit and 32-bit short forms ("2a19", "0x2A19", 0x2A19) are expanded
    against the Bluetooth base UUID.

    Raises:
        ValueError: If the value cannot be interpreted as a UUID.
    """
    if isinstance(value, uuid_module.UUID):
        return str(value)
    if isinstance(value, int):
        if value < 0 or value > 0xFFFFFFFF:
            raise ValueError(f"Short UUID out of range: {value!r}")
        return f"{value:08x}{BLUETOOTH_BASE_UUID_SUFFIX}"
    text = str(value).strip().lower()
    if _SHORT_UUID.match(text):
        if text.startswith("0x"):
            text = text[2:]
        return f"{int(text, 16):08x}{BLUETOOTH_BASE_UUID_SUFFIX}"
    return str(uuid_module.UUID(text))


def sanitize_address(address: Optional[str]) -> Optional[str]:
    """
    Normalize a peripheral address by removing separators and lowercasing.

    Returns None when the address is None or only whitespace.
    """
    if address is None or not address.strip():
        return None
    return (
        address.strip()
        .replace("-", "")
        .replace("_", "")
        .replace(":", "")
        .replace(" ", "")
        .lower()
    )


def to_payload(values: Union[bytes, bytearray, Sequence[int], None]) -> bytes:
    """Convert a write payload given as bytes or a sequence of ints (0-255) to bytes."""
    if values is None:
        return b""
    if isinstance(values, (bytes, bytearray, memoryview)):
        return bytes(values)
    return bytes(list(values))


@dataclass(frozen=True)
class PeripheralIdentity:
    """Address of a peripheral plus a handle to the platform device record."""

    address: str
    name: Optional[str] = None
    device: Any = field(default=None, compare=False, repr=False)

    def is_valid(self) -> bool:
        return sanitize_address(self.address) is not None

    @property
    def key(self) -> Optional[str]:
        return sanitize_address(self.address)

    def same_peripheral(self, other: Optional["PeripheralIdentity"]) -> bool:
        return other is not None and self.key is not None and self.key == other.key


@dataclass(eq=False)
class GattDescriptor:
    """A descriptor attached to a characteristic; `value` holds the last written value."""

    uuid: str
    handle: Optional[int] = None
    characteristic: Optional["GattCharacteristic"] = field(default=None, repr=False)
    value: bytes = b""
    native: Any = field(default=None, repr=False)

    def matches(self, other: Optional["GattDescriptor"]) -> bool:
        if other is None:
            return False
        if other is self:
            return True
        return (
            self.handle is not None
            and self.handle == other.handle
            and self.uuid == other.uuid
        )


@dataclass(eq=False)
class GattCharacteristic:
    """An addressable characteristic; `value` holds the last value read, written or notified."""

    uuid: str
    handle: Optional[int] = None
    properties: Tuple[str, ...] = ()
    descriptors: List[GattDescriptor] = field(default_factory=list)
    value: bytes = b""
    service_uuid: Optional[str] = None
    native: Any = field(default=None, repr=False)

    def __post_init__(self):
        self.uuid = normalize_uuid(self.uuid)
        for descriptor in self.descriptors:
            descriptor.characteristic = self

    def add_descriptor(self, descriptor: GattDescriptor) -> GattDescriptor:
        descriptor.characteristic = self
        self.descriptors.append(descriptor)
        return descriptor

    def get_descriptor(self, uuid: UuidLike) -> Optional[GattDescriptor]:
        wanted = normalize_uuid(uuid)
        for descriptor in self.descriptors:
            if normalize_uuid(descriptor.uuid) == wanted:
                return descriptor
        return None

    @property
    def config_descriptor(self) -> Optional[GattDescriptor]:
        """The client characteristic configuration descriptor, if present."""
        return self.get_descriptor(CLIENT_CHARACTERISTIC_CONFIG_UUID)

    def matches(self, other: Optional["GattCharacteristic"]) -> bool:
        """Return True when `other` refers to the same resource on the peripheral."""
        if other is None:
            return False
        if other is self:
            return True
        if self.handle is not None and other.handle is not None:
            return self.handle == other.handle and self.uuid == other.uuid
        return False

    def notification_enabled(self) -> bool:
        cccd = self.config_descriptor
        return cccd is not None and cccd.value == ENABLE_NOTIFICATION_VALUE

    def indication_enabled(self) -> bool:
        cccd = self.config_descriptor
        return cccd is not None and cccd.value == ENABLE_INDICATION_VALUE


@dataclass(eq=False)
class GattService:
    """A discovered primary service and its characteristics."""

    uuid: str
    characteristics: List[GattCharacteristic] = field(default_factory=list)
    handle: Optional[int] = None

    def __post_init__(self):
        self.uuid = normalize_uuid(self.uuid)
        for characteristic in self.characteristics:
            characteristic.service_uuid = self.uuid


class ServiceCatalog:
    """The discovered services of one connection, searchable by characteristic UUID."""

    def __init__(self, services: Optional[Iterable[GattService]] = None):
        self._services: List[GattService] = list(services or [])

    @property
    def services(self) -> List[GattService]:
        return list(self._services)

    def __iter__(self) -> Iterator[GattService]:
        return iter(self._services)

    def __len__(self) -> int:
        return len(self._services)

    def characteristics(self) -> Iterator[GattCharacteristic]:
        for service in self._services:
            yield from service.characteristics

    def find_characteristic(self, uuid: UuidLike) -> Optional[GattCharacteristic]:
        """Return the first characteristic with the given UUID in discovery order, or None."""
        try:
            wanted = normalize_uuid(uuid)
        except ValueError:
            return None
        for characteristic in self.characteristics():
            if characteristic.uuid == wanted:
                return characteristic
        return None

    def resolve(self, reference: Any) -> Optional[GattCharacteristic]:
        """
        Resolve a UUID or a characteristic reference to the catalog's characteristic.

        A characteristic from a previous connection resolves to the current
        catalog entry with the same handle and UUID.
        """
        if isinstance(reference, GattCharacteristic):
            for characteristic in self.characteristics():
                if characteristic.matches(reference):
                    return characteristic
            return self.find_characteristic(reference.uuid)
        return self.find_characteristic(reference)


class ObserveState(Enum):
    """Phase of a write or subscription stream emission."""

    START = "start"
    NEXT = "next"
    COMPLETE = "complete"


@dataclass(frozen=True)
class GattObserveData:
    """Payload emitted on write, notification and indication streams."""

    characteristic: GattCharacteristic
    state: ObserveState
    value: bytes = b""
