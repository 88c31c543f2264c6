"""Transport adapter interfaces consumed by the GATT session."""

from typing import Any, List, Optional, Protocol

from gattmanager.model import GattCharacteristic, GattDescriptor, GattService, PeripheralIdentity


class TransportCallbacks(Protocol):
    """
    Completion callbacks a transport delivers to the session.

    Every callback carries the link it belongs to; a status of 0 means
    success and any other value is a platform failure code passed through
    unchanged.
    """

    def on_connection_state_change(self, link: Any, status: int, connected: bool) -> None:
        """Link established (`connected=True`) or lost/closed."""

    def on_services_discovered(self, link: Any, status: int, services: Optional[List[GattService]]) -> None:
        """Service discovery finished."""

    def on_characteristic_read(
        self, link: Any, characteristic: GattCharacteristic, value: Optional[bytes], status: int
    ) -> None:
        """A characteristic read finished."""

    def on_characteristic_write(self, link: Any, characteristic: GattCharacteristic, status: int) -> None:
        """A characteristic write finished."""

    def on_descriptor_write(self, link: Any, descriptor: GattDescriptor, status: int) -> None:
        """A descriptor write finished."""

    def on_rssi_read(self, link: Any, rssi: int, status: int) -> None:
        """An RSSI read finished."""

    def on_characteristic_changed(self, link: Any, characteristic: GattCharacteristic, value: bytes) -> None:
        """The peripheral pushed a new value (notification or indication)."""


class Transport(Protocol):
    """
    An asynchronous connection to one peripheral.

    Request methods return immediately; False means the transport refused
    the request and no callback will follow.
    """

    def is_adapter_enabled(self) -> bool:
        """Whether the local radio adapter is available."""

    def connect(self, identity: PeripheralIdentity, callbacks: TransportCallbacks) -> Any:
        """Start connecting and return the link handle."""

    def is_link_connected(self, link: Any) -> bool:
        """Whether the transport still reports `link` as up."""

    def disconnect(self, link: Any) -> None:
        """Ask the peripheral to drop the link; completion arrives as a state change."""

    def close(self, link: Any) -> None:
        """Release the link's resources. No callbacks follow."""

    def discover_resources(self, link: Any) -> bool:
        """Start service discovery."""

    def read_resource(self, link: Any, characteristic: GattCharacteristic) -> bool:
        """Start a characteristic read."""

    def write_resource(self, link: Any, characteristic: GattCharacteristic, payload: bytes) -> bool:
        """Start a characteristic write."""

    def write_descriptor(self, link: Any, descriptor: GattDescriptor, value: bytes) -> bool:
        """Start a descriptor write."""

    def read_rssi(self, link: Any) -> bool:
        """Start an RSSI read."""

    def shutdown(self) -> None:
        """Stop background machinery owned by the transport."""
