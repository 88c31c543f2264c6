"""Routing of transport completion callbacks to the originating operation streams."""

from typing import Dict, Iterable, List, Optional

from gattmanager.constants import GATT_SUCCESS, logger
from gattmanager.errors import (
    DiscoveryFailedError,
    ReadFailedError,
    RssiReadFailedError,
    SubscriptionFailedError,
    WriteFailedError,
)
from gattmanager.model import (
    GattCharacteristic,
    GattDescriptor,
    GattObserveData,
    GattService,
    ObserveState,
    ServiceCatalog,
)
from gattmanager.registry import OperationKind, PendingOperations, Role, TargetRegistry
from gattmanager.streams import Subject

ROLE_KINDS = {
    Role.NOTIFICATION: OperationKind.NOTIFICATION,
    Role.INDICATION: OperationKind.INDICATION,
}


def is_success(status: Optional[int]) -> bool:
    return status == GATT_SUCCESS


class OperationRouter:
    """
    Track the in-flight request per operation kind and route callbacks back to it.

    The router does not lock on its own; every method is called by the
    session while it holds the session lock.
    """

    def __init__(self, pending: PendingOperations, targets: TargetRegistry):
        self.pending = pending
        self.targets = targets
        self._role_streams: Dict[Role, Subject] = {}
        self._rssi_stream: Optional[Subject] = None
        # Subscription toggles that turn the role off once the descriptor write lands
        self._disabling: Dict[Role, bool] = {}

    # Stream bookkeeping

    def role_stream(self, role: Role) -> Optional[Subject]:
        return self._role_streams.get(role)

    def open_role_stream(self, role: Role, stream: Subject, enabling: bool = True) -> None:
        """Make `stream` the subscription stream for `role`, completing the one it replaces."""
        previous = self._role_streams.get(role)
        self._role_streams[role] = stream
        self._disabling[role] = not enabling
        if previous is not None and previous is not stream:
            previous.on_completed()

    def close_role_stream(self, role: Role, stream: Optional[Subject] = None) -> None:
        current = self._role_streams.get(role)
        if current is None or (stream is not None and current is not stream):
            return
        del self._role_streams[role]
        self._disabling.pop(role, None)
        self.targets.unregister(role)

    @property
    def rssi_stream(self) -> Optional[Subject]:
        return self._rssi_stream

    def set_rssi_stream(self, stream: Optional[Subject]) -> None:
        previous = self._rssi_stream
        self._rssi_stream = stream
        if previous is not None and previous is not stream:
            previous.on_completed()

    def current_stream(self, kind: OperationKind) -> Optional[Subject]:
        """The open stream instance for `kind`, if any."""
        if kind == OperationKind.RSSI:
            return self._rssi_stream
        for role, role_kind in ROLE_KINDS.items():
            if role_kind == kind and role in self._role_streams:
                return self._role_streams[role]
        slot = self.pending.get(kind)
        return slot.stream if slot is not None else None

    # Callback routing

    def route_discovery(self, status: int, services: Optional[Iterable[GattService]]) -> Optional[ServiceCatalog]:
        slot = self.pending.release(OperationKind.DISCOVERY)
        if not is_success(status):
            logger.debug("Service discovery failed with status %s", status)
            if slot is not None:
                slot.stream.on_error(DiscoveryFailedError(status))
            return None
        catalog = ServiceCatalog(services)
        logger.debug("Discovered %d services", len(catalog))
        if slot is not None:
            slot.stream.on_next(catalog.services)
            slot.stream.on_completed()
        else:
            logger.debug("Discovery completed without a waiting stream")
        return catalog

    def route_read(self, characteristic: GattCharacteristic, value: Optional[bytes], status: int) -> None:
        slot = self.pending.get(OperationKind.READ)
        if slot is None or not slot.target.matches(characteristic):
            logger.debug("Discarding read callback for %s with no matching request", _uuid(characteristic))
            return
        self.pending.release(OperationKind.READ)
        target: GattCharacteristic = slot.target
        if not is_success(status):
            slot.stream.on_error(ReadFailedError(target, status))
            return
        if value is not None:
            target.value = bytes(value)
        slot.stream.on_next(target.value)
        slot.stream.on_completed()

    def route_write(self, characteristic: GattCharacteristic, status: int) -> None:
        slot = self.pending.get(OperationKind.WRITE)
        if slot is None or not slot.target.matches(characteristic):
            logger.debug("Discarding write callback for %s with no matching request", _uuid(characteristic))
            return
        self.pending.release(OperationKind.WRITE)
        target: GattCharacteristic = slot.target
        if not slot.started:
            slot.started = True
            slot.stream.on_next(GattObserveData(target, ObserveState.START, slot.payload))
        if not is_success(status):
            slot.stream.on_error(WriteFailedError(target, status))
            return
        logger.debug("Characteristic write succeeded for %s", target.uuid)
        if slot.payload is not None:
            target.value = slot.payload
        slot.stream.on_next(GattObserveData(target, ObserveState.COMPLETE, target.value))
        slot.stream.on_completed()

    def route_descriptor_write(self, descriptor: GattDescriptor, status: int) -> None:
        """
        Route a configuration descriptor write result to the subscription roles it belongs to.

        Only roles whose registered target still owns the descriptor receive
        the result; a callback for a target that has since been overwritten
        is discarded. Each callback answers exactly one toggle: when both a
        notification and an indication toggle are pending on the same
        descriptor, the one issued first is resolved.
        """
        roles = self.targets.roles_for_descriptor(descriptor)
        if not roles:
            logger.debug(
                "Discarding descriptor write for %s: owner is not a current subscription target",
                _uuid(getattr(descriptor, "characteristic", None)),
            )
            return
        candidates = []
        for role in roles:
            slot = self.pending.get(ROLE_KINDS[role])
            if slot is not None and slot.target.matches(descriptor.characteristic):
                candidates.append((slot.sequence, role, slot))
        if not candidates:
            logger.debug("No pending toggle for %s", _uuid(descriptor.characteristic))
            return
        _, role, slot = min(candidates, key=lambda candidate: candidate[0])
        self.pending.release(slot.kind)
        target: GattCharacteristic = slot.target
        if not is_success(status):
            slot.stream.on_error(SubscriptionFailedError(target, descriptor, status))
            self.close_role_stream(role, slot.stream)
            return
        if slot.payload is not None:
            descriptor.value = slot.payload
        slot.stream.on_next(GattObserveData(target, ObserveState.START, descriptor.value))
        if self._disabling.get(role):
            slot.stream.on_completed()
            self.close_role_stream(role, slot.stream)

    def route_rssi(self, rssi: int, status: int) -> None:
        self.pending.release(OperationKind.RSSI)
        stream = self._rssi_stream
        if stream is None:
            logger.debug("Discarding RSSI callback with no open stream")
            return
        if is_success(status):
            stream.on_next(rssi)
        else:
            stream.on_error(RssiReadFailedError(status))
            self._rssi_stream = None

    # Teardown

    def open_streams(self) -> List[Subject]:
        """Every stream instance that may still emit, without duplicates."""
        streams: List[Subject] = []
        candidates = [slot.stream for slot in self.pending.release_all()]
        candidates.extend(self._role_streams.values())
        if self._rssi_stream is not None:
            candidates.append(self._rssi_stream)
        for stream in candidates:
            if stream not in streams:
                streams.append(stream)
        return streams

    def terminate_all(self, error: Optional[BaseException] = None) -> int:
        """
        Release every slot and registration and terminate every open stream once.

        Streams complete normally when `error` is None, otherwise they error
        with it. Returns the number of streams terminated.
        """
        streams = self.open_streams()
        self._role_streams.clear()
        self._disabling.clear()
        self._rssi_stream = None
        self.targets.cleanup_all()
        terminated = 0
        for stream in streams:
            if stream.is_terminated:
                continue
            terminated += 1
            if error is None:
                stream.on_completed()
            else:
                stream.on_error(error)
        return terminated


def _uuid(characteristic) -> str:
    return str(getattr(characteristic, "uuid", characteristic))
