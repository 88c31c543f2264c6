"""Pending operation slots and the role table of current targets."""

from enum import Enum
from itertools import count
from threading import RLock
from typing import Any, Dict, List, Optional

from gattmanager.constants import logger
from gattmanager.model import GattCharacteristic, GattDescriptor
from gattmanager.streams import Subject


class OperationKind(Enum):
    """Kinds of request the transport accepts one of at a time."""

    DISCOVERY = "discovery"
    READ = "read"
    WRITE = "write"
    NOTIFICATION = "notification"
    INDICATION = "indication"
    RSSI = "rssi"


class Role(Enum):
    """Roles a characteristic can hold for routing value changes."""

    WRITE = "write"
    NOTIFICATION = "notification"
    INDICATION = "indication"


class PendingSlot:
    """
    The in-flight request of one kind: its target and its stream instance.

    `sequence` orders slots by issue time across kinds; `started` records
    whether the START item has been emitted for the request.
    """

    __slots__ = ("kind", "target", "stream", "payload", "sequence", "started")

    def __init__(
        self,
        kind: OperationKind,
        target: Any,
        stream: Subject,
        payload: Optional[bytes] = None,
        sequence: int = 0,
        started: bool = True,
    ):
        self.kind = kind
        self.target = target
        self.stream = stream
        self.payload = payload
        self.sequence = sequence
        self.started = started

    def __repr__(self):
        return f"PendingSlot({self.kind.value}, target={self.target!r})"


class PendingOperations:
    """
    One slot per operation kind.

    A slot is occupied when a request is issued and released when the
    matching callback arrives or the session tears down.
    """

    def __init__(self):
        self._lock = RLock()
        self._slots: Dict[OperationKind, PendingSlot] = {}
        self._sequence = count()

    def occupy(
        self,
        kind: OperationKind,
        target: Any,
        stream: Subject,
        payload: Optional[bytes] = None,
        started: bool = True,
    ) -> bool:
        """Occupy the slot for `kind`; returns False if it is already occupied."""
        with self._lock:
            if kind in self._slots:
                return False
            self._slots[kind] = PendingSlot(kind, target, stream, payload, next(self._sequence), started)
            return True

    def get(self, kind: OperationKind) -> Optional[PendingSlot]:
        with self._lock:
            return self._slots.get(kind)

    def is_pending(self, kind: OperationKind) -> bool:
        with self._lock:
            return kind in self._slots

    def release(self, kind: OperationKind, stream: Optional[Subject] = None) -> Optional[PendingSlot]:
        """
        Release the slot for `kind`.

        When `stream` is given the slot is only released if it still belongs
        to that stream instance.
        """
        with self._lock:
            slot = self._slots.get(kind)
            if slot is None:
                return None
            if stream is not None and slot.stream is not stream:
                return None
            return self._slots.pop(kind)

    def release_all(self) -> List[PendingSlot]:
        with self._lock:
            slots = list(self._slots.values())
            self._slots.clear()
            return slots

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)


class TargetRegistry:
    """
    Table of the current target characteristic per role.

    Only one characteristic holds each role at a time; registering a new
    target overwrites the previous one, and the overwritten reference is
    returned so callers can observe the overwrite.
    """

    def __init__(self):
        self._lock = RLock()
        self._targets: Dict[Role, GattCharacteristic] = {}

    def register(self, role: Role, characteristic: GattCharacteristic) -> Optional[GattCharacteristic]:
        with self._lock:
            previous = self._targets.get(role)
            self._targets[role] = characteristic
        if previous is not None and not previous.matches(characteristic):
            logger.debug(
                "%s target overwritten: %s → %s",
                role.value,
                previous.uuid,
                characteristic.uuid,
            )
        return previous

    def unregister(self, role: Role, characteristic: Optional[GattCharacteristic] = None) -> bool:
        """Clear a role; with `characteristic`, only if that characteristic still holds it."""
        with self._lock:
            current = self._targets.get(role)
            if current is None:
                return False
            if characteristic is not None and not current.matches(characteristic):
                return False
            del self._targets[role]
            return True

    def get(self, role: Role) -> Optional[GattCharacteristic]:
        with self._lock:
            return self._targets.get(role)

    def holds(self, role: Role, characteristic: Optional[GattCharacteristic]) -> bool:
        """Return True when `characteristic` is the current target for `role`."""
        with self._lock:
            current = self._targets.get(role)
        return current is not None and current.matches(characteristic)

    def roles_for(self, characteristic: Optional[GattCharacteristic]) -> List[Role]:
        """Every role whose current target is `characteristic`, in Role order."""
        with self._lock:
            targets = dict(self._targets)
        return [
            role
            for role in Role
            if role in targets and targets[role].matches(characteristic)
        ]

    def roles_for_descriptor(self, descriptor: Optional[GattDescriptor]) -> List[Role]:
        """Every subscription role whose current target owns `descriptor`."""
        owner = getattr(descriptor, "characteristic", None)
        return [
            role
            for role in self.roles_for(owner)
            if role in (Role.NOTIFICATION, Role.INDICATION)
        ]

    def cleanup_all(self) -> None:
        with self._lock:
            self._targets.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._targets)
