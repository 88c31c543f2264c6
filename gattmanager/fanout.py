"""Dispatch of unsolicited characteristic value changes."""

from typing import List, Optional

from gattmanager.constants import logger
from gattmanager.model import GattCharacteristic, GattObserveData, ObserveState
from gattmanager.registry import OperationKind, Role
from gattmanager.router import OperationRouter
from gattmanager.streams import Subject


class EventFanout:
    """
    Route value-change callbacks to every role whose current target changed.

    A single change may match the write target, the notification target and
    the indication target at once; each match gets its own emission. A change
    nobody is registered for is discarded.
    """

    def __init__(self, router: OperationRouter):
        self.router = router

    def dispatch(self, characteristic: GattCharacteristic, value: Optional[bytes]) -> List[Role]:
        """
        Emit a change on every matching stream.

        Returns:
            The roles the change was routed to, empty when it was discarded.
        """
        if value is not None:
            characteristic.value = bytes(value)
        payload = characteristic.value
        routed: List[Role] = []
        for role in self.router.targets.roles_for(characteristic):
            stream = self._stream_for(role, characteristic)
            if stream is None or stream.is_terminated:
                continue
            stream.on_next(GattObserveData(characteristic, ObserveState.NEXT, payload))
            routed.append(role)
        if not routed:
            logger.debug("Discarding value change for %s: no current target", characteristic.uuid)
        return routed

    def _stream_for(self, role: Role, characteristic: GattCharacteristic) -> Optional[Subject]:
        if role == Role.WRITE:
            # Write progress only while the write is still in flight
            slot = self.router.pending.get(OperationKind.WRITE)
            if slot is not None and slot.target.matches(characteristic):
                return slot.stream
            return None
        return self.router.role_stream(role)
