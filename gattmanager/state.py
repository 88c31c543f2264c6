"""GATT session connection state management."""

from enum import Enum
from threading import RLock
from typing import Any, Optional

from gattmanager.constants import logger


class ConnectionState(Enum):
    """Enum for managing GATT link states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


_VALID_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTING,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTED: {
        ConnectionState.DISCONNECTING,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.DISCONNECTING: {ConnectionState.DISCONNECTED},
}


class SessionStateManager:
    """Thread-safe state machine for one GATT link.

    The reentrant lock exposed as `lock` is the session's single
    serialization point: caller requests and transport callbacks both
    mutate session state only while holding it.
    """

    def __init__(self):
        """Initialize state manager with disconnected state and no link."""
        self._state_lock = RLock()
        self._state = ConnectionState.DISCONNECTED
        self._link: Optional[Any] = None

    @property
    def lock(self) -> RLock:
        """Expose the reentrant lock controlling state transitions."""
        return self._state_lock

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        with self._state_lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        """Check if currently connected."""
        return self.state == ConnectionState.CONNECTED

    @property
    def can_connect(self) -> bool:
        """Check if a new connection can be initiated."""
        return self.state == ConnectionState.DISCONNECTED

    @property
    def can_disconnect(self) -> bool:
        """Check if a disconnect request is valid in the current state."""
        return self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED)

    @property
    def link(self) -> Optional[Any]:
        """Get the transport link handle, present only while a link exists."""
        with self._state_lock:
            return self._link

    def attach_link(self, link: Any) -> bool:
        """Record the link handle returned by the transport while connecting."""
        with self._state_lock:
            if self._state != ConnectionState.CONNECTING:
                logger.warning("Refusing to attach link in state %s", self._state.value)
                return False
            self._link = link
            return True

    def transition_to(self, new_state: ConnectionState, link: Optional[Any] = None) -> bool:
        """Thread-safe state transition with validation.

        Args:
        ----
            new_state: Target state to transition to
            link: Transport link handle associated with this transition (optional)

        Returns:
        -------
            True if transition was valid and applied, False otherwise

        """
        with self._state_lock:
            if new_state not in _VALID_TRANSITIONS.get(self._state, set()):
                logger.warning(
                    "Invalid state transition: %s → %s",
                    self._state.value,
                    new_state.value,
                )
                return False
            old_state = self._state
            self._state = new_state
            if link is not None:
                self._link = link
            elif new_state == ConnectionState.DISCONNECTED:
                self._link = None
            logger.debug("State transition: %s → %s", old_state.value, new_state.value)
            return True
