"""
Shared pytest fixtures for GATT session tests.
"""

from typing import Any, Callable, Dict, List, Optional
from unittest.mock import MagicMock

import pytest  # type: ignore[import-untyped]  # pylint: disable=E0401

from gattmanager.constants import (
    BATTERY_CHARACTERISTIC_UUID,
    BATTERY_SERVICE_UUID,
    CLIENT_CHARACTERISTIC_CONFIG_UUID,
    GATT_SUCCESS,
)
from gattmanager.model import GattCharacteristic, GattDescriptor, GattService, PeripheralIdentity
from gattmanager.session import GattSession

ADDRESS = "AA:BB:CC:DD:EE:FF"
SERVICE_UUID = "0000aaa0-0000-1000-8000-00805f9b34fb"
U1 = "0000aaa1-0000-1000-8000-00805f9b34fb"
U2 = "0000aaa2-0000-1000-8000-00805f9b34fb"
U3 = "0000aaa3-0000-1000-8000-00805f9b34fb"
U4 = "0000aaa4-0000-1000-8000-00805f9b34fb"
U5 = "0000aaa5-0000-1000-8000-00805f9b34fb"


class FakeLink:
    """Opaque link handle handed out by FakeTransport."""

    def __init__(self, identity: PeripheralIdentity, number: int):
        self.identity = identity
        self.number = number

    def __repr__(self):
        return f"FakeLink({self.number})"


class FakeTransport:
    """
    Recording transport: every call lands in `calls`, nothing is answered automatically.

    Tests drive completions by calling the session's callbacks with `link`.
    An `on_call` hook answers a request synchronously from inside the call.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.adapter_enabled = True
        self.refuse: Dict[str, bool] = {}
        self.raise_on: Dict[str, BaseException] = {}
        self.link_up = True
        self.links: List[FakeLink] = []
        self.shutdown_count = 0
        self.on_call: Dict[str, Callable[..., None]] = {}

    @property
    def link(self) -> Optional[FakeLink]:
        return self.links[-1] if self.links else None

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def count(self, name: str) -> int:
        return self.names().count(name)

    def _record(self, name: str, *args) -> bool:
        self.calls.append((name,) + args)
        if name in self.raise_on:
            raise self.raise_on[name]
        accepted = not self.refuse.get(name, False)
        if accepted and name in self.on_call:
            self.on_call[name](*args)
        return accepted

    def is_adapter_enabled(self) -> bool:
        return self.adapter_enabled

    def connect(self, identity, callbacks):
        if not self._record("connect", identity):
            return None
        link = FakeLink(identity, len(self.links) + 1)
        self.links.append(link)
        return link

    def is_link_connected(self, link) -> bool:
        return self.link_up

    def disconnect(self, link) -> None:
        self._record("disconnect", link)

    def close(self, link) -> None:
        self._record("close", link)

    def discover_resources(self, link) -> bool:
        return self._record("discover_resources", link)

    def read_resource(self, link, characteristic) -> bool:
        return self._record("read_resource", link, characteristic)

    def write_resource(self, link, characteristic, payload) -> bool:
        return self._record("write_resource", link, characteristic, payload)

    def write_descriptor(self, link, descriptor, value) -> bool:
        return self._record("write_descriptor", link, descriptor, value)

    def read_rssi(self, link) -> bool:
        return self._record("read_rssi", link)

    def shutdown(self) -> None:
        self.shutdown_count += 1


class ManualTimer:
    """Timer double driven by `fire()` instead of wall-clock time."""

    def __init__(self, interval: float, function: Callable[[], None]):
        self.interval = interval
        self.function = function
        self.started = False
        self.cancelled = False
        self.joined = False
        self.lingering = False

    @property
    def is_alive(self) -> bool:
        return self.started and (self.lingering or not self.cancelled)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def join(self, timeout=None):
        self.joined = True

    def fire(self, times: int = 1):
        for _ in range(times):
            if self.started and not self.cancelled:
                self.function()


class ManualTimerFactory:
    """Factory recording every ManualTimer it builds."""

    def __init__(self):
        self.timers: List[ManualTimer] = []

    def __call__(self, interval, function):
        timer = ManualTimer(interval, function)
        self.timers.append(timer)
        return timer

    @property
    def last(self) -> ManualTimer:
        return self.timers[-1]


class Recorder:
    """Observer collecting every signal a stream delivers."""

    def __init__(self):
        self.values: List[Any] = []
        self.errors: List[BaseException] = []
        self.completed = 0

    def on_next(self, value):
        self.values.append(value)

    def on_error(self, error):
        self.errors.append(error)

    def on_completed(self):
        self.completed += 1

    def attach(self, observable):
        return observable.subscribe(self.on_next, self.on_error, self.on_completed)

    @property
    def terminal_signals(self) -> int:
        return len(self.errors) + self.completed

    @property
    def error(self) -> Optional[BaseException]:
        return self.errors[0] if self.errors else None


def make_services() -> List[GattService]:
    """
    Build a catalog with one characteristic per capability.

    U1 readable, U2 writable, U3 notifying with a CCCD, U4 indicating with a
    CCCD, U5 notifying without a CCCD, plus the Battery Level characteristic.
    """
    handles = iter(range(0x10, 0x100))

    def _char(uuid, properties, with_cccd=False):
        characteristic = GattCharacteristic(uuid=uuid, handle=next(handles), properties=properties)
        if with_cccd:
            characteristic.add_descriptor(
                GattDescriptor(uuid=CLIENT_CHARACTERISTIC_CONFIG_UUID, handle=next(handles))
            )
        return characteristic

    custom = GattService(
        uuid=SERVICE_UUID,
        characteristics=[
            _char(U1, ("read",)),
            _char(U2, ("write", "notify"), with_cccd=True),
            _char(U3, ("notify",), with_cccd=True),
            _char(U4, ("indicate",), with_cccd=True),
            _char(U5, ("notify",)),
        ],
    )
    battery = GattService(
        uuid=BATTERY_SERVICE_UUID,
        characteristics=[_char(BATTERY_CHARACTERISTIC_UUID, ("read", "notify"), with_cccd=True)],
    )
    return [custom, battery]


@pytest.fixture(autouse=True)
def mock_pubsub(monkeypatch):
    """
    Replace the pubsub module used by the session with a MagicMock.

    Returns:
        The mock whose `sendMessage` calls record every published topic.
    """
    pub = MagicMock()
    monkeypatch.setattr("gattmanager.session.pub", pub)
    return pub


@pytest.fixture
def identity() -> PeripheralIdentity:
    return PeripheralIdentity(ADDRESS)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def timers() -> ManualTimerFactory:
    return ManualTimerFactory()


@pytest.fixture
def session(transport, timers) -> GattSession:
    return GattSession(transport, timer_factory=timers)


@pytest.fixture
def connect_session(session, transport, identity):
    """
    Return a helper that connects the session and optionally discovers services.

    The helper returns the Recorder attached to the connection stream.
    """

    def _connect(discover: bool = True) -> Recorder:
        recorder = Recorder()
        recorder.attach(session.connect(identity))
        session.on_connection_state_change(transport.link, GATT_SUCCESS, True)
        if discover:
            session.discover_services().subscribe()
            session.on_services_discovered(transport.link, GATT_SUCCESS, make_services())
        return recorder

    return _connect


@pytest.fixture
def connected(connect_session) -> Recorder:
    """A session connected to ADDRESS with services discovered."""
    return connect_session()
