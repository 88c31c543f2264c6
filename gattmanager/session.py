"""The GATT session engine."""

from typing import Any, Callable, List, Optional, Sequence, Union

from pubsub import pub

from gattmanager.constants import (
    BATTERY_CHARACTERISTIC_UUID,
    DISABLE_NOTIFICATION_VALUE,
    ENABLE_INDICATION_VALUE,
    ENABLE_NOTIFICATION_VALUE,
    ERROR_ADAPTER_DISABLED,
    ERROR_ALREADY_CONNECTING,
    ERROR_CCCD_NOT_FOUND,
    ERROR_NO_LINK,
    ERROR_NONE_ADDRESS,
    ERROR_NONE_IDENTITY,
    ERROR_NOT_CONNECTED,
    ERROR_OTHER_PERIPHERAL,
    ERROR_SERVICES_NOT_DISCOVERED,
    ERROR_SESSION_CLOSED,
    GATT_FAILURE,
    GattConfig,
    TOPIC_CHARACTERISTIC_CHANGED,
    TOPIC_CONNECTION_ESTABLISHED,
    TOPIC_CONNECTION_LOST,
    logger,
)
from gattmanager.errors import (
    ConnectionFailedError,
    ConnectionPreconditionError,
    DiscoveryFailedError,
    EmptyPayloadError,
    GattErrorHandler,
    LinkLostError,
    NotConnectedError,
    OperationInProgressError,
    ReadFailedError,
    ResourceNotFoundError,
    SubscriptionFailedError,
    WriteFailedError,
)
from gattmanager.fanout import EventFanout
from gattmanager.model import (
    GattCharacteristic,
    GattDescriptor,
    GattObserveData,
    GattService,
    ObserveState,
    PeripheralIdentity,
    ServiceCatalog,
    to_payload,
)
from gattmanager.registry import OperationKind, PendingOperations, Role, TargetRegistry
from gattmanager.router import ROLE_KINDS, OperationRouter, is_success
from gattmanager.rssi import RssiPoller, TimerFactory
from gattmanager.state import ConnectionState, SessionStateManager
from gattmanager.streams import Observable, Subject
from gattmanager.transport import Transport

Payload = Union[bytes, bytearray, Sequence[int]]


class GattSession:
    """
    Client-side session for one GATT link.

    Every capability is exposed as a cold `Observable`: subscribing issues
    the request, and the stream instance receives the routed callbacks.
    Caller requests and transport callbacks are serialized on the state
    manager's lock, so the session may be used from any thread.

    Architecture:
        - SessionStateManager: connection lifecycle and link handle
        - PendingOperations: one in-flight request per operation kind
        - TargetRegistry: current write/notification/indication target
        - OperationRouter: routes completion callbacks to stream instances
        - EventFanout: routes unsolicited value changes
        - RssiPoller: periodic RSSI reads while observed
    """

    def __init__(
        self,
        transport: Transport,
        *,
        rssi_interval: float = GattConfig.RSSI_UPDATE_INTERVAL,
        timer_factory: Optional[TimerFactory] = None,
    ) -> None:
        self.transport = transport
        self.rssi_interval = rssi_interval
        self._timer_factory = timer_factory

        self._state_manager = SessionStateManager()
        self._lock = self._state_manager.lock
        self._pending = PendingOperations()
        self._targets = TargetRegistry()
        self._router = OperationRouter(self._pending, self._targets)
        self._fanout = EventFanout(self._router)

        self._peripheral: Optional[PeripheralIdentity] = None
        self._catalog: Optional[ServiceCatalog] = None
        self._connection_streams: List[Subject] = []
        self._disconnect_requested = False
        self._link_established = False
        self._rssi_poller: Optional[RssiPoller] = None
        self._retired_pollers: List[RssiPoller] = []
        self._closed = False

    def __repr__(self):
        address = self._peripheral.address if self._peripheral else None
        return f"GattSession(address={address!r}, state={self.connection_state.value})"

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.close()

    # Synchronous queries

    @property
    def connection_state(self) -> ConnectionState:
        return self._state_manager.state

    @property
    def is_connected(self) -> bool:
        return self._state_manager.is_connected

    @property
    def peripheral(self) -> Optional[PeripheralIdentity]:
        with self._lock:
            return self._peripheral

    @property
    def link(self) -> Optional[Any]:
        return self._state_manager.link

    @property
    def services(self) -> Optional[List[GattService]]:
        """Discovered services, or None until discovery completes on this connection."""
        with self._lock:
            return self._catalog.services if self._catalog is not None else None

    def find_characteristic(self, uuid) -> Optional[GattCharacteristic]:
        """Resolve a UUID against the discovered catalog; None when unresolved or not connected."""
        with self._lock:
            if not self._state_manager.is_connected or self._catalog is None:
                return None
            return self._catalog.find_characteristic(uuid)

    def is_notification_enabled(self, reference) -> bool:
        characteristic = self._lookup(reference)
        return characteristic is not None and characteristic.notification_enabled()

    def is_indication_enabled(self, reference) -> bool:
        characteristic = self._lookup(reference)
        return characteristic is not None and characteristic.indication_enabled()

    def current_target(self, role: Role) -> Optional[GattCharacteristic]:
        return self._targets.get(role)

    def current_stream(self, kind: OperationKind) -> Optional[Subject]:
        """
        The open stream instance for `kind`, if any.

        Subscribing to it attaches to future emissions without issuing a new request.
        """
        with self._lock:
            return self._router.current_stream(kind)

    def _lookup(self, reference) -> Optional[GattCharacteristic]:
        with self._lock:
            if not self._state_manager.is_connected or self._catalog is None:
                return None
            return self._catalog.resolve(reference)

    # Connection lifecycle

    def connect(self, peripheral: Optional[PeripheralIdentity] = None) -> Observable:
        """
        Connect to `peripheral`, or to the last targeted peripheral when omitted.

        The stream emits True once the link is up and False when it goes
        down, then completes for a requested disconnect or errors with
        `LinkLostError` when the peer or the platform dropped the link.
        """

        def _on_subscribe(stream: Subject):
            with self._lock:
                self._start_connection(stream, peripheral)

        return Observable(_on_subscribe, name="connection")

    observe_connection = connect

    def _start_connection(self, stream: Subject, peripheral: Optional[PeripheralIdentity]) -> None:
        if self._closed:
            stream.on_error(ConnectionPreconditionError(ERROR_SESSION_CLOSED))
            return
        target = peripheral if peripheral is not None else self._peripheral
        if target is None:
            stream.on_error(ConnectionPreconditionError(ERROR_NONE_IDENTITY))
            return
        if not target.is_valid():
            stream.on_error(ConnectionPreconditionError(ERROR_NONE_ADDRESS))
            return
        adapter_enabled = GattErrorHandler.safe_execute(
            self.transport.is_adapter_enabled,
            default_return=False,
            error_msg="Unable to query adapter state",
        )
        if not adapter_enabled:
            stream.on_error(ConnectionPreconditionError(ERROR_ADAPTER_DISABLED))
            return

        state = self._state_manager.state
        if not self._state_manager.can_connect:
            if not target.same_peripheral(self._peripheral):
                stream.on_error(
                    ConnectionPreconditionError(
                        ERROR_OTHER_PERIPHERAL.format(
                            getattr(self._peripheral, "address", None), target.address
                        )
                    )
                )
                return
            if state == ConnectionState.CONNECTED:
                logger.debug("Already connected to %s", target.address)
                self._connection_streams.append(stream)
                stream.on_next(True)
                return
            if state == ConnectionState.CONNECTING:
                logger.debug("Joining connection attempt in progress to %s", target.address)
                self._connection_streams.append(stream)
                return
            stream.on_error(
                ConnectionPreconditionError(ERROR_ALREADY_CONNECTING.format(state.value, target.address))
            )
            return

        self._peripheral = target
        self._disconnect_requested = False
        self._catalog = None
        self._connection_streams.append(stream)
        self._state_manager.transition_to(ConnectionState.CONNECTING)
        logger.info("Connecting to %s", target.address)
        try:
            link = self.transport.connect(target, self)
        except Exception as exc:  # noqa: BLE001 - surfaced on the connection stream
            logger.debug("Transport refused connection to %s: %s", target.address, exc)
            link = None
        if link is None:
            self._state_manager.transition_to(ConnectionState.DISCONNECTED)
            self._terminate_connection_streams(ConnectionFailedError(target.address, GATT_FAILURE))
            return
        self._state_manager.attach_link(link)

    def disconnect(self) -> None:
        """
        Ask the transport to drop the link.

        Valid while connecting or connected. Without a link the open
        connection streams error with `NotConnectedError`; when no stream is
        open the error is raised instead, so the call is never a silent no-op.
        """
        with self._lock:
            link = self._state_manager.link
            if link is None or not self._state_manager.can_disconnect:
                error = NotConnectedError(ERROR_NO_LINK)
                if not self._open_connection_streams():
                    raise error
                for stream in self._open_connection_streams():
                    stream.on_error(error)
                self._connection_streams = []
                return

            self._disconnect_requested = True
            was_connected = self._state_manager.state == ConnectionState.CONNECTED
            self._state_manager.transition_to(ConnectionState.DISCONNECTING)
            link_up = was_connected and GattErrorHandler.safe_execute(
                lambda: self.transport.is_link_connected(link),
                default_return=False,
                error_msg="Unable to query link state",
            )
            if link_up:
                try:
                    self.transport.disconnect(link)
                    logger.debug("Disconnect requested for %s", self._peripheral.address)
                    return
                except Exception as exc:  # noqa: BLE001 - falls back to closing the link
                    logger.debug("Transport disconnect failed, closing link: %s", exc)
            else:
                GattErrorHandler.safe_cleanup(lambda: self.transport.disconnect(link), "transport disconnect")
            self._teardown(link, None)

    def close(self) -> None:
        """Disconnect if needed, terminate every stream and shut the transport down. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._disconnect_requested = True
            link = self._state_manager.link
            if link is not None:
                if self._state_manager.state == ConnectionState.CONNECTED:
                    self._state_manager.transition_to(ConnectionState.DISCONNECTING)
                    GattErrorHandler.safe_cleanup(lambda: self.transport.disconnect(link), "transport disconnect")
                self._teardown(link, None)
            else:
                self._cancel_rssi_locked()
                self._router.terminate_all(None)
                self._terminate_connection_streams(None)
            pollers, self._retired_pollers = self._retired_pollers, []
        for poller in pollers:
            poller.join()
        GattErrorHandler.safe_cleanup(self.transport.shutdown, "transport shutdown")

    def _open_connection_streams(self) -> List[Subject]:
        self._connection_streams = [s for s in self._connection_streams if not s.is_terminated]
        return list(self._connection_streams)

    def _terminate_connection_streams(self, error: Optional[BaseException]) -> None:
        for stream in self._open_connection_streams():
            stream.on_next(False)
            if error is None:
                stream.on_completed()
            else:
                stream.on_error(error)
        self._connection_streams = []

    def _teardown(self, link: Any, error: Optional[BaseException]) -> None:
        """
        Return to DISCONNECTED and terminate every open stream exactly once.

        Releases all pending slots, the catalog, the role table and the RSSI
        timer, and closes the link. Streams complete when `error` is None.
        """
        was_connected, self._link_established = self._link_established, False
        self._cancel_rssi_locked()
        self._state_manager.transition_to(ConnectionState.DISCONNECTED)
        self._catalog = None
        GattErrorHandler.safe_cleanup(lambda: self.transport.close(link), "transport close")
        terminated = self._router.terminate_all(error)
        logger.debug("Terminated %d operation streams on disconnect", terminated)
        self._terminate_connection_streams(error)
        self._disconnect_requested = False
        if was_connected:
            logger.info(
                "Disconnected from %s%s",
                getattr(self._peripheral, "address", None),
                "" if error is None else f" ({error})",
            )
            self._publish(TOPIC_CONNECTION_LOST, session=self)

    # Requests

    def discover_services(self) -> Observable:
        """
        Discover the peripheral's services.

        One-shot per connection: once the catalog exists the stream replays
        it and completes without contacting the transport.
        """

        def _on_subscribe(stream: Subject):
            with self._lock:
                link = self._require_connected(stream)
                if link is None:
                    return
                if self._catalog is not None:
                    stream.on_next(self._catalog.services)
                    stream.on_completed()
                    return
                if not self._occupy(OperationKind.DISCOVERY, None, stream):
                    return
                self._issue(
                    OperationKind.DISCOVERY,
                    stream,
                    lambda: self.transport.discover_resources(link),
                    lambda: DiscoveryFailedError(GATT_FAILURE),
                )

        return Observable(_on_subscribe, name="discovery")

    def read(self, reference) -> Observable:
        """Read a characteristic by UUID or reference; emits its bytes once, then completes."""

        def _on_subscribe(stream: Subject):
            with self._lock:
                link = self._require_connected(stream)
                if link is None:
                    return
                characteristic = self._resolve(stream, reference)
                if characteristic is None:
                    return
                if not self._occupy(OperationKind.READ, characteristic, stream):
                    return
                self._issue(
                    OperationKind.READ,
                    stream,
                    lambda: self.transport.read_resource(link, characteristic),
                    lambda: ReadFailedError(characteristic, GATT_FAILURE),
                )

        return Observable(_on_subscribe, name="read")

    def read_battery(self) -> Observable:
        """Read the standard Battery Level characteristic."""
        return self.read(BATTERY_CHARACTERISTIC_UUID)

    def write(self, reference, payload: Payload) -> Observable:
        """
        Write `payload` to a characteristic by UUID or reference.

        Emits `GattObserveData(START)` as soon as the transport accepts the
        request, `NEXT` for value changes on the target while the write is in
        flight, and `COMPLETE` when the write callback succeeds, then completes.
        """

        def _on_subscribe(stream: Subject):
            try:
                data = to_payload(payload)
            except (TypeError, ValueError) as exc:
                stream.on_error(exc)
                return
            if not data:
                stream.on_error(EmptyPayloadError(reference))
                return
            with self._lock:
                link = self._require_connected(stream)
                if link is None:
                    return
                characteristic = self._resolve(stream, reference)
                if characteristic is None:
                    return
                if not self._occupy(OperationKind.WRITE, characteristic, stream, data, started=False):
                    return
                self._targets.register(Role.WRITE, characteristic)
                accepted = self._issue(
                    OperationKind.WRITE,
                    stream,
                    lambda: self.transport.write_resource(link, characteristic, data),
                    lambda: WriteFailedError(characteristic, GATT_FAILURE),
                )
                slot = self._pending.get(OperationKind.WRITE)
                if accepted and slot is not None and slot.stream is stream and not slot.started:
                    slot.started = True
                    stream.on_next(GattObserveData(characteristic, ObserveState.START, data))

        return Observable(_on_subscribe, name="write")

    def set_notification(self, reference, enabled: bool = True) -> Observable:
        """
        Enable or disable notifications for a characteristic.

        The characteristic becomes the current notification target, replacing
        the previous one. The stream emits `START` once the configuration
        descriptor write succeeds, then `NEXT` for every notified value. When
        disabling, it completes after `START`.
        """
        value = ENABLE_NOTIFICATION_VALUE if enabled else DISABLE_NOTIFICATION_VALUE
        return self._toggle_subscription(Role.NOTIFICATION, reference, enabled, value)

    def set_indication(self, reference, enabled: bool = True) -> Observable:
        """Enable or disable indications for a characteristic; see `set_notification`."""
        value = ENABLE_INDICATION_VALUE if enabled else DISABLE_NOTIFICATION_VALUE
        return self._toggle_subscription(Role.INDICATION, reference, enabled, value)

    observe_notification = set_notification
    observe_indication = set_indication

    def _toggle_subscription(self, role: Role, reference, enabled: bool, value: bytes) -> Observable:
        kind = ROLE_KINDS[role]

        def _on_subscribe(stream: Subject):
            with self._lock:
                link = self._require_connected(stream)
                if link is None:
                    return
                characteristic = self._resolve(stream, reference)
                if characteristic is None:
                    return
                descriptor = characteristic.config_descriptor
                if descriptor is None:
                    stream.on_error(
                        ResourceNotFoundError(
                            characteristic.uuid, ERROR_CCCD_NOT_FOUND.format(characteristic.uuid)
                        )
                    )
                    return
                if not self._occupy(kind, characteristic, stream, value):
                    return
                self._targets.register(role, characteristic)
                self._router.open_role_stream(role, stream, enabling=enabled)
                accepted = self._issue(
                    kind,
                    stream,
                    lambda: self.transport.write_descriptor(link, descriptor, value),
                    lambda: SubscriptionFailedError(characteristic, descriptor, GATT_FAILURE),
                )
                if not accepted:
                    self._router.close_role_stream(role, stream)

        return Observable(_on_subscribe, name=role.value)

    def observe_rssi(self, interval: Optional[float] = None) -> Observable:
        """
        Poll RSSI every `interval` seconds while subscribed.

        Disposing the subscription cancels the timer; no RSSI request is
        issued after that. Ticks that arrive while not connected are dropped.
        """
        interval = self.rssi_interval if interval is None else interval

        def _on_subscribe(stream: Subject) -> Optional[Callable[[], None]]:
            if interval <= 0:
                stream.on_error(ValueError(f"RSSI interval must be positive, got {interval}"))
                return None
            with self._lock:
                if self._require_connected(stream) is None:
                    return None
                self._cancel_rssi_locked()
                self._router.set_rssi_stream(stream)
                poller = RssiPoller(interval, self._on_rssi_tick, self._timer_factory)
                self._rssi_poller = poller
                poller.start()

            def _cleanup():
                with self._lock:
                    if self._rssi_poller is poller:
                        self._cancel_rssi_locked()
                    if self._router.rssi_stream is stream:
                        self._router.set_rssi_stream(None)

            return _cleanup

        return Observable(_on_subscribe, name="rssi")

    def _on_rssi_tick(self, poller: RssiPoller) -> None:
        with self._lock:
            if poller is not self._rssi_poller or poller.cancelled:
                return
            link = self._state_manager.link
            if not self._state_manager.is_connected or link is None:
                logger.debug("Dropping RSSI tick while not connected")
                return
            stream = self._router.rssi_stream
            if stream is None:
                return
            if not self._pending.occupy(OperationKind.RSSI, None, stream):
                logger.debug("Skipping RSSI tick: previous read still pending")
                return
            accepted = GattErrorHandler.safe_execute(
                lambda: self.transport.read_rssi(link),
                default_return=False,
                error_msg="RSSI read request failed",
            )
            if not accepted:
                self._pending.release(OperationKind.RSSI, stream)
                logger.debug("Transport refused RSSI read; retrying on next tick")

    def _cancel_rssi_locked(self) -> None:
        poller, self._rssi_poller = self._rssi_poller, None
        self._retired_pollers = [p for p in self._retired_pollers if p.is_alive]
        if poller is not None:
            poller.cancel()
            if poller.is_alive:
                self._retired_pollers.append(poller)

    # Request helpers; all called with the lock held

    def _require_connected(self, stream: Subject) -> Optional[Any]:
        link = self._state_manager.link
        if not self._state_manager.is_connected or link is None:
            stream.on_error(NotConnectedError(ERROR_NOT_CONNECTED))
            return None
        return link

    def _resolve(self, stream: Subject, reference) -> Optional[GattCharacteristic]:
        if self._catalog is None:
            stream.on_error(ResourceNotFoundError(_reference_uuid(reference), ERROR_SERVICES_NOT_DISCOVERED))
            return None
        characteristic = self._catalog.resolve(reference) if reference is not None else None
        if characteristic is None:
            stream.on_error(ResourceNotFoundError(_reference_uuid(reference)))
        return characteristic

    def _occupy(
        self,
        kind: OperationKind,
        target: Any,
        stream: Subject,
        payload: Optional[bytes] = None,
        started: bool = True,
    ) -> bool:
        if self._pending.occupy(kind, target, stream, payload, started):
            return True
        stream.on_error(OperationInProgressError(kind))
        return False

    def _issue(
        self,
        kind: OperationKind,
        stream: Subject,
        request: Callable[[], bool],
        refusal: Callable[[], BaseException],
    ) -> bool:
        """Send one request to the transport; a refusal releases the slot and errors the stream."""
        try:
            accepted = bool(request())
        except Exception as exc:  # noqa: BLE001 - surfaced on the stream
            logger.debug("Transport raised on %s request: %s", kind.value, exc)
            accepted = False
        if not accepted:
            self._pending.release(kind, stream)
            stream.on_error(refusal())
        return accepted

    # TransportCallbacks

    def _is_current_link(self, link: Any, callback: str) -> bool:
        if link is not None and link is self._state_manager.link:
            return True
        logger.debug("Ignoring %s callback for stale link %r", callback, link)
        return False

    def _catalog_entry(self, characteristic: GattCharacteristic) -> GattCharacteristic:
        if self._catalog is None:
            return characteristic
        return self._catalog.resolve(characteristic) or characteristic

    def on_connection_state_change(self, link: Any, status: int, connected: bool) -> None:
        with self._lock:
            if not self._is_current_link(link, "connection state"):
                return
            state = self._state_manager.state
            if connected and is_success(status):
                if state != ConnectionState.CONNECTING:
                    logger.debug("Ignoring connected callback in state %s", state.value)
                    return
                self._state_manager.transition_to(ConnectionState.CONNECTED)
                self._link_established = True
                logger.info("Connected to %s", self._peripheral.address)
                for stream in self._open_connection_streams():
                    stream.on_next(True)
                self._publish(TOPIC_CONNECTION_ESTABLISHED, session=self)
                return

            if self._disconnect_requested:
                error = None
            elif state == ConnectionState.CONNECTING:
                error = ConnectionFailedError(self._peripheral.address, status)
            else:
                error = LinkLostError(status)
            self._teardown(link, error)

    def on_services_discovered(self, link: Any, status: int, services: Optional[List[GattService]]) -> None:
        with self._lock:
            if not self._is_current_link(link, "services discovered"):
                return
            catalog = self._router.route_discovery(status, services)
            if catalog is not None:
                self._catalog = catalog

    def on_characteristic_read(
        self, link: Any, characteristic: GattCharacteristic, value: Optional[bytes], status: int
    ) -> None:
        with self._lock:
            if not self._is_current_link(link, "characteristic read"):
                return
            self._router.route_read(self._catalog_entry(characteristic), value, status)

    def on_characteristic_write(self, link: Any, characteristic: GattCharacteristic, status: int) -> None:
        with self._lock:
            if not self._is_current_link(link, "characteristic write"):
                return
            self._router.route_write(self._catalog_entry(characteristic), status)

    def on_descriptor_write(self, link: Any, descriptor: GattDescriptor, status: int) -> None:
        with self._lock:
            if not self._is_current_link(link, "descriptor write"):
                return
            owner = getattr(descriptor, "characteristic", None)
            if owner is not None:
                entry = self._catalog_entry(owner)
                descriptor = entry.get_descriptor(descriptor.uuid) or descriptor
            self._router.route_descriptor_write(descriptor, status)

    def on_rssi_read(self, link: Any, rssi: int, status: int) -> None:
        with self._lock:
            if not self._is_current_link(link, "rssi read"):
                return
            self._router.route_rssi(rssi, status)
            if self._router.rssi_stream is None:
                self._cancel_rssi_locked()

    def on_characteristic_changed(self, link: Any, characteristic: GattCharacteristic, value: bytes) -> None:
        with self._lock:
            if not self._is_current_link(link, "characteristic changed"):
                return
            entry = self._catalog_entry(characteristic)
            self._fanout.dispatch(entry, value)
            self._publish(TOPIC_CHARACTERISTIC_CHANGED, session=self, characteristic=entry, value=entry.value)

    def _publish(self, topic: str, **kwargs) -> None:
        GattErrorHandler.safe_execute(
            lambda: pub.sendMessage(topic, **kwargs),
            error_msg=f"Error publishing {topic}",
        )


def _reference_uuid(reference) -> Any:
    return getattr(reference, "uuid", reference)
