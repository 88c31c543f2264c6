"""Transport backed by bleak running on a dedicated event loop thread."""

import asyncio
from concurrent.futures import Future
from threading import Lock, Thread
from typing import Any, Dict, List, Optional

from bleak import BleakClient
from bleak.exc import BleakError

from gattmanager.constants import (
    CLIENT_CHARACTERISTIC_CONFIG_UUID,
    DISABLE_NOTIFICATION_VALUE,
    ERROR_TIMEOUT,
    GATT_CONN_TERMINATE_PEER_USER,
    GATT_FAILURE,
    GATT_REQUEST_NOT_SUPPORTED,
    GATT_SUCCESS,
    PROPERTY_WRITE,
    PROPERTY_WRITE_NO_RESPONSE,
    GattConfig,
    logger,
)
from gattmanager.errors import GattErrorHandler, GattTimeoutError
from gattmanager.model import (
    GattCharacteristic,
    GattDescriptor,
    GattService,
    PeripheralIdentity,
    normalize_uuid,
)
from gattmanager.transport import TransportCallbacks


class BleakLink:
    """
    Link handle for one bleak connection attempt.

    Once `closed` is set no further callbacks are delivered for the link.
    """

    def __init__(self, identity: PeripheralIdentity, client: Any, callbacks: TransportCallbacks):
        self.identity = identity
        self.client = client
        self.callbacks = callbacks
        self.characteristics: Dict[int, GattCharacteristic] = {}
        self.notifying: Dict[int, bool] = {}
        self.disconnect_requested = False
        self.closed = False
        self.down = False

    def __repr__(self):
        return f"BleakLink({self.identity.address!r}, closed={self.closed})"

    def deliver(self, callback: str, *args) -> None:
        """Invoke a session callback unless the link has been closed."""
        if self.closed:
            logger.debug("Dropping %s for closed link %s", callback, self.identity.address)
            return
        GattErrorHandler.safe_execute(
            lambda: getattr(self.callbacks, callback)(self, *args),
            error_msg=f"Error delivering {callback}",
        )


class BleakTransport:
    """
    Transport wrapper running bleak's async API on an internal event loop.

    Requests are scheduled on the loop and return immediately; results are
    delivered to the session callbacks from the event loop thread. Nothing
    here blocks on the loop except `shutdown()`.
    """

    def __init__(
        self,
        *,
        connection_timeout: float = GattConfig.CONNECTION_TIMEOUT,
        io_timeout: float = GattConfig.GATT_IO_TIMEOUT,
        disconnect_timeout: float = GattConfig.DISCONNECT_TIMEOUT_SECONDS,
        **client_kwargs,
    ) -> None:
        """
        Start the event loop thread.

        Parameters:
            connection_timeout: Seconds to wait for bleak's connect.
            io_timeout: Seconds to wait for each read, write or descriptor write.
            disconnect_timeout: Seconds to wait for bleak's disconnect.
            **client_kwargs: Forwarded to the `BleakClient` constructor (e.g. `adapter`).
        """
        self.connection_timeout = connection_timeout
        self.io_timeout = io_timeout
        self.disconnect_timeout = disconnect_timeout
        self.client_kwargs = client_kwargs
        self._shutdown_lock = Lock()
        self._is_shutdown = False

        self._eventLoop = asyncio.new_event_loop()
        self._eventThread = Thread(target=self._run_event_loop, name="GattBleakTransport", daemon=True)
        try:
            self._eventThread.start()
        except RuntimeError:
            self._eventLoop.close()
            raise

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.shutdown()

    # Transport protocol

    def is_adapter_enabled(self) -> bool:
        # bleak has no portable adapter power query; failures surface on connect.
        return not self._is_shutdown

    def connect(self, identity: PeripheralIdentity, callbacks: TransportCallbacks) -> Optional[BleakLink]:
        target = identity.device if identity.device is not None else identity.address
        link: Optional[BleakLink] = None

        def _on_disconnected(_client):
            if link is not None:
                self._report_link_down(link, self._disconnect_status(link))

        client = BleakClient(target, disconnected_callback=_on_disconnected, **self.client_kwargs)
        link = BleakLink(identity, client, callbacks)
        if not self._submit(lambda: self._connect(link)):
            return None
        return link

    def is_link_connected(self, link: BleakLink) -> bool:
        def _check_connection():
            connected = getattr(link.client, "is_connected", False)
            if callable(connected):
                connected = connected()
            return bool(connected)

        return GattErrorHandler.safe_execute(
            _check_connection,
            default_return=False,
            error_msg="Unable to read bleak connection state",
        )

    def disconnect(self, link: BleakLink) -> None:
        link.disconnect_requested = True
        if not self._submit(lambda: self._disconnect(link)):
            self._report_link_down(link, GATT_SUCCESS)

    def close(self, link: BleakLink) -> None:
        if link.closed:
            return
        link.closed = True
        link.disconnect_requested = True
        if self.is_link_connected(link):
            self._submit(lambda: self._quiet_disconnect(link))

    def discover_resources(self, link: BleakLink) -> bool:
        return self._submit_for(link, lambda: self._discover(link))

    def read_resource(self, link: BleakLink, characteristic: GattCharacteristic) -> bool:
        return self._submit_for(link, lambda: self._read(link, characteristic))

    def write_resource(self, link: BleakLink, characteristic: GattCharacteristic, payload: bytes) -> bool:
        return self._submit_for(link, lambda: self._write(link, characteristic, bytes(payload)))

    def write_descriptor(self, link: BleakLink, descriptor: GattDescriptor, value: bytes) -> bool:
        return self._submit_for(link, lambda: self._write_descriptor(link, descriptor, bytes(value)))

    def read_rssi(self, link: BleakLink) -> bool:
        return self._submit_for(link, lambda: self._read_rssi(link))

    def shutdown(self) -> None:
        """Stop the event loop and wait for its thread to exit."""
        with self._shutdown_lock:
            if self._is_shutdown:
                return
            self._is_shutdown = True
        GattErrorHandler.safe_cleanup(
            lambda: self.async_run(self._stop_event_loop()), "event loop stop"
        )
        self._eventThread.join(timeout=GattConfig.EVENT_THREAD_JOIN_TIMEOUT)
        if self._eventThread.is_alive():
            logger.warning(
                "GATT event thread did not exit within %.1fs",
                GattConfig.EVENT_THREAD_JOIN_TIMEOUT,
            )

    # Coroutines run on the event loop

    async def _connect(self, link: BleakLink) -> None:
        try:
            await self._with_timeout(link.client.connect(), self.connection_timeout, "connect")
        except (BleakError, GattTimeoutError, OSError) as exc:
            logger.debug("Connect to %s failed: %s", link.identity.address, exc)
            self._report_link_down(link, self._status_for(exc))
            return
        if link.down:
            return
        logger.debug("bleak connected to %s", link.identity.address)
        link.deliver("on_connection_state_change", GATT_SUCCESS, True)

    async def _disconnect(self, link: BleakLink) -> None:
        try:
            await self._with_timeout(link.client.disconnect(), self.disconnect_timeout, "disconnect")
        except (BleakError, GattTimeoutError, OSError) as exc:
            logger.debug("Disconnect from %s failed: %s", link.identity.address, exc)
        # bleak normally reports through disconnected_callback; this covers backends that do not
        self._report_link_down(link, GATT_SUCCESS)

    async def _quiet_disconnect(self, link: BleakLink) -> None:
        try:
            await self._with_timeout(link.client.disconnect(), self.disconnect_timeout, "disconnect")
        except (BleakError, GattTimeoutError, OSError) as exc:
            logger.debug("Closing link to %s: %s", link.identity.address, exc)

    async def _discover(self, link: BleakLink) -> None:
        try:
            collection = getattr(link.client, "services", None)
            if not collection and hasattr(link.client, "get_services"):
                collection = await self._with_timeout(link.client.get_services(), self.io_timeout, "discover")
            services = self._convert_services(link, collection or [])
        except (BleakError, GattTimeoutError, OSError) as exc:
            logger.debug("Service discovery failed: %s", exc)
            link.deliver("on_services_discovered", self._status_for(exc), None)
            return
        link.deliver("on_services_discovered", GATT_SUCCESS, services)

    async def _read(self, link: BleakLink, characteristic: GattCharacteristic) -> None:
        try:
            value = await self._with_timeout(
                link.client.read_gatt_char(_native(characteristic)), self.io_timeout, "read"
            )
        except (BleakError, GattTimeoutError, OSError) as exc:
            logger.debug("Read of %s failed: %s", characteristic.uuid, exc)
            link.deliver("on_characteristic_read", characteristic, None, self._status_for(exc))
            return
        link.deliver("on_characteristic_read", characteristic, bytes(value), GATT_SUCCESS)

    async def _write(self, link: BleakLink, characteristic: GattCharacteristic, payload: bytes) -> None:
        response = PROPERTY_WRITE in characteristic.properties or (
            PROPERTY_WRITE_NO_RESPONSE not in characteristic.properties
        )
        try:
            await self._with_timeout(
                link.client.write_gatt_char(_native(characteristic), payload, response=response),
                self.io_timeout,
                "write",
            )
        except (BleakError, GattTimeoutError, OSError) as exc:
            logger.debug("Write to %s failed: %s", characteristic.uuid, exc)
            link.deliver("on_characteristic_write", characteristic, self._status_for(exc))
            return
        link.deliver("on_characteristic_write", characteristic, GATT_SUCCESS)

    async def _write_descriptor(self, link: BleakLink, descriptor: GattDescriptor, value: bytes) -> None:
        characteristic = descriptor.characteristic
        try:
            if characteristic is not None and normalize_uuid(descriptor.uuid) == CLIENT_CHARACTERISTIC_CONFIG_UUID:
                await self._set_notify(link, characteristic, value != DISABLE_NOTIFICATION_VALUE)
            else:
                await self._with_timeout(
                    link.client.write_gatt_descriptor(descriptor.handle, value),
                    self.io_timeout,
                    "descriptor write",
                )
        except (BleakError, GattTimeoutError, OSError) as exc:
            logger.debug("Descriptor write failed: %s", exc)
            link.deliver("on_descriptor_write", descriptor, self._status_for(exc))
            return
        link.deliver("on_descriptor_write", descriptor, GATT_SUCCESS)

    async def _set_notify(self, link: BleakLink, characteristic: GattCharacteristic, enable: bool) -> None:
        # bleak writes the configuration descriptor itself through start_notify/stop_notify
        key = characteristic.handle
        if enable:
            if link.notifying.get(key):
                return
            await self._with_timeout(
                link.client.start_notify(
                    _native(characteristic),
                    lambda sender, data: self._on_notify(link, sender, data),
                ),
                self.io_timeout,
                "start notify",
            )
            link.notifying[key] = True
        else:
            if not link.notifying.pop(key, False):
                return
            await self._with_timeout(
                link.client.stop_notify(_native(characteristic)), self.io_timeout, "stop notify"
            )

    async def _read_rssi(self, link: BleakLink) -> None:
        get_rssi = getattr(link.client, "get_rssi", None)
        if get_rssi is None:
            # Only some bleak backends expose RSSI for a connected peripheral
            get_rssi = getattr(getattr(link.client, "_backend", None), "get_rssi", None)
        if get_rssi is None:
            link.deliver("on_rssi_read", 0, GATT_REQUEST_NOT_SUPPORTED)
            return
        try:
            rssi = await self._with_timeout(get_rssi(), self.io_timeout, "rssi read")
        except (BleakError, GattTimeoutError, OSError) as exc:
            logger.debug("RSSI read failed: %s", exc)
            link.deliver("on_rssi_read", 0, self._status_for(exc))
            return
        link.deliver("on_rssi_read", int(rssi), GATT_SUCCESS)

    # Helpers

    def _on_notify(self, link: BleakLink, sender: Any, data: Any) -> None:
        handle = getattr(sender, "handle", sender)
        characteristic = link.characteristics.get(handle)
        if characteristic is None:
            logger.debug("Notification from unknown handle %r", handle)
            return
        link.deliver("on_characteristic_changed", characteristic, bytes(data))

    def _convert_services(self, link: BleakLink, collection: Any) -> List[GattService]:
        services: List[GattService] = []
        link.characteristics = {}
        for native_service in collection:
            characteristics = []
            for native_char in getattr(native_service, "characteristics", []):
                characteristic = GattCharacteristic(
                    uuid=native_char.uuid,
                    handle=native_char.handle,
                    properties=tuple(getattr(native_char, "properties", ()) or ()),
                    native=native_char,
                )
                for native_desc in getattr(native_char, "descriptors", []):
                    characteristic.add_descriptor(
                        GattDescriptor(uuid=normalize_uuid(native_desc.uuid), handle=native_desc.handle, native=native_desc)
                    )
                characteristics.append(characteristic)
                link.characteristics[characteristic.handle] = characteristic
            services.append(
                GattService(
                    uuid=native_service.uuid,
                    characteristics=characteristics,
                    handle=getattr(native_service, "handle", None),
                )
            )
        return services

    def _report_link_down(self, link: BleakLink, status: int) -> None:
        if link.down:
            return
        link.down = True
        link.notifying.clear()
        link.deliver("on_connection_state_change", status, False)

    @staticmethod
    def _disconnect_status(link: BleakLink) -> int:
        return GATT_SUCCESS if link.disconnect_requested else GATT_CONN_TERMINATE_PEER_USER

    @staticmethod
    def _status_for(exc: BaseException) -> int:
        status = getattr(exc, "status", None)
        if isinstance(status, int) and status != GATT_SUCCESS:
            return status
        return GATT_FAILURE

    @staticmethod
    async def _with_timeout(awaitable, timeout: Optional[float], label: str):
        """Await `awaitable`, raising GattTimeoutError after `timeout` seconds."""
        if timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise GattTimeoutError(ERROR_TIMEOUT.format(label, timeout)) from exc

    def _submit_for(self, link: BleakLink, factory) -> bool:
        if link.closed or link.down:
            return False
        return self._submit(factory)

    def _submit(self, factory) -> bool:
        """Schedule the coroutine built by `factory`; False when the loop is gone."""
        if self._is_shutdown or self._eventLoop.is_closed():
            return False
        coro = factory()
        try:
            future = self.async_run(coro)
        except RuntimeError as exc:
            coro.close()
            logger.debug("Unable to schedule GATT request: %s", exc)
            return False
        future.add_done_callback(_log_unexpected)
        return True

    def async_run(self, coro) -> Future:
        """Schedule a coroutine on the internal event loop."""
        return asyncio.run_coroutine_threadsafe(coro, self._eventLoop)

    def _run_event_loop(self):
        GattErrorHandler.safe_execute(self._eventLoop.run_forever, error_msg="Error in event loop")
        self._eventLoop.close()

    async def _stop_event_loop(self):
        self._eventLoop.stop()


def _native(characteristic: GattCharacteristic) -> Any:
    return characteristic.native if characteristic.native is not None else characteristic.uuid


def _log_unexpected(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Unexpected error in GATT request: %s", exc, exc_info=exc)
