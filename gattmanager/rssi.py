"""Periodic RSSI polling."""

from threading import Event, RLock, Thread, current_thread
from typing import Callable, Optional

from gattmanager.constants import GattConfig, logger
from gattmanager.errors import GattErrorHandler


class RepeatingTimer:
    """
    Call `function` every `interval` seconds on a daemon thread until cancelled.

    The first call happens one interval after `start()`.
    """

    def __init__(self, interval: float, function: Callable[[], None], name: str = "GattRssiTimer"):
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self.interval = interval
        self.function = function
        self._stop_event = Event()
        self._thread = Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        """Stop the timer. A tick already running finishes; no new tick starts."""
        self._stop_event.set()

    def join(self, timeout: Optional[float] = GattConfig.EVENT_THREAD_JOIN_TIMEOUT) -> None:
        """Wait for the timer thread to exit, unless called from that thread."""
        if self._thread.is_alive() and self._thread is not current_thread():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("RSSI timer thread did not exit within %.1fs", timeout or 0.0)

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            GattErrorHandler.safe_execute(self.function, error_msg="Error in RSSI timer tick")


TimerFactory = Callable[[float, Callable[[], None]], "RepeatingTimer"]


class RssiPoller:
    """
    Own the timer behind one RSSI stream.

    `tick` receives the poller so the session can check, under its own lock,
    that the poller is still the active one before touching the transport.
    """

    def __init__(
        self,
        interval: float,
        tick: Callable[["RssiPoller"], None],
        timer_factory: Optional[TimerFactory] = None,
    ):
        self.interval = interval
        self._tick = tick
        self._lock = RLock()
        self._cancelled = False
        self._timer = (timer_factory or RepeatingTimer)(interval, self._on_timer)
        self.ticks = 0

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def is_alive(self) -> bool:
        """True while the underlying timer thread is still running."""
        return bool(getattr(self._timer, "is_alive", False))

    def start(self) -> None:
        logger.debug("Starting RSSI polling every %.1fs", self.interval)
        self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
        logger.debug("Cancelling RSSI polling")
        GattErrorHandler.safe_cleanup(self._timer.cancel, "RSSI timer cancel")

    def join(self, timeout: Optional[float] = GattConfig.EVENT_THREAD_JOIN_TIMEOUT) -> None:
        join = getattr(self._timer, "join", None)
        if join is not None:
            GattErrorHandler.safe_cleanup(lambda: join(timeout), "RSSI timer join")

    def _on_timer(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self.ticks += 1
        self._tick(self)
