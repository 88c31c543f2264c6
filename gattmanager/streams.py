"""Broadcast streams with an explicit subscriber registry."""

from threading import Event, RLock
from typing import Any, Callable, List, Optional

from gattmanager.constants import GattConfig, ERROR_TIMEOUT, logger
from gattmanager.errors import GattErrorHandler, GattTimeoutError

OnNext = Callable[[Any], None]
OnError = Callable[[BaseException], None]
OnCompleted = Callable[[], None]

__all__ = ["Subject", "Subscription", "Observable"]


class _Observer:
    __slots__ = ("on_next", "on_error", "on_completed")

    def __init__(
        self,
        on_next: Optional[OnNext],
        on_error: Optional[OnError],
        on_completed: Optional[OnCompleted],
    ):
        self.on_next = on_next
        self.on_error = on_error
        self.on_completed = on_completed


class Subscription:
    """Handle returned by `subscribe`; `dispose()` detaches the observer and runs cleanup."""

    def __init__(self, dispose_fn: Optional[Callable[[], None]] = None):
        self._dispose_fn = dispose_fn
        self._lock = RLock()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        with self._lock:
            return self._disposed

    def dispose(self) -> None:
        """Detach from the stream. Safe to call more than once."""
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            dispose_fn, self._dispose_fn = self._dispose_fn, None
        if dispose_fn is not None:
            dispose_fn()

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.dispose()


class Subject:
    """
    A broadcast point with explicit subscribe/unsubscribe.

    Terminal signals (`on_error`, `on_completed`) are delivered exactly once;
    anything emitted afterwards is dropped. Observers that attach after
    termination receive the terminal signal immediately. An exception raised
    by one observer is logged and does not stop delivery to the others.
    """

    def __init__(self, name: str = "stream"):
        self.name = name
        self._lock = RLock()
        self._observers: List[_Observer] = []
        self._terminated = False
        self._error: Optional[BaseException] = None

    def __repr__(self):
        return f"Subject({self.name!r}, observers={len(self._observers)}, terminated={self._terminated})"

    @property
    def is_terminated(self) -> bool:
        with self._lock:
            return self._terminated

    @property
    def error(self) -> Optional[BaseException]:
        with self._lock:
            return self._error

    @property
    def has_observers(self) -> bool:
        with self._lock:
            return bool(self._observers)

    def subscribe(
        self,
        on_next: Optional[OnNext] = None,
        on_error: Optional[OnError] = None,
        on_completed: Optional[OnCompleted] = None,
    ) -> Subscription:
        observer = _Observer(on_next, on_error, on_completed)
        with self._lock:
            if not self._terminated:
                self._observers.append(observer)
                return Subscription(lambda: self._remove(observer))
            error = self._error
        if error is not None:
            self._deliver_error(observer, error)
        else:
            self._deliver_completed(observer)
        return Subscription()

    def _remove(self, observer: _Observer) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def on_next(self, value: Any) -> None:
        with self._lock:
            if self._terminated:
                logger.debug("Dropping emission on terminated %s", self.name)
                return
            observers = list(self._observers)
            for observer in observers:
                if observer.on_next is not None:
                    GattErrorHandler.safe_execute(
                        lambda o=observer: o.on_next(value),
                        error_msg=f"Observer of {self.name} failed in on_next",
                    )

    def on_error(self, error: BaseException) -> None:
        with self._lock:
            if self._terminated:
                logger.debug("Dropping error on terminated %s: %s", self.name, error)
                return
            self._terminated = True
            self._error = error
            observers, self._observers = self._observers, []
            if not observers:
                logger.debug("Unobserved error on %s: %s", self.name, error)
            for observer in observers:
                self._deliver_error(observer, error)

    def on_completed(self) -> None:
        with self._lock:
            if self._terminated:
                return
            self._terminated = True
            observers, self._observers = self._observers, []
            for observer in observers:
                self._deliver_completed(observer)

    def _deliver_error(self, observer: _Observer, error: BaseException) -> None:
        if observer.on_error is None:
            logger.debug("Unhandled error on %s: %s", self.name, error)
            return
        GattErrorHandler.safe_execute(
            lambda: observer.on_error(error),
            error_msg=f"Observer of {self.name} failed in on_error",
        )

    def _deliver_completed(self, observer: _Observer) -> None:
        if observer.on_completed is not None:
            GattErrorHandler.safe_execute(
                observer.on_completed,
                error_msg=f"Observer of {self.name} failed in on_completed",
            )


class Observable:
    """
    A cold stream: nothing happens until `subscribe()`.

    Each subscription creates a fresh `Subject` for that operation instance,
    attaches the observer to it, and then runs `on_subscribe(subject)`. The
    body may return a cleanup callable which runs when the subscription is
    disposed.
    """

    def __init__(self, on_subscribe: Callable[[Subject], Optional[Callable[[], None]]], name: str = "stream"):
        self._on_subscribe = on_subscribe
        self.name = name

    def subscribe(
        self,
        on_next: Optional[OnNext] = None,
        on_error: Optional[OnError] = None,
        on_completed: Optional[OnCompleted] = None,
    ) -> Subscription:
        subject = Subject(self.name)
        inner = subject.subscribe(on_next, on_error, on_completed)
        try:
            cleanup = self._on_subscribe(subject)
        except Exception as exc:  # noqa: BLE001 - surfaced on the stream
            logger.exception("Unexpected error starting %s", self.name)
            subject.on_error(exc)
            cleanup = None

        def _dispose():
            inner.dispose()
            if cleanup is not None:
                GattErrorHandler.safe_cleanup(cleanup, f"{self.name} cleanup")

        return Subscription(_dispose)

    def blocking_list(self, timeout: Optional[float] = GattConfig.BLOCKING_WAIT_TIMEOUT) -> List[Any]:
        """
        Subscribe, wait for the stream to complete and return every emitted value.

        Raises:
            GattError: The stream's error, if it terminated with one.
            GattTimeoutError: If the stream did not terminate within `timeout`.
        """
        values: List[Any] = []
        errors: List[BaseException] = []
        done = Event()

        def _on_error(error):
            errors.append(error)
            done.set()

        subscription = self.subscribe(values.append, _on_error, done.set)
        try:
            if not done.wait(timeout):
                raise GattTimeoutError(ERROR_TIMEOUT.format(self.name, timeout or 0.0))
        finally:
            subscription.dispose()
        if errors:
            raise errors[0]
        return values

    def blocking_first(self, timeout: Optional[float] = GattConfig.BLOCKING_WAIT_TIMEOUT) -> Any:
        """
        Subscribe and return the first emitted value, disposing the subscription afterwards.

        Raises:
            GattError: The stream's error, if it terminated before emitting.
            GattTimeoutError: If nothing arrived within `timeout`, or the stream completed empty.
        """
        values: List[Any] = []
        errors: List[BaseException] = []
        done = Event()

        def _on_next(value):
            if not values:
                values.append(value)
            done.set()

        def _on_error(error):
            errors.append(error)
            done.set()

        subscription = self.subscribe(_on_next, _on_error, done.set)
        try:
            if not done.wait(timeout):
                raise GattTimeoutError(ERROR_TIMEOUT.format(self.name, timeout or 0.0))
        finally:
            subscription.dispose()
        if values:
            return values[0]
        if errors:
            raise errors[0]
        raise GattTimeoutError(f"{self.name} completed without emitting")
