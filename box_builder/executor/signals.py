"""Cancellation tokens and scoped interrupt handling.

Each build step gets a ``CancelToken``. While the step runs, the token is
registered with the process ``SignalDispatcher``; the first SIGINT or
SIGTERM cancels every registered token, which runs the callbacks steps
attached to it (force-destroying the in-flight container) and wakes any
wait polling the token. Handlers are only installed while at least one
token is registered, and the previous handlers are restored afterwards.
"""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from rich.console import Console

from box_builder.executor.errors import BuildInterruptedError

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _run_callbacks(callbacks: list[Callable[[], Any]]) -> None:
    for callback in callbacks:
        try:
            callback()
        except Exception:
            logger.exception("Cancellation callback failed")


class CancelToken:
    """One-shot cancellation flag with callbacks.

    ``cancel`` may be called from a signal handler or any thread; callbacks
    run exactly once, on the first call, in registration order. From a
    signal handler, pass ``wait=False`` so the callbacks run on a worker
    thread instead of inside the handler; ``join`` waits for them.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.RLock()
        self._callbacks: list[Callable[[], Any]] = []
        self._worker: threading.Thread | None = None
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[], Any]) -> None:
        """Run ``callback`` on cancellation, or now if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def cancel(self, reason: str = "cancelled", wait: bool = True) -> bool:
        """Cancel the token.

        Args:
            reason: Recorded as ``reason``.
            wait: Run the callbacks before returning; otherwise start them
                on a worker thread.

        Returns:
            True if this call cancelled it, False if it was already cancelled.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
            if not wait and callbacks:
                self._worker = threading.Thread(
                    target=_run_callbacks,
                    args=(callbacks,),
                    name="box-cancel",
                    daemon=True,
                )
                self._worker.start()
                return True

        _run_callbacks(callbacks)
        return True

    def join(self, timeout: float | None = None) -> None:
        """Wait for callbacks started on a worker thread to finish."""
        worker = self._worker
        if worker is not None:
            worker.join(timeout)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise BuildInterruptedError(f"Build interrupted ({self.reason})")


class SignalDispatcher:
    """Routes SIGINT/SIGTERM to the tokens of the steps in flight."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)
        self._tokens: list[CancelToken] = []
        self._previous: dict[int, Any] = {}
        self._lock = threading.RLock()

    def _handle(self, signum: int, frame: Any) -> None:
        with self._lock:
            tokens = list(self._tokens)
        name = signal.Signals(signum).name
        logger.warning("Received %s, cancelling %d step(s)", name, len(tokens))
        self.console.print("!!! SIGINT or SIGTERM received, crashing container...")
        for token in tokens:
            token.cancel(name, wait=False)

    def _install(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread, signal handlers not installed")
            return
        for signum in HANDLED_SIGNALS:
            self._previous[signum] = signal.signal(signum, self._handle)

    def _restore(self) -> None:
        for signum, previous in self._previous.items():
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._previous.clear()

    @contextmanager
    def listen(self, token: CancelToken) -> Iterator[CancelToken]:
        """Register ``token`` for the duration of the block.

        Registration is reentrant; a token registered twice is cancelled
        once.

        Yields:
            The registered token.
        """
        with self._lock:
            first = not self._tokens
            self._tokens.append(token)
        if first:
            self._install()
        try:
            yield token
        finally:
            token.join()
            with self._lock:
                self._tokens.remove(token)
                last = not self._tokens
            if last:
                self._restore()

    def deliver(self, signum: int = signal.SIGINT) -> None:
        """Dispatch ``signum`` as if the process had received it."""
        self._handle(signum, None)


_dispatcher: SignalDispatcher | None = None
_dispatcher_lock = threading.Lock()


def get_dispatcher() -> SignalDispatcher:
    """Return the process-wide dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        with _dispatcher_lock:
            if _dispatcher is None:
                _dispatcher = SignalDispatcher()
    return _dispatcher


__all__ = ["HANDLED_SIGNALS", "CancelToken", "SignalDispatcher", "get_dispatcher"]
