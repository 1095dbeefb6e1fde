"""Process-level event hooks forwarded to a lifecycle listener."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import threading
from contextlib import AbstractContextManager
from types import TracebackType
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)

_HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class LifecycleListener(Protocol):
    """Receiver of process-level termination events."""

    def on_uncaught_error(self, error: BaseException) -> Any:
        raise NotImplementedError

    def on_unhandled_rejection(self, error: BaseException) -> Any:
        raise NotImplementedError

    def on_signal(self, signum: int) -> Any:
        raise NotImplementedError


class SystemProcess:
    """The real process boundary."""

    def exit(self, code: int) -> None:
        for stream in (sys.stdout, sys.stderr):
            try:
                stream.flush()
            except Exception:
                continue
        logging.shutdown()
        os._exit(code)


class ProcessEvents(AbstractContextManager["ProcessEvents"]):
    """
    Install hooks for uncaught errors, unhandled task errors and signals.

    Previous hooks are restored on exit. Events raised on other threads are
    marshalled onto the event loop before reaching the listener.
    """

    def __init__(
        self,
        listener: LifecycleListener,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        *,
        enable_signals: bool = True,
    ) -> None:
        self._listener = listener
        self._loop = loop
        self._enable_signals = enable_signals
        self._prev_excepthook: Any = None
        self._prev_threading_hook: Any = None
        self._prev_loop_handler: Any = None
        self._installed_signals: list[int] = []

    def __enter__(self) -> "ProcessEvents":
        self._prev_excepthook = sys.excepthook
        sys.excepthook = self._handle_excepthook
        self._prev_threading_hook = threading.excepthook
        threading.excepthook = self._handle_thread_exception
        if self._loop is not None:
            self._prev_loop_handler = self._loop.get_exception_handler()
            self._loop.set_exception_handler(self._handle_loop_exception)
            if self._enable_signals:
                self._install_signal_handlers()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        sys.excepthook = self._prev_excepthook
        threading.excepthook = self._prev_threading_hook
        if self._loop is not None and not self._loop.is_closed():
            self._loop.set_exception_handler(self._prev_loop_handler)
            for sig in self._installed_signals:
                try:
                    self._loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError, ValueError):
                    continue
        self._installed_signals.clear()

    def _install_signal_handlers(self) -> None:
        assert self._loop is not None
        for sig in _HANDLED_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._listener.on_signal, int(sig))
            except (NotImplementedError, RuntimeError, ValueError):
                # Not supported on this platform or outside the main thread.
                continue
            self._installed_signals.append(int(sig))

    def _handle_excepthook(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            self._listener.on_signal(int(signal.SIGINT))
            return
        self._listener.on_uncaught_error(exc)

    def _handle_thread_exception(self, args: threading.ExceptHookArgs) -> None:
        if args.exc_type is SystemExit or args.exc_value is None:
            return
        error = args.exc_value
        if self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._listener.on_uncaught_error, error)
            return
        self._listener.on_uncaught_error(error)

    def _handle_loop_exception(
        self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
    ) -> None:
        error = context.get("exception")
        if error is None:
            loop.default_exception_handler(context)
            return
        self._listener.on_unhandled_rejection(error)
