"""
Run context for engine operations.

Each scan, compress or rollback owns one RunContext. Starting a new operation
on a folder cancels and discards the previous context for that folder, so two
tool processes never fight over the same directory.
"""
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .exceptions import OperationCancelled


class CancellationToken:
    """
    Cooperative cancellation signal. Callbacks registered while the token is
    live run synchronously on the thread that calls cancel().
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for cb in callbacks:
            try:
                cb()
            except Exception as e:
                logging.warning(f"Cancellation callback failed: {e}")

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Registers a callback for cancellation. If the token is already
        cancelled the callback runs immediately. Returns an unregister function.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._unregister(callback)

        callback()
        return lambda: None

    def _unregister(self, callback: Callable[[], None]):
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OperationCancelled("Operation was cancelled.")

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass
class RunContext:
    folder: str
    kind: str                       # 'scan' / 'compress' / 'rollback'
    token: CancellationToken = field(default_factory=CancellationToken)
    paused: bool = False
    # Arguments of the last compress request, replayed on resume
    request: Dict[str, Any] = field(default_factory=dict)

    def cancel(self):
        self.token.cancel()


def normalize_folder(folder: str) -> str:
    return os.path.normcase(os.path.abspath(folder))


class RunRegistry:
    """Tracks the active RunContext per target folder."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Dict[str, RunContext] = {}

    def begin(self, folder: str, kind: str, request: Optional[Dict[str, Any]] = None) -> RunContext:
        key = normalize_folder(folder)
        ctx = RunContext(folder=folder, kind=kind, request=dict(request or {}))
        with self._lock:
            previous = self._active.get(key)
            self._active[key] = ctx

        if previous is not None and not previous.token.is_cancelled:
            logging.info(f"Superseding active {previous.kind} on {folder}")
            previous.cancel()
        return ctx

    def finish(self, ctx: RunContext):
        """Drops the context unless a newer one replaced it or it was paused."""
        key = normalize_folder(ctx.folder)
        with self._lock:
            if self._active.get(key) is ctx and not ctx.paused:
                del self._active[key]

    def get(self, folder: str) -> Optional[RunContext]:
        with self._lock:
            return self._active.get(normalize_folder(folder))

    def cancel(self, folder: str, pause: bool = False) -> Optional[RunContext]:
        ctx = self.get(folder)
        if ctx is None:
            return None
        if pause:
            ctx.paused = True
        ctx.cancel()
        return ctx

    def take_paused(self, folder: str) -> Optional[RunContext]:
        key = normalize_folder(folder)
        with self._lock:
            ctx = self._active.get(key)
            if ctx is None or not ctx.paused:
                return None
            del self._active[key]
            return ctx
