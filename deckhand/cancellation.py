"""
DECKHAND Cancellation — One Signal, Two Causes

A single CancelToken is shared by the model request and any spawned
process of a run. "Stop" and "timeout" travel through the same token
and differ only in the cause recorded on it.
"""

from __future__ import annotations

import threading
from enum import Enum

from loguru import logger

from deckhand.errors import DeckhandError


class StopCause(str, Enum):
    USER = "user"
    TIMEOUT = "timeout"


class RunCancelled(DeckhandError):
    code = "RUN_CANCELLED"


class UserStopped(RunCancelled):
    code = "STOPPED_BY_USER"

    def __init__(self, message: str = "Response stopped by user"):
        super().__init__(message)


class TimedOut(RunCancelled):
    code = "TIMED_OUT"

    def __init__(self, message: str = "Request timed out"):
        super().__init__(message)


class CancelToken:
    """Idempotent, thread-safe cancellation signal. The first cause wins."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._cause: StopCause | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def cause(self) -> StopCause | None:
        return self._cause

    def cancel(self, cause: StopCause = StopCause.USER) -> bool:
        """Cancel the token. Returns False if it was already cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self._cause = StopCause(cause)
            self._event.set()
        logger.info(f"[LOOP] Cancellation requested ({self._cause.value})")
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or the timeout elapses."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if not self._event.is_set():
            return
        raise self.as_error()

    def as_error(self) -> RunCancelled:
        if self._cause is StopCause.TIMEOUT:
            return TimedOut()
        return UserStopped()
