"""Run coordinator state machine primitives."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Callable, Optional


class RunState(str, Enum):
    """Lifecycle states of a single coordinator run."""

    IDLE = "idle"
    RUNNING = "running"
    CLOSING_SESSIONS = "closing_sessions"
    REPORTING = "reporting"
    SUPPRESSED = "suppressed"
    DONE = "done"


_ALLOWED_TRANSITIONS = {
    RunState.IDLE: {RunState.RUNNING},
    RunState.RUNNING: {RunState.CLOSING_SESSIONS},
    RunState.CLOSING_SESSIONS: {RunState.REPORTING, RunState.SUPPRESSED},
    RunState.REPORTING: {RunState.DONE},
    RunState.SUPPRESSED: {RunState.DONE},
    RunState.DONE: set(),
}


StateCallback = Callable[[RunState, Optional[str]], None]


class RunStateMachine:
    """Thread-safe run state tracker."""

    def __init__(self) -> None:
        self._state = RunState.IDLE
        self._lock = threading.RLock()
        self._reason: Optional[str] = None
        self._callbacks: list[StateCallback] = []

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    @property
    def reason(self) -> Optional[str]:
        with self._lock:
            return self._reason

    def is_terminal(self) -> bool:
        with self._lock:
            return self._state == RunState.DONE

    def register_callback(self, callback: StateCallback) -> None:
        """Register a callback invoked on every transition."""
        self._callbacks.append(callback)

    def transition(self, new_state: RunState, reason: Optional[str] = None) -> RunState:
        """Attempt a state transition; raise ValueError if invalid."""
        with self._lock:
            allowed = _ALLOWED_TRANSITIONS.get(self._state, set())
            if new_state not in allowed:
                raise ValueError(f"Invalid transition {self._state} -> {new_state}")
            self._state = new_state
            self._reason = reason
            for cb in list(self._callbacks):
                try:
                    cb(self._state, self._reason)
                except Exception:
                    continue
            return self._state
