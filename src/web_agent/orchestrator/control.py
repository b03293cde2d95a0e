"""Utilities for stopping runs from outside the orchestrator."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .runner import AgentRun


@dataclass
class CancellationRequest:
    """Record describing why a run was asked to stop."""

    reason: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RunControl:
    """Cancellation flag shared between a run and whoever may terminate it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._request: Optional[CancellationRequest] = None
        self._event = threading.Event()

    def cancel(self, reason: str) -> bool:
        """Request cancellation; returns False when one is already pending."""

        with self._lock:
            if self._request:
                return False
            self._request = CancellationRequest(reason=reason)
        self._event.set()
        return True

    @property
    def event(self) -> threading.Event:
        """Event set once cancellation is requested."""

        return self._event

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._request is not None

    def snapshot(self) -> Optional[CancellationRequest]:
        with self._lock:
            return self._request


class RunTracker:
    """Keep track of the unfinished runs attached to each session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, dict[str, "AgentRun"]] = {}

    def register(self, run: "AgentRun") -> None:
        with self._lock:
            self._runs.setdefault(run.session_id, {})[run.run_id] = run

    def unregister(self, run: "AgentRun") -> None:
        with self._lock:
            runs = self._runs.get(run.session_id)
            if not runs:
                return
            runs.pop(run.run_id, None)
            if not runs:
                del self._runs[run.session_id]

    def runs_for(self, session_id: str) -> list["AgentRun"]:
        with self._lock:
            return list(self._runs.get(session_id, {}).values())

    def cancel_session(self, session_id: str, reason: str) -> list["AgentRun"]:
        """Cancel every tracked run on *session_id* and return them."""

        runs = self.runs_for(session_id)
        for run in runs:
            run.control.cancel(reason)
        return runs
