"""Background execution of agent runs for the HTTP service."""
from __future__ import annotations

import logging
import threading

from ..models import RunResult
from ..orchestrator.runner import AgentRun, Orchestrator

LOGGER = logging.getLogger(__name__)


class RunWorker:
    """Run a single orchestration in a background thread."""

    def __init__(self, orchestrator: Orchestrator, run: AgentRun) -> None:
        self._orchestrator = orchestrator
        self._run = run
        self._thread = threading.Thread(
            target=self._target,
            name=f"run-{run.run_id}",
            daemon=True,
        )

    # Public API --------------------------------------------------------------

    @property
    def run_id(self) -> str:
        return self._run.run_id

    @property
    def run(self) -> AgentRun:
        return self._run

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def is_running(self) -> bool:
        return self._thread.is_alive()

    def finished(self) -> bool:
        return not self.is_running() and self._run.state.is_terminal

    def snapshot(self) -> RunResult:
        return self._run.snapshot()

    def resume(self, index: int) -> RunResult:
        return self._orchestrator.resume_with_chosen_action(self._run, index)

    # Internal helpers --------------------------------------------------------

    def _target(self) -> None:
        LOGGER.debug("Worker thread started for run %s", self._run.run_id)
        self._orchestrator.execute_run(self._run)
