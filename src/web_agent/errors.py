"""Error taxonomy of the agent loop."""

from __future__ import annotations


class AgentError(RuntimeError):
    """Base class for failures surfaced by the agent loop."""


class SessionInitError(AgentError):
    """Raised when a browser session cannot be initialised."""


class PlanningError(AgentError):
    """Raised when the reasoning service fails or returns unusable output."""


class ExecutionError(AgentError):
    """Raised when a step fails against the browser."""


class StepLimitExceeded(AgentError):
    """Raised when a run exhausts its planning budget without completing."""

    def __init__(self, max_steps: int) -> None:
        super().__init__(f"Step limit of {max_steps} exceeded before the goal was completed")
        self.max_steps = max_steps


class RunStateError(AgentError):
    """Raised when an operation is not valid in the run's current state."""


class RunTerminated(AgentError):
    """Raised inside a run whose session was terminated by the caller."""


class SessionNotFoundError(AgentError):
    """Raised when an operation names a session that is not live."""


class ChatError(AgentError):
    """Raised when a question about the current page cannot be answered."""
