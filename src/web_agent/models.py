"""Shared models used across the web agent."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

_LEGACY_TOOL_NAMES = {
    "GOTO": "NAVIGATE",
    "NAVBACK": "NAVIGATE_BACK",
    "CLOSE": "COMPLETE",
}


class Tool(str, enum.Enum):
    """Closed set of operations a planned step may request."""

    NAVIGATE = "NAVIGATE"
    ACT = "ACT"
    EXTRACT = "EXTRACT"
    OBSERVE = "OBSERVE"
    WAIT = "WAIT"
    NAVIGATE_BACK = "NAVIGATE_BACK"
    COMPLETE = "COMPLETE"

    @classmethod
    def parse(cls, value: str) -> "Tool":
        """Return the tool named by *value*, accepting legacy synonyms."""

        name = str(value).strip().upper().replace("-", "_")
        name = _LEGACY_TOOL_NAMES.get(name, name)
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"Unknown tool: {value!r}") from None


class ActionDescriptor(BaseModel):
    """A candidate interaction on the current page surfaced by OBSERVE."""

    description: str
    method: str
    selector: str
    arguments: list[str] = Field(default_factory=lambda: [""])

    @field_validator("arguments")
    @classmethod
    def _ensure_first_argument(cls, value: list[str]) -> list[str]:
        return value or [""]


class _StepBase(BaseModel):
    text: str
    reasoning: str
    instruction: str = ""
    step_number: int = Field(ge=1)
    error: Optional[str] = Field(default=None, description="Execution failure cause.")


class NavigateStep(_StepBase):
    tool: Literal[Tool.NAVIGATE] = Tool.NAVIGATE


class ActStep(_StepBase):
    tool: Literal[Tool.ACT] = Tool.ACT
    use_structured_action: bool = Field(
        default=False,
        description="Interpret the instruction as a serialized ActionDescriptor.",
    )


class ExtractStep(_StepBase):
    tool: Literal[Tool.EXTRACT] = Tool.EXTRACT
    extraction: Optional[Any] = None


class ObserveStep(_StepBase):
    tool: Literal[Tool.OBSERVE] = Tool.OBSERVE
    wait_for_user_choice: bool = Field(
        default=False,
        description="Suspend the run so a human can pick one of the observed actions.",
    )
    observation: Optional[list[ActionDescriptor]] = None


class WaitStep(_StepBase):
    tool: Literal[Tool.WAIT] = Tool.WAIT


class NavigateBackStep(_StepBase):
    tool: Literal[Tool.NAVIGATE_BACK] = Tool.NAVIGATE_BACK


class CompleteStep(_StepBase):
    tool: Literal[Tool.COMPLETE] = Tool.COMPLETE


Step = Annotated[
    Union[
        NavigateStep,
        ActStep,
        ExtractStep,
        ObserveStep,
        WaitStep,
        NavigateBackStep,
        CompleteStep,
    ],
    Field(discriminator="tool"),
]

STEP_ADAPTER: TypeAdapter[Step] = TypeAdapter(Step)


def build_step(
    tool: Tool,
    *,
    text: str,
    reasoning: str,
    instruction: str,
    step_number: int,
    flag: bool = False,
) -> Step:
    """Create the step variant for *tool*, routing *flag* to the field it means."""

    data: dict[str, Any] = {
        "tool": tool,
        "text": text,
        "reasoning": reasoning,
        "instruction": instruction,
        "step_number": step_number,
    }
    if tool is Tool.ACT:
        data["use_structured_action"] = flag
    elif tool is Tool.OBSERVE:
        data["wait_for_user_choice"] = flag
    return STEP_ADAPTER.validate_python(data)


class StepResult(BaseModel):
    """Outcome of executing one step against a browser handle."""

    success: bool = True
    done: bool = False
    extraction: Optional[Any] = None
    observation: Optional[list[ActionDescriptor]] = None
    error: Optional[str] = None


class RunState(str, enum.Enum):
    """States of the agent loop."""

    STARTING = "starting"
    PLANNING = "planning"
    EXECUTING = "executing"
    SUSPENDED = "suspended"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {RunState.SUSPENDED, RunState.COMPLETE, RunState.FAILED}


class FailureCause(str, enum.Enum):
    """Reason a run ended in the FAILED state."""

    SESSION_INIT = "session_init"
    PLANNING = "planning"
    EXECUTION = "execution"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"
    TERMINATED = "terminated"
    INTERNAL = "internal"


class MessageRole(str, enum.Enum):
    USER = "user"
    AGENT = "agent"


class MessageEvent(BaseModel):
    """Display-ready record of a user goal, an agent step or a run outcome."""

    role: MessageRole
    text: str
    reasoning: Optional[str] = None
    tool: Optional[str] = None
    step_number: Optional[int] = None
    payload: Optional[str] = Field(
        default=None,
        description="Serialized observation or extraction data.",
    )


class RunResult(BaseModel):
    """Snapshot of a run: its state, outcome and everything it produced."""

    run_id: str
    session_id: str
    goal: str
    state: RunState
    success: bool
    message: Optional[str] = None
    cause: Optional[FailureCause] = None
    history: list[Step] = Field(default_factory=list)
    messages: list[MessageEvent] = Field(default_factory=list)
    choices: list[ActionDescriptor] = Field(
        default_factory=list,
        description="Actions offered to the user while the run is suspended.",
    )
    live_view_url: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None


class NotificationLevel(str, enum.Enum):
    """Severity of notification events."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class NotificationEvent(BaseModel):
    """Event emitted to notify users."""

    type: str
    message: str
    level: NotificationLevel = NotificationLevel.INFO
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
