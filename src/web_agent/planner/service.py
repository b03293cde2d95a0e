"""Step planning backed by the reasoning service."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

from pydantic import AnyHttpUrl, BaseModel, TypeAdapter, field_validator

from ..errors import PlanningError
from ..llm.base import LLMClient, LLMContext, LLMError, ResponseT
from ..models import MessageEvent, Step, Tool, build_step
from .prompt_builder import PromptBuilder

LOGGER = logging.getLogger(__name__)

_URL_ADAPTER = TypeAdapter(AnyHttpUrl)


class StartingPoint(BaseModel):
    """Where a run begins, as chosen by the reasoning service."""

    url: str
    reasoning: str

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        value = value.strip()
        _URL_ADAPTER.validate_python(value)
        return value


class PlannedStep(BaseModel):
    """Raw next-step response before it is turned into a typed :data:`Step`."""

    text: str
    reasoning: str
    tool: str
    instruction: str = ""
    use_structured_action: bool = False
    wait_for_user_choice: bool = False


class StepPlanner:
    """Ask the reasoning service for the next step of a run.

    The planner is a pure decision function of goal, history and page state.
    It reads nothing from the browser itself: the caller passes the current URL
    and screenshot in.
    """

    def __init__(self, llm: LLMClient, prompt_builder: Optional[PromptBuilder] = None) -> None:
        self._llm = llm
        self._prompt_builder = prompt_builder or PromptBuilder()

    def choose_starting_point(self, goal: str) -> StartingPoint:
        context = LLMContext(
            prompt=self._prompt_builder.starting_point(goal),
            purpose="starting_point",
        )
        starting_point = self._ask(context, StartingPoint)
        LOGGER.info("Starting point for %r: %s", goal, starting_point.url)
        return starting_point

    def plan_next(
        self,
        goal: str,
        current_url: Optional[str],
        screenshot: Optional[bytes],
        history: Sequence[Step],
    ) -> Step:
        context = LLMContext(
            prompt=self._prompt_builder.next_step(goal, current_url, history),
            images=[screenshot] if screenshot else [],
            purpose="next_step",
        )
        return self._to_step(self._ask(context, PlannedStep), step_number=len(history) + 1)

    def plan_follow_up(
        self,
        goal: str,
        prior_messages: Iterable[MessageEvent],
        current_url: Optional[str] = None,
        screenshot: Optional[bytes] = None,
    ) -> Step:
        context = LLMContext(
            prompt=self._prompt_builder.follow_up(goal, prior_messages, current_url),
            images=[screenshot] if screenshot else [],
            purpose="follow_up",
        )
        return self._to_step(self._ask(context, PlannedStep), step_number=1)

    def _ask(self, context: LLMContext, schema: type[ResponseT]) -> ResponseT:
        try:
            return self._llm.complete(context, schema)
        except (LLMError, ValueError) as exc:
            LOGGER.warning("Planning call %s failed: %s", context.purpose, exc)
            raise PlanningError(f"Reasoning service failed during {context.purpose}: {exc}") from exc

    @staticmethod
    def _to_step(planned: PlannedStep, *, step_number: int) -> Step:
        try:
            tool = Tool.parse(planned.tool)
        except ValueError as exc:
            raise PlanningError(str(exc)) from exc
        flag = False
        if tool is Tool.ACT:
            flag = planned.use_structured_action
        elif tool is Tool.OBSERVE:
            flag = planned.wait_for_user_choice
        step = build_step(
            tool,
            text=planned.text,
            reasoning=planned.reasoning,
            instruction=planned.instruction,
            step_number=step_number,
            flag=flag,
        )
        LOGGER.info("Planned step %s: %s %s", step_number, tool.value, planned.instruction)
        return step
