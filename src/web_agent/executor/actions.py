"""Execute planned steps against a browser handle."""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Optional

from ..browser.base import BrowserHandle
from ..models import (
    ActionDescriptor,
    ActStep,
    ObserveStep,
    Step,
    StepResult,
    Tool,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_WAIT_MS = 300_000

Sleeper = Callable[[float, Optional[threading.Event]], None]


def interruptible_sleep(seconds: float, interrupt: Optional[threading.Event]) -> None:
    """Sleep for *seconds*, returning early once *interrupt* is set."""

    if interrupt is None:
        time.sleep(seconds)
    else:
        interrupt.wait(seconds)


class ActionExecutor:
    """Run one step and report its outcome.

    Failures never escape as exceptions: whatever the engine raises comes back
    as a :class:`StepResult` with ``success=False`` so the caller decides what
    to do. The handle stays usable after a failed step.
    """

    def __init__(
        self,
        *,
        navigate_timeout_ms: int = 60_000,
        action_timeout_ms: int = 60_000,
        max_wait_ms: int = DEFAULT_MAX_WAIT_MS,
        sleep: Sleeper = interruptible_sleep,
    ) -> None:
        self._navigate_timeout_ms = navigate_timeout_ms
        self._action_timeout_ms = action_timeout_ms
        self._max_wait_ms = max_wait_ms
        self._sleep = sleep

    def execute(
        self,
        handle: BrowserHandle,
        step: Step,
        *,
        interrupt: Optional[threading.Event] = None,
    ) -> StepResult:
        """Run *step* on *handle*; a set *interrupt* cuts a WAIT short."""

        LOGGER.info(
            "Executing step %s: %s %s",
            step.step_number,
            step.tool.value,
            step.instruction,
        )
        try:
            if isinstance(step, ActStep):
                return self._act(handle, step)
            if isinstance(step, ObserveStep):
                return self._observe(handle, step)
            if step.tool is Tool.WAIT:
                return self.wait(step, interrupt)
            if step.tool is Tool.NAVIGATE:
                return self._navigate(handle, step)
            if step.tool is Tool.EXTRACT:
                return self._extract(handle, step)
            if step.tool is Tool.NAVIGATE_BACK:
                handle.go_back()
                return StepResult()
            if step.tool is Tool.COMPLETE:
                return StepResult(done=True)
            raise ValueError(f"No handler for tool {step.tool.value}")
        except Exception as exc:
            LOGGER.warning(
                "Step %s (%s) failed: %s",
                step.step_number,
                step.tool.value,
                exc,
                exc_info=True,
            )
            return StepResult(success=False, error=f"{step.tool.value} failed: {exc}")

    def wait(self, step: Step, interrupt: Optional[threading.Event] = None) -> StepResult:
        """Pause for the step's duration in milliseconds, capped at ``max_wait_ms``."""

        try:
            milliseconds = float(step.instruction)
        except ValueError:
            return StepResult(
                success=False,
                error=f"WAIT failed: {step.instruction!r} is not a duration",
            )
        if not math.isfinite(milliseconds) or milliseconds < 0:
            return StepResult(
                success=False,
                error=f"WAIT failed: needs a finite, non-negative duration, got {step.instruction!r}",
            )
        if milliseconds > self._max_wait_ms:
            LOGGER.warning(
                "WAIT of %sms exceeds the %sms limit; waiting %sms",
                milliseconds,
                self._max_wait_ms,
                self._max_wait_ms,
            )
            milliseconds = self._max_wait_ms
        self._sleep(milliseconds / 1000, interrupt)
        return StepResult()

    def _navigate(self, handle: BrowserHandle, step: Step) -> StepResult:
        if not step.instruction:
            raise ValueError("NAVIGATE requires a URL")
        handle.goto(step.instruction, self._navigate_timeout_ms)
        return StepResult()

    def _act(self, handle: BrowserHandle, step: ActStep) -> StepResult:
        if step.use_structured_action:
            descriptor = ActionDescriptor.model_validate_json(step.instruction)
            handle.perform(descriptor, self._action_timeout_ms)
        else:
            handle.act(step.instruction, self._action_timeout_ms)
        return StepResult()

    def _extract(self, handle: BrowserHandle, step: Step) -> StepResult:
        extraction = handle.extract(step.instruction, self._action_timeout_ms)
        return StepResult(extraction=extraction)

    def _observe(self, handle: BrowserHandle, step: ObserveStep) -> StepResult:
        observation = handle.observe(step.instruction)
        return StepResult(observation=observation, done=step.wait_for_user_choice)
