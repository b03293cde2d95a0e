"""Main orchestrator that coordinates the planner and the browser."""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar

from ..browser.base import BrowserHandle
from ..browser.live_view import LiveViewError, LiveViewProvider
from ..chat.service import ChatTurn, PageAnswerResult, PageChat
from ..errors import (
    AgentError,
    ChatError,
    ExecutionError,
    PlanningError,
    RunStateError,
    RunTerminated,
    SessionInitError,
    SessionNotFoundError,
    StepLimitExceeded,
)
from ..executor.actions import ActionExecutor
from ..models import (
    ActionDescriptor,
    ActStep,
    ExtractStep,
    FailureCause,
    MessageEvent,
    NavigateStep,
    NotificationEvent,
    NotificationLevel,
    ObserveStep,
    RunResult,
    RunState,
    Step,
    StepResult,
    Tool,
)
from ..notifications.base import Notifier
from ..planner.service import StepPlanner
from ..session.registry import SessionRegistry
from .control import RunControl, RunTracker
from .projector import ResultProjector

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_STEPS = 50

_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.STARTING: {RunState.PLANNING, RunState.FAILED},
    RunState.PLANNING: {RunState.EXECUTING, RunState.COMPLETE, RunState.FAILED},
    RunState.EXECUTING: {
        RunState.PLANNING,
        RunState.SUSPENDED,
        RunState.COMPLETE,
        RunState.FAILED,
    },
    RunState.SUSPENDED: {RunState.EXECUTING, RunState.FAILED},
    RunState.COMPLETE: set(),
    RunState.FAILED: set(),
}

_FAILURE_CAUSES: dict[type[AgentError], FailureCause] = {
    SessionInitError: FailureCause.SESSION_INIT,
    PlanningError: FailureCause.PLANNING,
    ExecutionError: FailureCause.EXECUTION,
    StepLimitExceeded: FailureCause.STEP_LIMIT_EXCEEDED,
    RunTerminated: FailureCause.TERMINATED,
}


class AgentRun:
    """State of one orchestration run: its state machine and step history."""

    def __init__(
        self,
        *,
        goal: str,
        session_id: str,
        prior_messages: Optional[Iterable[MessageEvent]] = None,
        run_id: Optional[str] = None,
    ) -> None:
        self.run_id = run_id or uuid.uuid4().hex
        self.session_id = session_id
        self.goal = goal
        self.prior_messages = list(prior_messages) if prior_messages is not None else None
        self.control = RunControl()
        self.created_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None
        self.live_view_url: Optional[str] = None
        self.iterations = 0
        self._lock = threading.RLock()
        self._state = RunState.PLANNING if self.is_follow_up else RunState.STARTING
        self._history: list[Step] = []
        self._messages: list[MessageEvent] = []
        self._message: Optional[str] = None
        self._cause: Optional[FailureCause] = None

    @property
    def is_follow_up(self) -> bool:
        return self.prior_messages is not None

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    @property
    def history(self) -> list[Step]:
        with self._lock:
            return list(self._history)

    @property
    def messages(self) -> list[MessageEvent]:
        with self._lock:
            return list(self._messages)

    @property
    def message(self) -> Optional[str]:
        with self._lock:
            return self._message

    @property
    def cause(self) -> Optional[FailureCause]:
        with self._lock:
            return self._cause

    def transition(self, state: RunState) -> None:
        with self._lock:
            if state not in _TRANSITIONS[self._state]:
                raise RunStateError(
                    f"Run {self.run_id} cannot move from {self._state.value} to {state.value}"
                )
            LOGGER.debug("Run %s: %s -> %s", self.run_id, self._state.value, state.value)
            self._state = state
            if state in {RunState.COMPLETE, RunState.FAILED}:
                self.finished_at = datetime.now(timezone.utc)

    def finish(
        self,
        state: RunState,
        message: str,
        cause: Optional[FailureCause] = None,
    ) -> bool:
        """Enter a terminal state once; later calls report False and change nothing."""

        with self._lock:
            if self._state in {RunState.COMPLETE, RunState.FAILED}:
                return False
            self.transition(state)
            self._message = message
            self._cause = cause
            return True

    def suspend(self, message: str) -> None:
        with self._lock:
            self.transition(RunState.SUSPENDED)
            self._message = message

    def append(self, step: Step) -> None:
        with self._lock:
            if self._state.is_terminal:
                raise RunStateError(f"Run {self.run_id} is {self._state.value}; no steps may be added")
            expected = len(self._history) + 1
            if step.step_number != expected:
                raise RunStateError(
                    f"Step number {step.step_number} out of order; expected {expected}"
                )
            self._history.append(step)

    def attach_result(self, step: Step, result: StepResult) -> None:
        with self._lock:
            step.error = result.error
            if isinstance(step, ExtractStep):
                step.extraction = result.extraction
            elif isinstance(step, ObserveStep):
                step.observation = result.observation

    def record_message(self, message: MessageEvent) -> None:
        with self._lock:
            self._messages.append(message)

    def pending_choices(self) -> list[ActionDescriptor]:
        with self._lock:
            if self._state is not RunState.SUSPENDED:
                raise RunStateError(f"Run {self.run_id} is not waiting for a choice")
            last = self._history[-1] if self._history else None
            if not isinstance(last, ObserveStep):
                return []
            return list(last.observation or [])

    def snapshot(self) -> RunResult:
        with self._lock:
            choices: list[ActionDescriptor] = []
            if self._state is RunState.SUSPENDED:
                choices = self.pending_choices()
            return RunResult(
                run_id=self.run_id,
                session_id=self.session_id,
                goal=self.goal,
                state=self._state,
                success=self._state is not RunState.FAILED,
                message=self._message,
                cause=self._cause,
                history=[step.model_copy(deep=True) for step in self._history],
                messages=[message.model_copy() for message in self._messages],
                choices=[choice.model_copy() for choice in choices],
                live_view_url=self.live_view_url,
                created_at=self.created_at,
                finished_at=self.finished_at,
            )


class Orchestrator:
    """Drive runs through STARTING → (PLANNING → EXECUTING)* → terminal."""

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        planner: StepPlanner,
        executor: ActionExecutor,
        notifier: Notifier,
        live_view: Optional[LiveViewProvider] = None,
        projector: Optional[ResultProjector] = None,
        chat: Optional[PageChat] = None,
        max_steps: int = DEFAULT_MAX_STEPS,
    ) -> None:
        self._registry = registry
        self._planner = planner
        self._executor = executor
        self._notifier = notifier
        self._live_view = live_view
        self._projector = projector or ResultProjector()
        self._chat = chat
        self._max_steps = max_steps
        self._tracker = RunTracker()

    # Public API --------------------------------------------------------------

    def start_task(self, goal: str, session_id: Optional[str] = None) -> AgentRun:
        """Run a new task until it completes, fails or waits for a choice."""

        return self.execute_run(self.new_run(goal, session_id=session_id))

    def submit_follow_up(
        self,
        session_id: str,
        goal: str,
        prior_messages: Iterable[MessageEvent],
    ) -> AgentRun:
        """Plan a new goal on an existing session, seeded with the prior conversation."""

        return self.execute_run(
            self.new_run(goal, session_id=session_id, prior_messages=prior_messages)
        )

    def new_run(
        self,
        goal: str,
        *,
        session_id: Optional[str] = None,
        prior_messages: Optional[Iterable[MessageEvent]] = None,
    ) -> AgentRun:
        """Create a run and make it reachable by :meth:`terminate` before it starts."""

        run = AgentRun(
            goal=goal,
            session_id=session_id or uuid.uuid4().hex,
            prior_messages=prior_messages,
        )
        self._tracker.register(run)
        return run

    def execute_run(self, run: AgentRun) -> AgentRun:
        LOGGER.info("Starting run %s on session %s: %s", run.run_id, run.session_id, run.goal)
        self._tracker.register(run)
        run.record_message(self._projector.goal(run.goal))
        self._notify(
            NotificationEvent(
                type="run_started",
                message=f"Starting task: {run.goal}",
                data={"run_id": run.run_id, "session_id": run.session_id},
            )
        )
        try:
            if run.state is RunState.STARTING:
                self._start(run)
            if run.state is RunState.PLANNING:
                self._loop(run)
        except Exception as exc:  # pragma: no cover - unexpected failures
            LOGGER.exception("Unhandled orchestrator error in run %s", run.run_id)
            self._fail(run, FailureCause.INTERNAL, exc)
        finally:
            if run.state is not RunState.SUSPENDED:
                self._tracker.unregister(run)
        return run

    def resume_with_chosen_action(self, run: AgentRun, index: int) -> RunResult:
        """Perform the action the user picked from a suspended OBSERVE step."""

        choices = run.pending_choices()
        if not 0 <= index < len(choices):
            raise RunStateError(f"Choice {index} is out of range; {len(choices)} actions available")
        descriptor = choices[index]
        run.transition(RunState.EXECUTING)
        try:
            step = ActStep(
                text=descriptor.description,
                reasoning="Chosen by the user from the observed actions.",
                instruction=descriptor.model_dump_json(),
                use_structured_action=True,
                step_number=len(run.history) + 1,
            )
            run.append(step)
            self._execute(run, step)
        except AgentError as exc:
            self._fail(run, self._cause_for(exc), exc)
        except Exception as exc:
            LOGGER.exception("Unhandled error resuming run %s", run.run_id)
            self._fail(run, FailureCause.INTERNAL, exc)
        else:
            self._complete(run, f"Performed: {descriptor.description}")
        finally:
            self._tracker.unregister(run)
        return run.snapshot()

    def terminate(self, session_id: str) -> Optional[bytes]:
        """Stop every run on *session_id* and release its browser."""

        reason = f"Session {session_id} was terminated"
        for run in self._tracker.cancel_session(session_id, reason):
            if run.state is RunState.SUSPENDED:
                self._fail(run, FailureCause.TERMINATED, RunTerminated(reason))
                self._tracker.unregister(run)
        screenshot = self._registry.release(session_id)
        self._notify(
            NotificationEvent(
                type="session_terminated",
                message=reason,
                data={"session_id": session_id, "screenshot": screenshot is not None},
            )
        )
        return screenshot

    def active_runs(self, session_id: str) -> list[AgentRun]:
        return self._tracker.runs_for(session_id)

    def ask_page(
        self,
        session_id: str,
        question: str,
        history: Iterable[ChatTurn] = (),
    ) -> PageAnswerResult:
        """Answer *question* from the content of the page *session_id* is showing."""

        if self._chat is None:
            raise ChatError("Page questions are not configured")
        with self._registry.lock(session_id):
            if session_id not in self._registry:
                raise SessionNotFoundError(f"Session {session_id} is not live")
            handle = self._registry.acquire(session_id)
            return self._chat.ask(handle, question, history)

    # State machine -----------------------------------------------------------

    def _start(self, run: AgentRun) -> None:
        created = False
        try:
            with self._registry.lock(run.session_id):
                created = run.session_id not in self._registry
                self._on_session(run, lambda handle: None)
            self._publish_live_view(run)
            starting_point = self._planner.choose_starting_point(run.goal)
            step = NavigateStep(
                text=f"Navigating to {starting_point.url}",
                reasoning=starting_point.reasoning,
                instruction=starting_point.url,
                step_number=1,
            )
            run.append(step)
            self._execute(run, step)
            run.transition(RunState.PLANNING)
        except SessionInitError as exc:
            self._fail(run, FailureCause.SESSION_INIT, exc)
        except AgentError as exc:
            self._abandon_start(run, created)
            self._fail(run, self._cause_for(exc), exc)
        except Exception as exc:
            LOGGER.exception("Unhandled error starting run %s", run.run_id)
            self._abandon_start(run, created)
            self._fail(run, FailureCause.INTERNAL, exc)

    def _abandon_start(self, run: AgentRun, created: bool) -> None:
        if created:
            LOGGER.info("Run %s failed while starting; releasing session %s", run.run_id, run.session_id)
            self._registry.release(run.session_id)

    def _loop(self, run: AgentRun) -> None:
        try:
            while True:
                self._check_cancelled(run)
                if run.iterations >= self._max_steps:
                    raise StepLimitExceeded(self._max_steps)
                step = self._plan(run)
                run.iterations += 1
                self._check_cancelled(run)
                run.append(step)
                if step.tool is Tool.COMPLETE:
                    self._step_completed(run, step)
                    self._complete(run, step.text)
                    return
                run.transition(RunState.EXECUTING)
                result = self._execute(run, step)
                if result.done:
                    if isinstance(step, ObserveStep) and step.wait_for_user_choice:
                        self._suspend(run, step)
                    else:
                        self._complete(run, step.text)
                    return
                run.transition(RunState.PLANNING)
        except AgentError as exc:
            self._fail(run, self._cause_for(exc), exc)

    def _plan(self, run: AgentRun) -> Step:
        current_url, screenshot = self._on_session(run, self._page_state)
        if run.is_follow_up and not run.history:
            return self._planner.plan_follow_up(
                run.goal,
                run.prior_messages or [],
                current_url,
                screenshot,
            )
        return self._planner.plan_next(run.goal, current_url, screenshot, run.history)

    def _execute(self, run: AgentRun, step: Step) -> StepResult:
        if step.tool is Tool.WAIT:
            # WAIT never touches the browser and runs without the session lock.
            self._check_cancelled(run)
            result = self._executor.wait(step, run.control.event)
        else:
            result = self._on_session(run, lambda handle: self._executor.execute(handle, step))
        run.attach_result(step, result)
        if not result.success:
            raise ExecutionError(result.error or f"Step {step.step_number} failed")
        self._step_completed(run, step)
        return result

    def _on_session(self, run: AgentRun, func: Callable[[BrowserHandle], T]) -> T:
        with self._registry.lock(run.session_id):
            self._check_cancelled(run)
            handle = self._registry.acquire(run.session_id)
            return func(handle)

    @staticmethod
    def _page_state(handle: BrowserHandle) -> tuple[Optional[str], Optional[bytes]]:
        try:
            current_url: Optional[str] = handle.current_url()
        except Exception as exc:
            LOGGER.warning("Could not read the current URL: %s", exc)
            current_url = None
        try:
            screenshot: Optional[bytes] = handle.screenshot()
        except Exception as exc:
            LOGGER.warning("Could not capture a screenshot for planning: %s", exc)
            screenshot = None
        return current_url, screenshot

    @staticmethod
    def _check_cancelled(run: AgentRun) -> None:
        request = run.control.snapshot()
        if request:
            raise RunTerminated(request.reason)

    @staticmethod
    def _cause_for(exc: AgentError) -> FailureCause:
        for error_type, cause in _FAILURE_CAUSES.items():
            if isinstance(exc, error_type):
                return cause
        return FailureCause.INTERNAL

    # Terminal transitions ----------------------------------------------------

    def _suspend(self, run: AgentRun, step: ObserveStep) -> None:
        choices = step.observation or []
        message = f"Choose one of {len(choices)} available actions to continue."
        run.suspend(message)
        LOGGER.info("Run %s suspended awaiting a choice", run.run_id)
        self._notify(
            NotificationEvent(
                type="run_suspended",
                message=message,
                level=NotificationLevel.WARNING,
                data={
                    "run_id": run.run_id,
                    "choices": [choice.description for choice in choices],
                },
            )
        )

    def _complete(self, run: AgentRun, message: str) -> None:
        if not run.finish(RunState.COMPLETE, message):
            return
        LOGGER.info("Run %s complete after %s steps", run.run_id, len(run.history))
        run.record_message(self._projector.outcome(message, success=True))
        self._notify(
            NotificationEvent(
                type="run_completed",
                message=message,
                level=NotificationLevel.SUCCESS,
                data={"run_id": run.run_id, "steps": len(run.history)},
            )
        )

    def _fail(self, run: AgentRun, cause: FailureCause, exc: BaseException) -> None:
        message = str(exc) or cause.value
        if not run.finish(RunState.FAILED, message, cause):
            return
        LOGGER.warning("Run %s failed (%s): %s", run.run_id, cause.value, message)
        run.record_message(self._projector.outcome(message, success=False))
        self._notify(
            NotificationEvent(
                type="run_failed",
                message=message,
                level=NotificationLevel.ERROR,
                data={"run_id": run.run_id, "cause": cause.value},
            )
        )

    # Notifications -----------------------------------------------------------

    def _step_completed(self, run: AgentRun, step: Step) -> None:
        message = self._projector.step(step)
        run.record_message(message)
        self._notify(
            NotificationEvent(
                type="step_completed",
                message=f"Step {step.step_number}: {step.text}",
                data=message.model_dump(mode="json"),
            )
        )

    def _publish_live_view(self, run: AgentRun) -> None:
        if not self._live_view:
            return
        try:
            url = self._live_view.lookup(run.session_id)
        except LiveViewError as exc:
            LOGGER.warning("Live view unavailable for session %s: %s", run.session_id, exc)
            return
        if not url:
            return
        run.live_view_url = url
        self._registry.set_live_view_url(run.session_id, url)
        self._notify(
            NotificationEvent(
                type="live_view_ready",
                message="Live view of the browser session is available",
                data={"session_id": run.session_id, "url": url},
            )
        )

    def _notify(self, event: NotificationEvent) -> None:
        try:
            self._notifier.notify(event)
        except Exception:
            LOGGER.exception("Failed to deliver %s notification", event.type)
