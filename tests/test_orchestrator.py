from __future__ import annotations

import threading
import time

import pytest

from conftest import AgentHarness, CallWindows, FakeBrowserHandle, start, step
from web_agent.browser.live_view import LiveViewError, LiveViewProvider, TemplateLiveView
from web_agent.chat.service import ChatTurn
from web_agent.errors import ChatError, RunStateError, SessionNotFoundError
from web_agent.executor.actions import ActionExecutor
from web_agent.models import (
    ActStep,
    FailureCause,
    MessageRole,
    NavigateStep,
    NotificationEvent,
    ObserveStep,
    RunState,
    Tool,
)
from web_agent.notifications.base import Notifier

ALWAYS_ACT = {
    "url": "https://example.com",
    "reasoning": "keep clicking",
    "text": "Click next",
    "tool": "ACT",
    "instruction": "click the next button",
}


def _step_numbers(run) -> list[int]:
    return [entry.step_number for entry in run.history]


def test_navigate_and_summarise():
    harness = AgentHarness(
        [start("https://example.com"), step("COMPLETE", text="Example Domain is a placeholder page")]
    )

    run = harness.orchestrator.start_task("https://example.com", session_id="s1")

    assert run.state is RunState.COMPLETE
    assert len(run.history) == 2
    assert isinstance(run.history[0], NavigateStep)
    assert run.history[0].instruction == "https://example.com"
    assert run.history[1].tool is Tool.COMPLETE
    assert run.message == "Example Domain is a placeholder page"
    assert harness.handles["s1"].engine_calls("goto") == [("https://example.com", 60_000)]
    assert harness.event_types() == [
        "run_started",
        "step_completed",
        "step_completed",
        "run_completed",
    ]


def test_messages_project_goal_steps_and_outcome():
    harness = AgentHarness(
        [
            start(),
            step("EXTRACT", "the heading"),
            step("COMPLETE", text="Heading is Example"),
        ],
        extract_result={"heading": "Example"},
    )

    run = harness.orchestrator.start_task("Read the heading")

    messages = run.messages
    assert [message.role for message in messages] == [
        MessageRole.USER,
        MessageRole.AGENT,
        MessageRole.AGENT,
        MessageRole.AGENT,
        MessageRole.AGENT,
    ]
    assert messages[0].text == "Read the heading"
    assert [message.tool for message in messages[1:]] == ["NAVIGATE", "EXTRACT", "COMPLETE", "SUMMARY"]
    assert [message.step_number for message in messages[1:4]] == [1, 2, 3]
    assert messages[2].payload == '{"heading": "Example"}'
    assert messages[-1].text == "Heading is Example"


def test_history_is_numbered_without_gaps():
    harness = AgentHarness(
        [
            start(),
            step("ACT", "accept cookies"),
            step("WAIT", "250"),
            step("NAVIGATE", "https://example.com/docs"),
            step("NAVIGATE_BACK"),
            step("COMPLETE", text="Done"),
        ]
    )

    run = harness.orchestrator.start_task("Browse around", session_id="s1")

    assert run.state is RunState.COMPLETE
    assert _step_numbers(run) == [1, 2, 3, 4, 5, 6]
    assert harness.sleeps == [0.25]
    assert harness.handles["s1"].url == "https://example.com"


def test_no_steps_after_terminal_state():
    harness = AgentHarness([start(), step("COMPLETE", text="Done")])
    run = harness.orchestrator.start_task("Anything")

    with pytest.raises(RunStateError):
        run.append(ActStep(text="late", reasoning="late", instruction="click", step_number=3))
    assert run.finish(RunState.FAILED, "too late") is False
    assert run.state is RunState.COMPLETE
    assert harness.event_types().count("run_completed") == 1
    assert "run_failed" not in harness.event_types()


def test_step_limit_guard():
    harness = AgentHarness([], default=ALWAYS_ACT, max_steps=4)

    run = harness.orchestrator.start_task("Loop forever", session_id="s1")

    assert run.state is RunState.FAILED
    assert run.cause is FailureCause.STEP_LIMIT_EXCEEDED
    assert len(harness.llm.calls_for("next_step")) == 4
    assert len(run.history) == 5
    assert _step_numbers(run) == [1, 2, 3, 4, 5]
    assert harness.handles["s1"].engine_calls("act") == ["click the next button"] * 4
    assert "Step limit of 4" in run.message


def test_unknown_tool_fails_run_but_keeps_session():
    harness = AgentHarness([start(), step("TELEPORT", "mars")])

    run = harness.orchestrator.start_task("Go somewhere", session_id="s1")

    assert run.state is RunState.FAILED
    assert run.cause is FailureCause.PLANNING
    assert "Unknown tool" in run.message
    assert "s1" in harness.registry
    assert not harness.handles["s1"].closed
    assert len(run.history) == 1


def test_execution_failure_records_error_and_keeps_session():
    harness = AgentHarness([start(), step("ACT", "click missing")], fail_methods=("act",))

    run = harness.orchestrator.start_task("Click it", session_id="s1")

    assert run.state is RunState.FAILED
    assert run.cause is FailureCause.EXECUTION
    assert run.history[-1].error == "ACT failed: act exploded"
    assert "s1" in harness.registry
    summary = run.messages[-1]
    assert summary.tool == "SUMMARY"
    assert summary.text == "ACT failed: act exploded"


def test_session_init_failure_leaves_nothing_behind():
    harness = AgentHarness([start()], fail_init=True)

    run = harness.orchestrator.start_task("Anything", session_id="s1")

    assert run.state is RunState.FAILED
    assert run.cause is FailureCause.SESSION_INIT
    assert run.history == []
    assert "s1" not in harness.registry
    assert harness.created[0].closed
    assert harness.llm.calls == []


def test_failed_start_releases_new_session():
    harness = AgentHarness([start("ftp://example.com")])

    run = harness.orchestrator.start_task("Anything", session_id="s1")

    assert run.state is RunState.FAILED
    assert run.cause is FailureCause.PLANNING
    assert "s1" not in harness.registry
    assert harness.handles["s1"].closed


def test_failed_start_navigation_releases_new_session():
    harness = AgentHarness([start()], fail_methods=("goto",))

    run = harness.orchestrator.start_task("Anything", session_id="s1")

    assert run.cause is FailureCause.EXECUTION
    assert len(run.history) == 1
    assert "s1" not in harness.registry


def test_failed_start_keeps_session_owned_by_someone_else():
    harness = AgentHarness([start("not a url")])
    harness.registry.acquire("shared")

    run = harness.orchestrator.start_task("Anything", session_id="shared")

    assert run.state is RunState.FAILED
    assert "shared" in harness.registry
    assert not harness.handles["shared"].closed


def test_suspend_and_resume_with_chosen_action(descriptors):
    harness = AgentHarness(
        [start(), step("OBSERVE", "navigation links", wait_for_user_choice=True)],
        observe_result=descriptors,
    )
    run = harness.orchestrator.start_task("Pick a section", session_id="s1")

    assert run.state is RunState.SUSPENDED
    assert run.pending_choices() == descriptors
    assert run.snapshot().choices == descriptors
    assert "run_suspended" in harness.event_types()
    planning_calls = len(harness.llm.calls)

    result = harness.orchestrator.resume_with_chosen_action(run, 1)

    assert result.state is RunState.COMPLETE
    assert result.success
    assert result.message == "Performed: Open docs"
    assert len(harness.llm.calls) == planning_calls
    assert harness.handles["s1"].engine_calls("perform") == [descriptors[1]]
    assert harness.handles["s1"].engine_calls("act") == []
    last = result.history[-1]
    assert isinstance(last, ActStep)
    assert last.use_structured_action
    assert [entry.step_number for entry in result.history] == [1, 2, 3]
    assert harness.orchestrator.active_runs("s1") == []


def test_observe_without_wait_keeps_planning(descriptors):
    harness = AgentHarness(
        [start(), step("OBSERVE", "links"), step("COMPLETE", text="Saw links")],
        observe_result=descriptors,
    )

    run = harness.orchestrator.start_task("Look around")

    assert run.state is RunState.COMPLETE
    observe = run.history[1]
    assert isinstance(observe, ObserveStep)
    assert observe.observation == descriptors
    assert '"description": "Open pricing"' in harness.llm.calls_for("next_step")[1].prompt


def test_resume_rejects_out_of_range_choice(descriptors):
    harness = AgentHarness(
        [start(), step("OBSERVE", "links", wait_for_user_choice=True)],
        observe_result=descriptors,
    )
    run = harness.orchestrator.start_task("Pick", session_id="s1")

    with pytest.raises(RunStateError, match="out of range"):
        harness.orchestrator.resume_with_chosen_action(run, 3)

    assert run.state is RunState.SUSPENDED
    assert harness.handles["s1"].engine_calls("perform") == []


def test_resume_requires_suspended_run():
    harness = AgentHarness([start(), step("COMPLETE", text="Done")])
    run = harness.orchestrator.start_task("Anything")

    with pytest.raises(RunStateError, match="not waiting"):
        harness.orchestrator.resume_with_chosen_action(run, 0)


def test_resume_failure_fails_run(descriptors):
    harness = AgentHarness(
        [start(), step("OBSERVE", "links", wait_for_user_choice=True)],
        observe_result=descriptors,
        fail_methods=("perform",),
    )
    run = harness.orchestrator.start_task("Pick", session_id="s1")

    result = harness.orchestrator.resume_with_chosen_action(run, 0)

    assert result.state is RunState.FAILED
    assert result.cause is FailureCause.EXECUTION
    assert not result.success


def test_terminate_twice_is_safe():
    harness = AgentHarness([start(), step("COMPLETE", text="Done")])
    harness.orchestrator.start_task("Anything", session_id="s1")

    first = harness.orchestrator.terminate("s1")
    second = harness.orchestrator.terminate("s1")

    assert first == b"png-bytes"
    assert second is None
    assert harness.handles["s1"].closed
    assert harness.event_types().count("session_terminated") == 2


def test_terminate_fails_suspended_run(descriptors):
    harness = AgentHarness(
        [start(), step("OBSERVE", "links", wait_for_user_choice=True)],
        observe_result=descriptors,
    )
    run = harness.orchestrator.start_task("Pick", session_id="s1")

    screenshot = harness.orchestrator.terminate("s1")

    assert screenshot == b"png-bytes"
    assert run.state is RunState.FAILED
    assert run.cause is FailureCause.TERMINATED
    assert "s1" not in harness.registry
    with pytest.raises(RunStateError):
        harness.orchestrator.resume_with_chosen_action(run, 0)


class BlockingHandle(FakeBrowserHandle):
    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.entered = threading.Event()
        self.proceed = threading.Event()

    def act(self, instruction: str, timeout_ms: int) -> None:
        self.entered.set()
        self.proceed.wait(5)
        super().act(instruction, timeout_ms)


def test_terminate_during_in_flight_action():
    harness = AgentHarness([], default=ALWAYS_ACT, handle_factory=BlockingHandle)
    results = {}
    runner = threading.Thread(
        target=lambda: results.setdefault("run", harness.orchestrator.start_task("Loop", session_id="s1"))
    )
    runner.start()
    assert _wait_for_handle(harness, "s1").entered.wait(5)

    terminator = threading.Thread(
        target=lambda: results.setdefault("screenshot", harness.orchestrator.terminate("s1"))
    )
    terminator.start()
    terminator.join(0.1)
    assert terminator.is_alive()

    harness.handles["s1"].proceed.set()
    runner.join(5)
    terminator.join(5)

    run = results["run"]
    assert run.state is RunState.FAILED
    assert run.cause is FailureCause.TERMINATED
    assert results["screenshot"] == b"png-bytes"
    assert harness.handles["s1"].closed
    assert "s1" not in harness.registry
    assert len(harness.llm.calls_for("next_step")) == 1


def _wait_for_handle(harness: AgentHarness, session_id: str) -> BlockingHandle:
    for _ in range(500):
        handle = harness.handles.get(session_id)
        if handle is not None:
            return handle
        time.sleep(0.01)
    raise AssertionError(f"No handle created for {session_id}")


def test_concurrent_runs_never_overlap_on_a_session():
    windows = CallWindows()
    harness = AgentHarness([], default=ALWAYS_ACT, max_steps=5, call_delay=0.002, windows=windows)
    barrier = threading.Barrier(3)
    runs = []

    def worker() -> None:
        barrier.wait()
        runs.append(harness.orchestrator.start_task("Click around", session_id="shared"))

    threads = [threading.Thread(target=worker) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert len(runs) == 3
    assert len(harness.created) == 1
    assert windows.calls > 0
    assert windows.overlaps == 0
    assert all(run.cause is FailureCause.STEP_LIMIT_EXCEEDED for run in runs)


def test_follow_up_reuses_session_and_restarts_numbering():
    harness = AgentHarness(
        [
            start("https://louvre.fr"),
            step("COMPLETE", text="Opened the Louvre site"),
            step("EXTRACT", "opening hours"),
            step("COMPLETE", text="Open 9am to 6pm"),
        ],
        extract_result="9am-6pm",
    )
    first = harness.orchestrator.start_task("Open the Louvre website", session_id="s1")

    follow_up = harness.orchestrator.submit_follow_up("s1", "When does it open?", first.messages)

    assert follow_up.state is RunState.COMPLETE
    assert follow_up.session_id == "s1"
    assert _step_numbers(follow_up) == [1, 2]
    assert follow_up.history[0].tool is Tool.EXTRACT
    assert follow_up.history[0].extraction == "9am-6pm"
    assert len(harness.created) == 1
    assert len(harness.llm.calls_for("follow_up")) == 1
    assert len(harness.llm.calls_for("starting_point")) == 1
    prompt = harness.llm.calls_for("follow_up")[0].prompt
    assert "user: Open the Louvre website" in prompt


def test_live_view_url_is_published():
    harness = AgentHarness(
        [start(), step("COMPLETE", text="Done")],
        live_view=TemplateLiveView("https://live.example/{session_id}"),
    )

    run = harness.orchestrator.start_task("Anything", session_id="s1")

    assert run.live_view_url == "https://live.example/s1"
    assert harness.registry.get("s1").live_view_url == "https://live.example/s1"
    ready = [event for event in harness.notifier.events if event.type == "live_view_ready"]
    assert ready[0].data["url"] == "https://live.example/s1"


class BrokenLiveView(LiveViewProvider):
    def lookup(self, session_id: str):
        raise LiveViewError("debug endpoint unavailable")


class BrokenNotifier(Notifier):
    def notify(self, event: NotificationEvent) -> None:
        raise RuntimeError("channel down")


def test_best_effort_collaborators_do_not_fail_run():
    harness = AgentHarness(
        [start(), step("COMPLETE", text="Done")],
        live_view=BrokenLiveView(),
        extra_notifiers=(BrokenNotifier(),),
    )

    run = harness.orchestrator.start_task("Anything")

    assert run.state is RunState.COMPLETE
    assert run.live_view_url is None


def test_planning_sees_url_and_screenshot():
    harness = AgentHarness([start("https://example.com/a"), step("COMPLETE", text="Done")])

    harness.orchestrator.start_task("Anything")

    context = harness.llm.calls_for("next_step")[0]
    assert "(URL: https://example.com/a)" in context.prompt
    assert context.images == [b"png-bytes"]
    assert "- Tool Used: NAVIGATE" in context.prompt


class CrashingHandle(FakeBrowserHandle):
    """Raise plain exceptions from engine calls instead of BrowserActionError."""

    def __init__(self, session_id: str, *, crashes: dict[str, Exception], **options) -> None:
        super().__init__(session_id, **options)
        self.crashes = crashes

    def _record(self, name: str, argument=None) -> None:
        super()._record(name, argument)
        if name in self.crashes:
            raise self.crashes[name]


def test_engine_crash_during_start_fails_and_releases_session():
    harness = AgentHarness(
        [start()],
        handle_factory=lambda session_id: CrashingHandle(session_id, crashes={"goto": RuntimeError("engine died")}),
    )

    run = harness.orchestrator.start_task("Anything", session_id="s1")

    assert run.state is RunState.FAILED
    assert run.cause is FailureCause.EXECUTION
    assert "engine died" in run.history[0].error
    assert "s1" not in harness.registry
    assert harness.handles["s1"].closed
    assert harness.orchestrator.active_runs("s1") == []


def test_unexpected_error_while_starting_releases_new_session(monkeypatch):
    harness = AgentHarness([])

    def explode(context, schema):
        raise RuntimeError("reasoning service crashed")

    monkeypatch.setattr(harness.llm, "complete", explode)

    run = harness.orchestrator.start_task("Anything", session_id="s1")

    assert run.state is RunState.FAILED
    assert run.cause is FailureCause.INTERNAL
    assert run.message == "reasoning service crashed"
    assert "s1" not in harness.registry
    assert harness.handles["s1"].closed


def test_engine_crash_on_resume_fails_run(descriptors):
    harness = AgentHarness(
        [start(), step("OBSERVE", "links", wait_for_user_choice=True)],
        handle_factory=lambda session_id: CrashingHandle(
            session_id,
            crashes={"perform": TimeoutError("engine timed out")},
            observe_result=descriptors,
        ),
    )
    run = harness.orchestrator.start_task("Pick", session_id="s1")

    result = harness.orchestrator.resume_with_chosen_action(run, 0)

    assert result.state is RunState.FAILED
    assert result.cause is FailureCause.EXECUTION
    assert "engine timed out" in result.message
    assert harness.orchestrator.active_runs("s1") == []


def test_page_state_crash_does_not_stop_planning():
    harness = AgentHarness(
        [start(), step("COMPLETE", text="Done")],
        handle_factory=lambda session_id: CrashingHandle(
            session_id,
            crashes={"current_url": RuntimeError("no url"), "screenshot": OSError("no pixels")},
        ),
    )

    run = harness.orchestrator.start_task("Anything", session_id="s1")

    assert run.state is RunState.COMPLETE
    context = harness.llm.calls_for("next_step")[0]
    assert "(URL:" not in context.prompt
    assert context.images == []


def test_terminate_cuts_a_long_wait_short():
    harness = AgentHarness([start(), step("WAIT", "30000")], executor=ActionExecutor())
    run = harness.orchestrator.new_run("Pause", session_id="s1")
    runner = threading.Thread(target=harness.orchestrator.execute_run, args=(run,))
    runner.start()
    for _ in range(500):
        if run.history and run.history[-1].tool is Tool.WAIT:
            break
        time.sleep(0.01)

    began = time.monotonic()
    screenshot = harness.orchestrator.terminate("s1")
    terminate_took = time.monotonic() - began
    runner.join(5)

    assert terminate_took < 1
    assert not runner.is_alive()
    assert screenshot == b"png-bytes"
    assert run.state is RunState.FAILED
    assert run.cause is FailureCause.TERMINATED


def test_terminate_before_run_starts_creates_no_browser():
    harness = AgentHarness([start(), step("COMPLETE", text="Done")])
    run = harness.orchestrator.new_run("Anything", session_id="s1")
    assert harness.orchestrator.active_runs("s1") == [run]

    assert harness.orchestrator.terminate("s1") is None
    harness.orchestrator.execute_run(run)

    assert run.state is RunState.FAILED
    assert run.cause is FailureCause.TERMINATED
    assert harness.created == []
    assert harness.llm.calls == []
    assert "s1" not in harness.registry
    assert harness.orchestrator.active_runs("s1") == []


def test_ask_page_answers_from_page_content():
    harness = AgentHarness(
        [
            start("https://example.com/pricing"),
            step("COMPLETE", text="Done"),
            {"answer": "The basic plan costs $5."},
        ],
        page_content="Basic plan $5. Pro plan $15.",
    )
    harness.orchestrator.start_task("Open pricing", session_id="s1")

    result = harness.orchestrator.ask_page(
        "s1",
        "How much is the basic plan?",
        [ChatTurn(role="user", content="Hi"), ChatTurn(role="assistant", content="Hello")],
    )

    assert result.answer == "The basic plan costs $5."
    assert result.url == "https://example.com/pricing"
    prompt = harness.llm.calls_for("chat")[0].prompt
    assert "Basic plan $5. Pro plan $15." in prompt
    assert "user: Hi\nassistant: Hello" in prompt
    assert "Question: How much is the basic plan?" in prompt


def test_ask_page_requires_live_session():
    harness = AgentHarness([])

    with pytest.raises(SessionNotFoundError):
        harness.orchestrator.ask_page("missing", "Anything there?")

    assert harness.created == []


def test_ask_page_reports_unreadable_page():
    harness = AgentHarness([start(), step("COMPLETE", text="Done")], fail_methods=("page_text",))
    harness.orchestrator.start_task("Anything", session_id="s1")

    with pytest.raises(ChatError, match="Could not read"):
        harness.orchestrator.ask_page("s1", "What is here?")

    assert harness.llm.calls_for("chat") == []
    assert "s1" in harness.registry
