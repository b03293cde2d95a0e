from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional

import pytest

from web_agent.browser.base import BrowserActionError, BrowserHandle
from web_agent.browser.live_view import LiveViewProvider
from web_agent.chat.service import PageChat
from web_agent.executor.actions import ActionExecutor
from web_agent.llm.mock import ScriptedLLM
from web_agent.models import ActionDescriptor
from web_agent.notifications.base import CollectingNotifier, CompositeNotifier, Notifier
from web_agent.orchestrator.runner import Orchestrator
from web_agent.planner.service import StepPlanner
from web_agent.session.registry import SessionRegistry


class CallWindows:
    """Detect engine calls that overlap on the same session id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, int] = {}
        self.overlaps = 0
        self.calls = 0

    def enter(self, session_id: str) -> None:
        with self._lock:
            if self._active.get(session_id, 0):
                self.overlaps += 1
            self._active[session_id] = self._active.get(session_id, 0) + 1
            self.calls += 1

    def exit(self, session_id: str) -> None:
        with self._lock:
            self._active[session_id] -= 1


class FakeBrowserHandle(BrowserHandle):
    def __init__(
        self,
        session_id: str,
        *,
        fail_init: bool = False,
        fail_screenshot: bool = False,
        fail_methods: tuple[str, ...] = (),
        observe_result: Optional[list[ActionDescriptor]] = None,
        extract_result: Any = None,
        page_content: str = "",
        call_delay: float = 0.0,
        windows: Optional[CallWindows] = None,
    ) -> None:
        self.session_id = session_id
        self.fail_init = fail_init
        self.fail_screenshot = fail_screenshot
        self.fail_methods = set(fail_methods)
        self.observe_result = observe_result or []
        self.extract_result = extract_result
        self.page_content = page_content
        self.call_delay = call_delay
        self.windows = windows
        self.calls: list[tuple[str, Any]] = []
        self.url = "about:blank"
        self.back_stack: list[str] = []
        self.closed = False
        self.initialised = False

    def _record(self, name: str, argument: Any = None) -> None:
        if self.windows:
            self.windows.enter(self.session_id)
        try:
            self.calls.append((name, argument))
            if self.call_delay:
                time.sleep(self.call_delay)
            if name in self.fail_methods:
                raise BrowserActionError(f"{name} exploded")
        finally:
            if self.windows:
                self.windows.exit(self.session_id)

    def init(self) -> None:
        self.calls.append(("init", None))
        if self.fail_init:
            raise BrowserActionError("cannot connect")
        self.initialised = True

    def goto(self, url: str, timeout_ms: int) -> None:
        self._record("goto", (url, timeout_ms))
        self.back_stack.append(self.url)
        self.url = url

    def act(self, instruction: str, timeout_ms: int) -> None:
        self._record("act", instruction)

    def perform(self, descriptor: ActionDescriptor, timeout_ms: int) -> None:
        self._record("perform", descriptor)

    def extract(self, instruction: str, timeout_ms: int) -> Any:
        self._record("extract", instruction)
        return self.extract_result

    def page_text(self, timeout_ms: int) -> str:
        self._record("page_text", timeout_ms)
        return self.page_content

    def observe(self, instruction: str) -> list[ActionDescriptor]:
        self._record("observe", instruction)
        return list(self.observe_result)

    def go_back(self) -> None:
        self._record("go_back")
        if self.back_stack:
            self.url = self.back_stack.pop()

    def current_url(self) -> str:
        self._record("current_url")
        return self.url

    def screenshot(self) -> bytes:
        if self.fail_screenshot:
            raise BrowserActionError("screenshot failed")
        self._record("screenshot")
        return b"png-bytes"

    def close(self) -> None:
        self.calls.append(("close", None))
        self.closed = True

    def engine_calls(self, name: str) -> list[Any]:
        return [argument for method, argument in self.calls if method == name]


def step(tool: str, instruction: str = "", text: Optional[str] = None, **extra: Any) -> dict[str, Any]:
    return {
        "text": text or f"{tool.lower()} {instruction}".strip(),
        "reasoning": f"because {tool.lower()}",
        "tool": tool,
        "instruction": instruction,
        **extra,
    }


def start(url: str = "https://example.com") -> dict[str, Any]:
    return {"url": url, "reasoning": "direct URL"}


class AgentHarness:
    def __init__(
        self,
        responses: list[Any],
        *,
        default: Any = None,
        max_steps: int = 50,
        handle_factory: Optional[Callable[[str], FakeBrowserHandle]] = None,
        live_view: Optional[LiveViewProvider] = None,
        extra_notifiers: tuple[Notifier, ...] = (),
        executor: Optional[ActionExecutor] = None,
        **handle_options: Any,
    ) -> None:
        self.llm = ScriptedLLM(responses, default=default)
        self.notifier = CollectingNotifier()
        self.handles: dict[str, FakeBrowserHandle] = {}
        self.created: list[FakeBrowserHandle] = []
        self._handle_factory = handle_factory
        self._handle_options = handle_options
        self.registry = SessionRegistry(self._make_handle)
        self.sleeps: list[float] = []
        executor = executor or ActionExecutor(sleep=lambda seconds, interrupt: self.sleeps.append(seconds))
        self.orchestrator = Orchestrator(
            registry=self.registry,
            planner=StepPlanner(self.llm),
            executor=executor,
            notifier=CompositeNotifier([*extra_notifiers, self.notifier]),
            live_view=live_view,
            chat=PageChat(self.llm),
            max_steps=max_steps,
        )

    def _make_handle(self, session_id: str) -> FakeBrowserHandle:
        if self._handle_factory:
            handle = self._handle_factory(session_id)
        else:
            handle = FakeBrowserHandle(session_id, **self._handle_options)
        self.handles[session_id] = handle
        self.created.append(handle)
        return handle

    def event_types(self) -> list[str]:
        return [event.type for event in self.notifier.events]


@pytest.fixture
def descriptors() -> list[ActionDescriptor]:
    return [
        ActionDescriptor(description="Open pricing", method="click", selector="#pricing", arguments=[""]),
        ActionDescriptor(description="Open docs", method="click", selector="#docs", arguments=[""]),
        ActionDescriptor(description="Search site", method="fill", selector="#q", arguments=["agents"]),
    ]
