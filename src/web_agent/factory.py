"""Factories for constructing components from configuration."""

from __future__ import annotations

from typing import Optional

from .browser.live_view import (
    BrowserbaseLiveView,
    LiveViewProvider,
    NullLiveView,
    TemplateLiveView,
)
from .browser.playwright_session import PlaywrightBrowserHandle
from .browser.resolver import InstructionResolver
from .chat.service import PageChat
from .config import AgentConfig, BrowserConfig, LiveViewConfig, LLMConfig, NotificationConfig
from .executor.actions import ActionExecutor
from .llm.base import LLMClient
from .llm.mock import ScriptedLLM
from .llm.openai_client import OpenAIChatLLM
from .notifications.base import ConsoleNotifier, Notifier
from .orchestrator.runner import Orchestrator
from .planner.service import StepPlanner
from .session.registry import HandleFactory, SessionRegistry


def build_llm(config: LLMConfig) -> LLMClient:
    provider = config.provider.lower()
    if provider in {"openai", "azure", "openai-compatible"}:
        return OpenAIChatLLM(config)
    if provider == "mock":
        return ScriptedLLM(
            config.parameters.get("responses", []),
            default=config.parameters.get("default"),
        )
    raise ValueError(f"Unsupported LLM provider: {config.provider}")


def build_handle_factory(config: BrowserConfig, llm: LLMClient) -> HandleFactory:
    resolver = InstructionResolver(llm)

    def _factory(session_id: str) -> PlaywrightBrowserHandle:
        return PlaywrightBrowserHandle(session_id, resolver, config)

    return _factory


def build_live_view(config: LiveViewConfig) -> LiveViewProvider:
    provider = config.provider.lower()
    if provider == "none":
        return NullLiveView()
    if provider == "template":
        if not config.url_template:
            raise ValueError("live_view.url_template is required for the template provider")
        return TemplateLiveView(config.url_template)
    if provider == "browserbase":
        if not config.api_key:
            raise ValueError("live_view.api_key is required for the browserbase provider")
        return BrowserbaseLiveView(config.api_key, base_url=config.base_url)
    raise ValueError(f"Unsupported live view provider: {config.provider}")


def build_notifier(config: NotificationConfig) -> Notifier:
    channel = config.channel.lower()
    if channel == "console":
        return ConsoleNotifier(show_data=bool(config.options.get("show_data", False)))
    raise ValueError(f"Unsupported notification channel: {config.channel}")


def build_orchestrator(
    config: AgentConfig,
    *,
    notifier: Optional[Notifier] = None,
    llm: Optional[LLMClient] = None,
) -> Orchestrator:
    llm = llm or build_llm(config.llm)
    registry = SessionRegistry(build_handle_factory(config.browser, llm))
    executor = ActionExecutor(
        navigate_timeout_ms=config.browser.navigate_timeout_ms,
        action_timeout_ms=config.browser.action_timeout_ms,
        max_wait_ms=config.loop.max_wait_ms,
    )
    return Orchestrator(
        registry=registry,
        planner=StepPlanner(llm),
        executor=executor,
        notifier=notifier or build_notifier(config.notifications),
        live_view=build_live_view(config.live_view),
        chat=PageChat(llm, read_timeout_ms=config.browser.action_timeout_ms),
        max_steps=config.loop.max_steps,
    )
