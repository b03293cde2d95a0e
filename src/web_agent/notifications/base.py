"""Notification channels for the web agent."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Iterable

from rich.console import Console

from ..models import NotificationEvent


class Notifier(ABC):
    """Interface for sending notifications about orchestrator events."""

    @abstractmethod
    def notify(self, event: NotificationEvent) -> None:
        """Send a notification event."""


class ConsoleNotifier(Notifier):
    """Simple notifier that prints to the console using Rich."""

    def __init__(self, console: Console | None = None, *, show_data: bool = False) -> None:
        self._console = console or Console()
        self._show_data = show_data

    def notify(self, event: NotificationEvent) -> None:
        style = {
            "info": "cyan",
            "warning": "yellow",
            "error": "red",
            "success": "green",
        }.get(event.level.value, "white")
        self._console.print(f"[{event.level.value.upper()}] {event.message}", style=style, markup=False)
        if event.type == "step_completed" and event.data.get("reasoning"):
            self._console.print(f"  {event.data['reasoning']}", style="dim", markup=False)
        if event.type == "live_view_ready":
            self._console.print(f"  {event.data.get('url')}", style="dim", markup=False)
        if self._show_data and event.data:
            self._console.print(event.data, style="dim")


class CollectingNotifier(Notifier):
    """Keep every event in memory, for API snapshots and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[NotificationEvent] = []

    def notify(self, event: NotificationEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[NotificationEvent]:
        with self._lock:
            return list(self._events)


class CompositeNotifier(Notifier):
    """Fan-out notifier that propagates events to multiple notifiers."""

    def __init__(self, notifiers: Iterable[Notifier]) -> None:
        self._notifiers = list(notifiers)

    def notify(self, event: NotificationEvent) -> None:
        for notifier in self._notifiers:
            notifier.notify(event)
