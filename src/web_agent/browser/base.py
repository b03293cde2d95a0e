"""Browser handle abstractions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from ..models import ActionDescriptor


class BrowserActionError(RuntimeError):
    """Raised when the automation engine fails to carry out an operation."""


class BrowserHandle(ABC):
    """Interface for a live automation-capable browser session."""

    @abstractmethod
    def init(self) -> None:
        """Attach to (or launch) the browser session."""

    @abstractmethod
    def goto(self, url: str, timeout_ms: int) -> None:
        """Navigate to *url*, returning once navigation has committed."""

    @abstractmethod
    def act(self, instruction: str, timeout_ms: int) -> None:
        """Resolve a natural-language *instruction* to one UI action and perform it."""

    @abstractmethod
    def perform(self, descriptor: ActionDescriptor, timeout_ms: int) -> None:
        """Replay a concrete action previously surfaced by :meth:`observe`."""

    @abstractmethod
    def extract(self, instruction: str, timeout_ms: int) -> Any:
        """Return data from the current page described by *instruction*."""

    @abstractmethod
    def page_text(self, timeout_ms: int) -> str:
        """Return the readable text of the current page."""

    @abstractmethod
    def observe(self, instruction: str) -> list[ActionDescriptor]:
        """List the actions on the current page that match *instruction*."""

    @abstractmethod
    def go_back(self) -> None:
        """Move one entry back in the browser history."""

    @abstractmethod
    def current_url(self) -> str:
        """Return the URL of the active page."""

    @abstractmethod
    def screenshot(self) -> bytes:
        """Capture the active page as PNG bytes."""

    @abstractmethod
    def close(self) -> None:
        """Release the browser session."""
