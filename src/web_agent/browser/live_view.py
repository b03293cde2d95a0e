"""Lookup of human-viewable URLs for running browser sessions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import httpx


class LiveViewError(RuntimeError):
    """Raised when a live-view URL cannot be obtained."""


class LiveViewProvider(ABC):
    """Return a URL a person can open to watch a session."""

    @abstractmethod
    def lookup(self, session_id: str) -> Optional[str]:
        """Return the live-view URL for *session_id*, if any."""


class NullLiveView(LiveViewProvider):
    def lookup(self, session_id: str) -> Optional[str]:
        return None


class TemplateLiveView(LiveViewProvider):
    """Format a fixed URL template with the session id."""

    def __init__(self, template: str) -> None:
        self._template = template

    def lookup(self, session_id: str) -> Optional[str]:
        return self._template.format(session_id=session_id)


class BrowserbaseLiveView(LiveViewProvider):
    """Ask the Browserbase API for the debugger URL of a session."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.browserbase.com/v1",
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"X-BB-API-Key": api_key},
            transport=transport,
        )

    def lookup(self, session_id: str) -> Optional[str]:
        try:
            response = self._client.get(f"/sessions/{session_id}/debug")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise LiveViewError(f"Live view lookup failed for {session_id}: {exc}") from exc
        return data.get("debuggerFullscreenUrl") or data.get("debuggerUrl")
