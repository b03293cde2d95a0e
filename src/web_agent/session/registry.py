"""Process-wide registry of live browser sessions."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from ..browser.base import BrowserHandle
from ..errors import SessionInitError

LOGGER = logging.getLogger(__name__)

HandleFactory = Callable[[str], BrowserHandle]


@dataclass
class Session:
    """A live browser handle bound to an opaque session id."""

    session_id: str
    handle: BrowserHandle
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    live_view_url: Optional[str] = None


class SessionStore(ABC):
    """Storage backend for registered sessions."""

    @abstractmethod
    def get(self, session_id: str) -> Optional[Session]:
        """Return the session registered under *session_id*."""

    @abstractmethod
    def put(self, session: Session) -> None:
        """Register *session*."""

    @abstractmethod
    def pop(self, session_id: str) -> Optional[Session]:
        """Remove and return the session registered under *session_id*."""

    @abstractmethod
    def session_ids(self) -> list[str]:
        """Return the ids of all registered sessions."""


class InMemorySessionStore(SessionStore):
    """Dictionary-backed store for single-process deployments."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def put(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def pop(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)


class SessionRegistry:
    """Create, hand out and tear down browser handles by session id.

    Every id has its own re-entrant lock. ``acquire`` and ``release`` take it,
    and callers hold it (via :meth:`lock`) around any engine interaction so
    two runs never drive the same browser at once.
    """

    def __init__(
        self,
        handle_factory: HandleFactory,
        store: Optional[SessionStore] = None,
    ) -> None:
        self._handle_factory = handle_factory
        self._store = store or InMemorySessionStore()
        self._locks_guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def lock(self, session_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.RLock()
            return lock

    def acquire(self, session_id: str) -> BrowserHandle:
        with self.lock(session_id):
            session = self._store.get(session_id)
            if session:
                return session.handle
            LOGGER.info("Initialising browser session %s", session_id)
            handle = self._handle_factory(session_id)
            try:
                handle.init()
            except Exception as exc:
                LOGGER.error("Browser session %s failed to initialise: %s", session_id, exc)
                self._close_quietly(session_id, handle)
                raise SessionInitError(f"Failed to initialise session {session_id}: {exc}") from exc
            self._store.put(Session(session_id=session_id, handle=handle))
            return handle

    def release(self, session_id: str) -> Optional[bytes]:
        """Close and evict the session, returning a final screenshot when one is available."""

        with self.lock(session_id):
            session = self._store.pop(session_id)
            if not session:
                LOGGER.debug("Release requested for unknown session %s", session_id)
                return None
            screenshot: Optional[bytes] = None
            try:
                screenshot = session.handle.screenshot()
            except Exception:
                LOGGER.warning("Final screenshot failed for session %s", session_id, exc_info=True)
            self._close_quietly(session_id, session.handle)
            LOGGER.info("Released browser session %s", session_id)
            return screenshot

    def get(self, session_id: str) -> Optional[Session]:
        return self._store.get(session_id)

    def set_live_view_url(self, session_id: str, url: Optional[str]) -> None:
        session = self._store.get(session_id)
        if session:
            session.live_view_url = url

    def session_ids(self) -> list[str]:
        return self._store.session_ids()

    def __contains__(self, session_id: object) -> bool:
        return isinstance(session_id, str) and self._store.get(session_id) is not None

    @staticmethod
    def _close_quietly(session_id: str, handle: BrowserHandle) -> None:
        try:
            handle.close()
        except Exception:  # pragma: no cover - engine specific
            LOGGER.exception("Failed to close browser handle for session %s", session_id)
