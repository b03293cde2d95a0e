"""Answer questions about the page a session is currently showing."""

from __future__ import annotations

import logging
from textwrap import dedent
from typing import Iterable, Literal

from pydantic import BaseModel

from ..browser.base import BrowserHandle
from ..errors import ChatError
from ..llm.base import LLMClient, LLMContext, LLMError

LOGGER = logging.getLogger(__name__)


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class PageAnswer(BaseModel):
    answer: str


class PageAnswerResult(BaseModel):
    """Answer plus the page it was grounded in."""

    url: str
    answer: str


class PageChat:
    """Ground a conversation in the readable text of the live page."""

    def __init__(self, llm: LLMClient, *, read_timeout_ms: int = 60_000) -> None:
        self._llm = llm
        self._read_timeout_ms = read_timeout_ms

    def ask(
        self,
        handle: BrowserHandle,
        question: str,
        history: Iterable[ChatTurn] = (),
    ) -> PageAnswerResult:
        try:
            url = handle.current_url()
            content = handle.page_text(self._read_timeout_ms)
        except Exception as exc:
            LOGGER.warning("Could not read the page for a question: %s", exc, exc_info=True)
            raise ChatError(f"Could not read the current page: {exc}") from exc
        prompt = self.prompt(question, url=url, content=content, history=history)
        try:
            response = self._llm.complete(LLMContext(prompt=prompt, purpose="chat"), PageAnswer)
        except (LLMError, ValueError) as exc:
            raise ChatError(f"Could not answer the question: {exc}") from exc
        return PageAnswerResult(url=url, answer=response.answer)

    @staticmethod
    def prompt(
        question: str,
        *,
        url: str,
        content: str,
        history: Iterable[ChatTurn] = (),
    ) -> str:
        transcript = "\n".join(f"{turn.role}: {turn.content}" for turn in history)
        return dedent(
            """
            You answer questions about the web page {url}. Base every answer on the
            page content below. When the content does not answer the question, say so.

            Page content:
            {content}

            Conversation so far:
            {transcript}

            Question: {question}

            Respond with a JSON object with the key "answer".
            """
        ).strip().format(
            url=url,
            content=content or "No page content available.",
            transcript=transcript or "(none)",
            question=question,
        )
