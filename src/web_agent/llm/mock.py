"""Mock reasoning services for testing and offline use."""

from __future__ import annotations

from collections import deque
from typing import Any, Deque, Iterable, Optional

from pydantic import BaseModel

from .base import LLMClient, LLMContext, LLMError, ResponseT


class ScriptedLLM(LLMClient):
    """Return responses from a predefined sequence.

    Responses may be plain dicts or models; they are validated against the
    schema requested by the caller. Once the script runs out, *default* is
    returned for every further call, or :class:`LLMError` is raised when no
    default was given.
    """

    def __init__(
        self,
        responses: Iterable[BaseModel | dict[str, Any]],
        *,
        default: Optional[BaseModel | dict[str, Any]] = None,
    ) -> None:
        self._responses: Deque[BaseModel | dict[str, Any]] = deque(responses)
        self._default = default
        self.calls: list[tuple[LLMContext, type[BaseModel]]] = []

    def complete(self, context: LLMContext, schema: type[ResponseT]) -> ResponseT:
        self.calls.append((context, schema))
        if self._responses:
            response = self._responses.popleft()
        elif self._default is not None:
            response = self._default
        else:
            raise LLMError("ScriptedLLM ran out of responses")
        if isinstance(response, schema):
            return response
        if isinstance(response, BaseModel):
            response = response.model_dump()
        return schema.model_validate(response)

    def calls_for(self, purpose: str) -> list[LLMContext]:
        return [context for context, _ in self.calls if context.purpose == purpose]
