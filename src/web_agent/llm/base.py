"""Base classes and utilities for reasoning-service integrations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TypeVar

from pydantic import BaseModel

ResponseT = TypeVar("ResponseT", bound=BaseModel)


class LLMError(RuntimeError):
    """Raised when the reasoning service is unreachable or answers unusably."""


@dataclass
class LLMContext:
    """Prompt material sent to the reasoning service for one decision."""

    prompt: str
    images: list[bytes] = field(default_factory=list)
    purpose: str = "next_step"


class LLMClient(ABC):
    """Abstract interface for reasoning-service providers."""

    @abstractmethod
    def complete(self, context: LLMContext, schema: type[ResponseT]) -> ResponseT:
        """Return a response validated against *schema*.

        Implementations raise :class:`LLMError` for transport problems and let
        pydantic's ``ValidationError`` escape when the payload does not match.
        """
