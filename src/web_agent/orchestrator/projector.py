"""Map run records onto display-ready message events."""

from __future__ import annotations

import json
from typing import Any, Optional

from pydantic import BaseModel

from ..models import ExtractStep, MessageEvent, MessageRole, ObserveStep, Step

SUMMARY_TOOL = "SUMMARY"


def serialize_payload(value: Any) -> str:
    """Serialize observation or extraction data as an opaque JSON string."""

    if isinstance(value, list):
        value = [item.model_dump() if isinstance(item, BaseModel) else item for item in value]
    elif isinstance(value, BaseModel):
        value = value.model_dump()
    return json.dumps(value, default=str)


class ResultProjector:
    """Produce the message events a presentation layer renders."""

    def goal(self, goal: str) -> MessageEvent:
        return MessageEvent(role=MessageRole.USER, text=goal)

    def step(self, step: Step) -> MessageEvent:
        payload: Optional[str] = None
        if isinstance(step, ObserveStep) and step.observation is not None:
            payload = serialize_payload(step.observation)
        elif isinstance(step, ExtractStep) and step.extraction is not None:
            payload = serialize_payload(step.extraction)
        return MessageEvent(
            role=MessageRole.AGENT,
            text=step.text,
            reasoning=step.reasoning,
            tool=step.tool.value,
            step_number=step.step_number,
            payload=payload,
        )

    def outcome(self, message: str, *, success: bool) -> MessageEvent:
        return MessageEvent(
            role=MessageRole.AGENT,
            text=message,
            tool=SUMMARY_TOOL,
            reasoning=None if success else "The run ended before the goal was reached.",
        )
