"""Utilities for parsing LLM responses into structured models."""

from __future__ import annotations

import json
import re
from typing import Any

from .base import ResponseT

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_DECODER = json.JSONDecoder()


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the first JSON object in *text*, looking inside a code fence first."""

    fenced = _FENCE.search(text)
    candidates = [fenced.group(1), text] if fenced else [text]
    for candidate in candidates:
        start = candidate.find("{")
        while start != -1:
            try:
                value, _ = _DECODER.raw_decode(candidate, start)
            except json.JSONDecodeError:
                start = candidate.find("{", start + 1)
                continue
            return value
    raise ValueError("No JSON object found in LLM response")


def parse_response(text: str, schema: type[ResponseT]) -> ResponseT:
    """Parse raw LLM output into an instance of *schema*."""

    return schema.model_validate(extract_json_object(text))
