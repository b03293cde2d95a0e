"""Reasoning service backed by OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

import base64
import json
from typing import Any, Optional

import httpx

from ..config import LLMConfig
from .base import LLMClient, LLMContext, LLMError, ResponseT
from .json_parser import parse_response

_DEFAULT_SYSTEM_PROMPT = (
    "You are a web automation agent that controls a browser one step at a time. "
    "Always respond with a single strict JSON object matching the requested schema."
)


class OpenAIChatLLM(LLMClient):
    """Call an OpenAI-compatible chat completion API to obtain structured decisions."""

    def __init__(
        self,
        config: LLMConfig,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not config.model:
            raise ValueError("LLM model must be specified for OpenAIChatLLM")
        self._config = config
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        self._client = httpx.Client(
            base_url=config.base_url or "https://api.openai.com/v1",
            timeout=config.parameters.get("timeout", 60),
            headers=headers,
            transport=transport,
        )
        self._system_prompt = config.parameters.get("system_prompt", _DEFAULT_SYSTEM_PROMPT)
        self._temperature = config.parameters.get("temperature", 0.0)

    def complete(self, context: LLMContext, schema: type[ResponseT]) -> ResponseT:
        payload = {
            "model": self._config.model,
            "messages": self._build_messages(context, schema),
            "temperature": self._temperature,
            "response_format": {"type": "json_object"},
        }
        payload.update(
            {
                k: v
                for k, v in self._config.parameters.items()
                if k not in {"timeout", "system_prompt", "temperature"}
            }
        )
        try:
            response = self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise LLMError(f"Reasoning service request failed: {exc}") from exc
        data = response.json()
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMError(f"Unexpected response format: {data}") from exc
        return parse_response(content, schema)

    def close(self) -> None:
        self._client.close()

    def _build_messages(
        self,
        context: LLMContext,
        schema: type[ResponseT],
    ) -> list[dict[str, Any]]:
        schema_hint = json.dumps(schema.model_json_schema())
        user_content: list[dict[str, Any]] = [
            {
                "type": "text",
                "text": f"{context.prompt}\n\nRespond with JSON matching this schema:\n{schema_hint}",
            }
        ]
        for image in context.images:
            encoded = base64.b64encode(image).decode("ascii")
            user_content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:image/png;base64,{encoded}"},
                }
            )
        return [
            {"role": "system", "content": self._system_prompt},
            {"role": "user", "content": user_content},
        ]
