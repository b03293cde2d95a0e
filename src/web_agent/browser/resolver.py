"""Resolve natural-language page instructions with the reasoning service."""

from __future__ import annotations

import json
import logging
from textwrap import dedent
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..llm.base import LLMClient, LLMContext, LLMError
from ..models import ActionDescriptor
from .base import BrowserActionError

LOGGER = logging.getLogger(__name__)


class PageElement(BaseModel):
    """Interactive element collected from the DOM."""

    index: int
    selector: str
    tag: str
    text: str = ""
    role: Optional[str] = None
    input_type: Optional[str] = None
    name: Optional[str] = None
    placeholder: Optional[str] = None


class ObservedAction(BaseModel):
    element_index: int
    method: str = "click"
    arguments: list[str] = Field(default_factory=list)
    description: str


class ObserveResponse(BaseModel):
    actions: list[ObservedAction] = Field(default_factory=list)


class ExtractResponse(BaseModel):
    extraction: Any = None


class InstructionResolver:
    """Map page instructions onto concrete elements or extracted data."""

    def __init__(self, llm: LLMClient) -> None:
        self._llm = llm

    def observe(
        self,
        instruction: str,
        url: str,
        elements: list[PageElement],
    ) -> list[ActionDescriptor]:
        if not elements:
            return []
        listing = "\n".join(_describe_element(element) for element in elements)
        prompt = dedent(
            """
            You are looking at the interactive elements of the page {url}.
            Instruction: "{instruction}"

            Elements (index: description):
            {listing}

            Return the actions that satisfy the instruction, most relevant first.
            Each action names the element_index, a method (click, fill, type, press,
            selectOption, hover, check, uncheck, scrollIntoView), its arguments
            (for example the text to fill) and a short human-readable description.
            Return an empty list when nothing matches.
            """
        ).strip().format(url=url, instruction=instruction, listing=listing)
        response = self._ask(LLMContext(prompt=prompt, purpose="observe"), ObserveResponse)
        by_index = {element.index: element for element in elements}
        descriptors: list[ActionDescriptor] = []
        for action in response.actions:
            element = by_index.get(action.element_index)
            if element is None:
                LOGGER.warning("Ignoring observed action for unknown element %s", action.element_index)
                continue
            descriptors.append(
                ActionDescriptor(
                    description=action.description,
                    method=action.method,
                    selector=element.selector,
                    arguments=action.arguments,
                )
            )
        return descriptors

    def extract(self, instruction: str, url: str, page_text: str) -> Any:
        prompt = dedent(
            """
            Extract information from the page {url}.
            Instruction: "{instruction}"

            Page text:
            {page_text}

            Put the extracted information in the "extraction" field. Use a string
            for prose answers and a JSON object or list for structured data.
            """
        ).strip().format(url=url, instruction=instruction, page_text=page_text)
        response = self._ask(LLMContext(prompt=prompt, purpose="extract"), ExtractResponse)
        return response.extraction

    def _ask(self, context: LLMContext, schema: type[BaseModel]) -> Any:
        try:
            return self._llm.complete(context, schema)
        except (LLMError, ValueError) as exc:
            raise BrowserActionError(f"Could not resolve instruction: {exc}") from exc


def _describe_element(element: PageElement) -> str:
    attributes = {
        "role": element.role,
        "type": element.input_type,
        "name": element.name,
        "placeholder": element.placeholder,
    }
    details = " ".join(f'{key}="{value}"' for key, value in attributes.items() if value)
    text = json.dumps(element.text[:120])
    return f"{element.index}: <{element.tag}{(' ' + details) if details else ''}> {text}"
