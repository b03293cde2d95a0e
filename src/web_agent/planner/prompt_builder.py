"""Prompt construction utilities."""

from __future__ import annotations

from textwrap import dedent
from typing import Iterable, Optional

from ..models import ExtractStep, MessageEvent, ObserveStep, Step, Tool
from ..orchestrator.projector import serialize_payload

_GUIDELINES = dedent(
    """
    Important guidelines:
    1. Break down complex actions into individual atomic steps.
    2. For ACT, use only one action at a time, such as a single click on a specific
       element, typing into a single input field or selecting a single option.
    3. Avoid combining multiple actions in one instruction.
    4. If multiple actions are needed, they should be separate steps.
    """
).strip()


class PromptBuilder:
    """Build prompts for the reasoning service from the run state."""

    def starting_point(self, goal: str) -> str:
        return dedent(
            f"""
            Given the goal: "{goal}", determine the best URL to start from.
            Choose from:
            1. A relevant search engine (Google, Bing, etc.)
            2. A direct URL if you're confident about the target website
            3. Any other appropriate starting point

            Respond with a JSON object with the keys "url" (an absolute http or https URL)
            and "reasoning".
            """
        ).strip()

    def next_step(self, goal: str, current_url: Optional[str], history: Iterable[Step]) -> str:
        location = f" (URL: {current_url})" if current_url else ""
        history_section = self._history_section(history)
        return "\n\n".join(
            [
                f'Consider the attached screenshot of a web page{location}, '
                f'with the goal being "{goal}".',
                history_section,
                "Determine the immediate next step to take to achieve the goal.",
                _GUIDELINES,
                self._response_format(),
            ]
        )

    def follow_up(
        self,
        goal: str,
        prior_messages: Iterable[MessageEvent],
        current_url: Optional[str],
    ) -> str:
        transcript = "\n".join(self._transcript_line(message) for message in prior_messages)
        location = f" (URL: {current_url})" if current_url else ""
        return "\n\n".join(
            [
                f"The browser is still open on the page shown in the screenshot{location}.",
                "Conversation so far:\n" + (transcript or "(no prior conversation)"),
                f'The user now asks: "{goal}"',
                "Determine the first step to take for this new request.",
                _GUIDELINES,
                self._response_format(),
            ]
        )

    @staticmethod
    def _history_section(history: Iterable[Step]) -> str:
        blocks = []
        for step in history:
            lines = [
                f"Step {step.step_number}:",
                f"- Action: {step.text}",
                f"- Reasoning: {step.reasoning}",
                f"- Tool Used: {step.tool.value}",
                f"- Instruction: {step.instruction}",
            ]
            if isinstance(step, ObserveStep) and step.observation is not None:
                lines.append(f"- Observation: {serialize_payload(step.observation)}")
            if isinstance(step, ExtractStep) and step.extraction is not None:
                lines.append(f"- Extraction: {serialize_payload(step.extraction)}")
            if step.error:
                lines.append(f"- Error: {step.error}")
            blocks.append("\n".join(lines))
        if not blocks:
            return "No steps have been taken yet."
        return "Previous steps taken:\n\n" + "\n\n".join(blocks)

    @staticmethod
    def _transcript_line(message: MessageEvent) -> str:
        label = message.role.value
        if message.tool:
            label = f"{label} ({message.tool})"
        line = f"{label}: {message.text}"
        if message.payload:
            line = f"{line} -> {message.payload}"
        return line

    @staticmethod
    def _response_format() -> str:
        tools = ", ".join(tool.value for tool in Tool)
        return dedent(
            f"""
            Respond with a JSON object containing the keys:
            text, reasoning, tool, instruction, use_structured_action, wait_for_user_choice.
            Allowed tool values: {tools}.
            - NAVIGATE: instruction is the URL to open.
            - ACT, EXTRACT, OBSERVE: instruction is a natural-language directive.
            - WAIT: instruction is a number of milliseconds.
            - NAVIGATE_BACK: instruction is ignored.
            - COMPLETE: the goal has been achieved; put a summary of the outcome in text.
            Set use_structured_action to true only for ACT when instruction is a JSON
            action object with description, method, selector and arguments.
            Set wait_for_user_choice to true only for OBSERVE when the user should pick
            one of the observed actions.
            """
        ).strip()
