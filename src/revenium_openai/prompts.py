"""
Prompt Capture
==============
Extract system prompt, input messages and output text for optional
prompt capture. Everything is sanitized before truncation.
"""

import os
from dataclasses import dataclass
from typing import Any, Optional

from revenium_openai.config import ReveniumSettings
from revenium_openai.constants import DEFAULT_MAX_PROMPT_SIZE
from revenium_openai.models import UsageMetadata
from revenium_openai.normalize import get_field
from revenium_openai.sanitize import sanitize_credentials


@dataclass(frozen=True)
class PromptData:
    """Captured prompt and response text."""

    system_prompt: Optional[str] = None
    input_messages: Optional[str] = None
    output_response: Optional[str] = None
    truncated: bool = False


def should_capture_prompts(
    metadata: Optional[UsageMetadata],
    settings: Optional[ReveniumSettings],
) -> bool:
    """Per-call override, then settings, then ``REVENIUM_CAPTURE_PROMPTS``."""
    if metadata is not None and metadata.capture_prompts is not None:
        return metadata.capture_prompts
    if settings is not None:
        return settings.capture_prompts
    return os.getenv("REVENIUM_CAPTURE_PROMPTS", "").strip().lower() == "true"


def max_prompt_size(settings: Optional[ReveniumSettings]) -> int:
    if settings is not None:
        return settings.max_prompt_size
    try:
        value = int(os.getenv("REVENIUM_MAX_PROMPT_SIZE", ""))
    except ValueError:
        return DEFAULT_MAX_PROMPT_SIZE
    return value if value > 0 else DEFAULT_MAX_PROMPT_SIZE


def _content_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""

    parts = []
    for block in content:
        block_type = get_field(block, "type")
        if block_type in ("text", "input_text", "output_text"):
            parts.append(get_field(block, "text") or "")
        elif block_type in ("image_url", "input_image"):
            parts.append("[IMAGE]")
    return "\n".join(part for part in parts if part)


def _messages(params: dict[str, Any]) -> list[Any]:
    messages = params.get("messages")
    if isinstance(messages, list):
        return messages

    # Responses API takes a string or a list of input items
    response_input = params.get("input")
    if isinstance(response_input, str):
        return [{"role": "user", "content": response_input}]
    if isinstance(response_input, list):
        return [item for item in response_input if get_field(item, "role")]
    return []


def extract_system_prompt(params: dict[str, Any]) -> str:
    parts = []
    instructions = params.get("instructions")
    if isinstance(instructions, str) and instructions:
        parts.append(instructions)
    for message in _messages(params):
        if get_field(message, "role") in ("system", "developer"):
            text = _content_to_text(get_field(message, "content"))
            if text:
                parts.append(text)
    return "\n\n".join(parts)


def extract_input_messages(params: dict[str, Any]) -> str:
    blocks = []
    for message in _messages(params):
        role = get_field(message, "role")
        if role in ("system", "developer"):
            continue
        blocks.append(f"[{role}]\n{_content_to_text(get_field(message, 'content'))}")
    return "\n\n".join(blocks)


def extract_chat_output(response: Any) -> str:
    """Text and tool-call markers from the first choice of a chat completion."""
    choices = get_field(response, "choices") or []
    if not choices:
        return ""

    message = get_field(choices[0], "message")
    parts = []
    content = get_field(message, "content")
    if isinstance(content, str) and content:
        parts.append(content)
    for tool_call in get_field(message, "tool_calls") or []:
        name = get_field(get_field(tool_call, "function"), "name")
        if name:
            parts.append(f"[TOOL_USE: {name}]")
    function_call = get_field(message, "function_call")
    if get_field(function_call, "name"):
        parts.append(f"[FUNCTION_CALL: {get_field(function_call, 'name')}]")
    return "\n".join(parts)


def extract_responses_output(response: Any) -> str:
    """Output text and function-call markers from a Responses API result."""
    parts = []
    for item in get_field(response, "output") or []:
        item_type = get_field(item, "type")
        if item_type == "message":
            text = _content_to_text(get_field(item, "content"))
            if text:
                parts.append(text)
        elif item_type == "function_call" and get_field(item, "name"):
            parts.append(f"[TOOL_USE: {get_field(item, 'name')}]")
    return "\n".join(parts)


def _bounded(text: str, max_size: int) -> tuple[Optional[str], bool]:
    if not text:
        return None, False
    text = sanitize_credentials(text)
    if len(text) <= max_size:
        return text, False
    return text[:max_size], True


def capture_prompts(
    params: dict[str, Any],
    output_text: str,
    max_size: int,
    output_truncated: bool = False,
) -> Optional[PromptData]:
    """
    Build prompt capture data for a request.

    Args:
        params: Request parameters as passed to the SDK
        output_text: Response text already extracted from the result
        max_size: Maximum characters kept per field
        output_truncated: Whether the output was already cut while streaming

    Returns:
        PromptData, or None when there is nothing to capture
    """
    system_prompt, system_cut = _bounded(extract_system_prompt(params), max_size)
    input_messages, input_cut = _bounded(extract_input_messages(params), max_size)
    output_response, output_cut = _bounded(output_text, max_size)

    if not (system_prompt or input_messages or output_response):
        return None

    return PromptData(
        system_prompt=system_prompt,
        input_messages=input_messages,
        output_response=output_response,
        truncated=system_cut or input_cut or output_cut or output_truncated,
    )
