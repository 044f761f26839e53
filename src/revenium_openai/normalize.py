"""
Usage Normalization
===================
Read usage and response fields from OpenAI SDK objects or plain dicts.

The OpenAI API reports usage in two shapes:
- Chat Completions / Embeddings: ``prompt_tokens`` / ``completion_tokens``
- Responses API and some audio/image models: ``input_tokens`` / ``output_tokens``

Both are normalized into ``NormalizedUsage``. A field the provider did not
report stays ``None`` rather than defaulting to zero.
"""

from dataclasses import dataclass
from typing import Any, Optional

_MISSING = object()


def get_field(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a dict or an attribute-bearing object."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    value = getattr(obj, name, _MISSING)
    return default if value is _MISSING else value


def get_path(obj: Any, *names: str) -> Any:
    """Follow a chain of fields, returning ``None`` as soon as one is missing."""
    for name in names:
        obj = get_field(obj, name)
        if obj is None:
            return None
    return obj


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


@dataclass(frozen=True)
class NormalizedUsage:
    """Token usage in a provider-neutral shape."""

    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    reasoning_tokens: Optional[int] = None
    cached_tokens: Optional[int] = None


def normalize_usage(usage: Any) -> Optional[NormalizedUsage]:
    """
    Normalize a raw usage object from either API shape.

    Args:
        usage: ``response.usage`` as returned by the SDK (model or dict)

    Returns:
        Normalized usage, or None if no usage was provided
    """
    if usage is None:
        return None

    if get_field(usage, "input_tokens") is not None or get_field(usage, "output_tokens") is not None:
        input_tokens = _as_int(get_field(usage, "input_tokens"))
        output_tokens = _as_int(get_field(usage, "output_tokens"))
        reasoning = _as_int(get_path(usage, "output_tokens_details", "reasoning_tokens"))
        cached = _as_int(get_path(usage, "input_tokens_details", "cached_tokens"))
    else:
        input_tokens = _as_int(get_field(usage, "prompt_tokens"))
        output_tokens = _as_int(get_field(usage, "completion_tokens"))
        reasoning = _as_int(get_path(usage, "completion_tokens_details", "reasoning_tokens"))
        cached = _as_int(get_path(usage, "prompt_tokens_details", "cached_tokens"))

    total_tokens = _as_int(get_field(usage, "total_tokens"))
    if total_tokens is None and input_tokens is not None:
        total_tokens = input_tokens + (output_tokens or 0)

    return NormalizedUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
        reasoning_tokens=reasoning,
        cached_tokens=cached,
    )


def has_valid_usage(response: Any) -> bool:
    """Check that a response carries integer input and total token counts."""
    usage = get_field(response, "usage")
    if usage is None:
        return False
    normalized = normalize_usage(usage)
    return normalized.input_tokens is not None and normalized.total_tokens is not None
