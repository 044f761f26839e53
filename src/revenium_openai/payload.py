"""
Payload Builder
===============
Turn a completed operation into a metering payload.

Operation results form a closed set: ``ChatResult``, ``EmbeddingResult``,
``ImageResult`` and ``AudioResult``. ``build_payload`` is pure given its
inputs; environment-derived trace fields are passed in by the caller.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog

from revenium_openai.constants import MIDDLEWARE_SOURCE
from revenium_openai.metadata import TraceFields, build_metadata_fields, detect_operation_subtype
from revenium_openai.model_resolver import resolve_deployment_name
from revenium_openai.models import MeteringPayload, OperationType, StopReason, UsageMetadata
from revenium_openai.normalize import NormalizedUsage
from revenium_openai.prompts import capture_prompts
from revenium_openai.providers import ProviderDescriptor, get_provider_metadata

logger = structlog.get_logger(__name__)

_STOP_REASONS: dict[str, StopReason] = {
    "stop": StopReason.END,
    "completed": StopReason.END,
    "end_turn": StopReason.END,
    "length": StopReason.TOKEN_LIMIT,
    "max_tokens": StopReason.TOKEN_LIMIT,
    "incomplete": StopReason.TOKEN_LIMIT,
    "tool_calls": StopReason.END_SEQUENCE,
    "function_call": StopReason.END_SEQUENCE,
    "content_filter": StopReason.ERROR,
    "error": StopReason.ERROR,
    "failed": StopReason.ERROR,
    "cancelled": StopReason.CANCELLED,
    "timeout": StopReason.TIMEOUT,
}


def map_stop_reason(finish_reason: Optional[str]) -> StopReason:
    """Map a provider finish reason onto a ``StopReason``."""
    if finish_reason is None:
        return StopReason.END
    reason = _STOP_REASONS.get(str(finish_reason).lower())
    if reason is None:
        logger.warning("Unknown finish reason, reporting END", finish_reason=finish_reason)
        return StopReason.END
    return reason


@dataclass
class RequestContext:
    """What the router knows about a request when it completes."""

    params: dict[str, Any]
    provider: ProviderDescriptor
    start_time: float
    end_time: Optional[float] = None
    metadata: Optional[UsageMetadata] = None
    capture_prompts: bool = False
    max_prompt_size: int = 50000

    @property
    def duration_ms(self) -> int:
        end = self.end_time if self.end_time is not None else self.start_time
        return max(0, int(round((end - self.start_time) * 1000)))


@dataclass
class ChatResult:
    """Chat completion or Responses API call, streamed or not."""

    model: str
    usage: Optional[NormalizedUsage] = None
    response_id: Optional[str] = None
    finish_reason: Optional[str] = None
    is_streamed: bool = False
    first_token_time: Optional[float] = None
    output_text: str = ""
    output_truncated: bool = False


@dataclass
class EmbeddingResult:
    model: str
    usage: Optional[NormalizedUsage] = None
    response_id: Optional[str] = None
    failed: bool = False


@dataclass
class ImageResult:
    """Image generation, edit or variation."""

    model: str
    subtype: str
    requested_count: int = 1
    actual_count: Optional[int] = None
    usage: Optional[NormalizedUsage] = None
    attributes: dict[str, Any] = field(default_factory=dict)
    failed: bool = False


@dataclass
class AudioResult:
    """Transcription, translation or speech synthesis."""

    model: str
    subtype: str
    duration_seconds: Optional[float] = None
    character_count: Optional[int] = None
    usage: Optional[NormalizedUsage] = None
    attributes: dict[str, Any] = field(default_factory=dict)
    failed: bool = False


OperationResult = Union[ChatResult, EmbeddingResult, ImageResult, AudioResult]

_TRANSACTION_PREFIX = {
    ChatResult: "chat",
    EmbeddingResult: "embed",
    ImageResult: "image",
    AudioResult: "audio",
}


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _transaction_id(result: OperationResult) -> str:
    response_id = getattr(result, "response_id", None)
    if response_id:
        return str(response_id)
    return f"{_TRANSACTION_PREFIX[type(result)]}-{uuid.uuid4()}"


def _model_name(model: str, provider: ProviderDescriptor) -> str:
    if provider.is_azure and model:
        return resolve_deployment_name(model)
    return model or "unknown"


def _token_fields(usage: Optional[NormalizedUsage], inapplicable: bool = False) -> dict[str, Any]:
    """
    Token count fields for the payload.

    Reported counts are copied; unreported ones are left out. For operations
    where token counts do not apply, missing counts are sent as null.
    """
    if usage is None:
        if inapplicable:
            return {"input_token_count": None, "output_token_count": None, "total_token_count": None}
        return {}

    fields = {
        "input_token_count": usage.input_tokens,
        "output_token_count": usage.output_tokens,
        "total_token_count": usage.total_tokens,
    }
    if not inapplicable:
        fields = {key: value for key, value in fields.items() if value is not None}
    if usage.reasoning_tokens is not None:
        fields["reasoning_token_count"] = usage.reasoning_tokens
    if usage.cached_tokens is not None:
        fields["cache_read_token_count"] = usage.cached_tokens
    return fields


def _common_fields(
    result: OperationResult,
    context: RequestContext,
    trace: Optional[TraceFields],
) -> dict[str, Any]:
    provider, model_source = get_provider_metadata(context.provider)
    end_time = context.end_time if context.end_time is not None else context.start_time

    fields: dict[str, Any] = {
        "transaction_id": _transaction_id(result),
        "cost_type": "AI",
        "model": _model_name(result.model, context.provider),
        "provider": provider,
        "model_source": model_source,
        "middleware_source": MIDDLEWARE_SOURCE,
        "request_time": _iso(context.start_time),
        "response_time": _iso(end_time),
        "request_duration": context.duration_ms,
    }
    if trace is not None:
        fields.update(trace.to_dict())
    fields.update(build_metadata_fields(context.metadata))
    return fields


def _chat_fields(result: ChatResult, context: RequestContext) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "operation_type": OperationType.CHAT,
        "stop_reason": map_stop_reason(result.finish_reason),
        "is_streamed": result.is_streamed,
    }
    # OpenAI never reports cache-creation tokens, so that field stays unset
    fields.update(_token_fields(result.usage))

    if result.first_token_time is not None:
        fields["completion_start_time"] = _iso(result.first_token_time)
        if result.is_streamed:
            fields["time_to_first_token"] = max(
                0, int(round((result.first_token_time - context.start_time) * 1000))
            )
    elif not result.is_streamed and context.end_time is not None:
        fields["completion_start_time"] = _iso(context.end_time)

    subtype = detect_operation_subtype(context.params)
    if subtype:
        fields["operation_subtype"] = subtype

    if context.capture_prompts:
        prompts = capture_prompts(
            context.params,
            result.output_text,
            context.max_prompt_size,
            output_truncated=result.output_truncated,
        )
        if prompts is not None:
            fields.update(
                {
                    key: value
                    for key, value in {
                        "system_prompt": prompts.system_prompt,
                        "input_messages": prompts.input_messages,
                        "output_response": prompts.output_response,
                    }.items()
                    if value is not None
                }
            )
            fields["prompts_truncated"] = prompts.truncated
    return fields


def _embedding_fields(result: EmbeddingResult) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "operation_type": OperationType.EMBED,
        "stop_reason": StopReason.ERROR if result.failed else StopReason.END,
        "is_streamed": False,
    }
    if result.usage is not None:
        if result.usage.input_tokens is not None:
            fields["input_token_count"] = result.usage.input_tokens
        if result.usage.total_tokens is not None:
            fields["total_token_count"] = result.usage.total_tokens
        fields["output_token_count"] = 0
    return fields


def _image_fields(result: ImageResult) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "operation_type": OperationType.IMAGE,
        "operation_subtype": result.subtype,
        "stop_reason": StopReason.ERROR if result.failed else StopReason.END,
        "is_streamed": False,
        "requested_image_count": result.requested_count,
        "attributes": {"billing_unit": "per_image", **result.attributes},
    }
    if result.actual_count is not None:
        fields["actual_image_count"] = result.actual_count
    fields.update(_token_fields(result.usage, inapplicable=True))
    return fields


def _audio_fields(result: AudioResult) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "operation_type": OperationType.AUDIO,
        "operation_subtype": result.subtype,
        "stop_reason": StopReason.ERROR if result.failed else StopReason.END,
        "is_streamed": False,
        "attributes": dict(result.attributes),
    }
    if result.duration_seconds is not None:
        fields["duration_seconds"] = result.duration_seconds
    if result.character_count is not None:
        fields["character_count"] = result.character_count
    fields.update(_token_fields(result.usage, inapplicable=True))
    return fields


def build_payload(
    result: OperationResult,
    context: RequestContext,
    trace: Optional[TraceFields] = None,
) -> MeteringPayload:
    """
    Build the metering payload for a completed operation.

    Args:
        result: What the operation produced
        context: Request parameters, timing, provider and attribution
        trace: Trace fields collected from the environment

    Returns:
        Payload ready for delivery
    """
    fields = _common_fields(result, context, trace)

    if isinstance(result, ChatResult):
        fields.update(_chat_fields(result, context))
    elif isinstance(result, EmbeddingResult):
        fields.update(_embedding_fields(result))
    elif isinstance(result, ImageResult):
        fields.update(_image_fields(result))
    elif isinstance(result, AudioResult):
        fields.update(_audio_fields(result))
    else:
        raise TypeError(f"Unsupported operation result: {type(result).__name__}")

    return MeteringPayload(**fields)
