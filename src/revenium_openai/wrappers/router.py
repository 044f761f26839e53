"""
Request Router
==============
Dispatch intercepted SDK calls to the streaming or non-streaming path and
turn their outcomes into operation results.
"""

import inspect
import time
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any, Optional

import structlog

from revenium_openai.config import ReveniumSettings
from revenium_openai.errors import ErrorType, NetworkError, classify_error
from revenium_openai.metadata import logging_context
from revenium_openai.models import UsageMetadata
from revenium_openai.normalize import get_field, has_valid_usage, normalize_usage
from revenium_openai.payload import (
    AudioResult,
    ChatResult,
    EmbeddingResult,
    ImageResult,
    OperationResult,
    RequestContext,
)
from revenium_openai.prompts import (
    extract_chat_output,
    extract_responses_output,
    max_prompt_size,
    should_capture_prompts,
)
from revenium_openai.providers import OPENAI_DESCRIPTOR
from revenium_openai.wrappers.registry import InstanceRegistry
from revenium_openai.wrappers.streaming import (
    ChatChunkInterpreter,
    MeteredAsyncStream,
    MeteredStream,
    ResponsesEventInterpreter,
    StreamAccumulator,
)

logger = structlog.get_logger(__name__)


class Operation(str, Enum):
    """Patched SDK capability."""

    CHAT = "chat"
    EMBEDDINGS = "embeddings"
    RESPONSES = "responses"
    IMAGE_GENERATION = "image.generation"
    IMAGE_EDIT = "image.edit"
    IMAGE_VARIATION = "image.variation"
    TRANSCRIPTION = "audio.transcription"
    TRANSLATION = "audio.translation"
    SPEECH = "audio.speech_synthesis"


class Dispatch(str, Enum):
    STREAMING = "streaming"
    NON_STREAMING = "non_streaming"
    BATCH = "batch"


_STREAMABLE = (Operation.CHAT, Operation.RESPONSES)
_IMAGE_SUBTYPES = {
    Operation.IMAGE_GENERATION: "generation",
    Operation.IMAGE_EDIT: "edit",
    Operation.IMAGE_VARIATION: "variation",
}
_AUDIO_SUBTYPES = {
    Operation.TRANSCRIPTION: "transcription",
    Operation.TRANSLATION: "translation",
    Operation.SPEECH: "speech_synthesis",
}
_DEFAULT_MODELS = {
    Operation.IMAGE_GENERATION: "dall-e-2",
    Operation.IMAGE_EDIT: "dall-e-2",
    Operation.IMAGE_VARIATION: "dall-e-2",
    Operation.TRANSCRIPTION: "whisper-1",
    Operation.TRANSLATION: "whisper-1",
    Operation.SPEECH: "tts-1",
}


def classify_dispatch(operation: Operation, params: dict[str, Any]) -> Dispatch:
    """Decide which path handles a request."""
    if operation is Operation.EMBEDDINGS:
        return Dispatch.BATCH
    if operation in _STREAMABLE and params.get("stream"):
        return Dispatch.STREAMING
    return Dispatch.NON_STREAMING


def _with_usage_reporting(params: dict[str, Any]) -> dict[str, Any]:
    """Ask the API to report usage on the final chunk; caller options win."""
    user_options = params.get("stream_options") or {}
    if not isinstance(user_options, Mapping):
        return params
    return {**params, "stream_options": {"include_usage": True, **user_options}}


def _image_attributes(params: dict[str, Any], response: Any) -> dict[str, Any]:
    data = get_field(response, "data") or []
    attributes = {
        "resolution": params.get("size"),
        "quality": params.get("quality"),
        "style": params.get("style"),
        "response_format": params.get("response_format"),
        "has_mask": "mask" in params if "image" in params else None,
        "revised_prompt_provided": any(get_field(item, "revised_prompt") for item in data) or None,
    }
    return {key: value for key, value in attributes.items() if value is not None}


def _audio_attributes(operation: Operation, params: dict[str, Any], response: Any) -> dict[str, Any]:
    if operation is Operation.SPEECH:
        attributes = {
            "billing_unit": "per_character",
            "requested_character_count": len(params.get("input") or ""),
            "voice": params.get("voice"),
            "speed": params.get("speed"),
            "response_format": params.get("response_format"),
        }
    else:
        attributes = {
            "billing_unit": "per_minute",
            "actual_duration_seconds": get_field(response, "duration"),
            "language": get_field(response, "language") or params.get("language"),
            "response_format": params.get("response_format"),
        }
    return {key: value for key, value in attributes.items() if value is not None}


def _is_shape_valid(operation: Operation, response: Any) -> bool:
    if operation in (Operation.CHAT, Operation.EMBEDDINGS):
        return has_valid_usage(response)
    if operation is Operation.RESPONSES:
        return get_field(response, "usage") is not None
    return response is not None


def build_result(operation: Operation, response: Any, context: RequestContext) -> OperationResult:
    """Capture what a successful non-streaming call produced."""
    params = context.params
    requested_model = str(params.get("model") or _DEFAULT_MODELS.get(operation, ""))
    model = get_field(response, "model") or requested_model
    usage = normalize_usage(get_field(response, "usage"))

    if operation is Operation.CHAT:
        choices = get_field(response, "choices") or []
        return ChatResult(
            model=model,
            usage=usage,
            response_id=get_field(response, "id"),
            finish_reason=get_field(choices[0], "finish_reason") if choices else None,
            output_text=extract_chat_output(response) if context.capture_prompts else "",
        )

    if operation is Operation.RESPONSES:
        return ChatResult(
            model=model,
            usage=usage,
            response_id=get_field(response, "id"),
            finish_reason=get_field(response, "status") or "completed",
            output_text=extract_responses_output(response) if context.capture_prompts else "",
        )

    if operation is Operation.EMBEDDINGS:
        return EmbeddingResult(model=model, usage=usage)

    if operation in _IMAGE_SUBTYPES:
        data = get_field(response, "data")
        return ImageResult(
            model=requested_model,
            subtype=_IMAGE_SUBTYPES[operation],
            requested_count=int(params.get("n") or 1),
            actual_count=len(data) if isinstance(data, list) else None,
            usage=usage,
            attributes=_image_attributes(params, response),
        )

    duration = get_field(response, "duration")
    return AudioResult(
        model=requested_model,
        subtype=_AUDIO_SUBTYPES[operation],
        duration_seconds=float(duration) if isinstance(duration, (int, float)) else None,
        character_count=len(params.get("input") or "") if operation is Operation.SPEECH else None,
        usage=usage,
        attributes=_audio_attributes(operation, params, response),
    )


def build_failure_result(operation: Operation, context: RequestContext, streaming: bool) -> OperationResult:
    """Result describing a call that failed upstream; token counts stay unreported."""
    requested_model = str(context.params.get("model") or _DEFAULT_MODELS.get(operation, ""))
    if operation in (Operation.CHAT, Operation.RESPONSES):
        return ChatResult(model=requested_model, finish_reason="error", is_streamed=streaming)
    if operation is Operation.EMBEDDINGS:
        return EmbeddingResult(model=requested_model, failed=True)
    if operation in _IMAGE_SUBTYPES:
        return ImageResult(
            model=requested_model,
            subtype=_IMAGE_SUBTYPES[operation],
            requested_count=int(context.params.get("n") or 1),
            failed=True,
        )
    return AudioResult(model=requested_model, subtype=_AUDIO_SUBTYPES[operation], failed=True)


class RequestRouter:
    """
    Route intercepted calls and meter their outcomes.

    Supports sync and async SDK clients: when the original call returns an
    awaitable, the router returns an awaitable too.
    """

    def __init__(
        self,
        tracker: Any,
        registry: InstanceRegistry,
        settings: Optional[ReveniumSettings] = None,
    ):
        self.tracker = tracker
        self.registry = registry
        self.settings = settings

    def _context(
        self,
        instance: Any,
        params: dict[str, Any],
        metadata: Optional[UsageMetadata],
        start_time: float,
    ) -> RequestContext:
        return RequestContext(
            params=params,
            provider=self.registry.descriptor_for(instance) or OPENAI_DESCRIPTOR,
            start_time=start_time,
            metadata=metadata,
            capture_prompts=should_capture_prompts(metadata, self.settings),
            max_prompt_size=max_prompt_size(self.settings),
        )

    def route(
        self,
        operation: Operation,
        original: Callable[..., Any],
        params: dict[str, Any],
        options: dict[str, Any],
        metadata: Optional[UsageMetadata],
        start_time: float,
        instance: Any,
    ) -> Any:
        """
        Execute the original call and meter it.

        Args:
            operation: Which capability was called
            original: The unpatched SDK method
            params: Model parameters, without ``usage_metadata``
            options: Request options (``extra_headers``, ``timeout``, ...)
            metadata: Validated usage metadata, if any
            start_time: Epoch seconds when the call was intercepted
            instance: The patched client

        Returns:
            Whatever the original call returns, or a metered wrapper for streams
        """
        try:
            context = self._context(instance, params, metadata, start_time)
            dispatch = classify_dispatch(operation, params)
        except Exception as e:
            logger.warning(
                "Metering setup failed, calling OpenAI directly",
                operation=operation.value,
                error=str(e),
            )
            return original(**params, **options)

        logger.debug(
            "Routing request",
            operation=operation.value,
            dispatch=dispatch.value,
            model=params.get("model"),
            **logging_context(metadata),
        )

        if dispatch is Dispatch.STREAMING:
            return self._route_streaming(operation, original, params, options, context)
        return self._route_non_streaming(operation, original, params, options, context)

    # Non-streaming

    def _route_non_streaming(
        self,
        operation: Operation,
        original: Callable[..., Any],
        params: dict[str, Any],
        options: dict[str, Any],
        context: RequestContext,
    ) -> Any:
        try:
            response = original(**params, **options)
        except Exception as e:
            wrapped = self._on_error(operation, e, context, streaming=False)
            if wrapped is None:
                raise
            raise wrapped from e

        if inspect.isawaitable(response):
            return self._await_non_streaming(operation, response, context)
        return self._on_response(operation, response, context)

    async def _await_non_streaming(self, operation: Operation, pending: Any, context: RequestContext) -> Any:
        try:
            response = await pending
        except Exception as e:
            wrapped = self._on_error(operation, e, context, streaming=False)
            if wrapped is None:
                raise
            raise wrapped from e
        return self._on_response(operation, response, context)

    def _on_response(self, operation: Operation, response: Any, context: RequestContext) -> Any:
        context.end_time = time.time()
        if not _is_shape_valid(operation, response):
            logger.warning(
                "Response has no usable usage data, skipping metering",
                operation=operation.value,
                model=context.params.get("model"),
            )
            return response

        try:
            result = build_result(operation, response, context)
            self.tracker.track(result, context)
        except Exception as e:
            logger.warning("Failed to meter response", operation=operation.value, error=str(e))
        return response

    def _on_error(
        self,
        operation: Operation,
        error: Exception,
        context: RequestContext,
        streaming: bool,
    ) -> Optional[Exception]:
        """
        Meter a failed upstream call.

        Returns:
            A ``NetworkError`` to raise in place of network-shaped failures,
            or None to re-raise the original error
        """
        context.end_time = time.time()
        error_type = classify_error(error)
        logger.debug(
            "Upstream call failed",
            operation=operation.value,
            error_type=error_type.value,
            error=str(error),
            duration_ms=context.duration_ms,
        )
        try:
            self.tracker.track(build_failure_result(operation, context, streaming), context)
        except Exception as e:
            logger.warning("Failed to meter upstream error", error=str(e))

        if error_type is ErrorType.NETWORK:
            return NetworkError(
                f"Network error during {operation.value} request: {error}",
                duration_ms=context.duration_ms,
                context={"operation": operation.value, "model": context.params.get("model")},
            )
        return None

    # Streaming

    def _accumulator(self, operation: Operation, context: RequestContext) -> StreamAccumulator:
        interpreter = ResponsesEventInterpreter() if operation is Operation.RESPONSES else ChatChunkInterpreter()
        return StreamAccumulator(
            interpreter,
            context,
            self.tracker,
            model=str(context.params.get("model") or ""),
        )

    def _route_streaming(
        self,
        operation: Operation,
        original: Callable[..., Any],
        params: dict[str, Any],
        options: dict[str, Any],
        context: RequestContext,
    ) -> Any:
        if operation is Operation.CHAT:
            params = _with_usage_reporting(params)

        try:
            stream = original(**params, **options)
        except Exception as e:
            wrapped = self._on_error(operation, e, context, streaming=True)
            if wrapped is None:
                raise
            raise wrapped from e

        if inspect.isawaitable(stream):
            return self._await_stream(operation, stream, context)
        return MeteredStream(stream, self._accumulator(operation, context))

    async def _await_stream(self, operation: Operation, pending: Any, context: RequestContext) -> MeteredAsyncStream:
        try:
            stream = await pending
        except Exception as e:
            wrapped = self._on_error(operation, e, context, streaming=True)
            if wrapped is None:
                raise
            raise wrapped from e
        return MeteredAsyncStream(stream, self._accumulator(operation, context))
