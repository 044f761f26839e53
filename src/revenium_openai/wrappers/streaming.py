"""
Streaming Accumulator
=====================
Observe streamed responses chunk by chunk and meter them exactly once,
whether the stream completes, fails, or is abandoned.
"""

import threading
import time
import weakref
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol

import structlog

from revenium_openai.normalize import get_field, normalize_usage
from revenium_openai.payload import ChatResult, RequestContext

logger = structlog.get_logger(__name__)


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({StreamState.COMPLETED, StreamState.ERRORED, StreamState.CANCELLED})


@dataclass
class ChunkObservation:
    """What a single chunk or event tells us."""

    response_id: Optional[str] = None
    model: Optional[str] = None
    usage: Any = None
    finish_reason: Optional[str] = None
    text: Optional[str] = None
    has_content: bool = False


class ChunkInterpreter(Protocol):
    def interpret(self, chunk: Any) -> ChunkObservation: ...


class ChatChunkInterpreter:
    """Reads ``chat.completion.chunk`` objects."""

    def interpret(self, chunk: Any) -> ChunkObservation:
        choices = get_field(chunk, "choices") or []
        choice = choices[0] if choices else None
        delta = get_field(choice, "delta")
        text = get_field(delta, "content")
        text = text if isinstance(text, str) else None
        return ChunkObservation(
            response_id=get_field(chunk, "id"),
            model=get_field(chunk, "model"),
            usage=get_field(chunk, "usage"),
            finish_reason=get_field(choice, "finish_reason"),
            text=text,
            has_content=bool(text) or bool(get_field(delta, "tool_calls")),
        )


class ResponsesEventInterpreter:
    """Reads Responses API stream events."""

    _TERMINAL_EVENTS = ("response.completed", "response.incomplete", "response.failed")

    def interpret(self, event: Any) -> ChunkObservation:
        event_type = get_field(event, "type")
        if event_type == "response.output_text.delta":
            text = get_field(event, "delta")
            return ChunkObservation(text=text, has_content=bool(text))

        response = get_field(event, "response")
        if response is None:
            return ChunkObservation()
        return ChunkObservation(
            response_id=get_field(response, "id"),
            model=get_field(response, "model"),
            usage=get_field(response, "usage"),
            finish_reason=get_field(response, "status") if event_type in self._TERMINAL_EVENTS else None,
        )


class StreamAccumulator:
    """
    Accumulates usage across a stream and emits one terminal result.

    ``complete``, ``fail`` and ``cancel`` may each be called any number of
    times from any thread; only the first call that reaches a terminal
    state hands a result to the tracker.
    """

    def __init__(
        self,
        interpreter: ChunkInterpreter,
        context: RequestContext,
        tracker: Any,
        model: Optional[str] = None,
    ):
        self.interpreter = interpreter
        self.context = context
        self.tracker = tracker
        self.state = StreamState.IDLE

        self._lock = threading.Lock()
        self._model = model
        self._response_id: Optional[str] = None
        self._usage: Any = None
        self._finish_reason: Optional[str] = None
        self._first_token_time: Optional[float] = None
        self._text: list[str] = []
        self._text_length = 0
        self._truncated = False

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def observe(self, chunk: Any) -> None:
        """Record one chunk. Malformed chunks are skipped."""
        if self.state is StreamState.IDLE:
            self.state = StreamState.STREAMING
        try:
            observation = self.interpreter.interpret(chunk)
        except Exception as e:
            logger.debug("Skipping unreadable stream chunk", error=str(e))
            return

        if observation.response_id:
            self._response_id = observation.response_id
        if observation.model:
            self._model = observation.model
        if observation.usage is not None:
            self._usage = observation.usage
        if observation.finish_reason:
            self._finish_reason = observation.finish_reason
        if observation.has_content and self._first_token_time is None:
            self._first_token_time = time.time()
        if observation.text and self.context.capture_prompts:
            self._append_text(observation.text)

    def _append_text(self, text: str) -> None:
        remaining = self.context.max_prompt_size - self._text_length
        if remaining <= 0:
            self._truncated = True
            return
        if len(text) > remaining:
            text = text[:remaining]
            self._truncated = True
        self._text.append(text)
        self._text_length += len(text)

    def complete(self) -> bool:
        return self._finish(StreamState.COMPLETED, None)

    def fail(self, error: Optional[BaseException] = None) -> bool:
        if error is not None:
            logger.debug("Stream failed", error=str(error))
        return self._finish(StreamState.ERRORED, "error")

    def cancel(self) -> bool:
        return self._finish(StreamState.CANCELLED, "cancelled")

    def _finish(self, state: StreamState, forced_reason: Optional[str]) -> bool:
        with self._lock:
            if self.finished:
                return False
            self.state = state

        self.context.end_time = time.time()
        result = ChatResult(
            model=self._model or str(self.context.params.get("model") or ""),
            usage=normalize_usage(self._usage),
            response_id=self._response_id,
            finish_reason=forced_reason or self._finish_reason,
            is_streamed=True,
            first_token_time=self._first_token_time,
            output_text="".join(self._text),
            output_truncated=self._truncated,
        )
        try:
            self.tracker.track(result, self.context)
        except Exception as e:
            logger.warning("Failed to track streamed usage", error=str(e))
        return True


def _metered_iter(stream: Any, accumulator: StreamAccumulator) -> Iterator[Any]:
    try:
        for chunk in stream:
            accumulator.observe(chunk)
            yield chunk
    except Exception as e:
        accumulator.fail(e)
        raise
    else:
        accumulator.complete()
    finally:
        # Abandoned by the consumer (close, GeneratorExit) or interrupted
        accumulator.cancel()


async def _metered_aiter(stream: Any, accumulator: StreamAccumulator) -> AsyncIterator[Any]:
    try:
        async for chunk in stream:
            accumulator.observe(chunk)
            yield chunk
    except Exception as e:
        accumulator.fail(e)
        raise
    else:
        accumulator.complete()
    finally:
        accumulator.cancel()


class _StreamProxy:
    def __getattr__(self, name: str) -> Any:
        """Delegate unknown attributes to the underlying SDK stream."""
        stream = self.__dict__.get("_stream")
        if stream is None:
            raise AttributeError(name)
        return getattr(stream, name)


class MeteredStream(_StreamProxy):
    """
    Wraps a synchronous SDK stream.

    Iteration yields the original chunks unchanged. A stream that is
    dropped without being consumed is metered as cancelled when it is
    garbage-collected.
    """

    def __init__(self, stream: Any, accumulator: StreamAccumulator):
        self._stream = stream
        self._accumulator = accumulator
        self._iterator = _metered_iter(stream, accumulator)
        self._finalizer = weakref.finalize(self, accumulator.cancel)

    @property
    def accumulator(self) -> StreamAccumulator:
        return self._accumulator

    def __iter__(self) -> "MeteredStream":
        return self

    def __next__(self) -> Any:
        return next(self._iterator)

    def close(self) -> None:
        """Stop consuming the stream and release the connection."""
        self._iterator.close()
        close = getattr(self._stream, "close", None)
        if callable(close):
            close()
        self._accumulator.cancel()

    def __enter__(self) -> "MeteredStream":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class MeteredAsyncStream(_StreamProxy):
    """Wraps an asynchronous SDK stream."""

    def __init__(self, stream: Any, accumulator: StreamAccumulator):
        self._stream = stream
        self._accumulator = accumulator
        self._iterator = _metered_aiter(stream, accumulator)
        self._finalizer = weakref.finalize(self, accumulator.cancel)

    @property
    def accumulator(self) -> StreamAccumulator:
        return self._accumulator

    def __aiter__(self) -> "MeteredAsyncStream":
        return self

    async def __anext__(self) -> Any:
        return await self._iterator.__anext__()

    async def close(self) -> None:
        """Stop consuming the stream and release the connection."""
        await self._iterator.aclose()
        close = getattr(self._stream, "close", None)
        if callable(close):
            outcome = close()
            if hasattr(outcome, "__await__"):
                await outcome
        self._accumulator.cancel()

    async def aclose(self) -> None:
        await self.close()

    async def __aenter__(self) -> "MeteredAsyncStream":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
