"""
Streaming Tests
===============
Tests that streamed responses are metered exactly once however they end.
"""

import gc
import threading

import pytest

from conftest import FakeAsyncStream, FakeStream, RecordingTracker, chat_chunks
from revenium_openai.payload import RequestContext
from revenium_openai.providers import OPENAI_DESCRIPTOR
from revenium_openai.wrappers.streaming import (
    ChatChunkInterpreter,
    MeteredAsyncStream,
    MeteredStream,
    ResponsesEventInterpreter,
    StreamAccumulator,
    StreamState,
)

USAGE = {"prompt_tokens": 10, "completion_tokens": 15, "total_tokens": 25}


def make_accumulator(recorder: RecordingTracker, interpreter=None, **context_overrides) -> StreamAccumulator:
    values = {"params": {"model": "gpt-4o-mini", "stream": True}, "provider": OPENAI_DESCRIPTOR, "start_time": 0.0}
    values.update(context_overrides)
    return StreamAccumulator(interpreter or ChatChunkInterpreter(), RequestContext(**values), recorder)


@pytest.fixture
def recorder() -> RecordingTracker:
    return RecordingTracker()


class TestMeteredStream:
    """Tests for synchronous streams."""

    def test_completed_stream(self, recorder: RecordingTracker):
        """Test a fully consumed stream yields every chunk and meters once."""
        chunks = chat_chunks(usage=USAGE)
        stream = MeteredStream(FakeStream(chunks), make_accumulator(recorder))

        assert list(stream) == chunks

        assert len(recorder.results) == 1
        result = recorder.results[0]
        assert result.is_streamed is True
        assert result.finish_reason == "stop"
        assert result.response_id == "chatcmpl-stream"
        assert result.usage.input_tokens == 10
        assert result.usage.total_tokens == 25
        assert result.first_token_time is not None
        assert stream.accumulator.state is StreamState.COMPLETED

    def test_completed_without_usage(self, recorder: RecordingTracker):
        """Test a stream without a usage chunk reports no token counts."""
        stream = MeteredStream(FakeStream(chat_chunks()), make_accumulator(recorder))

        list(stream)

        assert recorder.results[0].usage is None

    def test_failed_stream(self, recorder: RecordingTracker):
        """Test an upstream error propagates and is metered once as an error."""
        stream = MeteredStream(
            FakeStream(chat_chunks(), error=RuntimeError("stream broke")), make_accumulator(recorder)
        )

        with pytest.raises(RuntimeError, match="stream broke"):
            for _ in stream:
                pass

        assert len(recorder.results) == 1
        assert recorder.results[0].finish_reason == "error"
        assert stream.accumulator.state is StreamState.ERRORED

    def test_closed_early(self, recorder: RecordingTracker):
        """Test closing mid-stream meters once as cancelled and closes the SDK stream."""
        sdk_stream = FakeStream(chat_chunks(usage=USAGE))
        stream = MeteredStream(sdk_stream, make_accumulator(recorder))

        next(stream)
        next(stream)
        stream.close()
        stream.close()

        assert sdk_stream.closed is True
        assert len(recorder.results) == 1
        assert recorder.results[0].finish_reason == "cancelled"
        assert stream.accumulator.state is StreamState.CANCELLED

    def test_abandoned_after_break(self, recorder: RecordingTracker):
        """Test a stream dropped after ``break`` is metered as cancelled."""
        stream = MeteredStream(FakeStream(chat_chunks()), make_accumulator(recorder))
        for _ in stream:
            break

        del stream
        gc.collect()

        assert len(recorder.results) == 1
        assert recorder.results[0].finish_reason == "cancelled"

    def test_never_iterated(self, recorder: RecordingTracker):
        """Test a stream that is never consumed is still metered once."""
        stream = MeteredStream(FakeStream(chat_chunks()), make_accumulator(recorder))

        del stream
        gc.collect()

        assert len(recorder.results) == 1
        assert recorder.results[0].finish_reason == "cancelled"

    def test_close_after_completion_is_noop(self, recorder: RecordingTracker):
        """Test closing a finished stream does not meter again."""
        with MeteredStream(FakeStream(chat_chunks()), make_accumulator(recorder)) as stream:
            list(stream)

        assert len(recorder.results) == 1
        assert recorder.results[0].finish_reason == "stop"

    def test_attribute_delegation(self, recorder: RecordingTracker):
        """Test unknown attributes fall through to the SDK stream."""
        stream = MeteredStream(FakeStream([]), make_accumulator(recorder))

        assert stream.response == "raw-http-response"
        with pytest.raises(AttributeError):
            stream.not_a_stream_attribute

    def test_captured_text_bounded(self, recorder: RecordingTracker):
        """Test captured output stops at the configured size."""
        stream = MeteredStream(
            FakeStream(chat_chunks(texts=("Hel", "lo", " world"))),
            make_accumulator(recorder, capture_prompts=True, max_prompt_size=4),
        )

        list(stream)

        result = recorder.results[0]
        assert result.output_text == "Hell"
        assert result.output_truncated is True

    def test_text_not_captured_by_default(self, recorder: RecordingTracker):
        """Test output text is not kept when capture is off."""
        stream = MeteredStream(FakeStream(chat_chunks()), make_accumulator(recorder))

        list(stream)

        assert recorder.results[0].output_text == ""


class TestStreamAccumulator:
    """Tests for the accumulator's terminal transition."""

    def test_terminal_transition_once(self, recorder: RecordingTracker):
        """Test only the first terminal call emits a result."""
        accumulator = make_accumulator(recorder)

        assert accumulator.complete() is True
        assert accumulator.fail(RuntimeError("late")) is False
        assert accumulator.cancel() is False
        assert len(recorder.results) == 1

    def test_concurrent_terminal_calls(self, recorder: RecordingTracker):
        """Test racing terminal calls from several threads emit exactly one result."""
        accumulator = make_accumulator(recorder)
        barrier = threading.Barrier(8)

        def finish(index: int) -> None:
            barrier.wait()
            if index % 2:
                accumulator.cancel()
            else:
                accumulator.complete()

        threads = [threading.Thread(target=finish, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(recorder.results) == 1

    def test_malformed_chunk_skipped(self, recorder: RecordingTracker):
        """Test chunks that cannot be read are ignored."""
        accumulator = make_accumulator(recorder)

        accumulator.observe({"choices": "not-a-list"})
        accumulator.observe(chat_chunks(usage=USAGE)[-1])
        accumulator.complete()

        assert recorder.results[0].usage.output_tokens == 15

    def test_tracker_failure_absorbed(self):
        """Test a failing tracker does not break the stream."""

        class BrokenTracker:
            def track(self, result, context):
                raise RuntimeError("tracker down")

        accumulator = StreamAccumulator(
            ChatChunkInterpreter(),
            RequestContext(params={"model": "gpt-4o"}, provider=OPENAI_DESCRIPTOR, start_time=0.0),
            BrokenTracker(),
        )

        assert accumulator.complete() is True


class TestResponsesEvents:
    """Tests for Responses API event streams."""

    def test_completed_event(self, recorder: RecordingTracker):
        """Test usage and status come from the terminal event."""
        events = [
            {"type": "response.created", "response": {"id": "resp_1", "model": "gpt-4o", "status": "in_progress"}},
            {"type": "response.output_text.delta", "delta": "Hi"},
            {
                "type": "response.completed",
                "response": {
                    "id": "resp_1",
                    "model": "gpt-4o",
                    "status": "completed",
                    "usage": {"input_tokens": 5, "output_tokens": 2, "total_tokens": 7},
                },
            },
        ]
        stream = MeteredStream(FakeStream(events), make_accumulator(recorder, ResponsesEventInterpreter()))

        list(stream)

        result = recorder.results[0]
        assert result.response_id == "resp_1"
        assert result.finish_reason == "completed"
        assert result.usage.input_tokens == 5
        assert result.first_token_time is not None

    def test_incomplete_event(self, recorder: RecordingTracker):
        """Test an incomplete response keeps its status."""
        events = [{"type": "response.incomplete", "response": {"id": "resp_2", "status": "incomplete"}}]
        stream = MeteredStream(FakeStream(events), make_accumulator(recorder, ResponsesEventInterpreter()))

        list(stream)

        assert recorder.results[0].finish_reason == "incomplete"


class TestMeteredAsyncStream:
    """Tests for asynchronous streams."""

    async def test_completed_stream(self, recorder: RecordingTracker):
        """Test an async stream meters once on completion."""
        chunks = chat_chunks(usage=USAGE)
        stream = MeteredAsyncStream(FakeAsyncStream(chunks), make_accumulator(recorder))

        received = [chunk async for chunk in stream]

        assert received == chunks
        assert len(recorder.results) == 1
        assert recorder.results[0].usage.total_tokens == 25

    async def test_failed_stream(self, recorder: RecordingTracker):
        """Test an async stream error propagates and is metered once."""
        stream = MeteredAsyncStream(
            FakeAsyncStream(chat_chunks(), error=ConnectionError("reset")), make_accumulator(recorder)
        )

        with pytest.raises(ConnectionError):
            async for _ in stream:
                pass

        assert len(recorder.results) == 1
        assert recorder.results[0].finish_reason == "error"

    async def test_closed_early(self, recorder: RecordingTracker):
        """Test closing an async stream early meters it as cancelled."""
        sdk_stream = FakeAsyncStream(chat_chunks())
        async with MeteredAsyncStream(sdk_stream, make_accumulator(recorder)) as stream:
            await stream.__anext__()

        assert sdk_stream.closed is True
        assert len(recorder.results) == 1
        assert recorder.results[0].finish_reason == "cancelled"

    async def test_never_iterated(self, recorder: RecordingTracker):
        """Test an async stream dropped without iteration is metered once as cancelled."""
        stream = MeteredAsyncStream(FakeAsyncStream(chat_chunks()), make_accumulator(recorder))

        del stream
        gc.collect()

        assert len(recorder.results) == 1
        assert recorder.results[0].finish_reason == "cancelled"
