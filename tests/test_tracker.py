"""
Usage Tracker Tests
===================
End-to-end tests from a patched client to the metering API.
"""

import json
import threading

import httpx
import pytest

from conftest import FakeOpenAI, FakeStream, chat_chunks, chat_completion
from revenium_openai import config, patch_openai_instance
from revenium_openai.config import ReveniumSettings
from revenium_openai.runtime import build_runtime, flush, get_runtime, reset_runtime, set_runtime


class MeteringApi:
    """In-memory stand-in for the metering endpoint."""

    def __init__(self, status: int = 201):
        self.status = status
        self.payloads: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.payloads.append(json.loads(request.content))
        return httpx.Response(self.status)


@pytest.fixture
def api(settings: ReveniumSettings):
    """Install a runtime whose metering client posts to an in-memory API."""
    metering = MeteringApi()
    config.configure(settings)
    set_runtime(build_runtime(settings, transport=httpx.MockTransport(metering)))
    yield metering
    reset_runtime()


class TestEndToEnd:
    """Tests from intercepted call to delivered payload."""

    def test_chat_completion_delivered(self, api: MeteringApi, openai_client: FakeOpenAI):
        """Test a chat completion produces one delivered payload."""
        openai_client.chat.completions.result = chat_completion()
        patch_openai_instance(openai_client)

        openai_client.chat.completions.create(
            model="gpt-4o-mini",
            messages=[{"role": "user", "content": "Hi"}],
            usage_metadata={"trace_id": "conv-1", "organization_name": "Acme"},
        )

        assert flush(timeout=5)
        assert len(api.payloads) == 1
        payload = api.payloads[0]
        assert payload["transactionId"] == "chatcmpl-123"
        assert payload["inputTokenCount"] == 10
        assert payload["outputTokenCount"] == 15
        assert payload["totalTokenCount"] == 25
        assert payload["stopReason"] == "END"
        assert payload["traceId"] == "conv-1"
        assert payload["organizationName"] == "Acme"
        assert payload["retryNumber"] == 0

    def test_stream_delivered_once(self, api: MeteringApi, openai_client: FakeOpenAI):
        """Test a streamed completion closed early is delivered once as cancelled."""
        openai_client.chat.completions.result = lambda **kwargs: FakeStream(chat_chunks())
        patch_openai_instance(openai_client)

        stream = openai_client.chat.completions.create(model="gpt-4o-mini", messages=[], stream=True)
        next(stream)
        stream.close()

        assert flush(timeout=5)
        assert len(api.payloads) == 1
        assert api.payloads[0]["stopReason"] == "CANCELLED"
        assert api.payloads[0]["isStreamed"] is True

    def test_delivery_failure_does_not_reach_caller(self, settings: ReveniumSettings, openai_client: FakeOpenAI):
        """Test metering API errors never affect the wrapped call."""
        api = MeteringApi(status=500)
        config.configure(settings)
        set_runtime(build_runtime(settings, transport=httpx.MockTransport(api)))
        openai_client.chat.completions.result = chat_completion()
        patch_openai_instance(openai_client)

        response = openai_client.chat.completions.create(model="gpt-4o-mini", messages=[])

        assert response["id"] == "chatcmpl-123"
        assert flush(timeout=5)
        assert len(api.payloads) == settings.retry_attempts

    def test_summary_printed_after_failed_delivery(
        self, settings: ReveniumSettings, openai_client: FakeOpenAI, capsys
    ):
        """Test the usage summary prints even when delivery fails."""
        summary_settings = settings.model_copy(update={"print_summary": "human"})
        config.configure(summary_settings)
        set_runtime(
            build_runtime(summary_settings, transport=httpx.MockTransport(MeteringApi(status=400)))
        )
        openai_client.chat.completions.result = chat_completion()
        patch_openai_instance(openai_client)

        openai_client.chat.completions.create(model="gpt-4o-mini", messages=[])

        assert flush(timeout=5)
        output = capsys.readouterr().out
        assert "REVENIUM USAGE SUMMARY" in output
        assert "Input Tokens:  10" in output


class TestRuntime:
    """Tests for the shared runtime."""

    def test_unconfigured_runtime(self):
        """Test an unconfigured runtime has no metering client."""
        runtime = get_runtime()

        assert runtime.client is None
        assert runtime.settings is None

    def test_built_once_across_threads(self, settings: ReveniumSettings):
        """Test concurrent first use builds a single runtime."""
        config.configure(settings)
        barrier = threading.Barrier(8)
        seen = []

        def use() -> None:
            barrier.wait()
            seen.append(get_runtime())

        threads = [threading.Thread(target=use) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len({id(runtime) for runtime in seen}) == 1
        assert seen[0].client is not None

    def test_reset_on_reconfigure(self, settings: ReveniumSettings):
        """Test changing settings rebuilds the runtime."""
        config.configure(settings)
        first = get_runtime()

        config.initialize(api_key="hak_other")

        second = get_runtime()
        assert second is not first
        assert second.settings.api_key == "hak_other"

    def test_unconfigured_tracker_warns_once(self, openai_client: FakeOpenAI):
        """Test calls without configuration pass through unmetered."""
        openai_client.chat.completions.result = chat_completion()
        patch_openai_instance(openai_client)

        response = openai_client.chat.completions.create(model="gpt-4o-mini", messages=[])

        assert response["id"] == "chatcmpl-123"
        assert get_runtime().tracker._warned_unconfigured is True
