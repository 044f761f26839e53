"""
Test Configuration
==================
Pytest fixtures and fake OpenAI clients for testing.
"""

import os
from collections.abc import Generator
from typing import Any, Optional

import pytest

from revenium_openai import config, metadata
from revenium_openai.config import ReveniumSettings
from revenium_openai.model_resolver import clear_model_name_cache
from revenium_openai.runtime import Runtime, set_runtime
from revenium_openai.wrappers.registry import registry
from revenium_openai.wrappers.router import RequestRouter

_ENV_PREFIXES = ("REVENIUM_", "AZURE_OPENAI_")
_ENV_NAMES = (
    "ENVIRONMENT",
    "DEPLOYMENT_ENV",
    "AWS_REGION",
    "AZURE_REGION",
    "GCP_REGION",
)


# Fake SDK surface


class FakeStream:
    """Synchronous stream yielding chunks, optionally failing at the end."""

    def __init__(self, chunks: list[Any], error: Optional[Exception] = None):
        self.chunks = chunks
        self.error = error
        self.closed = False
        self.response = "raw-http-response"

    def __iter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    def close(self) -> None:
        self.closed = True


class FakeAsyncStream:
    """Asynchronous stream yielding chunks, optionally failing at the end."""

    def __init__(self, chunks: list[Any], error: Optional[Exception] = None):
        self.chunks = chunks
        self.error = error
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def close(self) -> None:
        self.closed = True


class FakeResource:
    """A resource whose ``create`` returns a canned result or raises."""

    def __init__(self, result: Any = None, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def _respond(self, kwargs: dict[str, Any]) -> Any:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        if callable(self.result):
            return self.result(**kwargs)
        return self.result

    def create(self, **kwargs: Any) -> Any:
        return self._respond(kwargs)


class FakeAsyncResource(FakeResource):
    async def create(self, **kwargs: Any) -> Any:
        return self._respond(kwargs)


class FakeImages:
    def __init__(self) -> None:
        self.generate_resource = FakeResource()
        self.edit_resource = FakeResource()
        self.variation_resource = FakeResource()

    def generate(self, **kwargs: Any) -> Any:
        return self.generate_resource.create(**kwargs)

    def edit(self, **kwargs: Any) -> Any:
        return self.edit_resource.create(**kwargs)

    def create_variation(self, **kwargs: Any) -> Any:
        return self.variation_resource.create(**kwargs)


class FakeAudio:
    def __init__(self) -> None:
        self.transcriptions = FakeResource()
        self.translations = FakeResource()
        self.speech = FakeResource()


class FakeChat:
    def __init__(self, completions: FakeResource):
        self.completions = completions


class FakeOpenAI:
    """Duck-typed stand-in for ``openai.OpenAI``."""

    resource_class = FakeResource

    def __init__(self, base_url: str = "https://api.openai.com/v1/", api_key: str = "sk-test"):
        self.base_url = base_url
        self.api_key = api_key
        self.chat = FakeChat(self.resource_class())
        self.embeddings = self.resource_class()
        self.responses = self.resource_class()
        self.images = FakeImages()
        self.audio = FakeAudio()


class FakeAsyncOpenAI(FakeOpenAI):
    resource_class = FakeAsyncResource


class AzureOpenAI(FakeOpenAI):
    """Named like the SDK class so class-name detection applies."""

    def __init__(
        self,
        base_url: str = "https://my-resource.openai.azure.com/openai/",
        api_key: str = "azure-key",
        api_version: str = "2024-10-21",
    ):
        super().__init__(base_url=base_url, api_key=api_key)
        self._api_version = api_version


class RecordingTracker:
    """Tracker that records operation results instead of shipping them."""

    def __init__(self) -> None:
        self.calls: list[tuple[Any, Any]] = []

    def track(self, result: Any, context: Any) -> None:
        self.calls.append((result, context))

    @property
    def results(self) -> list[Any]:
        return [result for result, _ in self.calls]


# Sample payloads


def chat_completion(
    model: str = "gpt-4o-mini",
    prompt_tokens: int = 10,
    completion_tokens: int = 15,
    total_tokens: int = 25,
    finish_reason: str = "stop",
    response_id: str = "chatcmpl-123",
    content: str = "Hello there!",
) -> dict[str, Any]:
    return {
        "id": response_id,
        "object": "chat.completion",
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": total_tokens,
        },
    }


def chat_chunks(
    texts: tuple[str, ...] = ("Hel", "lo"),
    usage: Optional[dict[str, Any]] = None,
    model: str = "gpt-4o-mini",
) -> list[dict[str, Any]]:
    chunks: list[dict[str, Any]] = [
        {"id": "chatcmpl-stream", "model": model, "choices": [{"delta": {"role": "assistant"}}]}
    ]
    chunks += [
        {"id": "chatcmpl-stream", "model": model, "choices": [{"delta": {"content": text}}]}
        for text in texts
    ]
    chunks.append(
        {"id": "chatcmpl-stream", "model": model, "choices": [{"delta": {}, "finish_reason": "stop"}]}
    )
    if usage is not None:
        chunks.append({"id": "chatcmpl-stream", "model": model, "choices": [], "usage": usage})
    return chunks


# Fixtures


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path) -> Generator[None, None, None]:
    """Clear middleware environment variables and global state around each test."""
    for name in list(os.environ):
        if name.startswith(_ENV_PREFIXES) or name in _ENV_NAMES:
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(metadata, "_probe_instance_region", lambda: None)
    metadata.reset_region_cache()
    clear_model_name_cache()

    yield

    config.reset()
    metadata.reset_region_cache()
    clear_model_name_cache()


@pytest.fixture
def settings() -> ReveniumSettings:
    """Settings with fast retries and no summary output."""
    return ReveniumSettings(
        api_key="hak_test_key_123",
        base_url="https://api.test.revenium.ai",
        retry_wait_min=0,
        retry_wait_max=0,
        summary_retry_delay=0,
    )


@pytest.fixture
def tracker(settings: ReveniumSettings) -> RecordingTracker:
    """Install a runtime whose tracker records results."""
    config.configure(settings)
    recording = RecordingTracker()
    set_runtime(
        Runtime(
            settings=settings,
            client=None,
            tracker=recording,
            router=RequestRouter(recording, registry, settings),
        )
    )
    return recording


@pytest.fixture
def openai_client() -> FakeOpenAI:
    return FakeOpenAI()


@pytest.fixture
def async_openai_client() -> FakeAsyncOpenAI:
    return FakeAsyncOpenAI()


@pytest.fixture
def azure_client() -> AzureOpenAI:
    return AzureOpenAI()
