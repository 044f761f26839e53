"""
Instance Patcher
================
Install metering on an existing OpenAI client instance.

Usage:
    from openai import OpenAI
    from revenium_openai import patch_openai_instance

    client = patch_openai_instance(OpenAI())

    response = client.chat.completions.create(
        model="gpt-4o-mini",
        messages=[{"role": "user", "content": "Hello!"}],
        usage_metadata={"trace_id": "conv-42", "subscriber": {"id": "user-1"}},
    )
"""

import functools
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from revenium_openai.config import initialize_from_env, is_initialized
from revenium_openai.constants import REQUEST_OPTION_KEYS
from revenium_openai.metadata import parse_usage_metadata
from revenium_openai.providers import detect_provider
from revenium_openai.wrappers.registry import registry
from revenium_openai.wrappers.router import Operation

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_patch_lock = threading.Lock()


@dataclass(frozen=True)
class Capability:
    """A patchable SDK method: the resource path and the method name on it."""

    path: tuple[str, ...]
    method: str
    operation: Operation


CAPABILITIES: tuple[Capability, ...] = (
    Capability(("chat", "completions"), "create", Operation.CHAT),
    Capability(("embeddings",), "create", Operation.EMBEDDINGS),
    Capability(("responses",), "create", Operation.RESPONSES),
    Capability(("images",), "generate", Operation.IMAGE_GENERATION),
    Capability(("images",), "edit", Operation.IMAGE_EDIT),
    Capability(("images",), "create_variation", Operation.IMAGE_VARIATION),
    Capability(("audio", "transcriptions"), "create", Operation.TRANSCRIPTION),
    Capability(("audio", "translations"), "create", Operation.TRANSLATION),
    Capability(("audio", "speech"), "create", Operation.SPEECH),
)


def _resolve(client: Any, path: tuple[str, ...]) -> Any:
    target = client
    for name in path:
        target = getattr(target, name, None)
        if target is None:
            return None
    return target


def split_request(kwargs: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any], Any]:
    """
    Separate model parameters, request options and usage metadata.

    Returns:
        ``(params, options, usage_metadata)``; ``usage_metadata`` is never
        forwarded to the SDK
    """
    params = dict(kwargs)
    raw_metadata = params.pop("usage_metadata", None)
    options = {key: params.pop(key) for key in REQUEST_OPTION_KEYS if key in params}
    return params, options, raw_metadata


def _make_interceptor(capability: Capability, original: Callable[..., Any], instance: Any) -> Callable[..., Any]:
    from revenium_openai.runtime import get_runtime

    @functools.wraps(original)
    def intercepted(*args: Any, **kwargs: Any) -> Any:
        start_time = time.time()
        try:
            params, options, raw_metadata = split_request(kwargs)
            metadata = parse_usage_metadata(raw_metadata)
            router = get_runtime().router
        except Exception as e:
            logger.warning("Metering setup failed, calling OpenAI directly", error=str(e))
            kwargs.pop("usage_metadata", None)
            return original(*args, **kwargs)

        call = functools.partial(original, *args) if args else original
        return router.route(
            capability.operation,
            call,
            params,
            options,
            metadata,
            start_time,
            instance,
        )

    intercepted.__revenium_original__ = original  # type: ignore[attr-defined]
    return intercepted


def _patch_capability(client: Any, capability: Capability) -> bool:
    resource = _resolve(client, capability.path)
    if resource is None:
        return False
    original = getattr(resource, capability.method, None)
    if not callable(original):
        return False
    setattr(resource, capability.method, _make_interceptor(capability, original, client))
    return True


def patch_openai_instance(client: T) -> T:
    """
    Patch an OpenAI client instance for automatic usage metering.

    Patching is idempotent and never raises: capabilities the client does
    not expose are skipped, and failures are logged.

    Args:
        client: ``OpenAI``, ``AsyncOpenAI``, ``AzureOpenAI``,
            ``AsyncAzureOpenAI`` or a compatible object

    Returns:
        The same client instance
    """
    try:
        with _patch_lock:
            if registry.is_registered(client):
                logger.debug("Client already patched", client=type(client).__name__)
                return client

            if not is_initialized() and not initialize_from_env():
                logger.warning(
                    "Revenium middleware is not configured; requests will not be metered "
                    "until REVENIUM_METERING_API_KEY is set and initialize() is called"
                )

            descriptor = detect_provider(client)
            patched = []
            for capability in CAPABILITIES:
                try:
                    if _patch_capability(client, capability):
                        patched.append(".".join((*capability.path, capability.method)))
                except Exception as e:
                    logger.warning(
                        "Failed to patch capability",
                        capability=".".join((*capability.path, capability.method)),
                        error=str(e),
                    )

            registry.register(client, descriptor)
            logger.debug(
                "OpenAI client patched",
                client=type(client).__name__,
                provider=descriptor.provider.value,
                capabilities=patched,
            )
    except Exception as e:
        logger.error("Failed to patch OpenAI client", error=str(e))
    return client
