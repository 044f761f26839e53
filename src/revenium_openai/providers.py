"""
Provider Detection
==================
Decide whether a client talks to OpenAI or Azure OpenAI and gather the
Azure connection details.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import structlog

from revenium_openai.constants import DEFAULT_AZURE_API_VERSION

logger = structlog.get_logger(__name__)


class Provider(str, Enum):
    """Upstream provider family."""

    OPENAI = "openai"
    AZURE_OPENAI = "azure"


@dataclass(frozen=True)
class AzureConfig:
    """Connection details for an Azure OpenAI resource."""

    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    api_version: Optional[str] = None
    deployment: Optional[str] = None


@dataclass(frozen=True)
class ProviderDescriptor:
    """Provider information attached to a patched client."""

    provider: Provider = Provider.OPENAI
    endpoint: Optional[str] = None
    api_version: Optional[str] = None
    azure_config: Optional[AzureConfig] = None

    @property
    def is_azure(self) -> bool:
        return self.provider is Provider.AZURE_OPENAI


OPENAI_DESCRIPTOR = ProviderDescriptor()


@dataclass(frozen=True)
class DetectionStrategy:
    """A named provider check; higher priority runs first."""

    name: str
    priority: int
    detect: Callable[[Any], bool]


def _class_name(client: Any) -> str:
    return type(client).__name__


def _base_url(client: Any) -> str:
    return str(getattr(client, "base_url", "") or "")


def _is_explicit_openai(client: Any) -> bool:
    name = _class_name(client).lower()
    if "api.openai.com" in _base_url(client):
        return True
    return "openai" in name and "azure" not in name


DETECTION_STRATEGIES: tuple[DetectionStrategy, ...] = tuple(
    sorted(
        (
            DetectionStrategy(
                "class name",
                100,
                lambda client: "Azure" in _class_name(client),
            ),
            DetectionStrategy(
                "base url",
                90,
                lambda client: "azure" in _base_url(client).lower(),
            ),
            DetectionStrategy(
                "environment",
                80,
                lambda client: not _is_explicit_openai(client)
                and bool(os.getenv("AZURE_OPENAI_ENDPOINT")),
            ),
        ),
        key=lambda strategy: strategy.priority,
        reverse=True,
    )
)


def _azure_from_client(client: Any) -> AzureConfig:
    base_url = _base_url(client)
    endpoint = None
    if base_url:
        # AzureOpenAI sets base_url to {endpoint}/openai or {endpoint}/openai/deployments/{name}
        endpoint = base_url.split("/openai", 1)[0].rstrip("/") or None
    return AzureConfig(
        endpoint=endpoint,
        api_key=getattr(client, "api_key", None) or None,
        api_version=getattr(client, "_api_version", None) or None,
    )


def _azure_from_env(client: Any) -> AzureConfig:
    return AzureConfig(
        endpoint=os.getenv("AZURE_OPENAI_ENDPOINT") or None,
        api_key=os.getenv("AZURE_OPENAI_API_KEY") or None,
        api_version=os.getenv("AZURE_OPENAI_API_VERSION") or None,
        deployment=os.getenv("AZURE_OPENAI_DEPLOYMENT") or None,
    )


AZURE_CONFIG_STRATEGIES: tuple[Callable[[Any], AzureConfig], ...] = (
    _azure_from_client,
    _azure_from_env,
)


def gather_azure_config(client: Any) -> AzureConfig:
    """Merge Azure config sources; the first non-empty value per field wins."""
    merged: dict[str, Optional[str]] = {
        "endpoint": None,
        "api_key": None,
        "api_version": None,
        "deployment": None,
    }
    for strategy in AZURE_CONFIG_STRATEGIES:
        try:
            partial = strategy(client)
        except Exception as e:
            logger.warning("Azure config strategy failed", strategy=strategy.__name__, error=str(e))
            continue
        for key, value in partial.__dict__.items():
            if merged[key] is None and value:
                merged[key] = value

    if merged["api_version"] is None:
        merged["api_version"] = DEFAULT_AZURE_API_VERSION
    return AzureConfig(**merged)


def _redact(endpoint: Optional[str]) -> Optional[str]:
    if not endpoint:
        return endpoint
    scheme, _, rest = endpoint.partition("://")
    host = rest.split("/", 1)[0]
    return f"{scheme}://{host}" if rest else endpoint


def validate_azure_config(config: AzureConfig) -> list[str]:
    """Return warnings for an incomplete Azure configuration."""
    warnings = []
    if not config.endpoint:
        warnings.append("Azure endpoint not found; set AZURE_OPENAI_ENDPOINT")
    if not config.api_key:
        warnings.append("Azure API key not found; set AZURE_OPENAI_API_KEY")
    return warnings


def detect_provider(client: Any) -> ProviderDescriptor:
    """
    Detect the provider behind a client.

    Strategies run in priority order and the first match wins. A strategy
    that raises is skipped with a warning. Without a match the client is
    treated as OpenAI.

    Args:
        client: An OpenAI SDK client or compatible object

    Returns:
        Immutable provider descriptor
    """
    for strategy in DETECTION_STRATEGIES:
        try:
            matched = strategy.detect(client)
        except Exception as e:
            logger.warning("Provider detection strategy failed", strategy=strategy.name, error=str(e))
            continue
        if not matched:
            continue

        config = gather_azure_config(client)
        for warning in validate_azure_config(config):
            logger.warning(warning)
        logger.info(
            "Azure OpenAI provider detected",
            strategy=strategy.name,
            endpoint=_redact(config.endpoint),
            api_version=config.api_version,
        )
        return ProviderDescriptor(
            provider=Provider.AZURE_OPENAI,
            endpoint=config.endpoint,
            api_version=config.api_version,
            azure_config=config,
        )

    logger.debug("OpenAI provider detected", client=_class_name(client))
    return OPENAI_DESCRIPTOR


def get_provider_metadata(descriptor: Optional[ProviderDescriptor]) -> tuple[str, str]:
    """Return the ``(provider, model_source)`` labels for the metering API."""
    if descriptor is not None and descriptor.is_azure:
        return "Azure", "AZURE_OPENAI"
    return "OpenAI", "OPENAI"
