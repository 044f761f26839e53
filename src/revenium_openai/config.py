"""
Middleware Configuration
========================
Settings management for the Revenium OpenAI middleware using Pydantic Settings.
"""

import threading
from typing import Any, Literal, Optional

import structlog
from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from revenium_openai.constants import (
    API_KEY_PREFIX,
    DEFAULT_AZURE_API_VERSION,
    DEFAULT_BASE_URL,
    DEFAULT_MAX_PROMPT_SIZE,
)
from revenium_openai.errors import ConfigurationError
from revenium_openai.log import set_log_level

logger = structlog.get_logger(__name__)

SummaryFormat = Literal["human", "json"]


class ReveniumSettings(BaseSettings):
    """Middleware settings loaded from environment variables or overrides."""

    model_config = SettingsConfigDict(
        env_prefix="REVENIUM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Metering API
    api_key: str = Field(
        validation_alias=AliasChoices("REVENIUM_METERING_API_KEY", "REVENIUM_API_KEY"),
    )
    base_url: str = Field(
        default=DEFAULT_BASE_URL,
        validation_alias=AliasChoices("REVENIUM_METERING_BASE_URL", "REVENIUM_BASE_URL"),
    )
    team_id: Optional[str] = None

    # Behavior
    debug: bool = False
    print_summary: Optional[SummaryFormat] = None
    capture_prompts: bool = False
    max_prompt_size: int = Field(default=DEFAULT_MAX_PROMPT_SIZE, gt=0)

    # Delivery
    request_timeout: float = Field(default=10.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_wait_min: float = 1.0
    retry_wait_max: float = 10.0
    max_queue_size: int = Field(default=1000, gt=0)
    summary_retry_attempts: int = Field(default=3, ge=1)
    summary_retry_delay: float = Field(default=2.0, ge=0)

    # Azure OpenAI
    azure_endpoint: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("AZURE_OPENAI_ENDPOINT")
    )
    azure_api_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("AZURE_OPENAI_API_KEY")
    )
    azure_api_version: str = Field(
        default=DEFAULT_AZURE_API_VERSION,
        validation_alias=AliasChoices("AZURE_OPENAI_API_VERSION"),
    )
    azure_deployment: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("AZURE_OPENAI_DEPLOYMENT")
    )

    @field_validator("api_key")
    @classmethod
    def _check_api_key(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(API_KEY_PREFIX):
            raise ValueError(f"Revenium API key must start with '{API_KEY_PREFIX}'")
        return value

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("Revenium base URL must be an http(s) URL")
        return value

    @field_validator("print_summary", mode="before")
    @classmethod
    def _normalize_print_summary(cls, value: Any) -> Optional[str]:
        if value is None or value is False:
            return None
        if value is True:
            return "human"
        text = str(value).strip().lower()
        if text in ("", "false", "0", "no", "off"):
            return None
        if text in ("true", "1", "yes", "on", "human"):
            return "human"
        return text

    @field_validator("team_id", "azure_endpoint", "azure_api_key", "azure_deployment")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


_settings: Optional[ReveniumSettings] = None
_lock = threading.Lock()


def get_settings() -> Optional[ReveniumSettings]:
    """Get the active settings, or ``None`` if the middleware is not initialized."""
    return _settings


def is_initialized() -> bool:
    """Check whether the middleware has valid settings."""
    return _settings is not None


def _activate(settings: Optional[ReveniumSettings]) -> None:
    global _settings
    with _lock:
        _settings = settings

    # Runtime holds a delivery client bound to the previous settings
    from revenium_openai.runtime import reset_runtime

    reset_runtime()
    if settings is not None:
        set_log_level(settings.debug)


def initialize(**overrides: Any) -> ReveniumSettings:
    """
    Initialize the middleware from the environment plus explicit overrides.

    Args:
        **overrides: Setting values that take precedence over the environment

    Returns:
        The active settings

    Raises:
        ConfigurationError: If the settings are missing or invalid
    """
    try:
        settings = ReveniumSettings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(
            "Invalid Revenium configuration",
            context={"errors": [err["msg"] for err in e.errors()]},
        ) from e

    _activate(settings)
    logger.debug(
        "Revenium middleware initialized",
        base_url=settings.base_url,
        print_summary=settings.print_summary,
        capture_prompts=settings.capture_prompts,
    )
    return settings


def initialize_from_env() -> bool:
    """
    Initialize the middleware from environment variables only.

    Returns:
        True if initialization succeeded
    """
    try:
        initialize()
    except ConfigurationError as e:
        logger.debug("Revenium middleware not initialized from environment", errors=e.context.get("errors"))
        return False
    return True


def configure(settings: ReveniumSettings) -> None:
    """Install an already-built settings object."""
    _activate(settings)


def reset() -> None:
    """Forget the active settings."""
    _activate(None)
