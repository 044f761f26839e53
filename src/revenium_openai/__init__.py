"""
Revenium OpenAI Middleware
==========================
Transparent usage metering for OpenAI and Azure OpenAI Python clients.
"""

from revenium_openai.log import configure_from_env

configure_from_env()

from revenium_openai.config import (  # noqa: E402
    ReveniumSettings,
    configure,
    get_settings,
    initialize,
    initialize_from_env,
    is_initialized,
    reset,
)
from revenium_openai.errors import (  # noqa: E402
    ConfigurationError,
    ErrorType,
    NetworkError,
    ReveniumError,
)
from revenium_openai.model_resolver import (  # noqa: E402
    clear_model_name_cache,
    resolve_deployment_name,
)
from revenium_openai.models import MeteringPayload, UsageMetadata  # noqa: E402
from revenium_openai.providers import Provider, ProviderDescriptor, detect_provider  # noqa: E402
from revenium_openai.runtime import flush  # noqa: E402
from revenium_openai.sanitize import sanitize_credentials  # noqa: E402
from revenium_openai.wrappers import patch_openai_instance  # noqa: E402

__version__ = "1.0.0"

__all__ = [
    "patch_openai_instance",
    "initialize",
    "initialize_from_env",
    "configure",
    "get_settings",
    "is_initialized",
    "reset",
    "flush",
    "ReveniumSettings",
    "UsageMetadata",
    "MeteringPayload",
    "Provider",
    "ProviderDescriptor",
    "detect_provider",
    "resolve_deployment_name",
    "clear_model_name_cache",
    "sanitize_credentials",
    "ReveniumError",
    "ConfigurationError",
    "NetworkError",
    "ErrorType",
]
