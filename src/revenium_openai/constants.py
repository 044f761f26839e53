"""
Constants
=========
Shared constants for the Revenium OpenAI middleware.
"""

DEFAULT_BASE_URL = "https://api.revenium.ai"
DEFAULT_AZURE_API_VERSION = "2024-12-01-preview"
DEFAULT_MAX_PROMPT_SIZE = 50000

MIDDLEWARE_SOURCE = "revenium-openai-python"
USER_AGENT = "revenium-middleware-openai-python/1.0.0"

API_KEY_PREFIX = "hak_"

METERING_PATH = "/meter/v2/ai/completions"
METRICS_PATH = "/profitstream/v2/api/sources/metrics/ai/completions"

# Canonical model names accepted as-is by the deployment resolver
KNOWN_MODELS = frozenset(
    {
        "gpt-4o",
        "gpt-4o-mini",
        "gpt-4",
        "gpt-4-turbo",
        "gpt-4-vision-preview",
        "gpt-4.1",
        "gpt-4.1-mini",
        "gpt-4.1-nano",
        "gpt-3.5-turbo",
        "gpt-3.5-turbo-instruct",
        "o1",
        "o1-mini",
        "o3",
        "o3-mini",
        "text-embedding-3-large",
        "text-embedding-3-small",
        "text-embedding-ada-002",
        "dall-e-3",
        "dall-e-2",
        "gpt-image-1",
        "whisper-1",
        "tts-1",
        "tts-1-hd",
    }
)

NETWORK_ERROR_PATTERNS = ("network", "timeout", "timed out", "connection", "econnreset")
CONFIG_ERROR_PATTERNS = ("config", "key", "unauthorized")

# Keyword arguments that configure the HTTP request rather than the model call
REQUEST_OPTION_KEYS = ("extra_headers", "extra_query", "extra_body", "timeout")
