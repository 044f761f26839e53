"""
Data Models
===========
Pydantic models for usage metadata and metering payloads.
"""

from enum import Enum
from typing import Any, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

logger = structlog.get_logger(__name__)


class OperationType(str, Enum):
    """Operation type reported to the metering API."""

    CHAT = "CHAT"
    EMBED = "EMBED"
    IMAGE = "IMAGE"
    AUDIO = "AUDIO"
    OTHER = "OTHER"


class StopReason(str, Enum):
    """Normalized reason a generation ended."""

    END = "END"
    END_SEQUENCE = "END_SEQUENCE"
    TIMEOUT = "TIMEOUT"
    TOKEN_LIMIT = "TOKEN_LIMIT"
    COST_LIMIT = "COST_LIMIT"
    COMPLETION_LIMIT = "COMPLETION_LIMIT"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Credential(_CamelModel):
    """Credential used by a subscriber."""

    name: Optional[str] = None
    value: Optional[str] = None


class Subscriber(_CamelModel):
    """End user the usage is attributed to."""

    id: Optional[str] = None
    email: Optional[str] = None
    credential: Optional[Credential] = None


class UsageMetadata(_CamelModel):
    """
    Caller-supplied attribution passed as ``usage_metadata=`` on any call.

    Accepts snake_case or camelCase keys.
    """

    subscriber: Optional[Subscriber] = None
    organization_name: Optional[str] = None
    organization_id: Optional[str] = None
    product_name: Optional[str] = None
    product_id: Optional[str] = None
    subscription_id: Optional[str] = None
    task_type: Optional[str] = None
    trace_id: Optional[str] = None
    response_quality_score: Optional[float] = None
    agent: Optional[str] = None
    capture_prompts: Optional[bool] = None

    @field_validator("response_quality_score")
    @classmethod
    def _check_quality_score(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and not 0.0 <= value <= 1.0:
            logger.warning("Ignoring response_quality_score outside [0.0, 1.0]", value=value)
            return None
        return value


class MeteringPayload(_CamelModel):
    """
    Usage record sent to the metering API.

    Fields that are never assigned stay out of the wire format ("not
    reported"); fields explicitly set to ``None`` are sent as ``null``
    ("does not apply to this operation").
    """

    transaction_id: str
    operation_type: OperationType
    cost_type: str = "AI"
    model: str
    provider: str
    model_source: str
    middleware_source: str

    request_time: str
    response_time: str
    completion_start_time: Optional[str] = None
    request_duration: int = Field(ge=0)
    time_to_first_token: Optional[int] = None
    is_streamed: bool = False
    stop_reason: StopReason = StopReason.END

    input_token_count: Optional[int] = None
    output_token_count: Optional[int] = None
    total_token_count: Optional[int] = None
    reasoning_token_count: Optional[int] = None
    cache_creation_token_count: Optional[int] = None
    cache_read_token_count: Optional[int] = None

    input_token_cost: Optional[float] = None
    output_token_cost: Optional[float] = None
    total_cost: Optional[float] = None

    # Attribution
    trace_id: Optional[str] = None
    task_type: Optional[str] = None
    agent: Optional[str] = None
    organization_name: Optional[str] = None
    product_name: Optional[str] = None
    subscription_id: Optional[str] = None
    subscriber: Optional[dict[str, Any]] = None
    response_quality_score: Optional[float] = None

    # Trace fields
    environment: Optional[str] = None
    region: Optional[str] = None
    credential_alias: Optional[str] = None
    trace_type: Optional[str] = None
    trace_name: Optional[str] = None
    parent_transaction_id: Optional[str] = None
    transaction_name: Optional[str] = None
    retry_number: Optional[int] = None
    operation_subtype: Optional[str] = None

    # Images and audio
    requested_image_count: Optional[int] = None
    actual_image_count: Optional[int] = None
    duration_seconds: Optional[float] = None
    character_count: Optional[int] = None
    attributes: Optional[dict[str, Any]] = None

    # Prompt capture
    system_prompt: Optional[str] = None
    input_messages: Optional[str] = None
    output_response: Optional[str] = None
    prompts_truncated: Optional[bool] = None

    def to_wire(self) -> dict[str, Any]:
        """Serialize for the metering API, omitting unreported fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)
