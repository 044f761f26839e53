"""
Trace Metadata Collection
=========================
Collect trace fields from the environment and map caller usage metadata
onto metering payload fields.
"""

import os
import re
import threading
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog
from pydantic import ValidationError

from revenium_openai.models import UsageMetadata

logger = structlog.get_logger(__name__)

_TRACE_TYPE_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_LEADING_INT_RE = re.compile(r"^[+-]?\d+")

_REGION_ENV_VARS = ("AWS_REGION", "AZURE_REGION", "GCP_REGION", "REVENIUM_REGION")
_AWS_REGION_URL = "http://169.254.169.254/latest/meta-data/placement/region"

_region_lock = threading.Lock()
_region_resolved = False
_region: Optional[str] = None


@dataclass
class TraceFields:
    """Trace fields attached to every payload."""

    environment: Optional[str] = None
    region: Optional[str] = None
    credential_alias: Optional[str] = None
    trace_type: Optional[str] = None
    trace_name: Optional[str] = None
    parent_transaction_id: Optional[str] = None
    transaction_name: Optional[str] = None
    retry_number: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Return the fields that carry a value."""
        return {key: value for key, value in self.__dict__.items() if value is not None}


def _bounded(name: str, value: Optional[str], max_length: int) -> Optional[str]:
    if value is None:
        return None
    if len(value) > max_length:
        logger.warning(f"{name} exceeds max length, truncating", max_length=max_length)
        value = value[:max_length]
    return value.strip()


def get_environment() -> Optional[str]:
    """Deployment environment from ``REVENIUM_ENVIRONMENT``, ``ENVIRONMENT`` or ``DEPLOYMENT_ENV``."""
    value = (
        os.getenv("REVENIUM_ENVIRONMENT")
        or os.getenv("ENVIRONMENT")
        or os.getenv("DEPLOYMENT_ENV")
        or None
    )
    return _bounded("environment", value, 255)


def get_credential_alias() -> Optional[str]:
    """Human-readable credential name from ``REVENIUM_CREDENTIAL_ALIAS``."""
    return _bounded("credential_alias", os.getenv("REVENIUM_CREDENTIAL_ALIAS") or None, 255)


def get_trace_type() -> Optional[str]:
    """Trace category from ``REVENIUM_TRACE_TYPE``; rejected unless alphanumeric, ``-`` or ``_``."""
    value = os.getenv("REVENIUM_TRACE_TYPE")
    if not value:
        return None
    if not _TRACE_TYPE_RE.match(value):
        logger.warning(
            "Invalid trace_type format, must be alphanumeric with hyphens or underscores",
            trace_type=value,
        )
        return None
    if len(value) > 128:
        logger.warning("trace_type exceeds max length, truncating", max_length=128)
        return value[:128]
    return value


def get_trace_name() -> Optional[str]:
    """Trace instance label from ``REVENIUM_TRACE_NAME``."""
    value = os.getenv("REVENIUM_TRACE_NAME")
    if not value:
        return None
    if len(value) > 256:
        logger.warning("trace_name exceeds max length, truncating", max_length=256)
        return value[:256]
    return value


def get_parent_transaction_id() -> Optional[str]:
    return os.getenv("REVENIUM_PARENT_TRANSACTION_ID") or None


def get_transaction_name() -> Optional[str]:
    return os.getenv("REVENIUM_TRANSACTION_NAME") or None


def get_retry_number() -> int:
    """Retry attempt number from ``REVENIUM_RETRY_NUMBER``; the leading integer is used."""
    match = _LEADING_INT_RE.match(os.getenv("REVENIUM_RETRY_NUMBER", "").strip())
    return int(match.group()) if match else 0


def _probe_instance_region() -> Optional[str]:
    """Ask the AWS instance metadata service for the current region."""
    try:
        response = httpx.get(_AWS_REGION_URL, timeout=1.0)
        response.raise_for_status()
        return response.text.strip() or None
    except httpx.HTTPError:
        return None


def get_region() -> Optional[str]:
    """
    Cloud region of the current host.

    Environment variables are checked first (``AWS_REGION``, ``AZURE_REGION``,
    ``GCP_REGION``, ``REVENIUM_REGION``); otherwise the instance metadata
    service is probed once and the result, including a failed lookup, is cached.
    """
    global _region_resolved, _region

    for name in _REGION_ENV_VARS:
        value = os.getenv(name, "").strip()
        if value:
            return value

    with _region_lock:
        if not _region_resolved:
            _region = _probe_instance_region()
            _region_resolved = True
        return _region


def reset_region_cache() -> None:
    """Forget the cached metadata-service region."""
    global _region_resolved, _region
    with _region_lock:
        _region_resolved = False
        _region = None


def collect_trace_fields() -> TraceFields:
    """Collect all trace fields from the current environment."""
    return TraceFields(
        environment=get_environment(),
        region=get_region(),
        credential_alias=get_credential_alias(),
        trace_type=get_trace_type(),
        trace_name=get_trace_name(),
        parent_transaction_id=get_parent_transaction_id(),
        transaction_name=get_transaction_name(),
        retry_number=get_retry_number(),
    )


def detect_operation_subtype(params: Optional[dict[str, Any]]) -> Optional[str]:
    """Return ``function_call`` when the request offers tools or functions."""
    if params and (params.get("tools") or params.get("functions")):
        return "function_call"
    return None


def parse_usage_metadata(raw: Any) -> Optional[UsageMetadata]:
    """
    Validate caller-supplied usage metadata.

    Invalid metadata is logged and dropped; it never fails the call.
    """
    if raw is None or isinstance(raw, UsageMetadata):
        return raw
    if not isinstance(raw, dict):
        logger.warning("Ignoring usage_metadata that is not a mapping", type=type(raw).__name__)
        return None
    if not raw:
        return None
    try:
        return UsageMetadata.model_validate(raw)
    except ValidationError as e:
        logger.warning("Ignoring invalid usage_metadata", errors=[err["msg"] for err in e.errors()])
        return None


def build_metadata_fields(metadata: Optional[UsageMetadata]) -> dict[str, Any]:
    """
    Map usage metadata onto payload fields.

    ``organization_id`` and ``product_id`` are accepted as fallbacks for
    ``organization_name`` and ``product_name`` and are never sent themselves.
    """
    if metadata is None:
        return {}

    fields: dict[str, Any] = {
        "trace_id": metadata.trace_id,
        "task_type": metadata.task_type,
        "agent": metadata.agent,
        "organization_name": metadata.organization_name or metadata.organization_id,
        "product_name": metadata.product_name or metadata.product_id,
        "subscription_id": metadata.subscription_id,
        "response_quality_score": metadata.response_quality_score,
    }
    if metadata.subscriber is not None:
        subscriber = metadata.subscriber.model_dump(by_alias=True, exclude_none=True)
        if subscriber:
            fields["subscriber"] = subscriber

    return {key: value for key, value in fields.items() if value is not None}


def logging_context(metadata: Optional[UsageMetadata]) -> dict[str, Any]:
    """Small set of attribution keys suitable for log lines."""
    if metadata is None:
        return {}
    context = {
        "trace_id": metadata.trace_id,
        "task_type": metadata.task_type,
        "organization": metadata.organization_name or metadata.organization_id,
        "subscriber_id": metadata.subscriber.id if metadata.subscriber else None,
    }
    return {key: value for key, value in context.items() if value is not None}
