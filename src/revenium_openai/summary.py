"""
Usage Summary
=============
Print a local summary of each metered call when ``print_summary`` is set.
"""

import json
from typing import Any, Optional

import structlog

from revenium_openai.client import MeteringClient
from revenium_openai.config import ReveniumSettings
from revenium_openai.models import MeteringPayload

logger = structlog.get_logger(__name__)

_RULE = "=" * 60


def _count(value: Optional[int]) -> str:
    return f"{value or 0:,}"


def format_human_summary(
    payload: MeteringPayload,
    metrics: Optional[dict[str, Any]],
    team_id: Optional[str],
) -> str:
    """Render the human-readable summary block."""
    lines = [
        "",
        _RULE,
        "📊 REVENIUM USAGE SUMMARY",
        _RULE,
        f"🤖 Model: {payload.model}",
        f"🏢 Provider: {payload.provider}",
        f"⏱️  Duration: {payload.request_duration / 1000:.2f}s",
        "",
        "💬 Token Usage:",
        f"   📥 Input Tokens:  {_count(payload.input_token_count)}",
        f"   📤 Output Tokens: {_count(payload.output_token_count)}",
        f"   📊 Total Tokens:  {_count(payload.total_token_count)}",
    ]

    total_cost = (metrics or {}).get("totalCost")
    if isinstance(total_cost, (int, float)):
        lines.append(f"\n💰 Cost: ${total_cost:.6f}")
    elif not team_id:
        lines.append("\n💰 Cost: Set REVENIUM_TEAM_ID environment variable to see pricing")
    else:
        lines.append("\n💰 Cost: (pending aggregation)")

    if payload.trace_id:
        lines.append(f"\n🔖 Trace ID: {payload.trace_id}")
    lines.append(_RULE)
    return "\n".join(lines)


def format_json_summary(
    payload: MeteringPayload,
    metrics: Optional[dict[str, Any]],
    team_id: Optional[str],
) -> str:
    """Render the summary as a single JSON object; unknown counts stay null."""
    total_cost = (metrics or {}).get("totalCost")
    summary: dict[str, Any] = {
        "model": payload.model,
        "provider": payload.provider,
        "durationSeconds": payload.request_duration / 1000,
        "inputTokenCount": payload.input_token_count,
        "outputTokenCount": payload.output_token_count,
        "totalTokenCount": payload.total_token_count,
        "cost": total_cost if isinstance(total_cost, (int, float)) else None,
    }
    if summary["cost"] is None:
        summary["costStatus"] = "pending" if team_id else "unavailable"
    if payload.trace_id:
        summary["traceId"] = payload.trace_id
    return json.dumps(summary)


class SummaryPrinter:
    """Print usage summaries, reading cost back from the API when possible."""

    def __init__(self, settings: ReveniumSettings, client: MeteringClient):
        self.settings = settings
        self.client = client

    @property
    def enabled(self) -> bool:
        return self.settings.print_summary is not None

    def print_summary(self, payload: MeteringPayload) -> None:
        """
        Print the summary for a payload.

        With a team id configured, the cost read-back runs on a background
        thread tracked by the metering client, so the delivery worker is not
        held up by its retries and ``close`` waits for it.
        """
        if not self.enabled:
            return
        if self.settings.team_id:
            self.client.spawn(lambda: self._fetch_and_print(payload), name="revenium-summary")
        else:
            self._emit(payload, None)

    def _fetch_and_print(self, payload: MeteringPayload) -> None:
        try:
            metrics = self.client.fetch_completion_metrics(payload.transaction_id, self.settings.team_id)
        except Exception as e:
            logger.debug("Metrics read-back failed", error=str(e), transaction_id=payload.transaction_id)
            metrics = None
        self._emit(payload, metrics)

    def _emit(self, payload: MeteringPayload, metrics: Optional[dict[str, Any]]) -> None:
        try:
            if self.settings.print_summary == "json":
                text = format_json_summary(payload, metrics, self.settings.team_id)
            else:
                text = format_human_summary(payload, metrics, self.settings.team_id)
            print(text, flush=True)
        except Exception as e:
            logger.debug("Failed to print usage summary", error=str(e))
