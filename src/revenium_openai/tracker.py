"""
Usage Tracker
=============
Hand completed operations to the delivery worker without blocking the caller.
"""

from typing import Optional

import structlog

from revenium_openai.client import MeteringClient
from revenium_openai.metadata import collect_trace_fields, logging_context
from revenium_openai.payload import OperationResult, RequestContext, build_payload
from revenium_openai.summary import SummaryPrinter

logger = structlog.get_logger(__name__)


class UsageTracker:
    """
    Build, ship and summarize one payload per operation.

    ``track`` never raises; payload construction and delivery both run on
    the metering client's worker thread.
    """

    def __init__(self, client: Optional[MeteringClient], summary: Optional[SummaryPrinter] = None):
        self.client = client
        self.summary = summary
        self._warned_unconfigured = False

    def track(self, result: OperationResult, context: RequestContext) -> None:
        """Queue a completed operation for metering."""
        if self.client is None:
            if not self._warned_unconfigured:
                self._warned_unconfigured = True
                logger.warning(
                    "Revenium middleware not initialized, usage is not metered; "
                    "set REVENIUM_METERING_API_KEY or call initialize()"
                )
            return

        try:
            self.client.submit(lambda: self._process(result, context))
        except Exception as e:
            logger.warning("Failed to queue usage for metering", error=str(e))

    def _process(self, result: OperationResult, context: RequestContext) -> None:
        try:
            payload = build_payload(result, context, collect_trace_fields())
        except Exception as e:
            logger.warning(
                "Failed to build metering payload",
                error=str(e),
                **logging_context(context.metadata),
            )
            return

        try:
            self.client.deliver(payload)
        except Exception as e:
            logger.warning("Failed to send usage to Revenium", error=str(e), transaction_id=payload.transaction_id)
        finally:
            if self.summary is not None:
                self.summary.print_summary(payload)
