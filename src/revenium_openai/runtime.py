"""
Runtime
=======
Lazily built, process-wide set of collaborators used by patched clients.
"""

import threading
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from revenium_openai.client import MeteringClient
from revenium_openai.config import ReveniumSettings, get_settings
from revenium_openai.summary import SummaryPrinter
from revenium_openai.tracker import UsageTracker
from revenium_openai.wrappers.registry import registry
from revenium_openai.wrappers.router import RequestRouter

logger = structlog.get_logger(__name__)


@dataclass
class Runtime:
    """Collaborators shared by every patched client."""

    settings: Optional[ReveniumSettings]
    client: Optional[MeteringClient]
    tracker: UsageTracker
    router: RequestRouter

    def close(self) -> None:
        if self.client is not None:
            self.client.close()


def build_runtime(
    settings: Optional[ReveniumSettings],
    transport: Optional[httpx.BaseTransport] = None,
) -> Runtime:
    """Wire a runtime for the given settings."""
    client = MeteringClient(settings, transport=transport) if settings is not None else None
    summary = (
        SummaryPrinter(settings, client)
        if settings is not None and settings.print_summary is not None
        else None
    )
    tracker = UsageTracker(client, summary)
    router = RequestRouter(tracker, registry, settings)
    return Runtime(settings=settings, client=client, tracker=tracker, router=router)


_runtime: Optional[Runtime] = None
_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the shared runtime, building it once on first use."""
    global _runtime
    runtime = _runtime
    if runtime is not None:
        return runtime

    with _lock:
        if _runtime is None:
            _runtime = build_runtime(get_settings())
            logger.debug("Revenium runtime initialized", configured=_runtime.client is not None)
        return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    """Replace the shared runtime, closing the previous one."""
    global _runtime
    with _lock:
        previous, _runtime = _runtime, runtime
    if previous is not None and previous is not runtime:
        previous.close()


def reset_runtime() -> None:
    """Drop the shared runtime; the next request rebuilds it from current settings."""
    set_runtime(None)


def flush(timeout: Optional[float] = None) -> bool:
    """Wait for queued metering work to finish."""
    runtime = _runtime
    if runtime is None or runtime.client is None:
        return True
    return runtime.client.flush(timeout)
