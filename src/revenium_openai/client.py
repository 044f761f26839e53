"""
Metering Client
===============
Fire-and-forget delivery of metering payloads to the Revenium API.
"""

import atexit
import queue
import threading
from collections.abc import Callable
from typing import Any, Optional

import httpx
import structlog
from tenacity import (
    Retrying,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from revenium_openai.config import ReveniumSettings
from revenium_openai.constants import METERING_PATH, METRICS_PATH, USER_AGENT
from revenium_openai.errors import MeteringDeliveryError
from revenium_openai.models import MeteringPayload

logger = structlog.get_logger(__name__)


def api_root(base_url: str) -> str:
    """Strip a trailing ``/meter`` or ``/meter/v2`` from a configured base URL."""
    base = base_url.rstrip("/")
    for suffix in ("/meter/v2", "/meter"):
        if base.endswith(suffix):
            return base[: -len(suffix)]
    return base


def build_metering_url(base_url: str, path: str = METERING_PATH) -> str:
    """Join the API root and a path without duplicating ``/meter/v2``."""
    return f"{api_root(base_url)}{path}"


def _is_retryable(error: BaseException) -> bool:
    if isinstance(error, MeteringDeliveryError):
        return error.retryable
    return isinstance(error, httpx.TransportError)


def _is_transient_lookup_failure(error: BaseException) -> bool:
    if isinstance(error, MeteringDeliveryError):
        return error.status_code not in (401, 403)
    return isinstance(error, httpx.HTTPError)


def _check_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    status = response.status_code
    if status in (401, 403):
        raise MeteringDeliveryError("Revenium API key rejected", status_code=status)
    if status == 429 or status >= 500:
        raise MeteringDeliveryError("Revenium API unavailable", status_code=status, retryable=True)
    raise MeteringDeliveryError(
        f"Revenium API rejected request: {response.text[:200]}", status_code=status
    )


class MeteringClient:
    """
    Client for sending metering payloads to the Revenium API.

    Features:
    - Non-blocking sends drained by a background worker thread
    - Bounded local queue; overflow drops events with a warning
    - Retry with exponential backoff for transport errors, 429 and 5xx
    - Metrics read-back with fixed-delay retries
    """

    def __init__(
        self,
        settings: ReveniumSettings,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the metering client.

        Args:
            settings: Active middleware settings
            transport: Optional httpx transport (used by tests)
        """
        self.settings = settings

        self._queue: queue.Queue[Optional[Callable[[], Any]]] = queue.Queue(
            maxsize=settings.max_queue_size
        )
        self._pending = 0
        self._idle = threading.Condition()
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()
        self._closed = False

        # HTTP client
        self._client = httpx.Client(
            timeout=settings.request_timeout,
            headers=self._get_headers(),
            transport=transport,
        )

        self._retrying = Retrying(
            stop=stop_after_attempt(settings.retry_attempts),
            wait=wait_exponential(
                multiplier=1, min=settings.retry_wait_min, max=settings.retry_wait_max
            ),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )

        # Register cleanup on exit
        atexit.register(self.close)

    def _get_headers(self) -> dict[str, str]:
        """Get HTTP headers for API requests."""
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
            "x-api-key": self.settings.api_key,
        }

    def _ensure_worker(self) -> None:
        with self._worker_lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(
                target=self._run_worker, name="revenium-metering", daemon=True
            )
            self._worker.start()

    def _run_worker(self) -> None:
        while True:
            job = self._queue.get()
            if job is None:
                self._queue.task_done()
                return
            try:
                job()
            except Exception as e:
                logger.error("Metering job failed", error=str(e))
            finally:
                self._queue.task_done()
                self._job_done()

    def _job_done(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    def submit(self, job: Callable[[], Any]) -> bool:
        """
        Queue work for the background worker.

        Never blocks and never raises.

        Returns:
            True if the job was queued
        """
        if self._closed:
            logger.debug("Metering client closed, dropping job")
            return False

        with self._idle:
            self._pending += 1
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            self._job_done()
            logger.warning("Metering queue full, dropping event", max_queue_size=self.settings.max_queue_size)
            return False

        self._ensure_worker()
        return True

    def spawn(self, job: Callable[[], Any], name: str) -> None:
        """
        Run work on its own daemon thread.

        The thread counts as pending work, so ``flush`` and ``close`` wait
        for it before the HTTP client is closed.
        """
        with self._idle:
            self._pending += 1

        def run() -> None:
            try:
                job()
            except Exception as e:
                logger.debug("Background job failed", job=name, error=str(e))
            finally:
                self._job_done()

        threading.Thread(target=run, name=name, daemon=True).start()

    def send(self, payload: MeteringPayload) -> bool:
        """Queue a payload for delivery."""
        return self.submit(lambda: self.deliver(payload))

    def deliver(self, payload: MeteringPayload) -> bool:
        """
        Deliver a payload synchronously, with retries.

        Returns:
            True if the API accepted the payload
        """
        url = build_metering_url(self.settings.base_url)
        try:
            self._retrying.copy()(self._post, url, payload.to_wire())
        except MeteringDeliveryError as e:
            if e.status_code in (401, 403):
                logger.error(
                    "Metering delivery failed: check REVENIUM_METERING_API_KEY",
                    status_code=e.status_code,
                    transaction_id=payload.transaction_id,
                )
            else:
                logger.warning(
                    "Metering delivery failed",
                    status_code=e.status_code,
                    error=e.message,
                    transaction_id=payload.transaction_id,
                )
            return False
        except httpx.HTTPError as e:
            logger.warning(
                "Metering delivery failed after retries",
                error=str(e),
                transaction_id=payload.transaction_id,
            )
            return False

        logger.debug(
            "Metering payload delivered",
            transaction_id=payload.transaction_id,
            operation_type=payload.operation_type.value,
        )
        return True

    def _post(self, url: str, body: dict[str, Any]) -> None:
        response = self._client.post(url, json=body)
        _check_status(response)

    def _query_metrics(self, transaction_id: str, team_id: str) -> Optional[dict[str, Any]]:
        if self._client.is_closed:
            return None
        response = self._client.get(
            build_metering_url(self.settings.base_url, METRICS_PATH),
            params={"teamId": team_id, "transactionId": transaction_id},
        )
        if response.status_code == 404:
            return None
        _check_status(response)

        data = response.json()
        records = (data.get("_embedded") or {}).get("aICompletionMetricResourceList") or []
        return records[0] if records else None

    def fetch_completion_metrics(
        self,
        transaction_id: str,
        team_id: str,
    ) -> Optional[dict[str, Any]]:
        """
        Read back the metrics the API recorded for a transaction.

        Retries with a fixed delay while the record is not yet available.
        Rejected credentials and a closed client stop the retries immediately.

        Returns:
            The metrics record, or None if it never became available
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.summary_retry_attempts)
            | (lambda retry_state: self._closed or self._client.is_closed),
            wait=wait_fixed(self.settings.summary_retry_delay),
            retry=retry_if_result(lambda record: record is None)
            | retry_if_exception(_is_transient_lookup_failure),
            retry_error_callback=lambda retry_state: None,
        )
        try:
            return retrying(self._query_metrics, transaction_id, team_id)
        except MeteringDeliveryError as e:
            logger.warning("Metrics lookup rejected", status_code=e.status_code, transaction_id=transaction_id)
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Metrics lookup failed", error=str(e), transaction_id=transaction_id)
        return None

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every queued job has run.

        Returns:
            True if the queue drained before the timeout
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def close(self) -> None:
        """Drain the queue and close the HTTP client."""
        if self._closed:
            return
        self._closed = True
        atexit.unregister(self.close)

        if not self.flush(timeout=5):
            logger.warning("Metering queue not drained before close", pending=self._pending)

        if self._worker is not None and self._worker.is_alive():
            self._queue.put(None)
            self._worker.join(timeout=5)

        self._client.close()

    def __enter__(self) -> "MeteringClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
