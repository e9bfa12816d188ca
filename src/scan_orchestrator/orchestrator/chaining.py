"""Fire-and-forget trigger that hands the queue to the next worker invocation."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

PROCESS_QUEUE_PATH = "/api/cron/process-queue"


@dataclass(slots=True)
class TriggerResult:
    url: str
    status_code: int
    is_success: bool
    error: str | None = None


class WorkerChainTrigger:
    """POST to the process-queue endpoint carrying the worker credential.

    `fire()` returns immediately; the request runs on a daemon thread and
    its failures are only logged. The periodic tick picks up anything a
    lost trigger leaves behind.
    """

    def __init__(
        self,
        *,
        base_url: str,
        cron_secret: str | None,
        timeout_seconds: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = base_url.rstrip("/") + PROCESS_QUEUE_PATH
        self._cron_secret = cron_secret
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        if not self._cron_secret:
            return {}
        return {"Authorization": f"Bearer {self._cron_secret}"}

    def send(self) -> TriggerResult:
        """Issue the trigger request synchronously."""

        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(self.url, headers=self._headers())
        except httpx.TimeoutException:
            logger.warning("Timeout triggering next worker at %s", self.url)
            return TriggerResult(url=self.url, status_code=0, is_success=False, error="timeout")
        except httpx.HTTPError as error:
            logger.warning("Failed to trigger next worker at %s: %s", self.url, error)
            return TriggerResult(url=self.url, status_code=0, is_success=False, error=str(error))

        if not response.is_success:
            logger.warning(
                "Next worker trigger at %s returned HTTP %d",
                self.url,
                response.status_code,
            )
            return TriggerResult(
                url=self.url,
                status_code=response.status_code,
                is_success=False,
                error=f"HTTP {response.status_code}",
            )
        logger.info("Triggered next worker at %s", self.url)
        return TriggerResult(url=self.url, status_code=response.status_code, is_success=True)

    def fire(self) -> threading.Thread:
        thread = threading.Thread(target=self.send, name="worker-chain", daemon=True)
        thread.start()
        return thread
