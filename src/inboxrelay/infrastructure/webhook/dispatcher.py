"""Webhook delivery of newly stored messages with bounded retry."""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
from loguru import logger

from inboxrelay.application.recent_deliveries import RecentDeliveries
from inboxrelay.domain.entities.webhook_event import WebhookEvent
from inboxrelay.infrastructure.settings import Settings

_NON_PRINTABLE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass
class DeliveryResult:
    """Outcome of one dispatch, after retries."""

    success: bool
    attempts: int = 0
    status_code: int | None = None
    error: str | None = None
    skipped: bool = False


@dataclass
class _Attempt:
    success: bool
    retryable: bool
    status_code: int | None = None
    error: str | None = None


def payload_diagnostics(payload: dict[str, Any]) -> dict[str, Any]:
    """Size and control-character report for a payload. Observability only."""
    body = json.dumps(payload, ensure_ascii=False)
    flagged = [
        key for key, value in payload.items()
        if isinstance(value, str) and _NON_PRINTABLE.search(value)
    ]
    return {
        "payload_bytes": len(body.encode("utf-8")),
        "non_printable_fields": flagged,
    }


class WebhookDispatcher:
    """Posts one JSON event per new message to the configured sink.

    Retries connection failures, timeouts and 5xx answers with exponential
    backoff; 4xx and anything else fail immediately. There is no dead-letter
    store: a message that is never delivered stays persisted only.
    """

    def __init__(
        self,
        url: str | None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> WebhookDispatcher:
        return cls(
            settings.webhook_url,
            client=client,
            timeout=settings.webhook_timeout_seconds,
            max_attempts=settings.webhook_max_attempts,
            backoff_base=settings.webhook_backoff_base_seconds,
            backoff_max=settings.webhook_backoff_max_seconds,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def backoff_delay(self, retry: int) -> float:
        """Delay before the ``retry``-th retry (1-based): 1s, 2s, 4s ... capped."""
        return min(self.backoff_base * (2 ** (retry - 1)), self.backoff_max)

    async def dispatch(self, event: WebhookEvent, recent: RecentDeliveries) -> DeliveryResult:
        log = logger.bind(mailbox_id=event.mailbox_id, email=event.client_id, uid=event.uid, message_id=event.message_id)

        if not self.enabled:
            log.debug("No webhook URL configured, skipping dispatch")
            return DeliveryResult(success=False, error="webhook disabled")

        key = event.dedup_key
        if key in recent:
            log.info(f"Webhook already sent for {key}, skipping duplicate trigger")
            return DeliveryResult(success=True, skipped=True)

        payload = event.to_payload()
        diagnostics = payload_diagnostics(payload)
        if diagnostics["non_printable_fields"]:
            log.bind(**diagnostics).warning("Webhook payload contains non-printable characters")
        else:
            log.bind(**diagnostics).debug("Webhook payload prepared")

        outcome = _Attempt(success=False, retryable=False)
        attempt = 0
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                delay = self.backoff_delay(attempt - 1)
                log.bind(attempt=attempt, max_attempts=self.max_attempts, delay_seconds=delay).warning(
                    f"Retrying webhook in {delay:g}s ({outcome.error})"
                )
                await self._sleep(delay)

            outcome = await self._post(payload)
            if outcome.success:
                recent.add(key)
                log.bind(attempt=attempt, status_code=outcome.status_code).info(f"Webhook delivered ({key})")
                return DeliveryResult(success=True, attempts=attempt, status_code=outcome.status_code)

            if not outcome.retryable:
                break

        log.bind(
            attempts=attempt,
            status_code=outcome.status_code,
            retryable=outcome.retryable,
            **diagnostics,
        ).error(f"Webhook delivery failed for {key}: {outcome.error}")
        return DeliveryResult(
            success=False,
            attempts=attempt,
            status_code=outcome.status_code,
            error=outcome.error,
        )

    async def _post(self, payload: dict[str, Any]) -> _Attempt:
        try:
            response = await self._client.post(self.url, json=payload)
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            # refused connections and DNS failures both surface as ConnectError
            return _Attempt(success=False, retryable=True, error=f"{type(e).__name__}: {e}")
        except Exception as e:
            return _Attempt(success=False, retryable=False, error=f"{type(e).__name__}: {e}")

        status = response.status_code
        if 200 <= status < 300:
            return _Attempt(success=True, retryable=False, status_code=status)
        return _Attempt(
            success=False,
            retryable=status >= 500,
            status_code=status,
            error=f"HTTP {status}: {response.text[:200]}",
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
