"""Discord webhook client with retry, backoff and rate-limit handling."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable

import httpx

from src.config import settings
from src.schemas.notifications import SendResult

logger = logging.getLogger(__name__)


def _backoff_seconds(attempt: int) -> float:
    """``2**attempt`` seconds plus up to one second of jitter."""
    return 2 ** attempt + random.uniform(0, 1)


def _retry_after_seconds(response: httpx.Response, attempt: int) -> float:
    header = response.headers.get("Retry-After")
    if header:
        try:
            return float(header) + random.uniform(0, 1)
        except ValueError:
            logger.debug("Ignoring unparseable Retry-After header: %s", header)
    return _backoff_seconds(attempt)


class DiscordClient:
    """Post embeds to a Discord webhook."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client or httpx.AsyncClient(timeout=settings.webhook_timeout_seconds)
        self._sleep = sleep

    async def send_with_retry(self, url: str, payload: dict, max_attempts: int = 3) -> SendResult:
        """POST ``payload`` to ``url``, retrying 429s, 5xx and transport errors.

        Other 4xx responses fail immediately with the response body as the
        error.  The last attempt never sleeps.
        """
        for attempt in range(1, max_attempts + 1):
            try:
                resp = await self._client.post(url, json=payload)
            except httpx.HTTPError as exc:
                if attempt < max_attempts:
                    delay = _backoff_seconds(attempt)
                    logger.warning("Discord webhook error (%s), retrying in %.1fs", exc, delay)
                    await self._sleep(delay)
                    continue
                return SendResult(success=False, error=str(exc) or type(exc).__name__, attempts=attempt)

            if resp.is_success:
                return SendResult(success=True, attempts=attempt)

            if resp.status_code == 429 and attempt < max_attempts:
                delay = _retry_after_seconds(resp, attempt)
                logger.warning("Discord rate limited, retrying in %.1fs", delay)
                await self._sleep(delay)
                continue

            if 400 <= resp.status_code < 500:
                logger.error("Discord rejected webhook payload: HTTP %d", resp.status_code)
                return SendResult(success=False, error=f"HTTP {resp.status_code}: {resp.text}", attempts=attempt)

            if resp.status_code >= 500 and attempt < max_attempts:
                delay = _backoff_seconds(attempt)
                logger.warning("Discord returned HTTP %d, retrying in %.1fs", resp.status_code, delay)
                await self._sleep(delay)
                continue

            return SendResult(success=False, error=f"HTTP {resp.status_code}", attempts=attempt)

        return SendResult(success=False, error="Max attempts exceeded", attempts=max_attempts)

    async def send_notification(self, webhook_url: str, payload: dict) -> SendResult:
        """Send ``payload``; a missing webhook URL is a successful no-op."""
        if not webhook_url:
            logger.warning("Discord webhook URL not configured, skipping notification")
            return SendResult(success=True)
        result = await self.send_with_retry(webhook_url, payload, settings.send_max_attempts)
        if result.success:
            logger.info("Discord notification sent (%d embeds)", len(payload.get("embeds", [])))
        return result

    async def close(self) -> None:
        await self._client.aclose()
