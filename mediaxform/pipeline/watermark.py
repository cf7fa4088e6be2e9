"""
Remote watermark source.

Fetches the overlay image over HTTP. Network trouble is transient and may be
retried; a response that is not an image is terminal. A circuit breaker stops
hammering a failing host.
"""

from typing import Optional

import httpx

from mediaxform.core.config import settings
from mediaxform.core.exceptions import (
    InvalidWatermarkSourceError,
    TransientIOError,
    get_circuit_breaker,
)
from mediaxform.core.logging import get_logger

logger = get_logger(__name__)


class WatermarkFetcher:
    """Downloads watermark images with an httpx AsyncClient."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_bytes: Optional[int] = None,
    ):
        self._client = client
        self.timeout = timeout or settings.WATERMARK_FETCH_TIMEOUT_SECONDS
        self.max_bytes = max_bytes or settings.WATERMARK_MAX_BYTES
        self.circuit = get_circuit_breaker("watermark_fetch")

    async def fetch(self, url: str) -> bytes:
        if not self.circuit.can_execute():
            raise TransientIOError(
                "Watermark source is temporarily unavailable (circuit breaker open)",
                service="watermark_fetch"
            )

        try:
            if self._client is not None:
                response = await self._client.get(url, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, follow_redirects=True)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            self.circuit.record_failure(e)
            raise TransientIOError(f"Watermark fetch failed: {e}", service="watermark_fetch")

        if response.status_code >= 500:
            self.circuit.record_failure()
            raise TransientIOError(
                f"Watermark host returned {response.status_code}",
                service="watermark_fetch"
            )
        self.circuit.record_success()

        if response.status_code != 200:
            raise InvalidWatermarkSourceError(
                f"Watermark url returned HTTP {response.status_code}",
                url=url
            )

        content_type = response.headers.get("content-type", "")
        if not content_type.lower().startswith("image/"):
            raise InvalidWatermarkSourceError(
                "Watermark url must point to an image",
                url=url,
                details={"content_type": content_type or None}
            )

        if len(response.content) > self.max_bytes:
            raise InvalidWatermarkSourceError(
                "Watermark image is too large",
                url=url,
                details={"size_bytes": len(response.content), "max_bytes": self.max_bytes}
            )

        logger.info("watermark_fetched", url=url, size=len(response.content), content_type=content_type)
        return response.content
