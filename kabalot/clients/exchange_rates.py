"""Exchange rate lookup for converting foreign receipts."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from kabalot.core.config import ExchangeRateSettings
from kabalot.utils.http import RetryConfig, request_with_retry

logger = logging.getLogger(__name__)


class ExchangeRateClient:
    """Resolve the foreign to ledger currency rate for a given day.

    Without an endpoint the configured static rate is returned for every day.
    """

    def __init__(
        self,
        settings: ExchangeRateSettings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self._settings = settings
        self._http = http_client
        self._retry = retry_config or RetryConfig(attempts=3, backoff_seconds=0.5)

    async def get_rate(self, on: str) -> float:
        endpoint = self._settings.endpoint_url
        if not endpoint:
            return self._settings.fallback_rate

        params = {
            "date": on,
            "from": self._settings.foreign_currency,
            "to": self._settings.ledger_currency,
        }
        if self._http is not None:
            response = await request_with_retry(
                self._http.get, endpoint, params=params, retry_config=self._retry
            )
        else:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await request_with_retry(
                    client.get, endpoint, params=params, retry_config=self._retry
                )

        payload = response.json()
        try:
            rate = float(payload["rate"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Exchange rate response for {on} has no usable rate") from exc
        if rate <= 0:
            raise ValueError(f"Exchange rate for {on} must be positive, got {rate}")
        logger.debug("Exchange rate for %s: %s", on, rate)
        return rate


__all__ = ["ExchangeRateClient"]
