"""PulsePoint feed client: one GET of the encrypted incident feed per run."""

from __future__ import annotations

from typing import Optional

import httpx
from pydantic import ValidationError

from relay.errors import FetchError
from relay.models.feed import RawFeedPayload
from relay.utils.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from relay.utils.config import Config
from relay.utils.logger import get_logger
from relay.utils.retry import retry_with_backoff

logger = get_logger(__name__)

_RETRYABLE = (httpx.TransportError, httpx.HTTPStatusError)


class PulsePointFeedClient:
    """Async client for the PulsePoint web feed.

    Transport errors and 5xx answers are retried with backoff; anything
    still failing becomes a ``FetchError``.
    """

    def __init__(self, cfg: Config, http: Optional[httpx.AsyncClient] = None) -> None:
        self._cfg = cfg
        self._http = http or httpx.AsyncClient(timeout=cfg.request_timeout)
        self._circuit_breaker = CircuitBreaker(
            name="pulsepoint",
            failure_threshold=cfg.circuit_breaker_threshold,
            recovery_timeout=cfg.circuit_breaker_timeout,
        )

    async def _get_once(self) -> httpx.Response:
        resp = await self._http.get(self._cfg.feed_url, headers={"Accept": "application/json"})
        if resp.status_code >= 500:
            resp.raise_for_status()
        return resp

    async def fetch(self) -> RawFeedPayload:
        """Fetch and validate the encrypted payload.

        Raises:
            FetchError: Unreachable feed, non-2xx status, or a body that is
                not ``{"ct", "iv", "s"}`` JSON.
        """
        get = retry_with_backoff(
            max_retries=self._cfg.max_retries,
            backoff_factor=self._cfg.retry_backoff_factor,
            exceptions=_RETRYABLE,
        )(self._get_once)

        logger.info("feed_fetch_start", agency_id=self._cfg.agency_id)
        try:
            resp = await self._circuit_breaker.call(get)
        except CircuitBreakerOpenError as exc:
            raise FetchError(str(exc)) from exc
        except httpx.HTTPStatusError as exc:
            raise FetchError(
                f"Failed to fetch from PulsePoint: {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Failed to fetch from PulsePoint: {exc}") from exc

        if not resp.is_success:
            raise FetchError(
                f"Failed to fetch from PulsePoint: {resp.status_code}",
                status_code=resp.status_code,
            )

        try:
            payload = RawFeedPayload.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise FetchError(f"PulsePoint returned an unexpected body: {exc}") from exc

        logger.info("feed_fetch_complete", ciphertext_length=len(payload.ct))
        return payload

    async def close(self) -> None:
        await self._http.aclose()

    @property
    def circuit_breaker_state(self) -> str:
        return self._circuit_breaker.state.value
