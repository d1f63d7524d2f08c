"""Discord webhook client — the relay's notification channel.

Two calls are used:

* ``POST <webhook>?wait=true`` creates a message.  With ``wait=true``
  Discord answers with the created message object, which carries the id
  needed for later edits.
* ``PATCH <webhook>/messages/<id>`` edits that message.  A failed edit is an
  expected outcome (the message may have been deleted) and is reported as
  ``False`` rather than raised.

Message creation is not retried: a retry after a lost response would post
a duplicate message.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

import httpx

from relay.errors import NotificationError
from relay.models.discord import DiscordEmbed
from relay.utils.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from relay.utils.config import Config
from relay.utils.logger import get_logger

logger = get_logger(__name__)


class DiscordWebhookService:
    """Async client for Discord incoming webhooks.

    When ``dry_run`` is set nothing is sent: creates return a synthetic
    message object and patches succeed.
    """

    def __init__(
        self,
        cfg: Config,
        http: Optional[httpx.AsyncClient] = None,
        dry_run: bool = False,
    ) -> None:
        self._http = http or httpx.AsyncClient(timeout=cfg.request_timeout)
        self._dry_run = dry_run
        self._circuit_breaker = CircuitBreaker(
            name="discord",
            failure_threshold=cfg.circuit_breaker_threshold,
            recovery_timeout=cfg.circuit_breaker_timeout,
        )

    async def create_message(self, webhook_url: str, embed: DiscordEmbed) -> Optional[Any]:
        """Post a new message and return the decoded response body.

        Returns ``None`` when the call succeeded but the body was empty or not
        JSON; the caller then keeps its fallback identifier.

        Raises:
            NotificationError: Transport failure, open circuit, or non-2xx.
        """
        if self._dry_run:
            logger.info("discord_dry_run_create", title=embed.title)
            return {"id": f"dry-run-{uuid.uuid4().hex[:12]}"}

        async def _do_post() -> httpx.Response:
            resp = await self._http.post(
                webhook_url,
                params={"wait": "true"},
                json=embed.to_message(),
            )
            if resp.status_code >= 500 or resp.status_code == 429:
                resp.raise_for_status()
            return resp

        try:
            resp = await self._circuit_breaker.call(_do_post)
        except CircuitBreakerOpenError as exc:
            raise NotificationError(str(exc)) from exc
        except httpx.HTTPStatusError as exc:
            raise NotificationError(
                f"Discord API error: {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise NotificationError(f"Discord request failed: {exc}") from exc

        if not resp.is_success:
            logger.error("discord_create_rejected", status_code=resp.status_code, detail=resp.text[:500])
            raise NotificationError(f"Discord API error: {resp.status_code}", status_code=resp.status_code)

        if not resp.content.strip():
            logger.info("discord_empty_response")
            return None
        try:
            return resp.json()
        except ValueError as exc:
            logger.warning("discord_response_unparseable", error=str(exc), body=resp.text[:200])
            return None

    async def patch_message(self, webhook_url: str, message_id: str, embed: DiscordEmbed) -> bool:
        """Edit an existing message in place; ``False`` on any failure."""
        if self._dry_run:
            logger.info("discord_dry_run_patch", message_id=message_id, title=embed.title)
            return True

        url = f"{webhook_url.rstrip('/')}/messages/{message_id}"

        async def _do_patch() -> httpx.Response:
            resp = await self._http.patch(url, json=embed.to_message())
            if resp.status_code >= 500 or resp.status_code == 429:
                resp.raise_for_status()
            return resp

        try:
            resp = await self._circuit_breaker.call(_do_patch)
        except (CircuitBreakerOpenError, httpx.HTTPError) as exc:
            logger.warning("discord_patch_failed", message_id=message_id, error=str(exc))
            return False

        if not resp.is_success:
            logger.warning(
                "discord_patch_rejected",
                message_id=message_id,
                status_code=resp.status_code,
            )
            return False
        return True

    async def close(self) -> None:
        await self._http.aclose()

    @property
    def circuit_breaker_state(self) -> str:
        return self._circuit_breaker.state.value
