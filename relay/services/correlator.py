"""Decide between creating and patching a Discord message for a transition.

Identifier rules
----------------
* ``new`` always creates.  A fallback id is assigned before the call and is
  replaced by the id found in the response, if any.
* ``update`` / ``close`` / ``expire`` patch the stored message when its id is
  real.  A fallback (or missing) id means nothing can be patched, so a new
  message is created and its id adopted.
* A failed patch falls back to creating a new message for ``close`` and
  ``expire``.  For ``update`` it raises, leaving the record untouched so the
  update is retried on the next run.

Routing: the standby call type goes to the standby webhook, everything else
to the primary webhook.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from relay.errors import NotificationError
from relay.models.discord import DiscordEmbed
from relay.models.feed import NormalizedIncident
from relay.models.tracking import MessageRef, TrackedIncident, TransitionKind
from relay.services.discord import DiscordWebhookService
from relay.transformers.embed_builder import build_embed
from relay.utils.config import Config
from relay.utils.logger import get_logger

logger = get_logger(__name__)


def extract_message_id(body: Any) -> Optional[str]:
    """Find the message id in a webhook response body.

    Accepts ``{"id": ...}``, ``{"message_id": ...}`` and
    ``{"message": {"id": ...}}``.
    """
    if not isinstance(body, dict):
        return None
    for candidate in (body.get("id"), body.get("message_id")):
        if candidate:
            return str(candidate)
    message = body.get("message")
    if isinstance(message, dict) and message.get("id"):
        return str(message["id"])
    return None


class NotificationCorrelator:
    def __init__(self, cfg: Config, discord: DiscordWebhookService) -> None:
        self._cfg = cfg
        self._discord = discord

    def webhook_for(self, incident: NormalizedIncident) -> str:
        if incident.display_call_type == self._cfg.standby_call_type:
            return self._cfg.standby_webhook_url
        return self._cfg.discord_webhook_url

    async def notify(
        self,
        incident: NormalizedIncident,
        tracked: Optional[TrackedIncident],
        kind: TransitionKind,
        now: datetime,
    ) -> MessageRef:
        """Deliver *incident* presented as *kind*; return the message ref to store.

        Raises:
            NotificationError: No message could be created or patched.
        """
        if kind is TransitionKind.PRUNE:
            raise ValueError("prune transitions send no notification")

        webhook_url = self.webhook_for(incident)
        embed = build_embed(incident, kind, self._cfg.incident_url(incident.id), now)

        current = tracked.message_ref if tracked is not None else None
        if kind is TransitionKind.NEW or current is None:
            return await self._create(incident, webhook_url, embed, MessageRef.fallback(incident.id, now))

        if not current.is_real:
            logger.info(
                "fallback_id_not_patchable",
                incident_id=incident.id,
                message_id=current.value,
                kind=kind.value,
            )
            return await self._create(incident, webhook_url, embed, current)

        if await self._discord.patch_message(webhook_url, current.value, embed):
            logger.info(
                "discord_message_patched",
                incident_id=incident.id,
                message_id=current.value,
                kind=kind.value,
            )
            return current

        if kind is TransitionKind.UPDATE:
            raise NotificationError(f"Failed to update message {current.value} for incident {incident.id}")

        logger.warning(
            "patch_failed_creating_new_message",
            incident_id=incident.id,
            message_id=current.value,
            kind=kind.value,
        )
        return await self._create(incident, webhook_url, embed, current)

    async def _create(
        self,
        incident: NormalizedIncident,
        webhook_url: str,
        embed: DiscordEmbed,
        default: MessageRef,
    ) -> MessageRef:
        body = await self._discord.create_message(webhook_url, embed)
        message_id = extract_message_id(body)
        if message_id is None:
            logger.warning("discord_message_id_missing", incident_id=incident.id, kept=default.value)
            return default
        logger.info("discord_message_created", incident_id=incident.id, message_id=message_id)
        return MessageRef.real(message_id)
