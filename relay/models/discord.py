"""Pydantic v2 models for Discord webhook payloads."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

OPEN_COLOR = 0xF40A38  # red
CLOSED_COLOR = 0x818182  # grey


class EmbedField(BaseModel):
    name: str
    value: str
    inline: bool = False


class EmbedFooter(BaseModel):
    text: str


class DiscordEmbed(BaseModel):
    """A single embed inside a webhook message."""

    title: str
    fields: List[EmbedField] = Field(default_factory=list)
    color: int = OPEN_COLOR
    footer: Optional[EmbedFooter] = None
    url: Optional[str] = None
    timestamp: Optional[str] = None

    def to_message(self) -> dict:
        """Webhook request body carrying this embed."""
        return {"embeds": [self.model_dump(exclude_none=True)]}
