"""Pydantic v2 models for the PulsePoint feed.

Attribute names are snake_case; the PulsePoint wire names are kept as
aliases so ``model_validate`` accepts raw feed JSON directly.
"""

from __future__ import annotations

import hashlib
import json
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RawFeedPayload(BaseModel):
    """Encrypted response body of the feed endpoint."""

    model_config = ConfigDict(frozen=True)

    ct: str  # ciphertext, base64
    iv: str  # hex
    s: str  # salt, hex


class RawUnit(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    unit_id: str = Field(default="", alias="UnitID")
    dispatch_status: Optional[str] = Field(default=None, alias="PulsePointDispatchStatus")

    @field_validator("unit_id", mode="before")
    @classmethod
    def _coerce_unit_id(cls, value):
        if value is None:
            return ""
        return str(value) if isinstance(value, (int, float)) else value


class RawIncident(BaseModel):
    """One incident as it appears in the ``active`` or ``recent`` list."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(alias="ID")
    closed: bool = Field(default=False, alias="Closed")
    call_received: Optional[str] = Field(default=None, alias="CallReceivedDateTime")
    call_type: Optional[str] = Field(default=None, alias="PulsePointIncidentCallType")
    address: Optional[str] = Field(default=None, alias="FullDisplayAddress")
    units: List[RawUnit] = Field(default_factory=list, alias="Unit")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        # The feed occasionally sends numeric identifiers
        return str(value) if isinstance(value, int) else value

    @field_validator("units", mode="before")
    @classmethod
    def _none_units(cls, value):
        return value or []


class FeedIncidents(BaseModel):
    model_config = ConfigDict(extra="ignore")

    active: List[RawIncident] = Field(default_factory=list)
    recent: List[RawIncident] = Field(default_factory=list)

    @field_validator("active", "recent", mode="before")
    @classmethod
    def _none_lists(cls, value):
        return value or []


class DecryptedFeed(BaseModel):
    """Plaintext feed: ``{"incidents": {"active": [...], "recent": [...]}}``."""

    model_config = ConfigDict(extra="ignore")

    incidents: FeedIncidents = Field(default_factory=FeedIncidents)

    @field_validator("incidents", mode="before")
    @classmethod
    def _none_incidents(cls, value):
        return value or {}


class NormalizedUnit(BaseModel):
    unit_id: str
    dispatch_status: Optional[str] = None
    display_status: str = "Unknown"


class NormalizedIncident(BaseModel):
    """A feed incident with display values resolved; the unit of comparison."""

    id: str
    closed: bool = False
    call_received: Optional[str] = None
    call_type: Optional[str] = None
    display_call_type: str = "Unknown"
    address: Optional[str] = None
    units: List[NormalizedUnit] = Field(default_factory=list)

    def fingerprint(self) -> str:
        """Digest of the content an embed shows, excluding timestamps.

        Two observations with the same fingerprint render the same message, so
        no update is sent between them.
        """
        material = json.dumps(
            [
                self.display_call_type,
                self.address,
                [[unit.unit_id, unit.dispatch_status] for unit in self.units],
            ],
            separators=(",", ":"),
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]
