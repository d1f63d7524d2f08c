"""Persisted tracking state and run results."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

TRACKING_PREFIX = "incident:"
LATEST_ID_KEY = "latestIncidentId"
FALLBACK_PREFIX = "incident-"


def tracking_key(incident_id: str) -> str:
    return f"{TRACKING_PREFIX}{incident_id}"


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MessageKind(str, Enum):
    REAL = "real"
    FALLBACK = "fallback"


class MessageRef(BaseModel):
    """Identifier of the outbound message for an incident.

    ``REAL`` ids came back from Discord and can be patched.  ``FALLBACK`` ids
    are generated locally when no real id is known; they are never sent to
    Discord.
    """

    model_config = ConfigDict(frozen=True)

    kind: MessageKind
    value: str

    @classmethod
    def real(cls, value: str) -> "MessageRef":
        return cls(kind=MessageKind.REAL, value=value)

    @classmethod
    def fallback(cls, incident_id: str, now: datetime) -> "MessageRef":
        epoch_ms = int(now.timestamp() * 1000)
        return cls(kind=MessageKind.FALLBACK, value=f"{FALLBACK_PREFIX}{incident_id}-{epoch_ms}")

    @property
    def is_real(self) -> bool:
        return self.kind is MessageKind.REAL


class IncidentState(str, Enum):
    UNTRACKED = "untracked"
    OPEN = "open"
    CLOSED = "closed"


class TransitionKind(str, Enum):
    NEW = "new"
    UPDATE = "update"
    CLOSE = "close"
    EXPIRE = "expire"
    PRUNE = "prune"


class TrackedIncident(BaseModel):
    """One ``incident:<id>`` record.

    Serialized with camelCase keys (``model_dump(by_alias=True)``).
    ``messageIdKind`` may be missing on older records; the kind is then
    inferred from the reserved fallback prefix.  ``contentHash`` is the
    fingerprint of the last content sent for the incident.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    incident_id: str = Field(alias="pulsepointId")
    closed: bool = False
    message_id: Optional[str] = Field(default=None, alias="messageId")
    message_kind: Optional[MessageKind] = Field(default=None, alias="messageIdKind")
    last_updated: str = Field(alias="lastUpdated")
    call_received: Optional[str] = Field(default=None, alias="callReceived")
    display_call_type: Optional[str] = Field(default=None, alias="displayIncidentCallType")
    fingerprint: Optional[str] = Field(default=None, alias="contentHash")

    @field_validator("last_updated")
    @classmethod
    def _parseable_timestamp(cls, value: str) -> str:
        parse_timestamp(value)
        return value

    @property
    def key(self) -> str:
        return tracking_key(self.incident_id)

    @property
    def state(self) -> IncidentState:
        return IncidentState.CLOSED if self.closed else IncidentState.OPEN

    @property
    def message_ref(self) -> Optional[MessageRef]:
        if not self.message_id:
            return None
        kind = self.message_kind
        if kind is None:
            kind = MessageKind.FALLBACK if self.message_id.startswith(FALLBACK_PREFIX) else MessageKind.REAL
        return MessageRef(kind=kind, value=self.message_id)

    @property
    def last_updated_at(self) -> datetime:
        return parse_timestamp(self.last_updated)

    def with_message(self, ref: MessageRef) -> "TrackedIncident":
        return self.model_copy(update={"message_id": ref.value, "message_kind": ref.kind})

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class RunSummary(BaseModel):
    """Counts reported for one reconciliation run."""

    total_incidents: int = 0
    tracked_incidents: int = 0
    new_incidents: int = 0
    updated_open_incidents: int = 0
    closed_incidents: int = 0
    expired_incidents: int = 0
    pruned_incidents: int = 0
    failed_transitions: int = 0
    timestamp: str = Field(default_factory=lambda: format_timestamp(datetime.now(timezone.utc)))


class RunStatus(BaseModel):
    """Snapshot of the run manager's history."""

    last_summary: Optional[RunSummary] = None
    last_run_at: Optional[str] = None
    last_error: Optional[str] = None
    runs_completed: int = 0
    runs_failed: int = 0
    errors: List[str] = Field(default_factory=list)
    circuit_breaker_state: Dict[str, str] = Field(default_factory=dict)
