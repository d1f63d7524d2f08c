"""Build the Discord embed shown for an incident.

Field layout
------------
1. ``Full Address``
2. One inline field per dispatch status present, in the order of
   ``STATUS_ORDER``, listing unit ids comma-separated.
3. ``Unknown`` for units whose status is not in ``STATUS_ORDER``, listed as
   ``"<unit> - <raw code>"``.
4. ``Last Updated`` as a Discord relative timestamp.

Open incidents are red; closed and expired ones are grey.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List

from relay.models.discord import CLOSED_COLOR, OPEN_COLOR, DiscordEmbed, EmbedField, EmbedFooter
from relay.models.feed import NormalizedIncident
from relay.models.tracking import TransitionKind

STATUS_ORDER = (
    "On Scene",
    "En Route",
    "Transport",
    "Dispatched",
    "Transport Arrived",
    "Cleared",
)

_TITLE_SUFFIX: Dict[TransitionKind, str] = {
    TransitionKind.CLOSE: " - Closed",
    TransitionKind.EXPIRE: " - Expired",
}


def build_fields(incident: NormalizedIncident, now: datetime) -> List[EmbedField]:
    fields = [EmbedField(name="Full Address", value=incident.address or "Address not available")]

    for status in STATUS_ORDER:
        unit_ids = [unit.unit_id for unit in incident.units if unit.display_status == status]
        if unit_ids:
            fields.append(EmbedField(name=status, value=", ".join(unit_ids), inline=True))

    unknown = [
        f"{unit.unit_id} - {unit.dispatch_status or 'Unknown'}"
        for unit in incident.units
        if unit.display_status not in STATUS_ORDER
    ]
    if unknown:
        fields.append(EmbedField(name="Unknown", value=", ".join(unknown), inline=True))

    fields.append(EmbedField(name="Last Updated", value=f"<t:{int(now.timestamp())}:R>", inline=False))
    return fields


def build_embed(
    incident: NormalizedIncident,
    kind: TransitionKind,
    incident_url: str,
    now: datetime,
) -> DiscordEmbed:
    """Embed for *incident* presented as *kind* (new/update look the same)."""
    closed_look = kind in (TransitionKind.CLOSE, TransitionKind.EXPIRE)
    return DiscordEmbed(
        title=f"{incident.display_call_type}{_TITLE_SUFFIX.get(kind, '')}",
        fields=build_fields(incident, now),
        color=CLOSED_COLOR if closed_look else OPEN_COLOR,
        footer=EmbedFooter(text=f"PulsePoint ID: {incident.id}"),
        url=incident_url,
        timestamp=incident.call_received,
    )
