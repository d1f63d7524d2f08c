"""
Feed normalization.

Flattens the ``active`` and ``recent`` lists into one sequence of
``NormalizedIncident`` (active first), tags recent incidents as closed, and
resolves PulsePoint codes to display strings.  Unrecognised or missing
codes become ``"Unknown"``; nothing here raises.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from relay.models.feed import DecryptedFeed, NormalizedIncident, NormalizedUnit, RawIncident
from relay.utils.logger import get_logger

logger = get_logger(__name__)

UNKNOWN = "Unknown"

CALL_TYPES: Dict[str, str] = {
    "ME": "Medical Emergency",
    "TC": "Traffic Collision",
    "STBY": "Standby",
    "TCE": "Expanded Traffic Collision",
    "CSR": "Confined Space",
    "HMR": "Hazardous Materials Response",
}

DISPATCH_STATUSES: Dict[str, str] = {
    "AR": "Cleared",
    "ER": "En Route",
    "OS": "On Scene",
    "TR": "Transport",
    "DP": "Dispatched",
    "AK": "Dispatched",
    "TA": "Transport Arrived",
}


def map_call_type(code: Optional[str]) -> str:
    if not code:
        return UNKNOWN
    return CALL_TYPES.get(code, UNKNOWN)


def map_dispatch_status(code: Optional[str]) -> str:
    if not code:
        return UNKNOWN
    return DISPATCH_STATUSES.get(code, UNKNOWN)


def _normalize_incident(raw: RawIncident, closed: bool) -> NormalizedIncident:
    return NormalizedIncident(
        id=raw.id,
        closed=closed,
        call_received=raw.call_received,
        call_type=raw.call_type,
        display_call_type=map_call_type(raw.call_type),
        address=raw.address,
        units=[
            NormalizedUnit(
                unit_id=unit.unit_id,
                dispatch_status=unit.dispatch_status,
                display_status=map_dispatch_status(unit.dispatch_status),
            )
            for unit in raw.units
        ],
    )


def normalize(feed: DecryptedFeed) -> List[NormalizedIncident]:
    """Return every feed incident with display values, active before recent."""
    active = feed.incidents.active
    recent = feed.incidents.recent
    logger.info("feed_normalized", active_incidents=len(active), recent_incidents=len(recent))
    return [_normalize_incident(raw, closed=False) for raw in active] + [
        _normalize_incident(raw, closed=True) for raw in recent
    ]
