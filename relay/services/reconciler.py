"""Incident lifecycle reconciliation.

Each incident identifier moves through::

    UNTRACKED --new--> OPEN --update--> OPEN
                        OPEN --close/expire--> CLOSED --prune--> (deleted)

Planning is pure: every identifier gets at most one transition, derived from
the tracking snapshot taken at the start of the run, the normalized feed,
and the run's ``now``.  Expiry wins over update/close for a stale record.
An open incident whose content fingerprint is unchanged gets no transition;
its ``lastUpdated`` is refreshed without a notification so an incident that
is still listed does not go stale.

Applying runs the transition classes in a fixed order (new, update, close,
expire, prune).  Inside a class, identifiers are handled concurrently, each
under its own key lock.  Before writing, the record is re-read under the
lock and the transition is skipped when it no longer matches the snapshot,
so overlapping runs cannot double-create or reopen a closed record.
A new incident is first claimed with an atomic create in the store, which
keeps separate processes sharing one table from announcing it twice.

Failures are isolated: a failed notification or store write is logged, the
record is left as it was, and the transition is retried next run.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from relay.errors import RelayError, StoreError
from relay.models.feed import NormalizedIncident
from relay.models.tracking import (
    LATEST_ID_KEY,
    MessageRef,
    TRACKING_PREFIX,
    IncidentState,
    TrackedIncident,
    TransitionKind,
    format_timestamp,
    tracking_key,
)
from relay.services.correlator import NotificationCorrelator
from relay.services.store import KeyLocks, TrackingStore
from relay.utils.config import Config
from relay.utils.logger import get_logger

logger = get_logger(__name__)

APPLY_ORDER: Tuple[TransitionKind, ...] = (
    TransitionKind.NEW,
    TransitionKind.UPDATE,
    TransitionKind.CLOSE,
    TransitionKind.EXPIRE,
    TransitionKind.PRUNE,
)

# Allowed edges of the per-incident state machine
EDGES: Dict[TransitionKind, Tuple[IncidentState, Optional[IncidentState]]] = {
    TransitionKind.NEW: (IncidentState.UNTRACKED, IncidentState.OPEN),
    TransitionKind.UPDATE: (IncidentState.OPEN, IncidentState.OPEN),
    TransitionKind.CLOSE: (IncidentState.OPEN, IncidentState.CLOSED),
    TransitionKind.EXPIRE: (IncidentState.OPEN, IncidentState.CLOSED),
    TransitionKind.PRUNE: (IncidentState.CLOSED, None),
}

EXPIRED_ADDRESS = "Address information no longer available"

_Handler = Callable[["Transition", datetime], Awaitable["Outcome"]]


class Outcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    incident_id: str
    incident: Optional[NormalizedIncident] = None
    tracked: Optional[TrackedIncident] = None

    @property
    def key(self) -> str:
        return tracking_key(self.incident_id)


@dataclass
class ReconciliationPlan:
    transitions: Dict[TransitionKind, List[Transition]] = field(
        default_factory=lambda: {kind: [] for kind in APPLY_ORDER}
    )
    # Open incidents observed again without any visible change
    seen: List[Transition] = field(default_factory=list)

    def add(self, transition: Transition) -> None:
        self.transitions[transition.kind].append(transition)

    def of(self, kind: TransitionKind) -> List[Transition]:
        return self.transitions[kind]

    def ids(self, kind: TransitionKind) -> List[str]:
        return [t.incident_id for t in self.transitions[kind]]

    def __len__(self) -> int:
        return sum(len(items) for items in self.transitions.values())


@dataclass
class ReconciliationResult:
    applied: Dict[TransitionKind, int] = field(default_factory=lambda: {kind: 0 for kind in APPLY_ORDER})
    refreshed: int = 0
    skipped: int = 0
    failed: int = 0

    def count(self, kind: TransitionKind) -> int:
        return self.applied[kind]


class ReconciliationEngine:
    """Plans and applies lifecycle transitions against the tracking store."""

    def __init__(
        self,
        cfg: Config,
        store: TrackingStore,
        correlator: NotificationCorrelator,
        locks: Optional[KeyLocks] = None,
    ) -> None:
        self._cfg = cfg
        self._store = store
        self._correlator = correlator
        self._locks = locks if locks is not None else KeyLocks()
        self._terms = tuple(term.upper() for term in cfg.location_terms)
        self._staleness = timedelta(hours=cfg.staleness_hours)
        self._retention = timedelta(days=cfg.retention_days)
        self._handlers: Dict[TransitionKind, _Handler] = {
            TransitionKind.NEW: self._open_new,
            TransitionKind.UPDATE: self._refresh_open,
            TransitionKind.CLOSE: self._close,
            TransitionKind.EXPIRE: self._expire,
            TransitionKind.PRUNE: self._forget,
        }

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    async def load_snapshot(self) -> Dict[str, TrackedIncident]:
        """Load every tracking record.

        Raises:
            StoreError: The store could not be listed or read.  Malformed
                records are skipped with a warning instead.
        """
        keys = await self._store.list_keys(TRACKING_PREFIX)
        snapshot: Dict[str, TrackedIncident] = {}
        for key in keys:
            data = await self._store.get(key)
            if not data:
                continue
            try:
                record = TrackedIncident.model_validate(data)
            except ValidationError as exc:
                logger.warning("tracking_record_malformed", key=key, error=str(exc))
                continue
            snapshot[record.incident_id] = record
        logger.info("tracking_snapshot_loaded", tracked_incidents=len(snapshot))
        return snapshot

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def in_scope(self, incident: NormalizedIncident) -> bool:
        if not incident.address:
            return False
        address = incident.address.upper()
        return any(term in address for term in self._terms)

    def classify(
        self,
        tracked: Optional[TrackedIncident],
        incident: Optional[NormalizedIncident],
        now: datetime,
    ) -> Optional[TransitionKind]:
        """The single transition due for one identifier, or ``None``."""
        if tracked is None:
            if incident is not None and not incident.closed:
                return TransitionKind.NEW
            return None

        age = now - tracked.last_updated_at
        if tracked.state is IncidentState.CLOSED:
            return TransitionKind.PRUNE if age > self._retention else None

        if age > self._staleness:
            return TransitionKind.EXPIRE
        if incident is None:
            return None
        if incident.closed:
            return TransitionKind.CLOSE
        if tracked.fingerprint != incident.fingerprint():
            return TransitionKind.UPDATE
        return None

    def plan(
        self,
        incidents: Sequence[NormalizedIncident],
        snapshot: Dict[str, TrackedIncident],
        now: datetime,
    ) -> ReconciliationPlan:
        # Later entries win, so an id listed as both active and recent counts as closed
        latest: Dict[str, NormalizedIncident] = {incident.id: incident for incident in incidents}
        # The area filter only gates tracking; tracked ids follow the feed wherever it places them
        feed = {
            incident_id: incident
            for incident_id, incident in latest.items()
            if incident_id in snapshot or self.in_scope(incident)
        }

        plan = ReconciliationPlan()
        for incident_id in _ordered_ids(feed, snapshot):
            tracked = snapshot.get(incident_id)
            incident = feed.get(incident_id)
            kind = self.classify(tracked, incident, now)
            if kind is None:
                if tracked is not None and incident is not None and tracked.state is IncidentState.OPEN:
                    # Still active and unchanged: keep it fresh without a notification
                    plan.seen.append(
                        Transition(
                            kind=TransitionKind.UPDATE,
                            incident_id=incident_id,
                            incident=incident,
                            tracked=tracked,
                        )
                    )
                continue
            if kind is TransitionKind.EXPIRE and incident is None:
                incident = _expired_view(tracked)
            plan.add(Transition(kind=kind, incident_id=incident_id, incident=incident, tracked=tracked))

        logger.info(
            "reconciliation_planned",
            considered_incidents=len(feed),
            unchanged_count=len(plan.seen),
            **{f"{kind.value}_count": len(plan.of(kind)) for kind in APPLY_ORDER},
        )
        return plan

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    async def apply(self, plan: ReconciliationPlan, now: datetime) -> ReconciliationResult:
        result = ReconciliationResult()
        semaphore = asyncio.Semaphore(max(1, self._cfg.max_concurrency))

        async def _guarded(transition: Transition, handler: Optional[_Handler] = None) -> Outcome:
            async with semaphore:
                async with self._locks(transition.key):
                    return await self._run(transition, now, handler)

        for kind in APPLY_ORDER:
            batch = plan.of(kind)
            if not batch:
                continue
            outcomes = await asyncio.gather(*(_guarded(t) for t in batch))
            for outcome in outcomes:
                if outcome is Outcome.APPLIED:
                    result.applied[kind] += 1
                elif outcome is Outcome.SKIPPED:
                    result.skipped += 1
                else:
                    result.failed += 1

            if kind is TransitionKind.NEW:
                created = [t.incident_id for t, o in zip(batch, outcomes) if o is Outcome.APPLIED]
                if created:
                    await self._record_latest(created[-1])

        if plan.seen:
            outcomes = await asyncio.gather(*(_guarded(t, self._touch) for t in plan.seen))
            result.refreshed = sum(1 for o in outcomes if o is Outcome.APPLIED)
            result.failed += sum(1 for o in outcomes if o is Outcome.FAILED)

        logger.info(
            "reconciliation_applied",
            refreshed=result.refreshed,
            skipped=result.skipped,
            failed=result.failed,
            **{f"{kind.value}_applied": result.applied[kind] for kind in APPLY_ORDER},
        )
        return result

    async def _run(self, transition: Transition, now: datetime, handler: Optional[_Handler] = None) -> Outcome:
        try:
            if not await self._still_current(transition):
                logger.info(
                    "transition_superseded",
                    incident_id=transition.incident_id,
                    kind=transition.kind.value,
                )
                return Outcome.SKIPPED
            return await (handler or self._handlers[transition.kind])(transition, now)
        except RelayError as exc:
            logger.error(
                "transition_failed",
                incident_id=transition.incident_id,
                kind=transition.kind.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return Outcome.FAILED
        except Exception as exc:
            logger.exception(
                "transition_unexpected_error",
                incident_id=transition.incident_id,
                kind=transition.kind.value,
                error=str(exc),
            )
            return Outcome.FAILED

    async def _still_current(self, transition: Transition) -> bool:
        """Re-read the record under its lock and compare with the snapshot."""
        source_state = EDGES[transition.kind][0]
        stored = await self._store.get(transition.key)
        if stored is None:
            return source_state is IncidentState.UNTRACKED
        try:
            current = TrackedIncident.model_validate(stored)
        except ValidationError:
            return False
        expected = transition.tracked
        return (
            expected is not None
            and current.state is source_state
            and current.last_updated == expected.last_updated
            and current.message_id == expected.message_id
        )

    # One handler per edge of the state machine

    async def _open_new(self, transition: Transition, now: datetime) -> Outcome:
        incident = transition.incident
        # Claim the key before posting so another process sharing the store cannot post too
        claim = TrackedIncident(
            incident_id=incident.id,
            closed=False,
            last_updated=format_timestamp(now),
            call_received=incident.call_received,
            display_call_type=incident.display_call_type,
            fingerprint=incident.fingerprint(),
        ).with_message(MessageRef.fallback(incident.id, now))
        if not await self._store.put_if_absent(claim.key, claim.to_record()):
            logger.info("incident_claimed_elsewhere", incident_id=incident.id)
            return Outcome.SKIPPED

        try:
            ref = await self._correlator.notify(incident, None, TransitionKind.NEW, now)
        except Exception:
            await self._release(claim)
            raise
        record = claim.with_message(ref)
        await self._persist(record, after_notify=True)
        logger.info("incident_tracked", incident_id=incident.id, message_id=ref.value, real_id=ref.is_real)
        return Outcome.APPLIED

    async def _refresh_open(self, transition: Transition, now: datetime) -> Outcome:
        incident, tracked = transition.incident, transition.tracked
        ref = await self._correlator.notify(incident, tracked, TransitionKind.UPDATE, now)
        record = tracked.with_message(ref).model_copy(
            update={
                "last_updated": format_timestamp(now),
                "call_received": incident.call_received or tracked.call_received,
                "display_call_type": incident.display_call_type,
                "fingerprint": incident.fingerprint(),
            }
        )
        await self._persist(record, after_notify=True)
        return Outcome.APPLIED

    async def _touch(self, transition: Transition, now: datetime) -> Outcome:
        record = transition.tracked.model_copy(update={"last_updated": format_timestamp(now)})
        await self._persist(record)
        return Outcome.APPLIED

    async def _close(self, transition: Transition, now: datetime) -> Outcome:
        return await self._finish(transition, TransitionKind.CLOSE, now)

    async def _expire(self, transition: Transition, now: datetime) -> Outcome:
        return await self._finish(transition, TransitionKind.EXPIRE, now)

    async def _finish(self, transition: Transition, kind: TransitionKind, now: datetime) -> Outcome:
        # Expired and closed records are stored the same way
        incident, tracked = transition.incident, transition.tracked
        ref = await self._correlator.notify(incident, tracked, kind, now)
        record = tracked.with_message(ref).model_copy(
            update={"closed": True, "last_updated": format_timestamp(now)}
        )
        await self._persist(record, after_notify=True)
        logger.info("incident_closed", incident_id=tracked.incident_id, kind=kind.value)
        return Outcome.APPLIED

    async def _forget(self, transition: Transition, now: datetime) -> Outcome:
        await self._store.delete(transition.key)
        logger.info(
            "incident_pruned",
            incident_id=transition.incident_id,
            last_updated=transition.tracked.last_updated,
        )
        return Outcome.APPLIED

    async def _release(self, claim: TrackedIncident) -> None:
        try:
            await self._store.delete(claim.key)
        except StoreError as exc:
            logger.error("incident_claim_release_failed", incident_id=claim.incident_id, error=str(exc))

    async def _persist(self, record: TrackedIncident, after_notify: bool = False) -> None:
        try:
            await self._store.put(record.key, record.to_record())
        except StoreError as exc:
            if after_notify:
                logger.error(
                    "tracking_write_failed_after_notify",
                    incident_id=record.incident_id,
                    message_id=record.message_id,
                    error=str(exc),
                )
            raise

    async def _record_latest(self, incident_id: str) -> None:
        try:
            await self._store.put(LATEST_ID_KEY, incident_id)
        except StoreError as exc:
            logger.warning("latest_id_write_failed", incident_id=incident_id, error=str(exc))


def _ordered_ids(feed: Dict[str, NormalizedIncident], snapshot: Dict[str, TrackedIncident]) -> Iterable[str]:
    """Feed ids in feed order, then tracked ids that are not in the feed."""
    yield from feed
    for incident_id in snapshot:
        if incident_id not in feed:
            yield incident_id


def _expired_view(tracked: TrackedIncident) -> NormalizedIncident:
    """Minimal incident rebuilt from cached fields for one that left the feed."""
    return NormalizedIncident(
        id=tracked.incident_id,
        closed=True,
        call_received=tracked.call_received,
        display_call_type=tracked.display_call_type or "Unknown",
        address=EXPIRED_ADDRESS,
        units=[],
    )
