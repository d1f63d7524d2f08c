"""Runs the feed → Discord pipeline and keeps run statistics."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from relay.errors import RelayError
from relay.models.tracking import LATEST_ID_KEY, RunStatus, RunSummary, TransitionKind, format_timestamp
from relay.services.correlator import NotificationCorrelator
from relay.services.discord import DiscordWebhookService
from relay.services.pulsepoint import PulsePointFeedClient
from relay.services.reconciler import ReconciliationEngine
from relay.services.store import KeyLocks, TrackingStore, build_store
from relay.transformers.decryptor import PayloadDecryptor
from relay.transformers.normalizer import normalize
from relay.utils.config import Config
from relay.utils.logger import get_logger

logger = get_logger(__name__)

_MAX_ERRORS = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunManager:
    """Coordinates one reconciliation run end to end.

    Every collaborator can be injected, which is how tests supply a mocked
    feed, an in-memory store and a fixed clock.
    """

    def __init__(
        self,
        cfg: Config,
        feed: Optional[PulsePointFeedClient] = None,
        discord: Optional[DiscordWebhookService] = None,
        store: Optional[TrackingStore] = None,
        decryptor: Optional[PayloadDecryptor] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.cfg = cfg
        self.feed = feed or PulsePointFeedClient(cfg)
        self.discord = discord or DiscordWebhookService(cfg)
        self.store = store if store is not None else build_store(cfg)
        self.decryptor = decryptor or PayloadDecryptor()
        self.engine = ReconciliationEngine(
            cfg,
            self.store,
            NotificationCorrelator(cfg, self.discord),
            locks=KeyLocks(),
        )
        self._clock = clock

        self._last_summary: Optional[RunSummary] = None
        self._last_run_at: Optional[str] = None
        self._last_error: Optional[str] = None
        self._runs_completed = 0
        self._runs_failed = 0
        self._errors: List[str] = []

    async def run(self) -> RunSummary:
        """Fetch, decrypt, normalize, reconcile.

        Raises:
            FetchError, DecryptionError, StoreError: Fatal to the run.  The
                failure is recorded before re-raising.
        """
        now = self._clock()
        self._last_run_at = format_timestamp(now)
        logger.info("run_started", at=self._last_run_at)

        try:
            payload = await self.feed.fetch()
            feed = self.decryptor.decrypt(payload)
            incidents = normalize(feed)
            snapshot = await self.engine.load_snapshot()
        except RelayError as exc:
            self._record_failure(exc)
            raise

        plan = self.engine.plan(incidents, snapshot, now)
        result = await self.engine.apply(plan, now)

        summary = RunSummary(
            total_incidents=len(incidents),
            tracked_incidents=len(snapshot),
            new_incidents=result.count(TransitionKind.NEW),
            updated_open_incidents=result.count(TransitionKind.UPDATE),
            closed_incidents=result.count(TransitionKind.CLOSE),
            expired_incidents=result.count(TransitionKind.EXPIRE),
            pruned_incidents=result.count(TransitionKind.PRUNE),
            failed_transitions=result.failed,
            timestamp=format_timestamp(self._clock()),
        )
        if result.failed:
            self._remember(f"{result.failed} transition(s) failed in run at {self._last_run_at}")

        self._last_summary = summary
        self._last_error = None
        self._runs_completed += 1
        logger.info("run_complete", **summary.model_dump(exclude={"timestamp"}))
        return summary

    def _record_failure(self, exc: Exception) -> None:
        message = f"{type(exc).__name__}: {exc}"
        self._runs_failed += 1
        self._last_error = message
        self._remember(message)
        logger.error("run_failed", error_type=type(exc).__name__, error=str(exc))

    def _remember(self, message: str) -> None:
        self._errors.append(message)
        del self._errors[:-_MAX_ERRORS]

    # ------------------------------------------------------------------
    # Latest processed identifier
    # ------------------------------------------------------------------

    async def latest_incident_id(self) -> str:
        value: Any = await self.store.get(LATEST_ID_KEY)
        return str(value) if value else "0"

    async def reset_latest_incident_id(self, incident_id: str = "0") -> None:
        await self.store.put(LATEST_ID_KEY, incident_id)
        logger.info("latest_id_reset", incident_id=incident_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> RunStatus:
        return RunStatus(
            last_summary=self._last_summary,
            last_run_at=self._last_run_at,
            last_error=self._last_error,
            runs_completed=self._runs_completed,
            runs_failed=self._runs_failed,
            errors=list(self._errors),
            circuit_breaker_state={
                "pulsepoint": self.feed.circuit_breaker_state,
                "discord": self.discord.circuit_breaker_state,
            },
        )

    async def close(self) -> None:
        await self.feed.close()
        await self.discord.close()
