"""Fakes and builders shared by the test modules."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from mocks.pulsepoint_responses import encrypt_feed
from relay.models.tracking import RunSummary
from relay.services.discord import DiscordWebhookService
from relay.services.pulsepoint import PulsePointFeedClient
from relay.services.run_manager import RunManager
from relay.services.store import InMemoryTrackingStore
from relay.utils.config import Config

WEBHOOK_URL = "https://discord.test/api/webhooks/111/primary-token"
STANDBY_WEBHOOK_URL = "https://discord.test/api/webhooks/222/standby-token"
NOW = datetime(2024, 3, 2, 18, 30, tzinfo=timezone.utc)


def make_config(**overrides) -> Config:
    values: Dict[str, Any] = {
        "discord_webhook_url": WEBHOOK_URL,
        "discord_standby_webhook_url": STANDBY_WEBHOOK_URL,
        "max_retries": 0,
        "circuit_breaker_threshold": 100,
    }
    values.update(overrides)
    return Config(**values)


def make_raw_incident(
    incident_id: str = "1001",
    address: Optional[str] = "123 Main St, Vancouver, BC",
    call_type: Optional[str] = "ME",
    units: Sequence[Tuple[str, Optional[str]]] = (("M12", "ER"), ("E7", "OS")),
    call_received: str = "2024-03-02T18:04:11Z",
) -> dict:
    """One incident as the decrypted feed lists it."""
    return {
        "ID": incident_id,
        "CallReceivedDateTime": call_received,
        "PulsePointIncidentCallType": call_type,
        "FullDisplayAddress": address,
        "Unit": [{"UnitID": unit, "PulsePointDispatchStatus": code} for unit, code in units],
    }


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


class FeedServer:
    """httpx.MockTransport handler serving an encrypted feed."""

    def __init__(self, active: Optional[List[dict]] = None, recent: Optional[List[dict]] = None) -> None:
        self.active = active or []
        self.recent = recent or []
        self.status_code = 200
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="unavailable")
        feed = {"incidents": {"active": self.active, "recent": self.recent}}
        return httpx.Response(200, json=encrypt_feed(feed))


_AUTO = object()


class DiscordRecorder:
    """httpx.MockTransport handler recording webhook calls.

    Creates answer with sequential message ids unless ``create_body`` is set
    (``None`` means an empty 204 answer).
    """

    def __init__(self) -> None:
        self.requests: List[SimpleNamespace] = []
        self.create_status = 200
        self.patch_status = 200
        self.create_body: Any = _AUTO
        self._next_id = 9000

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append(SimpleNamespace(method=request.method, url=request.url, body=body))

        if request.method == "POST":
            if self.create_status >= 300:
                return httpx.Response(self.create_status, json={"message": "rejected"})
            if self.create_body is _AUTO:
                self._next_id += 1
                return httpx.Response(200, json={"id": str(self._next_id)})
            if self.create_body is None:
                return httpx.Response(204)
            return httpx.Response(200, json=self.create_body)
        if request.method == "PATCH":
            return httpx.Response(self.patch_status, json={})
        return httpx.Response(405)

    @property
    def creates(self) -> List[SimpleNamespace]:
        return [r for r in self.requests if r.method == "POST"]

    @property
    def patches(self) -> List[SimpleNamespace]:
        return [r for r in self.requests if r.method == "PATCH"]

    def reset(self) -> None:
        self.requests.clear()


class Harness:
    """A RunManager wired to fake feed, Discord and store."""

    def __init__(
        self,
        cfg: Optional[Config] = None,
        store: Optional[InMemoryTrackingStore] = None,
        discord: Optional[DiscordRecorder] = None,
    ) -> None:
        self.cfg = cfg or make_config()
        self.feed = FeedServer()
        self.discord = discord or DiscordRecorder()
        self.store = store or InMemoryTrackingStore()
        self.clock = FakeClock()
        self.manager = RunManager(
            self.cfg,
            feed=PulsePointFeedClient(
                self.cfg, http=httpx.AsyncClient(transport=httpx.MockTransport(self.feed))
            ),
            discord=DiscordWebhookService(
                self.cfg, http=httpx.AsyncClient(transport=httpx.MockTransport(self.discord))
            ),
            store=self.store,
            clock=self.clock,
        )

    def run(self) -> RunSummary:
        return asyncio.run(self.manager.run())

    def record(self, incident_id: str) -> Optional[dict]:
        return self.store.snapshot().get(f"incident:{incident_id}")

