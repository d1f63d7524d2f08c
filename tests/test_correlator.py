"""Tests for create-vs-patch decisions and webhook routing."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from helpers import NOW, STANDBY_WEBHOOK_URL, WEBHOOK_URL, DiscordRecorder, make_config
from relay.errors import NotificationError
from relay.models.feed import NormalizedIncident
from relay.models.tracking import MessageKind, MessageRef, TrackedIncident, TransitionKind
from relay.services.correlator import NotificationCorrelator, extract_message_id
from relay.services.discord import DiscordWebhookService


def _incident(display_call_type: str = "Medical Emergency") -> NormalizedIncident:
    return NormalizedIncident(
        id="1001",
        display_call_type=display_call_type,
        address="123 Main St, Vancouver, BC",
    )


def _tracked(message_id: str, kind: MessageKind = MessageKind.REAL) -> TrackedIncident:
    return TrackedIncident(
        incident_id="1001",
        message_id=message_id,
        message_kind=kind,
        last_updated="2024-03-02T18:00:00.000Z",
    )


@pytest.fixture()
def recorder() -> DiscordRecorder:
    return DiscordRecorder()


@pytest.fixture()
def correlator(recorder) -> NotificationCorrelator:
    cfg = make_config()
    discord = DiscordWebhookService(cfg, http=httpx.AsyncClient(transport=httpx.MockTransport(recorder)))
    return NotificationCorrelator(cfg, discord)


def _notify(correlator, incident, tracked, kind) -> MessageRef:
    return asyncio.run(correlator.notify(incident, tracked, kind, NOW))


class TestExtractMessageId:
    def test_direct_id(self):
        assert extract_message_id({"id": "123"}) == "123"

    def test_message_id_key(self):
        assert extract_message_id({"message_id": 456}) == "456"

    def test_nested_message(self):
        assert extract_message_id({"message": {"id": "789"}}) == "789"

    def test_absent(self):
        assert extract_message_id({}) is None
        assert extract_message_id(None) is None
        assert extract_message_id("ok") is None


class TestNew:
    def test_creates_and_adopts_real_id(self, correlator, recorder):
        ref = _notify(correlator, _incident(), None, TransitionKind.NEW)
        assert ref == MessageRef.real("9001")
        assert len(recorder.creates) == 1
        assert recorder.creates[0].url.params["wait"] == "true"

    def test_keeps_fallback_when_response_has_no_id(self, correlator, recorder):
        recorder.create_body = {"ok": True}
        ref = _notify(correlator, _incident(), None, TransitionKind.NEW)
        assert ref.kind is MessageKind.FALLBACK
        assert ref.value == f"incident-1001-{int(NOW.timestamp() * 1000)}"

    def test_keeps_fallback_on_empty_response(self, correlator, recorder):
        recorder.create_body = None
        ref = _notify(correlator, _incident(), None, TransitionKind.NEW)
        assert not ref.is_real

    def test_rejected_create_raises(self, correlator, recorder):
        recorder.create_status = 400
        with pytest.raises(NotificationError) as excinfo:
            _notify(correlator, _incident(), None, TransitionKind.NEW)
        assert excinfo.value.status_code == 400


class TestExisting:
    def test_update_patches_real_id(self, correlator, recorder):
        ref = _notify(correlator, _incident(), _tracked("555"), TransitionKind.UPDATE)
        assert ref == MessageRef.real("555")
        assert recorder.creates == []
        assert len(recorder.patches) == 1
        assert recorder.patches[0].url.path.endswith("/messages/555")

    def test_fallback_id_is_never_patched(self, correlator, recorder):
        tracked = _tracked("incident-1001-1", MessageKind.FALLBACK)
        ref = _notify(correlator, _incident(), tracked, TransitionKind.UPDATE)
        assert recorder.patches == []
        assert len(recorder.creates) == 1
        assert ref == MessageRef.real("9001")

    def test_failed_update_patch_raises(self, correlator, recorder):
        recorder.patch_status = 404
        with pytest.raises(NotificationError):
            _notify(correlator, _incident(), _tracked("555"), TransitionKind.UPDATE)
        assert recorder.creates == []

    @pytest.mark.parametrize("kind", [TransitionKind.CLOSE, TransitionKind.EXPIRE])
    def test_failed_closing_patch_creates_new_message(self, correlator, recorder, kind):
        recorder.patch_status = 404
        ref = _notify(correlator, _incident(), _tracked("555"), kind)
        assert len(recorder.patches) == 1
        assert len(recorder.creates) == 1
        assert ref == MessageRef.real("9001")

    def test_legacy_record_without_kind_uses_prefix(self, correlator, recorder):
        tracked = TrackedIncident.model_validate(
            {"pulsepointId": "1001", "messageId": "incident-1001-99", "lastUpdated": "2024-03-02T18:00:00.000Z"}
        )
        _notify(correlator, _incident(), tracked, TransitionKind.CLOSE)
        assert recorder.patches == []
        assert len(recorder.creates) == 1


class TestRouting:
    def test_standby_goes_to_standby_webhook(self, correlator, recorder):
        _notify(correlator, _incident("Standby"), None, TransitionKind.NEW)
        assert str(recorder.creates[0].url).startswith(STANDBY_WEBHOOK_URL)

    def test_other_types_go_to_primary(self, correlator, recorder):
        _notify(correlator, _incident("Traffic Collision"), None, TransitionKind.NEW)
        assert str(recorder.creates[0].url).startswith(WEBHOOK_URL)

    def test_standby_falls_back_to_primary_when_unset(self, recorder):
        cfg = make_config(discord_standby_webhook_url="")
        discord = DiscordWebhookService(cfg, http=httpx.AsyncClient(transport=httpx.MockTransport(recorder)))
        correlator = NotificationCorrelator(cfg, discord)
        assert correlator.webhook_for(_incident("Standby")) == WEBHOOK_URL

    def test_standby_patch_uses_standby_webhook(self, correlator, recorder):
        _notify(correlator, _incident("Standby"), _tracked("555"), TransitionKind.UPDATE)
        assert str(recorder.patches[0].url) == f"{STANDBY_WEBHOOK_URL}/messages/555"
