"""Tests for portraitworks.core.fulfillment — checkout sessions and downloads.

Tests cover:
- Mock and gateway checkout creation.
- The UNPAID -> PAID transition through webhooks and status lookups, and
  that nothing moves a session back to unpaid.
- Single-JPEG and ZIP downloads, display-named entries, skipped failures.
- The Stripe adapter against a patched ``stripe`` SDK.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
import uuid
import zipfile
from io import BytesIO
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import stripe

from portraitworks.core.errors import (
    ArtifactFetchFailed,
    ArtifactNotFound,
    BadRequest,
    InvalidSignature,
    PaymentNotCompleted,
    PaymentUnavailable,
    SessionNotFound,
)
from portraitworks.core.fulfillment import (
    ARCHIVE_FILENAME,
    SINGLE_FILENAME,
    CheckoutSession,
    StripeGateway,
)
from portraitworks.core.registry import ArtifactMetadata
from portraitworks.core.services import build_services

pytestmark = pytest.mark.unit

ORIGIN = "https://shop.example"


def _generate(services, image: bytes, styles: list[str]) -> list[str]:
    session = asyncio.run(services.orchestrator.generate_batch(image, styles))
    return [r.artifact_id for r in session.results]


def _completed_event(checkout_id: str, payment_status: str = "paid") -> dict:
    return {
        "type": "checkout.session.completed",
        "data": {"object": {"id": checkout_id, "payment_status": payment_status}},
    }


@pytest.fixture
def stripe_services(test_config, failing_provider, fake_gateway, recording_sleep):
    """Services in real-checkout mode backed by the fake gateway."""
    cfg = test_config.model_copy(update={"checkout_mode": "stripe"})
    return build_services(
        cfg, provider=failing_provider, gateway=fake_gateway, sleep=recording_sleep
    )


class TestCheckoutSession:
    def test_mark_paid_is_monotonic(self):
        session = CheckoutSession("cs_1", ("a",))
        assert session.mark_paid() is True
        assert session.mark_paid() is False
        assert session.paid is True


class TestMockCheckout:
    def test_mock_session_is_paid(self, services, sample_jpeg):
        ids = _generate(services, sample_jpeg, ["anime"])
        result = asyncio.run(services.fulfillment.create_checkout(ids, ORIGIN + "/"))

        assert result["mock"] is True
        assert result["sessionId"].startswith("mock_")
        assert result["url"] == f"{ORIGIN}?session_id={result['sessionId']}"
        stored = services.fulfillment.sessions.get(result["sessionId"])
        assert stored.paid and stored.mock
        assert stored.artifact_ids == tuple(ids)

    def test_mock_ids_are_unique(self, services, sample_jpeg):
        ids = _generate(services, sample_jpeg, ["anime"])
        first = asyncio.run(services.fulfillment.create_checkout(ids, ORIGIN))
        second = asyncio.run(services.fulfillment.create_checkout(ids, ORIGIN))
        assert first["sessionId"] != second["sessionId"]

    def test_unknown_artifact_rejected(self, services):
        with pytest.raises(ArtifactNotFound, match="Image nope not found"):
            asyncio.run(services.fulfillment.create_checkout(["nope"], ORIGIN))

    def test_empty_id_list_rejected(self, services):
        with pytest.raises(BadRequest):
            asyncio.run(services.fulfillment.create_checkout([], ORIGIN))

    def test_unknown_mock_session_not_found(self, services):
        with pytest.raises(SessionNotFound):
            asyncio.run(services.fulfillment.download("mock_1_deadbeef"))


class TestGatewayCheckout:
    def test_gateway_session_starts_unpaid(self, stripe_services, fake_gateway, sample_jpeg):
        ids = _generate(stripe_services, sample_jpeg, ["anime", "disney"])
        result = asyncio.run(stripe_services.fulfillment.create_checkout(ids, ORIGIN))

        assert "mock" not in result
        assert result["url"].startswith("https://checkout.example/")
        assert fake_gateway.sessions[result["sessionId"]].artifact_ids == tuple(ids)
        assert stripe_services.fulfillment.sessions.get(result["sessionId"]).paid is False

    def test_unpaid_download_refused(self, stripe_services, sample_jpeg):
        ids = _generate(stripe_services, sample_jpeg, ["anime"])
        checkout_id = asyncio.run(stripe_services.fulfillment.create_checkout(ids, ORIGIN))[
            "sessionId"
        ]
        with pytest.raises(PaymentNotCompleted):
            asyncio.run(stripe_services.fulfillment.download(checkout_id))

    def test_status_lookup_marks_paid(self, stripe_services, fake_gateway, sample_jpeg):
        ids = _generate(stripe_services, sample_jpeg, ["anime"])
        checkout_id = asyncio.run(stripe_services.fulfillment.create_checkout(ids, ORIGIN))[
            "sessionId"
        ]
        fake_gateway.set_paid(checkout_id)

        bundle = asyncio.run(stripe_services.fulfillment.download(checkout_id))
        assert bundle.media_type == "image/jpeg"
        assert bundle.filename == SINGLE_FILENAME
        assert stripe_services.fulfillment.sessions.get(checkout_id).paid is True

    def test_session_known_only_to_gateway(self, stripe_services, fake_gateway, sample_jpeg):
        ids = _generate(stripe_services, sample_jpeg, ["anime"])
        created = fake_gateway.create_session(ids, "s", "c")
        fake_gateway.set_paid(created.checkout_id)

        session = asyncio.run(stripe_services.fulfillment.resolve_payment(created.checkout_id))
        assert session.paid is True
        assert session.artifact_ids == tuple(ids)

    def test_unknown_gateway_session(self, stripe_services):
        with pytest.raises(SessionNotFound):
            asyncio.run(stripe_services.fulfillment.download("cs_unknown"))


class TestWebhook:
    def _checkout(self, services, image) -> str:
        ids = _generate(services, image, ["anime"])
        return asyncio.run(services.fulfillment.create_checkout(ids, ORIGIN))["sessionId"]

    def test_completed_event_marks_paid(self, stripe_services, fake_gateway, sample_jpeg):
        checkout_id = self._checkout(stripe_services, sample_jpeg)
        fake_gateway.next_event = _completed_event(checkout_id)

        result = asyncio.run(
            stripe_services.fulfillment.handle_webhook(b"{}", fake_gateway.valid_signature)
        )
        assert result == {"received": True}
        assert stripe_services.fulfillment.sessions.get(checkout_id).paid is True

    def test_bad_signature_leaves_state_unchanged(self, stripe_services, fake_gateway, sample_jpeg):
        checkout_id = self._checkout(stripe_services, sample_jpeg)
        fake_gateway.next_event = _completed_event(checkout_id)

        with pytest.raises(InvalidSignature):
            asyncio.run(stripe_services.fulfillment.handle_webhook(b"{}", "t=1,v1=forged"))
        assert stripe_services.fulfillment.sessions.get(checkout_id).paid is False

    def test_pending_payment_stays_unpaid(self, stripe_services, fake_gateway, sample_jpeg):
        checkout_id = self._checkout(stripe_services, sample_jpeg)
        fake_gateway.next_event = _completed_event(checkout_id, payment_status="unpaid")
        asyncio.run(stripe_services.fulfillment.handle_webhook(b"{}", fake_gateway.valid_signature))
        assert stripe_services.fulfillment.sessions.get(checkout_id).paid is False

    def test_async_payment_succeeded_marks_paid(self, stripe_services, fake_gateway, sample_jpeg):
        checkout_id = self._checkout(stripe_services, sample_jpeg)
        fake_gateway.next_event = {
            "type": "checkout.session.async_payment_succeeded",
            "data": {"object": {"id": checkout_id}},
        }
        asyncio.run(stripe_services.fulfillment.handle_webhook(b"{}", fake_gateway.valid_signature))
        assert stripe_services.fulfillment.sessions.get(checkout_id).paid is True

    def test_paid_never_reverts(self, stripe_services, fake_gateway, sample_jpeg):
        checkout_id = self._checkout(stripe_services, sample_jpeg)
        fulfillment = stripe_services.fulfillment
        fake_gateway.next_event = _completed_event(checkout_id)
        asyncio.run(fulfillment.handle_webhook(b"{}", fake_gateway.valid_signature))

        for event in (
            _completed_event(checkout_id, payment_status="unpaid"),
            {"type": "checkout.session.expired", "data": {"object": {"id": checkout_id}}},
            {"type": "checkout.session.async_payment_failed", "data": {"object": {"id": checkout_id}}},
        ):
            fake_gateway.next_event = event
            asyncio.run(fulfillment.handle_webhook(b"{}", fake_gateway.valid_signature))
        asyncio.run(fulfillment.resolve_payment(checkout_id))
        assert fulfillment.sessions.get(checkout_id).paid is True

    def test_event_for_unknown_session_ignored(self, stripe_services, fake_gateway):
        fake_gateway.next_event = _completed_event("cs_ghost")
        result = asyncio.run(
            stripe_services.fulfillment.handle_webhook(b"{}", fake_gateway.valid_signature)
        )
        assert result == {"received": True}
        assert stripe_services.fulfillment.sessions.get("cs_ghost") is None

    def test_unconfigured_gateway(self, stripe_services, fake_gateway):
        fake_gateway.configured = False
        with pytest.raises(PaymentUnavailable):
            asyncio.run(stripe_services.fulfillment.handle_webhook(b"{}", "sig"))


class TestDownloads:
    def _paid_session(self, services, artifact_ids) -> str:
        return asyncio.run(services.fulfillment.create_checkout(artifact_ids, ORIGIN))[
            "sessionId"
        ]

    def _entries(self, content: bytes) -> list[str]:
        with zipfile.ZipFile(BytesIO(content)) as archive:
            return archive.namelist()

    def test_single_artifact_is_jpeg(self, services, sample_jpeg):
        ids = _generate(services, sample_jpeg, ["watercolor"])
        bundle = asyncio.run(services.fulfillment.download(self._paid_session(services, ids)))
        assert bundle.media_type == "image/jpeg"
        assert bundle.filename == SINGLE_FILENAME
        assert bundle.content[:2] == b"\xff\xd8"

    def test_archive_with_display_names(self, services, sample_jpeg):
        ids = _generate(services, sample_jpeg, ["renaissance", "ghibli"])
        legacy_url = asyncio.run(services.store.upload(sample_jpeg, "legacy-1"))
        services.registry.record(
            ArtifactMetadata(artifact_id="legacy-1", style="cubism", public_url=legacy_url)
        )

        bundle = asyncio.run(
            services.fulfillment.download(self._paid_session(services, ids + ["legacy-1"]))
        )

        assert bundle.media_type == "application/zip"
        assert bundle.filename == ARCHIVE_FILENAME
        assert self._entries(bundle.content) == [
            "Valentine-Portrait-Renaissance.jpg",
            "Valentine-Portrait-StudioGhibli.jpg",
            "Valentine-Portrait-Portrait.jpg",
        ]

    def test_failed_entry_is_skipped(self, services, sample_jpeg, temp_dir):
        ids = _generate(services, sample_jpeg, ["anime", "disney", "popart"])
        checkout_id = self._paid_session(services, ids)
        (temp_dir / "artifacts" / "valentines" / f"{ids[1]}.jpg").unlink()

        bundle = asyncio.run(services.fulfillment.download(checkout_id))
        assert self._entries(bundle.content) == [
            "Valentine-Portrait-Anime.jpg",
            "Valentine-Portrait-PopArt.jpg",
        ]

    def test_all_entries_failing(self, services, sample_jpeg, temp_dir):
        ids = _generate(services, sample_jpeg, ["anime", "disney"])
        checkout_id = self._paid_session(services, ids)
        for artifact_id in ids:
            (temp_dir / "artifacts" / "valentines" / f"{artifact_id}.jpg").unlink()

        with pytest.raises(ArtifactFetchFailed):
            asyncio.run(services.fulfillment.download(checkout_id))

    def test_repeated_display_names_are_numbered(self, services, sample_jpeg):
        first = _generate(services, sample_jpeg, ["anime"])
        second = _generate(services, sample_jpeg, ["anime"])
        bundle = asyncio.run(
            services.fulfillment.download(self._paid_session(services, first + second))
        )
        assert self._entries(bundle.content) == [
            "Valentine-Portrait-Anime.jpg",
            "Valentine-Portrait-Anime-2.jpg",
        ]

    def test_locator_rebuilt_without_metadata(self, services, sample_jpeg):
        artifact_id = f"{uuid.uuid4()}_fantasy"
        asyncio.run(services.store.upload(sample_jpeg, artifact_id))
        services.fulfillment.sessions.put(
            "mock_rebuilt", CheckoutSession("mock_rebuilt", (artifact_id,), paid=True, mock=True)
        )

        url, style = services.fulfillment.resolve_locator(artifact_id)
        assert url == services.store.public_url(artifact_id)
        assert style == "fantasy"
        bundle = asyncio.run(services.fulfillment.download("mock_rebuilt"))
        assert bundle.content == sample_jpeg

    def test_unlocatable_artifact(self, services):
        with pytest.raises(ArtifactNotFound):
            services.fulfillment.resolve_locator("legacy-unknown")

    def test_session_without_artifacts(self, services):
        services.fulfillment.sessions.put(
            "mock_empty", CheckoutSession("mock_empty", (), paid=True, mock=True)
        )
        with pytest.raises(ArtifactNotFound, match="No images found"):
            asyncio.run(services.fulfillment.download("mock_empty"))


# ---------------------------------------------------------------------------
# Stripe adapter.
# ---------------------------------------------------------------------------


def _sign(payload: bytes, secret: str) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class TestStripeGateway:
    @pytest.fixture
    def gateway(self, test_config) -> StripeGateway:
        cfg = test_config.model_copy(
            update={"stripe_secret_key": "sk_test_123", "stripe_webhook_secret": "whsec_test"}
        )
        return StripeGateway(cfg)

    def test_unconfigured_gateway_refuses(self, test_config):
        gateway = StripeGateway(test_config)
        assert gateway.is_configured is False
        with pytest.raises(PaymentUnavailable):
            gateway.create_session(["a"], "s", "c")

    def test_create_session_bundle(self, gateway, monkeypatch):
        create = MagicMock(
            return_value=SimpleNamespace(
                id="cs_1", url="https://checkout.stripe.com/cs_1", payment_status="unpaid"
            )
        )
        monkeypatch.setattr(stripe.checkout.Session, "create", create)

        session = gateway.create_session(["a", "b"], "https://s", "https://c")

        assert session.checkout_id == "cs_1"
        assert session.paid is False
        kwargs = create.call_args.kwargs
        assert kwargs["api_key"] == "sk_test_123"
        assert json.loads(kwargs["metadata"]["imageIds"]) == ["a", "b"]
        line_item = kwargs["line_items"][0]["price_data"]
        assert line_item["unit_amount"] == 2500
        assert "Bundle - 2 Styles" in line_item["product_data"]["name"]

    def test_retrieve_session_reads_metadata(self, gateway, monkeypatch):
        retrieved = SimpleNamespace(
            id="cs_1", url=None, payment_status="paid", metadata={"imageIds": '["a", "b"]'}
        )
        monkeypatch.setattr(stripe.checkout.Session, "retrieve", MagicMock(return_value=retrieved))
        session = gateway.retrieve_session("cs_1")
        assert session.paid is True
        assert session.artifact_ids == ("a", "b")

    def test_retrieve_unknown_session(self, gateway, monkeypatch):
        def _missing(*args, **kwargs):
            raise stripe.InvalidRequestError("No such checkout.session", "id")

        monkeypatch.setattr(stripe.checkout.Session, "retrieve", _missing)
        with pytest.raises(SessionNotFound):
            gateway.retrieve_session("cs_missing")

    def test_valid_signature_returns_event(self, gateway):
        payload = json.dumps(_completed_event("cs_1")).encode()
        event = gateway.construct_event(payload, _sign(payload, "whsec_test"))
        assert event["type"] == "checkout.session.completed"
        assert event["data"]["object"]["id"] == "cs_1"

    def test_forged_signature_rejected(self, gateway):
        payload = json.dumps(_completed_event("cs_1")).encode()
        with pytest.raises(InvalidSignature):
            gateway.construct_event(payload, _sign(payload, "whsec_other"))

    def test_missing_signature_rejected(self, gateway):
        with pytest.raises(InvalidSignature):
            gateway.construct_event(b"{}", None)

    def test_missing_webhook_secret_rejected(self, test_config):
        gateway = StripeGateway(test_config.model_copy(update={"stripe_secret_key": "sk"}))
        with pytest.raises(InvalidSignature):
            gateway.construct_event(b"{}", "t=1,v1=abc")

    def test_create_session_outage_is_payment_unavailable(self, gateway, monkeypatch):
        def _down(*args, **kwargs):
            raise stripe.APIConnectionError("Could not connect to Stripe")

        monkeypatch.setattr(stripe.checkout.Session, "create", _down)
        with pytest.raises(PaymentUnavailable, match="Could not connect"):
            gateway.create_session(["a"], "https://s", "https://c")

    def test_retrieve_session_outage_is_payment_unavailable(self, gateway, monkeypatch):
        def _down(*args, **kwargs):
            raise stripe.APIConnectionError("Could not connect to Stripe")

        monkeypatch.setattr(stripe.checkout.Session, "retrieve", _down)
        with pytest.raises(PaymentUnavailable):
            gateway.retrieve_session("cs_1")
