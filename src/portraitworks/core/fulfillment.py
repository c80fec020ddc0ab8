"""Checkout sessions and paid downloads.

:class:`FulfillmentController` binds a set of artifact ids to a checkout
session, tracks whether that session has been paid, and materializes the
download once it has.

State Machine
-------------
A :class:`CheckoutSession` is either unpaid or paid::

    UNPAID --(signed webhook | gateway status lookup)--> PAID

``PAID`` is terminal; :meth:`CheckoutSession.mark_paid` is the only
transition and nothing sets ``paid`` back to False.

Two provenances exist:

- **gateway** sessions are created through Stripe Checkout, start unpaid, and
  become paid through ``checkout.session.completed`` webhooks or a status
  lookup at download time.
- **mock** sessions (``mock_...`` ids) are created paid when
  ``checkout_mode`` resolves to mock.  They exist for development only.

Downloads
---------
One artifact is returned as a JPEG; several are packed into a ZIP with one
``Valentine-Portrait-{DisplayName}.jpg`` entry per artifact.  A failed fetch
drops only its own entry.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
import zipfile
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any

from .config import PortraitworksConfig
from .errors import (
    ArtifactFetchFailed,
    ArtifactNotFound,
    BadRequest,
    InvalidSignature,
    PaymentNotCompleted,
    PaymentUnavailable,
    SessionNotFound,
)
from .registry import InMemoryKeyValueStore, KeyValueStore, MetadataRegistry
from .storage import ArtifactStoreBase, parse_artifact_id
from .styles import StyleRegistry

logger = logging.getLogger(__name__)

MOCK_PREFIX = "mock_"
SINGLE_FILENAME = "valentine-portrait.jpg"
ARCHIVE_FILENAME = "valentine-portraits.zip"
ARCHIVE_COMPRESSLEVEL = 5
PAID_STATUSES = frozenset({"paid", "no_payment_required"})


# ---------------------------------------------------------------------------
# Checkout session state.
# ---------------------------------------------------------------------------


@dataclass
class CheckoutSession:
    """Binding between one payment and the artifacts it unlocks."""

    checkout_id: str
    artifact_ids: tuple[str, ...]
    paid: bool = False
    mock: bool = False
    created_at: float = field(default_factory=time.time)

    def mark_paid(self) -> bool:
        """Transition to paid; return True if the state changed."""
        if self.paid:
            return False
        self.paid = True
        return True


@dataclass(frozen=True)
class GatewaySession:
    """What the payment gateway reports about a checkout session."""

    checkout_id: str
    url: str | None
    paid: bool
    artifact_ids: tuple[str, ...]


@dataclass(frozen=True)
class DownloadBundle:
    """A materialized download ready to send."""

    content: bytes
    media_type: str
    filename: str
    entries: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Payment gateway adapters.
# ---------------------------------------------------------------------------


class PaymentGatewayBase(ABC):
    """Abstract payment gateway: create sessions, report status, verify events."""

    name: str = "Base Payment Gateway"

    @property
    @abstractmethod
    def is_configured(self) -> bool: ...

    @abstractmethod
    def create_session(
        self, artifact_ids: Sequence[str], success_url: str, cancel_url: str
    ) -> GatewaySession: ...

    @abstractmethod
    def retrieve_session(self, checkout_id: str) -> GatewaySession:
        """Raises SessionNotFound if the gateway does not know *checkout_id*."""

    @abstractmethod
    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        """Verify a webhook payload; raises InvalidSignature on failure."""


class StripeGateway(PaymentGatewayBase):
    """Stripe Checkout adapter (``stripe`` SDK)."""

    name = "Stripe"

    def __init__(self, config: PortraitworksConfig) -> None:
        self.config = config

    @property
    def is_configured(self) -> bool:
        return self.config.stripe_configured

    def _require_key(self) -> str:
        if not self.config.stripe_secret_key:
            raise PaymentUnavailable("Payment system not configured")
        return self.config.stripe_secret_key

    def create_session(
        self, artifact_ids: Sequence[str], success_url: str, cancel_url: str
    ) -> GatewaySession:
        import stripe

        api_key = self._require_key()
        is_bundle = len(artifact_ids) > 1
        product_name = (
            f"Valentine's Portrait Bundle - {len(artifact_ids)} Styles"
            if is_bundle
            else "Valentine's Portrait - HD Download"
        )
        try:
            session = stripe.checkout.Session.create(
                api_key=api_key,
                mode="payment",
                payment_method_types=["card", "link"],
                line_items=[
                    {
                        "price_data": {
                            "currency": self.config.currency,
                            "product_data": {
                                "name": product_name,
                                "description": (
                                    "All your artistic styles in high resolution"
                                    if is_bundle
                                    else "High-resolution AI-generated portrait"
                                ),
                            },
                            "unit_amount": self.config.price_cents,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"imageIds": json.dumps(list(artifact_ids))},
                payment_intent_data={"description": product_name},
                allow_promotion_codes=True,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe checkout creation failed: %s", exc)
            raise PaymentUnavailable(f"Failed to create checkout session: {exc}") from exc
        return GatewaySession(
            checkout_id=session.id,
            url=session.url,
            paid=session.payment_status in PAID_STATUSES,
            artifact_ids=tuple(artifact_ids),
        )

    def retrieve_session(self, checkout_id: str) -> GatewaySession:
        import stripe

        api_key = self._require_key()
        try:
            session = stripe.checkout.Session.retrieve(checkout_id, api_key=api_key)
        except stripe.InvalidRequestError as exc:
            raise SessionNotFound(f"Session {checkout_id} not found") from exc
        except stripe.StripeError as exc:
            logger.error("Stripe session lookup failed for %s: %s", checkout_id, exc)
            raise PaymentUnavailable(f"Failed to retrieve checkout session: {exc}") from exc
        metadata = session.metadata or {}
        return GatewaySession(
            checkout_id=session.id,
            url=session.url,
            paid=session.payment_status in PAID_STATUSES,
            artifact_ids=tuple(
                _parse_id_list(metadata["imageIds"] if "imageIds" in metadata else None)
            ),
        )

    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        import stripe

        secret = self.config.stripe_webhook_secret
        if not secret:
            raise InvalidSignature("Webhook secret not configured")
        if not signature:
            raise InvalidSignature("Missing stripe-signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature(f"Webhook Error: {exc}") from exc
        except ValueError as exc:
            raise InvalidSignature(f"Webhook Error: invalid payload ({exc})") from exc
        # The verified payload is plain JSON; parse it ourselves so the
        # controller works with dicts regardless of SDK object types.
        return json.loads(payload)


def _parse_id_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        ids = json.loads(raw)
    except ValueError:
        logger.warning("Unparseable imageIds metadata: %r", raw)
        return []
    return [str(i) for i in ids] if isinstance(ids, list) else []


# ---------------------------------------------------------------------------
# Controller.
# ---------------------------------------------------------------------------


class FulfillmentController:
    """Create checkouts, track payment, and build downloads.

    Attributes:
        registry: Metadata of every generated artifact.
        store: Artifact store used to fetch artifact bytes.
        gateway: Payment gateway for non-mock sessions.
        styles: Style registry used for archive entry names.
        use_mock: Whether new checkouts are mock sessions.
        sessions: Table of checkout sessions known to this process.
    """

    def __init__(
        self,
        registry: MetadataRegistry,
        store: ArtifactStoreBase,
        gateway: PaymentGatewayBase,
        styles: StyleRegistry,
        use_mock: bool,
        sessions: KeyValueStore[CheckoutSession] | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.gateway = gateway
        self.styles = styles
        self.use_mock = use_mock
        self.sessions: KeyValueStore[CheckoutSession] = (
            sessions if sessions is not None else InMemoryKeyValueStore()
        )

    # -- Checkout creation ---------------------------------------------------

    async def create_checkout(self, artifact_ids: Sequence[str], origin: str) -> dict[str, Any]:
        """Create a checkout session for existing artifacts.

        Args:
            artifact_ids: Artifacts the payment unlocks, in download order.
            origin: Frontend origin used for success/cancel redirects.

        Returns:
            ``{"url", "sessionId"}`` plus ``"mock": True`` for mock sessions.

        Raises:
            BadRequest: If the list is empty.
            ArtifactNotFound: If an id is unknown.
            PaymentUnavailable: If Stripe is required but not configured.
        """
        ids = list(dict.fromkeys(artifact_ids))
        if not ids:
            raise BadRequest("Image ID(s) required")
        for artifact_id in ids:
            if not self.registry.exists(artifact_id):
                raise ArtifactNotFound(f"Image {artifact_id} not found")

        origin = origin.rstrip("/")

        if self.use_mock:
            checkout_id = f"{MOCK_PREFIX}{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
            self.sessions.put(
                checkout_id,
                CheckoutSession(checkout_id, tuple(ids), paid=True, mock=True),
            )
            logger.warning("Mock checkout %s created for %d artifact(s)", checkout_id, len(ids))
            return {
                "url": f"{origin}?session_id={checkout_id}",
                "sessionId": checkout_id,
                "mock": True,
            }

        gateway_session = await asyncio.to_thread(
            self.gateway.create_session,
            ids,
            f"{origin}?session_id={{CHECKOUT_SESSION_ID}}",
            origin,
        )
        self.sessions.put(
            gateway_session.checkout_id,
            CheckoutSession(gateway_session.checkout_id, tuple(ids), paid=False),
        )
        logger.info("Checkout %s created for %d artifact(s)", gateway_session.checkout_id, len(ids))
        return {"url": gateway_session.url, "sessionId": gateway_session.checkout_id}

    # -- Payment state -------------------------------------------------------

    async def handle_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify a gateway event and apply it.

        Raises:
            InvalidSignature: If verification fails; no state is changed.
        """
        if not self.gateway.is_configured:
            raise PaymentUnavailable("Stripe not configured")
        event = await asyncio.to_thread(self.gateway.construct_event, payload, signature)
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}

        if event_type == "checkout.session.completed":
            if obj.get("payment_status") in PAID_STATUSES:
                self._mark_paid(obj.get("id"))
            else:
                logger.info("Checkout %s completed, payment pending", obj.get("id"))
        elif event_type == "checkout.session.async_payment_succeeded":
            self._mark_paid(obj.get("id"))
        else:
            logger.info("Unhandled event type: %s", event_type)
        return {"received": True}

    def _mark_paid(self, checkout_id: str | None) -> None:
        session = self.sessions.get(checkout_id) if checkout_id else None
        if session is None:
            logger.info("Payment event for unknown session %s", checkout_id)
            return
        if session.mark_paid():
            logger.info("Payment successful for session: %s", checkout_id)

    async def resolve_payment(self, checkout_id: str) -> CheckoutSession:
        """Return the session with its current payment state.

        Known-paid and mock sessions are answered locally; otherwise the
        gateway is asked and a paid answer is recorded.

        Raises:
            SessionNotFound: If neither this process nor the gateway knows the id.
            PaymentUnavailable: If the gateway is needed but not configured.
        """
        session = self.sessions.get(checkout_id)
        if session is not None and (session.paid or session.mock):
            return session
        if checkout_id.startswith(MOCK_PREFIX):
            raise SessionNotFound("Session not found")

        remote = await asyncio.to_thread(self.gateway.retrieve_session, checkout_id)
        if session is None:
            session = self.sessions.put_if_absent(
                checkout_id,
                CheckoutSession(checkout_id, remote.artifact_ids, paid=False),
            )
        if remote.paid:
            session.mark_paid()
        return session

    # -- Downloads -----------------------------------------------------------

    async def download(self, checkout_id: str) -> DownloadBundle:
        """Build the download for a paid checkout session.

        Raises:
            SessionNotFound: Unknown session.
            PaymentNotCompleted: Session exists but is unpaid.
            ArtifactNotFound: Session has no artifacts.
            ArtifactFetchFailed: No artifact could be fetched.
        """
        session = await self.resolve_payment(checkout_id)
        if not session.paid:
            raise PaymentNotCompleted("Payment not completed")

        artifact_ids = list(session.artifact_ids)
        if not artifact_ids:
            raise ArtifactNotFound("No images found")

        if len(artifact_ids) == 1:
            content, _ = await self._fetch_artifact(artifact_ids[0])
            return DownloadBundle(
                content=content, media_type="image/jpeg", filename=SINGLE_FILENAME
            )

        return await self._build_archive(artifact_ids)

    async def _fetch_artifact(self, artifact_id: str) -> tuple[bytes, str | None]:
        url, style = self.resolve_locator(artifact_id)
        return await self.store.fetch(url), style

    def resolve_locator(self, artifact_id: str) -> tuple[str, str | None]:
        """Return ``(public_url, style)`` for an artifact.

        Uses the registry entry when present, otherwise rebuilds the URL from
        an id of the form ``{uuid}_{style}``.

        Raises:
            ArtifactNotFound: If neither source can locate the artifact.
        """
        metadata = self.registry.get(artifact_id)
        if metadata is not None:
            return metadata.public_url, metadata.style
        parsed = parse_artifact_id(artifact_id)
        if parsed is None:
            raise ArtifactNotFound(f"No URL for image {artifact_id}")
        return self.store.public_url(artifact_id), parsed[1]

    async def _build_archive(self, artifact_ids: Sequence[str]) -> DownloadBundle:
        fetched: list[tuple[str, bytes]] = []
        used_names: dict[str, int] = {}

        for artifact_id in artifact_ids:
            try:
                content, style = await self._fetch_artifact(artifact_id)
            except (ArtifactFetchFailed, ArtifactNotFound) as exc:
                logger.error("Failed to fetch image %s: %s", artifact_id, exc)
                continue
            fetched.append((self._entry_name(style, used_names), content))

        if not fetched:
            raise ArtifactFetchFailed("None of the session's images could be fetched")

        buffer = BytesIO()
        with zipfile.ZipFile(
            buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=ARCHIVE_COMPRESSLEVEL
        ) as archive:
            for name, content in fetched:
                archive.writestr(name, content)

        return DownloadBundle(
            content=buffer.getvalue(),
            media_type="application/zip",
            filename=ARCHIVE_FILENAME,
            entries=tuple(name for name, _ in fetched),
        )

    def _entry_name(self, style: str | None, used_names: dict[str, int]) -> str:
        base = f"Valentine-Portrait-{self.styles.display_name_for(style)}"
        count = used_names.get(base, 0) + 1
        used_names[base] = count
        return f"{base}.jpg" if count == 1 else f"{base}-{count}.jpg"
