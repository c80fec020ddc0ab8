"""Shared pytest fixtures for Portraitworks tests.

No test talks to Gemini, Supabase or Stripe.  The fixtures below provide:

- a configuration using the local storage backend inside a temp directory,
  zero pacing delay and small output images,
- a scriptable fake provider and a fake payment gateway,
- a service graph and a FastAPI ``TestClient`` wired to those fakes.
"""

from __future__ import annotations

import shutil
import tempfile
from collections.abc import Callable, Generator, Sequence
from io import BytesIO
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from portraitworks.api.main import create_app
from portraitworks.core.config import PortraitworksConfig
from portraitworks.core.errors import InvalidSignature, ProviderUnavailable, SessionNotFound
from portraitworks.core.fulfillment import GatewaySession, PaymentGatewayBase
from portraitworks.core.providers import ImageProviderBase
from portraitworks.core.services import Services, build_services


def make_jpeg(width: int = 320, height: int = 480, color=(200, 120, 90)) -> bytes:
    """Encode a solid-colour RGB JPEG."""
    buffer = BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="JPEG", quality=90)
    return buffer.getvalue()


class FakeProvider(ImageProviderBase):
    """Provider returning a fixed image, or raising a fixed error."""

    name = "Fake"

    def __init__(
        self,
        config: PortraitworksConfig,
        output: bytes | None = None,
        error: Exception | None = None,
        configured: bool = True,
    ) -> None:
        super().__init__(config)
        self.output = output
        self.error = error
        self.configured = configured
        self.calls: list[str] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def generate(self, image: bytes, mime_type: str, instructions: str) -> bytes:
        self.calls.append(instructions)
        if not self.configured:
            raise ProviderUnavailable("Fake provider not configured")
        if self.error is not None:
            raise self.error
        return self.output


class FakeGateway(PaymentGatewayBase):
    """In-memory payment gateway.

    ``valid_signature`` is the only signature accepted by
    :meth:`construct_event`; the event returned is whatever the test put in
    ``next_event``.
    """

    name = "Fake Gateway"
    valid_signature = "t=1,v1=good"

    def __init__(self, configured: bool = True) -> None:
        self.configured = configured
        self.sessions: dict[str, GatewaySession] = {}
        self.next_event: dict = {}
        self.created = 0

    @property
    def is_configured(self) -> bool:
        return self.configured

    def create_session(
        self, artifact_ids: Sequence[str], success_url: str, cancel_url: str
    ) -> GatewaySession:
        self.created += 1
        checkout_id = f"cs_test_{self.created}"
        session = GatewaySession(
            checkout_id=checkout_id,
            url=f"https://checkout.example/{checkout_id}",
            paid=False,
            artifact_ids=tuple(artifact_ids),
        )
        self.sessions[checkout_id] = session
        return session

    def retrieve_session(self, checkout_id: str) -> GatewaySession:
        if checkout_id not in self.sessions:
            raise SessionNotFound(f"Session {checkout_id} not found")
        return self.sessions[checkout_id]

    def set_paid(self, checkout_id: str) -> None:
        current = self.sessions[checkout_id]
        self.sessions[checkout_id] = GatewaySession(
            checkout_id=checkout_id, url=current.url, paid=True, artifact_ids=current.artifact_ids
        )

    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        if signature != self.valid_signature:
            raise InvalidSignature("Webhook Error: bad signature")
        return self.next_event


class RecordingSleep:
    """Awaitable sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> PortraitworksConfig:
    """Create a test configuration with local storage and no credentials.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        PortraitworksConfig instance for testing
    """
    return PortraitworksConfig(
        _env_file=None,
        gemini_api_key=None,
        supabase_url=None,
        supabase_key=None,
        stripe_secret_key=None,
        stripe_webhook_secret=None,
        storage_backend="local",
        local_storage_dir=temp_dir / "artifacts",
        public_base_url="http://testserver",
        checkout_mode="mock",
        style_delay_seconds=0.0,
        output_width=108,
        output_height=192,
        max_input_dimension=400,
    )


@pytest.fixture
def sample_jpeg() -> bytes:
    """A small portrait-oriented JPEG."""
    return make_jpeg()


@pytest.fixture
def jpeg_factory() -> Callable[..., bytes]:
    """Factory building JPEGs of arbitrary size and colour."""
    return make_jpeg


@pytest.fixture
def failing_provider(test_config: PortraitworksConfig) -> FakeProvider:
    """Provider that is not configured, forcing the fallback path."""
    return FakeProvider(test_config, configured=False)


@pytest.fixture
def working_provider(test_config: PortraitworksConfig) -> FakeProvider:
    """Provider that returns a landscape image for every call."""
    return FakeProvider(test_config, output=make_jpeg(600, 400, (30, 60, 200)))


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def services(
    test_config: PortraitworksConfig,
    failing_provider: FakeProvider,
    fake_gateway: FakeGateway,
    recording_sleep: RecordingSleep,
) -> Services:
    """Service graph with the fallback-only provider and mock checkout."""
    return build_services(
        test_config,
        provider=failing_provider,
        gateway=fake_gateway,
        sleep=recording_sleep,
    )


@pytest.fixture
def test_client(services: Services) -> Generator[TestClient, None, None]:
    """FastAPI TestClient around the fake service graph.

    The client is used as a context manager so the lifespan runs.
    """
    app = create_app(services=services)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def provider_factory(test_config: PortraitworksConfig) -> Callable[..., FakeProvider]:
    """Factory for providers with custom output, error or configured flag."""

    def _factory(**kwargs) -> FakeProvider:
        return FakeProvider(test_config, **kwargs)

    return _factory
