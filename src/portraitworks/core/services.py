"""Wiring of the pipeline components.

:func:`build_services` creates every long-lived component once, at process
start, from a :class:`PortraitworksConfig`.  Collaborators can be replaced by
keyword argument, which is how the tests substitute fake providers, stores
and gateways without patching module globals.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .batch import BatchOrchestrator, PacedSequence
from .config import PortraitworksConfig
from .fulfillment import FulfillmentController, PaymentGatewayBase, StripeGateway
from .providers import ImageProviderBase, build_provider
from .registry import MetadataRegistry
from .storage import ArtifactStoreBase, build_store
from .styles import StyleRegistry, style_registry
from .synthesizer import PortraitSynthesizer

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Container for the components shared by all requests."""

    config: PortraitworksConfig
    styles: StyleRegistry
    provider: ImageProviderBase
    store: ArtifactStoreBase
    registry: MetadataRegistry
    synthesizer: PortraitSynthesizer
    orchestrator: BatchOrchestrator
    gateway: PaymentGatewayBase
    fulfillment: FulfillmentController

    def capability_status(self) -> dict[str, bool]:
        return {
            "generation": self.provider.is_configured,
            "storage": self.store.is_configured,
            "payments": self.gateway.is_configured,
            "mockCheckout": self.fulfillment.use_mock,
        }


def build_services(
    config: PortraitworksConfig,
    *,
    provider: ImageProviderBase | None = None,
    store: ArtifactStoreBase | None = None,
    gateway: PaymentGatewayBase | None = None,
    registry: MetadataRegistry | None = None,
    styles: StyleRegistry | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Services:
    """Create the service graph for one process.

    Args:
        config: Application configuration.
        provider: Generative provider (default: from config).
        store: Artifact store (default: from ``config.storage_backend``).
        gateway: Payment gateway (default: Stripe).
        registry: Metadata registry (default: new in-memory registry).
        styles: Style registry (default: the built-in registry).
        sleep: Sleep used for pacing between styles.

    Returns:
        The wired :class:`Services`.
    """
    styles = styles if styles is not None else style_registry
    provider = provider if provider is not None else build_provider(config)
    store = store if store is not None else build_store(config)
    gateway = gateway if gateway is not None else StripeGateway(config)
    registry = registry if registry is not None else MetadataRegistry()

    synthesizer = PortraitSynthesizer(provider, styles, config)
    orchestrator = BatchOrchestrator(
        synthesizer=synthesizer,
        store=store,
        registry=registry,
        styles=styles,
        pacer=PacedSequence(config.style_delay_seconds, sleep=sleep),
        max_input_dimension=config.max_input_dimension,
        jpeg_quality=config.jpeg_quality,
        max_input_pixels=config.max_input_pixels,
    )
    fulfillment = FulfillmentController(
        registry=registry,
        store=store,
        gateway=gateway,
        styles=styles,
        use_mock=config.uses_mock_checkout,
    )
    return Services(
        config=config,
        styles=styles,
        provider=provider,
        store=store,
        registry=registry,
        synthesizer=synthesizer,
        orchestrator=orchestrator,
        gateway=gateway,
        fulfillment=fulfillment,
    )
