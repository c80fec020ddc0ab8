"""Core functionality for portrait generation and fulfillment.

Architecture Overview
---------------------
The core module is layered leaves-first:

1. **Configuration** (config.py): Pydantic Settings, PORTRAITWORKS_ prefix
2. **Errors** (errors.py): error taxonomy with stable kinds and HTTP statuses
3. **Styles** (styles.py): closed set of style variants and their registry
4. **Normalizer** (normalizer.py): HEIC detection, orientation, size bound
5. **Providers** (providers.py): generative image provider adapters
6. **Synthesizer** (synthesizer.py): provider call with deterministic fallback
7. **Storage** (storage.py): artifact upload and fetch
8. **Registry** (registry.py): key-value store and artifact metadata
9. **Batch** (batch.py): paced multi-style generation
10. **Fulfillment** (fulfillment.py): checkout sessions and downloads

Usage Example
-------------
    from portraitworks.core import build_services, config

    services = build_services(config)
    session = await services.orchestrator.generate_batch(photo, ["watercolor"])
"""

from .batch import BatchOrchestrator, BatchSession, GenerationResult, PacedSequence, ProgressEvent
from .config import PortraitworksConfig, config
from .fulfillment import FulfillmentController, StripeGateway
from .registry import ArtifactMetadata, MetadataRegistry
from .services import Services, build_services
from .styles import StyleVariant, style_registry
from .synthesizer import Fallback, Generated, PortraitSynthesizer

__all__ = [
    "ArtifactMetadata",
    "BatchOrchestrator",
    "BatchSession",
    "Fallback",
    "FulfillmentController",
    "Generated",
    "GenerationResult",
    "MetadataRegistry",
    "PacedSequence",
    "PortraitSynthesizer",
    "PortraitworksConfig",
    "ProgressEvent",
    "Services",
    "StripeGateway",
    "StyleVariant",
    "build_services",
    "config",
    "style_registry",
]
