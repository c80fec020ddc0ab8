"""Generative image provider adapters.

The synthesizer talks to the generative capability through
:class:`ImageProviderBase`: submit an image plus instructions, receive image
bytes or an exception.  Keeping the provider behind this interface lets the
synthesizer treat "not configured", "network error" and "no image in the
response" identically (all of them select the fallback path), and lets tests
substitute a fake provider without touching the SDK.

Provider Adapter Pattern
------------------------
Each adapter encapsulates:
- lazy client construction (no SDK client until the first call)
- request building for the provider's wire format
- extraction of the first inline image from the response

Usage Example
-------------
    >>> from portraitworks.core.config import config
    >>> provider = build_provider(config)
    >>> provider.is_configured
    False
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from .config import PortraitworksConfig
from .errors import GenerationFailed, ProviderUnavailable

logger = logging.getLogger(__name__)


class ImageProviderBase(ABC):
    """Abstract base class for generative image providers.

    Attributes
    ----------
    name : str
        Human-readable provider name used in logs
    config : PortraitworksConfig
        Configuration carrying credentials and model names
    """

    name: str = "Base Image Provider"

    def __init__(self, config: PortraitworksConfig) -> None:
        self.config = config

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials for this provider are present."""

    @abstractmethod
    async def generate(self, image: bytes, mime_type: str, instructions: str) -> bytes:
        """Submit an image and instructions, return the produced image bytes.

        Raises
        ------
        ProviderUnavailable
            If the provider is not configured.
        GenerationFailed
            If the response carries no image.
        Exception
            Any transport or SDK error is propagated unchanged.
        """


class GeminiProvider(ImageProviderBase):
    """Google Gemini image model adapter (``google-genai`` SDK)."""

    name = "Gemini"

    def __init__(self, config: PortraitworksConfig) -> None:
        super().__init__(config)
        self._client: Any = None

    @property
    def is_configured(self) -> bool:
        return self.config.gemini_configured

    def _get_client(self) -> Any:
        if not self.is_configured:
            raise ProviderUnavailable("Gemini API not configured")
        if self._client is None:
            from google import genai

            self._client = genai.Client(api_key=self.config.gemini_api_key)
        return self._client

    async def generate(self, image: bytes, mime_type: str, instructions: str) -> bytes:
        from google.genai import types

        client = self._get_client()

        logger.info("Sending %d-byte image to %s (%s)", len(image), self.name, self.config.gemini_model)
        response = await client.aio.models.generate_content(
            model=self.config.gemini_model,
            contents=[
                types.Part.from_bytes(data=image, mime_type=mime_type),
                instructions,
            ],
            config=types.GenerateContentConfig(response_modalities=["TEXT", "IMAGE"]),
        )
        return extract_first_image(response)


def extract_first_image(response: Any) -> bytes:
    """Return the first inline image payload of a Gemini response.

    Text parts are logged (the model often explains a refusal there).

    Raises:
        GenerationFailed: If no candidate part carries image data.
    """
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            if getattr(part, "text", None):
                logger.info("Provider text response: %s", part.text)
            inline = getattr(part, "inline_data", None)
            if inline is not None and getattr(inline, "data", None):
                logger.info("Provider returned image, mime_type=%s", inline.mime_type)
                return inline.data
    raise GenerationFailed("No image generated")


def build_provider(config: PortraitworksConfig) -> ImageProviderBase:
    """Create the configured generative provider."""
    return GeminiProvider(config)
