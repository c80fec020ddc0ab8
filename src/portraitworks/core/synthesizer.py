"""Portrait synthesis with guaranteed fallback.

:class:`PortraitSynthesizer` turns one normalized input image into one styled
portrait.  It never fails outward on provider problems:

1. **Generated** — the style prompt and the image are sent to the generative
   provider; the first image part of the response is used.
2. **Fallback** — on any failure of step 1 (provider not configured, network
   error, empty response, undecodable output) the style's deterministic
   Pillow filter chain is applied to the input instead.

The fallback needs a decodable input; if even that fails, synthesis raises
:class:`~portraitworks.core.errors.UnsupportedFormat`.

Both branches are re-encoded to the configured output resolution
(cover-cropped around the centre) and JPEG quality.  The branch that fired is
visible in the returned type, so callers and tests can tell them apart.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from io import BytesIO

from PIL import Image, ImageChops, ImageEnhance, ImageFilter, ImageOps, UnidentifiedImageError

from .config import PortraitworksConfig
from .errors import UnsupportedFormat
from .providers import ImageProviderBase
from .styles import FallbackFilter, StyleRegistry, StyleVariant

logger = logging.getLogger(__name__)

INSTRUCTION_REQUIREMENTS = """KEEP EXACTLY:
- Same faces, expressions and poses
- Same composition and framing
- Everyone in the photo stays recognizable

Requirements:
- Portrait/vertical orientation ideal for a phone wallpaper
- Ultra high quality, professional artistic finish
- Romantic, Valentine's Day mood
- No text or watermarks"""


@dataclass(frozen=True)
class SynthesisResult:
    """Output of one synthesis; see :class:`Generated` and :class:`Fallback`."""

    style: StyleVariant
    image_bytes: bytes

    @property
    def is_fallback(self) -> bool:
        return isinstance(self, Fallback)


@dataclass(frozen=True)
class Generated(SynthesisResult):
    """The generative provider produced the image."""


@dataclass(frozen=True)
class Fallback(SynthesisResult):
    """The deterministic filter chain produced the image."""

    reason: str = ""


def build_instructions(prompt: str) -> str:
    """Combine a style prompt with the shared requirements block."""
    return f"{prompt.strip()}\n\n{INSTRUCTION_REQUIREMENTS}"


def cover_and_encode(image: Image.Image, width: int, height: int, quality: int) -> bytes:
    """Cover-crop *image* to exactly ``width`` x ``height`` and encode as JPEG."""
    fitted = ImageOps.fit(
        image.convert("RGB"), (width, height), method=Image.LANCZOS, centering=(0.5, 0.5)
    )
    buffer = BytesIO()
    fitted.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def apply_fallback_filter(image: Image.Image, params: FallbackFilter) -> Image.Image:
    """Apply the deterministic brightness/saturation/tint/finish chain."""
    result = image.convert("RGB")
    result = ImageEnhance.Brightness(result).enhance(params.brightness)
    result = ImageEnhance.Color(result).enhance(params.saturation)
    result = ImageChops.multiply(result, Image.new("RGB", result.size, params.tint))
    if params.finish == "sharpen":
        result = result.filter(
            ImageFilter.UnsharpMask(
                radius=params.radius, percent=params.percent, threshold=params.threshold
            )
        )
    else:
        result = result.filter(ImageFilter.GaussianBlur(radius=params.radius))
    return result


class PortraitSynthesizer:
    """Render one style for one normalized image.

    Attributes:
        provider: Generative provider used for the preferred path.
        styles: Registry resolving styles to prompts and fallbacks.
        config: Output resolution and quality settings.
    """

    def __init__(
        self,
        provider: ImageProviderBase,
        styles: StyleRegistry,
        config: PortraitworksConfig,
    ) -> None:
        self.provider = provider
        self.styles = styles
        self.config = config

    async def synthesize(self, processed: bytes, style: str | StyleVariant) -> SynthesisResult:
        """Produce a styled portrait, falling back locally on any provider failure.

        Args:
            processed: Normalized JPEG bytes.
            style: Style identifier.

        Returns:
            :class:`Generated` or :class:`Fallback`.

        Raises:
            UnknownStyle: If *style* is not registered.
            UnsupportedFormat: If the provider failed and *processed* cannot be
                decoded for the fallback either.
        """
        profile = self.styles.get(style)
        try:
            output = await self.provider.generate(
                processed, "image/jpeg", build_instructions(profile.prompt)
            )
            encoded = await asyncio.to_thread(self._encode_generated, output)
            return Generated(style=profile.variant, image_bytes=encoded)
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "Generation failed for style=%s (%s); using fallback filter", profile.id, reason
            )

        try:
            encoded = await asyncio.to_thread(self.render_fallback, processed, profile.fallback)
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise UnsupportedFormat(
                f"Cannot render fallback for style={profile.id}: {exc}"
            ) from exc
        return Fallback(style=profile.variant, image_bytes=encoded, reason=reason)

    def render_fallback(self, processed: bytes, params: FallbackFilter) -> bytes:
        """Render the fallback branch synchronously (deterministic, no I/O)."""
        with Image.open(BytesIO(processed)) as source:
            fitted = ImageOps.fit(
                source.convert("RGB"),
                (self.config.output_width, self.config.output_height),
                method=Image.LANCZOS,
                centering=(0.5, 0.5),
            )
        filtered = apply_fallback_filter(fitted, params)
        buffer = BytesIO()
        filtered.save(buffer, format="JPEG", quality=self.config.jpeg_quality)
        return buffer.getvalue()

    def _encode_generated(self, output: bytes) -> bytes:
        with Image.open(BytesIO(output)) as generated:
            return cover_and_encode(
                generated,
                self.config.output_width,
                self.config.output_height,
                self.config.jpeg_quality,
            )
