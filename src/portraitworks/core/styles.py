"""Style variants and the style registry.

A style variant is one artistic transformation profile.  Every variant is
bound to exactly one :class:`StyleProfile`, which carries:

- the generation prompt sent to the generative provider
- the display name used for download filenames
- the deterministic :class:`FallbackFilter` applied when generation fails

The set of variants is closed (:class:`StyleVariant`).  The registry refuses
incomplete profiles at registration time, and :meth:`StyleRegistry.ensure_complete`
refuses a registry that leaves any variant without a profile, so the fallback
path is total over every style the API accepts.

Usage Example
-------------
    >>> from portraitworks.core.styles import style_registry
    >>> profile = style_registry.get("watercolor")
    >>> profile.display_name
    'Watercolor'
    >>> style_registry.display_name_for("unheard-of")
    'Portrait'
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Literal

from .errors import StyleRegistrationError, UnknownStyle

logger = logging.getLogger(__name__)

GENERIC_DISPLAY_NAME = "Portrait"


class StyleVariant(str, Enum):
    """Closed enumeration of supported style identifiers."""

    RENAISSANCE = "renaissance"
    VANGOGH = "vangogh"
    GHIBLI = "ghibli"
    DISNEY = "disney"
    ANIME = "anime"
    WATERCOLOR = "watercolor"
    FANTASY = "fantasy"
    POPART = "popart"
    ROMANTIC = "romantic"


@dataclass(frozen=True)
class FallbackFilter:
    """Deterministic Pillow filter chain parameters for one style.

    The chain is applied in a fixed order: brightness, saturation, tint,
    then the finishing pass (unsharp mask or gaussian blur).

    Attributes:
        brightness: ``ImageEnhance.Brightness`` factor (1.0 = unchanged).
        saturation: ``ImageEnhance.Color`` factor (1.0 = unchanged).
        tint: RGB colour multiplied into the image.
        finish: ``"sharpen"`` or ``"blur"``.
        radius: Radius of the finishing pass.
        percent: Unsharp-mask strength (sharpen only).
        threshold: Unsharp-mask threshold (sharpen only).
    """

    brightness: float
    saturation: float
    tint: tuple[int, int, int]
    finish: Literal["sharpen", "blur"]
    radius: float
    percent: int = 0
    threshold: int = 0

    def __post_init__(self) -> None:
        if self.brightness <= 0 or self.saturation < 0:
            raise StyleRegistrationError("brightness must be > 0 and saturation >= 0")
        if len(self.tint) != 3 or any(not 0 <= c <= 255 for c in self.tint):
            raise StyleRegistrationError(f"tint must be an RGB triple, got {self.tint!r}")
        if self.finish not in ("sharpen", "blur"):
            raise StyleRegistrationError(f"unknown finish pass: {self.finish!r}")
        if self.radius <= 0:
            raise StyleRegistrationError("finish radius must be positive")


@dataclass(frozen=True)
class StyleProfile:
    """Prompt, display name and fallback for one style variant."""

    variant: StyleVariant
    display_name: str
    prompt: str
    fallback: FallbackFilter | None

    @property
    def id(self) -> str:
        return self.variant.value


class StyleRegistry:
    """Registry of style profiles keyed by variant.

    Follows the same register/lookup pattern as the other registries in the
    package.  Registration validates that the profile is complete.
    """

    def __init__(self) -> None:
        self._profiles: dict[StyleVariant, StyleProfile] = {}

    def register(self, profile: StyleProfile) -> None:
        """Register a style profile.

        Args:
            profile: Profile to register.

        Raises:
            StyleRegistrationError: If the profile has no prompt or no
                fallback filter.
        """
        if not profile.prompt or not profile.prompt.strip():
            raise StyleRegistrationError(f"style '{profile.id}' has no generation prompt")
        if profile.fallback is None:
            raise StyleRegistrationError(f"style '{profile.id}' has no fallback filter")
        if not profile.display_name:
            raise StyleRegistrationError(f"style '{profile.id}' has no display name")

        if profile.variant in self._profiles:
            logger.warning("Style '%s' is already registered, overwriting", profile.id)

        self._profiles[profile.variant] = profile
        logger.debug("Registered style: %s", profile.id)

    def ensure_complete(self) -> None:
        """Verify every :class:`StyleVariant` has a registered profile.

        Raises:
            StyleRegistrationError: Listing the variants that are missing.
        """
        missing = [v.value for v in StyleVariant if v not in self._profiles]
        if missing:
            raise StyleRegistrationError(f"styles without a profile: {', '.join(missing)}")

    def resolve(self, style: str | StyleVariant) -> StyleVariant:
        """Turn a user-supplied identifier into a registered variant.

        Raises:
            UnknownStyle: If the identifier is not a registered variant.
        """
        try:
            variant = StyleVariant(style)
        except ValueError:
            raise UnknownStyle(f"Invalid theme: {style}") from None
        if variant not in self._profiles:
            raise UnknownStyle(f"Invalid theme: {style}")
        return variant

    def get(self, style: str | StyleVariant) -> StyleProfile:
        return self._profiles[self.resolve(style)]

    def display_name_for(self, style: str | None) -> str:
        """Return the display name of a style, or the generic label."""
        try:
            return self._profiles[StyleVariant(style)].display_name
        except (KeyError, ValueError):
            return GENERIC_DISPLAY_NAME

    def list_available(self) -> list[str]:
        return [v.value for v in StyleVariant if v in self._profiles]

    def __contains__(self, style: object) -> bool:
        try:
            return StyleVariant(style) in self._profiles
        except ValueError:
            return False


# ---------------------------------------------------------------------------
# Built-in styles.
# ---------------------------------------------------------------------------

_BUILTIN_PROFILES = [
    StyleProfile(
        variant=StyleVariant.RENAISSANCE,
        display_name="Renaissance",
        prompt=(
            "Transform this photo into a Renaissance oil painting. Classical "
            "composition, rich colors, dramatic lighting like Rembrandt or Vermeer. "
            "Elegant and timeless artistic portrait."
        ),
        fallback=FallbackFilter(
            brightness=1.05,
            saturation=1.15,
            tint=(255, 235, 205),
            finish="sharpen",
            radius=2.0,
            percent=80,
            threshold=3,
        ),
    ),
    StyleProfile(
        variant=StyleVariant.VANGOGH,
        display_name="VanGogh",
        prompt=(
            "Transform this photo into a traditional oil painting on canvas. Heavy, "
            "visible brushstrokes throughout, thick impasto texture like Van Gogh, "
            "swirling strokes, warm golden undertones and rich saturated colors. "
            "It must look hand-painted, not like a photo filter."
        ),
        fallback=FallbackFilter(
            brightness=1.1,
            saturation=1.4,
            tint=(255, 240, 200),
            finish="sharpen",
            radius=2.0,
            percent=150,
            threshold=2,
        ),
    ),
    StyleProfile(
        variant=StyleVariant.GHIBLI,
        display_name="StudioGhibli",
        prompt=(
            "Transform this photo into Studio Ghibli anime art style. Soft, dreamy, "
            "hand-painted look with warm colors, gentle lighting and a whimsical "
            "atmosphere. Keep the people recognizable but stylized as Ghibli characters."
        ),
        fallback=FallbackFilter(
            brightness=1.12,
            saturation=1.15,
            tint=(235, 245, 255),
            finish="blur",
            radius=0.8,
        ),
    ),
    StyleProfile(
        variant=StyleVariant.DISNEY,
        display_name="DisneyPixar",
        prompt=(
            "Transform this photo into Disney/Pixar 3D animation style. Expressive "
            "eyes, smooth textures, vibrant colors and a magical animated-film look."
        ),
        fallback=FallbackFilter(
            brightness=1.1,
            saturation=1.35,
            tint=(255, 240, 230),
            finish="blur",
            radius=0.6,
        ),
    ),
    StyleProfile(
        variant=StyleVariant.ANIME,
        display_name="Anime",
        prompt=(
            "Transform this photo into beautiful anime art style. Detailed eyes, soft "
            "shading, romantic shoujo manga aesthetic with sparkles and soft lighting."
        ),
        fallback=FallbackFilter(
            brightness=1.08,
            saturation=1.3,
            tint=(245, 235, 255),
            finish="sharpen",
            radius=1.5,
            percent=120,
            threshold=3,
        ),
    ),
    StyleProfile(
        variant=StyleVariant.WATERCOLOR,
        display_name="Watercolor",
        prompt=(
            "Transform this photo into a beautiful watercolor painting. Soft, flowing "
            "colors, artistic brush strokes, romantic and dreamy, like a fine art "
            "wedding portrait."
        ),
        fallback=FallbackFilter(
            brightness=1.15,
            saturation=0.85,
            tint=(240, 245, 255),
            finish="blur",
            radius=1.5,
        ),
    ),
    StyleProfile(
        variant=StyleVariant.FANTASY,
        display_name="Fantasy",
        prompt=(
            "Transform this photo into a magical fantasy art style. Ethereal lighting, "
            "magical sparkles, enchanted forest or fairy tale atmosphere."
        ),
        fallback=FallbackFilter(
            brightness=1.05,
            saturation=1.25,
            tint=(230, 220, 255),
            finish="blur",
            radius=1.0,
        ),
    ),
    StyleProfile(
        variant=StyleVariant.POPART,
        display_name="PopArt",
        prompt=(
            "Transform this photo into Andy Warhol pop art style. Bold colors, high "
            "contrast, graphic design aesthetic with halftone dots."
        ),
        fallback=FallbackFilter(
            brightness=1.05,
            saturation=1.8,
            tint=(255, 225, 240),
            finish="sharpen",
            radius=2.0,
            percent=200,
            threshold=1,
        ),
    ),
    StyleProfile(
        variant=StyleVariant.ROMANTIC,
        display_name="Romantic",
        prompt=(
            "Transform this photo into a dreamy romantic portrait. Soft focus, golden "
            "hour lighting, floating rose petals, soft pink and warm tones."
        ),
        fallback=FallbackFilter(
            brightness=1.1,
            saturation=1.2,
            tint=(255, 230, 240),
            finish="blur",
            radius=1.2,
        ),
    ),
]


# Global style registry instance
style_registry = StyleRegistry()
for _profile in _BUILTIN_PROFILES:
    style_registry.register(_profile)
style_registry.ensure_complete()
