"""Portraitworks - stylized AI portraits with fallback rendering and paid downloads."""

__version__ = "0.1.0"

from portraitworks.core.config import PortraitworksConfig, config
from portraitworks.core.styles import StyleVariant, style_registry

__all__ = [
    "PortraitworksConfig",
    "StyleVariant",
    "config",
    "style_registry",
]
