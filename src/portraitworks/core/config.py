"""Configuration management for Portraitworks.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the PORTRAITWORKS_
prefix, allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (PORTRAITWORKS_* prefix, or the provider's own
   conventional name for credentials, e.g. GEMINI_API_KEY)
2. .env file in the project root
3. Default values defined in PortraitworksConfig

Example .env file:
    GEMINI_API_KEY=...
    SUPABASE_URL=https://xyz.supabase.co
    SUPABASE_KEY=...
    STRIPE_SECRET_KEY=sk_test_...
    STRIPE_WEBHOOK_SECRET=whsec_...
    PORTRAITWORKS_CHECKOUT_MODE=stripe
    PORTRAITWORKS_STYLE_DELAY_SECONDS=3

Optional Capabilities
---------------------
Every external capability is optional.  Its absence degrades the service
instead of crashing it:

- no Gemini key: every style is rendered by the local fallback filter chain
- no Supabase credentials: uploads fail with ``StorageUnavailable`` (use
  ``storage_backend="local"`` for development)
- no Stripe key: ``checkout_mode="auto"`` issues mock sessions that are
  already paid, ``checkout_mode="stripe"`` refuses to create checkouts

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.

Usage Example
-------------
    from portraitworks.core.config import config

    print(config.output_width, config.output_height)
    print(config.gemini_configured)
"""

from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PortraitworksConfig(BaseSettings):
    """Main configuration for Portraitworks.

    Attributes
    ----------
    Generation Provider:
        gemini_api_key : str | None
            Google Gemini API key (GEMINI_API_KEY)
        gemini_model : str
            Image-capable Gemini model name

    Storage:
        storage_backend : Literal["supabase", "local"]
            Where artifacts are uploaded
        supabase_url, supabase_key : str | None
            Supabase project URL and service key (SUPABASE_URL, SUPABASE_KEY)
        storage_bucket : str
            Bucket holding generated artifacts
        storage_prefix : str
            Folder inside the bucket (artifacts live at ``{prefix}/{id}.jpg``)
        local_storage_dir : Path
            Root directory for the local backend
        public_base_url : str
            Base URL the local backend builds public links from

    Payments:
        checkout_mode : Literal["auto", "stripe", "mock"]
            ``auto`` uses Stripe when a key is set and mock sessions otherwise
        stripe_secret_key, stripe_webhook_secret : str | None
        price_cents : int
            Price of one checkout in the smallest currency unit
        currency : str
        frontend_origin : str
            Redirect origin used when the request carries no Origin header

    Image Pipeline:
        max_upload_bytes : int
        max_input_dimension : int
            Longest side of the normalized input (never upscaled)
        max_input_pixels : int
            Uploads with more pixels than this are refused before decoding
        output_width, output_height : int
            Final artifact resolution (cover-cropped)
        jpeg_quality : int
        style_delay_seconds : float
            Pause between provider calls inside one batch
        bundle_styles : list[str]
            Styles generated when a request selects no theme

    Server:
        server_host, server_port, log_level, fetch_timeout_seconds
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PORTRAITWORKS_",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Generative provider
    gemini_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PORTRAITWORKS_GEMINI_API_KEY", "GEMINI_API_KEY"),
        description="Google Gemini API key; unset means fallback-only generation",
    )
    gemini_model: str = Field(
        default="gemini-3-pro-image-preview",
        description="Gemini model that accepts an image and returns an image",
    )

    # Artifact storage
    storage_backend: Literal["supabase", "local"] = Field(
        default="supabase",
        description="Artifact storage backend",
    )
    supabase_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PORTRAITWORKS_SUPABASE_URL", "SUPABASE_URL"),
    )
    supabase_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PORTRAITWORKS_SUPABASE_KEY", "SUPABASE_KEY"),
    )
    storage_bucket: str = Field(default="images")
    storage_prefix: str = Field(default="valentines")
    local_storage_dir: Path = Field(
        default=Path("artifacts"),
        description="Directory used by the local storage backend",
    )
    public_base_url: str = Field(
        default="http://localhost:3001",
        description="Externally visible base URL of this service (local backend links)",
    )

    # Payments
    checkout_mode: Literal["auto", "stripe", "mock"] = Field(
        default="auto",
        description="stripe = real checkout only, mock = dev sessions only, auto = stripe if keyed",
    )
    stripe_secret_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PORTRAITWORKS_STRIPE_SECRET_KEY", "STRIPE_SECRET_KEY"),
    )
    stripe_webhook_secret: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "PORTRAITWORKS_STRIPE_WEBHOOK_SECRET", "STRIPE_WEBHOOK_SECRET"
        ),
    )
    price_cents: int = Field(default=2500, ge=50)
    currency: str = Field(default="usd")
    frontend_origin: str = Field(default="http://localhost:5173")

    # Image pipeline
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    max_input_dimension: int = Field(default=1500, ge=64, le=8192)
    max_input_pixels: int = Field(default=64_000_000, ge=1)
    output_width: int = Field(default=2160, ge=64, le=8192)
    output_height: int = Field(default=3840, ge=64, le=8192)
    jpeg_quality: int = Field(default=95, ge=1, le=100)
    style_delay_seconds: float = Field(
        default=3.0,
        ge=0.0,
        description="Rate-limit pause between consecutive provider calls",
    )
    bundle_styles: list[str] = Field(
        default=["renaissance", "vangogh", "ghibli", "disney", "anime", "watercolor"],
        description="Styles generated when no theme is selected",
    )
    fetch_timeout_seconds: float = Field(default=45.0, gt=0)

    # Server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=3001, ge=1024, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    @property
    def gemini_configured(self) -> bool:
        """True when a Gemini API key is available."""
        return bool(self.gemini_api_key)

    @property
    def supabase_configured(self) -> bool:
        """True when both Supabase URL and key are available."""
        return bool(self.supabase_url and self.supabase_key)

    @property
    def stripe_configured(self) -> bool:
        """True when a Stripe secret key is available."""
        return bool(self.stripe_secret_key)

    @property
    def uses_mock_checkout(self) -> bool:
        """Resolve ``checkout_mode`` into a concrete decision.

        ``auto`` keeps the development convenience of mock sessions when no
        Stripe key is present; the explicit modes never switch on their own.
        """
        if self.checkout_mode == "mock":
            return True
        if self.checkout_mode == "stripe":
            return False
        return not self.stripe_configured


# Global configuration instance
# Loads values from environment variables (PORTRAITWORKS_* prefix plus the
# provider aliases) and the .env file.
config = PortraitworksConfig()
