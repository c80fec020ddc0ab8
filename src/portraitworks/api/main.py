"""Portraitworks — FastAPI Application.

This module is the single entry point for the web application.  It defines
the application factory :func:`create_app`, all REST API routes, the module
level ``app`` instance used by uvicorn, and the ``main()`` CLI function that
launches the server.

Architecture
------------
- **Configuration** comes from :data:`~portraitworks.core.config.config`
  (environment variables and ``.env``).
- **Services** (provider, synthesizer, store, registry, orchestrator,
  fulfillment) are built once per application by
  :func:`~portraitworks.core.services.build_services` and kept on
  ``app.state.services``.  Tests pass their own :class:`Services`.
- **Errors** raised anywhere in the pipeline are
  :class:`~portraitworks.core.errors.PortraitworksError` subclasses and are
  rendered by one exception handler as ``{"error", "detail"}`` JSON.
- **Local artifacts** are served at ``/artifacts`` when the ``local``
  storage backend is selected.

Endpoints
---------
========  ==============================  ==================================
Method    Path                            Purpose
========  ==============================  ==================================
POST      ``/api/generate``               Generate portraits for one photo
GET       ``/api/images/{session_id}``    Locate a session's artifacts
POST      ``/api/create-checkout``        Start a checkout for artifacts
GET       ``/api/download/{session_id}``  Paid JPEG or ZIP download
POST      ``/api/webhook``                Stripe webhook receiver
GET       ``/api/styles``                 Registered styles
GET       ``/api/health``                 Status and capability flags
========  ==============================  ==================================

Usage
-----
CLI (installed entry point)::

    portraitworks

Direct invocation::

    python -m portraitworks.api.main
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, Form, Header, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles

from portraitworks import __version__
from portraitworks.api.models import (
    CheckoutRequest,
    CheckoutResponse,
    GenerateResponse,
    ImageLocator,
    SessionImagesResponse,
    StyleInfo,
)
from portraitworks.core.batch import ProgressEvent
from portraitworks.core.config import PortraitworksConfig, config
from portraitworks.core.errors import (
    ImageTooLarge,
    InvalidUpload,
    PortraitworksError,
    SessionNotFound,
)
from portraitworks.core.services import Services, build_services
from portraitworks.core.storage import LocalArtifactStore, parse_artifact_id

logger = logging.getLogger(__name__)


def _services(request: Request) -> Services:
    return request.app.state.services


def _log_progress(event: ProgressEvent) -> None:
    logger.info("Generating style %d/%d: %s", event.index, event.total, event.style)


# ---------------------------------------------------------------------------
# Application lifecycle.
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Log which optional capabilities are available.

    Secrets are never logged, only whether each one is set.

    Args:
        app: The FastAPI application instance.

    Yields:
        Control back to the application for the duration of its lifetime.
    """
    services: Services = app.state.services
    cfg = services.config
    logger.info("Portraitworks %s starting", __version__)
    logger.info("GEMINI_API_KEY: %s", "SET" if cfg.gemini_configured else "NOT SET")
    logger.info("Storage backend: %s", cfg.storage_backend)
    if cfg.storage_backend == "supabase":
        logger.info("SUPABASE_URL: %s", "SET" if cfg.supabase_url else "NOT SET")
        logger.info("SUPABASE_KEY: %s", "SET" if cfg.supabase_key else "NOT SET")
    logger.info("STRIPE_SECRET_KEY: %s", "SET" if cfg.stripe_secret_key else "NOT SET")
    logger.info(
        "STRIPE_WEBHOOK_SECRET: %s", "SET" if cfg.stripe_webhook_secret else "NOT SET"
    )
    if not cfg.gemini_configured:
        logger.warning("No provider key set; every portrait will use the local fallback.")
    if services.fulfillment.use_mock:
        logger.warning(
            "Checkout is in MOCK mode (checkout_mode=%s); downloads are unlocked without payment.",
            cfg.checkout_mode,
        )

    yield

    logger.info("Portraitworks shutting down.")


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    cfg: PortraitworksConfig | None = None, services: Services | None = None
) -> FastAPI:
    """Build a FastAPI application around a service graph.

    Args:
        cfg: Configuration (default: the global ``config``).
        services: Pre-built services (default: built from *cfg*).

    Returns:
        The configured :class:`FastAPI` instance.
    """
    cfg = cfg or (services.config if services else config)
    services = services or build_services(cfg)

    app = FastAPI(
        title="Portraitworks",
        description="Stylized AI portraits with local fallback rendering and paid downloads.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if isinstance(services.store, LocalArtifactStore):
        app.mount(
            services.store.mount_path,
            StaticFiles(directory=str(services.store.root)),
            name="artifacts",
        )

    @app.exception_handler(PortraitworksError)
    async def _handle_pipeline_error(request: Request, exc: PortraitworksError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    _register_routes(app)
    return app


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


def _register_routes(app: FastAPI) -> None:
    @app.post("/api/generate", response_model=GenerateResponse, response_model_by_alias=True)
    async def generate(
        request: Request,
        image: UploadFile | None = File(None),
        theme: str | None = Form(None),
    ) -> GenerateResponse:
        """Generate one portrait per requested style.

        ``theme`` is a single style id or a comma-separated list; when absent
        the configured bundle is generated.

        Raises:
            InvalidUpload: 400 if no file was sent or it is not an image.
            ImageTooLarge: 413 if the upload exceeds ``max_upload_bytes``.
            UnknownStyle: 400 for an unknown, repeated or empty style list.
            UnsupportedFormat: 415 if the image cannot be decoded.
        """
        services = _services(request)
        cfg = services.config

        if image is None:
            raise InvalidUpload("No image file provided")
        if not (image.content_type or "").startswith("image/"):
            raise InvalidUpload("Only image files are allowed")
        too_large = ImageTooLarge(
            f"Image exceeds the {cfg.max_upload_bytes // (1024 * 1024)} MB upload limit"
        )
        # The multipart parser records the size, so check it before reading into memory.
        if image.size is not None and image.size > cfg.max_upload_bytes:
            raise too_large
        data = await image.read()
        if not data:
            raise InvalidUpload("No image file provided")
        if len(data) > cfg.max_upload_bytes:
            raise too_large

        if theme:
            styles = [s.strip() for s in theme.split(",") if s.strip()]
        else:
            styles = list(cfg.bundle_styles)

        logger.info(
            "Processing %s (%s, %d bytes) for %s",
            image.filename,
            image.content_type,
            len(data),
            styles,
        )
        try:
            session = await services.orchestrator.generate_batch(
                data,
                styles,
                _log_progress,
                original_filename=image.filename,
                original_mime_type=image.content_type,
            )
        except PortraitworksError:
            raise
        except Exception as exc:
            logger.exception("Generation error")
            raise PortraitworksError(f"Failed to generate portrait: {exc}") from exc

        return GenerateResponse(
            session_id=session.session_id,
            images=[
                ImageLocator(artifact_id=r.artifact_id, url=r.public_url, style=r.style)
                for r in session.results
            ],
        )

    @app.get(
        "/api/images/{session_id}",
        response_model=SessionImagesResponse,
        response_model_by_alias=True,
    )
    async def get_images(request: Request, session_id: str) -> SessionImagesResponse:
        """Locate artifacts by batch session id or by artifact id.

        Registry entries win.  An id of the form ``{uuid}_{style}`` that the
        registry does not know is answered from the deterministic URL scheme.

        Raises:
            SessionNotFound: 404 if neither lookup succeeds.
        """
        services = _services(request)
        entries = services.registry.find_by_session(session_id)
        if not entries:
            metadata = services.registry.get(session_id)
            entries = [metadata] if metadata is not None else []
        if entries:
            return SessionImagesResponse(
                session_id=session_id,
                images=[
                    ImageLocator(artifact_id=m.artifact_id, url=m.public_url, style=m.style)
                    for m in entries
                ],
            )

        parsed = parse_artifact_id(session_id)
        if parsed is None:
            raise SessionNotFound("Session not found")
        return SessionImagesResponse(
            session_id=parsed[0],
            images=[
                ImageLocator(
                    artifact_id=session_id,
                    url=services.store.public_url(session_id),
                    style=parsed[1],
                )
            ],
        )

    @app.post(
        "/api/create-checkout",
        response_model=CheckoutResponse,
        response_model_by_alias=True,
        response_model_exclude_none=True,
    )
    async def create_checkout(
        request: Request,
        body: CheckoutRequest,
        origin: str | None = Header(None),
    ) -> CheckoutResponse:
        """Create a checkout session for one artifact or a bundle."""
        services = _services(request)
        result = await services.fulfillment.create_checkout(
            body.artifact_ids(), origin or services.config.frontend_origin
        )
        return CheckoutResponse(
            url=result["url"], session_id=result["sessionId"], mock=result.get("mock")
        )

    @app.get("/api/download/{session_id}")
    async def download(request: Request, session_id: str) -> Response:
        """Send the paid artifacts as a JPEG or a ZIP attachment.

        Raises:
            SessionNotFound: 404 for an unknown checkout session.
            PaymentNotCompleted: 402 while the session is unpaid.
            ArtifactFetchFailed: 502 if no artifact could be fetched.
        """
        bundle = await _services(request).fulfillment.download(session_id)
        return Response(
            content=bundle.content,
            media_type=bundle.media_type,
            headers={"Content-Disposition": f'attachment; filename="{bundle.filename}"'},
        )

    @app.post("/api/webhook")
    async def webhook(
        request: Request, stripe_signature: str | None = Header(None)
    ) -> dict:
        """Receive a Stripe event; the raw body is needed for verification."""
        payload = await request.body()
        return await _services(request).fulfillment.handle_webhook(payload, stripe_signature)

    @app.get("/api/styles", response_model=list[StyleInfo], response_model_by_alias=True)
    async def list_styles(request: Request) -> list[StyleInfo]:
        """Return every registered style with its display name."""
        styles = _services(request).styles
        return [
            StyleInfo(id=style_id, display_name=styles.display_name_for(style_id))
            for style_id in styles.list_available()
        ]

    @app.get("/api/health")
    async def health(request: Request) -> dict:
        """Report liveness and which optional capabilities are configured."""
        return {
            "status": "ok",
            "timestamp": time.time(),
            "version": __version__,
            "capabilities": _services(request).capability_status(),
        }


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from
    :data:`~portraitworks.core.config.config` (``PORTRAITWORKS_SERVER_HOST``,
    ``PORTRAITWORKS_SERVER_PORT``, ``PORTRAITWORKS_LOG_LEVEL``).

    This function is registered as the ``portraitworks`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    uvicorn.run(
        "portraitworks.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
