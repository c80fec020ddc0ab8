"""Pydantic request and response models for the Portraitworks API.

The browser client speaks camelCase JSON, so every model uses a camelCase
alias generator while keeping snake_case attribute names in Python.
``populate_by_name`` lets tests and internal callers use either spelling.

Models
------
ImageLocator
    One stored artifact: id, public URL, style.
GenerateResponse
    Result of ``POST /api/generate``.
SessionImagesResponse
    Result of ``GET /api/images/{session_id}``.
CheckoutRequest
    Payload for ``POST /api/create-checkout``.
CheckoutResponse
    Result of ``POST /api/create-checkout``.
StyleInfo
    One entry of ``GET /api/styles``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImageLocator(_CamelModel):
    """Where to find one generated artifact.

    Attributes:
        artifact_id: Identifier ``{session_id}_{style}``.
        url: Public URL of the stored JPEG.
        style: Style variant id, ``None`` if unknown.
    """

    artifact_id: str
    url: str
    style: str | None = None


class GenerateResponse(_CamelModel):
    """Response body for ``POST /api/generate``."""

    session_id: str
    images: list[ImageLocator]


class SessionImagesResponse(_CamelModel):
    """Response body for ``GET /api/images/{session_id}``."""

    session_id: str
    images: list[ImageLocator]


class CheckoutRequest(_CamelModel):
    """Request body for ``POST /api/create-checkout``.

    Either ``image_id`` (single download) or ``image_ids`` (bundle) must be
    provided.  When both are present they are merged, ``image_ids`` first.

    Attributes:
        image_id: Single artifact to purchase.
        image_ids: Artifacts to purchase as one bundle.
        bundle: Informational flag sent by the client; the bundle is implied
            by the number of ids.
    """

    image_id: str | None = None
    image_ids: list[str] = Field(default_factory=list)
    bundle: bool = False

    def artifact_ids(self) -> list[str]:
        ids = list(self.image_ids)
        if self.image_id:
            ids.append(self.image_id)
        return ids


class CheckoutResponse(_CamelModel):
    """Response body for ``POST /api/create-checkout``."""

    url: str | None
    session_id: str
    mock: bool | None = None


class StyleInfo(_CamelModel):
    """One registered style as shown to clients."""

    id: str
    display_name: str
