"""Multi-style batch generation.

:class:`BatchOrchestrator` runs one uploaded photo through a list of styles:

1. normalize the input once
2. synthesize each style in the declared order, one at a time, pausing
   between provider calls to respect the provider's rate limit
3. upload each result as ``{session_id}_{style}`` and record its metadata

The pause is modelled by :class:`PacedSequence`, a small scheduler primitive
("run task, suspend for a fixed delay, run the next task") whose delay and
sleep function are constructor parameters.  Tests pass a recording sleep and
assert on the exact pauses without waiting in real time.

Progress is reported through an optional callback receiving a
:class:`ProgressEvent` before each style starts.  A missing or failing
observer never affects the pipeline.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from .errors import UnknownStyle
from .normalizer import DEFAULT_MAX_PIXELS, normalize
from .registry import ArtifactMetadata, MetadataRegistry
from .storage import ArtifactStoreBase, artifact_id_for, new_session_id
from .styles import StyleRegistry, StyleVariant
from .synthesizer import PortraitSynthesizer, SynthesisResult

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class ProgressEvent:
    """Notification emitted before a style's synthesis begins."""

    index: int  # 1-based
    total: int
    style: str


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class GenerationResult:
    """One stored artifact of a batch."""

    artifact_id: str
    style: str
    public_url: str
    fallback: bool = False

    def to_dict(self) -> dict:
        return {"artifactId": self.artifact_id, "url": self.public_url, "style": self.style}


@dataclass
class BatchSession:
    """Record of one batch run and its artifacts, in style order."""

    session_id: str
    results: list[GenerationResult] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)


class PacedSequence:
    """Run async tasks one after another with a fixed pause between them.

    No pause happens before the first task or after the last one.

    Args:
        delay: Seconds to suspend between consecutive tasks.
        sleep: Awaitable sleep function, ``asyncio.sleep`` by default.
    """

    def __init__(
        self,
        delay: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self.delay = delay
        self._sleep = sleep

    async def run(self, items: Sequence[T], task: Callable[[int, T], Awaitable[R]]) -> list[R]:
        """Await ``task(index, item)`` for each item in order.

        Args:
            items: Items to process.
            task: Coroutine function receiving the 0-based index and the item.

        Returns:
            Task results in item order.
        """
        results: list[R] = []
        for index, item in enumerate(items):
            if index > 0 and self.delay > 0:
                await self._sleep(self.delay)
            results.append(await task(index, item))
        return results


def _notify(on_progress: ProgressCallback | None, event: ProgressEvent) -> None:
    if on_progress is None:
        return
    try:
        on_progress(event)
    except Exception:
        logger.exception("Progress observer failed for %s; continuing", event)


class BatchOrchestrator:
    """Sequence styles through the synthesizer and persist the results."""

    def __init__(
        self,
        synthesizer: PortraitSynthesizer,
        store: ArtifactStoreBase,
        registry: MetadataRegistry,
        styles: StyleRegistry,
        pacer: PacedSequence,
        max_input_dimension: int = 1500,
        jpeg_quality: int = 95,
        max_input_pixels: int = DEFAULT_MAX_PIXELS,
    ) -> None:
        self.synthesizer = synthesizer
        self.store = store
        self.registry = registry
        self.styles = styles
        self.pacer = pacer
        self.max_input_dimension = max_input_dimension
        self.jpeg_quality = jpeg_quality
        self.max_input_pixels = max_input_pixels

    async def generate_batch(
        self,
        image: bytes,
        styles: Sequence[str | StyleVariant],
        on_progress: ProgressCallback | None = None,
        *,
        original_filename: str | None = None,
        original_mime_type: str | None = None,
    ) -> BatchSession:
        """Generate, upload and record one artifact per style.

        Args:
            image: Raw uploaded image bytes.
            styles: Styles in the order they must be generated.
            on_progress: Optional observer called before each style.
            original_filename: Upload filename kept as provenance.
            original_mime_type: Declared upload MIME type kept as provenance.

        Returns:
            The :class:`BatchSession` with results in input order.

        Raises:
            UnknownStyle: If *styles* is empty, repeats a style, or names an
                unknown style.
            UnsupportedFormat: If the input image cannot be normalized.
            StorageUnavailable, UploadFailed: If an artifact cannot be stored.
        """
        if not styles:
            raise UnknownStyle("No theme selected")
        variants = [self.styles.resolve(s) for s in styles]
        # One artifact per (session, style): a repeated style would reuse an id.
        duplicates = sorted({v.value for v in variants if variants.count(v) > 1})
        if duplicates:
            raise UnknownStyle(f"Duplicate theme: {', '.join(duplicates)}")

        processed = await asyncio.to_thread(
            normalize,
            image,
            self.max_input_dimension,
            self.jpeg_quality,
            self.max_input_pixels,
        )

        session = BatchSession(session_id=new_session_id())
        total = len(variants)
        logger.info(
            "Starting batch session=%s styles=%s",
            session.session_id,
            [v.value for v in variants],
        )

        async def run_style(index: int, variant: StyleVariant) -> SynthesisResult:
            _notify(on_progress, ProgressEvent(index=index + 1, total=total, style=variant.value))
            return await self.synthesizer.synthesize(processed, variant)

        synthesized = await self.pacer.run(variants, run_style)

        for result in synthesized:
            artifact_id = artifact_id_for(session.session_id, result.style.value)
            public_url = await self.store.upload(result.image_bytes, artifact_id)
            self.registry.record(
                ArtifactMetadata(
                    artifact_id=artifact_id,
                    style=result.style.value,
                    public_url=public_url,
                    original_filename=original_filename,
                    original_mime_type=original_mime_type,
                    session_id=session.session_id,
                )
            )
            session.results.append(
                GenerationResult(
                    artifact_id=artifact_id,
                    style=result.style.value,
                    public_url=public_url,
                    fallback=result.is_fallback,
                )
            )

        logger.info(
            "Batch session=%s finished: %d artifacts (%d fallback)",
            session.session_id,
            len(session.results),
            sum(1 for r in session.results if r.fallback),
        )
        return session
