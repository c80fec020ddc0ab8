"""Batch conversion of a photo folder into styled portraits.

``portraitworks-convert`` runs every JPEG/PNG/WebP photo in an input
directory through the synthesizer once per style and writes the results to
an output directory as ``{photo}-{style}.jpg``.  Calls are sequential and
paced by ``--delay`` seconds, the same way the web pipeline paces provider
calls.  A ``manifest.json`` in the output directory lists every file ever
written there, without duplicates, plus the time of the last run.

Usage::

    portraitworks-convert ~/Pictures/couples ./slideshow --styles ghibli,anime
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import re
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path

from portraitworks.core.batch import PacedSequence
from portraitworks.core.config import PortraitworksConfig, config
from portraitworks.core.errors import PortraitworksError
from portraitworks.core.normalizer import normalize
from portraitworks.core.providers import ImageProviderBase, build_provider
from portraitworks.core.styles import StyleRegistry, StyleVariant, style_registry
from portraitworks.core.synthesizer import PortraitSynthesizer

logger = logging.getLogger(__name__)

PHOTO_SUFFIXES = frozenset({".jpg", ".jpeg", ".png", ".webp"})
MANIFEST_NAME = "manifest.json"


def photo_stem(path: Path) -> str:
    """Short alphanumeric name for output files: first 10 chars of the stem."""
    return re.sub(r"[^a-zA-Z0-9]", "", path.stem[:10]) or "photo"


def find_photos(input_dir: Path) -> list[Path]:
    return sorted(
        p for p in input_dir.iterdir() if p.is_file() and p.suffix.lower() in PHOTO_SUFFIXES
    )


def update_manifest(output_dir: Path, filenames: Sequence[str]) -> dict:
    """Merge *filenames* into ``manifest.json`` keeping first-seen order.

    An unreadable manifest is replaced by a fresh one.
    """
    manifest_path = output_dir / MANIFEST_NAME
    manifest: dict = {"images": []}
    if manifest_path.exists():
        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable %s: %s", manifest_path, exc)
            manifest = {"images": []}

    images = list(manifest.get("images") or [])
    seen = set(images)
    for name in filenames:
        if name not in seen:
            images.append(name)
            seen.add(name)

    manifest["images"] = images
    manifest["generatedAt"] = datetime.now(timezone.utc).isoformat()
    manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    return manifest


async def convert_directory(
    input_dir: Path,
    output_dir: Path,
    styles: Sequence[StyleVariant],
    synthesizer: PortraitSynthesizer,
    pacer: PacedSequence,
    cfg: PortraitworksConfig,
) -> list[str]:
    """Convert every photo in *input_dir*; return the written filenames.

    A photo that cannot be decoded is skipped with an error log.  Styles whose
    provider call fails still produce a file through the local fallback.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    photos = find_photos(input_dir)
    logger.info("Found %d photo(s) in %s", len(photos), input_dir)

    written: list[str] = []
    for number, photo in enumerate(photos, start=1):
        logger.info("Processing photo %d/%d: %s", number, len(photos), photo.name)
        try:
            processed = await asyncio.to_thread(
                normalize,
                photo.read_bytes(),
                cfg.max_input_dimension,
                cfg.jpeg_quality,
                cfg.max_input_pixels,
            )
        except (OSError, PortraitworksError) as exc:
            logger.error("Skipping %s: %s", photo.name, exc)
            continue

        stem = photo_stem(photo)

        async def convert(_index: int, style: StyleVariant) -> str | None:
            try:
                result = await synthesizer.synthesize(processed, style)
            except PortraitworksError as exc:
                logger.error("Skipping %s style=%s: %s", photo.name, style.value, exc)
                return None
            filename = f"{stem}-{style.value}.jpg"
            await asyncio.to_thread((output_dir / filename).write_bytes, result.image_bytes)
            logger.info(
                "Saved %s%s", filename, " (fallback)" if result.is_fallback else ""
            )
            return filename

        written.extend(name for name in await pacer.run(styles, convert) if name)

    return written


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portraitworks-convert",
        description="Convert a folder of photos into styled portraits.",
    )
    parser.add_argument("input_dir", type=Path, help="Directory containing photos")
    parser.add_argument("output_dir", type=Path, help="Directory for generated portraits")
    parser.add_argument(
        "--styles",
        default=",".join(v.value for v in StyleVariant),
        help="Comma-separated style ids (default: every style)",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=None,
        help="Seconds to wait between provider calls (default: PORTRAITWORKS_STYLE_DELAY_SECONDS)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=config.log_level,
    )
    return parser


def main(
    argv: Sequence[str] | None = None,
    *,
    cfg: PortraitworksConfig | None = None,
    provider: ImageProviderBase | None = None,
    styles: StyleRegistry | None = None,
) -> int:
    """Entry point of the ``portraitworks-convert`` console script.

    Returns:
        Process exit status: 0 on success, 2 for invalid arguments.
    """
    cfg = cfg if cfg is not None else config
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if not args.input_dir.is_dir():
        logger.error("Input directory not found: %s", args.input_dir)
        return 2

    styles = styles if styles is not None else style_registry
    try:
        variants = [styles.resolve(s.strip()) for s in args.styles.split(",") if s.strip()]
    except PortraitworksError as exc:
        logger.error("%s", exc.detail)
        return 2
    if not variants:
        logger.error("No styles selected")
        return 2

    delay = args.delay if args.delay is not None else cfg.style_delay_seconds
    if delay < 0:
        logger.error("--delay must be >= 0")
        return 2

    provider = provider if provider is not None else build_provider(cfg)
    if not provider.is_configured:
        logger.warning("No provider key set; every portrait will use the local fallback.")

    synthesizer = PortraitSynthesizer(provider, styles, cfg)
    written = asyncio.run(
        convert_directory(
            args.input_dir,
            args.output_dir,
            list(dict.fromkeys(variants)),
            synthesizer,
            PacedSequence(delay),
            cfg,
        )
    )
    update_manifest(args.output_dir, written)
    logger.info("Generated %d portrait(s); manifest updated", len(written))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
