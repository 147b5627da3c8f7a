#!/usr/bin/env python3
"""
Generate a full PFP collection archive from the command line.

    python generate_collection.py --catalog pfp-traits/catalog.json --count 4444 \
        --name "PSX" --media-base-uri ipfs://REPLACEME --out PSX-Collection-4444.zip
"""

import argparse
import logging
import signal
import sys
from pathlib import Path

from tqdm import tqdm

import settings
from batch_renderer import CancellationToken, CollectionRequest, SleepYield, format_time, render_collection
from errors import PfpForgeError
from image_loader import ImageResourceLoader
from metadata_builder import CollectionConfig
from trait_catalog import TraitCatalog

logger = logging.getLogger("generate_collection")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Render a unique PFP collection into one ZIP archive.")
    parser.add_argument("--catalog", type=Path, default=settings.TRAITS_CATALOG, help="Trait catalog JSON")
    parser.add_argument("--traits-root", type=Path, default=None,
                        help="Folder holding trait images (defaults to the catalog's folder)")
    parser.add_argument("--count", type=int, required=True, help="Collection size")
    parser.add_argument("--out", type=Path, required=True, help="Archive destination")
    parser.add_argument("--name", required=True, help="Collection name")
    parser.add_argument("--description", default="")
    parser.add_argument("--media-base-uri", required=True, help="Base URI the images will live under")
    parser.add_argument("--external-uri", default="")
    parser.add_argument("--width", type=int, default=settings.DEFAULT_WIDTH)
    parser.add_argument("--height", type=int, default=settings.DEFAULT_HEIGHT)
    parser.add_argument("--format", dest="image_format", choices=settings.SUPPORTED_FORMATS,
                        default=settings.DEFAULT_FORMAT)
    parser.add_argument("--quality", type=int, default=settings.DEFAULT_QUALITY)
    parser.add_argument("--silhouette", action="store_true", help="Render black/white silhouettes")
    parser.add_argument("--shadow-metadata", action="store_true",
                        help="Publish placeholder shadow names instead of the full metadata")
    parser.add_argument("--exclude", action="append", default=[], metavar="CATEGORY",
                        help="Category to leave out of compositing (repeatable)")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--workers", type=int, default=settings.DEFAULT_WORKERS)
    parser.add_argument("--batch-size", type=int, default=settings.DEFAULT_BATCH_SIZE)
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    settings.configure_logging(args.log_level.upper())

    try:
        catalog = TraitCatalog.from_json(args.catalog)
    except (OSError, ValueError, KeyError) as e:
        logger.error(f"Could not load trait catalog {args.catalog}: {e}")
        return 2
    loader = ImageResourceLoader(args.traits_root or args.catalog.parent)

    exclude = tuple(args.exclude)
    if args.silhouette and not exclude:
        exclude = tuple(catalog.backdrop_categories)

    try:
        request = CollectionRequest(
            size=args.count,
            collection=CollectionConfig(
                name=args.name,
                description=args.description,
                media_base_uri=args.media_base_uri,
                external_uri=args.external_uri,
            ),
            width=args.width,
            height=args.height,
            image_format=args.image_format,
            quality=args.quality,
            silhouette=args.silhouette,
            shadow_metadata=args.shadow_metadata,
            exclude_categories=exclude,
            seed=args.seed,
            batch_size=args.batch_size,
            workers=args.workers,
        )
    except ValueError as e:
        logger.error(str(e))
        return 2

    cancel_token = CancellationToken()

    def handle_sigint(signum, frame):
        logger.warning("Interrupt received, cancelling at the next yield point...")
        cancel_token.cancel()

    previous_handler = signal.signal(signal.SIGINT, handle_sigint)

    try:
        with tqdm(total=args.count, unit="pfp", desc="Rendering") as bar:
            def on_progress(current, total):
                bar.update(current - bar.n)

            result = render_collection(request, catalog, loader, args.out,
                                       on_progress=on_progress, cancel_token=cancel_token,
                                       yield_point=SleepYield(0))
    except PfpForgeError as e:
        logger.error(f"{e.kind}: {e} (token {e.token_id})")
        return 1
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if result is None:
        logger.warning("Run cancelled; no archive written")
        return 130

    for issue in result.issues:
        logger.warning(f"{issue.kind} token {issue.token_id}: {issue}")
    print(f"Wrote {result.archive_path} ({result.rendered_count}/{result.token_count} tokens, "
          f"{result.entries_written} entries) in {format_time(result.elapsed)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
