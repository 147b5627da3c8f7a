"""
Batch collection renderer.

Drives generation -> metadata -> compositing -> (silhouette) -> encoding ->
archive for a whole collection. Rendered bitmaps live only for the duration
of one token's step and are streamed into the archive as they finish, so
peak memory stays proportional to the batch size rather than the
collection size.

Per-token work may run on a bounded thread pool, but every archive write
happens on the calling thread in token-id order.
"""

import dataclasses
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from collection_archive import CollectionArchive
from combination_generator import generate_unique_assignments
from compositor import FORMAT_INFO, new_layer_resolver, render_token
from errors import (
    ArchiveWriteFailure,
    CancellationRequested,
    DegenerateSilhouette,
    InsufficientCombinationSpace,
    PfpForgeError,
    TokenRenderFailure,
)
from metadata_builder import (
    CollectionConfig,
    TokenMetadata,
    build_reveal_record,
    build_shadow_metadata,
    build_token_metadata,
)
from settings import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_FORMAT,
    DEFAULT_HEIGHT,
    DEFAULT_QUALITY,
    DEFAULT_WIDTH,
    LAYER_TIMEOUT_SECONDS,
    MAX_WORKERS,
)
from silhouette import apply_silhouette, is_degenerate
from trait_catalog import TraitAssignment, TraitCatalog

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
YieldPoint = Callable[[], None]


@dataclass(frozen=True)
class CollectionRequest:
    size: int
    collection: CollectionConfig
    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT
    image_format: str = DEFAULT_FORMAT
    quality: int = DEFAULT_QUALITY
    silhouette: bool = False
    # Publish the "<name> Shadow #<id>" placeholder record instead of the full one.
    shadow_metadata: bool = False
    exclude_categories: Tuple[str, ...] = ()
    seed: Optional[int] = None
    batch_size: int = DEFAULT_BATCH_SIZE
    workers: int = 1
    layer_timeout: Optional[float] = LAYER_TIMEOUT_SECONDS

    def __post_init__(self):
        if self.size <= 0:
            raise ValueError("Collection size must be a positive integer")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Output resolution must be positive")
        if self.image_format.lower() not in FORMAT_INFO:
            raise ValueError(f"Unsupported image format: {self.image_format}")
        if self.batch_size <= 0:
            raise ValueError("Batch size must be positive")
        if not 1 <= self.workers <= MAX_WORKERS:
            raise ValueError(f"Workers must be between 1 and {MAX_WORKERS}")

    @property
    def extension(self) -> str:
        return FORMAT_INFO[self.image_format.lower()][1]


@dataclass(frozen=True)
class ProgressState:
    current: int
    total: int
    started_at: float
    elapsed: float = 0.0
    estimated_remaining: float = 0.0

    @property
    def percentage(self) -> float:
        return (self.current / self.total) * 100 if self.total else 0.0

    def to_dict(self) -> dict:
        return {
            'current': self.current,
            'total': self.total,
            'percentage': round(self.percentage, 2),
            'elapsed': round(self.elapsed, 2),
            'estimated_remaining': round(self.estimated_remaining, 2),
        }


class CancellationToken:
    """Thread-safe cancellation flag checked at every yield point."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, token_id: Optional[int] = None) -> None:
        if self._event.is_set():
            raise CancellationRequested(token_id=token_id)


class NullYield:
    """Yield point for synchronous callers and tests."""

    def __call__(self) -> None:
        return None


class SleepYield:
    """Yield point that gives other threads a chance to run."""

    def __init__(self, seconds: float = 0.0):
        self.seconds = seconds

    def __call__(self) -> None:
        time.sleep(self.seconds)


@dataclass
class TokenOutcome:
    token_id: int
    image_bytes: Optional[bytes] = None
    metadata_json: Optional[str] = None
    reveal_record: Optional[dict] = None
    issues: List[PfpForgeError] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.image_bytes is None or self.metadata_json is None


@dataclass
class RunResult:
    archive_path: Path
    token_count: int
    entries_written: int
    issues: List[PfpForgeError]
    skipped_tokens: List[int]
    elapsed: float

    @property
    def rendered_count(self) -> int:
        return self.token_count - len(self.skipped_tokens)

    def to_dict(self) -> dict:
        return {
            'archive_path': str(self.archive_path),
            'token_count': self.token_count,
            'rendered_count': self.rendered_count,
            'entries_written': self.entries_written,
            'skipped_tokens': list(self.skipped_tokens),
            'issues': [issue.to_dict() for issue in self.issues],
            'elapsed': round(self.elapsed, 2),
        }


class CollectionRenderer:
    """
    Render a full collection into one archive.

    Args:
        request: What to render.
        catalog: Read-only trait catalog.
        loader: Image resource loader (``load(asset_ref) -> Image | None``).
        destination: Final archive path; nothing appears there unless the run completes.
        on_progress: ``(current, total)`` callback, called after every token.
        cancel_token: Checked at every yield point.
        yield_point: Called between batches so a host can breathe.
    """

    def __init__(
        self,
        request: CollectionRequest,
        catalog: TraitCatalog,
        loader,
        destination,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        yield_point: Optional[YieldPoint] = None,
    ):
        self.request = request
        self.catalog = catalog
        self.loader = loader
        self.destination = Path(destination)
        self.on_progress = on_progress
        self.cancel_token = cancel_token or CancellationToken()
        self.yield_point = yield_point or NullYield()

        config = request.collection
        updates = {'image_extension': request.extension}
        if config.category_labels is None and catalog.category_labels:
            updates['category_labels'] = dict(catalog.category_labels)
        self.config = dataclasses.replace(config, **updates)

        self._started_at = time.monotonic()
        self._progress = ProgressState(0, request.size, self._started_at)
        self._progress_lock = threading.Lock()
        self._resolver: Optional[ThreadPoolExecutor] = None

    @property
    def progress(self) -> ProgressState:
        with self._progress_lock:
            return self._progress

    def _advance(self, current: int) -> None:
        total = self.request.size
        elapsed = time.monotonic() - self._started_at
        remaining = (elapsed / current) * (total - current) if current else 0.0
        with self._progress_lock:
            # current only ever moves forward
            if current <= self._progress.current:
                return
            self._progress = ProgressState(min(current, total), total, self._started_at, elapsed, remaining)
        if self.on_progress:
            self.on_progress(min(current, total), total)

    def _checkpoint(self, token_id: Optional[int] = None) -> None:
        self.yield_point()
        self.cancel_token.raise_if_cancelled(token_id)

    def _build_metadata(self, token_id: int, assignment: TraitAssignment) -> Tuple[TokenMetadata, TokenMetadata]:
        full = build_token_metadata(token_id, assignment, self.config)
        if self.request.shadow_metadata:
            return build_shadow_metadata(token_id, assignment, self.config), full
        return full, full

    def render_one(self, token_id: int, assignment: TraitAssignment) -> TokenOutcome:
        """Metadata + composite + optional silhouette + encode for one token."""
        outcome = TokenOutcome(token_id)
        request = self.request

        try:
            public, full = self._build_metadata(token_id, assignment)
        except Exception as e:
            failure = TokenRenderFailure(f"Metadata build failed for token {token_id}: {e}", token_id)
            logger.warning(failure.message)
            outcome.issues.append(failure)
            return outcome

        try:
            image = render_token(
                token_id,
                assignment,
                self.catalog,
                self.loader,
                (request.width, request.height),
                image_format=request.image_format,
                quality=request.quality,
                exclude_categories=request.exclude_categories,
                layer_timeout=request.layer_timeout,
                issues=outcome.issues,
                resolver=self._resolver,
            )
            if request.silhouette:
                apply_silhouette(image.pixels, in_place=True)
                if is_degenerate(image.pixels):
                    warning = DegenerateSilhouette(
                        f"Silhouette for token {token_id} has no black pixels; nothing was painted", token_id
                    )
                    logger.warning(warning.message)
                    outcome.issues.append(warning)
            image_bytes = image.encode()
            del image
        except Exception as e:
            failure = TokenRenderFailure(f"Rendering failed for token {token_id}: {e}", token_id)
            logger.warning(failure.message, exc_info=True)
            outcome.issues.append(failure)
            return outcome

        outcome.image_bytes = image_bytes
        outcome.metadata_json = public.to_json()
        if request.silhouette:
            outcome.reveal_record = build_reveal_record(
                token_id, assignment, full, f"images/{token_id}.{request.extension}"
            )
        return outcome

    def _render_batch(self, batch: Sequence[Tuple[int, TraitAssignment]],
                      executor: Optional[ThreadPoolExecutor]) -> List[TokenOutcome]:
        if executor is None:
            return [self.render_one(token_id, assignment) for token_id, assignment in batch]
        futures = [executor.submit(self.render_one, token_id, assignment) for token_id, assignment in batch]
        # Collected in submission order so the writer stays deterministic.
        return [f.result() for f in futures]

    def run(self) -> Optional[RunResult]:
        """
        Execute the run.

        Returns:
            RunResult on success, or None when the run was cancelled.

        Raises:
            InsufficientCombinationSpace: The catalog cannot supply enough unique tokens.
            ArchiveWriteFailure: The archive could not be written or finalized.
        """
        request = self.request
        total = request.size
        self._started_at = time.monotonic()
        logger.info(
            f"Starting collection run: {total} tokens at {request.width}x{request.height} "
            f"{request.image_format}, silhouette={request.silhouette}, workers={request.workers}"
        )

        try:
            assignments = generate_unique_assignments(self.catalog, total, seed=request.seed)
        except InsufficientCombinationSpace as e:
            logger.error(f"Collection run aborted: {e}")
            raise

        try:
            self._checkpoint()
        except CancellationRequested:
            logger.info("Collection run cancelled before rendering started")
            return None

        issues: List[PfpForgeError] = []
        skipped: List[int] = []
        archive = CollectionArchive(self.destination)
        executor = None
        if request.workers > 1:
            executor = ThreadPoolExecutor(max_workers=request.workers, thread_name_prefix='TokenRenderer')
        if request.layer_timeout is not None:
            self._resolver = new_layer_resolver(max_workers=max(4, request.workers))
        processed = 0
        try:
            for offset in range(0, total, request.batch_size):
                batch = [(i + 1, assignments[i]) for i in range(offset, min(offset + request.batch_size, total))]
                outcomes = self._render_batch(batch, executor)

                for outcome in outcomes:
                    issues.extend(outcome.issues)
                    if outcome.skipped:
                        skipped.append(outcome.token_id)
                    else:
                        archive.add_token(outcome.token_id, outcome.image_bytes, request.extension,
                                          outcome.metadata_json, outcome.reveal_record)
                    processed += 1
                    self._advance(processed)

                # Drop encoded buffers before the next batch is rendered.
                outcomes = outcome = None
                self._checkpoint(batch[-1][0])

            entries = archive.entry_count
            path = archive.finalize()
        except CancellationRequested as e:
            archive.discard()
            logger.info(f"Collection run cancelled after token {e.token_id}; partial archive discarded")
            return None
        except ArchiveWriteFailure as e:
            archive.discard()
            logger.error(f"Collection run failed at token {e.token_id}: {e}", exc_info=True)
            raise
        except BaseException:
            archive.discard()
            raise
        finally:
            if executor is not None:
                executor.shutdown(wait=True, cancel_futures=True)
            if self._resolver is not None:
                # Loads that timed out may still be blocked; do not wait on them.
                self._resolver.shutdown(wait=False, cancel_futures=True)
                self._resolver = None

        elapsed = time.monotonic() - self._started_at
        if skipped:
            logger.warning(f"{len(skipped)} token(s) skipped: {skipped[:20]}")
        logger.info(f"Collection run complete: {total} tokens in {format_time(elapsed)} -> {path}")
        return RunResult(
            archive_path=path,
            token_count=total,
            entries_written=entries,
            issues=issues,
            skipped_tokens=skipped,
            elapsed=elapsed,
        )


def render_collection(
    request: CollectionRequest,
    catalog: TraitCatalog,
    loader,
    destination,
    on_progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
    yield_point: Optional[YieldPoint] = None,
) -> Optional[RunResult]:
    """Convenience wrapper around CollectionRenderer.run()."""
    renderer = CollectionRenderer(request, catalog, loader, destination,
                                  on_progress=on_progress, cancel_token=cancel_token,
                                  yield_point=yield_point)
    return renderer.run()


def render_preview(
    catalog: TraitCatalog,
    loader,
    size: Tuple[int, int] = (512, 512),
    silhouette: bool = False,
    exclude_categories: Sequence[str] = (),
    seed: Optional[int] = None,
) -> Tuple[bytes, TraitAssignment]:
    """Render one random token as PNG bytes, for previews."""
    assignment = generate_unique_assignments(catalog, 1, seed=seed)[0]
    image = render_token(0, assignment, catalog, loader, size,
                         image_format='png', exclude_categories=exclude_categories,
                         layer_timeout=LAYER_TIMEOUT_SECONDS)
    if silhouette:
        apply_silhouette(image.pixels, in_place=True)
        if is_degenerate(image.pixels):
            logger.warning("Preview silhouette has no black pixels; check trait assets")
    return image.encode(), assignment


def format_time(seconds: float) -> str:
    minutes, secs = divmod(int(round(seconds)), 60)
    if not minutes:
        return f"{secs}s"
    return f"{minutes}m {secs}s"
