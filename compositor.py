"""
Layer compositor.

Paints one ordered set of trait layers onto a transparent canvas. The
drawing surface is a narrow adapter so the compositing core can be
exercised without any graphical host.
"""

import io
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Protocol, Sequence, Tuple

import numpy as np  # type: ignore
from PIL import Image

from errors import LayerLoadFailure
from trait_catalog import NONE_TRAIT, TraitAssignment, TraitCatalog

logger = logging.getLogger(__name__)

# Pillow encoder name and archive extension per output format.
FORMAT_INFO = {
    'png': ('PNG', 'png'),
    'jpeg': ('JPEG', 'jpg'),
    'jpg': ('JPEG', 'jpg'),
    'webp': ('WEBP', 'webp'),
}

JPEG_MATTE = (255, 255, 255)


class PaintSurface(Protocol):
    def paint_layer(self, bitmap: Image.Image) -> None: ...

    def read_pixels(self) -> np.ndarray: ...


class PillowSurface:
    """RGBA canvas backed by Pillow's alpha compositing."""

    def __init__(self, size: Tuple[int, int]):
        self.size = size
        self._canvas = Image.new('RGBA', size, (0, 0, 0, 0))

    def paint_layer(self, bitmap: Image.Image) -> None:
        layer = bitmap if bitmap.mode == 'RGBA' else bitmap.convert('RGBA')
        if layer.size != self.size:
            # resize() returns a new image so cached bitmaps stay untouched
            layer = layer.resize(self.size, Image.LANCZOS)
        self._canvas.alpha_composite(layer)

    def read_pixels(self) -> np.ndarray:
        return np.array(self._canvas, dtype=np.uint8)


def composite(
    ordered_layers: Iterable[Image.Image],
    size: Tuple[int, int],
    surface_factory: Callable[[Tuple[int, int]], PaintSurface] = PillowSurface,
) -> np.ndarray:
    """Paint ``ordered_layers`` back-to-front and return an (H, W, 4) uint8 buffer."""
    surface = surface_factory(size)
    for layer in ordered_layers:
        surface.paint_layer(layer)
    return surface.read_pixels()


@dataclass
class RenderedImage:
    token_id: int
    pixels: np.ndarray
    image_format: str = 'png'
    quality: int = 95

    @property
    def size(self) -> Tuple[int, int]:
        h, w = self.pixels.shape[:2]
        return w, h

    @property
    def extension(self) -> str:
        return FORMAT_INFO[self.image_format.lower()][1]

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.pixels, 'RGBA')

    def encode(self) -> bytes:
        """Encode the pixel buffer with the configured format and quality."""
        pil_format, _ = FORMAT_INFO[self.image_format.lower()]
        img = self.to_image()
        buffer = io.BytesIO()
        if pil_format == 'JPEG':
            matte = Image.new('RGBA', img.size, JPEG_MATTE + (255,))
            matte.alpha_composite(img)
            matte.convert('RGB').save(buffer, format='JPEG', quality=self.quality)
        elif pil_format == 'WEBP':
            img.save(buffer, format='WEBP', quality=self.quality)
        else:
            img.save(buffer, format='PNG', optimize=False)
        return buffer.getvalue()


def new_layer_resolver(max_workers: int = 4) -> ThreadPoolExecutor:
    """Pool used only to bound layer loads that may block. Owned and shut down by the caller."""
    return ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='LayerResolver')


def resolve_layer(loader, asset_ref: Optional[str], timeout: Optional[float] = None,
                  resolver: Optional[ThreadPoolExecutor] = None) -> Optional[Image.Image]:
    """Call ``loader.load`` on ``resolver`` and give up after ``timeout`` seconds."""
    if timeout is None or resolver is None:
        return loader.load(asset_ref)
    future = resolver.submit(loader.load, asset_ref)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise


def collect_layers(
    assignment: TraitAssignment,
    catalog: TraitCatalog,
    loader,
    exclude_categories: Sequence[str] = (),
    layer_timeout: Optional[float] = None,
    token_id: Optional[int] = None,
    issues: Optional[List[LayerLoadFailure]] = None,
    resolver: Optional[ThreadPoolExecutor] = None,
) -> List[Image.Image]:
    """
    Resolve bitmaps for ``assignment`` in catalog layer order.

    Layers that fail to resolve are logged, recorded in ``issues`` and left out.
    When ``layer_timeout`` is set without a ``resolver``, a pool is created for
    this call and released without waiting on loads that timed out.
    """
    own_resolver = resolver is None and layer_timeout is not None
    if own_resolver:
        resolver = new_layer_resolver()
    try:
        return _collect(assignment, catalog, loader, exclude_categories, layer_timeout,
                        token_id, issues, resolver)
    finally:
        if own_resolver:
            resolver.shutdown(wait=False, cancel_futures=True)


def _collect(assignment, catalog, loader, exclude_categories, layer_timeout, token_id, issues,
             resolver) -> List[Image.Image]:
    excluded = set(exclude_categories)
    layers: List[Image.Image] = []
    for category in catalog.layer_order():
        if category in excluded:
            continue
        trait_name = assignment.get(category)
        if not trait_name or trait_name == NONE_TRAIT:
            continue

        trait = catalog.find_trait(category, trait_name)
        asset_ref = trait.asset_ref if trait else None
        reason = None
        bitmap = None
        if trait is None:
            reason = "trait not in catalog"
        elif not asset_ref:
            reason = "trait has no asset"
        else:
            try:
                bitmap = resolve_layer(loader, asset_ref, layer_timeout, resolver)
            except FutureTimeout:
                reason = f"timed out after {layer_timeout}s"
            except Exception as e:
                reason = str(e) or type(e).__name__
            else:
                if bitmap is None:
                    reason = "loader returned nothing"

        if bitmap is None:
            failure = LayerLoadFailure(category, trait_name, asset_ref, reason, token_id=token_id)
            logger.warning(f"Token {token_id}: {failure.message}")
            if issues is not None:
                issues.append(failure)
            continue
        layers.append(bitmap)
    return layers


def render_token(
    token_id: int,
    assignment: TraitAssignment,
    catalog: TraitCatalog,
    loader,
    size: Tuple[int, int],
    image_format: str = 'png',
    quality: int = 95,
    exclude_categories: Sequence[str] = (),
    layer_timeout: Optional[float] = None,
    issues: Optional[List[LayerLoadFailure]] = None,
    surface_factory: Callable[[Tuple[int, int]], PaintSurface] = PillowSurface,
    resolver: Optional[ThreadPoolExecutor] = None,
) -> RenderedImage:
    """Composite one token's layers into a RenderedImage."""
    layers = collect_layers(assignment, catalog, loader, exclude_categories,
                            layer_timeout, token_id, issues, resolver)
    pixels = composite(layers, size, surface_factory)
    logger.debug(f"Token {token_id}: {len(layers)} layers rendered")
    return RenderedImage(token_id=token_id, pixels=pixels, image_format=image_format, quality=quality)
