"""
Image resource loader with an explicit, caller-owned cache.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Optional

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)


class ImageResourceLoader:
    """
    Resolve trait asset references under ``root`` to decoded RGBA bitmaps.

    Missing or corrupt assets return None instead of raising so the
    compositor can log and skip the layer. Cached images are shared between
    threads and must be treated as read-only by callers.
    """

    def __init__(self, root, cache_enabled: bool = True):
        self.root = Path(root).resolve()
        self.cache_enabled = cache_enabled
        self._cache: Dict[str, Image.Image] = {}
        self._lock = threading.Lock()

    @property
    def cached_count(self) -> int:
        with self._lock:
            return len(self._cache)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def _resolve_path(self, asset_ref: str) -> Optional[Path]:
        path = (self.root / asset_ref).resolve()
        # Refuse references that escape the asset root.
        if self.root != path and self.root not in path.parents:
            logger.warning(f"Asset reference outside of root rejected: {asset_ref}")
            return None
        return path

    def load(self, asset_ref: Optional[str]) -> Optional[Image.Image]:
        if not asset_ref:
            return None

        with self._lock:
            cached = self._cache.get(asset_ref)
        if cached is not None:
            return cached

        path = self._resolve_path(asset_ref)
        if path is None:
            return None
        if not path.is_file():
            logger.warning(f"Trait asset not found: {path}")
            return None

        try:
            with Image.open(path) as src:
                img = src.convert('RGBA')
        except (OSError, UnidentifiedImageError) as e:
            logger.warning(f"Trait asset could not be decoded: {path}: {e}")
            return None

        if not self.cache_enabled:
            return img
        with self._lock:
            # First writer wins; an entry is never replaced once populated.
            return self._cache.setdefault(asset_ref, img)
