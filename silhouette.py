"""
Silhouette transform for mystery-reveal placeholders.

Only the alpha channel of the source is inspected: anything above a low
threshold becomes opaque black, everything else opaque white.
"""

import numpy as np  # type: ignore

# Very low so faint anti-aliased edges still count as part of the shape.
ALPHA_THRESHOLD = 10

BLACK = np.array([0, 0, 0, 255], dtype=np.uint8)
WHITE = np.array([255, 255, 255, 255], dtype=np.uint8)


def _check_rgba(pixels: np.ndarray) -> None:
    if pixels.ndim != 3 or pixels.shape[2] != 4:
        raise ValueError(f"Expected an (H, W, 4) RGBA buffer, got shape {pixels.shape}")


def is_binarized(pixels: np.ndarray) -> bool:
    """True when every pixel is already opaque black or opaque white."""
    _check_rgba(pixels)
    black = np.all(pixels == BLACK, axis=-1)
    white = np.all(pixels == WHITE, axis=-1)
    return bool(np.all(black | white))


def apply_silhouette(pixels: np.ndarray, threshold: int = ALPHA_THRESHOLD, in_place: bool = False,
                     keep_binarized: bool = False) -> np.ndarray:
    """
    Convert a composited RGBA buffer to a black shape on white.

    Only alpha is inspected, so an opaque composite comes out fully black even
    where it was painted pure white. Pass ``keep_binarized`` when re-applying to
    a finished silhouette: a buffer that is already pure black and white is then
    returned unchanged, which makes the transform a fixed point.

    Args:
        pixels: (H, W, 4) uint8 buffer.
        threshold: Alpha values strictly above this are treated as shape.
        in_place: Write the result into ``pixels`` instead of a new buffer.
        keep_binarized: Leave an already black/white buffer untouched.

    Returns:
        The silhouette buffer (``pixels`` itself when in_place is set).
    """
    _check_rgba(pixels)
    out = pixels if in_place else pixels.copy()
    if keep_binarized and is_binarized(pixels):
        return out

    shape = pixels[..., 3] > threshold
    out[shape] = BLACK
    out[~shape] = WHITE
    return out


def black_pixel_count(pixels: np.ndarray) -> int:
    _check_rgba(pixels)
    return int(np.count_nonzero(np.all(pixels == BLACK, axis=-1)))


def is_degenerate(pixels: np.ndarray) -> bool:
    """A silhouette with no black pixels means nothing was painted."""
    return black_pixel_count(pixels) == 0
