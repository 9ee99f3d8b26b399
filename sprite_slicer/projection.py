"""
Projection profiles and whitespace gap detection.

A projection profile counts the occupied (non-transparent) pixels of every
row and column. Runs of zeros in a profile are whitespace gaps; gaps that are
wide enough become cut lines between sprites.
"""

import numpy as np

from sprite_slicer.errors import Phase, ProcessingError
from sprite_slicer.models import CutLine, ProjectionProfile


def occupancy_mask(img: np.ndarray, alpha_threshold: int = 10) -> np.ndarray:
    """
    Boolean mask of pixels that carry content.

    Args:
        img: Image array; 4-channel images use their alpha channel, anything
             else is treated as fully opaque
        alpha_threshold: Pixels with alpha above this value are occupied
    """
    if img.ndim == 3 and img.shape[2] == 4:
        return img[:, :, 3] > alpha_threshold
    return np.ones(img.shape[:2], dtype=bool)


def build_projection(img: np.ndarray, alpha_threshold: int = 10) -> ProjectionProfile:
    """
    Count occupied pixels per row and per column.

    Colour is ignored, only presence of content matters.

    Args:
        img: Image array (BGRA, or any layout without alpha)
        alpha_threshold: Pixels with alpha above this value are occupied

    Returns:
        ProjectionProfile with `horizontal` of length height and `vertical` of length width

    Raises:
        ProcessingError: If the array does not look like an image (phase "cut")
    """
    if img is None or img.ndim not in (2, 3) or img.shape[0] == 0 or img.shape[1] == 0:
        shape = None if img is None else img.shape
        raise ProcessingError(
            f"Failed to create projection profile: invalid image shape {shape}",
            "PROJECTION_FAILED", Phase.CUT, False
        )

    occupied = occupancy_mask(img, alpha_threshold)
    horizontal = occupied.sum(axis=1, dtype=np.int64)
    vertical = occupied.sum(axis=0, dtype=np.int64)
    horizontal.flags.writeable = False
    vertical.flags.writeable = False
    return ProjectionProfile(horizontal=horizontal, vertical=vertical)


def find_cut_lines(profile: np.ndarray, gap_threshold: int) -> list[CutLine]:
    """
    Find whitespace gaps of at least `gap_threshold` entries in a 1-D profile.

    Only runs followed by content are reported, so an empty run at the very
    end of the profile never produces a cut. Shorter gaps are treated as
    whitespace inside a single sprite.

    Args:
        profile: Occupied pixel counts along one axis
        gap_threshold: Minimum run length of zero entries

    Returns:
        Cut lines sorted by position
    """
    if gap_threshold < 1:
        raise ValueError(f"gap_threshold must be at least 1, got {gap_threshold}")

    profile = np.asarray(profile)
    if profile.size == 0:
        return []

    # Rising edges of the zero mask mark run starts, falling edges run ends
    zero = (profile == 0).astype(np.int8)
    edges = np.diff(np.concatenate(([0], zero, [0])))
    starts = np.flatnonzero(edges == 1)
    stops = np.flatnonzero(edges == -1)  # exclusive

    cuts = []
    for start, stop in zip(starts, stops):
        if stop >= profile.size:
            continue
        if stop - start >= gap_threshold:
            end = int(stop) - 1
            cuts.append(CutLine(start=int(start), end=end, position=(int(start) + end) // 2))

    return cuts
