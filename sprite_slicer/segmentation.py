"""
Functions for cutting a sprite sheet into segments along detected gaps.
"""

from typing import Sequence

import cv2
import numpy as np
from loguru import logger

from sprite_slicer.errors import Phase, ProcessingError
from sprite_slicer.models import CutLine, ImageSegment, Rect
from sprite_slicer.projection import occupancy_mask


def grid_bounds(h_cuts: Sequence[CutLine], v_cuts: Sequence[CutLine],
                height: int, width: int) -> list[tuple[int, int, Rect]]:
    """
    Turn cut lines into grid cells.

    Args:
        h_cuts: Cuts along the horizontal profile (they split rows)
        v_cuts: Cuts along the vertical profile (they split columns)
        height: Image height
        width: Image width

    Returns:
        List of (row, col, Rect) in row-major order, zero-area cells omitted
    """
    y_bounds = [0, *sorted(c.position for c in h_cuts), height]
    x_bounds = [0, *sorted(c.position for c in v_cuts), width]

    cells = []
    for row in range(len(y_bounds) - 1):
        for col in range(len(x_bounds) - 1):
            y1, y2 = y_bounds[row], y_bounds[row + 1]
            x1, x2 = x_bounds[col], x_bounds[col + 1]
            if x2 <= x1 or y2 <= y1:
                continue
            cells.append((row, col, Rect(x=x1, y=y1, width=x2 - x1, height=y2 - y1)))
    return cells


def content_bounds(img: np.ndarray, cell: Rect, alpha_threshold: int = 10) -> Rect | None:
    """
    Shrink a grid cell to the bounding box of its occupied pixels.

    Returns:
        The tight box in image coordinates, or None if the cell holds no content
    """
    occupied = occupancy_mask(img[cell.y:cell.y + cell.height, cell.x:cell.x + cell.width], alpha_threshold)
    rows = np.flatnonzero(occupied.any(axis=1))
    cols = np.flatnonzero(occupied.any(axis=0))
    if rows.size == 0:
        return None
    return Rect(x=cell.x + int(cols[0]), y=cell.y + int(rows[0]),
                width=int(cols[-1] - cols[0]) + 1, height=int(rows[-1] - rows[0]) + 1)


def extract_segments(img: np.ndarray, h_cuts: Sequence[CutLine], v_cuts: Sequence[CutLine],
                     tight: bool = True, alpha_threshold: int = 10) -> list[ImageSegment]:
    """
    Crop every grid cell of the image into an independent segment.

    Args:
        img: Trimmed BGRA image
        h_cuts: Horizontal cut lines
        v_cuts: Vertical cut lines
        tight: If True, shrink each cell to its content; cells without
               content then have zero area and are skipped
        alpha_threshold: Alpha value above which a pixel counts as content

    Returns:
        Segments in row-major (extraction) order

    Raises:
        ProcessingError: If a cell cannot be cropped or encoded (phase "cut")
    """
    height, width = img.shape[:2]
    segments = []

    try:
        for row, col, bounds in grid_bounds(h_cuts, v_cuts, height, width):
            if tight:
                bounds = content_bounds(img, bounds, alpha_threshold)
                if bounds is None:
                    continue

            crop = img[bounds.y:bounds.y + bounds.height, bounds.x:bounds.x + bounds.width].copy()
            crop.flags.writeable = False

            ok, encoded = cv2.imencode(".png", crop)
            if not ok:
                raise ValueError(f"PNG encoding failed for cell ({row}, {col})")

            segments.append(ImageSegment(
                bounds=bounds,
                image=crop,
                data=encoded.tobytes(),
                area=bounds.area,
                metadata={
                    "segment_index": len(segments),
                    "grid_position": {"row": row, "col": col},
                }
            ))
    except (cv2.error, ValueError) as e:
        raise ProcessingError(f"Failed to extract segments: {e}", "EXTRACTION_FAILED",
                              Phase.CUT, False) from e

    return segments


def filter_segments(segments: Sequence[ImageSegment], total_area: int,
                    min_fraction: float) -> list[ImageSegment]:
    """
    Drop segments that are too small to be anything but noise.

    Args:
        segments: Extracted segments
        total_area: Area of the trimmed image
        min_fraction: Minimum share of `total_area` a segment must cover

    Returns:
        The remaining segments, order preserved
    """
    min_area = total_area * min_fraction
    kept = [s for s in segments if s.area >= min_area]
    logger.debug(f"[segmentation] min segment area {min_area:.1f}px, "
                 f"kept {len(kept)} of {len(segments)} segments")
    return kept
