"""
Functions for decoding sprite sheets and trimming their empty border.
"""

import cv2
import numpy as np

from sprite_slicer.errors import Phase, ProcessingError

WHITE = 255


def load_image(data: bytes) -> np.ndarray:
    """
    Decode an encoded image into an 8-bit BGRA array.

    Grayscale and BGR images get an opaque alpha channel, 16-bit images are
    reduced to 8 bits.

    Args:
        data: Encoded image bytes (PNG, WebP, JPEG, ...)

    Returns:
        Image as a (height, width, 4) uint8 array

    Raises:
        ProcessingError: If the bytes cannot be decoded (phase "trim")
    """
    buffer = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED) if buffer.size else None
    if img is None:
        raise ProcessingError("Could not decode input image", "DECODE_FAILED", Phase.TRIM, False)

    if img.dtype == np.uint16:
        img = (img >> 8).astype(np.uint8)
    elif img.dtype != np.uint8:
        raise ProcessingError(f"Unsupported pixel type {img.dtype}", "DECODE_FAILED", Phase.TRIM, False)

    # Add an alpha channel where the format has none
    if img.ndim == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGRA)
    elif img.shape[2] == 3:
        img = cv2.cvtColor(img, cv2.COLOR_BGR2BGRA)
    elif img.shape[2] != 4:
        raise ProcessingError(f"Unsupported channel count {img.shape[2]}", "DECODE_FAILED", Phase.TRIM, False)

    return img


def background_mask(img: np.ndarray, tolerance: int = 10) -> np.ndarray:
    """
    Mark pixels that belong to the sheet background.

    A pixel is background if it is (nearly) transparent or (nearly) white.

    Args:
        img: BGRA image
        tolerance: Per channel tolerance (0-255)

    Returns:
        Boolean mask with the same height and width as the image
    """
    transparent = img[:, :, 3] <= tolerance
    near_white = np.all(img[:, :, :3].astype(np.int16) >= WHITE - tolerance, axis=2)
    return transparent | near_white


def trim_whitespace(img: np.ndarray, tolerance: int = 10) -> tuple[np.ndarray, tuple[int, int]]:
    """
    Crop away border rows and columns that contain only background.

    Interior pixels are never modified, the result is a copy of a sub-rectangle.

    Args:
        img: BGRA image
        tolerance: Per channel tolerance (0-255) for background detection

    Returns:
        Tuple of (trimmed image, (x, y) offset of the trimmed image in the input)

    Raises:
        ProcessingError: If nothing but background is left (phase "trim")
    """
    content = ~background_mask(img, tolerance)
    rows = np.flatnonzero(content.any(axis=1))
    cols = np.flatnonzero(content.any(axis=0))

    if rows.size == 0 or cols.size == 0:
        raise ProcessingError(
            "Image has zero area after trimming whitespace", "EMPTY_IMAGE", Phase.TRIM, False
        )

    y1, y2 = int(rows[0]), int(rows[-1]) + 1
    x1, x2 = int(cols[0]), int(cols[-1]) + 1
    trimmed = img[y1:y2, x1:x2].copy()
    trimmed.flags.writeable = False
    return trimmed, (x1, y1)
