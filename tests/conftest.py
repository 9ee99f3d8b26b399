"""
Shared helpers for building synthetic sprite sheets and fake vision classifiers.
"""

import threading
import time

import cv2
import numpy as np
import pytest

from sprite_slicer.models import ImageSegment, Rect

BLACK = (0, 0, 0)
GRAY = (128, 128, 128)
RED = (200, 50, 50)
BLUE = (50, 50, 200)
BRAND_GREEN = (0, 213, 107)


def solid(height, width, rgb, alpha=255):
    """BGRA block of a single RGB colour."""
    img = np.zeros((height, width, 4), dtype=np.uint8)
    img[:, :, 0] = rgb[2]
    img[:, :, 1] = rgb[1]
    img[:, :, 2] = rgb[0]
    img[:, :, 3] = alpha
    return img


def sheet(height, width, blocks):
    """
    Transparent canvas with opaque blocks.

    Args:
        blocks: Iterable of (x, y, w, h, rgb)
    """
    img = np.zeros((height, width, 4), dtype=np.uint8)
    for x, y, w, h, rgb in blocks:
        img[y:y + h, x:x + w] = solid(h, w, rgb)
    return img


def segment(img, index=0):
    ok, encoded = cv2.imencode(".png", img)
    assert ok
    h, w = img.shape[:2]
    return ImageSegment(
        bounds=Rect(0, 0, w, h),
        image=img,
        data=encoded.tobytes(),
        area=w * h,
        metadata={"segment_index": index},
    )


class FakeVision:
    """Deterministic stand-in for the remote vision classifier."""

    def __init__(self, answer="logo:0.9", delay=0.0, error=None, answer_fn=None, delay_fn=None):
        self.answer = answer
        self.delay = delay
        self.error = error
        self.answer_fn = answer_fn
        self.delay_fn = delay_fn
        self.calls = 0
        self.prompts = []
        self.deadlines = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def classify(self, image_png, prompt, deadline=None):
        with self._lock:
            self.calls += 1
            self.prompts.append(prompt)
            self.deadlines.append(deadline)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            img = cv2.imdecode(np.frombuffer(image_png, np.uint8), cv2.IMREAD_UNCHANGED)
            time.sleep(self.delay_fn(img) if self.delay_fn else self.delay)
            if self.error is not None:
                raise self.error
            return self.answer_fn(img) if self.answer_fn else self.answer
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def write_png(tmp_path):
    """Write a BGRA array to a PNG file under tmp_path and return its path."""
    def _write(img, name="sheet.png"):
        path = tmp_path / name
        assert cv2.imwrite(str(path), img), "Failed to write test image"
        return path
    return _write


@pytest.fixture
def three_squares():
    """Three 100x100 black squares separated by 20px transparent gaps."""
    return sheet(120, 360, [
        (10, 10, 100, 100, BLACK),
        (130, 10, 100, 100, BLACK),
        (250, 10, 100, 100, BLACK),
    ])
