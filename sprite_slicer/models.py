"""
Data types passed between the stages of the sprite slicing pipeline.

Every stage produces immutable values that the next stage only reads.
Image buffers are numpy arrays in BGRA order (uint8) with the writeable
flag cleared.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Mapping

import numpy as np


@dataclass(frozen=True)
class ProcessingConfig:
    """
    Parameters for one run of the pipeline.

    Attributes:
        horizontal_gap_px: Minimum number of consecutive empty rows that count as a cut
        vertical_gap_px: Minimum number of consecutive empty columns that count as a cut
        confidence_threshold: Slices below this confidence are flagged for review
        vision_threshold: Heuristic confidence below which the vision classifier is asked
        min_segment_area_fraction: Segments smaller than this fraction of the
                                   trimmed image area are dropped as noise
        max_processing_time_ms: Soft time budget, reported but never enforced
        trim_tolerance: Per channel tolerance (0-255) used when trimming the border
        alpha_threshold: Pixels with alpha above this value count as occupied
        brand_color: Brand colour as (R, G, B) used by the heuristic classifier
        brand_color_tolerance: Per channel RGB tolerance for brand colour matches
        classification_concurrency: Maximum number of vision calls in flight
        slice_format: File format (extension) of the exported slices
        tight_bounds: Shrink every grid cell to the bounding box of its content
    """
    horizontal_gap_px: int = 15
    vertical_gap_px: int = 15
    confidence_threshold: float = 0.9
    vision_threshold: float = 0.8
    min_segment_area_fraction: float = 0.08
    max_processing_time_ms: int = 1200
    trim_tolerance: int = 10
    alpha_threshold: int = 10
    brand_color: tuple[int, int, int] = (0, 213, 107)
    brand_color_tolerance: int = 30
    classification_concurrency: int = 3
    slice_format: str = "png"
    tight_bounds: bool = True

    def __post_init__(self) -> None:
        if self.horizontal_gap_px < 1 or self.vertical_gap_px < 1:
            raise ValueError("gap thresholds must be at least 1 pixel")
        for name in ("confidence_threshold", "vision_threshold", "min_segment_area_fraction"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if self.max_processing_time_ms <= 0:
            raise ValueError("max_processing_time_ms must be positive")
        if not 0 <= self.trim_tolerance <= 255 or not 0 <= self.alpha_threshold <= 255:
            raise ValueError("trim_tolerance and alpha_threshold must be within [0, 255]")
        if len(self.brand_color) != 3 or any(not 0 <= c <= 255 for c in self.brand_color):
            raise ValueError(f"brand_color must be an (R, G, B) triple, got {self.brand_color}")
        if self.classification_concurrency < 1:
            raise ValueError("classification_concurrency must be at least 1")
        if self.slice_format.lower() not in ("png", "webp"):
            raise ValueError(f"unsupported slice format: {self.slice_format}")
        # Normalise list input (e.g. from JSON) so the config stays hashable
        object.__setattr__(self, "brand_color", tuple(int(c) for c in self.brand_color))
        object.__setattr__(self, "slice_format", self.slice_format.lower())

    @classmethod
    def from_overrides(cls, overrides: Mapping[str, Any] | None = None) -> ProcessingConfig:
        """Build a config from a partial mapping, keeping defaults for missing keys."""
        overrides = dict(overrides or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"unknown config keys: {', '.join(unknown)}")
        return cls(**overrides)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["brand_color"] = list(self.brand_color)
        return data


@dataclass(frozen=True)
class Rect:
    """Axis aligned box in trimmed image coordinates."""
    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    def to_dict(self) -> dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True, eq=False)
class ProjectionProfile:
    """
    Occupancy histograms of an image.

    Attributes:
        horizontal: Occupied pixel count per row (length = image height)
        vertical: Occupied pixel count per column (length = image width)
    """
    horizontal: np.ndarray
    vertical: np.ndarray


@dataclass(frozen=True)
class CutLine:
    """A run of empty rows or columns, `end` inclusive, with its midpoint."""
    start: int
    end: int
    position: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True, eq=False)
class ImageSegment:
    """
    One grid cell cropped out of the trimmed sprite sheet.

    Attributes:
        bounds: Location in the trimmed image
        image: Cropped pixels (BGRA, uint8, read-only)
        data: The crop encoded as PNG
        area: width * height in pixels
        metadata: Extraction details (segment index, grid row and column)
    """
    bounds: Rect
    image: np.ndarray
    data: bytes
    area: int
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def index(self) -> int:
        return int(self.metadata.get("segment_index", 0))


class SliceType(str, Enum):
    COLOR = "color"
    MONO = "mono"
    LOGO = "logo"


@dataclass(frozen=True)
class Classification:
    type: SliceType
    confidence: float
    reasoning: str
    heuristic_score: float | None = None
    vision_score: float | None = None

    def __post_init__(self) -> None:
        if math.isnan(self.confidence) or not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")


@dataclass(frozen=True, eq=False)
class ClassifiedSegment:
    segment: ImageSegment
    classification: Classification

    @property
    def bounds(self) -> Rect:
        return self.segment.bounds


@dataclass(frozen=True)
class SpriteSlice:
    """Record of one exported slice file."""
    filename: str
    type: SliceType
    confidence: float
    bounds: Rect
    size_kb: float
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "type": self.type.value,
            "confidence": self.confidence,
            "bounds": self.bounds.to_dict(),
            "size_kb": self.size_kb,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class SliceManifest:
    """
    Structured record of everything one run produced.

    Attributes:
        slices: Exported slices in extraction order
        processing_time: Wall clock duration of the run in seconds
        accuracy_score: Mean confidence of all slices (0 when there are none)
        metadata: Source image, config, timestamp and run statistics
    """
    slices: tuple[SpriteSlice, ...]
    processing_time: float
    accuracy_score: float
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "slices": [s.to_dict() for s in self.slices],
            "processing_time": round(self.processing_time, 2),
            "accuracy_score": self.accuracy_score,
            "metadata": dict(self.metadata),
        }
