"""
Sprite Slicer

Splits sprite sheets exported from design tools into individual slices,
classifies every slice as colour illustration, monochrome version or logo,
and writes the slices together with a JSON manifest.

Public API:
    - split_sprite / split_sprite_async: Main entry points
    - SpriteSplitter: The pipeline orchestrator
    - ProcessingConfig: Run parameters
    - SplitResult, SliceManifest, SpriteSlice: Results
    - ProcessingError, Phase: Failure taxonomy
"""

from sprite_slicer.api import PipelineState, SplitResult, SpriteSplitter, split_sprite, split_sprite_async
from sprite_slicer.classification import SegmentClassifier
from sprite_slicer.errors import Phase, ProcessingError, VisionClassifierError
from sprite_slicer.export import LocalStore, SliceStore
from sprite_slicer.models import (
    Classification,
    ProcessingConfig,
    Rect,
    SliceManifest,
    SliceType,
    SpriteSlice,
)
from sprite_slicer.vision import OpenAIVisionClassifier, VisionClassifier

__version__ = "0.1.0"
__all__ = [
    "split_sprite", "split_sprite_async", "SpriteSplitter", "PipelineState", "SplitResult",
    "SegmentClassifier", "VisionClassifier", "OpenAIVisionClassifier",
    "ProcessingConfig", "Rect", "Classification", "SliceType", "SpriteSlice", "SliceManifest",
    "LocalStore", "SliceStore", "Phase", "ProcessingError", "VisionClassifierError",
    "__version__",
]
