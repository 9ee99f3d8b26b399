"""
Tests for configuration handling and the error type.
"""

import pytest

from sprite_slicer.errors import Phase, ProcessingError
from sprite_slicer.models import Classification, ProcessingConfig, Rect, SliceType


def test_config_defaults():
    config = ProcessingConfig()

    assert config.horizontal_gap_px == 15
    assert config.vertical_gap_px == 15
    assert config.confidence_threshold == 0.9
    assert config.vision_threshold == 0.8
    assert config.min_segment_area_fraction == 0.08
    assert config.max_processing_time_ms == 1200


def test_config_from_partial_overrides():
    """Thresholds can be overridden independently of each other."""
    config = ProcessingConfig.from_overrides({"confidence_threshold": 0.5, "brand_color": [1, 2, 3]})

    assert config.confidence_threshold == 0.5
    assert config.vision_threshold == 0.8
    assert config.brand_color == (1, 2, 3)
    assert hash(config) == hash(ProcessingConfig.from_overrides(config.to_dict()))
    assert ProcessingConfig.from_overrides(None) == ProcessingConfig()


@pytest.mark.parametrize("overrides", [
    {"unknown_key": 1},
    {"vertical_gap_px": 0},
    {"vision_threshold": 1.5},
    {"min_segment_area_fraction": -0.1},
    {"max_processing_time_ms": 0},
    {"brand_color": (0, 300, 0)},
    {"classification_concurrency": 0},
    {"slice_format": "gif"},
])
def test_config_validation(overrides):
    with pytest.raises(ValueError):
        ProcessingConfig.from_overrides(overrides)


def test_config_is_immutable():
    config = ProcessingConfig()
    with pytest.raises(AttributeError):
        config.horizontal_gap_px = 3  # type: ignore[misc]


def test_rect_area_and_dict():
    rect = Rect(x=1, y=2, width=3, height=4)

    assert rect.area == 12
    assert rect.to_dict() == {"x": 1, "y": 2, "width": 3, "height": 4}


def test_classification_confidence_range():
    with pytest.raises(ValueError):
        Classification(SliceType.LOGO, 1.2, "too sure")
    with pytest.raises(ValueError):
        Classification(SliceType.LOGO, float("nan"), "unsure")


def test_processing_error_shape():
    error = ProcessingError("boom", "TRIM_FAILED", "trim", False)

    assert error.phase is Phase.TRIM
    assert str(error) == "boom"
    assert error.to_dict() == {"message": "boom", "code": "TRIM_FAILED", "phase": "trim", "recoverable": False}
