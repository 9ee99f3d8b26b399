"""
Tests for heuristic classification, vision parsing, fusion and the async classifier.
"""

import asyncio
import time

import numpy as np
import pytest

from conftest import BLACK, BLUE, BRAND_GREEN, GRAY, RED, FakeVision, segment, solid
from sprite_slicer import classification
from sprite_slicer.classification import (
    SegmentClassifier,
    classify_with_heuristics,
    fuse_classifications,
    parse_vision_response,
)
from sprite_slicer.models import Classification, SliceType
from sprite_slicer.vision import CLASSIFICATION_PROMPT


@pytest.mark.parametrize("rgb, expected_type, expected_confidence", [
    (BRAND_GREEN, SliceType.COLOR, 0.9),
    (BLACK, SliceType.LOGO, 0.8),
    ((240, 235, 230), SliceType.LOGO, 0.8),
    (GRAY, SliceType.MONO, 0.7),
    (RED, SliceType.COLOR, 0.1),
    (BLUE, SliceType.COLOR, 0.1),
])
def test_heuristic_rules(rgb, expected_type, expected_confidence):
    result = classify_with_heuristics(solid(10, 10, rgb))

    assert result.type is expected_type
    assert result.confidence == expected_confidence
    assert result.heuristic_score is not None
    assert result.vision_score is None


def test_heuristic_ignores_transparent_pixels():
    """Transparent pixels do not dilute the brand colour fraction."""
    img = solid(10, 10, RED, alpha=0)
    img[:4] = solid(4, 10, BRAND_GREEN)

    result = classify_with_heuristics(img)

    assert result.type is SliceType.COLOR
    assert result.confidence == 0.9
    assert result.heuristic_score == pytest.approx(1.0)


def test_heuristic_brand_tolerance_is_exclusive():
    near = solid(4, 4, (29, 213, 107))
    edge = solid(4, 4, (30, 213, 107))

    assert classify_with_heuristics(near, tolerance=30).confidence == 0.9
    assert classify_with_heuristics(edge, tolerance=30).confidence != 0.9


def test_heuristic_empty_segment():
    result = classify_with_heuristics(np.zeros((5, 5, 4), dtype=np.uint8))

    assert result.type is SliceType.COLOR
    assert result.confidence == 0.1
    assert result.reasoning == "empty segment"


@pytest.mark.parametrize("text, expected_type, expected_confidence", [
    ("logo:0.85", SliceType.LOGO, 0.85),
    ("MONO: 0.6", SliceType.MONO, 0.6),
    ("color:1", SliceType.COLOR, 1.0),
    ("'logo':0.7\nbecause it has a wordmark", SliceType.LOGO, 0.7),
])
def test_parse_vision_response(text, expected_type, expected_confidence):
    result = parse_vision_response(text)

    assert result.type is expected_type
    assert result.confidence == pytest.approx(expected_confidence)
    assert result.vision_score == pytest.approx(expected_confidence)


@pytest.mark.parametrize("text", [
    "", "logo", "banana:0.5", "color:1.5", "mono:-0.1", "logo:nan", "logo:high", None, 42,
])
def test_parse_vision_response_degrades(text):
    """Malformed or out-of-range answers become an undecided colour classification."""
    result = parse_vision_response(text)

    assert result.type is SliceType.COLOR
    assert result.confidence == 0.1
    assert "unparseable" in result.reasoning


def test_fuse_weights_and_type_selection():
    heuristic = Classification(SliceType.MONO, 0.7, "h", heuristic_score=0.9)
    vision = Classification(SliceType.LOGO, 0.9, "v", vision_score=0.9)

    fused = fuse_classifications(heuristic, vision)

    assert fused.confidence == pytest.approx(0.6 * 0.7 + 0.4 * 0.9)
    assert fused.type is SliceType.LOGO, "More confident stage decides the type"
    assert fused.heuristic_score == 0.9
    assert fused.vision_score == 0.9
    assert "h" in fused.reasoning and "v" in fused.reasoning


def test_fuse_tie_favours_heuristic():
    heuristic = Classification(SliceType.MONO, 0.5, "h")
    vision = Classification(SliceType.LOGO, 0.5, "v")

    assert fuse_classifications(heuristic, vision).type is SliceType.MONO


def test_confident_heuristic_skips_vision():
    vision = FakeVision()
    classifier = SegmentClassifier(vision)

    result = asyncio.run(classifier.classify(segment(solid(10, 10, BLACK))))

    assert result.type is SliceType.LOGO
    assert vision.calls == 0, "Confident heuristics must not call the vision classifier"


def test_inconclusive_heuristic_uses_vision():
    vision = FakeVision(answer="logo:0.9")
    classifier = SegmentClassifier(vision)

    result = asyncio.run(classifier.classify(segment(solid(10, 10, GRAY))))

    assert vision.calls == 1
    assert vision.prompts == [CLASSIFICATION_PROMPT]
    assert result.type is SliceType.LOGO
    assert result.confidence == pytest.approx(0.6 * 0.7 + 0.4 * 0.9)


def test_vision_threshold_is_configurable():
    vision = FakeVision(answer="logo:0.9")
    classifier = SegmentClassifier(vision, vision_threshold=0.5)

    result = asyncio.run(classifier.classify(segment(solid(10, 10, GRAY))))

    assert vision.calls == 0
    assert result.type is SliceType.MONO


def test_vision_failure_degrades_to_heuristic():
    """An unreachable vision endpoint keeps the heuristic result."""
    vision = FakeVision(error=ConnectionError("endpoint unreachable"))
    classifier = SegmentClassifier(vision)

    result = asyncio.run(classifier.classify(segment(solid(10, 10, GRAY))))

    assert result.type is SliceType.MONO
    assert result.confidence == 0.7
    assert "vision classification failed" in result.reasoning
    assert "endpoint unreachable" in result.reasoning


def test_without_vision_classifier():
    classifier = SegmentClassifier(None)
    segments = [segment(solid(10, 10, RED), 0)]

    result = asyncio.run(classifier.classify_all(segments))

    assert result[0].classification.confidence == 0.1
    assert "not configured" in result[0].classification.reasoning


def test_classify_all_keeps_order_and_bounds_concurrency():
    """Results are joined by index even when later segments finish first."""
    def is_red(img):
        return img[:, :, 2].mean() > 100

    vision = FakeVision(
        answer_fn=lambda img: "logo:0.9" if is_red(img) else "mono:0.9",
        delay_fn=lambda img: 0.1 if is_red(img) else 0.01,
    )
    classifier = SegmentClassifier(vision, concurrency=3)
    colors = [RED, BLUE, RED, BLUE, BLUE, RED, BLUE]
    segments = [segment(solid(8, 8, c), i) for i, c in enumerate(colors)]

    results = asyncio.run(classifier.classify_all(segments))

    assert [r.segment for r in results] == segments
    assert [r.classification.type for r in results] == [
        SliceType.LOGO if c == RED else SliceType.MONO for c in colors
    ]
    assert vision.calls == len(colors)
    assert vision.max_active <= 3, "At most three vision calls may run at once"


def test_classify_all_deadline_falls_back_to_heuristics():
    """Segments still waiting for vision at the deadline keep the heuristic result."""
    vision = FakeVision(answer="logo:0.9", delay=0.5)
    classifier = SegmentClassifier(vision)
    segments = [segment(solid(8, 8, GRAY), i) for i in range(4)] + [segment(solid(8, 8, BLACK), 4)]

    started = time.monotonic()
    results = asyncio.run(classifier.classify_all(segments, deadline=time.monotonic() + 0.05))
    elapsed = time.monotonic() - started

    assert elapsed < 0.45, "Deadline should not wait for slow vision calls"
    for r in results[:4]:
        assert r.classification.type is SliceType.MONO
        assert r.classification.confidence == 0.7
        assert "deadline exceeded" in r.classification.reasoning
    assert results[4].classification.type is SliceType.LOGO
    assert results[4].classification.confidence == 0.8


def test_classify_all_passes_deadline_to_vision():
    vision = FakeVision(answer="mono:0.9")
    classifier = SegmentClassifier(vision)
    deadline = time.monotonic() + 30

    asyncio.run(classifier.classify_all([segment(solid(8, 8, GRAY))], deadline=deadline))

    assert vision.deadlines == [deadline]


def test_fusion_error_keeps_heuristic(monkeypatch):
    """An error after the vision answer arrives degrades only that segment."""
    def broken(heuristic, vision):
        raise ArithmeticError("bad weights")

    monkeypatch.setattr(classification, "fuse_classifications", broken)
    classifier = SegmentClassifier(FakeVision(answer="logo:0.9"))
    segments = [segment(solid(8, 8, GRAY), 0), segment(solid(8, 8, BLACK), 1)]

    results = asyncio.run(classifier.classify_all(segments))

    assert results[0].classification.type is SliceType.MONO
    assert results[0].classification.confidence == 0.7
    assert "vision classification failed" in results[0].classification.reasoning
    assert results[1].classification.type is SliceType.LOGO


def test_heuristic_error_becomes_undecided_and_uses_vision(monkeypatch):
    def broken(*args, **kwargs):
        raise ValueError("unexpected channel count")

    monkeypatch.setattr(classification, "classify_with_heuristics", broken)
    vision = FakeVision(answer="logo:0.9")
    classifier = SegmentClassifier(vision)

    result = asyncio.run(classifier.classify(segment(solid(8, 8, BLACK))))

    assert vision.calls == 1
    assert result.type is SliceType.LOGO
    assert result.confidence == pytest.approx(0.6 * 0.1 + 0.4 * 0.9)
