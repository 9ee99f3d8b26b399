"""
Segment classification: local pixel heuristics with an optional vision fallback.

Classification is a plain composition of three steps:
heuristics -> (vision, if the heuristics are unsure) -> fusion.
Errors in any step lower the confidence of the result but never abort the run.
"""

from __future__ import annotations

import asyncio
import math
import time
from functools import partial
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import replace
from typing import Sequence

import numpy as np
from loguru import logger

from sprite_slicer.models import (
    Classification,
    ClassifiedSegment,
    ImageSegment,
    ProcessingConfig,
    SliceType,
)
from sprite_slicer.projection import occupancy_mask
from sprite_slicer.vision import CLASSIFICATION_PROMPT, VisionClassifier

HEURISTIC_WEIGHT = 0.6
VISION_WEIGHT = 0.4

UNDECIDED = Classification(SliceType.COLOR, 0.1, "unable to classify with heuristics", heuristic_score=0.0)


def classify_with_heuristics(
    img: np.ndarray,
    brand_color: tuple[int, int, int] = (0, 213, 107),
    tolerance: int = 30,
    alpha_threshold: int = 10,
) -> Classification:
    """
    Classify a segment from pixel statistics alone.

    Only pixels with alpha above `alpha_threshold` are considered. The rules,
    applied in order:

    - more than 30% brand coloured pixels -> color (0.9)
    - mean luminance above 0.7, or below 0.3 with saturation below 0.2 -> logo (0.8)
    - mean saturation below 0.2 -> mono (0.7)
    - otherwise -> color (0.1), i.e. undecided

    Args:
        img: BGRA segment image
        brand_color: Brand colour as (R, G, B)
        tolerance: Per channel tolerance for brand colour matches (exclusive)
        alpha_threshold: Alpha value above which a pixel counts

    Returns:
        Classification with `heuristic_score` set
    """
    try:
        pixels = img[occupancy_mask(img, alpha_threshold)]
        if pixels.shape[0] == 0:
            return Classification(SliceType.COLOR, 0.1, "empty segment", heuristic_score=0.0)

        # BGRA -> RGB
        rgb = pixels[:, 2::-1].astype(np.float64)

        brand_match = np.all(np.abs(rgb - np.asarray(brand_color, dtype=np.float64)) < tolerance, axis=1)
        brand_fraction = float(brand_match.mean())

        channel_max = rgb.max(axis=1)
        channel_min = rgb.min(axis=1)
        saturation = np.divide(channel_max - channel_min, channel_max,
                               out=np.zeros_like(channel_max), where=channel_max > 0)
        mean_saturation = float(saturation.mean())

        luminance = 0.299 * rgb[:, 0] + 0.587 * rgb[:, 1] + 0.114 * rgb[:, 2]
        contrast = float(luminance.mean() / 255.0)
    except Exception as e:
        logger.warning(f"[classification] heuristic analysis failed: {e}")
        return Classification(SliceType.COLOR, 0.1, f"heuristic analysis failed: {e}", heuristic_score=0.0)

    stats = f"brand={brand_fraction:.2f}, saturation={mean_saturation:.2f}, contrast={contrast:.2f}"

    if brand_fraction > 0.3:
        return Classification(SliceType.COLOR, 0.9, f"high concentration of brand color ({stats})",
                              heuristic_score=brand_fraction)

    if contrast > 0.7 or (contrast < 0.3 and mean_saturation < 0.2):
        return Classification(SliceType.LOGO, 0.8, f"high contrast pattern typical of logos ({stats})",
                              heuristic_score=contrast)

    if mean_saturation < 0.2:
        return Classification(SliceType.MONO, 0.7, f"low color saturation indicates monochrome ({stats})",
                              heuristic_score=1.0 - mean_saturation)

    return replace(UNDECIDED, reasoning=f"{UNDECIDED.reasoning} ({stats})")


def parse_vision_response(text: str | None) -> Classification:
    """
    Parse a "LABEL:CONFIDENCE" answer from the vision classifier.

    Anything malformed, with an unknown label or with a confidence outside
    [0, 1] degrades to an undecided colour classification.
    """
    fallback = Classification(SliceType.COLOR, 0.1, f"unparseable vision response: {text!r}",
                              vision_score=0.1)
    if not isinstance(text, str):
        return fallback

    lines = text.strip().splitlines()
    label, sep, value = (lines[0] if lines else "").partition(":")
    if not sep:
        return fallback

    try:
        slice_type = SliceType(label.strip().strip("'\"`*").lower())
        confidence = float(value.strip().strip("'\"`*"))
    except ValueError:
        return fallback

    if math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
        return fallback

    return Classification(slice_type, confidence, "vision classification", vision_score=confidence)


def fuse_classifications(heuristic: Classification, vision: Classification) -> Classification:
    """
    Combine heuristic and vision results.

    Confidence is a weighted sum (60% heuristic, 40% vision). The type comes
    from whichever result is more confident, ties go to the heuristic.
    """
    confidence = HEURISTIC_WEIGHT * heuristic.confidence + VISION_WEIGHT * vision.confidence
    chosen = heuristic.type if heuristic.confidence >= vision.confidence else vision.type
    return Classification(
        type=chosen,
        confidence=min(1.0, max(0.0, confidence)),
        reasoning=f"combined: {heuristic.reasoning} + {vision.reasoning}",
        heuristic_score=heuristic.heuristic_score,
        vision_score=vision.vision_score,
    )


class SegmentClassifier:
    """
    Classifies segments with heuristics first and asks the vision classifier
    only about the inconclusive ones.

    Args:
        vision: Vision classifier, or None to rely on heuristics only
        vision_threshold: Heuristic confidence below which vision is consulted
        concurrency: Maximum number of vision calls in flight
        brand_color: Brand colour as (R, G, B)
        brand_color_tolerance: Per channel tolerance for brand colour matches
        alpha_threshold: Alpha value above which a pixel counts
        prompt: Prompt sent along with every image
    """

    def __init__(
        self,
        vision: VisionClassifier | None = None,
        *,
        vision_threshold: float = 0.8,
        concurrency: int = 3,
        brand_color: tuple[int, int, int] = (0, 213, 107),
        brand_color_tolerance: int = 30,
        alpha_threshold: int = 10,
        prompt: str = CLASSIFICATION_PROMPT,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.vision = vision
        self.vision_threshold = vision_threshold
        self.concurrency = concurrency
        self.brand_color = brand_color
        self.brand_color_tolerance = brand_color_tolerance
        self.alpha_threshold = alpha_threshold
        self.prompt = prompt

    @classmethod
    def from_config(cls, config: ProcessingConfig, vision: VisionClassifier | None) -> SegmentClassifier:
        return cls(
            vision,
            vision_threshold=config.vision_threshold,
            concurrency=config.classification_concurrency,
            brand_color=config.brand_color,
            brand_color_tolerance=config.brand_color_tolerance,
            alpha_threshold=config.alpha_threshold,
        )

    def classify_heuristic(self, segment: ImageSegment) -> Classification:
        """Heuristic classification; a failure yields an undecided result instead of raising."""
        try:
            return classify_with_heuristics(segment.image, self.brand_color,
                                            self.brand_color_tolerance, self.alpha_threshold)
        except Exception as e:
            logger.warning(f"[classification] heuristics failed for segment {segment.index}: {e}")
            return replace(UNDECIDED, reasoning=f"heuristic classification failed: {e}")

    def needs_vision(self, heuristic: Classification) -> bool:
        return heuristic.confidence < self.vision_threshold

    async def classify(self, segment: ImageSegment, executor: Executor | None = None,
                       deadline: float | None = None) -> Classification:
        """Classify a single segment, consulting vision if needed."""
        heuristic = self.classify_heuristic(segment)
        if not self.needs_vision(heuristic):
            return heuristic
        if self.vision is None:
            return _annotate(heuristic, "vision classifier not configured")
        return await self._refine(segment, heuristic, executor, deadline)

    async def _refine(self, segment: ImageSegment, heuristic: Classification,
                      executor: Executor | None, deadline: float | None = None) -> Classification:
        loop = asyncio.get_running_loop()
        request = partial(self.vision.classify, segment.data, self.prompt, deadline=deadline)
        try:
            answer = await loop.run_in_executor(executor, request)
            return fuse_classifications(heuristic, parse_vision_response(answer))
        except Exception as e:
            logger.warning(f"[classification] vision failed for segment {segment.index}, "
                           f"keeping heuristic result: {e}")
            return _annotate(heuristic, f"vision classification failed: {e}")

    async def classify_all(self, segments: Sequence[ImageSegment],
                           deadline: float | None = None) -> list[ClassifiedSegment]:
        """
        Classify segments, running vision calls with bounded concurrency.

        Args:
            segments: Segments in extraction order
            deadline: Optional `time.monotonic()` timestamp; segments whose
                      vision call has not finished by then keep their heuristic result

        Returns:
            Classified segments in the same order as `segments`
        """
        heuristics = [self.classify_heuristic(s) for s in segments]
        results = list(heuristics)
        pending = [i for i, h in enumerate(heuristics) if self.needs_vision(h)]

        if pending and self.vision is None:
            for i in pending:
                results[i] = _annotate(heuristics[i], "vision classifier not configured")
            pending = []

        if pending:
            logger.debug(f"[classification] {len(pending)} of {len(segments)} segments need vision")
            semaphore = asyncio.Semaphore(self.concurrency)
            executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="vision")

            async def refine(index: int) -> Classification:
                async with semaphore:
                    return await self._refine(segments[index], heuristics[index], executor, deadline)

            tasks = {i: asyncio.create_task(refine(i)) for i in pending}
            try:
                timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
                done, _ = await asyncio.wait(tasks.values(), timeout=timeout)
            finally:
                for task in tasks.values():
                    if not task.done():
                        task.cancel()
                executor.shutdown(wait=False, cancel_futures=True)

            for i, task in tasks.items():
                if task in done:
                    results[i] = task.result()
                else:
                    logger.warning(f"[classification] deadline exceeded, segment {segments[i].index} "
                                   f"keeps its heuristic result")
                    results[i] = _annotate(heuristics[i], "vision classification skipped, deadline exceeded")

        return [ClassifiedSegment(segment=s, classification=c) for s, c in zip(segments, results)]


def _annotate(classification: Classification, note: str) -> Classification:
    return replace(classification, reasoning=f"{classification.reasoning}; {note}")
