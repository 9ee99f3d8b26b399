#!/usr/bin/env python3
"""
Public API for the sprite slicing library.

This module wires the pipeline stages together:
trim -> projection/cuts -> extraction -> classification -> export.
"""

from __future__ import annotations

import asyncio
import tempfile
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from loguru import logger

from sprite_slicer.classification import SegmentClassifier
from sprite_slicer.errors import Phase, ProcessingError
from sprite_slicer.export import (
    LocalStore,
    SliceStore,
    build_manifest,
    clear_previous_output,
    discard,
    encode_image,
    export_slices,
    write_manifest,
)
from sprite_slicer.models import ProcessingConfig, SliceManifest
from sprite_slicer.projection import build_projection, find_cut_lines
from sprite_slicer.segmentation import extract_segments, filter_segments
from sprite_slicer.trimming import load_image, trim_whitespace
from sprite_slicer.vision import OpenAIVisionClassifier, VisionClassifier
from sprite_slicer.visualization import plot_projection, visualize_cuts


class PipelineState(str, Enum):
    IDLE = "idle"
    TRIMMING = "trimming"
    SEGMENTING = "segmenting"
    CLASSIFYING = "classifying"
    EXPORTING = "exporting"
    DONE = "done"
    FAILED = "failed"


_PHASES = {
    PipelineState.IDLE: Phase.TRIM,
    PipelineState.TRIMMING: Phase.TRIM,
    PipelineState.SEGMENTING: Phase.CUT,
    PipelineState.CLASSIFYING: Phase.CLASSIFY,
    PipelineState.EXPORTING: Phase.EXPORT,
}

# Marker for "build the default OpenAI classifier"; None means heuristics only
_DEFAULT_VISION: Any = object()


@dataclass
class SplitResult:
    """
    Outcome of one `split_sprite` call.

    Attributes:
        success: True if the manifest and all slices were written
        manifest: The manifest on success, None on failure
        slices_generated: Number of exported slices (0 on failure)
        processing_time_sec: Wall clock duration of the call
        error: The failure on unsuccessful runs
    """
    success: bool
    manifest: SliceManifest | None = None
    slices_generated: int = 0
    processing_time_sec: float = 0.0
    error: ProcessingError | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "manifest": self.manifest.to_dict() if self.manifest else None,
            "slices_generated": self.slices_generated,
            "processing_time": round(self.processing_time_sec, 2),
            "error": self.error.to_dict() if self.error else None,
        }


class SpriteSplitter:
    """
    Runs the pipeline for one sprite sheet at a time.

    The splitter keeps no state between runs except `state` and `error`,
    which describe the most recent run.
    """

    def __init__(self, config: ProcessingConfig, store: SliceStore, classifier: SegmentClassifier):
        self.config = config
        self.store = store
        self.classifier = classifier
        self.state = PipelineState.IDLE
        self.error: ProcessingError | None = None

    def _enter(self, state: PipelineState) -> None:
        logger.debug(f"[pipeline] {self.state.value} -> {state.value}")
        self.state = state

    async def process(self, source_path: str | Path, *, deadline_sec: float | None = None,
                      debug: bool = False) -> SliceManifest:
        """
        Split a sprite sheet into classified slices.

        Args:
            source_path: Path of the sprite sheet image
            deadline_sec: Optional time limit for the run; vision calls still
                          pending when it expires are replaced by heuristic results
            debug: If True, also write debug images under "debug/" in the store

        Returns:
            The manifest, after all slices and the manifest file are written

        Raises:
            ProcessingError: On any failure; the temporary directory is removed first
        """
        started = time.perf_counter()
        deadline = None if deadline_sec is None else time.monotonic() + deadline_sec
        self.state = PipelineState.IDLE
        self.error = None

        try:
            with tempfile.TemporaryDirectory(prefix="sprite-split-", ignore_cleanup_errors=True) as work_dir:
                manifest = await self._run(Path(source_path), Path(work_dir), started, deadline, debug)
        except ProcessingError as e:
            self._fail(e)
            raise
        except Exception as e:
            phase = _PHASES.get(self.state, Phase.EXPORT)
            error = ProcessingError(f"Unexpected error while {self.state.value}: {e}", "UNEXPECTED_ERROR",
                                    phase, recoverable=phase is Phase.CLASSIFY)
            self._fail(error)
            raise error from e

        self._enter(PipelineState.DONE)
        return manifest

    def _fail(self, error: ProcessingError) -> None:
        self.error = error
        self._enter(PipelineState.FAILED)

    def _write_debug(self, name: str, data: bytes, written: list[str]) -> None:
        self.store.write(name, data)
        written.append(name)

    async def _run(self, source_path: Path, work_dir: Path, started: float,
                   deadline: float | None, debug: bool) -> SliceManifest:
        cfg = self.config

        self._enter(PipelineState.TRIMMING)
        try:
            data = source_path.read_bytes()
        except OSError as e:
            raise ProcessingError(f"Could not read {source_path}: {e}", "READ_FAILED", Phase.TRIM, False) from e
        original = load_image(data)
        trimmed, offset = trim_whitespace(original, cfg.trim_tolerance)
        height, width = trimmed.shape[:2]
        logger.debug(f"[pipeline] trimmed {original.shape[1]}x{original.shape[0]} "
                     f"to {width}x{height} at offset {offset}")

        self._enter(PipelineState.SEGMENTING)
        profile = build_projection(trimmed, cfg.alpha_threshold)
        h_cuts = find_cut_lines(profile.horizontal, cfg.horizontal_gap_px)
        v_cuts = find_cut_lines(profile.vertical, cfg.vertical_gap_px)
        logger.debug(f"[pipeline] found {len(h_cuts)} horizontal and {len(v_cuts)} vertical cuts")

        segments = extract_segments(trimmed, h_cuts, v_cuts, cfg.tight_bounds, cfg.alpha_threshold)
        kept = filter_segments(segments, width * height, cfg.min_segment_area_fraction)
        logger.info(f"[pipeline] extracted {len(segments)} segments, {len(kept)} above noise threshold")

        self._enter(PipelineState.CLASSIFYING)
        classified = await self.classifier.classify_all(kept, deadline)

        self._enter(PipelineState.EXPORTING)
        clear_previous_output(self.store)
        slices = export_slices(classified, self.store, work_dir,
                               slice_format=cfg.slice_format,
                               confidence_threshold=cfg.confidence_threshold)
        written = [s.filename for s in slices]

        try:
            if debug:
                try:
                    self._write_debug("debug/trimmed.png", encode_image(trimmed), written)
                    cuts = visualize_cuts(trimmed, h_cuts, v_cuts, [s.bounds for s in kept])
                    self._write_debug("debug/cuts.png", encode_image(cuts), written)
                    chart = plot_projection(profile, cfg.horizontal_gap_px, cfg.vertical_gap_px)
                    self._write_debug("debug/projection.png", chart, written)
                except (OSError, ValueError) as e:
                    raise ProcessingError(f"Failed to write debug images: {e}", "EXPORT_FAILED",
                                          Phase.EXPORT, False) from e

            elapsed = time.perf_counter() - started
            budget_exceeded = elapsed * 1000 > cfg.max_processing_time_ms
            if budget_exceeded:
                logger.warning(f"[pipeline] took {elapsed * 1000:.0f}ms, "
                               f"over the {cfg.max_processing_time_ms}ms budget")

            manifest = build_manifest(slices, elapsed, str(source_path), cfg, extra={
                "trimmed_size": {"width": width, "height": height},
                "trim_offset": {"x": offset[0], "y": offset[1]},
                "segments_extracted": len(segments),
                "segments_filtered": len(segments) - len(kept),
                "budget_exceeded": budget_exceeded,
            })
            write_manifest(manifest, self.store)
        except Exception:
            discard(self.store, written)
            raise
        return manifest


async def split_sprite_async(
    source_path: str | Path,
    config: ProcessingConfig | Mapping[str, Any] | None = None,
    *,
    output_dir: str | Path | None = None,
    store: SliceStore | None = None,
    vision: VisionClassifier | None = _DEFAULT_VISION,
    deadline_sec: float | None = None,
    debug: bool = False,
) -> SplitResult:
    """
    Split a sprite sheet into classified slice files plus a manifest.

    Never raises for pipeline failures; they are returned in `SplitResult.error`.

    Args:
        source_path: Path of the sprite sheet image
        config: A ProcessingConfig, or a mapping overriding some of its defaults
        output_dir: Directory for slices and manifest; defaults to
                    "<source stem>_slices" next to the source image
        store: Destination store, takes precedence over `output_dir`
        vision: Vision classifier for inconclusive segments. Defaults to the
                OpenAI classifier; pass None to use heuristics only.
        deadline_sec: Optional time limit, see `SpriteSplitter.process`
        debug: If True, write debug images as well

    Returns:
        SplitResult describing the run

    Example:
        >>> from sprite_slicer import split_sprite
        >>>
        >>> result = split_sprite("sprite.png", {"horizontal_gap_px": 20})
        >>> if result.success:
        >>>     for s in result.manifest.slices:
        >>>         print(s.filename, s.type.value, s.confidence)
        >>> else:
        >>>     print(result.error.phase.value, result.error.code, result.error.message)
    """
    started = time.perf_counter()
    logger.info(f"[sprite_slicer] splitting {source_path}")

    try:
        cfg = config if isinstance(config, ProcessingConfig) else ProcessingConfig.from_overrides(config)
    except (TypeError, ValueError) as e:
        error = ProcessingError(f"Invalid configuration: {e}", "INVALID_CONFIG", Phase.TRIM, False)
        logger.error(f"[sprite_slicer] {error.message}")
        return SplitResult(success=False, error=error, processing_time_sec=time.perf_counter() - started)

    if store is None:
        source = Path(source_path)
        store = LocalStore(output_dir if output_dir is not None else source.parent / f"{source.stem}_slices")

    if vision is _DEFAULT_VISION:
        vision = OpenAIVisionClassifier()

    splitter = SpriteSplitter(cfg, store, SegmentClassifier.from_config(cfg, vision))
    try:
        manifest = await splitter.process(source_path, deadline_sec=deadline_sec, debug=debug)
    except ProcessingError as e:
        if e.recoverable:
            logger.warning(f"[sprite_slicer] recoverable error in {e.phase.value} phase: {e.message}")
        else:
            logger.error(f"[sprite_slicer] {e.code} in {e.phase.value} phase: {e.message}")
        return SplitResult(success=False, error=e, processing_time_sec=time.perf_counter() - started)

    logger.info(f"[sprite_slicer] {len(manifest.slices)} slice(s) generated "
                f"in {manifest.processing_time:.2f}s, accuracy {manifest.accuracy_score:.2f}")
    return SplitResult(
        success=True,
        manifest=manifest,
        slices_generated=len(manifest.slices),
        processing_time_sec=manifest.processing_time,
    )


def split_sprite(
    source_path: str | Path,
    config: ProcessingConfig | Mapping[str, Any] | None = None,
    *,
    output_dir: str | Path | None = None,
    store: SliceStore | None = None,
    vision: VisionClassifier | None = _DEFAULT_VISION,
    deadline_sec: float | None = None,
    debug: bool = False,
) -> SplitResult:
    """
    Synchronous wrapper around `split_sprite_async`.

    Must not be called from inside a running event loop; await
    `split_sprite_async` there instead.
    """
    return asyncio.run(split_sprite_async(
        source_path, config,
        output_dir=output_dir, store=store, vision=vision,
        deadline_sec=deadline_sec, debug=debug,
    ))
