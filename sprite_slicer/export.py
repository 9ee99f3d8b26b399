"""
Functions for saving classified segments as slice files and writing the manifest.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Protocol, Sequence

import cv2
import numpy as np
from loguru import logger

from sprite_slicer.errors import Phase, ProcessingError
from sprite_slicer.models import ClassifiedSegment, ProcessingConfig, SliceManifest, SpriteSlice

MANIFEST_NAME = "manifest.json"


class SliceStore(Protocol):
    """Where slice files and the manifest end up."""

    def open(self, name: str, mode: str = "rb") -> IO: ...

    def read(self, name: str) -> bytes: ...

    def write(self, name: str, data: bytes) -> str: ...

    def delete(self, name: str) -> None: ...

    def list(self, pattern: str = "*") -> list[str]: ...


class LocalStore:
    """
    A directory on the local file system.

    Writes go to a temporary file in the target directory that is renamed
    into place, so readers never see a partially written file.
    """

    def __init__(self, root: str | os.PathLike):
        self.root = Path(root)

    def _path(self, name: str) -> Path:
        path = (self.root / name).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"{name!r} is outside of the store")
        return path

    def open(self, name: str, mode: str = "rb") -> IO:
        return open(self._path(name), mode)

    def read(self, name: str) -> bytes:
        return self._path(name).read_bytes()

    def write(self, name: str, data: bytes) -> str:
        path = self._path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return str(path)

    def delete(self, name: str) -> None:
        self._path(name).unlink(missing_ok=True)

    def list(self, pattern: str = "*") -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.relative_to(self.root).as_posix() for p in self.root.glob(pattern) if p.is_file())


def encode_image(img: np.ndarray, fmt: str = "png") -> bytes:
    """Encode a BGRA image, raising ValueError if OpenCV refuses."""
    ok, encoded = cv2.imencode(f".{fmt}", img)
    if not ok:
        raise ValueError(f"Could not encode image as {fmt}")
    return encoded.tobytes()


def slice_filename(index: int, segment: ClassifiedSegment, fmt: str) -> str:
    return f"slice_{index + 1}_{segment.classification.type.value}.{fmt}"


def discard(store: SliceStore, names: Sequence[str]) -> None:
    """Remove files written by a failed run, logging any that cannot be removed."""
    for name in reversed(names):
        try:
            store.delete(name)
        except OSError as e:
            logger.warning(f"[export] could not remove {name}: {e}")
    if names:
        logger.info(f"[export] rolled back {len(names)} file(s)")


def clear_previous_output(store: SliceStore) -> None:
    """
    Remove the slices, manifest and debug images of an earlier run.

    The output directory always holds the results of a single run.

    Raises:
        ProcessingError: If an old file cannot be removed (phase "export")
    """
    old = store.list("slice_*") + store.list(MANIFEST_NAME) + store.list("debug/*")
    try:
        for name in old:
            store.delete(name)
    except OSError as e:
        raise ProcessingError(f"Failed to clear previous output: {e}", "EXPORT_FAILED", Phase.EXPORT, False) from e
    if old:
        logger.debug(f"[export] removed {len(old)} file(s) from a previous run")


def export_slices(
    segments: Sequence[ClassifiedSegment],
    store: SliceStore,
    work_dir: str | os.PathLike,
    *,
    slice_format: str = "png",
    confidence_threshold: float = 0.9,
) -> list[SpriteSlice]:
    """
    Save each classified segment as an individual file.

    All slices are encoded and staged in `work_dir` first; nothing is written
    to the store unless every slice was staged. If a store write fails, the
    slices already written are deleted again.

    Args:
        segments: Classified segments in extraction order
        store: Destination store
        work_dir: Scratch directory owned by the current run
        slice_format: Output image format ("png" or "webp")
        confidence_threshold: Slices below this confidence get `needs_review` set

    Returns:
        One SpriteSlice per segment, in the same order

    Raises:
        ProcessingError: If any slice cannot be encoded or written (phase "export")
    """
    staging = Path(work_dir) / "slices"
    slices = []

    try:
        staging.mkdir(parents=True, exist_ok=True)
        staged: list[tuple[str, Path]] = []

        for i, segment in enumerate(segments):
            filename = slice_filename(i, segment, slice_format)
            if slice_format == "png":
                data = segment.segment.data
            else:
                data = encode_image(segment.segment.image, slice_format)

            staged_path = staging / filename
            staged_path.write_bytes(data)
            staged.append((filename, staged_path))

            classification = segment.classification
            slices.append(SpriteSlice(
                filename=filename,
                type=classification.type,
                confidence=classification.confidence,
                bounds=segment.bounds,
                size_kb=round(len(data) / 1024, 2),
                metadata={
                    **segment.segment.metadata,
                    "classification_reasoning": classification.reasoning,
                    "heuristic_score": classification.heuristic_score,
                    "vision_score": classification.vision_score,
                    "needs_review": classification.confidence < confidence_threshold,
                }
            ))

    except (OSError, ValueError, cv2.error) as e:
        raise ProcessingError(f"Failed to save slices: {e}", "EXPORT_FAILED", Phase.EXPORT, False) from e

    committed: list[str] = []
    try:
        for filename, staged_path in staged:
            store.write(filename, staged_path.read_bytes())
            committed.append(filename)
    except (OSError, ValueError) as e:
        discard(store, committed)
        raise ProcessingError(f"Failed to save slices: {e}", "EXPORT_FAILED", Phase.EXPORT, False) from e

    logger.info(f"[export] saved {len(slices)} slice(s)")
    return slices


def build_manifest(
    slices: Sequence[SpriteSlice],
    elapsed_sec: float,
    source_path: str,
    config: ProcessingConfig,
    extra: dict[str, Any] | None = None,
) -> SliceManifest:
    """
    Assemble the manifest for a finished run.

    `accuracy_score` is the mean slice confidence, or 0 with no slices.
    """
    accuracy = sum(s.confidence for s in slices) / len(slices) if slices else 0.0
    metadata = {
        "original_image": str(source_path),
        "processing_config": config.to_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **(extra or {}),
    }
    return SliceManifest(
        slices=tuple(slices),
        processing_time=elapsed_sec,
        accuracy_score=accuracy,
        metadata=metadata,
    )


def write_manifest(manifest: SliceManifest, store: SliceStore, name: str = MANIFEST_NAME) -> str:
    """Serialise the manifest as JSON into the store."""
    try:
        payload = json.dumps(manifest.to_dict(), indent=2, ensure_ascii=False)
        return store.write(name, payload.encode("utf-8"))
    except (OSError, TypeError, ValueError) as e:
        raise ProcessingError(f"Failed to write manifest: {e}", "EXPORT_FAILED", Phase.EXPORT, False) from e
