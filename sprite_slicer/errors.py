"""
Error types raised by the sprite slicing pipeline.
"""

from __future__ import annotations

from enum import Enum


class Phase(str, Enum):
    """Pipeline phase in which a failure happened."""
    TRIM = "trim"
    CUT = "cut"
    CLASSIFY = "classify"
    EXPORT = "export"


class ProcessingError(Exception):
    """
    A failure inside the pipeline, normalised to a single shape.

    Attributes:
        message: Human readable description
        code: Machine checkable error code, e.g. "TRIM_FAILED"
        phase: Phase in which the error happened
        recoverable: True if the run may continue (only classification errors are)
    """

    def __init__(self, message: str, code: str, phase: Phase, recoverable: bool = False):
        super().__init__(message)
        self.message = message
        self.code = code
        self.phase = Phase(phase)
        self.recoverable = recoverable

    def to_dict(self) -> dict[str, str | bool]:
        return {
            "message": self.message,
            "code": self.code,
            "phase": self.phase.value,
            "recoverable": self.recoverable,
        }

    def __repr__(self) -> str:
        return (f"ProcessingError(code={self.code!r}, phase={self.phase.value!r}, "
                f"recoverable={self.recoverable}, message={self.message!r})")


class VisionClassifierError(RuntimeError):
    """Raised by vision classifiers that cannot produce an answer."""
