"""Exception types raised by the stitching pipeline.

Only setup errors (bad arguments, no frames, malformed pose priors) are
fatal to a run. Per-frame errors are recorded and the batch carries on.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional


class StitchingError(Exception):
    """Base class for all stitching errors."""


class InvalidArgumentsError(StitchingError):
    """Missing or unrecognised command line input."""


class NoEligibleFramesError(StitchingError):
    """No frame files survived discovery and filtering."""


class MalformedInputError(StitchingError):
    """A pose prior file could not be parsed or aggregated."""

    def __init__(self, message: str, line_number: Optional[int] = None):
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)
        self.line_number = line_number


class FrameReadError(StitchingError):
    """A frame file could not be opened or contained no points."""

    def __init__(self, path: Path | str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = Path(path)
        self.reason = reason


class FrameWriteError(StitchingError):
    """The merged cloud could not be written."""


class DegenerateGeometryError(StitchingError):
    """Too few points for a fit; callers skip the region, band or stage."""


class FrameTimeoutError(StitchingError):
    """A frame did not finish within the configured per-frame timeout."""
