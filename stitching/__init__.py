"""Scan stitching package.

Merges a sequence of range-sensor point cloud frames, captured from
different positions, into one denoised point cloud.

Modules:
- pipeline: Discovery, pose priors, scheduling and export; CLI
- transform_store: Pose prior parsing and per-frame aggregation
- wall_segmenter: Lateral/longitudinal partition with per-band plane fits
- preprocessor: Per-frame prior, depth filter and wall segmentation
- registration: FPFH + RANSAC coarse alignment, ICP refinement
- stitched_model: Lock-guarded merged cloud with timing diagnostics
- scheduler: Frame ordering and the bounded worker pool
- geometry: Open3D/SciPy backed point cloud primitives
- cloud_io: Point cloud file reading and writing
"""

from .config import StitchConfig, load_config
from .errors import (
    StitchingError,
    InvalidArgumentsError,
    NoEligibleFramesError,
    MalformedInputError,
    FrameReadError,
    FrameWriteError,
    DegenerateGeometryError,
    FrameTimeoutError,
)
from .pipeline import StitchingPipeline, PipelineResult, stitch_frames
from .transform_store import TransformRecord, TransformStore, PosePriorTable, load_pose_priors
from .wall_segmenter import WallSegmenter, WallSegment, segment_walls
from .preprocessor import FramePreprocessor
from .registration import RegistrationEngine, RegistrationResult
from .stitched_model import StitchedModel, StitchDiagnostics, FrameReport, FrameTicket
from .scheduler import BatchScheduler, BatchReport, FrameDescriptor, discover_frames
from .cloud_io import read_frame, write_cloud

__all__ = [
    # Config
    "StitchConfig",
    "load_config",
    # Errors
    "StitchingError",
    "InvalidArgumentsError",
    "NoEligibleFramesError",
    "MalformedInputError",
    "FrameReadError",
    "FrameWriteError",
    "DegenerateGeometryError",
    "FrameTimeoutError",
    # Pipeline
    "StitchingPipeline",
    "PipelineResult",
    "stitch_frames",
    # Pose priors
    "TransformRecord",
    "TransformStore",
    "PosePriorTable",
    "load_pose_priors",
    # Wall segmentation
    "WallSegmenter",
    "WallSegment",
    "segment_walls",
    # Preprocessing and registration
    "FramePreprocessor",
    "RegistrationEngine",
    "RegistrationResult",
    # Stitched model
    "StitchedModel",
    "StitchDiagnostics",
    "FrameReport",
    "FrameTicket",
    # Scheduling
    "BatchScheduler",
    "BatchReport",
    "FrameDescriptor",
    "discover_frames",
    # I/O
    "read_frame",
    "write_cloud",
]
