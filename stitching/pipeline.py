"""Scan stitching pipeline.

This module runs the complete pipeline:
1. Discover frame files and order them by frame index
2. Load pose priors (optional) and key them by the same index
3. Preprocess every frame (prior, depth filter, wall segmentation)
4. Register each frame against the stitched model (stitch mode only)
5. Merge under the model lock, bounded to W concurrent workers
6. Final downsample and export

Usage:
    python -m stitching.pipeline -d scans/ -t scans/poses.csv
    python -m stitching.pipeline -f scans/scanD3.pcd --mode cleanup

Setup errors (bad arguments, no frames, malformed pose priors) end the
run with exit code 1. Per-frame failures are reported in the summary and
the remaining frames are still stitched.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from .cloud_io import write_cloud
from .config import StitchConfig, load_config
from .errors import (
    FrameWriteError,
    InvalidArgumentsError,
    MalformedInputError,
    NoEligibleFramesError,
)
from .geometry import seed_random
from .preprocessor import FramePreprocessor
from .registration import RegistrationEngine
from .scheduler import BatchReport, BatchScheduler, FrameDescriptor, discover_frames
from .stitched_model import StitchedModel
from .transform_store import REMAINDER_POLICIES, PosePriorTable, TransformStore
from .wall_segmenter import WallSegmenter

logger = logging.getLogger(__name__)

MODES = ("cleanup", "stitch")


@dataclass
class PipelineResult:
    """Result of one stitching run."""

    success: bool
    input_path: str
    output_path: str
    mode: str = "stitch"

    # Frame counts
    num_frames: int = 0
    num_merged: int = 0
    num_skipped: int = 0
    num_points_out: int = 0

    # Per-frame outcomes and timing
    frames: List[Dict[str, Any]] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    # Issues and warnings
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    processing_time_sec: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        def convert_value(v):
            """Convert numpy types to Python native types."""
            if isinstance(v, (np.bool_, np.integer)):
                return int(v)
            elif isinstance(v, np.floating):
                return float(v)
            elif isinstance(v, np.ndarray):
                return v.tolist()
            elif isinstance(v, dict):
                return {k: convert_value(vv) for k, vv in v.items()}
            elif isinstance(v, list):
                return [convert_value(vv) for vv in v]
            return v

        return convert_value(asdict(self))


def default_output_path(input_path: Path | str, output_name: str = "filtered.pcd") -> Path:
    """Fixed-name output next to the frames: inside a directory, beside a file."""
    input_path = Path(input_path)
    directory = input_path.parent if input_path.is_file() else input_path
    return directory / output_name


@dataclass
class StitchingPipeline:
    """Stitch a directory (or single file) of frames into one cloud.

    The two variants are configurations of the same pipeline:
    ``StitchConfig.cleanup()`` filters and unions every frame without
    registration, ``StitchConfig.stitching()`` registers each frame
    against the growing model.
    """

    config: StitchConfig = field(default_factory=StitchConfig.stitching)

    # Processing state
    frames: List[FrameDescriptor] = field(default_factory=list)
    priors: Optional[PosePriorTable] = None
    model: Optional[StitchedModel] = None
    batch: Optional[BatchReport] = None
    merged_points: Optional[np.ndarray] = None

    result: PipelineResult = field(default_factory=lambda: PipelineResult(
        success=False, input_path="", output_path=""
    ))

    @property
    def mode(self) -> str:
        return "stitch" if self.config.registration.enabled else "cleanup"

    def discover(self, input_path: Path | str) -> List[FrameDescriptor]:
        """Find the eligible frames. Raises NoEligibleFramesError."""
        self.frames = discover_frames(
            input_path,
            extensions=self.config.scheduler.extensions,
            output_name=self.config.scheduler.output_name
        )
        self.result.num_frames = len(self.frames)
        return self.frames

    def load_priors(self, transforms_path: Optional[Path | str] = None) -> PosePriorTable:
        """Build the frame index -> pose prior table. Raises MalformedInputError."""
        store = TransformStore(config=self.config.pose_priors)
        self.priors = store.build(transforms_path, [f.index for f in self.frames])
        self.result.warnings.extend(self.priors.warnings)
        if transforms_path is not None:
            logger.info(f"Loaded pose priors for {len(self.priors)} frames")
        return self.priors

    def build_model(self) -> StitchedModel:
        """Wire the preprocessor, registration engine and merge settings."""
        preprocessor = FramePreprocessor(
            config=self.config.preprocess,
            segmenter=WallSegmenter(config=self.config.walls),
            priors=self.priors
        )
        registration = None
        if self.config.registration.enabled:
            registration = RegistrationEngine(config=self.config.registration)
        self.model = StitchedModel(preprocessor, registration, self.config.merge)
        return self.model

    def stitch(self) -> np.ndarray:
        """Run every frame through the worker pool and finalize the model."""
        if self.model is None:
            self.build_model()

        scheduler = BatchScheduler(config=self.config.scheduler)
        self.batch = scheduler.run(self.frames, self.model)
        self.merged_points = self.model.finalize(self.config.merge.final_leaf_size)

        self.result.frames = [asdict(r) for r in self.batch.frames]
        self.result.num_merged = len(self.batch.merged)
        self.result.num_skipped = len(self.batch.skipped)
        self.result.num_points_out = len(self.merged_points)

        for report in self.batch.skipped:
            message = f"Frame {report.frame_index} {report.status}"
            if report.error:
                message += f": {report.error}"
            if report.status in ("failed", "timeout"):
                self.result.errors.append(message)
            else:
                self.result.warnings.append(message)
        for report in self.batch.merged:
            if report.registration and not report.registration["valid"]:
                self.result.warnings.append(
                    f"Registration frame {report.frame_index}: "
                    + "; ".join(report.registration["issues"])
                )
        return self.merged_points

    def export(self, output_path: Path | str) -> Path:
        """Write the merged cloud. Raises FrameWriteError."""
        if self.merged_points is None or len(self.merged_points) == 0:
            raise FrameWriteError("No points survived stitching; nothing to write")
        path = write_cloud(self.merged_points, output_path)
        self.result.output_path = str(path)
        return path

    def run(
        self,
        input_path: Path | str,
        transforms_path: Optional[Path | str] = None,
        output_path: Optional[Path | str] = None
    ) -> PipelineResult:
        """Run the complete pipeline.

        Args:
            input_path: Frame directory or single frame file
            transforms_path: Optional pose prior file
            output_path: Where to write the merged cloud; defaults to the
                configured output name next to the input

        Returns:
            PipelineResult with per-frame outcomes and timing

        Raises:
            NoEligibleFramesError: no frame files found
            MalformedInputError: the pose prior file could not be used
        """
        start_time = time.time()

        if output_path is None:
            output_path = default_output_path(input_path, self.config.scheduler.output_name)

        self.result = PipelineResult(
            success=False,
            input_path=str(input_path),
            output_path=str(output_path),
            mode=self.mode
        )
        if self.config.random_seed is not None:
            seed_random(self.config.random_seed)

        self.discover(input_path)
        self.load_priors(transforms_path)
        self.build_model()

        logger.info(
            f"Stitching {len(self.frames)} frames in {self.mode} mode "
            f"with {self.config.scheduler.workers} workers"
        )
        self.stitch()

        self.result.processing_time_sec = time.time() - start_time
        self.model.diagnostics.total_time = self.result.processing_time_sec

        written = False
        try:
            self.export(output_path)
            written = True
        except FrameWriteError as e:
            logger.error(str(e))
            self.result.errors.append(str(e))

        self.result.diagnostics = self.model.diagnostics.to_dict()
        self.result.success = written and self.result.num_merged > 0
        return self.result


def stitch_frames(
    input_path: Path | str,
    transforms_path: Optional[Path | str] = None,
    output_path: Optional[Path | str] = None,
    config: Optional[StitchConfig] = None
) -> PipelineResult:
    """Convenience function for a full stitching run."""
    pipeline = StitchingPipeline(config=config or StitchConfig.stitching())
    return pipeline.run(input_path, transforms_path, output_path)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scan-stitch",
        description="Stitch range scan frames into one merged, downsampled point cloud"
    )
    parser.add_argument("-f", "--file", help="Process a single frame file")
    parser.add_argument("-d", "--directory", help="Process every frame file in a directory")
    parser.add_argument("-t", "--transforms", help="Pose prior file (delimited text)")
    parser.add_argument("-c", "--config", help="Path to JSON config file")
    parser.add_argument("-w", "--workers", type=int, help="Concurrent frame workers")
    parser.add_argument(
        "--mode", choices=MODES, default="stitch",
        help="cleanup: filter and union; stitch: register every frame (default)"
    )
    parser.add_argument("--timeout", type=float, help="Per-frame timeout in seconds")
    parser.add_argument("-o", "--output", help="Output file (default: filtered.pcd next to the input)")
    parser.add_argument("--summary", help="Write the run summary as JSON")
    parser.add_argument("--seed", type=int, help="Random seed for RANSAC stages")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def parse_args(parser: argparse.ArgumentParser, argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse and validate arguments. Raises InvalidArgumentsError."""
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        if e.code == 0:
            raise
        raise InvalidArgumentsError("could not parse arguments") from e

    if bool(args.file) == bool(args.directory):
        raise InvalidArgumentsError("exactly one of -f or -d is required")
    if args.file and not Path(args.file).is_file():
        raise InvalidArgumentsError(f"frame file not found: {args.file}")
    if args.directory and not Path(args.directory).is_dir():
        raise InvalidArgumentsError(f"directory not found: {args.directory}")
    if args.transforms and not Path(args.transforms).is_file():
        raise InvalidArgumentsError(f"pose prior file not found: {args.transforms}")
    if args.config and not Path(args.config).is_file():
        raise InvalidArgumentsError(f"config file not found: {args.config}")
    if args.workers is not None and args.workers < 1:
        raise InvalidArgumentsError("--workers must be at least 1")
    if args.timeout is not None and args.timeout <= 0:
        raise InvalidArgumentsError("--timeout must be positive")
    return args


def config_from_args(args: argparse.Namespace) -> StitchConfig:
    """Preset for the mode, overlaid by the config file, overlaid by flags.

    Raises:
        ValueError: if the config file holds an unusable value
    """
    base = StitchConfig.cleanup() if args.mode == "cleanup" else StitchConfig.stitching()
    config = load_config(args.config, base=base)
    if config.pose_priors.remainder_policy not in REMAINDER_POLICIES:
        raise ValueError(
            f"unknown remainder_policy {config.pose_priors.remainder_policy!r}, "
            f"expected one of {', '.join(REMAINDER_POLICIES)}"
        )

    if args.workers is not None:
        config.scheduler.workers = args.workers
    if args.timeout is not None:
        config.scheduler.frame_timeout = args.timeout
    if args.seed is not None:
        config.random_seed = args.seed
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    parser = build_parser()

    try:
        args = parse_args(parser, argv)
    except InvalidArgumentsError as e:
        print(f"Error: {e}", file=sys.stderr)
        parser.print_help(sys.stderr)
        return 1

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = config_from_args(args)
    except (OSError, ValueError) as e:
        print(f"Error: could not load config {args.config}: {e}", file=sys.stderr)
        return 1

    pipeline = StitchingPipeline(config=config)
    input_path = args.file or args.directory

    try:
        result = pipeline.run(input_path, args.transforms, args.output)
    except (NoEligibleFramesError, MalformedInputError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.summary:
        with open(args.summary, "w") as f:
            json.dump(result.to_dict(), f, indent=2)

    # Print summary
    print("\n" + "=" * 60)
    print("STITCHING SUMMARY")
    print("=" * 60)
    print(f"Status: {'SUCCESS' if result.success else 'FAILED'}")
    print(f"Mode: {result.mode}")
    print(f"Frames: {result.num_merged}/{result.num_frames} merged")
    print(f"Points: {result.num_points_out}")
    print(f"Output: {result.output_path}")
    print(pipeline.model.diagnostics.format())

    if result.warnings:
        print(f"\nWarnings ({len(result.warnings)}):")
        for w in result.warnings:
            print(f"  - {w}")

    if result.errors:
        print(f"\nErrors ({len(result.errors)}):")
        for e in result.errors:
            print(f"  - {e}")

    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
