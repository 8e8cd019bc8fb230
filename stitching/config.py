"""Configuration settings for the scan stitching pipeline."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, asdict
from typing import Optional, Tuple


@dataclass
class PosePriorConfig:
    """Layout of the delimited pose prior measurement file."""
    delimiter: Optional[str] = ";"  # None splits on whitespace
    header_rows: int = 1
    skip_columns: int = 1  # leading label columns
    rows_per_frame: Optional[int] = 10  # None derives it from the frame count
    remainder_policy: str = "error"  # "error", "drop" or "average"
    skip_malformed_rows: bool = False
    default_confidence: float = 1.0
    degrees: bool = False
    relative_to_first: bool = False


@dataclass
class WallSegmenterConfig:
    """Lateral/longitudinal partition and per-band plane fit parameters."""
    # min_x, mid_x, max_x, min_y, mid_y, max_y
    lateral_bounds: Tuple[float, ...] = (-5.0, 0.0, 5.0, -5.0, 0.0, 5.0)
    min_points: int = 5
    outlier_neighbors: int = 50
    outlier_std_ratio: float = 1.0
    band_top: float = 0.0
    band_width: float = 1.0
    band_count: int = 5
    distance_threshold: float = 0.1
    ransac_iterations: int = 1000


@dataclass
class PreprocessConfig:
    """Per-frame filtering applied before registration."""
    depth_axis: str = "z"
    depth_range: Tuple[float, float] = (-5.0, 0.0)
    segment_walls: bool = True
    remove_outliers: bool = False
    outlier_neighbors: int = 50
    outlier_std_ratio: float = 1.0
    leaf_size: Optional[float] = None
    min_confidence: float = 0.0


@dataclass
class RegistrationConfig:
    """Coarse (FPFH + RANSAC) then fine (ICP) alignment parameters."""
    enabled: bool = True
    max_iterations: int = 50
    normal_neighbors: int = 30
    feature_neighbors: int = 100  # must exceed normal_neighbors
    max_correspondence_distance: float = 0.5
    min_points: int = 10
    fitness_threshold: float = 0.3  # minimum 30% correspondences
    rmse_threshold: float = 0.2


@dataclass
class MergeConfig:
    """Stitched model downsampling."""
    merge_leaf_size: Optional[float] = 0.1
    final_leaf_size: float = 0.1
    seed_outlier_neighbors: int = 50
    seed_outlier_std_ratio: float = 2.0


@dataclass
class SchedulerConfig:
    """Worker pool and frame discovery."""
    workers: int = 4
    frame_timeout: Optional[float] = None  # seconds, None waits forever
    extensions: Tuple[str, ...] = (".pcd",)
    output_name: str = "filtered.pcd"


@dataclass
class StitchConfig:
    """Main stitching configuration."""
    pose_priors: PosePriorConfig = field(default_factory=PosePriorConfig)
    walls: WallSegmenterConfig = field(default_factory=WallSegmenterConfig)
    preprocess: PreprocessConfig = field(default_factory=PreprocessConfig)
    registration: RegistrationConfig = field(default_factory=RegistrationConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    random_seed: Optional[int] = None

    @classmethod
    def cleanup(cls) -> "StitchConfig":
        """Single-pass parallel variant: filter every frame, union, downsample once."""
        config = cls()
        config.registration.enabled = False
        config.merge.merge_leaf_size = None
        return config

    @classmethod
    def stitching(cls) -> "StitchConfig":
        """Incremental variant: every frame is registered against the model."""
        config = cls()
        config.registration.enabled = True
        config.preprocess.remove_outliers = True
        config.preprocess.leaf_size = 0.1
        config.merge.merge_leaf_size = 0.1
        return config

    @classmethod
    def from_dict(cls, data: dict, base: Optional["StitchConfig"] = None) -> "StitchConfig":
        """Overlay a (possibly partial) nested dict onto a config."""
        config = base if base is not None else cls()
        for section in ("pose_priors", "walls", "preprocess", "registration", "merge", "scheduler"):
            if section in data:
                target = getattr(config, section)
                for k, v in data[section].items():
                    if hasattr(target, k):
                        setattr(target, k, v)
        if "random_seed" in data:
            config.random_seed = data["random_seed"]
        return config

    @classmethod
    def from_file(cls, path: str, base: Optional["StitchConfig"] = None) -> "StitchConfig":
        """Load configuration from JSON file."""
        with open(path) as f:
            data = json.load(f)
        return cls.from_dict(data, base=base)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)

    def save(self, path: str):
        """Save configuration to JSON file."""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


# Default config file locations
DEFAULT_CONFIG_PATHS = [
    "/etc/scanstitch/config.json",
    os.path.expanduser("~/.config/scanstitch/config.json"),
    "./scanstitch_config.json",
]


def load_config(path: Optional[str] = None, base: Optional[StitchConfig] = None) -> StitchConfig:
    """Load configuration from file or return defaults."""
    if path and os.path.exists(path):
        return StitchConfig.from_file(path, base=base)

    for p in DEFAULT_CONFIG_PATHS:
        if os.path.exists(p):
            return StitchConfig.from_file(p, base=base)

    return base if base is not None else StitchConfig()
