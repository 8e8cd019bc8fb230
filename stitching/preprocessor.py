"""Per-frame preprocessing.

Steps, in fixed order:
1. Undo the frame's pose prior (if one is known)
2. Depth range filter along the sensor axis
3. Wall segmentation
4. Statistical outlier removal (optional)
5. Voxel downsampling (optional)

The preprocessor only produces a new cloud; it never touches the
stitched model.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .config import PreprocessConfig
from .geometry import as_points, downsample, range_filter, remove_outliers, rigid_transform
from .transform_store import PosePriorTable
from .wall_segmenter import WallSegmenter

logger = logging.getLogger(__name__)


@dataclass
class FramePreprocessor:
    """Filter one raw frame into wall-plane points in the common frame."""

    config: PreprocessConfig = field(default_factory=PreprocessConfig)
    segmenter: WallSegmenter = field(default_factory=WallSegmenter)
    priors: Optional[PosePriorTable] = None

    def apply_prior(self, points: np.ndarray, frame_index: int) -> np.ndarray:
        """Bring a frame into the common reference frame using its prior."""
        if self.priors is None:
            return points
        record = self.priors.get(frame_index)
        if record is None or record.is_identity:
            return points
        if record.confidence < self.config.min_confidence:
            logger.debug(
                f"Frame {frame_index}: prior confidence {record.confidence:.2f} "
                f"below {self.config.min_confidence}, not applied"
            )
            return points
        return rigid_transform(points, record.correction_matrix(degrees=self.priors.degrees))

    def preprocess(self, raw_cloud: np.ndarray, frame_index: int) -> np.ndarray:
        """Run every preprocessing stage on one frame.

        Args:
            raw_cloud: Nx3 points as read from disk
            frame_index: Index parsed from the frame's file name

        Returns:
            Filtered Nx3 cloud (possibly empty)
        """
        points = as_points(raw_cloud)
        n_raw = len(points)

        points = self.apply_prior(points, frame_index)

        lo, hi = self.config.depth_range
        points = range_filter(points, self.config.depth_axis, lo, hi)

        if self.config.segment_walls:
            points = self.segmenter.segment(points)

        if self.config.remove_outliers:
            points = remove_outliers(
                points, self.config.outlier_neighbors, self.config.outlier_std_ratio
            )

        if self.config.leaf_size:
            points = downsample(points, self.config.leaf_size)

        logger.debug(f"Frame {frame_index}: {n_raw} -> {len(points)} points after preprocessing")
        return points
