"""Planar wall segmentation of a single frame.

The frame is partitioned into four lateral regions (two x ranges, two y
ranges) and each region into fixed-width longitudinal bands along z:

1. Pass-through filter per lateral region
2. Statistical outlier removal within the region
3. Split the region into z bands
4. RANSAC plane fit per band, keeping only the plane's inliers
5. Concatenate the inliers of every band of every region

Regions and bands with too few points are skipped, not treated as errors;
sparse frames are expected at the edges of a scan.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import WallSegmenterConfig
from .errors import DegenerateGeometryError
from .geometry import (
    as_points, concatenate, fit_plane_ransac, range_filter, remove_outliers
)

logger = logging.getLogger(__name__)

REGION_NAMES = ("x_low", "x_high", "y_low", "y_high")


@dataclass
class LateralRegion:
    """One of the four wall regions."""
    name: str
    axis: int
    lo: float
    hi: float


@dataclass
class WallSegment:
    """Plane inliers of one band of one lateral region."""
    region: str
    band: int
    z_range: Tuple[float, float]
    plane_model: np.ndarray  # [a, b, c, d]
    points: np.ndarray

    @property
    def normal(self) -> np.ndarray:
        """Unit plane normal."""
        n = self.plane_model[:3]
        norm = np.linalg.norm(n)
        return n / norm if norm > 0 else n

    @property
    def point_count(self) -> int:
        return len(self.points)


def lateral_regions(bounds: Sequence[float]) -> List[LateralRegion]:
    """Expand ``{min_x, mid_x, max_x, min_y, mid_y, max_y}`` into regions."""
    if len(bounds) != 6:
        raise ValueError(f"lateral bounds need 6 values, got {len(bounds)}")
    min_x, mid_x, max_x, min_y, mid_y, max_y = (float(b) for b in bounds)
    return [
        LateralRegion("x_low", 0, min_x, mid_x),
        LateralRegion("x_high", 0, mid_x, max_x),
        LateralRegion("y_low", 1, min_y, mid_y),
        LateralRegion("y_high", 1, mid_y, max_y),
    ]


@dataclass
class WallSegmenter:
    """Keep only the wall-plane inliers of a frame."""

    config: WallSegmenterConfig = field(default_factory=WallSegmenterConfig)

    def bands(self) -> List[Tuple[float, float]]:
        """Band ``(lo, hi)`` ranges, top band first."""
        top = self.config.band_top
        width = self.config.band_width
        return [
            (top - (j + 1) * width, top - j * width)
            for j in range(self.config.band_count)
        ]

    def split_bands(self, points: np.ndarray) -> List[np.ndarray]:
        """Split a region along z into the configured bands.

        Bands are half-open ``[lo, hi)`` except the top band, which also
        keeps points lying exactly on its upper edge.
        """
        z = points[:, 2]
        result = []
        for j, (lo, hi) in enumerate(self.bands()):
            upper = (z <= hi) if j == 0 else (z < hi)
            result.append(points[(z >= lo) & upper])
        return result

    def filter_region(self, points: np.ndarray, region: LateralRegion) -> Optional[np.ndarray]:
        """Pass-through plus outlier removal; ``None`` for a degenerate region."""
        sub = range_filter(points, region.axis, region.lo, region.hi)
        if len(sub) < self.config.min_points:
            logger.debug(f"Region {region.name}: {len(sub)} points, skipped")
            return None
        return remove_outliers(
            sub, self.config.outlier_neighbors, self.config.outlier_std_ratio
        )

    def fit_band(self, points: np.ndarray) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """RANSAC plane fit of one band.

        Returns:
            ``(plane_model, inlier_points)`` or ``None`` if the band is too sparse
        """
        if len(points) < self.config.min_points:
            return None
        try:
            plane_model, inliers = fit_plane_ransac(
                points,
                self.config.distance_threshold,
                num_iterations=self.config.ransac_iterations
            )
        except DegenerateGeometryError as e:
            logger.debug(f"Band skipped: {e}")
            return None
        return plane_model, points[inliers]

    def segment_walls(
        self,
        points: np.ndarray,
        lateral_bounds: Optional[Sequence[float]] = None
    ) -> List[WallSegment]:
        """Partition a cloud into wall segments.

        Args:
            points: Nx3 frame cloud
            lateral_bounds: ``{min_x, mid_x, max_x, min_y, mid_y, max_y}``;
                defaults to the configured bounds

        Returns:
            One WallSegment per band that produced a plane
        """
        points = as_points(points)
        bounds = lateral_bounds if lateral_bounds is not None else self.config.lateral_bounds

        segments = []
        for region in lateral_regions(bounds):
            sub = self.filter_region(points, region)
            if sub is None:
                continue

            for j, band in enumerate(self.split_bands(sub)):
                fit = self.fit_band(band)
                if fit is None:
                    continue
                plane_model, inliers = fit
                segments.append(WallSegment(
                    region=region.name,
                    band=j,
                    z_range=self.bands()[j],
                    plane_model=plane_model,
                    points=inliers
                ))
                logger.debug(
                    f"Region {region.name} band {j}: {len(inliers)}/{len(band)} inliers"
                )

        return segments

    def segment(
        self,
        points: np.ndarray,
        lateral_bounds: Optional[Sequence[float]] = None
    ) -> np.ndarray:
        """Full segmentation: the concatenated inliers of every segment."""
        segments = self.segment_walls(points, lateral_bounds)
        return concatenate([s.points for s in segments])


def segment_walls(
    points: np.ndarray,
    lateral_bounds: Optional[Sequence[float]] = None,
    **kwargs
) -> np.ndarray:
    """Convenience function for wall segmentation.

    Args:
        points: Nx3 array of points
        lateral_bounds: Six lateral bounds, see :meth:`WallSegmenter.segment_walls`
        **kwargs: Overrides for WallSegmenterConfig

    Returns:
        Nx3 array of wall-plane inliers
    """
    segmenter = WallSegmenter(config=WallSegmenterConfig(**kwargs))
    return segmenter.segment(points, lateral_bounds)
