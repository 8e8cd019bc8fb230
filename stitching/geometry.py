"""Geometry primitives used by the stitching pipeline.

Point clouds travel through the pipeline as ``(N, 3)`` float64 numpy
arrays. Each primitive converts to an Open3D cloud only for the duration
of the call and never mutates its input:

- statistical outlier removal and voxel-grid downsampling
- pass-through range filtering and rigid transforms
- RANSAC plane segmentation
- normal estimation and FPFH descriptors
- feature-based RANSAC initial alignment and point-to-point ICP
- KD-tree nearest neighbour residuals for alignment diagnostics
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Sequence, Tuple, Union

import numpy as np
import open3d as o3d
from scipy.spatial import cKDTree
from scipy.spatial.transform import Rotation

from .errors import DegenerateGeometryError

_AXES = {"x": 0, "y": 1, "z": 2}

registration = o3d.pipelines.registration


@dataclass
class AlignmentResult:
    """Outcome of a single alignment stage."""
    transformation: np.ndarray = field(default_factory=lambda: np.eye(4))
    fitness: float = 0.0  # fraction of source points with a correspondence
    rmse: float = float("inf")  # RMSE over those correspondences
    correspondence_count: int = 0


def empty_cloud() -> np.ndarray:
    return np.zeros((0, 3))


def as_points(points) -> np.ndarray:
    """Coerce array-like input into a contiguous ``(N, 3)`` float64 array."""
    arr = np.asarray(points, dtype=np.float64)
    if arr.size == 0:
        return empty_cloud()
    return np.ascontiguousarray(arr.reshape(-1, 3))


def to_pcd(points: np.ndarray) -> "o3d.geometry.PointCloud":
    """Convert an ``(N, 3)`` array to an Open3D point cloud."""
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(as_points(points))
    return pcd


def from_pcd(pcd: "o3d.geometry.PointCloud") -> np.ndarray:
    """Copy the points of an Open3D cloud into a numpy array."""
    return as_points(np.asarray(pcd.points).copy())


def seed_random(seed: int) -> None:
    """Seed Open3D's RNG so RANSAC stages are reproducible."""
    o3d.utility.random.seed(int(seed))


def remove_outliers(points: np.ndarray, k: int, std_ratio: float) -> np.ndarray:
    """Statistical outlier removal.

    A point is dropped when its mean distance to its ``k`` nearest
    neighbours exceeds the global mean by more than ``std_ratio``
    standard deviations.
    """
    points = as_points(points)
    if len(points) < 3:
        return points
    k = max(1, min(int(k), len(points) - 1))
    _, kept = to_pcd(points).remove_statistical_outlier(
        nb_neighbors=k, std_ratio=float(std_ratio)
    )
    return points[np.asarray(kept, dtype=np.int64)]


def downsample(points: np.ndarray, leaf_size: float) -> np.ndarray:
    """Voxel-grid downsample; each occupied voxel becomes its centroid."""
    points = as_points(points)
    if len(points) == 0 or leaf_size is None or leaf_size <= 0:
        return points
    return from_pcd(to_pcd(points).voxel_down_sample(float(leaf_size)))


def range_filter(
    points: np.ndarray,
    axis: Union[int, str],
    lo: float,
    hi: float
) -> np.ndarray:
    """Keep points whose coordinate on ``axis`` lies in ``[lo, hi]``."""
    points = as_points(points)
    idx = _AXES[axis] if isinstance(axis, str) else int(axis)
    values = points[:, idx]
    return points[(values >= lo) & (values <= hi)]


def pose_matrix(
    rotation: Sequence[float],
    translation: Sequence[float],
    degrees: bool = False
) -> np.ndarray:
    """Build ``[R | t]`` where ``R = Rx @ Ry @ Rz`` from ``(rx, ry, rz)``.

    Applied to a point, the rotation about z acts first, then y, then x,
    and the translation is added last.
    """
    T = np.eye(4)
    T[:3, :3] = Rotation.from_euler("XYZ", list(rotation), degrees=degrees).as_matrix()
    T[:3, 3] = np.asarray(translation, dtype=np.float64)
    return T


def rigid_transform(points: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Apply a 4x4 homogeneous transform."""
    points = as_points(points)
    if len(points) == 0:
        return points
    return points @ matrix[:3, :3].T + matrix[:3, 3]


def fit_plane_ransac(
    points: np.ndarray,
    distance_threshold: float,
    ransac_n: int = 3,
    num_iterations: int = 1000
) -> Tuple[np.ndarray, np.ndarray]:
    """Fit a plane with RANSAC.

    Returns:
        ``(plane_model, inlier_indices)`` with ``plane_model = [a, b, c, d]``
        for ``ax + by + cz + d = 0``.
    """
    points = as_points(points)
    if len(points) < ransac_n:
        raise DegenerateGeometryError(
            f"plane fit needs {ransac_n} points, got {len(points)}"
        )
    plane_model, inliers = to_pcd(points).segment_plane(
        distance_threshold=float(distance_threshold),
        ransac_n=ransac_n,
        num_iterations=int(num_iterations),
    )
    return np.asarray(plane_model), np.asarray(inliers, dtype=np.int64)


def estimate_normals(pcd: "o3d.geometry.PointCloud", k: int) -> "o3d.geometry.PointCloud":
    """Estimate per-point normals from the ``k`` nearest neighbours (in place)."""
    pcd.estimate_normals(search_param=o3d.geometry.KDTreeSearchParamKNN(knn=int(k)))
    return pcd


def compute_features(pcd: "o3d.geometry.PointCloud", k: int) -> "registration.Feature":
    """FPFH descriptors; ``pcd`` must already carry normals."""
    return registration.compute_fpfh_feature(
        pcd, o3d.geometry.KDTreeSearchParamKNN(knn=int(k))
    )


def initial_align(
    source: "o3d.geometry.PointCloud",
    target: "o3d.geometry.PointCloud",
    source_features: "registration.Feature",
    target_features: "registration.Feature",
    max_iterations: int,
    max_correspondence_distance: float
) -> AlignmentResult:
    """Sample consensus initial alignment from feature correspondences."""
    result = registration.registration_ransac_based_on_feature_matching(
        source,
        target,
        source_features,
        target_features,
        mutual_filter=False,
        max_correspondence_distance=max_correspondence_distance,
        estimation_method=registration.TransformationEstimationPointToPoint(False),
        ransac_n=3,
        checkers=[
            registration.CorrespondenceCheckerBasedOnEdgeLength(0.9),
            registration.CorrespondenceCheckerBasedOnDistance(max_correspondence_distance),
        ],
        criteria=registration.RANSACConvergenceCriteria(
            max_iteration=int(max_iterations), confidence=0.999
        ),
    )
    return AlignmentResult(
        transformation=np.asarray(result.transformation).copy(),
        fitness=float(result.fitness),
        rmse=float(result.inlier_rmse),
        correspondence_count=len(result.correspondence_set),
    )


def refine_icp(
    source: "o3d.geometry.PointCloud",
    target: "o3d.geometry.PointCloud",
    max_iterations: int,
    max_correspondence_distance: float,
    init: np.ndarray | None = None
) -> AlignmentResult:
    """Point-to-point ICP starting from ``init``."""
    if init is None:
        init = np.eye(4)
    result = registration.registration_icp(
        source,
        target,
        max_correspondence_distance,
        init,
        registration.TransformationEstimationPointToPoint(),
        registration.ICPConvergenceCriteria(max_iteration=int(max_iterations)),
    )
    return AlignmentResult(
        transformation=np.asarray(result.transformation).copy(),
        fitness=float(result.fitness),
        rmse=float(result.inlier_rmse),
        correspondence_count=len(result.correspondence_set),
    )


def nearest_neighbor_distances(source: np.ndarray, target: np.ndarray) -> np.ndarray:
    """Distance from every source point to its closest target point."""
    source = as_points(source)
    target = as_points(target)
    if len(source) == 0:
        return np.zeros(0)
    if len(target) == 0:
        return np.full(len(source), np.inf)
    distances, _ = cKDTree(target).query(source, k=1)
    return np.asarray(distances)


def evaluate_alignment(
    source: np.ndarray,
    target: np.ndarray,
    matrix: np.ndarray,
    max_distance: float
) -> AlignmentResult:
    """Score ``matrix`` by the correspondences it produces within ``max_distance``."""
    source = as_points(source)
    distances = nearest_neighbor_distances(rigid_transform(source, matrix), target)
    mask = distances < max_distance
    count = int(np.sum(mask))
    fitness = count / len(source) if len(source) > 0 else 0.0
    rmse = float(np.sqrt(np.mean(distances[mask] ** 2))) if count > 0 else float("inf")
    return AlignmentResult(
        transformation=np.asarray(matrix).copy(),
        fitness=fitness,
        rmse=rmse,
        correspondence_count=count,
    )


def concatenate(clouds: List[np.ndarray]) -> np.ndarray:
    """Stack clouds, tolerating an empty list."""
    clouds = [as_points(c) for c in clouds if len(c) > 0]
    if not clouds:
        return empty_cloud()
    return np.vstack(clouds)
