"""Reading and writing point cloud files (PCD, PLY, XYZ via Open3D)."""
from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import open3d as o3d

from .errors import FrameReadError, FrameWriteError
from .geometry import as_points, to_pcd

logger = logging.getLogger(__name__)


def read_frame(path: Path | str) -> np.ndarray:
    """Load a frame as an Nx3 array with non-finite points removed.

    Raises:
        FrameReadError: if the file is missing, unreadable or empty
    """
    path = Path(path)
    if not path.is_file():
        raise FrameReadError(path, "file not found")

    pcd = o3d.io.read_point_cloud(str(path))
    points = as_points(np.asarray(pcd.points))
    if len(points) == 0:
        raise FrameReadError(path, "no points could be read")

    finite = np.all(np.isfinite(points), axis=1)
    if not np.all(finite):
        logger.debug(f"{path.name}: dropped {int(np.sum(~finite))} non-finite points")
        points = points[finite]
    return points


def write_cloud(points: np.ndarray, path: Path | str, write_ascii: bool = False) -> Path:
    """Write an Nx3 array to ``path``; the format follows the extension."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not o3d.io.write_point_cloud(str(path), to_pcd(points), write_ascii=write_ascii):
        raise FrameWriteError(f"Could not write point cloud to {path}")
    logger.info(f"Wrote {len(points)} points to {path}")
    return path
