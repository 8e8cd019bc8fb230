"""Synthetic geometry and file helpers shared by the tests."""
from pathlib import Path

import numpy as np
import open3d as o3d


def make_plane(rng, cells=10, per_cell=10, cell=0.1, jitter=0.02, origin=(0.0, 0.0, -1.0)):
    """Horizontal square at ``origin``, stratified over a ``cells`` x ``cells`` grid.

    Every grid cell gets ``per_cell`` points uniformly within ``jitter`` of
    its centre, so a voxel grid of leaf ``cell`` sees exactly one occupied
    voxel per cell whatever its origin. 10 x 10 x 10 = 1000 points.
    """
    ix, iy = np.meshgrid(np.arange(cells), np.arange(cells), indexing="ij")
    centres = np.column_stack([ix.ravel(), iy.ravel()]) * cell + cell / 2
    centres = np.repeat(centres, per_cell, axis=0)
    xy = centres + rng.uniform(-jitter, jitter, centres.shape)
    points = np.zeros((len(xy), 3))
    points[:, 0] = origin[0] + xy[:, 0]
    points[:, 1] = origin[1] + xy[:, 1]
    points[:, 2] = origin[2]
    return points


def make_room(rng, n_per_wall=2000, half=4.0, z_range=(-5.0, 0.0)):
    """Four vertical walls at ``x = +-half`` and ``y = +-half``."""
    walls = []
    for axis in (0, 1):
        for offset in (-half, half):
            pts = np.empty((n_per_wall, 3))
            pts[:, axis] = offset
            pts[:, 1 - axis] = rng.uniform(-half, half, n_per_wall)
            pts[:, 2] = rng.uniform(z_range[0], z_range[1], n_per_wall)
            walls.append(pts)
    return np.vstack(walls)


def make_box(rng, centre, size, n_per_face=300):
    """Points on the six faces of an axis-aligned box."""
    centre = np.asarray(centre, dtype=float)
    half = np.asarray(size, dtype=float) / 2
    faces = []
    for axis in range(3):
        for sign in (-1.0, 1.0):
            pts = rng.uniform(-half, half, (n_per_face, 3))
            pts[:, axis] = sign * half[axis]
            faces.append(pts + centre)
    return np.vstack(faces)


def write_pcd(points, path):
    """Write an ``(N, 3)`` array as a PCD file."""
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64))
    assert o3d.io.write_point_cloud(str(path), pcd)
    return Path(path)


def write_pose_file(path, records, header="label;rotx;roty;rotz;dx;dy;dz;confidence", rows_per_frame=1):
    """Write ``(rotx, roty, rotz, dx, dy, dz, confidence)`` tuples as a pose prior file."""
    lines = [header]
    for i, record in enumerate(records):
        for _ in range(rows_per_frame):
            lines.append(";".join([f"frame{i}"] + [f"{v:.6f}" for v in record]))
    Path(path).write_text("\n".join(lines) + "\n")
    return Path(path)

