"""Pytest configuration and shared fixtures."""

import pytest
import sys
from pathlib import Path

import numpy as np

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from tests.helpers import make_plane, make_room, write_pcd, write_pose_file  # noqa: E402


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests that stitch full synthetic sessions"
    )


@pytest.fixture
def rng():
    """Seeded generator so geometric tests are reproducible."""
    return np.random.default_rng(42)


@pytest.fixture
def room_cloud(rng):
    """Four noiseless walls, 2000 points each."""
    return make_room(rng)


@pytest.fixture
def plane_session(tmp_path, rng):
    """Three 1x1 planes at world x offsets 0, 2, 4, stored shifted by their pose.

    Each frame is written in sensor coordinates (world + offset) and the
    pose prior file holds the exact offset, so undoing the prior puts the
    planes side by side at z = -1.
    """
    offsets = [(0.0, 0.0, 0.0), (2.0, 0.0, 0.0), (4.0, 0.0, 0.0)]
    frames = []
    records = []
    for i, (ox, oy, oz) in enumerate(offsets):
        world = make_plane(rng, origin=(ox, 0.0, -1.0))
        raw = world + np.array([ox, oy, oz])
        frames.append(write_pcd(raw, tmp_path / f"scanD{i}.pcd"))
        records.append((0.0, 0.0, 0.0, ox, oy, oz, 1.0))
    poses = write_pose_file(tmp_path / "poses.csv", records)
    return {"dir": tmp_path, "frames": frames, "poses": poses, "offsets": offsets}


@pytest.fixture
def plane_config():
    """Cleanup preset without wall segmentation, one pose row per frame."""
    from stitching.config import StitchConfig
    config = StitchConfig.cleanup()
    config.preprocess.segment_walls = False
    config.pose_priors.rows_per_frame = 1
    config.random_seed = 0
    return config
