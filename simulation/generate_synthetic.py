"""Synthetic scan session generator.

Generates a set of frames of a box-shaped room as seen from several
sensor stations, plus the matching pose prior file, for development,
testing and CI. The output can be fed straight into the stitching CLI.

Features:
- Configurable room size and wall height
- Furniture clutter and uniform noise inside the room
- Stations spaced along x with optional small rotations
- Limited sensor range, so each frame sees only part of the room
- Pose prior file with redundant, optionally noisy, rows per frame

Usage:
    python -m simulation.generate_synthetic --out sessions/synthetic --frames 5
"""
from __future__ import annotations

import argparse
import json
import logging
import math
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Tuple, Optional, Dict, Any

import numpy as np

from stitching.cloud_io import write_cloud
from stitching.geometry import pose_matrix, rigid_transform

logger = logging.getLogger(__name__)


@dataclass
class Wall:
    """An axis-aligned vertical wall: ``coord[axis] == offset``."""
    axis: int  # 0 -> wall at constant x, 1 -> constant y
    offset: float
    extent: Tuple[float, float]  # range along the other lateral axis
    z_range: Tuple[float, float]

    def sample(self, n: int, rng: np.random.Generator) -> np.ndarray:
        """Uniform points on the wall surface."""
        other = rng.uniform(self.extent[0], self.extent[1], n)
        z = rng.uniform(self.z_range[0], self.z_range[1], n)
        points = np.empty((n, 3))
        points[:, self.axis] = self.offset
        points[:, 1 - self.axis] = other
        points[:, 2] = z
        return points


@dataclass
class Box:
    """Furniture clutter: points on the surface of an axis-aligned box."""
    center: Tuple[float, float, float]
    size: Tuple[float, float, float]

    def sample(self, n: int, rng: np.random.Generator) -> np.ndarray:
        half = np.asarray(self.size) / 2.0
        points = rng.uniform(-half, half, (n, 3))
        # Push each point onto a random face
        face_axis = rng.integers(0, 3, n)
        sign = rng.choice([-1.0, 1.0], n)
        points[np.arange(n), face_axis] = sign * half[face_axis]
        return points + np.asarray(self.center)


@dataclass
class Room:
    """Room geometry for simulation."""
    walls: List[Wall] = field(default_factory=list)
    clutter: List[Box] = field(default_factory=list)

    @classmethod
    def rectangle(cls, width: float = 8.0, depth: float = 8.0, height: float = 5.0) -> "Room":
        """Four walls at ``x = +-width/2`` and ``y = +-depth/2``, z in ``[-height, 0]``."""
        hw, hd = width / 2, depth / 2
        z_range = (-height, 0.0)
        walls = [
            Wall(axis=0, offset=-hw, extent=(-hd, hd), z_range=z_range),
            Wall(axis=0, offset=hw, extent=(-hd, hd), z_range=z_range),
            Wall(axis=1, offset=-hd, extent=(-hw, hw), z_range=z_range),
            Wall(axis=1, offset=hd, extent=(-hw, hw), z_range=z_range),
        ]
        return cls(walls=walls)

    def add_obstacle(
        self,
        cx: float,
        cy: float,
        size: float = 1.0,
        floor: float = -5.0
    ) -> None:
        """Add a cube standing on the floor."""
        self.clutter.append(Box(center=(cx, cy, floor + size / 2), size=(size, size, size)))

    @property
    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """Axis-aligned interior bounds ``(lo, hi)``."""
        xs = [w.offset for w in self.walls if w.axis == 0]
        ys = [w.offset for w in self.walls if w.axis == 1]
        zs = [z for w in self.walls for z in w.z_range]
        return (np.array([min(xs), min(ys), min(zs)]), np.array([max(xs), max(ys), max(zs)]))


@dataclass
class Station:
    """Sensor pose for one frame, in the room frame."""
    dx: float = 0.0
    dy: float = 0.0
    dz: float = 0.0
    rotx: float = 0.0
    roty: float = 0.0
    rotz: float = 0.0

    @property
    def position(self) -> np.ndarray:
        return np.array([self.dx, self.dy, self.dz])

    def world_to_sensor(self) -> np.ndarray:
        """Inverse of the correction the stitcher applies for this pose."""
        correction = pose_matrix(
            [-self.rotx, -self.roty, -self.rotz], [-self.dx, -self.dy, -self.dz]
        )
        return np.linalg.inv(correction)


@dataclass
class ScanConfig:
    """Sensor simulation parameters."""
    points_per_wall: int = 4000
    clutter_points: int = 500
    noise_points: int = 200
    range_noise_stddev: float = 0.01  # metres, along the wall normal
    max_range: Optional[float] = None  # metres from the station, None sees everything
    rows_per_frame: int = 10
    prior_noise_stddev: float = 0.0  # per-row noise on the pose prior file
    confidence: float = 0.9


@dataclass
class SyntheticSession:
    """Generator for synthetic scan sessions."""

    room: Room = field(default_factory=Room.rectangle)
    stations: List[Station] = field(default_factory=list)
    scan_config: ScanConfig = field(default_factory=ScanConfig)
    seed: Optional[int] = None

    def __post_init__(self):
        self.rng = np.random.default_rng(self.seed)

    def place_stations_linear(
        self,
        n_stations: int = 3,
        spacing: float = 1.0,
        max_rotation_deg: float = 0.0
    ) -> None:
        """Place stations in a line along x, centred on the origin."""
        self.stations.clear()
        start_x = -spacing * (n_stations - 1) / 2
        for i in range(n_stations):
            rotz = 0.0
            if max_rotation_deg > 0:
                rotz = math.radians(self.rng.uniform(-max_rotation_deg, max_rotation_deg))
            self.stations.append(Station(dx=start_x + i * spacing, rotz=rotz))

    def generate_world_points(self, station: Station) -> np.ndarray:
        """Everything the sensor at ``station`` sees, in the room frame."""
        cfg = self.scan_config
        parts = []

        for wall in self.room.walls:
            points = wall.sample(cfg.points_per_wall, self.rng)
            points[:, wall.axis] += self.rng.normal(0, cfg.range_noise_stddev, len(points))
            parts.append(points)

        for box in self.room.clutter:
            parts.append(box.sample(cfg.clutter_points, self.rng))

        if cfg.noise_points:
            lo, hi = self.room.bounds
            # Keep uniform noise well away from the walls
            margin = 0.5
            parts.append(self.rng.uniform(lo + margin, hi - margin, (cfg.noise_points, 3)))

        points = np.vstack(parts)
        if cfg.max_range is not None:
            lateral = np.linalg.norm(points[:, :2] - station.position[:2], axis=1)
            points = points[lateral <= cfg.max_range]
        return points

    def generate_frame(self, station: Station) -> np.ndarray:
        """A frame in sensor coordinates."""
        return rigid_transform(self.generate_world_points(station), station.world_to_sensor())

    def pose_rows(self, index: int, station: Station) -> List[str]:
        """Redundant measurement rows for one frame."""
        cfg = self.scan_config
        rows = []
        for _ in range(cfg.rows_per_frame):
            values = np.array([
                station.rotx, station.roty, station.rotz,
                station.dx, station.dy, station.dz
            ])
            if cfg.prior_noise_stddev > 0:
                values = values + self.rng.normal(0, cfg.prior_noise_stddev, 6)
            cells = [f"frame{index}"] + [f"{v:.6f}" for v in values] + [f"{cfg.confidence:.3f}"]
            rows.append(";".join(cells))
        return rows

    def generate_session(self, output_dir: Path | str) -> Dict[str, Any]:
        """Generate frames, the pose prior file and the ground truth.

        Args:
            output_dir: Output directory path

        Returns:
            Summary dictionary
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        if not self.stations:
            self.place_stations_linear(3)

        pose_lines = ["label;rotx;roty;rotz;dx;dy;dz;confidence"]
        frame_files = []
        total_points = 0

        for i, station in enumerate(self.stations):
            points = self.generate_frame(station)
            path = write_cloud(points, output_dir / f"scanD{i}.pcd")
            frame_files.append(path.name)
            total_points += len(points)
            pose_lines.extend(self.pose_rows(i, station))

        poses_path = output_dir / "poses.csv"
        poses_path.write_text("\n".join(pose_lines) + "\n")

        with open(output_dir / "ground_truth.json", "w") as f:
            truth = {
                "stations": [dict(index=i, **asdict(s)) for i, s in enumerate(self.stations)],
                "walls": [asdict(w) for w in self.room.walls],
                "clutter": [asdict(b) for b in self.room.clutter],
                "scan_config": asdict(self.scan_config),
            }
            json.dump(truth, f, indent=2)

        summary = {
            "status": "ok",
            "session_dir": str(output_dir),
            "frames": frame_files,
            "poses": str(poses_path),
            "points": total_points,
            "walls": len(self.room.walls),
        }
        logger.info(f"Generated {len(frame_files)} frames in {output_dir}")
        return summary


def make_session(
    outdir: Path | str,
    n_frames: int = 3,
    points_per_wall: int = 4000,
    spacing: float = 1.0,
    seed: Optional[int] = None,
    **scan_kwargs
) -> Dict[str, Any]:
    """Generate a session with default room and linear station layout."""
    session = SyntheticSession(
        scan_config=ScanConfig(points_per_wall=points_per_wall, **scan_kwargs),
        seed=seed
    )
    session.place_stations_linear(n_frames, spacing=spacing)
    return session.generate_session(outdir)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate a synthetic scan session for testing"
    )
    parser.add_argument("--out", required=True, help="Output session directory")
    parser.add_argument("--frames", type=int, default=3, help="Number of frames (default: 3)")
    parser.add_argument(
        "--spacing", type=float, default=1.0,
        help="Station spacing along x in metres (default: 1.0)"
    )
    parser.add_argument(
        "--rotation", type=float, default=0.0,
        help="Maximum random yaw per station in degrees (default: 0)"
    )
    parser.add_argument(
        "--points-per-wall", type=int, default=4000,
        help="Points sampled per wall per frame (default: 4000)"
    )
    parser.add_argument(
        "--noise", type=float, default=0.01,
        help="Range noise stddev in metres (default: 0.01)"
    )
    parser.add_argument(
        "--prior-noise", type=float, default=0.0,
        help="Stddev added to every pose prior row (default: 0)"
    )
    parser.add_argument("--obstacles", type=int, default=1, help="Number of furniture boxes")
    parser.add_argument("--seed", type=int, help="Random seed")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )

    scan_config = ScanConfig(
        points_per_wall=args.points_per_wall,
        range_noise_stddev=args.noise,
        prior_noise_stddev=args.prior_noise,
    )
    session = SyntheticSession(scan_config=scan_config, seed=args.seed)
    for i in range(args.obstacles):
        session.room.add_obstacle(cx=-2.0 + 2.0 * i, cy=1.5, size=1.0)
    session.place_stations_linear(args.frames, spacing=args.spacing, max_rotation_deg=args.rotation)

    summary = session.generate_session(args.out)
    print(json.dumps(summary))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
