"""Pose prior records for scan stitching.

A pose prior file holds repeated measurement rows for every frame:

    label;rotx;roty;rotz;dx;dy;dz;confidence
    frame0;0.0;0.0;0.01;1.20;0.00;0.00;0.9
    ...

The store parses those rows, averages each run of ``rows_per_frame`` raw
rows into one record per frame, and keys the records by the frame index
that the scheduler also sorts on. The resulting table is handed to the
preprocessor explicitly; there is no module-level state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from .config import PosePriorConfig
from .errors import MalformedInputError
from .geometry import pose_matrix

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = 6
REMAINDER_POLICIES = ("error", "drop", "average")


@dataclass
class TransformRecord:
    """Rigid pose correction for one frame plus a confidence score."""
    dx: float = 0.0
    dy: float = 0.0
    dz: float = 0.0
    rotx: float = 0.0
    roty: float = 0.0
    rotz: float = 0.0
    confidence: float = 0.0

    @classmethod
    def zero(cls) -> "TransformRecord":
        return cls()

    @classmethod
    def average(cls, records: Sequence["TransformRecord"]) -> "TransformRecord":
        """Field-wise mean of a group of redundant readings."""
        if not records:
            raise ValueError("cannot average an empty group")
        names = [f.name for f in fields(cls)]
        values = np.array([[getattr(r, n) for n in names] for r in records], dtype=np.float64)
        return cls(**{n: float(v) for n, v in zip(names, values.mean(axis=0))})

    @property
    def translation(self) -> np.ndarray:
        return np.array([self.dx, self.dy, self.dz])

    @property
    def rotation(self) -> np.ndarray:
        return np.array([self.rotx, self.roty, self.rotz])

    @property
    def is_identity(self) -> bool:
        return not (np.any(self.translation) or np.any(self.rotation))

    def __sub__(self, other: "TransformRecord") -> "TransformRecord":
        return TransformRecord(
            dx=self.dx - other.dx,
            dy=self.dy - other.dy,
            dz=self.dz - other.dz,
            rotx=self.rotx - other.rotx,
            roty=self.roty - other.roty,
            rotz=self.rotz - other.rotz,
            confidence=min(self.confidence, other.confidence),
        )

    def correction_matrix(self, degrees: bool = False) -> np.ndarray:
        """Transform that undoes this prior.

        Translation by the negated offset, composed with rotations by the
        negated angles about x, then y, then z.
        """
        return pose_matrix(-self.rotation, -self.translation, degrees=degrees)


@dataclass
class PosePriorTable:
    """Explicit frame index -> record mapping."""
    records: Dict[int, TransformRecord] = field(default_factory=dict)
    degrees: bool = False
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def zeros(cls, frame_indices: Iterable[int]) -> "PosePriorTable":
        """All-zero pose, zero confidence for every frame (no prior file)."""
        return cls(records={i: TransformRecord.zero() for i in sorted(frame_indices)})

    def get(self, frame_index: int) -> Optional[TransformRecord]:
        return self.records.get(frame_index)

    def __len__(self) -> int:
        return len(self.records)

    def __contains__(self, frame_index: int) -> bool:
        return frame_index in self.records

    def ordered(self) -> List[TransformRecord]:
        """Records in ascending frame index order."""
        return [self.records[i] for i in sorted(self.records)]


@dataclass
class TransformStore:
    """Parse, aggregate and assign pose prior measurements."""

    config: PosePriorConfig = field(default_factory=PosePriorConfig)
    warnings: List[str] = field(default_factory=list)

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def _split(self, line: str) -> List[str]:
        if self.config.delimiter is None:
            cells = line.split()
        else:
            cells = [c.strip() for c in line.split(self.config.delimiter)]
        while cells and cells[-1] == "":
            cells.pop()
        return cells

    def parse_row(self, line: str, line_number: Optional[int] = None) -> tuple[TransformRecord, bool]:
        """Parse one data row.

        Returns:
            ``(record, has_confidence)``
        """
        cells = self._split(line)[self.config.skip_columns:]
        try:
            values = [float(c) for c in cells]
        except ValueError as e:
            raise MalformedInputError(f"non-numeric value ({e})", line_number) from e

        if len(values) < REQUIRED_COLUMNS:
            raise MalformedInputError(
                f"expected at least {REQUIRED_COLUMNS} numeric columns, got {len(values)}",
                line_number
            )

        rotx, roty, rotz, dx, dy, dz = values[:REQUIRED_COLUMNS]
        has_confidence = len(values) > REQUIRED_COLUMNS
        confidence = values[REQUIRED_COLUMNS] if has_confidence else self.config.default_confidence
        record = TransformRecord(
            dx=dx, dy=dy, dz=dz,
            rotx=rotx, roty=roty, rotz=rotz,
            confidence=confidence
        )
        return record, has_confidence

    def parse_lines(self, lines: Iterable[str]) -> List[TransformRecord]:
        """Parse raw measurement rows, skipping the configured header rows."""
        rows = []
        missing_confidence = 0

        for line_number, line in enumerate(lines, start=1):
            if line_number <= self.config.header_rows:
                continue
            if not line.strip():
                continue
            try:
                record, has_confidence = self.parse_row(line, line_number)
            except MalformedInputError as e:
                if not self.config.skip_malformed_rows:
                    raise
                self._warn(f"Skipping malformed pose prior row: {e}")
                continue
            if not has_confidence:
                missing_confidence += 1
            rows.append(record)

        if missing_confidence:
            self._warn(
                f"No confidence value on {missing_confidence} pose prior rows; "
                f"using {self.config.default_confidence}"
            )
        return rows

    def load(self, path: Path | str) -> List[TransformRecord]:
        """Load raw measurement rows from a file."""
        path = Path(path)
        with open(path, newline="") as f:
            rows = self.parse_lines(f)
        logger.info(f"Read {len(rows)} pose prior rows from {path}")
        return rows

    def aggregate(
        self,
        rows: Sequence[TransformRecord],
        rows_per_frame: Optional[int] = None,
        frame_count: Optional[int] = None
    ) -> List[TransformRecord]:
        """Average each consecutive run of ``rows_per_frame`` rows.

        Args:
            rows: Raw records in file order
            rows_per_frame: Group size; falls back to the configured value,
                and when that is ``None`` too, to ``len(rows) // frame_count``
            frame_count: Number of frames, used only to derive the group size

        Returns:
            One record per frame, in file order
        """
        if rows_per_frame is None:
            rows_per_frame = self.config.rows_per_frame
        if rows_per_frame is None:
            if not frame_count:
                raise MalformedInputError("rows_per_frame unknown and no frame count given")
            rows_per_frame = len(rows) // frame_count
        if rows_per_frame < 1:
            raise MalformedInputError(
                f"not enough pose prior rows ({len(rows)}) for {frame_count} frames"
            )
        if not rows:
            raise MalformedInputError("pose prior file contains no measurement rows")

        policy = self.config.remainder_policy
        if policy not in REMAINDER_POLICIES:
            raise ValueError(f"Unknown remainder policy: {policy}")

        remainder = len(rows) % rows_per_frame
        if remainder:
            message = (
                f"{len(rows)} pose prior rows is not a multiple of "
                f"{rows_per_frame} rows per frame"
            )
            if policy == "error":
                raise MalformedInputError(message)
            if policy == "drop":
                self._warn(f"{message}; dropping the trailing {remainder} rows")
                rows = rows[:len(rows) - remainder]
            else:
                self._warn(f"{message}; averaging the trailing {remainder} rows as one frame")

        return [
            TransformRecord.average(rows[start:start + rows_per_frame])
            for start in range(0, len(rows), rows_per_frame)
        ]

    def assign(
        self,
        records: Sequence[TransformRecord],
        frame_indices: Iterable[int]
    ) -> PosePriorTable:
        """Key records by frame index: the k-th record goes to the k-th frame
        in ascending index order."""
        ordered = sorted(frame_indices)
        if len(records) != len(ordered):
            raise MalformedInputError(
                f"{len(records)} pose prior records for {len(ordered)} frames"
            )
        records = list(records)
        if self.config.relative_to_first and records:
            first = records[0]
            records = [r - first for r in records]
        return PosePriorTable(
            records=dict(zip(ordered, records)),
            degrees=self.config.degrees,
            warnings=list(self.warnings),
        )

    def build(self, path: Optional[Path | str], frame_indices: Sequence[int]) -> PosePriorTable:
        """Full load -> aggregate -> assign, or an all-zero table without a file."""
        frame_indices = list(frame_indices)
        if path is None:
            return PosePriorTable.zeros(frame_indices)
        rows = self.load(path)
        records = self.aggregate(rows, frame_count=len(frame_indices))
        return self.assign(records, frame_indices)


def load_pose_priors(
    path: Optional[Path | str],
    frame_indices: Sequence[int],
    config: Optional[PosePriorConfig] = None
) -> PosePriorTable:
    """Convenience wrapper around :meth:`TransformStore.build`."""
    store = TransformStore(config=config or PosePriorConfig())
    return store.build(path, frame_indices)
