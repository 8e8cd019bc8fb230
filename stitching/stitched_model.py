"""The stitched model: the single merged cloud shared by all workers.

``absorb_frame`` runs preprocess -> register -> merge. Preprocessing and
registration run outside the model lock against a snapshot of the merged
cloud; only the append + downsample step holds the lock. A worker may
therefore register against a model that another worker has since
extended. That staleness is accepted; there is no retry.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np

from .config import MergeConfig
from .geometry import as_points, concatenate, downsample, empty_cloud, remove_outliers
from .preprocessor import FramePreprocessor
from .registration import RegistrationEngine

logger = logging.getLogger(__name__)


@dataclass
class FrameReport:
    """What happened to one frame."""
    frame_index: int
    path: Optional[str] = None
    status: str = "pending"  # seeded, merged, empty, failed, timeout, discarded
    points_in: int = 0
    points_merged: int = 0
    registration: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    seconds: float = 0.0

    @property
    def merged(self) -> bool:
        return self.status in ("seeded", "merged")


@dataclass
class StitchDiagnostics:
    """Cumulative timing breakdown, safe to update from several workers."""
    preprocess_time: float = 0.0
    registration_time: float = 0.0
    lock_wait_time: float = 0.0
    merge_time: float = 0.0
    total_time: float = 0.0
    frames_absorbed: int = 0
    frames_skipped: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add(self, **seconds: float) -> None:
        with self._lock:
            for name, value in seconds.items():
                setattr(self, name, getattr(self, name) + value)

    def count(self, absorbed: bool) -> None:
        with self._lock:
            if absorbed:
                self.frames_absorbed += 1
            else:
                self.frames_skipped += 1

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "preprocess_time_sec": self.preprocess_time,
                "registration_time_sec": self.registration_time,
                "lock_wait_time_sec": self.lock_wait_time,
                "merge_time_sec": self.merge_time,
                "total_time_sec": self.total_time,
                "frames_absorbed": self.frames_absorbed,
                "frames_skipped": self.frames_skipped,
            }

    def format(self) -> str:
        d = self.to_dict()
        return "\n".join([
            "Time breakdown:",
            f"  Preprocessing: {d['preprocess_time_sec']:.2f}s",
            f"  Registration:  {d['registration_time_sec']:.2f}s",
            f"  Lock wait:     {d['lock_wait_time_sec']:.2f}s",
            f"  Merging:       {d['merge_time_sec']:.2f}s",
            f"  Total:         {d['total_time_sec']:.2f}s",
            f"  Frames: {d['frames_absorbed']} absorbed, {d['frames_skipped']} skipped",
        ])


class FrameTicket:
    """Handshake between the scheduler and one in-flight frame.

    Both sides decide under the model lock: the scheduler may cancel a
    frame only while it is uncommitted, the model may commit (merge or
    report it) only while it is not cancelled. A frame therefore ends up
    either committed by the model or timed out by the scheduler, and only
    that side counts it.
    """

    def __init__(self):
        self.cancelled = threading.Event()
        self.committed = False


class StitchedModel:
    """Running merged cloud guarded by one lock."""

    def __init__(
        self,
        preprocessor: FramePreprocessor,
        registration: Optional[RegistrationEngine] = None,
        config: Optional[MergeConfig] = None
    ):
        self.preprocessor = preprocessor
        self.registration = registration
        self.config = config or MergeConfig()
        self.diagnostics = StitchDiagnostics()

        self._points = empty_cloud()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._points)

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    @property
    def requires_seed(self) -> bool:
        """Registration needs a target, so the first frame must seed the model."""
        return self.registration is not None and self.is_empty

    def snapshot(self) -> np.ndarray:
        """Copy of the merged cloud as it is right now."""
        with self._lock:
            return self._points.copy()

    def commit(self, ticket: Optional[FrameTicket] = None) -> bool:
        """Claim a frame's outcome for the model unless it was cancelled.

        The caller that commits a frame is the one that counts it in the
        diagnostics.
        """
        if ticket is None:
            return True
        with self._lock:
            if ticket.cancelled.is_set():
                return False
            ticket.committed = True
            return True

    def cancel(self, ticket: FrameTicket) -> bool:
        """Cancel an in-flight frame; False if it was already committed."""
        with self._lock:
            if ticket.committed:
                return False
            ticket.cancelled.set()
            return True

    def _merge(
        self,
        candidate: np.ndarray,
        leaf_size: Optional[float],
        ticket: Optional[FrameTicket] = None
    ) -> bool:
        """Append + downsample under the lock. False if the frame was cancelled."""
        t_wait = time.time()
        with self._lock:
            t_locked = time.time()
            if ticket is not None:
                if ticket.cancelled.is_set():
                    return False
                ticket.committed = True
            merged = concatenate([self._points, candidate])
            if leaf_size:
                merged = downsample(merged, leaf_size)
            self._points = merged
            t_done = time.time()
        self.diagnostics.add(lock_wait_time=t_locked - t_wait, merge_time=t_done - t_locked)
        return True

    def _finish(
        self,
        report: FrameReport,
        ticket: Optional[FrameTicket],
        start: float
    ) -> FrameReport:
        report.seconds = time.time() - start
        if report.status == "discarded":
            logger.warning(
                f"Frame {report.frame_index}: result arrived after timeout, discarded"
            )
            return report
        self.diagnostics.count(report.merged)
        logger.info(
            f"Frame {report.frame_index}: {report.status} ({report.points_merged} points)"
        )
        return report

    def seed(
        self,
        raw_cloud: np.ndarray,
        frame_index: int,
        ticket: Optional[FrameTicket] = None
    ) -> FrameReport:
        """Start the model from a frame without registering it."""
        start = time.time()
        report = FrameReport(frame_index=frame_index, points_in=len(raw_cloud))

        cloud = self.preprocessor.preprocess(raw_cloud, frame_index)
        cloud = remove_outliers(
            cloud, self.config.seed_outlier_neighbors, self.config.seed_outlier_std_ratio
        )
        self.diagnostics.add(preprocess_time=time.time() - start)

        if len(cloud) == 0:
            report.status = "empty" if self.commit(ticket) else "discarded"
        elif self._merge(cloud, self.config.merge_leaf_size, ticket):
            report.status = "seeded"
            report.points_merged = len(cloud)
        else:
            report.status = "discarded"
        return self._finish(report, ticket, start)

    def absorb_frame(
        self,
        raw_cloud: np.ndarray,
        frame_index: int,
        ticket: Optional[FrameTicket] = None
    ) -> FrameReport:
        """Preprocess, register against a model snapshot, merge under the lock.

        Args:
            raw_cloud: Nx3 points of the frame
            frame_index: Frame index, used for the pose prior lookup
            ticket: Handshake with the scheduler; a frame the scheduler has
                cancelled is never merged nor counted

        Returns:
            FrameReport describing the outcome
        """
        start = time.time()
        report = FrameReport(frame_index=frame_index, points_in=len(raw_cloud))

        candidate = as_points(self.preprocessor.preprocess(raw_cloud, frame_index))
        t_pre = time.time()
        self.diagnostics.add(preprocess_time=t_pre - start)

        if len(candidate) == 0:
            if self.commit(ticket):
                report.status = "empty"
                logger.warning(f"Frame {frame_index}: no points left after preprocessing")
            else:
                report.status = "discarded"
            return self._finish(report, ticket, start)

        if self.registration is not None:
            target = self.snapshot()
            candidate, result = self.registration.register(candidate, target)
            report.registration = self.registration.validate_registration(result)
            self.diagnostics.add(registration_time=time.time() - t_pre)
            if not report.registration["valid"]:
                logger.warning(
                    f"Frame {frame_index} registration: "
                    + "; ".join(report.registration["issues"])
                )

        if self._merge(candidate, self.config.merge_leaf_size, ticket):
            report.status = "merged"
            report.points_merged = len(candidate)
        else:
            report.status = "discarded"
        return self._finish(report, ticket, start)

    def finalize(self, leaf_size: Optional[float] = None) -> np.ndarray:
        """Final downsample; returns a copy of the finished cloud."""
        if leaf_size is None:
            leaf_size = self.config.final_leaf_size
        with self._lock:
            self._points = downsample(self._points, leaf_size)
            return self._points.copy()
