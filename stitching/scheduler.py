"""Frame discovery and the bounded worker pool.

Frames are ordered by the integer index at the end of their file stem
(``scanD2.pcd`` -> 2), never by directory listing order. The same index
keys the pose prior table.

The scheduler keeps at most ``workers`` frame threads in flight. When the
pool is full it waits on the oldest dispatched thread before starting the
next frame. With a ``frame_timeout`` the wait is bounded: a frame that
overruns before committing to the model is marked ``timeout`` and its slot
is freed. Whatever it produces later is discarded by the stitched model.
"""
from __future__ import annotations

import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Sequence

import numpy as np

from .cloud_io import read_frame
from .config import SchedulerConfig
from .errors import FrameReadError, FrameTimeoutError, NoEligibleFramesError
from .stitched_model import FrameReport, FrameTicket, StitchedModel

logger = logging.getLogger(__name__)

FRAME_INDEX_PATTERN = re.compile(r"(\d+)$")


@dataclass(frozen=True)
class FrameDescriptor:
    """A frame file and the index parsed from its name."""
    path: Path
    index: int

    @property
    def name(self) -> str:
        return self.path.name


def frame_index_from_name(name: str) -> Optional[int]:
    """Trailing integer of the part of the name before the first dot.

    >>> frame_index_from_name("scanD10.pcd")
    10
    """
    stem = Path(name).name.split(".", 1)[0]
    match = FRAME_INDEX_PATTERN.search(stem)
    return int(match.group(1)) if match else None


def is_eligible(path: Path, extensions: Sequence[str], output_name: str) -> bool:
    """Frame files carry a known extension and are not the pipeline's own output."""
    if path.name == output_name:
        return False
    suffixes = tuple(ext.lower() for ext in extensions)
    return path.suffix.lower() in suffixes


def discover_frames(
    path: Path | str,
    extensions: Sequence[str] = (".pcd",),
    output_name: str = "filtered.pcd"
) -> List[FrameDescriptor]:
    """Collect the eligible frames under ``path`` in ascending index order.

    A single file is accepted as-is and gets index 0 when its name holds
    no index. In a directory, files without an index are ignored and of
    two files sharing an index only the first by name is kept.

    Raises:
        NoEligibleFramesError: if nothing survives the filter
    """
    path = Path(path)

    if path.is_file():
        if not is_eligible(path, extensions, output_name):
            raise NoEligibleFramesError(f"{path} is not an eligible frame file")
        index = frame_index_from_name(path.name)
        return [FrameDescriptor(path=path, index=index if index is not None else 0)]

    if not path.is_dir():
        raise NoEligibleFramesError(f"Input path not found: {path}")

    frames: Dict[int, FrameDescriptor] = {}
    for candidate in sorted(path.iterdir()):
        if not candidate.is_file() or not is_eligible(candidate, extensions, output_name):
            continue
        index = frame_index_from_name(candidate.name)
        if index is None:
            logger.debug(f"Ignoring {candidate.name}: no frame index in name")
            continue
        if index in frames:
            logger.warning(
                f"Ignoring {candidate.name}: index {index} already used by "
                f"{frames[index].name}"
            )
            continue
        frames[index] = FrameDescriptor(path=candidate, index=index)

    if not frames:
        raise NoEligibleFramesError(
            f"No frame files with extension {', '.join(extensions)} in {path}"
        )

    ordered = [frames[i] for i in sorted(frames)]
    logger.info(f"Discovered {len(ordered)} frames in {path}")
    return ordered


@dataclass
class BatchReport:
    """Per-frame outcomes of one scheduler run, in frame order."""
    frames: List[FrameReport] = field(default_factory=list)
    max_in_flight: int = 0
    dispatch_order: List[int] = field(default_factory=list)

    @property
    def merged(self) -> List[FrameReport]:
        return [r for r in self.frames if r.merged]

    @property
    def skipped(self) -> List[FrameReport]:
        return [r for r in self.frames if not r.merged]


@dataclass
class _Slot:
    frame: FrameDescriptor
    thread: Optional[threading.Thread]
    ticket: FrameTicket
    started: float
    report: Optional[FrameReport] = None


@dataclass
class BatchScheduler:
    """Run every frame through a stitched model with at most ``workers`` threads."""

    config: SchedulerConfig = field(default_factory=SchedulerConfig)
    reader: Callable[[Path], np.ndarray] = read_frame

    def _process(
        self,
        frame: FrameDescriptor,
        model: StitchedModel,
        seeding: bool,
        ticket: Optional[FrameTicket] = None
    ) -> FrameReport:
        """Read and absorb one frame; failures become a ``failed`` report."""
        start = time.time()
        try:
            raw = self.reader(frame.path)
        except FrameReadError as e:
            logger.error(f"Frame {frame.index} skipped: {e}")
            if model.commit(ticket):
                model.diagnostics.count(False)
            return FrameReport(
                frame_index=frame.index, path=str(frame.path), status="failed",
                error=str(e), seconds=time.time() - start
            )

        absorb = model.seed if seeding else model.absorb_frame
        try:
            report = absorb(raw, frame.index, ticket)
        except Exception as e:
            logger.exception(f"Frame {frame.index} failed")
            if model.commit(ticket):
                model.diagnostics.count(False)
            report = FrameReport(
                frame_index=frame.index, status="failed", points_in=len(raw),
                error=f"{type(e).__name__}: {e}", seconds=time.time() - start
            )
        report.path = str(frame.path)
        return report

    def _dispatch(self, frame: FrameDescriptor, model: StitchedModel) -> _Slot:
        ticket = FrameTicket()
        slot = _Slot(frame=frame, thread=None, ticket=ticket, started=time.time())

        def work():
            slot.report = self._process(frame, model, seeding=False, ticket=ticket)

        slot.thread = threading.Thread(target=work, name=f"frame-{frame.index}", daemon=True)
        slot.thread.start()
        return slot

    def _wait(self, slot: _Slot, model: StitchedModel) -> FrameReport:
        """Join a slot, bounded by what is left of its frame timeout.

        A frame still running at its deadline is cancelled, unless the
        model already committed it; then the worker is only wrapping up and
        is joined without a bound.
        """
        timeout = self.config.frame_timeout
        if timeout is None:
            slot.thread.join()
        else:
            slot.thread.join(max(0.0, timeout - (time.time() - slot.started)))

        if slot.thread.is_alive():
            if model.cancel(slot.ticket):
                error = FrameTimeoutError(
                    f"frame {slot.frame.index} exceeded {timeout:.1f}s, skipped"
                )
                logger.error(str(error))
                model.diagnostics.count(False)
                return FrameReport(
                    frame_index=slot.frame.index, path=str(slot.frame.path),
                    status="timeout", error=str(error), seconds=time.time() - slot.started
                )
            slot.thread.join()
        return slot.report

    def run(self, frames: Sequence[FrameDescriptor], model: StitchedModel) -> BatchReport:
        """Absorb ``frames`` into ``model`` in ascending index order.

        When the model needs a seed (registration enabled and nothing
        merged yet), frames are seeded synchronously until one produces
        points; the rest go through the pool.

        Returns:
            BatchReport with one FrameReport per frame
        """
        workers = self.config.workers
        if workers < 1:
            raise ValueError(f"workers must be at least 1, got {workers}")

        pending = deque(sorted(frames, key=lambda f: f.index))
        reports: Dict[int, FrameReport] = {}
        report = BatchReport()

        while pending and model.requires_seed:
            frame = pending.popleft()
            report.dispatch_order.append(frame.index)
            reports[frame.index] = self._process(frame, model, seeding=True)

        in_flight: Deque[_Slot] = deque()
        while pending:
            if len(in_flight) >= workers:
                oldest = in_flight.popleft()
                reports[oldest.frame.index] = self._wait(oldest, model)
            frame = pending.popleft()
            report.dispatch_order.append(frame.index)
            in_flight.append(self._dispatch(frame, model))
            report.max_in_flight = max(report.max_in_flight, len(in_flight))

        while in_flight:
            oldest = in_flight.popleft()
            reports[oldest.frame.index] = self._wait(oldest, model)

        report.frames = [reports[i] for i in sorted(reports)]
        logger.info(
            f"Batch done: {len(report.merged)} merged, {len(report.skipped)} skipped"
        )
        return report
