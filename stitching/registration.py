"""Registration of a preprocessed frame against the stitched model.

Two stages:
1. Coarse: FPFH features + RANSAC initial alignment, robust to large
   offsets but imprecise
2. Fine: point-to-point ICP started from the coarse result

The coarse result is only kept when it scores better than leaving the
frame where its pose prior put it. A stage is skipped when either cloud
is too sparse; the frame is then merged untransformed.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from .config import RegistrationConfig
from .geometry import (
    AlignmentResult,
    as_points,
    compute_features,
    estimate_normals,
    evaluate_alignment,
    initial_align,
    refine_icp,
    rigid_transform,
    to_pcd,
)

logger = logging.getLogger(__name__)


@dataclass
class RegistrationResult:
    """Result of registering one frame."""
    transformation: np.ndarray = field(default_factory=lambda: np.eye(4))
    fitness: float = 0.0
    rmse: float = float("inf")
    initial_fitness: float = 0.0  # identity transform score
    coarse_applied: bool = False
    fine_applied: bool = False
    skipped_reason: Optional[str] = None

    @property
    def converged(self) -> bool:
        return self.fine_applied and self.fitness > 0

    @property
    def translation_norm(self) -> float:
        return float(np.linalg.norm(self.transformation[:3, 3]))

    @property
    def rotation_deg(self) -> float:
        """Rotation angle of the transform in degrees."""
        R = self.transformation[:3, :3]
        cos_angle = np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0)
        return math.degrees(float(np.arccos(cos_angle)))


@dataclass
class RegistrationEngine:
    """Coarse-then-fine alignment of a candidate cloud to a target cloud."""

    config: RegistrationConfig = field(default_factory=RegistrationConfig)

    def _prepare(self, points: np.ndarray):
        pcd = to_pcd(points)
        estimate_normals(pcd, self.config.normal_neighbors)
        features = compute_features(pcd, self.config.feature_neighbors)
        return pcd, features

    def coarse_align(
        self,
        candidate: np.ndarray,
        target: np.ndarray,
        max_iterations: int,
        baseline: Optional[AlignmentResult] = None
    ) -> AlignmentResult:
        """Feature-based global alignment.

        Args:
            baseline: Score of the identity transform, if already computed

        Returns:
            The RANSAC result if it beats the identity transform, otherwise
            the identity evaluation
        """
        max_dist = self.config.max_correspondence_distance
        if baseline is None:
            baseline = evaluate_alignment(candidate, target, np.eye(4), max_dist)

        src_pcd, src_features = self._prepare(candidate)
        tgt_pcd, tgt_features = self._prepare(target)
        result = initial_align(
            src_pcd, tgt_pcd, src_features, tgt_features,
            max_iterations=max_iterations,
            max_correspondence_distance=max_dist
        )
        scored = evaluate_alignment(candidate, target, result.transformation, max_dist)

        if scored.fitness > baseline.fitness:
            return scored

        logger.debug(
            f"Coarse alignment rejected: fitness {scored.fitness:.3f} "
            f"<= identity {baseline.fitness:.3f}"
        )
        return baseline

    def fine_align(
        self,
        candidate: np.ndarray,
        target: np.ndarray,
        max_iterations: int,
        init: Optional[np.ndarray] = None
    ) -> AlignmentResult:
        """ICP refinement starting from ``init``."""
        return refine_icp(
            to_pcd(candidate),
            to_pcd(target),
            max_iterations=max_iterations,
            max_correspondence_distance=self.config.max_correspondence_distance,
            init=init
        )

    def register(
        self,
        candidate: np.ndarray,
        target: np.ndarray,
        max_iterations: Optional[int] = None
    ) -> Tuple[np.ndarray, RegistrationResult]:
        """Align ``candidate`` to ``target`` and apply the transform.

        When ``candidate`` is a float64 ``(N, 3)`` array it is transformed
        in place; the transformed array is returned either way.

        Args:
            candidate: Preprocessed frame
            target: Snapshot of the stitched model
            max_iterations: Iteration bound for both stages

        Returns:
            ``(transformed_candidate, result)``
        """
        if max_iterations is None:
            max_iterations = self.config.max_iterations

        points = as_points(candidate)
        target = as_points(target)
        result = RegistrationResult()

        if len(points) < self.config.min_points or len(target) < self.config.min_points:
            result.skipped_reason = (
                f"too few points (candidate={len(points)}, target={len(target)})"
            )
            logger.warning(f"Registration skipped: {result.skipped_reason}")
            return points, result

        max_dist = self.config.max_correspondence_distance
        baseline = evaluate_alignment(points, target, np.eye(4), max_dist)
        result.initial_fitness = baseline.fitness

        coarse = self.coarse_align(points, target, max_iterations, baseline=baseline)
        result.coarse_applied = not np.allclose(coarse.transformation, np.eye(4))

        fine = self.fine_align(points, target, max_iterations, init=coarse.transformation)
        if fine.correspondence_count >= 3:
            final = fine
            result.fine_applied = True
        else:
            final = coarse

        result.transformation = final.transformation
        result.fitness = final.fitness
        result.rmse = final.rmse

        transformed = rigid_transform(points, final.transformation)
        if isinstance(candidate, np.ndarray) and candidate.shape == transformed.shape \
                and candidate.dtype == transformed.dtype:
            candidate[...] = transformed
            transformed = candidate

        logger.debug(
            f"Registered: fitness={result.fitness:.3f}, rmse={result.rmse:.4f}, "
            f"coarse={result.coarse_applied}, fine={result.fine_applied}"
        )
        return transformed, result

    def validate_registration(self, result: RegistrationResult) -> dict:
        """Check a registration result against the quality thresholds.

        Returns:
            Dict with validation status and details
        """
        issues = []

        if result.skipped_reason:
            issues.append(f"Skipped: {result.skipped_reason}")

        if result.fitness < self.config.fitness_threshold:
            issues.append(f"Low fitness: {result.fitness:.2f} < {self.config.fitness_threshold}")

        if result.rmse > self.config.rmse_threshold:
            issues.append(f"High RMSE: {result.rmse:.3f} > {self.config.rmse_threshold}")

        return {
            'valid': len(issues) == 0 and result.converged,
            'converged': result.converged,
            'issues': issues,
            'fitness': result.fitness,
            'rmse': result.rmse,
            'translation': result.translation_norm,
            'rotation_deg': result.rotation_deg,
        }
