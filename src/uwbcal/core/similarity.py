"""
Similarity-style calibration: translation, one rotation angle and independent
X/Y scale factors fitted from correspondence points.

Forward direction maps a measured-frame point into the reference frame:

    p' = R(rotation) · diag(scale.x, scale.y) · p + translation

i.e. the point is first scaled along the measured axes, then rotated, then
translated. Z passes through unchanged.
"""
import logging
import math
import warnings
from typing import List, Optional, Sequence

import numpy as np

from uwbcal.core.errors import DegenerateConfiguration, InsufficientPoints, InvalidData
from uwbcal.core.geometry import Point, points_to_xy
from uwbcal.core.math_engine import (
    calculate_wls_scaled_rotation,
    check_extrapolation,
    rmse,
    weighted_centroid,
)
from uwbcal.domain.schemas import CorrespondencePoint, SimilarityTransform
from uwbcal.models import DEFAULT_CONFIG, MIN_CORRESPONDENCES, CalibrationConfig

logger = logging.getLogger(__name__)


class SimilarityTransformSolver:
    def __init__(self, config: CalibrationConfig = DEFAULT_CONFIG):
        self.config = config

    def calculate_transform(self, points: Sequence[CorrespondencePoint]) -> SimilarityTransform:
        pts = list(points)
        if len(pts) < MIN_CORRESPONDENCES:
            raise InsufficientPoints(required=MIN_CORRESPONDENCES, provided=len(pts))

        self._validate_points(pts)

        measured = points_to_xy([p.measured_position for p in pts])
        reference = points_to_xy([p.reference_position for p in pts])
        w_sq = np.array([p.weight for p in pts], dtype=float)

        measured_c = weighted_centroid(measured, w_sq)
        reference_c = weighted_centroid(reference, w_sq)
        measured_dev = measured - measured_c
        reference_dev = reference - reference_c

        if np.linalg.matrix_rank(measured_dev, tol=self.config.rank_tolerance) < 2:
            raise DegenerateConfiguration("Measured points are collinear; rotation and scale are undetermined.")

        theta, sx, sy = calculate_wls_scaled_rotation(measured_dev, reference_dev, w_sq)
        if not (math.isfinite(theta) and math.isfinite(sx) and math.isfinite(sy)) or sx <= 0 or sy <= 0:
            raise DegenerateConfiguration(
                f"Fit produced an invalid scale (sx={sx:.6g}, sy={sy:.6g}); check for mirrored or collinear reference points."
            )

        R = _rotation_matrix(theta)
        S = np.diag([sx, sy])
        t = reference_c - R @ S @ measured_c

        predicted = (R @ S @ measured.T).T + t
        accuracy = rmse(predicted, reference)

        transform = SimilarityTransform(
            translation=Point(float(t[0]), float(t[1]), 0.0),
            rotation=theta,
            scale=Point(sx, sy, 1.0),
            accuracy=accuracy,
        )
        if not transform.is_valid:
            raise DegenerateConfiguration("Fitted transform contains non-finite values.")

        logger.debug(
            "similarity fit: n=%d rotation=%.6f rad scale=(%.6f, %.6f) rmse=%.6f",
            len(pts), theta, sx, sy, accuracy,
        )
        return transform

    def _validate_points(self, pts: List[CorrespondencePoint]) -> None:
        for i, p in enumerate(pts):
            if not (p.measured_position.is_finite and p.reference_position.is_finite):
                raise InvalidData(f"Correspondence point {i + 1} contains non-finite coordinates.")

        tol = self.config.coincidence_tolerance
        first_measured = pts[0].measured_position
        if all(p.measured_position.distance_to(first_measured) < tol for p in pts):
            raise DegenerateConfiguration("All measured points are at the same position.")

        first_reference = pts[0].reference_position
        if all(p.reference_position.distance_to(first_reference) < tol for p in pts):
            raise DegenerateConfiguration("All reference points are at the same position.")


def _rotation_matrix(theta: float) -> np.ndarray:
    c, s = math.cos(theta), math.sin(theta)
    return np.array([[c, -s], [s, c]])


def calculate_transform(
    points: Sequence[CorrespondencePoint], config: CalibrationConfig = DEFAULT_CONFIG
) -> SimilarityTransform:
    return SimilarityTransformSolver(config).calculate_transform(points)


def apply_calibration(point: Point, using: SimilarityTransform) -> Point:
    """Measured frame -> reference frame (scale, rotate, translate)."""
    sx_ = point.x * using.scale.x
    sy_ = point.y * using.scale.y
    c, s = math.cos(using.rotation), math.sin(using.rotation)
    return Point(
        c * sx_ - s * sy_ + using.translation.x,
        s * sx_ + c * sy_ + using.translation.y,
        point.z,
    )


def apply_inverse(point: Point, using: SimilarityTransform) -> Point:
    """Reference frame -> measured frame: S^-1 · R^T · (p - t)."""
    if not using.is_valid:
        raise RuntimeError("Cannot invert an invalid calibration transform.")
    dx = point.x - using.translation.x
    dy = point.y - using.translation.y
    c, s = math.cos(using.rotation), math.sin(using.rotation)
    return Point(
        (c * dx + s * dy) / using.scale.x,
        (-s * dx + c * dy) / using.scale.y,
        point.z,
    )


def apply_calibration_many(
    points: Sequence[Point],
    using: SimilarityTransform,
    control_points: Optional[Sequence[Point]] = None,
) -> List[Point]:
    """
    Vectorised forward application.

    If reference-frame control points are given, a warning is emitted for
    results that fall outside their convex hull.
    """
    out = [apply_calibration(p, using) for p in points]
    if control_points is not None and out:
        max_out_dist, count_out = check_extrapolation(points_to_xy(out), points_to_xy(list(control_points)))
        if max_out_dist is not None:
            warnings.warn(
                f"Extrapolation detected: {count_out} points fall outside the control polygon. "
                f"Maximum distance to the boundary: {max_out_dist:.3f} m"
            )
    return out
