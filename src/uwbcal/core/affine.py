import logging
import math
from typing import Sequence, Union

import numpy as np

from uwbcal.core.errors import DegenerateConfiguration, InsufficientPoints, InvalidData, SingularMatrix
from uwbcal.core.geometry import Matrix2x2, Point, points_to_xy
from uwbcal.core.math_engine import decompose_linear_part, rmse, solve_affine_normal_equations
from uwbcal.domain.schemas import AffineTransform, DecomposedPose
from uwbcal.models import DEFAULT_CONFIG, MIN_CORRESPONDENCES, CalibrationConfig

logger = logging.getLogger(__name__)


class AffineTransformSolver:
    """Least-squares fit of target ≈ A · source + t with a general 2x2 A."""

    def __init__(self, config: CalibrationConfig = DEFAULT_CONFIG):
        self.config = config

    def estimate_affine_transform(
        self, source: Sequence[Point], target: Sequence[Point]
    ) -> AffineTransform:
        if len(source) != len(target):
            raise InvalidData(
                f"Source and target point counts differ ({len(source)} vs {len(target)})."
            )
        n = len(source)
        if n < MIN_CORRESPONDENCES:
            raise InsufficientPoints(required=MIN_CORRESPONDENCES, provided=n)

        src = points_to_xy(source)
        dst = points_to_xy(target)
        if not (np.all(np.isfinite(src)) and np.all(np.isfinite(dst))):
            raise InvalidData("Points contain non-finite coordinates.")

        A, t = solve_affine_normal_equations(src, dst, self.config.max_condition_number)

        matrix = Matrix2x2.from_array(A)
        if abs(matrix.determinant) <= self.config.determinant_tolerance:
            raise SingularMatrix(f"Fitted linear part is singular (det={matrix.determinant:.3g}).")

        logger.debug("affine fit: n=%d A=%s t=(%.6f, %.6f)", n, A.tolist(), t[0], t[1])
        return AffineTransform(A=matrix, t=Point(float(t[0]), float(t[1]), 0.0))

    @staticmethod
    def residual_rmse(
        source: Sequence[Point], target: Sequence[Point], transform: AffineTransform
    ) -> float:
        src = points_to_xy(source)
        predicted = src @ transform.A.to_array().T + np.array([transform.t.x, transform.t.y])
        return rmse(predicted, points_to_xy(target))


class AffineDecomposer:
    """Splits a 2x2 linear part into a proper rotation and per-axis scales."""

    def __init__(self, config: CalibrationConfig = DEFAULT_CONFIG):
        self.config = config

    def extract_rotation_angle(self, matrix: Union[Matrix2x2, np.ndarray]) -> DecomposedPose:
        A = matrix.to_array() if isinstance(matrix, Matrix2x2) else np.asarray(matrix, dtype=float)
        if A.shape != (2, 2):
            raise InvalidData(f"Expected a 2x2 matrix, got shape {A.shape}.")
        if not np.all(np.isfinite(A)):
            raise SingularMatrix("Matrix contains non-finite values.")

        det = float(np.linalg.det(A))
        if abs(det) <= self.config.determinant_tolerance:
            raise SingularMatrix(f"Matrix is singular (det={det:.3g}).")
        if det < 0:
            raise DegenerateConfiguration(
                "Matrix contains a reflection (negative determinant); the measured frame is mirrored."
            )

        angle, sx, sy, R = decompose_linear_part(A)
        return DecomposedPose(
            angle_degrees=math.degrees(angle),
            scale=(sx, sy),
            rotation_matrix=Matrix2x2.from_array(R),
        )


def estimate_affine_transform(
    source: Sequence[Point], target: Sequence[Point], config: CalibrationConfig = DEFAULT_CONFIG
) -> AffineTransform:
    return AffineTransformSolver(config).estimate_affine_transform(source, target)


def extract_rotation_angle(
    matrix: Union[Matrix2x2, np.ndarray], config: CalibrationConfig = DEFAULT_CONFIG
) -> DecomposedPose:
    return AffineDecomposer(config).extract_rotation_angle(matrix)
