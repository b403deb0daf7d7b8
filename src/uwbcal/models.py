from __future__ import annotations

from dataclasses import dataclass

# Three correspondences are needed to pin translation, rotation and both scales.
MIN_CORRESPONDENCES = 3


@dataclass(frozen=True)
class CalibrationConfig:
    """
    Numerical tolerances shared by the solvers.

    coincidence_tolerance:
        points closer than this (metres) count as the same location.
    rank_tolerance:
        singular-value cut-off used when checking that centred measured
        coordinates span the plane.
    determinant_tolerance:
        |det(A)| at or below this rejects a fitted linear part as singular.
    max_condition_number:
        normal-equation matrices worse conditioned than this are singular.
    collinearity_threshold:
        minimum |cross product| for a three-tag antenna fit.
    """
    coincidence_tolerance: float = 1e-10
    rank_tolerance: float = 1e-5
    determinant_tolerance: float = 1e-10
    max_condition_number: float = 1e12
    collinearity_threshold: float = 0.01
    warn_on_extrapolation: bool = True


DEFAULT_CONFIG = CalibrationConfig()
