"""
Antenna pose from tag observations.

Each antenna reports tag positions in its own local frame. Repeated readings of
a tag are averaged, matched by tag id against the surveyed tag positions, and a
2D affine map  q = A · p + t  is fitted. The translation t is the image of the
antenna-local origin, i.e. the antenna position; the rotation part of A gives
its heading.
"""
import logging
from typing import Dict, List, Mapping, Sequence, Tuple, Union

from uwbcal.core.affine import AffineDecomposer, AffineTransformSolver
from uwbcal.core.errors import CalibrationError, InsufficientPoints, InvalidData
from uwbcal.core.geometry import Point, mean_point
from uwbcal.domain.schemas import AntennaPose
from uwbcal.models import DEFAULT_CONFIG, MIN_CORRESPONDENCES, CalibrationConfig

logger = logging.getLogger(__name__)


class AntennaPoseEstimator:
    def __init__(self, config: CalibrationConfig = DEFAULT_CONFIG):
        self.config = config
        self.solver = AffineTransformSolver(config)
        self.decomposer = AffineDecomposer(config)

    def estimate_antenna_config(
        self,
        measured_by_tag: Mapping[str, Sequence[Point]],
        true_positions: Mapping[str, Point],
    ) -> AntennaPose:
        common_tags = sorted(set(measured_by_tag) & set(true_positions))
        if len(common_tags) < MIN_CORRESPONDENCES:
            raise InsufficientPoints(required=MIN_CORRESPONDENCES, provided=len(common_tags))

        matched: List[Tuple[str, Point, Point]] = []
        for tag_id in common_tags:
            measurements = measured_by_tag[tag_id]
            if not measurements:
                continue
            matched.append((tag_id, mean_point(measurements), true_positions[tag_id]))

        if len(matched) < MIN_CORRESPONDENCES:
            raise InsufficientPoints(required=MIN_CORRESPONDENCES, provided=len(matched))

        for tag_id, s, q in matched:
            logger.debug("tag %s: averaged (%.3f, %.3f) -> truth (%.3f, %.3f)", tag_id, s.x, s.y, q.x, q.y)
        source = [s for _, s, _ in matched]
        target = [q for _, _, q in matched]

        if len(source) == 3:
            self._check_triangle(source)

        transform = self.solver.estimate_affine_transform(source, target)
        pose = self.decomposer.extract_rotation_angle(transform.A)
        error = self.solver.residual_rmse(source, target, transform)

        result = AntennaPose(
            x=transform.t.x,
            y=transform.t.y,
            angle_degrees=pose.angle_degrees,
            rmse=error,
            scale=pose.scale,
            tag_count=len(source),
        )
        logger.info(
            "antenna pose: position=(%.3f, %.3f) angle=%.2f deg scale=(%.3f, %.3f) rmse=%.4f tags=%d",
            result.x, result.y, result.angle_degrees, result.scale[0], result.scale[1], result.rmse, result.tag_count,
        )
        return result

    def estimate_all(
        self,
        measured_by_antenna: Mapping[str, Mapping[str, Sequence[Point]]],
        true_positions: Mapping[str, Point],
    ) -> Dict[str, Union[AntennaPose, CalibrationError]]:
        """Estimate every antenna; failures are returned in place of a pose."""
        results: Dict[str, Union[AntennaPose, CalibrationError]] = {}
        for antenna_id in sorted(measured_by_antenna):
            try:
                results[antenna_id] = self.estimate_antenna_config(measured_by_antenna[antenna_id], true_positions)
            except CalibrationError as e:
                logger.warning("antenna %s: %s", antenna_id, e)
                results[antenna_id] = e
        return results

    def _check_triangle(self, pts: Sequence[Point]) -> None:
        p1, p2, p3 = pts
        cross = abs((p2.x - p1.x) * (p3.y - p1.y) - (p2.y - p1.y) * (p3.x - p1.x))
        if cross < self.config.collinearity_threshold:
            raise InvalidData(
                f"Measured tag positions are collinear (cross product={cross:.6f}); place the tags at distinct positions."
            )


def estimate_antenna_config(
    measured_by_tag: Mapping[str, Sequence[Point]],
    true_positions: Mapping[str, Point],
    config: CalibrationConfig = DEFAULT_CONFIG,
) -> AntennaPose:
    return AntennaPoseEstimator(config).estimate_antenna_config(measured_by_tag, true_positions)
