"""
Per-antenna calibration bookkeeping.

A CalibrationRegistry owns one CalibrationSession per owner id. Sessions move
through  empty -> accumulating -> calibrated; removing a point from a
calibrated session drops the stored transform straight away, so a session is
never reported as calibrated with a transform that no longer matches its
points. Solver failures are returned as CalibrationResult objects rather than
raised.
"""
import logging
import threading
from typing import Dict, List, Optional, Sequence

from uwbcal.core.errors import CalibrationError, InvalidData
from uwbcal.core.geometry import Point
from uwbcal.core.similarity import SimilarityTransformSolver, apply_calibration, apply_calibration_many
from uwbcal.domain.schemas import (
    CalibrationResult,
    CalibrationStatistics,
    CalibrationStatus,
    CorrespondencePoint,
    SimilarityTransform,
)
from uwbcal.models import DEFAULT_CONFIG, MIN_CORRESPONDENCES, CalibrationConfig

logger = logging.getLogger(__name__)


class CalibrationSession:
    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        self.points: List[CorrespondencePoint] = []
        self.transform: Optional[SimilarityTransform] = None
        self.lock = threading.RLock()

    @property
    def status(self) -> CalibrationStatus:
        if self.transform is not None:
            return CalibrationStatus.CALIBRATED
        if self.points:
            return CalibrationStatus.ACCUMULATING
        return CalibrationStatus.EMPTY

    @property
    def is_calibrated(self) -> bool:
        return self.transform is not None

    @property
    def accuracy(self) -> Optional[float]:
        return self.transform.accuracy if self.transform is not None else None

    def add_point(self, point: CorrespondencePoint) -> None:
        with self.lock:
            self.points.append(point)

    def remove_point(self, point_id: str) -> bool:
        with self.lock:
            before = len(self.points)
            self.points = [p for p in self.points if p.id != point_id]
            removed = len(self.points) != before
            if removed:
                self.transform = None
            return removed

    def reset(self) -> None:
        with self.lock:
            self.points = []
            self.transform = None


class CalibrationRegistry:
    def __init__(
        self,
        solver: Optional[SimilarityTransformSolver] = None,
        config: CalibrationConfig = DEFAULT_CONFIG,
    ):
        self.config = config
        self.solver = solver or SimilarityTransformSolver(config)
        self._sessions: Dict[str, CalibrationSession] = {}
        self._lock = threading.Lock()

    # --- session access ---

    def _get_or_create(self, owner_id: str) -> CalibrationSession:
        with self._lock:
            session = self._sessions.get(owner_id)
            if session is None:
                session = CalibrationSession(owner_id)
                self._sessions[owner_id] = session
            return session

    def get_session(self, owner_id: str) -> Optional[CalibrationSession]:
        with self._lock:
            return self._sessions.get(owner_id)

    def owner_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def _snapshot(self) -> List[CalibrationSession]:
        with self._lock:
            return list(self._sessions.values())

    # --- point management ---

    def add_calibration_point(
        self,
        owner_id: str,
        reference_position: Point,
        measured_position: Point,
        sigma: Optional[float] = None,
    ) -> CorrespondencePoint:
        point = CorrespondencePoint(
            reference_position=reference_position,
            measured_position=measured_position,
            owner_id=owner_id,
            sigma=sigma,
        )
        self._get_or_create(owner_id).add_point(point)
        return point

    def add_points(self, points: Sequence[CorrespondencePoint]) -> None:
        for p in points:
            self._get_or_create(p.owner_id).add_point(p)

    def remove_calibration_point(self, owner_id: str, point_id: str) -> None:
        session = self.get_session(owner_id)
        if session is None:
            return
        if session.remove_point(point_id):
            logger.debug("removed point %s from %s; transform invalidated", point_id, owner_id)

    def clear(self, owner_id: Optional[str] = None) -> None:
        """Reset one session, or drop every session when owner_id is None."""
        if owner_id is None:
            with self._lock:
                self._sessions.clear()
            return
        session = self.get_session(owner_id)
        if session is not None:
            session.reset()

    # --- solving ---

    def perform_calibration(self, owner_id: str) -> CalibrationResult:
        if not owner_id or not owner_id.strip():
            return _failure(owner_id, InvalidData("Antenna id is empty."))

        session = self.get_session(owner_id)
        if session is None or not session.points:
            return _failure(owner_id, InvalidData(f"No calibration points for antenna {owner_id!r}."))

        with session.lock:
            points = list(session.points)
            try:
                _check_duplicate_references(points)
                transform = self.solver.calculate_transform(points)
            except CalibrationError as e:
                session.transform = None
                logger.warning("calibration of %s failed: %s", owner_id, e)
                return _failure(owner_id, e, points)

            session.transform = transform

        logger.info("calibration of %s succeeded: rmse=%.4f", owner_id, transform.accuracy)
        return CalibrationResult(owner_id=owner_id, success=True, transform=transform, processed_points=points)

    def perform_all_calibrations(self, stop_on_failure: bool = True) -> Dict[str, CalibrationResult]:
        results: Dict[str, CalibrationResult] = {}
        for owner_id in self.owner_ids():
            result = self.perform_calibration(owner_id)
            results[owner_id] = result
            if stop_on_failure and not result.success:
                break
        return results

    # --- consumers ---

    def _current_transform(self, owner_id: str) -> Optional[SimilarityTransform]:
        session = self.get_session(owner_id)
        if session is None:
            return None
        with session.lock:
            return session.transform

    def apply_calibrated_transform(self, point: Point, owner_id: str) -> Point:
        """Project a measured point; uncalibrated owners return it unchanged."""
        transform = self._current_transform(owner_id)
        if transform is None:
            return point
        return apply_calibration(point, transform)

    def apply_calibrated_transform_many(self, points: Sequence[Point], owner_id: str) -> List[Point]:
        session = self.get_session(owner_id)
        if session is None:
            return list(points)
        with session.lock:
            transform = session.transform
            controls = [p.reference_position for p in session.points]
        if transform is None:
            return list(points)
        return apply_calibration_many(
            points, transform, controls if self.config.warn_on_extrapolation else None
        )

    def get_calibration_accuracy(self, owner_id: str) -> Optional[float]:
        transform = self._current_transform(owner_id)
        return transform.accuracy if transform is not None else None

    def is_calibration_valid(self, owner_id: str) -> bool:
        session = self.get_session(owner_id)
        if session is None:
            return False
        with session.lock:
            transform = session.transform
            n_points = len(session.points)
        return transform is not None and transform.is_valid and n_points >= MIN_CORRESPONDENCES

    def get_calibration_statistics(self) -> CalibrationStatistics:
        sessions = self._snapshot()
        total = len(sessions)
        accuracies = []
        for s in sessions:
            with s.lock:
                transform = s.transform
            if transform is not None:
                accuracies.append(transform.accuracy)
        calibrated = len(accuracies)
        return CalibrationStatistics(
            total_antennas=total,
            calibrated_antennas=calibrated,
            completion_percentage=(calibrated / total * 100.0) if total else 0.0,
            average_accuracy=(sum(accuracies) / calibrated) if calibrated else 0.0,
        )


def _check_duplicate_references(points: Sequence[CorrespondencePoint]) -> None:
    seen = set()
    for p in points:
        key = (p.reference_position.x, p.reference_position.y, p.reference_position.z)
        if key in seen:
            raise InvalidData(f"Duplicate reference position {key}.")
        seen.add(key)


def _failure(
    owner_id: str, error: CalibrationError, points: Sequence[CorrespondencePoint] = ()
) -> CalibrationResult:
    return CalibrationResult(
        owner_id=owner_id or "",
        success=False,
        error_kind=error.kind,
        error_message=str(error),
        processed_points=list(points),
    )
