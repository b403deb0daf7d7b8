import os
import sys
import threading

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from uwbcal.core.geometry import Point
from uwbcal.core.registry import CalibrationRegistry, CalibrationSession
from uwbcal.domain.schemas import CalibrationStatus


REFS = [Point(0, 0), Point(5, 0), Point(0, 5)]
OFFSET = Point(0.5, 0.5)


def _fill(registry, owner, refs=REFS, noise=()):
    """Measured = reference + offset (+ optional per-point noise)."""
    added = []
    for i, r in enumerate(refs):
        n = noise[i] if i < len(noise) else Point(0, 0)
        added.append(registry.add_calibration_point(owner, r, r + OFFSET + n))
    return added


class TestPointManagement:

    def test_add_and_remove(self):
        reg = CalibrationRegistry()
        p = reg.add_calibration_point("test_antenna", Point(1, 1), Point(0.8, 1.2))
        session = reg.get_session("test_antenna")
        assert len(session.points) == 1
        assert session.points[0].reference_position.x == 1
        assert session.points[0].measured_position.x == 0.8
        assert session.status == CalibrationStatus.ACCUMULATING

        reg.remove_calibration_point("test_antenna", p.id)
        assert session.points == []
        assert session.status == CalibrationStatus.EMPTY

    def test_remove_unknown_is_noop(self):
        reg = CalibrationRegistry()
        _fill(reg, "a")
        reg.remove_calibration_point("a", "does-not-exist")
        reg.remove_calibration_point("missing-owner", "x")
        assert len(reg.get_session("a").points) == 3

    def test_point_ids_are_unique(self):
        reg = CalibrationRegistry()
        ids = {p.id for p in _fill(reg, "a")}
        assert len(ids) == 3


class TestLifecycle:

    def test_perform_calibration_success(self):
        reg = CalibrationRegistry()
        _fill(reg, "a")
        result = reg.perform_calibration("a")
        assert result.success
        assert result.error_kind is None
        assert len(result.processed_points) == 3
        np.testing.assert_allclose(
            [result.transform.translation.x, result.transform.translation.y], [-0.5, -0.5], atol=1e-9
        )
        session = reg.get_session("a")
        assert session.status == CalibrationStatus.CALIBRATED
        assert reg.is_calibration_valid("a")
        assert reg.get_calibration_accuracy("a") < 1e-9

    def test_failure_keeps_session_uncalibrated(self):
        reg = CalibrationRegistry()
        _fill(reg, "a", refs=REFS[:2])
        result = reg.perform_calibration("a")
        assert not result.success
        assert result.error_kind == "insufficient_points"
        assert result.transform is None
        assert reg.get_session("a").status == CalibrationStatus.ACCUMULATING
        assert not reg.is_calibration_valid("a")

    def test_removal_invalidates_calibration(self):
        reg = CalibrationRegistry()
        points = _fill(reg, "a", refs=REFS + [Point(5, 5)])
        assert reg.perform_calibration("a").success

        reg.remove_calibration_point("a", points[-1].id)
        session = reg.get_session("a")
        assert session.status == CalibrationStatus.ACCUMULATING
        assert session.transform is None
        assert reg.get_calibration_accuracy("a") is None

    def test_recalibration_after_removal(self):
        reg = CalibrationRegistry()
        points = _fill(reg, "a", refs=REFS + [Point(5, 5)])
        reg.perform_calibration("a")
        reg.remove_calibration_point("a", points[-1].id)
        assert reg.perform_calibration("a").success
        assert reg.get_session("a").status == CalibrationStatus.CALIBRATED

    def test_unknown_owner(self):
        result = CalibrationRegistry().perform_calibration("nobody")
        assert not result.success
        assert result.error_kind == "invalid_data"

    def test_blank_owner(self):
        result = CalibrationRegistry().perform_calibration("   ")
        assert not result.success
        assert result.error_kind == "invalid_data"

    def test_duplicate_reference_positions(self):
        reg = CalibrationRegistry()
        _fill(reg, "a", refs=REFS + [Point(0, 0)])
        result = reg.perform_calibration("a")
        assert not result.success
        assert result.error_kind == "invalid_data"

    def test_degenerate_measurements(self):
        reg = CalibrationRegistry()
        for r in REFS:
            reg.add_calibration_point("a", r, Point(0, 0))
        result = reg.perform_calibration("a")
        assert not result.success
        assert result.error_kind == "degenerate_configuration"
        assert reg.get_session("a").status == CalibrationStatus.ACCUMULATING

    def test_clear_single_and_all(self):
        reg = CalibrationRegistry()
        _fill(reg, "a")
        _fill(reg, "b")
        reg.perform_calibration("a")
        reg.clear("a")
        assert reg.get_session("a").status == CalibrationStatus.EMPTY
        reg.clear()
        assert reg.owner_ids() == []


class TestPerformAll:

    def test_stops_on_first_failure(self):
        reg = CalibrationRegistry()
        _fill(reg, "a")
        _fill(reg, "b", refs=REFS[:2])
        _fill(reg, "c")
        results = reg.perform_all_calibrations()
        assert list(results) == ["a", "b"]
        assert results["a"].success and not results["b"].success

    def test_continues_when_asked(self):
        reg = CalibrationRegistry()
        _fill(reg, "a")
        _fill(reg, "b", refs=REFS[:2])
        _fill(reg, "c")
        results = reg.perform_all_calibrations(stop_on_failure=False)
        assert [r.success for r in results.values()] == [True, False, True]


class TestConsumers:

    def test_uncalibrated_transform_is_identity(self):
        reg = CalibrationRegistry()
        _fill(reg, "a")
        p = Point(3.0, 4.0, 1.0)
        assert reg.apply_calibrated_transform(p, "a") == p
        assert reg.apply_calibrated_transform(p, "unknown") == p

    def test_calibrated_transform(self):
        reg = CalibrationRegistry()
        _fill(reg, "a")
        reg.perform_calibration("a")
        p = reg.apply_calibrated_transform(Point(1.5, 1.5), "a")
        np.testing.assert_allclose([p.x, p.y], [1.0, 1.0], atol=1e-9)

    def test_many_warns_outside_control_polygon(self):
        reg = CalibrationRegistry()
        _fill(reg, "a")
        reg.perform_calibration("a")
        with pytest.warns(UserWarning, match="Extrapolation"):
            out = reg.apply_calibrated_transform_many([Point(50.0, 50.0)], "a")
        np.testing.assert_allclose([out[0].x, out[0].y], [49.5, 49.5], atol=1e-9)


class TestStatistics:

    def test_empty_registry(self):
        stats = CalibrationRegistry().get_calibration_statistics()
        assert stats.total_antennas == 0
        assert stats.calibrated_antennas == 0
        assert stats.completion_percentage == 0.0
        assert stats.average_accuracy == 0.0

    def test_consistency(self):
        reg = CalibrationRegistry()
        _fill(reg, "a", refs=REFS + [Point(5, 5)], noise=[Point(0.05, 0), Point(0, -0.05), Point(-0.02, 0.03)])
        _fill(reg, "b", refs=REFS + [Point(5, 5)], noise=[Point(0.1, 0.1)])
        _fill(reg, "c", refs=REFS[:2])
        results = reg.perform_all_calibrations(stop_on_failure=False)

        stats = reg.get_calibration_statistics()
        assert stats.total_antennas == 3
        assert stats.calibrated_antennas == 2
        np.testing.assert_allclose(stats.completion_percentage, 2 / 3 * 100)
        expected = np.mean([results["a"].transform.accuracy, results["b"].transform.accuracy])
        np.testing.assert_allclose(stats.average_accuracy, expected)
        assert stats.average_accuracy > 0

    def test_no_calibrated_sessions(self):
        reg = CalibrationRegistry()
        _fill(reg, "a", refs=REFS[:1])
        stats = reg.get_calibration_statistics()
        assert stats.total_antennas == 1
        assert stats.completion_percentage == 0.0
        assert stats.average_accuracy == 0.0


class TestConcurrency:

    def test_parallel_owners(self):
        reg = CalibrationRegistry()

        def work(owner):
            for _ in range(20):
                _fill(reg, owner)

        threads = [threading.Thread(target=work, args=(f"ant{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(reg.owner_ids()) == 8
        assert all(len(reg.get_session(o).points) == 60 for o in reg.owner_ids())


class _VanishingTransformSession(CalibrationSession):
    """Hands out its transform on the first read only, as if a removal landed right after."""

    def __init__(self, session):
        super().__init__(session.owner_id)
        self.points = list(session.points)
        self._pending = [session.transform]

    @property
    def transform(self):
        return self._pending.pop(0) if self._pending else None

    @transform.setter
    def transform(self, value):
        self._pending = [value] if value is not None else []


class TestSameSessionConcurrency:

    def _swap_in_vanishing(self, reg, owner):
        reg._sessions[owner] = _VanishingTransformSession(reg.get_session(owner))

    def _calibrated(self):
        reg = CalibrationRegistry()
        _fill(reg, "a")
        assert reg.perform_calibration("a").success
        return reg

    def test_apply_reads_transform_once(self):
        reg = self._calibrated()
        self._swap_in_vanishing(reg, "a")
        p = reg.apply_calibrated_transform(Point(1.5, 1.5), "a")
        np.testing.assert_allclose([p.x, p.y], [1.0, 1.0], atol=1e-9)

    def test_apply_many_reads_transform_once(self):
        reg = self._calibrated()
        self._swap_in_vanishing(reg, "a")
        out = reg.apply_calibrated_transform_many([Point(1.5, 1.5)], "a")
        np.testing.assert_allclose([out[0].x, out[0].y], [1.0, 1.0], atol=1e-9)

    def test_statistics_read_transform_once(self):
        reg = self._calibrated()
        self._swap_in_vanishing(reg, "a")
        stats = reg.get_calibration_statistics()
        assert stats.calibrated_antennas == 1
        assert stats.average_accuracy < 1e-9

    def test_add_remove_apply_on_one_owner(self):
        reg = self._calibrated()
        errors = []
        stop = threading.Event()

        def mutate():
            try:
                for i in range(200):
                    p = reg.add_calibration_point("a", Point(10.0 + i, 7.0), Point(10.5 + i, 7.5))
                    reg.perform_calibration("a")
                    reg.remove_calibration_point("a", p.id)
            except Exception as e:
                errors.append(e)
            finally:
                stop.set()

        def consume():
            try:
                while not stop.is_set():
                    reg.apply_calibrated_transform(Point(1.5, 1.5), "a")
                    reg.apply_calibrated_transform_many([Point(1.5, 1.5)], "a")
                    reg.get_calibration_accuracy("a")
                    reg.is_calibration_valid("a")
                    reg.get_calibration_statistics()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=mutate)] + [threading.Thread(target=consume) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(reg.get_session("a").points) == 3
