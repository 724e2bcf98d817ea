"""
Test Suite for M6 Selector / Filter
Fracture Growth Optimizer (frac-grow)

Normalization, slip and outlier filters, min/max pick, stall reasons and
forecast interpolation.

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import warnings

import pytest
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from modules.m01_geometry import TipKey, Segment, Fracture, GeometrySnapshot
from modules.m03_scenarios import Scenario
from modules.m05_evaluator import EvaluationResult
from modules.m06_selection import (
    StallKind,
    ScenarioSelector,
    median,
    normalize_work,
    normalize_results,
    interpolate_angle,
)

TIP = TipKey("fa", 2)
SNAP = GeometrySnapshot((Fracture("fa", (Segment(0, 0, 1, 0),), grow_end2=True),))


def result(angle, work, cond=100.0, slipped=True, normalized=None):
    return EvaluationResult(Scenario.single(TIP, angle), SNAP, work, cond, slipped,
                            normalized_work=work if normalized is None else normalized)


class TestNormalization:
    """Test suite for work normalization"""

    def test_normalize_by_length(self):
        """Test 1: dW / dL"""
        assert normalize_work(12.0, 10.0, 2.0, 1.0) == pytest.approx(2.0)

    def test_zero_length_change(self):
        """Test 2: Unchanged length falls back to the raw delta"""
        assert normalize_work(12.0, 10.0, 1.0, 1.0) == pytest.approx(2.0)
        assert normalize_work(12.0, 10.0, 1.0 + 1e-12, 1.0) == pytest.approx(2.0)

    def test_normalize_results_uses_snapshot_length(self):
        """Test 3: Candidate length comes from the trial snapshot"""
        raw = EvaluationResult(Scenario.single(TIP, 180), SNAP, 20.0, 1.0, True)
        out = normalize_results([raw], prev_work=10.0, prev_length=0.5)
        assert out[0].normalized_work == pytest.approx(20.0)
        assert raw.normalized_work is None

    def test_median_ignores_non_finite(self):
        assert median([1.0, float("nan"), 3.0]) == pytest.approx(2.0)
        assert median([]) == 0.0


class TestScenarioSelector:
    """Test suite for ScenarioSelector"""

    def setup_method(self):
        self.selector = ScenarioSelector(minimize=True)

    def test_five_angles_non_slipping_removed(self):
        """Test 1: Lowest work at 135 does not slip, so 180 is selected"""
        results = [
            result(90, 50.0),
            result(135, 5.0, slipped=False),
            result(180, 10.0),
            result(225, 30.0),
            result(270, 60.0),
        ]
        outcome = self.selector.select(results)
        assert outcome.found
        assert outcome.best.scenario.angle_for(TIP) == 180
        assert [r.scenario.angle_for(TIP) for r in outcome.removed_no_slip] == [135]

    def test_maximize(self):
        """Test 2: Stress-driven loading picks the largest work"""
        results = [result(90, 5.0), result(180, 8.0), result(270, 7.0)]
        outcome = ScenarioSelector(minimize=False).select(results)
        assert outcome.best.scenario.angle_for(TIP) == 180

    def test_tie_goes_to_smallest_angle(self):
        """Test 3: Equal work -> smallest (tip, angle)"""
        results = [result(200, 10.0), result(150, 10.0), result(170, 10.0)]
        assert self.selector.select(results).best.scenario.angle_for(TIP) == 150

    def test_equal_condition_numbers_keep_everything(self):
        """Test 4: Identical condition numbers never trigger the stability filter"""
        results = [result(a, 10.0 + a / 100, cond=250.0) for a in (90, 120, 150, 180)]
        kept, removed = self.selector.filter_outliers(results)
        assert len(kept) == 4
        assert removed == []

    def test_zero_condition_numbers_keep_everything(self):
        results = [result(a, 10.0, cond=0.0) for a in (90, 120)]
        kept, removed = self.selector.filter_outliers(results)
        assert len(kept) == 2

    def test_outliers_removed(self):
        """Test 6: Unstable solve, huge work and negative work are dropped"""
        results = [
            result(90, 10.0),
            result(100, 11.0),
            result(110, 12.0),
            result(120, 13.0, cond=1e6),
            result(130, 1e4),
            result(140, -3.0),
        ]
        kept, removed = self.selector.filter_outliers(results)
        assert sorted(r.scenario.angle_for(TIP) for r in kept) == [90, 100, 110]
        assert len(removed) == 3

    def test_no_stable_reference_work(self):
        """Without a finite condition median no work counts as an outlier"""
        nan = float("nan")
        results = [result(90, 10.0, cond=nan), result(100, 12.0, cond=nan), result(110, -1.0, cond=nan)]
        kept, removed = self.selector.filter_outliers(results)
        assert sorted(r.scenario.angle_for(TIP) for r in kept) == [90, 100]
        assert [r.scenario.angle_for(TIP) for r in removed] == [110]

    def test_all_self_intersecting_stall(self):
        """Test 7: Every candidate intersecting itself is a distinct stall"""
        candidates = [Scenario.single(TIP, a) for a in (90, 180)]
        outcome = self.selector.select([], candidates=candidates, self_intersected=candidates)
        assert not outcome.found
        assert outcome.stall is StallKind.SELF_INTERSECTION
        assert outcome.work == 0.0
        assert outcome.stalled_tips == [TIP]

    def test_no_slip_stall(self):
        """Test 8: Nothing slips -> NO_SLIP with sentinel -1"""
        outcome = self.selector.select([result(90, 1.0, slipped=False), result(180, 2.0, slipped=False)])
        assert outcome.stall is StallKind.NO_SLIP
        assert outcome.work == -1.0

    def test_slip_check_disabled(self):
        """Test 9: Debug runs keep non-slipping candidates"""
        outcome = self.selector.select([result(90, 1.0, slipped=False)], check_slip=False)
        assert outcome.found

    def test_no_results_stall(self):
        """Test 10: Missing results without self-intersection -> NO_RESULTS"""
        candidates = [Scenario.single(TIP, a) for a in (90, 180)]
        outcome = self.selector.select([], candidates=candidates, self_intersected=candidates[:1])
        assert outcome.stall is StallKind.NO_RESULTS
        assert outcome.stall.sentinel == -1.0


class TestInterpolateAngle:
    """Test suite for forecast-mode interpolation"""

    def setup_method(self):
        self.works = {90: 1.0, 120: 4.0, 150: 10.0, 180: 6.0, 210: 2.0}

    def test_min_criterion(self):
        """Test 1: First rising bracket through 0.5 x peak"""
        assert interpolate_angle(self.works, 0.5, "min") == pytest.approx(125.0)

    def test_max_criterion(self):
        """Test 2: Last falling bracket through 0.5 x peak"""
        assert interpolate_angle(self.works, 0.5, "max") == pytest.approx(187.5)

    def test_peak_fraction_one(self):
        assert interpolate_angle(self.works, 1.0, "min") == pytest.approx(150.0)

    def test_no_bracket_warns(self):
        """Test 4: Monotone works without a bracket fall back with a warning"""
        works = {90: 10.0, 120: 9.0}
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            angle = interpolate_angle(works, 0.5, "min")
        assert angle == 90
        assert caught

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            interpolate_angle(self.works, 0.5, "median")
        with pytest.raises(ValueError):
            interpolate_angle(self.works, 1.5, "min")
        with pytest.raises(ValueError):
            interpolate_angle({}, 0.5, "min")
