"""
Test Suite for M7 Tuner
Fracture Growth Optimizer (frac-grow)

Band search around a coarse optimum with cache reuse and strict improvement.

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import threading

import pytest
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from modules.m01_geometry import TipKey, Segment, Fracture, GeometrySnapshot
from modules.m03_scenarios import Scenario
from modules.m04_solver import SolverAdapter, SolverOutput, number_elements
from modules.m05_evaluator import TrialBuilder, ConcurrentEvaluator
from modules.m06_selection import ScenarioSelector, normalize_results
from modules.m07_tuning import Tuner

TIP = TipKey("fa", 2)


class StraightAheadAdapter(SolverAdapter):
    """Work grows with the tip's distance from the x axis: 180 deg is optimal"""

    def __init__(self):
        self.calls = 0
        self._lock = threading.Lock()

    def evaluate(self, snapshot, label):
        with self._lock:
            self.calls += 1
        tip_y = snapshot.fracture("fa").tip(2)[1]
        ranges = number_elements(snapshot)
        total = max(last for _, last in ranges.values())
        return SolverOutput(100.0 + 50.0 * abs(tip_y), 10.0, frozenset(range(1, total + 1)), ranges)


class TestTuner:
    """Test suite for Tuner.tune"""

    def setup_method(self):
        self.base = GeometrySnapshot((Fracture("fa", (Segment(0, 0, 1, 0),), grow_end2=True),))
        self.adapter = StraightAheadAdapter()
        self.builder = TrialBuilder()
        self.evaluator = ConcurrentEvaluator(self.adapter)
        self.tuner = Tuner(self.builder, self.evaluator, ScenarioSelector(minimize=True))
        self.prev_work = 90.0
        self.prev_length = self.base.total_fracture_length()

    def coarse(self, angle):
        trial, _ = self.builder.build(self.base, Scenario.single(TIP, angle))
        raw = self.evaluator.evaluate_one(trial)
        self.adapter.calls = 0
        return normalize_results([raw], self.prev_work, self.prev_length)[0]

    def test_returns_coarse_optimum(self):
        """Test 1: Neighbours of the true optimum never replace it"""
        coarse = self.coarse(180)
        tuned = self.tuner.tune(self.base, coarse, 5, self.prev_work, self.prev_length)
        assert not tuned.improved
        assert tuned.best is coarse
        assert tuned.angles == {TIP: 180}

    def test_improves_off_centre_coarse(self):
        """Test 2: Band member closer to 180 wins"""
        coarse = self.coarse(170)
        tuned = self.tuner.tune(self.base, coarse, 10, self.prev_work, self.prev_length)
        assert tuned.improved
        assert tuned.angles == {TIP: 180}
        assert tuned.best.score < coarse.score

    def test_cached_centre_not_re_evaluated(self):
        """Test 3: Only the two new band members are solved"""
        coarse = self.coarse(180)
        tuned = self.tuner.tune(self.base, coarse, 5, self.prev_work, self.prev_length)
        assert self.adapter.calls == 2
        assert sorted(r.scenario.angle_for(TIP) for r in tuned.evaluated) == [175, 185]

    def test_band_scenarios(self):
        bands = self.tuner.band_scenarios(Scenario.single(TIP, 120), TIP, 2.5)
        assert [s.angle_for(TIP) for s in bands] == [117.5, 120, 122.5]

    def test_multi_tip_band_holds_other_tips(self):
        """Test 5: Tuning one tip keeps the other tip at its current angle"""
        scenario = Scenario.from_mapping({TipKey("fa", 1): 180, TIP: 170})
        bands = self.tuner.band_scenarios(scenario, TIP, 10)
        assert all(s.angle_for(TipKey("fa", 1)) == 180 for s in bands)

    def test_band_without_slip_keeps_coarse(self):
        """Test 6: Band members whose new elements do not slip never replace the coarse optimum"""
        adapter = StraightAheadAdapter()
        stuck = Tuner(self.builder, ConcurrentEvaluator(adapter), ScenarioSelector(minimize=True))
        coarse = self.coarse(170)
        adapter.evaluate = lambda snapshot, label: SolverOutput(
            1.0, 10.0, frozenset(), number_elements(snapshot))
        tuned = stuck.tune(self.base, coarse, 10, self.prev_work, self.prev_length)
        assert not tuned.improved
        assert tuned.best is coarse
        assert sorted(r.scenario.angle_for(TIP) for r in tuned.evaluated) == [160, 180]
