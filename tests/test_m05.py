"""
Test Suite for M5 Concurrent Evaluator
Fracture Growth Optimizer (frac-grow)

Trial construction with per-tip correction, batching, failure isolation.

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
from modules.m04_solver import (
    SolverAdapter,
    SolverOutput,
    SolverError,
    SolverUnavailableError,
    number_elements,
)
from modules.m05_evaluator import Trial, TrialBuilder, ConcurrentEvaluator


class RecordingAdapter(SolverAdapter):
    """In-process adapter: work from the labels, every element slips"""

    def __init__(self, fail=(), unavailable=False, work=10.0):
        self.fail = set(fail)
        self.unavailable = unavailable
        self.work = work
        self.labels = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def evaluate(self, snapshot, label):
        with self._lock:
            self.labels.append(label)
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.unavailable:
                raise SolverUnavailableError("no solver")
            if label in self.fail:
                raise SolverError(f"failed {label}")
            ranges = number_elements(snapshot)
            total = max([last for _, last in ranges.values()] + [0])
            return SolverOutput(self.work, 1.0, frozenset(range(1, total + 1)), ranges)
        finally:
            with self._lock:
                self.active -= 1


def base_snapshot():
    fa = Fracture("fa", (Segment(0, 0, 1, 0),), grow_end1=True, grow_end2=True)
    return GeometrySnapshot((fa,))


def trials(count):
    snap = base_snapshot()
    return [Trial(Scenario.single(TipKey("fa", 2), 90 + i), snap) for i in range(count)]


class TestTrialBuilder:
    """Test suite for TrialBuilder"""

    def setup_method(self):
        self.builder = TrialBuilder()

    def test_multi_tip_scenario(self):
        """Test 1: Every tip of a scenario is grown"""
        scenario = Scenario.from_mapping({TipKey("fa", 1): 180, TipKey("fa", 2): 180})
        trial, result = self.builder.build(base_snapshot(), scenario)
        assert trial is not None
        assert trial.snapshot.fracture("fa").element_count == 3
        assert trial.corrections == 0

    def test_self_intersection_discarded(self):
        """Test 2: Self-intersecting scenarios are sorted out separately"""
        segs = (
            Segment(0, 0, 1, 0), Segment(1, 0, 2, 0), Segment(2, 0, 2, 1),
            Segment(2, 1, 1, 1), Segment(1, 1, 0.5, 1), Segment(0.5, 1, 0.5, 0.5),
        )
        snap = GeometrySnapshot((Fracture("coil", segs, grow_end2=True),))
        good = Scenario.single(TipKey("coil", 2), 90)
        bad = Scenario.single(TipKey("coil", 2), 180)
        built, self_hits, discarded = self.builder.build_all(snap, [good, bad])
        assert [t.scenario for t in built] == [good]
        assert self_hits == [bad]
        assert discarded == []


class TestConcurrentEvaluator:
    """Test suite for ConcurrentEvaluator"""

    def test_results_in_trial_order(self):
        """Test 1: Results keep trial order across batches"""
        adapter = RecordingAdapter()
        evaluator = ConcurrentEvaluator(adapter, batch_size=3)
        batch = evaluator.evaluate(trials(7), prefix="1")
        assert [r.scenario.angle_for(TipKey("fa", 2)) for r in batch.results] == list(range(90, 97))
        assert all(label.startswith("1_") for label in adapter.labels)

    def test_batch_size_bounds_concurrency(self):
        """Test 2: Never more workers in flight than the batch size"""
        adapter = RecordingAdapter()
        ConcurrentEvaluator(adapter, batch_size=2).evaluate(trials(6))
        assert adapter.peak <= 2

    def test_batch_callback(self):
        """Test 3: on_batch fires once per batch"""
        seen = []
        ConcurrentEvaluator(RecordingAdapter(), batch_size=4).evaluate(trials(9), on_batch=seen.append)
        assert [len(b.results) for b in seen] == [4, 4, 1]

    def test_failure_isolated(self):
        """Test 4: A failing worker yields a missing result, siblings complete"""
        failing = "fa_2_91"
        evaluator = ConcurrentEvaluator(RecordingAdapter(fail=[failing]), batch_size=4)
        batch = evaluator.evaluate(trials(4))
        assert len(batch.results) == 3
        assert [s.label() for s in batch.missing] == [failing]

    def test_zero_work_is_missing(self):
        """Test 5: Zero work means the solver could not calculate it"""
        batch = ConcurrentEvaluator(RecordingAdapter(work=0.0)).evaluate(trials(2))
        assert batch.results == []
        assert len(batch.missing) == 2

    def test_unavailable_solver_propagates(self):
        """Test 6: Missing solver infrastructure aborts the run"""
        with pytest.raises(SolverUnavailableError):
            ConcurrentEvaluator(RecordingAdapter(unavailable=True)).evaluate(trials(2))

    def test_slip_flag(self):
        """Test 7: slipped reflects the newly added elements"""
        result = ConcurrentEvaluator(RecordingAdapter()).evaluate_one(trials(1)[0])
        assert result.slipped
        assert result.score == result.work

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            ConcurrentEvaluator(RecordingAdapter(), batch_size=0)
