"""
Test Suite for M3 Scenario Generator
Fracture Growth Optimizer (frac-grow)

Angle lists, tip coordinates and trial construction.

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import pytest
import numpy as np
import numpy.testing as npt
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from modules.m01_geometry import TipKey, Segment, Fracture, Flaw, GeometrySnapshot
from modules.m03_scenarios import (
    Scenario,
    ScenarioGenerator,
    get_angles,
    tuned_band,
    new_tip_coordinates,
)


class TestAngles:
    """Test suite for candidate angle lists"""

    @pytest.mark.parametrize("start,end,inc", [(90, 270, 10), (0, 360, 45), (100, 101, 0.3), (90, 95, 10)])
    def test_angle_count(self, start, end, inc):
        """Test 1: ceil((end - start) / inc) angles, all in [start, end)"""
        angles = get_angles(start, end, inc)
        assert len(angles) == int(np.ceil((end - start) / inc))
        assert angles[0] == start
        assert all(start <= a < end for a in angles)

    def test_empty_range(self):
        """Test 2: start == end yields no candidates"""
        assert get_angles(90, 90, 10) == []

    def test_invalid_increment(self):
        with pytest.raises(ValueError):
            get_angles(0, 10, 0)

    def test_tuned_band(self):
        """Test 4: Band is angle -/+ delta around the centre"""
        assert tuned_band(180, 5) == [175, 180, 185]


class TestTipCoordinates:
    """Test suite for new_tip_coordinates (clockwise from tip -> back)"""

    def test_straight_ahead(self):
        """Test 1: 180 deg continues the fracture"""
        npt.assert_allclose(new_tip_coordinates((0, 0), (1, 0), 180), (2, 0), atol=1e-12)

    def test_right_angle(self):
        """Test 2: 90 deg turns left of a +x fracture"""
        npt.assert_allclose(new_tip_coordinates((0, 0), (1, 0), 90), (1, 1), atol=1e-12)
        npt.assert_allclose(new_tip_coordinates((0, 0), (1, 0), 270), (1, -1), atol=1e-12)

    def test_vertical_fracture(self):
        """Test 3: Vertical fracture grows straight on at 180 deg"""
        npt.assert_allclose(new_tip_coordinates((0, 0), (0, 1), 180), (0, 2), atol=1e-12)
        npt.assert_allclose(new_tip_coordinates((0, 1), (0, 0), 180), (0, -1), atol=1e-12)

    def test_custom_length(self):
        """Test 4: Length argument overrides the tip element length"""
        npt.assert_allclose(new_tip_coordinates((0, 0), (1, 0), 180, 0.25), (1.25, 0), atol=1e-12)

    def test_diagonal_fracture(self):
        """Test 5: Diagonal fractures in every quadrant keep the clockwise convention"""
        npt.assert_allclose(new_tip_coordinates((0, 0), (1, 1), 180), (2, 2), atol=1e-12)
        npt.assert_allclose(new_tip_coordinates((1, 1), (0, 0), 90), (1, -1), atol=1e-12)
        npt.assert_allclose(new_tip_coordinates((1, -1), (0, 0), 180), (-1, 1), atol=1e-12)
        point = new_tip_coordinates((0, 0), (1, 1), 180)
        assert all(type(c) is float for c in point)


class TestScenario:
    """Test suite for Scenario"""

    def test_from_mapping_sorted(self):
        """Test 1: Scenarios store tips sorted; equal mappings are equal"""
        a = Scenario.from_mapping({TipKey("b", 1): 90, TipKey("a", 2): 180})
        b = Scenario.from_mapping({TipKey("a", 2): 180, TipKey("b", 1): 90})
        assert a == b
        assert a.tips == [TipKey("a", 2), TipKey("b", 1)]

    def test_with_angle(self):
        s = Scenario.single(TipKey("a", 2), 180).with_angle(TipKey("a", 2), 185)
        assert s.angle_for(TipKey("a", 2)) == 185

    def test_label(self):
        """Test 3: Label is file-name friendly"""
        s = Scenario.from_mapping({TipKey("a", 2): 180, TipKey("b", 1): 92.5})
        assert s.label() == "a_2_180__b_1_92.5"


class TestScenarioGenerator:
    """Test suite for ScenarioGenerator"""

    def setup_method(self):
        self.gen = ScenarioGenerator()
        fa = Fracture("fa", (Segment(0, 0, 1, 0),), grow_end1=True, grow_end2=True, crack_props=("c",))
        self.snap = GeometrySnapshot((fa,))

    def test_one_trial_per_tip_angle(self):
        """Test 1: Trials = tips x angles, each adding one element"""
        plan = self.gen.angle_plan(self.snap.growing_tips(), 90, 270, 10)
        trials = self.gen.generate(self.snap, plan)
        assert len(trials) == 2 * 18
        for scenario, trial in trials:
            assert len(scenario) == 1
            assert trial.fracture("fa").element_count == 2

    def test_base_not_modified(self):
        """Test 2: Growing returns a new snapshot"""
        self.gen.grow_tip(self.snap, TipKey("fa", 2), 180)
        assert self.snap.fracture("fa").element_count == 1

    def test_end1_prepends(self):
        """Test 3: End 1 growth adds a segment ending at the old tip"""
        trial = self.gen.grow_tip(self.snap, TipKey("fa", 1), 180)
        frac = trial.fracture("fa")
        assert frac.tip(1) == pytest.approx((-1.0, 0.0))
        assert frac.segments[0].tail == (0, 0)
        assert frac.segments[0].props == ("c",)

    def test_flaw_growth(self):
        """Test 4: Flaw tip becomes a fracture starting at the seed point"""
        snap = GeometrySnapshot((), flaws=(Flaw("fl", 1.0, 1.0, 0.5),))
        tips = self.gen.flaw_tips(snap)
        assert tips == [TipKey("fl", 2)]
        trial = self.gen.grow_tip(snap, tips[0], 90)
        frac = trial.fracture("fl")
        assert frac.segments[0].head == (1.0, 1.0)
        assert frac.length == pytest.approx(0.5)
        assert trial.flaws == ()

    def test_unknown_tip(self):
        with pytest.raises(KeyError):
            self.gen.grow_tip(self.snap, TipKey("zz", 1), 180)
