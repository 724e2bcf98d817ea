"""
Test Suite for M8 Branch Evaluator
Fracture Growth Optimizer (frac-grow)

Coulomb stress at interior nodes and fault splitting.

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import pytest
import numpy as np
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from modules.m01_geometry import TipKey, Segment, Fracture, GeometrySnapshot
from modules.m08_branching import BranchEvaluator


def fault_output(name, us_pos, strength=0.01, element=1.0):
    """Solver output block for a straight fault along the x axis, printed to 5 decimals."""
    lines = [f"FAULT: {name}"]
    for i in range(len(us_pos)):
        lines.append(f"{i + 1} {i * element:.5f} 0 {(i + 1) * element:.5f} 0 {element:.5f} "
                     f"0 0 0 0 {strength} 0 0 0 0")
    for i, slip in enumerate(us_pos):
        lines.append(f"{i + 1} 0 0 {slip} 0 0 0 0 0")
    lines.append("DATA FROM LOADING STEP #1 of 1")
    return "\n".join(lines) + "\n"


class TestBranchEvaluator:
    """Test suite for BranchEvaluator"""

    def setup_method(self):
        self.brancher = BranchEvaluator()
        fa = Fracture("fa", (Segment(0, 0, 6, 0, 6),), grow_end1=True, grow_end2=True)
        other = Fracture("fz", (Segment(0, 5, 1, 5),))
        self.snap = GeometrySnapshot((fa, other))

    def test_pure_shear_coulomb(self):
        """Test 1: Pure shear tau gives tau / cos(phi)"""
        coul = self.brancher.principal_coulomb(0.0, 0.0, 1.0)
        assert coul == pytest.approx(1.0 / np.cos(np.radians(30.0)))

    def test_node_stresses_count(self):
        """Test 2: One node between every pair of elements"""
        from modules.m04_solver import parse_fault_rows
        geometry, stresses = parse_fault_rows(fault_output("fa", [0, 0, 0, 1, 0, 0]), "fa")
        nodes = self.brancher.node_stresses(geometry, stresses)
        assert len(nodes) == 5
        assert nodes[2].split_point == (3.0, 0.0)
        assert nodes[2].coulomb > nodes[3].coulomb > 0
        assert nodes[0].coulomb == pytest.approx(0.0)

    def test_split_at_failing_node(self):
        """Test 3: Fault splits at the node whose Coulomb stress exceeds S0"""
        result = self.brancher.branch(self.snap, fault_output("fa", [0, 0, 0, 1, 0, 0]), "fa")
        assert result.split
        assert result.children == ["fab1", "fab2"]
        snap = result.snapshot
        assert snap.fracture_names == ["fab1", "fab2", "fz"]
        b1, b2 = snap.fracture("fab1"), snap.fracture("fab2")
        assert b1.tip(2) == (3.0, 0.0)
        assert b2.tip(1) == (3.0, 0.0)
        assert b1.element_count == 3 and b2.element_count == 3
        assert snap.growing_tips() == [TipKey("fab1", 1), TipKey("fab2", 2)]

    def test_no_failure_no_split(self):
        """Test 4: Coulomb stress below strength leaves the fault intact"""
        result = self.brancher.branch(self.snap, fault_output("fa", [0, 0, 0, 1, 0, 0], strength=1.0), "fa")
        assert not result.split
        assert result.snapshot is self.snap

    def test_short_fault_never_branches(self):
        """Test 5: Fewer elements than the minimum -> no test"""
        result = self.brancher.branch(self.snap, fault_output("fz", [0, 1]), "fz")
        assert not result.split
        assert result.stresses == []

    def test_missing_rows_warn(self):
        with pytest.warns(UserWarning):
            result = self.brancher.branch(self.snap, "no fault rows\n", "fa")
        assert not result.split

    def test_split_requires_interior_node(self):
        """Test 7: Splitting at an end point is rejected"""
        with pytest.raises(ValueError):
            self.brancher.split(self.snap.fracture("fa"), 0)
        with pytest.raises(ValueError):
            self.brancher.split(self.snap.fracture("fa"), 6)

    def test_split_on_rounded_coordinates(self):
        """Test 8: Printed coordinates that differ from the geometry still split"""
        fa = Fracture("fa", (Segment(0, 0, 2, 0, 6),), grow_end1=True, grow_end2=True)
        snap = GeometrySnapshot((fa,))
        text = fault_output("fa", [0, 0, 0, 1, 0, 0], element=1 / 3)
        result = self.brancher.branch(snap, text, "fa")
        assert result.split
        assert result.node.index == 2
        b1, b2 = result.snapshot.fracture("fab1"), result.snapshot.fracture("fab2")
        assert b1.element_count == 3 and b2.element_count == 3
        assert b1.tip(2) == pytest.approx((1.0, 0.0))
        assert b2.tip(1) == pytest.approx((1.0, 0.0))

    def test_row_count_mismatch_warns(self):
        """Test 9: Solver rows that do not match the element count leave the fault intact"""
        with pytest.warns(UserWarning, match="not branching"):
            result = self.brancher.branch(self.snap, fault_output("fa", [0, 0, 1, 0, 0]), "fa")
        assert not result.split
        assert result.snapshot is self.snap
