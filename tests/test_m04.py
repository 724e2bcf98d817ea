"""
Test Suite for M4 Solver Adapter
Fracture Growth Optimizer (frac-grow)

Input codec, loading type detection, output parsers and the adapters.

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import subprocess
from unittest import mock

import pytest
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from modules.m01_geometry import TipKey
from modules.m04_solver import (
    GrowInputError,
    SolverError,
    SolverUnavailableError,
    SolverOutput,
    ExternalSolverAdapter,
    DebugSolverAdapter,
    read_input_text,
    format_input,
    detect_loading_type,
    parse_work,
    parse_condition_number,
    parse_slipped_elements,
    parse_element_ranges,
    parse_tip_factors,
    parse_fault_rows,
    parse_solver_output,
    number_elements,
)


INPUT_TEXT = """title demo model
*Run_Mode = serial
*Update = no

*Boundary Lines
4\t-10\t-10\t10\t-10\t2\t0\t0\t0\t-0.01
4\t10\t-10\t10\t10\t2\t0\t0\t0\t-0.01

*Flaw-Intact\tseed\t3\t3\t0.2\tno\t0.6\t0

fault\tfa\tno\tno\tyes
*Crack\t0.6\t0
2\t0\t0\t1\t0\t0.6\t0

fault\tfb\tno\tyes\tno
1\t5\t0\t5\t1\t0.6\t0
"""

OUTPUT_TEXT = """FRIC2D output
CONDITION NUMBER = 1234.5
FAULT: fa
9 0.0 0.0
10 0.5 0.0
FAULT: fb
11 5.0 0.0
DATA FROM LOADING STEP #1 of 2
following frictional elements slipped in this loading step
9
DATA FROM LOADING STEP #2 of 2
following frictional elements slipped in this loading step
9 10
following frictional elements opened in this loading step
11
end of list
tip BE = 10
k1 = 2.0
k2 = -0.5
pangle = 30.0
Wext = 42.5
"""


class TestInputCodec:
    """Test suite for the input file codec"""

    def setup_method(self):
        self.snap = read_input_text(INPUT_TEXT)

    def test_blocks_parsed(self):
        """Test 1: Boundaries, flaws, faults and options are recognized"""
        assert self.snap.fracture_names == ["fa", "fb"]
        assert len(self.snap.boundary_segments()) == 2
        assert self.snap.flaws[0].name == "seed"
        assert self.snap.option("*Run_Mode") == "SERIAL"
        assert self.snap.preamble == ("title demo model",)

    def test_growing_flags(self):
        """Test 2: Header tokens set end 1 / end 2 growth"""
        assert self.snap.growing_tips() == [TipKey("fa", 2), TipKey("fb", 1)]
        assert self.snap.fracture("fa").crack_props == ("0.6", "0")

    def test_format_round_trip(self):
        """Test 3: Formatted text parses back to an equal snapshot"""
        assert read_input_text(format_input(self.snap)) == self.snap

    def test_fault_without_segments(self):
        with pytest.raises(GrowInputError):
            read_input_text("fault\tfa\tno\tno\tyes\n\n")


class TestLoadingType:
    """Test suite for detect_loading_type"""

    def test_displacement_minimizes(self):
        """Test 1: kode 2 with nonzero displacement -> minimize"""
        assert detect_loading_type(read_input_text(INPUT_TEXT)) is True

    def test_traction_maximizes(self):
        """Test 2: kode 1 with nonzero traction -> maximize"""
        text = INPUT_TEXT.replace("\t2\t0\t0\t0\t-0.01", "\t1\t0\t0\t0\t-5")
        assert detect_loading_type(read_input_text(text)) is False

    def test_mixed_conditions(self):
        """Test 3: Mixed displacement and traction rows are rejected"""
        text = INPUT_TEXT.replace("4\t10\t-10\t10\t10\t2", "4\t10\t-10\t10\t10\t1")
        with pytest.raises(GrowInputError):
            detect_loading_type(read_input_text(text))

    def test_no_boundaries(self):
        with pytest.raises(GrowInputError):
            detect_loading_type(read_input_text("fault\tfa\tno\tno\tyes\n1\t0\t0\t1\t0\n"))


class TestOutputParsers:
    """Test suite for solver output parsing"""

    def test_work(self):
        assert parse_work(OUTPUT_TEXT) == pytest.approx(42.5)

    def test_nan_work(self):
        """Test 2: nan work is a solver error"""
        with pytest.raises(SolverError):
            parse_work("Wext = nan\n")
        with pytest.raises(SolverError):
            parse_work("no work here\n")

    def test_condition_number(self):
        assert parse_condition_number(OUTPUT_TEXT) == pytest.approx(1234.5)
        assert parse_condition_number("") == 0.0

    def test_slipped_final_step_only(self):
        """Test 4: Only slipped/opened lists of the final loading step count"""
        assert parse_slipped_elements(OUTPUT_TEXT) == frozenset({9, 10, 11})

    def test_element_ranges(self):
        assert parse_element_ranges(OUTPUT_TEXT) == {"fa": (9, 10), "fb": (11, 11)}

    def test_tip_factors(self):
        """Test 6: K2 is stored as magnitude"""
        assert parse_tip_factors(OUTPUT_TEXT) == {10: (2.0, 0.5, 30.0)}

    def test_tips_slip(self):
        """Test 7: Newly added elements are first (end 1) or last (end 2)"""
        output = parse_solver_output(OUTPUT_TEXT)
        assert output.new_elements([TipKey("fa", 1), TipKey("fa", 2)]) == [9, 10]
        assert output.tips_slip([TipKey("fa", 2), TipKey("fb", 1)])
        no_slip = SolverOutput(1.0, 1.0, frozenset({9}), {"fa": (9, 10)})
        assert not no_slip.tips_slip([TipKey("fa", 2)])
        with pytest.raises(SolverError):
            no_slip.new_elements([TipKey("zz", 1)])

    def test_number_elements(self):
        """Test 8: Boundaries are numbered before fractures"""
        ranges = number_elements(read_input_text(INPUT_TEXT))
        assert ranges == {"fa": (9, 10), "fb": (11, 11)}

    def test_fault_rows_exact_width(self):
        """Test 9: A 15-field element row carries geometry, a 9-field row stresses"""
        text = ("FAULT: fa\n"
                "1 0 0 1 0 1.0 0 0 0 0 0.01 0 0 0 0\n"
                "1 0 0 0.5 0 0 0 0 0\n"
                "DATA FROM LOADING STEP #1 of 1\n")
        geometry, stresses = parse_fault_rows(text, "fa")
        assert len(geometry) == 1 and len(geometry[0]) == 15
        assert geometry[0][10] == "0.01"
        assert len(stresses) == 1 and len(stresses[0]) == 9
        assert parse_fault_rows(text, "fb") == ([], [])


class TestAdapters:
    """Test suite for the solver adapters"""

    def setup_method(self):
        self.snap = read_input_text(INPUT_TEXT)

    def test_debug_adapter(self):
        """Test 1: Debug stub is reproducible and lets every element slip"""
        a = DebugSolverAdapter(seed=7).evaluate(self.snap, "x")
        b = DebugSolverAdapter(seed=7).evaluate(self.snap, "x")
        assert a.work == b.work
        assert 0 <= a.work <= 1e9
        assert a.condition_number == pytest.approx(100.0)
        assert a.tips_slip(self.snap.growing_tips())

    def test_external_adapter_parses_output(self, tmp_path):
        """Test 2: Input written, command run, output parsed"""
        adapter = ExternalSolverAdapter(str(tmp_path), "demo")

        def fake_run(cmd, **kwargs):
            out_path = cmd[cmd.index("-o") + 1]
            with open(out_path, "w") as handle:
                handle.write(OUTPUT_TEXT)
            return subprocess.CompletedProcess(cmd, 0, "", "")

        with mock.patch("modules.m04_solver.subprocess.run", side_effect=fake_run) as run:
            output = adapter.evaluate(self.snap, "1_fa_2_180")
        assert run.call_count == 1
        assert os.path.exists(adapter.input_path("1_fa_2_180"))
        assert output.work == pytest.approx(42.5)
        assert output.output_path == adapter.output_path("1_fa_2_180")

    def test_external_adapter_missing_executable(self, tmp_path):
        """Test 3: Missing executable is fatal"""
        adapter = ExternalSolverAdapter(str(tmp_path), "demo")
        with mock.patch("modules.m04_solver.subprocess.run", side_effect=FileNotFoundError("fric2d")):
            with pytest.raises(SolverUnavailableError):
                adapter.evaluate(self.snap, "x")

    def test_external_adapter_failed_run(self, tmp_path):
        """Test 4: Nonzero exit status is a per-evaluation error"""
        adapter = ExternalSolverAdapter(str(tmp_path), "demo")
        failed = subprocess.CompletedProcess(["fric2d"], 1, "", "boom")
        with mock.patch("modules.m04_solver.subprocess.run", return_value=failed):
            with pytest.raises(SolverError):
                adapter.evaluate(self.snap, "x")

    def test_sand_command_uses_topography(self, tmp_path):
        adapter = ExternalSolverAdapter(str(tmp_path), "demo", run_mode="sand", topo_file="topo.txt")
        assert "topo.txt" in adapter.command("a.in", "a.out")

    def test_unknown_run_mode(self, tmp_path):
        with pytest.raises(ValueError):
            ExternalSolverAdapter(str(tmp_path), "demo", run_mode="debug")
