"""
M4: Solver Adapter
Fracture Growth Optimizer (frac-grow)

Contract between the optimizer and the external mechanical solver (FRIC2D or
the sandbox variant): serialize a geometry snapshot to the solver input
format, run the solver, and extract external work, condition number and the
elements that slipped or opened in the final loading step.

Classes:
    GrowInputError: Malformed input file or run arguments
    SolverError: Failure of one solver evaluation
    SolverUnavailableError: Solver infrastructure missing (fatal for the run)
    SolverOutput: Parsed result of one solver run
    SolverAdapter: Base adapter interface
    ExternalSolverAdapter: Runs the solver executable through subprocess
    DebugSolverAdapter: Random-work stub used in debug mode
    TopographyUpdater: Collaborator interface for boundary updates (no-op default)

Functions:
    read_input_text / read_input_file: Input codec (text -> GeometrySnapshot)
    format_input / write_input_file: Input codec (GeometrySnapshot -> text)
    detect_loading_type: Displacement- vs stress-driven boundary conditions
    parse_* : Solver output parsers

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import os
import re
import logging
import subprocess
import threading
from dataclasses import dataclass
from typing import Dict, List, Tuple, Optional, FrozenSet, Sequence

import numpy as np

try:
    from config import SOLVER, BRANCHING
except ImportError:
    import sys
    sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
    from config import SOLVER, BRANCHING

from .m01_geometry import (
    GeometrySnapshot,
    Fracture,
    Boundary,
    Flaw,
    Segment,
    TipKey,
)

_LOGGER = logging.getLogger(__name__)

OPTION_KEYS = ("*Update", "*Run_Mode", "*Limit_Test", "*Continue_Check", "*Branch_faults")

_NUMERIC_LINE = re.compile(r"^\s*\d+\s+\S")
_OPTION_LINE = re.compile(r"^(\*\w+)\s*=\s*(\S+)")
_WORK_LINE = re.compile(r"^\s*(?:Wext|EXTERNAL\s+WORK)\s*[=:]\s*(\S+)", re.IGNORECASE)


class GrowInputError(ValueError):
    """Malformed input geometry, options or run arguments"""


class SolverError(RuntimeError):
    """One solver evaluation failed (missing output, unparsable or nan work)"""


class SolverUnavailableError(SolverError):
    """Solver executable or work extractor cannot be started"""


# =============================================================================
# Input codec
# =============================================================================

def _parse_segment(tokens: Sequence[str]) -> Segment:
    num = int(float(tokens[0]))
    x1, y1, x2, y2 = (float(t) for t in tokens[1:5])
    return Segment(x1, y1, x2, y2, num, tuple(tokens[5:]))


def read_input_text(text: str) -> GeometrySnapshot:
    """
    Parse solver input text into a GeometrySnapshot.

    Recognized blocks:
        *Boundary Lines            followed by 'num xb yb xe ye kode bv1 bv2 bv3 bv4' rows
        fault name tail end1 end2  header, optional '*Crack props' line, then segment rows
        *Flaw-Intact name x y length both props...
        *Key = VALUE               run options
    Every other line is kept verbatim in the preamble.
    """
    preamble: List[str] = []
    options: List[Tuple[str, str]] = []
    boundaries: List[Boundary] = []
    flaws: List[Flaw] = []
    fractures: List[Fracture] = []

    mode = None
    bound_segments: List[Segment] = []
    fault_header: Optional[List[str]] = None
    fault_segments: List[Segment] = []
    crack_props: Optional[Tuple[str, ...]] = None

    def close_block():
        nonlocal bound_segments, fault_header, fault_segments, crack_props
        if mode == "boundary" and bound_segments:
            boundaries.append(Boundary(f"boundary{len(boundaries) + 1}", tuple(bound_segments)))
        elif mode == "fault" and fault_header is not None:
            if not fault_segments:
                raise GrowInputError(f"Fault {fault_header[1]} has no segment lines")
            fractures.append(Fracture(
                name=fault_header[1],
                segments=tuple(fault_segments),
                grow_tail=fault_header[2] if len(fault_header) > 2 else "no",
                grow_end1=len(fault_header) > 3 and fault_header[3].lower() == "yes",
                grow_end2=len(fault_header) > 4 and fault_header[4].lower() == "yes",
                crack_props=crack_props,
            ))
        bound_segments = []
        fault_header = None
        fault_segments = []
        crack_props = None

    for raw in text.splitlines():
        line = raw.rstrip("\r")
        tokens = line.split()

        if not tokens:
            close_block()
            mode = None
            continue

        option = _OPTION_LINE.match(line)
        if re.match(r"^\*boundary\s+lines", line, re.IGNORECASE):
            close_block()
            mode = "boundary"
        elif tokens[0] == "fault":
            close_block()
            if len(tokens) < 2:
                raise GrowInputError(f"Fault header without a name: {line!r}")
            mode = "fault"
            fault_header = tokens
        elif tokens[0] == "*Flaw-Intact":
            close_block()
            mode = None
            if len(tokens) < 5:
                raise GrowInputError(f"Flaw line needs name, x, y and length: {line!r}")
            both = len(tokens) > 5 and tokens[5].lower() == "yes"
            flaws.append(Flaw(tokens[1], float(tokens[2]), float(tokens[3]), float(tokens[4]),
                              both, tuple(tokens[6:])))
        elif tokens[0] == "*Crack" and mode == "fault":
            crack_props = tuple(tokens[1:])
        elif option and option.group(1) in OPTION_KEYS:
            options.append((option.group(1), option.group(2).upper()))
        elif mode == "boundary" and _NUMERIC_LINE.match(line):
            bound_segments.append(_parse_segment(tokens))
        elif mode == "fault" and _NUMERIC_LINE.match(line):
            fault_segments.append(_parse_segment(tokens))
        else:
            preamble.append(line)

    close_block()
    return GeometrySnapshot(
        fractures=tuple(fractures),
        boundaries=tuple(boundaries),
        flaws=tuple(flaws),
        preamble=tuple(preamble),
        options=tuple(options),
    )


def read_input_file(path: str) -> GeometrySnapshot:
    with open(path, "r") as handle:
        return read_input_text(handle.read())


def _fmt(value: float) -> str:
    return format(value, ".10g")


def _segment_line(seg: Segment) -> str:
    parts = [str(seg.num), _fmt(seg.x1), _fmt(seg.y1), _fmt(seg.x2), _fmt(seg.y2)]
    parts.extend(seg.props)
    return "\t".join(parts)


def format_input(snapshot: GeometrySnapshot) -> str:
    """Serialize a snapshot in the layout read_input_text accepts."""
    lines = list(snapshot.preamble)
    for key, value in snapshot.options:
        lines.append(f"{key} = {value}")
    lines.append("")

    for bound in snapshot.boundaries:
        lines.append("*Boundary Lines")
        lines.extend(_segment_line(seg) for seg in bound.segments)
        lines.append("")

    for flaw in snapshot.flaws:
        both = "yes" if flaw.both_ends else "no"
        lines.append("\t".join(["*Flaw-Intact", flaw.name, _fmt(flaw.x), _fmt(flaw.y),
                                _fmt(flaw.length), both] + list(flaw.props)))
    if snapshot.flaws:
        lines.append("")

    for frac in snapshot.fractures:
        lines.append("\t".join(["fault", frac.name, frac.grow_tail,
                                "yes" if frac.grow_end1 else "no",
                                "yes" if frac.grow_end2 else "no"]))
        if frac.crack_props is not None:
            lines.append("\t".join(("*Crack",) + frac.crack_props))
        lines.extend(_segment_line(seg) for seg in frac.segments)
        lines.append("")

    return "\n".join(lines) + "\n"


def write_input_file(snapshot: GeometrySnapshot, path: str) -> str:
    with open(path, "w") as handle:
        handle.write(format_input(snapshot))
    return path


def detect_loading_type(snapshot: GeometrySnapshot) -> bool:
    """
    Decide whether the run minimizes (displacement-driven) or maximizes work.

    Boundary rows carry 'kode bv1 bv2 bv3 bv4'; the last nonzero (s, n) pair
    is used. Displacement: kode 2 with s or n, kode 3 with s, kode 4 with n.
    Traction: kode 1 with s or n, kode 3 with n, kode 4 with s.

    Returns:
        True for displacement boundary conditions (minimize work)

    Raises:
        GrowInputError: No boundary lines, no nonzero conditions, or a mix
    """
    if not snapshot.boundaries:
        raise GrowInputError("Could not find boundary conditions: include a '*Boundary Lines' block")

    found: Optional[bool] = None
    for seg in snapshot.boundary_segments():
        if len(seg.props) != 5:
            continue
        kode = int(float(seg.props[0]))
        values = [float(v) for v in seg.props[1:]]
        s, n = values[2], values[3]
        if s == 0 and n == 0:
            s, n = values[0], values[1]

        is_disp = None
        if (kode == 2 and (s != 0 or n != 0)) or (kode == 3 and s != 0) or (kode == 4 and n != 0):
            is_disp = True
        elif (kode == 1 and (s != 0 or n != 0)) or (kode == 3 and n != 0) or (kode == 4 and s != 0):
            is_disp = False

        if is_disp is None:
            continue
        if found is not None and found != is_disp:
            raise GrowInputError("Boundary conditions mix nonzero stresses and displacements; use only one")
        found = is_disp

    if found is None:
        raise GrowInputError("Could not find nonzero boundary conditions; cannot decide to minimize or maximize work")
    return found


# =============================================================================
# Output parsing
# =============================================================================

def parse_work(text: str) -> float:
    """External work from the last 'Wext = value' line; nan is an error."""
    value = None
    for line in text.splitlines():
        match = _WORK_LINE.match(line)
        if match:
            value = match.group(1)
    if value is None:
        raise SolverError("No external work found in solver output")
    return _to_work(value)


def _to_work(token: str) -> float:
    try:
        work = float(token)
    except ValueError:
        raise SolverError(f"External work is not numeric: {token!r}")
    if np.isnan(work):
        raise SolverError("External work is not a number; check the geometry of the input file")
    return work


def parse_condition_number(text: str) -> float:
    """Fourth token of the 'CONDITION NUMBER' line (0 if absent)."""
    for line in text.splitlines():
        if line.startswith("CONDITION NUMBER"):
            tokens = line.split()
            if len(tokens) > 3:
                try:
                    return float(tokens[3])
                except ValueError:
                    raise SolverError(f"Unparsable condition number line: {line!r}")
    return 0.0


def _final_step_lines(text: str) -> List[str]:
    """Lines following the 'DATA FROM LOADING STEP #k of N' header with k == N."""
    lines = text.splitlines()
    start = None
    for i, line in enumerate(lines):
        if line.startswith("DATA FROM LOADING STEP #"):
            tokens = line.split()
            current = tokens[4].lstrip("#") if len(tokens) > 4 else ""
            final = tokens[6] if len(tokens) > 6 else ""
            if current and current == final:
                start = i + 1
    return [] if start is None else lines[start:]


def parse_slipped_elements(text: str) -> FrozenSet[int]:
    """Element numbers that slipped or opened in the final loading step."""
    elements = set()
    reading = False
    for line in _final_step_lines(text):
        if re.search(r"following frictional elements (slipped|opened) in this loading step", line):
            reading = True
            continue
        if not reading:
            continue
        tokens = line.split()
        if tokens and all(t.isdigit() for t in tokens):
            elements.update(int(t) for t in tokens)
        elif tokens:
            reading = False
    return frozenset(elements)


def _fault_blocks(text: str) -> Dict[str, List[List[str]]]:
    """Rows (token lists) of each 'FAULT: name' block, in file order."""
    blocks: Dict[str, List[List[str]]] = {}
    current = None
    for line in text.splitlines():
        tokens = line.split()
        if line.startswith("FAULT:"):
            current = tokens[1] if len(tokens) > 1 else None
            if current is not None:
                blocks.setdefault(current, [])
        elif current is not None and tokens and tokens[0].isdigit():
            blocks[current].append(tokens)
        elif current is not None and (re.search(r"tip\s+BE", line) or line.startswith("DATA FROM")):
            current = None
    return blocks


def parse_element_ranges(text: str) -> Dict[str, Tuple[int, int]]:
    """First and last element number of every fault listed in the output."""
    ranges = {}
    for name, rows in _fault_blocks(text).items():
        numbers = [int(r[0]) for r in rows]
        if numbers:
            ranges[name] = (numbers[0], numbers[-1])
    return ranges


def parse_fault_rows(text: str, fracture: str,
                     row_tokens: int = None) -> Tuple[List[List[str]], List[List[str]]]:
    """
    Per-element rows of one fault for the branch evaluator.

    Returns:
        (geometry rows with at least row_tokens fields, stress rows)
    """
    if row_tokens is None:
        row_tokens = BRANCHING["geometry_row_tokens"]
    geometry, stresses = [], []
    for row in _fault_blocks(text).get(fracture, []):
        if len(row) >= row_tokens:
            geometry.append(row)
        else:
            stresses.append(row)
    return geometry, stresses


def parse_tip_factors(text: str) -> Dict[int, Tuple[float, float, float]]:
    """(K1, |K2|, propagation angle) per tip element in the final loading step."""
    factors: Dict[int, List[float]] = {}
    current = None
    for line in _final_step_lines(text):
        tokens = line.split()
        match = re.match(r"^\s*tip\s+BE\s*=\s*(\d+)", line)
        if match:
            current = int(match.group(1))
            factors[current] = [0.0, 0.0, 0.0]
        elif current is not None and len(tokens) > 2 and tokens[0] in ("k1", "k2", "pangle"):
            value = float(tokens[2])
            if tokens[0] == "k1":
                factors[current][0] = value
            elif tokens[0] == "k2":
                factors[current][1] = abs(value)
            else:
                factors[current][2] = value
    return {k: tuple(v) for k, v in factors.items()}


def number_elements(snapshot: GeometrySnapshot) -> Dict[str, Tuple[int, int]]:
    """Sequential element numbering (boundaries first, then fractures) as the solver assigns it."""
    ranges = {}
    count = sum(seg.num for seg in snapshot.boundary_segments())
    for frac in snapshot.fractures:
        first = count + 1
        count += frac.element_count
        ranges[frac.name] = (first, count)
    return ranges


@dataclass(frozen=True)
class SolverOutput:
    """Result of one solver run"""
    work: float                                    # External work Wext [J]
    condition_number: float                        # Numerical conditioning diagnostic
    slipped: FrozenSet[int]                        # Elements slipped/opened in final step
    element_ranges: Dict[str, Tuple[int, int]]     # Fault -> (first, last) element number
    text: str = ""                                 # Raw output, kept for branching / limit test
    output_path: Optional[str] = None

    def new_elements(self, tips: Sequence[TipKey]) -> List[int]:
        """Element numbers added at the given tips (first for end 1, last for end 2)."""
        numbers = []
        for tip in tips:
            if tip.fracture not in self.element_ranges:
                raise SolverError(f"Could not find elements of {tip.fracture} in solver output")
            first, last = self.element_ranges[tip.fracture]
            numbers.append(first if tip.end == 1 else last)
        return numbers

    def tips_slip(self, tips: Sequence[TipKey]) -> bool:
        """True only if every newly added element slipped or opened."""
        if not self.slipped:
            return False
        return all(n in self.slipped for n in self.new_elements(tips))


def parse_solver_output(text: str, work: Optional[float] = None,
                        output_path: Optional[str] = None) -> SolverOutput:
    if work is None:
        work = parse_work(text)
    return SolverOutput(
        work=work,
        condition_number=parse_condition_number(text),
        slipped=parse_slipped_elements(text),
        element_ranges=parse_element_ranges(text),
        text=text,
        output_path=output_path,
    )


# =============================================================================
# Adapters
# =============================================================================

class SolverAdapter:
    """
    Evaluates one geometry snapshot.

    Implementations must be safe to call from several worker threads at once.
    """

    run_mode = "fric"

    def evaluate(self, snapshot: GeometrySnapshot, label: str) -> SolverOutput:
        raise NotImplementedError


class ExternalSolverAdapter(SolverAdapter):
    """
    Runs the FRIC2D (or sandbox) executable in a working directory.

    Each evaluation writes '<root>_<label>.in', runs the configured command,
    and parses '<root>_<label>.out'.
    """

    def __init__(self, workdir: str, root: str, run_mode: str = "fric",
                 topo_file: Optional[str] = None, params: Optional[Dict] = None):
        if run_mode not in ("fric", "sand"):
            raise ValueError(f"Unknown solver run mode: {run_mode}")
        self.workdir = workdir
        self.root = root
        self.run_mode = run_mode
        self.topo_file = topo_file
        self.params = dict(SOLVER)
        if params:
            self.params.update(params)

    def input_path(self, label: str) -> str:
        return os.path.join(self.workdir, f"{self.root}_{label}{self.params['input_suffix']}")

    def output_path(self, label: str) -> str:
        return os.path.join(self.workdir, f"{self.root}_{label}{self.params['output_suffix']}")

    def command(self, input_path: str, output_path: str) -> List[str]:
        template = self.params["sand_command"] if self.run_mode == "sand" else self.params["fric_command"]
        topo = self.topo_file or ""
        return [part.format(input=input_path, output=output_path, topo=topo) for part in template]

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                cmd, cwd=self.workdir, capture_output=True, text=True,
                timeout=self.params["timeout"], check=False,
            )
        except FileNotFoundError as exc:
            raise SolverUnavailableError(f"Cannot start {cmd[0]}: {exc}")
        except subprocess.TimeoutExpired:
            raise SolverError(f"{cmd[0]} timed out after {self.params['timeout']} s")

    def external_work(self, output_path: str) -> Optional[float]:
        """Work from the optional external extractor; None when not configured."""
        template = self.params["work_command"]
        if not template:
            return None
        name = os.path.basename(output_path)
        if len(name) > self.params["max_work_name_length"]:
            raise SolverError(f"Output file name too long for the work extractor: {name}")
        proc = self._run([part.format(output=output_path) for part in template])
        lines = [ln for ln in proc.stdout.splitlines() if ln.strip()]
        if proc.returncode != 0 or not lines:
            raise SolverError(f"Work extractor failed on {name}: {proc.stderr.strip()}")
        return _to_work(lines[-1].strip())

    def evaluate(self, snapshot: GeometrySnapshot, label: str) -> SolverOutput:
        in_path = write_input_file(snapshot, self.input_path(label))
        out_path = self.output_path(label)
        proc = self._run(self.command(in_path, out_path))
        if proc.returncode != 0:
            raise SolverError(f"Solver exited with status {proc.returncode} on {in_path}: {proc.stderr.strip()}")
        if not os.path.exists(out_path):
            raise SolverError(f"Solver produced no output for {in_path}")
        with open(out_path, "r") as handle:
            text = handle.read()
        return parse_solver_output(text, self.external_work(out_path), out_path)


class DebugSolverAdapter(SolverAdapter):
    """Stub solver: random work, constant condition number, every element slips."""

    run_mode = "debug"

    def __init__(self, seed: Optional[int] = None, params: Optional[Dict] = None):
        self.params = dict(SOLVER)
        if params:
            self.params.update(params)
        self._rng = np.random.default_rng(seed)
        self._lock = threading.Lock()

    def evaluate(self, snapshot: GeometrySnapshot, label: str) -> SolverOutput:
        with self._lock:
            work = float(self.params["debug_work_scale"] * self._rng.uniform(0.0, 100.0))
        ranges = number_elements(snapshot)
        total = max([last for _, last in ranges.values()] + [0])
        return SolverOutput(
            work=work,
            condition_number=float(self.params["debug_condition_number"]),
            slipped=frozenset(range(1, total + 1)),
            element_ranges=ranges,
        )


class TopographyUpdater:
    """
    Boundary (topography) update collaborator.

    Called once per increment with the geometry before and after the
    increment; returns the topography file to use next. The default keeps
    the current file unchanged.
    """

    def update(self, prior: GeometrySnapshot, posterior: GeometrySnapshot,
               topo_file: Optional[str]) -> Optional[str]:
        return topo_file
