"""
M9: Growth Driver
Fracture Growth Optimizer (frac-grow)

Runs the increment loop: generate candidates for the growing tips, correct
and evaluate them, select the optimum, tune it, optionally branch the grown
faults, apply the post-increment tip checks, and decide whether to continue.

State machine per increment:
    PROPAGATING -> EVALUATING -> SELECTING -> TUNING -> BRANCHING -> PROPAGATING
with exits STALLED_SELF_INTERSECTION (work sentinel 0), STALLED_NO_SLIP
(work sentinel -1) and STOPPED (no growing tips left).

Tip policies:
    SEQUENTIAL (default): every tip, in name order, grows by its own optimum
    SERIAL: only the single best (tip, angle) of the increment grows

Classes:
    DriverState: Driver state machine states
    RunConfiguration: Options from the input file plus run arguments
    GrowthReport: Append-only, lock-protected report with flush checkpoints
    IncrementOutcome: Result of one growth increment
    GrowthHistory: Per-increment record of a run
    GrowthDriver: The increment loop

Functions:
    check_input: Validate file name and angle arguments
    parse_forecast: Validate forecast parameters
    next_state: Termination rule from the increment work value
    limit_tips: Restrict the search to high stress-intensity tips
    run_growth: Convenience entry point

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import os
import re
import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

try:
    from config import SEARCH, SOLVER, DRIVER, CONCURRENCY, LIMIT_TEST, INTERSECTION
except ImportError:
    import sys
    sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
    from config import SEARCH, SOLVER, DRIVER, CONCURRENCY, LIMIT_TEST, INTERSECTION

from .m01_geometry import GeometrySnapshot, TipKey, clean_snapshot
from .m02_intersection import (
    IntersectionCorrector,
    stop_multiply_connected_tips,
    stop_converging_tips,
)
from .m03_scenarios import Scenario, ScenarioGenerator
from .m04_solver import (
    GrowInputError,
    SolverError,
    SolverAdapter,
    SolverOutput,
    ExternalSolverAdapter,
    DebugSolverAdapter,
    TopographyUpdater,
    detect_loading_type,
    parse_tip_factors,
    read_input_file,
    write_input_file,
)
from .m05_evaluator import ConcurrentEvaluator, EvaluationResult, TrialBuilder
from .m06_selection import (
    ScenarioSelector,
    SelectionOutcome,
    StallKind,
    interpolate_angle,
    normalize_results,
)
from .m07_tuning import Tuner
from .m08_branching import BranchEvaluator

_LOGGER = logging.getLogger(__name__)


class DriverState(Enum):
    PROPAGATING = "propagating"
    EVALUATING = "evaluating"
    SELECTING = "selecting"
    TUNING = "tuning"
    BRANCHING = "branching"
    STALLED_SELF_INTERSECTION = "stalled_self_intersection"
    STALLED_NO_SLIP = "stalled_no_slip"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (DriverState.STALLED_SELF_INTERSECTION, DriverState.STALLED_NO_SLIP,
                        DriverState.STOPPED)


def next_state(work: float, growing_tips: int, committed: bool = False) -> DriverState:
    """
    Termination rule applied after every increment.

    The work sentinels 0 and -1 only apply to increments that committed no
    geometry; a committed delWext/delA of exactly 0 keeps propagating.
    """
    if not committed and work == 0:
        return DriverState.STALLED_SELF_INTERSECTION
    if not committed and work == -1:
        return DriverState.STALLED_NO_SLIP
    if growing_tips == 0:
        return DriverState.STOPPED
    return DriverState.PROPAGATING


# =============================================================================
# Run configuration
# =============================================================================

def parse_forecast(value: Union[None, str, Sequence]) -> Optional[Tuple[str, float]]:
    """
    Forecast parameters as (criterion, fraction).

    Accepts 'min 0.8', 'max-0.5' or a (criterion, fraction) pair; None or an
    empty string disables forecasting.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        match = re.match(r"^\s*(\w+)(?:\s+|-)(\S+)\s*$", value)
        parts = list(match.groups()) if match else [value]
    else:
        parts = list(value)
    if len(parts) != 2 or parts[0] not in ("min", "max"):
        raise GrowInputError(f"Forecast must be 'min p' or 'max p', got {value!r}")
    try:
        fraction = float(parts[1])
    except (TypeError, ValueError):
        raise GrowInputError(f"Forecast fraction must be numeric, got {parts[1]!r}")
    if fraction > 1 or fraction <= 0:
        raise GrowInputError("Forecast percentage p must be between 0 and 1")
    return parts[0], fraction


def check_input(input_filename: str, increment, start, end, forecast=None) -> Tuple[float, float, float]:
    """
    Validate run arguments.

    Args:
        input_filename: Solver input file, must end in '.in'
        increment: Coarse angle increment [deg]
        start: First candidate angle [deg]
        end: End of the candidate range (exclusive) [deg]
        forecast: Optional forecast parameters

    Returns:
        (increment, start, end) as floats

    Raises:
        GrowInputError: On any invalid argument
    """
    if not input_filename.endswith(SOLVER["input_suffix"]):
        raise GrowInputError(f"Input file name must end in .in, given: {input_filename}")
    stem = os.path.basename(input_filename)[:-len(SOLVER["input_suffix"])]
    if len(stem) > SOLVER["max_name_length"] and not re.search(r"_cont\d", stem):
        raise GrowInputError(
            f"Length of file name ({stem}) > {SOLVER['max_name_length']} chars; "
            "later input files may not be read by the solver, shorten the name")
    try:
        increment, start, end = float(increment), float(start), float(end)
    except (TypeError, ValueError):
        raise GrowInputError(
            f"Increment angle ({increment}), starting angle ({start}) and ending angle ({end}) must be numeric")
    if np.isnan([increment, start, end]).any():
        raise GrowInputError("Angles must be numbers")
    if increment <= 0:
        raise GrowInputError(f"Increment angle ({increment}) must be positive")
    if start < 0:
        raise GrowInputError(f"Starting angle ({start}) < 0")
    if start > end:
        raise GrowInputError(f"Starting angle ({start}) > ending angle ({end})")
    if end >= 360:
        raise GrowInputError(f"Ending angle ({end}) >= 360")
    parse_forecast(forecast)
    return increment, start, end


def _option_is(snapshot: GeometrySnapshot, key: str, value: str) -> bool:
    return (snapshot.option(key, "") or "").upper() == value


@dataclass
class RunConfiguration:
    """Options for one run; file options merged with caller arguments"""
    input_filename: str
    angle_increment: float = SEARCH["angle_increment"]
    angle_start: float = SEARCH["angle_start"]
    angle_end: float = SEARCH["angle_end"]
    minimize: bool = True                      # Displacement-driven loading
    serial: bool = False                       # *Run_Mode = SERIAL
    update_topography: bool = False            # *Update = YES
    limit_test: bool = False                   # *Limit_Test = YES
    continue_check: bool = False               # *Continue_Check = YES
    branch: bool = False                       # *Branch_faults = YES
    forecast: Optional[Tuple[str, float]] = None
    debug: bool = False
    has_flaws: bool = False
    topo_file: Optional[str] = None
    initial_work: Optional[float] = None       # Skip the initial solve when known
    max_increments: int = DRIVER["max_increments"]
    batch_size: int = CONCURRENCY["batch_size"]
    seed: Optional[int] = None

    @property
    def root(self) -> str:
        return os.path.basename(self.input_filename)[:-len(SOLVER["input_suffix"])]

    @property
    def run_mode(self) -> str:
        if self.debug:
            return "debug"
        return "sand" if self.has_flaws else "fric"

    @property
    def check_slip(self) -> bool:
        return not self.debug

    @classmethod
    def from_snapshot(cls, snapshot: GeometrySnapshot, input_filename: str,
                      angle_increment=None, angle_start=None, angle_end=None,
                      forecast=None, **kwargs) -> "RunConfiguration":
        """Validate the arguments and read the option lines of the input geometry."""
        inc = SEARCH["angle_increment"] if angle_increment is None else angle_increment
        start = SEARCH["angle_start"] if angle_start is None else angle_start
        end = SEARCH["angle_end"] if angle_end is None else angle_end
        inc, start, end = check_input(input_filename, inc, start, end, forecast)
        return cls(
            input_filename=input_filename,
            angle_increment=inc,
            angle_start=start,
            angle_end=end,
            minimize=detect_loading_type(snapshot),
            serial=_option_is(snapshot, "*Run_Mode", "SERIAL"),
            update_topography=_option_is(snapshot, "*Update", "YES"),
            limit_test=_option_is(snapshot, "*Limit_Test", "YES"),
            continue_check=_option_is(snapshot, "*Continue_Check", "YES"),
            branch=_option_is(snapshot, "*Branch_faults", "YES"),
            forecast=parse_forecast(forecast),
            has_flaws=bool(snapshot.flaws),
            **kwargs,
        )

    def describe(self) -> List[str]:
        lines = [
            "Using displacements: minimizing work." if self.minimize else "Using stress: maximizing work.",
            "Running in single run mode (serially) by propagating only the fault that is most efficient."
            if self.serial else
            "Running in multiple run mode (sequentially) by propagating each fault at each turn in alphanumeric order.",
            "Limiting search to tips with high stress intensity." if self.limit_test else "Not limiting search.",
            "Updating position of model boundaries." if self.update_topography else "Not updating position of boundaries.",
            "Rechecking stopped growing tips." if self.continue_check else "Not checking stopped growing tips.",
            "Splitting faults where Coulomb stress > shear strength." if self.branch
            else "Not splitting faults where Coulomb stress > shear strength.",
        ]
        return lines


# =============================================================================
# Report
# =============================================================================

class GrowthReport:
    """
    Append-only run report.

    Writers from several threads are serialized by a lock. Text accumulates
    in memory and is written out at flush() checkpoints (end of batch, end
    of increment) to '<root>.raw'; the scenario index goes to '<root>.index'.
    """

    def __init__(self, raw_path: Optional[str] = None, index_path: Optional[str] = None):
        self.raw_path = raw_path
        self.index_path = index_path
        self._lock = threading.Lock()
        self._raw: List[str] = []
        self._index: List[str] = []
        self._flushed = {"raw": 0, "index": 0}

    @classmethod
    def for_run(cls, workdir: Optional[str], root: str) -> "GrowthReport":
        if workdir is None:
            return cls()
        return cls(os.path.join(workdir, root + DRIVER["report_suffix"]),
                   os.path.join(workdir, root + DRIVER["index_suffix"]))

    @property
    def text(self) -> str:
        with self._lock:
            return "".join(self._raw)

    @property
    def index_text(self) -> str:
        with self._lock:
            return "".join(self._index)

    def write(self, text: str) -> None:
        with self._lock:
            self._raw.append(text if text.endswith("\n") else text + "\n")

    def flush(self, *_) -> None:
        """Write everything appended since the previous flush."""
        with self._lock:
            for kind, path, lines in (("raw", self.raw_path, self._raw),
                                      ("index", self.index_path, self._index)):
                start = self._flushed[kind]
                chunk = lines[start:]
                self._flushed[kind] = len(lines)
                if path is None or not chunk:
                    continue
                # first write starts a fresh file
                with open(path, "w" if start == 0 else "a") as handle:
                    handle.write("".join(chunk))

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def banner(self, config: RunConfiguration) -> None:
        lines = [
            "Executing frac-grow",
            "",
            f"Reading solver input file: {config.input_filename}",
            f"\tIncrement angle: {config.angle_increment:g}",
            f"\tStarting angle: {config.angle_start:g}",
            f"\tEnding angle: {config.angle_end:g}",
        ]
        if config.topo_file:
            lines.append(f"\tTopo file: {config.topo_file}")
        if config.forecast:
            lines.append(f"\tForecast parameters: {config.forecast[0]} {config.forecast[1]:g}")
        lines.extend("\t" + line for line in config.describe())
        self.write("\n".join(lines) + "\n")

    def candidates(self, increment: int, results: Sequence[EvaluationResult]) -> None:
        header = f"{'Prop':<10} {'Fault End':<12} {'Angle':<10} {'Wext (J)':<18} {'delWext/delA (J/m^2)':<18}\n"
        rows = []
        for r in sorted(results, key=lambda r: r.scenario.sort_key()):
            for tip, angle in r.scenario.angles:
                rows.append(f"{increment:<10} {str(tip):<12} {angle:<10g} {r.work:<18.10g} {r.score:<18.10g}\n")
        if rows:
            self.write(header + "".join(rows))

    def tip_table(self, increment: int, tip: TipKey, results: Sequence[EvaluationResult],
                  efficient: Optional[float]) -> None:
        title = "" if efficient is None else f"{efficient:g}"
        lines = [f"\nPROPAGATION: {increment}",
                 f"SUMMARY FOR FAULT AND END: {tip}",
                 f"\tEFFICIENT ANGLE: {title or 'No angle found'}",
                 f"\t{'Angle':<15} {'Wext (J)':<18} {'delWext/delA (J/m^2)':<18}"]
        rows = sorted((r.scenario.angle_for(tip), r) for r in results if tip in r.scenario.tips)
        for angle, r in rows:
            lines.append(f"\t{angle:<15g} {r.work:<18.10g} {r.score:<18.10g}")
        self.write("\n".join(lines) + "\n")

    def geometry(self, title: str, angles: Dict[TipKey, float]) -> None:
        lines = [f"\n{title}", f"\t{'Fault End':<15} {'Angle':<15}"]
        for tip in sorted(angles):
            lines.append(f"\t{str(tip):<15} {angles[tip]:<15g}")
        self.write("\n".join(lines) + "\n")

    def index(self, increment: int, file_name: str, scenarios: Sequence[Scenario]) -> None:
        lines = [f"Scenario Index of File {file_name} for Propagation {increment}", "",
                 "Scenario \tFault \tEnd \tAngle", "-------------------------------------"]
        for number, scenario in enumerate(scenarios, start=1):
            for tip, angle in scenario.angles:
                lines.append(f"{number}\t\t{tip.fracture} \t{tip.end} \t{angle:g}")
            lines.append("")
        with self._lock:
            self._index.append("\n".join(lines) + "\n\n")

    def summary(self, history: "GrowthHistory") -> None:
        columns = DRIVER["summary_columns"]
        lines = ["\nCUMULATIVE SUMMARY", f"{columns[0]:<10} {columns[1]:<20} {columns[2]:<20}"]
        for label, wext, norm in history.summary_rows():
            lines.append(f"{label:<10} {wext:<20} {norm:<20}")
        self.write("\n".join(lines) + "\n")


# =============================================================================
# Run history
# =============================================================================

@dataclass
class IncrementOutcome:
    """Result of one growth increment"""
    increment: int
    snapshot: GeometrySnapshot                 # Baseline for the next increment
    work_unnorm: float                         # Wext of the committed geometry [J]
    work: float                                # delWext/delA, or the stall sentinel
    angles: Dict[TipKey, float] = field(default_factory=dict)
    best: Optional[EvaluationResult] = None
    stall: Optional[StallKind] = None
    stopped_tips: List[TipKey] = field(default_factory=list)
    branched: List[str] = field(default_factory=list)
    tuned: bool = False
    flaw_phase: bool = False
    tip_works: Dict[TipKey, Dict[float, Tuple[float, float]]] = field(default_factory=dict)


@dataclass
class GrowthHistory:
    """Per-increment record of a run, used by reports, demo and dashboard"""
    initial: GeometrySnapshot
    initial_work: float
    increments: List[IncrementOutcome] = field(default_factory=list)
    final_state: DriverState = DriverState.PROPAGATING

    def record(self, outcome: IncrementOutcome) -> None:
        self.increments.append(outcome)

    @property
    def final_snapshot(self) -> GeometrySnapshot:
        return self.increments[-1].snapshot if self.increments else self.initial

    @property
    def snapshots(self) -> List[GeometrySnapshot]:
        return [self.initial] + [o.snapshot for o in self.increments]

    def works_unnorm(self) -> List[float]:
        return [self.initial_work] + [o.work_unnorm for o in self.increments]

    def summary_rows(self) -> List[Tuple[str, str, str]]:
        """(label, Wext, delWext/delA); stalled rows repeat the previous value."""
        rows = [("Initial", f"{self.initial_work:.10g}", "N/A")]
        previous = "N/A"
        for o in self.increments:
            norm = previous if o.best is None and o.work == -1 else f"{o.work:.10g}"
            rows.append((str(o.increment), f"{o.work_unnorm:.10g}", norm))
            previous = norm
        return rows


# =============================================================================
# Limit test
# =============================================================================

def limit_tips(tips: Sequence[TipKey], output: SolverOutput, fraction: float = None) -> List[TipKey]:
    """
    Keep tips whose tip element has f > fraction * max f, with
    f = K1 cos^3(t/2) - 1.5 K2 sin(t) cos(t/2) at the predicted angle t.

    All tips are kept when no stress intensity factors are available.
    """
    if fraction is None:
        fraction = LIMIT_TEST["fraction"]
    factors = parse_tip_factors(output.text) if output.text else {}
    scores: Dict[TipKey, float] = {}
    for tip in tips:
        if tip.fracture not in output.element_ranges:
            continue
        first, last = output.element_ranges[tip.fracture]
        element = first if tip.end == 1 else last
        if element not in factors:
            continue
        k1, k2, pangle = factors[element]
        theta = np.radians(pangle)
        scores[tip] = float(k1 * np.cos(theta / 2) ** 3 - 1.5 * k2 * np.sin(theta) * np.cos(theta / 2))
    if not scores:
        return list(tips)
    f_max = max(scores.values())
    kept = [tip for tip in tips if tip in scores and scores[tip] > fraction * f_max]
    return kept or list(tips)


# =============================================================================
# Driver
# =============================================================================

@dataclass
class _Coarse:
    """Coarse search result of one increment"""
    base: GeometrySnapshot                     # Increment base with stopped tips cleared
    best: Optional[EvaluationResult] = None
    stall: Optional[StallKind] = None
    stopped: List[TipKey] = field(default_factory=list)
    tip_works: Dict[TipKey, Dict[float, Tuple[float, float]]] = field(default_factory=dict)


class GrowthDriver:
    """
    Increment loop over a geometry snapshot.

    Args:
        config: Run configuration
        adapter: Solver adapter (default from the run mode)
        workdir: Directory for solver files and reports; None keeps everything in memory
        report: Report object (default: files in workdir)
        topography: Topography updater collaborator
    """

    def __init__(self, config: RunConfiguration, adapter: Optional[SolverAdapter] = None,
                 workdir: Optional[str] = None, report: Optional[GrowthReport] = None,
                 topography: Optional[TopographyUpdater] = None):
        self.config = config
        self.workdir = workdir
        if adapter is None:
            if config.debug:
                adapter = DebugSolverAdapter(config.seed)
            else:
                adapter = ExternalSolverAdapter(workdir or ".", config.root, config.run_mode,
                                                config.topo_file)
        self.adapter = adapter
        self.report = report if report is not None else GrowthReport.for_run(workdir, config.root)
        self.topography = topography or TopographyUpdater()
        self.topo_file = config.topo_file

        self.generator = ScenarioGenerator()
        self.builder = TrialBuilder(self.generator, IntersectionCorrector())
        self.evaluator = ConcurrentEvaluator(adapter, config.batch_size)
        self.selector = ScenarioSelector(config.minimize)
        self.tuner = Tuner(self.builder, self.evaluator, self.selector)
        self.brancher = BranchEvaluator()
        self.state = DriverState.PROPAGATING

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_state(self, state: DriverState) -> None:
        self.state = state
        _LOGGER.debug("Driver state: %s", state.value)

    def _evaluate(self, base: GeometrySnapshot, scenarios: Sequence[Scenario], prefix: str,
                  prev_work: float, prev_length: float):
        trials, self_hits, discarded = self.builder.build_all(base, scenarios)
        batch = self.evaluator.evaluate(trials, prefix, self.report.flush)
        results = normalize_results(batch.results, prev_work, prev_length)
        return results, self_hits

    @staticmethod
    def _tip_works(results: Sequence[EvaluationResult], tip: TipKey) -> Dict[float, Tuple[float, float]]:
        return {r.scenario.angle_for(tip): (r.work, r.score) for r in results if tip in r.scenario.tips}

    def _stop(self, snapshot: GeometrySnapshot, tip: TipKey) -> GeometrySnapshot:
        if snapshot.has_fracture(tip.fracture):
            return snapshot.with_growing(tip, False)
        return snapshot

    def _forecast(self, base: GeometrySnapshot, scenario: Scenario, tip: TipKey,
                  results: Sequence[EvaluationResult], increment: int, prev_work: float,
                  prev_length: float) -> EvaluationResult:
        """Evaluate the forecast angle of one tip; any failure ends the run."""
        criterion, fraction = self.config.forecast
        works = {a: score for a, (_, score) in self._tip_works(results, tip).items()}
        angle = interpolate_angle(works, fraction, criterion)
        target = scenario.with_angle(tip, angle)
        self.report.write(f"FORECASTING ON EFFICIENT FAULT: {tip} at angle {angle:g}")
        trial, correction = self.builder.build(base, target)
        if trial is None:
            raise SolverError(f"Forecast geometry for {target.label()} is invalid: {correction.reason}")
        batch = self.evaluator.evaluate([trial], f"{increment}_forecast")
        if not batch.results:
            raise SolverError(f"Could not calculate work for forecast geometry {target.label()}")
        return normalize_results(batch.results, prev_work, prev_length)[0]

    # ------------------------------------------------------------------
    # Tip policies
    # ------------------------------------------------------------------

    def execute_serial(self, base: GeometrySnapshot, plan: Dict[TipKey, List[float]], increment: int,
                       prev_work: float, prev_length: float) -> _Coarse:
        """Evaluate every (tip, angle) and grow only the best single tip."""
        coarse = _Coarse(base=base)
        scenarios = self.generator.scenarios(plan)
        self._set_state(DriverState.EVALUATING)
        results, self_hits = self._evaluate(base, scenarios, str(increment), prev_work, prev_length)
        self.report.candidates(increment, results)

        self._set_state(DriverState.SELECTING)
        outcome: SelectionOutcome = self.selector.select(results, self.config.check_slip, scenarios, self_hits)
        for tip in sorted(plan):
            coarse.tip_works[tip] = self._tip_works(results, tip)
            efficient = None
            if outcome.found and tip in outcome.best.scenario.tips:
                efficient = outcome.best.scenario.angle_for(tip)
            self.report.tip_table(increment, tip, results, efficient)

        if not outcome.found:
            coarse.stall = outcome.stall
            for tip in outcome.stalled_tips:
                self.report.write(f"\n{outcome.stall.message} IN {tip}")
                if not self.config.continue_check:
                    coarse.base = self._stop(coarse.base, tip)
                    coarse.stopped.append(tip)
            return coarse

        best = outcome.best
        if self.config.forecast:
            tip = best.scenario.tips[0]
            best = self._forecast(base, best.scenario, tip, results, increment, prev_work, prev_length)
        coarse.best = best
        return coarse

    def execute_sequential(self, base: GeometrySnapshot, plan: Dict[TipKey, List[float]], increment: int,
                           prev_work: float, prev_length: float) -> _Coarse:
        """Grow every tip in name order, each from the geometry committed by the previous tip."""
        coarse = _Coarse(base=base)
        current = base
        efficient: Dict[TipKey, float] = {}
        last = None
        stalls = []

        for tip in sorted(plan):
            if current.has_fracture(tip.fracture) and not current.fracture(tip.fracture).is_growing(tip.end):
                continue
            self.report.write(f"\nPROPAGATION: {increment}\nTESTING ANGLES FOR FAULT AND END: {tip}\n")
            scenarios = [Scenario.single(tip, a) for a in plan[tip]]
            self._set_state(DriverState.EVALUATING)
            prefix = f"{increment}_{tip.fracture}_{tip.end}"
            results, self_hits = self._evaluate(current, scenarios, prefix, prev_work, prev_length)
            self.report.candidates(increment, results)
            coarse.tip_works[tip] = self._tip_works(results, tip)

            self._set_state(DriverState.SELECTING)
            outcome = self.selector.select(results, self.config.check_slip, scenarios, self_hits)
            if not outcome.found:
                stalls.append(outcome.stall)
                self.report.tip_table(increment, tip, results, None)
                self.report.write(f"\n{outcome.stall.message}\n\tFAULT AND END: {tip}")
                if not self.config.continue_check:
                    current = self._stop(current, tip)
                    coarse.base = self._stop(coarse.base, tip)
                    coarse.stopped.append(tip)
                continue

            best = outcome.best
            if self.config.forecast:
                best = self._forecast(current, best.scenario, tip, results, increment, prev_work, prev_length)
            efficient[tip] = best.scenario.angle_for(tip)
            self.report.tip_table(increment, tip, results, efficient[tip])
            current = best.snapshot
            last = best

        if last is None:
            if stalls and all(s is StallKind.SELF_INTERSECTION for s in stalls):
                coarse.stall = StallKind.SELF_INTERSECTION
            else:
                coarse.stall = StallKind.NO_SLIP
            return coarse

        coarse.best = replace(last, scenario=Scenario.from_mapping(efficient))
        return coarse

    # ------------------------------------------------------------------
    # Increment
    # ------------------------------------------------------------------

    def grow_increment(self, base: GeometrySnapshot, increment: int, prev_work: float,
                       last_output: Optional[SolverOutput] = None, flaw_phase: bool = False) -> IncrementOutcome:
        """
        Run one growth increment from base.

        Args:
            base: Current baseline geometry
            increment: Increment number (1-based)
            prev_work: Wext of the baseline geometry
            last_output: Solver output of the baseline (limit test)
            flaw_phase: Grow point-seeded flaws over the full circle

        Returns:
            IncrementOutcome
        """
        cfg = self.config
        prev_length = base.total_fracture_length()
        if flaw_phase:
            tips = self.generator.flaw_tips(base)
            start, end = SEARCH["flaw_angle_start"], SEARCH["flaw_angle_end"]
        else:
            tips = base.growing_tips()
            start, end = cfg.angle_start, cfg.angle_end
            if cfg.limit_test and last_output is not None:
                tips = limit_tips(tips, last_output)
                self.report.write("Limiting search to faults with high K1 or K2: " + ", ".join(map(str, tips)))
        plan = self.generator.angle_plan(tips, start, end, cfg.angle_increment)
        file_name = cfg.input_filename if increment == 1 else f"{cfg.root}.eff"
        self.report.index(increment, file_name, self.generator.scenarios(plan))

        if cfg.serial:
            coarse = self.execute_serial(base, plan, increment, prev_work, prev_length)
        else:
            coarse = self.execute_sequential(base, plan, increment, prev_work, prev_length)

        if coarse.best is None:
            self.report.write(f"\nPROPAGATION: {increment}\nNO MORE FAULTS ARE GROWING, SO DID NOT CHECK TUNED ANGLES")
            snapshot = coarse.base
            snapshot, stopped = self._post_checks(snapshot)
            return IncrementOutcome(
                increment=increment, snapshot=snapshot, work_unnorm=prev_work,
                work=coarse.stall.sentinel, stall=coarse.stall,
                stopped_tips=coarse.stopped + stopped, flaw_phase=flaw_phase,
                tip_works=coarse.tip_works,
            )

        best = coarse.best
        self.report.geometry(
            f"BEFORE TUNING PROPAGATION: {increment}\nMOST EFFICIENT delWext/delA (J/m^2): {best.score:.10g}",
            best.scenario.as_dict())
        tuned = False
        if not cfg.forecast:
            self._set_state(DriverState.TUNING)
            result = self.tuner.tune(coarse.base, best, cfg.angle_increment / 2, prev_work, prev_length,
                                     cfg.check_slip, f"{increment}_tune", self.report.flush)
            tuned = result.improved
            best = result.best
            self.report.geometry(
                f"TUNING PROPAGATION: {increment}\nMOST EFFICIENT delWext/delA (J/m^2): {best.score:.10g}",
                best.scenario.as_dict())

        snapshot = best.snapshot
        if cfg.update_topography and not cfg.debug:
            self.topo_file = self.topography.update(base, snapshot, self.topo_file)
            if hasattr(self.adapter, "topo_file"):
                self.adapter.topo_file = self.topo_file

        branched = []
        if cfg.branch and best.output is not None and best.output.text:
            self._set_state(DriverState.BRANCHING)
            snapshot, branched = self._branch(snapshot, best.output.text)

        snapshot, stopped = self._post_checks(snapshot)
        return IncrementOutcome(
            increment=increment, snapshot=snapshot, work_unnorm=best.work, work=best.score,
            angles=best.scenario.as_dict(), best=best, stopped_tips=coarse.stopped + stopped,
            branched=branched, tuned=tuned, flaw_phase=flaw_phase, tip_works=coarse.tip_works,
        )

    def _branch(self, snapshot: GeometrySnapshot, text: str):
        branched = []
        names = sorted({tip.fracture for tip in snapshot.growing_tips()})
        for name in names:
            if not snapshot.has_fracture(name):
                continue
            result = self.brancher.branch(snapshot, text, name)
            if result.split:
                snapshot = result.snapshot
                branched.append(name)
                self.report.write(f"Split fault {name} into {', '.join(result.children)}")
        return snapshot, branched

    def _post_checks(self, snapshot: GeometrySnapshot):
        snapshot, multiple = stop_multiply_connected_tips(snapshot)
        snapshot, converging = stop_converging_tips(snapshot, INTERSECTION["final_tip_fraction"])
        snapshot = clean_snapshot(snapshot)
        return snapshot, multiple + converging

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def initial_output(self, snapshot: GeometrySnapshot) -> SolverOutput:
        """Solve the input geometry (or reuse the known initial work)."""
        if self.config.initial_work is not None:
            return SolverOutput(self.config.initial_work, 0.0, frozenset(), {})
        return self.adapter.evaluate(snapshot, "initial")

    def _save(self, snapshot: GeometrySnapshot, name: str) -> None:
        if self.workdir is not None:
            write_input_file(snapshot, os.path.join(self.workdir, name))

    def _finish_increment(self, history: GrowthHistory, outcome: IncrementOutcome) -> None:
        history.record(outcome)
        self._save(outcome.snapshot, f"{self.config.root}P{outcome.increment}.eff")
        self.report.summary(history)
        self.report.flush()

    def run(self, snapshot: GeometrySnapshot) -> GrowthHistory:
        """
        Grow until a stall, no growing tips, or the increment cap.

        Raises:
            GrowInputError: Nothing is set to grow
            SolverUnavailableError: The solver cannot be started
        """
        cfg = self.config
        if not snapshot.growing_tips() and not snapshot.flaws:
            raise GrowInputError("No faults propagating: check flags in input file")

        self.report.banner(cfg)
        initial = self.initial_output(snapshot)
        history = GrowthHistory(initial=snapshot, initial_work=initial.work)
        self.report.write(f"Initial Wext (J): {initial.work:.10g}")
        self.report.flush()

        current, prev_work, last_output = snapshot, initial.work, initial
        increment = 0

        if snapshot.flaws:
            increment += 1
            outcome = self.grow_increment(current, increment, prev_work, last_output, flaw_phase=True)
            if outcome.best is None:
                self.report.write("NO FAILURE ON FLAWS AT SPECIFIED POINT(S).")
            else:
                current, prev_work, last_output = outcome.snapshot, outcome.work_unnorm, outcome.best.output
            self._finish_increment(history, outcome)

        while True:
            if not current.growing_tips():
                history.final_state = DriverState.STOPPED
                break
            if increment >= cfg.max_increments:
                _LOGGER.warning("Reached the maximum of %d increments", cfg.max_increments)
                history.final_state = DriverState.PROPAGATING
                break

            self._set_state(DriverState.PROPAGATING)
            increment += 1
            outcome = self.grow_increment(current, increment, prev_work, last_output)
            self._finish_increment(history, outcome)

            current = outcome.snapshot
            prev_work = outcome.work_unnorm
            if outcome.best is not None and outcome.best.output is not None:
                last_output = outcome.best.output

            state = next_state(outcome.work, len(current.growing_tips()), outcome.best is not None)
            if state.is_terminal:
                history.final_state = state
                break

        self._set_state(history.final_state)
        messages = {
            DriverState.STALLED_SELF_INTERSECTION: "Fault intersects itself: terminating propagation.",
            DriverState.STALLED_NO_SLIP: "No putative element(s) slipping for all faults: terminating propagation.",
            DriverState.STOPPED: "No faults are propagating: terminating propagation.",
            DriverState.PROPAGATING: "Maximum number of increments reached.",
        }
        self.report.write(messages[history.final_state])
        self._save(history.final_snapshot, f"{cfg.root}.eff")
        self.report.flush()
        _LOGGER.info("Growth finished after %d increments: %s", len(history.increments),
                     history.final_state.value)
        return history


def run_growth(input_filename: str, angle_increment=None, angle_start=None, angle_end=None,
               topo_file: Optional[str] = None, forecast=None, debug: bool = False,
               workdir: Optional[str] = None, adapter: Optional[SolverAdapter] = None,
               **kwargs) -> GrowthHistory:
    """
    Read an input file and grow its fractures.

    Args:
        input_filename: Solver input file ('.in')
        angle_increment, angle_start, angle_end: Coarse search range [deg]
        topo_file: Topography file for the sandbox solver
        forecast: Optional forecast parameters, e.g. 'min 0.8'
        debug: Use the random-work stub instead of the solver
        workdir: Directory for solver and report files (default: input file directory)
        adapter: Custom solver adapter

    Returns:
        GrowthHistory of the run
    """
    snapshot = read_input_file(input_filename)
    config = RunConfiguration.from_snapshot(
        snapshot, input_filename, angle_increment, angle_start, angle_end,
        forecast=forecast, topo_file=topo_file, debug=debug, **kwargs)
    if workdir is None:
        workdir = os.path.dirname(os.path.abspath(input_filename))
    driver = GrowthDriver(config, adapter=adapter, workdir=workdir)
    return driver.run(snapshot)
