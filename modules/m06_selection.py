"""
M6: Selector / Filter
Fracture Growth Optimizer (frac-grow)

Chooses the energetically optimal scenario among the evaluation results of
one increment:
1. Drop scenarios whose newly added elements did not slip or open
2. Drop numerically unstable solves (condition number > 5 x median)
3. Drop work outliers (negative, or > 10 x median of positive works)
4. Pick the minimum (displacement-driven) or maximum (stress-driven)
   normalized work, ties broken by angle ascending

Normalized work: dW / dL with L the total fracture length; when the length
does not change the raw work delta is used.

Classes:
    StallKind: Reasons why no scenario could be selected
    SelectionOutcome: Selected result or stall, with filter bookkeeping
    ScenarioSelector: Filter chain and min/max pick

Functions:
    median: Median ignoring non-finite values
    normalize_work: Work delta per unit fracture length
    normalize_results: Attach normalized work to evaluation results
    interpolate_angle: Forecast-mode angle at a fraction of the peak work

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import logging
import warnings
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
from scipy import interpolate

try:
    from config import SELECTION, FORECAST
except ImportError:
    import sys
    import os
    sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
    from config import SELECTION, FORECAST

from .m01_geometry import TipKey
from .m03_scenarios import Scenario
from .m05_evaluator import EvaluationResult

_LOGGER = logging.getLogger(__name__)


def median(values: Sequence[float]) -> float:
    """Median of the finite values; 0 for an empty list."""
    finite = [v for v in values if v is not None and np.isfinite(v)]
    if not finite:
        return 0.0
    return float(np.median(finite))


def normalize_work(work: float, prev_work: float, length: float, prev_length: float,
                   tol: float = None) -> float:
    """
    Work delta per unit added fracture length.

    Args:
        work: Unnormalized work of the candidate [J]
        prev_work: Unnormalized work of the previous increment [J]
        length: Total fracture length of the candidate [m]
        prev_length: Total fracture length of the previous increment [m]
        tol: |dL| below which the raw delta is returned

    Returns:
        (work - prev_work) / (length - prev_length)
    """
    if tol is None:
        tol = SELECTION["length_tolerance"]
    d_len = length - prev_length
    if abs(d_len) < tol:
        return work - prev_work
    return (work - prev_work) / d_len


def normalize_results(results: Sequence[EvaluationResult], prev_work: float,
                      prev_length: float) -> List[EvaluationResult]:
    """Copies of the results with normalized_work set."""
    normalized = []
    for r in results:
        value = normalize_work(r.work, prev_work, r.snapshot.total_fracture_length(), prev_length)
        normalized.append(replace(r, normalized_work=value))
    return normalized


class StallKind(Enum):
    SELF_INTERSECTION = "self_intersection"   # Every candidate intersected its own fracture
    NO_SLIP = "no_slip"                       # No newly added element slipped
    NO_RESULTS = "no_results"                 # Nothing evaluable survived

    @property
    def sentinel(self) -> float:
        """Work value the driver records for this stall (0 or -1)."""
        return 0.0 if self is StallKind.SELF_INTERSECTION else -1.0

    @property
    def message(self) -> str:
        if self is StallKind.SELF_INTERSECTION:
            return "ALL NEW ELEMENTS ADDED INTERSECT SAME FAULT"
        if self is StallKind.NO_SLIP:
            return "NO SLIP, STOPPING GROWTH"
        return "NO EVALUABLE SCENARIO"


@dataclass
class SelectionOutcome:
    """Result of ScenarioSelector.select"""
    best: Optional[EvaluationResult] = None
    stall: Optional[StallKind] = None
    survivors: List[EvaluationResult] = field(default_factory=list)
    removed_no_slip: List[EvaluationResult] = field(default_factory=list)
    removed_outliers: List[EvaluationResult] = field(default_factory=list)
    stalled_tips: List[TipKey] = field(default_factory=list)  # Tips with no productive candidate

    @property
    def found(self) -> bool:
        return self.best is not None

    @property
    def work(self) -> float:
        """Normalized work of the best result, or the stall sentinel."""
        if self.best is not None:
            return self.best.score
        return self.stall.sentinel if self.stall is not None else -1.0


class ScenarioSelector:
    """
    Filter chain and optimum pick for one increment.

    Args:
        minimize: True for displacement-driven loading (minimize work),
                  False for stress-driven loading (maximize work)
        params: Overrides for SELECTION constants
    """

    def __init__(self, minimize: bool = True, params: Optional[Dict] = None):
        self.minimize = minimize
        self.params = dict(SELECTION)
        if params:
            self.params.update(params)

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def filter_no_slip(self, results: Sequence[EvaluationResult]):
        kept = [r for r in results if r.slipped]
        removed = [r for r in results if not r.slipped]
        for r in removed:
            _LOGGER.info("Removing non-slipping scenario %s", r.scenario.label())
        return kept, removed

    def filter_outliers(self, results: Sequence[EvaluationResult]):
        """
        Remove unstable solves and work outliers.

        Returns:
            (kept, removed) lists
        """
        if not results:
            return [], []
        lim_cond = self.params["condition_factor"] * median([r.condition_number for r in results])
        stable_works = [r.work for r in results if r.work > 0 and r.condition_number <= lim_cond]
        # no stable reference work: only the condition and sign tests apply
        lim_work = self.params["work_outlier_factor"] * median(stable_works) if stable_works else np.inf

        kept, removed = [], []
        for r in results:
            if r.work > lim_work or r.work < 0 or r.condition_number > lim_cond:
                _LOGGER.info("Removing outlier %s (Wext=%g, condition=%g)",
                             r.scenario.label(), r.work, r.condition_number)
                removed.append(r)
            else:
                kept.append(r)
        return kept, removed

    # ------------------------------------------------------------------
    # Pick
    # ------------------------------------------------------------------

    def better(self, a: float, b: float) -> bool:
        """True if a is strictly better than b under the active criterion."""
        return a < b if self.minimize else a > b

    def pick(self, results: Sequence[EvaluationResult]) -> Optional[EvaluationResult]:
        """Optimum normalized work; ties go to the smallest (tip, angle) key."""
        if not results:
            return None
        ordered = sorted(results, key=lambda r: r.scenario.sort_key())
        best = ordered[0]
        for r in ordered[1:]:
            if self.better(r.score, best.score):
                best = r
        return best

    def select(self, results: Sequence[EvaluationResult], check_slip: bool = True,
               candidates: Sequence[Scenario] = (),
               self_intersected: Sequence[Scenario] = ()) -> SelectionOutcome:
        """
        Run the filter chain and pick the optimum.

        Args:
            results: Evaluation results with normalized work attached
            check_slip: Remove scenarios whose new elements did not slip
            candidates: All scenarios generated for the increment
            self_intersected: Scenarios discarded because they intersect themselves

        Returns:
            SelectionOutcome; stall is set when nothing could be selected
        """
        outcome = SelectionOutcome()
        tips = sorted({tip for s in list(candidates) + [r.scenario for r in results] for tip in s.tips})

        if not results:
            if self_intersected and len(self_intersected) >= len(candidates):
                outcome.stall = StallKind.SELF_INTERSECTION
            else:
                outcome.stall = StallKind.NO_RESULTS
            outcome.stalled_tips = tips
            return outcome

        kept = list(results)
        if check_slip:
            kept, outcome.removed_no_slip = self.filter_no_slip(kept)
            if not kept:
                outcome.stall = StallKind.NO_SLIP
                outcome.stalled_tips = tips
                return outcome

        kept, outcome.removed_outliers = self.filter_outliers(kept)
        outcome.survivors = kept
        if not kept:
            outcome.stall = StallKind.NO_RESULTS
            outcome.stalled_tips = tips
            return outcome

        outcome.best = self.pick(kept)
        _LOGGER.info("Selected %s (delWext/delA=%g)", outcome.best.scenario.label(), outcome.best.score)
        return outcome


def interpolate_angle(works: Mapping[float, float], fraction: float, criterion: str,
                      decimals: int = None) -> float:
    """
    Forecast angle where |work| reaches fraction x max|work|.

    Args:
        works: Angle -> normalized work for one tip
        fraction: Target fraction p of the peak, 0 < p <= 1
        criterion: 'min' takes the first bracket where |work| rises through
                   the target, 'max' the last bracket where it falls through it
        decimals: Rounding of the returned angle

    Returns:
        Interpolated angle [deg]
    """
    if criterion not in FORECAST["criteria"]:
        raise ValueError(f"Forecast criterion must be one of {FORECAST['criteria']}, got {criterion!r}")
    if not 0 < fraction <= 1:
        raise ValueError("Forecast fraction must be in (0, 1]")
    if not works:
        raise ValueError("No works to interpolate")
    if decimals is None:
        decimals = FORECAST["angle_decimals"]

    angles = sorted(works)
    values = np.abs([works[a] for a in angles])
    target = float(values.max()) * fraction

    bracket = None
    for i in range(len(angles) - 1):
        if criterion == "min" and values[i] <= target <= values[i + 1]:
            bracket = i
            break
        if criterion == "max" and values[i] >= target >= values[i + 1]:
            bracket = i

    if bracket is None:
        fallback = angles[0] if criterion == "min" else angles[-1]
        warnings.warn(f"No bracket around {target:g}; using angle {fallback}")
        return round(float(fallback), decimals)

    v0, v1 = values[bracket], values[bracket + 1]
    a0, a1 = angles[bracket], angles[bracket + 1]
    if v0 == v1:
        return round(float(a0), decimals)
    line = interpolate.interp1d([v0, v1], [a0, a1])
    return round(float(line(target)), decimals)
