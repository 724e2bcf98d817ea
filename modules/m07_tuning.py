"""
M7: Tuner
Fracture Growth Optimizer (frac-grow)

Local angle refinement around the coarse optimum. For every tip of the
optimum, in tip order, the band {a - d, a, a + d} (d = half the coarse
increment) is evaluated while all other tips are held at their current best
angles. The band member equal to an already evaluated scenario reuses the
cached result. A tuned result replaces the current best only when it is
strictly better.

Classes:
    TuningResult: Best result after tuning plus bookkeeping
    Tuner: Band search around a coarse optimum

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .m01_geometry import GeometrySnapshot, TipKey
from .m03_scenarios import Scenario, tuned_band
from .m05_evaluator import (
    ConcurrentEvaluator,
    EvaluationBatch,
    EvaluationResult,
    TrialBuilder,
)
from .m06_selection import ScenarioSelector, normalize_results

_LOGGER = logging.getLogger(__name__)


@dataclass
class TuningResult:
    """Outcome of Tuner.tune"""
    best: EvaluationResult                    # Tuned optimum (the coarse one if nothing beat it)
    improved: bool = False
    evaluated: List[EvaluationResult] = field(default_factory=list)
    discarded: List[Scenario] = field(default_factory=list)

    @property
    def angles(self) -> Dict[TipKey, float]:
        return self.best.scenario.as_dict()


class Tuner:
    """
    Refine a coarse optimum by a three-angle band per tip.

    Args:
        builder: Trial builder (generator + corrector)
        evaluator: Concurrent evaluator
        selector: Selector defining the min/max criterion and outlier filter
    """

    def __init__(self, builder: TrialBuilder, evaluator: ConcurrentEvaluator,
                 selector: ScenarioSelector):
        self.builder = builder
        self.evaluator = evaluator
        self.selector = selector

    def band_scenarios(self, current: Scenario, tip: TipKey, delta: float) -> List[Scenario]:
        angle = current.angle_for(tip)
        return [current.with_angle(tip, a) for a in tuned_band(angle, delta)]

    def _choose(self, pool: List[EvaluationResult], check_slip: bool):
        if check_slip:
            pool, _ = self.selector.filter_no_slip(pool)
            if not pool:
                return None, True
        pool = [r for r in pool if r.work >= 0]
        pool, _ = self.selector.filter_outliers(pool)
        return self.selector.pick(pool), False

    def tune(self, base: GeometrySnapshot, coarse: EvaluationResult, delta: float,
             prev_work: float, prev_length: float, check_slip: bool = True,
             prefix: str = "tune",
             on_batch: Optional[Callable[[EvaluationBatch], None]] = None) -> TuningResult:
        """
        Run the band search.

        Args:
            base: Snapshot before the increment (tips are re-grown from it)
            coarse: Coarse optimum with normalized work attached
            delta: Half-width of the band [deg]
            prev_work: Unnormalized work of the previous increment
            prev_length: Total fracture length of the previous increment
            check_slip: Discard tuned scenarios whose new elements did not slip
            prefix: Label prefix for solver files

        Returns:
            TuningResult
        """
        outcome = TuningResult(best=coarse)
        cache: Dict[Scenario, EvaluationResult] = {coarse.scenario: coarse}

        for tip in coarse.scenario.tips:
            band = self.band_scenarios(outcome.best.scenario, tip, delta)
            reused = [cache[s] for s in band if s in cache]
            fresh = [s for s in band if s not in cache]

            trials, self_hits, discarded = self.builder.build_all(base, fresh)
            outcome.discarded.extend(self_hits + discarded)
            batch = self.evaluator.evaluate(trials, prefix, on_batch)
            results = normalize_results(batch.results, prev_work, prev_length)
            for r in results:
                cache[r.scenario] = r
            outcome.evaluated.extend(results)

            candidate, no_slip = self._choose(reused + results, check_slip)
            if no_slip:
                _LOGGER.info("In tuning new elements added at %s not slipping", tip)
                continue
            if candidate is None:
                continue
            if self.selector.better(candidate.score, outcome.best.score):
                _LOGGER.info("More efficient geometry while tuning %s: %s (%g)",
                             tip, candidate.scenario.label(), candidate.score)
                outcome.best = candidate
                outcome.improved = True

        if not outcome.improved:
            _LOGGER.info("Efficient geometry found before tuning: %s", coarse.scenario.label())
        return outcome
