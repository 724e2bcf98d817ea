"""
M5: Concurrent Evaluator
Fracture Growth Optimizer (frac-grow)

Runs solver evaluations for a list of corrected trial geometries in batches
on a bounded worker pool. Every batch is a barrier: results are collected
only after all of its workers have finished. A failing worker yields a
missing result and never cancels its siblings.

Classes:
    Trial: Corrected trial geometry waiting for evaluation
    EvaluationResult: Per-scenario solver result
    EvaluationBatch: Results plus the scenarios that produced no result
    TrialBuilder: Grows and corrects one tip at a time into a Trial
    ConcurrentEvaluator: Batch runner around a SolverAdapter

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

try:
    from config import CONCURRENCY
except ImportError:
    import sys
    import os
    sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
    from config import CONCURRENCY

from .m01_geometry import GeometrySnapshot, TipKey
from .m02_intersection import IntersectionCorrector, CorrectionStatus
from .m03_scenarios import Scenario, ScenarioGenerator
from .m04_solver import SolverAdapter, SolverOutput, SolverError, SolverUnavailableError

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Trial:
    """Trial geometry for one scenario, already passed through the corrector"""
    scenario: Scenario
    snapshot: GeometrySnapshot
    corrections: int = 0


@dataclass(frozen=True)
class EvaluationResult:
    """Solver result for one scenario; immutable, lives for one increment"""
    scenario: Scenario
    snapshot: GeometrySnapshot             # Corrected trial geometry that was evaluated
    work: float                            # Unnormalized external work Wext [J]
    condition_number: float
    slipped: bool                          # All newly added elements slipped or opened
    corrections: int = 0                   # Intersection corrections applied to the trial
    normalized_work: Optional[float] = None  # delWext/delA, set by the selector
    output: Optional[SolverOutput] = None

    @property
    def tips(self) -> List[TipKey]:
        return self.scenario.tips

    @property
    def score(self) -> float:
        """Normalized work when available, raw work otherwise."""
        return self.work if self.normalized_work is None else self.normalized_work


@dataclass
class EvaluationBatch:
    results: List[EvaluationResult] = field(default_factory=list)
    missing: List[Scenario] = field(default_factory=list)


class TrialBuilder:
    """
    Build corrected trials from a base snapshot.

    Tips of a scenario are added one at a time in tip order; the corrector
    runs after each addition and the next tip grows from the corrected
    geometry.
    """

    def __init__(self, generator: Optional[ScenarioGenerator] = None,
                 corrector: Optional[IntersectionCorrector] = None):
        self.generator = generator or ScenarioGenerator()
        self.corrector = corrector or IntersectionCorrector()

    def build(self, base: GeometrySnapshot, scenario: Scenario):
        """
        Returns:
            (Trial or None, last CorrectionResult); None when the geometry
            self-intersects or cannot be corrected
        """
        snapshot = base
        corrections = 0
        result = None
        for tip, angle in scenario.angles:
            grown = self.generator.grow_tip(snapshot, tip, angle)
            result = self.corrector.correct(grown, [tip])
            if not result.is_valid:
                _LOGGER.info("Discarding %s: %s (%s)", scenario.label(), result.status.value, result.reason)
                return None, result
            snapshot = result.snapshot
            corrections += result.corrections
        return Trial(scenario, snapshot, corrections), result

    def build_all(self, base: GeometrySnapshot, scenarios: Sequence[Scenario]):
        """
        Returns:
            (trials, self-intersecting scenarios, other discarded scenarios)
        """
        trials, self_hits, discarded = [], [], []
        for scenario in scenarios:
            trial, result = self.build(base, scenario)
            if trial is not None:
                trials.append(trial)
            elif result is not None and result.status == CorrectionStatus.SELF_INTERSECTION:
                self_hits.append(scenario)
            else:
                discarded.append(scenario)
        return trials, self_hits, discarded


class ConcurrentEvaluator:
    """
    Evaluate trials with a worker pool sized to each batch.

    Args:
        adapter: Solver adapter (must be thread-safe)
        batch_size: Trials per batch (default from CONCURRENCY)
    """

    def __init__(self, adapter: SolverAdapter, batch_size: Optional[int] = None):
        if batch_size is None:
            batch_size = CONCURRENCY["batch_size"]
        if batch_size < 1:
            raise ValueError("Batch size must be at least 1")
        self.adapter = adapter
        self.batch_size = batch_size

    def _label(self, prefix: str, scenario: Scenario) -> str:
        return f"{prefix}_{scenario.label()}" if prefix else scenario.label()

    def _run_one(self, trial: Trial, label: str) -> EvaluationResult:
        output = self.adapter.evaluate(trial.snapshot, label)
        # zero work means the solver could not calculate it
        if output.work == 0:
            raise SolverError(f"Could not calculate work for {label}")
        return EvaluationResult(
            scenario=trial.scenario,
            snapshot=trial.snapshot,
            work=output.work,
            condition_number=output.condition_number,
            slipped=output.tips_slip(trial.scenario.tips),
            corrections=trial.corrections,
            output=output,
        )

    def batches(self, trials: Sequence[Trial]) -> List[List[Trial]]:
        return [list(trials[i:i + self.batch_size]) for i in range(0, len(trials), self.batch_size)]

    def evaluate(self, trials: Sequence[Trial], prefix: str = "",
                 on_batch: Optional[Callable[[EvaluationBatch], None]] = None) -> EvaluationBatch:
        """
        Evaluate all trials, batch by batch.

        Args:
            trials: Corrected trials
            prefix: Label prefix used for solver file names (e.g. increment number)
            on_batch: Called with each completed batch (report checkpoint)

        Returns:
            EvaluationBatch with results in trial order

        Raises:
            SolverUnavailableError: The solver infrastructure is missing
        """
        combined = EvaluationBatch()
        for batch in self.batches(trials):
            batch_out = EvaluationBatch()
            with ThreadPoolExecutor(max_workers=len(batch)) as pool:
                futures = [
                    pool.submit(self._run_one, trial, self._label(prefix, trial.scenario))
                    for trial in batch
                ]
                wait(futures)

            for trial, future in zip(batch, futures):
                try:
                    batch_out.results.append(future.result())
                except SolverUnavailableError:
                    raise
                except (SolverError, OSError) as exc:
                    _LOGGER.warning("No result for %s: %s", trial.scenario.label(), exc)
                    batch_out.missing.append(trial.scenario)

            _LOGGER.info("Batch finished: %d results, %d missing",
                         len(batch_out.results), len(batch_out.missing))
            if on_batch is not None:
                on_batch(batch_out)
            combined.results.extend(batch_out.results)
            combined.missing.extend(batch_out.missing)
        return combined

    def evaluate_one(self, trial: Trial, prefix: str = "") -> Optional[EvaluationResult]:
        batch = self.evaluate([trial], prefix)
        return batch.results[0] if batch.results else None
