"""
Fracture Growth Optimizer (frac-grow): Modules Package

Iterative fracture-growth angle search driving an external boundary-element
solver (FRIC2D or its sandbox variant).

Modules:
- M1: Geometry Model
- M2: Intersection Corrector
- M3: Scenario Generator
- M4: Solver Adapter
- M5: Concurrent Evaluator
- M6: Selector / Filter
- M7: Tuner
- M8: Branch Evaluator
- M9: Growth Driver

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

from .m01_geometry import (
    TipKey,
    Segment,
    Fracture,
    Boundary,
    Flaw,
    GeometrySnapshot,
)
from .m02_intersection import (
    CorrectionStatus,
    CorrectionResult,
    IntersectionCorrector,
)
from .m03_scenarios import (
    Scenario,
    ScenarioGenerator,
    get_angles,
)
from .m04_solver import (
    GrowInputError,
    SolverError,
    SolverUnavailableError,
    SolverOutput,
    SolverAdapter,
    ExternalSolverAdapter,
    DebugSolverAdapter,
    read_input_file,
    write_input_file,
)
from .m05_evaluator import (
    EvaluationResult,
    TrialBuilder,
    ConcurrentEvaluator,
)
from .m06_selection import (
    StallKind,
    ScenarioSelector,
    interpolate_angle,
)
from .m07_tuning import Tuner
from .m08_branching import BranchEvaluator
from .m09_driver import (
    DriverState,
    RunConfiguration,
    GrowthReport,
    GrowthHistory,
    GrowthDriver,
    check_input,
    run_growth,
)

__all__ = [
    'TipKey',
    'Segment',
    'Fracture',
    'Boundary',
    'Flaw',
    'GeometrySnapshot',
    'CorrectionStatus',
    'CorrectionResult',
    'IntersectionCorrector',
    'Scenario',
    'ScenarioGenerator',
    'get_angles',
    'GrowInputError',
    'SolverError',
    'SolverUnavailableError',
    'SolverOutput',
    'SolverAdapter',
    'ExternalSolverAdapter',
    'DebugSolverAdapter',
    'read_input_file',
    'write_input_file',
    'EvaluationResult',
    'TrialBuilder',
    'ConcurrentEvaluator',
    'StallKind',
    'ScenarioSelector',
    'interpolate_angle',
    'Tuner',
    'BranchEvaluator',
    'DriverState',
    'RunConfiguration',
    'GrowthReport',
    'GrowthHistory',
    'GrowthDriver',
    'check_input',
    'run_growth',
]

__version__ = '0.1.0'
