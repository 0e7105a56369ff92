from .blocks.constraints import LinearConstraints
from .dfo import DFOSolver, minimize
from .dfo_aux import (
    DFOConfig,
    DFOError,
    DimensionError,
    EvaluationFailure,
    ExitStatus,
    IllConditionedModel,
    InfeasibleSubproblem,
    InitializationFailure,
    IterationEvent,
    OptimizeResult,
    Point,
)

__version__ = "0.1.0"

__all__ = [
    "minimize",
    "DFOSolver",
    "DFOConfig",
    "OptimizeResult",
    "ExitStatus",
    "IterationEvent",
    "Point",
    "LinearConstraints",
    "DFOError",
    "DimensionError",
    "EvaluationFailure",
    "InitializationFailure",
    "IllConditionedModel",
    "InfeasibleSubproblem",
]
