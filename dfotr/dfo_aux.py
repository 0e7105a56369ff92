from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

import numpy as np


# ======================================
# Errors
# ======================================
class DFOError(Exception):
    """Base class for every error raised by the solver."""


class DimensionError(DFOError, ValueError):
    """Invalid dimension, inconsistent vector lengths or infeasible constraints."""


class EvaluationFailure(DFOError):
    """The objective returned a non-finite value at ``point``."""

    def __init__(self, point: "Point"):
        super().__init__(f"objective is not finite at x={point.x!r} (f={point.f!r})")
        self.point = point


class InitializationFailure(DFOError):
    """No usable value was obtained while building the initial model."""


class IllConditionedModel(DFOError):
    """An interpolation update would make the KKT system numerically singular."""

    def __init__(self, message: str, denominator: float = float("nan")):
        super().__init__(message)
        self.denominator = denominator


class InfeasibleSubproblem(DFOError):
    """No feasible step exists inside the trust region."""


# ======================================
# Statuses
# ======================================
class ExitStatus(Enum):
    RADIUS_FLOOR_REACHED = "radius_floor_reached"
    BUDGET_EXHAUSTED = "budget_exhausted"
    TARGET_REACHED = "target_reached"
    CALLBACK_TERMINATE = "callback_terminate"
    TIME_LIMIT = "time_limit"
    DAMAGING_ROUNDING = "damaging_rounding"


_MESSAGES = {
    ExitStatus.RADIUS_FLOOR_REACHED: "Trust-region radius reached its final value.",
    ExitStatus.BUDGET_EXHAUSTED: "Maximum number of function evaluations reached.",
    ExitStatus.TARGET_REACHED: "Target objective value reached.",
    ExitStatus.CALLBACK_TERMINATE: "Terminated by the callback.",
    ExitStatus.TIME_LIMIT: "Wall-clock time limit reached.",
    ExitStatus.DAMAGING_ROUNDING: "Rounding errors prevent further progress.",
}


def status_message(status: ExitStatus) -> str:
    return _MESSAGES[status]


# ======================================
# Configuration
# ======================================
@dataclass
class DFOConfig:
    """
    Configuration of the trust-region DFO engine.

    Notes
    -----
    • ``None`` fields are resolved from the problem dimension by ``resolve(n)``:
      ``max_evaluations`` → 500·n, ``interpolation_set_size`` → 2n+1.
    • Ratio-test and radius constants are defaults of this solver family, not
      universal law; tune them per problem class if needed.
    """

    # ---------------- Radii ----------------
    initial_radius: float = 1.0  # Δ0 = ρ0
    final_radius: float = 1e-6  # ρ_end
    max_radius: float = 1e10  # Δ_max

    # ---------------- Budget / termination ----------------
    max_evaluations: Optional[int] = None
    ftarget: float = -math.inf
    max_time: Optional[float] = None  # seconds, checked between iterations

    # ---------------- Model ----------------
    interpolation_set_size: Optional[int] = None
    hessian: str = "dense"  # {"dense","implicit"}
    base_shift_factor: float = 1e3  # shift x_base when ||x_opt - x_base||^2 > this·Δ^2
    denominator_tol: float = 1e-10  # smallest acceptable |σ| in the KKT update
    max_condition: float = 1e14  # refuse the initial KKT factorization beyond this

    # ---------------- Ratio test / radius update ----------------
    eta1: float = 0.1  # below: unsuccessful
    eta2: float = 0.7  # at/above: very successful
    gamma_dec: float = 0.5
    gamma_inc: float = 2.0
    boundary_frac: float = 0.8  # ||d|| >= this·Δ counts as "on the boundary"
    short_step_factor: float = 0.5  # ||d|| < this·ρ is a short step
    short_step_shrink: float = 0.1
    far_factor: float = 2.0  # points farther than this·Δ from x_opt are "far"
    pred_tol: float = 1e-14  # predicted reduction below this·max(1,|f_opt|) is noise

    # ---------------- Subproblem ----------------
    cg_maxiter: Optional[int] = None  # default 2n
    cg_tol: float = 1e-2  # relative residual tolerance
    neg_curv_tol: float = 1e-14
    active_frac: float = 0.2  # linear constraints with slack <= this·Δ·||a|| start active

    # ---------------- Feasibility ----------------
    feasibility_tol: float = 1e-10

    # ---------------- Robustness ----------------
    max_geometry_failures: int = 3

    # ---------------- Reporting ----------------
    record_events: bool = True
    history_size: int = 0  # keep the last k evaluated points (0 disables)
    verbose: bool = False

    def resolve(self, n: int) -> "DFOConfig":
        """Return a copy with dimension-dependent defaults filled in and validated."""
        if n <= 0:
            raise DimensionError(f"problem dimension must be positive, got n={n}")
        npt = self.interpolation_set_size
        if npt is None:
            npt = 2 * n + 1
        maxfev = self.max_evaluations
        if maxfev is None:
            maxfev = 500 * n
        cg_maxiter = self.cg_maxiter if self.cg_maxiter is not None else max(2 * n, 2)
        cfg = dataclasses.replace(
            self,
            interpolation_set_size=int(npt),
            max_evaluations=int(maxfev),
            cg_maxiter=int(cg_maxiter),
        )
        cfg.validate(n)
        return cfg

    def validate(self, n: int) -> None:
        npt = self.interpolation_set_size
        if npt is not None and not (n + 2 <= npt <= (n + 1) * (n + 2) // 2):
            raise DimensionError(
                f"interpolation_set_size={npt} outside [{n + 2}, {(n + 1) * (n + 2) // 2}] for n={n}"
            )
        if not (self.initial_radius > 0 and np.isfinite(self.initial_radius)):
            raise ValueError("initial_radius must be positive and finite")
        if not (0 < self.final_radius <= self.initial_radius):
            raise ValueError("final_radius must satisfy 0 < final_radius <= initial_radius")
        if self.max_radius < self.initial_radius:
            raise ValueError("max_radius must be >= initial_radius")
        if self.max_evaluations is not None and self.max_evaluations < 1:
            raise ValueError("max_evaluations must be >= 1")
        if not (0 < self.eta1 <= self.eta2 < 1):
            raise ValueError("need 0 < eta1 <= eta2 < 1")
        if not (0 < self.gamma_dec < 1 < self.gamma_inc):
            raise ValueError("need 0 < gamma_dec < 1 < gamma_inc")
        if self.hessian not in ("dense", "implicit"):
            raise ValueError(f"unknown hessian representation {self.hessian!r}")
        if self.max_time is not None and self.max_time <= 0:
            raise ValueError("max_time must be positive")
        if self.history_size < 0:
            raise ValueError("history_size must be >= 0")


# ======================================
# Records
# ======================================
@dataclass(frozen=True)
class Point:
    """An evaluated sample. ``f`` is NaN when the evaluation failed."""

    x: np.ndarray
    f: float
    constr: Optional[np.ndarray] = None

    def __post_init__(self):
        x = np.array(self.x, dtype=np.float64).ravel()
        x.setflags(write=False)
        object.__setattr__(self, "x", x)
        object.__setattr__(self, "f", float(self.f))
        if self.constr is not None:
            c = np.array(self.constr, dtype=np.float64).ravel()
            c.setflags(write=False)
            object.__setattr__(self, "constr", c)

    @property
    def valid(self) -> bool:
        return bool(np.isfinite(self.f))


@dataclass(frozen=True)
class IterationEvent:
    """One entry of the ordered history stream emitted by the controller."""

    iteration: int
    kind: str  # {"accepted","rejected","short","invalid","geometry","rho_reduced"}
    step_norm: float
    ratio: float
    delta: float
    rho: float
    f: float
    nfev: int


@dataclass
class OptimizeResult:
    """Result returned by ``minimize`` / ``DFOSolver.solve``."""

    x: np.ndarray
    fun: float
    nfev: int
    status: ExitStatus
    message: str
    radius: float
    rho: float
    nit: int
    constr: Optional[np.ndarray] = None
    events: List[IterationEvent] = field(default_factory=list)
    xhist: Optional[np.ndarray] = None
    fhist: Optional[np.ndarray] = None

    @property
    def success(self) -> bool:
        return self.status in (ExitStatus.RADIUS_FLOOR_REACHED, ExitStatus.TARGET_REACHED)


# ======================================
# Helpers
# ======================================
Objective = Callable[[np.ndarray], Union[float, Tuple[float, Any]]]


def as_vector(v, n: int, name: str) -> np.ndarray:
    a = np.asarray(v, dtype=np.float64).reshape(-1)
    if a.size != n:
        raise DimensionError(f"{name} must have length {n}, got {a.size}")
    return a


def evaluate(fun: Objective, x: np.ndarray) -> Point:
    """
    Call the objective and wrap the outcome in a ``Point``.

    The callback may return ``f`` or ``(f, constraint_values)``. Non-finite
    ``f`` raises ``EvaluationFailure`` carrying the recorded point.
    """
    x = np.array(x, dtype=np.float64)
    out = fun(x.copy())
    constr = None
    if isinstance(out, tuple):
        out, constr = out[0], (out[1] if len(out) > 1 else None)
    try:
        f = float(out)
    except (TypeError, ValueError):
        f = float(np.asarray(out, dtype=np.float64).reshape(-1)[0])
    point = Point(x, f, constr)
    if not point.valid:
        raise EvaluationFailure(point)
    return point


def moderate_values(values: Sequence[float]) -> np.ndarray:
    """
    Replace non-finite initial values by a finite value above all valid ones.

    Raises ``InitializationFailure`` if no value is finite.
    """
    f = np.asarray(values, dtype=np.float64)
    ok = np.isfinite(f)
    if not np.any(ok):
        raise InitializationFailure("objective is not finite at any initial interpolation point")
    if np.all(ok):
        return f
    fmax, fmin = float(np.max(f[ok])), float(np.min(f[ok]))
    out = f.copy()
    out[~ok] = fmax + (fmax - fmin) + max(1.0, abs(fmax))
    return out
