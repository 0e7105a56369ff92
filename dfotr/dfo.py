from __future__ import annotations

import dataclasses
import logging
from typing import Callable, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.optimize import Bounds

from .blocks.constraints import ConstraintAdapter, EqualityReduction, LinearConstraints
from .dfo_aux import DFOConfig, DimensionError, Objective, OptimizeResult, status_message
from .dfo_tr import IterationController, RunContext

BoundsLike = Union[Bounds, Tuple[Sequence[float], Sequence[float]], Sequence[Tuple[float, float]]]


def _is_pair(p) -> bool:
    return p is not None and np.ndim(p) == 1 and len(p) == 2


def _parse_bounds(bounds, n: int) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
    """
    ``scipy.optimize.Bounds`` or ``n`` pairs ``(lo, hi)``, one per variable;
    otherwise a ``(lb, ub)`` pair of vectors (scalars broadcast). A sequence of
    ``n`` pairs always wins, so for ``n == 2`` whole vectors must come as
    ``Bounds``. ``None`` entries mean unbounded.
    """
    if bounds is None:
        return None, None
    if isinstance(bounds, Bounds):
        lb, ub = bounds.lb, bounds.ub
    else:
        items = list(bounds)
        if len(items) == n and all(_is_pair(p) for p in items):
            lb = [p[0] for p in items]
            ub = [p[1] for p in items]
        elif len(items) == 2:
            lb, ub = items
        else:
            raise DimensionError(f"bounds must be Bounds, {n} (lo, hi) pairs or (lb, ub), got {len(items)} entries")

    def _fill(v, default):
        if v is None:
            return np.full(n, default)
        a = np.array([default if e is None else e for e in np.ravel(np.asarray(v, dtype=object))], dtype=np.float64)
        if a.size == 1 and n > 1:
            a = np.full(n, a[0])
        return a

    return _fill(lb, -np.inf), _fill(ub, np.inf)


def _parse_linear(lin) -> LinearConstraints:
    if lin is None:
        return LinearConstraints()
    if isinstance(lin, LinearConstraints):
        return lin
    lin = tuple(lin)
    if len(lin) == 2:
        return LinearConstraints(A_ub=lin[0], b_ub=lin[1])
    if len(lin) == 4:
        return LinearConstraints(A_ub=lin[0], b_ub=lin[1], A_eq=lin[2], b_eq=lin[3])
    raise DimensionError("linear_constraints must be (A_ub, b_ub), (A_ub, b_ub, A_eq, b_eq) or LinearConstraints")


def _fold_fixed_variables(cons: LinearConstraints) -> LinearConstraints:
    """Turn ``lb_i == ub_i`` into equality rows so the variable is eliminated."""
    fixed = np.where(np.isfinite(cons.lb) & (cons.lb == cons.ub))[0]
    if fixed.size == 0:
        return cons
    logging.debug(f"fixing variables {fixed.tolist()} through the equality reduction")
    rows = np.eye(cons.lb.size)[fixed]
    return dataclasses.replace(
        cons,
        A_eq=np.vstack([cons.A_eq, rows]),
        b_eq=np.concatenate([cons.b_eq, cons.lb[fixed]]),
    )


class DFOSolver:
    """
    Model-based trust-region minimizer for black-box objectives.

    Args:
        fun (Callable): Objective ``fun(x) -> f`` or ``fun(x) -> (f, constraint_values)``.
        x0 (np.ndarray): Starting point; moved to the feasible region if needed.
        bounds: ``scipy.optimize.Bounds``, ``n`` pairs ``(lo, hi)`` or ``(lb, ub)``.
        linear_constraints: ``(A_ub, b_ub)``, ``(A_ub, b_ub, A_eq, b_eq)`` or
            a ``LinearConstraints`` instance.
        config (DFOConfig, optional): Solver settings.
        callback (Callable, optional): ``callback(x_best, f_best)`` called before
            every step; returning ``True`` stops the run.
    """

    def __init__(
        self,
        fun: Objective,
        x0,
        bounds: Optional[BoundsLike] = None,
        linear_constraints=None,
        config: Optional[DFOConfig] = None,
        callback: Optional[Callable[[np.ndarray, float], Optional[bool]]] = None,
    ):
        x0 = np.asarray(x0, dtype=np.float64).reshape(-1)
        if x0.size == 0:
            raise DimensionError("x0 must have at least one component")
        if not np.all(np.isfinite(x0)):
            raise DimensionError("x0 must be finite")
        self.fun = fun
        self.x0 = x0
        self.n = x0.size
        self.callback = callback
        self.config = config if config is not None else DFOConfig()

        lb, ub = _parse_bounds(bounds, self.n)
        lin = _parse_linear(linear_constraints)
        if bounds is not None:
            lin = dataclasses.replace(lin, lb=lb, ub=ub)
        self.constraints = lin.validated(self.n)

        self.reduction: Optional[EqualityReduction] = None
        cons = _fold_fixed_variables(self.constraints)
        if cons.has_equalities:
            self.reduction = EqualityReduction(cons.A_eq, cons.b_eq, tol=max(self.config.feasibility_tol, 1e-8))
            cons = self.reduction.reduce(cons)
        self.n_free = self.reduction.n_free if self.reduction is not None else self.n
        self.cfg = self.config.resolve(self.n_free)
        self.adapter = ConstraintAdapter(self.n_free, cons, tol=self.cfg.feasibility_tol)

    # ---------------- space maps ----------------
    def _to_full(self, u: np.ndarray) -> np.ndarray:
        return self.reduction.to_full(u) if self.reduction is not None else np.asarray(u)

    def _objective(self) -> Objective:
        if self.reduction is None:
            return self.fun
        return lambda u: self.fun(self._to_full(u))

    # ---------------- driver ----------------
    def solve(self) -> OptimizeResult:
        start = self.reduction.to_reduced(self.x0) if self.reduction is not None else self.x0
        start = self.adapter.make_feasible_start(start)
        ctx = RunContext.create(self._objective(), start, self.cfg, self.adapter, self.callback)
        if self.cfg.verbose:
            logging.info(f"dfotr: n={self.n} (free {self.n_free}), npt={self.cfg.interpolation_set_size}, "
                         f"maxfev={self.cfg.max_evaluations}")
        IterationController().run(ctx)
        return self._result(ctx)

    def _result(self, ctx: RunContext) -> OptimizeResult:
        run = ctx.run
        if run.best is not None:
            x, f, constr = self._to_full(run.best.x), run.best.f, run.best.constr
        else:
            x, f, constr = self._to_full(ctx.x0), np.nan, None
        xhist = fhist = None
        if run.history is not None:
            xhist = np.array([self._to_full(p.x) for p in run.history]).reshape(-1, self.n)
            fhist = np.array([p.f for p in run.history])
        res = OptimizeResult(
            x=np.array(x, dtype=np.float64),
            fun=float(f),
            nfev=run.nfev,
            status=run.status,
            message=status_message(run.status),
            radius=ctx.tr.delta,
            rho=ctx.tr.rho,
            nit=run.nit,
            constr=None if constr is None else np.array(constr),
            events=list(run.events),
            xhist=xhist,
            fhist=fhist,
        )
        if self.cfg.verbose:
            logging.info(f"dfotr: {res.message} f={res.fun:.6e} nfev={res.nfev}")
        return res


def minimize(
    fun: Objective,
    x0,
    bounds: Optional[BoundsLike] = None,
    linear_constraints=None,
    callback: Optional[Callable[[np.ndarray, float], Optional[bool]]] = None,
    config: Optional[DFOConfig] = None,
    **options,
) -> OptimizeResult:
    """
    Minimize ``fun`` from ``x0`` without derivatives.

    Keyword ``options`` override fields of ``config`` (or of the default
    ``DFOConfig``), e.g. ``minimize(f, x0, initial_radius=0.5, max_evaluations=200)``.

    Returns:
        OptimizeResult: Best point found and run diagnostics.

    Raises:
        DimensionError: Malformed ``x0``, bounds or constraints, or an
            infeasible constraint set.
        InitializationFailure: The objective is invalid at every initial point.
    """
    cfg = config if config is not None else DFOConfig()
    if options:
        known = {f.name for f in dataclasses.fields(DFOConfig)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise TypeError(f"unknown options: {', '.join(unknown)}")
        cfg = dataclasses.replace(cfg, **options)
    solver = DFOSolver(fun, x0, bounds=bounds, linear_constraints=linear_constraints, config=cfg, callback=callback)
    return solver.solve()
