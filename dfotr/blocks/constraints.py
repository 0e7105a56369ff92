from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.optimize import linprog

from ..dfo_aux import DimensionError, InfeasibleSubproblem, as_vector
from . import tr
from .linalg import least_norm_solution, qr_null_space


def _matrix(A, n: int, name: str) -> np.ndarray:
    if A is None:
        return np.zeros((0, n))
    A = np.atleast_2d(np.asarray(A, dtype=np.float64))
    if A.size == 0:
        return np.zeros((0, n))
    if A.shape[1] != n:
        raise DimensionError(f"{name} must have {n} columns, got shape {A.shape}")
    return A


@dataclass
class LinearConstraints:
    """
    Box bounds and linear constraints ``lb <= x <= ub``, ``A_ub x <= b_ub``,
    ``A_eq x = b_eq``. Any field may be ``None``.
    """

    lb: Optional[np.ndarray] = None
    ub: Optional[np.ndarray] = None
    A_ub: Optional[np.ndarray] = None
    b_ub: Optional[np.ndarray] = None
    A_eq: Optional[np.ndarray] = None
    b_eq: Optional[np.ndarray] = None

    def validated(self, n: int) -> "LinearConstraints":
        """Copy with every field materialized as float arrays of consistent shapes."""
        lb = np.full(n, -np.inf) if self.lb is None else as_vector(self.lb, n, "lb")
        ub = np.full(n, np.inf) if self.ub is None else as_vector(self.ub, n, "ub")
        if np.any(np.isnan(lb)) or np.any(np.isnan(ub)):
            raise DimensionError("bounds must not contain NaN")
        if np.any(lb > ub):
            i = int(np.argmax(lb > ub))
            raise DimensionError(f"lower bound exceeds upper bound at index {i}: {lb[i]} > {ub[i]}")

        A_ub = _matrix(self.A_ub, n, "A_ub")
        b_ub = np.zeros(0) if self.b_ub is None else np.asarray(self.b_ub, dtype=np.float64).reshape(-1)
        if b_ub.size != A_ub.shape[0]:
            raise DimensionError(f"b_ub must have length {A_ub.shape[0]}, got {b_ub.size}")
        A_eq = _matrix(self.A_eq, n, "A_eq")
        b_eq = np.zeros(0) if self.b_eq is None else np.asarray(self.b_eq, dtype=np.float64).reshape(-1)
        if b_eq.size != A_eq.shape[0]:
            raise DimensionError(f"b_eq must have length {A_eq.shape[0]}, got {b_eq.size}")
        for name, M in (("A_ub", A_ub), ("b_ub", b_ub), ("A_eq", A_eq), ("b_eq", b_eq)):
            if not np.all(np.isfinite(M)):
                raise DimensionError(f"{name} must be finite")
        return LinearConstraints(lb, ub, A_ub, b_ub, A_eq, b_eq)

    @property
    def has_equalities(self) -> bool:
        return self.A_eq is not None and np.size(self.A_eq) > 0


# ======================================
# Equality elimination
# ======================================
class EqualityReduction:
    """
    Parametrize ``{x : A_eq x = b_eq}`` as ``x = x_p + Z u`` with ``x_p`` the
    least-norm solution and ``Z`` an orthonormal basis of ``null(A_eq)``.
    """

    def __init__(self, A_eq: np.ndarray, b_eq: np.ndarray, tol: float = 1e-8):
        A_eq = np.atleast_2d(np.asarray(A_eq, dtype=np.float64))
        b_eq = np.asarray(b_eq, dtype=np.float64).reshape(-1)
        self.n = A_eq.shape[1]
        self.x_p = least_norm_solution(A_eq, b_eq)
        resid = np.linalg.norm(A_eq @ self.x_p - b_eq)
        if resid > tol * max(1.0, np.linalg.norm(b_eq)):
            raise DimensionError(f"equality constraints are inconsistent (residual {resid:.3e})")
        self.Z, _, self.rank = qr_null_space(A_eq)
        if self.Z.shape[1] == 0:
            raise DimensionError("equality constraints leave no free variables")
        logging.debug(f"equality reduction: n={self.n} -> {self.n_free} free variables")

    @property
    def n_free(self) -> int:
        return int(self.Z.shape[1])

    def to_full(self, u: np.ndarray) -> np.ndarray:
        return self.x_p + self.Z @ np.asarray(u, dtype=np.float64)

    def to_reduced(self, x: np.ndarray) -> np.ndarray:
        return self.Z.T @ (np.asarray(x, dtype=np.float64) - self.x_p)

    def reduce(self, cons: LinearConstraints) -> LinearConstraints:
        """Map bounds and inequalities of ``cons`` (already validated) into ``u`` space."""
        rows = [np.zeros((0, self.n_free))]
        rhs = [np.zeros(0)]
        hi = np.isfinite(cons.ub)
        lo = np.isfinite(cons.lb)
        if np.any(hi):
            rows.append(self.Z[hi])
            rhs.append(cons.ub[hi] - self.x_p[hi])
        if np.any(lo):
            rows.append(-self.Z[lo])
            rhs.append(self.x_p[lo] - cons.lb[lo])
        if cons.A_ub.shape[0]:
            rows.append(cons.A_ub @ self.Z)
            rhs.append(cons.b_ub - cons.A_ub @ self.x_p)
        A = np.vstack(rows)
        b = np.concatenate(rhs)

        # rows annihilated by the reduction are either vacuous or infeasible
        keep = np.linalg.norm(A, axis=1) > 1e-12 * max(1.0, float(np.max(np.abs(A), initial=0.0)))
        if np.any(b[~keep] < -1e-10 * np.maximum(1.0, np.abs(b[~keep]))):
            raise DimensionError("inequality constraints are inconsistent with the equalities")
        return LinearConstraints(A_ub=A[keep], b_ub=b[keep]).validated(self.n_free)


# ======================================
# Constraint adapter
# ======================================
class ConstraintAdapter:
    """
    Feasibility queries and step restrictions for box bounds plus linear
    inequalities (equalities are eliminated beforehand by ``EqualityReduction``).
    """

    def __init__(self, n: int, cons: Optional[LinearConstraints] = None, tol: float = 1e-10):
        cons = (cons or LinearConstraints()).validated(n)
        if cons.has_equalities:
            raise DimensionError("eliminate equality constraints before building the adapter")
        self.n = n
        self.lb, self.ub = cons.lb, cons.ub
        self.A, self.b = cons.A_ub, cons.b_ub
        self.tol = tol
        self.has_bounds = bool(np.any(np.isfinite(self.lb)) or np.any(np.isfinite(self.ub)))
        self.has_linear = self.A.shape[0] > 0

    @property
    def unconstrained(self) -> bool:
        return not (self.has_bounds or self.has_linear)

    # ---------------- queries ----------------
    def linear_residuals(self, x: np.ndarray) -> np.ndarray:
        """``b - A x`` (non-negative when feasible)."""
        return self.b - self.A @ x

    def violation(self, x: np.ndarray) -> float:
        x = np.asarray(x, dtype=np.float64)
        v = 0.0
        if self.has_bounds:
            v = max(v, float(np.max(np.maximum(self.lb - x, 0.0))), float(np.max(np.maximum(x - self.ub, 0.0))))
        if self.has_linear:
            v = max(v, float(np.max(np.maximum(-self.linear_residuals(x), 0.0))))
        return v

    def is_feasible(self, x: np.ndarray, tol: Optional[float] = None) -> bool:
        tol = self.tol if tol is None else tol
        return self.violation(x) <= tol * max(1.0, float(np.max(np.abs(x), initial=0.0)))

    def step_bounds(self, x: np.ndarray) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
        if not self.has_bounds:
            return None, None
        return self.lb - x, self.ub - x

    def max_step(self, x: np.ndarray, d: np.ndarray) -> float:
        """Largest ``t >= 0`` keeping ``x + t d`` feasible (``inf`` if unbounded)."""
        x = np.asarray(x, dtype=np.float64)
        d = np.asarray(d, dtype=np.float64)
        t = np.inf
        if self.has_bounds:
            with np.errstate(divide="ignore", invalid="ignore"):
                up = np.where(d > 0, (self.ub - x) / d, np.inf)
                dn = np.where(d < 0, (self.lb - x) / d, np.inf)
            t = min(t, float(np.min(up)), float(np.min(dn)))
        if self.has_linear:
            Ad = self.A @ d
            mv = Ad > 0
            if np.any(mv):
                t = min(t, float(np.min(self.linear_residuals(x)[mv] / Ad[mv])))
        return max(t, 0.0)

    # ---------------- repairs ----------------
    def clip_step(self, x: np.ndarray, d: np.ndarray) -> np.ndarray:
        """Scale ``d`` back so that ``x + d`` stays feasible."""
        t = self.max_step(x, d)
        if t >= 1.0:
            return d
        return t * d

    def project(self, x: np.ndarray, base: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Move ``x`` into the feasible set: clip to the bounds, then (linear
        constraints) pull back along the segment from the feasible ``base``.
        """
        x = np.asarray(x, dtype=np.float64)
        if self.has_bounds:
            x = np.clip(x, self.lb, self.ub)
        if self.has_linear and np.any(self.linear_residuals(x) < 0):
            if base is None:
                return self.make_feasible_start(x)
            d = x - base
            x = base + min(1.0, self.max_step(base, d)) * d
            if self.has_bounds:
                x = np.clip(x, self.lb, self.ub)
        return x

    def make_feasible_start(self, x0: np.ndarray) -> np.ndarray:
        """
        Closest feasible point to ``x0`` in the infinity norm.

        Bounds only: componentwise clipping. Linear constraints: the LP
        ``min t s.t. |x - x0| <= t, A x <= b, lb <= x <= ub`` via HiGHS.

        Raises:
            DimensionError: If the constraints admit no feasible point.
        """
        x0 = np.asarray(x0, dtype=np.float64)
        x = np.clip(x0, self.lb, self.ub) if self.has_bounds else x0.copy()
        if not self.has_linear or self.is_feasible(x):
            return x

        n = self.n
        c = np.zeros(n + 1)
        c[-1] = 1.0
        eye = np.eye(n)
        ones = np.ones((n, 1))
        A_lp = np.vstack(
            [
                np.hstack([eye, -ones]),
                np.hstack([-eye, -ones]),
                np.hstack([self.A, np.zeros((self.A.shape[0], 1))]),
            ]
        )
        b_lp = np.concatenate([x0, -x0, self.b])
        bounds = [
            (None if not np.isfinite(l) else l, None if not np.isfinite(u) else u)
            for l, u in zip(self.lb, self.ub)
        ] + [(0.0, None)]
        res = linprog(c, A_ub=A_lp, b_ub=b_lp, bounds=bounds, method="highs")
        if res.status != 0 or res.x is None:
            raise DimensionError(f"linear constraints are infeasible ({res.message})")
        x = np.asarray(res.x[:n], dtype=np.float64)
        if self.has_bounds:
            x = np.clip(x, self.lb, self.ub)
        if not self.is_feasible(x, tol=max(self.tol, 1e-8)):
            raise DimensionError("could not find a feasible starting point")
        logging.debug(f"starting point moved by {np.max(np.abs(x - x0)):.3e} to satisfy constraints")
        return x

    # ---------------- subproblem ----------------
    def solve_subproblem(self, g, hess, x: np.ndarray, delta: float, cfg):
        """
        Trust-region step from the feasible center ``x`` under the constraints.

        Returns:
            Tuple[np.ndarray, tr.TRStatus, dict]: Feasible step, status, diagnostics.

        Raises:
            InfeasibleSubproblem: If ``x`` is not feasible.
        """
        sl, su = self.step_bounds(x)
        A = r = None
        if self.has_linear:
            A, r = self.A, self.linear_residuals(x)
        d, status, info = tr.solve(
            g,
            hess,
            delta,
            sl,
            su,
            A,
            r,
            cg_tol=cfg.cg_tol,
            maxiter=cfg.cg_maxiter,
            neg_curv_tol=cfg.neg_curv_tol,
            active_frac=cfg.active_frac,
            feas_tol=cfg.feasibility_tol,
        )
        if not self.unconstrained:
            d = self.clip_step(x, d)
            if self.has_bounds:
                d = np.clip(x + d, self.lb, self.ub) - x
        if not np.all(np.isfinite(d)):
            raise InfeasibleSubproblem("subproblem produced a non-finite step")
        return d, status, info
