from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Union

import numpy as np
import scipy.sparse.linalg as spla

from ..dfo_aux import InfeasibleSubproblem
from .linalg import boundary_tau, dense_matvec, qr_null_space, safe_norm

MatLike = Union[np.ndarray, spla.LinearOperator, Callable[[np.ndarray], np.ndarray]]
Vec = np.ndarray


# ---------------------------- Status ---------------------------- #
class TRStatus(Enum):
    SUCCESS = "success"
    BOUNDARY = "boundary"
    NEG_CURV = "negative_curvature"
    MAX_ITER = "max_iterations"
    CONSTRAINED = "constrained"
    ZERO_GRADIENT = "zero_gradient"


# ---------------------------- Utilities ---------------------------- #
def make_operator(A: MatLike, n: int) -> spla.LinearOperator:
    if isinstance(A, spla.LinearOperator):
        return A
    if callable(A):
        return spla.LinearOperator((n, n), matvec=A, dtype=float)
    A = np.asarray(A, dtype=np.float64)
    return spla.LinearOperator((n, n), matvec=lambda x: dense_matvec(A, x), dtype=float)


def _matvec_fn(H: MatLike, n: int) -> Callable[[np.ndarray], np.ndarray]:
    H_op = make_operator(H, n)
    return lambda x: np.asarray(H_op @ x, dtype=np.float64).reshape(-1)


def model_reduction(g: Vec, H: MatLike, d: Vec) -> float:
    """-(g·d + ½ dᵀHd): decrease of the quadratic model along ``d``."""
    if d.size == 0:
        return 0.0
    hv = _matvec_fn(H, d.size)
    return -(float(g @ d) + 0.5 * float(d @ hv(d)))


def cauchy_step(g: Vec, H: MatLike, delta: float) -> Vec:
    """Minimizer of the model along -g inside the ball of radius ``delta``."""
    g = np.asarray(g, dtype=np.float64)
    gnorm = safe_norm(g)
    if gnorm == 0.0:
        return np.zeros_like(g)
    gHg = float(g @ _matvec_fn(H, g.size)(g))
    if gHg <= 0:
        tau = 1.0
    else:
        tau = min(gnorm**3 / (delta * gHg), 1.0)
    return -(tau * delta / gnorm) * g


# ---------------------------- Steihaug–Toint CG ---------------------------- #
def steihaug_cg(
    H: MatLike,
    g: Vec,
    Delta: float,
    cg_tol: float,
    maxiter: int,
    neg_curv_tol: float = 1e-14,
) -> Tuple[Vec, TRStatus, int]:
    """
    Truncated CG for min g·d + ½dᵀHd s.t. ||d|| <= Delta.

    The first iterate is the Cauchy step, so the returned step attains at
    least half of the Cauchy decrease. Stops once the residual drops below
    ``cg_tol·||g||``.
    """
    n = g.size
    matvec = _matvec_fn(H, n)
    p = np.zeros(n, dtype=np.float64)
    r = -np.asarray(g, dtype=np.float64)
    d = r.copy()

    gnorm = safe_norm(r)
    if gnorm == 0.0:
        return p, TRStatus.ZERO_GRADIENT, 0
    tol = cg_tol * gnorm

    rr = float(r @ r)
    for k in range(maxiter):
        Hd = matvec(d)
        dTHd = float(d @ Hd)
        if dTHd <= neg_curv_tol * max(1.0, float(d @ d)):
            tau = boundary_tau(p, d, Delta)
            return p + tau * d, TRStatus.NEG_CURV, k + 1

        alpha = rr / dTHd
        p_next = p + alpha * d
        if float(p_next @ p_next) >= Delta * Delta:
            tau = boundary_tau(p, d, Delta)
            return p + tau * d, TRStatus.BOUNDARY, k + 1

        p = p_next
        r = r - alpha * Hd
        rr_next = float(r @ r)
        if np.sqrt(rr_next) <= tol:
            return p, TRStatus.SUCCESS, k + 1
        beta = rr_next / max(rr, 1e-300)
        d = r + beta * d
        rr = rr_next

    return p, TRStatus.MAX_ITER, maxiter


# ---------------------------- Box constraints ---------------------------- #
def trsbox(
    H: MatLike,
    g: Vec,
    Delta: float,
    sl: Vec,
    su: Vec,
    cg_tol: float,
    maxiter: int,
    neg_curv_tol: float = 1e-14,
    feas_tol: float = 1e-10,
) -> Tuple[Vec, TRStatus, Dict[str, Any]]:
    """
    Active-set truncated CG for the box-constrained trust-region subproblem.

    Step bounds ``sl <= d <= su`` (``sl <= 0 <= su`` up to ``feas_tol``).
    Variables sitting on a bound with the gradient pointing outward start
    fixed; a variable that reaches its bound during CG is frozen there and
    CG restarts from steepest descent in the remaining free subspace. Stops
    on the trust-region boundary, on convergence or when nothing is free.
    Convergence is measured against ``cg_tol`` times the initial free
    gradient, not the full one.
    """
    n = g.size
    matvec = _matvec_fn(H, n)
    sl = np.minimum(np.asarray(sl, dtype=np.float64), 0.0)
    su = np.maximum(np.asarray(su, dtype=np.float64), 0.0)

    d = np.zeros(n, dtype=np.float64)
    grad = np.asarray(g, dtype=np.float64).copy()
    fixed = np.zeros(n, dtype=np.int8)  # -1 lower, +1 upper, 0 free
    fixed[(sl >= -feas_tol) & (grad > 0)] = -1
    fixed[(su <= feas_tol) & (grad < 0)] = 1
    tol = cg_tol * safe_norm(np.where(fixed == 0, grad, 0.0))

    s = np.zeros(n, dtype=np.float64)
    gg_old = 0.0
    restart = True
    status = TRStatus.MAX_ITER
    iters = 0
    n_frozen = 0
    while iters < maxiter:
        free = fixed == 0
        if not np.any(free):
            status = TRStatus.CONSTRAINED
            break
        gfree = np.where(free, grad, 0.0)
        gg = float(gfree @ gfree)
        if np.sqrt(gg) <= tol:
            status = TRStatus.SUCCESS if iters else TRStatus.ZERO_GRADIENT
            break
        if restart:
            s = -gfree
            restart = False
        else:
            s = -gfree + (gg / max(gg_old, 1e-300)) * s
            s[~free] = 0.0
        gg_old = gg

        Hs = matvec(s)
        sHs = float(s @ Hs)
        gs = float(grad @ s)
        if gs >= 0:
            # rounding has destroyed the descent property; restart
            s = -gfree
            Hs = matvec(s)
            sHs = float(s @ Hs)
            gs = -gg

        tau_tr = boundary_tau(d, s, Delta)
        tau_bd = np.inf
        i_bd = -1
        pos = s > 0
        neg = s < 0
        if np.any(pos | neg):
            with np.errstate(divide="ignore", invalid="ignore"):
                t = np.full(n, np.inf)
                t[pos] = (su[pos] - d[pos]) / s[pos]
                t[neg] = (sl[neg] - d[neg]) / s[neg]
            t = np.maximum(t, 0.0)
            i_bd = int(np.argmin(t))
            tau_bd = float(t[i_bd])

        if sHs > neg_curv_tol * max(1.0, float(s @ s)):
            alpha = -gs / sHs
        else:
            alpha = np.inf

        step = min(alpha, tau_tr, tau_bd)
        d += step * s
        grad += step * Hs
        iters += 1

        if step == tau_bd and tau_bd < min(alpha, tau_tr):
            fixed[i_bd] = 1 if s[i_bd] > 0 else -1
            d[i_bd] = su[i_bd] if s[i_bd] > 0 else sl[i_bd]
            n_frozen += 1
            restart = True
            status = TRStatus.CONSTRAINED
            continue
        if step == tau_tr:
            status = TRStatus.BOUNDARY if alpha < np.inf else TRStatus.NEG_CURV
            break

    return d, status, {"iterations": iters, "frozen": n_frozen}


# ---------------------------- General linear constraints ---------------------------- #
def _active_null_space(A: np.ndarray, active: list) -> np.ndarray:
    n = A.shape[1]
    if not active:
        return np.eye(n)
    Z, _, _ = qr_null_space(A[active])
    return Z


def trstep_linear(
    H: MatLike,
    g: Vec,
    Delta: float,
    A: np.ndarray,
    r: Vec,
    cg_tol: float,
    maxiter: int,
    neg_curv_tol: float = 1e-14,
    active_frac: float = 0.2,
    feas_tol: float = 1e-10,
) -> Tuple[Vec, TRStatus, Dict[str, Any]]:
    """
    Projected truncated CG for min g·d + ½dᵀHd s.t. ||d|| <= Delta, A d <= r.

    Constraints with slack ``r_j <= active_frac·Delta·||a_j||`` that block
    the projected steepest-descent direction are treated as equalities; CG
    then runs in their null space. Each CG step is cut at the nearest
    inactive constraint and the method stops there. Convergence is measured
    against ``cg_tol`` times the initial projected gradient.
    """
    n = g.size
    matvec = _matvec_fn(H, n)
    A = np.atleast_2d(np.asarray(A, dtype=np.float64))
    r = np.maximum(np.asarray(r, dtype=np.float64), 0.0)
    anorm = np.linalg.norm(A, axis=1)
    usable = anorm > 0
    near = np.where(usable & (r <= active_frac * Delta * anorm))[0]

    # ---- choose the working set ----
    active: list = []
    Z = np.eye(n)
    while len(active) < n:
        s = -Z @ (Z.T @ g)
        if safe_norm(s) == 0.0:
            break
        cand = [j for j in near if j not in active]
        if not cand:
            break
        blocking = np.array([A[j] @ s / anorm[j] for j in cand])
        jbest = int(np.argmax(blocking))
        if blocking[jbest] <= 0.0:
            break
        j = cand[jbest]
        proj = Z.T @ A[j]
        if safe_norm(proj) <= 1e-10 * anorm[j]:
            near = near[near != j]
            continue
        active.append(j)
        Z = _active_null_space(A, active)

    inactive = np.setdiff1d(np.where(usable)[0], np.asarray(active, dtype=int))
    d = np.zeros(n, dtype=np.float64)
    grad = np.asarray(g, dtype=np.float64).copy()
    info: Dict[str, Any] = {"iterations": 0, "active": list(active)}
    if Z.shape[1] == 0:
        return d, TRStatus.CONSTRAINED, info

    pg = Z @ (Z.T @ grad)
    s = -pg
    gg = float(pg @ pg)
    if gg == 0.0:
        return d, TRStatus.ZERO_GRADIENT, info
    tol = cg_tol * np.sqrt(gg)

    status = TRStatus.MAX_ITER
    for k in range(maxiter):
        Hs = matvec(s)
        sHs = float(s @ Hs)
        gs = float(grad @ s)
        alpha = -gs / sHs if sHs > neg_curv_tol * max(1.0, float(s @ s)) else np.inf

        tau_tr = boundary_tau(d, s, Delta)
        tau_con = np.inf
        if inactive.size:
            As = A[inactive] @ s
            moving = As > feas_tol * anorm[inactive]
            if np.any(moving):
                slack = np.maximum(r[inactive][moving] - A[inactive][moving] @ d, 0.0)
                tau_con = float(np.min(slack / As[moving]))

        step = min(alpha, tau_tr, tau_con)
        d += step * s
        grad += step * Hs
        info["iterations"] = k + 1
        if step == tau_con and tau_con < min(alpha, tau_tr):
            status = TRStatus.CONSTRAINED
            break
        if step == tau_tr:
            status = TRStatus.BOUNDARY if alpha < np.inf else TRStatus.NEG_CURV
            break

        pg = Z @ (Z.T @ grad)
        gg_new = float(pg @ pg)
        if np.sqrt(gg_new) <= tol:
            status = TRStatus.SUCCESS
            break
        s = -pg + (gg_new / max(gg, 1e-300)) * s
        gg = gg_new

    return d, status, info


# ---------------------------- Dispatcher ---------------------------- #
def solve(
    g: Vec,
    H: MatLike,
    delta: float,
    sl: Optional[Vec] = None,
    su: Optional[Vec] = None,
    A: Optional[np.ndarray] = None,
    r: Optional[Vec] = None,
    *,
    cg_tol: float = 1e-2,
    maxiter: Optional[int] = None,
    neg_curv_tol: float = 1e-14,
    active_frac: float = 0.2,
    feas_tol: float = 1e-10,
) -> Tuple[Vec, TRStatus, Dict[str, Any]]:
    """
    Approximately minimize g·d + ½dᵀHd subject to ||d|| <= delta and the
    optional step constraints ``sl <= d <= su`` and ``A d <= r``.

    Args:
        g (np.ndarray): Model gradient at the trust-region center.
        H: Model Hessian as ndarray, LinearOperator or matvec callable.
        delta (float): Trust-region radius.
        sl, su (np.ndarray, optional): Lower/upper bounds on the step.
        A, r (optional): Linear constraints on the step, residuals ``r >= 0``.

    Returns:
        Tuple[np.ndarray, TRStatus, dict]: Step, termination status and diagnostics.

    Raises:
        InfeasibleSubproblem: If ``d = 0`` violates the step constraints, i.e.
            no feasible step exists inside the trust region.
    """
    g = np.asarray(g, dtype=np.float64).reshape(-1)
    n = g.size
    if not (delta > 0 and np.isfinite(delta)):
        raise InfeasibleSubproblem(f"trust-region radius must be positive, got {delta}")
    maxiter = maxiter if maxiter is not None else max(2 * n, 2)
    has_box = sl is not None or su is not None
    if has_box:
        sl = np.full(n, -np.inf) if sl is None else np.asarray(sl, dtype=np.float64)
        su = np.full(n, np.inf) if su is None else np.asarray(su, dtype=np.float64)
        if np.any(sl > feas_tol) or np.any(su < -feas_tol) or np.any(sl > su):
            raise InfeasibleSubproblem("trust-region center violates the bounds")
    has_lin = A is not None and np.size(A) > 0
    if has_lin:
        A = np.atleast_2d(np.asarray(A, dtype=np.float64))
        r = np.asarray(r, dtype=np.float64).reshape(-1)
        if np.any(r < -feas_tol * np.maximum(1.0, np.linalg.norm(A, axis=1))):
            raise InfeasibleSubproblem("trust-region center violates the linear constraints")

    if has_lin:
        if has_box:
            eye = np.eye(n)
            lo, hi = np.isfinite(sl), np.isfinite(su)
            A = np.vstack([A, eye[hi], -eye[lo]])
            r = np.concatenate([r, su[hi], -sl[lo]])
        d, status, info = trstep_linear(
            H, g, delta, A, r, cg_tol, maxiter, neg_curv_tol, active_frac, feas_tol
        )
    elif has_box:
        d, status, info = trsbox(H, g, delta, sl, su, cg_tol, maxiter, neg_curv_tol, feas_tol)
    else:
        d, status, iters = steihaug_cg(H, g, delta, cg_tol, maxiter, neg_curv_tol)
        info = {"iterations": iters}

    red = model_reduction(g, H, d)
    if has_box or has_lin:
        # fall back to the feasible part of the Cauchy step if it does better
        gc = g
        if has_box:
            blocked = ((sl >= -feas_tol) & (g > 0)) | ((su <= feas_tol) & (g < 0))
            gc = np.where(blocked, 0.0, g)
        c = cauchy_step(gc, H, delta)
        tmax = 1.0
        if has_box:
            with np.errstate(divide="ignore", invalid="ignore"):
                tu = np.where(c > 0, su / c, np.inf)
                tl = np.where(c < 0, sl / c, np.inf)
            tmax = min(tmax, float(np.min(tu)), float(np.min(tl)))
        if has_lin:
            Ac = A @ c
            mv = Ac > 0
            if np.any(mv):
                tmax = min(tmax, float(np.min(r[mv] / Ac[mv])))
        tmax = max(tmax, 0.0)
        c_red = model_reduction(g, H, tmax * c)
        if c_red > red:
            d, red = tmax * c, c_red
            info["cauchy_fallback"] = True

    info.update(status=status.value, step_norm=safe_norm(d), model_reduction=red)
    return d, status, info
