from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import scipy.sparse.linalg as spla

from .blocks.linalg import (
    condition_estimate,
    dense_matvec,
    sym_rank_one_update,
    sym_rank_two_update,
    symmetric_inverse,
)
from .dfo_aux import DFOConfig, DimensionError, IllConditionedModel


# ======================================
# Explicit Hessian stores
# ======================================
class HessianStore:
    """Explicit part of the model Hessian; only products and low-rank updates."""

    def __init__(self, n: int):
        self.n = n

    def matvec(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def add_rank_one(self, alpha: float, u: np.ndarray) -> None:
        raise NotImplementedError

    def add_sym_rank_two(self, u: np.ndarray, v: np.ndarray) -> None:
        raise NotImplementedError

    def to_dense(self) -> np.ndarray:
        raise NotImplementedError

    def copy(self) -> "HessianStore":
        raise NotImplementedError


class DenseHessian(HessianStore):
    def __init__(self, n: int, M: Optional[np.ndarray] = None):
        super().__init__(n)
        self.M = np.zeros((n, n)) if M is None else np.ascontiguousarray(M, dtype=np.float64)

    def matvec(self, x):
        return dense_matvec(self.M, x)

    def add_rank_one(self, alpha, u):
        sym_rank_one_update(self.M, alpha, u)

    def add_sym_rank_two(self, u, v):
        sym_rank_two_update(self.M, u, v)

    def to_dense(self):
        return self.M.copy()

    def copy(self):
        return DenseHessian(self.n, self.M.copy())


class ImplicitHessian(HessianStore):
    """
    Sum of weighted rank-one terms ``Σ α_k u_k u_kᵀ``; O(k·n) storage.

    A symmetric rank-two term ``u vᵀ + v uᵀ`` is stored as
    ``½(u+v)(u+v)ᵀ - ½(u-v)(u-v)ᵀ``.
    """

    def __init__(self, n: int):
        super().__init__(n)
        self.alphas: List[float] = []
        self.vectors: List[np.ndarray] = []

    def __len__(self):
        return len(self.alphas)

    def matvec(self, x):
        out = np.zeros(self.n)
        if not self.alphas:
            return out
        U = np.asarray(self.vectors)
        return U.T @ (np.asarray(self.alphas) * (U @ x))

    def add_rank_one(self, alpha, u):
        if alpha == 0.0:
            return
        self.alphas.append(float(alpha))
        self.vectors.append(np.array(u, dtype=np.float64).reshape(-1))

    def add_sym_rank_two(self, u, v):
        u = np.asarray(u, dtype=np.float64)
        v = np.asarray(v, dtype=np.float64)
        self.add_rank_one(0.5, u + v)
        self.add_rank_one(-0.5, u - v)

    def to_dense(self):
        if not self.alphas:
            return np.zeros((self.n, self.n))
        U = np.asarray(self.vectors)
        return (U.T * np.asarray(self.alphas)) @ U

    def copy(self):
        h = ImplicitHessian(self.n)
        h.alphas = list(self.alphas)
        h.vectors = [v.copy() for v in self.vectors]
        return h


def make_hessian(kind: str, n: int) -> HessianStore:
    if kind == "dense":
        return DenseHessian(n)
    if kind == "implicit":
        return ImplicitHessian(n)
    raise ValueError(f"unknown hessian representation {kind!r}")


# ======================================
# Quadratic model
# ======================================
@dataclass
class QuadraticModel:
    """
    Q(y) = c + gq·y + ½ yᵀ hq y + ½ Σ_j pq_j (y_j·y)², with y measured from the
    base point and y_j the interpolation points.
    """

    c: float
    gq: np.ndarray
    hq: HessianStore
    pq: np.ndarray

    def value(self, y: np.ndarray, xpt: np.ndarray) -> float:
        py = xpt @ y
        return float(self.c + self.gq @ y + 0.5 * (y @ self.hq.matvec(y)) + 0.5 * (self.pq @ (py * py)))

    def gradient(self, y: np.ndarray, xpt: np.ndarray) -> np.ndarray:
        return self.gq + self.hess_vec(y, xpt)

    def hess_vec(self, v: np.ndarray, xpt: np.ndarray) -> np.ndarray:
        return self.hq.matvec(v) + xpt.T @ (self.pq * (xpt @ v))

    def hessian(self, xpt: np.ndarray) -> np.ndarray:
        return self.hq.to_dense() + (xpt.T * self.pq) @ xpt

    def copy(self) -> "QuadraticModel":
        return QuadraticModel(self.c, self.gq.copy(), self.hq.copy(), self.pq.copy())


# ======================================
# Interpolation model manager
# ======================================
class InterpolationModel:
    """
    Owns the interpolation set, the KKT inverse ``H`` of Powell's matrix
    ``W = [[A, Xᵀ], [X, 0]]`` and the minimum-Frobenius-norm quadratic model.

    Points are stored as displacements ``xpt[k] = x_k - xbase``.
    """

    def __init__(self, n: int, cfg: DFOConfig):
        if n <= 0:
            raise DimensionError(f"problem dimension must be positive, got n={n}")
        self.n = n
        self.cfg = cfg
        self.npt = int(cfg.interpolation_set_size)
        self.xbase = np.zeros(n)
        self.xpt = np.zeros((self.npt, n))
        self.fval = np.full(self.npt, np.nan)
        self.H = np.zeros((self.npt + n + 1, self.npt + n + 1))
        self.model: Optional[QuadraticModel] = None
        self.kopt = 0

    # ---------------- interpolation set ----------------
    def initialize(self, x0: np.ndarray, adapter, rhobeg: Optional[float] = None) -> np.ndarray:
        """
        Place the initial interpolation points around the feasible ``x0``.

        Coordinate steps ``x0 ± rhobeg·e_i`` (sign and length adjusted to the
        feasible region), then two-coordinate points when ``npt > 2n+1``.

        Returns:
            np.ndarray: Absolute points of shape ``(npt, n)``, ``x0`` first.

        Raises:
            DimensionError: If ``x0`` has the wrong length or the feasible
                region is too thin around ``x0`` to place the points.
        """
        n, npt = self.n, self.npt
        x0 = np.asarray(x0, dtype=np.float64).reshape(-1)
        if x0.size != n:
            raise DimensionError(f"x0 must have length {n}, got {x0.size}")
        rhobeg = self.cfg.initial_radius if rhobeg is None else rhobeg
        self.xbase = x0.copy()
        self.xpt = np.zeros((npt, n))
        self.fval = np.full(npt, np.nan)
        self.model = None
        self.kopt = 0

        eye = np.eye(n)
        s1 = np.zeros(n)
        s2 = np.zeros(n)
        for i in range(n):
            up = adapter.max_step(x0, eye[i])
            dn = adapter.max_step(x0, -eye[i])
            if up >= rhobeg:
                a = rhobeg
            elif dn >= rhobeg:
                a = -rhobeg
            elif max(up, dn) > 0:
                a = up if up >= dn else -dn
            else:
                raise DimensionError(f"no feasible room along coordinate {i} at the starting point")
            same = up if a > 0 else dn
            opp = dn if a > 0 else up
            if opp >= abs(a):
                b = -a
            elif opp >= 0.5 * abs(a):
                b = -np.sign(a) * opp
            elif same >= 2.0 * abs(a):
                b = 2.0 * a
            else:
                b = 0.5 * a
            s1[i], s2[i] = a, b

        for k in range(1, npt):
            if k <= n:
                self.xpt[k, k - 1] = s1[k - 1]
            elif k <= 2 * n:
                self.xpt[k, k - n - 1] = s2[k - n - 1]
            else:
                p, q = self._pair_indices(k)
                self.xpt[k] = self._pair_point(x0, p, q, s1, s2, adapter)
        return self.xbase + self.xpt

    def _pair_indices(self, k: int) -> Tuple[int, int]:
        """0-based coordinate pair of the k-th (k >= 2n+1) initial point."""
        n = self.n
        itemp = (k - n - 1) // n
        jpt = k - itemp * n - n
        ipt = jpt + itemp
        if ipt > n:
            itemp = jpt
            jpt = ipt - n
            ipt = itemp
        return ipt - 1, jpt - 1

    def _pair_point(self, x0, p, q, s1, s2, adapter) -> np.ndarray:
        e = np.zeros(self.n)
        for sp, sq in ((s1[p], s1[q]), (s1[p], s2[q]), (s2[p], s1[q]), (s2[p], s2[q])):
            d = e.copy()
            d[p], d[q] = sp, sq
            if adapter.max_step(x0, d) >= 1.0:
                return d
        d = e.copy()
        d[p], d[q] = s1[p], s1[q]
        t = min(adapter.max_step(x0, d), 1.0)
        if t <= 0.0:
            raise DimensionError(f"no feasible two-coordinate point for coordinates ({p}, {q})")
        return t * d

    def build(self, values: np.ndarray) -> None:
        """Invert the KKT matrix of the current set and fit the model to ``values``."""
        values = np.asarray(values, dtype=np.float64).reshape(-1)
        if values.size != self.npt or not np.all(np.isfinite(values)):
            raise DimensionError("build needs one finite value per interpolation point")
        self.fval = values.copy()
        self.kopt = int(np.argmin(self.fval))
        self.H = self._factorize(self.xpt)
        m = self.npt
        Hf = self.H[:, :m] @ self.fval
        self.model = QuadraticModel(
            c=float(Hf[m]),
            gq=Hf[m + 1 :].copy(),
            hq=make_hessian(self.cfg.hessian, self.n),
            pq=Hf[:m].copy(),
        )
        logging.debug(f"model built: npt={m}, fopt={self.fopt:.6e}, err={self.interpolation_error():.2e}")

    def _factorize(self, xpt: np.ndarray) -> np.ndarray:
        """
        Inverse of W for the points ``xpt``, computed on normalized points and
        scaled back: ``H = S Ĥ S`` with ``S = diag(s⁻² I_m, s², s I_n)``.
        """
        m, n = xpt.shape
        scale = float(np.max(np.linalg.norm(xpt, axis=1)))
        if scale <= 0.0:
            raise IllConditionedModel("interpolation points coincide")
        Y = xpt / scale
        W = np.zeros((m + n + 1, m + n + 1))
        G = Y @ Y.T
        W[:m, :m] = 0.5 * G * G
        W[:m, m] = W[m, :m] = 1.0
        W[:m, m + 1 :] = Y
        W[m + 1 :, :m] = Y.T
        cond = condition_estimate(W)
        if not np.isfinite(cond) or cond > self.cfg.max_condition:
            raise IllConditionedModel(f"interpolation system is singular (cond={cond:.3e})")
        try:
            Hhat = symmetric_inverse(W)
        except np.linalg.LinAlgError as exc:
            raise IllConditionedModel(f"interpolation system is singular: {exc}") from exc
        S = np.concatenate([np.full(m, scale**-2), [scale**2], np.full(n, scale)])
        return np.ascontiguousarray(Hhat * np.outer(S, S))

    # ---------------- accessors ----------------
    @property
    def yopt(self) -> np.ndarray:
        return self.xpt[self.kopt]

    @property
    def xopt(self) -> np.ndarray:
        return self.xbase + self.xpt[self.kopt]

    @property
    def fopt(self) -> float:
        return float(self.fval[self.kopt])

    def points(self) -> np.ndarray:
        return self.xbase + self.xpt

    def distances(self, y: Optional[np.ndarray] = None) -> np.ndarray:
        y = self.yopt if y is None else y
        return np.linalg.norm(self.xpt - y, axis=1)

    # ---------------- model evaluation (displacements from xbase) ----------------
    def model_value(self, y: np.ndarray) -> float:
        return self.model.value(np.asarray(y, dtype=np.float64), self.xpt)

    def model_gradient(self, y: Optional[np.ndarray] = None) -> np.ndarray:
        y = self.yopt if y is None else np.asarray(y, dtype=np.float64)
        return self.model.gradient(y, self.xpt)

    def model_hessian_vec(self, v: np.ndarray) -> np.ndarray:
        return self.model.hess_vec(np.asarray(v, dtype=np.float64), self.xpt)

    def hessian_operator(self) -> spla.LinearOperator:
        return spla.LinearOperator((self.n, self.n), matvec=self.model_hessian_vec, dtype=float)

    def predicted_reduction(self, d: np.ndarray) -> float:
        """Q(x_opt) - Q(x_opt + d)."""
        g = self.model_gradient()
        return -(float(g @ d) + 0.5 * float(d @ self.model_hessian_vec(d)))

    def interpolation_error(self) -> float:
        if self.model is None:
            return np.inf
        q = np.array([self.model_value(y) for y in self.xpt])
        return float(np.max(np.abs(q - self.fval)))

    # ---------------- Lagrange functions ----------------
    def _w(self, y: np.ndarray) -> np.ndarray:
        py = self.xpt @ y
        return np.concatenate([0.5 * py * py, [1.0], y])

    def lagrange(self, t: int) -> Tuple[float, np.ndarray, np.ndarray]:
        """Coefficients ``(c, g, λ)`` of L_t(y) = c + g·y + ½ Σ_j λ_j (y_j·y)²."""
        m = self.npt
        col = self.H[:, t]
        return float(col[m]), col[m + 1 :].copy(), col[:m].copy()

    def lagrange_value(self, t: int, y: np.ndarray) -> float:
        return float(self.H[:, t] @ self._w(np.asarray(y, dtype=np.float64)))

    def lagrange_gradient(self, t: int, y: np.ndarray) -> np.ndarray:
        _, g, lam = self.lagrange(t)
        return g + self.xpt.T @ (lam * (self.xpt @ y))

    def denominators(self, y: np.ndarray) -> np.ndarray:
        """
        σ_t = α_t β + τ_t² for replacing each point by ``xbase + y``.

        Args:
            y (np.ndarray): Candidate point as a displacement from ``xbase``.

        Returns:
            np.ndarray: Denominators of shape ``(npt,)``; ``τ_t = L_t(y)``.
        """
        m = self.npt
        y = np.asarray(y, dtype=np.float64)
        w = self._w(y)
        Hw = self.H @ w
        yy = float(y @ y)
        beta = 0.5 * yy * yy - float(w @ Hw)
        alpha = np.diag(self.H)[:m]
        tau = Hw[:m]
        return alpha * beta + tau * tau

    # ---------------- updates ----------------
    def update(self, x_new: np.ndarray, f_new: float, t: int) -> float:
        """
        Replace point ``t`` by ``x_new`` (absolute) with value ``f_new``.

        Least-change (Frobenius) model update plus Powell's rank-two update of
        the KKT inverse. The state is unchanged when the update is refused.

        Returns:
            float: The denominator σ_t used.

        Raises:
            IllConditionedModel: If σ_t is below ``denominator_tol`` or the
                update produces non-finite values.
        """
        m = self.npt
        y = np.asarray(x_new, dtype=np.float64) - self.xbase
        w = self._w(y)
        Hw = self.H @ w
        yy = float(y @ y)
        alpha = float(self.H[t, t])
        tau = float(Hw[t])
        beta = 0.5 * yy * yy - float(w @ Hw)
        sigma = alpha * beta + tau * tau
        if not np.isfinite(sigma) or sigma <= self.cfg.denominator_tol:
            raise IllConditionedModel(f"denominator {sigma:.3e} too small for point {t}", sigma)

        v = -Hw
        v[t] += 1.0
        h = self.H[:, t].copy()
        Hn = self.H.copy()
        sym_rank_one_update(Hn, alpha / sigma, v)
        sym_rank_one_update(Hn, -beta / sigma, h)
        sym_rank_two_update(Hn, (tau / sigma) * h, v)
        if not np.all(np.isfinite(Hn)):
            raise IllConditionedModel(f"KKT inverse update for point {t} is not finite", sigma)

        diff = float(f_new) - self.model_value(y)
        model = self.model.copy()
        model.hq.add_rank_one(model.pq[t], self.xpt[t])
        model.pq[t] = 0.0
        model.pq += diff * Hn[:m, t]
        model.c += diff * Hn[m, t]
        model.gq += diff * Hn[m + 1 :, t]
        if not (np.isfinite(model.c) and np.all(np.isfinite(model.gq)) and np.all(np.isfinite(model.pq))):
            raise IllConditionedModel(f"model update for point {t} is not finite", sigma)

        self.H = Hn
        self.model = model
        self.xpt[t] = y
        self.fval[t] = f_new
        self.kopt = int(np.argmin(self.fval))
        return sigma

    def _shifted_inverse(self, s: np.ndarray) -> np.ndarray:
        """
        KKT inverse after moving the base by ``s``.

        The shifted matrix is a congruence ``W' = Rᵀ W R`` with
        ``R = [[I, 0], [B, C]]``, ``Cᵀ [1; y] = [1; y - s]`` and column ``b_i``
        of ``B`` given by ``r_i = y_i·s - ½|s|²``:
        ``b_i = [½r_i² - ¼|s|² r_i ; ½ r_i s - r_i y_i]``. Hence
        ``H' = R⁻¹ H R⁻ᵀ`` without any new factorization.
        """
        m, n = self.npt, self.n
        q = float(s @ s)
        r = self.xpt @ s - 0.5 * q
        B = np.empty((n + 1, m))
        B[0] = 0.5 * r * r - 0.25 * q * r
        B[1:] = (0.5 * np.outer(r, s) - r[:, None] * self.xpt).T
        Cinv = np.eye(n + 1)
        Cinv[0, 1:] = s
        Rinv = np.eye(m + n + 1)
        Rinv[m:, :m] = -Cinv @ B
        Rinv[m:, m:] = Cinv
        H = Rinv @ self.H @ Rinv.T
        return np.ascontiguousarray(0.5 * (H + H.T))

    def shift_base(self) -> None:
        """
        Move ``xbase`` to ``xopt``: re-expand the model about the new base and
        transform the KKT inverse accordingly. The model function is unchanged.

        Raises:
            IllConditionedModel: If the transformed inverse is not finite.
        """
        s = self.xpt[self.kopt].copy()
        if not np.any(s):
            return
        model = self.model
        c_new = self.model_value(s)
        g_new = self.model_gradient(s)
        H_new = self._shifted_inverse(s)
        if not np.all(np.isfinite(H_new)):
            raise IllConditionedModel("KKT inverse is not finite after the base shift")
        xpt_new = self.xpt - s

        hq = model.hq.copy()
        v = xpt_new.T @ model.pq
        hq.add_sym_rank_two(v, s)
        hq.add_rank_one(float(np.sum(model.pq)), s)

        self.H = H_new
        self.model = QuadraticModel(c_new, g_new, hq, model.pq.copy())
        self.xbase = self.xbase + s
        self.xpt = xpt_new
        self.xpt[self.kopt] = 0.0
        logging.debug(f"base shifted by {np.linalg.norm(s):.3e}")
