from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np

from .dfo_aux import DFOConfig
from .dfo_model import InterpolationModel


def far_points(model: InterpolationModel, limit: float) -> np.ndarray:
    """Indices of points farther than ``limit`` from x_opt, farthest first."""
    dist = model.distances()
    idx = np.where(dist > limit)[0]
    return idx[np.argsort(-dist[idx])]


def _line_max(phi0: float, phi1: float, phi2: float, lo: float, hi: float) -> Tuple[float, float]:
    """argmax |φ0 + φ1 a + ½ φ2 a²| over a in [lo, hi]."""
    cands = [lo, hi]
    if phi2 != 0.0:
        a = -phi1 / phi2
        if lo < a < hi:
            cands.append(a)
    best_a, best_v = 0.0, abs(phi0)
    for a in cands:
        v = abs(phi0 + phi1 * a + 0.5 * phi2 * a * a)
        if v > best_v:
            best_a, best_v = a, v
    return best_a, best_v


class GeometryManager:
    """
    Poisedness maintenance for the interpolation set: which point to evict
    when a new one arrives and where to sample when the set degrades.
    """

    def __init__(self, cfg: DFOConfig):
        self.cfg = cfg

    # ---------------- replacement ----------------
    def select_point_to_replace(
        self,
        model: InterpolationModel,
        x_new: np.ndarray,
        delta: float,
        rho: float,
        improved: bool,
    ) -> Optional[int]:
        """
        Slot ``t`` maximizing ``max(1, (dist_t/r)^6)·|σ_t|`` with ``r = max(0.1Δ, ρ)``.

        Args:
            model (InterpolationModel): Current model manager.
            x_new (np.ndarray): Candidate point (absolute).
            delta (float): Trust-region radius.
            rho (float): Resolution radius.
            improved (bool): Whether ``x_new`` improves on ``fopt``.

        Returns:
            Optional[int]: Index to replace, or ``None`` if no slot keeps an
            acceptable denominator.
        """
        y = np.asarray(x_new, dtype=np.float64) - model.xbase
        sigma = np.abs(model.denominators(y))
        center = y if improved else model.yopt
        dist2 = np.sum((model.xpt - center) ** 2, axis=1)
        r = max(0.1 * delta, rho)
        weight = np.maximum(1.0, dist2 / (r * r)) ** 3
        score = weight * sigma
        usable = sigma > self.cfg.denominator_tol
        if not improved:
            usable[model.kopt] = False
        if not np.any(usable):
            return None
        score[~usable] = -np.inf
        return int(np.argmax(score))

    # ---------------- geometry improvement ----------------
    def choose_geometry_point(
        self,
        model: InterpolationModel,
        delta: float,
        adapter,
        t: Optional[int] = None,
    ) -> Tuple[int, np.ndarray]:
        """
        Pick the point ``t`` to move (farthest from x_opt unless given) and a
        step ``d`` from x_opt that makes ``|L_t(x_opt + d)|`` large.

        Candidates: lines from x_opt through every other interpolation point
        and the direction of ∇L_t(x_opt), each cut to ``||d|| <= delta`` and to
        the feasible region. The winner has the largest replacement
        denominator ``|σ_t|``.

        Returns:
            Tuple[int, np.ndarray]: Index of the point to replace and the step.
        """
        if t is None:
            dist = model.distances()
            dist[model.kopt] = -1.0
            t = int(np.argmax(dist))
        yopt = model.yopt
        xopt = model.xopt
        _, _, lam = model.lagrange(t)
        phi0 = model.lagrange_value(t, yopt)
        grad = model.lagrange_gradient(t, yopt)

        cands: List[np.ndarray] = []
        dirs = [model.xpt[k] - yopt for k in range(model.npt) if k != model.kopt]
        gnorm = np.linalg.norm(grad)
        if gnorm > 0:
            dirs.append(grad / gnorm)
        for u in dirs:
            unorm = np.linalg.norm(u)
            if unorm == 0.0:
                continue
            hi = min(delta / unorm, adapter.max_step(xopt, u))
            lo = -min(delta / unorm, adapter.max_step(xopt, -u))
            if hi - lo <= 0.0:
                continue
            pu = model.xpt @ u
            phi1 = float(grad @ u)
            phi2 = float(lam @ (pu * pu))
            a, _ = _line_max(phi0, phi1, phi2, lo, hi)
            if a != 0.0:
                cands.append(a * u)

        best_d, best_s = None, -1.0
        for d in cands:
            s = abs(model.denominators(yopt + d)[t])
            if s > best_s:
                best_d, best_s = d, s

        if best_d is None or best_s <= self.cfg.denominator_tol:
            d = self._coordinate_step(model, t, delta, adapter)
            if d is not None:
                best_d = d
        if best_d is None:
            # nothing feasible moves L_t; the caller treats a zero step as a failure
            best_d = np.zeros(model.n)
        logging.debug(f"geometry step for point {t}: |d|={np.linalg.norm(best_d):.3e}, sigma={best_s:.3e}")
        return t, best_d

    def _coordinate_step(self, model: InterpolationModel, t: int, delta: float, adapter) -> Optional[np.ndarray]:
        yopt, xopt = model.yopt, model.xopt
        best, best_s = None, self.cfg.denominator_tol
        for i in range(model.n):
            for sgn in (1.0, -1.0):
                e = np.zeros(model.n)
                e[i] = sgn
                a = min(delta, adapter.max_step(xopt, e))
                if a <= 0.0:
                    continue
                s = abs(model.denominators(yopt + a * e)[t])
                if s > best_s:
                    best, best_s = a * e, s
        return best
