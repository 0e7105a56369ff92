from __future__ import annotations

from typing import Tuple

import numpy as np
import scipy.linalg as la
from numba import njit


# ---------------------------- Numba kernels ---------------------------- #
@njit(cache=True, fastmath=True)
def _dense_matvec(M: np.ndarray, x: np.ndarray, out: np.ndarray) -> None:
    n = M.shape[0]
    for i in range(n):
        s = 0.0
        row = M[i]
        for j in range(x.size):
            s += row[j] * x[j]
        out[i] = s


@njit(cache=True)
def _sym_rank_one(M: np.ndarray, alpha: float, u: np.ndarray) -> None:
    n = u.size
    for i in range(n):
        ai = alpha * u[i]
        for j in range(n):
            M[i, j] += ai * u[j]


@njit(cache=True)
def _sym_rank_two(M: np.ndarray, u: np.ndarray, v: np.ndarray) -> None:
    n = u.size
    for i in range(n):
        ui = u[i]
        vi = v[i]
        for j in range(n):
            M[i, j] += ui * v[j] + vi * u[j]


@njit(cache=True, fastmath=True)
def _boundary_tau(pTp: float, pTd: float, dTd: float, delta: float) -> float:
    if dTd <= 1e-300:
        return 0.0
    disc = pTd * pTd - dTd * (pTp - delta * delta)
    if disc < 0.0:
        disc = 0.0
    # stable root of dTd t^2 + 2 pTd t + (pTp - delta^2) = 0
    if pTd > 0.0:
        gap = delta * delta - pTp
        if gap <= 0.0:
            return 0.0
        return gap / (pTd + np.sqrt(disc))
    return (-pTd + np.sqrt(disc)) / dTd


# ---------------------------- Vector / matrix primitives ---------------------------- #
def _f64(a) -> np.ndarray:
    return np.ascontiguousarray(a, dtype=np.float64)


def dense_matvec(M: np.ndarray, x: np.ndarray) -> np.ndarray:
    M = _f64(M)
    x = _f64(x).reshape(-1)
    out = np.empty(M.shape[0], dtype=np.float64)
    _dense_matvec(M, x, out)
    return out


def sym_rank_one_update(M: np.ndarray, alpha: float, u: np.ndarray) -> None:
    """M += alpha u u^T in place (M must be a C-contiguous float64 array)."""
    if not (M.flags.c_contiguous and M.dtype == np.float64):
        raise ValueError("in-place update needs a C-contiguous float64 matrix")
    if alpha == 0.0:
        return
    _sym_rank_one(M, float(alpha), _f64(u).reshape(-1))


def sym_rank_two_update(M: np.ndarray, u: np.ndarray, v: np.ndarray) -> None:
    """M += u v^T + v u^T in place."""
    if not (M.flags.c_contiguous and M.dtype == np.float64):
        raise ValueError("in-place update needs a C-contiguous float64 matrix")
    _sym_rank_two(M, _f64(u).reshape(-1), _f64(v).reshape(-1))


def boundary_tau(p: np.ndarray, d: np.ndarray, delta: float) -> float:
    """Largest t >= 0 with ||p + t d|| = delta (0 if p is already outside)."""
    return float(_boundary_tau(float(p @ p), float(p @ d), float(d @ d), float(delta)))


def safe_norm(x: np.ndarray) -> float:
    return float(np.linalg.norm(x)) if x.size > 0 else 0.0


# ---------------------------- Small dense systems ---------------------------- #
def solve_symmetric(M: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Solve M x = b for symmetric (possibly indefinite) M via LDL^T/LU."""
    return la.solve(M, b, assume_a="sym", check_finite=True)


def symmetric_inverse(M: np.ndarray) -> np.ndarray:
    """Inverse of a symmetric nonsingular matrix, symmetrized."""
    k = M.shape[0]
    Minv = solve_symmetric(M, np.eye(k))
    return 0.5 * (Minv + Minv.T)


def condition_estimate(M: np.ndarray) -> float:
    """1-norm condition number; inf when M is singular."""
    try:
        return float(np.linalg.cond(M, 1))
    except np.linalg.LinAlgError:
        return float("inf")


# ---------------------------- QR utilities ---------------------------- #
def qr_null_space(A: np.ndarray, tol: float = 1e-12) -> Tuple[np.ndarray, np.ndarray, int]:
    """
    Orthonormal bases of range(A^T) and null(A) from a pivoted QR of A^T.

    Args:
        A (np.ndarray): Matrix of shape (k, n); rows are constraint gradients.
        tol (float): Relative threshold on |R_ii| deciding the numerical rank.

    Returns:
        Tuple[np.ndarray, np.ndarray, int]: ``(Z, Y, rank)`` with ``Z`` (n, n-rank)
        spanning null(A) and ``Y`` (n, rank) spanning range(A^T).
    """
    A = np.atleast_2d(np.asarray(A, dtype=np.float64))
    n = A.shape[1]
    if A.size == 0:
        return np.eye(n), np.zeros((n, 0)), 0
    Q, R, _ = la.qr(A.T, pivoting=True, mode="full")
    diag = np.abs(np.diag(R)) if R.size else np.zeros(0)
    if diag.size == 0 or diag[0] == 0.0:
        return np.eye(n), np.zeros((n, 0)), 0
    rank = int(np.sum(diag > tol * diag[0]))
    return Q[:, rank:], Q[:, :rank], rank


def least_norm_solution(A: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Minimum-norm least-squares solution of A x = b."""
    x, *_ = la.lstsq(np.atleast_2d(A), np.asarray(b, dtype=np.float64))
    return np.asarray(x, dtype=np.float64).reshape(-1)
