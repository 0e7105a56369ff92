import numpy as np
import pytest

from dfotr.blocks.linalg import (
    boundary_tau,
    condition_estimate,
    dense_matvec,
    least_norm_solution,
    qr_null_space,
    solve_symmetric,
    sym_rank_one_update,
    sym_rank_two_update,
    symmetric_inverse,
)


def test_dense_matvec_matches_numpy():
    rng = np.random.default_rng(0)
    M = rng.standard_normal((5, 5))
    x = rng.standard_normal(5)
    assert np.allclose(dense_matvec(M, x), M @ x)


def test_rank_updates_in_place():
    rng = np.random.default_rng(1)
    M = rng.standard_normal((4, 4))
    M = M + M.T
    u = rng.standard_normal(4)
    v = rng.standard_normal(4)
    expected = M + 0.7 * np.outer(u, u) + np.outer(u, v) + np.outer(v, u)
    sym_rank_one_update(M, 0.7, u)
    sym_rank_two_update(M, u, v)
    assert np.allclose(M, expected)
    assert np.allclose(M, M.T)


def test_rank_updates_propagate_non_finite_values():
    M = np.eye(3)
    sym_rank_one_update(M, 1.0, np.array([np.nan, 0.0, 1.0]))
    assert not np.all(np.isfinite(M))
    M = np.eye(3)
    sym_rank_two_update(M, np.array([np.inf, 0.0, 0.0]), np.array([1.0, 1.0, 0.0]))
    assert not np.all(np.isfinite(M))


def test_rank_update_rejects_non_contiguous():
    M = np.zeros((4, 4))[:, ::2]
    with pytest.raises(ValueError):
        sym_rank_one_update(M, 1.0, np.ones(2))


def test_boundary_tau_hits_sphere():
    p = np.array([0.3, -0.1])
    d = np.array([1.0, 2.0])
    t = boundary_tau(p, d, 2.0)
    assert t > 0
    assert np.isclose(np.linalg.norm(p + t * d), 2.0)
    # direction pointing back towards the origin
    t2 = boundary_tau(p, -d, 2.0)
    assert np.isclose(np.linalg.norm(p - t2 * d), 2.0)


def test_symmetric_solves():
    rng = np.random.default_rng(2)
    B = rng.standard_normal((6, 6))
    M = B + B.T + 0.5 * np.eye(6)
    b = rng.standard_normal(6)
    x = solve_symmetric(M, b)
    assert np.allclose(M @ x, b)
    Minv = symmetric_inverse(M)
    assert np.allclose(Minv @ M, np.eye(6), atol=1e-8)
    assert np.allclose(Minv, Minv.T)


def test_condition_estimate():
    assert np.isclose(condition_estimate(np.diag([1.0, 10.0])), 10.0)
    assert condition_estimate(np.ones((2, 2))) > 1e12


def test_null_space_and_least_norm():
    A = np.array([[1.0, 1.0, 1.0], [1.0, -1.0, 0.0]])
    Z, Y, rank = qr_null_space(A)
    assert rank == 2
    assert Z.shape == (3, 1)
    assert np.allclose(A @ Z, 0.0)
    assert np.allclose(Z.T @ Y, 0.0)
    b = np.array([1.0, 0.0])
    x = least_norm_solution(A, b)
    assert np.allclose(A @ x, b)
    assert np.allclose(Z.T @ x, 0.0)


def test_null_space_rank_deficient():
    A = np.array([[1.0, 2.0], [2.0, 4.0]])
    Z, _, rank = qr_null_space(A)
    assert rank == 1
    assert np.allclose(A @ Z, 0.0)
