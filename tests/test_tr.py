import numpy as np
import pytest

from dfotr.blocks import tr
from dfotr.blocks.tr import TRStatus
from dfotr.dfo_aux import InfeasibleSubproblem


def random_problem(seed: int, n: int = 5, indefinite: bool = False):
    rng = np.random.default_rng(seed)
    B = rng.standard_normal((n, n))
    H = B @ B.T / n
    if indefinite:
        H -= 1.5 * np.eye(n)
    else:
        H += 0.1 * np.eye(n)
    g = rng.standard_normal(n)
    return g, H


def test_interior_newton_step():
    g, H = random_problem(0)
    d, status, _ = tr.solve(g, H, 1e3, cg_tol=1e-10, maxiter=50)
    assert status in (TRStatus.SUCCESS, TRStatus.MAX_ITER)
    assert np.allclose(d, -np.linalg.solve(H, g), atol=1e-6)


def test_boundary_step_has_radius_length():
    g, H = random_problem(1)
    delta = 0.05
    d, status, _ = tr.solve(g, H, delta)
    assert status in (TRStatus.BOUNDARY, TRStatus.NEG_CURV)
    assert np.isclose(np.linalg.norm(d), delta)


@pytest.mark.parametrize("seed", range(6))
@pytest.mark.parametrize("indefinite", [False, True])
def test_sufficient_decrease(seed, indefinite):
    g, H = random_problem(seed, indefinite=indefinite)
    gnorm = np.linalg.norm(g)
    hnorm = np.linalg.norm(H, 2)
    for delta in (0.01, 0.3, 5.0):
        d, _, info = tr.solve(g, H, delta)
        assert np.linalg.norm(d) <= delta * (1 + 1e-10)
        red = tr.model_reduction(g, H, d)
        assert red >= 0.5 * gnorm * min(delta, gnorm / (1.0 + hnorm)) - 1e-12
        assert np.isclose(info["model_reduction"], red)


def test_cauchy_step_inside_ball():
    g, H = random_problem(2, indefinite=True)
    c = tr.cauchy_step(g, H, 0.7)
    assert np.linalg.norm(c) <= 0.7 * (1 + 1e-12)
    assert tr.model_reduction(g, H, c) > 0


def test_operator_and_callable_agree():
    g, H = random_problem(3)
    d1, _, _ = tr.solve(g, H, 0.5)
    d2, _, _ = tr.solve(g, lambda v: H @ v, 0.5)
    d3, _, _ = tr.solve(g, tr.make_operator(H, g.size), 0.5)
    assert np.allclose(d1, d2)
    assert np.allclose(d1, d3)


def test_box_step_freezes_variable():
    g = np.array([-1.0, -1.0])
    H = np.eye(2)
    d, _, info = tr.solve(g, H, 10.0, sl=np.array([-np.inf, -np.inf]), su=np.array([0.5, np.inf]), cg_tol=1e-10)
    assert np.allclose(d, [0.5, 1.0])
    assert info["frozen"] == 1


def test_box_step_fixes_variable_at_bound():
    g = np.array([1.0, -1.0])
    H = np.eye(2)
    d, _, _ = tr.solve(g, H, 1.0, sl=np.array([0.0, -5.0]), su=np.array([5.0, 5.0]))
    assert d[0] == 0.0
    assert d[1] > 0


@pytest.mark.parametrize("seed", range(5))
def test_box_step_is_feasible(seed):
    g, H = random_problem(seed, indefinite=seed % 2 == 1)
    rng = np.random.default_rng(100 + seed)
    sl = -rng.uniform(0.0, 0.3, g.size)
    su = rng.uniform(0.0, 0.3, g.size)
    d, _, _ = tr.solve(g, H, 0.4, sl=sl, su=su)
    assert np.all(d >= sl - 1e-12)
    assert np.all(d <= su + 1e-12)
    assert np.linalg.norm(d) <= 0.4 * (1 + 1e-10)
    assert tr.model_reduction(g, H, d) >= 0.0


def test_linear_step_projects_onto_near_active_constraint():
    g = np.array([-1.0, -1.0])
    H = np.eye(2)
    A = np.array([[1.0, 1.0]])
    d, _, _ = tr.solve(g, H, 10.0, A=A, r=np.array([0.5]))
    assert A @ d <= 0.5 + 1e-12
    assert np.allclose(d, [0.25, 0.25], atol=1e-10)


def test_linear_step_truncated_at_constraint():
    g = np.array([-1.0, -1.0])
    H = np.eye(2)
    A = np.array([[1.0, 0.0]])
    d, status, _ = tr.solve(g, H, 1.0, A=A, r=np.array([0.5]))
    assert status == TRStatus.CONSTRAINED
    assert d[0] <= 0.5 + 1e-12
    assert np.allclose(d, [0.5, 0.5])


def test_linear_step_with_bounds_is_feasible():
    g, H = random_problem(7, n=3)
    A = np.array([[1.0, 2.0, -1.0], [0.5, -1.0, 1.0]])
    r = np.array([0.05, 0.2])
    sl = np.full(3, -0.3)
    su = np.full(3, 0.3)
    d, _, _ = tr.solve(g, H, 0.5, sl=sl, su=su, A=A, r=r)
    assert np.all(A @ d <= r + 1e-10)
    assert np.all(d >= sl - 1e-10) and np.all(d <= su + 1e-10)
    assert tr.model_reduction(g, H, d) >= 0.0


def test_infeasible_center_raises():
    g = np.array([1.0, 1.0])
    with pytest.raises(InfeasibleSubproblem):
        tr.solve(g, np.eye(2), 1.0, sl=np.array([0.1, -1.0]), su=np.array([1.0, 1.0]))
    with pytest.raises(InfeasibleSubproblem):
        tr.solve(g, np.eye(2), 1.0, A=np.array([[1.0, 0.0]]), r=np.array([-0.5]))


def test_box_step_near_active_bound_moves_free_variable():
    g = np.array([-1.0, 1e-3])
    d, status, _ = tr.solve(g, np.eye(2), 1.0, su=np.array([0.0, np.inf]))
    assert status != TRStatus.ZERO_GRADIENT
    assert np.allclose(d, [0.0, -1e-3])


def test_linear_step_near_active_constraint_moves_free_variable():
    g = np.array([-1.0, 1e-3])
    d, status, _ = tr.solve(g, np.eye(2), 1.0, A=np.array([[1.0, 0.0]]), r=np.array([0.0]))
    assert status != TRStatus.ZERO_GRADIENT
    assert np.allclose(d, [0.0, -1e-3])


def active_bound_problem(seed: int, indefinite: bool):
    """Problem with bounds either inactive or active at zero, plus its projected gradient."""
    g, H = random_problem(seed, indefinite=indefinite)
    rng = np.random.default_rng(200 + seed)
    kind = rng.integers(0, 3, g.size)  # 0 free, 1 upper at 0, 2 lower at 0
    sl = np.where(kind == 2, 0.0, -np.inf)
    su = np.where(kind == 1, 0.0, np.inf)
    blocked = ((kind == 1) & (g < 0)) | ((kind == 2) & (g > 0))
    pg = np.where(blocked, 0.0, g)
    return g, H, sl, su, pg


@pytest.mark.parametrize("seed", range(6))
@pytest.mark.parametrize("indefinite", [False, True])
def test_box_sufficient_decrease_on_projected_gradient(seed, indefinite):
    g, H, sl, su, pg = active_bound_problem(seed, indefinite)
    pnorm = np.linalg.norm(pg)
    hnorm = np.linalg.norm(H, 2)
    for delta in (0.01, 0.3, 5.0):
        d, _, _ = tr.solve(g, H, delta, sl=sl, su=su)
        assert np.all(d >= sl) and np.all(d <= su)
        assert np.linalg.norm(d) <= delta * (1 + 1e-10)
        red = tr.model_reduction(g, H, d)
        assert red >= 0.5 * pnorm * min(delta, pnorm / (1.0 + hnorm)) - 1e-12


@pytest.mark.parametrize("seed", range(6))
@pytest.mark.parametrize("indefinite", [False, True])
def test_linear_sufficient_decrease_on_projected_gradient(seed, indefinite):
    g, H, sl, su, pg = active_bound_problem(seed, indefinite)
    n = g.size
    eye = np.eye(n)
    A = np.vstack([eye[np.isfinite(su)], -eye[np.isfinite(sl)]])
    r = np.zeros(A.shape[0])
    pnorm = np.linalg.norm(pg)
    hnorm = np.linalg.norm(H, 2)
    for delta in (0.01, 0.3, 5.0):
        d, _, _ = tr.solve(g, H, delta, A=A, r=r)
        assert np.all(A @ d <= r + 1e-12)
        assert np.linalg.norm(d) <= delta * (1 + 1e-10)
        red = tr.model_reduction(g, H, d)
        assert red >= 0.5 * pnorm * min(delta, pnorm / (1.0 + hnorm)) - 1e-12
