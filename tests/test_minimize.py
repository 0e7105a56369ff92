import numpy as np
import pytest
from scipy.optimize import Bounds

from dfotr import (
    DFOConfig,
    DFOSolver,
    DimensionError,
    ExitStatus,
    InitializationFailure,
    LinearConstraints,
    minimize,
)


def quad(x: np.ndarray) -> float:
    return float((x[0] - 1.0) ** 2 + (x[1] - 2.0) ** 2)


def rosen(x: np.ndarray) -> float:
    return float((1 - x[0]) ** 2 + 100 * (x[1] - x[0] ** 2) ** 2)


def test_unconstrained_quadratic():
    res = minimize(quad, [0.0, 0.0], initial_radius=1.0, final_radius=1e-6)
    assert res.success
    assert res.status == ExitStatus.RADIUS_FLOOR_REACHED
    assert np.allclose(res.x, [1.0, 2.0], atol=1e-4)
    assert res.fun < 1e-8
    assert res.nfev <= 1000
    assert res.rho == pytest.approx(1e-6)


def test_unconstrained_quadratic_reaches_radius_floor_early():
    res = minimize(quad, [0.0, 0.0], initial_radius=1.0, final_radius=1e-6, max_evaluations=1000)
    assert res.status == ExitStatus.RADIUS_FLOOR_REACHED
    assert res.nfev < 500
    kinds = [ev.kind for ev in res.events]
    assert "short" in kinds
    assert kinds.count("rho_reduced") >= 5
    rejected = [(ev.step_norm, ev.f) for ev in res.events if ev.kind == "rejected"]
    assert all(a != b for a, b in zip(rejected, rejected[1:]))


def test_bound_constrained_quadratic():
    res = minimize(quad, [0.0, 0.0], bounds=[(None, 0.5), (None, None)], initial_radius=1.0, final_radius=1e-6)
    assert res.success
    assert np.allclose(res.x, [0.5, 2.0], atol=1e-4)
    assert res.x[0] <= 0.5


def test_invalid_first_step_is_survived():
    calls = {"n": 0}

    def fun(x):
        calls["n"] += 1
        if calls["n"] == 6:
            return float("nan")
        return quad(x)

    res = minimize(fun, [0.0, 0.0], initial_radius=1.0, final_radius=1e-6)
    assert res.events[0].kind == "invalid"
    assert res.events[0].nfev == 6
    assert any(ev.delta < 1.0 for ev in res.events[1:])
    assert res.success
    assert np.allclose(res.x, [1.0, 2.0], atol=1e-4)


def test_budget_equal_to_initial_set():
    res = minimize(quad, [0.0, 0.0], initial_radius=1.0, max_evaluations=5)
    assert res.status == ExitStatus.BUDGET_EXHAUSTED
    assert not res.success
    assert res.nfev == 5
    assert res.fun == pytest.approx(2.0)
    assert np.allclose(res.x, [0.0, 1.0])


def test_budget_is_never_exceeded():
    res = minimize(rosen, [-1.2, 1.0], max_evaluations=37)
    assert res.status == ExitStatus.BUDGET_EXHAUSTED
    assert res.nfev == 37


def test_best_value_is_monotone_and_radius_rules():
    seen = []

    def cb(x, f):
        seen.append(f)
        return False

    cfg = DFOConfig(initial_radius=0.5, final_radius=1e-6, max_radius=2.0, max_evaluations=400)
    res = minimize(rosen, [-1.2, 1.0], callback=cb, config=cfg)
    assert len(seen) > 5
    assert np.all(np.diff(seen) <= 0.0)
    assert res.fun <= min(seen)

    prev = cfg.initial_radius
    for ev in res.events:
        assert ev.delta <= cfg.max_radius
        assert ev.delta >= ev.rho
        if ev.delta > prev:
            assert ev.kind == "accepted"
            assert ev.ratio >= cfg.eta2
        prev = ev.delta
    rhos = [ev.rho for ev in res.events]
    assert np.all(np.diff(rhos) <= 0.0)


def test_rosenbrock_converges():
    res = minimize(rosen, [-1.2, 1.0], initial_radius=0.5, final_radius=1e-8, max_evaluations=3000)
    assert res.fun < 1e-5
    assert np.allclose(res.x, [1.0, 1.0], atol=1e-2)


def test_implicit_hessian_matches_dense():
    dense = minimize(quad, [0.0, 0.0], hessian="dense")
    implicit = minimize(quad, [0.0, 0.0], hessian="implicit")
    assert np.allclose(implicit.x, [1.0, 2.0], atol=1e-4)
    assert np.allclose(dense.x, implicit.x, atol=1e-4)


def test_bounds_as_tuple_of_pairs():
    res = minimize(quad, [0.0, 0.0], bounds=((None, 0.5), (None, None)), initial_radius=1.0, final_radius=1e-6)
    assert res.x[0] <= 0.5
    assert np.allclose(res.x, [0.5, 2.0], atol=1e-4)


def test_fixed_variable_is_eliminated():
    res = minimize(quad, [0.0, 0.0], bounds=[(0.3, 0.3), (-10.0, 10.0)], final_radius=1e-6)
    assert res.success
    assert np.isclose(res.x[0], 0.3)
    assert np.isclose(res.x[1], 2.0, atol=1e-4)
    res = minimize(quad, [0.0, 0.0], bounds=Bounds([0.3, -10.0], [0.3, 10.0]), final_radius=1e-6)
    assert np.isclose(res.x[0], 0.3)


def test_linear_inequality():
    A = np.array([[1.0, 1.0]])
    b = np.array([1.0])
    res = minimize(quad, [0.0, 0.0], linear_constraints=(A, b), history_size=10000)
    assert np.allclose(res.x, [0.0, 1.0], atol=1e-4)
    assert np.all(res.xhist @ A[0] <= 1.0 + 1e-8)
    assert res.xhist.shape[0] == res.nfev


def test_linear_equality_and_bounds():
    cons = LinearConstraints(lb=[0.0, 0.0, 0.0], A_eq=[[1.0, 1.0, 1.0]], b_eq=[1.0])

    def fun(x):
        return float((x[0] - 1.0) ** 2 + (x[1] - 1.0) ** 2 + x[2] ** 2)

    res = minimize(fun, [1.0, 1.0, 1.0], linear_constraints=cons, initial_radius=0.3)
    assert np.isclose(np.sum(res.x), 1.0)
    assert np.all(res.x >= -1e-8)
    assert np.allclose(res.x, [0.5, 0.5, 0.0], atol=1e-4)


def test_infeasible_start_is_repaired():
    res = minimize(quad, [5.0, 5.0], bounds=Bounds([-1.0, -1.0], [3.0, 3.0]))
    assert np.allclose(res.x, [1.0, 2.0], atol=1e-4)


def test_callback_terminates():
    count = {"n": 0}

    def cb(x, f):
        count["n"] += 1
        return count["n"] >= 3

    res = minimize(rosen, [-1.2, 1.0], callback=cb)
    assert res.status == ExitStatus.CALLBACK_TERMINATE
    assert res.nit == 2


def test_target_and_time_limit():
    res = minimize(quad, [0.0, 0.0], ftarget=0.5)
    assert res.status == ExitStatus.TARGET_REACHED
    assert res.fun <= 0.5
    res = minimize(quad, [0.0, 0.0], max_time=1e-12)
    assert res.status == ExitStatus.TIME_LIMIT
    assert res.nfev == 5


def test_objective_may_return_constraint_values():
    res = minimize(lambda x: (quad(x), np.array([x[0] - x[1]])), [0.0, 0.0])
    assert res.constr is not None
    assert np.isclose(res.constr[0], res.x[0] - res.x[1])


def test_input_errors():
    with pytest.raises(DimensionError):
        minimize(quad, [])
    with pytest.raises(DimensionError):
        minimize(quad, [np.nan, 0.0])
    with pytest.raises(DimensionError):
        minimize(quad, [0.0, 0.0], interpolation_set_size=3)
    with pytest.raises(DimensionError):
        minimize(quad, [0.0, 0.0], bounds=([1.0, 0.0], [0.0, 1.0]))
    with pytest.raises(TypeError):
        minimize(quad, [0.0, 0.0], not_an_option=1)


def test_all_invalid_initial_values():
    with pytest.raises(InitializationFailure):
        minimize(lambda x: float("inf"), [0.0, 0.0])


def test_runs_are_independent():
    solver = DFOSolver(quad, [0.0, 0.0], config=DFOConfig(max_evaluations=60))
    first = solver.solve()
    second = solver.solve()
    assert first.nfev == second.nfev
    assert np.array_equal(first.x, second.x)
