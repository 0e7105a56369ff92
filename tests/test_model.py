import numpy as np
import pytest

from dfotr.blocks.constraints import ConstraintAdapter, LinearConstraints
from dfotr.dfo_aux import DFOConfig, IllConditionedModel
from dfotr.dfo_model import DenseHessian, ImplicitHessian, InterpolationModel, make_hessian


def smooth(x: np.ndarray) -> float:
    return float(np.sum(np.exp(0.3 * x)) + x[0] * x[1] ** 2 + 0.5 * np.sum(x**2))


def separable(x: np.ndarray) -> float:
    return float((x[0] - 1.0) ** 2 + 2.0 * (x[1] - 2.0) ** 2)


def build(fun, x0, npt=None, hessian="dense", adapter=None, rhobeg=1.0):
    x0 = np.asarray(x0, dtype=float)
    n = x0.size
    cfg = DFOConfig(interpolation_set_size=npt, hessian=hessian, initial_radius=rhobeg).resolve(n)
    model = InterpolationModel(n, cfg)
    pts = model.initialize(x0, adapter or ConstraintAdapter(n))
    model.build(np.array([fun(p) for p in pts]))
    return model


def random_updates(model, fun, steps, seed=0, radius=1.0):
    rng = np.random.default_rng(seed)
    for _ in range(steps):
        x = model.xopt + radius * rng.uniform(-1.0, 1.0, model.n)
        sig = model.denominators(x - model.xbase)
        sig[model.kopt] = 0.0
        t = int(np.argmax(sig))
        model.update(x, fun(x), t)


def test_initial_points_are_coordinate_steps():
    model = build(smooth, [0.5, -0.5, 1.0])
    n = 3
    assert model.xpt.shape == (2 * n + 1, n)
    assert np.allclose(model.xpt[0], 0.0)
    for i in range(n):
        assert np.isclose(model.xpt[i + 1, i], 1.0)
        assert np.isclose(model.xpt[n + i + 1, i], -1.0)


def test_pair_points_for_larger_sets():
    model = build(smooth, [0.0, 0.0, 0.0], npt=10)
    extra = model.xpt[7:]
    assert np.all(np.count_nonzero(extra, axis=1) == 2)
    assert len({tuple(r) for r in model.xpt}) == 10
    assert model.interpolation_error() < 1e-9


def test_model_exact_for_separable_quadratic():
    model = build(separable, [0.0, 0.0])
    rng = np.random.default_rng(5)
    for _ in range(5):
        y = rng.standard_normal(2)
        assert np.isclose(model.model_value(y), separable(model.xbase + y))
    g = model.model_gradient()
    xopt = model.xopt
    assert np.allclose(g, [2.0 * (xopt[0] - 1.0), 4.0 * (xopt[1] - 2.0)])


def test_lagrange_functions_are_cardinal():
    model = build(smooth, [0.2, 0.1, -0.3])
    for t in range(model.npt):
        vals = np.array([model.lagrange_value(t, y) for y in model.xpt])
        expected = np.zeros(model.npt)
        expected[t] = 1.0
        assert np.allclose(vals, expected, atol=1e-10)


def test_interpolation_holds_after_updates():
    model = build(smooth, [0.0, 0.0, 0.0])
    random_updates(model, smooth, 25)
    scale = max(1.0, float(np.max(np.abs(model.fval))))
    assert model.interpolation_error() < 1e-8 * scale
    assert model.fopt == pytest.approx(float(np.min(model.fval)))


def test_dense_and_implicit_hessians_agree():
    dense = build(smooth, [0.1, -0.2, 0.3], hessian="dense")
    implicit = build(smooth, [0.1, -0.2, 0.3], hessian="implicit")
    random_updates(dense, smooth, 15, seed=3)
    random_updates(implicit, smooth, 15, seed=3)
    assert isinstance(dense.model.hq, DenseHessian)
    assert isinstance(implicit.model.hq, ImplicitHessian)
    rng = np.random.default_rng(9)
    for _ in range(5):
        y = rng.standard_normal(3)
        assert np.isclose(dense.model_value(y), implicit.model_value(y))
        assert np.allclose(dense.model_hessian_vec(y), implicit.model_hessian_vec(y))


def test_shift_base_preserves_model():
    model = build(smooth, [0.0, 0.0])
    random_updates(model, smooth, 6, seed=1, radius=2.0)
    rng = np.random.default_rng(2)
    X = model.xbase + rng.standard_normal((4, 2))
    before = [model.model_value(x - model.xbase) for x in X]
    xopt = model.xopt.copy()
    model.shift_base()
    assert np.allclose(model.xbase, xopt)
    assert np.allclose(model.yopt, 0.0)
    after = [model.model_value(x - model.xbase) for x in X]
    assert np.allclose(before, after)
    assert model.interpolation_error() < 1e-8 * max(1.0, float(np.max(np.abs(model.fval))))


def test_shift_base_keeps_lagrange_functions_cardinal():
    model = build(smooth, [0.3, -0.2, 0.1])
    random_updates(model, smooth, 10, seed=4, radius=1.5)
    model.shift_base()
    for t in range(model.npt):
        vals = np.array([model.lagrange_value(t, y) for y in model.xpt])
        expected = np.zeros(model.npt)
        expected[t] = 1.0
        assert np.allclose(vals, expected, atol=1e-8)


def test_refused_update_leaves_model_untouched():
    model = build(smooth, [0.0, 0.0])
    xpt = model.xpt.copy()
    H = model.H.copy()
    duplicate = model.xbase + model.xpt[1]
    with pytest.raises(IllConditionedModel):
        model.update(duplicate, smooth(duplicate), 2)
    assert np.array_equal(model.xpt, xpt)
    assert np.array_equal(model.H, H)


def test_initialize_respects_bounds():
    cons = LinearConstraints(lb=[0.0, -1.0], ub=[0.5, 1.0])
    adapter = ConstraintAdapter(2, cons)
    model = build(smooth, [0.0, 0.0], adapter=adapter)
    for x in model.points():
        assert adapter.is_feasible(x)
    assert model.interpolation_error() < 1e-9


def test_make_hessian_rejects_unknown_kind():
    with pytest.raises(ValueError):
        make_hessian("sparse", 3)
