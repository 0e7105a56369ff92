# branin.py
# Runs of the derivative-free trust-region solver on Rosenbrock and Branin,
# unconstrained, with bounds and with a linear cut.

import math

import numpy as np
from scipy.optimize import Bounds

from dfotr import DFOConfig, minimize

# ---------------------------
# Test problems
# ---------------------------

def rosenbrock(x: np.ndarray, a: float = 1.0, b: float = 100.0) -> float:
    """
    Rosenbrock function in 2D:
        f(x, y) = (a - x)^2 + b (y - x^2)^2
    Global min at (x, y) = (a, a^2), f = 0
    """
    x1, x2 = x
    return (a - x1) ** 2 + b * (x2 - x1 ** 2) ** 2


def branin(x: np.ndarray) -> float:
    """
    Branin (2D) on domain x1 in [-5, 10], x2 in [0, 15].
    Standard form (global minima ~ 0.397887 at three points).
    """
    x1, x2 = x
    a = 1.0
    b = 5.1 / (4.0 * math.pi ** 2)
    c = 5.0 / math.pi
    r = 6.0
    s = 10.0
    t = 1.0 / (8.0 * math.pi)
    return a * (x2 - b * x1 ** 2 + c * x1 - r) ** 2 + s * (1 - t) * math.cos(x1) + s


# ---------------------------
# Utility to run a single solve
# ---------------------------

def run_solve(name: str, f, x0: np.ndarray, bounds=None, linear_constraints=None, **options):
    print("=" * 80)
    print(f"{name}: x0={x0}")
    cfg = DFOConfig(initial_radius=0.5, final_radius=1e-8, verbose=False)
    res = minimize(f, x0, bounds=bounds, linear_constraints=linear_constraints, config=cfg, **options)
    print(f"-> {name} DONE. x* = {res.x}, f* = {res.fun:.9f}, nfev = {res.nfev}, {res.message}")
    print("-" * 80)
    return res


# ---------------------------
# Main: run a few scenarios
# ---------------------------

if __name__ == "__main__":
    np.set_printoptions(precision=6, suppress=True)

    # 1) Rosenbrock (unconstrained and with the implicit Hessian)
    run_solve("Rosenbrock", rosenbrock, x0=np.array([-1.2, 1.0]))
    run_solve("Rosenbrock (implicit)", rosenbrock, x0=np.array([-1.2, 1.0]), hessian="implicit")

    # 2) Branin on its box, multiple starts
    box = Bounds([-5.0, 0.0], [10.0, 15.0])
    starts = [
        np.array([-3.0, 12.0]),
        np.array([3.0, 2.0]),
        np.array([9.0, 3.0]),
    ]
    for i, x0 in enumerate(starts, 1):
        run_solve(f"Branin #{i} (box)", branin, x0=x0, bounds=box)

    # 3) Branin with the cut x1 + x2 <= 4
    run_solve("Branin + x1+x2<=4", branin, x0=np.array([3.0, 0.0]), bounds=box,
              linear_constraints=(np.array([[1.0, 1.0]]), np.array([4.0])))
