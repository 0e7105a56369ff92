from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

import numpy as np

from .blocks.constraints import ConstraintAdapter
from .dfo_aux import (
    DFOConfig,
    EvaluationFailure,
    ExitStatus,
    IllConditionedModel,
    InfeasibleSubproblem,
    InitializationFailure,
    IterationEvent,
    Objective,
    Point,
    evaluate,
    moderate_values,
)
from .dfo_geometry import GeometryManager, far_points
from .dfo_model import InterpolationModel

_RHO_RTOL = 1e-8  # steps within this relative margin of rho count as rho-sized


class Phase(Enum):
    INIT = "init"
    COMPUTE_STEP = "compute_step"
    EVALUATE = "evaluate"
    DECIDE = "decide"
    UPDATE_MODEL = "update_model"
    GEOMETRY_FIX = "geometry_fix"
    ADJUST_RADIUS = "adjust_radius"
    TERMINATE = "terminate"


# ======================================
# Run state
# ======================================
@dataclass
class TRState:
    delta: float
    rho: float
    delta_max: float
    rho_end: float


@dataclass
class StepState:
    """Scratch data of the current iteration."""

    d: Optional[np.ndarray] = None
    step_norm: float = 0.0
    short: bool = False
    point: Optional[Point] = None
    pred: float = 0.0
    ratio: float = -np.inf
    successful: bool = False
    improved: bool = False
    replace: Optional[int] = None
    geometry_target: Optional[int] = None
    geometry_done: bool = False
    model_changed: bool = False


@dataclass
class RunState:
    max_evaluations: int
    nfev: int = 0
    nit: int = 0
    status: Optional[ExitStatus] = None
    best: Optional[Point] = None
    events: List[IterationEvent] = field(default_factory=list)
    history: Optional[Deque[Point]] = None
    start_time: float = field(default_factory=time.perf_counter)
    geometry_failures: int = 0
    geometry_blocked: bool = False
    failed_evaluations: int = 0


@dataclass
class RunContext:
    """Everything one optimization run owns; nothing is shared between runs."""

    fun: Objective
    x0: np.ndarray
    cfg: DFOConfig
    model: InterpolationModel
    geometry: GeometryManager
    adapter: ConstraintAdapter
    tr: TRState
    run: RunState
    step: StepState = field(default_factory=StepState)
    callback: Optional[Callable[[np.ndarray, float], Optional[bool]]] = None

    @classmethod
    def create(
        cls,
        fun: Objective,
        x0: np.ndarray,
        cfg: DFOConfig,
        adapter: ConstraintAdapter,
        callback=None,
    ) -> "RunContext":
        n = x0.size
        history = deque(maxlen=cfg.history_size) if cfg.history_size > 0 else None
        return cls(
            fun=fun,
            x0=np.asarray(x0, dtype=np.float64),
            cfg=cfg,
            model=InterpolationModel(n, cfg),
            geometry=GeometryManager(cfg),
            adapter=adapter,
            tr=TRState(cfg.initial_radius, cfg.initial_radius, cfg.max_radius, cfg.final_radius),
            run=RunState(max_evaluations=int(cfg.max_evaluations), history=history),
            callback=callback,
        )


# ======================================
# Controller
# ======================================
class IterationController:
    """
    Trust-region state machine

        INIT → COMPUTE_STEP → EVALUATE → DECIDE → {UPDATE_MODEL | GEOMETRY_FIX}
             → ADJUST_RADIUS → COMPUTE_STEP | TERMINATE

    Each handler takes the ``RunContext`` and returns the next phase. A status
    set on ``ctx.run`` ends the loop before the next phase runs.
    """

    def __init__(self):
        self._handlers: Dict[Phase, Callable[[RunContext], Phase]] = {
            Phase.INIT: self._init,
            Phase.COMPUTE_STEP: self._compute_step,
            Phase.EVALUATE: self._evaluate_step,
            Phase.DECIDE: self._decide,
            Phase.UPDATE_MODEL: self._update_model,
            Phase.GEOMETRY_FIX: self._geometry_fix,
            Phase.ADJUST_RADIUS: self._adjust_radius,
        }

    def run(self, ctx: RunContext) -> RunContext:
        phase = Phase.INIT
        while phase is not Phase.TERMINATE:
            if ctx.run.status is not None:
                break
            phase = self._handlers[phase](ctx)
        logging.debug(f"run finished: {ctx.run.status.value}, nfev={ctx.run.nfev}, f={self._best_f(ctx):.6e}")
        return ctx

    # ---------------- helpers ----------------
    @staticmethod
    def _best_f(ctx: RunContext) -> float:
        return ctx.run.best.f if ctx.run.best is not None else np.nan

    def _call(self, ctx: RunContext, x: np.ndarray) -> Optional[Point]:
        """Evaluate the objective once; ``None`` when the budget is spent."""
        run = ctx.run
        if run.nfev >= run.max_evaluations:
            run.status = ExitStatus.BUDGET_EXHAUSTED
            return None
        run.nfev += 1
        try:
            p = evaluate(ctx.fun, x)
        except EvaluationFailure as exc:
            p = exc.point
            run.failed_evaluations += 1
            logging.warning(f"evaluation {run.nfev} failed: f={p.f}")
        if run.history is not None:
            run.history.append(p)
        if p.valid and (run.best is None or p.f < run.best.f):
            run.best = p
            if p.f <= ctx.cfg.ftarget:
                run.status = ExitStatus.TARGET_REACHED
        return p

    def _record(self, ctx: RunContext, kind: str, step_norm: float, ratio: float, f: float) -> None:
        ev = IterationEvent(
            iteration=ctx.run.nit,
            kind=kind,
            step_norm=float(step_norm),
            ratio=float(ratio),
            delta=ctx.tr.delta,
            rho=ctx.tr.rho,
            f=float(f),
            nfev=ctx.run.nfev,
        )
        if ctx.cfg.record_events:
            ctx.run.events.append(ev)
        if ctx.cfg.verbose:
            logging.info(
                f"it={ev.iteration:4d} {kind:<11s} nfev={ev.nfev:5d} f={ev.f: .6e} "
                f"|d|={ev.step_norm:.2e} ratio={ev.ratio: .2e} delta={ev.delta:.2e} rho={ev.rho:.2e}"
            )

    def _clamp_delta(self, ctx: RunContext) -> None:
        tr = ctx.tr
        tr.delta = min(tr.delta, tr.delta_max)
        if tr.delta <= 1.5 * tr.rho:
            tr.delta = tr.rho

    # ---------------- phases ----------------
    def _init(self, ctx: RunContext) -> Phase:
        model, run = ctx.model, ctx.run
        points = model.initialize(ctx.x0, ctx.adapter, ctx.cfg.initial_radius)
        values = []
        for x in points:
            p = self._call(ctx, x)
            if p is None:
                return Phase.TERMINATE
            values.append(p.f)
            if run.status is not None:
                return Phase.TERMINATE
        fvals = moderate_values(values)
        try:
            model.build(fvals)
        except IllConditionedModel as exc:
            raise InitializationFailure(f"initial interpolation set is not poised: {exc}") from exc
        ctx.tr.delta = ctx.tr.rho = ctx.cfg.initial_radius
        logging.debug(f"initial model: npt={model.npt}, fopt={model.fopt:.6e}")
        return Phase.COMPUTE_STEP

    def _checkpoint(self, ctx: RunContext) -> bool:
        run, cfg = ctx.run, ctx.cfg
        if ctx.callback is not None and run.best is not None:
            if ctx.callback(run.best.x.copy(), run.best.f):
                run.status = ExitStatus.CALLBACK_TERMINATE
                return True
        if cfg.max_time is not None and time.perf_counter() - run.start_time >= cfg.max_time:
            run.status = ExitStatus.TIME_LIMIT
            return True
        if run.nfev >= run.max_evaluations:
            run.status = ExitStatus.BUDGET_EXHAUSTED
            return True
        return False

    def _compute_step(self, ctx: RunContext) -> Phase:
        if self._checkpoint(ctx):
            return Phase.TERMINATE
        model, tr, cfg = ctx.model, ctx.tr, ctx.cfg
        ctx.run.nit += 1
        ctx.step = StepState()

        if float(model.yopt @ model.yopt) > cfg.base_shift_factor * tr.delta**2:
            try:
                model.shift_base()
            except IllConditionedModel as exc:
                logging.warning(f"base shift skipped: {exc}")

        g = model.model_gradient()
        try:
            d, status, info = ctx.adapter.solve_subproblem(g, model.hessian_operator(), model.xopt, tr.delta, cfg)
        except InfeasibleSubproblem as exc:
            logging.warning(f"subproblem infeasible at x_opt: {exc}")
            d, status, info = np.zeros(model.n), None, {}
        step = ctx.step
        step.d = d
        step.step_norm = float(np.linalg.norm(d))
        logging.debug(
            f"it={ctx.run.nit}: step |d|={step.step_norm:.3e} delta={tr.delta:.3e} "
            f"status={status.value if status is not None else 'infeasible'}"
        )
        if step.step_norm < cfg.short_step_factor * tr.rho:
            step.short = True
            return Phase.DECIDE
        return Phase.EVALUATE

    def _evaluate_step(self, ctx: RunContext) -> Phase:
        model, step = ctx.model, ctx.step
        xopt = model.xopt
        x_new = xopt + step.d
        if not ctx.adapter.unconstrained:
            x_new = ctx.adapter.project(x_new, base=xopt)
            step.d = x_new - xopt
            step.step_norm = float(np.linalg.norm(step.d))
        step.pred = model.predicted_reduction(step.d)
        p = self._call(ctx, x_new)
        if p is None:
            return Phase.TERMINATE
        step.point = p
        return Phase.DECIDE

    def _decide(self, ctx: RunContext) -> Phase:
        model, tr, cfg, step = ctx.model, ctx.tr, ctx.cfg, ctx.step
        if step.short:
            tr.delta = cfg.short_step_shrink * tr.delta
            self._clamp_delta(ctx)
            self._record(ctx, "short", step.step_norm, np.nan, self._best_f(ctx))
            return Phase.ADJUST_RADIUS

        p = step.point
        if not p.valid:
            step.ratio = -np.inf
            tr.delta = min(cfg.gamma_dec * tr.delta, step.step_norm)
            self._clamp_delta(ctx)
            self._record(ctx, "invalid", step.step_norm, step.ratio, p.f)
            return Phase.ADJUST_RADIUS

        fopt = model.fopt
        step.improved = p.f < fopt
        if step.pred > cfg.pred_tol * max(1.0, abs(fopt)):
            step.ratio = (fopt - p.f) / step.pred
        else:
            step.ratio = -np.inf
        step.successful = step.ratio >= cfg.eta1

        if step.ratio < cfg.eta1:
            tr.delta = min(cfg.gamma_dec * tr.delta, step.step_norm)
        elif step.ratio >= cfg.eta2 and step.step_norm >= cfg.boundary_frac * tr.delta:
            tr.delta = min(cfg.gamma_inc * tr.delta, tr.delta_max)
        self._clamp_delta(ctx)
        if step.successful:
            ctx.run.geometry_blocked = False
            ctx.run.geometry_failures = 0
        self._record(ctx, "accepted" if step.successful else "rejected", step.step_norm, step.ratio, p.f)

        step.replace = ctx.geometry.select_point_to_replace(model, p.x, tr.delta, tr.rho, step.improved)
        if step.replace is not None:
            return Phase.UPDATE_MODEL
        if step.improved:
            logging.warning("improving point could not be added to the model; fixing geometry")
            return Phase.GEOMETRY_FIX
        return Phase.ADJUST_RADIUS

    def _update_model(self, ctx: RunContext) -> Phase:
        p, t = ctx.step.point, ctx.step.replace
        try:
            ctx.model.update(p.x, p.f, t)
        except IllConditionedModel as exc:
            logging.warning(f"model update refused: {exc}")
            return Phase.GEOMETRY_FIX
        ctx.step.model_changed = True
        return Phase.ADJUST_RADIUS

    def _geometry_fix(self, ctx: RunContext) -> Phase:
        model, tr, run, step = ctx.model, ctx.tr, ctx.run, ctx.step
        step.geometry_done = True
        radius = max(0.1 * tr.delta, tr.rho)
        t, d = ctx.geometry.choose_geometry_point(model, radius, ctx.adapter, step.geometry_target)
        dnorm = float(np.linalg.norm(d))
        if dnorm == 0.0:
            run.geometry_failures += 1
            run.geometry_blocked = True
            return Phase.ADJUST_RADIUS

        xopt = model.xopt
        x_new = xopt + d
        if not ctx.adapter.unconstrained:
            x_new = ctx.adapter.project(x_new, base=xopt)
        p = self._call(ctx, x_new)
        if p is None:
            return Phase.TERMINATE
        if not p.valid:
            run.geometry_failures += 1
            run.geometry_blocked = True
            self._record(ctx, "invalid", dnorm, np.nan, p.f)
            return Phase.ADJUST_RADIUS
        try:
            model.update(p.x, p.f, t)
        except IllConditionedModel as exc:
            logging.warning(f"geometry update refused: {exc}")
            run.geometry_failures += 1
            run.geometry_blocked = True
        else:
            run.geometry_failures = 0
            step.model_changed = True
        self._record(ctx, "geometry", dnorm, np.nan, p.f)
        return Phase.ADJUST_RADIUS

    def _adjust_radius(self, ctx: RunContext) -> Phase:
        model, tr, cfg, run, step = ctx.model, ctx.tr, ctx.cfg, ctx.run, ctx.step
        if step.successful and not step.model_changed:
            # the same step would come back from the unchanged model
            tr.delta = max(cfg.gamma_dec * tr.delta, tr.rho)
            step.successful = False
        if step.model_changed and (step.successful or step.geometry_done):
            return Phase.COMPUTE_STEP

        far = far_points(model, cfg.far_factor * tr.delta)
        if far.size and not run.geometry_blocked:
            step.geometry_target = int(far[0])
            return Phase.GEOMETRY_FIX
        if max(tr.delta, step.step_norm) > (1.0 + _RHO_RTOL) * tr.rho:
            return Phase.COMPUTE_STEP

        if tr.rho <= tr.rho_end:
            if run.geometry_failures >= cfg.max_geometry_failures:
                run.status = ExitStatus.DAMAGING_ROUNDING
            else:
                run.status = ExitStatus.RADIUS_FLOOR_REACHED
            return Phase.TERMINATE

        rho_old = tr.rho
        ratio = rho_old / tr.rho_end
        if ratio <= 16.0:
            tr.rho = tr.rho_end
        elif ratio <= 250.0:
            tr.rho = float(np.sqrt(rho_old * tr.rho_end))
        else:
            tr.rho = 0.1 * rho_old
        tr.delta = max(0.5 * rho_old, tr.rho)
        run.geometry_blocked = False
        try:
            model.shift_base()
        except IllConditionedModel as exc:
            logging.warning(f"base shift after rho reduction skipped: {exc}")
        self._record(ctx, "rho_reduced", 0.0, np.nan, self._best_f(ctx))
        return Phase.COMPUTE_STEP
