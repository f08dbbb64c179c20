"""Trust region driver: one call to `iterate()` finds and commits one
acceptable step."""

from __future__ import annotations

from typing import Any

import jax
from jax import numpy as jnp
from loguru import logger

from . import _fdf
from ._damping import NielsenDamping, nielsen_accept, nielsen_init, nielsen_reject
from ._errors import BadFunctionError, DomainError, NoProgressError
from ._fdf import LeastSquaresFunction
from ._linear_solvers import LinearSolver, make_linear_solver
from ._parameters import Parameters
from ._scaling import ScalingPolicy, make_scaling
from ._trs import TrustRegionSubproblem, TrustView, make_trs, scaled_norm


def update_radius(
    rho: float, delta: float, factor_up: float = 2.0, factor_down: float = 3.0
) -> float:
    """Enlarge the radius when the quadratic model predicted the reduction
    well, shrink it when it did not. Applied to accepted steps as well."""
    if rho > 0.75:
        return delta * factor_up
    elif rho < 0.25:
        return delta / factor_down
    return delta


def step_accepted(
    rho: float, avratio: float, *, lmaccel: bool, avmax: float = 0.75
) -> bool:
    """Whether a trial step with gain ratio `rho` is accepted."""
    if lmaccel and avratio > avmax:
        return False
    return rho > 0.0


def calc_rho(
    f: jax.Array,
    f_trial: jax.Array,
    dx: jax.Array,
    view: TrustView,
    trs: TrustRegionSubproblem,
    trs_state: Any,
) -> float:
    """Ratio of actual to predicted reduction. Returns -1 when the cost did not
    decrease or the prediction is unusable."""
    normf = float(jnp.linalg.norm(f))
    normf_trial = float(jnp.linalg.norm(f_trial))
    if not jnp.isfinite(normf_trial) or normf_trial >= normf:
        return -1.0

    u = normf_trial / normf
    actual_reduction = 1.0 - u * u

    pred_reduction = trs.preduction(view, dx, trs_state)
    if pred_reduction is None or not pred_reduction > 0.0:
        return -1.0
    return actual_reduction / pred_reduction


class TrustRegionDriver:
    """Owns the iterate state `(x, f, g, J^T J, D, delta, mu, nu, avratio,
    bad_steps)` and the states of its strategies.

    Args:
        params: Driver parameters.
        n: Number of residuals.
        p: Number of parameters.
    """

    def __init__(self, params: Parameters, n: int, p: int) -> None:
        if p < 1 or n < p:
            raise DomainError(
                f"Need 1 <= p <= n, got n={n} residuals and p={p} parameters."
            )
        self.params = params
        self.n = n
        self.p = p

        self.trs: TrustRegionSubproblem = make_trs(params.trs)
        self.scale: ScalingPolicy = make_scaling(params.scale)
        self.solver: LinearSolver = make_linear_solver(
            params.solver, params.conjugate_gradient
        )
        if self.trs.requires_solver and self.solver.name == "none":
            raise DomainError(
                f"Trust region method {self.trs.name!r} requires a linear solver."
            )

        self.trs_state = self.trs.alloc(n, p)
        self.solver_state = self.solver.alloc(n, p)

        self._view: TrustView | None = None
        self.delta = 0.0
        self.damping = NielsenDamping(mu=0.0, nu=2)
        self.bad_steps = 0
        self.dx: jax.Array | None = None

    @property
    def is_lmaccel(self) -> bool:
        return self.trs.name == "lmaccel"

    @property
    def view(self) -> TrustView:
        assert self._view is not None, "init() must be called first!"
        return self._view

    @property
    def x(self) -> jax.Array:
        return self.view.x

    @property
    def f(self) -> jax.Array:
        return self.view.f

    @property
    def g(self) -> jax.Array:
        return self.view.g

    @property
    def JTJ(self) -> jax.Array:
        return self.view.JTJ

    @property
    def diag(self) -> jax.Array:
        return self.view.diag

    @property
    def mu(self) -> float:
        return self.damping.mu

    @property
    def nu(self) -> int:
        return self.damping.nu

    @property
    def avratio(self) -> float:
        return self.view.avratio

    def init(
        self,
        fdf: LeastSquaresFunction,
        x0: jax.Array,
        sqrt_weights: jax.Array | None = None,
    ) -> None:
        """Evaluate the problem at `x0` and reset the iterate state. Nothing is
        modified if evaluation fails."""
        params = self.params
        x = jnp.asarray(x0, dtype=jnp.float64)
        if x.shape != (self.p,):
            raise DomainError(f"Expected x0 with shape ({self.p},), got {x.shape}.")
        if fdf.n != self.n or fdf.p != self.p:
            raise DomainError(
                f"Function has (n, p) = ({fdf.n}, {fdf.p}), driver expects ({self.n}, {self.p})."
            )

        f = _fdf.eval_f(fdf, x, sqrt_weights)
        if not bool(jnp.all(jnp.isfinite(f))):
            raise BadFunctionError("Residual is not finite at the initial point.")
        g, JTJ = _fdf.eval_df(fdf, x, f, sqrt_weights, params.h_df, params.fdtype)
        if not (bool(jnp.all(jnp.isfinite(g))) and bool(jnp.all(jnp.isfinite(JTJ)))):
            raise BadFunctionError("Jacobian is not finite at the initial point.")

        diag = self.scale.init(JTJ)
        damping = nielsen_init(JTJ, diag, params.mu_init_factor)

        view = TrustView(
            x=x,
            f=f,
            g=g,
            JTJ=JTJ,
            diag=diag,
            sqrt_weights=sqrt_weights,
            mu=damping.mu,
            params=params,
            solver=self.solver,
            solver_state=self.solver_state,
            fdf=fdf,
        )
        view.solver_state = self.solver.init(view, view.solver_state)
        trs_state = self.trs.init(view, self.trs_state)
        view.avratio = 0.0

        self._view = view
        self.trs_state = trs_state
        self.delta = 0.3 * max(1.0, scaled_norm(diag, x))
        self.damping = damping
        self.bad_steps = 0
        self.dx = None
        logger.debug(
            "Initialized {} with delta={:.3e} mu={:.3e}",
            self.trs.name,
            self.delta,
            self.damping.mu,
        )

    def iterate(self) -> jax.Array:
        """Take one accepted step, returning it. Raises `NoProgressError` after
        too many consecutive rejections; errors from user callbacks propagate
        unchanged."""
        view = self.view
        params = self.params
        trs = self.trs
        fdf = view.fdf

        self.bad_steps = 0
        self.trs_state = trs.preloop(view, self.trs_state)

        while True:
            dx, self.trs_state = trs.step(view, self.delta, self.trs_state)

            x_trial = None
            f_trial = None
            if dx is None:
                logger.debug("No step found for delta={:.3e}", self.delta)
                rho = -1.0
                accepted = False
            else:
                x_trial = view.x + dx
                f_trial = _fdf.eval_f(fdf, x_trial, view.sqrt_weights)
                rho = calc_rho(view.f, f_trial, dx, view, trs, self.trs_state)
                accepted = step_accepted(
                    rho, view.avratio, lmaccel=self.is_lmaccel, avmax=params.avmax
                )

            if not accepted and self.bad_steps + 1 > params.max_bad_steps:
                self.bad_steps += 1
                logger.warning(
                    "No progress after {} consecutive rejected steps.", self.bad_steps
                )
                raise NoProgressError(
                    f"Failed to find an acceptable step after {self.bad_steps} attempts."
                )

            self.delta = update_radius(
                rho, self.delta, params.factor_up, params.factor_down
            )

            if accepted:
                assert dx is not None and x_trial is not None and f_trial is not None
                g, JTJ = _fdf.eval_df(
                    fdf, x_trial, f_trial, view.sqrt_weights, params.h_df, params.fdtype
                )
                view.x = x_trial
                view.f = f_trial
                view.g = g
                view.JTJ = JTJ
                view.diag = self.scale.update(JTJ, view.diag)
                self.damping = nielsen_accept(self.damping, rho)
                view.mu = self.damping.mu
                self.bad_steps = 0
                self.dx = dx
                return dx

            self.damping = nielsen_reject(self.damping)
            view.mu = self.damping.mu
            self.bad_steps += 1
            logger.debug(
                "Rejected step: rho={:.3e} avratio={:.3e} delta={:.3e} mu={:.3e}",
                rho,
                view.avratio,
                self.delta,
                self.damping.mu,
            )

    def rcond(self) -> float:
        """Reciprocal condition number estimate of J at the current point."""
        return self.solver.rcond(self.view.JTJ, self.view.solver_state)
