from __future__ import annotations

from typing import Callable, Literal, overload

import jax
import jax_dataclasses as jdc
from jax import numpy as jnp
from loguru import logger

from ._errors import DomainError, status_from_exception
from ._fdf import LeastSquaresFunction
from ._parameters import Parameters, TerminationConfig
from ._trust import TrustRegionDriver

TerminationReason = Literal["xtol", "gtol", "ftol", "max_iterations"]


@jdc.pytree_dataclass
class SolveSummary:
    iterations: jdc.Static[int]
    termination: jdc.Static[TerminationReason]
    cost_history: jax.Array
    """Cost `0.5 |f|^2` at the initial point and after each iteration."""
    mu_history: jax.Array
    delta_history: jax.Array
    nevalf: jdc.Static[int]
    nevaldf: jdc.Static[int]


class LeastSquaresSolver:
    """Trust region solver for `min_x 0.5 |sqrt(W) f(x)|^2`.

    Example:

        fdf = LeastSquaresFunction(f=residual, n=40, p=3)
        solver = LeastSquaresSolver(fdf, Parameters(trs="lmaccel"))
        x = solver.solve(x0)
    """

    def __init__(
        self, fdf: LeastSquaresFunction, params: Parameters = Parameters()
    ) -> None:
        self.fdf = fdf
        self.params = params
        self.driver = TrustRegionDriver(params, fdf.n, fdf.p)
        self.niter = 0
        self._normf_prev: float | None = None

    @property
    def name(self) -> str:
        return "trust-region"

    @property
    def trs_name(self) -> str:
        return self.driver.trs.name

    @property
    def x(self) -> jax.Array:
        return self.driver.x

    @property
    def f(self) -> jax.Array:
        return self.driver.f

    @property
    def g(self) -> jax.Array:
        return self.driver.g

    @property
    def JTJ(self) -> jax.Array:
        return self.driver.JTJ

    @property
    def dx(self) -> jax.Array | None:
        return self.driver.dx

    @property
    def delta(self) -> float:
        return self.driver.delta

    @property
    def mu(self) -> float:
        return self.driver.mu

    @property
    def avratio(self) -> float:
        return self.driver.avratio

    @property
    def cost(self) -> float:
        f = self.driver.f
        return 0.5 * float(jnp.dot(f, f))

    def init(self, x0: jax.Array, weights: jax.Array | None = None) -> None:
        """Start a new solve from `x0`, with optional data weights."""
        sqrt_weights = None
        if weights is not None:
            weights = jnp.asarray(weights, dtype=jnp.float64)
            if weights.shape != (self.fdf.n,):
                raise DomainError(
                    f"Expected weights with shape ({self.fdf.n},), got {weights.shape}."
                )
            if not bool(jnp.all(jnp.isfinite(weights) & (weights >= 0.0))):
                raise DomainError("Weights must be finite and non-negative.")
            sqrt_weights = jnp.sqrt(weights)

        counters = (self.fdf.nevalf, self.fdf.nevaldf, self.fdf.nevalfvv)
        self.fdf.reset_counters()
        try:
            self.driver.init(self.fdf, x0, sqrt_weights)
        except Exception:
            self.fdf.nevalf, self.fdf.nevaldf, self.fdf.nevalfvv = counters
            raise
        self.niter = 0
        self._normf_prev = None

    def iterate(self) -> jax.Array:
        """Take one accepted step."""
        self._normf_prev = float(jnp.linalg.norm(self.driver.f))
        dx = self.driver.iterate()
        self.niter += 1
        return dx

    def test(
        self, termination: TerminationConfig = TerminationConfig()
    ) -> TerminationReason | None:
        """Check convergence of the last step. Returns the name of the
        satisfied criterion, or `None`."""
        x = self.driver.x
        dx = self.driver.dx
        if dx is not None:
            xtol = termination.xtol
            if bool(jnp.all(jnp.abs(dx) <= xtol * (jnp.abs(x) + xtol))):
                return "xtol"

        f = self.driver.f
        normf = float(jnp.linalg.norm(f))
        gnorm = float(jnp.max(jnp.abs(self.driver.g) * jnp.maximum(jnp.abs(x), 1.0)))
        if gnorm <= termination.gtol * max(0.5 * normf * normf, 1.0):
            return "gtol"

        if termination.ftol > 0.0 and self._normf_prev is not None:
            if self._normf_prev - normf <= termination.ftol * max(normf, 1.0):
                return "ftol"
        return None

    @overload
    def solve(
        self,
        x0: jax.Array,
        weights: jax.Array | None = None,
        *,
        termination: TerminationConfig = TerminationConfig(),
        callback: Callable[[int, LeastSquaresSolver], None] | None = None,
        verbose: bool = True,
        return_summary: Literal[False] = False,
    ) -> jax.Array: ...

    @overload
    def solve(
        self,
        x0: jax.Array,
        weights: jax.Array | None = None,
        *,
        termination: TerminationConfig = TerminationConfig(),
        callback: Callable[[int, LeastSquaresSolver], None] | None = None,
        verbose: bool = True,
        return_summary: Literal[True],
    ) -> tuple[jax.Array, SolveSummary]: ...

    def solve(
        self,
        x0: jax.Array,
        weights: jax.Array | None = None,
        *,
        termination: TerminationConfig = TerminationConfig(),
        callback: Callable[[int, LeastSquaresSolver], None] | None = None,
        verbose: bool = True,
        return_summary: bool = False,
    ) -> jax.Array | tuple[jax.Array, SolveSummary]:
        """Iterate until a convergence test passes or `max_iterations` steps
        have been accepted.

        Args:
            x0: Initial parameters, shape (p,).
            weights: Optional non-negative data weights, shape (n,).
            termination: Convergence tolerances and iteration limit.
            callback: Called as `callback(iteration, solver)` after each step.
            verbose: Log progress at info level.
            return_summary: Also return a `SolveSummary`.
        """
        try:
            self.init(x0, weights)
            costs = [self.cost]
            mus = [self.mu]
            deltas = [self.delta]
            if verbose:
                logger.info(
                    "Solving with {}/{}: cost={:.6e}",
                    self.name,
                    self.trs_name,
                    costs[0],
                )

            reason: TerminationReason = "max_iterations"
            for i in range(termination.max_iterations):
                self.iterate()
                costs.append(self.cost)
                mus.append(self.mu)
                deltas.append(self.delta)
                if verbose:
                    logger.info(
                        " step #{}: cost={:.6e} |dx|={:.3e} delta={:.3e} mu={:.3e}",
                        i,
                        costs[-1],
                        float(jnp.linalg.norm(self.driver.dx)),
                        self.delta,
                        self.mu,
                    )
                if callback is not None:
                    callback(i, self)

                criterion = self.test(termination)
                if criterion is not None:
                    reason = criterion
                    break
        except Exception as e:
            logger.error(
                "Solve failed with status {}: {}", status_from_exception(e).name, e
            )
            raise

        if verbose:
            logger.info(
                "Terminated @ iteration #{}: cost={:.6e} criterion={}",
                self.niter,
                self.cost,
                reason,
            )

        if not return_summary:
            return self.x
        return self.x, SolveSummary(
            iterations=self.niter,
            termination=reason,
            cost_history=jnp.array(costs),
            mu_history=jnp.array(mus),
            delta_history=jnp.array(deltas),
            nevalf=self.fdf.nevalf,
            nevaldf=self.fdf.nevaldf,
        )

    def rcond(self) -> float:
        """Reciprocal condition number estimate of J at the current point."""
        return self.driver.rcond()

    def covariance(self) -> jax.Array:
        """Covariance of the parameters, `(J^T J)^{-1}`, at the current point."""
        return self.driver.solver.covariance(
            self.driver.JTJ, self.driver.view.solver_state
        )
