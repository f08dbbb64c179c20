"""Trust region subproblems: shared state, base class, and Levenberg-Marquardt
methods."""

from __future__ import annotations

import abc
import dataclasses
from typing import TYPE_CHECKING, Any, ClassVar

import jax
import jax_dataclasses as jdc
from jax import numpy as jnp

from . import _fdf
from ._fdf import LeastSquaresFunction
from ._linear_solvers import LinearSolver

if TYPE_CHECKING:
    from ._parameters import Parameters


@dataclasses.dataclass
class TrustView:
    """Read access to the driver state for subproblem methods.

    The driver owns this object. Subproblems may only write `solver_state`,
    through `presolve()` and `solve()`, and `avratio`.
    """

    x: jax.Array
    f: jax.Array
    """Weighted residual at `x`."""
    g: jax.Array
    """Gradient `J^T f` at `x`."""
    JTJ: jax.Array
    diag: jax.Array
    """Scaling vector D."""
    sqrt_weights: jax.Array | None
    mu: float
    """Levenberg-Marquardt damping parameter."""
    params: Parameters
    solver: LinearSolver
    solver_state: Any
    fdf: LeastSquaresFunction
    avratio: float = 0.0
    """|a| / |v| of the last geodesic acceleration step."""

    def presolve(self, mu: float) -> None:
        self.solver_state = self.solver.presolve(mu, self, self.solver_state)

    def solve(self, rhs: jax.Array) -> jax.Array | None:
        x, self.solver_state = self.solver.solve(rhs, self, self.solver_state)
        return x


def scaled_norm(diag: jax.Array, v: jax.Array) -> float:
    """Compute `||D v||`."""
    return float(jnp.linalg.norm(diag * v))


def quadratic_preduction(view: TrustView, dx: jax.Array) -> float | None:
    """Predicted relative reduction of the quadratic model,
    `-(2 g^T dx + dx^T J^T J dx) / ||f||^2`."""
    normf = float(jnp.linalg.norm(view.f))
    if normf == 0.0:
        return None
    pred = -(2.0 * jnp.dot(view.g, dx) + jnp.dot(dx, view.JTJ @ dx)) / (normf * normf)
    return float(pred)


class TrustRegionSubproblem(abc.ABC):
    """Computes trial steps and their predicted reductions.

    Methods follow the lifecycle alloc -> init -> (preloop -> step* ->
    preduction*)*. State is threaded explicitly; returned states replace the
    ones passed in.

    States are pytrees that the driver threads through a host-side loop; they
    are not traced by `jax.jit`.
    """

    name: ClassVar[str]
    requires_solver: ClassVar[bool] = True
    """Whether the method solves linear systems with the configured solver."""

    def alloc(self, n: int, p: int) -> Any:
        return None

    def init(self, view: TrustView, state: Any) -> Any:
        return state

    def preloop(self, view: TrustView, state: Any) -> Any:
        """Called once per outer iteration, before the first trial step."""
        return state

    @abc.abstractmethod
    def step(
        self, view: TrustView, delta: float, state: Any
    ) -> tuple[jax.Array | None, Any]:
        """Compute a trial step with `||D dx|| <= delta`. Returns `None` for the
        step if one could not be computed."""

    @abc.abstractmethod
    def preduction(self, view: TrustView, dx: jax.Array, state: Any) -> float | None:
        """Predicted relative reduction in cost for step `dx`."""


class LevenbergMarquardt(TrustRegionSubproblem):
    """Levenberg-Marquardt steps, `(J^T J + mu D^2) dx = -g`.

    The step size is regulated by the damping parameter mu. The trust region
    radius is tracked by the driver but not used here.
    """

    name = "lm"

    def step(
        self, view: TrustView, delta: float, state: Any
    ) -> tuple[jax.Array | None, Any]:
        view.presolve(view.mu)
        v = view.solve(view.g)
        if v is None:
            return None, state
        return -v, state

    def preduction(self, view: TrustView, dx: jax.Array, state: Any) -> float | None:
        return quadratic_preduction(view, dx)


@jdc.pytree_dataclass
class _GeodesicState:
    velocity: jax.Array | None = None
    acceleration: jax.Array | None = None


class LevenbergMarquardtAccel(TrustRegionSubproblem):
    """Levenberg-Marquardt with geodesic acceleration.

    The step is `dx = v + a / 2`, where `v` is the usual Levenberg-Marquardt
    velocity and `a` solves `(J^T J + mu D^2) a = -J^T fvv(x, v)`. The driver
    rejects steps whose ratio |a| / |v| exceeds `Parameters.avmax`.

    For reference, see "Geodesic acceleration and the small-curvature
    approximation for nonlinear least squares", Transtrum & Sethna, 2012.
    """

    name = "lmaccel"

    def alloc(self, n: int, p: int) -> _GeodesicState:
        return _GeodesicState()

    def step(
        self, view: TrustView, delta: float, state: _GeodesicState
    ) -> tuple[jax.Array | None, _GeodesicState]:
        params = view.params
        view.presolve(view.mu)
        v = view.solve(view.g)
        if v is None:
            return None, state
        v = -v

        fvv = _fdf.eval_fvv(
            view.fdf, view.x, v, view.f, view.sqrt_weights, params.h_fvv
        )
        jtfvv = _fdf.eval_jtu(
            view.fdf,
            view.x,
            view.f,
            fvv,
            view.sqrt_weights,
            params.h_df,
            params.fdtype,
        )
        a = view.solve(jtfvv)
        if a is None or not bool(jnp.all(jnp.isfinite(a))):
            a = jnp.zeros_like(v)
        else:
            a = -a

        normv = float(jnp.linalg.norm(v))
        view.avratio = float(jnp.linalg.norm(a)) / normv if normv > 0.0 else 0.0

        return v + 0.5 * a, _GeodesicState(velocity=v, acceleration=a)

    def preduction(
        self, view: TrustView, dx: jax.Array, state: _GeodesicState
    ) -> float | None:
        # The quadratic model only describes the velocity.
        velocity = state.velocity if state.velocity is not None else dx
        return quadratic_preduction(view, velocity)


def make_trs(trs: str | TrustRegionSubproblem) -> TrustRegionSubproblem:
    if isinstance(trs, TrustRegionSubproblem):
        return trs

    from ._trs_cgst import SteihaugToint
    from ._trs_dogleg import DoubleDogleg, Dogleg
    from ._trs_subspace2d import Subspace2D

    if trs == "lm":
        return LevenbergMarquardt()
    elif trs == "lmaccel":
        return LevenbergMarquardtAccel()
    elif trs == "dogleg":
        return Dogleg()
    elif trs == "ddogleg":
        return DoubleDogleg()
    elif trs == "subspace2d":
        return Subspace2D()
    elif trs == "cgst":
        return SteihaugToint()
    raise ValueError(f"Unknown trust region subproblem {trs!r}.")
