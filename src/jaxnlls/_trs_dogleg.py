"""Dogleg trust region methods.

For reference, see "Numerical Optimization", Nocedal & Wright, 2006,
section 4.1, and "Two new unconstrained optimization algorithms which use
function and gradient values", Dennis & Mei, 1979.
"""

from __future__ import annotations

import math

import jax
import jax_dataclasses as jdc
from jax import numpy as jnp

from ._trs import TrustRegionSubproblem, TrustView, quadratic_preduction, scaled_norm


@jdc.pytree_dataclass
class DoglegState:
    dx_sd: jax.Array
    """Steepest descent step to the Cauchy point."""
    norm_Dsd: float
    norm_Dinvg: float
    norm_JDinv2g: float
    """||J D^-2 g||."""
    dx_gn: jax.Array | None = None
    """Gauss-Newton step. Computed on the first trial step of an iteration."""
    norm_Dgn: float | None = None


def boundary_intersection(a: jax.Array, b: jax.Array, delta: float) -> float:
    """Find `beta >= 0` with `||a + beta b|| = delta`, given `||a|| <= delta`."""
    aa = float(jnp.dot(a, a))
    ab = float(jnp.dot(a, b))
    bb = float(jnp.dot(b, b))
    if bb == 0.0:
        return 0.0
    c = aa - delta * delta
    disc = math.sqrt(max(ab * ab - bb * c, 0.0))
    # Pick the form that avoids cancellation.
    if ab <= 0.0:
        return (disc - ab) / bb
    return -c / (ab + disc)


class Dogleg(TrustRegionSubproblem):
    """Powell's dogleg, on the path from the Cauchy point to the Gauss-Newton
    point, in variables scaled by D."""

    name = "dogleg"

    def preloop(self, view: TrustView, state: object) -> DoglegState:
        diag = view.diag
        u = view.g / (diag * diag)
        norm_Dinvg = float(jnp.linalg.norm(view.g / diag))
        norm_JDinv2g = math.sqrt(max(float(jnp.dot(u, view.JTJ @ u)), 0.0))

        if norm_JDinv2g > 0.0:
            alpha = (norm_Dinvg / norm_JDinv2g) ** 2
            dx_sd = -alpha * u
        else:
            dx_sd = jnp.zeros_like(u)
        return DoglegState(
            dx_sd=dx_sd,
            norm_Dsd=scaled_norm(diag, dx_sd),
            norm_Dinvg=norm_Dinvg,
            norm_JDinv2g=norm_JDinv2g,
        )

    def _gauss_newton(self, view: TrustView, state: DoglegState) -> DoglegState:
        if state.dx_gn is not None:
            return state
        view.presolve(0.0)
        v = view.solve(view.g)
        if v is None:
            return state
        with jdc.copy_and_mutate(state, validate=False) as state:
            state.dx_gn = -v
            state.norm_Dgn = scaled_norm(view.diag, -v)
        return state

    def _gauss_newton_factor(self, view: TrustView, state: DoglegState) -> float:
        """Fraction of the Gauss-Newton step used as the end of the path."""
        return 1.0

    def step(
        self, view: TrustView, delta: float, state: DoglegState
    ) -> tuple[jax.Array | None, DoglegState]:
        state = self._gauss_newton(view, state)
        return self._dogleg_step(view, delta, state), state

    def _dogleg_step(
        self, view: TrustView, delta: float, state: DoglegState
    ) -> jax.Array | None:
        if state.dx_gn is None or state.norm_Dgn is None:
            # No Gauss-Newton point; move along steepest descent only.
            if state.norm_Dsd == 0.0:
                return None
            return (min(1.0, delta / state.norm_Dsd)) * state.dx_sd

        if state.norm_Dgn <= delta:
            return state.dx_gn

        t = self._gauss_newton_factor(view, state)
        if t * state.norm_Dgn <= delta:
            return (delta / state.norm_Dgn) * state.dx_gn

        if state.norm_Dsd >= delta:
            return (delta / state.norm_Dsd) * state.dx_sd

        end = t * state.dx_gn
        beta = boundary_intersection(
            view.diag * state.dx_sd, view.diag * (end - state.dx_sd), delta
        )
        return state.dx_sd + beta * (end - state.dx_sd)

    def preduction(
        self, view: TrustView, dx: jax.Array, state: DoglegState
    ) -> float | None:
        return quadratic_preduction(view, dx)


class DoubleDogleg(Dogleg):
    """Dogleg variant that bends toward the Gauss-Newton direction earlier,
    ending the path at a shortened point `t dx_gn`."""

    name = "ddogleg"

    def _gauss_newton_factor(self, view: TrustView, state: DoglegState) -> float:
        assert state.dx_gn is not None
        gTgn = -float(jnp.dot(view.g, state.dx_gn))
        denominator = state.norm_JDinv2g**2 * gTgn
        if denominator <= 0.0:
            return 1.0
        gamma = state.norm_Dinvg**4 / denominator
        return 1.0 - 0.8 * (1.0 - gamma)
