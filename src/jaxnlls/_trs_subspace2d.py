"""Two-dimensional subspace minimization.

For reference, see "Approximate solution of the trust region problem by
minimization over two-dimensional subspaces", Byrd, Schnabel & Schultz, 1988.
"""

from __future__ import annotations

import jax
from jax import numpy as jnp
from loguru import logger

from ._trs import TrustView
from ._trs_dogleg import Dogleg, DoglegState


def _boundary_multiplier(
    eigvals: jax.Array, c: jax.Array, delta: float
) -> float | None:
    """Solve `sum_i c_i^2 / (e_i + lam)^2 = delta^2` for the largest real
    `lam > -min(e)`, by clearing denominators into a quartic."""
    e1, e2 = float(eigvals[0]), float(eigvals[1])
    c1, c2 = float(c[0]), float(c[1])

    p1 = jnp.array([1.0, e1])
    p2 = jnp.array([1.0, e2])
    p1_sq = jnp.polymul(p1, p1)
    p2_sq = jnp.polymul(p2, p2)
    quartic = (delta * delta) * jnp.polymul(p1_sq, p2_sq)
    quartic = quartic - jnp.pad(c1 * c1 * p2_sq + c2 * c2 * p1_sq, (2, 0))

    roots = jnp.roots(quartic)
    lower = -min(e1, e2)
    best = None
    for root in roots.tolist():
        lam = root.real
        if abs(root.imag) > 1e-10 * max(1.0, abs(lam)):
            continue
        if lam > lower and (best is None or lam > best):
            best = lam
    return best


class Subspace2D(Dogleg):
    """Minimizes the scaled quadratic model over span{D dx_gn, D^-1 g},
    falling back to the dogleg step when the subspace is degenerate."""

    name = "subspace2d"

    def step(
        self, view: TrustView, delta: float, state: DoglegState
    ) -> tuple[jax.Array | None, DoglegState]:
        state = self._gauss_newton(view, state)
        if state.dx_gn is None or state.norm_Dgn is None or view.x.shape[0] < 2:
            return self._dogleg_step(view, delta, state), state

        if state.norm_Dgn <= delta:
            return state.dx_gn, state

        diag = view.diag
        g_scaled = view.g / diag
        basis, r = jnp.linalg.qr(jnp.stack([diag * state.dx_gn, g_scaled], axis=1))
        if abs(float(r[1, 1])) <= 1e-12 * abs(float(r[0, 0])):
            logger.debug("Degenerate 2D subspace, using the dogleg step.")
            return self._dogleg_step(view, delta, state), state

        # Reduced model in the orthonormal basis.
        B_scaled = view.JTJ / diag[:, None] / diag[None, :]
        g_sub = basis.T @ g_scaled
        B_sub = basis.T @ B_scaled @ basis
        eigvals, eigvecs = jnp.linalg.eigh(B_sub)
        c = eigvecs.T @ g_sub

        lam = _boundary_multiplier(eigvals, c, delta)
        if lam is None:
            logger.debug("No boundary solution in 2D subspace, using the dogleg step.")
            return self._dogleg_step(view, delta, state), state

        z = -eigvecs @ (c / (eigvals + lam))
        # Project onto the boundary to absorb root-finding error.
        z = z * (delta / jnp.linalg.norm(z))
        return (basis @ z) / diag, state
