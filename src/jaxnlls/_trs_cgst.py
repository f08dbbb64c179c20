"""Steihaug-Toint truncated conjugate gradient.

For reference, see "The conjugate gradient method and trust regions in
large scale optimization", Steihaug, 1983.
"""

from __future__ import annotations

from typing import Any

import jax
from jax import numpy as jnp
from loguru import logger

from ._trs import TrustRegionSubproblem, TrustView, quadratic_preduction
from ._trs_dogleg import boundary_intersection


class SteihaugToint(TrustRegionSubproblem):
    """Runs conjugate gradient on the scaled model `g~ = D^-1 g`,
    `B~ = D^-1 J^T J D^-1`, stopping at negative curvature or at the trust
    region boundary. Never factorizes, so the linear solver is unused."""

    name = "cgst"
    requires_solver = False

    def step(
        self, view: TrustView, delta: float, state: Any
    ) -> tuple[jax.Array | None, Any]:
        diag = view.diag
        p = diag.shape[0]
        max_iterations = view.params.max_cg_iterations
        if max_iterations is None:
            max_iterations = p

        def B_scaled(v: jax.Array) -> jax.Array:
            return (view.JTJ @ (v / diag)) / diag

        z = jnp.zeros(p)
        r = view.g / diag
        d = -r
        rr = float(jnp.dot(r, r))
        tol = view.params.cg_tol * rr**0.5
        if rr**0.5 <= tol:
            return z, state

        for _ in range(max_iterations):
            Bd = B_scaled(d)
            dBd = float(jnp.dot(d, Bd))
            if dBd <= 0.0:
                tau = boundary_intersection(z, d, delta)
                return (z + tau * d) / diag, state

            alpha = rr / dBd
            z_next = z + alpha * d
            if float(jnp.linalg.norm(z_next)) >= delta:
                tau = boundary_intersection(z, d, delta)
                return (z + tau * d) / diag, state

            z = z_next
            r = r + alpha * Bd
            rr_next = float(jnp.dot(r, r))
            if rr_next**0.5 < tol:
                return z / diag, state
            d = -r + (rr_next / rr) * d
            rr = rr_next

        logger.debug("Steihaug-Toint exceeded {} iterations.", max_iterations)
        return None, state

    def preduction(self, view: TrustView, dx: jax.Array, state: Any) -> float | None:
        return quadratic_preduction(view, dx)
