"""Nielsen's strategy for updating the Levenberg-Marquardt parameter.

For reference, see "Damping Parameter in Marquardt's Method", H. B. Nielsen,
IMM-REP-1999-05, 1999.
"""

from __future__ import annotations

import jax
import jax_dataclasses as jdc
from jax import numpy as jnp


@jdc.pytree_dataclass
class NielsenDamping:
    mu: float
    """Levenberg-Marquardt damping parameter."""
    nu: jdc.Static[int]
    """Growth factor applied to mu on the next rejection. Always a power of 2."""


def nielsen_init(
    JTJ: jax.Array, diag: jax.Array, mu_init_factor: float = 1e-3
) -> NielsenDamping:
    """mu_0 = tau * max_i (J^T J)_ii / D_i^2, nu_0 = 2."""
    scaled_diagonal = jnp.diag(JTJ) / (diag * diag)
    return NielsenDamping(mu=mu_init_factor * float(jnp.max(scaled_diagonal)), nu=2)


def nielsen_accept(state: NielsenDamping, rho: float) -> NielsenDamping:
    """Decrease mu after an accepted step with gain ratio `rho`."""
    b = 2.0 * rho - 1.0
    b = 1.0 - b * b * b
    return NielsenDamping(mu=state.mu * max(1.0 / 3.0, b), nu=2)


def nielsen_reject(state: NielsenDamping) -> NielsenDamping:
    """Increase mu after a rejected step."""
    return NielsenDamping(mu=state.mu * state.nu, nu=2 * state.nu)
