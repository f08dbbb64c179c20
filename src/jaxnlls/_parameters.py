from __future__ import annotations

import dataclasses
from typing import Literal

import jax_dataclasses as jdc
from jax import numpy as jnp

from ._linear_solvers import ConjugateGradientConfig, LinearSolver
from ._scaling import ScalingPolicy
from ._trs import TrustRegionSubproblem

TrsName = Literal["lm", "lmaccel", "dogleg", "ddogleg", "subspace2d", "cgst"]
ScaleName = Literal["levenberg", "marquardt", "none"]
SolverName = Literal["cholesky", "qr", "svd", "conjugate_gradient", "none"]
FdType = Literal["forward", "centered"]

_DBL_EPSILON = float(jnp.finfo(jnp.float64).eps)


@jdc.pytree_dataclass
class Parameters:
    """Tunable parameters of the trust-region driver."""

    trs: jdc.Static[TrsName | TrustRegionSubproblem] = "lm"
    """Trust-region subproblem method, or a custom subproblem instance."""
    scale: jdc.Static[ScaleName | ScalingPolicy] = "levenberg"
    """Diagonal scaling policy for the trust region."""
    solver: jdc.Static[SolverName | LinearSolver] = "cholesky"
    """Linear solver for the damped normal equations."""
    fdtype: jdc.Static[FdType] = "forward"
    """Finite difference scheme, used when the Jacobian is approximated."""

    factor_up: float = 2.0
    """Factor for enlarging the trust region radius."""
    factor_down: float = 3.0
    """Factor for shrinking the trust region radius."""
    avmax: float = 0.75
    """Maximum allowed |a| / |v| for geodesic acceleration steps."""
    h_df: float = _DBL_EPSILON**0.5
    """Step size for finite difference Jacobians."""
    h_fvv: float = 0.02
    """Step size for finite difference second directional derivatives."""
    mu_init_factor: float = 1e-3
    """Initial damping is this factor times max_i (J^T J)_ii / D_i^2."""

    max_bad_steps: jdc.Static[int] = 15
    """Consecutive rejected steps tolerated before giving up."""
    max_cg_iterations: jdc.Static[int | None] = None
    """Iteration cap for the Steihaug-Toint subproblem. Defaults to p."""
    cg_tol: float = 1e-6
    """Relative residual tolerance for the Steihaug-Toint subproblem."""
    conjugate_gradient: ConjugateGradientConfig = dataclasses.field(
        default_factory=ConjugateGradientConfig
    )
    """Settings for `solver="conjugate_gradient"`."""


@jdc.pytree_dataclass
class TerminationConfig:
    max_iterations: jdc.Static[int] = 100
    """Maximum number of accepted steps."""
    xtol: float = 1e-8
    """We terminate if `|dx_i| <= xtol * (|x_i| + xtol)` for every i."""
    gtol: float = _DBL_EPSILON ** (1.0 / 3.0)
    """We terminate if `max_i |g_i| max(|x_i|, 1) <= gtol * max(0.5 |f|^2, 1)`."""
    ftol: float = 0.0
    """We terminate if `|f_prev| - |f| <= ftol * max(|f|, 1)`. Zero disables."""
