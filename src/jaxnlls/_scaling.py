"""Diagonal scaling policies for the trust region constraint `||D dx|| <= delta`."""

from __future__ import annotations

import abc
from typing import ClassVar

import jax
from jax import numpy as jnp


@jax.jit
def _sqrt_diagonal(JTJ: jax.Array) -> jax.Array:
    """Column norms of J, with zero columns mapped to 1 to keep D positive."""
    d = jnp.sqrt(jnp.diag(JTJ))
    return jnp.where(d == 0.0, 1.0, d)


class ScalingPolicy(abc.ABC):
    """Maintains the scaling vector D from the diagonal of J^T J."""

    name: ClassVar[str]

    @abc.abstractmethod
    def init(self, JTJ: jax.Array) -> jax.Array:
        """Compute the initial scaling vector."""

    @abc.abstractmethod
    def update(self, JTJ: jax.Array, diag: jax.Array) -> jax.Array:
        """Compute the scaling vector after an accepted step."""


class LevenbergScaling(ScalingPolicy):
    """D_i = max over all iterations of sqrt((J^T J)_ii). Monotone, and the
    usual choice for robustness."""

    name = "levenberg"

    def init(self, JTJ: jax.Array) -> jax.Array:
        return _sqrt_diagonal(JTJ)

    def update(self, JTJ: jax.Array, diag: jax.Array) -> jax.Array:
        return jnp.maximum(diag, _sqrt_diagonal(JTJ))


class MarquardtScaling(ScalingPolicy):
    """D_i = sqrt((J^T J)_ii) at the current point. Invariant to rescaling of
    the parameters, but can be unstable."""

    name = "marquardt"

    def init(self, JTJ: jax.Array) -> jax.Array:
        return _sqrt_diagonal(JTJ)

    def update(self, JTJ: jax.Array, diag: jax.Array) -> jax.Array:
        return _sqrt_diagonal(JTJ)


class NoScaling(ScalingPolicy):
    name = "none"

    def init(self, JTJ: jax.Array) -> jax.Array:
        return jnp.ones(JTJ.shape[0], dtype=JTJ.dtype)

    def update(self, JTJ: jax.Array, diag: jax.Array) -> jax.Array:
        return diag


def make_scaling(scale: str | ScalingPolicy) -> ScalingPolicy:
    if isinstance(scale, ScalingPolicy):
        return scale
    if scale == "levenberg":
        return LevenbergScaling()
    elif scale == "marquardt":
        return MarquardtScaling()
    elif scale == "none":
        return NoScaling()
    raise ValueError(f"Unknown scaling policy {scale!r}.")
