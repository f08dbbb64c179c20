"""Residual and Jacobian evaluation.

All quantities handed to the rest of the solver are weighted: with data
weights `w`, the residual becomes `sqrt(w) * f` and every Jacobian row is
scaled by the same factor. This is the only place where the transform is
applied.
"""

from __future__ import annotations

import dataclasses
from typing import Callable, Iterable, Iterator, Literal, Union

import jax
from jax import numpy as jnp

from ._errors import DomainError

JacobianBlocks = Iterable[tuple[int, jax.Array]]
"""Row blocks `(row_start, block)` of the Jacobian, with `block.shape[1] == p`."""

JacobianFn = Callable[[jax.Array], Union[jax.Array, JacobianBlocks]]


@dataclasses.dataclass
class LeastSquaresFunction:
    """User callbacks defining the residual vector `f(x)` and its Jacobian.

    The Jacobian can come from three sources:

    - ``"autodiff"`` (default): `f` must be traceable by JAX. Products with J
      and J^T are computed with `jax.jvp` / `jax.vjp`, and J^T J is
      accumulated one column at a time, so J is never stored.
    - ``"finite_difference"``: forward or centered differences, controlled by
      `Parameters.fdtype` and `Parameters.h_df`. Columns of J are formed
      explicitly, so memory grows as n * p. Prefer autodiff or row blocks
      when n is large.
    - A callable `df(x)` returning either a dense `(n, p)` array or an
      iterable of `(row_start, block)` row blocks. J^T f and J^T J are
      accumulated block by block.
    """

    f: Callable[[jax.Array], jax.Array]
    """Residual function, mapping parameters of shape (p,) to residuals (n,)."""
    n: int
    """Number of residuals."""
    p: int
    """Number of parameters."""
    jacobian: Literal["autodiff", "finite_difference"] | JacobianFn = "autodiff"
    fvv: Callable[[jax.Array, jax.Array], jax.Array] | None = None
    """Optional second directional derivative `fvv(x, v)`, used for geodesic
    acceleration. Approximated when not provided."""

    nevalf: int = dataclasses.field(default=0, init=False)
    nevaldf: int = dataclasses.field(default=0, init=False)
    nevalfvv: int = dataclasses.field(default=0, init=False)

    def reset_counters(self) -> None:
        self.nevalf = 0
        self.nevaldf = 0
        self.nevalfvv = 0


def _residual(
    fdf: LeastSquaresFunction, x: jax.Array, sqrt_weights: jax.Array | None
) -> jax.Array:
    """Evaluate the weighted residual. Traceable when `fdf.f` is."""
    out = jnp.asarray(fdf.f(x), dtype=jnp.float64)
    if out.shape != (fdf.n,):
        raise DomainError(
            f"Residual function returned shape {out.shape}, expected ({fdf.n},)."
        )
    if sqrt_weights is not None:
        out = sqrt_weights * out
    return out


def eval_f(
    fdf: LeastSquaresFunction, x: jax.Array, sqrt_weights: jax.Array | None
) -> jax.Array:
    """Compute the weighted residual vector at `x`."""
    fdf.nevalf += 1
    return _residual(fdf, x, sqrt_weights)


def _fd_step(x: jax.Array, j: int, h_df: float) -> float:
    h = h_df * abs(float(x[j]))
    if h == 0.0:
        h = h_df
    return h


def _fd_jacobian_columns(
    fdf: LeastSquaresFunction,
    x: jax.Array,
    f: jax.Array,
    sqrt_weights: jax.Array | None,
    h_df: float,
    fdtype: Literal["forward", "centered"],
) -> Iterator[jax.Array]:
    """Yield finite difference approximations of the weighted Jacobian columns."""
    for j in range(fdf.p):
        h = _fd_step(x, j, h_df)
        if fdtype == "forward":
            f_plus = _residual(fdf, x.at[j].add(h), sqrt_weights)
            yield (f_plus - f) / h
        elif fdtype == "centered":
            f_plus = _residual(fdf, x.at[j].add(0.5 * h), sqrt_weights)
            f_minus = _residual(fdf, x.at[j].add(-0.5 * h), sqrt_weights)
            yield (f_plus - f_minus) / h
        else:
            raise ValueError(f"Unknown finite difference type {fdtype!r}.")


def _row_blocks(
    fdf: LeastSquaresFunction, jac_out: jax.Array | JacobianBlocks
) -> Iterator[tuple[slice, jax.Array]]:
    """Normalize the output of a user Jacobian callback into row blocks."""
    if hasattr(jac_out, "ndim"):
        blocks: JacobianBlocks = [(0, jac_out)]  # type: ignore
    else:
        blocks = jac_out  # type: ignore
    for row_start, block in blocks:
        block = jnp.asarray(block, dtype=jnp.float64)
        if block.ndim != 2 or block.shape[1] != fdf.p:
            raise DomainError(
                f"Jacobian block has shape {block.shape}, expected (rows, {fdf.p})."
            )
        row_end = row_start + block.shape[0]
        if row_start < 0 or row_end > fdf.n:
            raise DomainError(
                f"Jacobian block rows [{row_start}, {row_end}) fall outside [0, {fdf.n})."
            )
        yield slice(row_start, row_end), block


def eval_df(
    fdf: LeastSquaresFunction,
    x: jax.Array,
    f: jax.Array,
    sqrt_weights: jax.Array | None,
    h_df: float,
    fdtype: Literal["forward", "centered"],
) -> tuple[jax.Array, jax.Array]:
    """Compute `g = J^T f` and `J^T J` for the weighted Jacobian at `x`.

    `f` must be the weighted residual at `x`.
    """
    fdf.nevaldf += 1
    p = fdf.p

    if fdf.jacobian == "autodiff":
        residual = lambda y: _residual(fdf, y, sqrt_weights)
        _, vjp_fn = jax.vjp(residual, x)
        (g,) = vjp_fn(f)

        def jtj_column(e: jax.Array) -> jax.Array:
            _, jv = jax.jvp(residual, (x,), (e,))
            (jtjv,) = vjp_fn(jv)
            return jtjv

        # Columns are computed sequentially; only one J @ e_i is live at a time.
        JTJ = jax.lax.map(jtj_column, jnp.eye(p, dtype=x.dtype))
        return g, JTJ

    if fdf.jacobian == "finite_difference":
        J = jnp.stack(
            list(_fd_jacobian_columns(fdf, x, f, sqrt_weights, h_df, fdtype)), axis=1
        )
        return J.T @ f, J.T @ J

    g = jnp.zeros(p)
    JTJ = jnp.zeros((p, p))
    for rows, block in _row_blocks(fdf, fdf.jacobian(x)):
        if sqrt_weights is not None:
            block = sqrt_weights[rows, None] * block
        g = g + block.T @ f[rows]
        JTJ = JTJ + block.T @ block
    return g, JTJ


def eval_jtu(
    fdf: LeastSquaresFunction,
    x: jax.Array,
    f: jax.Array,
    u: jax.Array,
    sqrt_weights: jax.Array | None,
    h_df: float,
    fdtype: Literal["forward", "centered"],
) -> jax.Array:
    """Compute `J^T u` for the weighted Jacobian at `x`."""
    fdf.nevaldf += 1

    if fdf.jacobian == "autodiff":
        _, vjp_fn = jax.vjp(lambda y: _residual(fdf, y, sqrt_weights), x)
        (jtu,) = vjp_fn(u)
        return jtu

    if fdf.jacobian == "finite_difference":
        return jnp.array(
            [
                jnp.dot(column, u)
                for column in _fd_jacobian_columns(
                    fdf, x, f, sqrt_weights, h_df, fdtype
                )
            ]
        )

    jtu = jnp.zeros(fdf.p)
    for rows, block in _row_blocks(fdf, fdf.jacobian(x)):
        u_rows = u[rows] if sqrt_weights is None else sqrt_weights[rows] * u[rows]
        jtu = jtu + block.T @ u_rows
    return jtu


def eval_jv(
    fdf: LeastSquaresFunction,
    x: jax.Array,
    v: jax.Array,
    f: jax.Array,
    sqrt_weights: jax.Array | None,
    h_df: float,
) -> jax.Array:
    """Compute `J v` for the weighted Jacobian at `x`.

    `f` must be the weighted residual at `x`.
    """
    fdf.nevaldf += 1

    if fdf.jacobian == "autodiff":
        _, jv = jax.jvp(lambda y: _residual(fdf, y, sqrt_weights), (x,), (v,))
        return jv

    if fdf.jacobian == "finite_difference":
        normv = float(jnp.linalg.norm(v))
        if normv == 0.0:
            return jnp.zeros(fdf.n)
        h = h_df * max(1.0, float(jnp.linalg.norm(x))) / normv
        return (_residual(fdf, x + h * v, sqrt_weights) - f) / h

    jv = jnp.zeros(fdf.n)
    for rows, block in _row_blocks(fdf, fdf.jacobian(x)):
        jv = jv.at[rows].set(block @ v)
    if sqrt_weights is not None:
        jv = sqrt_weights * jv
    return jv


def eval_fvv(
    fdf: LeastSquaresFunction,
    x: jax.Array,
    v: jax.Array,
    f: jax.Array,
    sqrt_weights: jax.Array | None,
    h_fvv: float,
) -> jax.Array:
    """Compute the weighted second directional derivative of f along `v`.

    `f` must be the weighted residual at `x`.
    """
    fdf.nevalfvv += 1

    if fdf.fvv is not None:
        fvv = jnp.asarray(fdf.fvv(x, v), dtype=jnp.float64)
        if sqrt_weights is not None:
            fvv = sqrt_weights * fvv
        return fvv

    if fdf.jacobian == "autodiff":
        residual = lambda y: _residual(fdf, y, sqrt_weights)
        jv = lambda y: jax.jvp(residual, (y,), (v,))[1]
        _, fvv = jax.jvp(jv, (x,), (v,))
        return fvv

    h = h_fvv
    f_plus = _residual(fdf, x + h * v, sqrt_weights)
    if fdf.jacobian == "finite_difference":
        f_minus = _residual(fdf, x - h * v, sqrt_weights)
        return (f_plus - 2.0 * f + f_minus) / (h * h)

    jv = eval_jv(fdf, x, v, f, sqrt_weights, h)
    return (2.0 / h) * ((f_plus - f) / h - jv)
