"""Tests for residual, Jacobian, and second directional derivative evaluation."""

import jax
import jax.numpy as jnp
import numpy as onp
import pytest

import jaxnlls
from jaxnlls import _fdf


def residual(x: jax.Array) -> jax.Array:
    return jnp.array([x[0] ** 2 - 1.0, x[0] * x[1], jnp.sin(x[1])])


def jacobian(x: jax.Array) -> onp.ndarray:
    x0, x1 = float(x[0]), float(x[1])
    return onp.array([[2.0 * x0, 0.0], [x1, x0], [0.0, onp.cos(x1)]])


X = jnp.array([0.7, -1.3])
SQRT_WEIGHTS = jnp.array([1.0, 2.0, 0.5])


def _reference(sqrt_weights: jax.Array | None):
    J = jacobian(X)
    f = onp.asarray(residual(X))
    if sqrt_weights is not None:
        J = onp.asarray(sqrt_weights)[:, None] * J
        f = onp.asarray(sqrt_weights) * f
    return f, J.T @ f, J.T @ J


@pytest.mark.parametrize("sqrt_weights", [None, SQRT_WEIGHTS])
def test_autodiff_jacobian(sqrt_weights):
    fdf = jaxnlls.LeastSquaresFunction(f=residual, n=3, p=2)
    f = _fdf.eval_f(fdf, X, sqrt_weights)
    g, JTJ = _fdf.eval_df(fdf, X, f, sqrt_weights, 1e-8, "forward")

    f_ref, g_ref, JTJ_ref = _reference(sqrt_weights)
    onp.testing.assert_allclose(f, f_ref, atol=1e-14)
    onp.testing.assert_allclose(g, g_ref, atol=1e-12)
    onp.testing.assert_allclose(JTJ, JTJ_ref, atol=1e-12)
    assert fdf.nevalf == 1
    assert fdf.nevaldf == 1


@pytest.mark.parametrize(
    "fdtype,atol", [("forward", 1e-6), ("centered", 1e-8)]
)
def test_finite_difference_jacobian(fdtype, atol):
    fdf = jaxnlls.LeastSquaresFunction(
        f=residual, n=3, p=2, jacobian="finite_difference"
    )
    f = _fdf.eval_f(fdf, X, SQRT_WEIGHTS)
    h_df = 1e-8 if fdtype == "forward" else 1e-5
    g, JTJ = _fdf.eval_df(fdf, X, f, SQRT_WEIGHTS, h_df, fdtype)

    _, g_ref, JTJ_ref = _reference(SQRT_WEIGHTS)
    onp.testing.assert_allclose(g, g_ref, atol=atol)
    onp.testing.assert_allclose(JTJ, JTJ_ref, atol=atol)


def test_user_jacobian_dense_and_blocks():
    dense = jaxnlls.LeastSquaresFunction(f=residual, n=3, p=2, jacobian=jacobian)
    blocked = jaxnlls.LeastSquaresFunction(
        f=residual,
        n=3,
        p=2,
        jacobian=lambda x: [(0, jacobian(x)[:2]), (2, jacobian(x)[2:])],
    )
    _, g_ref, JTJ_ref = _reference(SQRT_WEIGHTS)
    for fdf in (dense, blocked):
        f = _fdf.eval_f(fdf, X, SQRT_WEIGHTS)
        g, JTJ = _fdf.eval_df(fdf, X, f, SQRT_WEIGHTS, 1e-8, "forward")
        onp.testing.assert_allclose(g, g_ref, atol=1e-12)
        onp.testing.assert_allclose(JTJ, JTJ_ref, atol=1e-12)


def test_jtu():
    u = jnp.array([0.3, -2.0, 1.5])
    J = onp.asarray(SQRT_WEIGHTS)[:, None] * jacobian(X)
    for jac in ("autodiff", jacobian):
        fdf = jaxnlls.LeastSquaresFunction(f=residual, n=3, p=2, jacobian=jac)
        f = _fdf.eval_f(fdf, X, SQRT_WEIGHTS)
        jtu = _fdf.eval_jtu(fdf, X, f, u, SQRT_WEIGHTS, 1e-8, "forward")
        onp.testing.assert_allclose(jtu, J.T @ onp.asarray(u), atol=1e-12)


def test_fvv():
    v = jnp.array([0.5, 2.0])
    fvv_ref = onp.array(
        [2.0 * 0.5**2, 2.0 * 0.5 * 2.0, -onp.sin(float(X[1])) * 2.0**2]
    )

    fdf = jaxnlls.LeastSquaresFunction(f=residual, n=3, p=2)
    f = _fdf.eval_f(fdf, X, None)
    onp.testing.assert_allclose(_fdf.eval_fvv(fdf, X, v, f, None, 0.02), fvv_ref)
    assert fdf.nevalfvv == 1

    # Finite difference approximations.
    for jac in ("finite_difference", jacobian):
        fdf = jaxnlls.LeastSquaresFunction(f=residual, n=3, p=2, jacobian=jac)
        f = _fdf.eval_f(fdf, X, None)
        fvv = _fdf.eval_fvv(fdf, X, v, f, None, 1e-3)
        onp.testing.assert_allclose(fvv, fvv_ref, atol=1e-2)

    # User-provided second derivative gets weighted.
    fdf = jaxnlls.LeastSquaresFunction(
        f=residual, n=3, p=2, fvv=lambda x, v: jnp.asarray(fvv_ref)
    )
    f = _fdf.eval_f(fdf, X, SQRT_WEIGHTS)
    onp.testing.assert_allclose(
        _fdf.eval_fvv(fdf, X, v, f, SQRT_WEIGHTS, 0.02),
        onp.asarray(SQRT_WEIGHTS) * fvv_ref,
    )


def test_bad_shapes():
    fdf = jaxnlls.LeastSquaresFunction(f=residual, n=4, p=2)
    with pytest.raises(jaxnlls.DomainError):
        _fdf.eval_f(fdf, X, None)

    fdf = jaxnlls.LeastSquaresFunction(
        f=residual, n=3, p=2, jacobian=lambda x: [(2, jacobian(x))]
    )
    f = _fdf.eval_f(fdf, X, None)
    with pytest.raises(jaxnlls.DomainError):
        _fdf.eval_df(fdf, X, f, None, 1e-8, "forward")

    fdf = jaxnlls.LeastSquaresFunction(
        f=residual, n=3, p=2, jacobian=lambda x: jacobian(x)[:, :1]
    )
    with pytest.raises(jaxnlls.DomainError):
        _fdf.eval_df(fdf, X, f, None, 1e-8, "forward")


def test_jv():
    v = jnp.array([0.3, -2.0])
    J = onp.asarray(SQRT_WEIGHTS)[:, None] * jacobian(X)
    for jac, atol in (("autodiff", 1e-12), (jacobian, 1e-12), ("finite_difference", 1e-6)):
        fdf = jaxnlls.LeastSquaresFunction(f=residual, n=3, p=2, jacobian=jac)
        f = _fdf.eval_f(fdf, X, SQRT_WEIGHTS)
        jv = _fdf.eval_jv(fdf, X, v, f, SQRT_WEIGHTS, 1e-8)
        onp.testing.assert_allclose(jv, J @ onp.asarray(v), atol=atol)
