"""End-to-end tests for `LeastSquaresSolver`."""

import jax
import jax.numpy as jnp
import numpy as onp
import pytest

import jaxnlls

T = jnp.linspace(0.0, 3.0, 40)
X_TRUE = onp.array([5.0, 1.5, 1.0])


def exponential_residual(x: jax.Array) -> jax.Array:
    A, lambd, b = x[0], x[1], x[2]
    y = X_TRUE[0] * jnp.exp(-X_TRUE[1] * T) + X_TRUE[2]
    return A * jnp.exp(-lambd * T) + b - y


def rosenbrock(x: jax.Array) -> jax.Array:
    return jnp.array([10.0 * (x[1] - x[0] ** 2), 1.0 - x[0]])


LINEAR_A = onp.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
LINEAR_B = onp.array([1.0, 2.0, 0.0])


def linear_residual(x: jax.Array) -> jax.Array:
    return jnp.asarray(LINEAR_A) @ x - jnp.asarray(LINEAR_B)


@pytest.mark.parametrize(
    "trs", ["lm", "lmaccel", "dogleg", "ddogleg", "subspace2d", "cgst"]
)
def test_exponential_fit(trs):
    fdf = jaxnlls.LeastSquaresFunction(f=exponential_residual, n=40, p=3)
    solver = jaxnlls.LeastSquaresSolver(fdf, jaxnlls.Parameters(trs=trs))
    x, summary = solver.solve(
        jnp.array([1.0, 1.0, 0.0]), verbose=False, return_summary=True
    )
    onp.testing.assert_allclose(x, X_TRUE, atol=1e-4)
    assert summary.termination != "max_iterations"
    assert summary.iterations == solver.niter
    assert summary.cost_history.shape == (summary.iterations + 1,)
    # Accepted steps always decrease the cost.
    assert bool(jnp.all(jnp.diff(summary.cost_history) < 0.0))


@pytest.mark.parametrize("solver_name", ["qr", "svd", "conjugate_gradient"])
@pytest.mark.parametrize("scale", ["levenberg", "marquardt", "none"])
def test_linear_solvers_and_scaling(solver_name, scale):
    fdf = jaxnlls.LeastSquaresFunction(f=exponential_residual, n=40, p=3)
    solver = jaxnlls.LeastSquaresSolver(
        fdf, jaxnlls.Parameters(solver=solver_name, scale=scale)
    )
    x = solver.solve(jnp.array([1.0, 1.0, 0.0]), verbose=False)
    onp.testing.assert_allclose(x, X_TRUE, atol=1e-4)


@pytest.mark.parametrize("jacobian", ["finite_difference", "callable"])
def test_jacobian_sources(jacobian):
    def dense_jacobian(x: jax.Array) -> jax.Array:
        return jax.jacfwd(exponential_residual)(x)

    fdf = jaxnlls.LeastSquaresFunction(
        f=exponential_residual,
        n=40,
        p=3,
        jacobian=dense_jacobian if jacobian == "callable" else jacobian,
    )
    solver = jaxnlls.LeastSquaresSolver(fdf)
    x = solver.solve(jnp.array([1.0, 1.0, 0.0]), verbose=False)
    onp.testing.assert_allclose(x, X_TRUE, atol=1e-4)


def test_rosenbrock_dogleg():
    fdf = jaxnlls.LeastSquaresFunction(f=rosenbrock, n=2, p=2)
    solver = jaxnlls.LeastSquaresSolver(fdf, jaxnlls.Parameters(trs="dogleg"))
    solver.init(jnp.array([-1.2, 1.0]))
    for _ in range(30):
        solver.iterate()
        if float(jnp.linalg.norm(solver.f)) < 1e-8:
            break
    assert float(jnp.linalg.norm(solver.f)) < 1e-8
    onp.testing.assert_allclose(solver.x, [1.0, 1.0], atol=1e-6)


def test_weights_applied_once():
    def f(x: jax.Array) -> jax.Array:
        return jnp.array([x[0] - 1.0, x[1] - 2.0, x[0] * x[1] - 1.5])

    def f_scaled(x: jax.Array) -> jax.Array:
        return 2.0 * f(x)

    termination = jaxnlls.TerminationConfig(max_iterations=20)
    x0 = jnp.array([0.5, 0.5])
    x_weighted = jaxnlls.LeastSquaresSolver(
        jaxnlls.LeastSquaresFunction(f=f, n=3, p=2)
    ).solve(
        x0, weights=jnp.array([4.0, 4.0, 4.0]), termination=termination, verbose=False
    )
    x_scaled = jaxnlls.LeastSquaresSolver(
        jaxnlls.LeastSquaresFunction(f=f_scaled, n=3, p=2)
    ).solve(
        x0, weights=jnp.array([1.0, 1.0, 1.0]), termination=termination, verbose=False
    )
    onp.testing.assert_allclose(x_weighted, x_scaled, atol=1e-12)


def test_covariance_and_rcond():
    fdf = jaxnlls.LeastSquaresFunction(f=linear_residual, n=3, p=2)
    solver = jaxnlls.LeastSquaresSolver(fdf, jaxnlls.Parameters(solver="svd"))
    x = solver.solve(jnp.zeros(2), verbose=False)

    onp.testing.assert_allclose(
        x, onp.linalg.lstsq(LINEAR_A, LINEAR_B, rcond=None)[0], atol=1e-5
    )
    onp.testing.assert_allclose(
        solver.covariance(), onp.linalg.inv(LINEAR_A.T @ LINEAR_A), atol=1e-10
    )
    assert solver.rcond() == pytest.approx(1.0 / onp.linalg.cond(LINEAR_A), rel=1e-10)


def test_convergence_tests():
    fdf = jaxnlls.LeastSquaresFunction(f=linear_residual, n=3, p=2)
    solver = jaxnlls.LeastSquaresSolver(fdf)
    solver.init(jnp.zeros(2))
    solver.iterate()

    assert solver.test(jaxnlls.TerminationConfig(xtol=0.0, gtol=0.0)) is None
    assert (
        solver.test(jaxnlls.TerminationConfig(xtol=0.0, gtol=0.0, ftol=1e10))
        == "ftol"
    )
    assert solver.test(jaxnlls.TerminationConfig(xtol=1e10, gtol=0.0)) == "xtol"
    assert solver.test(jaxnlls.TerminationConfig(xtol=0.0, gtol=1e10)) == "gtol"


def test_max_iterations_and_callback():
    fdf = jaxnlls.LeastSquaresFunction(f=exponential_residual, n=40, p=3)
    solver = jaxnlls.LeastSquaresSolver(fdf)
    seen = []
    _, summary = solver.solve(
        jnp.array([1.0, 1.0, 0.0]),
        termination=jaxnlls.TerminationConfig(max_iterations=2, xtol=0.0, gtol=0.0),
        callback=lambda i, s: seen.append((i, s.cost)),
        verbose=False,
        return_summary=True,
    )
    assert summary.termination == "max_iterations"
    assert summary.iterations == 2
    assert [i for i, _ in seen] == [0, 1]
    assert summary.mu_history.shape == (3,)
    assert summary.delta_history.shape == (3,)
    assert summary.nevalf >= 3
    assert summary.nevaldf == 3


def test_cgst_without_linear_solver():
    fdf = jaxnlls.LeastSquaresFunction(f=rosenbrock, n=2, p=2)
    solver = jaxnlls.LeastSquaresSolver(
        fdf, jaxnlls.Parameters(trs="cgst", solver="none")
    )
    assert solver.trs_name == "cgst"
    assert solver.name == "trust-region"
    solver.init(jnp.array([-1.2, 1.0]))
    for _ in range(50):
        solver.iterate()
        if float(jnp.linalg.norm(solver.f)) < 1e-8:
            break
    onp.testing.assert_allclose(solver.x, [1.0, 1.0], atol=1e-6)


def test_invalid_weights():
    solver = jaxnlls.LeastSquaresSolver(
        jaxnlls.LeastSquaresFunction(f=linear_residual, n=3, p=2)
    )
    with pytest.raises(jaxnlls.DomainError):
        solver.init(jnp.zeros(2), weights=jnp.array([1.0, -1.0, 1.0]))
    with pytest.raises(jaxnlls.DomainError):
        solver.init(jnp.zeros(2), weights=jnp.array([1.0, 1.0]))


def test_user_callback_error_propagates():
    calls = []

    def f(x: jax.Array) -> jax.Array:
        calls.append(x)
        # Initial residual and two finite difference columns succeed.
        if len(calls) > 3:
            raise jaxnlls.UserCallbackError("residual unavailable")
        return linear_residual(x)

    solver = jaxnlls.LeastSquaresSolver(
        jaxnlls.LeastSquaresFunction(f=f, n=3, p=2, jacobian="finite_difference")
    )
    with pytest.raises(jaxnlls.UserCallbackError):
        solver.solve(jnp.zeros(2), verbose=False)
    onp.testing.assert_array_equal(solver.x, jnp.zeros(2))


def test_no_progress_at_exact_solution():
    """A zero residual leaves nothing to reduce."""
    solver = jaxnlls.LeastSquaresSolver(
        jaxnlls.LeastSquaresFunction(f=rosenbrock, n=2, p=2)
    )
    solver.init(jnp.array([1.0, 1.0]))
    with pytest.raises(jaxnlls.NoProgressError):
        solver.iterate()
    assert solver.test() == "gtol"


def test_failed_init_keeps_counters():
    solver = jaxnlls.LeastSquaresSolver(
        jaxnlls.LeastSquaresFunction(f=linear_residual, n=3, p=2)
    )
    _, summary = solver.solve(jnp.zeros(2), verbose=False, return_summary=True)
    x = solver.x
    assert summary.nevalf > 0

    with pytest.raises(jaxnlls.DomainError):
        solver.init(jnp.zeros(3))
    assert solver.fdf.nevalf == summary.nevalf
    assert solver.fdf.nevaldf == summary.nevaldf
    onp.testing.assert_array_equal(solver.x, x)
