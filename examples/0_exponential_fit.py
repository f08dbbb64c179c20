"""Fit `y = A exp(-lambda t) + b` to noisy samples.

For a summary of options:

    python 0_exponential_fit.py --help

"""

from typing import Literal

import jax
import jaxnlls
import numpy as onp
import tyro
from jax import numpy as jnp


def main(
    trs: Literal["lm", "lmaccel", "dogleg", "ddogleg", "subspace2d", "cgst"] = "lm",
    scale: Literal["levenberg", "marquardt", "none"] = "levenberg",
    solver: Literal["cholesky", "qr", "svd", "conjugate_gradient"] = "cholesky",
    num_samples: int = 100,
    noise_std: float = 0.1,
    seed: int = 0,
    log_level: Literal["DEBUG", "INFO", "WARNING"] = "INFO",
) -> None:
    jaxnlls.utils.set_log_level(log_level)

    # Generate data.
    rng = onp.random.default_rng(seed)
    t = onp.linspace(0.0, 3.0, num_samples)
    y = 5.0 * onp.exp(-1.5 * t) + 1.0 + noise_std * rng.standard_normal(num_samples)
    weights = onp.full(num_samples, 1.0 / noise_std**2)

    t_jax = jnp.asarray(t)
    y_jax = jnp.asarray(y)

    def residual(x: jax.Array) -> jax.Array:
        A, lambd, b = x
        return A * jnp.exp(-lambd * t_jax) + b - y_jax

    fdf = jaxnlls.LeastSquaresFunction(f=residual, n=num_samples, p=3)
    lsq = jaxnlls.LeastSquaresSolver(
        fdf, jaxnlls.Parameters(trs=trs, scale=scale, solver=solver)
    )

    with jaxnlls.utils.stopwatch("Running solve"):
        x, summary = lsq.solve(
            jnp.array([1.0, 1.0, 0.0]),
            weights=jnp.asarray(weights),
            termination=jaxnlls.TerminationConfig(xtol=1e-8, ftol=1e-10),
            return_summary=True,
        )

    covariance = lsq.covariance()
    chi2 = 2.0 * float(summary.cost_history[-1])
    dof = num_samples - 3
    print(f"Terminated after {summary.iterations} iterations ({summary.termination})")
    print(f"Evaluations: f={summary.nevalf} df={summary.nevaldf}")
    print(f"chisq/dof = {chi2 / dof:.4f}, rcond(J) = {lsq.rcond():.3e}")
    for name, value, var in zip(("A", "lambda", "b"), x, jnp.diag(covariance)):
        print(f"{name:>7} = {float(value):.5f} +/- {float(jnp.sqrt(var)):.5f}")


if __name__ == "__main__":
    tyro.cli(main)
