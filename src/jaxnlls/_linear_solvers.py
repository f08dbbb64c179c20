"""Linear solvers for the damped normal equations `(J^T J + mu D^2) x = b`."""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Any, ClassVar, Literal, cast

import jax
import jax.scipy.linalg
import jax.scipy.sparse.linalg
import jax_dataclasses as jdc
import numpy as onp
import scipy.linalg.lapack
from jax import numpy as jnp

from ._errors import DomainError

if TYPE_CHECKING:
    from ._trs import TrustView


@jax.jit
def _damped_normal_matrix(JTJ: jax.Array, diag: jax.Array, mu: float) -> jax.Array:
    return JTJ + jnp.diag(mu * diag * diag)


@jax.jit
def _symmetric_pinv(A: jax.Array) -> jax.Array:
    """Pseudo-inverse of a symmetric positive semi-definite matrix."""
    eigvals, eigvecs = jnp.linalg.eigh(A)
    cutoff = jnp.max(jnp.abs(eigvals)) * A.shape[0] * jnp.finfo(A.dtype).eps
    inv_eigvals = jnp.where(eigvals > cutoff, 1.0 / eigvals, 0.0)
    return (eigvecs * inv_eigvals[None, :]) @ eigvecs.T


def _all_finite(x: jax.Array) -> bool:
    return bool(jnp.all(jnp.isfinite(x)))


class LinearSolver(abc.ABC):
    """Solves `(J^T J + mu D^2) x = b` for the trust-region subproblems.

    Solvers never raise on numerical failure. A failed factorization is
    reported by `solve()` returning `None` for the solution.

    States are pytrees, so they can be inspected or moved between devices with
    `jax.tree_util`. The driver loop itself runs on the host and never traces
    them.
    """

    name: ClassVar[str]

    def alloc(self, n: int, p: int) -> Any:
        """Create the solver state for a problem with n residuals and p parameters."""
        return None

    def init(self, view: TrustView, state: Any) -> Any:
        return state

    @abc.abstractmethod
    def presolve(self, mu: float, view: TrustView, state: Any) -> Any:
        """Prepare for solves with `J^T J + mu D^2`, typically by factorizing."""

    @abc.abstractmethod
    def solve(
        self, rhs: jax.Array, view: TrustView, state: Any
    ) -> tuple[jax.Array | None, Any]:
        """Solve the system prepared by the last `presolve()` call."""

    def rcond(self, JTJ: jax.Array, state: Any) -> float:
        """Estimate the reciprocal condition number of J."""
        eigvals = jnp.linalg.eigvalsh(JTJ)
        if not eigvals[-1] > 0.0:
            return 0.0
        return float(jnp.sqrt(jnp.maximum(eigvals[0], 0.0) / eigvals[-1]))

    def covariance(self, JTJ: jax.Array, state: Any) -> jax.Array:
        """Compute `(J^T J)^{-1}`."""
        return _symmetric_pinv(JTJ)


@jdc.pytree_dataclass
class _CholeskyState:
    factor: jax.Array | None = None
    """Upper Cholesky factor of the last presolved matrix."""


class CholeskySolver(LinearSolver):
    name = "cholesky"

    def alloc(self, n: int, p: int) -> _CholeskyState:
        return _CholeskyState()

    def presolve(self, mu: float, view: TrustView, state: Any) -> _CholeskyState:
        A = _damped_normal_matrix(view.JTJ, view.diag, mu)
        factor, _ = jax.scipy.linalg.cho_factor(A, lower=False)
        return _CholeskyState(factor=factor)

    def solve(
        self, rhs: jax.Array, view: TrustView, state: _CholeskyState
    ) -> tuple[jax.Array | None, _CholeskyState]:
        assert state.factor is not None, "presolve() must be called before solve()!"
        # Factorization failures show up as NaNs.
        if not _all_finite(state.factor):
            return None, state
        x = jax.scipy.linalg.cho_solve((state.factor, False), rhs)
        return (x if _all_finite(x) else None), state

    def rcond(self, JTJ: jax.Array, state: Any) -> float:
        factor, _ = jax.scipy.linalg.cho_factor(JTJ, lower=False)
        if not (_all_finite(factor) and bool(jnp.all(jnp.diag(factor) > 0.0))):
            return 0.0
        anorm = float(jnp.max(jnp.sum(jnp.abs(JTJ), axis=0)))
        rcond_JTJ, info = scipy.linalg.lapack.dpocon(onp.asarray(factor), anorm)
        assert info == 0
        return float(onp.sqrt(rcond_JTJ))

    def covariance(self, JTJ: jax.Array, state: Any) -> jax.Array:
        factor, _ = jax.scipy.linalg.cho_factor(JTJ, lower=False)
        if not _all_finite(factor):
            return super().covariance(JTJ, state)
        return jax.scipy.linalg.cho_solve(
            (factor, False), jnp.eye(JTJ.shape[0], dtype=JTJ.dtype)
        )


@jdc.pytree_dataclass
class _QRState:
    q: jax.Array | None = None
    r: jax.Array | None = None


class QRSolver(LinearSolver):
    name = "qr"

    def alloc(self, n: int, p: int) -> _QRState:
        return _QRState()

    def presolve(self, mu: float, view: TrustView, state: Any) -> _QRState:
        q, r = jnp.linalg.qr(_damped_normal_matrix(view.JTJ, view.diag, mu))
        return _QRState(q=q, r=r)

    def solve(
        self, rhs: jax.Array, view: TrustView, state: _QRState
    ) -> tuple[jax.Array | None, _QRState]:
        assert state.q is not None and state.r is not None
        if not bool(jnp.all(jnp.diag(state.r) != 0.0)):
            return None, state
        x = jax.scipy.linalg.solve_triangular(state.r, state.q.T @ rhs, lower=False)
        return (x if _all_finite(x) else None), state

    def rcond(self, JTJ: jax.Array, state: Any) -> float:
        _, r = jnp.linalg.qr(JTJ)
        if not bool(jnp.all(jnp.diag(r) != 0.0)):
            return 0.0
        rcond_r, info = scipy.linalg.lapack.dtrcon(onp.asarray(r), norm="1", uplo="U")
        assert info == 0
        return float(onp.sqrt(rcond_r))


@jdc.pytree_dataclass
class _SVDState:
    u: jax.Array | None = None
    s: jax.Array | None = None
    vt: jax.Array | None = None


class SVDSolver(LinearSolver):
    """Truncated SVD solve. Singular values below `p * eps * s_max` are dropped,
    which makes this the most robust choice for rank-deficient problems."""

    name = "svd"

    def alloc(self, n: int, p: int) -> _SVDState:
        return _SVDState()

    def presolve(self, mu: float, view: TrustView, state: Any) -> _SVDState:
        u, s, vt = jnp.linalg.svd(_damped_normal_matrix(view.JTJ, view.diag, mu))
        return _SVDState(u=u, s=s, vt=vt)

    def solve(
        self, rhs: jax.Array, view: TrustView, state: _SVDState
    ) -> tuple[jax.Array | None, _SVDState]:
        assert state.u is not None and state.s is not None and state.vt is not None
        s = state.s
        if not (_all_finite(s) and s[0] > 0.0):
            return None, state
        cutoff = s[0] * s.shape[0] * jnp.finfo(s.dtype).eps
        inv_s = jnp.where(s > cutoff, 1.0 / s, 0.0)
        x = state.vt.T @ (inv_s * (state.u.T @ rhs))
        return (x if _all_finite(x) else None), state

    def rcond(self, JTJ: jax.Array, state: Any) -> float:
        s = jnp.linalg.svd(JTJ, compute_uv=False)
        if not s[0] > 0.0:
            return 0.0
        return float(jnp.sqrt(s[-1] / s[0]))


@jdc.pytree_dataclass
class _ConjugateGradientState:
    """State used for Eisenstat-Walker criterion in ConjugateGradientSolver."""

    ATb_norm_prev: float | jax.Array
    """Previous norm of ATb."""
    eta: float | jax.Array
    """Current tolerance."""
    matrix: jax.Array | None = None
    """Matrix from the last presolve() call."""


@jdc.pytree_dataclass
class ConjugateGradientConfig:
    """Iterative solver for the normal equations. Can run on CPU or GPU.

    For inexact steps, we use the Eisenstat-Walker criterion. For reference,
    see "Choosing the Forcing Terms in an Inexact Newton Method", Eisenstat &
    Walker, 1996."
    """

    tolerance_min: float | jax.Array = 1e-7
    tolerance_max: float | jax.Array = 1e-2

    eisenstat_walker_gamma: float | jax.Array = 0.9
    """Eisenstat-Walker criterion gamma term. Controls how quickly the tolerance
    decreases. Typical values range from 0.5 to 0.9. Higher values lead to more
    aggressive tolerance reduction."""
    eisenstat_walker_alpha: float | jax.Array = 2.0
    """ Eisenstat-Walker criterion alpha term. Determines rate at which the
    tolerance changes based on residual reduction. Typical values are 1.5 or
    2.0. Higher values make the tolerance more sensitive to residual changes."""

    preconditioner: jdc.Static[Literal["point_jacobi"] | None] = "point_jacobi"
    """Preconditioner to use for linear solves."""

    def _solve(
        self,
        A: jax.Array,
        ATb: jax.Array,
        prev_linear_state: _ConjugateGradientState,
    ) -> tuple[jax.Array, _ConjugateGradientState]:
        assert len(ATb.shape) == 1, "ATb should be 1D!"

        # Preconditioning setup.
        if self.preconditioner == "point_jacobi":
            A_diagonals = jnp.diag(A)
            preconditioner = lambda x: x / A_diagonals
        elif self.preconditioner is None:
            preconditioner = lambda x: x
        else:
            raise ValueError(f"Unknown preconditioner {self.preconditioner!r}.")

        # Calculate tolerance using Eisenstat-Walker criterion.
        ATb_norm = jnp.linalg.norm(ATb)
        current_eta = jnp.minimum(
            self.eisenstat_walker_gamma
            * (ATb_norm / (prev_linear_state.ATb_norm_prev + 1e-7))
            ** self.eisenstat_walker_alpha,
            self.tolerance_max,
        )
        current_eta = jnp.maximum(
            self.tolerance_min, jnp.minimum(current_eta, prev_linear_state.eta)
        )

        # Solve with conjugate gradient.
        initial_x = jnp.zeros(ATb.shape)
        solution_values, _ = jax.scipy.sparse.linalg.cg(
            A=lambda vec: A @ vec,
            b=ATb,
            x0=initial_x,
            # https://en.wikipedia.org/wiki/Conjugate_gradient_method#Convergence_properties
            maxiter=len(initial_x),
            tol=cast(float, current_eta),
            M=preconditioner,
        )
        return solution_values, _ConjugateGradientState(
            ATb_norm_prev=ATb_norm, eta=current_eta, matrix=A
        )


class ConjugateGradientSolver(LinearSolver):
    name = "conjugate_gradient"

    def __init__(self, config: ConjugateGradientConfig | None = None) -> None:
        self.config = ConjugateGradientConfig() if config is None else config

    def alloc(self, n: int, p: int) -> _ConjugateGradientState:
        return _ConjugateGradientState(
            ATb_norm_prev=0.0, eta=self.config.tolerance_max
        )

    def init(self, view: TrustView, state: Any) -> _ConjugateGradientState:
        return self.alloc(view.JTJ.shape[0], view.JTJ.shape[0])

    def presolve(
        self, mu: float, view: TrustView, state: _ConjugateGradientState
    ) -> _ConjugateGradientState:
        return _ConjugateGradientState(
            ATb_norm_prev=state.ATb_norm_prev,
            eta=state.eta,
            matrix=_damped_normal_matrix(view.JTJ, view.diag, mu),
        )

    def solve(
        self, rhs: jax.Array, view: TrustView, state: _ConjugateGradientState
    ) -> tuple[jax.Array | None, _ConjugateGradientState]:
        assert state.matrix is not None, "presolve() must be called before solve()!"
        if not bool(jnp.all(jnp.diag(state.matrix) > 0.0)):
            return None, state
        x, next_state = self.config._solve(state.matrix, rhs, state)
        return (x if _all_finite(x) else None), next_state


class NoLinearSolver(LinearSolver):
    """Placeholder for subproblems that never solve linear systems, such as
    the Steihaug-Toint method."""

    name = "none"

    def presolve(self, mu: float, view: TrustView, state: Any) -> Any:
        raise DomainError("This trust region method requires a linear solver.")

    def solve(
        self, rhs: jax.Array, view: TrustView, state: Any
    ) -> tuple[jax.Array | None, Any]:
        raise DomainError("This trust region method requires a linear solver.")


def make_linear_solver(
    solver: str | LinearSolver,
    conjugate_gradient_config: ConjugateGradientConfig | None = None,
) -> LinearSolver:
    if isinstance(solver, LinearSolver):
        return solver
    if solver == "cholesky":
        return CholeskySolver()
    elif solver == "qr":
        return QRSolver()
    elif solver == "svd":
        return SVDSolver()
    elif solver == "conjugate_gradient":
        return ConjugateGradientSolver(conjugate_gradient_config)
    elif solver == "none":
        return NoLinearSolver()
    raise ValueError(f"Unknown linear solver {solver!r}.")
