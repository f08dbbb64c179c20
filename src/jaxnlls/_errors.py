"""Status codes and exceptions raised by the trust-region solver."""

from __future__ import annotations

import enum
from typing import ClassVar


class Status(enum.Enum):
    """Outcome of a solver operation."""

    SUCCESS = "success"
    NO_PROGRESS = "no_progress"
    """Too many consecutive trial steps were rejected."""
    DOMAIN = "domain"
    """Invalid problem shape, weights, or initial point."""
    NO_MEMORY = "no_memory"
    USER_CALLBACK_FAILED = "user_callback_failed"
    BAD_FUNC = "bad_func"
    """Non-finite residual or Jacobian at the initial point."""


class LeastSquaresError(Exception):
    """Base class for errors raised by jaxnlls."""

    status: ClassVar[Status]


class NoProgressError(LeastSquaresError):
    """Raised when no acceptable step could be found. The solver stays at the
    last accepted point."""

    status = Status.NO_PROGRESS


class DomainError(LeastSquaresError, ValueError):
    status = Status.DOMAIN


class BadFunctionError(DomainError):
    status = Status.BAD_FUNC


class UserCallbackError(LeastSquaresError):
    """Can be raised by residual or Jacobian callbacks to signal failure. The
    solver never catches it."""

    status = Status.USER_CALLBACK_FAILED


def status_from_exception(exc: BaseException) -> Status:
    """Map an exception that escaped the solver to a status code."""
    if isinstance(exc, LeastSquaresError):
        return exc.status
    if isinstance(exc, MemoryError):
        return Status.NO_MEMORY
    return Status.USER_CALLBACK_FAILED
