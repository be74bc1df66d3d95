"""Type definitions for activeset-jax.

This module contains the key alias and the exception hierarchy used
throughout the package.
"""

from collections.abc import Hashable

# Variable and dual-variable identifiers: any hashable object
Key = Hashable


class QPSolverError(Exception):
    """Base class for errors raised by the active-set QP solver."""


class InfeasibleInitialValues(QPSolverError):
    """The cold-start point violates an inequality constraint.

    No Phase-1 solve exists to recover a feasible point, so the caller must
    supply one.

    Attributes:
        index: Position of the first violated inequality in the QP.
        residual: Value of a.x - b at the initial point (strictly positive).
    """

    def __init__(self, index: int, residual: float):
        self.index = index
        self.residual = residual
        super().__init__(
            f"Initial values violate inequality {index} "
            f"(residual {residual:.3e} > 0)"
        )


class SingularSystemError(QPSolverError):
    """The assembled least-squares system is singular or rank deficient."""


class MaxIterationsExceeded(QPSolverError):
    """The caller-imposed iteration cap was reached before convergence."""
