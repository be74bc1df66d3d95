"""Least-squares solve of a collection of linear factors.

Solves

    minimize    sum_i |A_i x - b_i|^2
    subject to  C x = d

where the soft rows come from cost factors and the hard rows from active
constraints. The variables are ordered by first appearance across the
factors and the blocks are scattered into a dense system. The hard rows are
eliminated through their SVD null space and the remaining soft problem is
solved by least squares on the rows themselves.

The solution is unique when C has full row rank and A has full column rank
on the null space of C. Each of the two rank tests uses a tolerance relative
to its own matrix. Otherwise ``SingularSystemError`` is raised rather than
returning an arbitrary minimum-norm solution.
"""

from collections.abc import Sequence

import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from activeset_jax.factors import JacobianFactor
from activeset_jax.types import SingularSystemError
from activeset_jax.values import VectorValues


def _build_ordering(factors: Sequence[JacobianFactor]) -> dict:
    """Assign each key a (column offset, dimension) slot."""
    dims: dict = {}
    for factor in factors:
        for key, block in zip(factor.keys, factor.blocks):
            dim = int(block.shape[1])
            if dims.setdefault(key, dim) != dim:
                raise ValueError(
                    f"Key {key!r} appears with dimensions {dims[key]} and {dim}"
                )
    slots = {}
    offset = 0
    for key, dim in dims.items():
        slots[key] = (offset, dim)
        offset += dim
    return slots


def _assemble(
    factors: Sequence[JacobianFactor], slots: dict, n: int
) -> tuple[Float[Array, "m n"], Float[Array, " m"]]:
    """Scatter the factor blocks into a dense (m, n) matrix and (m,) vector."""
    m = sum(factor.rows for factor in factors)
    A = np.zeros((m, n))
    b = np.zeros((m,))
    row = 0
    for factor in factors:
        rows = factor.rows
        for key, block in zip(factor.keys, factor.blocks):
            offset, dim = slots[key]
            A[row : row + rows, offset : offset + dim] = np.asarray(block)
        b[row : row + rows] = np.asarray(factor.b)
        row += rows
    return jnp.asarray(A), jnp.asarray(b)


def _check_full_rank(M: Float[Array, "r c"], expected: int, what: str) -> None:
    """Raise unless ``M`` has rank ``expected``, with the tolerance scaled to ``M``."""
    rank = int(jnp.linalg.matrix_rank(M)) if M.size else 0
    if rank < expected:
        raise SingularSystemError(
            f"{what} of shape {tuple(M.shape)} has rank {rank}, expected {expected}"
        )


@jaxtyped(typechecker=beartype)
def _null_space_solve(
    A: Float[Array, "m n"],
    b: Float[Array, " m"],
    C: Float[Array, "p n"],
    d: Float[Array, " p"],
) -> Float[Array, " n"]:
    """Solve the constrained least-squares problem through the null space of C.

    With C = U S V^T, the particular solution x_p = V_1 S^-1 U^T d satisfies
    the hard rows and the columns Z = V_2 span their null space. The soft rows
    are then solved for x = x_p + Z y in the least-squares sense.
    """
    n = A.shape[1]
    p = C.shape[0]
    if p:
        _check_full_rank(C, p, "Constraint matrix")
        U, s, Vt = jnp.linalg.svd(C, full_matrices=True)
        x_p = Vt[:p].T @ ((U.T @ d) / s)
        Z = Vt[p:].T
    else:
        x_p = jnp.zeros(n, dtype=A.dtype)
        Z = jnp.eye(n, dtype=A.dtype)

    free = Z.shape[1]
    if free == 0:
        return x_p
    AZ = A @ Z
    _check_full_rank(AZ, free, "Cost matrix restricted to the constraint null space")
    y = jnp.linalg.lstsq(AZ, b - A @ x_p)[0]
    return x_p + Z @ y


def solve_linear_system(
    factors: Sequence[JacobianFactor],
    constraints: Sequence[JacobianFactor] = (),
) -> VectorValues:
    """Solve a least-squares problem with optional hard linear constraints.

    Args:
        factors: Soft rows; their squared residuals are minimised.
        constraints: Hard rows; their residuals are forced to zero.

    Returns:
        The unique solution as a ``VectorValues`` over every key appearing in
        either collection, in first-appearance order.

    Raises:
        SingularSystemError: If the solution is not unique (rank-deficient
            cost over the constraint null space, or dependent constraint rows).
    """
    factors = tuple(factors)
    constraints = tuple(constraints)
    slots = _build_ordering(factors + constraints)
    if not slots:
        return VectorValues()
    n = sum(dim for _, dim in slots.values())

    A, b = _assemble(factors, slots, n)
    C, d = _assemble(constraints, slots, n)
    try:
        solution = _null_space_solve(A, b, C, d)
    except SingularSystemError as e:
        raise SingularSystemError(
            f"{e} ({len(factors)} factors, {len(constraints)} hard constraints)"
        ) from e
    return VectorValues(
        {key: solution[offset : offset + dim] for key, (offset, dim) in slots.items()}
    )
