"""Linear factors and the variable adjacency index.

A linear factor is a block row of a sparse linear system:

    sum_k A_k x_k - b

over a small set of variable keys. The same type represents quadratic cost
terms (minimise 0.5 * |A x - b|^2) and, through the single-row subclasses,
linear constraints a.x = b and a.x <= b. Each constraint carries the key of
its dual variable so that Lagrange multipliers can be looked up by key.
"""

from collections.abc import Iterable, Mapping
from typing import Union

import equinox as eqx
import jax.numpy as jnp
from jaxtyping import Array, Float

from activeset_jax.types import Key
from activeset_jax.values import VectorValues


def _as_blocks(blocks) -> tuple:
    dtype = jnp.result_type(float)
    return tuple(jnp.atleast_2d(jnp.asarray(block, dtype=dtype)) for block in blocks)


def _as_rhs(b) -> Float[Array, " m"]:
    return jnp.atleast_1d(jnp.asarray(b, dtype=jnp.result_type(float)))


class JacobianFactor(eqx.Module):
    """A block row [A_1 ... A_k | b] of a sparse linear system.

    Attributes:
        keys: Variable keys this factor touches, one per block.
        blocks: Coefficient matrices, ``blocks[i]`` has shape (m, dim(keys[i])).
        b: Right-hand side of shape (m,).
    """

    keys: tuple = eqx.field(static=True, converter=tuple)
    blocks: tuple = eqx.field(converter=_as_blocks)
    b: Float[Array, " m"] = eqx.field(converter=_as_rhs)

    def __check_init__(self):
        if len(self.keys) != len(self.blocks):
            raise ValueError(
                f"Got {len(self.keys)} keys but {len(self.blocks)} blocks"
            )
        if len(set(self.keys)) != len(self.keys):
            raise ValueError(f"Duplicated keys in factor: {self.keys}")
        m = self.b.shape[0]
        for key, block in zip(self.keys, self.blocks):
            if block.ndim != 2 or block.shape[0] != m:
                raise ValueError(
                    f"Block for key {key!r} has shape {block.shape}, "
                    f"expected ({m}, d)"
                )

    @classmethod
    def from_terms(
        cls,
        terms: Union[Mapping, Iterable],
        b,
        **kwargs,
    ) -> "JacobianFactor":
        """Build a factor from ``{key: A_k}`` or a sequence of ``(key, A_k)``."""
        pairs = list(terms.items()) if isinstance(terms, Mapping) else list(terms)
        keys = tuple(key for key, _ in pairs)
        blocks = tuple(block for _, block in pairs)
        return cls(keys, blocks, b, **kwargs)

    @property
    def rows(self) -> int:
        return int(self.b.shape[0])

    def block(self, key: Key) -> Float[Array, "m d"]:
        return self.blocks[self.keys.index(key)]

    def error_vector(self, values: VectorValues) -> Float[Array, " m"]:
        """Unwhitened residual A x - b."""
        Ax = jnp.zeros_like(self.b)
        for key, block in zip(self.keys, self.blocks):
            Ax = Ax + block @ values[key]
        return Ax - self.b

    def error(self, values: VectorValues) -> float:
        e = self.error_vector(values)
        return 0.5 * float(jnp.dot(e, e))

    def gradient(self, key: Key, values: VectorValues) -> Float[Array, " d"]:
        """Gradient of 0.5 * |A x - b|^2 with respect to the variable ``key``."""
        return self.block(key).T @ self.error_vector(values)


class LinearConstraint(JacobianFactor):
    """A single linear row a.x ? b carrying the key of its dual variable."""

    dual_key: Key = eqx.field(static=True, kw_only=True)

    def __check_init__(self):
        if self.rows != 1:
            raise ValueError(
                f"Constraint with dual key {self.dual_key!r} has {self.rows} "
                "rows; split it into one constraint per row"
            )

    def dot_product_row(self, values: VectorValues) -> float:
        """Compute a.x for the constraint row."""
        total = 0.0
        for key, block in zip(self.keys, self.blocks):
            total += float(jnp.dot(block[0], values[key]))
        return total

    def residual(self, values: VectorValues) -> float:
        """Compute a.x - b."""
        return self.dot_product_row(values) - float(self.b[0])


class LinearEquality(LinearConstraint):
    """Equality constraint a.x = b. Its dual is unbounded in sign."""


class LinearInequality(LinearConstraint):
    """Inequality constraint a.x <= b. Its dual is non-negative at the optimum.

    The active/inactive status is not stored here; it lives in the per-solve
    ``WorkingSet`` so the QP itself stays read-only.
    """


class VariableIndex(eqx.Module):
    """Map from variable key to the positions of the factors touching it.

    Attributes:
        index: Dictionary from key to a tuple of factor indices, in factor order.
    """

    index: dict

    @classmethod
    def from_factors(cls, factors: Iterable[JacobianFactor]) -> "VariableIndex":
        index: dict = {}
        for factor_ix, factor in enumerate(factors):
            for key in factor.keys:
                index.setdefault(key, []).append(factor_ix)
        return cls({key: tuple(ixs) for key, ixs in index.items()})

    def __getitem__(self, key: Key) -> tuple:
        return self.index.get(key, ())

    def __contains__(self, key: Key) -> bool:
        return key in self.index

    def __len__(self) -> int:
        return len(self.index)

    def keys(self):
        return self.index.keys()
