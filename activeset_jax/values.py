"""Keyed vector assignments.

A ``VectorValues`` maps variable identifiers to vectors. It is used for primal
solutions, search directions and dual (Lagrange multiplier) solutions alike.
Instances are immutable: every operation returns a new assignment.
"""

from collections.abc import Iterator, Mapping
from typing import Optional

import equinox as eqx
import jax.numpy as jnp
from jaxtyping import Array, Float

from activeset_jax.types import Key


def _as_vectors(values: Optional[Mapping]) -> dict:
    if values is None:
        return {}
    return {
        key: jnp.atleast_1d(jnp.asarray(value, dtype=jnp.result_type(float)))
        for key, value in dict(values).items()
    }


class VectorValues(eqx.Module):
    """Immutable mapping from variable key to vector value.

    Scalars are promoted to vectors of length one. Keys keep their insertion
    order, which is the order used when the values are flattened.

    Attributes:
        values: Underlying dictionary from key to 1-D array.
    """

    values: dict = eqx.field(default=None, converter=_as_vectors)

    def __getitem__(self, key: Key) -> Float[Array, " d"]:
        return self.values[key]

    def __contains__(self, key: Key) -> bool:
        return key in self.values

    def __iter__(self) -> Iterator[Key]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def keys(self):
        return self.values.keys()

    def items(self):
        return self.values.items()

    def zero_like(self) -> "VectorValues":
        return VectorValues({k: jnp.zeros_like(v) for k, v in self.values.items()})

    def equals(self, other: "VectorValues", tol: float = 1e-9) -> bool:
        """Check whether two assignments agree within an absolute tolerance.

        Assignments with different key sets are never equal.
        """
        if set(self.values) != set(other.values):
            return False
        for key, value in self.values.items():
            other_value = other.values[key]
            if value.shape != other_value.shape:
                return False
            if not bool(jnp.all(jnp.abs(value - other_value) <= tol)):
                return False
        return True

    def _check_same_structure(self, other: "VectorValues") -> None:
        if set(self.values) != set(other.values):
            missing = set(self.values) ^ set(other.values)
            raise ValueError(
                f"VectorValues have different keys; mismatched keys: {missing}"
            )

    def __add__(self, other: "VectorValues") -> "VectorValues":
        self._check_same_structure(other)
        return VectorValues(
            {k: v + other.values[k] for k, v in self.values.items()}
        )

    def __sub__(self, other: "VectorValues") -> "VectorValues":
        self._check_same_structure(other)
        return VectorValues(
            {k: v - other.values[k] for k, v in self.values.items()}
        )

    def __mul__(self, alpha: float) -> "VectorValues":
        return VectorValues({k: alpha * v for k, v in self.values.items()})

    __rmul__ = __mul__

    def __repr__(self) -> str:
        entries = ", ".join(f"{k!r}: {v}" for k, v in self.values.items())
        return f"VectorValues({{{entries}}})"
