"""QP problem, working set and solver state.

The ``QP`` is read-only once built. Activation status of the inequality
constraints lives in a separate ``WorkingSet`` addressed by the position of
each inequality in ``QP.inequalities``, so any number of solves can share one
``QP`` without aliasing mutable state.
"""

from collections.abc import Iterable

import equinox as eqx

from activeset_jax.factors import JacobianFactor, LinearEquality, LinearInequality
from activeset_jax.values import VectorValues


class QP(eqx.Module):
    """Convex quadratic program over linear factors.

        minimize    sum_i 0.5 * |A_i x - b_i|^2
        subject to  a_j.x  = b_j   for every equality j
                    a_k.x <= b_k   for every inequality k

    Attributes:
        cost: Cost factors.
        equalities: Equality constraints.
        inequalities: Inequality constraints.
    """

    cost: tuple[JacobianFactor, ...] = eqx.field(default=(), converter=tuple)
    equalities: tuple[LinearEquality, ...] = eqx.field(default=(), converter=tuple)
    inequalities: tuple[LinearInequality, ...] = eqx.field(
        default=(), converter=tuple
    )

    def __check_init__(self):
        dual_keys = [c.dual_key for c in self.equalities + self.inequalities]
        seen = set()
        for dual_key in dual_keys:
            if dual_key in seen:
                raise ValueError(f"Dual key {dual_key!r} is used by two constraints")
            seen.add(dual_key)

    def keys(self) -> tuple:
        """All primal keys, in order of first appearance."""
        keys: dict = {}
        for factor in self.cost + self.equalities + self.inequalities:
            for key in factor.keys:
                keys.setdefault(key, None)
        return tuple(keys)

    def constrained_keys(self) -> tuple:
        """Primal keys touched by at least one equality or inequality."""
        keys: dict = {}
        for factor in self.equalities + self.inequalities:
            for key in factor.keys:
                keys.setdefault(key, None)
        return tuple(keys)


class WorkingSet(eqx.Module):
    """Active flags, one per inequality of a ``QP``, in the same order.

    Updates return new working sets; an instance never changes.
    """

    active: tuple[bool, ...] = eqx.field(static=True, converter=tuple)

    @classmethod
    def from_flags(cls, flags: Iterable[bool]) -> "WorkingSet":
        return cls(tuple(bool(flag) for flag in flags))

    def __len__(self) -> int:
        return len(self.active)

    def is_active(self, index: int) -> bool:
        return self.active[index]

    def active_indices(self) -> tuple[int, ...]:
        return tuple(i for i, flag in enumerate(self.active) if flag)

    def activate(self, index: int) -> "WorkingSet":
        return self._with_flag(index, True)

    def inactivate(self, index: int) -> "WorkingSet":
        return self._with_flag(index, False)

    def _with_flag(self, index: int, flag: bool) -> "WorkingSet":
        flags = list(self.active)
        flags[index] = flag
        return WorkingSet(tuple(flags))


class QPState(eqx.Module):
    """State of the active-set QP solver after one outer iteration."""

    values: VectorValues
    duals: VectorValues
    working_set: WorkingSet
    converged: bool = eqx.field(static=True)
    iterations: int = eqx.field(static=True)
