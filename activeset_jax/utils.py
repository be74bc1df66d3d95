from collections.abc import Sequence
from typing import Callable

import jax


def argument_closure(
    fn: Callable[..., jax.Array], args: Sequence[jax.Array], position: int
) -> Callable[[jax.Array], jax.Array]:
    def wrapped(x: jax.Array) -> jax.Array:
        return fn(*args[:position], x, *args[position + 1 :])

    return wrapped
