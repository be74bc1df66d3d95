"""Measurement factors and their linearization into cost factors.

A measurement factor models a Gaussian measurement z of a prediction
h(x_1, ..., x_k) with standard deviation sigma:

    residual(x) = z - h(x)
    error(x)    = 0.5 * |residual(x) / sigma|^2

Linearizing at a point x0 gives a cost factor on the update delta,

    (H / sigma) delta = residual(x0) / sigma,

which is how the caller assembles the QP of one sequential-QP step. Each
concrete measurement type implements ``predict``; it may also implement
``predict_jacobians`` analytically, otherwise the Jacobians come from
forward-mode automatic differentiation.
"""

import abc

import equinox as eqx
import jax
import jax.numpy as jnp
from jaxtyping import Array, Float

from activeset_jax.factors import JacobianFactor
from activeset_jax.utils import argument_closure
from activeset_jax.values import VectorValues


def _as_vector(z) -> Float[Array, " m"]:
    return jnp.atleast_1d(jnp.asarray(z, dtype=jnp.result_type(float)))


class MeasurementFactor(eqx.Module):
    """Abstract Gaussian measurement on one or more vector variables.

    Attributes:
        keys: Keys of the variables passed to ``predict``, in argument order.
        measurement: The measured value z.
        sigma: Isotropic noise standard deviation.
    """

    keys: tuple = eqx.field(static=True, converter=tuple)
    measurement: Float[Array, " m"] = eqx.field(converter=_as_vector)
    sigma: float = eqx.field(static=True, default=1.0)

    def __check_init__(self):
        if self.sigma <= 0:
            raise ValueError(f"sigma must be positive, got {self.sigma}")

    @abc.abstractmethod
    def predict(self, *xs: Float[Array, " d"]) -> Float[Array, " m"]:
        """Predicted measurement h(x_1, ..., x_k)."""

    def predict_jacobians(self, *xs: Float[Array, " d"]) -> tuple:
        """Jacobians dh/dx_i, one (m, d_i) block per argument."""
        return tuple(
            jax.jacfwd(argument_closure(self.predict, xs, i))(x)
            for i, x in enumerate(xs)
        )

    def _arguments(self, values: VectorValues) -> tuple:
        return tuple(values[key] for key in self.keys)

    def evaluate(self, values: VectorValues) -> Float[Array, " m"]:
        """Unwhitened residual z - h(x)."""
        return self.measurement - self.predict(*self._arguments(values))

    def evaluate_with_jacobians(
        self, values: VectorValues
    ) -> tuple[Float[Array, " m"], tuple]:
        """Residual z - h(x) together with the prediction Jacobians dh/dx_i."""
        xs = self._arguments(values)
        residual = self.measurement - self.predict(*xs)
        return residual, self.predict_jacobians(*xs)

    def error(self, values: VectorValues) -> float:
        e = self.evaluate(values) / self.sigma
        return 0.5 * float(jnp.dot(e, e))

    def linearize(self, values: VectorValues) -> JacobianFactor:
        """Whitened linear cost factor on the update delta around ``values``."""
        residual, jacobians = self.evaluate_with_jacobians(values)
        blocks = tuple(jnp.atleast_2d(H) / self.sigma for H in jacobians)
        return JacobianFactor(self.keys, blocks, residual / self.sigma)


class PriorFactor(MeasurementFactor):
    """Direct measurement of one variable: h(x) = x."""

    def __check_init__(self):
        if len(self.keys) != 1:
            raise ValueError(f"PriorFactor takes one key, got {self.keys}")

    def predict(self, x):
        return x

    def predict_jacobians(self, x):
        return (jnp.eye(x.shape[0]),)


class BetweenFactor(MeasurementFactor):
    """Relative measurement of two variables: h(x1, x2) = x2 - x1."""

    def __check_init__(self):
        if len(self.keys) != 2:
            raise ValueError(f"BetweenFactor takes two keys, got {self.keys}")

    def predict(self, x1, x2):
        return x2 - x1

    def predict_jacobians(self, x1, x2):
        return -jnp.eye(x1.shape[0]), jnp.eye(x2.shape[0])


class RangeFactor(MeasurementFactor):
    """Euclidean distance between two points: h(x1, x2) = |x2 - x1|.

    Jacobians are left to automatic differentiation.
    """

    def __check_init__(self):
        if len(self.keys) != 2:
            raise ValueError(f"RangeFactor takes two keys, got {self.keys}")

    def predict(self, x1, x2):
        return jnp.atleast_1d(jnp.linalg.norm(x2 - x1))


def linearize_graph(factors, values: VectorValues) -> tuple[JacobianFactor, ...]:
    """Linearize every measurement factor around ``values``."""
    return tuple(factor.linearize(values) for factor in factors)


def graph_error(factors, values: VectorValues) -> float:
    """Total error sum_i 0.5 * |residual_i / sigma_i|^2."""
    return sum(factor.error(values) for factor in factors)
