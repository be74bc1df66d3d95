"""activeset-jax: active-set solver for convex QPs over sparse linear factors.

This package solves quadratic programs whose cost, equality constraints and
inequality constraints are expressed as linear factors over keyed vector
variables, as they arise in one sequential-QP step of a factor-graph
estimator. The solver is a primal active-set method that recovers the
Lagrange multipliers from a secondary least-squares system.
"""

from activeset_jax.factors import (
    JacobianFactor,
    LinearConstraint,
    LinearEquality,
    LinearInequality,
    VariableIndex,
)
from activeset_jax.linear_solver import solve_linear_system
from activeset_jax.nonlinear import (
    BetweenFactor,
    MeasurementFactor,
    PriorFactor,
    RangeFactor,
    graph_error,
    linearize_graph,
)
from activeset_jax.qp import QP, QPState, WorkingSet
from activeset_jax.qp_solver import QPSolver
from activeset_jax.types import (
    InfeasibleInitialValues,
    MaxIterationsExceeded,
    QPSolverError,
    SingularSystemError,
)
from activeset_jax.values import VectorValues

__all__ = [
    # Main solver
    "QPSolver",
    "QP",
    "QPState",
    "WorkingSet",
    # Assignments
    "VectorValues",
    # Linear factors
    "JacobianFactor",
    "LinearConstraint",
    "LinearEquality",
    "LinearInequality",
    "VariableIndex",
    "solve_linear_system",
    # Measurement factors
    "MeasurementFactor",
    "PriorFactor",
    "BetweenFactor",
    "RangeFactor",
    "linearize_graph",
    "graph_error",
    # Errors
    "QPSolverError",
    "InfeasibleInitialValues",
    "SingularSystemError",
    "MaxIterationsExceeded",
]
