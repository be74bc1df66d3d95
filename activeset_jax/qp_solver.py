"""Active-set solver for convex QPs over linear factors.

The QP has the form:
    minimize    sum_i 0.5 * |A_i x - b_i|^2
    subject to  a_j.x  = b_j      (equalities)
                a_k.x <= b_k      (inequalities)

The solver is a primal active-set method (Nocedal & Wright, Algorithm 16.3).
Each outer iteration solves the equality-constrained problem in which every
equality and every *active* inequality is a hard row. Instead of solving for
the step p it solves directly for the new point x, so p = x_new - x_k.

- If x_new equals x_k, no descent direction exists on the current working
  set. The Lagrange multipliers are recovered from the stationarity condition
      grad f(x) + sum_j lambda_j a_j = 0,
  and the active inequality with the most negative multiplier leaves the
  working set. When all multipliers are non-negative the point is optimal.
- Otherwise the step is shortened so that no inactive inequality is violated,
  and the first blocking inequality enters the working set.

For inequality constraints a.x <= b, optimal multipliers are non-negative.
"""

import logging
from typing import Optional

import equinox as eqx
import jax.numpy as jnp

from activeset_jax.factors import JacobianFactor, VariableIndex
from activeset_jax.linear_solver import solve_linear_system
from activeset_jax.qp import QP, QPState, WorkingSet
from activeset_jax.types import (
    InfeasibleInitialValues,
    Key,
    MaxIterationsExceeded,
    SingularSystemError,
)
from activeset_jax.values import VectorValues

logger = logging.getLogger(__name__)


class QPSolver(eqx.Module):
    """Active-set QP solver.

    The problem and its variable indices are built once at construction and
    only read afterwards, so one solver can serve several ``optimize`` calls.

    Attributes:
        qp: The problem to solve.
        tol: Tolerance for comparing assignments and for deciding that an
            inequality is exactly satisfied at the starting point.
        trace: Log every iteration at INFO level.
        max_iterations: Optional cap on outer iterations. ``None`` runs until
            convergence, which may not terminate on cycling degenerate problems.

    Example:
        >>> from activeset_jax import (
        ...     QP, QPSolver, JacobianFactor, LinearInequality, VectorValues
        ... )
        >>> cost = JacobianFactor.from_terms({"x": [[1.0]]}, [2.0])
        >>> upper = LinearInequality.from_terms({"x": [[1.0]]}, [1.0], dual_key="l")
        >>> solver = QPSolver(QP(cost=[cost], inequalities=[upper]))
        >>> values, duals = solver.optimize(VectorValues({"x": 0.0}))
    """

    qp: QP
    tol: float = eqx.field(static=True, default=1e-7)
    trace: bool = eqx.field(static=True, default=False)
    max_iterations: Optional[int] = eqx.field(static=True, default=None)

    # Derived once from the QP
    cost_index: VariableIndex = eqx.field(init=False)
    equality_index: VariableIndex = eqx.field(init=False)
    inequality_index: VariableIndex = eqx.field(init=False)
    primal_keys: tuple = eqx.field(static=True, init=False)
    constrained_keys: tuple = eqx.field(static=True, init=False)

    def __post_init__(self):
        self.cost_index = VariableIndex.from_factors(self.qp.cost)
        self.equality_index = VariableIndex.from_factors(self.qp.equalities)
        self.inequality_index = VariableIndex.from_factors(self.qp.inequalities)
        self.primal_keys = self.qp.keys()
        self.constrained_keys = self.qp.constrained_keys()

    def solve_with_working_set(self, working_set: WorkingSet) -> VectorValues:
        """Solve the cost with equalities and active inequalities as hard rows."""
        active = tuple(
            self.qp.inequalities[i] for i in working_set.active_indices()
        )
        solution = solve_linear_system(self.qp.cost, self.qp.equalities + active)
        # Keys only reachable through inactive inequalities are undetermined
        undetermined = [key for key in self.primal_keys if key not in solution]
        if undetermined:
            raise SingularSystemError(
                f"Variables {undetermined} are not determined by the working set"
            )
        return solution

    def _collect_dual_jacobians(self, key: Key, working_set: WorkingSet) -> list:
        """Transposed constraint blocks of ``key``, keyed by each constraint's dual."""
        terms = []
        for factor_ix in self.equality_index[key]:
            factor = self.qp.equalities[factor_ix]
            terms.append((factor.dual_key, factor.block(key).T))
        for factor_ix in self.inequality_index[key]:
            if working_set.is_active(factor_ix):
                factor = self.qp.inequalities[factor_ix]
                terms.append((factor.dual_key, factor.block(key).T))
        return terms

    def create_dual_factor(
        self, key: Key, working_set: WorkingSet, values: VectorValues
    ) -> Optional[JacobianFactor]:
        """Stationarity row of one constrained key, or ``None`` if no row touches it.

        sum_j a_j[key]^T lambda_j = -sum_i grad_key f_i(values)
        """
        terms = self._collect_dual_jacobians(key, working_set)
        if not terms:
            return None
        gradient = jnp.zeros_like(values[key])
        for factor_ix in self.cost_index[key]:
            gradient = gradient + self.qp.cost[factor_ix].gradient(key, values)
        return JacobianFactor.from_terms(terms, -gradient)

    def build_dual_graph(
        self, working_set: WorkingSet, values: VectorValues
    ) -> tuple[JacobianFactor, ...]:
        """One dual factor per constrained key; keys without rows are omitted."""
        dual_graph = []
        for key in self.constrained_keys:
            dual_factor = self.create_dual_factor(key, working_set, values)
            if dual_factor is not None:
                dual_graph.append(dual_factor)
        return tuple(dual_graph)

    def compute_duals(
        self, working_set: WorkingSet, values: VectorValues
    ) -> VectorValues:
        """Least-squares Lagrange multipliers at ``values``."""
        return solve_linear_system(self.build_dual_graph(working_set, values))

    def identify_leaving_constraint(
        self, working_set: WorkingSet, duals: VectorValues
    ) -> Optional[int]:
        """Index of the active inequality with the most negative multiplier.

        Multipliers >= 0 are optimal for active inequalities and never leave.
        Ties keep the first index.
        """
        leaving_ix = None
        # Start at 0: only strictly negative multipliers qualify
        min_lambda = 0.0
        for factor_ix in working_set.active_indices():
            factor = self.qp.inequalities[factor_ix]
            lambda_ = float(duals[factor.dual_key][0])
            if lambda_ < min_lambda:
                leaving_ix = factor_ix
                min_lambda = lambda_
        return leaving_ix

    def compute_step_size(
        self, working_set: WorkingSet, x: VectorValues, p: VectorValues
    ) -> tuple[float, Optional[int]]:
        """Largest step in [0, 1] along ``p`` keeping inactive inequalities feasible.

        For each inactive inequality a.x <= b, x already satisfies it. If
        a.p <= 0 then a.(x + alpha p) <= a.x <= b for every alpha >= 0 and the
        row cannot block. Otherwise it requires
            alpha <= (b - a.x) / (a.p).
        The smallest such bound wins; ties keep the first index.

        Returns:
            Tuple of (alpha, blocking index or ``None`` when the full step fits).
        """
        min_alpha = 1.0
        blocking_ix = None
        for factor_ix, factor in enumerate(self.qp.inequalities):
            if working_set.is_active(factor_ix):
                continue
            aTp = factor.dot_product_row(p)
            if aTp <= 0:
                continue
            aTx = factor.dot_product_row(x)
            alpha = (float(factor.b[0]) - aTx) / aTp
            if alpha < min_alpha:
                blocking_ix = factor_ix
                min_alpha = alpha
        return min_alpha, blocking_ix

    def iterate(self, state: QPState) -> QPState:
        """Run one outer iteration and return the next state."""
        new_values = self.solve_with_working_set(state.working_set)
        if self.trace:
            logger.info("iteration %d: new solution %s", state.iterations, new_values)

        if new_values.equals(state.values, self.tol):
            # No descent direction on the current working set
            duals = self.compute_duals(state.working_set, new_values)
            leaving_ix = self.identify_leaving_constraint(state.working_set, duals)
            if self.trace:
                logger.info("duals %s, leaving constraint %s", duals, leaving_ix)

            if leaving_ix is None:
                return QPState(
                    values=new_values,
                    duals=duals,
                    working_set=state.working_set,
                    converged=True,
                    iterations=state.iterations + 1,
                )
            return QPState(
                values=new_values,
                duals=duals,
                working_set=state.working_set.inactivate(leaving_ix),
                converged=False,
                iterations=state.iterations + 1,
            )

        p = new_values - state.values
        alpha, blocking_ix = self.compute_step_size(state.working_set, state.values, p)
        if self.trace:
            logger.info("step size %.6g, blocking constraint %s", alpha, blocking_ix)

        working_set = state.working_set
        if blocking_ix is not None:
            working_set = working_set.activate(blocking_ix)

        return QPState(
            values=state.values + alpha * p,
            duals=state.duals,
            working_set=working_set,
            converged=False,
            iterations=state.iterations + 1,
        )

    def identify_active_constraints(
        self,
        initial_values: VectorValues,
        duals: VectorValues,
        warm_start: bool,
    ) -> WorkingSet:
        """Initial working set from warm-start duals or from the starting point.

        Raises:
            InfeasibleInitialValues: On a cold start, if the starting point
                violates an inequality.
        """
        flags = []
        for factor_ix, factor in enumerate(self.qp.inequalities):
            if warm_start and factor.dual_key in duals:
                flags.append(True)
            elif warm_start and len(duals) > 0:
                flags.append(False)
            else:
                residual = factor.residual(initial_values)
                # TODO: run a Phase-1 LP to find a feasible start instead of failing
                if residual > 0:
                    raise InfeasibleInitialValues(factor_ix, residual)
                flags.append(abs(residual) < self.tol)
        return WorkingSet.from_flags(flags)

    def initial_state(
        self,
        initial_values: VectorValues,
        duals: Optional[VectorValues] = None,
        warm_start: bool = False,
    ) -> QPState:
        if not isinstance(initial_values, VectorValues):
            initial_values = VectorValues(initial_values)
        if duals is None:
            duals = VectorValues()
        elif not isinstance(duals, VectorValues):
            duals = VectorValues(duals)
        missing = set(self.primal_keys) ^ set(initial_values.keys())
        if missing:
            raise ValueError(
                f"Initial values must cover exactly the QP keys; mismatched: {missing}"
            )
        working_set = self.identify_active_constraints(
            initial_values, duals, warm_start
        )
        return QPState(
            values=initial_values,
            duals=duals,
            working_set=working_set,
            converged=False,
            iterations=0,
        )

    def run(
        self,
        initial_values: VectorValues,
        duals: Optional[VectorValues] = None,
        warm_start: bool = False,
    ) -> QPState:
        """Iterate from the initial state until convergence.

        Returns:
            The terminal ``QPState``.

        Raises:
            InfeasibleInitialValues: Cold start from an infeasible point.
            SingularSystemError: A step or dual solve is rank deficient.
            MaxIterationsExceeded: ``max_iterations`` is set and was reached.
        """
        state = self.initial_state(initial_values, duals, warm_start)
        if self.trace:
            logger.info(
                "initial working set: active %s", state.working_set.active_indices()
            )
        while not state.converged:
            if (
                self.max_iterations is not None
                and state.iterations >= self.max_iterations
            ):
                raise MaxIterationsExceeded(
                    f"No convergence after {state.iterations} iterations"
                )
            state = self.iterate(state)
        return state

    def optimize(
        self,
        initial_values: VectorValues,
        duals: Optional[VectorValues] = None,
        warm_start: bool = False,
    ) -> tuple[VectorValues, VectorValues]:
        """Solve the QP from a feasible starting point.

        Args:
            initial_values: Starting point. On a cold start it must satisfy
                every inequality.
            duals: Multipliers of a previous solve, for warm starting.
            warm_start: Initialise the working set from ``duals``: constraints
                with a multiplier are active, the others inactive.

        Returns:
            Tuple of (primal solution, multipliers keyed by dual key). Inactive
            inequalities have no entry in the multipliers.
        """
        state = self.run(initial_values, duals, warm_start)
        return state.values, state.duals
