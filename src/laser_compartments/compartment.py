"""
compartment.py

This module defines the Compartment class, one node of a multi-stage population-flow model.

A compartment holds its population bucketed by residence time: ``sub_compartments[i]`` is the
number of individuals who entered ``i`` timesteps ago. Each out-edge has a downstream compartment
name, a Distribution and a weight. Once per iteration the compartment computes, for every edge and
every bucket, how many individuals leave, records per-edge totals, removes the outflow, ages the
remaining population by one timestep and adds the inflow from upstream compartments to bucket 0.

Usage Example:
    ```python
    s = Compartment("S", 990.0)
    i = Compartment("I", 10.0)
    s.add_out_compartment(i)
    s.add_out_compartment_name("I")
    s.add_out_distribution(DistributionConstant(0.1))
    s.add_out_weight(1.0)
    i.add_in_compartment(s)
    for c in (s, i):
        c.set_length_sub_compartment()
        c.set_out_values()
    comps = {"S": s, "I": i}
    for iteration in range(1, Compartment.times_follow_up + 1):
        for c in comps.values():
            c.update_compartment(iteration, [], [], comps)
    ```

Note:
    Compartments refer to each other by name only. The dictionary of compartments passed to
    ``update_compartment`` (owned by the driver, see CompartmentModel) resolves those names.
"""

import logging
from typing import NamedTuple

import numba as nb
import numpy as np

from laser_compartments.distributions import KIND_MATH
from laser_compartments.distributions import Distribution
from laser_compartments.expression import FormulaEvaluator
from laser_compartments.expression import default_evaluator

logger = logging.getLogger(__name__)

# floating point slack before a negative bucket or an over-subscribed bucket is a modeling error
NEGATIVE_TOLERANCE = 1e-9

VIOLATION_OVERFLOW = "outflow-exceeds-population"
VIOLATION_NEGATIVE_OUTFLOW = "negative-outflow"
VIOLATION_NEGATIVE_POPULATION = "negative-population"
VIOLATION_WEIGHTS = "weights-exceed-one"


class ModelingError(RuntimeError):
    """Raised for numeric/modeling violations when a compartment is in strict mode."""


class Violation(NamedTuple):
    """A numeric/modeling violation detected (and clamped) during an update."""

    iteration: int
    kind: str
    amount: float
    message: str


@nb.njit(nogil=True, cache=True)
def _age_buckets(buckets, outflow, inflow, tolerance):
    """Subtract outflow, shift survivors one bucket older and put inflow in bucket 0. Returns the clamped deficit."""
    n = buckets.shape[0]
    deficit = 0.0
    carry = inflow
    for i in range(n):
        remaining = buckets[i] - outflow[i]
        if remaining < 0.0:
            if remaining < -tolerance:
                deficit -= remaining
            remaining = 0.0
        if i == n - 1:
            # the oldest bucket saturates
            buckets[i] = carry + remaining
        else:
            buckets[i] = carry
            carry = remaining

    return deficit


class Compartment:
    """A named stock of individuals, bucketed by residence time, with weighted out-edges."""

    # number of iterations in a run, set once before any compartment is sized
    times_follow_up = 200

    def __init__(self, name: str, init_value: float, strict: bool = False, evaluator: FormulaEvaluator = None):
        """
        Initialize a Compartment.

        Parameters:
            name (str): Unique name of the compartment.
            init_value (float): Initial population, placed entirely in bucket 0.
            strict (bool): Raise ModelingError on numeric violations instead of clamping and recording them.
            evaluator (FormulaEvaluator): Expression engine for expression-derived out-edges.
                                          Defaults to the shared AstEvaluator.

        Raises:
            ValueError: If name is empty or init_value is negative or not finite.
        """
        if not isinstance(name, str) or not name:
            raise ValueError(f"Compartment name must be a non-empty string, got {name!r}.")
        if not np.isfinite(init_value) or init_value < 0:
            raise ValueError(f"Initial value for '{name}' must be a non-negative number, got {init_value}.")

        self._name = name
        self._init_value = float(init_value)
        self.strict = strict
        self.evaluator = evaluator if evaluator is not None else default_evaluator()

        self._sub_compartments = np.array([self._init_value], dtype=np.float64)
        self._total = [self._init_value]

        self._in_compartments = []
        self._out_compartments = []
        self._out_names = []
        self._out_distributions = []
        self._out_weights = []

        self._out_sub_compartments = None
        self._out_totals = None
        self._out_probs = None
        self._sized = False
        self._outflow_iteration = 0

        self._violations = []

        return

    def __repr__(self) -> str:
        return f"Compartment({self._name!r}, total={self._total[-1]:g}, out={self._out_names})"

    # getters

    @property
    def name(self) -> str:
        return self._name

    @property
    def total(self) -> np.ndarray:
        """Total population per iteration, index 0 is the initial population."""
        return np.array(self._total, dtype=np.float64)

    @property
    def sub_compartments(self) -> np.ndarray:
        """Population per residence-time bucket."""
        return self._sub_compartments.copy()

    @property
    def in_compartments(self) -> list:
        return list(self._in_compartments)

    @property
    def out_compartments(self) -> list:
        return list(self._out_compartments)

    @property
    def out_names(self) -> list:
        return list(self._out_names)

    @property
    def out_distributions(self) -> list:
        return list(self._out_distributions)

    @property
    def out_weights(self) -> list:
        return list(self._out_weights)

    @property
    def out_totals(self) -> np.ndarray:
        """Per out-edge outflow per iteration, shape (edges, times_follow_up + 1). Column 0 is zero."""
        self._check_sized()
        return self._out_totals.copy()

    @property
    def out_sub_compartments(self) -> np.ndarray:
        """Per out-edge, per bucket outflow of the most recent iteration, shape (edges, L)."""
        self._check_sized()
        return self._out_sub_compartments.copy()

    @property
    def violations(self) -> list:
        return list(self._violations)

    @property
    def iteration(self) -> int:
        """The last completed iteration (0 before the first update)."""
        return len(self._total) - 1

    def value_at(self, iteration: int) -> float:
        return self._total[iteration]

    # graph wiring

    def add_out_compartment(self, compartment) -> None:
        """Register the downstream compartment (or its name) of a new out-edge."""
        self._check_editable()
        self._out_compartments.append(_name_of(compartment))
        return

    def add_out_compartment_name(self, name: str) -> None:
        """Register the name of a new out-edge. Names must be unique among this compartment's out-edges."""
        self._check_editable()
        if name in self._out_names:
            raise ValueError(f"Compartment '{self._name}' already has an out-edge named '{name}'.")
        self._out_names.append(name)
        return

    def add_out_distribution(self, distribution: Distribution) -> None:
        self._check_editable()
        if not isinstance(distribution, Distribution):
            raise ValueError(f"Expected a Distribution, got {type(distribution).__name__}.")
        self._out_distributions.append(distribution)
        return

    def add_out_weight(self, weight: float) -> None:
        self._check_editable()
        if not (0.0 <= weight <= 1.0):
            raise ValueError(f"Out-edge weight must be in [0, 1], got {weight}.")
        self._out_weights.append(float(weight))
        return

    def add_in_compartment(self, compartment) -> None:
        """Register an upstream compartment (or its name). Inflow always lands in bucket 0."""
        self._check_editable()
        name = _name_of(compartment)
        if name not in self._in_compartments:
            self._in_compartments.append(name)
        return

    def edit_out_distribution(self, out_name: str, distribution: Distribution) -> None:
        """
        Replace the Distribution on the out-edge named `out_name`.

        Only allowed while the graph is being assembled, i.e. before set_length_sub_compartment().

        Raises:
            ValueError: If there is no out-edge named `out_name`.
            RuntimeError: If the compartment has already been sized.
        """
        self._check_editable()
        if not isinstance(distribution, Distribution):
            raise ValueError(f"Expected a Distribution, got {type(distribution).__name__}.")
        self._out_distributions[self.find_out_comp_position(out_name)] = distribution
        return

    def is_out_comp_added(self, out_name: str) -> bool:
        return out_name in self._out_names

    def find_out_comp_position(self, out_name: str) -> int:
        """
        Return the index of the out-edge named `out_name`.

        Raises:
            ValueError: If there is no such out-edge.
        """
        for position, name in enumerate(self._out_names):
            if name == out_name:
                return position
        raise ValueError(f"Compartment '{self._name}' has no out-edge named '{out_name}'.")

    # sizing

    def set_length_sub_compartment(self) -> None:
        """
        Fix the number of residence buckets L and allocate them.

        L is the longest transition table among the CDF-derived out-edges (1 if there are none).
        Must be called once, after every out-edge has been attached. Afterwards the graph around
        this compartment can no longer be edited.

        Raises:
            ValueError: If the out-edge collections are not index-aligned.
            RuntimeError: If called more than once.
            ModelingError: In strict mode, if the weights of the CDF-derived and constant out-edges sum above 1.
        """
        if self._sized:
            raise RuntimeError(f"Compartment '{self._name}' has already been sized.")

        lengths = {
            "compartments": len(self._out_compartments),
            "names": len(self._out_names),
            "distributions": len(self._out_distributions),
            "weights": len(self._out_weights),
        }
        if len(set(lengths.values())) != 1:
            raise ValueError(f"Out-edges of compartment '{self._name}' are misaligned: {lengths}.")

        length = max((len(d) for d in self._out_distributions), default=0)
        length = max(length, 1)

        self._sub_compartments = np.zeros(length, dtype=np.float64)
        self._sub_compartments[0] = self._init_value

        self._out_probs = [None if d.kind == KIND_MATH else d.transition_probs(length) for d in self._out_distributions]

        table_weight = sum(w for w, d in zip(self._out_weights, self._out_distributions) if d.kind != KIND_MATH)
        if table_weight > 1.0 + NEGATIVE_TOLERANCE:
            # recorded against iteration 0, the graph is fixed before the first update
            self._violation(0, VIOLATION_WEIGHTS, table_weight - 1.0, f"out-edge weights sum to {table_weight:g} > 1")

        self._sized = True

        return

    def set_out_values(self) -> None:
        """Allocate per-edge outflow buffers for the current `times_follow_up`. Call after set_length_sub_compartment()."""
        if not self._sized:
            raise RuntimeError(f"Call set_length_sub_compartment() on '{self._name}' before set_out_values().")
        if self.iteration > 0:
            raise RuntimeError(f"Compartment '{self._name}' is already running (iteration {self.iteration}).")

        nedges = len(self._out_names)
        self._out_sub_compartments = np.zeros((nedges, len(self._sub_compartments)), dtype=np.float64)
        self._out_totals = np.zeros((nedges, Compartment.times_follow_up + 1), dtype=np.float64)

        return

    # update

    def update_compartment(self, iteration: int, param_names, param_values, compartments: dict) -> None:
        """
        Advance this compartment from iteration - 1 to `iteration`.

        Each out-edge's outflow is computed from the state at the end of iteration - 1 (expression
        edges see every compartment's total at iteration - 1), so the result does not depend on the
        order in which compartments are updated within a timestep. Upstream compartments that have
        not yet computed their outflow for `iteration` are asked to do so first.

        Parameters:
            iteration (int): The iteration to compute, 1 <= iteration <= times_follow_up.
                             Must be exactly one past the last completed iteration.
            param_names (sequence of str): Global parameter names, visible to expression edges.
            param_values (sequence of float): Global parameter values.
            compartments (dict): All compartments by name.

        Raises:
            RuntimeError: If the compartment is not sized or `iteration` is out of sequence.
            FormulaError: If an expression edge fails to evaluate.
            ModelingError: In strict mode, on any numeric violation.
        """
        self._check_sized()
        if iteration != self.iteration + 1:
            raise RuntimeError(f"Compartment '{self._name}' expected iteration {self.iteration + 1}, got {iteration}.")
        if iteration >= self._out_totals.shape[1]:
            raise RuntimeError(f"Iteration {iteration} is beyond times_follow_up ({self._out_totals.shape[1] - 1}).")

        for upstream in self._in_compartments:
            _lookup(compartments, upstream, self._name).compute_outflow(iteration, param_names, param_values, compartments)
        self.compute_outflow(iteration, param_names, param_values, compartments)

        inflow = 0.0
        for upstream in self._in_compartments:
            inflow += _lookup(compartments, upstream, self._name).outflow_to(self._name, iteration)

        # compute_outflow already caps outflow at each bucket's population, so a deficit here is floating point drift
        deficit = _age_buckets(self._sub_compartments, self._out_sub_compartments.sum(axis=0), inflow, NEGATIVE_TOLERANCE)
        if deficit > 0.0:
            self._violation(iteration, VIOLATION_NEGATIVE_POPULATION, deficit, f"population went negative by {deficit:g}, clamped to 0")

        self._total.append(float(self._sub_compartments.sum()))

        return

    def compute_outflow(self, iteration: int, param_names, param_values, compartments: dict) -> None:
        """
        Fill the per-bucket and total outflow of every out-edge for `iteration`.

        Reads only state as of the end of iteration - 1. Calling it again for the same iteration
        is a no-op.
        """
        self._check_sized()
        if self._outflow_iteration == iteration:
            return
        if iteration != self.iteration + 1:
            raise RuntimeError(f"Compartment '{self._name}' cannot compute outflow for iteration {iteration} at iteration {self.iteration}.")

        buckets = self._sub_compartments
        outflow = self._out_sub_compartments
        outflow[:] = 0.0

        population = buckets.sum()
        occupied = buckets > 0.0

        for e, distribution in enumerate(self._out_distributions):
            if distribution.kind == KIND_MATH:
                values = {name: comp.value_at(iteration - 1) for name, comp in compartments.items()}
                amount = self.evaluator.evaluate(distribution.expression, param_names, param_values, values)
                if amount < 0.0:
                    self._violation(
                        iteration, VIOLATION_NEGATIVE_OUTFLOW, -amount, f"'{distribution.expression}' evaluated to {amount:g}, clamped to 0"
                    )
                    amount = 0.0
                if population > 0.0:
                    outflow[e, occupied] = amount * buckets[occupied] / population
            else:
                outflow[e, occupied] = buckets[occupied] * self._out_weights[e] * self._out_probs[e][occupied]

        leaving = outflow.sum(axis=0)
        over = leaving > buckets + NEGATIVE_TOLERANCE
        if np.any(over):
            excess = float((leaving[over] - buckets[over]).sum())
            self._violation(
                iteration,
                VIOLATION_OVERFLOW,
                excess,
                f"outflow exceeds population in {int(over.sum())} bucket(s) by {excess:g}, scaled down",
            )
            outflow[:, over] *= buckets[over] / leaving[over]

        self._out_totals[:, iteration] = outflow.sum(axis=1)
        self._outflow_iteration = iteration

        return

    def outflow_to(self, downstream: str, iteration: int) -> float:
        """Outflow at `iteration` along every out-edge leading to the compartment named `downstream`."""
        edges = [e for e, name in enumerate(self._out_compartments) if name == downstream]
        if not edges:
            raise ValueError(f"Compartment '{self._name}' has no out-edge to '{downstream}'.")
        return float(self._out_totals[edges, iteration].sum())

    # helpers

    def _violation(self, iteration, kind, amount, message):
        if self.strict:
            raise ModelingError(f"Compartment '{self._name}', iteration {iteration}: {message}.")
        self._violations.append(Violation(iteration, kind, amount, message))
        logger.warning(f"Compartment '{self._name}', iteration {iteration}: {message}.")
        return

    def _check_editable(self):
        if self._sized:
            raise RuntimeError(f"Compartment '{self._name}' has been sized, its out-edges can no longer be edited.")

    def _check_sized(self):
        if self._out_totals is None:
            raise RuntimeError(f"Compartment '{self._name}' is not initialized, call set_length_sub_compartment() and set_out_values().")


def _name_of(compartment) -> str:
    return compartment.name if isinstance(compartment, Compartment) else str(compartment)


def _lookup(compartments: dict, name: str, referrer: str) -> Compartment:
    try:
        return compartments[name]
    except KeyError:
        raise ValueError(f"Compartment '{referrer}' refers to unknown compartment '{name}'.") from None
