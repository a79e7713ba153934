"""Compartment model driver: owns the compartments, wires the graph and runs the iteration loop."""

import json
import logging
from datetime import datetime
from datetime import timezone
from pathlib import Path
from typing import Optional
from typing import Tuple

import numpy as np
from tqdm import tqdm

from laser_compartments.compartment import Compartment
from laser_compartments.distributions import Distribution
from laser_compartments.distributions import make_distribution
from laser_compartments.expression import FormulaEvaluator
from laser_compartments.propertyset import PropertySet
from laser_compartments.utils import NumpyJSONEncoder

logger = logging.getLogger(__name__)

# run-control parameter, not visible to formulas
TIMES_FOLLOW_UP = "times_follow_up"


class CompartmentModel:
    """
    A population-flow model made of named compartments.

    The model is the single owner of its compartments (``self.compartments``, keyed by name);
    compartments refer to one another by name only.

    Typical use::

        model = CompartmentModel({"times_follow_up": 100, "beta": 0.4, "N": 1000})
        model.add_compartment("S", 990)
        model.add_compartment("I", 10)
        model.add_compartment("R", 0)
        model.link("S", "I", DistributionMath("beta * S * I / N"))
        model.link("I", "R", Gamma(shape=2, scale=3))
        model.run()
        model.results["I"]
    """

    def __init__(self, parameters=None, strict: bool = False, evaluator: Optional[FormulaEvaluator] = None):
        self.parameters = PropertySet({TIMES_FOLLOW_UP: Compartment.times_follow_up})
        if parameters is not None:
            self.parameters |= parameters
        self.strict = strict
        self.evaluator = evaluator
        self.compartments = {}
        self._initialized = False
        self._tick = 0
        return

    @property
    def times_follow_up(self) -> int:
        return int(self.parameters[TIMES_FOLLOW_UP])

    def add_compartment(self, name: str, init_value: float = 0.0) -> Compartment:
        """Create and register a compartment. Names must be unique and must not shadow a parameter."""
        self._check_editable()
        if name in self.compartments:
            raise ValueError(f"Compartment '{name}' already exists.")
        if name in self.parameters:
            raise ValueError(f"Compartment name '{name}' collides with a parameter of the same name.")
        compartment = Compartment(name, init_value, strict=self.strict, evaluator=self.evaluator)
        self.compartments[name] = compartment
        return compartment

    def link(self, source: str, target: str, distribution: Distribution, weight: float = 1.0) -> None:
        """Add an out-edge source -> target with the given distribution and weight."""
        self._check_editable()
        src = self._get(source)
        dst = self._get(target)
        if src.is_out_comp_added(target):
            raise ValueError(f"Compartment '{source}' already has an out-edge to '{target}'.")
        src.add_out_compartment(dst)
        src.add_out_compartment_name(target)
        src.add_out_distribution(distribution)
        src.add_out_weight(weight)
        dst.add_in_compartment(src)
        return

    def edit_distribution(self, source: str, target: str, distribution: Distribution) -> None:
        """Replace the distribution on the edge source -> target. Only allowed before the model is initialized."""
        self._check_editable()
        self._get(source).edit_out_distribution(target, distribution)
        return

    def initialize(self) -> None:
        """Fix the horizon, size every compartment and record the initial state."""
        if self._initialized:
            raise RuntimeError("Model is already initialized.")
        if not self.compartments:
            raise ValueError("Model has no compartments.")

        horizon = self.parameters[TIMES_FOLLOW_UP]
        if not isinstance(horizon, (int, np.integer)) or isinstance(horizon, bool) or horizon <= 0:
            raise ValueError(f"{TIMES_FOLLOW_UP} must be a positive integer, got {horizon!r}.")
        Compartment.times_follow_up = int(horizon)

        self._names, self._values = self.parameters.formula_arguments(exclude=(TIMES_FOLLOW_UP,))
        clashes = set(self._names) & set(self.compartments)
        if clashes:
            raise ValueError(f"Parameter names collide with compartment names: {sorted(clashes)}.")

        for compartment in self.compartments.values():
            compartment.set_length_sub_compartment()
            compartment.set_out_values()

        self._initialized = True
        self._tick = 0

        lengths = ", ".join(f"{c.name}={len(c.sub_compartments)}" for c in self.compartments.values())
        logger.info(f"Initialized {len(self.compartments)} compartments ({lengths}), times_follow_up={self.times_follow_up}")

        return

    def step(self, tick: int, pbar: Optional[tqdm] = None) -> None:
        """Advance every compartment to iteration `tick`."""
        for compartment in self.compartments.values():
            compartment.update_compartment(tick, self._names, self._values, self.compartments)
        if pbar is not None:
            pbar.set_postfix(total=f"{sum(c.value_at(tick) for c in self.compartments.values()):,.1f}", refresh=False)
        return

    def run(self, ticks: Optional[int] = None, progress: bool = True) -> None:
        """
        Run the model for `ticks` iterations (default: the remaining horizon).

        Initializes the model first if needed. Errors from formula evaluation or strict-mode
        violations stop the run.
        """
        if not self._initialized:
            self.initialize()

        remaining = self.times_follow_up - self._tick
        ticks = remaining if ticks is None else ticks
        if not (0 <= ticks <= remaining):
            raise ValueError(f"Cannot run {ticks} ticks, {remaining} remain of {self.times_follow_up}.")

        start = datetime.now(timezone.utc)
        for _ in (pbar := tqdm(range(ticks), disable=not progress)):
            self._tick += 1
            self.step(self._tick, pbar)
        finish = datetime.now(timezone.utc)
        logger.info(f"Ran {ticks} ticks in {finish - start}")

        return

    @property
    def tick(self) -> int:
        return self._tick

    @property
    def results(self) -> dict:
        """Compartment name -> total population per iteration (index 0 is the initial state)."""
        return {name: compartment.total for name, compartment in self.compartments.items()}

    @property
    def flows(self) -> dict:
        """Edge label ("source->target") -> outflow per iteration."""
        flows = {}
        for name, compartment in self.compartments.items():
            totals = compartment.out_totals[:, : self._tick + 1]
            for e, target in enumerate(compartment.out_names):
                flows[f"{name}->{target}"] = totals[e]
        return flows

    @property
    def violations(self) -> list:
        """All recorded violations as (compartment name, Violation) pairs."""
        return [(name, v) for name, c in self.compartments.items() for v in c.violations]

    def finalize(self, directory: Path, prefix: Optional[str] = None) -> Tuple[Path, Path, Path]:
        """
        Write results to `directory`.

        Writes <prefix>-compartments.csv (one column per compartment), <prefix>-flows.csv (one
        column per edge) and <prefix>-parameters.json. Returns the three paths.
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        prefix = prefix if prefix else datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")

        iterations = np.arange(self._tick + 1, dtype=np.float64)

        results = self.results
        compfile = directory / f"{prefix}-compartments.csv"
        _write_csv(compfile, iterations, results)

        flowfile = directory / f"{prefix}-flows.csv"
        _write_csv(flowfile, iterations, self.flows)

        paramfile = directory / f"{prefix}-parameters.json"
        paramfile.write_text(json.dumps(self.parameters.to_dict(), cls=NumpyJSONEncoder, indent=4))

        logger.info(f"Wrote results to '{compfile}', '{flowfile}' and '{paramfile}'.")

        return compfile, flowfile, paramfile

    @classmethod
    def from_config(cls, config: dict, strict: bool = False, evaluator: Optional[FormulaEvaluator] = None) -> "CompartmentModel":
        """
        Build a model from a configuration dictionary::

            {
                "params": {"times_follow_up": 100, "beta": 0.4, "N": 1000},
                "compartments": {
                    "S": {"initial": 990, "transitions": {"I": {"distribution": {"type": "math", "expression": "beta*S*I/N"}}}},
                    "I": {"initial": 10, "transitions": {"R": {"distribution": {"type": "gamma", "shape": 2, "scale": 3}, "weight": 1.0}}},
                    "R": {"initial": 0}
                }
            }

        Compartments are created first, so transitions may refer to compartments defined later.
        """
        if not isinstance(config, dict) or "compartments" not in config:
            raise ValueError("Model configuration must be a dictionary with a 'compartments' entry.")

        params = config.get("params", {})
        if not isinstance(params, (dict, PropertySet)):
            raise ValueError(f"Model 'params' must be a dictionary, got {params!r}.")

        compartments = config["compartments"]
        if not isinstance(compartments, dict):
            raise ValueError(f"Model 'compartments' must be a dictionary, got {compartments!r}.")

        model = cls(params, strict=strict, evaluator=evaluator)

        for name, spec in compartments.items():
            if not isinstance(spec, dict):
                raise ValueError(f"Compartment '{name}' must be a dictionary, got {spec!r}.")
            model.add_compartment(name, _number(spec.get("initial", 0.0), f"Initial population of '{name}'"))

        for name, spec in compartments.items():
            transitions = spec.get("transitions", {})
            if not isinstance(transitions, dict):
                raise ValueError(f"Transitions of '{name}' must be a dictionary, got {transitions!r}.")
            for target, transition in transitions.items():
                if target not in compartments:
                    raise ValueError(f"Transition '{name}' -> '{target}' refers to an unknown compartment.")
                if not isinstance(transition, dict):
                    raise ValueError(f"Transition '{name}' -> '{target}' must be a dictionary, got {transition!r}.")
                if "distribution" not in transition:
                    raise ValueError(f"Transition '{name}' -> '{target}' has no distribution.")
                weight = _number(transition.get("weight", 1.0), f"Weight of '{name}' -> '{target}'")
                model.link(name, target, make_distribution(transition["distribution"]), weight)

        return model

    @classmethod
    def load(cls, filename, strict: bool = False, evaluator: Optional[FormulaEvaluator] = None) -> "CompartmentModel":
        """Build a model from a JSON configuration file (see `from_config`)."""
        with Path(filename).open("r") as file:
            config = json.load(file)
        return cls.from_config(config, strict=strict, evaluator=evaluator)

    def _get(self, name: str) -> Compartment:
        if name not in self.compartments:
            raise ValueError(f"Unknown compartment '{name}'.")
        return self.compartments[name]

    def _check_editable(self):
        if self._initialized:
            raise RuntimeError("Model is initialized, the compartment graph can no longer be edited.")


def _write_csv(filename: Path, iterations: np.ndarray, columns: dict) -> None:
    header = ",".join(["iteration", *columns.keys()])
    data = np.column_stack([iterations, *columns.values()]) if columns else iterations[:, None]
    np.savetxt(filename, data, delimiter=",", header=header, comments="", fmt="%.10g")
    return


def _number(value, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        raise ValueError(f"{what} must be a number, got {value!r}.")
    return float(value)
