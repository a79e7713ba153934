"""
Transition-probability models for compartment out-edges.

Every out-edge of a compartment carries exactly one Distribution which turns the time an
individual has already spent in the compartment (its residence index, in timesteps) into
the probability of leaving along that edge during the current timestep.

There are three kinds:

- CDF-derived (``DistributionFunc`` and the scipy-backed families ``Exponential``,
  ``Gamma``, ``Weibull`` and ``LogNormal``): a table of discrete hazards built once from a
  continuous cumulative distribution function.
- Constant (``DistributionConstant``): the same rate regardless of residence index.
- Expression-derived (``DistributionMath``): a formula evaluated against global parameters and
  the population of other compartments; the result is an outflow amount, not a probability.

A simple example of usage::

    import laser_compartments.distributions as dist

    incubation = dist.Gamma(shape=2.0, scale=3.0)
    incubation.get_transition_prob(0)       # hazard for the first day
    len(incubation)                          # table length L

    recovery = dist.make_distribution({"type": "constant", "rate": 0.1})
"""

import math
from abc import ABC
from abc import abstractmethod

import numpy as np
from scipy import stats

# 1 - F(i) below this is treated as "everyone has left"
TAIL_THRESHOLD = 1e-6
# hard cap on table length for heavy-tailed distributions
MAX_TABLE_LENGTH = 1000

KIND_CDF = "cdf"
KIND_CONSTANT = "constant"
KIND_MATH = "math"


class Distribution(ABC):
    """Base class for the transition-probability model on one out-edge."""

    kind = None

    @abstractmethod
    def get_transition_prob(self, index: int) -> float:
        """Return the probability of leaving at residence index `index`."""

    def transition_probs(self, length: int) -> np.ndarray:
        """
        Return `get_transition_prob(i)` for ``i`` in ``[0, length)`` as an array.

        Used by Compartment to precompute a per-bucket probability vector once the
        compartment's bucket count is known.
        """
        return np.array([self.get_transition_prob(i) for i in range(length)], dtype=np.float64)

    def __len__(self) -> int:
        """Length of the transition-probability table. Distributions without a table have length 0."""
        return 0


class DistributionFunc(Distribution):
    """
    Distribution built from a continuous cumulative distribution function F.

    The discrete hazard at residence index i is

    $$h(i) = \\frac {F(i+1) - F(i)} {1 - F(i)}$$

    with h(i) = 1 where 1 - F(i) is effectively zero. The table stops at the first index L where
    1 - F(L) < `threshold` or at `max_length`, whichever comes first. Indices at or beyond L return 1.0:
    anyone still present past the table's horizon leaves with certainty.
    """

    kind = KIND_CDF

    def __init__(self, cdf, threshold: float = TAIL_THRESHOLD, max_length: int = MAX_TABLE_LENGTH):
        if not callable(cdf):
            raise ValueError(f"cdf must be callable, got {type(cdf).__name__}.")
        if not (0.0 < threshold < 1.0):
            raise ValueError(f"Tail threshold must be in (0, 1), got {threshold}.")
        if not isinstance(max_length, (int, np.integer)) or max_length <= 0:
            raise ValueError(f"Maximum table length must be a positive integer, got {max_length}.")

        self._threshold = threshold
        self._max_length = int(max_length)
        self._transition_prob = self.calc_transition_prob(cdf)

        return

    def calc_transition_prob(self, cdf) -> np.ndarray:
        """
        Build the hazard table from `cdf`.

        Parameters:

            cdf (callable): F(x), vectorised over a NumPy array of non-negative floats.

        Returns:

            np.ndarray: The discrete hazard table, length L >= 1.
        """

        x = np.arange(self._max_length + 1, dtype=np.float64)
        F = np.clip(np.asarray(cdf(x), dtype=np.float64), 0.0, 1.0)
        survival = 1.0 - F

        below = np.flatnonzero(survival < self._threshold)
        length = int(below[0]) if below.size > 0 else self._max_length
        length = max(length, 1)

        table = np.ones(length, dtype=np.float64)
        alive = survival[:length] > np.finfo(np.float64).eps
        table[alive] = (F[1 : length + 1][alive] - F[:length][alive]) / survival[:length][alive]
        np.clip(table, 0.0, 1.0, out=table)

        return table

    def get_transition_prob(self, index: int) -> float:
        if index < 0:
            raise IndexError(f"Residence index must be non-negative, got {index}.")
        if index >= len(self._transition_prob):
            return 1.0
        return float(self._transition_prob[index])

    def transition_probs(self, length: int) -> np.ndarray:
        probs = np.ones(length, dtype=np.float64)
        n = min(length, len(self._transition_prob))
        probs[:n] = self._transition_prob[:n]
        return probs

    @property
    def table(self) -> np.ndarray:
        """A copy of the hazard table."""
        return self._transition_prob.copy()

    def __len__(self) -> int:
        return len(self._transition_prob)


class Exponential(DistributionFunc):
    r"""
    Exponential residence time with rate λ.
    $$F(x) = 1 - e^{-\\lambda x}$$
    The discrete hazard is the constant 1 - e^{-λ}.
    """

    def __init__(self, rate: float, **kwargs):
        if rate <= 0:
            raise ValueError(f"Exponential rate must be positive, got {rate}.")
        self.rate = rate
        super().__init__(stats.expon(scale=1.0 / rate).cdf, **kwargs)


class Gamma(DistributionFunc):
    """Gamma residence time with shape k and scale θ."""

    def __init__(self, shape: float, scale: float, **kwargs):
        if shape <= 0 or scale <= 0:
            raise ValueError(f"Gamma shape and scale must be positive, got shape={shape}, scale={scale}.")
        self.shape = shape
        self.scale = scale
        super().__init__(stats.gamma(a=shape, scale=scale).cdf, **kwargs)


class Weibull(DistributionFunc):
    """Weibull residence time with shape k and scale λ."""

    def __init__(self, shape: float, scale: float, **kwargs):
        if shape <= 0 or scale <= 0:
            raise ValueError(f"Weibull shape and scale must be positive, got shape={shape}, scale={scale}.")
        self.shape = shape
        self.scale = scale
        super().__init__(stats.weibull_min(c=shape, scale=scale).cdf, **kwargs)


class LogNormal(DistributionFunc):
    """Log-normal residence time; `mu` and `sigma` are the mean and standard deviation of log(x)."""

    def __init__(self, mu: float, sigma: float, **kwargs):
        if sigma <= 0:
            raise ValueError(f"LogNormal sigma must be positive, got {sigma}.")
        self.mu = mu
        self.sigma = sigma
        super().__init__(stats.lognorm(s=sigma, scale=math.exp(mu)).cdf, **kwargs)


class DistributionConstant(Distribution):
    """Fixed transition rate, independent of residence index."""

    kind = KIND_CONSTANT

    def __init__(self, rate: float):
        if not (0.0 <= rate <= 1.0):
            raise ValueError(f"Constant rate must be in [0, 1], got {rate}.")
        self.rate = float(rate)
        return

    def get_transition_prob(self, index: int) -> float:
        return self.rate

    def transition_probs(self, length: int) -> np.ndarray:
        return np.full(length, self.rate, dtype=np.float64)


class DistributionMath(Distribution):
    """
    Outflow given by a formula over global parameters and compartment populations.

    The formula is evaluated once per out-edge per iteration by the compartment that owns the
    edge (see Compartment.update_compartment); its value is the number of individuals leaving
    along the edge, apportioned over residence buckets by each bucket's share of the population.
    """

    kind = KIND_MATH

    def __init__(self, expression: str):
        if not isinstance(expression, str) or not expression.strip():
            raise ValueError("Expression must be a non-empty string.")
        self.expression = expression
        return

    def get_transition_prob(self, index: int) -> float:
        raise TypeError("Expression-derived distributions produce outflow amounts, not transition probabilities.")

    def transition_probs(self, length: int) -> np.ndarray:
        raise TypeError("Expression-derived distributions produce outflow amounts, not transition probabilities.")

    def __repr__(self) -> str:
        return f"DistributionMath({self.expression!r})"


_FACTORIES = {
    "exponential": Exponential,
    "gamma": Gamma,
    "weibull": Weibull,
    "lognormal": LogNormal,
    "constant": DistributionConstant,
    "math": DistributionMath,
}


def make_distribution(spec: dict) -> Distribution:
    """
    Build a Distribution from a configuration fragment.

    Parameters:

        spec (dict): ``{"type": <name>, **kwargs}`` where name is one of exponential, gamma,
                     weibull, lognormal, constant or math and kwargs are the constructor arguments.

    Returns:

        Distribution: The constructed distribution.

    Raises:

        ValueError: If the type is missing or unknown or the arguments do not fit the constructor.
    """

    if not isinstance(spec, dict) or "type" not in spec:
        raise ValueError(f"Distribution spec must be a dictionary with a 'type' key, got {spec!r}.")

    kwargs = dict(spec)
    name = str(kwargs.pop("type")).lower()
    if name not in _FACTORIES:
        raise ValueError(f"Unknown distribution type '{name}' (expected one of {sorted(_FACTORIES)}).")

    try:
        return _FACTORIES[name](**kwargs)
    except TypeError as e:
        raise ValueError(f"Bad arguments for '{name}' distribution: {e}") from e
