__version__ = "0.1.0"

from .compartment import Compartment
from .compartment import ModelingError
from .compartment import Violation
from .distributions import Distribution
from .distributions import DistributionConstant
from .distributions import DistributionFunc
from .distributions import DistributionMath
from .distributions import Exponential
from .distributions import Gamma
from .distributions import LogNormal
from .distributions import Weibull
from .distributions import make_distribution
from .expression import AstEvaluator
from .expression import FormulaError
from .expression import FormulaEvaluator
from .model import CompartmentModel
from .propertyset import PropertySet

__all__ = [
    "AstEvaluator",
    "Compartment",
    "CompartmentModel",
    "Distribution",
    "DistributionConstant",
    "DistributionFunc",
    "DistributionMath",
    "Exponential",
    "FormulaError",
    "FormulaEvaluator",
    "Gamma",
    "LogNormal",
    "ModelingError",
    "PropertySet",
    "Violation",
    "Weibull",
    "__version__",
    "make_distribution",
]
