"""Implements a PropertySet class holding the global parameters of a compartment model."""

import json
from pathlib import Path

import numpy as np

from laser_compartments.utils import NumpyJSONEncoder


class PropertySet:
    """A dictionary-like bag of model parameters with `.property` access.

    Examples
    --------
        >>> from laser_compartments import PropertySet
        >>> params = PropertySet({'beta': 0.4, 'N': 1000})
        >>> params.beta
        0.4
        >>> params += {'gamma': 0.1}           # add, keys must be new
        >>> params <<= {'beta': 0.5}           # override, keys must exist
        >>> params |= {'beta': 0.6, 'mu': 0}   # add or override
        >>> params.formula_arguments()
        (['beta', 'N', 'gamma', 'mu'], [0.6, 1000.0, 0.1, 0.0])
    """

    def __init__(self, *bags):
        for bag in bags:
            for key, value in _items(bag):
                setattr(self, key, value)

    def to_dict(self):
        """Convert the PropertySet (and any nested PropertySets) to a dictionary."""
        return {key: value.to_dict() if isinstance(value, PropertySet) else value for key, value in self.__dict__.items()}

    def formula_arguments(self, exclude=()):
        """
        Return the numeric parameters as parallel name and value lists, the form expected by
        `FormulaEvaluator.evaluate`.

        Parameters:

            exclude (iterable of str): Names to leave out, e.g. run-control settings.

        Returns:

            tuple: (names, values)
        """

        names, values = [], []
        for key, value in self.__dict__.items():
            if key in exclude or isinstance(value, bool) or not isinstance(value, (int, float, np.number)):
                continue
            names.append(key)
            values.append(float(value))

        return names, values

    def save(self, filename):
        """Write the PropertySet to `filename` as JSON."""
        Path(filename).write_text(str(self))
        return

    @staticmethod
    def load(filename):
        """Load a PropertySet from a JSON file written by `save`."""
        with Path(filename).open("r") as file:
            data = json.load(file)

        return PropertySet(data)

    def __getitem__(self, key):
        return getattr(self, key)

    def __setitem__(self, key, value):
        setattr(self, key, value)

    def __add__(self, other):
        return PropertySet(self, other)

    def __iadd__(self, other):
        """
        ``ps += other``: add new keys.

        Raises:

            ValueError: If `other` contains keys already present.
        """

        for key, value in _items(other):
            if hasattr(self, key):
                raise ValueError(f"Cannot override existing value for '{key}'.")
            setattr(self, key, value)
        return self

    def __lshift__(self, other):
        result = PropertySet(self)
        result <<= other
        return result

    def __ilshift__(self, other):
        """
        ``ps <<= other``: override existing keys.

        Raises:

            ValueError: If `other` contains keys not present in the PropertySet.
        """

        for key, value in _items(other):
            if not hasattr(self, key):
                raise ValueError(f"Cannot override missing key '{key}'.")
            setattr(self, key, value)
        return self

    def __or__(self, other):
        result = PropertySet(self)
        result |= other
        return result

    def __ior__(self, other):
        for key, value in _items(other):
            setattr(self, key, value)
        return self

    def __len__(self):
        return len(self.__dict__)

    def __contains__(self, key):
        return key in self.__dict__

    def __eq__(self, other):
        return isinstance(other, PropertySet) and self.to_dict() == other.to_dict()

    def __str__(self) -> str:
        return json.dumps(self.to_dict(), indent=4, cls=NumpyJSONEncoder)

    def __repr__(self) -> str:
        return f"PropertySet({self.to_dict()!s})"


def _items(bag):
    assert isinstance(bag, (PropertySet, dict)), f"Expected a PropertySet or dict, got {type(bag).__name__}"
    return (bag.__dict__ if isinstance(bag, PropertySet) else bag).items()
