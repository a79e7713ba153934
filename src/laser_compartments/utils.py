"""Utility functions and classes for laser-compartments."""

from json import JSONEncoder
from pathlib import Path

import numpy as np


class NumpyJSONEncoder(JSONEncoder):
    """Custom JSON encoder for NumPy scalars and arrays."""

    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, Path):
            return str(obj)
        return JSONEncoder.default(self, obj)
