"""Array type aliases shared by the registration and fusion packages.

Arrays of coordinates are (N, n) in xyz order; image arrays are (z, y, x).
"""
from typing import Any

import numpy as np
import numpy.typing as npt

NumArray = npt.NDArray[Any]
FloatArray = npt.NDArray[np.float64]
BoolArray = npt.NDArray[np.bool_]
