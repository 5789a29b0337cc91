from typing import Any
import numpy.typing as npt
import numpy as np

# node values: scalars, arrays, augmented trees or any composite object
Value = Any
NDArrayFloat = npt.NDArray[np.float64]
# (speciation, extinction) pair, e.g. rate multipliers
RatePair = tuple[float, float]
