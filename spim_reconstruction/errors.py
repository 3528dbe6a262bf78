"""Error types raised by the registration and fusion cores.

Errors local to one tile or one voxel are caught where they occur and
reported; errors that make a whole unit of work unsolvable propagate.
"""


class ReconstructionError(Exception):
    """Base class for all registration and fusion errors."""


class InsufficientDataError(ReconstructionError):
    """A model was asked to fit fewer matches than it requires."""

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Not enough point matches: {available} available, {required} required"
        )
        self.required = required
        self.available = available


class IllConditionedFitError(ReconstructionError):
    """A model fit is numerically degenerate (e.g. colinear points)."""


class NonInvertibleTransformError(ReconstructionError):
    """A transform has no inverse."""


class ResourceExhaustionError(ReconstructionError):
    """A weighting layer could not be computed for lack of memory."""


class AllocationError(ReconstructionError):
    """An output buffer could not be allocated."""
