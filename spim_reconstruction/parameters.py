import enum
import os
from typing import Annotated, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, BeforeValidator, Field, NonNegativeFloat


class ModelKind(enum.Enum):
    translation = "Translation"
    rigid = "Rigid"
    affine = "Affine"


class FusionMode(enum.Enum):
    weighted_average = "Weighted-Average"
    pre_deconvolution = "Pre-Deconvolution"


class Interpolation(enum.Enum):
    nearest = "Nearest Neighbor"
    linear = "Linear"

    @property
    def order(self) -> int:
        """Spline order used by scipy.ndimage for this interpolation."""
        if self == Interpolation.nearest:
            return 0
        elif self == Interpolation.linear:
            return 1
        else:
            raise RuntimeError(f"Unexpected Interpolation value: {self}")


def _per_axis(value):
    # a single number applies to all three axes
    if isinstance(value, (int, float)):
        return (value, value, value)
    return value


PerAxis = Annotated[Tuple[float, float, float], BeforeValidator(_per_axis)]
PerAxisWidth = Annotated[
    Tuple[NonNegativeFloat, NonNegativeFloat, NonNegativeFloat], BeforeValidator(_per_axis)
]


class ChannelBlending(BaseModel, use_attribute_docstrings=True):
    """Blending of one channel, in both fusion modes."""

    blending_range: PerAxisWidth = (40.0, 40.0, 40.0)
    """Width (px) of the cosine ramp, per x, y and z axis."""

    blending_border: PerAxis = (0.0, 0.0, 0.0)
    """Offset (px) of the ramp from the image border, per axis."""


class _JsonFileMixin:
    @classmethod
    def from_json_file(cls, json_path: str):
        """Create parameters from a JSON file.

        Args:
            json_path: Path to JSON file containing parameters

        Returns:
            New instance with values from JSON
        """
        with open(json_path) as f:
            return cls.model_validate_json(f.read())

    def to_json_file(self, json_path: str) -> None:
        """Save parameters to a JSON file.

        Args:
            json_path: Path where JSON file should be saved
        """
        with open(json_path, "w") as f:
            f.write(self.model_dump_json(indent=2))


class RegistrationParameters(
    _JsonFileMixin,
    BaseModel,
    use_attribute_docstrings=True,
):
    """Parameters for the global tile optimization."""

    model: ModelKind = ModelKind.affine
    """The transformation model fitted to every view."""

    ndim: Literal[2, 3] = 3
    """Dimensionality of the point matches."""

    max_allowed_error: float = Field(default=10.0, ge=0.0)
    """Do not accept convergence while the average displacement (px) is above this."""

    max_iterations: int = Field(default=10000, ge=1)
    """Stop after this many iterations even if no minimum was found."""

    max_plateau_width: int = Field(default=200, ge=1)
    """Width of the error plateau (in iterations) required for convergence.

    Convergence is reached once the absolute slope of the average error over
    this many iterations, and over every halving of it down to 1, is below 1e-4.
    """

    pre_align: Optional[bool] = None
    """Propagate pairwise fits through the tile graph before optimizing.

    The default, `None`, pre-aligns only for models whose relaxation is not
    guaranteed to converge from identity (rigid).
    """

    regularize: bool = False
    """Blend the fitted model with a simpler regularizer model."""

    regularizer: ModelKind = ModelKind.rigid
    """The model used as regularizer when `regularize` is set."""

    regularize_lambda: float = Field(default=0.1, ge=0.0, le=1.0)
    """Weight of the regularizer (0 = no regularization, 1 = regularizer only)."""

    verbose: bool = False
    """Show debug-level logging."""

    @property
    def needs_pre_alignment(self) -> bool:
        if self.pre_align is not None:
            return self.pre_align
        return self.model == ModelKind.rigid


class FusionParameters(
    _JsonFileMixin,
    BaseModel,
    use_attribute_docstrings=True,
):
    """Parameters for weighted multi-view fusion."""

    mode: FusionMode = FusionMode.weighted_average
    """Collapse all views into one volume, or keep per-view buffers for deconvolution."""

    normalize_weights: bool = True
    """In pre-deconvolution mode, scale weights to sum to 1 wherever they sum to more."""

    blending_range: PerAxisWidth = (40.0, 40.0, 40.0)
    """Width (px) of the cosine ramp at the border of each view, per x, y and z axis."""

    blending_border: PerAxis = (0.0, 0.0, 0.0)
    """Offset (px) of the ramp from the image border, per axis; negative values start it outside the image."""

    deconvolution_blending_range: PerAxisWidth = (12.0, 12.0, 12.0)
    """Ramp width used for the per-view weights in pre-deconvolution mode."""

    deconvolution_blending_border: PerAxis = (-8.0, -8.0, -8.0)
    """Ramp offset used for the per-view weights in pre-deconvolution mode."""

    channel_blending: Dict[int, ChannelBlending] = Field(default_factory=dict)
    """Blending that replaces the defaults above for individual channels."""

    downsampling: int = Field(default=1, ge=1)
    """Integer downsampling of the output grid relative to world coordinates."""

    num_threads: int = Field(default_factory=lambda: os.cpu_count() or 1, ge=1)
    """Number of worker threads, and number of voxel portions."""

    interpolation: Interpolation = Interpolation.linear
    """Interpolation of the source images."""

    subtract_background: float = Field(default=0.0, ge=0.0)
    """Constant subtracted from every source image (clamped at 0) before fusion."""

    extract_psf: bool = False
    """Extract a point spread function per view from its bead locations (pre-deconvolution only)."""

    psf_size: int = Field(default=17, ge=3)
    """Edge length (px) of extracted point spread functions."""

    block_size: int = Field(default=65536, ge=1)
    """Number of voxels a worker resamples at once."""

    def blending(self, channel: Optional[int] = None) -> Tuple[PerAxis, PerAxis]:
        """(border, range) of the default blending weight of a channel in the current mode."""
        if channel is not None and channel in self.channel_blending:
            override = self.channel_blending[channel]
            return override.blending_border, override.blending_range
        if self.mode == FusionMode.pre_deconvolution:
            return self.deconvolution_blending_border, self.deconvolution_blending_range
        return self.blending_border, self.blending_range
