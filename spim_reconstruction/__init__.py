"""SPIM Reconstruction Package.

This package provides the numerical core for reconstructing multi-view
light-sheet (SPIM) acquisitions.

Main functionality:
- Registration: Fit one translation, rigid or affine model per view from
  point correspondences by global iterative optimization
- Fusion: Resample all views into one volume with blending and content
  based weighting
- Pre-deconvolution: Produce per-view intensity, weight and PSF buffers for
  multi-view deconvolution

The package exposes the main entry points at the top level for convenience.
"""

from .errors import (
    AllocationError,
    IllConditionedFitError,
    InsufficientDataError,
    NonInvertibleTransformError,
    ReconstructionError,
    ResourceExhaustionError,
)
from .fusion import BoundingBox, FusionEngine, FusionResult, ViewData, ViewId, fuse_groups
from .parameters import (
    ChannelBlending,
    FusionMode,
    FusionParameters,
    ModelKind,
    RegistrationParameters,
)
from .registration import TileConfiguration, create_model, register_views

__all__ = [
    'AllocationError',
    'IllConditionedFitError',
    'InsufficientDataError',
    'NonInvertibleTransformError',
    'ReconstructionError',
    'ResourceExhaustionError',
    'BoundingBox',
    'FusionEngine',
    'FusionResult',
    'ViewData',
    'ViewId',
    'fuse_groups',
    'ChannelBlending',
    'FusionMode',
    'FusionParameters',
    'ModelKind',
    'RegistrationParameters',
    'TileConfiguration',
    'create_model',
    'register_views',
]
