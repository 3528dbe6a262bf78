"""Fusion module for multi-view reconstruction.

This module resamples registered views into a common output grid, either
as one weighted-average volume or as the per-view intensity and weight
buffers consumed by multi-view deconvolution.
"""

from ._portions import ImagePortion, divide_into_portions
from ._psf import extract_psf, transform_psf
from ._views import BoundingBox, ViewData, ViewId, group_views
from .fusion import (
    FusionEngine,
    FusionResult,
    compute_overlap,
    fuse_groups,
    normalize_by_weights,
)
from .weighting import (
    BlendingWeight,
    CombinedWeight,
    ContentBasedWeight,
    DistanceBlending,
    IsolatedWeight,
    VoxelScratch,
)

__all__ = [
    'ImagePortion',
    'divide_into_portions',
    'extract_psf',
    'transform_psf',
    'BoundingBox',
    'ViewData',
    'ViewId',
    'group_views',
    'FusionEngine',
    'FusionResult',
    'compute_overlap',
    'fuse_groups',
    'normalize_by_weights',
    'BlendingWeight',
    'CombinedWeight',
    'ContentBasedWeight',
    'DistanceBlending',
    'IsolatedWeight',
    'VoxelScratch',
]
