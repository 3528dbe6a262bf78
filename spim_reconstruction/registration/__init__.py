"""Registration module for multi-view reconstruction.

This module provides the transformation models, the global tile
optimizer and the high-level entry point that turns point
correspondences into one model per view.
"""

from ._models import (
    AbstractModel,
    AffineModel,
    InterpolatedModel,
    RigidModel,
    TranslationModel,
    create_model,
    create_regularized_model,
)
from ._point_match import Point, PointMatch, Tile, point_matches_from_arrays
from ._statistics import RegistrationStatistics
from ._tile_configuration import ErrorStatistic, TileConfiguration
from .tile_registration import (
    RegistrationResult,
    models_to_frame,
    read_point_matches_csv,
    register_views,
    write_models_csv,
)

__all__ = [
    'AbstractModel',
    'AffineModel',
    'InterpolatedModel',
    'RigidModel',
    'TranslationModel',
    'create_model',
    'create_regularized_model',
    'Point',
    'PointMatch',
    'Tile',
    'point_matches_from_arrays',
    'RegistrationStatistics',
    'ErrorStatistic',
    'TileConfiguration',
    'RegistrationResult',
    'models_to_frame',
    'read_point_matches_csv',
    'register_views',
    'write_models_csv',
]
