"""Global registration of views from point correspondences.

This module turns a table of corresponding bead (or interest point)
locations between pairs of views into one transformation model per view.
It includes:

- Reading and validating correspondence tables
- Building and connecting one tile per view
- Optional pre-alignment for models that do not converge from identity
- Global optimization and statistics
- Writing the fitted models back to CSV

Correspondences come from an external matching stage (descriptor matching
and RANSAC); every row pairs a local coordinate in `view_a` with a local
coordinate in `view_b`.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Hashable, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ..benchmarking_util import debug_timing
from ..parameters import RegistrationParameters
from ._models import AbstractModel, create_model, create_regularized_model
from ._point_match import Point, PointMatch, Tile
from ._statistics import RegistrationStatistics
from ._tile_configuration import TileConfiguration

# Configure logger
logger = logging.getLogger(__name__)

COORDINATE_AXES = ("x", "y", "z")


def _coordinate_columns(prefix: str, ndim: int) -> List[str]:
    return [f"{prefix}{axis}" for axis in COORDINATE_AXES[:ndim]]


def read_point_matches_csv(csv_path: Union[str, Path]) -> pd.DataFrame:
    """Read a correspondence table.

    The table has one row per correspondence with the columns `view_a`,
    `view_b`, `ax`, `ay`, `az`, `bx`, `by`, `bz` and an optional `weight`.
    2-D tables omit `az` and `bz`.

    Args:
        csv_path: Path to the CSV file

    Returns:
        DataFrame with a `weight` column (filled with 1.0 where missing)
    """
    matches = pd.read_csv(csv_path)
    if "weight" not in matches.columns:
        matches["weight"] = 1.0
    matches["weight"] = matches["weight"].fillna(1.0)
    return matches


def _validate_matches(matches: pd.DataFrame, ndim: int) -> None:
    required = ["view_a", "view_b"] + _coordinate_columns("a", ndim) + _coordinate_columns("b", ndim)
    missing = [c for c in required if c not in matches.columns]
    if missing:
        raise ValueError(f"Correspondence table is missing columns: {missing}")
    if (matches["view_a"] == matches["view_b"]).any():
        raise ValueError("Correspondence table connects a view to itself")


@dataclass
class RegistrationResult:
    """Fitted models and diagnostics of one registration run."""

    models: Dict[Hashable, AbstractModel]
    """The fitted model of every view, mapping view-local to world coordinates."""
    unaligned_views: List[Hashable] = field(default_factory=list)
    """Views that pre-alignment could not reach, or with too few matches for their model."""
    statistics: Optional[RegistrationStatistics] = None
    error: float = 0.0
    iterations: int = 0


def _create_model(params: RegistrationParameters) -> AbstractModel:
    if params.regularize:
        return create_regularized_model(
            params.model, params.regularizer, params.regularize_lambda, params.ndim
        )
    return create_model(params.model, params.ndim)


def _underdetermined_views(
    matches: pd.DataFrame, views: List[Hashable], fixed: Iterable[Hashable], min_num_matches: int
) -> List[Hashable]:
    """Views with fewer matches than their model needs.

    Dropping the matches of such a view can leave a neighbour short of
    matches too, so this repeats until no further view drops out.
    """
    fixed = set(fixed)
    dropped: List[Hashable] = []
    remaining = matches
    while True:
        counts = pd.concat([remaining["view_a"], remaining["view_b"]]).value_counts()
        short = [
            view
            for view in views
            if view not in fixed and view not in dropped and counts.get(view, 0) < min_num_matches
        ]
        if not short:
            return dropped
        dropped.extend(short)
        remaining = remaining[~(remaining["view_a"].isin(short) | remaining["view_b"].isin(short))]


def register_views(
    matches: pd.DataFrame,
    params: RegistrationParameters,
    fixed_views: Optional[Iterable[Hashable]] = None,
    candidates: Optional[Mapping[Hashable, Tuple[int, int]]] = None,
) -> RegistrationResult:
    """Register all views referenced by a correspondence table.

    A view with fewer matches than its model needs keeps the identity model
    and is reported as unaligned. Its matches are left out entirely, so they
    do not pull any neighbour towards the unfitted view.

    Args:
        matches: Correspondence table, see `read_point_matches_csv`
        params: Registration parameters
        fixed_views: Views that define the world frame; defaults to the first
            view in sorted order
        candidates: Optional (candidates, correspondences) counts per view
            from the matching stage, reported as correspondence ratios

    Returns:
        RegistrationResult with one model per view

    Raises:
        ValueError: If the table is malformed or a fixed view is unknown
        IllConditionedFitError: If the matches of a view do not determine its model
    """
    _validate_matches(matches, params.ndim)
    views = sorted(pd.unique(pd.concat([matches["view_a"], matches["view_b"]])))
    if not views:
        raise ValueError("Correspondence table is empty")
    index_of = {view: i for i, view in enumerate(views)}

    fixed = list(fixed_views) if fixed_views is not None else [views[0]]
    unknown = [v for v in fixed if v not in index_of]
    if unknown:
        raise ValueError(f"Fixed views not present in the correspondence table: {unknown}")

    configuration = TileConfiguration()
    configuration.add_tiles(Tile(_create_model(params), name=view) for view in views)
    min_num_matches = configuration.tiles[0].model.min_num_matches

    underdetermined = _underdetermined_views(matches, views, fixed, min_num_matches)
    for view in underdetermined:
        logger.warning(
            f"View {view} has fewer than {min_num_matches} usable matches; "
            "keeping its identity model and ignoring its matches"
        )
    dropped = matches["view_a"].isin(underdetermined) | matches["view_b"].isin(underdetermined)
    usable = matches[~dropped]

    a_columns = _coordinate_columns("a", params.ndim)
    b_columns = _coordinate_columns("b", params.ndim)
    for (view_a, view_b), pair in usable.groupby(["view_a", "view_b"], sort=True):
        local_a = pair[a_columns].to_numpy(dtype=np.float64)
        local_b = pair[b_columns].to_numpy(dtype=np.float64)
        weights = pair["weight"].to_numpy(dtype=np.float64)
        pair_matches = [
            PointMatch(Point(a), Point(b), float(w))
            for a, b, w in zip(local_a, local_b, weights)
        ]
        configuration.connect(index_of[view_a], index_of[view_b], pair_matches)
        logger.debug(f"Connected {view_a} and {view_b} with {len(pair_matches)} matches")

    for view in fixed + underdetermined:
        configuration.fix_tile(index_of[view])

    unaligned: List[int] = []
    if params.needs_pre_alignment:
        with debug_timing("pre-alignment"):
            unaligned = configuration.pre_align()

    with debug_timing("global optimization"):
        error, iterations = configuration.optimize(
            params.max_allowed_error, params.max_iterations, params.max_plateau_width
        )

    statistics = RegistrationStatistics.collect(configuration, views, candidates)
    logger.info(f"Registered {len(views)} views: {statistics.summary()}")

    unaligned_views = {views[i] for i in unaligned} | set(underdetermined)
    return RegistrationResult(
        models={view: configuration.tiles[index_of[view]].model for view in views},
        unaligned_views=[view for view in views if view in unaligned_views],
        statistics=statistics,
        error=error,
        iterations=iterations,
    )


def models_to_frame(models: Dict[Hashable, AbstractModel]) -> pd.DataFrame:
    """Flatten models into one row per view with columns `m00` .. `m{n-1}{n}`."""
    rows = []
    for view, model in models.items():
        row = {"view": view, "model": type(model).__name__}
        for r in range(model.ndim):
            for c in range(model.ndim + 1):
                row[f"m{r}{c}"] = model.matrix[r, c]
        rows.append(row)
    return pd.DataFrame(rows)


def write_models_csv(csv_path: Union[str, Path], models: Dict[Hashable, AbstractModel]) -> None:
    models_to_frame(models).to_csv(csv_path, index=False)
