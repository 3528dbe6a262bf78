"""Points, point matches and tiles.

A Tile binds one view to one transformation model and to the point matches
connecting it with other tiles. Matches are stored from the tile's point of
view: ``match.p1`` is always local to the owning tile, ``match.p2`` to the
neighbour. The neighbour holds the flipped match, sharing the same Point
objects, so that updating one tile's world coordinates is immediately
visible to its neighbours.
"""
from dataclasses import dataclass, field
from typing import Hashable, Iterable, List, Optional, Sequence

import numpy as np

from ._models import AbstractModel
from ._typing_utils import FloatArray


@dataclass(eq=False)
class Point:
    """A local coordinate and its current world coordinate.

    Points hash and compare by identity.
    """

    l: FloatArray
    w: Optional[FloatArray] = None

    def __post_init__(self) -> None:
        self.l = np.asarray(self.l, dtype=np.float64)
        if self.l.ndim != 1:
            raise ValueError(f"A point must be one-dimensional, got shape {self.l.shape}")
        self.w = self.l.copy() if self.w is None else np.asarray(self.w, dtype=np.float64)

    def apply(self, model: AbstractModel) -> None:
        self.w = model.apply(self.l)


@dataclass(eq=False)
class PointMatch:
    """A weighted correspondence between a point of one tile and a point of another."""

    p1: Point
    p2: Point
    weight: float = 1.0

    def __post_init__(self) -> None:
        if not 0.0 < self.weight <= 1.0:
            raise ValueError(f"Point match weight must be within (0, 1], got {self.weight}")
        if self.p1.l.shape != self.p2.l.shape:
            raise ValueError("Matched points must have the same dimensionality")

    @property
    def distance(self) -> float:
        """World space distance between both points."""
        return float(np.linalg.norm(self.p1.w - self.p2.w))

    def flipped(self) -> "PointMatch":
        return PointMatch(self.p2, self.p1, self.weight)


def point_matches_from_arrays(
    local_a: FloatArray,
    local_b: FloatArray,
    weights: Optional[Sequence[float]] = None,
) -> List[PointMatch]:
    """Create point matches from two (N, n) arrays of corresponding local coordinates."""
    local_a = np.asarray(local_a, dtype=np.float64)
    local_b = np.asarray(local_b, dtype=np.float64)
    if local_a.shape != local_b.shape or local_a.ndim != 2:
        raise ValueError(
            f"Expected two (N, n) arrays of equal shape, got {local_a.shape} and {local_b.shape}"
        )
    if weights is None:
        weights = np.ones(len(local_a))
    if len(weights) != len(local_a):
        raise ValueError(f"Expected {len(local_a)} weights, got {len(weights)}")
    return [
        PointMatch(Point(a), Point(b), float(w))
        for a, b, w in zip(local_a, local_b, weights)
    ]


@dataclass(eq=False)
class Tile:
    """One view in the registration graph."""

    model: AbstractModel
    name: Optional[Hashable] = None
    matches: List[PointMatch] = field(default_factory=list)
    distance: float = 0.0
    """Mean world distance of all matches after the last `update`."""
    cost: float = 0.0
    """Weighted mean squared world distance after the last `update`."""

    def __post_init__(self) -> None:
        self._local: Optional[FloatArray] = None

    def add_matches(self, matches: Iterable[PointMatch]) -> None:
        for match in matches:
            if match.p1.l.shape != (self.model.ndim,):
                raise ValueError(
                    f"Point match of dimension {match.p1.l.shape} does not fit a "
                    f"{self.model.ndim}-D model"
                )
            self.matches.append(match)
        self._local = None

    def connect(self, other: "Tile", matches: Sequence[PointMatch]) -> None:
        """Add matches to this tile and their flipped copies to `other`."""
        matches = list(matches)
        self.add_matches(matches)
        other.add_matches(m.flipped() for m in matches)

    def _local_points(self) -> FloatArray:
        if self._local is None:
            self._local = np.array([m.p1.l for m in self.matches], dtype=np.float64)
        return self._local

    def apply(self) -> None:
        """Transform the local points of all matches into world coordinates."""
        if not self.matches:
            return
        world = self.model.apply(self._local_points())
        for match, w in zip(self.matches, world):
            match.p1.w = w

    def update(self) -> None:
        """Apply the model to all matches and recompute distance and cost."""
        if not self.matches:
            self.distance = 0.0
            self.cost = 0.0
            return
        self.apply()
        world = np.array([m.p1.w for m in self.matches])
        target = np.array([m.p2.w for m in self.matches])
        weights = np.array([m.weight for m in self.matches])
        distances = np.linalg.norm(world - target, axis=1)
        self.distance = float(distances.mean())
        self.cost = float((weights * distances**2).sum() / weights.sum())
        self.model.cost = self.cost

    def fit_model(self) -> None:
        """Fit the model to all incident matches.

        Raises:
            InsufficientDataError: If the tile has too few matches for its model
            IllConditionedFitError: If the matches do not determine the model
        """
        self.model.fit(self.matches)
