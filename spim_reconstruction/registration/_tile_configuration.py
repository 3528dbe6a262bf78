"""Global optimization of a configuration of tiles.

Tiles live in an arena addressed by integer index; their connectivity is
kept in a NetworkX graph over those indices. The optimizer relaxes the
configuration iteratively: every non-fixed tile is refitted to its matches
in turn, using the current state of its neighbours, until the average
displacement reaches a plateau below the allowed error.

The module includes:
- ErrorStatistic, the plateau observer used for convergence detection
- TileConfiguration.optimize, the relaxation loop
- TileConfiguration.pre_align, breadth-first propagation of pairwise fits
"""
import collections
import logging
from typing import Deque, Iterable, List, Optional, Sequence, Set, Tuple

import networkx as nx

from ..errors import InsufficientDataError
from ._point_match import PointMatch, Tile

# Configure logger
logger = logging.getLogger(__name__)

# Slope of the average error below which the optimization counts as converged
PLATEAU_SLOPE_THRESHOLD = 1e-4


class ErrorStatistic:
    """Ring buffer of the most recent average errors."""

    def __init__(self, capacity: int):
        if capacity < 2:
            raise ValueError(f"ErrorStatistic needs a capacity of at least 2, got {capacity}")
        self.capacity = capacity
        self.values: Deque[float] = collections.deque(maxlen=capacity)
        self.num_samples = 0

    def add(self, value: float) -> None:
        self.values.append(float(value))
        self.num_samples += 1

    def __len__(self) -> int:
        """Total number of samples ever added, including those evicted."""
        return self.num_samples

    def wide_slope(self, width: int) -> float:
        """Average slope over the last `width` steps.

        Raises:
            ValueError: If fewer than `width + 1` samples are buffered
        """
        if width < 1 or width >= len(self.values):
            raise ValueError(
                f"Cannot compute slope over {width} steps from {len(self.values)} samples"
            )
        return (self.values[-1] - self.values[-1 - width]) / width


class TileConfiguration:
    """A set of tiles, their connectivity, and the subset that stays fixed."""

    def __init__(self) -> None:
        self.tiles: List[Tile] = []
        self.fixed_tiles: Set[int] = set()
        self.graph = nx.Graph()
        self.error = float("inf")
        self.min_error = float("inf")
        self.max_error = 0.0
        self._observer: Optional[ErrorStatistic] = None

    def add_tile(self, tile: Tile) -> int:
        """Add a tile and return its index."""
        index = len(self.tiles)
        self.tiles.append(tile)
        self.graph.add_node(index)
        self._observer = None
        return index

    def add_tiles(self, tiles: Iterable[Tile]) -> List[int]:
        return [self.add_tile(tile) for tile in tiles]

    def fix_tile(self, index: int) -> None:
        self._check_index(index)
        self.fixed_tiles.add(index)
        self._observer = None

    def connect(self, index_a: int, index_b: int, matches: Sequence[PointMatch]) -> None:
        """Connect two tiles with matches oriented from tile `a` to tile `b`.

        Tile `a` stores the matches as given, tile `b` their flipped copies.
        """
        self._check_index(index_a)
        self._check_index(index_b)
        if index_a == index_b:
            raise ValueError(f"Cannot connect tile {index_a} to itself")
        if not matches:
            return
        self.tiles[index_a].connect(self.tiles[index_b], matches)
        if self.graph.has_edge(index_a, index_b):
            self.graph.edges[index_a, index_b]["num_matches"] += len(matches)
        else:
            self.graph.add_edge(index_a, index_b, num_matches=len(matches))
        self._observer = None

    def connected_tiles(self, index: int) -> List[int]:
        return sorted(self.graph.neighbors(index))

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self.tiles):
            raise ValueError(f"No tile with index {index} (have {len(self.tiles)} tiles)")

    def update(self) -> None:
        """Update all matches of all tiles and estimate the average displacement."""
        if not self.tiles:
            self.error = self.min_error = self.max_error = 0.0
            return
        total = 0.0
        self.min_error = float("inf")
        self.max_error = 0.0
        for tile in self.tiles:
            tile.update()
            d = tile.distance
            self.min_error = min(self.min_error, d)
            self.max_error = max(self.max_error, d)
            total += d
        self.error = total / len(self.tiles)

    def compute_error(self) -> float:
        self.update()
        logger.info(
            f"average displacement: {self.error:.3f}px, "
            f"minimal displacement: {self.min_error:.3f}px, "
            f"maximal displacement: {self.max_error:.3f}px"
        )
        return self.error

    def optimize(
        self,
        max_allowed_error: float,
        max_iterations: int,
        max_plateau_width: int,
    ) -> Tuple[float, int]:
        """Minimize the displacement of all point matches of all tiles.

        Args:
            max_allowed_error: Do not accept convergence while the average
                displacement is above this value
            max_iterations: Stop after that many iterations even if no
                minimum was found
            max_plateau_width: Convergence is reached once the absolute slope
                of the average displacement over this many iterations, and
                over every halving of it, is smaller than 1e-4

        Returns:
            Tuple of (final average displacement, iterations run)

        Raises:
            InsufficientDataError: If a tile has fewer matches than its model needs
            IllConditionedFitError: If a tile's matches do not determine its model
        """
        if max_plateau_width < 1:
            raise ValueError(f"max_plateau_width must be positive, got {max_plateau_width}")
        # the observer survives between calls so that an already converged
        # configuration is recognized after a single iteration
        if self._observer is None or self._observer.capacity != max_plateau_width + 1:
            self._observer = ErrorStatistic(max_plateau_width + 1)
        observer = self._observer

        free_tiles = [t for i, t in enumerate(self.tiles) if i not in self.fixed_tiles]

        i = 0
        proceed = i < max_iterations
        while proceed:
            for tile in free_tiles:
                tile.update()
                tile.fit_model()
                tile.update()
            self.update()
            observer.add(self.error)

            if len(observer) > max_plateau_width + 1:
                proceed = self.error > max_allowed_error
                d = max_plateau_width
                while not proceed and d >= 1:
                    try:
                        proceed |= abs(observer.wide_slope(d)) > PLATEAU_SLOPE_THRESHOLD
                    except ValueError as e:
                        logger.warning(f"Could not compute error slope over {d} iterations: {e}")
                        proceed = True
                    d //= 2

            i += 1
            proceed = proceed and i < max_iterations

        logger.info(
            f"Optimized configuration of {len(self.tiles)} tiles after {i} iterations: "
            f"average displacement: {self.error:.3f}px, "
            f"minimal displacement: {self.min_error:.3f}px, "
            f"maximal displacement: {self.max_error:.3f}px"
        )
        return self.error, i

    def pre_align(self) -> List[int]:
        """Pre-align all non-fixed tiles by propagating pairwise fits through the graph.

        This does not give a correct registration but a good starting point for
        `optimize`, which is necessary for models whose relaxation is not
        guaranteed to converge from identity.

        Returns:
            Indices of the tiles that could not be aligned, in ascending order

        Raises:
            IllConditionedFitError: If a pairwise fit is degenerate
        """
        if not self.tiles:
            return []

        if self.fixed_tiles:
            aligned = sorted(self.fixed_tiles)
        else:
            # nothing fixed, so the first tile defines the frame
            aligned = [0]
        unaligned = [i for i in range(len(self.tiles)) if i not in aligned]

        k = 0
        while k < len(aligned) and unaligned:
            reference = aligned[k]
            k += 1
            reference_tile = self.tiles[reference]
            # world coordinates of the reference points in the reference frame
            reference_tile.apply()
            neighbours = set(self.graph.neighbors(reference))

            still_unaligned = []
            for target in unaligned:
                if target not in neighbours:
                    still_unaligned.append(target)
                    continue
                target_tile = self.tiles[target]
                matches = self.connecting_point_matches(target, reference)
                if len(matches) <= target_tile.model.min_num_matches:
                    still_unaligned.append(target)
                    continue
                try:
                    target_tile.model.fit(matches)
                except InsufficientDataError as e:
                    logger.debug(f"Cannot pre-align tile {target} to tile {reference}: {e}")
                    still_unaligned.append(target)
                    continue
                logger.debug(f"Pre-aligned tile {target} to tile {reference} ({len(matches)} matches)")
                aligned.append(target)
            unaligned = still_unaligned

        if unaligned:
            names = [self.tiles[i].name if self.tiles[i].name is not None else i for i in unaligned]
            logger.warning(f"Could not pre-align {len(unaligned)} tiles: {names}")
        return unaligned

    def connecting_point_matches(self, target: int, reference: int) -> List[PointMatch]:
        """Return the point matches that connect the target tile to the reference tile.

        The matches are oriented ``p1`` = target, ``p2`` = reference, so that a
        model fitted to them maps the target's local coordinates onto the
        reference's world coordinates.
        """
        reference_points = {m.p1 for m in self.tiles[reference].matches}
        return [m for m in self.tiles[target].matches if m.p2 in reference_points]
