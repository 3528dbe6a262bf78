import logging
from dataclasses import dataclass, field
from typing import Hashable, Mapping, Optional, Sequence, Tuple

import pandas as pd

from ._tile_configuration import TileConfiguration

# Configure logger
logger = logging.getLogger(__name__)


@dataclass
class RegistrationStatistics:
    """Summary of one registration run."""

    min_error: float = 0.0
    avg_error: float = 0.0
    max_error: float = 0.0
    worst_view: Optional[Hashable] = None
    """The view with the largest mean displacement."""
    min_ratio: float = 1.0
    avg_ratio: float = 0.0
    max_ratio: float = 0.0
    """Ratios of true correspondences to candidates, if candidate counts were given."""
    per_tile: pd.DataFrame = field(default_factory=pd.DataFrame, repr=False)

    @classmethod
    def collect(
        cls,
        configuration: TileConfiguration,
        names: Optional[Sequence[Hashable]] = None,
        candidates: Optional[Mapping[Hashable, Tuple[int, int]]] = None,
    ) -> "RegistrationStatistics":
        """Collect statistics from an optimized configuration.

        Args:
            configuration: The configuration after `optimize`
            names: Name of every tile, by index; defaults to the tile names
            candidates: Optional (candidates, correspondences) counts per view
                from the matching stage, used for the inlier ratios

        Returns:
            The collected statistics
        """
        tiles = configuration.tiles
        if names is None:
            names = [t.name if t.name is not None else i for i, t in enumerate(tiles)]
        if len(names) != len(tiles):
            raise ValueError(f"Expected {len(tiles)} names, got {len(names)}")

        per_tile = pd.DataFrame(
            {
                "view": list(names),
                "distance": [t.distance for t in tiles],
                "cost": [t.cost for t in tiles],
                "num_matches": [len(t.matches) for t in tiles],
                "fixed": [i in configuration.fixed_tiles for i in range(len(tiles))],
            }
        )
        stats = cls(per_tile=per_tile)
        if tiles:
            stats.min_error = float(per_tile["distance"].min())
            stats.avg_error = float(per_tile["distance"].mean())
            stats.max_error = float(per_tile["distance"].max())
            stats.worst_view = per_tile["view"].iloc[int(per_tile["distance"].to_numpy().argmax())]

        if candidates:
            ratios = [
                correspondences / num_candidates
                for num_candidates, correspondences in candidates.values()
                if num_candidates > 0
            ]
            if ratios:
                stats.min_ratio = min(ratios)
                stats.avg_ratio = sum(ratios) / len(ratios)
                stats.max_ratio = max(ratios)
        return stats

    def to_frame(self) -> pd.DataFrame:
        """Per-tile distance, cost, match count and fixed flag."""
        return self.per_tile.copy()

    def summary(self) -> str:
        text = (
            f"displacement min/avg/max: {self.min_error:.3f}/{self.avg_error:.3f}/"
            f"{self.max_error:.3f}px, worst view: {self.worst_view}"
        )
        if self.max_ratio > 0:
            text += (
                f", correspondence ratio min/avg/max: {self.min_ratio:.3f}/"
                f"{self.avg_ratio:.3f}/{self.max_ratio:.3f}"
            )
        return text
