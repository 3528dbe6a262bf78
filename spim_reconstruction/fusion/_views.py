"""View descriptions and output bounding boxes.

Coordinates are xyz throughout; images are numpy arrays indexed (z, y, x).
"""
import itertools
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from ..registration._models import AbstractModel
from ..registration._typing_utils import FloatArray, NumArray


class ViewId(NamedTuple):
    timepoint: int = 0
    channel: int = 0
    angle: int = 0
    illumination: int = 0


@dataclass(eq=False)
class ViewData:
    """One registered view: its model, its pixels and optional bead locations."""

    view_id: ViewId
    model: AbstractModel
    """Maps view-local xyz to world xyz."""
    image: Optional[NumArray] = None
    """A (z, y, x) array; loaded lazily from `loader` when not given."""
    loader: Optional[Callable[[], NumArray]] = None
    beads: Optional[FloatArray] = None
    """(N, 3) view-local xyz bead locations, used for PSF extraction."""

    def __post_init__(self) -> None:
        if self.image is None and self.loader is None:
            raise ValueError(f"View {self.view_id} needs an image or a loader")
        if self.model.ndim != 3:
            raise ValueError(f"View {self.view_id} needs a 3-D model, got {self.model.ndim}-D")

    def load(self) -> NumArray:
        if self.image is None:
            self.image = np.asarray(self.loader())
        if self.image.ndim != 3:
            raise ValueError(
                f"View {self.view_id} image must be (z, y, x), got shape {self.image.shape}"
            )
        return self.image

    @property
    def dimensions(self) -> Tuple[int, int, int]:
        """Image size in xyz order."""
        z, y, x = self.load().shape
        return x, y, z


@dataclass(frozen=True)
class BoundingBox:
    """Inclusive integer xyz corners of the output volume in world coordinates."""

    min: Tuple[int, int, int]
    max: Tuple[int, int, int]

    def __post_init__(self) -> None:
        if len(self.min) != 3 or len(self.max) != 3:
            raise ValueError("BoundingBox corners must be xyz triples")
        if any(lo > hi for lo, hi in zip(self.min, self.max)):
            raise ValueError(f"Empty bounding box: min={self.min}, max={self.max}")

    def dimensions(self, downsampling: int = 1) -> Tuple[int, int, int]:
        """Output size in xyz order for the given integer downsampling."""
        return tuple(  # type: ignore[return-value]
            (hi - lo) // downsampling + 1 for lo, hi in zip(self.min, self.max)
        )

    def shape(self, downsampling: int = 1) -> Tuple[int, int, int]:
        """Output array shape in (z, y, x) order."""
        x, y, z = self.dimensions(downsampling)
        return z, y, x

    def num_voxels(self, downsampling: int = 1) -> int:
        x, y, z = self.dimensions(downsampling)
        return x * y * z

    @classmethod
    def from_views(cls, views: Sequence[ViewData]) -> "BoundingBox":
        """Smallest box containing every view's image after transformation."""
        if not views:
            raise ValueError("Cannot compute the bounding box of no views")
        corners = []
        for view in views:
            sizes = view.dimensions
            local = np.array(
                list(itertools.product(*[(0, s - 1) for s in sizes])), dtype=np.float64
            )
            corners.append(view.model.apply(local))
        world = np.concatenate(corners)
        lo = np.floor(world.min(axis=0)).astype(int)
        hi = np.ceil(world.max(axis=0)).astype(int)
        return cls(tuple(int(v) for v in lo), tuple(int(v) for v in hi))


def group_views(views: Sequence[ViewData]) -> Dict[Tuple[int, int], List[ViewData]]:
    """Group views by (timepoint, channel), each group sorted by view id."""
    groups: Dict[Tuple[int, int], List[ViewData]] = defaultdict(list)
    for view in views:
        groups[(view.view_id.timepoint, view.view_id.channel)].append(view)
    return {key: sorted(groups[key], key=lambda v: v.view_id) for key in sorted(groups)}
