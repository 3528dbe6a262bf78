"""Per-voxel weighting strategies for multi-view fusion.

Two kinds of layers contribute to the weight of a view at an output voxel:

- Isolated layers depend on one view only. They are prepared once per view
  (possibly precomputing a whole weight image) and then looked up at the
  view-local coordinate of the voxel.
- Combined layers depend on all views contributing to the voxel, e.g. to
  share weight between overlapping views. They are prepared once for all
  views and updated per block of voxels from a VoxelScratch.

The final weight of a view is the product of all combined and all isolated
layers, and 1.0 when there are no layers.
"""
import logging
import math
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

import numpy as np
import psutil
from scipy import ndimage

from ..errors import ResourceExhaustionError
from ..parameters import FusionParameters
from ..registration._typing_utils import BoolArray, FloatArray, NumArray
from ._views import ViewData

# Configure logger
logger = logging.getLogger(__name__)


def cosine_ramp(relative: FloatArray) -> FloatArray:
    """Map a relative position in [0, 1] onto a cosine ramp from 0 to 1."""
    return (np.cos((1.0 - np.clip(relative, 0.0, 1.0)) * math.pi) + 1.0) / 2.0


@dataclass
class VoxelScratch:
    """Per-block working memory of one fusion worker.

    Every array has one row per voxel of the block and one column per view.
    """

    locations: FloatArray
    """(B, V, 3) view-local xyz coordinates of every voxel."""
    use: BoolArray
    """(B, V) whether the voxel falls inside the view's image."""
    weights: FloatArray
    """(B, V) output of the last combined layer update."""

    @classmethod
    def empty(cls, num_voxels: int, num_views: int) -> "VoxelScratch":
        return cls(
            locations=np.zeros((num_voxels, num_views, 3), dtype=np.float64),
            use=np.zeros((num_voxels, num_views), dtype=bool),
            weights=np.zeros((num_voxels, num_views), dtype=np.float64),
        )


class IsolatedWeightMap(ABC):
    @abstractmethod
    def lookup(self, local_xyz: FloatArray) -> FloatArray:
        """Weights at (N, 3) view-local xyz coordinates inside the image."""


class IsolatedWeight(ABC):
    """A weighting layer that depends on a single view."""

    name = "isolated weight"

    @abstractmethod
    def prepare(self, view: ViewData, image: NumArray) -> IsolatedWeightMap:
        """Prepare the weight map of one view from its (preprocessed) image.

        Raises:
            ResourceExhaustionError: If there is not enough memory for the map
        """


class CombinedWeightInstance(ABC):
    @abstractmethod
    def update_weights(self, scratch: VoxelScratch) -> None:
        """Fill `scratch.weights` from `scratch.locations` and `scratch.use`."""

    def weight(self, scratch: VoxelScratch, view: int) -> FloatArray:
        """Weights of one view after the last `update_weights`."""
        return scratch.weights[:, view]


class CombinedWeight(ABC):
    """A weighting layer that depends on all views contributing to a voxel."""

    name = "combined weight"

    @abstractmethod
    def prepare(self, views: Sequence[ViewData]) -> CombinedWeightInstance:
        pass


def _per_axis(value, name: str) -> FloatArray:
    values = np.broadcast_to(np.asarray(value, dtype=np.float64), (3,)).copy()
    if name == "blending_range" and np.any(values < 0):
        raise ValueError(f"{name} must not be negative, got {value}")
    return values


class _BlendingWeightMap(IsolatedWeightMap):
    def __init__(self, dimensions, border: FloatArray, blending_range: FloatArray):
        self.dimensions = np.asarray(dimensions, dtype=np.float64)
        self.border = border
        self.blending_range = blending_range

    def lookup(self, local_xyz: FloatArray) -> FloatArray:
        local_xyz = np.asarray(local_xyz, dtype=np.float64)
        inside = np.all((local_xyz >= 0) & (local_xyz < self.dimensions), axis=1)
        distance = np.minimum(
            local_xyz - self.border, (self.dimensions - 1 - self.border) - local_xyz
        )
        distance = np.maximum(1.0, distance)
        ramped = self.blending_range > 0
        relative = np.where(
            ramped, distance / np.where(ramped, self.blending_range, 1.0), 1.0
        )
        weights = np.prod(cosine_ramp(relative), axis=1)
        return np.where(inside, weights, 0.0)


class BlendingWeight(IsolatedWeight):
    """Cosine ramp from the image border inwards.

    Args:
        border: Offset (px) of the ramp from the image border, one value or
            one per x, y and z axis; negative values start the ramp outside
            the image
        blending_range: Width (px) of the ramp, one value or one per axis
        channels: Optional ``{channel: (border, blending_range)}`` replacing
            the defaults for views of that channel
    """

    name = "blending"

    def __init__(
        self,
        border=0.0,
        blending_range=40.0,
        channels: Optional[Mapping[int, Tuple]] = None,
    ):
        self.border = _per_axis(border, "border")
        self.blending_range = _per_axis(blending_range, "blending_range")
        self.channels = {
            channel: (_per_axis(b, "border"), _per_axis(r, "blending_range"))
            for channel, (b, r) in (channels or {}).items()
        }

    @classmethod
    def from_parameters(cls, params: FusionParameters) -> "BlendingWeight":
        """The blending of the parameters' mode, with their per-channel overrides."""
        border, blending_range = params.blending()
        return cls(
            border,
            blending_range,
            channels={channel: params.blending(channel) for channel in params.channel_blending},
        )

    def prepare(self, view: ViewData, image: NumArray) -> IsolatedWeightMap:
        border, blending_range = self.channels.get(
            view.view_id.channel, (self.border, self.blending_range)
        )
        z, y, x = image.shape
        return _BlendingWeightMap((x, y, z), border, blending_range)


class _ImageWeightMap(IsolatedWeightMap):
    def __init__(self, weights: FloatArray):
        self.weights = weights
        self.upper = np.array(weights.shape[::-1]) - 1

    def lookup(self, local_xyz: FloatArray) -> FloatArray:
        voxel = np.clip(np.rint(local_xyz).astype(np.int64), 0, self.upper)
        return self.weights[voxel[:, 2], voxel[:, 1], voxel[:, 0]].astype(np.float64)


class ContentBasedWeight(IsolatedWeight):
    """Local image information ``G_sigma2 * (I - G_sigma1 * I)^2``, scaled to [0, 1].

    Views carry more weight where they are sharp, which favours the view
    closest to the detection objective in every region.
    """

    name = "content based"

    def __init__(self, sigma1: float = 20.0, sigma2: float = 40.0):
        self.sigma1 = sigma1
        self.sigma2 = sigma2

    def prepare(self, view: ViewData, image: NumArray) -> IsolatedWeightMap:
        # the image, its low-pass and the result are held at the same time
        required = 3 * image.size * np.dtype(np.float32).itemsize
        available = psutil.virtual_memory().available
        if required > available:
            raise ResourceExhaustionError(
                f"Content based weights of view {view.view_id} need {required} bytes, "
                f"{available} available"
            )
        try:
            data = image.astype(np.float32)
            high_pass = data - ndimage.gaussian_filter(data, self.sigma1, mode="mirror")
            weights = ndimage.gaussian_filter(high_pass**2, self.sigma2, mode="mirror")
        except MemoryError as e:
            raise ResourceExhaustionError(
                f"Out of memory computing content based weights of view {view.view_id}"
            ) from e
        lo = float(weights.min())
        hi = float(weights.max())
        if hi > lo:
            weights = (weights - lo) / (hi - lo)
        else:
            weights = np.ones_like(weights)
        return _ImageWeightMap(weights)


class _DistanceBlendingInstance(CombinedWeightInstance):
    def __init__(self, dimensions: FloatArray, blending_range: float):
        self.dimensions = dimensions
        self.blending_range = blending_range

    def update_weights(self, scratch: VoxelScratch) -> None:
        border_distance = np.minimum(
            scratch.locations, (self.dimensions[None, :, :] - 1) - scratch.locations
        ).min(axis=2)
        border_distance = np.maximum(border_distance, 0.0)
        if self.blending_range > 0:
            ramp = cosine_ramp(border_distance / self.blending_range)
        else:
            ramp = np.ones_like(border_distance)
        ramp = np.where(scratch.use, ramp, 0.0)

        total = ramp.sum(axis=1, keepdims=True)
        num_used = scratch.use.sum(axis=1, keepdims=True)
        # views touching the voxel exactly at their border share it equally
        equal_share = np.where(scratch.use, 1.0 / np.maximum(num_used, 1), 0.0)
        scratch.weights[:] = np.where(total > 0, ramp / np.where(total > 0, total, 1.0), equal_share)


class DistanceBlending(CombinedWeight):
    """Share each voxel between the contributing views by their distance to the image border."""

    name = "distance blending"

    def __init__(self, blending_range: float = 40.0):
        self.blending_range = blending_range

    def prepare(self, views: Sequence[ViewData]) -> CombinedWeightInstance:
        dimensions = np.array([view.dimensions for view in views], dtype=np.float64)
        return _DistanceBlendingInstance(dimensions, self.blending_range)


def prepare_isolated_weights(
    layers: Sequence[IsolatedWeight],
    views: Sequence[ViewData],
    images: Sequence[NumArray],
    num_threads: int,
) -> List[List[IsolatedWeightMap]]:
    """Prepare every isolated layer for every view, one job per view.

    Returns:
        ``maps[view][layer]``, or an empty list when there are no layers or
        when any layer ran out of resources, which disables isolated
        weighting for the whole run
    """
    if not layers:
        return []

    def prepare_view(i: int) -> List[IsolatedWeightMap]:
        return [layer.prepare(views[i], images[i]) for layer in layers]

    try:
        with ThreadPoolExecutor(max_workers=num_threads) as executor:
            return list(executor.map(prepare_view, range(len(views))))
    except (ResourceExhaustionError, MemoryError) as e:
        names = ", ".join(layer.name for layer in layers)
        logger.warning(f"Disabling isolated weights ({names}) for this run: {e}")
        return []
