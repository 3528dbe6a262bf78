"""Weighted multi-view fusion and pre-deconvolution.

Every output voxel is mapped into each view through the inverse of the
view's model. Views whose image contains the mapped location contribute
their interpolated intensity, weighted by the product of all weighting
layers. The flat voxel range of the output is divided into one portion per
worker thread and every portion is processed in blocks of voxels, so each
worker writes only its own disjoint range of the output buffers.

Modes:
- Weighted average: one fused volume ``sum(I * w) / sum(w)``
- Sequential accumulation: ``sum(I * w)`` and ``sum(w)`` are added to
  caller-owned buffers and normalized at the end with `normalize_by_weights`
- Pre-deconvolution: one intensity and one weight buffer per view, with
  weights optionally normalized to sum to at most 1
"""
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import psutil
from scipy import ndimage
from tqdm import tqdm

from ..benchmarking_util import debug_timing
from ..errors import AllocationError, NonInvertibleTransformError
from ..parameters import FusionMode, FusionParameters
from ..registration._models import AbstractModel
from ..registration._typing_utils import FloatArray, NumArray
from ._portions import ImagePortion, divide_into_portions
from ._psf import extract_psf, transform_psf
from ._views import BoundingBox, ViewData, ViewId, group_views
from .weighting import (
    BlendingWeight,
    CombinedWeight,
    CombinedWeightInstance,
    IsolatedWeight,
    IsolatedWeightMap,
    VoxelScratch,
    prepare_isolated_weights,
)

# Configure logger
logger = logging.getLogger(__name__)

OUTPUT_DTYPE = np.float32


@dataclass
class FusionResult:
    """Output buffers of one fusion run, indexed (z, y, x)."""

    images: List[NumArray]
    """The fused volume, or one intensity buffer per view in pre-deconvolution mode."""
    weights: Optional[List[NumArray]] = None
    """The accumulated weight volume, or one weight buffer per view."""
    view_ids: List[ViewId] = field(default_factory=list)
    psfs: Optional[List[Optional[FloatArray]]] = None
    """One point spread function per view, if extracted."""
    bounding_box: Optional[BoundingBox] = None
    downsampling: int = 1
    skipped_views: List[ViewId] = field(default_factory=list)
    """Views left out because their model is not invertible."""

    @property
    def fused(self) -> NumArray:
        return self.images[0]

    @property
    def origin(self) -> Tuple[int, int, int]:
        """World xyz coordinate of voxel (0, 0, 0)."""
        return self.bounding_box.min


def _allocate(shape: Tuple[int, ...], count: int, dtype=OUTPUT_DTYPE) -> List[NumArray]:
    """Allocate `count` zeroed buffers, all or none.

    Raises:
        AllocationError: If the buffers do not fit into available memory
    """
    required = functools.reduce(lambda a, b: a * b, shape, 1) * np.dtype(dtype).itemsize * count
    # psutil's available memory is a cross-platform estimate of what can be
    # used before swapping
    available = psutil.virtual_memory().available
    if required > available:
        raise AllocationError(
            f"Cannot allocate {count} buffers of shape {shape}: "
            f"{required} bytes required, {available} available"
        )
    try:
        return [np.zeros(shape, dtype=dtype) for _ in range(count)]
    except MemoryError as e:
        raise AllocationError(f"Out of memory allocating {count} buffers of shape {shape}") from e


def _apply_affine(model: AbstractModel, xyz: FloatArray) -> FloatArray:
    # elementwise so that every voxel's result is independent of the block it is in
    A = model.linear
    t = model.translation
    return (
        t[None, :]
        + xyz[:, 0:1] * A[None, :, 0]
        + xyz[:, 1:2] * A[None, :, 1]
        + xyz[:, 2:3] * A[None, :, 2]
    )


def intersects(local_xyz: FloatArray, dimensions: FloatArray) -> np.ndarray:
    """Whether each (N, 3) local coordinate lies in ``[0, size)`` along every axis."""
    return np.all((local_xyz >= 0) & (local_xyz < dimensions), axis=1)


def normalize_by_weights(output: NumArray, weights: NumArray) -> NumArray:
    """Divide accumulated intensities by accumulated weights in place, where positive."""
    if output.shape != weights.shape:
        raise ValueError(f"Shape mismatch: {output.shape} vs {weights.shape}")
    mask = weights > 0
    output[mask] = output[mask] / weights[mask]
    return output


@dataclass
class _FusionContext:
    """Read-only state shared by all workers of one run."""

    views: Sequence[ViewData]
    images: Sequence[NumArray]
    inverses: Sequence[Optional[AbstractModel]]
    dimensions: FloatArray
    isolated: List[List[IsolatedWeightMap]]
    combined: List[CombinedWeightInstance]
    bounding_box: BoundingBox
    shape: Tuple[int, int, int]


class FusionEngine:
    """Fuse registered views into one output grid.

    Args:
        params: Fusion parameters
        isolated: Isolated weighting layers; defaults to a `BlendingWeight`
            built from `params`, pass an empty list for unweighted fusion
        combined: Combined weighting layers, e.g. `DistanceBlending`
    """

    def __init__(
        self,
        params: FusionParameters,
        isolated: Optional[Sequence[IsolatedWeight]] = None,
        combined: Optional[Sequence[CombinedWeight]] = None,
    ):
        self.params = params
        if isolated is None:
            isolated = [BlendingWeight.from_parameters(params)]
        self.isolated = list(isolated)
        self.combined = list(combined or [])
        self.tqdm_class = tqdm

    def _load_images(self, views: Sequence[ViewData]) -> List[NumArray]:
        images = []
        for view in views:
            image = view.load()
            if self.params.subtract_background > 0:
                image = np.maximum(
                    image.astype(np.float32) - np.float32(self.params.subtract_background), 0
                )
            images.append(image)
        return images

    def _invert_models(self, views: Sequence[ViewData]) -> List[Optional[AbstractModel]]:
        inverses: List[Optional[AbstractModel]] = []
        for view in views:
            try:
                inverses.append(view.model.inverse())
            except NonInvertibleTransformError as e:
                logger.warning(f"Skipping view {view.view_id} for this run: {e}")
                inverses.append(None)
        return inverses

    def _prepare(self, views: Sequence[ViewData], bounding_box: BoundingBox) -> _FusionContext:
        if not views:
            raise ValueError("Nothing to fuse: no views given")
        images = self._load_images(views)
        inverses = self._invert_models(views)
        with debug_timing("preparing isolated weights"):
            isolated = prepare_isolated_weights(
                self.isolated, views, images, self.params.num_threads
            )
        combined = [layer.prepare(views) for layer in self.combined]
        return _FusionContext(
            views=views,
            images=images,
            inverses=inverses,
            dimensions=np.array([view.dimensions for view in views], dtype=np.float64),
            isolated=isolated,
            combined=combined,
            bounding_box=bounding_box,
            shape=bounding_box.shape(self.params.downsampling),
        )

    def _map_block(self, ctx: _FusionContext, start: int, stop: int) -> Tuple[np.ndarray, VoxelScratch]:
        """Map the voxels ``[start, stop)`` into every view."""
        flat = np.arange(start, stop)
        z, y, x = np.unravel_index(flat, ctx.shape)
        world = np.stack([x, y, z], axis=1).astype(np.float64) * self.params.downsampling
        world += np.asarray(ctx.bounding_box.min, dtype=np.float64)

        scratch = VoxelScratch.empty(len(flat), len(ctx.views))
        for v, inverse in enumerate(ctx.inverses):
            if inverse is None:
                continue
            local = _apply_affine(inverse, world)
            scratch.locations[:, v] = local
            scratch.use[:, v] = intersects(local, ctx.dimensions[v])
        return flat, scratch

    def _weights(self, ctx: _FusionContext, scratch: VoxelScratch) -> FloatArray:
        weights = scratch.use.astype(np.float64)
        for instance in ctx.combined:
            instance.update_weights(scratch)
            for v in range(len(ctx.views)):
                weights[:, v] *= instance.weight(scratch, v)
        for v, maps in enumerate(ctx.isolated):
            used = scratch.use[:, v]
            if not used.any():
                continue
            for weight_map in maps:
                weights[used, v] *= weight_map.lookup(scratch.locations[used, v])
        return weights

    def _intensities(self, ctx: _FusionContext, scratch: VoxelScratch) -> FloatArray:
        intensities = np.zeros(scratch.use.shape, dtype=np.float64)
        order = self.params.interpolation.order
        for v, image in enumerate(ctx.images):
            used = scratch.use[:, v]
            if not used.any():
                continue
            coordinates = scratch.locations[used, v][:, ::-1].T
            intensities[used, v] = ndimage.map_coordinates(
                image, coordinates, output=np.float64, order=order, mode="mirror"
            )
        return intensities

    def _blocks(self, portion: ImagePortion):
        for start in range(portion.start, portion.stop, self.params.block_size):
            yield start, min(start + self.params.block_size, portion.stop)

    def _run_portions(self, process, num_voxels: int, desc: str) -> None:
        portions = divide_into_portions(num_voxels, self.params.num_threads)
        with ThreadPoolExecutor(max_workers=self.params.num_threads) as executor:
            for _ in self.tqdm_class(
                executor.map(process, portions), total=len(portions), desc=desc, leave=False
            ):
                pass

    def fuse(
        self,
        views: Sequence[ViewData],
        bounding_box: BoundingBox,
        output: Optional[NumArray] = None,
        weight_volume: Optional[NumArray] = None,
    ) -> FusionResult:
        """Fuse views into the bounding box.

        Args:
            views: The views to fuse
            bounding_box: Output region in world coordinates
            output: Existing fused volume to accumulate into (sequential fusion only)
            weight_volume: Existing weight volume; when given, weighted
                intensities and weights are added to `output` and
                `weight_volume` without normalizing

        Returns:
            FusionResult with the output buffers

        Raises:
            AllocationError: If the output buffers do not fit into memory
            ValueError: If no views are given or buffers have the wrong shape
        """
        shape = bounding_box.shape(self.params.downsampling)
        sequential = weight_volume is not None
        for name, buffer in (("output", output), ("weight_volume", weight_volume)):
            if buffer is not None and buffer.shape != shape:
                raise ValueError(f"{name} has shape {buffer.shape}, expected {shape}")
            if buffer is not None and not buffer.flags.c_contiguous:
                raise ValueError(f"{name} must be a C-contiguous array")
        if output is not None and not sequential:
            raise ValueError("An existing output buffer requires a weight_volume to accumulate into")
        if sequential and self.params.mode != FusionMode.weighted_average:
            raise ValueError("Sequential accumulation is only supported for weighted-average fusion")

        predecon = self.params.mode == FusionMode.pre_deconvolution
        if predecon:
            buffers = _allocate(shape, 2 * len(views))
            images, weights = buffers[: len(views)], buffers[len(views):]
        elif sequential:
            images = [output if output is not None else _allocate(shape, 1)[0]]
            weights = [weight_volume]
        else:
            images = _allocate(shape, 1)
            weights = None

        ctx = self._prepare(views, bounding_box)
        num_voxels = bounding_box.num_voxels(self.params.downsampling)
        out_flat = [buffer.reshape(-1) for buffer in images]
        weight_flat = [buffer.reshape(-1) for buffer in weights] if weights else []

        def process(portion: ImagePortion) -> str:
            for start, stop in self._blocks(portion):
                flat, scratch = self._map_block(ctx, start, stop)
                if not scratch.use.any():
                    continue
                w = self._weights(ctx, scratch)
                intensity = self._intensities(ctx, scratch)
                if predecon:
                    self._store_per_view(flat, scratch.use, intensity, w, out_flat, weight_flat)
                else:
                    sum_iw = (intensity * w).sum(axis=1)
                    sum_w = w.sum(axis=1)
                    if sequential:
                        out_flat[0][flat] += sum_iw.astype(OUTPUT_DTYPE)
                        weight_flat[0][flat] += sum_w.astype(OUTPUT_DTYPE)
                    else:
                        mask = sum_w > 0
                        out_flat[0][flat[mask]] = sum_iw[mask] / sum_w[mask]
            return f"{portion} finished"

        with debug_timing(f"fusing {len(views)} views into {shape}"):
            self._run_portions(process, num_voxels, desc="Fusing")

        psfs = None
        if predecon and self.params.extract_psf:
            psfs = self._extract_psfs(views, ctx.images)

        return FusionResult(
            images=images,
            weights=weights,
            view_ids=[view.view_id for view in views],
            psfs=psfs,
            bounding_box=bounding_box,
            downsampling=self.params.downsampling,
            skipped_views=[v.view_id for v, inv in zip(views, ctx.inverses) if inv is None],
        )

    def _store_per_view(self, flat, use, intensity, w, out_flat, weight_flat) -> None:
        if self.params.normalize_weights:
            total = w.sum(axis=1, keepdims=True)
            # only scale down where the views together weigh more than 1
            w = w / np.where(total > 1, total, 1.0)
        for v in range(use.shape[1]):
            used = use[:, v]
            if not used.any():
                continue
            out_flat[v][flat[used]] = intensity[used, v]
            weight_flat[v][flat[used]] = w[used, v]

    def _extract_psfs(
        self, views: Sequence[ViewData], images: Sequence[NumArray]
    ) -> List[Optional[FloatArray]]:
        psfs: List[Optional[FloatArray]] = []
        for view, image in zip(views, images):
            if view.beads is None or len(view.beads) == 0:
                logger.warning(f"View {view.view_id} has no bead locations, no PSF extracted")
                psfs.append(None)
                continue
            try:
                psf = extract_psf(image, view.beads, self.params.psf_size)
                psfs.append(transform_psf(psf, view.model))
            except (ValueError, NonInvertibleTransformError) as e:
                logger.warning(f"Could not extract a PSF for view {view.view_id}: {e}")
                psfs.append(None)
        return psfs

    def compute_overlap(self, views: Sequence[ViewData], bounding_box: BoundingBox) -> NumArray:
        """Number of views contributing to every output voxel."""
        shape = bounding_box.shape(self.params.downsampling)
        overlap = _allocate(shape, 1, dtype=np.uint16)[0]
        flat_overlap = overlap.reshape(-1)
        ctx = self._prepare_geometry(views, bounding_box)

        def process(portion: ImagePortion) -> str:
            for start, stop in self._blocks(portion):
                flat, scratch = self._map_block(ctx, start, stop)
                flat_overlap[flat] = scratch.use.sum(axis=1)
            return f"{portion} finished"

        self._run_portions(process, bounding_box.num_voxels(self.params.downsampling), desc="Overlap")
        return overlap

    def _prepare_geometry(self, views: Sequence[ViewData], bounding_box: BoundingBox) -> _FusionContext:
        if not views:
            raise ValueError("Nothing to compute: no views given")
        return _FusionContext(
            views=views,
            images=[],
            inverses=self._invert_models(views),
            dimensions=np.array([view.dimensions for view in views], dtype=np.float64),
            isolated=[],
            combined=[],
            bounding_box=bounding_box,
            shape=bounding_box.shape(self.params.downsampling),
        )


def compute_overlap(
    views: Sequence[ViewData],
    bounding_box: BoundingBox,
    params: Optional[FusionParameters] = None,
) -> NumArray:
    """Count the views contributing to every voxel of the bounding box."""
    return FusionEngine(params or FusionParameters()).compute_overlap(views, bounding_box)


def fuse_groups(
    engine: FusionEngine,
    views: Sequence[ViewData],
    bounding_box: Optional[BoundingBox] = None,
) -> Dict[Tuple[int, int], Optional[FusionResult]]:
    """Fuse every (timepoint, channel) group of views independently.

    A group whose output buffers cannot be allocated is logged and reported as
    None; the remaining groups are still fused.
    """
    results: Dict[Tuple[int, int], Optional[FusionResult]] = {}
    for key, group in group_views(views).items():
        box = bounding_box if bounding_box is not None else BoundingBox.from_views(group)
        try:
            results[key] = engine.fuse(group, box)
        except AllocationError as e:
            logger.error(f"Could not fuse timepoint {key[0]}, channel {key[1]}: {e}")
            results[key] = None
    return results
