import logging

import numpy as np
from scipy import ndimage

from ..registration._models import AbstractModel
from ..registration._typing_utils import FloatArray, NumArray

# Configure logger
logger = logging.getLogger(__name__)


def extract_psf(image: NumArray, locations_xyz: FloatArray, size: int) -> FloatArray:
    """Average the sub-volumes around bead locations into a point spread function.

    Args:
        image: The (z, y, x) image the beads were detected in
        locations_xyz: (N, 3) sub-pixel bead locations in image xyz coordinates
        size: Edge length of the cubic PSF; odd sizes center the bead on a voxel

    Returns:
        (size, size, size) float32 PSF summing to 1

    Raises:
        ValueError: If no bead lies inside the image
    """
    locations = np.atleast_2d(np.asarray(locations_xyz, dtype=np.float64))
    upper = np.array(image.shape[::-1])
    inside = np.all((locations >= 0) & (locations < upper), axis=1)
    if not inside.any():
        raise ValueError("No bead location lies inside the image")
    if not inside.all():
        logger.debug(f"Ignoring {int((~inside).sum())} beads outside the image")

    data = np.asarray(image, dtype=np.float32)
    offsets = np.arange(size, dtype=np.float64) - size // 2
    grid = np.stack(np.meshgrid(offsets, offsets, offsets, indexing="ij"))
    psf = np.zeros((size, size, size), dtype=np.float64)
    for x, y, z in locations[inside]:
        coordinates = grid + np.array([z, y, x])[:, None, None, None]
        psf += ndimage.map_coordinates(data, coordinates, order=1, mode="mirror")

    psf -= psf.min()
    total = psf.sum()
    if total > 0:
        psf /= total
    return psf.astype(np.float32)


def transform_psf(psf: FloatArray, model: AbstractModel) -> FloatArray:
    """Resample a PSF by the linear part of a view's model about its center.

    Raises:
        NonInvertibleTransformError: If the model is not invertible
    """
    inverse_xyz = model.inverse().linear
    # reorder the linear map for (z, y, x) indexing
    matrix = inverse_xyz[::-1, ::-1]
    center = (np.array(psf.shape, dtype=np.float64) - 1) / 2
    offset = center - matrix @ center
    transformed = ndimage.affine_transform(
        np.asarray(psf, dtype=np.float32), matrix, offset=offset, order=1, mode="constant"
    )
    total = transformed.sum()
    if total > 0:
        transformed /= total
    return transformed.astype(np.float32)
