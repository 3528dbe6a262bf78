from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class ImagePortion:
    """A contiguous range of flat voxel indices processed by one worker."""

    start: int
    loop_size: int

    @property
    def stop(self) -> int:
        return self.start + self.loop_size

    def __str__(self) -> str:
        return f"Portion [{self.start} ... {self.stop - 1}]"


def divide_into_portions(num_voxels: int, num_portions: int) -> List[ImagePortion]:
    """Split `num_voxels` into `num_portions` equal portions.

    The remainder of the division is added to the last portion, so portions
    are contiguous, disjoint and cover the whole range.
    """
    if num_voxels < 0:
        raise ValueError(f"num_voxels must not be negative, got {num_voxels}")
    if num_portions < 1:
        raise ValueError(f"num_portions must be positive, got {num_portions}")
    chunk_size, remainder = divmod(num_voxels, num_portions)
    portions = []
    for i in range(num_portions):
        size = chunk_size + remainder if i == num_portions - 1 else chunk_size
        portions.append(ImagePortion(i * chunk_size, size))
    return portions
