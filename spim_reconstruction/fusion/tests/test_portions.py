import pytest

from .._portions import ImagePortion, divide_into_portions


def test_equal_portions_with_remainder_in_last():
    portions = divide_into_portions(10, 3)
    assert portions == [ImagePortion(0, 3), ImagePortion(3, 3), ImagePortion(6, 4)]


@pytest.mark.parametrize("num_voxels,num_portions", [(1000, 1), (1000, 7), (5, 8), (0, 2)])
def test_portions_cover_range(num_voxels, num_portions):
    portions = divide_into_portions(num_voxels, num_portions)
    assert len(portions) == num_portions
    covered = [i for p in portions for i in range(p.start, p.stop)]
    assert covered == list(range(num_voxels))


def test_more_portions_than_voxels():
    assert [p.loop_size for p in divide_into_portions(2, 4)] == [0, 0, 0, 2]


def test_invalid_arguments():
    with pytest.raises(ValueError):
        divide_into_portions(10, 0)
    with pytest.raises(ValueError):
        divide_into_portions(-1, 2)


def test_portion_str():
    assert str(ImagePortion(10, 5)) == "Portion [10 ... 14]"
