import pytest

from d2texrip.dxgi import FORMATS, format_name


@pytest.mark.parametrize(
    "index, name",
    [
        (0, "UNKNOWN"),
        (28, "R8G8B8A8_UNORM"),
        (29, "R8G8B8A8_UNORM_SRGB"),
        (71, "BC1_UNORM"),
        (98, "BC7_UNORM"),
    ],
)
def test_known_formats(index, name):
    assert format_name(index) == name


def test_last_format_is_force_uint():
    assert format_name(len(FORMATS) - 1) == "FORCE_UINT"


def test_names_are_unique():
    names = [format_name(i) for i in range(len(FORMATS))]
    assert len(set(names)) == len(names)


def test_every_index_maps_to_its_entry():
    assert [format_name(i) for i in range(len(FORMATS))] == list(FORMATS)


@pytest.mark.parametrize("index", [-1, len(FORMATS), 10_000])
def test_out_of_range_raises(index):
    with pytest.raises(ValueError):
        format_name(index)