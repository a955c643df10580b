import pytest

from natrelay.compress import GzipCompressor

DATA = b"natrelay " * 500


def test_default_level():
    assert GzipCompressor().level == 6


@pytest.mark.parametrize("level", range(10))
def test_round_trip_all_levels(level):
    compressor = GzipCompressor(level)
    assert compressor.decompress(compressor.compress(DATA)) == DATA


def test_output_is_gzip():
    assert GzipCompressor().compress(b"x")[:2] == b"\x1f\x8b"


def test_empty_round_trip():
    compressor = GzipCompressor()
    assert compressor.decompress(compressor.compress(b"")) == b""


def test_higher_level_is_smaller_for_repetitive_data():
    stored = GzipCompressor(0).compress(DATA)
    packed = GzipCompressor(9).compress(DATA)
    assert len(packed) < len(stored)
    assert len(stored) > len(DATA)


@pytest.mark.parametrize("level", [-1, 10])
def test_invalid_level_in_constructor(level):
    with pytest.raises(ValueError, match="invalid gzip compress level"):
        GzipCompressor(level)


def test_set_level_changes_and_validates():
    compressor = GzipCompressor()
    compressor.set_level(1)
    assert compressor.level == 1
    with pytest.raises(ValueError):
        compressor.set_level(11)
    assert compressor.level == 1


def test_decompress_garbage():
    with pytest.raises(ValueError):
        GzipCompressor().decompress(b"not gzip at all")


def test_decompress_truncated():
    data = GzipCompressor().compress(DATA)
    with pytest.raises(ValueError):
        GzipCompressor().decompress(data[:-8])