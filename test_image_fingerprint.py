"""Tests for perceptual fingerprints and Hamming distance."""
import random
from io import BytesIO

import imagehash
import numpy as np
import pytest
from PIL import Image

from image_fingerprint import CodecError, Fingerprint, band_widths, distance, fingerprint


def test_distance_is_symmetric_and_zero_on_self():
    rng = random.Random(42)
    for _ in range(200):
        a = Fingerprint.from_int(rng.getrandbits(64), 64)
        b = Fingerprint.from_int(rng.getrandbits(64), 64)
        assert distance(a, b) == distance(b, a)
        assert distance(a, a) == 0
        assert 0 <= distance(a, b) <= 64


def test_distance_counts_flipped_bits(fp64):
    base = fp64(0x0123456789ABCDEF)
    assert distance(base, fp64(0x0123456789ABCDEF, flips=(0, 17, 63))) == 3
    assert distance(fp64(0), fp64(2**64 - 1)) == 64


def test_distance_rejects_mismatched_widths():
    with pytest.raises(CodecError):
        distance(Fingerprint.from_int(1, 64), Fingerprint.from_int(1, 256))


def test_fingerprint_value_must_match_width():
    with pytest.raises(ValueError):
        Fingerprint(b"\x00" * 7, 64)


def test_hex_matches_imagehash(make_scene):
    image = make_scene("sunset")
    image_hash = imagehash.phash(image)
    fp = Fingerprint.from_imagehash(image_hash)

    assert fp.bits == 64
    assert fp.hex() == str(image_hash)
    assert Fingerprint.from_hex(str(image_hash)) == fp


def test_fingerprint_is_deterministic(make_scene):
    assert fingerprint(make_scene("sunset")) == fingerprint(make_scene("sunset"))


def test_fingerprint_width_follows_hash_size(make_scene):
    assert fingerprint(make_scene("sunset"), hash_size=8).bits == 64
    assert fingerprint(make_scene("sunset"), hash_size=16).bits == 256


def test_recompressed_copy_stays_close(make_scene, encode):
    original = make_scene("sunset")
    copy = Image.open(BytesIO(encode(original, fmt="JPEG", quality=60, scale=0.8)))

    assert distance(fingerprint(original), fingerprint(copy)) <= 10


def test_unrelated_images_are_far_apart(make_scene):
    sunset = fingerprint(make_scene("sunset"))
    checker = fingerprint(make_scene("checker"))
    bars = fingerprint(make_scene("bars"))

    assert distance(sunset, checker) > 10
    assert distance(sunset, bars) > 10
    assert distance(checker, bars) > 10


def test_numpy_input_matches_pil(make_scene):
    image = make_scene("bars")
    assert fingerprint(np.asarray(image)) == fingerprint(image)


def test_palette_and_alpha_images_are_accepted(make_scene):
    image = make_scene("checker")
    assert fingerprint(image.convert("P")).bits == 64
    assert fingerprint(image.convert("RGBA")).bits == 64


def test_zero_dimension_image_is_rejected():
    with pytest.raises(CodecError):
        fingerprint(Image.new("RGB", (0, 0)))
    with pytest.raises(CodecError):
        fingerprint(np.zeros((0, 16, 3), dtype=np.uint8))


def test_unsupported_pixel_buffer_is_rejected():
    with pytest.raises(CodecError):
        fingerprint(b"raw bytes are not pixels")


def test_band_widths_partition_the_bits():
    assert band_widths(64, 8) == [8] * 8
    assert band_widths(64, 7) == [10, 9, 9, 9, 9, 9, 9]
    assert sum(band_widths(256, 32)) == 256


@pytest.mark.parametrize("bits,count", [(64, 0), (64, 65), (64, 1)])
def test_band_widths_rejects_unusable_layouts(bits, count):
    with pytest.raises(ValueError):
        band_widths(bits, count)


def test_bands_read_most_significant_first():
    fp = Fingerprint.from_int(0x0102030405060708, 64)
    assert fp.bands(8) == [1, 2, 3, 4, 5, 6, 7, 8]
    assert fp.bands(2) == [0x01020304, 0x05060708]


def test_float_images_keep_their_structure(make_scene):
    grey = make_scene("sunset").convert("L")
    as_float = Image.fromarray(np.asarray(grey, dtype=np.float32) * 1000.0 + 5.0)
    assert as_float.mode == "F"

    fp = fingerprint(as_float)
    assert distance(fp, fingerprint(grey)) <= 4

    checker = Image.fromarray(np.asarray(make_scene("checker").convert("L"), dtype=np.float32))
    assert distance(fp, fingerprint(checker)) > 10
