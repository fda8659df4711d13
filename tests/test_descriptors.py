import numpy as np
import pytest

from siftmatch.core.descriptors import (
    DESCRIPTOR_NORM,
    UBC_BIN_PERMUTATION,
    encode_descriptors,
    l1_root_normalize_descriptors,
    l2_normalize_descriptors,
    normalize_descriptors,
    quantize_descriptors,
    to_ubc_ordering,
    to_vlfeat_ordering,
)


def test_l2_normalize_unit_norm():
    desc = np.zeros(128, dtype=np.float32)
    desc[0], desc[1] = 3.0, 4.0
    normalized = l2_normalize_descriptors(desc)
    assert normalized.shape == (128,)
    np.testing.assert_allclose(normalized[:2], [0.6, 0.8], rtol=1e-6)
    assert np.isclose(np.linalg.norm(normalized), 1.0)


def test_l2_normalize_batch(rng):
    descs = rng.random((10, 128)).astype(np.float32)
    normalized = l2_normalize_descriptors(descs)
    np.testing.assert_allclose(np.linalg.norm(normalized, axis=1), np.ones(10), rtol=1e-5)


def test_l1_root_normalize():
    desc = np.zeros(128, dtype=np.float32)
    desc[0], desc[1] = 1.0, 3.0
    normalized = l1_root_normalize_descriptors(desc)
    np.testing.assert_allclose(normalized[:2], [0.5, np.sqrt(0.75)], rtol=1e-6)
    # Square root of an L1-normalized non-negative vector has unit L2 norm
    assert np.isclose(np.linalg.norm(normalized), 1.0)


@pytest.mark.parametrize("normalization", ["L2", "L1_ROOT"])
def test_zero_descriptor_stays_zero(normalization):
    normalized = normalize_descriptors(np.zeros((2, 128)), normalization)
    assert not np.any(np.isnan(normalized))
    assert np.all(normalized == 0)
    quantized = quantize_descriptors(normalized)
    assert quantized.dtype == np.uint8
    assert np.all(quantized == 0)


def test_unsupported_normalization():
    with pytest.raises(ValueError):
        normalize_descriptors(np.ones(128), "L1")


def test_wrong_dimension():
    with pytest.raises(ValueError):
        l2_normalize_descriptors(np.ones(64))
    with pytest.raises(ValueError):
        quantize_descriptors(np.ones((3, 129)))


def test_quantize_range_and_clamping():
    values = np.linspace(-1.0, 1.0, 128)
    quantized = quantize_descriptors(values)
    assert quantized.dtype == np.uint8
    assert quantized.min() == 0
    assert quantized.max() == 255
    # 0.25 * 512 = 128
    assert quantize_descriptors(np.full(128, 0.25))[0] == 128


def test_quantized_norm_is_about_512(rng):
    quantized = encode_descriptors(rng.random((20, 128)), "L2")
    norms = np.linalg.norm(quantized.astype(np.float64), axis=1)
    assert np.all(np.abs(norms - DESCRIPTOR_NORM) < 5)


def test_ubc_ordering_moves_bins_within_cells():
    desc = np.arange(128, dtype=np.uint8)
    ubc = to_ubc_ordering(desc)
    for cell in range(16):
        for k in range(8):
            assert ubc[8 * cell + UBC_BIN_PERMUTATION[k]] == desc[8 * cell + k]
    assert ubc[0] == 0
    assert ubc[1] == 7
    assert ubc[7] == 1
    assert ubc[8 + 4] == 12


def test_ubc_permutation_is_bijection():
    assert sorted(UBC_BIN_PERMUTATION.tolist()) == list(range(8))


def test_ubc_permutation_inverse(rng):
    descs = rng.integers(0, 256, size=(5, 128)).astype(np.uint8)
    ubc = to_ubc_ordering(descs)
    np.testing.assert_array_equal(to_vlfeat_ordering(ubc), descs)
    # The given permutation happens to be its own inverse
    np.testing.assert_array_equal(np.argsort(UBC_BIN_PERMUTATION), UBC_BIN_PERMUTATION)
    np.testing.assert_array_equal(to_ubc_ordering(ubc), descs)


def test_encode_descriptors_reorders(rng):
    raw = rng.random((3, 128))
    plain = encode_descriptors(raw, "L1_ROOT")
    reordered = encode_descriptors(raw, "L1_ROOT", to_ubc=True)
    np.testing.assert_array_equal(reordered, to_ubc_ordering(plain))
