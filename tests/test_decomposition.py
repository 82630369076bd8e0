"""
Specular decomposition state and hole filling.

Covers:
- from_scratch / from_existing_basis ownership
- Weight and validity accessors
- fill_holes(): neighbor averaging, linear-index wrap-around, multi-pass
  propagation, zero-sum neighbors and the no-data case
- diffuse_map()
"""

import numpy as np
import pytest

from specfit.core.decomposition import SpecularDecomposition
from specfit.core.material_basis import ArrayMaterialBasis
from specfit.core.settings import SpecularBasisSettings, TextureResolution


def _decomposition(width, height, basis_count=2):
    return SpecularDecomposition.from_scratch(
        TextureResolution(width, height), SpecularBasisSettings(basis_count, 3))


def _all_valid_except(decomposition, rng, hole):
    weights = rng.uniform(0.1, 1.0, size=(decomposition.texel_count, decomposition.basis_count))
    decomposition.set_weights(slice(None), weights)
    decomposition.set_weights_validity(slice(None), True)
    decomposition.set_weights_validity(hole, False)
    return weights


def test_from_scratch_owns_a_black_basis():
    decomposition = _decomposition(4, 3, basis_count=5)
    assert decomposition.owns_basis
    assert decomposition.basis_count == 5
    assert decomposition.texel_count == 12
    assert decomposition.basis.specular_resolution == 3
    assert not decomposition.basis.specular_curves().any()
    assert decomposition.weights_view().shape == (12, 5)
    assert decomposition.valid_count() == 0


def test_from_existing_basis_borrows():
    first = _decomposition(2, 2)
    second = SpecularDecomposition.from_existing_basis(TextureResolution(8, 8), first)
    assert second.basis is first.basis
    assert not second.owns_basis
    assert second.texel_count == 64


def test_weight_accessors():
    decomposition = _decomposition(3, 1)
    decomposition.set_weights(1, [0.25, 0.75])
    decomposition.set_weights_validity(1, True)

    weights = decomposition.texel_weights(1)
    assert np.allclose(weights, [0.25, 0.75])
    weights[0] = 9.0
    assert decomposition.texel_weights(1)[0] == 0.25

    assert decomposition.are_weights_valid(1)
    assert not decomposition.are_weights_valid(0)
    assert decomposition.valid_count() == 1

    decomposition.invalidate_weights()
    assert decomposition.valid_count() == 0
    # Invalidation keeps the weights themselves.
    assert np.allclose(decomposition.texel_weights(1), [0.25, 0.75])


def test_views_are_read_only():
    decomposition = _decomposition(2, 2)
    with pytest.raises(ValueError):
        decomposition.weights_view()[0, 0] = 1.0
    with pytest.raises(ValueError):
        decomposition.validity_view()[0] = True


def test_set_weights_checks_basis_count():
    decomposition = _decomposition(2, 2)
    with pytest.raises(ValueError):
        decomposition.set_weights(0, [1.0, 0.0, 0.0])


def test_single_hole_takes_neighbor_mean(rng):
    decomposition = _decomposition(5, 5)
    weights = _all_valid_except(decomposition, rng, 12)

    assert decomposition.fill_holes() == 1
    expected = weights[[11, 13, 7, 17]].mean(axis=0)
    assert np.allclose(decomposition.texel_weights(12), expected)
    assert decomposition.valid_count() == 25


def test_neighbors_wrap_by_linear_index(rng):
    # Texel 3 starts the second row of a 3x3 grid: its left neighbor is the
    # last texel of the first row.
    decomposition = _decomposition(3, 3)
    weights = _all_valid_except(decomposition, rng, 3)

    decomposition.fill_holes()
    expected = weights[[2, 4, 0, 6]].mean(axis=0)
    assert np.allclose(decomposition.texel_weights(3), expected)


def test_weights_propagate_over_several_passes():
    decomposition = _decomposition(5, 1)
    decomposition.set_weights(0, [1.0, 0.0])
    decomposition.set_weights_validity(0, True)

    assert decomposition.fill_holes() == 4
    assert decomposition.valid_count() == 5
    assert np.allclose(decomposition.weights_view(), [[1.0, 0.0]] * 5)


def test_zero_sum_neighbors_keep_prior_weights():
    decomposition = _decomposition(3, 1)
    decomposition.set_weights(0, [0.0, 0.0])
    decomposition.set_weights_validity(0, True)
    decomposition.set_weights(1, [0.3, 0.7])
    decomposition.set_weights(2, [0.2, 0.8])

    assert decomposition.fill_holes() == 2
    assert np.allclose(decomposition.texel_weights(1), [0.3, 0.7])
    assert np.allclose(decomposition.texel_weights(2), [0.2, 0.8])
    assert decomposition.valid_count() == 3


def test_nothing_to_propagate_from():
    decomposition = _decomposition(4, 4)
    assert decomposition.fill_holes() == 0
    assert decomposition.valid_count() == 0


def test_fully_valid_texture_is_untouched(rng):
    decomposition = _decomposition(3, 2)
    weights = _all_valid_except(decomposition, rng, [])
    assert decomposition.fill_holes() == 0
    assert np.array_equal(decomposition.weights_view(), weights)


def test_diffuse_map_blends_albedos():
    basis = ArrayMaterialBasis([[1.0, 0.0, 0.0], [0.0, 0.0, 1.0]], np.zeros((2, 4, 3)))
    decomposition = SpecularDecomposition(TextureResolution(2, 1), basis, owns_basis=True)
    decomposition.set_weights(slice(None), [[1.0, 0.0], [0.25, 0.75]])

    assert np.allclose(decomposition.diffuse_map(), [[1.0, 0.0, 0.0], [0.25, 0.0, 0.75]])
    assert np.allclose(decomposition.diffuse_albedo(1), [0.0, 0.0, 1.0])
