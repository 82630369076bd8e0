"""
Weight initialization by color clustering.

Covers:
- Mean visible color per texel
- Separated color groups land in distinct clusters
- Fewer distinct colors than bases, unseen texels, and no data at all
"""

import numpy as np
import pytest

from specfit.core.decomposition import SpecularDecomposition
from specfit.core.errors import FitError
from specfit.core.initialization import average_colors, initialize_weights
from specfit.core.reflectance import ReflectanceData, ReflectanceViewStream
from specfit.core.settings import SpecularBasisSettings, TextureResolution


def _view(visibility, color):
    size = len(visibility)
    return ReflectanceData(visibility, np.full(size, 0.5), np.ones(size), np.ones(size), color)


def _decomposition(texel_count, basis_count):
    return SpecularDecomposition.from_scratch(
        TextureResolution(texel_count, 1), SpecularBasisSettings(basis_count, 4))


def test_average_colors():
    first = _view([1.0, 1.0, 0.0], [[0.2, 0.2, 0.2], [1.0, 0.0, 0.0], [9.0, 9.0, 9.0]])
    second = _view([1.0, 0.0, 0.0], [[0.4, 0.6, 0.8], [5.0, 5.0, 5.0], [9.0, 9.0, 9.0]])

    colors, seen = average_colors(ReflectanceViewStream([first, second]), 3)

    assert np.array_equal(seen, [True, True, False])
    assert np.allclose(colors, [[0.3, 0.4, 0.5], [1.0, 0.0, 0.0], [0.0, 0.0, 0.0]])


def test_separated_colors_form_distinct_clusters(rng):
    reddish = np.array([0.8, 0.1, 0.1]) + rng.normal(scale=0.01, size=(8, 3))
    bluish = np.array([0.1, 0.1, 0.8]) + rng.normal(scale=0.01, size=(8, 3))
    color = np.vstack([reddish, bluish])
    views = ReflectanceViewStream([_view(np.ones(16), color)])
    decomposition = _decomposition(16, 2)

    labels = initialize_weights(views, decomposition, seed=3)

    assert len(set(labels[:8])) == 1
    assert len(set(labels[8:])) == 1
    assert labels[0] != labels[8]

    weights = decomposition.weights_view()
    assert np.allclose(weights.sum(axis=1), 1.0)
    assert np.all(weights[np.arange(16), labels] == 1.0)


def test_unseen_texels_get_zero_weights():
    visibility = np.array([1.0, 1.0, 0.0, 1.0])
    color = [[0.9, 0.1, 0.1], [0.1, 0.9, 0.1], [0.5, 0.5, 0.5], [0.9, 0.1, 0.1]]
    decomposition = _decomposition(4, 2)

    labels = initialize_weights(ReflectanceViewStream([_view(visibility, color)]), decomposition)

    assert labels[2] == -1
    assert not decomposition.weights_view()[2].any()
    assert labels[0] == labels[3] != labels[1]


def test_single_color_goes_to_first_basis():
    color = np.tile([0.3, 0.3, 0.3], (5, 1))
    decomposition = _decomposition(5, 3)

    messages = []
    labels = initialize_weights(ReflectanceViewStream([_view(np.ones(5), color)]),
                                decomposition, on_progress=messages.append)

    assert np.array_equal(labels, np.zeros(5))
    assert np.allclose(decomposition.weights_view(), [[1.0, 0.0, 0.0]] * 5)
    assert messages == ["Clustering texel colors..."]


def test_no_visible_texels_raises():
    views = ReflectanceViewStream([_view(np.zeros(3), np.zeros((3, 3)))])
    with pytest.raises(FitError):
        initialize_weights(views, _decomposition(3, 2))
