"""Shared fixtures: synthetic reflectance views and known bases."""

import numpy as np
import pytest

from specfit.core.material_basis import ArrayMaterialBasis
from specfit.core.reflectance import ReflectanceData, ReflectanceViewStream
from specfit.core.weight_optimization import SpecularWeightModel


@pytest.fixture
def rng():
    return np.random.default_rng(20240611)


@pytest.fixture
def make_view(rng):
    """Random view with the given texel count; color defaults to uniform noise."""

    def factory(texel_count, visible_fraction=1.0, halfway_range=(0.0, 1.0),
                geom_range=(0.2, 1.0), weight_range=(0.5, 1.5), color=None):
        visibility = (rng.random(texel_count) < visible_fraction).astype(np.float64)
        halfway = rng.uniform(*halfway_range, size=texel_count)
        geom = rng.uniform(*geom_range, size=texel_count)
        weight = rng.uniform(*weight_range, size=texel_count)
        if color is None:
            color = rng.uniform(0.0, 1.0, size=(texel_count, 3))
        return ReflectanceData(visibility, halfway, geom, weight, color)

    return factory


@pytest.fixture
def render_views(make_view):
    """
    Views whose colors are generated exactly by a basis and per-texel weights,
    so a correct fit can reproduce them with zero residual.
    """

    def factory(basis, weights, metallicity=0.0, view_count=4, **view_kwargs):
        model = SpecularWeightModel(basis, metallicity)
        views = []
        for _ in range(view_count):
            view = make_view(weights.shape[0], **view_kwargs)
            color = model.predict(weights, view.halfway_index, view.geom_ratio)
            views.append(ReflectanceData(view.visibility, view.halfway_index, view.geom_ratio,
                                         view.additional_weight, color))
        return ReflectanceViewStream(views)

    return factory


@pytest.fixture
def two_material_basis():
    """Two distinct materials, resolution 4, monotone curves ending at zero."""
    diffuse = np.array([
        [0.6, 0.3, 0.2],
        [0.1, 0.2, 0.5],
    ])
    red_lobe = np.array([0.9, 0.5, 0.2, 0.05, 0.0])
    broad_lobe = np.array([0.4, 0.35, 0.3, 0.2, 0.0])
    specular = np.stack([
        np.stack([red_lobe, 0.8 * red_lobe, 0.7 * red_lobe], axis=1),
        np.stack([broad_lobe, broad_lobe, 1.2 * broad_lobe], axis=1),
    ])
    return ArrayMaterialBasis(diffuse, specular)
