"""
Reflectance matrix builder.

Covers:
- Closed-form accumulation vs. the dense AᵀA / Aᵀy reference
- A hand-computed single-sample system
- Additivity of per-view contributions
- Invisible samples, validation mode and argument checks
"""

import numpy as np
import pytest

from specfit.core.basis_functions import StepBasis
from specfit.core.errors import MatrixValidationError
from specfit.core.matrix_builder import ReflectanceMatrixBuilder, build_dense_reference
from specfit.core.matrix_system import MatrixSystem
from specfit.core.reflectance import ReflectanceData


def _build(view, weights, metallicity, library, validate=False):
    system = MatrixSystem.zeros(weights.shape[1] * (library.resolution + 1))
    ReflectanceMatrixBuilder(view, weights, metallicity, library, system,
                             validate=validate).execute()
    return system


def _random_weights(rng, texel_count, basis_count):
    weights = rng.uniform(0.0, 1.0, size=(texel_count, basis_count))
    return weights / weights.sum(axis=1, keepdims=True)


@pytest.mark.parametrize("metallicity", [0.0, 0.35, 1.0])
def test_sparse_accumulation_matches_dense_reference(rng, make_view, metallicity):
    library = StepBasis(6, metallicity)
    view = make_view(240, visible_fraction=0.7)
    weights = _random_weights(rng, 240, 3)

    fast = _build(view, weights, metallicity, library)
    dense = build_dense_reference(view, weights, metallicity, library)

    assert np.allclose(fast.lhs, dense.lhs, rtol=1e-3, atol=1e-10)
    assert np.allclose(fast.rhs, dense.rhs, rtol=1e-3, atol=1e-10)
    assert np.allclose(fast.lhs, fast.lhs.T)


def test_samples_beyond_domain_and_on_bucket_edges(rng, make_view):
    library = StepBasis(4, 0.5)
    view = make_view(64)
    # Exact bucket boundaries, including the end of the domain.
    halfway = np.tile([0.0, 0.25, 0.5, 0.75, 1.0, 0.999, 0.125, 0.6], 8)
    view = ReflectanceData(view.visibility, halfway, view.geom_ratio,
                           view.additional_weight, view.color)
    weights = _random_weights(rng, 64, 2)

    fast = _build(view, weights, 0.5, library)
    dense = build_dense_reference(view, weights, 0.5, library)
    assert np.allclose(fast.lhs, dense.lhs, rtol=1e-3, atol=1e-10)
    assert np.allclose(fast.rhs, dense.rhs, rtol=1e-3, atol=1e-10)


def test_single_sample_by_hand():
    # B = 1, R = 2, halfway 0.25 -> m_exact 0.5, bucket 0, t = 0.5.
    # Row: [diffuse 1, step0 g*t = 1, step1 g*1 = 2].
    view = ReflectanceData([1.0], [0.25], [2.0], [1.0], [[1.0, 2.0, 3.0]])
    system = _build(view, np.ones((1, 1)), 0.0, StepBasis(2))

    row = np.array([1.0, 1.0, 2.0])
    assert np.allclose(system.lhs, np.outer(row, row))
    assert np.allclose(system.rhs, np.outer(row, [1.0, 2.0, 3.0]))


def test_contributions_are_additive(rng, make_view):
    library = StepBasis(5, 0.2)
    first = make_view(150, visible_fraction=0.6)
    second = make_view(150, visible_fraction=0.6)
    weights = _random_weights(rng, 150, 2)

    merged = _build(first, weights, 0.2, library).add_contribution(
        _build(second, weights, 0.2, library))
    combined = _build(ReflectanceData.concatenate(first, second),
                      np.vstack([weights, weights]), 0.2, library)

    assert np.allclose(merged.lhs, combined.lhs, rtol=1e-3, atol=1e-10)
    assert np.allclose(merged.rhs, combined.rhs, rtol=1e-3, atol=1e-10)


def test_invisible_samples_contribute_nothing(rng, make_view):
    view = make_view(50, visible_fraction=0.0)
    system = _build(view, _random_weights(rng, 50, 2), 0.0, StepBasis(3))
    assert not system.lhs.any()
    assert not system.rhs.any()


def test_builder_adds_into_existing_total(rng, make_view):
    library = StepBasis(3)
    view = make_view(40)
    weights = _random_weights(rng, 40, 2)

    single = _build(view, weights, 0.0, library)
    total = single.copy()
    ReflectanceMatrixBuilder(view, weights, 0.0, library, total).execute()
    assert np.allclose(total.lhs, 2.0 * single.lhs)


def test_validation_mode_passes(rng, make_view):
    view = make_view(120, visible_fraction=0.8)
    _build(view, _random_weights(rng, 120, 2), 0.3, StepBasis(4, 0.3), validate=True)


def test_validation_mode_detects_mismatch(rng, make_view):

    class SkewedBuilder(ReflectanceMatrixBuilder):
        def _accumulate(self):
            system = super()._accumulate()
            system.lhs[0, 0] *= 1.01
            return system

    view = make_view(60)
    weights = _random_weights(rng, 60, 2)
    system = MatrixSystem.zeros(2 * 5)
    with pytest.raises(MatrixValidationError):
        SkewedBuilder(view, weights, 0.0, StepBasis(4), system, validate=True).execute()
    # Nothing is merged when validation fails.
    assert not system.lhs.any()


def test_argument_validation(rng, make_view):
    view = make_view(10)
    with pytest.raises(ValueError):
        ReflectanceMatrixBuilder(view, np.ones((9, 2)), 0.0, StepBasis(3), MatrixSystem.zeros(8))
    with pytest.raises(ValueError):
        ReflectanceMatrixBuilder(view, np.ones((10, 2)), 0.0, StepBasis(3), MatrixSystem.zeros(6))
