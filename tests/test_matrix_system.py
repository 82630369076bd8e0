"""Normal-equation accumulator: shape checks and additive merging."""

import numpy as np
import pytest

from specfit.core.matrix_system import MatrixSystem


def _random_system(rng, size=5):
    a = rng.normal(size=(20, size))
    y = rng.normal(size=(20, 3))
    return MatrixSystem(a.T @ a, a.T @ y)


def test_zeros():
    system = MatrixSystem.zeros(6)
    assert system.size == 6
    assert system.channels == 3
    assert not system.lhs.any()
    assert not system.rhs.any()


def test_add_contribution_is_in_place_and_commutative(rng):
    a = _random_system(rng)
    b = _random_system(rng)

    ab = a.copy().add_contribution(b)
    ba = b.copy().add_contribution(a)
    assert np.allclose(ab.lhs, ba.lhs)
    assert np.allclose(ab.rhs, ba.rhs)

    total = MatrixSystem.zeros(5)
    returned = total.add_contribution(a)
    assert returned is total
    assert np.array_equal(total.lhs, a.lhs)


def test_copy_is_independent(rng):
    a = _random_system(rng)
    b = a.copy()
    b.lhs[0, 0] += 1.0
    assert a.lhs[0, 0] != b.lhs[0, 0]


def test_shape_validation():
    with pytest.raises(ValueError):
        MatrixSystem(np.zeros((3, 4)), np.zeros((3, 3)))
    with pytest.raises(ValueError):
        MatrixSystem(np.zeros((3, 3)), np.zeros((4, 3)))
    with pytest.raises(ValueError):
        MatrixSystem.zeros(3).add_contribution(MatrixSystem.zeros(4))
