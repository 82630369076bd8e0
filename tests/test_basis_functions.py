"""
Step function library.

Covers:
- Step evaluation and the tabulated evaluate_matrix()
- Reconstructing a monotone curve from non-negative coefficients
- Metallic share of the constant term at the end of the domain
"""

import numpy as np
import pytest

from specfit.core.basis_functions import StepBasis


def test_step_evaluation():
    basis = StepBasis(4)
    assert basis.count == 4
    assert basis.evaluate(2, 0) == 1.0
    assert basis.evaluate(2, 2) == 1.0
    assert basis.evaluate(2, 3) == 0.0
    assert basis.evaluate(0, 4) == 0.0


def test_evaluate_matrix_matches_evaluate():
    basis = StepBasis(5)
    table = basis.evaluate_matrix()
    assert table.shape == (5, 6)
    for s in range(5):
        for m in range(6):
            assert table[s, m] == basis.evaluate(s, m)


def test_evaluate_solution_is_reverse_cumulative_sum():
    basis = StepBasis(4)
    curve = basis.evaluate_solution(0.7, [0.1, 0.2, 0.0, 0.3])
    assert np.allclose(curve, [0.6, 0.5, 0.3, 0.3, 0.0])


def test_non_negative_coefficients_give_monotone_curve(rng):
    basis = StepBasis(12, metallicity=0.4)
    curve = basis.evaluate_solution(0.5, rng.uniform(0.0, 1.0, size=12))
    assert np.all(np.diff(curve) <= 0.0)
    assert curve[-1] == pytest.approx(0.5 * 0.4)


def test_metallicity_is_clamped():
    assert StepBasis(3, metallicity=1.5).metallicity == 1.0
    assert StepBasis(3, metallicity=-0.2).metallicity == 0.0


def test_invalid_arguments():
    with pytest.raises(ValueError):
        StepBasis(0)
    with pytest.raises(ValueError):
        StepBasis(4).evaluate_solution(0.0, [1.0, 2.0])
