"""
Library of step functions the specular curves are built from.

A basis BRDF's specular lobe is stored as a lookup table over R + 1
discretized microfacet-angle buckets. Rather than solving for those R + 1
samples directly, the fit solves for non-negative weights of R unit step
functions:

    step_s(m) = 1.0  if m <= s
                0.0  otherwise

Any non-negative combination of these steps is a non-increasing curve,
which is the physically plausible shape of a microfacet distribution that
peaks at the mirror direction (m = 0) and falls off with angle.
"""

import numpy as np


class StepBasis:
    """
    R overlapping unit step functions over the bucket domain [0, R].

    Args:
        resolution:  R, the number of step functions and of angle buckets
                     inside the optimized domain.
        metallicity: Share of the constant (diffuse) coefficient that is
                     treated as specular at the end of the domain; see
                     evaluate_solution().
    """

    def __init__(self, resolution: int, metallicity: float = 0.0):
        if resolution < 1:
            raise ValueError("Resolution must be greater than zero.")
        self.resolution = resolution
        self.metallicity = min(1.0, max(0.0, metallicity))

    @property
    def count(self) -> int:
        return self.resolution

    def evaluate(self, step_index: int, angle_bucket: int) -> float:
        return 1.0 if angle_bucket <= step_index else 0.0

    def evaluate_matrix(self) -> np.ndarray:
        """(R, R + 1) table of evaluate(s, m) for every step s and bucket m."""
        steps = np.arange(self.resolution)[:, np.newaxis]
        buckets = np.arange(self.resolution + 1)[np.newaxis, :]
        return (buckets <= steps).astype(np.float64)

    def evaluate_solution(self, constant_term: float, step_coefficients) -> np.ndarray:
        """
        Convert solved coefficients into a specular curve of R + 1 samples.

        curve[R] = constant_term * metallicity, and walking down from the end
        of the domain, curve[m] = curve[m + 1] + step_coefficients[m].
        """
        coefficients = np.asarray(step_coefficients, dtype=np.float64)
        if coefficients.shape != (self.resolution,):
            raise ValueError(
                f"Expected {self.resolution} step coefficients, got {coefficients.shape}"
            )

        curve = np.empty(self.resolution + 1, dtype=np.float64)
        curve[self.resolution] = constant_term * self.metallicity
        # Reverse cumulative sum: each step adds to every bucket at or below it.
        curve[:self.resolution] = curve[self.resolution] + np.cumsum(coefficients[::-1])[::-1]
        return curve
