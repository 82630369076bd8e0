"""
Accumulates one view's contribution to the basis reconstruction system.

The least-squares problem solved by basis reconstruction is

    minimize  SUM(over samples p) weight(p) * | y(p) - A(p) x |^2

where x holds, for every basis b, one diffuse (constant) coefficient and R
step-function coefficients, and A(p) is the sample's row of the design
matrix. With the column layout used throughout the core

    column b             — diffuse coefficient of basis b
    column B*(s + 1) + b — step function s of basis b

a sample's row is:

    A(p)[b]           = w_b(p) * (metallicity * g(p) + 1 - metallicity)
    A(p)[B*(s+1) + b] = w_b(p) * g(p) * f_s(p)

where w_b(p) is the texel's current weight for basis b, g(p) is the
geometric ratio, and f_s(p) is step function s evaluated at the sample's
microfacet bucket, linearly blended between the two buckets that straddle
it. With m_exact = halfway * R, m_floor = min(R - 1, floor(m_exact)) and
t = 1 + m_floor - m_exact:

    f_s(p) = 1   for s > m_floor
             t   for s == m_floor
             0   for s < m_floor

(and f_s = 0 for every s once m_exact falls beyond the optimized domain).

Forming A explicitly costs samples x N memory, which is prohibitive for
megapixel textures. Because f_s only takes the values 1, t or 0 depending on
how s compares to the sample's bucket, every entry of AᵀA and Aᵀy is a sum
over buckets of a few per-bucket moments:

    S0[k] = SUM over samples in bucket k of  weight * v ⊗ v
    S1[k] = same, scaled by t
    S2[k] = same, scaled by t²

For two steps s1 < s2 the product f_s1 * f_s2 is 1 for buckets below s1,
t for bucket s1 and 0 above it, so

    AᵀA[(s1, b1), (s2, b2)] = SUM(k < s1) S0[k] + S1[s1]
    AᵀA[(s,  b1), (s,  b2)] = SUM(k < s)  S0[k] + S2[s]

and similarly for the diffuse/specular cross terms and Aᵀy. The builder
sorts samples by bucket once, computes the per-bucket moments with a few
small matrix products, and turns them into the full system with exclusive
cumulative sums. Cost is O(samples * B²) plus O(R² * B²); A is never built.

Validation mode recomputes the same system from the dense A and raises
MatrixValidationError if any entry differs by more than 0.1%.
"""

import logging

import numpy as np

from specfit.core.basis_functions import StepBasis
from specfit.core.errors import MatrixValidationError
from specfit.core.matrix_system import MatrixSystem
from specfit.core.reflectance import ReflectanceData

logger = logging.getLogger(__name__)

# Relative tolerance for validation mode.
VALIDATION_TOLERANCE = 0.001


def _sample_buckets(halfway_index: np.ndarray, resolution: int):
    """
    Locate each sample in the discretized microfacet domain.

    Returns:
        (m_floor, t, in_domain): the lower straddling bucket (clamped to
        [0, R - 1]), the blend weight of that bucket in [0, 1], and whether the
        sample lies inside the optimized domain at all.
    """
    m_exact = halfway_index * resolution
    m_floor = np.clip(np.floor(m_exact), 0, resolution - 1).astype(np.intp)

    # When floor and exact coincide t = 1; as exact approaches the next bucket
    # t approaches 0. A sample clamped into the last bucket has t = 0.
    t = np.clip(1.0 + m_floor - m_exact, 0.0, 1.0)
    in_domain = m_exact < resolution
    return m_floor, t, in_domain


class ReflectanceMatrixBuilder:
    """
    Adds one view's AᵀA / Aᵀy contribution into a MatrixSystem.

    Args:
        reflectance:   The view's ReflectanceData.
        weights:       (P, B) read-only array of current per-texel basis weights.
        metallicity:   In [0, 1]; see module docstring.
        basis_library: StepBasis defining R.
        contribution:  Pre-sized MatrixSystem (N = B * (R + 1), 3 channels) that
                       receives the contribution. Usually freshly zeroed.
        validate:      Cross-check against the dense reference (slow; tests only).
    """

    def __init__(self, reflectance: ReflectanceData, weights, metallicity: float,
                 basis_library: StepBasis, contribution: MatrixSystem,
                 validate: bool = False):
        self.reflectance = reflectance
        self.weights = np.asarray(weights, dtype=np.float64)
        self.metallicity = metallicity
        self.basis_library = basis_library
        self.contribution = contribution
        self.validate = validate

        if self.weights.ndim != 2 or self.weights.shape[0] != reflectance.size:
            raise ValueError(
                f"weights must have shape ({reflectance.size}, B), got {self.weights.shape}"
            )

        self.basis_count = self.weights.shape[1]
        self.resolution = basis_library.resolution
        expected = self.basis_count * (self.resolution + 1)
        if contribution.size != expected or contribution.channels != 3:
            raise ValueError(
                f"contribution must be {expected}x{expected} with 3 channels, "
                f"got {contribution.size}x{contribution.size} with {contribution.channels}"
            )

    def execute(self) -> None:
        local = self._accumulate()

        if self.validate:
            dense = build_dense_reference(
                self.reflectance, self.weights, self.metallicity, self.basis_library)
            _check_close(local, dense)

        self.contribution.add_contribution(local)

    def _accumulate(self) -> MatrixSystem:
        B = self.basis_count
        R = self.resolution
        N = B * (R + 1)
        system = MatrixSystem.zeros(N)

        # Eliminate texels without valid samples.
        visible = self.reflectance.visible_mask()
        if not visible.any():
            return system

        halfway = self.reflectance.halfway_index[visible]
        geom = self.reflectance.geom_ratio[visible]
        sample_weight = self.reflectance.additional_weight[visible]
        observed = self.reflectance.color[visible]
        w = self.weights[visible]

        m_floor, t, in_domain = _sample_buckets(halfway, R)

        # Row entries before the step-function factor.
        diffuse_factor = self.metallicity * geom + (1.0 - self.metallicity)
        d = w * diffuse_factor[:, np.newaxis]
        v = w * np.where(in_domain, geom, 0.0)[:, np.newaxis]

        # Top-left partition: row and column both diffuse.
        wd = d * sample_weight[:, np.newaxis]
        diffuse_diffuse = wd.T @ d
        diffuse_rhs = wd.T @ observed

        # Per-bucket moments. Sorting by bucket turns each bucket into a
        # contiguous slice of the sorted order.
        order = np.argsort(m_floor, kind="stable")
        bounds = np.searchsorted(m_floor[order], np.arange(R + 1), side="left")

        spec_s0 = np.zeros((R, B, B))
        spec_s1 = np.zeros((R, B, B))
        spec_s2 = np.zeros((R, B, B))
        cross_s0 = np.zeros((R, B, B))
        cross_s1 = np.zeros((R, B, B))
        rhs_s0 = np.zeros((R, B, 3))
        rhs_s1 = np.zeros((R, B, 3))

        for k in range(R):
            lo, hi = bounds[k], bounds[k + 1]
            if lo == hi:
                continue

            members = order[lo:hi]
            tk = t[members][:, np.newaxis]
            vk = v[members]
            wv = vk * sample_weight[members][:, np.newaxis]
            wdk = wd[members]
            yk = observed[members]

            spec_s0[k] = wv.T @ vk
            spec_s1[k] = (wv * tk).T @ vk
            spec_s2[k] = (wv * tk * tk).T @ vk
            cross_s0[k] = wdk.T @ vk
            cross_s1[k] = (wdk * tk).T @ vk
            rhs_s0[k] = wv.T @ yk
            rhs_s1[k] = (wv * tk).T @ yk

        # Exclusive cumulative sums: totals over all buckets strictly below s,
        # i.e. samples for which step s evaluates to a full 1.0.
        below_spec = np.cumsum(spec_s0, axis=0) - spec_s0
        below_cross = np.cumsum(cross_s0, axis=0) - cross_s0
        below_rhs = np.cumsum(rhs_s0, axis=0) - rhs_s0

        # Bottom-right partition: both specular. Entries depend only on the
        # lower of the two step indices; the per-bucket moments are symmetric
        # in (b1, b2) so the same block serves both triangles.
        off_diagonal = below_spec + spec_s1
        steps = np.arange(R)
        spec_spec = off_diagonal[np.minimum.outer(steps, steps)]
        spec_spec[steps, steps] = below_spec + spec_s2

        # Off-diagonal partitions: diffuse row / specular column and vice versa.
        # diffuse_spec[s, b1, b2] pairs diffuse b1 with step s of basis b2.
        diffuse_spec = below_cross + cross_s1
        spec_rhs = below_rhs + rhs_s1

        lhs = np.zeros((R + 1, B, R + 1, B))
        lhs[0, :, 0, :] = diffuse_diffuse
        lhs[0, :, 1:, :] = diffuse_spec.transpose(1, 0, 2)
        lhs[1:, :, 0, :] = diffuse_spec.transpose(0, 2, 1)
        lhs[1:, :, 1:, :] = spec_spec.transpose(0, 2, 1, 3)

        rhs = np.zeros((R + 1, B, 3))
        rhs[0] = diffuse_rhs
        rhs[1:] = spec_rhs

        system.lhs += lhs.reshape(N, N)
        system.rhs += rhs.reshape(N, 3)
        return system


def build_dense_reference(reflectance: ReflectanceData, weights, metallicity: float,
                          basis_library: StepBasis) -> MatrixSystem:
    """
    Compute the same AᵀA / Aᵀy as ReflectanceMatrixBuilder the slow way,
    by materializing the dense (samples x N) design matrix.

    O(samples * N) memory; intended as a correctness oracle only.
    """
    weights = np.asarray(weights, dtype=np.float64)
    B = weights.shape[1]
    R = basis_library.resolution
    N = B * (R + 1)

    visible = reflectance.visible_mask()
    halfway = reflectance.halfway_index[visible]
    geom = reflectance.geom_ratio[visible]
    w = weights[visible]

    # Square root since we're minimizing weight * |y - Ax|^2, not weight^2 * |y - Ax|^2.
    root_weight = np.sqrt(reflectance.additional_weight[visible])
    y = reflectance.color[visible] * root_weight[:, np.newaxis]

    m_floor, t, in_domain = _sample_buckets(halfway, R)

    a = np.zeros((halfway.shape[0], N))
    diffuse_factor = metallicity * geom + (1.0 - metallicity)
    a[:, :B] = root_weight[:, np.newaxis] * w * diffuse_factor[:, np.newaxis]

    # Evaluate every step function to the left and right of each sample and blend.
    table = basis_library.evaluate_matrix()
    f_floor = table[:, m_floor]
    f_ceil = table[:, m_floor + 1]
    f_interp = (f_floor * t + f_ceil * (1.0 - t)).T

    scale = root_weight * geom * in_domain
    specular = scale[:, np.newaxis, np.newaxis] * f_interp[:, :, np.newaxis] * w[:, np.newaxis, :]
    a[:, B:] = specular.reshape(halfway.shape[0], R * B)

    return MatrixSystem(a.T @ a, a.T @ y)


def _check_close(fast: MatrixSystem, dense: MatrixSystem) -> None:
    scale = max(1.0, float(np.abs(dense.lhs).max(initial=0.0)),
                float(np.abs(dense.rhs).max(initial=0.0)))
    atol = 1e-12 * scale

    for name, got, expected in (("LHS", fast.lhs, dense.lhs), ("RHS", fast.rhs, dense.rhs)):
        mismatch = np.abs(got - expected) > VALIDATION_TOLERANCE * np.abs(expected) + atol
        if mismatch.any():
            index = tuple(int(i) for i in np.argwhere(mismatch)[0])
            raise MatrixValidationError(
                f"{name} mismatch at {index}: sparse accumulation {got[index]!r}, "
                f"dense reference {expected[index]!r}"
            )

    logger.debug("Matrix builder validation passed.")
