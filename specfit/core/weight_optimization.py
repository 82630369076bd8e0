"""
Per-texel weight optimization against a fixed basis.

With the basis BRDFs held fixed, every visible sample of texel p predicts

    y(p) ≈ SUM(b) w_b(p) * F_b(p)

where F_b(p) is basis b's reflectance at the sample's geometry (the
"feature" computed by SpecularWeightModel). Each texel's weights are then
an independent non-negative least-squares problem with one equality
constraint, SUM(b) w_b(p) = 1, solved from the per-texel normal equations
QᵀQ (B x B) and Qᵀr (B) accumulated over every view and color channel.

Texels are processed in linear blocks so that only one block's worth of
normal equations is held in memory; each block re-reads the view stream.
"""

import logging
import math
from typing import Callable

import numpy as np

from specfit.core.decomposition import SpecularDecomposition
from specfit.core.errors import SingularSystemError
from specfit.core.material_basis import MaterialBasis
from specfit.core.nnls import solve_premultiplied, tolerance_reference
from specfit.core.reflectance import ReflectanceViewStream
from specfit.core.settings import (
    NNLS_TOLERANCE_SCALE,
    SpecularBasisSettings,
    TextureResolution,
)

logger = logging.getLogger(__name__)


class SpecularWeightModel:
    """
    Evaluates every basis BRDF at a set of sample geometries.

    Args:
        basis:       The (fixed) material basis.
        metallicity: Controls what lies beyond the last specular bucket: the
                     last curve sample if > 0, nothing (pure diffuse) if 0.
    """

    def __init__(self, basis: MaterialBasis, metallicity: float):
        self.metallicity = metallicity
        self.resolution = basis.specular_resolution
        self.curves = basis.specular_curves()
        self.diffuse = basis.diffuse_colors()

    @property
    def basis_count(self) -> int:
        return self.diffuse.shape[0]

    def features(self, halfway_index, geom_ratio) -> np.ndarray:
        """(n, B, 3) reflectance of each basis at each sample."""
        halfway_index = np.asarray(halfway_index, dtype=np.float64)
        geom_ratio = np.asarray(geom_ratio, dtype=np.float64)
        R = self.resolution

        m_exact = halfway_index * R
        m_floor = np.floor(m_exact)
        in_domain = m_floor < R

        m1 = np.clip(m_floor, 0, R - 1).astype(np.intp)
        blend = np.clip(m_exact - m1, 0.0, 1.0)[np.newaxis, :, np.newaxis]

        # Linear interpolation between the two straddling buckets: (B, n, 3).
        lower = self.curves[:, m1]
        upper = self.curves[:, m1 + 1]
        specular = lower + (upper - lower) * blend

        if self.metallicity > 0.0:
            beyond = self.curves[:, R][:, np.newaxis, :]
        else:
            beyond = np.zeros((1, 1, 3))
        specular = np.where(in_domain[np.newaxis, :, np.newaxis], specular, beyond)

        return (self.diffuse[np.newaxis] / math.pi
                + specular.transpose(1, 0, 2) * geom_ratio[:, np.newaxis, np.newaxis])

    def predict(self, weights, halfway_index, geom_ratio) -> np.ndarray:
        """(n, 3) predicted reflectance for (n, B) weights."""
        weights = np.asarray(weights, dtype=np.float64)
        return np.einsum("nb,nbc->nc", weights, self.features(halfway_index, geom_ratio))


class SpecularWeightOptimization:
    """
    Args:
        texture:              Texel grid the weights live on.
        basis_settings:       Basis shape (count and metallicity are used).
        block_size:           Texels per block; None = whole texture.
        nnls_tolerance_scale: Multiplied by tolerance_reference of each texel's rhs.
    """

    def __init__(self, texture: TextureResolution, basis_settings: SpecularBasisSettings,
                 block_size: int | None = None,
                 nnls_tolerance_scale: float = NNLS_TOLERANCE_SCALE):
        if block_size is not None and block_size < 1:
            raise ValueError(f"block_size must be positive, got {block_size}")
        self.texture = texture
        self.basis_settings = basis_settings
        self.block_size = block_size or texture.texel_count
        self.nnls_tolerance_scale = nnls_tolerance_scale

    def execute(self, view_stream: ReflectanceViewStream,
                decomposition: SpecularDecomposition,
                on_progress: Callable[[str], None] | None = None) -> int:
        """
        Re-solve every texel's weights. Returns the number of valid texels.

        Texels with no visible sample in any view keep their previous weights
        and stay invalid. A texel whose solve fails keeps its previous weights
        too, but is still marked valid since it had data.
        """
        decomposition.invalidate_weights()
        model = SpecularWeightModel(decomposition.basis, self.basis_settings.metallicity)
        texel_count = self.texture.texel_count

        for start in range(0, texel_count, self.block_size):
            stop = min(texel_count, start + self.block_size)
            self._optimize_block(view_stream, decomposition, model, start, stop)

            message = f"Optimized weights for texels {start} to {stop - 1} of {texel_count}"
            logger.info(message)
            if on_progress is not None:
                on_progress(message)

        return decomposition.valid_count()

    def accumulate_block(self, view_stream: ReflectanceViewStream,
                         model: SpecularWeightModel, start: int, stop: int):
        """
        Per-texel normal equations for texels [start, stop).

        Returns:
            (qtq, qtr, seen) with shapes (n, B, B), (n, B) and (n,).
        """
        count = stop - start
        B = model.basis_count
        qtq = np.zeros((count, B, B))
        qtr = np.zeros((count, B))
        seen = np.zeros(count, dtype=bool)

        for view in view_stream:
            if view.size != self.texture.texel_count:
                raise ValueError(
                    f"View has {view.size} samples, expected {self.texture.texel_count}")

            block = view.subset(start, stop)
            visible = np.flatnonzero(block.visible_mask())
            if visible.size == 0:
                continue

            features = model.features(block.halfway_index[visible], block.geom_ratio[visible])
            sample_weight = block.additional_weight[visible]

            # Summed over the three color channels.
            qtq[visible] += np.einsum("k,kbc,kdc->kbd", sample_weight, features, features)
            qtr[visible] += np.einsum("k,kbc,kc->kb", sample_weight, features, block.color[visible])
            seen[visible] = True

        return qtq, qtr, seen

    def solve_texel(self, qtq: np.ndarray, qtr: np.ndarray) -> np.ndarray:
        """Non-negative weights summing to one, from one texel's normal equations."""
        B = qtr.shape[0]

        # Augment with the sum-to-one constraint (Lagrange multiplier in the last slot).
        lhs = np.ones((B + 1, B + 1))
        lhs[:B, :B] = qtq
        lhs[B, B] = 0.0
        rhs = np.append(qtr, 1.0)

        epsilon = self.nnls_tolerance_scale * tolerance_reference(rhs)
        return solve_premultiplied(lhs, rhs, epsilon, constraint_count=1)[:B]

    def _optimize_block(self, view_stream, decomposition, model, start, stop) -> None:
        qtq, qtr, seen = self.accumulate_block(view_stream, model, start, stop)

        for offset in np.flatnonzero(seen):
            p = start + offset
            try:
                decomposition.set_weights(p, self.solve_texel(qtq[offset], qtr[offset]))
            except SingularSystemError as exc:
                logger.warning("Weight solve failed for texel %d (%s); keeping previous weights.",
                               p, exc)

        decomposition.set_weights_validity(slice(start, stop), seen)
