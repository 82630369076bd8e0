"""
Per-texel basis weights and the material basis they refer to.

SpecularDecomposition is the state an alternating fit mutates:
    - weights  (P, B) — each texel's mixture over the B basis materials
    - validity (P,)   — whether a texel's weights were earned from data
    - basis           — the MaterialBasis the weights are expressed in

Two ways to create one:
    SpecularDecomposition.from_scratch(texture, basis_settings)
        Owns a fresh, all-black ArrayMaterialBasis that basis reconstruction
        is allowed to overwrite.
    SpecularDecomposition.from_existing_basis(texture, other)
        Borrows another decomposition's basis read-only, for solving weights
        against an already-fitted basis. Basis reconstruction refuses to write
        into a borrowed basis.

Validity starts all-false, is reset by invalidate_weights(), and is re-earned
on every weight optimization pass. Texels that never become valid are
handled by fill_holes().
"""

import logging

import numpy as np

from specfit.core.material_basis import ArrayMaterialBasis, MaterialBasis
from specfit.core.settings import SpecularBasisSettings, TextureResolution

logger = logging.getLogger(__name__)


class SpecularDecomposition:

    def __init__(self, texture: TextureResolution, basis: MaterialBasis, owns_basis: bool):
        self.texture = texture
        self._basis = basis
        self._owns_basis = owns_basis
        self._weights = np.zeros((texture.texel_count, basis.material_count))
        self._validity = np.zeros(texture.texel_count, dtype=bool)

    @classmethod
    def from_scratch(cls, texture: TextureResolution,
                     basis_settings: SpecularBasisSettings) -> "SpecularDecomposition":
        basis = ArrayMaterialBasis.zeros(basis_settings.basis_count,
                                         basis_settings.basis_resolution)
        return cls(texture, basis, owns_basis=True)

    @classmethod
    def from_existing_basis(cls, texture: TextureResolution,
                            other: "SpecularDecomposition") -> "SpecularDecomposition":
        return cls(texture, other.basis, owns_basis=False)

    @property
    def basis(self) -> MaterialBasis:
        return self._basis

    @property
    def owns_basis(self) -> bool:
        return self._owns_basis

    @property
    def basis_count(self) -> int:
        return self._basis.material_count

    @property
    def texel_count(self) -> int:
        return self.texture.texel_count

    # ------------------------------------------------------------------
    # Weights
    # ------------------------------------------------------------------

    def texel_weights(self, p: int) -> np.ndarray:
        """Copy of texel p's weight vector."""
        return self._weights[p].copy()

    def weights_view(self) -> np.ndarray:
        """Read-only (P, B) view of every texel's weights."""
        view = self._weights.view()
        view.flags.writeable = False
        return view

    def validity_view(self) -> np.ndarray:
        view = self._validity.view()
        view.flags.writeable = False
        return view

    def set_weights(self, p, weights) -> None:
        """Set the weights of texel p (or of a slice / index array of texels)."""
        weights = np.asarray(weights, dtype=np.float64)
        if weights.shape[-1] != self.basis_count:
            raise ValueError(
                f"Expected {self.basis_count} weights per texel, got {weights.shape}")
        self._weights[p] = weights

    def set_weights_validity(self, p, valid) -> None:
        self._validity[p] = valid

    def are_weights_valid(self, p: int) -> bool:
        return bool(self._validity[p])

    def invalidate_weights(self) -> None:
        self._validity[:] = False

    def valid_count(self) -> int:
        return int(np.count_nonzero(self._validity))

    # ------------------------------------------------------------------
    # Basis access
    # ------------------------------------------------------------------

    def diffuse_albedo(self, b: int) -> np.ndarray:
        return self._basis.diffuse_color(b)

    def diffuse_map(self) -> np.ndarray:
        """(P, 3) per-texel diffuse color: the weight-blended basis albedos."""
        return self._weights @ self._basis.diffuse_colors()

    # ------------------------------------------------------------------
    # Hole filling
    # ------------------------------------------------------------------

    def fill_holes(self) -> int:
        """
        Propagate weights from valid neighbors into invalid texels.

        Each pass visits every invalid texel and averages, per basis, the
        weights of its valid left/right/up/down neighbors. Neighbors are found
        by linear texel index modulo the texel count, so "left" of a row's first
        texel is the previous row's last texel and the grid wraps top to bottom.
        A basis weight is only written when the neighbor sum is positive; the
        texel becomes valid if at least one neighbor was valid. Validity is
        committed at the end of a pass, so information spreads one texel per pass.

        Runs for at most max(width, height) passes and stops early once a pass
        fills nothing.

        Returns:
            The number of texels filled.
        """
        width = self.texture.width
        texel_count = self.texel_count
        positions = np.arange(texel_count)
        neighbors = np.stack([
            (positions - 1) % texel_count,      # left
            (positions + 1) % texel_count,      # right
            (positions - width) % texel_count,  # up
            (positions + width) % texel_count,  # down
        ])

        total_filled = 0
        max_passes = max(self.texture.width, self.texture.height)

        for pass_index in range(max_passes):
            holes = np.flatnonzero(~self._validity)
            if holes.size == 0:
                break

            hole_neighbors = neighbors[:, holes]
            neighbor_valid = self._validity[hole_neighbors]
            count = neighbor_valid.sum(axis=0)

            # (4, holes, B): invalid neighbors contribute nothing to the sum.
            contributions = self._weights[hole_neighbors] * neighbor_valid[..., np.newaxis]
            total = contributions.sum(axis=0)

            with np.errstate(divide="ignore", invalid="ignore"):
                mean = total / count[:, np.newaxis]
            current = self._weights[holes]
            self._weights[holes] = np.where(total > 0.0, mean, current)

            filled = holes[count > 0]
            if filled.size == 0:
                break

            self._validity[filled] = True
            total_filled += filled.size
            logger.debug("Hole filling pass %d filled %d texels.", pass_index + 1, filled.size)

        logger.info("Filled %d texels; %d remain invalid.",
                    total_filled, texel_count - self.valid_count())
        return total_filled
