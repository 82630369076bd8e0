"""
Basis reconstruction: solve for the basis BRDFs given fixed texel weights.

One pass:
    1. Every view is turned into its own AᵀA / Aᵀy contribution on a worker
       thread (ReflectanceMatrixBuilder, fresh zeroed MatrixSystem per view).
    2. Contributions are merged into a running total on the calling thread.
    3. The merged system is solved with NNLS once per color channel.
    4. Each basis with any non-zero coefficient gets a new diffuse albedo and
       specular curve; a basis whose coefficients are all zero had no
       supporting data this pass and is left exactly as it was.

All three channel solves finish before anything is written, so a singular
system (SingularSystemError) leaves the decomposition untouched.
"""

import logging
import math
from typing import Callable

import numpy as np

from specfit.core.basis_functions import StepBasis
from specfit.core.decomposition import SpecularDecomposition
from specfit.core.errors import FitError
from specfit.core.material_basis import ArrayMaterialBasis
from specfit.core.matrix_builder import ReflectanceMatrixBuilder
from specfit.core.matrix_system import MatrixSystem
from specfit.core.nnls import solve_premultiplied, tolerance_reference
from specfit.core.reflectance import ReflectanceData, ReflectanceViewStream
from specfit.core.settings import NNLS_TOLERANCE_SCALE, SpecularBasisSettings

logger = logging.getLogger(__name__)

CHANNEL_NAMES = ("red", "green", "blue")


def _ignore_progress(message: str) -> None:
    pass


class BRDFReconstruction:
    """
    Args:
        basis_settings:       Shape of the basis being reconstructed.
        basis_library:        Step functions to solve for; defaults to a
                              StepBasis matching basis_settings.
        nnls_tolerance_scale: Multiplied by tolerance_reference(rhs) per channel.
        max_workers:          Thread pool size for per-view accumulation.
        validate:             Cross-check every view against the dense reference.
    """

    def __init__(self, basis_settings: SpecularBasisSettings,
                 basis_library: StepBasis | None = None,
                 nnls_tolerance_scale: float = NNLS_TOLERANCE_SCALE,
                 max_workers: int | None = None,
                 validate: bool = False):
        self.basis_settings = basis_settings
        self.basis_library = basis_library or StepBasis(
            basis_settings.basis_resolution, basis_settings.metallicity)
        self.nnls_tolerance_scale = nnls_tolerance_scale
        self.max_workers = max_workers
        self.validate = validate

        if self.basis_library.resolution != basis_settings.basis_resolution:
            raise ValueError("Basis library resolution does not match the basis settings")

    def build_system(self, view_stream: ReflectanceViewStream,
                     decomposition: SpecularDecomposition,
                     on_progress: Callable[[str], None] | None = None) -> MatrixSystem:
        """Accumulate the merged normal equations over every view."""
        on_progress = on_progress or _ignore_progress
        size = self.basis_settings.matrix_size
        weights = decomposition.weights_view()
        metallicity = self.basis_settings.metallicity

        def build(view: ReflectanceData) -> MatrixSystem:
            contribution = MatrixSystem.zeros(size)
            ReflectanceMatrixBuilder(view, weights, metallicity, self.basis_library,
                                     contribution, validate=self.validate).execute()
            return contribution

        def merge(total: MatrixSystem, contribution: MatrixSystem) -> MatrixSystem:
            return total.add_contribution(contribution)

        return view_stream.map_reduce(
            build, merge, MatrixSystem.zeros(size),
            max_workers=self.max_workers,
            on_view_finished=lambda finished, count: on_progress(
                f"Finished view {finished} of {count}"),
        )

    def solve_system(self, system: MatrixSystem) -> np.ndarray:
        """NNLS per color channel; returns the (N, 3) coefficient matrix."""
        solution = np.empty_like(system.rhs)
        for channel in range(system.channels):
            rhs = system.rhs[:, channel]
            epsilon = self.nnls_tolerance_scale * tolerance_reference(rhs)
            solution[:, channel] = solve_premultiplied(system.lhs, rhs, epsilon)
        return solution

    def execute(self, view_stream: ReflectanceViewStream,
                decomposition: SpecularDecomposition,
                on_progress: Callable[[str], None] | None = None) -> np.ndarray:
        """
        Run one reconstruction pass and write the new basis into decomposition.

        Returns:
            The (N, 3) solved coefficients.

        Raises:
            FitError: the decomposition borrows its basis, or its shape does not
                match basis_settings.
            SingularSystemError: the NNLS solve failed (nothing is written).
        """
        on_progress = on_progress or _ignore_progress
        basis = decomposition.basis

        if not decomposition.owns_basis or not isinstance(basis, ArrayMaterialBasis):
            raise FitError("Cannot reconstruct a basis borrowed from another decomposition.")
        if (basis.material_count != self.basis_settings.basis_count
                or basis.specular_resolution != self.basis_settings.basis_resolution):
            raise FitError(
                f"Decomposition basis is {basis.material_count}x{basis.specular_resolution}, "
                f"expected {self.basis_settings.basis_count}x{self.basis_settings.basis_resolution}")

        on_progress("Building reflectance fitting matrix...")
        system = self.build_system(view_stream, decomposition, on_progress)

        on_progress("Solving for basis BRDFs...")
        solution = self.solve_system(system)

        if logger.isEnabledFor(logging.DEBUG):
            self._log_rhs(system)

        updated = self._write_basis(basis, solution)
        logger.info("Reconstructed %d of %d basis BRDFs.", updated, basis.material_count)
        on_progress(f"Reconstructed {updated} of {basis.material_count} basis BRDFs")
        return solution

    def _write_basis(self, basis: ArrayMaterialBasis, solution: np.ndarray) -> int:
        basis_count = self.basis_settings.basis_count
        resolution = self.basis_settings.basis_resolution
        metallicity = self.basis_settings.metallicity

        updated = 0
        for b in range(basis_count):
            # Diffuse coefficient first, then one coefficient per step function.
            columns = b + basis_count * np.arange(resolution + 1)
            coefficients = solution[columns]

            # Only update if the BRDF has non-zero elements.
            if not np.any(coefficients != 0.0):
                logger.debug("Basis %d has no supporting data; leaving it unchanged.", b)
                continue

            basis.set_diffuse_albedo(b, math.pi * coefficients[0] * (1.0 - metallicity))
            for channel in range(3):
                curve = self.basis_library.evaluate_solution(
                    coefficients[0, channel], coefficients[1:, channel])
                basis.set_specular_curve(channel, b, curve)
            updated += 1

        return updated

    def _log_rhs(self, system: MatrixSystem) -> None:
        basis_count = self.basis_settings.basis_count
        resolution = self.basis_settings.basis_resolution
        for b in range(basis_count):
            columns = b + basis_count * np.arange(resolution + 1)
            for channel, name in enumerate(CHANNEL_NAMES):
                logger.debug("Basis %d RHS %s: %s", b, name,
                             np.array2string(system.rhs[columns, channel], precision=6))
