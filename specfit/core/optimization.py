"""
Outer driver for a specular basis fit.

SpecularOptimization wires the components together and alternates them:

    initialize()                  one-hot weights from k-means++ color clusters
    repeat up to max_iterations:
        reconstruct_basis()       basis BRDFs for the current weights
        optimize_weights()        texel weights for the current basis
        calculate_error()         weighted RMSE, used for convergence
    fill_holes()                  once, after the alternation

When the decomposition borrows its basis from an earlier fit, initialization
and basis reconstruction are skipped and only the weights are optimized.

Cancellation is cooperative: is_cancelled() is polled between stages, never
inside one, and raises FitCancelled.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from specfit.core.basis_functions import StepBasis
from specfit.core.brdf_reconstruction import BRDFReconstruction
from specfit.core.decomposition import SpecularDecomposition
from specfit.core.error_calculation import calculate_rmse
from specfit.core.errors import FitCancelled
from specfit.core.initialization import initialize_weights
from specfit.core.pipeline import FitStage
from specfit.core.reflectance import ReflectanceViewStream
from specfit.core.serializer import save_diffuse_map, save_weight_images
from specfit.core.settings import SpecularFitSettings
from specfit.core.weight_optimization import SpecularWeightOptimization

logger = logging.getLogger(__name__)


def _ignore_progress(message: str) -> None:
    pass


@dataclass
class FitResult:
    """Outcome of SpecularOptimization.run()."""
    decomposition: SpecularDecomposition
    errors: list[float] = field(default_factory=list)
    iterations: int = 0
    converged: bool = False
    filled_texels: int = 0

    @property
    def final_error(self) -> float | None:
        return self.errors[-1] if self.errors else None


class SpecularOptimization:
    """
    Args:
        settings:      Complete fit configuration.
        view_stream:   Reflectance views to fit.
        decomposition: Decomposition to fit into. Defaults to a fresh one that
                       owns its basis.
        validate:      Cross-check matrix accumulation against the dense
                       reference (slow; for tests).
    """

    def __init__(self, settings: SpecularFitSettings, view_stream: ReflectanceViewStream,
                 decomposition: SpecularDecomposition | None = None,
                 validate: bool = False):
        self.settings = settings
        self.view_stream = view_stream
        self.decomposition = decomposition or SpecularDecomposition.from_scratch(
            settings.texture, settings.basis)

        if self.decomposition.texel_count != settings.texture.texel_count:
            raise ValueError("Decomposition texture does not match the fit settings")

        basis_library = StepBasis(settings.basis.basis_resolution, settings.basis.metallicity)
        self.reconstruction = BRDFReconstruction(
            settings.basis,
            basis_library=basis_library,
            nnls_tolerance_scale=settings.nnls_tolerance_scale,
            max_workers=settings.max_workers,
            validate=validate,
        )
        self.weight_optimization = SpecularWeightOptimization(
            settings.texture,
            settings.basis,
            block_size=settings.weight_block_size,
            nnls_tolerance_scale=settings.nnls_tolerance_scale,
        )

    # ------------------------------------------------------------------
    # Individual stages
    # ------------------------------------------------------------------

    def initialize(self, on_progress: Callable[[str], None] | None = None):
        return initialize_weights(self.view_stream, self.decomposition,
                                  seed=self.settings.kmeans_seed,
                                  max_workers=self.settings.max_workers,
                                  on_progress=on_progress)

    def reconstruct_basis(self, on_progress: Callable[[str], None] | None = None):
        return self.reconstruction.execute(self.view_stream, self.decomposition, on_progress)

    def optimize_weights(self, on_progress: Callable[[str], None] | None = None) -> int:
        return self.weight_optimization.execute(self.view_stream, self.decomposition, on_progress)

    def calculate_error(self) -> float:
        return calculate_rmse(self.view_stream, self.decomposition,
                              self.settings.basis.metallicity,
                              max_workers=self.settings.max_workers)

    def fill_holes(self, on_progress: Callable[[str], None] | None = None) -> int:
        filled = self.decomposition.fill_holes()
        if on_progress is not None:
            on_progress(f"Filled {filled} texels")
        return filled

    def save(self, output_directory: str | Path,
             weights_directory: str | Path | None = None,
             textures_directory: str | Path | None = None) -> None:
        """
        Write the basis CSVs to output_directory and the weight / diffuse maps
        to their own directories (default: output_directory as well).
        """
        self.decomposition.basis.save(output_directory)
        save_weight_images(self.decomposition, weights_directory or output_directory)
        save_diffuse_map(self.decomposition, self.settings.gamma,
                         textures_directory or output_directory)

    # ------------------------------------------------------------------
    # Full fit
    # ------------------------------------------------------------------

    def run(self, on_progress: Callable[[str], None] | None = None,
            is_cancelled: Callable[[], bool] | None = None,
            on_stage_started: Callable[[str], None] | None = None,
            on_stage_completed: Callable[[str], None] | None = None) -> FitResult:
        """
        Alternate basis reconstruction and weight optimization, then fill holes.

        Iteration stops after max_iterations, or once the relative RMSE
        improvement drops below convergence_tolerance. With a single basis
        the weights are forced to one, so one iteration is enough.

        Raises:
            FitCancelled: is_cancelled() returned True between stages.
            FitError / SingularSystemError: a stage failed.
        """
        on_progress = on_progress or _ignore_progress
        result = FitResult(self.decomposition)
        fit_basis = self.decomposition.owns_basis

        def stage(name, action):
            if is_cancelled is not None and is_cancelled():
                raise FitCancelled(f"Fit cancelled before {name}")
            if on_stage_started is not None:
                on_stage_started(name)
            value = action()
            if on_stage_completed is not None:
                on_stage_completed(name)
            return value

        if fit_basis:
            stage(FitStage.INITIALIZATION, lambda: self.initialize(on_progress))

        previous_error = None
        max_iterations = self.settings.max_iterations
        for iteration in range(1, max_iterations + 1):
            logger.info("Starting iteration %d of %d.", iteration, max_iterations)
            on_progress(f"Iteration {iteration} of {max_iterations}")

            if fit_basis:
                stage(FitStage.BASIS_RECONSTRUCTION, lambda: self.reconstruct_basis(on_progress))
            stage(FitStage.WEIGHT_OPTIMIZATION, lambda: self.optimize_weights(on_progress))

            error = self.calculate_error()
            result.errors.append(error)
            result.iterations = iteration
            on_progress(f"RMSE after iteration {iteration}: {error:.6g}")

            if fit_basis and self.decomposition.basis_count == 1:
                result.converged = True
                break

            if previous_error is not None and \
                    previous_error - error <= self.settings.convergence_tolerance * previous_error:
                result.converged = True
                break
            previous_error = error

        result.filled_texels = stage(FitStage.HOLE_FILLING, lambda: self.fill_holes(on_progress))

        logger.info("Fit finished after %d iterations (converged: %s).",
                    result.iterations, result.converged)
        return result
