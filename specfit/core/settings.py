"""
Configuration objects for a specular basis fit.

All tunables are grouped into small dataclasses that are passed explicitly
into each component at construction time. Nothing in the core reads global
state, so two fits with different settings can run side by side in the
same process.

The three levels mirror how a fit is described:
    TextureResolution      — size of the texel grid that weights are solved on
    SpecularBasisSettings  — shape of the material basis (how many bases,
                             how finely the specular lobe is discretized,
                             and how "metallic" the diffuse term behaves)
    SpecularFitSettings    — everything the outer driver needs: the two
                             objects above plus iteration, blocking and
                             solver tolerances
"""

from dataclasses import dataclass, field


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

# Number of basis materials. Eight is enough to capture the distinct
# materials on most cultural-heritage objects without overfitting noise.
DEFAULT_BASIS_COUNT = 8

# Number of discretized microfacet-angle buckets per specular curve.
# Each curve stores DEFAULT_BASIS_RESOLUTION + 1 samples.
DEFAULT_BASIS_RESOLUTION = 90

# NNLS terminates once no gradient component exceeds this fraction of the
# system's reference magnitude. Small enough to avoid spurious near-zero
# coefficients, large enough to stop on round-off.
NNLS_TOLERANCE_SCALE = 1e-12

# Outer alternation budget and the relative RMSE improvement below which
# the driver considers the fit converged.
DEFAULT_MAX_ITERATIONS = 8
DEFAULT_CONVERGENCE_TOLERANCE = 1e-4


@dataclass(frozen=True)
class TextureResolution:
    """Width and height of the texel grid weights are solved on."""
    width: int
    height: int

    def __post_init__(self):
        if self.width < 1 or self.height < 1:
            raise ValueError(
                f"Texture resolution must be positive, got {self.width}x{self.height}"
            )

    @property
    def texel_count(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class SpecularBasisSettings:
    """
    Shape of the material basis being fitted.

    Attributes:
        basis_count:      Number of basis materials (B).
        basis_resolution: Number of microfacet-angle buckets (R). Each specular
                          curve has R + 1 samples; the last one holds the
                          metallic share of the constant term.
        metallicity:      In [0, 1]. Blends the diffuse column of the fitting
                          system between a plain constant (0) and a constant
                          attenuated by the geometric ratio like the specular
                          term (1).
    """
    basis_count: int = DEFAULT_BASIS_COUNT
    basis_resolution: int = DEFAULT_BASIS_RESOLUTION
    metallicity: float = 0.0

    def __post_init__(self):
        if self.basis_count < 1:
            raise ValueError(f"basis_count must be at least 1, got {self.basis_count}")
        if self.basis_resolution < 1:
            raise ValueError(
                f"basis_resolution must be at least 1, got {self.basis_resolution}"
            )
        if not 0.0 <= self.metallicity <= 1.0:
            raise ValueError(f"metallicity must be in [0, 1], got {self.metallicity}")

    @property
    def matrix_size(self) -> int:
        """Side length N of the normal-equation system: B * (R + 1)."""
        return self.basis_count * (self.basis_resolution + 1)


@dataclass(frozen=True)
class SpecularFitSettings:
    """
    Everything the outer fit driver needs.

    weight_block_size bounds how many texels have their per-texel weight
    systems held in memory at once; None means the whole texture in one block.
    max_workers is forwarded to the thread pool that accumulates views in
    parallel; None lets concurrent.futures pick.
    """
    texture: TextureResolution
    basis: SpecularBasisSettings = field(default_factory=SpecularBasisSettings)
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    convergence_tolerance: float = DEFAULT_CONVERGENCE_TOLERANCE
    weight_block_size: int | None = None
    nnls_tolerance_scale: float = NNLS_TOLERANCE_SCALE
    max_workers: int | None = None
    gamma: float = 2.2
    kmeans_seed: int = 0

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {self.max_iterations}")
        if self.convergence_tolerance < 0.0:
            raise ValueError("convergence_tolerance must be non-negative")
        if self.weight_block_size is not None and self.weight_block_size < 1:
            raise ValueError(
                f"weight_block_size must be positive, got {self.weight_block_size}"
            )
        if self.nnls_tolerance_scale <= 0.0:
            raise ValueError("nnls_tolerance_scale must be greater than zero")
        if self.gamma <= 0.0:
            raise ValueError("gamma must be greater than zero")
