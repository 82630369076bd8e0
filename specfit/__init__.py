"""
specfit — Specular basis decomposition for photogrammetric material capture.

This is the top-level package for the specfit library. It fits a compact,
physically plausible reflectance model to multi-view photometric samples
of a captured object: a handful of basis materials (diffuse albedo plus a
discretized specular lobe) and, for every texel of the surface texture,
a non-negative mixing-weight vector over those bases that sums to one.

The numeric core lives in specfit.core; the most commonly used entry
points are re-exported here for convenience.

The version string below mirrors the version declared in pyproject.toml;
bump both together.
"""

__version__ = "0.1.0"

from specfit.core.settings import (
    SpecularBasisSettings,
    SpecularFitSettings,
    TextureResolution,
)
from specfit.core.reflectance import ReflectanceData, ReflectanceViewStream
from specfit.core.decomposition import SpecularDecomposition
from specfit.core.optimization import FitResult, SpecularOptimization
from specfit.core.errors import FitError, SingularSystemError

__all__ = [
    "__version__",
    "FitError",
    "FitResult",
    "ReflectanceData",
    "ReflectanceViewStream",
    "SingularSystemError",
    "SpecularBasisSettings",
    "SpecularDecomposition",
    "SpecularFitSettings",
    "SpecularOptimization",
    "TextureResolution",
]
