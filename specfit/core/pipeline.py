"""
Specular fit pipeline — stage definitions.

This module defines the discrete stages of a specular basis fit. Each stage
is a distinct, logged step that a caller (e.g., the background worker and
whatever UI listens to it) can monitor.

The fit follows the alternating decomposition sequence:
    1. Initialization — Average each texel's observed colors and cluster
       them with k-means++ into one-hot starting weights
    2. Basis Reconstruction — Solve for every basis BRDF (diffuse albedo and
       specular curve) with the texel weights held fixed
    3. Weight Optimization — Solve every texel's sum-to-one weight vector
       with the basis held fixed
       (steps 2 and 3 alternate until the error stops improving)
    4. Hole Filling — Propagate weights into texels no view ever saw
    5. Export — Write the basis CSV files, weight maps and diffuse map

The stage constants defined here are used throughout the package to track
progress, report errors and log output consistently.
"""


class FitStage:
    """
    String constants identifying each fit stage.

    Used as keys for progress tracking, logging and worker signals. Plain
    string constants compare directly without .value access.
    """
    INITIALIZATION = "initialization"
    BASIS_RECONSTRUCTION = "basis_reconstruction"
    WEIGHT_OPTIMIZATION = "weight_optimization"
    HOLE_FILLING = "hole_filling"
    EXPORT = "export"


# Order stages are first entered in. Basis reconstruction and weight
# optimization repeat once per outer iteration.
STAGE_ORDER = [
    FitStage.INITIALIZATION,
    FitStage.BASIS_RECONSTRUCTION,
    FitStage.WEIGHT_OPTIMIZATION,
    FitStage.HOLE_FILLING,
    FitStage.EXPORT,
]

# Human-readable display names for each stage.
STAGE_DISPLAY_NAMES = {
    FitStage.INITIALIZATION: "Initializing Weights",
    FitStage.BASIS_RECONSTRUCTION: "Reconstructing Basis BRDFs",
    FitStage.WEIGHT_OPTIMIZATION: "Optimizing Weights",
    FitStage.HOLE_FILLING: "Filling Holes",
    FitStage.EXPORT: "Saving Results",
}

# Basis presets: label -> (basis_count, basis_resolution).
#
# The normal-equation system is N x N with N = count * (resolution + 1), so
# cost grows quadratically in both:
#   Preview  — 4 bases, 45 buckets: N = 184, solves in well under a second.
#   Standard — 8 bases, 90 buckets: N = 728, the usual choice.
#   Detailed — 12 bases, 180 buckets: N = 2172, for sharp highlights and
#              objects with many distinct materials.
BASIS_PRESETS = {
    "Preview (4 bases, 45 buckets)": (4, 45),
    "Standard (8 bases, 90 buckets)": (8, 90),
    "Detailed (12 bases, 180 buckets)": (12, 180),
}
