"""
Output directory manager for specular fits.

Each fit writes several artifacts. This module creates a structured,
timestamped directory tree for them so neither the driver nor the worker
has to construct paths manually.

Workspaces are stored under ~/SpecFit/workspaces/ by default. Each contains:
    basis/    — basisFunctions.csv and diffuseAlbedos.csv
    weights/  — weights00.png, weights01.png, ... (one per basis)
    textures/ — diffuse_frombasis.png
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path


@dataclass
class FitWorkspace:
    """Named paths within a fit workspace."""
    root: Path       # Top-level workspace directory
    basis: Path      # Basis CSV files
    weights: Path    # Per-basis weight maps
    textures: Path   # Derived texture maps


def create_workspace(base_dir: Path | None = None) -> FitWorkspace:
    """
    Create a fresh, timestamped workspace with all required subdirectories.

    Args:
        base_dir: Parent directory for workspaces. Defaults to
                  ~/SpecFit/workspaces/ if not specified.

    Returns:
        FitWorkspace with all directories created on disk.

    The timestamp (YYYYMMDD_HHMMSS_ffffff) sorts chronologically; the
    microseconds keep two fits started in the same second apart.
    """
    if base_dir is None:
        base_dir = Path.home() / "SpecFit" / "workspaces"

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    root = Path(base_dir) / f"fit_{timestamp}"

    paths = FitWorkspace(
        root=root,
        basis=root / "basis",
        weights=root / "weights",
        textures=root / "textures",
    )

    paths.basis.mkdir(parents=True, exist_ok=True)
    paths.weights.mkdir(parents=True, exist_ok=True)
    paths.textures.mkdir(parents=True, exist_ok=True)

    return paths
