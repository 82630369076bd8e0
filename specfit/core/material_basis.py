"""
Material basis abstraction and the in-memory implementation.

A material basis is the small set of B basis BRDFs every texel's appearance
is expressed in. Each basis material has:
    - a diffuse albedo (RGB)
    - a specular lobe sampled at R + 1 microfacet-angle buckets per channel

The interface (MaterialBasis) is what the rest of the core reads from; the
fit owns an ArrayMaterialBasis and writes to it during basis reconstruction.
Other implementations (e.g., one backed by a loaded prior solution) only need
to provide the read side.
"""

from abc import ABC, abstractmethod
from pathlib import Path

import numpy as np

RED, GREEN, BLUE = 0, 1, 2


class MaterialBasis(ABC):
    """
    Read-only view of B basis materials.

    Contract:
        - material_count and specular_resolution never change after creation.
        - evaluate_specular(channel, b, m) is defined for 0 <= m <= R.
    """

    @property
    @abstractmethod
    def material_count(self) -> int:
        """Number of basis materials (B)."""
        ...

    @property
    @abstractmethod
    def specular_resolution(self) -> int:
        """R: the specular curve has R + 1 samples."""
        ...

    @abstractmethod
    def diffuse_color(self, b: int) -> np.ndarray:
        """Diffuse albedo of basis b as an RGB array of shape (3,)."""
        ...

    @abstractmethod
    def evaluate_specular(self, channel: int, b: int, m: int) -> float:
        """Specular curve of basis b, color channel `channel`, at bucket m."""
        ...

    def evaluate_specular_red(self, b: int, m: int) -> float:
        return self.evaluate_specular(RED, b, m)

    def evaluate_specular_green(self, b: int, m: int) -> float:
        return self.evaluate_specular(GREEN, b, m)

    def evaluate_specular_blue(self, b: int, m: int) -> float:
        return self.evaluate_specular(BLUE, b, m)

    def specular_curves(self) -> np.ndarray:
        """All specular curves as a (B, R + 1, 3) array."""
        curves = np.empty((self.material_count, self.specular_resolution + 1, 3))
        for b in range(self.material_count):
            for m in range(self.specular_resolution + 1):
                for channel in (RED, GREEN, BLUE):
                    curves[b, m, channel] = self.evaluate_specular(channel, b, m)
        return curves

    def diffuse_colors(self) -> np.ndarray:
        """All diffuse albedos as a (B, 3) array."""
        return np.array([self.diffuse_color(b) for b in range(self.material_count)],
                        dtype=np.float64).reshape(self.material_count, 3)

    def save(self, output_directory: str | Path) -> None:
        """Write basisFunctions.csv and diffuseAlbedos.csv into output_directory."""
        # Deferred import: the serializer constructs ArrayMaterialBasis on load.
        from specfit.core.serializer import save_basis
        save_basis(self, output_directory)


class ArrayMaterialBasis(MaterialBasis):
    """
    MaterialBasis backed by numpy arrays.

    Args:
        diffuse_albedos: (B, 3) RGB diffuse albedos.
        specular:        (B, R + 1, 3) specular curves.

    A new basis starts black: zero albedo and a flat zero specular curve.
    """

    def __init__(self, diffuse_albedos, specular):
        self.diffuse_albedos = np.array(diffuse_albedos, dtype=np.float64)
        self.specular = np.array(specular, dtype=np.float64)

        if self.diffuse_albedos.ndim != 2 or self.diffuse_albedos.shape[1] != 3:
            raise ValueError(
                f"diffuse_albedos must have shape (B, 3), got {self.diffuse_albedos.shape}")
        if (self.specular.ndim != 3 or self.specular.shape[0] != self.diffuse_albedos.shape[0]
                or self.specular.shape[2] != 3 or self.specular.shape[1] < 2):
            raise ValueError(
                f"specular must have shape ({self.diffuse_albedos.shape[0]}, R + 1, 3), "
                f"got {self.specular.shape}")

    @classmethod
    def zeros(cls, basis_count: int, resolution: int) -> "ArrayMaterialBasis":
        return cls(np.zeros((basis_count, 3)), np.zeros((basis_count, resolution + 1, 3)))

    @property
    def material_count(self) -> int:
        return self.diffuse_albedos.shape[0]

    @property
    def specular_resolution(self) -> int:
        return self.specular.shape[1] - 1

    def diffuse_color(self, b: int) -> np.ndarray:
        return self.diffuse_albedos[b].copy()

    def evaluate_specular(self, channel: int, b: int, m: int) -> float:
        return float(self.specular[b, m, channel])

    def specular_curves(self) -> np.ndarray:
        return self.specular.copy()

    def diffuse_colors(self) -> np.ndarray:
        return self.diffuse_albedos.copy()

    def set_diffuse_albedo(self, b: int, rgb) -> None:
        rgb = np.asarray(rgb, dtype=np.float64)
        if rgb.shape != (3,):
            raise ValueError(f"Diffuse albedo must be RGB, got shape {rgb.shape}")
        self.diffuse_albedos[b] = rgb

    def set_specular_curve(self, channel: int, b: int, curve) -> None:
        curve = np.asarray(curve, dtype=np.float64)
        if curve.shape != (self.specular_resolution + 1,):
            raise ValueError(
                f"Specular curve must have {self.specular_resolution + 1} samples, "
                f"got {curve.shape}")
        self.specular[b, :, channel] = curve
