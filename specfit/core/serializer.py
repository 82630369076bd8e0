"""
Reading and writing fitted bases, weight maps and diffuse maps.

Text formats (UTF-8, one record per line):

    basisFunctions.csv
        Red#0, v0, v1, ..., vR
        Green#0, v0, v1, ..., vR
        Blue#0, v0, v1, ..., vR
        Red#1, ...

    diffuseAlbedos.csv
        Diffuse#0, r, g, b
        Diffuse#1, ...

Values are written with repr() so a saved basis loads back bit-for-bit.
The reader infers R from the first line and tolerates a trailing comma.
Diffuse lines are also accepted at the end of basisFunctions.csv; when no
diffuse albedos are found at all they default to black.

Image formats (PNG via Pillow, rows flipped so texel row 0 is the bottom
of the image):

    weights00.png, weights01.png, ...   one greyscale map per basis
    diffuse_frombasis.png               weight-blended albedo, gamma encoded
"""

import logging
import re
from pathlib import Path

import numpy as np
from PIL import Image

from specfit.core.decomposition import SpecularDecomposition
from specfit.core.material_basis import ArrayMaterialBasis, MaterialBasis

logger = logging.getLogger(__name__)

BASIS_FUNCTIONS_FILENAME = "basisFunctions.csv"
DIFFUSE_ALBEDOS_FILENAME = "diffuseAlbedos.csv"
DIFFUSE_MAP_FILENAME = "diffuse_frombasis.png"

_CSV_SPLIT = re.compile(r"\s*,\s*")
_CHANNEL_TAGS = ("Red", "Green", "Blue")


def weight_filename(b: int) -> str:
    return f"weights{b:02d}.png"


# ---------------------------------------------------------------------------
# Basis
# ---------------------------------------------------------------------------

def save_basis(basis: MaterialBasis, output_directory: str | Path) -> None:
    """Write basisFunctions.csv and diffuseAlbedos.csv into output_directory."""
    output_directory = Path(output_directory)
    output_directory.mkdir(parents=True, exist_ok=True)

    curves = basis.specular_curves()
    with open(output_directory / BASIS_FUNCTIONS_FILENAME, "w", encoding="utf-8") as out:
        for b in range(basis.material_count):
            for channel, tag in enumerate(_CHANNEL_TAGS):
                values = ", ".join(repr(float(v)) for v in curves[b, :, channel])
                out.write(f"{tag}#{b}, {values}\n")

    with open(output_directory / DIFFUSE_ALBEDOS_FILENAME, "w", encoding="utf-8") as out:
        for b in range(basis.material_count):
            r, g, bl = (repr(float(v)) for v in basis.diffuse_color(b))
            out.write(f"Diffuse#{b}, {r}, {g}, {bl}\n")

    logger.info("Saved %d basis functions to %s", basis.material_count, output_directory)


def _read_records(path: Path) -> list[list[str]]:
    with open(path, encoding="utf-8") as f:
        lines = [line.strip() for line in f]
    records = []
    for line in lines:
        if not line:
            continue
        fields = _CSV_SPLIT.split(line)
        # Trailing comma leaves one empty field.
        if fields[-1] == "":
            fields = fields[:-1]
        records.append(fields)
    return records


def _parse_values(tag: str, fields: list[str], expected: int, path: Path) -> list[float]:
    if len(fields) != expected:
        raise ValueError(
            f"{path.name}: {tag} has {len(fields)} values, expected {expected}")
    try:
        return [float(v) for v in fields]
    except ValueError as exc:
        raise ValueError(f"{path.name}: malformed number in {tag}: {exc}") from exc


def load_basis(directory: str | Path) -> ArrayMaterialBasis:
    """
    Load a basis written by save_basis().

    Raises:
        FileNotFoundError: basisFunctions.csv does not exist.
        ValueError: a line is out of order or malformed.
    """
    directory = Path(directory)
    basis_path = directory / BASIS_FUNCTIONS_FILENAME
    if not basis_path.is_file():
        raise FileNotFoundError(f"No {BASIS_FUNCTIONS_FILENAME} in {directory}")

    records = _read_records(basis_path)
    if not records:
        raise ValueError(f"{basis_path.name} is empty")

    # Every specular line holds the tag plus R + 1 values.
    sample_count = len(records[0]) - 1
    if sample_count < 2:
        raise ValueError(f"{basis_path.name}: first line has too few values")

    curves = []
    diffuse_records = []
    index = 0
    while index < len(records) and not records[index][0].startswith("Diffuse"):
        b = len(curves)
        curve = np.empty((sample_count, 3))
        for channel, tag in enumerate(_CHANNEL_TAGS):
            expected_tag = f"{tag}#{b}"
            if index >= len(records) or records[index][0] != expected_tag:
                found = records[index][0] if index < len(records) else "end of file"
                raise ValueError(
                    f"{basis_path.name}: expected {expected_tag}, found {found}")
            curve[:, channel] = _parse_values(
                expected_tag, records[index][1:], sample_count, basis_path)
            index += 1
        curves.append(curve)
    diffuse_records.extend(records[index:])

    diffuse_path = directory / DIFFUSE_ALBEDOS_FILENAME
    if diffuse_path.is_file():
        diffuse_records.extend(_read_records(diffuse_path))

    basis_count = len(curves)
    diffuse = np.zeros((basis_count, 3))
    for b, record in enumerate(diffuse_records):
        expected_tag = f"Diffuse#{b}"
        if b >= basis_count or record[0] != expected_tag:
            raise ValueError(f"Unexpected line beginning with {record[0]}")
        diffuse[b] = _parse_values(expected_tag, record[1:], 3, diffuse_path)

    if len(diffuse_records) < basis_count:
        logger.warning("Diffuse albedos missing for %d bases; defaulting to black.",
                       basis_count - len(diffuse_records))

    logger.info("Loaded %d basis functions (resolution %d) from %s",
                basis_count, sample_count - 1, directory)
    return ArrayMaterialBasis(diffuse, np.stack(curves))


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def _to_image_rows(values: np.ndarray, width: int, height: int) -> np.ndarray:
    """(P, ...) texel values to image rows, flipped vertically."""
    return np.flipud(values.reshape((height, width) + values.shape[1:]))


def save_weight_images(decomposition: SpecularDecomposition,
                       output_directory: str | Path) -> list[Path]:
    """One greyscale PNG per basis; returns the written paths."""
    output_directory = Path(output_directory)
    output_directory.mkdir(parents=True, exist_ok=True)
    width, height = decomposition.texture.width, decomposition.texture.height
    weights = decomposition.weights_view()

    paths = []
    for b in range(decomposition.basis_count):
        rows = _to_image_rows(weights[:, b], width, height)
        img_uint8 = np.round(np.clip(rows, 0.0, 1.0) * 255).astype(np.uint8)
        path = output_directory / weight_filename(b)
        Image.fromarray(np.ascontiguousarray(img_uint8)).save(path)
        paths.append(path)

    logger.info("Saved %d weight maps to %s", len(paths), output_directory)
    return paths


def save_diffuse_map(decomposition: SpecularDecomposition, gamma: float,
                     output_directory: str | Path) -> Path:
    """
    Write the weight-averaged diffuse albedo as an RGBA PNG.

    Texels whose weights sum to zero are left fully transparent.
    """
    output_directory = Path(output_directory)
    output_directory.mkdir(parents=True, exist_ok=True)
    width, height = decomposition.texture.width, decomposition.texture.height

    weights = decomposition.weights_view()
    weight_sum = weights.sum(axis=1)
    covered = weight_sum > 0.0

    rgba = np.zeros((decomposition.texel_count, 4))
    blended = decomposition.diffuse_map()[covered] / weight_sum[covered, np.newaxis]
    rgba[covered, :3] = np.minimum(1.0, np.power(np.maximum(blended, 0.0), 1.0 / gamma))
    rgba[covered, 3] = 1.0

    rows = _to_image_rows(rgba, width, height)
    img_uint8 = np.round(rows * 255).astype(np.uint8)
    path = output_directory / DIFFUSE_MAP_FILENAME
    Image.fromarray(np.ascontiguousarray(img_uint8)).save(path)

    logger.info("Saved diffuse map to %s", path)
    return path
