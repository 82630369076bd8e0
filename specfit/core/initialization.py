"""
Initial texel weights from a color clustering.

Before the first basis reconstruction there is no basis to solve weights
against, so the fit starts from a hard assignment instead: every texel's
visible observations are averaged into one mean color, the mean colors are
grouped into basis_count clusters with k-means++, and each texel gets a
one-hot weight vector selecting its cluster. Texels never seen in any view
get all-zero weights (they are handled later by hole filling).
"""

import logging
from typing import Callable

import numpy as np
from scipy.cluster.vq import kmeans2

from specfit.core.decomposition import SpecularDecomposition
from specfit.core.errors import FitError
from specfit.core.reflectance import ReflectanceData, ReflectanceViewStream

logger = logging.getLogger(__name__)


def average_colors(view_stream: ReflectanceViewStream, texel_count: int,
                   max_workers: int | None = None):
    """
    Mean observed color per texel over its visible samples.

    Returns:
        (colors, seen): (P, 3) mean colors (zero where unseen) and a (P,)
        mask of texels with at least one visible sample.
    """

    def accumulate(view: ReflectanceData):
        if view.size != texel_count:
            raise ValueError(f"View has {view.size} samples, expected {texel_count}")
        visible = view.visible_mask()
        return view.color * visible[:, np.newaxis], visible.astype(np.float64)

    def combine(total, partial):
        return total[0] + partial[0], total[1] + partial[1]

    color_sum, count = view_stream.map_reduce(
        accumulate, combine, (np.zeros((texel_count, 3)), np.zeros(texel_count)),
        max_workers=max_workers)

    seen = count > 0
    colors = np.zeros((texel_count, 3))
    colors[seen] = color_sum[seen] / count[seen, np.newaxis]
    return colors, seen


def initialize_weights(view_stream: ReflectanceViewStream,
                       decomposition: SpecularDecomposition,
                       seed: int = 0,
                       max_workers: int | None = None,
                       on_progress: Callable[[str], None] | None = None) -> np.ndarray:
    """
    Assign every seen texel to one basis by k-means++ over its mean color.

    Returns:
        (P,) cluster label per texel, -1 for texels never seen.

    Raises:
        FitError: no texel has a visible sample in any view.
    """
    if on_progress is not None:
        on_progress("Clustering texel colors...")

    colors, seen = average_colors(view_stream, decomposition.texel_count, max_workers)
    if not seen.any():
        raise FitError("No texel was visible in any view; cannot initialize weights.")

    basis_count = decomposition.basis_count
    data = colors[seen]

    # k-means++ needs at least k distinct points to pick distinct centers.
    cluster_count = min(basis_count, np.unique(data, axis=0).shape[0])
    if cluster_count == 1:
        assignment = np.zeros(data.shape[0], dtype=np.intp)
    else:
        centers, assignment = kmeans2(data, cluster_count, minit="++",
                                      rng=np.random.default_rng(seed))
        logger.info("Initial centers:\n%s", np.array2string(centers, precision=4))

    labels = np.full(decomposition.texel_count, -1, dtype=np.intp)
    labels[seen] = assignment

    weights = np.zeros((decomposition.texel_count, basis_count))
    weights[np.flatnonzero(seen), assignment] = 1.0
    decomposition.set_weights(slice(None), weights)

    logger.info("Initialized weights for %d texels into %d clusters.",
                int(np.count_nonzero(seen)), cluster_count)
    return labels
