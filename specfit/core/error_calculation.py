"""
Fit error: weighted RMSE of the current decomposition against the observations.
"""

import logging
import math

import numpy as np

from specfit.core.decomposition import SpecularDecomposition
from specfit.core.reflectance import ReflectanceData, ReflectanceViewStream
from specfit.core.weight_optimization import SpecularWeightModel

logger = logging.getLogger(__name__)


def calculate_rmse(view_stream: ReflectanceViewStream, decomposition: SpecularDecomposition,
                   metallicity: float, max_workers: int | None = None) -> float:
    """
    Root-mean-square reflectance error over every visible sample of every view,
    weighted by each sample's additional weight and averaged over the three
    color channels. Returns 0.0 when there is nothing to compare against.
    """
    model = SpecularWeightModel(decomposition.basis, metallicity)
    weights = decomposition.weights_view()

    def view_error(view: ReflectanceData):
        visible = view.visible_mask()
        predicted = model.predict(weights[visible], view.halfway_index[visible],
                                  view.geom_ratio[visible])
        residual = predicted - view.color[visible]
        sample_weight = view.additional_weight[visible]
        return (float(np.sum(sample_weight * np.sum(residual * residual, axis=1))),
                3.0 * float(np.sum(sample_weight)))

    def combine(total, partial):
        return total[0] + partial[0], total[1] + partial[1]

    squared_error, weight_sum = view_stream.map_reduce(
        view_error, combine, (0.0, 0.0), max_workers=max_workers)

    if weight_sum <= 0.0:
        logger.warning("No visible samples; reporting zero error.")
        return 0.0

    rmse = math.sqrt(squared_error / weight_sum)
    logger.info("RMSE: %.6g", rmse)
    return rmse
