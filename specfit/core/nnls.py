"""
Non-negative least squares (Lawson & Hanson active-set method).

Solves  minimize ||Ax - b||²  subject to  x >= 0  working entirely on the
premultiplied form AᵀA x = Aᵀb, so callers that accumulate the normal
equations incrementally (as basis reconstruction and weight optimization
both do) never have to hold A.

Optional equality constraints are appended as trailing rows/columns of an
augmented KKT system:

    [ AᵀA  Cᵀ ] [ x ]   [ Aᵀb ]
    [ C    0  ] [ λ ] = [ d   ]

The constrained variables' Lagrange multipliers λ are always part of the
solved sub-system and are never subject to the non-negativity constraint.
"""

import logging

import numpy as np
import scipy.linalg

from specfit.core.errors import SingularSystemError

logger = logging.getLogger(__name__)


def tolerance_reference(rhs) -> float:
    """
    Reference magnitude used to scale the NNLS termination tolerance.

    Returns the first strictly positive value at or after the median of the
    sorted entries, or 1.0 if there is none.
    """
    values = np.sort(np.asarray(rhs, dtype=np.float64).ravel())
    upper = values[values.shape[0] // 2:]
    positive = upper[upper > 0.0]
    return float(positive[0]) if positive.size else 1.0


def solve(a, b, epsilon: float) -> np.ndarray:
    """Solve min ||Ax - b||² with x >= 0, forming AᵀA and Aᵀb internally."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.ndim != 2 or b.shape[0] != a.shape[0]:
        raise ValueError("b must be a vector with the same number of rows as matrix A.")
    return solve_premultiplied(a.T @ a, a.T @ b, epsilon)


def solve_premultiplied(ata, atb, epsilon: float, constraint_count: int = 0) -> np.ndarray:
    """
    Active-set NNLS on the premultiplied (and optionally augmented) system.

    Args:
        ata:              (n, n) AᵀA, augmented with constraint rows/columns
                          at the bottom/right when constraint_count > 0.
        atb:              (n,) Aᵀb, augmented with the constraints' right-hand side.
        epsilon:          Termination tolerance on the gradient; must be > 0.
        constraint_count: Number of trailing equality-constraint rows/columns.

    Returns:
        (n,) vector: the non-negative solution followed by the Lagrange
        multipliers of the equality constraints.

    Raises:
        ValueError: bad shapes or epsilon <= 0.
        SingularSystemError: non-finite input, or a singular sub-system that
            persists after rolling back the most recently freed variable.
    """
    ata = np.asarray(ata, dtype=np.float64)
    atb = np.asarray(atb, dtype=np.float64)
    if atb.ndim == 2 and atb.shape[1] == 1:
        atb = atb[:, 0]

    if ata.ndim != 2 or ata.shape[0] != ata.shape[1]:
        raise ValueError("A'A must be a square matrix.")
    if atb.ndim != 1 or atb.shape[0] != ata.shape[0]:
        raise ValueError("A'b must be a vector with the same number of rows as matrix A'A.")
    if not epsilon > 0.0:
        raise ValueError("Epsilon must be greater than zero.")
    if constraint_count < 0 or constraint_count >= ata.shape[0]:
        raise ValueError(
            f"constraint_count must be in [0, {ata.shape[0]}), got {constraint_count}")
    if not (np.isfinite(ata).all() and np.isfinite(atb).all()):
        raise SingularSystemError("NNLS input contains non-finite values.")

    n = ata.shape[0]
    nvars = n - constraint_count
    constraints = np.arange(nvars, n)

    # Passive set: variables free to move. Everything else is fixed at zero.
    passive = np.zeros(nvars, dtype=bool)
    x = np.zeros(n)
    w = atb.copy()

    while True:
        candidates = np.where(passive, -np.inf, w[:nvars])
        k = int(np.argmax(candidates))
        max_w = candidates[k]

        # Iterate until effectively no values of w are positive.
        if not (max_w > epsilon or not passive.any()):
            break

        passive[k] = True
        stalled = False

        try:
            s = _solve_partial(ata, atb, passive, constraints)

            # Make sure that none of the free variables went negative.
            while _min_passive(s, passive) < 0.0:
                free = passive & (s[:nvars] <= 0.0)
                with np.errstate(divide="ignore", invalid="ignore"):
                    ratios = x[:nvars] / (x[:nvars] - s[:nvars])
                ratios = np.where(free & ~np.isnan(ratios), ratios, np.inf)
                j = int(np.argmin(ratios))
                alpha = ratios[j]
                if not np.isfinite(alpha):
                    raise SingularSystemError("NNLS step length is not finite.")

                x += alpha * (s - x)

                # Make sure at least one previously positive value is zeroed;
                # round-off does not guarantee it.
                passive[j] = False
                x[j] = 0.0

                if j == k:
                    # Treat all remaining values in w as insignificant.
                    stalled = True
                else:
                    dropped = passive & (x[:nvars] <= 0.0)
                    passive[dropped] = False
                    x[:nvars][dropped] = 0.0

                s = _solve_partial(ata, atb, passive, constraints)

        except SingularSystemError as exc:
            logger.warning("Singular NNLS sub-system (%s); rolling back variable %d.", exc, k)
            passive[k] = False
            x[k] = 0.0
            # A second failure is unrecoverable and propagates.
            s = _solve_partial(ata, atb, passive, constraints)
            stalled = True

        x = s
        w = atb - ata @ x

        if stalled or max_w <= epsilon or passive.all():
            break

    return x


def _solve_partial(ata, atb, passive, constraints) -> np.ndarray:
    """Solve the sub-system over the passive variables plus the constraint rows."""
    mapping = np.concatenate([np.flatnonzero(passive), constraints])
    s = np.zeros(ata.shape[0])
    if mapping.size == 0:
        return s

    try:
        solution = scipy.linalg.solve(ata[np.ix_(mapping, mapping)], atb[mapping])
    except np.linalg.LinAlgError as exc:
        raise SingularSystemError(str(exc)) from exc

    if not np.isfinite(solution).all():
        raise SingularSystemError("Sub-system solution is not finite.")

    s[mapping] = solution
    return s


def _min_passive(s, passive) -> float:
    values = s[:passive.shape[0]][passive]
    return float(values.min()) if values.size else np.inf
