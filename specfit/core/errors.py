"""
Exception types raised by the specfit core.

Every failure the library raises on purpose derives from FitError, so an
orchestrating pipeline can catch one type, report the message, and stop.
Argument mistakes (wrong array shapes, nonsensical settings) are reported
with the built-in ValueError instead, since they are programming errors
rather than fitting failures.
"""


class FitError(Exception):
    """
    Raised when a fitting stage fails.

    Carries a human-readable message naming the stage and the likely cause.
    The worker layer catches this and forwards it to the UI via signals.
    """
    pass


class SingularSystemError(FitError):
    """
    Raised when a non-negative least squares sub-system cannot be solved.

    This happens when the normal-equation matrix restricted to the current
    set of free variables is singular (or contains non-finite values) and
    the solver's single rollback attempt also fails. It is fatal to the
    reconstruction pass that triggered it: no partial basis is committed.
    """
    pass


class MatrixValidationError(FitError):
    """
    Raised in validation mode when the closed-form sparse accumulation of
    AᵀA / Aᵀy disagrees with the dense reference product by more than the
    allowed relative tolerance. Indicates a bug in the accumulation math.
    """
    pass


class FitCancelled(FitError):
    """Raised by the fit driver when cancellation is requested between stages."""
    pass
