"""
Normal-equation accumulator shared by the basis reconstruction.

Stores both sides of the least-squares system to be solved:
    lhs = AᵀA          (N x N, symmetric positive semi-definite)
    rhs = Aᵀy          (N x channels, one column per color channel)

Per-view contributions are computed into their own zeroed MatrixSystem
and merged into a running total with add_contribution(). Addition is
associative and commutative, so views may be merged in any order.
"""

import numpy as np


class MatrixSystem:

    def __init__(self, lhs: np.ndarray, rhs: np.ndarray):
        lhs = np.asarray(lhs, dtype=np.float64)
        rhs = np.asarray(rhs, dtype=np.float64)
        if lhs.ndim != 2 or lhs.shape[0] != lhs.shape[1]:
            raise ValueError(f"lhs must be square, got shape {lhs.shape}")
        if rhs.ndim != 2 or rhs.shape[0] != lhs.shape[0]:
            raise ValueError(
                f"rhs must have {lhs.shape[0]} rows, got shape {rhs.shape}"
            )
        self.lhs = lhs
        self.rhs = rhs

    @classmethod
    def zeros(cls, size: int, channels: int = 3) -> "MatrixSystem":
        return cls(np.zeros((size, size)), np.zeros((size, channels)))

    @property
    def size(self) -> int:
        return self.lhs.shape[0]

    @property
    def channels(self) -> int:
        return self.rhs.shape[1]

    def add_contribution(self, other: "MatrixSystem") -> "MatrixSystem":
        """Add another system's lhs and rhs into this one, in place."""
        if other.lhs.shape != self.lhs.shape or other.rhs.shape != self.rhs.shape:
            raise ValueError("Cannot merge matrix systems of different sizes")
        self.lhs += other.lhs
        self.rhs += other.rhs
        return self

    def copy(self) -> "MatrixSystem":
        return MatrixSystem(self.lhs.copy(), self.rhs.copy())
