"""Positive definite matrices used to precondition Hamiltonian dynamics.

A preconditioner :math:`M` here is the matrix representation of a Euclidean metric on
the position space. It is the covariance of the zero-mean Gaussian distribution the
momentum is drawn from and defines the kinetic energy :math:`p^T M^{-1} p / 2`. When
adapted from samples the *inverse* of the preconditioner is set to an estimate of the
covariance of the target distribution.
"""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING

import numpy as np
import scipy.linalg as sla

from ahmc.errors import LinAlgError

if TYPE_CHECKING:
    from typing import Any

    from numpy.typing import ArrayLike, NDArray


PRECONDITIONER_KINDS = ("unit", "diagonal", "dense")


class Preconditioner(abc.ABC):
    """Base class for positive definite preconditioner matrices.

    Implements overloads of the matrix multiplication operator `@` for products with
    NumPy arrays. Inverses and square-roots are constructed lazily on first access and
    cached, so repeated kinetic energy evaluations reuse the same factorisation.
    """

    __array_priority__ = 1

    kind: str = None

    def __init__(self, size: int | None) -> None:
        self._size = size
        self._inv = None
        self._sqrt = None

    @property
    def size(self) -> int | None:
        """Number of rows / columns or `None` if the matrix is implicitly sized."""
        return self._size

    @property
    def shape(self) -> tuple[int | None, int | None]:
        return (self._size, self._size)

    @property
    def inv(self) -> Preconditioner:
        """Inverse of matrix as a `Preconditioner` object."""
        if self._inv is None:
            self._inv = self._construct_inv()
        return self._inv

    @property
    def sqrt(self) -> Preconditioner | NDArray:
        """Square-root of matrix satisfying `matrix == sqrt @ sqrt.T`.

        This will in general not be the symmetric square root of the matrix.
        """
        if self._sqrt is None:
            self._sqrt = self._construct_sqrt()
        return self._sqrt

    @abc.abstractmethod
    def _construct_inv(self) -> Preconditioner:
        """Construct inverse of matrix."""

    @abc.abstractmethod
    def _construct_sqrt(self) -> Preconditioner | NDArray:
        """Construct a square-root factor of matrix."""

    @abc.abstractmethod
    def _left_matrix_multiply(self, other: NDArray) -> NDArray:
        """Compute `self @ other` for a 1D or 2D array `other`."""

    def __matmul__(self, other: ArrayLike) -> NDArray:
        return self._left_matrix_multiply(np.asarray(other))

    def __rmatmul__(self, other: ArrayLike) -> NDArray:
        # Matrix is symmetric so `other @ self == (self @ other.T).T`
        return self._left_matrix_multiply(np.asarray(other).T).T

    @property
    @abc.abstractmethod
    def array(self) -> NDArray:
        """Dense 2D array representation of matrix."""

    @property
    @abc.abstractmethod
    def diagonal(self) -> NDArray:
        """Diagonal of matrix as a 1D array."""

    def quadratic_form_inv(self, vector: NDArray) -> float:
        """Compute `vector @ inv(self) @ vector`."""
        return vector @ (self.inv @ vector)

    @abc.abstractmethod
    def to_dict(self) -> dict[str, Any]:
        """Plain Python representation of matrix, inverted by `from_dict`."""

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Preconditioner) or self.kind != other.kind:
            return False
        if self.kind == "unit":
            return self.size == other.size
        return self.shape == other.shape and np.array_equal(self.array, other.array)

    __hash__ = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(size={self.size})"


class UnitPreconditioner(Preconditioner):
    """Identity matrix.

    May be defined with an implicit size of `None`, in which case it acts as the
    identity on vectors of any length.
    """

    kind = "unit"

    def _construct_inv(self) -> UnitPreconditioner:
        return self

    def _construct_sqrt(self) -> UnitPreconditioner:
        return self

    def _left_matrix_multiply(self, other: NDArray) -> NDArray:
        return other

    @property
    def array(self) -> NDArray:
        if self.size is None:
            msg = "Cannot get array representation for implicitly sized identity."
            raise RuntimeError(msg)
        return np.identity(self.size)

    @property
    def diagonal(self) -> NDArray:
        return np.ones(self.size)

    def quadratic_form_inv(self, vector: NDArray) -> float:
        return vector @ vector

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "size": self.size}


class DiagonalPreconditioner(Preconditioner):
    """Diagonal matrix with strictly positive and finite diagonal."""

    kind = "diagonal"

    def __init__(self, diagonal: ArrayLike) -> None:
        """
        Args:
            diagonal: 1D array of positive values specifying matrix diagonal.
        """
        diagonal = np.array(diagonal, dtype=np.float64)
        if diagonal.ndim != 1:
            msg = "Diagonal must be a 1D array."
            raise ValueError(msg)
        if not np.all(np.isfinite(diagonal)) or not np.all(diagonal > 0):
            msg = "Diagonal values must all be positive and finite."
            raise ValueError(msg)
        super().__init__(diagonal.shape[0])
        self._diagonal = diagonal

    @property
    def diagonal(self) -> NDArray:
        return self._diagonal

    @property
    def array(self) -> NDArray:
        return np.diag(self._diagonal)

    def _construct_inv(self) -> DiagonalPreconditioner:
        inv = DiagonalPreconditioner(1.0 / self._diagonal)
        inv._inv = self  # noqa: SLF001
        return inv

    def _construct_sqrt(self) -> DiagonalPreconditioner:
        return DiagonalPreconditioner(self._diagonal**0.5)

    def _left_matrix_multiply(self, other: NDArray) -> NDArray:
        if other.ndim == 2:
            return self._diagonal[:, None] * other
        return self._diagonal * other

    def quadratic_form_inv(self, vector: NDArray) -> float:
        return np.sum(vector**2 / self._diagonal)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "diagonal": self._diagonal.tolist()}


class DensePreconditioner(Preconditioner):
    """Symmetric positive definite matrix specified by a dense 2D array.

    A lower-triangular Cholesky factor is computed when first required and used both
    as the square-root factor and to compute the inverse.
    """

    kind = "dense"

    def __init__(self, array: ArrayLike, factor: NDArray | None = None) -> None:
        """
        Args:
            array: 2D array specifying matrix entries. Must be symmetric positive
                definite.
            factor: Optional pre-computed lower-triangular factor such that
                `array = factor @ factor.T`.
        """
        array = np.array(array, dtype=np.float64)
        if array.ndim != 2 or array.shape[0] != array.shape[1]:
            msg = "Array must be square and 2D."
            raise ValueError(msg)
        if not np.all(np.isfinite(array)):
            msg = "Array values must all be finite."
            raise ValueError(msg)
        super().__init__(array.shape[0])
        self._array = array
        self._factor = factor

    @property
    def factor(self) -> NDArray:
        """Lower-triangular Cholesky factor of matrix."""
        if self._factor is None:
            try:
                self._factor = sla.cholesky(self._array, lower=True)
            except sla.LinAlgError as e:
                msg = "Cholesky factorisation failed: matrix not positive definite."
                raise LinAlgError(msg) from e
        return self._factor

    @property
    def array(self) -> NDArray:
        return self._array

    @property
    def diagonal(self) -> NDArray:
        return self._array.diagonal().copy()

    def _construct_inv(self) -> DensePreconditioner:
        inv_array = sla.cho_solve((self.factor, True), np.identity(self.size))
        # Symmetrize to remove floating point asymmetry from the triangular solves
        inv = DensePreconditioner(0.5 * (inv_array + inv_array.T))
        inv._inv = self  # noqa: SLF001
        return inv

    def _construct_sqrt(self) -> NDArray:
        return self.factor

    def _left_matrix_multiply(self, other: NDArray) -> NDArray:
        return self._array @ other

    def quadratic_form_inv(self, vector: NDArray) -> float:
        solved = sla.solve_triangular(self.factor, vector, lower=True)
        return solved @ solved

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "array": self._array.tolist()}


def make_preconditioner(kind: str, size: int) -> Preconditioner:
    """Create an identity-valued preconditioner of the given kind.

    Args:
        kind: One of `"unit"`, `"diagonal"` or `"dense"`.
        size: Dimension of the position space.

    Returns:
        Preconditioner equal to the identity matrix.
    """
    if kind == "unit":
        return UnitPreconditioner(size)
    if kind == "diagonal":
        return DiagonalPreconditioner(np.ones(size))
    if kind == "dense":
        return DensePreconditioner(np.identity(size))
    msg = f"Unknown preconditioner kind {kind!r}, expected one of {PRECONDITIONER_KINDS}."
    raise ValueError(msg)


def preconditioner_from_dict(data: dict[str, Any]) -> Preconditioner:
    """Reconstruct a preconditioner from the output of its `to_dict` method."""
    kind = data["kind"]
    if kind == "unit":
        return UnitPreconditioner(data["size"])
    if kind == "diagonal":
        return DiagonalPreconditioner(data["diagonal"])
    if kind == "dense":
        return DensePreconditioner(data["array"])
    msg = f"Unknown preconditioner kind {kind!r}."
    raise ValueError(msg)
