# gmm_em/_matrix.py
"""Dense float64 matrix used by the k-means and EM stages.

The matrix is a thin, shape-checked wrapper around a 2-D ``torch.Tensor``.
Only the operations the estimation pipeline needs are provided:

- construction: zeros (r, c), diagonal, identity, flat row-/column-major array
- element access, in-place row/column insertion, row/column extraction
- dot product, inverse, determinant (and its log), covariance
- row- or column-wise add / subtract / (weighted) average

Conventions:
- ``covar`` treats rows as observations and columns as variables
  (``numpy.cov(..., rowvar=False)``).
- ``axis=0`` works down the rows (one value per column), ``axis=1`` across the
  columns (one value per row), as in numpy/torch reductions.
- In-place operations return ``self``; ``dot``, ``inv``, ``covar`` and
  ``transpose`` return new matrices and never modify their operands.

Shape mismatches raise ``SizeError``; a singular or ill-conditioned solve raises
``NumericSolverError``.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np
import torch

from ._errors import NumericSolverError, SizeError

DTYPE = torch.float64


# ---------------------------
# Conversion helpers
# ---------------------------

def as_tensor(data) -> torch.Tensor:
    """Convert Matrix / Tensor / ndarray / nested sequence to a float64 CPU tensor.

    Tensors that are already float64 on the CPU are returned without a copy.
    """
    if isinstance(data, Matrix):
        return data.tensor
    if isinstance(data, torch.Tensor):
        return data.detach().to(device="cpu", dtype=DTYPE)
    return torch.as_tensor(np.asarray(data, dtype=np.float64))


def as_dataset(data) -> torch.Tensor:
    """Validate an N x M numeric table. A 1-D sequence is read as N x 1."""
    X = as_tensor(data)
    if X.dim() == 1:
        X = X.unsqueeze(1)
    if X.dim() != 2:
        raise SizeError(f"dataset must be 2-D (N, M), got shape {tuple(X.shape)}")
    if X.shape[0] == 0 or X.shape[1] == 0:
        raise ValueError(f"dataset is empty, got shape {tuple(X.shape)}")
    if not torch.isfinite(X).all():
        raise ValueError("dataset contains NaN or infinite values")
    return X


class Orientation(Enum):
    """Layout of a flat array passed to ``Matrix.from_array``."""

    ROW_MAJOR = "row_major"
    COLUMN_MAJOR = "column_major"


# ---------------------------
# Matrix
# ---------------------------

class Matrix:
    """Dense r x c float64 matrix."""

    __slots__ = ("_data",)

    def __init__(self, n_rows: int = 0, n_cols: int = 0) -> None:
        if n_rows < 0 or n_cols < 0:
            raise ValueError(f"matrix dimensions must be non-negative, got ({n_rows}, {n_cols})")
        self._data = torch.zeros((n_rows, n_cols), dtype=DTYPE)

    @classmethod
    def _wrap(cls, data: torch.Tensor) -> "Matrix":
        m = cls.__new__(cls)
        m._data = data
        return m

    @classmethod
    def from_tensor(cls, data) -> "Matrix":
        """Copy a 2-D array-like into a new matrix."""
        t = as_tensor(data)
        if t.dim() != 2:
            raise SizeError(f"matrix data must be 2-D, got shape {tuple(t.shape)}")
        return cls._wrap(t.clone())

    @classmethod
    def from_array(
        cls,
        values,
        n_rows: int,
        n_cols: int,
        orientation: Orientation = Orientation.ROW_MAJOR,
    ) -> "Matrix":
        """Build a matrix from its flat row-major or column-major representation."""
        flat = as_tensor(values).reshape(-1)
        if flat.numel() != n_rows * n_cols:
            raise SizeError(f"{flat.numel()} values cannot fill a {n_rows}x{n_cols} matrix")
        if orientation is Orientation.ROW_MAJOR:
            data = flat.reshape(n_rows, n_cols)
        else:
            data = flat.reshape(n_cols, n_rows).T
        return cls._wrap(data.clone().contiguous())

    @classmethod
    def diag(cls, values) -> "Matrix":
        """Zeros off the diagonal, ``values`` on it (like numpy.diag)."""
        return cls._wrap(torch.diag(as_tensor(values).reshape(-1)).clone())

    @classmethod
    def identity(cls, n: int) -> "Matrix":
        return cls._wrap(torch.eye(n, dtype=DTYPE))

    # -----------------------
    # Shape and element access
    # -----------------------

    @property
    def shape(self) -> Tuple[int, int]:
        return (int(self._data.shape[0]), int(self._data.shape[1]))

    @property
    def row_count(self) -> int:
        return int(self._data.shape[0])

    @property
    def col_count(self) -> int:
        return int(self._data.shape[1])

    @property
    def tensor(self) -> torch.Tensor:
        """Underlying (r, c) tensor. Shared, not copied: treat as read-only."""
        return self._data

    def numpy(self) -> np.ndarray:
        return self._data.numpy().copy()

    def tolist(self) -> List[List[float]]:
        return self._data.tolist()

    def copy(self) -> "Matrix":
        return Matrix._wrap(self._data.clone())

    def _check_position(self, i: int, j: int) -> None:
        if not (0 <= i < self.row_count and 0 <= j < self.col_count):
            raise IndexError(f"position ({i}, {j}) outside {self.row_count}x{self.col_count} matrix")

    def get_value(self, i: int, j: int) -> float:
        self._check_position(i, j)
        return float(self._data[i, j])

    def assign(self, value: float, i: int, j: int) -> None:
        self._check_position(i, j)
        self._data[i, j] = float(value)

    def __getitem__(self, key: Tuple[int, int]) -> float:
        i, j = key
        return self.get_value(i, j)

    def __setitem__(self, key: Tuple[int, int], value: float) -> None:
        i, j = key
        self.assign(value, i, j)

    def row(self, i: int) -> torch.Tensor:
        """Copy of row ``i``."""
        if not 0 <= i < self.row_count:
            raise IndexError(f"row {i} outside matrix with {self.row_count} rows")
        return self._data[i].clone()

    def column(self, j: int) -> torch.Tensor:
        """Copy of column ``j``."""
        if not 0 <= j < self.col_count:
            raise IndexError(f"column {j} outside matrix with {self.col_count} columns")
        return self._data[:, j].clone()

    def insert_row(self, row, index: Optional[int] = None) -> "Matrix":
        """Insert ``row`` so that it becomes row ``index`` (default: append).

        On an empty 0x0 matrix the row defines the column count.
        """
        vec = as_tensor(row).reshape(-1)
        if self.shape == (0, 0):
            self._data = torch.zeros((0, vec.numel()), dtype=DTYPE)
        elif vec.numel() != self.col_count:
            raise SizeError(f"row of length {vec.numel()} does not fit a matrix with {self.col_count} columns")
        index = self.row_count if index is None else index
        if not 0 <= index <= self.row_count:
            raise IndexError(f"row position {index} outside [0, {self.row_count}]")
        self._data = torch.cat([self._data[:index], vec.unsqueeze(0), self._data[index:]], dim=0)
        return self

    def insert_column(self, col, index: Optional[int] = None) -> "Matrix":
        """Insert ``col`` so that it becomes column ``index`` (default: append).

        On an empty 0x0 matrix the column defines the row count.
        """
        vec = as_tensor(col).reshape(-1)
        if self.shape == (0, 0):
            self._data = torch.zeros((vec.numel(), 0), dtype=DTYPE)
        elif vec.numel() != self.row_count:
            raise SizeError(f"column of length {vec.numel()} does not fit a matrix with {self.row_count} rows")
        index = self.col_count if index is None else index
        if not 0 <= index <= self.col_count:
            raise IndexError(f"column position {index} outside [0, {self.col_count}]")
        self._data = torch.cat([self._data[:, :index], vec.unsqueeze(1), self._data[:, index:]], dim=1)
        return self

    def clear(self) -> None:
        """Drop all entries, leaving a 0x0 matrix."""
        self._data = torch.zeros((0, 0), dtype=DTYPE)

    # -----------------------
    # Linear algebra
    # -----------------------

    def _require_square(self, op: str) -> None:
        if self.row_count != self.col_count:
            raise SizeError(f"{op} requires a square matrix, got {self.row_count}x{self.col_count}")

    def dot(self, other) -> "Matrix":
        """Matrix product ``self @ other``."""
        other = other if isinstance(other, Matrix) else Matrix.from_tensor(other)
        if self.col_count != other.row_count:
            raise SizeError(
                f"cannot multiply {self.row_count}x{self.col_count} by {other.row_count}x{other.col_count}"
            )
        return Matrix._wrap(self._data @ other._data)

    __matmul__ = dot

    def transpose(self) -> "Matrix":
        return Matrix._wrap(self._data.T.clone())

    def inv(self) -> "Matrix":
        self._require_square("inv")
        if self.row_count == 0:
            return Matrix()
        inverse, info = torch.linalg.inv_ex(self._data)
        if int(info) != 0 or not torch.isfinite(inverse).all():
            raise NumericSolverError("inverse failed: matrix is singular")
        cond = float(torch.linalg.cond(self._data))
        if not cond < 1.0 / torch.finfo(DTYPE).eps:
            raise NumericSolverError(f"inverse failed: matrix is ill-conditioned (cond={cond:.3e})")
        return Matrix._wrap(inverse)

    def det(self) -> float:
        self._require_square("det")
        value = float(torch.linalg.det(self._data))
        if not math.isfinite(value):
            raise NumericSolverError("determinant is not finite")
        return value

    def slogdet(self) -> Tuple[float, float]:
        """(sign, ln|det|); sign is 0.0 for a singular matrix."""
        self._require_square("slogdet")
        sign, logabsdet = torch.linalg.slogdet(self._data)
        return float(sign), float(logabsdet)

    def log_det(self) -> float:
        """ln|det|, computed without forming the (possibly under/overflowing) determinant."""
        sign, logabsdet = self.slogdet()
        if sign == 0.0 or not math.isfinite(logabsdet):
            raise NumericSolverError("log-determinant failed: matrix is singular")
        return logabsdet

    def _check_weights(self, weights, length: int) -> torch.Tensor:
        w = as_tensor(weights).reshape(-1)
        if w.numel() != length:
            raise SizeError(f"expected {length} weights, got {w.numel()}")
        if (w < 0).any():
            raise ValueError("weights must be non-negative")
        return w

    def covar(self, weights=None, bias: bool = False) -> "Matrix":
        """Covariance of the columns, rows being observations.

        ``weights`` are observation weights with numpy ``aweights`` semantics.
        ``bias=False`` applies the unbiased correction (N - 1 for unit weights);
        ``bias=True`` divides by the weight sum. A single observation always
        falls back to the biased estimate.
        """
        n = self.row_count
        if n == 0:
            raise SizeError("covariance of a matrix with no rows")
        w = torch.ones(n, dtype=DTYPE) if weights is None else self._check_weights(weights, n)
        total = float(w.sum())
        if total <= 0.0:
            raise ZeroDivisionError("weights sum to zero, can't be normalized")

        mean = (w @ self._data) / total
        centered = self._data - mean
        cov = (centered.T * w) @ centered

        denom = total
        if not bias:
            corrected = total - float((w * w).sum()) / total
            if corrected > 0.0:
                denom = corrected
        cov = cov / denom
        return Matrix._wrap(0.5 * (cov + cov.T))

    def average(self, axis: int = 0, weights=None) -> torch.Tensor:
        """(Weighted) mean along ``axis``; uniform weights when none are given."""
        if axis not in (0, 1):
            raise ValueError(f"axis must be 0 or 1, got {axis!r}")
        length = self.row_count if axis == 0 else self.col_count
        w = torch.ones(length, dtype=DTYPE) if weights is None else self._check_weights(weights, length)
        total = float(w.sum())
        if total == 0.0:
            raise ZeroDivisionError("weights sum to zero, can't be normalized")
        if axis == 0:
            return (w @ self._data) / total
        return (self._data @ w) / total

    # -----------------------
    # Elementwise
    # -----------------------

    def _axis_vector(self, vector, axis: int) -> torch.Tensor:
        if axis not in (0, 1):
            raise ValueError(f"axis must be 0 or 1, got {axis!r}")
        vec = as_tensor(vector).reshape(-1)
        expected = self.col_count if axis == 0 else self.row_count
        if vec.numel() != expected:
            raise SizeError(f"vector of length {vec.numel()} does not match axis length {expected}")
        return vec if axis == 0 else vec.unsqueeze(1)

    def add(self, vector, axis: int = 0) -> "Matrix":
        """In place: add ``vector`` to every row (axis 0) or every column (axis 1)."""
        self._data = self._data + self._axis_vector(vector, axis)
        return self

    def subtract(self, vector, axis: int = 0) -> "Matrix":
        """In place: subtract ``vector`` from every row (axis 0) or every column (axis 1)."""
        self._data = self._data - self._axis_vector(vector, axis)
        return self

    def _same_shape(self, other) -> "Matrix":
        other = other if isinstance(other, Matrix) else Matrix.from_tensor(other)
        if other.shape != self.shape:
            raise SizeError(f"shape mismatch: {self.shape} vs {other.shape}")
        return other

    def __add__(self, other) -> "Matrix":
        return Matrix._wrap(self._data + self._same_shape(other)._data)

    def __sub__(self, other) -> "Matrix":
        return Matrix._wrap(self._data - self._same_shape(other)._data)

    # -----------------------
    # Display
    # -----------------------

    def __repr__(self) -> str:
        return f"Matrix({self.row_count}x{self.col_count})"

    def __str__(self) -> str:
        return "\n".join("\t".join(f"{v:.6g}" for v in row) for row in self._data.tolist())
