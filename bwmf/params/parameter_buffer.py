"""Flat parameter buffers for factor matrices.

A ParameterBuffer is a fixed-length 1-D tensor that is logically reshaped as
a k x n row-major matrix (flat index = row * n + col). The trainer holds one
for H and one for the gradient; the two must never share storage.
"""

from typing import Sequence, Tuple

import torch
from torch import Tensor

from ..errors import IndexOutOfRange, ShapeMismatch


class ParameterBuffer:
    """
    Fixed-length flat vector backing a reshape-able factor matrix.

    Args:
        data: 1-D tensor used as backing storage (not copied)

    Example:
        >>> h = ParameterBuffer.zeros(4)
        >>> h.set(0, 1.0)
        >>> g = h.allocate_like()
        >>> g.data().tolist()
        [0.0, 0.0, 0.0, 0.0]
    """

    def __init__(self, data: Tensor):
        if data.dim() != 1:
            raise ShapeMismatch(f"parameter buffer must be 1-D, got shape {tuple(data.shape)}")
        self._data = data

    @classmethod
    def zeros(cls, length: int, dtype: torch.dtype = torch.float32) -> "ParameterBuffer":
        """Allocate a zero-filled buffer of the given length."""
        if length < 0:
            raise ValueError(f"length must be non-negative, got {length}")
        return cls(torch.zeros(length, dtype=dtype))

    @classmethod
    def from_values(
        cls, values: Sequence[float], dtype: torch.dtype = torch.float32
    ) -> "ParameterBuffer":
        """Copy values (any shape) into a new flat buffer in row-major order."""
        return cls(torch.tensor(values, dtype=dtype).reshape(-1))

    def __len__(self) -> int:
        return self._data.numel()

    def __repr__(self) -> str:
        return f"ParameterBuffer(length={len(self)}, dtype={self._data.dtype})"

    @property
    def dtype(self) -> torch.dtype:
        return self._data.dtype

    def _check_index(self, i: int) -> None:
        if not 0 <= i < len(self):
            raise IndexOutOfRange(f"index {i} outside [0, {len(self)})")

    def get(self, i: int) -> float:
        self._check_index(i)
        return self._data[i].item()

    def set(self, i: int, value: float) -> None:
        self._check_index(i)
        self._data[i] = value

    def data(self) -> Tensor:
        """Backing tensor in flat order (a view, not a copy)."""
        return self._data

    def as_matrix(self, rows: int, cols: int) -> Tensor:
        """Row-major [rows, cols] view of the buffer."""
        if rows * cols != len(self):
            raise ShapeMismatch(
                f"cannot view buffer of length {len(self)} as {rows} x {cols}"
            )
        return self._data.view(rows, cols)

    def allocate_like(self) -> "ParameterBuffer":
        """New zero-filled buffer with the same length and dtype, independent storage."""
        return ParameterBuffer(torch.zeros_like(self._data))

    def shares_storage(self, other: "ParameterBuffer") -> bool:
        """True if the element ranges of the two buffers overlap in memory."""
        if self is other:
            return True
        if len(self) == 0 or len(other) == 0:
            return False
        start, end = self._byte_span()
        other_start, other_end = other._byte_span()
        return start < other_end and other_start < end

    def _byte_span(self) -> Tuple[int, int]:
        """[first, last) byte addresses covered by the buffer, strides included."""
        start = self._data.data_ptr()
        last = (len(self) - 1) * self._data.stride(0) + 1
        return start, start + last * self._data.element_size()
