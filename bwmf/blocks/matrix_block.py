"""Dense or compressed-column matrix blocks for sharded factorization.

A MatrixBlock holds one row-shard of a logical matrix (V or W) in one of two
layouts, selected by its ``kind`` tag:

- dense: ``values`` is a flat row-major buffer of length rows * cols
- sparse: compressed-column (CSC) triplet
    - col_ptr: [cols + 1] offsets, col_ptr[0] = 0, col_ptr[cols] = nnz
    - row_idx: [nnz] row index of each stored entry
    - values: [nnz] stored values, aligned with row_idx

Orientation: the ``rows`` axis of a block is always the partitioned axis of
the logical matrix. A V shard is m_i x n and a W shard is m_i x k, so a sparse
V shard is compressed over the n logical columns. Shards that were written
transposed (compressed over the rows of V) are loaded with
:meth:`MatrixBlock.from_csr`.
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

import torch
from torch import Tensor

from ..errors import IndexOutOfRange, ShapeMismatch


# Valid block layouts
BLOCK_KINDS = ("dense", "sparse")


def _as_index(data) -> Tensor:
    return torch.as_tensor(data, dtype=torch.long).reshape(-1).clone()


def _as_values(data, dtype: torch.dtype) -> Tensor:
    return torch.as_tensor(data, dtype=dtype).reshape(-1).clone()


def _column_ids(col_ptr: Tensor) -> Tensor:
    """Expand CSC column offsets to one column id per stored entry."""
    counts = col_ptr[1:] - col_ptr[:-1]
    return torch.repeat_interleave(torch.arange(counts.numel()), counts)


@dataclass(frozen=True, eq=False)
class MatrixBlock:
    """Immutable dense-or-sparse rectangular block.

    Use :meth:`dense`, :meth:`sparse`, :meth:`from_csr` or :meth:`from_tensor`
    rather than calling the constructor directly. They copy their inputs, so
    later edits to the source tensors do not reach the block.

    Attributes:
        kind: "dense" or "sparse"
        rows: Row count (partitioned axis)
        cols: Column count
        values: Flat row-major buffer (dense) or stored values (sparse)
        col_ptr: Column offsets [cols + 1] (sparse only)
        row_idx: Row indices [nnz] (sparse only)

    Example:
        >>> block = MatrixBlock.sparse(
        ...     rows=3, cols=2,
        ...     col_ptr=[0, 2, 4], row_idx=[1, 2, 0, 2], values=[1.0, 0.5, 1.0, 0.5],
        ... )
        >>> block.get(2, 1)
        0.5
    """

    kind: str
    rows: int
    cols: int
    values: Tensor
    col_ptr: Optional[Tensor] = None
    row_idx: Optional[Tensor] = None

    def __post_init__(self) -> None:
        """Validate buffers against the declared shape."""
        if self.kind not in BLOCK_KINDS:
            raise ValueError(f"kind must be one of {BLOCK_KINDS}, got {self.kind!r}")
        if self.rows < 0 or self.cols < 0:
            raise ShapeMismatch(
                f"block shape must be non-negative, got {self.rows} x {self.cols}"
            )
        if self.values.dim() != 1:
            raise ShapeMismatch(f"values must be 1-D, got shape {tuple(self.values.shape)}")

        if self.kind == "dense":
            if self.values.numel() != self.rows * self.cols:
                raise ShapeMismatch(
                    f"dense buffer length {self.values.numel()} doesn't match "
                    f"rows * cols = {self.rows * self.cols}"
                )
            return

        col_ptr, row_idx = self.col_ptr, self.row_idx
        if col_ptr is None or row_idx is None:
            raise ShapeMismatch("sparse block requires col_ptr and row_idx")
        if col_ptr.numel() != self.cols + 1:
            raise ShapeMismatch(
                f"col_ptr length {col_ptr.numel()} doesn't match cols + 1 = {self.cols + 1}"
            )
        if row_idx.numel() != self.values.numel():
            raise ShapeMismatch(
                f"row_idx length {row_idx.numel()} doesn't match "
                f"values length {self.values.numel()}"
            )
        nnz = row_idx.numel()
        if col_ptr[0].item() != 0:
            raise ShapeMismatch(f"col_ptr[0] must be 0, got {col_ptr[0].item()}")
        if (col_ptr[1:] < col_ptr[:-1]).any():
            raise ShapeMismatch("col_ptr must be non-decreasing")
        if col_ptr[-1].item() != nnz:
            raise ShapeMismatch(
                f"col_ptr[cols] = {col_ptr[-1].item()} doesn't match entry count {nnz}"
            )
        if nnz > 0:
            min_row = row_idx.min().item()
            max_row = row_idx.max().item()
            if min_row < 0:
                raise ShapeMismatch(f"row_idx contains negative value: {min_row}")
            if max_row >= self.rows:
                raise ShapeMismatch(
                    f"row_idx contains out-of-range value: {max_row} >= rows ({self.rows})"
                )
            # Unique (col, row) keys <=> no duplicate row within a column
            keys = _column_ids(col_ptr) * self.rows + row_idx
            if keys.unique().numel() != nnz:
                raise ShapeMismatch("duplicate row index within a column")

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def dense(
        cls,
        rows: int,
        cols: int,
        values,
        dtype: torch.dtype = torch.float32,
    ) -> "MatrixBlock":
        """Build a dense block from a flat row-major buffer of length rows * cols."""
        return cls(
            kind="dense",
            rows=rows,
            cols=cols,
            values=_as_values(values, dtype),
        )

    @classmethod
    def sparse(
        cls,
        rows: int,
        cols: int,
        col_ptr,
        row_idx,
        values,
        dtype: torch.dtype = torch.float32,
    ) -> "MatrixBlock":
        """Build a sparse block from a compressed-column triplet."""
        return cls(
            kind="sparse",
            rows=rows,
            cols=cols,
            values=_as_values(values, dtype),
            col_ptr=_as_index(col_ptr),
            row_idx=_as_index(row_idx),
        )

    @classmethod
    def from_csr(
        cls,
        rows: int,
        cols: int,
        row_ptr,
        col_idx,
        values,
        dtype: torch.dtype = torch.float32,
    ) -> "MatrixBlock":
        """Build a sparse block from a compressed-row triplet.

        A compressed-row layout of an m_i x n shard is byte-for-byte the
        compressed-column layout of its transpose, which is how some shard
        writers store V. The entries are regrouped by column so the result
        follows the rows-are-partitioned convention.

        Args:
            rows: Row count of the logical shard
            cols: Column count of the logical shard
            row_ptr: Row offsets [rows + 1]
            col_idx: Column index of each stored entry
            values: Stored values aligned with col_idx

        Raises:
            ShapeMismatch: If the triplet is inconsistent with rows x cols
        """
        row_ptr = _as_index(row_ptr)
        col_idx = _as_index(col_idx)
        values = torch.as_tensor(values, dtype=dtype).reshape(-1)

        if row_ptr.numel() != rows + 1:
            raise ShapeMismatch(
                f"row_ptr length {row_ptr.numel()} doesn't match rows + 1 = {rows + 1}"
            )
        if col_idx.numel() != values.numel():
            raise ShapeMismatch(
                f"col_idx length {col_idx.numel()} doesn't match values length {values.numel()}"
            )
        if row_ptr[0].item() != 0 or row_ptr[-1].item() != col_idx.numel():
            raise ShapeMismatch(
                f"row_ptr must span [0, {col_idx.numel()}], "
                f"got [{row_ptr[0].item()}, {row_ptr[-1].item()}]"
            )
        if (row_ptr[1:] < row_ptr[:-1]).any():
            raise ShapeMismatch("row_ptr must be non-decreasing")
        if col_idx.numel() > 0 and (col_idx.min().item() < 0 or col_idx.max().item() >= cols):
            raise ShapeMismatch(f"col_idx contains values outside [0, {cols})")

        row_ids = _column_ids(row_ptr)
        order = torch.sort(col_idx, stable=True).indices
        counts = torch.bincount(col_idx, minlength=cols)
        col_ptr = torch.cat([torch.zeros(1, dtype=torch.long), torch.cumsum(counts, dim=0)])

        return cls(
            kind="sparse",
            rows=rows,
            cols=cols,
            values=values[order],
            col_ptr=col_ptr,
            row_idx=row_ids[order],
        )

    @classmethod
    def from_tensor(cls, matrix: Tensor, sparse: bool = False) -> "MatrixBlock":
        """Build a block from a 2-D tensor, keeping only nonzeros when sparse."""
        if matrix.dim() != 2:
            raise ShapeMismatch(f"expected a 2-D tensor, got shape {tuple(matrix.shape)}")
        rows, cols = matrix.shape
        if not sparse:
            return cls(kind="dense", rows=rows, cols=cols, values=matrix.reshape(-1).clone())

        # nonzero() of the transpose is ordered by column, then row
        col_row = (matrix.t() != 0).nonzero()
        col_ids, row_ids = col_row[:, 0], col_row[:, 1]
        counts = torch.bincount(col_ids, minlength=cols)
        col_ptr = torch.cat([torch.zeros(1, dtype=torch.long), torch.cumsum(counts, dim=0)])
        return cls(
            kind="sparse",
            rows=rows,
            cols=cols,
            values=matrix[row_ids, col_ids],
            col_ptr=col_ptr,
            row_idx=row_ids,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def is_sparse(self) -> bool:
        return self.kind == "sparse"

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.rows, self.cols)

    @property
    def nnz(self) -> int:
        """Number of stored entries (rows * cols for dense blocks)."""
        return self.values.numel()

    @property
    def dtype(self) -> torch.dtype:
        return self.values.dtype

    def _check_col(self, col: int) -> None:
        if not 0 <= col < self.cols:
            raise IndexOutOfRange(f"column {col} outside [0, {self.cols})")

    def get(self, row: int, col: int) -> float:
        """Value at (row, col); zero for coordinates not stored in a sparse block."""
        if not 0 <= row < self.rows:
            raise IndexOutOfRange(f"row {row} outside [0, {self.rows})")
        self._check_col(col)

        if not self.is_sparse:
            return self.values[row * self.cols + col].item()

        start, end = self.col_ptr[col].item(), self.col_ptr[col + 1].item()
        for pos in range(start, end):
            if self.row_idx[pos].item() == row:
                return self.values[pos].item()
        return 0.0

    def iter_column(self, col: int) -> Iterator[Tuple[int, float]]:
        """Yield (row, value) for the stored entries of one column.

        Dense blocks yield every row; sparse blocks yield stored entries in
        storage order, which need not be sorted by row.
        """
        self._check_col(col)
        if not self.is_sparse:
            column = self.values[col :: self.cols].tolist()
            yield from enumerate(column)
            return

        start, end = self.col_ptr[col].item(), self.col_ptr[col + 1].item()
        rows = self.row_idx[start:end].tolist()
        vals = self.values[start:end].tolist()
        yield from zip(rows, vals)

    def coo(self) -> Tuple[Tensor, Tensor, Tensor]:
        """Stored entries as (row indices, column indices, values)."""
        if not self.is_sparse:
            rows = torch.arange(self.rows).repeat_interleave(self.cols)
            cols = torch.arange(self.cols).repeat(self.rows)
            return rows, cols, self.values
        return self.row_idx, _column_ids(self.col_ptr), self.values

    def to_dense(self) -> Tensor:
        """Materialize the block as a rows x cols tensor."""
        if not self.is_sparse:
            return self.values.reshape(self.rows, self.cols).clone()
        dense = torch.zeros(self.rows, self.cols, dtype=self.values.dtype)
        dense[self.row_idx, _column_ids(self.col_ptr)] = self.values
        return dense


def split_rows(
    matrix: Tensor,
    row_counts: Sequence[int],
    sparse: bool = False,
) -> List[MatrixBlock]:
    """Partition a 2-D tensor into consecutive row blocks.

    Args:
        matrix: Logical matrix [m, cols]
        row_counts: Row count of each shard, summing to m
        sparse: Store the shards in compressed-column form

    Returns:
        List of MatrixBlock shards in row order

    Raises:
        ShapeMismatch: If row_counts don't sum to the matrix row count

    Example:
        >>> v = torch.tensor([[0.0, 1.0], [1.0, 0.0], [0.5, 0.5]])
        >>> [b.rows for b in split_rows(v, [2, 1], sparse=True)]
        [2, 1]
    """
    if matrix.dim() != 2:
        raise ShapeMismatch(f"expected a 2-D tensor, got shape {tuple(matrix.shape)}")
    if sum(row_counts) != matrix.shape[0]:
        raise ShapeMismatch(
            f"row counts sum to {sum(row_counts)}, matrix has {matrix.shape[0]} rows"
        )
    return [
        MatrixBlock.from_tensor(part, sparse=sparse)
        for part in torch.split(matrix, list(row_counts), dim=0)
    ]
