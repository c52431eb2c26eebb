"""Tests for dense / compressed-column MatrixBlock storage.

Tests cover:
- Construction validation (ShapeMismatch)
- Value lookup and per-column iteration for both layouts
- Row-partitioned orientation and the compressed-row loader path
- split_rows shard helper
- Isolation of built blocks from later edits to their source tensors
"""

import pytest
import torch

from bwmf.blocks.matrix_block import BLOCK_KINDS, MatrixBlock, split_rows
from bwmf.errors import IndexOutOfRange, ShapeMismatch
from bwmf.loss.kldiv import KLDivLoss
from bwmf.params.parameter_buffer import ParameterBuffer


# V from the reference fixture: 3 rows (partitioned axis) x 2 columns
V = torch.tensor([[0.0, 1.0], [1.0, 0.0], [0.5, 0.5]])
W = torch.tensor([[1.0, 0.0], [0.0, 1.0], [0.5, 0.5]])


def _sparse_v() -> MatrixBlock:
    # column 0 holds rows 1, 2; column 1 holds rows 2, 0 (unsorted)
    return MatrixBlock.sparse(
        rows=3,
        cols=2,
        col_ptr=[0, 2, 4],
        row_idx=[1, 2, 2, 0],
        values=[1.0, 0.5, 0.5, 1.0],
    )


class TestDenseBlock:
    """Dense row-major blocks."""

    def test_lookup_is_row_major(self):
        """Flat index row * cols + col addresses the dense buffer."""
        block = MatrixBlock.dense(3, 2, [0.0, 1.0, 1.0, 0.0, 0.5, 0.5])

        assert block.kind == "dense"
        assert block.is_sparse is False
        assert block.shape == (3, 2)
        assert block.get(0, 1) == 1.0
        assert block.get(1, 0) == 1.0
        assert block.get(2, 1) == 0.5

    def test_wrong_buffer_length_fails(self):
        """Buffer length must equal rows * cols."""
        with pytest.raises(ShapeMismatch, match="dense buffer length 5"):
            MatrixBlock.dense(3, 2, [0.0] * 5)

    def test_iter_column_yields_every_row(self):
        """Dense columns yield every row, zeros included."""
        block = MatrixBlock.from_tensor(V)

        assert list(block.iter_column(1)) == [(0, 1.0), (1, 0.0), (2, 0.5)]

    def test_to_dense_matches_source(self):
        """to_dense round-trips a dense block and nnz counts every slot."""
        block = MatrixBlock.from_tensor(V)
        assert torch.equal(block.to_dense(), V)
        assert block.nnz == 6

    def test_out_of_range_lookup_fails(self):
        """Lookups outside the block raise IndexOutOfRange."""
        block = MatrixBlock.from_tensor(V)

        with pytest.raises(IndexOutOfRange):
            block.get(3, 0)
        with pytest.raises(IndexOutOfRange):
            block.get(0, -1)
        with pytest.raises(IndexOutOfRange):
            list(block.iter_column(2))


class TestSparseBlock:
    """Compressed-column blocks."""

    def test_lookup_present_and_absent(self):
        """Stored entries return their value, absent ones return 0."""
        block = _sparse_v()

        assert block.is_sparse is True
        assert block.nnz == 4
        assert block.get(1, 0) == 1.0
        assert block.get(0, 1) == 1.0
        assert block.get(2, 1) == 0.5
        assert block.get(0, 0) == 0.0
        assert block.get(1, 1) == 0.0

    def test_iter_column_keeps_storage_order(self):
        """Column iteration follows storage order, not row order."""
        block = _sparse_v()

        assert list(block.iter_column(0)) == [(1, 1.0), (2, 0.5)]
        assert list(block.iter_column(1)) == [(2, 0.5), (0, 1.0)]

    def test_to_dense_matches_logical_matrix(self):
        """Densified sparse block equals the logical matrix."""
        assert torch.equal(_sparse_v().to_dense(), V)

    def test_coo_column_ids(self):
        """coo expands col_ptr into one column id per stored entry."""
        rows, cols, vals = _sparse_v().coo()

        assert rows.tolist() == [1, 2, 2, 0]
        assert cols.tolist() == [0, 0, 1, 1]
        assert vals.tolist() == [1.0, 0.5, 0.5, 1.0]

    def test_empty_columns_allowed(self):
        """Columns with no stored entries are valid."""
        block = MatrixBlock.sparse(rows=2, cols=3, col_ptr=[0, 0, 1, 1], row_idx=[1], values=[2.0])

        assert list(block.iter_column(0)) == []
        assert block.get(1, 1) == 2.0
        assert block.to_dense().tolist() == [[0.0, 0.0, 0.0], [0.0, 2.0, 0.0]]

    def test_wrong_col_ptr_length_fails(self):
        """col_ptr needs cols + 1 entries."""
        with pytest.raises(ShapeMismatch, match="col_ptr length"):
            MatrixBlock.sparse(rows=3, cols=2, col_ptr=[0, 4], row_idx=[0, 1, 2, 0], values=[1.0] * 4)

    def test_row_index_out_of_range_fails(self):
        """Row indices must lie in [0, rows)."""
        with pytest.raises(ShapeMismatch, match="out-of-range"):
            MatrixBlock.sparse(rows=3, cols=2, col_ptr=[0, 1, 2], row_idx=[0, 3], values=[1.0, 1.0])

    def test_decreasing_col_ptr_fails(self):
        """col_ptr must be non-decreasing."""
        with pytest.raises(ShapeMismatch, match="non-decreasing"):
            MatrixBlock.sparse(rows=3, cols=2, col_ptr=[0, 2, 1], row_idx=[0], values=[1.0])

    def test_col_ptr_end_must_match_entry_count(self):
        """Last col_ptr entry equals the number of stored entries."""
        with pytest.raises(ShapeMismatch, match="entry count"):
            MatrixBlock.sparse(rows=3, cols=2, col_ptr=[0, 1, 1], row_idx=[0, 1], values=[1.0, 1.0])

    def test_value_length_must_match_row_idx(self):
        """values and row_idx have one entry each per stored element."""
        with pytest.raises(ShapeMismatch, match="row_idx length"):
            MatrixBlock.sparse(rows=3, cols=1, col_ptr=[0, 2], row_idx=[0, 1], values=[1.0])

    def test_duplicate_row_in_column_fails(self):
        """A row may appear at most once per column."""
        with pytest.raises(ShapeMismatch, match="duplicate"):
            MatrixBlock.sparse(rows=3, cols=1, col_ptr=[0, 2], row_idx=[1, 1], values=[1.0, 2.0])

    def test_same_row_in_different_columns_is_fine(self):
        """Row uniqueness is checked per column only."""
        block = MatrixBlock.sparse(rows=3, cols=2, col_ptr=[0, 1, 2], row_idx=[1, 1], values=[1.0, 2.0])
        assert block.get(1, 0) == 1.0
        assert block.get(1, 1) == 2.0

    def test_unknown_kind_fails(self):
        """Only the dense and sparse kinds exist."""
        with pytest.raises(ValueError, match="kind must be one of"):
            MatrixBlock(kind="coo", rows=1, cols=1, values=torch.zeros(1))
        assert BLOCK_KINDS == ("dense", "sparse")

    def test_block_is_frozen(self):
        """Fields cannot be reassigned after construction."""
        block = _sparse_v()
        with pytest.raises(AttributeError):
            block.rows = 4


class TestOrientation:
    """Rows are always the partitioned axis; transposed shards load via from_csr."""

    def test_from_tensor_sparse_matches_dense(self):
        """from_tensor(sparse=True) keeps the 3 x 2 orientation."""
        sparse = MatrixBlock.from_tensor(V, sparse=True)

        assert sparse.shape == (3, 2)
        assert sparse.nnz == 4
        assert sparse.col_ptr.tolist() == [0, 2, 4]
        assert torch.equal(sparse.to_dense(), V)

    def test_from_csr_reads_transposed_shard(self):
        """The reference fixture stores V^T in compressed-column form (== CSR of V)."""
        block = MatrixBlock.from_csr(
            rows=3,
            cols=2,
            row_ptr=[0, 1, 2, 4],
            col_idx=[1, 0, 0, 1],
            values=[1.0, 1.0, 0.5, 0.5],
        )

        assert block.is_sparse
        assert block.shape == (3, 2)
        assert torch.equal(block.to_dense(), V)
        for row in range(3):
            for col in range(2):
                assert block.get(row, col) == V[row, col].item()

    def test_from_csr_rejects_bad_row_ptr(self):
        """row_ptr needs rows + 1 entries."""
        with pytest.raises(ShapeMismatch, match="row_ptr length"):
            MatrixBlock.from_csr(rows=3, cols=2, row_ptr=[0, 2, 4], col_idx=[0, 1, 0, 1], values=[1.0] * 4)

    def test_from_csr_rejects_column_out_of_range(self):
        """Column indices must lie in [0, cols)."""
        with pytest.raises(ShapeMismatch, match="col_idx"):
            MatrixBlock.from_csr(rows=1, cols=2, row_ptr=[0, 1], col_idx=[2], values=[1.0])

    def test_transposed_shape_is_not_equivalent(self):
        """Reading V^T as if it were V gives a 2 x 3 block, not the 3 x 2 shard."""
        transposed = MatrixBlock.from_tensor(V.t().contiguous(), sparse=True)
        assert transposed.shape == (2, 3)
        assert transposed.shape != MatrixBlock.from_tensor(V).shape


class TestSplitRows:
    """split_rows partitions a matrix into consecutive row shards."""

    def test_split_preserves_rows(self):
        """Concatenated dense shards rebuild the source matrix."""
        blocks = split_rows(V, [2, 1])

        assert [b.rows for b in blocks] == [2, 1]
        assert torch.equal(torch.cat([b.to_dense() for b in blocks]), V)

    def test_split_sparse(self):
        """Sparse shards store only the nonzeros of their rows."""
        blocks = split_rows(V, [1, 2], sparse=True)

        assert all(b.is_sparse for b in blocks)
        assert blocks[0].nnz == 1
        assert blocks[1].nnz == 3
        assert torch.equal(torch.cat([b.to_dense() for b in blocks]), V)

    def test_counts_must_cover_matrix(self):
        """Row counts must sum to the matrix height."""
        with pytest.raises(ShapeMismatch, match="row counts sum to 2"):
            split_rows(V, [1, 1])


class TestSourceIsolation:
    """Blocks own their storage; editing the source afterwards changes nothing."""

    @pytest.mark.parametrize("sparse", [False, True])
    def test_split_rows_ignores_later_source_edits(self, sparse):
        """Shards and the evaluator keep their values after V and W are overwritten."""
        v, w = V.clone(), W.clone()
        v_blocks = split_rows(v, [2, 1], sparse=sparse)
        w_blocks = split_rows(w, [2, 1])
        loss_fn = KLDivLoss.from_dims(v_blocks, w_blocks, m=3, n=2, k=2, epsilon=1e-6)
        h = ParameterBuffer.from_values([1.0, 1.0, 1.0, 1.0])

        w.mul_(2.0)
        v.fill_(0.0)
        g = h.allocate_like()
        loss = loss_fn.evaluate(h, g)

        assert v_blocks[0].get(0, 1) == 1.0
        assert w_blocks[1].get(0, 0) == 0.5
        assert loss == pytest.approx(6.0, abs=1e-5)
        assert torch.allclose(g.data(), torch.tensor([1.25, 0.25, 0.25, 1.25]), atol=1e-5)

    def test_dense_constructor_copies_tensor(self):
        """MatrixBlock.dense does not alias a tensor argument."""
        values = torch.tensor([1.0, 2.0, 3.0, 4.0])
        block = MatrixBlock.dense(2, 2, values)

        values.fill_(-1.0)

        assert block.get(1, 1) == 4.0

    def test_sparse_constructor_copies_tensors(self):
        """MatrixBlock.sparse does not alias its index or value tensors."""
        col_ptr = torch.tensor([0, 1, 2])
        row_idx = torch.tensor([1, 0])
        values = torch.tensor([3.0, 5.0])
        block = MatrixBlock.sparse(rows=2, cols=2, col_ptr=col_ptr, row_idx=row_idx, values=values)

        values.zero_()
        row_idx.zero_()

        assert block.get(1, 0) == 3.0
        assert block.get(0, 1) == 5.0

    def test_to_dense_is_a_copy(self):
        """Writing into to_dense output leaves the block untouched."""
        block = MatrixBlock.from_tensor(V)

        block.to_dense().fill_(9.0)

        assert torch.equal(block.to_dense(), V)
