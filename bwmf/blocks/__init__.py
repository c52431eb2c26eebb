"""Dense and compressed-column matrix blocks.

Key components:
- MatrixBlock: Immutable dense-or-sparse shard of V or W
- split_rows: Partition a dense matrix into row shards
- BLOCK_KINDS: Valid layout tags
"""

from .matrix_block import (
    BLOCK_KINDS,
    MatrixBlock,
    split_rows,
)

__all__ = [
    "BLOCK_KINDS",
    "MatrixBlock",
    "split_rows",
]
