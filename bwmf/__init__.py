"""bwmf: KL-divergence shard evaluator for block-wise NMF.

Each worker in a distributed block-coordinate NMF trainer owns a row-shard of
the target V and of the factor W. This package evaluates the I-divergence
loss of V against W @ H on those shards, and its gradient with respect to the
shared factor H.

Components:
- MatrixBlock: dense or compressed-column shard storage
- ParameterBuffer: flat k x n factor / gradient buffers
- KLDivLoss: loss and gradient evaluator
- FactorContext: trainer-owned H and gradient state

Version: 0.1.0
License: MIT
"""

__version__ = "0.1.0"

from .config import KLDivConfig
from .errors import BWMFError, DimensionMismatch, IndexOutOfRange, ShapeMismatch

from .blocks.matrix_block import BLOCK_KINDS, MatrixBlock, split_rows
from .params.parameter_buffer import ParameterBuffer

from .loss.kldiv import KLDivLoss
from .loss.reference import kldiv_autograd, verify_against_autograd
from .context import FactorContext
from .parallel import parallel_map

__all__ = [
    "__version__",
    # Config
    "KLDivConfig",
    # Errors
    "BWMFError",
    "ShapeMismatch",
    "DimensionMismatch",
    "IndexOutOfRange",
    # Blocks
    "BLOCK_KINDS",
    "MatrixBlock",
    "split_rows",
    # Parameters
    "ParameterBuffer",
    # Loss
    "KLDivLoss",
    "kldiv_autograd",
    "verify_against_autograd",
    # Trainer state
    "FactorContext",
    "parallel_map",
]
