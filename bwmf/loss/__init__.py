"""Loss/gradient evaluators for sharded factorization.

- KLDivLoss: I-divergence loss and H-gradient over local shard pairs
- kldiv_autograd / verify_against_autograd: autograd cross-check
"""

from .kldiv import ACCUM_DTYPE, KLDivLoss
from .reference import kldiv_autograd, verify_against_autograd

__all__ = [
    "ACCUM_DTYPE",
    "KLDivLoss",
    "kldiv_autograd",
    "verify_against_autograd",
]
