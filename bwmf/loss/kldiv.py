"""
KL-divergence (I-divergence) loss and H-gradient over local shards.

For a worker owning row-shards V_i (m_i x n) and W_i (m_i x k), and the
shared factor H (k x n):

    R_i  = W_i @ H
    loss = sum_i sum_{row, col} R_i - V_i * log(R_i + eps)
    dH   = sum_i W_i^T @ (1 - V_i / (R_i + eps))

Every position contributes R_i to the loss and the all-ones term to the
gradient, including positions where V_i is zero. Only the V-weighted terms
vanish there, so a sparse V shard reduces the log/ratio work but never the
dense reconstruction.

Usage:
    loss_fn = KLDivLoss(v_blocks, w_blocks, KLDivConfig(m=3, n=2, k=2))
    h = ParameterBuffer.zeros(loss_fn.param_length)
    grad = h.allocate_like()
    value = loss_fn.evaluate(h, grad)
"""

import logging
from typing import List, Sequence, Tuple

import torch
from torch import Tensor

from ..blocks.matrix_block import MatrixBlock
from ..config import KLDivConfig
from ..errors import DimensionMismatch, ShapeMismatch
from ..params.parameter_buffer import ParameterBuffer
from ..parallel import parallel_map

log = logging.getLogger("bwmf.loss")

# Loss and gradient partials are accumulated at this precision
ACCUM_DTYPE = torch.float64


class KLDivLoss:
    """
    Loss/gradient evaluator for one worker's shard pairs.

    The shards are paired index-for-index: V block i and W block i cover the
    same rows. The evaluator is immutable after construction and keeps no
    state between ``evaluate`` calls.

    Args:
        v_blocks: Row-shards of V, each m_i x n
        w_blocks: Row-shards of W, each m_i x k
        config: Problem dimensions and numeric settings

    Raises:
        ValueError: If config is invalid
        ShapeMismatch: If the shards disagree with config.m / n / k

    Example:
        >>> v = split_rows(torch.tensor([[0.0, 1.0], [1.0, 0.0], [0.5, 0.5]]), [2, 1], sparse=True)
        >>> w = split_rows(torch.tensor([[1.0, 0.0], [0.0, 1.0], [0.5, 0.5]]), [2, 1])
        >>> loss_fn = KLDivLoss(v, w, KLDivConfig(m=3, n=2, k=2))
        >>> h = ParameterBuffer.from_values([1.0, 1.0, 1.0, 1.0])
        >>> round(loss_fn.evaluate(h, h.allocate_like()), 4)
        6.0
    """

    def __init__(
        self,
        v_blocks: Sequence[MatrixBlock],
        w_blocks: Sequence[MatrixBlock],
        config: KLDivConfig,
    ):
        config.validate()

        if len(v_blocks) != len(w_blocks):
            raise ShapeMismatch(
                f"got {len(v_blocks)} V blocks but {len(w_blocks)} W blocks"
            )
        for i, (v, w) in enumerate(zip(v_blocks, w_blocks)):
            if v.rows != w.rows:
                raise ShapeMismatch(
                    f"pair {i}: V block has {v.rows} rows, W block has {w.rows}"
                )
            if v.cols != config.n:
                raise ShapeMismatch(f"pair {i}: V block has {v.cols} columns, expected n={config.n}")
            if w.cols != config.k:
                raise ShapeMismatch(f"pair {i}: W block has {w.cols} columns, expected k={config.k}")

        total_rows = sum(w.rows for w in w_blocks)
        if total_rows != config.m:
            raise ShapeMismatch(f"W blocks cover {total_rows} rows, expected m={config.m}")

        self.config = config
        self._v_blocks: Tuple[MatrixBlock, ...] = tuple(v_blocks)
        self._w_blocks: Tuple[MatrixBlock, ...] = tuple(w_blocks)
        # W is multiplied densely on every call; materialize it once
        self._w_dense: Tuple[Tensor, ...] = tuple(
            w.to_dense().to(config.dtype).clone() for w in w_blocks
        )

        log.debug(
            "KLDivLoss: %d shard pairs, m=%d n=%d k=%d eps=%g, %d sparse V blocks",
            len(self._v_blocks),
            config.m,
            config.n,
            config.k,
            config.epsilon,
            sum(v.is_sparse for v in self._v_blocks),
        )

    @classmethod
    def from_dims(
        cls,
        v_blocks: Sequence[MatrixBlock],
        w_blocks: Sequence[MatrixBlock],
        m: int,
        n: int,
        k: int,
        epsilon: float = 1e-6,
        **kwargs,
    ) -> "KLDivLoss":
        """Construct from loose dimensions instead of a KLDivConfig."""
        return cls(v_blocks, w_blocks, KLDivConfig(m=m, n=n, k=k, epsilon=epsilon, **kwargs))

    @property
    def m(self) -> int:
        return self.config.m

    @property
    def n(self) -> int:
        return self.config.n

    @property
    def k(self) -> int:
        return self.config.k

    @property
    def epsilon(self) -> float:
        return self.config.epsilon

    @property
    def v_blocks(self) -> Tuple[MatrixBlock, ...]:
        return self._v_blocks

    @property
    def w_blocks(self) -> Tuple[MatrixBlock, ...]:
        return self._w_blocks

    @property
    def num_blocks(self) -> int:
        return len(self._v_blocks)

    @property
    def param_length(self) -> int:
        return self.config.param_length

    def partial(self, i: int, h: Tensor) -> Tuple[Tensor, Tensor]:
        """
        Loss and gradient contribution of shard pair i.

        Args:
            i: Shard pair index
            h: Factor matrix [k, n]

        Returns:
            Tuple of (loss, grad):
            - loss: 0-d tensor in ACCUM_DTYPE
            - grad: [k, n] tensor in ACCUM_DTYPE
        """
        v_block = self._v_blocks[i]
        w = self._w_dense[i]
        eps = self.config.epsilon

        r = w @ h  # [m_i, n], dense even when V is sparse
        loss = r.sum(dtype=ACCUM_DTYPE)

        if not v_block.is_sparse:
            v = v_block.to_dense().to(r.dtype)
            denom = r + eps
            loss = loss - torch.xlogy(v, denom).sum(dtype=ACCUM_DTYPE)
            residual = (1.0 - v / denom).to(ACCUM_DTYPE)
            grad = w.t().to(ACCUM_DTYPE) @ residual
            return loss, grad

        rows, cols, vals = v_block.coo()
        vals = vals.to(r.dtype)
        denom = r[rows, cols] + eps
        loss = loss - torch.xlogy(vals, denom).sum(dtype=ACCUM_DTYPE)

        # W^T @ Ones: column sums of W, repeated across all n columns
        w_acc = w.to(ACCUM_DTYPE)
        grad = w_acc.sum(dim=0).unsqueeze(1).expand(self.k, self.n).clone()

        # W^T @ (V / (R + eps)) over the stored entries only
        ratio = (vals / denom).to(ACCUM_DTYPE)
        ratio_term = torch.zeros(self.n, self.k, dtype=ACCUM_DTYPE)
        ratio_term.index_add_(0, cols, w_acc[rows] * ratio.unsqueeze(1))
        grad -= ratio_term.t()
        return loss, grad

    def _check_buffers(self, h: ParameterBuffer, grad_out: ParameterBuffer) -> None:
        expected = self.param_length
        if len(h) != expected:
            raise DimensionMismatch(
                f"H has length {len(h)}, expected k * n = {expected}"
            )
        if len(grad_out) != expected:
            raise DimensionMismatch(
                f"gradient buffer has length {len(grad_out)}, expected k * n = {expected}"
            )
        if h.shares_storage(grad_out):
            raise DimensionMismatch("H and gradient buffer must not share storage")

    def evaluate(self, h: ParameterBuffer, grad_out: ParameterBuffer) -> float:
        """
        Compute the loss at H and write dLoss/dH into grad_out.

        grad_out is overwritten, never accumulated onto. Buffers are checked
        before any arithmetic, so a failed call leaves grad_out untouched.

        Args:
            h: Current factor H, length k * n (row-major k x n); read only
            grad_out: Output buffer, length k * n, not aliasing h

        Returns:
            Loss value as a Python float

        Raises:
            DimensionMismatch: If a buffer has the wrong length or they alias
        """
        self._check_buffers(h, grad_out)

        h_mat = h.as_matrix(self.k, self.n).to(self.config.dtype)

        # Map: independent partial per shard pair
        partials: List[Tuple[Tensor, Tensor]] = parallel_map(
            self.partial,
            [(i, h_mat) for i in range(self.num_blocks)],
            n_jobs=self.config.n_jobs,
        )

        # Reduce in block order so results don't depend on thread scheduling
        loss = torch.zeros((), dtype=ACCUM_DTYPE)
        grad = torch.zeros(self.k, self.n, dtype=ACCUM_DTYPE)
        for block_loss, block_grad in partials:
            loss += block_loss
            grad += block_grad

        grad_out.data().copy_(grad.reshape(-1))

        value = loss.item()
        log.debug("evaluate: loss=%.6g over %d blocks", value, self.num_blocks)
        return value
