"""Trainer-owned factor state passed into each evaluation.

The outer block-coordinate loop mutates H between iterations. Rather than
sharing H implicitly, the trainer owns a FactorContext holding the H and
gradient buffers and hands it to the evaluator on every step. Evaluators
keep no state across calls.
"""

from dataclasses import dataclass
from typing import Optional

import torch
from torch import Tensor

from .errors import DimensionMismatch
from .loss.kldiv import KLDivLoss
from .params.parameter_buffer import ParameterBuffer


@dataclass
class FactorContext:
    """
    H and gradient buffers for one k x n factor, plus iteration bookkeeping.

    Args:
        k: Latent rank (rows of H)
        n: Columns of H
        h: Current factor buffer, length k * n
        grad: Gradient buffer, length k * n, independent of h
        iteration: Number of completed evaluation steps
        last_loss: Loss returned by the most recent step

    Example:
        >>> ctx = FactorContext.create(k=2, n=2, fill=1.0)
        >>> loss = ctx.step(loss_fn)
        >>> ctx.h_matrix().sub_(0.1 * ctx.grad_matrix())  # external update rule
    """

    k: int
    n: int
    h: ParameterBuffer
    grad: ParameterBuffer
    iteration: int = 0
    last_loss: Optional[float] = None

    def __post_init__(self) -> None:
        expected = self.k * self.n
        if len(self.h) != expected or len(self.grad) != expected:
            raise DimensionMismatch(
                f"buffers must have length k * n = {expected}, "
                f"got h={len(self.h)} grad={len(self.grad)}"
            )
        if self.h.shares_storage(self.grad):
            raise DimensionMismatch("H and gradient buffer must not share storage")

    @classmethod
    def create(
        cls,
        k: int,
        n: int,
        fill: float = 0.0,
        dtype: torch.dtype = torch.float32,
    ) -> "FactorContext":
        """Allocate H filled with ``fill`` and a zeroed gradient buffer."""
        h = ParameterBuffer(torch.full((k * n,), fill, dtype=dtype))
        return cls(k=k, n=n, h=h, grad=h.allocate_like())

    @classmethod
    def from_matrix(cls, h: Tensor) -> "FactorContext":
        """Copy an existing [k, n] factor into a new context."""
        k, n = h.shape
        buffer = ParameterBuffer(h.detach().clone().reshape(-1))
        return cls(k=k, n=n, h=buffer, grad=buffer.allocate_like())

    def h_matrix(self) -> Tensor:
        """Row-major [k, n] view of H; writes go through to the buffer."""
        return self.h.as_matrix(self.k, self.n)

    def grad_matrix(self) -> Tensor:
        """Row-major [k, n] view of the gradient from the last step."""
        return self.grad.as_matrix(self.k, self.n)

    def step(self, loss_fn: KLDivLoss) -> float:
        """Evaluate the loss at the current H, filling the gradient buffer."""
        loss = loss_fn.evaluate(self.h, self.grad)
        self.iteration += 1
        self.last_loss = loss
        return loss
