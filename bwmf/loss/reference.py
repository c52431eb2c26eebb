"""
Autograd reference for the KL-divergence shard loss.

The evaluator in ``kldiv.py`` derives dLoss/dH by hand. This module computes
the same quantities on dense tensors with torch.autograd so the manual
gradient can be checked against it.

Usage:
    ok = verify_against_autograd(loss_fn, h)
"""

import logging
from typing import Tuple

import torch

from ..params.parameter_buffer import ParameterBuffer
from .kldiv import KLDivLoss

log = logging.getLogger("bwmf.loss.reference")


def kldiv_autograd(
    v: torch.Tensor,  # [m, n] target
    w: torch.Tensor,  # [m, k] row factor
    h: torch.Tensor,  # [k, n] shared factor
    epsilon: float,
) -> Tuple[float, torch.Tensor]:
    """
    Dense KL-divergence loss and its gradient w.r.t. H via autograd.

    Computed in float64 regardless of input dtype.

    Returns:
        Tuple of (loss, d_h) where d_h is [k, n]
    """
    v = v.detach().to(torch.float64)
    w = w.detach().to(torch.float64)
    h_leaf = h.detach().to(torch.float64).requires_grad_(True)

    r = w @ h_leaf
    loss = (r - torch.xlogy(v, r + epsilon)).sum()
    (d_h,) = torch.autograd.grad(loss, [h_leaf])
    return loss.item(), d_h


def verify_against_autograd(
    loss_fn: KLDivLoss,
    h: ParameterBuffer,
    rtol: float = 1e-4,
    atol: float = 1e-5,
) -> bool:
    """
    Verify that ``loss_fn.evaluate`` matches kldiv_autograd on the stacked shards.

    Args:
        loss_fn: Evaluator under test
        h: Factor H, length k * n
        rtol, atol: Tolerance for the allclose comparison

    Returns:
        True if both loss and gradient match within tolerance
    """
    grad = h.allocate_like()
    loss_manual = loss_fn.evaluate(h, grad)

    v = torch.cat([b.to_dense() for b in loss_fn.v_blocks], dim=0)
    w = torch.cat([b.to_dense() for b in loss_fn.w_blocks], dim=0)
    loss_auto, grad_auto = kldiv_autograd(v, w, h.as_matrix(loss_fn.k, loss_fn.n), loss_fn.epsilon)

    grad_manual = grad.as_matrix(loss_fn.k, loss_fn.n).to(torch.float64)
    all_match = True
    if abs(loss_manual - loss_auto) > atol + rtol * abs(loss_auto):
        log.warning("MISMATCH in loss: manual=%.8g autograd=%.8g", loss_manual, loss_auto)
        all_match = False
    if not torch.allclose(grad_manual, grad_auto, rtol=rtol, atol=atol):
        max_diff = (grad_manual - grad_auto).abs().max().item()
        log.warning("MISMATCH in d_h: max_diff = %g", max_diff)
        all_match = False
    return all_match
