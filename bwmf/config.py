"""
Shard evaluator configuration dataclass.

This module provides the problem dimensions and numeric settings shared by
the KL-divergence evaluator and the trainer context that drives it.
"""

import warnings
from dataclasses import dataclass, fields
from typing import Any, Dict

import torch


@dataclass
class KLDivConfig:
    """
    Configuration for the KL-divergence (I-divergence) shard evaluator.

    Args:
        m: Total row count of the local shard (sum of W block rows)
        n: Column count of V and H, shared across all workers
        k: Latent rank (column count of W, row count of H)
        epsilon: Smoothing constant added before log and division
        n_jobs: Worker threads for per-block partials
            (1 = sequential, -1 = all cores, >1 = that many threads)
        dtype: Element dtype of block values and partial products

    Example:
        >>> config = KLDivConfig(m=3, n=2, k=2, epsilon=1e-6)
        >>> config.validate()
        >>> config.param_length
        4
    """

    m: int
    n: int
    k: int
    epsilon: float = 1e-6
    n_jobs: int = 1
    dtype: torch.dtype = torch.float32

    @property
    def param_length(self) -> int:
        """Flat length of H and of the gradient buffer: k * n."""
        return self.k * self.n

    @classmethod
    def from_cfg(cls, cfg: Any) -> "KLDivConfig":
        """
        Create KLDivConfig from a dict or an object with matching attributes.

        Unknown keys are ignored.

        Example:
            >>> KLDivConfig.from_cfg({"m": 10, "n": 5, "k": 2, "extra": True})
            KLDivConfig(m=10, n=5, k=2, epsilon=1e-06, n_jobs=1, dtype=torch.float32)
        """
        if isinstance(cfg, dict):
            valid_fields = {k: v for k, v in cfg.items() if k in cls.__dataclass_fields__}
            return cls(**valid_fields)

        kwargs = {}
        for field_name in cls.__dataclass_fields__:
            if hasattr(cfg, field_name):
                kwargs[field_name] = getattr(cfg, field_name)

        return cls(**kwargs)

    def validate(self) -> None:
        """
        Validate configuration constraints.

        Raises:
            ValueError: If configuration is invalid
        """
        if self.m <= 0:
            raise ValueError(f"m must be positive, got {self.m}")

        if self.n <= 0:
            raise ValueError(f"n must be positive, got {self.n}")

        if self.k <= 0:
            raise ValueError(f"k must be positive, got {self.k}")

        if not self.epsilon > 0.0:
            raise ValueError(f"epsilon must be positive, got {self.epsilon}")

        if self.n_jobs == 0 or self.n_jobs < -1:
            raise ValueError(f"n_jobs must be -1 or a positive int, got {self.n_jobs}")

        if not self.dtype.is_floating_point:
            raise ValueError(f"dtype must be a floating point dtype, got {self.dtype}")

        if self.epsilon >= 1e-2:
            warnings.warn(
                f"epsilon={self.epsilon} is large; smoothing will dominate "
                "reconstructions close to zero."
            )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert config to dictionary.

        Returns:
            Dictionary with all config fields
        """
        return {f.name: getattr(self, f.name) for f in fields(self)}
