"""Exception types raised by the shard evaluator.

All errors are input-validation failures detected before any arithmetic:

- ShapeMismatch: shard buffers disagree with their declared shape
- DimensionMismatch: factor buffers passed to ``evaluate`` have the wrong
  length or alias each other
- IndexOutOfRange: element access outside a buffer or block
"""


class BWMFError(Exception):
    """Base class for all bwmf errors."""


class ShapeMismatch(BWMFError, ValueError):
    """Matrix block or shard dimensions are inconsistent."""


class DimensionMismatch(BWMFError, ValueError):
    """H or gradient buffer does not match the k x n factor shape."""


class IndexOutOfRange(BWMFError, IndexError):
    """Element index outside the valid range."""
