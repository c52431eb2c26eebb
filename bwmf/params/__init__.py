"""Flat parameter buffers for factor matrices."""

from .parameter_buffer import ParameterBuffer

__all__ = ["ParameterBuffer"]
