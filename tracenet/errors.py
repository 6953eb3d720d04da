"""Exceptions raised by tensor operations and graph evaluation.

The taxonomy is small on purpose:

- `DimensionMismatchError`: operand shapes are incompatible. Fatal to the
  current forward/backward pass, never silently broadcast beyond the
  scalar-equivalent `1 x 1 x 1` case.
- `UndefinedReferenceError`: a node value or gradient was read at an index
  that was never written. This points at a sequencing bug in the calling
  forward definition.
- `ConfigurationError`: invalid operator configuration (filter size, stride,
  dilation, probability), raised when the configuration is created.
- `TracingError`: a forward definition could not be turned into a procedure.
"""

from __future__ import annotations


class TensorError(Exception):
    """Base class for all tracenet errors."""


class DimensionMismatchError(TensorError, ValueError):
    """
    Raised when the shapes of two operands are incompatible.

    Attributes
    ----------
    op : str
        Name of the operation that was attempted (e.g. "add", "dot").
    first : tuple[int, ...]
        Shape of the first operand.
    second : tuple[int, ...]
        Shape of the second operand.
    """

    def __init__(
        self,
        op: str,
        first: tuple[int, ...],
        second: tuple[int, ...],
        detail: str | None = None,
    ) -> None:
        message = f"Dimension mismatch in {op}: {first} vs {second}."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)
        self.op = op
        self.first = first
        self.second = second


class UndefinedReferenceError(TensorError, LookupError):
    """
    Raised when a node value or gradient is read at an index never written.

    Attributes
    ----------
    node : str
        Name of the node that was read.
    index : int
        The index that was requested.
    what : str
        Either "value" or "gradient".
    """

    def __init__(self, node: str, index: int, what: str = "value") -> None:
        super().__init__(f"{what.capitalize()} of node '{node}' not defined at index {index}.")
        self.node = node
        self.index = index
        self.what = what


class ConfigurationError(TensorError, ValueError):
    """Raised for invalid operator or layer configuration."""


class TracingError(TensorError, RuntimeError):
    """Raised when a forward definition cannot be traced into a procedure."""


__all__ = [
    "ConfigurationError",
    "DimensionMismatchError",
    "TensorError",
    "TracingError",
    "UndefinedReferenceError",
]
