"""Graph slots holding tensor values and gradients of a procedure."""

from __future__ import annotations

import logging
from enum import Enum

from .errors import DimensionMismatchError, UndefinedReferenceError
from .tensor import Tensor

logger = logging.getLogger(__name__)


class NodeKind(Enum):
    """Role of a node in a procedure."""

    INPUT = "input"  # named input, bound on every forward run
    PARAMETER = "parameter"  # captured Parameter, gradients are kept for optimizers
    CONSTANT = "constant"  # captured tensor or number, never receives gradients
    INTERMEDIATE = "intermediate"  # result of an expression


class Node:
    """One slot of the computation graph.

    A node holds `index -> Tensor` maps for values and gradients. In
    multi-index mode every index is a separate entry (e.g. one per time
    step). A single-index node maps every index to entry `0`, so a per-index
    expression reading it at any index sees the same tensor and gradient
    contributions from all indices accumulate into one entry.

    Parameter and constant nodes keep a reference to the captured tensor,
    which survives `reset()`; optimizers update that tensor in place.

    Args:
        name (str): Name used in logs and errors.
        kind (NodeKind): Role of the node.
        multi_index (bool): Whether the node holds a sequence. Defaults to False.
        tensor (Tensor | None): Reference tensor of a parameter or constant node.
    """

    def __init__(
        self,
        name: str,
        kind: NodeKind,
        *,
        multi_index: bool = False,
        tensor: Tensor | None = None,
    ) -> None:
        self.name = name
        self.kind = kind
        self.multi_index = multi_index
        self.reference = tensor
        self.values: dict[int, Tensor] = {}
        self.gradients: dict[int, Tensor] = {}
        if tensor is not None:
            self.values[0] = tensor

    @property
    def is_leaf(self) -> bool:
        return self.kind is not NodeKind.INTERMEDIATE

    def _key(self, index: int) -> int:
        return index if self.multi_index else 0

    def set_tensor(self, tensor: Tensor, index: int = 0) -> None:
        """Write the value at `index`, extending the sequence if it is new."""
        self.values[self._key(index)] = tensor

    def get_tensor(self, index: int = 0) -> Tensor:
        """Read the value at `index`.

        Raises:
            UndefinedReferenceError: If no value was written at `index`.
        """
        try:
            return self.values[self._key(index)]
        except KeyError:
            raise UndefinedReferenceError(self.name, index, "value") from None

    def has_tensor(self, index: int = 0) -> bool:
        return self._key(index) in self.values

    def get_gradient(self, index: int = 0) -> Tensor:
        """Read the accumulated gradient at `index`.

        Raises:
            UndefinedReferenceError: If no gradient reached `index`.
        """
        try:
            return self.gradients[self._key(index)]
        except KeyError:
            raise UndefinedReferenceError(self.name, index, "gradient") from None

    def has_gradient(self, index: int = 0) -> bool:
        return self._key(index) in self.gradients

    def update_gradient(self, gradient: Tensor, index: int = 0, *, accumulate: bool = True) -> None:
        """Add `gradient` to (or overwrite) the gradient at `index`.

        Args:
            gradient (Tensor): The contribution.
            index (int): Sequence index. Defaults to 0.
            accumulate (bool): Whether to add to an existing gradient
                (`True`) or to replace it (`False`). Defaults to True.

        Raises:
            DimensionMismatchError: If an existing gradient has another shape.
        """
        key = self._key(index)
        existing = self.gradients.get(key)
        if not accumulate or existing is None:
            self.gradients[key] = gradient
            return
        if existing.shape != gradient.shape:
            raise DimensionMismatchError(f"gradient of {self.name}", existing.shape, gradient.shape)
        self.gradients[key] = Tensor.from_array(existing.data + gradient.data)

    def indices(self) -> list[int]:
        """Indices holding a value, ascending."""
        return sorted(self.values)

    def clear_gradients(self) -> None:
        self.gradients.clear()

    def reset(self) -> None:
        """Drop all gradients and every value except the reference tensor."""
        self.gradients.clear()
        self.values.clear()
        if self.reference is not None:
            self.values[0] = self.reference

    def __repr__(self) -> str:
        mode = "multi" if self.multi_index else "single"
        return f"Node({self.name!r}, {self.kind.value}, {mode}, indices={self.indices()})"


__all__ = [
    "Node",
    "NodeKind",
]
