"""Weight normalization with one traced procedure per weight tensor."""

from __future__ import annotations

import logging

from .errors import UndefinedReferenceError
from .procedure import Procedure
from .tensor import Parameter, Tensor
from .tracing import ForwardDefinition, ProcedureFactory

logger = logging.getLogger(__name__)


class _WeightNormDefinition(ForwardDefinition):
    """`w' = g * w / ||w||_2` for a weight of fixed shape."""

    def __init__(self, shape: tuple[int, int, int], g: Parameter) -> None:
        self.shape = shape
        self.g = g

    def inputs(self, reset_previous: bool) -> dict[str, Tensor]:
        self.weight = Tensor(*self.shape, name="weight")
        return {"weight": self.weight}

    def forward(self) -> Tensor:
        return self.weight.multiply(self.g).divide(self.weight.norm(2))


class WeightNormalization:
    """Reparametrizes weights as `g * w / ||w||_2` with a learned scalar `g`.

    Each distinct weight tensor gets its own procedure, cached by handle.
    Usage per training step: `normalize(weight)` before the forward run of
    the layer, `backward(weight, gradient)` to turn the gradient of the
    normalized weight into the gradient of the raw weight, then
    `restore(weight)` before the optimizer updates the raw weight.

    Args:
        g (float): Initial value of the scale. Defaults to 1.0.
    """

    def __init__(self, *, g: float = 1.0) -> None:
        self.g = Parameter.from_number(g)
        self.g.name = "g"
        self._procedures: dict[int, Procedure] = {}
        self._originals: dict[int, Tensor] = {}
        self._factory = ProcedureFactory()

    def procedure_for(self, weight: Tensor) -> Procedure:
        procedure = self._procedures.get(weight.handle)
        if procedure is None:
            procedure = self._factory.get_procedure(_WeightNormDefinition(weight.shape, self.g))
            self._procedures[weight.handle] = procedure
            logger.debug(f"Traced weight normalization for {weight!r}")
        return procedure

    def is_normalized(self, weight: Tensor) -> bool:
        return weight.handle in self._originals

    def normalize(self, weight: Tensor) -> None:
        """Overwrite `weight` with its normalized value, keeping the raw value.

        A weight that is still normalized is restored first.
        """
        if self.is_normalized(weight):
            self.restore(weight)
        original = weight.copy()
        self._originals[weight.handle] = original
        normalized = self.procedure_for(weight).forward({"weight": original})
        assert isinstance(normalized, Tensor)
        weight.set_equal_to(normalized)

    def restore(self, weight: Tensor) -> None:
        """Put the raw value back into `weight`.

        Raises:
            UndefinedReferenceError: If `weight` was not normalized.
        """
        original = self._originals.pop(weight.handle, None)
        if original is None:
            raise UndefinedReferenceError(weight.name or f"weight {weight.handle}", 0, "raw value")
        weight.set_equal_to(original)

    def backward(self, weight: Tensor, weight_gradient: Tensor) -> Tensor:
        """Gradient of the raw weight from the gradient of the normalized weight.

        Also accumulates the gradient of `g`, see `get_gradient`.
        """
        gradients = self.procedure_for(weight).backward(weight_gradient)
        gradient = gradients["weight"]
        assert isinstance(gradient, Tensor)
        return gradient

    @property
    def parameters(self) -> list[Parameter]:
        return [self.g]

    def get_gradient(self, tensor: Tensor) -> Tensor:
        """Gradient of `g`, summed over all weights normalized since their last backward."""
        if tensor is not self.g:
            raise UndefinedReferenceError(tensor.name or f"tensor {tensor.handle}", 0, "gradient")
        gradient = Tensor(1, 1, 1)
        for procedure in self._procedures.values():
            if procedure.indices:
                gradient = gradient.add(procedure.get_gradient(self.g))
        return gradient

    def reset(self) -> None:
        """Drop every cached procedure and raw value."""
        self._procedures.clear()
        self._originals.clear()


__all__ = [
    "WeightNormalization",
]
