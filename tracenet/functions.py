"""Unary function definitions consumed by `Tensor.apply` and its expression.

Each function is a value/derivative pair over raw arrays. The derivative is
always expressed in terms of the function *input* `x`, so the backward rule of
the traced `apply` operation is `grad_in = grad_out * derivative(x)`.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from .backend import xp

ArrayFn = Callable[[xp.ndarray, float], xp.ndarray]


class UnaryFunctionType(Enum):
    """All supported unary functions."""

    LINEAR = "linear"
    ABS = "abs"
    EXP = "exp"
    LOG = "log"
    SQRT = "sqrt"
    SQUARE = "square"
    RECIPROCAL = "reciprocal"
    SIN = "sin"
    COS = "cos"
    TANH = "tanh"
    SIGMOID = "sigmoid"
    RELU = "relu"
    LEAKY_RELU = "leaky_relu"
    ELU = "elu"
    SOFTPLUS = "softplus"


@dataclass(frozen=True)
class _FunctionSpec:
    """Value/derivative pair plus the input domain used when testing.

    Attributes:
        value (ArrayFn): `f(x, alpha)`.
        derivative (ArrayFn): `f'(x, alpha)`.
        constraint (str | None): Input domain, `"positive"` for functions
            only defined on `x > 0`, `"nonzero"` for functions with a kink at 0.
    """

    value: ArrayFn
    derivative: ArrayFn
    constraint: str | None = None


def _sigmoid(x: xp.ndarray, _alpha: float = 0.0) -> xp.ndarray:
    return 1 / (1 + xp.exp(-x))


_FUNCTIONS: dict[UnaryFunctionType, _FunctionSpec] = {
    UnaryFunctionType.LINEAR: _FunctionSpec(
        value=lambda x, _a: x.copy(),
        derivative=lambda x, _a: xp.ones_like(x),
    ),
    UnaryFunctionType.ABS: _FunctionSpec(
        value=lambda x, _a: xp.abs(x),
        derivative=lambda x, _a: xp.sign(x),
        constraint="nonzero",
    ),
    UnaryFunctionType.EXP: _FunctionSpec(
        value=lambda x, _a: xp.exp(x),
        derivative=lambda x, _a: xp.exp(x),
    ),
    UnaryFunctionType.LOG: _FunctionSpec(
        value=lambda x, _a: xp.log(x),
        derivative=lambda x, _a: 1 / x,
        constraint="positive",
    ),
    UnaryFunctionType.SQRT: _FunctionSpec(
        value=lambda x, _a: xp.sqrt(x),
        derivative=lambda x, _a: 1 / (2 * xp.sqrt(x)),
        constraint="positive",
    ),
    UnaryFunctionType.SQUARE: _FunctionSpec(
        value=lambda x, _a: x * x,
        derivative=lambda x, _a: 2 * x,
    ),
    UnaryFunctionType.RECIPROCAL: _FunctionSpec(
        value=lambda x, _a: 1 / x,
        derivative=lambda x, _a: -1 / (x * x),
        constraint="positive",
    ),
    UnaryFunctionType.SIN: _FunctionSpec(
        value=lambda x, _a: xp.sin(x),
        derivative=lambda x, _a: xp.cos(x),
    ),
    UnaryFunctionType.COS: _FunctionSpec(
        value=lambda x, _a: xp.cos(x),
        derivative=lambda x, _a: -xp.sin(x),
    ),
    UnaryFunctionType.TANH: _FunctionSpec(
        value=lambda x, _a: xp.tanh(x),
        derivative=lambda x, _a: 1 - xp.tanh(x) ** 2,
    ),
    UnaryFunctionType.SIGMOID: _FunctionSpec(
        value=_sigmoid,
        derivative=lambda x, _a: _sigmoid(x) * (1 - _sigmoid(x)),
    ),
    UnaryFunctionType.RELU: _FunctionSpec(
        value=lambda x, _a: xp.maximum(x, 0.0),
        derivative=lambda x, _a: (x > 0).astype(x.dtype),
        constraint="nonzero",
    ),
    UnaryFunctionType.LEAKY_RELU: _FunctionSpec(
        value=lambda x, a: xp.where(x > 0, x, a * x),
        derivative=lambda x, a: xp.where(x > 0, 1.0, a),
        constraint="nonzero",
    ),
    UnaryFunctionType.ELU: _FunctionSpec(
        value=lambda x, a: xp.where(x > 0, x, a * (xp.exp(x) - 1)),
        derivative=lambda x, a: xp.where(x > 0, 1.0, a * xp.exp(x)),
        constraint="nonzero",
    ),
    UnaryFunctionType.SOFTPLUS: _FunctionSpec(
        value=lambda x, _a: xp.logaddexp(0.0, x),
        derivative=_sigmoid,
    ),
}


@dataclass(frozen=True)
class UnaryFunction:
    """A unary function with its derivative.

    Attributes:
        function_type (UnaryFunctionType): Which function.
        alpha (float): Slope/scale parameter used by `LEAKY_RELU` and `ELU`.
            Ignored by every other function. Defaults to 0.01.
    """

    function_type: UnaryFunctionType
    alpha: float = 0.01

    @property
    def name(self) -> str:
        """Lower-case function name, e.g. `"sqrt"`."""
        return self.function_type.value

    @property
    def constraint(self) -> str | None:
        """Input domain restriction, see `_FunctionSpec.constraint`."""
        return _FUNCTIONS[self.function_type].constraint

    def value(self, x: xp.ndarray) -> xp.ndarray:
        """Evaluate the function elementwise."""
        return _FUNCTIONS[self.function_type].value(x, self.alpha)

    def derivative(self, x: xp.ndarray) -> xp.ndarray:
        """Evaluate the derivative elementwise at the function input `x`."""
        return _FUNCTIONS[self.function_type].derivative(x, self.alpha)


def as_unary_function(function: UnaryFunction | UnaryFunctionType | str) -> UnaryFunction:
    """Normalize the accepted spellings of a unary function.

    Args:
        function (UnaryFunction | UnaryFunctionType | str): A function, its
            type, or its lower-case name.

    Raises:
        ValueError: If a string names no known function.
        TypeError: If `function` is of an unsupported type.

    Returns:
        UnaryFunction: The function object.
    """
    if isinstance(function, UnaryFunction):
        return function
    if isinstance(function, UnaryFunctionType):
        return UnaryFunction(function)
    if isinstance(function, str):
        return UnaryFunction(UnaryFunctionType(function.lower()))
    raise TypeError(f'Unsupported unary function "{type(function).__name__}"')


SQRT = UnaryFunction(UnaryFunctionType.SQRT)


__all__ = [
    "SQRT",
    "UnaryFunction",
    "UnaryFunctionType",
    "as_unary_function",
]
