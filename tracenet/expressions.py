"""Traced operations with paired forward and backward rules.

Every `Tensor` operation recorded while tracing becomes one `Expression`,
created through the registry below under the name of the `Tensor` method
(`"add"`, `"max_pool"`, ...).

Each expression has a single-index rule (`forward(index)` / `backward(index)`)
computing one sequence position from the arguments at that position. The
statistics `sum`, `mean`, `variance` and `standard_deviation` additionally have
a whole-sequence rule (`forward_sequence()` / `backward_sequence()`), selected
at trace time when the operation is called on a `TensorSequence`.

Backward rules read the gradient of the result node and *accumulate* into the
argument nodes, so a node consumed by several expressions receives the sum of
all partials. Constant nodes never receive gradients. Gradients are set to
zero on cells that were suppressed during the forward run.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .backend import xp
from .config import WindowConfig
from .errors import TracingError, UndefinedReferenceError
from .functions import SQRT
from .node import Node, NodeKind
from .operations import (
    AveragePoolGradientOperation,
    ConvolutionGradientOperation,
    MaxPoolGradientOperation,
)
from .sequence import sequence_variance, stack_sequence
from .tensor import Tensor, active_cells, masked_data

logger = logging.getLogger(__name__)

# Gradients of the first and second argument, None where no gradient flows
Partials = tuple[xp.ndarray | None, xp.ndarray | None]


class OpType(Enum):
    """Operation category by computational behavior."""

    ELEMENTWISE = "elementwise"  # Point-wise: add, multiply, apply, etc.
    REDUCTION = "reduction"  # Reduce to one value: sum, mean, norm, etc.
    LINALG = "linalg"  # Linear algebra: dot
    WINDOW = "window"  # Receptive-field scans: convolution, pooling
    STOCHASTIC = "stochastic"  # Random masks: dropout


class OpInputs(Enum):
    """Number of tensor inputs to an operation.

    The enum value equals the input count, e.g. `OpInputs.BINARY.value == 2`.
    """

    UNARY = 1
    BINARY = 2


def _mask_gradient(gradient: xp.ndarray, active: xp.ndarray | None) -> xp.ndarray:
    if active is None:
        return gradient
    return xp.where(active, gradient, 0.0)


def _unbroadcast(gradient: xp.ndarray, shape: tuple[int, ...]) -> xp.ndarray:
    """Reduce a gradient to the shape of the argument it belongs to.

    Only the scalar-equivalent `1 x 1 x 1` broadcast exists, so a gradient
    either already has the argument shape, is summed into one cell, or is
    spread from one cell.
    """
    if gradient.shape == shape:
        return gradient
    if shape == (1, 1, 1):
        return gradient.sum().reshape(1, 1, 1)
    return xp.broadcast_to(gradient, shape).copy()


class Expression(ABC):
    """One traced operation between one or two argument nodes and a result node.

    Forward intermediates needed by a backward rule (active masks, means,
    pooling coordinates) are cached per index and dropped by `reset()`,
    which the procedure calls before every forward run.

    Args:
        expression_id (int): Position in the procedure's execution order.
        arguments (tuple[Node, ...]): Argument nodes.
        result (Node): Result node.
        context (dict[str, Any] | None): Non-tensor arguments of the
            operation (stride, window, probability, ...).
        as_sequence (bool): Whether the whole-sequence rule is used.
            Defaults to False.
    """

    name: str = ""

    def __init__(
        self,
        expression_id: int,
        arguments: tuple[Node, ...],
        result: Node,
        context: dict[str, Any] | None = None,
        *,
        as_sequence: bool = False,
    ) -> None:
        self.expression_id = expression_id
        self.arguments = arguments
        self.result = result
        self.context = context or {}
        self.as_sequence = as_sequence
        self.cache: dict[int, dict[str, Any]] = {}

    @property
    def first(self) -> Node:
        return self.arguments[0]

    @property
    def second(self) -> Node:
        return self.arguments[1]

    def indices(self) -> list[int]:
        """Indices present in the multi-index arguments, `[0]` if there are none."""
        indices: set[int] = set()
        for node in self.arguments:
            if node.multi_index:
                indices.update(node.indices())
        return sorted(indices) if indices else [0]

    def reset(self) -> None:
        self.cache.clear()

    def calculate_expression(self, index: int | None = None) -> None:
        """Compute the result at `index`, or with the whole-sequence rule if `None`.

        For an expression without whole-sequence rule, `None` runs the
        single-index rule at every index of the arguments.
        """
        if index is not None:
            self.result.set_tensor(self.forward(index), index)
        elif self.as_sequence:
            self.result.set_tensor(self.forward_sequence())
        else:
            for current in self.indices():
                self.result.set_tensor(self.forward(current), current)

    def calculate_gradient(self, index: int | None = None) -> None:
        """Propagate the result gradient at `index`, or for the whole sequence if `None`.

        Raises:
            UndefinedReferenceError: If the result node has no gradient.
        """
        if index is not None:
            self.backward(index)
        elif self.as_sequence:
            self.backward_sequence()
        else:
            for current in reversed(self.indices()):
                self.backward(current)

    @abstractmethod
    def forward(self, index: int) -> Tensor:
        """Single-index forward rule."""

    @abstractmethod
    def backward(self, index: int) -> None:
        """Single-index backward rule."""

    def forward_sequence(self) -> Tensor:
        """Whole-sequence forward rule."""
        raise TracingError(f'"{self.name}" has no whole-sequence rule.')

    def backward_sequence(self) -> None:
        """Whole-sequence backward rule."""
        raise TracingError(f'"{self.name}" has no whole-sequence rule.')

    def _operands(self, index: int) -> tuple[Tensor, ...]:
        return tuple(node.get_tensor(index) for node in self.arguments)

    def _sequence_operands(self) -> list[Tensor]:
        return [self.first.get_tensor(index) for index in self.first.indices()]

    def _gradient(self, index: int = 0) -> xp.ndarray:
        return self.result.get_gradient(index).data

    def _store(self, index: int, **values: Any) -> None:
        self.cache.setdefault(index, {}).update(values)

    def _cached(self, index: int, key: str) -> Any:
        if index not in self.cache:
            raise UndefinedReferenceError(f"{self.name} cache", index, "value")
        return self.cache[index].get(key)

    def _deposit(self, node: Node, gradient: xp.ndarray | None, index: int = 0) -> None:
        if gradient is None or node.kind is NodeKind.CONSTANT:
            return
        shape = node.get_tensor(index).shape
        node.update_gradient(Tensor.from_array(_unbroadcast(gradient, shape)), index)

    def describe(self) -> str:
        arguments = ", ".join(node.name for node in self.arguments)
        mode = " [sequence]" if self.as_sequence else ""
        return f"{self.expression_id}: {self.result.name} = {self.name}({arguments}){mode}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.describe()})"


@dataclass(frozen=True)
class ExpressionSpec:
    """Specification of a registered expression.

    Attributes:
        expression_cls (type[Expression]): The expression class.
        op_type (OpType): Operation category.
        op_inputs (OpInputs): Number of tensor inputs.
        forward_names (tuple[str, ...]): `Tensor` method names recorded as
            this expression. The first name is canonical.
        constraints (dict[str, str] | None): Input constraints for testing.
            Maps input name to constraint type, e.g. ``{"x": "positive"}``.
        skip_test (bool): Whether to skip automated finite difference testing.
        skip_reason (str | None): Reason for skipping. Required if skip_test=True.
    """

    expression_cls: type[Expression]
    op_type: OpType
    op_inputs: OpInputs
    forward_names: tuple[str, ...]
    constraints: dict[str, str] | None = None
    skip_test: bool = False
    skip_reason: str | None = None

    def __post_init__(self) -> None:
        """Validate that skip_reason is provided when skip_test is True.

        Raises:
            ValueError: If skip_test is True but skip_reason is None or empty.
        """
        if self.skip_test and not self.skip_reason:
            raise ValueError("skip_reason is required when skip_test=True")


# Maps Tensor method names to their expression specifications
_EXPRESSION_REGISTRY: dict[str, ExpressionSpec] = {}


def _canonical_name(cls: type) -> str:
    base = cls.__name__.removesuffix("Expression")
    return re.sub(r"(?<!^)(?=[A-Z])", "_", base).lower()


def register_expression(
    *,
    op_type: OpType,
    op_inputs: OpInputs,
    forward_names: tuple[str, ...] | None = None,
    constraints: dict[str, str] | None = None,
    skip_test: bool = False,
    skip_reason: str | None = None,
) -> Callable[[type[Expression]], type[Expression]]:
    """Decorator factory to register an expression class with metadata.

    The decorated class should follow the naming convention
    ``<Operation>Expression``; it is registered under the snake_case
    operation name (``MaxPoolExpression`` -> ``"max_pool"``) unless
    `forward_names` is given.

    Args:
        op_type (OpType): Operation category.
        op_inputs (OpInputs): Number of tensor inputs.
        forward_names (tuple[str, ...] | None): Names to register under.
            If None, derived from the class name.
        constraints (dict[str, str] | None): Input constraints for testing.
        skip_test (bool): Whether to skip automated finite difference testing.
        skip_reason (str | None): Reason for skipping. Required if skip_test=True.

    Returns:
        Callable[[type[Expression]], type[Expression]]: The class decorator.

    Raises:
        ValueError: If skip_test=True but skip_reason is not provided.
    """
    if skip_test and not skip_reason:
        raise ValueError("skip_reason is required when skip_test=True")

    def decorator(cls: type[Expression]) -> type[Expression]:
        names = forward_names if forward_names is not None else (_canonical_name(cls),)
        cls.name = names[0]

        spec = ExpressionSpec(
            expression_cls=cls,
            op_type=op_type,
            op_inputs=op_inputs,
            forward_names=names,
            constraints=constraints,
            skip_test=skip_test,
            skip_reason=skip_reason,
        )

        for name in names:
            _EXPRESSION_REGISTRY[name] = spec

        return cls

    return decorator


def get_expression_spec(name: str) -> ExpressionSpec | None:
    """Get the specification registered under `name`, or None."""
    return _EXPRESSION_REGISTRY.get(name)


def registered_expressions() -> dict[str, ExpressionSpec]:
    """A copy of the registry, keyed by registered name."""
    return dict(_EXPRESSION_REGISTRY)


def create_expression(  # noqa: PLR0913
    name: str,
    expression_id: int,
    arguments: tuple[Node, ...],
    result: Node,
    context: dict[str, Any] | None = None,
    *,
    as_sequence: bool = False,
) -> Expression:
    """Instantiate the expression registered under `name`.

    Raises:
        TracingError: If no expression is registered under `name`, or the
            number of arguments does not match.
    """
    spec = get_expression_spec(name)
    if spec is None:
        raise TracingError(f'Operation "{name}" cannot be traced.')
    if len(arguments) != spec.op_inputs.value:
        raise TracingError(
            f'Operation "{name}" takes {spec.op_inputs.value} tensor(s), got {len(arguments)}.'
        )
    return spec.expression_cls(expression_id, arguments, result, context, as_sequence=as_sequence)


class _ElementwiseExpression(Expression):
    """Binary elementwise operation with the scalar-equivalent broadcast."""

    @abstractmethod
    def _compute(self, first: Tensor, second: Tensor) -> Tensor: ...

    @abstractmethod
    def _partials(self, x: xp.ndarray, y: xp.ndarray, gradient: xp.ndarray) -> Partials: ...

    def forward(self, index: int) -> Tensor:
        first, second = self._operands(index)
        self._store(index, active=active_cells(first, second))
        return self._compute(first, second)

    def backward(self, index: int) -> None:
        first, second = self._operands(index)
        gradient = _mask_gradient(self._gradient(index), self._cached(index, "active"))
        x_grad, y_grad = self._partials(first.data, second.data, gradient)
        self._deposit(self.first, x_grad, index)
        self._deposit(self.second, y_grad, index)


@register_expression(op_type=OpType.ELEMENTWISE, op_inputs=OpInputs.BINARY)
class AddExpression(_ElementwiseExpression):
    def _compute(self, first: Tensor, second: Tensor) -> Tensor:
        return first.add(second)

    def _partials(self, x: xp.ndarray, y: xp.ndarray, gradient: xp.ndarray) -> Partials:
        return gradient, gradient


@register_expression(op_type=OpType.ELEMENTWISE, op_inputs=OpInputs.BINARY)
class SubtractExpression(_ElementwiseExpression):
    def _compute(self, first: Tensor, second: Tensor) -> Tensor:
        return first.subtract(second)

    def _partials(self, x: xp.ndarray, y: xp.ndarray, gradient: xp.ndarray) -> Partials:
        return gradient, -gradient


@register_expression(op_type=OpType.ELEMENTWISE, op_inputs=OpInputs.BINARY)
class MultiplyExpression(_ElementwiseExpression):
    def _compute(self, first: Tensor, second: Tensor) -> Tensor:
        return first.multiply(second)

    def _partials(self, x: xp.ndarray, y: xp.ndarray, gradient: xp.ndarray) -> Partials:
        return gradient * y, gradient * x


@register_expression(
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.BINARY,
    constraints={"y": "positive"},
)
class DivideExpression(_ElementwiseExpression):
    def _compute(self, first: Tensor, second: Tensor) -> Tensor:
        return first.divide(second)

    def _partials(self, x: xp.ndarray, y: xp.ndarray, gradient: xp.ndarray) -> Partials:
        return gradient / y, -gradient * x / (y * y)


@register_expression(
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.BINARY,
    constraints={"x": "positive"},
)
class PowerExpression(_ElementwiseExpression):
    """`x ** y`; the exponent gradient `x ** y * ln(x)` is skipped for constant exponents."""

    def _compute(self, first: Tensor, second: Tensor) -> Tensor:
        return first.power(second)

    def _partials(self, x: xp.ndarray, y: xp.ndarray, gradient: xp.ndarray) -> Partials:
        x_grad = gradient * y * x ** (y - 1)
        if self.second.kind is NodeKind.CONSTANT:
            return x_grad, None
        return x_grad, gradient * x**y * xp.log(x)


@register_expression(op_type=OpType.LINALG, op_inputs=OpInputs.BINARY)
class DotExpression(Expression):
    """Depth-wise matrix product; suppressed cells of either side get zero gradient."""

    def forward(self, index: int) -> Tensor:
        first, second = self._operands(index)
        return first.dot(second)

    def backward(self, index: int) -> None:
        first, second = self._operands(index)
        gradient = self._gradient(index)
        x_grad = xp.einsum("ijd,kjd->ikd", gradient, masked_data(second))
        y_grad = xp.einsum("ikd,ijd->kjd", masked_data(first), gradient)
        self._deposit(self.first, _mask_gradient(x_grad, active_cells(first)), index)
        self._deposit(self.second, _mask_gradient(y_grad, active_cells(second)), index)


class _ConvolutionExpression(Expression):
    flip = True

    def forward(self, index: int) -> Tensor:
        first, second = self._operands(index)
        if self.flip:
            return first.convolve(second, **self.context)
        return first.crosscorrelate(second, **self.context)

    def backward(self, index: int) -> None:
        first, second = self._operands(index)
        output_gradient = self.result.get_gradient(index)
        window = WindowConfig(second.rows, second.columns, **self.context)
        input_gradient = xp.zeros(first.shape)
        filter_gradient = xp.zeros(second.shape)
        ConvolutionGradientOperation(
            *output_gradient.shape,
            window,
            second,
            input_gradient,
            filter_gradient,
            flip=self.flip,
        ).apply_operation(first, source=output_gradient)
        self._deposit(self.first, input_gradient, index)
        self._deposit(self.second, filter_gradient, index)


@register_expression(op_type=OpType.WINDOW, op_inputs=OpInputs.BINARY)
class ConvolveExpression(_ConvolutionExpression):
    flip = True


@register_expression(op_type=OpType.WINDOW, op_inputs=OpInputs.BINARY)
class CrosscorrelateExpression(_ConvolutionExpression):
    flip = False


@register_expression(op_type=OpType.WINDOW, op_inputs=OpInputs.UNARY)
class MaxPoolExpression(Expression):
    """Routes each output gradient cell to the input cell that won the forward scan."""

    def forward(self, index: int) -> Tensor:
        (first,) = self._operands(index)
        coordinates: dict[tuple[int, int, int], tuple[int, int]] = {}
        result = first.max_pool(self.context["window"], coordinates=coordinates)
        self._store(index, coordinates=coordinates)
        return result

    def backward(self, index: int) -> None:
        (first,) = self._operands(index)
        output_gradient = self.result.get_gradient(index)
        input_gradient = xp.zeros(first.shape)
        MaxPoolGradientOperation(
            *output_gradient.shape, self._cached(index, "coordinates"), input_gradient
        ).apply_operation(output_gradient)
        self._deposit(self.first, input_gradient, index)


@register_expression(op_type=OpType.WINDOW, op_inputs=OpInputs.UNARY)
class AveragePoolExpression(Expression):
    def forward(self, index: int) -> Tensor:
        (first,) = self._operands(index)
        counts: dict[tuple[int, int, int], int] = {}
        result = first.average_pool(self.context["window"], counts=counts)
        self._store(index, counts=counts)
        return result

    def backward(self, index: int) -> None:
        (first,) = self._operands(index)
        output_gradient = self.result.get_gradient(index)
        input_gradient = xp.zeros(first.shape)
        AveragePoolGradientOperation(
            *output_gradient.shape,
            self.context["window"],
            self._cached(index, "counts"),
            input_gradient,
        ).apply_operation(first, source=output_gradient)
        self._deposit(self.first, input_gradient, index)


@register_expression(op_type=OpType.ELEMENTWISE, op_inputs=OpInputs.UNARY)
class ApplyExpression(Expression):
    """Unary function; the backward rule is `gradient * f'(x)`."""

    def forward(self, index: int) -> Tensor:
        (first,) = self._operands(index)
        self._store(index, active=active_cells(first))
        return first.apply(self.context["function"])

    def backward(self, index: int) -> None:
        (first,) = self._operands(index)
        derivative = self.context["function"].derivative(first.data)
        gradient = self._gradient(index) * derivative
        self._deposit(self.first, _mask_gradient(gradient, self._cached(index, "active")), index)


def _active_count(tensor: Tensor, active: xp.ndarray | None) -> int:
    return tensor.size if active is None else int(active.sum())


@register_expression(op_type=OpType.REDUCTION, op_inputs=OpInputs.UNARY)
class SumExpression(Expression):
    def forward(self, index: int) -> Tensor:
        (first,) = self._operands(index)
        self._store(index, active=active_cells(first))
        return first.sum()

    def backward(self, index: int) -> None:
        (first,) = self._operands(index)
        gradient = xp.broadcast_to(self._gradient(index), first.shape)
        self._deposit(self.first, _mask_gradient(gradient, self._cached(index, "active")), index)

    def forward_sequence(self) -> Tensor:
        values = stack_sequence(self.name, self._sequence_operands())
        return Tensor.from_array(values.sum(axis=0))

    def backward_sequence(self) -> None:
        gradient = self._gradient()
        for index in self.first.indices():
            active = active_cells(self.first.get_tensor(index))
            self._deposit(self.first, _mask_gradient(gradient, active), index)


@register_expression(op_type=OpType.REDUCTION, op_inputs=OpInputs.UNARY)
class MeanExpression(Expression):
    def forward(self, index: int) -> Tensor:
        (first,) = self._operands(index)
        active = active_cells(first)
        self._store(index, active=active, count=_active_count(first, active))
        return first.mean()

    def backward(self, index: int) -> None:
        (first,) = self._operands(index)
        count = self._cached(index, "count")
        gradient = xp.broadcast_to(self._gradient(index) / max(count, 1), first.shape)
        self._deposit(self.first, _mask_gradient(gradient, self._cached(index, "active")), index)

    def forward_sequence(self) -> Tensor:
        values = stack_sequence(self.name, self._sequence_operands())
        return Tensor.from_array(values.mean(axis=0))

    def backward_sequence(self) -> None:
        indices = self.first.indices()
        gradient = self._gradient() / len(indices)
        for index in indices:
            active = active_cells(self.first.get_tensor(index))
            self._deposit(self.first, _mask_gradient(gradient, active), index)


class _DeviationExpression(Expression):
    """Shared forward bookkeeping of variance and standard deviation.

    The per-index rule caches the center (mean of the active cells unless a
    constant mean was given) and the active count. The sequence rule caches
    the cell-wise center and variance across indices.
    """

    def _prepare(self, index: int) -> Tensor:
        (first,) = self._operands(index)
        active = active_cells(first)
        count = _active_count(first, active)
        mean = self.context.get("mean")
        if mean is None:
            mean = float(masked_data(first).sum() / count) if count else 0.0
        variance = first.variance(mean).item()
        self._store(index, active=active, count=count, center=mean, variance=variance)
        return first

    def _centered_gradient(self, index: int) -> xp.ndarray:
        """`gradient * (x - mean) * 2 / (n - 1)` for one index."""
        (first,) = self._operands(index)
        count = self._cached(index, "count")
        if count < 2:  # noqa: PLR2004
            return xp.zeros(first.shape)
        centered = first.data - self._cached(index, "center")
        gradient = self._gradient(index) * centered * 2 / (count - 1)
        return _mask_gradient(gradient, self._cached(index, "active"))

    def _prepare_sequence(self) -> xp.ndarray:
        values = stack_sequence(self.name, self._sequence_operands())
        mean = self.context.get("mean")
        center = values.mean(axis=0) if mean is None else mean.data
        variance = sequence_variance(values, center)
        self._store(0, center=center, variance=variance, count=values.shape[0])
        return variance

    def _centered_sequence_gradients(self) -> dict[int, xp.ndarray]:
        count = self._cached(0, "count")
        center = self._cached(0, "center")
        gradient = self._gradient()
        gradients = {}
        for index in self.first.indices():
            tensor = self.first.get_tensor(index)
            if count < 2:  # noqa: PLR2004
                gradients[index] = xp.zeros(tensor.shape)
                continue
            centered = masked_data(tensor) - center
            gradients[index] = _mask_gradient(
                gradient * centered * 2 / (count - 1), active_cells(tensor)
            )
        return gradients


@register_expression(op_type=OpType.REDUCTION, op_inputs=OpInputs.UNARY)
class VarianceExpression(_DeviationExpression):
    def forward(self, index: int) -> Tensor:
        self._prepare(index)
        return Tensor.from_number(self._cached(index, "variance"))

    def backward(self, index: int) -> None:
        self._deposit(self.first, self._centered_gradient(index), index)

    def forward_sequence(self) -> Tensor:
        return Tensor.from_array(self._prepare_sequence())

    def backward_sequence(self) -> None:
        for index, gradient in self._centered_sequence_gradients().items():
            self._deposit(self.first, gradient, index)


def _sqrt_derivative(variance: xp.ndarray | float) -> xp.ndarray:
    """Derivative of the square root at `variance`, zero where the variance is zero."""
    variance = xp.asarray(variance, dtype=float)
    positive = variance > 0
    return xp.where(positive, SQRT.derivative(xp.where(positive, variance, 1.0)), 0.0)


@register_expression(op_type=OpType.REDUCTION, op_inputs=OpInputs.UNARY)
class StandardDeviationExpression(_DeviationExpression):
    """Sample standard deviation.

    Backward multiplies the centered input by `2 / (n - 1)` and by the
    derivative of the square root evaluated at the variance.
    """

    def forward(self, index: int) -> Tensor:
        self._prepare(index)
        return Tensor.from_number(float(xp.sqrt(self._cached(index, "variance"))))

    def backward(self, index: int) -> None:
        derivative = _sqrt_derivative(self._cached(index, "variance"))
        self._deposit(self.first, self._centered_gradient(index) * derivative, index)

    def forward_sequence(self) -> Tensor:
        return Tensor.from_array(xp.sqrt(self._prepare_sequence()))

    def backward_sequence(self) -> None:
        derivative = _sqrt_derivative(self._cached(0, "variance"))
        for index, gradient in self._centered_sequence_gradients().items():
            self._deposit(self.first, gradient * derivative, index)


@register_expression(
    op_type=OpType.REDUCTION,
    op_inputs=OpInputs.UNARY,
    constraints={"x": "nonzero"},
)
class NormExpression(Expression):
    """p-norm; backward is `gradient * sign(x) * |x|^(p-1) / norm^(p-1)`."""

    def forward(self, index: int) -> Tensor:
        (first,) = self._operands(index)
        result = first.norm(self.context["p"])
        self._store(index, active=active_cells(first), norm=result.item())
        return result

    def backward(self, index: int) -> None:
        (first,) = self._operands(index)
        p = self.context["p"]
        norm = self._cached(index, "norm")
        x = first.data
        if norm == 0:
            self._deposit(self.first, xp.zeros(x.shape), index)
            return
        gradient = self._gradient(index) * xp.sign(x) * xp.abs(x) ** (p - 1) / norm ** (p - 1)
        self._deposit(self.first, _mask_gradient(gradient, self._cached(index, "active")), index)


@register_expression(
    op_type=OpType.STOCHASTIC,
    op_inputs=OpInputs.UNARY,
    skip_test=True,
    skip_reason="Draws a new random mask on every forward run",
)
class DropoutExpression(Expression):
    """Inverted dropout; a fresh mask is drawn from the recorded generator on every forward run."""

    def forward(self, index: int) -> Tensor:
        (first,) = self._operands(index)
        result = first.dropout(self.context["probability"], rng=self.context["rng"])
        assert result.mask is not None
        self._store(index, active=result.mask.active, scale=1 / result.mask.keep_probability)
        return result

    def backward(self, index: int) -> None:
        gradient = self._gradient(index) * self._cached(index, "scale")
        self._deposit(self.first, _mask_gradient(gradient, self._cached(index, "active")), index)


__all__ = [
    "AddExpression",
    "ApplyExpression",
    "AveragePoolExpression",
    "ConvolveExpression",
    "CrosscorrelateExpression",
    "DivideExpression",
    "DotExpression",
    "DropoutExpression",
    "Expression",
    "ExpressionSpec",
    "MaxPoolExpression",
    "MeanExpression",
    "MultiplyExpression",
    "NormExpression",
    "OpInputs",
    "OpType",
    "PowerExpression",
    "StandardDeviationExpression",
    "SubtractExpression",
    "SumExpression",
    "VarianceExpression",
    "create_expression",
    "get_expression_spec",
    "register_expression",
    "registered_expressions",
]
