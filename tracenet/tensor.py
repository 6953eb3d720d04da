"""Dense 3D tensors (rows x columns x depth) that can be traced into procedures."""

from __future__ import annotations

import itertools
import logging
import math
from enum import Enum
from functools import reduce
from typing import TYPE_CHECKING, Any, Self

from .backend import DEFAULT_DTYPE, default_rng, xp
from .config import WindowConfig, validate_probability
from .errors import ConfigurationError, DimensionMismatchError, TracingError
from .functions import UnaryFunction, UnaryFunctionType, as_unary_function
from .mask import Mask
from .operations import (
    AveragePoolOperation,
    ConvolutionOperation,
    Coordinates,
    Counts,
    DropoutOperation,
    MaxPoolOperation,
    SumOperation,
    VarianceOperation,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from .tracing import TraceBuilder


logger = logging.getLogger(__name__)

Number = int | float

# Source of unique, never reused tensor handles.
_HANDLES = itertools.count()


class Initialization(Enum):
    """Value initialization of a new tensor.

    The Xavier/He variants use `fan_in = columns` and `fan_out = rows`, which
    matches a weight matrix multiplied from the left onto a column vector.
    """

    ZERO = "zero"
    ONE = "one"
    RANDOM = "random"
    UNIFORM_XAVIER = "uniform_xavier"
    NORMAL_XAVIER = "normal_xavier"
    UNIFORM_HE = "uniform_he"
    NORMAL_HE = "normal_he"


def _initialize(
    shape: tuple[int, int, int],
    initialization: Initialization,
    rng: xp.random.Generator | None,
) -> xp.ndarray:
    if initialization is Initialization.ZERO:
        return xp.zeros(shape, dtype=DEFAULT_DTYPE)
    if initialization is Initialization.ONE:
        return xp.ones(shape, dtype=DEFAULT_DTYPE)

    rng = rng if rng is not None else default_rng()
    fan_out, fan_in = shape[0], shape[1]
    if initialization is Initialization.RANDOM:
        return rng.random(shape)
    if initialization is Initialization.UNIFORM_XAVIER:
        limit = math.sqrt(6 / (fan_in + fan_out))
        return rng.uniform(-limit, limit, shape)
    if initialization is Initialization.NORMAL_XAVIER:
        return rng.normal(0.0, math.sqrt(2 / (fan_in + fan_out)), shape)
    if initialization is Initialization.UNIFORM_HE:
        limit = math.sqrt(6 / fan_in)
        return rng.uniform(-limit, limit, shape)
    if initialization is Initialization.NORMAL_HE:
        return rng.normal(0.0, math.sqrt(2 / fan_in), shape)
    raise ConfigurationError(f'Unsupported initialization "{initialization}"')


def active_cells(*tensors: Tensor | None) -> xp.ndarray | None:
    """Boolean array of cells active in every given tensor.

    Returns:
        xp.ndarray | None: `None` if no tensor carries a mask, meaning
            every cell is active.
    """
    masks = [t.mask.active for t in tensors if t is not None and t.mask is not None]
    if not masks:
        return None
    return reduce(xp.logical_and, masks)


def masked_data(tensor: Tensor) -> xp.ndarray:
    """Tensor values with suppressed cells set to zero."""
    if tensor.mask is None:
        return tensor.data
    return xp.where(tensor.mask.active, tensor.data, 0.0)


def _as_tensor(value: Tensor | Number) -> Tensor:
    if isinstance(value, Tensor):
        return value
    if isinstance(value, int | float):
        return Tensor.from_number(value)
    raise TypeError(f'Unsupported operand of type "{type(value).__name__}"')


def _common_builder(operands: tuple[Tensor, ...]) -> TraceBuilder | None:
    builders = {id(t._builder): t._builder for t in operands if t._builder is not None}
    if len(builders) > 1:
        raise TracingError("Operands belong to two different traces.")
    return next(iter(builders.values()), None)


class Tensor:
    """A dense `rows x columns x depth` tensor of float64 values.

    Every tensor carries a unique integer `handle`, assigned at creation and
    never reused. Equality and hashing are identity based, so auxiliary
    per-tensor state (optimizer moments, procedure caches) is keyed by
    `handle`.

    All arithmetic allocates a new tensor unless `in_place=True` is passed.
    Operations between two tensors need equal shapes, except that a
    `1 x 1 x 1` tensor (or a Python number) broadcasts against any shape.
    Suppressed cells of a mask are skipped: their result cells are zero.

    While a forward definition is traced, placeholder tensors carry a
    `TraceBuilder`; every operation on them records an expression and the
    result inherits the builder.

    Args:
        rows (int): Number of rows.
        columns (int): Number of columns. Defaults to 1.
        depth (int): Number of depth slices. Defaults to 1.
        initialization (Initialization): Initial values. Defaults to zeros.
        rng (xp.random.Generator | None): Random source for random
            initializations. Defaults to None, meaning a fresh generator.
        name (str | None): Optional name, used in logs and error messages.
    """

    def __init__(  # noqa: PLR0913
        self,
        rows: int,
        columns: int = 1,
        depth: int = 1,
        initialization: Initialization = Initialization.ZERO,
        *,
        rng: xp.random.Generator | None = None,
        name: str | None = None,
    ) -> None:
        shape = (rows, columns, depth)
        if any(not isinstance(size, int) or size < 1 for size in shape):
            raise ConfigurationError(f"Tensor dimensions must be integers >= 1, got {shape}.")
        self.data: xp.ndarray = _initialize(shape, initialization, rng)
        self.handle: int = next(_HANDLES)
        self.name = name
        self.mask: Mask | None = None
        self._builder: TraceBuilder | None = None

    @classmethod
    def from_array(cls, data: Any, *, name: str | None = None) -> Self:
        """Create a tensor from array-like data with up to 3 dimensions.

        A scalar becomes `1 x 1 x 1`, a vector of length `n` becomes a column
        `n x 1 x 1` and a matrix `r x c` becomes `r x c x 1`.

        Raises:
            DimensionMismatchError: If `data` has more than 3 dimensions.
        """
        array = xp.array(data, dtype=DEFAULT_DTYPE)
        if array.ndim > 3:  # noqa: PLR2004
            raise DimensionMismatchError(
                "from_array", array.shape, (None, None, None), "At most 3 dimensions supported."
            )
        array = array.reshape(array.shape + (1,) * (3 - array.ndim))
        tensor = cls(*array.shape, name=name)
        tensor.data = array
        return tensor

    @classmethod
    def from_number(cls, value: Number) -> Self:
        """Create a `1 x 1 x 1` tensor holding `value`."""
        tensor = cls(1, 1, 1)
        tensor.data[0, 0, 0] = value
        return tensor

    @property
    def rows(self) -> int:
        return self.data.shape[0]

    @property
    def columns(self) -> int:
        return self.data.shape[1]

    @property
    def depth(self) -> int:
        return self.data.shape[2]

    @property
    def shape(self) -> tuple[int, int, int]:
        return self.data.shape  # type: ignore[return-value]

    @property
    def size(self) -> int:
        return int(self.data.size)

    @property
    def is_traced(self) -> bool:
        """Whether this tensor is a placeholder of an open trace."""
        return self._builder is not None

    def get_value(self, row: int, column: int = 0, depth: int = 0) -> float:
        return float(self.data[row, column, depth])

    def set_value(self, row: int, column: int, depth: int, value: float) -> None:
        self._check_untraced("set_value")
        self.data[row, column, depth] = value

    def item(self) -> float:
        """The value of a `1 x 1 x 1` tensor.

        Raises:
            DimensionMismatchError: If the tensor holds more than one value.
        """
        if self.size != 1:
            raise DimensionMismatchError("item", self.shape, (1, 1, 1))
        return float(self.data[0, 0, 0])

    def to_numpy(self) -> xp.ndarray:
        """A copy of the values as `rows x columns x depth` array."""
        return self.data.copy()

    def copy(self) -> Tensor:
        """Untraced copy of values and mask under a new handle."""
        self._check_untraced("copy")
        duplicate = Tensor.from_array(self.data, name=self.name)
        duplicate.mask = self.mask.copy() if self.mask is not None else None
        return duplicate

    def set_equal_to(self, other: Tensor) -> None:
        """Overwrite the values of this tensor with the values of `other`."""
        self._check_untraced("set_equal_to")
        if other.shape != self.shape:
            raise DimensionMismatchError("set_equal_to", self.shape, other.shape)
        self.data[...] = other.data

    def fill(self, value: float) -> None:
        self._check_untraced("fill")
        self.data[...] = value

    def _check_untraced(self, op: str, *others: Tensor) -> None:
        if self._builder is not None or any(o._builder is not None for o in others):
            raise TracingError(f'"{op}" modifies a tensor in place and cannot be traced.')

    def _trace(self, op: str, operands: tuple[Tensor, ...], result: Tensor, **context: Any) -> Tensor:
        builder = _common_builder(operands)
        if builder is not None:
            builder.record(op, operands, result, context)
        return result

    def _broadcast_shape(self, op: str, other: Tensor) -> tuple[int, int, int]:
        if self.shape == other.shape or other.size == 1:
            return self.shape
        if self.size == 1:
            return other.shape
        raise DimensionMismatchError(op, self.shape, other.shape)

    def _elementwise(
        self,
        op: str,
        other: Tensor | Number,
        kernel: Callable[[xp.ndarray, xp.ndarray], xp.ndarray],
        *,
        in_place: bool,
    ) -> Tensor:
        other_tensor = _as_tensor(other)
        if in_place:
            self._check_untraced(op, other_tensor)
        shape = self._broadcast_shape(op, other_tensor)
        values = kernel(self.data, other_tensor.data)
        active = active_cells(self, other_tensor)
        if active is not None:
            values = xp.where(active, values, 0.0)
        if in_place:
            if shape != self.shape:
                raise DimensionMismatchError(op, self.shape, other_tensor.shape, "In-place result must keep its shape.")
            self.data[...] = values
            return self
        return self._trace(op, (self, other_tensor), Tensor.from_array(values))

    def add(self, other: Tensor | Number, *, in_place: bool = False) -> Tensor:
        return self._elementwise("add", other, xp.add, in_place=in_place)

    def subtract(self, other: Tensor | Number, *, in_place: bool = False) -> Tensor:
        return self._elementwise("subtract", other, xp.subtract, in_place=in_place)

    def multiply(self, other: Tensor | Number, *, in_place: bool = False) -> Tensor:
        return self._elementwise("multiply", other, xp.multiply, in_place=in_place)

    def divide(self, other: Tensor | Number, *, in_place: bool = False) -> Tensor:
        return self._elementwise("divide", other, xp.divide, in_place=in_place)

    def power(self, other: Tensor | Number, *, in_place: bool = False) -> Tensor:
        return self._elementwise("power", other, xp.power, in_place=in_place)

    def apply(
        self,
        function: UnaryFunction | UnaryFunctionType | str,
        *,
        in_place: bool = False,
    ) -> Tensor:
        """Apply a unary function elementwise.

        Args:
            function (UnaryFunction | UnaryFunctionType | str): The function.
            in_place (bool): Whether to overwrite this tensor. Defaults to False.

        Returns:
            Tensor: The result, `self` if `in_place`.
        """
        unary = as_unary_function(function)
        values = unary.value(self.data)
        active = active_cells(self)
        if active is not None:
            values = xp.where(active, values, 0.0)
        if in_place:
            self._check_untraced("apply")
            self.data[...] = values
            return self
        return self._trace("apply", (self,), Tensor.from_array(values), function=unary)

    def dot(self, other: Tensor) -> Tensor:
        """Depth-wise matrix product `(r x k x d) @ (k x c x d) -> (r x c x d)`.

        Suppressed cells of either operand contribute zero.

        Raises:
            DimensionMismatchError: If inner dimensions or depths differ.
        """
        if self.columns != other.rows or self.depth != other.depth:
            raise DimensionMismatchError("dot", self.shape, other.shape)
        values = xp.einsum("ikd,kjd->ijd", masked_data(self), masked_data(other))
        return self._trace("dot", (self, other), Tensor.from_array(values))

    def __add__(self, other: Tensor | Number) -> Tensor:
        return self.add(other)

    def __radd__(self, other: Number) -> Tensor:
        return _as_tensor(other).add(self)

    def __sub__(self, other: Tensor | Number) -> Tensor:
        return self.subtract(other)

    def __rsub__(self, other: Number) -> Tensor:
        return _as_tensor(other).subtract(self)

    def __mul__(self, other: Tensor | Number) -> Tensor:
        return self.multiply(other)

    def __rmul__(self, other: Number) -> Tensor:
        return _as_tensor(other).multiply(self)

    def __truediv__(self, other: Tensor | Number) -> Tensor:
        return self.divide(other)

    def __rtruediv__(self, other: Number) -> Tensor:
        return _as_tensor(other).divide(self)

    def __pow__(self, other: Tensor | Number) -> Tensor:
        return self.power(other)

    def __rpow__(self, other: Number) -> Tensor:
        return _as_tensor(other).power(self)

    def __matmul__(self, other: Tensor) -> Tensor:
        return self.dot(other)

    def __neg__(self) -> Tensor:
        return self.multiply(-1.0)

    def sum(self) -> Tensor:
        """Sum of all active cells as `1 x 1 x 1` tensor."""
        operation = SumOperation(*self.shape)
        operation.apply_operation(self)
        return self._trace("sum", (self,), Tensor.from_number(operation.value))

    def mean(self) -> Tensor:
        """Mean of all active cells as `1 x 1 x 1` tensor, 0 if none is active."""
        operation = SumOperation(*self.shape)
        operation.apply_operation(self)
        value = operation.value / operation.count if operation.count else 0.0
        return self._trace("mean", (self,), Tensor.from_number(value))

    def _constant_mean(self, op: str, mean: float | Tensor | None) -> float | None:
        if not isinstance(mean, Tensor):
            return None if mean is None else float(mean)
        if mean.is_traced:
            raise TracingError(f'The mean passed to "{op}" must be a constant, not a traced tensor.')
        return mean.item()

    def _mean_value(self, mean: float | None) -> float:
        if mean is not None:
            return mean
        operation = SumOperation(*self.shape)
        operation.apply_operation(self)
        return operation.value / operation.count if operation.count else 0.0

    def variance(self, mean: float | Tensor | None = None) -> Tensor:
        """Sample variance (`n - 1` denominator) of all active cells.

        Args:
            mean (float | Tensor | None): Precomputed mean, a number or an
                untraced `1 x 1 x 1` tensor. Defaults to None, meaning the
                mean of the active cells.

        Returns:
            Tensor: `1 x 1 x 1` tensor, 0 for fewer than two active cells.
        """
        mean = self._constant_mean("variance", mean)
        operation = VarianceOperation(*self.shape, self._mean_value(mean))
        operation.apply_operation(self)
        return self._trace("variance", (self,), Tensor.from_number(operation.variance), mean=mean)

    def standard_deviation(self, mean: float | Tensor | None = None) -> Tensor:
        """Sample standard deviation (`n - 1` denominator) of all active cells.

        Args:
            mean (float | Tensor | None): Precomputed mean, a number or an
                untraced `1 x 1 x 1` tensor. Defaults to None, meaning the
                mean of the active cells.

        Returns:
            Tensor: `1 x 1 x 1` tensor.
        """
        mean = self._constant_mean("standard_deviation", mean)
        operation = VarianceOperation(*self.shape, self._mean_value(mean))
        operation.apply_operation(self)
        value = math.sqrt(operation.variance)
        return self._trace("standard_deviation", (self,), Tensor.from_number(value), mean=mean)

    def norm(self, p: float = 2) -> Tensor:
        """p-norm `(sum |x|^p)^(1/p)` of all active cells as `1 x 1 x 1` tensor.

        Raises:
            ConfigurationError: If `p` is not positive.
        """
        if p <= 0:
            raise ConfigurationError(f'"p" must be positive, got {p!r}.')
        value = float((xp.abs(masked_data(self)) ** p).sum() ** (1 / p))
        return self._trace("norm", (self,), Tensor.from_number(value), p=p)

    def _window_output_size(
        self, op: str, window: WindowConfig, other_shape: tuple[int, ...]
    ) -> tuple[int, int]:
        span_rows, span_columns = window.span
        if span_rows > self.rows or span_columns > self.columns:
            raise DimensionMismatchError(op, self.shape, other_shape, "Window does not fit the input.")
        return window.output_size(self.rows, self.columns)

    def _convolution(self, op: str, filter: Tensor, stride: int, dilation: int, *, flip: bool) -> Tensor:  # noqa: A002
        if filter.depth not in (1, self.depth):
            raise DimensionMismatchError(
                op, self.shape, filter.shape, "Filter depth must be 1 or the input depth."
            )
        window = WindowConfig(filter.rows, filter.columns, stride=stride, dilation=dilation)
        rows, columns = self._window_output_size(op, window, filter.shape)
        result = Tensor(rows, columns, self.depth)
        ConvolutionOperation(rows, columns, self.depth, window, filter, flip=flip).apply_operation(
            self, result=result
        )
        return self._trace(op, (self, filter), result, stride=stride, dilation=dilation)

    def convolve(self, filter: Tensor, *, stride: int = 1, dilation: int = 1) -> Tensor:  # noqa: A002
        """Depth-wise convolution with a flipped filter, no padding.

        Args:
            filter (Tensor): `fr x fc x 1` (shared) or `fr x fc x depth` filter.
            stride (int): Output down-sampling step. Defaults to 1.
            dilation (int): Gap between sampled input cells. Defaults to 1.

        Raises:
            DimensionMismatchError: If the filter depth is incompatible or
                the dilated filter does not fit the input.
            ConfigurationError: If stride or dilation are smaller than 1.

        Returns:
            Tensor: `out_rows x out_columns x depth` result.
        """
        return self._convolution("convolve", filter, stride, dilation, flip=True)

    def crosscorrelate(self, filter: Tensor, *, stride: int = 1, dilation: int = 1) -> Tensor:  # noqa: A002
        """Like `convolve`, without flipping the filter."""
        return self._convolution("crosscorrelate", filter, stride, dilation, flip=False)

    def max_pool(self, window: WindowConfig, *, coordinates: Coordinates | None = None) -> Tensor:
        """Maximum of every window.

        Args:
            window (WindowConfig): Window size, stride and dilation.
            coordinates (Coordinates | None): Cleared and filled with the
                winning input coordinate of every output cell.

        Returns:
            Tensor: `out_rows x out_columns x depth` result.
        """
        rows, columns = self._window_output_size("max_pool", window, window.span)
        coordinates = coordinates if coordinates is not None else {}
        coordinates.clear()
        result = Tensor(rows, columns, self.depth)
        MaxPoolOperation(rows, columns, self.depth, window, coordinates).apply_operation(
            self, result=result
        )
        return self._trace("max_pool", (self,), result, window=window)

    def average_pool(self, window: WindowConfig, *, counts: Counts | None = None) -> Tensor:
        """Mean of the active cells of every window.

        Args:
            window (WindowConfig): Window size, stride and dilation.
            counts (Counts | None): Cleared and filled with the number of
                active cells of every output cell.

        Returns:
            Tensor: `out_rows x out_columns x depth` result.
        """
        rows, columns = self._window_output_size("average_pool", window, window.span)
        counts = counts if counts is not None else {}
        counts.clear()
        result = Tensor(rows, columns, self.depth)
        AveragePoolOperation(rows, columns, self.depth, window, counts).apply_operation(
            self, result=result
        )
        return self._trace("average_pool", (self,), result, window=window)

    def dropout(self, probability: float, *, rng: xp.random.Generator | None = None) -> Tensor:
        """Inverted dropout.

        Each cell is suppressed with `probability`; active cells are scaled
        by `1 / (1 - probability)`. The result carries the drawn mask, merged
        with the mask of this tensor.

        Args:
            probability (float): Suppression probability in `[0, 1)`.
            rng (xp.random.Generator | None): Random source. Defaults to None,
                meaning a fresh generator. During tracing the generator is
                kept and a new mask is drawn on every forward run.

        Raises:
            ConfigurationError: If `probability` is outside `[0, 1)`.

        Returns:
            Tensor: The masked result.
        """
        probability = validate_probability(probability, name="dropout probability")
        rng = rng if rng is not None else default_rng()
        result = Tensor(*self.shape)
        mask = result.set_mask()
        mask.mask_by_probability(probability, rng)
        if self.mask is not None:
            mask.suppressed |= self.mask.suppressed
        DropoutOperation(*self.shape, scale=1 / (1 - probability)).apply_operation(self, result, result)
        return self._trace("dropout", (self,), result, probability=probability, rng=rng)

    def set_mask(self) -> Mask:
        """Attach an all-active mask if none exists and return the mask."""
        self._check_untraced("set_mask")
        if self.mask is None:
            self.mask = Mask(*self.shape)
        return self.mask

    def get_mask(self) -> Mask | None:
        return self.mask

    def has_mask_at(self, row: int, column: int = 0, depth: int = 0) -> bool:
        """Whether the cell is suppressed. Always `False` without a mask."""
        return self.mask is not None and self.mask.has_mask_at(row, column, depth)

    def mask_by_probability(self, probability: float, rng: xp.random.Generator) -> Mask:
        """Suppress every cell independently with `probability`."""
        mask = self.set_mask()
        mask.mask_by_probability(probability, rng)
        return mask

    def unmask(self) -> None:
        """Remove the mask, making every cell active again."""
        self.mask = None

    def __hash__(self) -> int:
        return hash(self.handle)

    def __repr__(self) -> str:
        name = f"{self.name!r}, " if self.name else ""
        return f"{type(self).__name__}({name}shape={self.shape}, handle={self.handle})"


class Parameter(Tensor):
    """A tensor holding learnable weights.

    Parameters captured while a forward definition is traced become
    parameter nodes of the procedure: their gradients are kept and read by
    optimizers via `Procedure.get_gradient`.
    """


__all__ = [
    "Initialization",
    "Parameter",
    "Tensor",
    "active_cells",
    "masked_data",
]
