"""Windowed Operation Framework.

Structural tensor kernels (statistics, dropout, convolution, pooling and their
gradients) share one iteration strategy: walk the depth/row/column index space
of a tensor, optionally strided, and hand every cell to a callback.

- `TensorOperation` owns the triple loop. Without masks every cell is passed
  to `apply`. As soon as one of the two input tensors carries a mask, the loop
  switches to masked mode: cells suppressed in either input are skipped (the
  result cell keeps its default, zero) and the others go to `apply_mask`.
- `WindowedOperation` walks the cells of an *output* tensor and scans the
  receptive field of every output cell in a *target* tensor between
  `start_operation` and `finish_operation`, skipping suppressed target cells.

Operations are single-use: create one per kernel invocation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from .backend import xp

if TYPE_CHECKING:
    from .config import WindowConfig
    from .tensor import Tensor


Coordinates = dict[tuple[int, int, int], tuple[int, int]]
Counts = dict[tuple[int, int, int], int]


class TensorOperation(ABC):
    """Per-cell operation over a `rows x columns x depth` index space.

    Args:
        rows (int): Rows to iterate.
        columns (int): Columns to iterate.
        depth (int): Depth slices to iterate.
        provide_value (bool): Whether to read the value of the first input at
            each cell. If `False`, `value` is always 0.0. Defaults to True.
        stride (int): Step between visited rows and columns. Defaults to 1.
    """

    def __init__(
        self,
        rows: int,
        columns: int,
        depth: int,
        *,
        provide_value: bool = True,
        stride: int = 1,
    ) -> None:
        self.rows = rows
        self.columns = columns
        self.depth = depth
        self.provide_value = provide_value
        self.stride = stride

    def apply_operation(
        self,
        first: Tensor,
        second: Tensor | None = None,
        result: Tensor | None = None,
    ) -> Tensor | None:
        """Run the operation over the whole index space.

        Args:
            first (Tensor): Tensor providing the per-cell value and the
                primary mask.
            second (Tensor | None): Optional tensor whose mask is consulted too.
            result (Tensor | None): Tensor the callbacks write into.

        Returns:
            Tensor | None: `result`, for chaining.
        """
        values = first.data
        suppressed = _combined_suppression(first, second)
        for depth in range(self.depth):
            for row in range(0, self.rows, self.stride):
                for column in range(0, self.columns, self.stride):
                    value = float(values[row, column, depth]) if self.provide_value else 0.0
                    if suppressed is None:
                        self.apply(row, column, depth, value, result)
                    elif not suppressed[row, column, depth]:
                        self.apply_mask(row, column, depth, value, result)
        return result

    @abstractmethod
    def apply(self, row: int, column: int, depth: int, value: float, result: Tensor | None) -> None:
        """Handle one cell in unmasked mode."""

    def apply_mask(
        self, row: int, column: int, depth: int, value: float, result: Tensor | None
    ) -> None:
        """Handle one active cell in masked mode. Same as `apply` by default."""
        self.apply(row, column, depth, value, result)


def _combined_suppression(first: Tensor, second: Tensor | None) -> xp.ndarray | None:
    masks = [t.mask.suppressed for t in (first, second) if t is not None and t.mask is not None]
    if not masks:
        return None
    suppressed = masks[0]
    for other in masks[1:]:
        suppressed = suppressed | other
    return xp.broadcast_to(suppressed, first.data.shape)


class WindowedOperation(TensorOperation):
    """Receptive-field scan for every output cell.

    The base loop iterates the output space (`rows x columns x depth`); for
    each output cell `(row, column, depth)` the window is scanned in the
    target at `input_row = row * stride + filter_row * dilation` (same for
    columns).

    Args:
        rows (int): Output rows.
        columns (int): Output columns.
        depth (int): Depth slices.
        window (WindowConfig): Window size, stride and dilation.
        provide_value (bool): Whether `start_operation` receives the value of
            the iterated tensor at the output cell. Defaults to False.
    """

    def __init__(
        self,
        rows: int,
        columns: int,
        depth: int,
        window: WindowConfig,
        *,
        provide_value: bool = False,
    ) -> None:
        super().__init__(rows, columns, depth, provide_value=provide_value)
        self.window = window
        self.target: Tensor | None = None
        self._target_suppressed: xp.ndarray | None = None

    def apply_operation(  # type: ignore[override]
        self,
        target: Tensor,
        source: Tensor | None = None,
        result: Tensor | None = None,
    ) -> Tensor | None:
        """Scan `target` once per output cell.

        Args:
            target (Tensor): Tensor whose receptive fields are scanned.
            source (Tensor | None): Tensor in output space driving the outer
                loop (e.g. an output gradient). Defaults to `result`.
            result (Tensor | None): Output tensor written by `finish_operation`.

        Returns:
            Tensor | None: `result`, for chaining.
        """
        self.target = target
        self._target_suppressed = target.mask.suppressed if target.mask is not None else None
        first = source if source is not None else result
        if first is None:
            raise ValueError("Windowed operations need a source or a result tensor.")
        return super().apply_operation(first, None, result)

    def apply(self, row: int, column: int, depth: int, value: float, result: Tensor | None) -> None:
        assert self.target is not None
        target_values = self.target.data
        window = self.window
        self.start_operation(row, column, depth, value)
        for filter_row in range(window.filter_row_size):
            input_row = row * window.stride + filter_row * window.dilation
            for filter_column in range(window.filter_column_size):
                input_column = column * window.stride + filter_column * window.dilation
                if (
                    self._target_suppressed is not None
                    and self._target_suppressed[input_row, input_column, depth]
                ):
                    continue
                self.apply_window(
                    input_row,
                    input_column,
                    filter_row,
                    filter_column,
                    depth,
                    float(target_values[input_row, input_column, depth]),
                )
        self.finish_operation(row, column, depth, result)

    def start_operation(self, row: int, column: int, depth: int, value: float) -> None:  # noqa: B027
        """Called before the receptive field of output cell `(row, column, depth)` is scanned."""

    @abstractmethod
    def apply_window(
        self,
        input_row: int,
        input_column: int,
        filter_row: int,
        filter_column: int,
        depth: int,
        value: float,
    ) -> None:
        """Handle one active cell of the current receptive field."""

    def finish_operation(  # noqa: B027
        self, row: int, column: int, depth: int, result: Tensor | None
    ) -> None:
        """Called after the receptive field of output cell `(row, column, depth)` was scanned."""


class SumOperation(TensorOperation):
    """Sum and count of all active cells."""

    def __init__(self, rows: int, columns: int, depth: int) -> None:
        super().__init__(rows, columns, depth)
        self.value = 0.0
        self.count = 0

    def apply(self, row: int, column: int, depth: int, value: float, result: Tensor | None) -> None:
        self.value += value
        self.count += 1


class VarianceOperation(TensorOperation):
    """Sum of squared deviations from `mean` over all active cells.

    `variance` uses the sample (`n - 1`) denominator and is 0.0 for fewer
    than two active cells.
    """

    def __init__(self, rows: int, columns: int, depth: int, mean: float) -> None:
        super().__init__(rows, columns, depth)
        self.mean = mean
        self.value = 0.0
        self.count = 0

    def apply(self, row: int, column: int, depth: int, value: float, result: Tensor | None) -> None:
        self.value += (value - self.mean) ** 2
        self.count += 1

    @property
    def variance(self) -> float:
        if self.count < 2:  # noqa: PLR2004
            return 0.0
        return self.value / (self.count - 1)


class DropoutOperation(TensorOperation):
    """Copies active cells scaled by `scale`; suppressed cells stay zero.

    Run with the input as first tensor and the masked result as second, so
    cells suppressed in either are skipped.
    """

    def __init__(self, rows: int, columns: int, depth: int, scale: float) -> None:
        super().__init__(rows, columns, depth)
        self.scale = scale

    def apply(self, row: int, column: int, depth: int, value: float, result: Tensor | None) -> None:
        assert result is not None
        result.data[row, column, depth] = value * self.scale


def _filter_index(
    window: WindowConfig, filter_row: int, filter_column: int, flip: bool
) -> tuple[int, int]:
    if flip:
        return (
            window.filter_row_size - 1 - filter_row,
            window.filter_column_size - 1 - filter_column,
        )
    return filter_row, filter_column


class ConvolutionOperation(WindowedOperation):
    """Depth-wise convolution (`flip=True`) or cross-correlation (`flip=False`).

    The filter has depth 1 (shared by every slice) or the depth of the input.
    """

    def __init__(
        self,
        rows: int,
        columns: int,
        depth: int,
        window: WindowConfig,
        filter: Tensor,  # noqa: A002
        *,
        flip: bool = True,
    ) -> None:
        super().__init__(rows, columns, depth, window)
        self.filter = filter.data
        self.flip = flip
        self._accumulator = 0.0
        self._filter_depth = 0

    def start_operation(self, row: int, column: int, depth: int, value: float) -> None:
        self._accumulator = 0.0
        self._filter_depth = depth if self.filter.shape[2] > 1 else 0

    def apply_window(
        self,
        input_row: int,
        input_column: int,
        filter_row: int,
        filter_column: int,
        depth: int,
        value: float,
    ) -> None:
        fr, fc = _filter_index(self.window, filter_row, filter_column, self.flip)
        self._accumulator += value * self.filter[fr, fc, self._filter_depth]

    def finish_operation(self, row: int, column: int, depth: int, result: Tensor | None) -> None:
        assert result is not None
        result.data[row, column, depth] = self._accumulator


class ConvolutionGradientOperation(WindowedOperation):
    """Routes an output gradient back to the input and to the filter.

    Iterates the output gradient (`source`) and scans the input (`target`);
    fills `input_gradient` and `filter_gradient` in place.
    """

    def __init__(  # noqa: PLR0913
        self,
        rows: int,
        columns: int,
        depth: int,
        window: WindowConfig,
        filter: Tensor,  # noqa: A002
        input_gradient: xp.ndarray,
        filter_gradient: xp.ndarray,
        *,
        flip: bool = True,
    ) -> None:
        super().__init__(rows, columns, depth, window, provide_value=True)
        self.filter = filter.data
        self.flip = flip
        self.input_gradient = input_gradient
        self.filter_gradient = filter_gradient
        self._output_gradient = 0.0
        self._filter_depth = 0

    def start_operation(self, row: int, column: int, depth: int, value: float) -> None:
        self._output_gradient = value
        self._filter_depth = depth if self.filter.shape[2] > 1 else 0

    def apply_window(
        self,
        input_row: int,
        input_column: int,
        filter_row: int,
        filter_column: int,
        depth: int,
        value: float,
    ) -> None:
        fr, fc = _filter_index(self.window, filter_row, filter_column, self.flip)
        gradient = self._output_gradient
        self.input_gradient[input_row, input_column, depth] += (
            gradient * self.filter[fr, fc, self._filter_depth]
        )
        self.filter_gradient[fr, fc, self._filter_depth] += gradient * value


class MaxPoolOperation(WindowedOperation):
    """Maximum of every receptive field.

    The winning input coordinate of output cell `(row, column, depth)` is
    stored in `coordinates[(row, column, depth)]` as `(input_row, input_column)`.
    On ties the first cell in scan order wins. A window whose cells are all
    suppressed yields 0 and records no coordinate.
    """

    def __init__(
        self,
        rows: int,
        columns: int,
        depth: int,
        window: WindowConfig,
        coordinates: Coordinates,
    ) -> None:
        super().__init__(rows, columns, depth, window)
        self.coordinates = coordinates
        self._maximum = -xp.inf
        self._winner: tuple[int, int] | None = None

    def start_operation(self, row: int, column: int, depth: int, value: float) -> None:
        self._maximum = -xp.inf
        self._winner = None

    def apply_window(
        self,
        input_row: int,
        input_column: int,
        filter_row: int,
        filter_column: int,
        depth: int,
        value: float,
    ) -> None:
        if value > self._maximum:
            self._maximum = value
            self._winner = (input_row, input_column)

    def finish_operation(self, row: int, column: int, depth: int, result: Tensor | None) -> None:
        assert result is not None
        if self._winner is None:
            result.data[row, column, depth] = 0.0
            return
        result.data[row, column, depth] = self._maximum
        self.coordinates[(row, column, depth)] = self._winner


class MaxPoolGradientOperation(TensorOperation):
    """Routes each output gradient cell to its recorded winning input cell."""

    def __init__(
        self,
        rows: int,
        columns: int,
        depth: int,
        coordinates: Coordinates,
        input_gradient: xp.ndarray,
    ) -> None:
        super().__init__(rows, columns, depth)
        self.coordinates = coordinates
        self.input_gradient = input_gradient

    def apply(self, row: int, column: int, depth: int, value: float, result: Tensor | None) -> None:
        winner = self.coordinates.get((row, column, depth))
        if winner is not None:
            input_row, input_column = winner
            self.input_gradient[input_row, input_column, depth] += value


class AveragePoolOperation(WindowedOperation):
    """Mean of the active cells of every receptive field.

    The number of active cells per output cell is stored in `counts`.
    """

    def __init__(
        self,
        rows: int,
        columns: int,
        depth: int,
        window: WindowConfig,
        counts: Counts,
    ) -> None:
        super().__init__(rows, columns, depth, window)
        self.counts = counts
        self._sum = 0.0
        self._count = 0

    def start_operation(self, row: int, column: int, depth: int, value: float) -> None:
        self._sum = 0.0
        self._count = 0

    def apply_window(
        self,
        input_row: int,
        input_column: int,
        filter_row: int,
        filter_column: int,
        depth: int,
        value: float,
    ) -> None:
        self._sum += value
        self._count += 1

    def finish_operation(self, row: int, column: int, depth: int, result: Tensor | None) -> None:
        assert result is not None
        self.counts[(row, column, depth)] = self._count
        result.data[row, column, depth] = self._sum / self._count if self._count else 0.0


class AveragePoolGradientOperation(WindowedOperation):
    """Spreads each output gradient cell evenly over the active cells of its window."""

    def __init__(
        self,
        rows: int,
        columns: int,
        depth: int,
        window: WindowConfig,
        counts: Counts,
        input_gradient: xp.ndarray,
    ) -> None:
        super().__init__(rows, columns, depth, window, provide_value=True)
        self.counts = counts
        self.input_gradient = input_gradient
        self._share = 0.0

    def start_operation(self, row: int, column: int, depth: int, value: float) -> None:
        count = self.counts.get((row, column, depth), 0)
        self._share = value / count if count else 0.0

    def apply_window(
        self,
        input_row: int,
        input_column: int,
        filter_row: int,
        filter_column: int,
        depth: int,
        value: float,
    ) -> None:
        self.input_gradient[input_row, input_column, depth] += self._share


__all__ = [
    "AveragePoolGradientOperation",
    "AveragePoolOperation",
    "ConvolutionGradientOperation",
    "ConvolutionOperation",
    "Coordinates",
    "Counts",
    "DropoutOperation",
    "MaxPoolGradientOperation",
    "MaxPoolOperation",
    "SumOperation",
    "TensorOperation",
    "VarianceOperation",
    "WindowedOperation",
]
