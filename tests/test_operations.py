"""Tests for the per-cell and windowed operation framework."""

from __future__ import annotations

import numpy as np
from tracenet import Tensor, WindowConfig
from tracenet.operations import (
    AveragePoolGradientOperation,
    MaxPoolGradientOperation,
    MaxPoolOperation,
    TensorOperation,
    VarianceOperation,
    WindowedOperation,
)


class RecordingOperation(TensorOperation):
    """Records which callback saw which cell."""

    def __init__(self, *args: int, **kwargs: int) -> None:
        super().__init__(*args, **kwargs)
        self.unmasked: list[tuple[int, int, int, float]] = []
        self.masked: list[tuple[int, int, int, float]] = []

    def apply(self, row: int, column: int, depth: int, value: float, result: Tensor | None) -> None:
        self.unmasked.append((row, column, depth, value))

    def apply_mask(
        self, row: int, column: int, depth: int, value: float, result: Tensor | None
    ) -> None:
        self.masked.append((row, column, depth, value))


class RecordingWindow(WindowedOperation):
    """Records the scanned input cells of every output cell."""

    def __init__(self, *args: object, **kwargs: object) -> None:
        super().__init__(*args, **kwargs)  # type: ignore[arg-type]
        self.scans: dict[tuple[int, int, int], list[tuple[int, int]]] = {}
        self._current: list[tuple[int, int]] = []

    def start_operation(self, row: int, column: int, depth: int, value: float) -> None:
        self._current = []

    def apply_window(
        self,
        input_row: int,
        input_column: int,
        filter_row: int,
        filter_column: int,
        depth: int,
        value: float,
    ) -> None:
        self._current.append((input_row, input_column))

    def finish_operation(self, row: int, column: int, depth: int, result: Tensor | None) -> None:
        self.scans[(row, column, depth)] = self._current


def test_unmasked_iteration_visits_every_cell() -> None:
    t = Tensor.from_array(np.arange(8, dtype=float).reshape(2, 2, 2))
    operation = RecordingOperation(2, 2, 2)
    operation.apply_operation(t)
    assert len(operation.unmasked) == 8
    assert operation.masked == []
    assert operation.unmasked[0] == (0, 0, 0, 0.0)
    assert operation.unmasked[1] == (0, 1, 0, 2.0)


def test_strided_iteration() -> None:
    operation = RecordingOperation(4, 4, 1, stride=2)
    operation.apply_operation(Tensor(4, 4))
    assert [(r, c) for r, c, _, _ in operation.unmasked] == [(0, 0), (0, 2), (2, 0), (2, 2)]


def test_masked_mode_skips_cells_of_either_input() -> None:
    first = Tensor(2, 2)
    second = Tensor(2, 2)
    first.set_mask().set_mask_at(0, 0, 0)
    second.set_mask().set_mask_at(1, 1, 0)
    operation = RecordingOperation(2, 2, 1)
    operation.apply_operation(first, second)
    assert operation.unmasked == []
    assert [(r, c) for r, c, _, _ in operation.masked] == [(0, 1), (1, 0)]


def test_without_value() -> None:
    operation = RecordingOperation(1, 1, 1, provide_value=False)
    operation.apply_operation(Tensor.from_number(5.0))
    assert operation.unmasked == [(0, 0, 0, 0.0)]


def test_window_scan_with_stride_and_dilation() -> None:
    window = WindowConfig.square(2, stride=2, dilation=2)
    operation = RecordingWindow(2, 2, 1, window)
    operation.apply_operation(Tensor(6, 6), result=Tensor(2, 2))
    assert operation.scans[(0, 0, 0)] == [(0, 0), (0, 2), (2, 0), (2, 2)]
    assert operation.scans[(1, 1, 0)] == [(2, 2), (2, 4), (4, 2), (4, 4)]


def test_window_scan_skips_suppressed_target_cells() -> None:
    target = Tensor(2, 2)
    target.set_mask().set_mask_at(0, 1, 0)
    operation = RecordingWindow(1, 1, 1, WindowConfig.square(2))
    operation.apply_operation(target, result=Tensor(1, 1))
    assert operation.scans[(0, 0, 0)] == [(0, 0), (1, 0), (1, 1)]


def test_variance_operation() -> None:
    operation = VarianceOperation(4, 1, 1, mean=2.5)
    operation.apply_operation(Tensor.from_array([1.0, 2.0, 3.0, 4.0]))
    assert operation.count == 4
    assert operation.variance == 5 / 3

    single = VarianceOperation(1, 1, 1, mean=0.0)
    single.apply_operation(Tensor.from_number(3.0))
    assert single.variance == 0.0


def test_max_pool_first_maximum_wins_ties() -> None:
    coordinates: dict = {}
    result = Tensor(1, 1)
    MaxPoolOperation(1, 1, 1, WindowConfig.square(2), coordinates).apply_operation(
        Tensor.from_array([[1.0, 3.0], [3.0, 0.0]]), result=result
    )
    assert result.item() == 3.0
    assert coordinates == {(0, 0, 0): (0, 1)}


def test_max_pool_all_masked_window() -> None:
    target = Tensor.from_array([[1.0, 2.0], [3.0, 4.0]])
    target.set_mask().suppressed[...] = True
    coordinates: dict = {}
    result = Tensor.from_number(9.0)
    MaxPoolOperation(1, 1, 1, WindowConfig.square(2), coordinates).apply_operation(
        target, result=result
    )
    assert result.item() == 0.0
    assert coordinates == {}


def test_max_pool_gradient_routes_to_winners() -> None:
    input_gradient = np.zeros((4, 4, 1))
    coordinates = {(0, 0, 0): (1, 1), (0, 1, 0): (0, 3)}
    output_gradient = Tensor.from_array([[2.0, 5.0]])
    MaxPoolGradientOperation(1, 2, 1, coordinates, input_gradient).apply_operation(output_gradient)
    assert input_gradient[1, 1, 0] == 2.0
    assert input_gradient[0, 3, 0] == 5.0
    assert input_gradient.sum() == 7.0


def test_average_pool_gradient_spreads_over_active_cells() -> None:
    target = Tensor(2, 2)
    target.set_mask().set_mask_at(0, 0, 0)
    input_gradient = np.zeros((2, 2, 1))
    AveragePoolGradientOperation(
        1, 1, 1, WindowConfig.square(2), {(0, 0, 0): 3}, input_gradient
    ).apply_operation(target, source=Tensor.from_number(3.0))
    np.testing.assert_allclose(input_gradient[..., 0], [[0.0, 1.0], [1.0, 1.0]])
