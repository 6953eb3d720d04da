"""Tests for unary function values and derivatives."""

from __future__ import annotations

import numpy as np
import pytest
from tracenet import UnaryFunction, UnaryFunctionType, as_unary_function


def _inputs(function: UnaryFunction) -> np.ndarray:
    rng = np.random.default_rng(seed=7)
    if function.constraint == "positive":
        return rng.uniform(0.5, 2.0, (3, 4, 1))
    if function.constraint == "nonzero":
        return rng.choice([-1.0, 1.0], (3, 4, 1)) * rng.uniform(0.5, 2.0, (3, 4, 1))
    return rng.uniform(-2.0, 2.0, (3, 4, 1))


@pytest.mark.parametrize("function_type", list(UnaryFunctionType))
def test_derivative_matches_finite_differences(function_type: UnaryFunctionType) -> None:
    function = UnaryFunction(function_type, alpha=0.2)
    x = _inputs(function)
    eps = 1e-6
    expected = (function.value(x + eps) - function.value(x - eps)) / (2 * eps)
    np.testing.assert_allclose(function.derivative(x), expected, rtol=1e-5, atol=1e-8)


@pytest.mark.parametrize(
    ("function_type", "x", "expected"),
    [
        (UnaryFunctionType.RELU, [-1.0, 2.0], [0.0, 2.0]),
        (UnaryFunctionType.LEAKY_RELU, [-1.0, 2.0], [-0.01, 2.0]),
        (UnaryFunctionType.SQUARE, [-3.0, 2.0], [9.0, 4.0]),
        (UnaryFunctionType.RECIPROCAL, [4.0, 0.5], [0.25, 2.0]),
        (UnaryFunctionType.SIGMOID, [0.0], [0.5]),
        (UnaryFunctionType.SOFTPLUS, [0.0], [np.log(2.0)]),
    ],
)
def test_values(function_type: UnaryFunctionType, x: list[float], expected: list[float]) -> None:
    function = UnaryFunction(function_type)
    np.testing.assert_allclose(function.value(np.array(x)), expected)


def test_linear_value_is_a_copy() -> None:
    x = np.array([1.0, 2.0])
    y = UnaryFunction(UnaryFunctionType.LINEAR).value(x)
    y[0] = 5.0
    assert x[0] == 1.0


def test_as_unary_function() -> None:
    tanh = UnaryFunction(UnaryFunctionType.TANH)
    assert as_unary_function(tanh) is tanh
    assert as_unary_function(UnaryFunctionType.TANH) == tanh
    assert as_unary_function("TanH") == tanh
    assert as_unary_function("sqrt").name == "sqrt"
    assert as_unary_function("log").constraint == "positive"

    with pytest.raises(ValueError):
        as_unary_function("softmax")
    with pytest.raises(TypeError):
        as_unary_function(3)  # type: ignore[arg-type]
