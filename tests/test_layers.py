"""Tests for layers built on traced procedures."""

from __future__ import annotations

from collections.abc import Callable

import numpy as np
import pytest
from tracenet import (
    SGD,
    AveragePooling,
    BatchNormalization,
    ConfigurationError,
    Convolution,
    Dense,
    Dropout,
    Initialization,
    MaxPooling,
    Recurrent,
    Sequential,
    Tensor,
    TensorSequence,
    UndefinedReferenceError,
    WindowConfig,
    default_rng,
)


def _column(*values: float) -> Tensor:
    return Tensor.from_array(list(values))


def _grid(rows: int, columns: int) -> Tensor:
    return Tensor.from_array(np.arange(rows * columns, dtype=float).reshape(rows, columns))


def _fd_gradient(loss: Callable[[], float], data: np.ndarray, eps: float = 1e-6) -> np.ndarray:
    """Central finite differences of `loss` with respect to `data`, perturbed in place."""
    gradient = np.zeros_like(data)
    for position in np.ndindex(data.shape):
        original = data[position]
        data[position] = original + eps
        plus = loss()
        data[position] = original - eps
        minus = loss()
        data[position] = original
        gradient[position] = (plus - minus) / (2 * eps)
    return gradient


class TestDense:
    def test_forward(self) -> None:
        layer = Dense(3, 2)
        layer.weight.data[..., 0] = [[1.0, 0.0, -1.0], [2.0, 1.0, 0.0]]
        layer.bias.data[..., 0] = [[0.5], [-0.5]]  # type: ignore[union-attr]
        output = layer(_column(1.0, 2.0, 3.0))
        np.testing.assert_allclose(output.data.ravel(), [-1.5, 3.5])  # type: ignore[union-attr]

    def test_activation(self) -> None:
        layer = Dense(2, 2, activation="relu", bias=False)
        layer.weight.data[..., 0] = [[1.0, 0.0], [0.0, 1.0]]
        output = layer(_column(-1.0, 2.0))
        np.testing.assert_allclose(output.data.ravel(), [0.0, 2.0])  # type: ignore[union-attr]
        assert layer.bias is None
        assert list(layer.get_parameters()) == ["weight"]

    def test_backward(self) -> None:
        layer = Dense(3, 2, rng=default_rng(0))
        x = _column(1.0, 2.0, 3.0)
        seed = _column(1.0, -2.0)
        layer(x)
        input_gradient = layer.backward(seed)

        np.testing.assert_allclose(
            layer.get_gradient(layer.weight).data[..., 0], np.outer([1.0, -2.0], [1.0, 2.0, 3.0])
        )
        np.testing.assert_allclose(layer.get_gradient(layer.bias).data.ravel(), [1.0, -2.0])  # type: ignore[arg-type]
        np.testing.assert_allclose(
            input_gradient.data[..., 0],  # type: ignore[union-attr]
            layer.weight.data[..., 0].T @ np.array([[1.0], [-2.0]]),
        )

    def test_invalid_sizes(self) -> None:
        with pytest.raises(ConfigurationError):
            Dense(0, 2)

    def test_sequence_input(self) -> None:
        layer = Dense(2, 1, sequence=True, rng=default_rng(0))
        outputs = layer(TensorSequence.of(_column(1.0, 0.0), _column(0.0, 1.0)))
        assert isinstance(outputs, TensorSequence)
        assert outputs.indices() == [0, 1]
        gradients = layer.backward(TensorSequence.of(_column(1.0), _column(1.0)))
        assert isinstance(gradients, TensorSequence)
        np.testing.assert_allclose(layer.get_gradient(layer.weight).data.ravel(), [1.0, 1.0])

    def test_training_reduces_loss(self) -> None:
        layer = Dense(1, 1, rng=default_rng(0))
        optimizer = SGD(lr=0.05)
        samples = [(x, 2 * x + 1) for x in (-1.0, -0.5, 0.5, 1.0)]

        def epoch() -> float:
            total = 0.0
            for x, y in samples:
                output = layer(_column(x))
                error = output.item() - y  # type: ignore[union-attr]
                total += error**2
                layer.backward(_column(2 * error))
                layer.optimize(optimizer)
            return total

        first = epoch()
        for _ in range(100):
            last = epoch()
        assert last < 0.1 * first
        assert layer.weight.item() == pytest.approx(2.0, abs=0.05)


class TestWeightNormalizedDense:
    def test_forward_uses_normalized_weight(self) -> None:
        layer = Dense(3, 2, bias=False, weight_normalization=True, rng=default_rng(0))
        raw = layer.weight.data.copy()
        x = _column(1.0, 2.0, 3.0)
        output = layer(x)
        expected = raw[..., 0] / np.linalg.norm(raw) @ x.data[..., 0]
        np.testing.assert_allclose(output.data[..., 0], expected)  # type: ignore[union-attr]

    def test_backward_restores_raw_weight(self) -> None:
        layer = Dense(3, 2, bias=False, weight_normalization=True, rng=default_rng(0))
        raw = layer.weight.data[..., 0].copy()
        x = np.array([[1.0], [2.0], [3.0]])
        seed = np.array([[1.0], [-0.5]])
        layer(Tensor.from_array(x))
        layer.backward(Tensor.from_array(seed))
        np.testing.assert_array_equal(layer.weight.data[..., 0], raw)

        def loss(w: np.ndarray, g: float = 1.0) -> float:
            return float((seed * (g * w / np.linalg.norm(w) @ x)).sum())

        eps = 1e-6
        expected = np.zeros_like(raw)
        for position in np.ndindex(raw.shape):
            plus, minus = raw.copy(), raw.copy()
            plus[position] += eps
            minus[position] -= eps
            expected[position] = (loss(plus) - loss(minus)) / (2 * eps)
        np.testing.assert_allclose(layer.get_gradient(layer.weight).data[..., 0], expected, rtol=1e-5, atol=1e-8)

        g = layer.normalization.g  # type: ignore[union-attr]
        g_expected = (loss(raw, 1.0 + eps) - loss(raw, 1.0 - eps)) / (2 * eps)
        assert layer.get_gradient(g).item() == pytest.approx(g_expected, rel=1e-5)

    def test_parameters_include_scale(self) -> None:
        model = Sequential([Dense(2, 3), Dense(3, 1, weight_normalization=True)])
        assert list(model.get_parameters()) == [
            "layers[0].weight",
            "layers[0].bias",
            "layers[1].weight",
            "layers[1].bias",
            "layers[1].normalization.g",
        ]

    def test_optimize(self) -> None:
        layer = Dense(2, 1, weight_normalization=True, rng=default_rng(3))
        before = layer.weight.data.copy()
        layer(_column(1.0, 1.0))
        layer.backward(_column(1.0))
        layer.optimize(SGD(lr=0.1))
        assert not np.allclose(layer.weight.data, before)
        assert layer.normalization.g.item() != 1.0  # type: ignore[union-attr]


class TestConvolution:
    def test_forward(self) -> None:
        layer = Convolution((5, 5, 1), 3, initialization=Initialization.ONE)
        assert layer.output_shape == (3, 3, 1)
        x = Tensor.from_array(np.arange(1, 26, dtype=float).reshape(5, 5))
        output = layer(x)
        assert output.shape == (3, 3, 1)  # type: ignore[union-attr]
        assert output.get_value(0, 0) == 63.0  # type: ignore[union-attr]

    def test_backward(self) -> None:
        layer = Convolution((4, 4, 2), 2, stride=2, rng=default_rng(0))
        assert layer.output_shape == (2, 2, 2)
        x = Tensor.from_array(default_rng(1).normal(size=(4, 4, 2)))
        layer(x)
        gradient = layer.backward(Tensor(2, 2, 2, initialization=Initialization.ONE))
        assert gradient.shape == (4, 4, 2)  # type: ignore[union-attr]
        assert layer.get_gradient(layer.bias).item() == 8.0
        # every input cell is covered by exactly one window
        np.testing.assert_allclose(layer.get_gradient(layer.filter).data.sum(), x.data.sum())

    def test_invalid_configuration(self) -> None:
        with pytest.raises(ConfigurationError):
            Convolution((5, 5, 1), 7)
        with pytest.raises(ConfigurationError):
            Convolution((5, 5, 1), 3, dilation=3)
        with pytest.raises(ConfigurationError):
            Convolution((5, 5, 1), 3, stride=0)


class TestPooling:
    def test_max_pooling(self) -> None:
        layer = MaxPooling((4, 4, 1), WindowConfig.square(2, stride=2))
        output = layer(_grid(4, 4))
        np.testing.assert_allclose(output.data[..., 0], [[5.0, 7.0], [13.0, 15.0]])  # type: ignore[union-attr]
        gradient = layer.backward(Tensor(2, 2, initialization=Initialization.ONE))
        assert gradient.data.sum() == 4.0  # type: ignore[union-attr]
        assert gradient.get_value(1, 1) == 1.0  # type: ignore[union-attr]

    def test_average_pooling(self) -> None:
        layer = AveragePooling((4, 4, 1), WindowConfig.square(2, stride=2))
        layer(_grid(4, 4))
        gradient = layer.backward(Tensor(2, 2, initialization=Initialization.ONE))
        np.testing.assert_allclose(gradient.data, 0.25)  # type: ignore[union-attr]

    def test_window_must_fit(self) -> None:
        with pytest.raises(ConfigurationError):
            MaxPooling((3, 3, 1), WindowConfig.square(4))


class TestDropout:
    def test_training_and_inference(self) -> None:
        layer = Dropout((4, 4, 1), 0.5, rng=default_rng(0))
        x = Tensor(4, 4, initialization=Initialization.ONE)
        output = layer(x)
        assert set(np.unique(output.data)) <= {0.0, 2.0}  # type: ignore[union-attr]

        assert layer.inference() is layer
        assert not layer.training
        np.testing.assert_array_equal(layer(x).data, x.data)  # type: ignore[union-attr]
        gradient = layer.backward(Tensor(4, 4, initialization=Initialization.ONE))
        np.testing.assert_array_equal(gradient.data, 1.0)  # type: ignore[union-attr]

        layer.train()
        assert layer.training

    def test_invalid_probability(self) -> None:
        with pytest.raises(ConfigurationError):
            Dropout((2, 1, 1), 1.0)


class TestRecurrent:
    def test_forward(self) -> None:
        layer = Recurrent(2, 3, rng=default_rng(0))
        xs = [_column(0.5, -1.0), _column(1.0, 0.2)]
        outputs = layer(TensorSequence.of(*xs))
        assert isinstance(outputs, TensorSequence)
        assert len(outputs) == 2

        w = layer.input_weight.data[..., 0]
        u = layer.recurrent_weight.data[..., 0]
        h = np.zeros((3, 1))
        for x, output in zip(xs, outputs, strict=True):
            h = np.tanh(w @ x.data[..., 0] + u @ h)
            np.testing.assert_allclose(output.data[..., 0], h)

    def test_initial_state(self) -> None:
        layer = Recurrent(1, 1, activation=None)
        layer.input_weight.data[...] = 1.0
        layer.recurrent_weight.data[...] = 0.5
        outputs = layer(TensorSequence.of(_column(1.0), _column(1.0)), initial_state=_column(2.0))
        assert [o.item() for o in outputs] == [2.0, 2.0]  # type: ignore[union-attr]

        gradients = layer.backward(TensorSequence.of(_column(1.0), _column(1.0)))
        assert isinstance(gradients, TensorSequence)
        # h1 = x1 + 0.5 h0, h0 = x0 + 0.5 s
        np.testing.assert_allclose([g.item() for g in gradients], [1.5, 1.0])
        assert layer.initial_state_gradient is not None
        assert layer.initial_state_gradient.item() == pytest.approx(0.75)
        assert list(layer.get_parameters()) == ["input_weight", "recurrent_weight", "bias"]


class TestBatchNormalization:
    def test_normalizes_across_the_batch(self) -> None:
        layer = BatchNormalization((2, 1, 1))
        batch = TensorSequence.of(
            _column(1.0, 10.0), _column(2.0, 20.0), _column(3.0, 40.0), _column(6.0, 50.0)
        )
        outputs = layer(batch)
        stacked = np.stack([o.data for o in outputs])  # type: ignore[union-attr]
        np.testing.assert_allclose(stacked.mean(axis=0), 0.0, atol=1e-12)
        np.testing.assert_allclose(stacked.std(axis=0, ddof=1), 1.0, atol=1e-4)

        ones = TensorSequence({i: _column(1.0, 1.0) for i in range(4)})
        gradients = layer.backward(ones)
        assert len(gradients) == 4  # type: ignore[arg-type]
        np.testing.assert_allclose(layer.get_gradient(layer.beta).data.ravel(), [4.0, 4.0])
        np.testing.assert_allclose(layer.get_gradient(layer.gamma).data, 0.0, atol=1e-12)
        for gradient in gradients:  # type: ignore[union-attr]
            np.testing.assert_allclose(gradient.data, 0.0, atol=1e-9)

    def test_gradients_match_finite_differences(self) -> None:
        rng = default_rng(3)
        layer = BatchNormalization((2, 1, 1))
        layer.gamma.data[...] = rng.normal(size=layer.gamma.shape)
        layer.beta.data[...] = rng.normal(size=layer.beta.shape)
        batch = TensorSequence.from_iterable(Tensor.from_array(rng.normal(size=2)) for _ in range(4))
        seeds = TensorSequence.from_iterable(Tensor.from_array(rng.normal(size=2)) for _ in range(4))

        def loss() -> float:
            outputs = layer(batch)
            pairs = zip(seeds, outputs, strict=True)  # type: ignore[call-overload]
            return float(sum((seed.data * output.data).sum() for seed, output in pairs))

        layer(batch)
        gradients = layer.backward(seeds)
        expected = {
            "x": [gradient.data.copy() for gradient in gradients],  # type: ignore[union-attr]
            "gamma": layer.get_gradient(layer.gamma).data.copy(),
            "beta": layer.get_gradient(layer.beta).data.copy(),
        }

        for tensor, gradient in zip(batch, expected["x"], strict=True):
            np.testing.assert_allclose(gradient, _fd_gradient(loss, tensor.data), atol=1e-6)
        np.testing.assert_allclose(expected["gamma"], _fd_gradient(loss, layer.gamma.data), atol=1e-6)
        np.testing.assert_allclose(expected["beta"], _fd_gradient(loss, layer.beta.data), atol=1e-6)

    def test_invalid_epsilon(self) -> None:
        with pytest.raises(ConfigurationError):
            BatchNormalization((2, 1, 1), epsilon=0.0)


class TestSequential:
    def test_chain(self) -> None:
        model = Sequential(
            [
                Dense(2, 4, activation="tanh", rng=default_rng(0)),
                Dropout((4, 1, 1), 0.5, rng=default_rng(1)),
                Dense(4, 1, rng=default_rng(2)),
            ]
        ).inference()
        assert all(not layer.training for layer in model.layers)
        x = _column(0.3, -0.7)
        output = model(x)
        assert output.shape == (1, 1, 1)  # type: ignore[union-attr]
        gradient = model.backward(_column(1.0))
        assert gradient.shape == (2, 1, 1)  # type: ignore[union-attr]
        assert len(model.parameters) == 4
        for parameter in model.parameters:
            assert model.get_gradient(parameter).shape == parameter.shape

    def test_unknown_parameter(self) -> None:
        model = Sequential([Dense(1, 1)])
        with pytest.raises(UndefinedReferenceError):
            model.get_gradient(Tensor(1))

    def test_empty(self) -> None:
        with pytest.raises(ConfigurationError):
            Sequential([])
