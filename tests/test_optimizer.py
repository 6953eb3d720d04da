"""Tests for optimizers."""

from __future__ import annotations

import numpy as np
import pytest
from tracenet import (
    SGD,
    Adam,
    ConfigurationError,
    DimensionMismatchError,
    ForwardDefinition,
    NAdam,
    NesterovAcceleratedGradient,
    Optimizer,
    Parameter,
    ProcedureFactory,
    Tensor,
)


def _parameter(value: float = 1.0) -> Parameter:
    return Parameter.from_array([value])


def _gradient(value: float = 0.5) -> Tensor:
    return Tensor.from_array([value])


class TestSGD:
    def test_vanilla(self) -> None:
        p = _parameter()
        SGD(lr=0.1).optimize(p, _gradient())
        assert p.item() == pytest.approx(0.95)

    def test_momentum(self) -> None:
        p = _parameter()
        optimizer = SGD(lr=0.1, friction=0.5)
        optimizer.optimize(p, _gradient())
        optimizer.optimize(p, _gradient())
        assert p.item() == pytest.approx(0.875)

    def test_weight_decay(self) -> None:
        p = _parameter()
        SGD(lr=0.1, weight_decay=0.5).optimize(p, _gradient(0.0))
        assert p.item() == pytest.approx(0.95)

    def test_invalid_configuration(self) -> None:
        with pytest.raises(ConfigurationError):
            SGD(lr=0.0)
        with pytest.raises(ConfigurationError):
            SGD(friction=1.5)


def test_nesterov() -> None:
    p = _parameter()
    optimizer = NesterovAcceleratedGradient(lr=0.1, mu=0.9)
    optimizer.optimize(p, _gradient())
    assert p.item() == pytest.approx(0.905)
    optimizer.optimize(p, _gradient())
    # v1 = -0.05, v2 = 0.9 * -0.05 - 0.05 = -0.095
    assert p.item() == pytest.approx(0.905 + 0.9 * 0.05 + 1.9 * -0.095)

    with pytest.raises(ConfigurationError):
        NesterovAcceleratedGradient(mu=1.0)


def test_adam_first_step_moves_by_learning_rate() -> None:
    p = _parameter()
    Adam(lr=1e-3).optimize(p, _gradient())
    assert p.item() == pytest.approx(1.0 - 1e-3, abs=1e-8)


def test_nadam_first_step() -> None:
    p = _parameter()
    NAdam(lr=1e-3).optimize(p, _gradient())
    assert p.item() == pytest.approx(1.0 - 1.9e-3, abs=1e-8)


@pytest.mark.parametrize(
    "optimizer",
    [SGD(lr=0.1), SGD(lr=0.1, friction=0.1), NesterovAcceleratedGradient(lr=0.05), Adam(lr=0.1), NAdam(lr=0.1)],
    ids=lambda o: type(o).__name__,
)
def test_minimizes_quadratic(optimizer: Optimizer) -> None:
    p = Parameter.from_array([3.0, -2.0])
    for _ in range(300):
        optimizer.optimize(p, Tensor.from_array(2 * p.data))
    assert np.all(np.abs(p.data) < 0.1)


def test_state_is_kept_per_tensor() -> None:
    optimizer = Adam(lr=0.1)
    a, b = _parameter(), _parameter()
    optimizer.optimize(a, _gradient())
    optimizer.optimize(a, _gradient())
    optimizer.optimize(b, _gradient())
    assert optimizer.iterations == {a.handle: 2, b.handle: 1}

    optimizer.forget(a)
    assert a.handle not in optimizer.m
    assert a.handle not in optimizer.iterations
    optimizer.reset()
    assert optimizer.m == {}
    assert optimizer.v == {}


def test_shape_mismatch() -> None:
    with pytest.raises(DimensionMismatchError):
        SGD().optimize(Parameter(2, 2), Tensor(2, 1))


def test_step_over_procedure() -> None:
    class Scale(ForwardDefinition):
        def __init__(self) -> None:
            self.weight = Parameter.from_array([2.0])

        def inputs(self, reset_previous: bool) -> dict[str, Tensor]:
            self.x = Tensor(1)
            return {"x": self.x}

        def forward(self) -> Tensor:
            return self.weight * self.x

    definition = Scale()
    procedure = ProcedureFactory().get_procedure(definition)
    procedure.forward({"x": Tensor.from_array([3.0])})
    procedure.backward(Tensor.from_array([1.0]))
    SGD(lr=0.1).step(procedure)
    assert definition.weight.item() == pytest.approx(2.0 - 0.1 * 3.0)
