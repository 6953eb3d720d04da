"""Tests for weight normalization."""

from __future__ import annotations

import numpy as np
import pytest
from tracenet import Parameter, Tensor, UndefinedReferenceError, WeightNormalization


def _weight() -> Parameter:
    return Parameter.from_array([3.0, 4.0])


def test_normalize_and_restore() -> None:
    normalization = WeightNormalization(g=2.0)
    weight = _weight()
    normalization.normalize(weight)
    assert normalization.is_normalized(weight)
    np.testing.assert_allclose(weight.data.ravel(), [1.2, 1.6])

    normalization.restore(weight)
    assert not normalization.is_normalized(weight)
    np.testing.assert_allclose(weight.data.ravel(), [3.0, 4.0])


def test_normalizing_twice_starts_from_the_raw_value() -> None:
    normalization = WeightNormalization()
    weight = _weight()
    normalization.normalize(weight)
    normalization.normalize(weight)
    np.testing.assert_allclose(weight.data.ravel(), [0.6, 0.8])
    normalization.restore(weight)
    np.testing.assert_allclose(weight.data.ravel(), [3.0, 4.0])


def test_restore_unknown_weight() -> None:
    with pytest.raises(UndefinedReferenceError):
        WeightNormalization().restore(_weight())


def test_gradients() -> None:
    normalization = WeightNormalization(g=1.5)
    weight = _weight()
    seed = np.array([1.0, -2.0])
    normalization.normalize(weight)
    gradient = normalization.backward(weight, Tensor.from_array(seed))
    normalization.restore(weight)

    w = np.array([3.0, 4.0])
    norm = np.linalg.norm(w)
    expected = 1.5 / norm * (seed - w * (seed @ w) / norm**2)
    np.testing.assert_allclose(gradient.data.ravel(), expected)

    g_gradient = normalization.get_gradient(normalization.g)
    assert g_gradient.item() == pytest.approx(seed @ w / norm)


def test_one_procedure_per_weight() -> None:
    normalization = WeightNormalization()
    first, second = _weight(), Parameter.from_array([[1.0, 0.0], [0.0, 1.0]])
    normalization.normalize(first)
    normalization.normalize(second)
    assert normalization.procedure_for(first) is not normalization.procedure_for(second)
    assert normalization.procedure_for(first) is normalization.procedure_for(first)
    np.testing.assert_allclose(second.data[..., 0], np.eye(2) / np.sqrt(2))

    normalization.reset()
    assert not normalization.is_normalized(first)


def test_scale_is_the_only_parameter() -> None:
    normalization = WeightNormalization()
    assert normalization.parameters == [normalization.g]
    assert normalization.g.name == "g"
    with pytest.raises(UndefinedReferenceError):
        normalization.get_gradient(_weight())
