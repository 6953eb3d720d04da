"""Neural network layers built on traced forward definitions.

Each `ProcedureLayer` is its own forward definition: the procedure is traced
lazily on first use and re-traced after switching between training and
inference mode.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import TYPE_CHECKING, Self

from .backend import default_rng, xp
from .config import WindowConfig, validate_probability
from .errors import ConfigurationError, UndefinedReferenceError
from .functions import UnaryFunction, UnaryFunctionType, as_unary_function
from .normalization import WeightNormalization
from .sequence import TensorSequence
from .tensor import Initialization, Parameter, Tensor
from .tracing import ForwardDefinition, ProcedureFactory
from .utils import collect_attrs

if TYPE_CHECKING:
    from .optimizer import Optimizer
    from .procedure import Procedure


logger = logging.getLogger(__name__)

LayerInput = Tensor | TensorSequence
Activation = UnaryFunction | UnaryFunctionType | str | None

_FACTORY = ProcedureFactory()


def _check_sizes(**sizes: int) -> None:
    for name, size in sizes.items():
        if not isinstance(size, int) or size < 1:
            raise ConfigurationError(f'"{name}" must be an integer >= 1, got {size!r}.')


class Layer(ABC):
    """Abstract Base Class (ABC) for all layers.

    Note:
        Parameters and nested layers must be stored in attributes, lists or
        dicts. Storing them in sets is not allowed because sets have no
        stable ordering, making parameter access unpredictable.
    """

    training: bool = True

    @abstractmethod
    def __call__(self, x: LayerInput) -> LayerInput:
        """Forward pass.

        Args:
            x (LayerInput): Input tensor, or sequence of tensors.

        Returns:
            LayerInput: Transformed output.
        """

    @abstractmethod
    def backward(self, output_gradient: LayerInput) -> LayerInput:
        """Backward pass of the last forward pass.

        Args:
            output_gradient (LayerInput): Gradient of the output.

        Returns:
            LayerInput: Gradient of the input.
        """

    @abstractmethod
    def get_gradient(self, parameter: Tensor) -> Tensor:
        """Gradient of `parameter` after `backward`."""

    def get_parameters(self) -> OrderedDict[str, Parameter]:
        """Recursively collect all Parameters from this layer and nested children.

        Returns:
            OrderedDict[str, Parameter]: Parameters keyed by their path,
                e.g. "layers[0].weight", "normalization.g".
        """
        return collect_attrs(self, Parameter, recurse_into=(Layer, WeightNormalization))

    @property
    def parameters(self) -> list[Parameter]:
        return list(self.get_parameters().values())

    def optimize(self, optimizer: Optimizer) -> None:
        """Apply one optimizer step to every parameter."""
        optimizer.step(self)

    def _set_train_state(self, *, is_training: bool) -> None:
        self.training = is_training
        for child in collect_attrs(self, Layer).values():
            child._set_train_state(is_training=is_training)

    def train(self) -> Self:
        """Set the layer (and nested layers) to training mode.

        Returns:
            Self: For chaining.
        """
        self._set_train_state(is_training=True)
        return self

    def inference(self) -> Self:
        """Set the layer (and nested layers) to inference mode.

        Returns:
            Self: For chaining.
        """
        self._set_train_state(is_training=False)
        return self


class ProcedureLayer(Layer, ForwardDefinition):
    """A layer whose forward pass is a traced procedure with input `"x"`.

    Args:
        sequence (bool): Whether the input is a `TensorSequence` processed
            index by index. Defaults to False.
    """

    def __init__(self, *, sequence: bool = False) -> None:
        self.sequence = sequence
        self.training = True
        self._procedure: Procedure | None = None

    @property
    def procedure(self) -> Procedure:
        if self._procedure is None:
            self._procedure = _FACTORY.get_procedure(self)
            logger.debug(f"Traced {type(self).__name__} ({'training' if self.training else 'inference'})")
        return self._procedure

    def _declare_input(self, *shape: int) -> dict[str, LayerInput]:
        self.x = Tensor(*shape, name="x")
        return {"x": TensorSequence.of(self.x) if self.sequence else self.x}

    def _set_train_state(self, *, is_training: bool) -> None:
        if is_training != self.training:
            self._procedure = None
        super()._set_train_state(is_training=is_training)

    def __call__(self, x: LayerInput) -> LayerInput:
        return self.procedure.forward({"x": x})

    def backward(self, output_gradient: LayerInput) -> LayerInput:
        return self.procedure.backward(output_gradient)["x"]

    def get_gradient(self, parameter: Tensor) -> Tensor:
        return self.procedure.get_gradient(parameter)


class Dense(ProcedureLayer):
    """Fully connected layer `activation(W @ x + b)` on column vectors.

    Args:
        input_size (int): Rows of the input column.
        output_size (int): Rows of the output column.
        activation (Activation): Optional unary function. Defaults to None.
        bias (bool): Whether to use a bias. Defaults to True.
        initialization (Initialization): Weight initialization.
            Defaults to Initialization.UNIFORM_XAVIER.
        weight_normalization (bool): Whether to reparametrize the weight as
            `g * W / ||W||_2`. Defaults to False.
        rng (xp.random.Generator | None): Random source for initialization.
        sequence (bool): Whether the input is a sequence. Defaults to False.
    """

    def __init__(  # noqa: PLR0913
        self,
        input_size: int,
        output_size: int,
        *,
        activation: Activation = None,
        bias: bool = True,
        initialization: Initialization = Initialization.UNIFORM_XAVIER,
        weight_normalization: bool = False,
        rng: xp.random.Generator | None = None,
        sequence: bool = False,
    ) -> None:
        super().__init__(sequence=sequence)
        _check_sizes(input_size=input_size, output_size=output_size)
        self.input_size = input_size
        self.output_size = output_size
        self.activation = as_unary_function(activation) if activation is not None else None
        self.weight = Parameter(output_size, input_size, initialization=initialization, rng=rng, name="weight")
        self.bias = Parameter(output_size, 1, name="bias") if bias else None
        self.normalization = WeightNormalization() if weight_normalization else None
        self._weight_gradient: Tensor | None = None

    def inputs(self, reset_previous: bool) -> dict[str, LayerInput]:
        return self._declare_input(self.input_size, 1)

    def forward(self) -> Tensor:
        y = self.weight.dot(self.x)
        if self.bias is not None:
            y = y.add(self.bias)
        if self.activation is not None:
            y = y.apply(self.activation)
        return y

    def __call__(self, x: LayerInput) -> LayerInput:
        if self.normalization is not None:
            self.normalization.normalize(self.weight)
        return super().__call__(x)

    def backward(self, output_gradient: LayerInput) -> LayerInput:
        gradient = super().backward(output_gradient)
        if self.normalization is not None:
            self._weight_gradient = self.normalization.backward(
                self.weight, self.procedure.get_gradient(self.weight)
            )
            self.normalization.restore(self.weight)
        return gradient

    def get_gradient(self, parameter: Tensor) -> Tensor:
        if self.normalization is not None:
            if parameter is self.normalization.g:
                return self.normalization.get_gradient(parameter)
            if parameter is self.weight and self._weight_gradient is not None:
                return self._weight_gradient
        return super().get_gradient(parameter)


class Convolution(ProcedureLayer):
    """Depth-wise convolution with one `filter_size x filter_size x depth` filter and a scalar bias.

    Args:
        input_shape (tuple[int, int, int]): Input rows, columns and depth.
        filter_size (int): Filter rows and columns.
        stride (int): Output down-sampling step. Defaults to 1.
        dilation (int): Gap between sampled input cells. Defaults to 1.
        flip (bool): Convolution (`True`) or cross-correlation (`False`).
            Defaults to True.
        activation (Activation): Optional unary function. Defaults to None.
        initialization (Initialization): Filter initialization.
            Defaults to Initialization.UNIFORM_HE.
        rng (xp.random.Generator | None): Random source for initialization.
        sequence (bool): Whether the input is a sequence. Defaults to False.

    Raises:
        ConfigurationError: If the filter configuration is invalid or the
            dilated filter does not fit the input.
    """

    def __init__(  # noqa: PLR0913
        self,
        input_shape: tuple[int, int, int],
        filter_size: int,
        *,
        stride: int = 1,
        dilation: int = 1,
        flip: bool = True,
        activation: Activation = None,
        initialization: Initialization = Initialization.UNIFORM_HE,
        rng: xp.random.Generator | None = None,
        sequence: bool = False,
    ) -> None:
        super().__init__(sequence=sequence)
        rows, columns, depth = input_shape
        _check_sizes(rows=rows, columns=columns, depth=depth)
        self.window = WindowConfig.square(filter_size, stride=stride, dilation=dilation)
        self.output_shape = (*self.window.output_size(rows, columns), depth)
        self.input_shape = input_shape
        self.flip = flip
        self.activation = as_unary_function(activation) if activation is not None else None
        self.filter = Parameter(
            filter_size, filter_size, depth, initialization=initialization, rng=rng, name="filter"
        )
        self.bias = Parameter(1, 1, 1, name="bias")

    def inputs(self, reset_previous: bool) -> dict[str, LayerInput]:
        return self._declare_input(*self.input_shape)

    def forward(self) -> Tensor:
        kwargs = {"stride": self.window.stride, "dilation": self.window.dilation}
        if self.flip:
            y = self.x.convolve(self.filter, **kwargs)
        else:
            y = self.x.crosscorrelate(self.filter, **kwargs)
        y = y.add(self.bias)
        if self.activation is not None:
            y = y.apply(self.activation)
        return y


class _PoolingLayer(ProcedureLayer):
    def __init__(
        self, input_shape: tuple[int, int, int], window: WindowConfig, *, sequence: bool = False
    ) -> None:
        super().__init__(sequence=sequence)
        rows, columns, depth = input_shape
        _check_sizes(rows=rows, columns=columns, depth=depth)
        self.output_shape = (*window.output_size(rows, columns), depth)
        self.input_shape = input_shape
        self.window = window

    def inputs(self, reset_previous: bool) -> dict[str, LayerInput]:
        return self._declare_input(*self.input_shape)


class MaxPooling(_PoolingLayer):
    """Max pooling; gradients flow only to the winning cell of each window.

    Raises:
        ConfigurationError: If the window does not fit the input.
    """

    def forward(self) -> Tensor:
        return self.x.max_pool(self.window)


class AveragePooling(_PoolingLayer):
    """Average pooling over the active cells of each window.

    Raises:
        ConfigurationError: If the window does not fit the input.
    """

    def forward(self) -> Tensor:
        return self.x.average_pool(self.window)


class Dropout(ProcedureLayer):
    """Inverted dropout in training mode, identity in inference mode.

    Args:
        input_shape (tuple[int, int, int]): Input rows, columns and depth.
        probability (float): Suppression probability in `[0, 1)`.
        rng (xp.random.Generator | None): Random source for the masks.
        sequence (bool): Whether the input is a sequence. Defaults to False.

    Raises:
        ConfigurationError: If `probability` is outside `[0, 1)`.
    """

    def __init__(
        self,
        input_shape: tuple[int, int, int],
        probability: float,
        *,
        rng: xp.random.Generator | None = None,
        sequence: bool = False,
    ) -> None:
        super().__init__(sequence=sequence)
        self.input_shape = input_shape
        self.probability = validate_probability(probability, name="dropout probability")
        self.rng = rng if rng is not None else default_rng()

    def inputs(self, reset_previous: bool) -> dict[str, LayerInput]:
        return self._declare_input(*self.input_shape)

    def forward(self) -> Tensor:
        if not self.training:
            return self.x
        return self.x.dropout(self.probability, rng=self.rng)


class Recurrent(ProcedureLayer):
    """Simple recurrent layer `h_t = activation(W x_t + U h_{t-1} + b)` over a sequence.

    Args:
        input_size (int): Rows of each input column.
        hidden_size (int): Rows of the hidden state.
        activation (Activation): Unary function. Defaults to tanh.
        initialization (Initialization): Weight initialization.
            Defaults to Initialization.UNIFORM_XAVIER.
        rng (xp.random.Generator | None): Random source for initialization.
    """

    def __init__(
        self,
        input_size: int,
        hidden_size: int,
        *,
        activation: Activation = UnaryFunctionType.TANH,
        initialization: Initialization = Initialization.UNIFORM_XAVIER,
        rng: xp.random.Generator | None = None,
    ) -> None:
        super().__init__(sequence=True)
        _check_sizes(input_size=input_size, hidden_size=hidden_size)
        self.input_size = input_size
        self.hidden_size = hidden_size
        self.activation = as_unary_function(activation) if activation is not None else None
        self.input_weight = Parameter(
            hidden_size, input_size, initialization=initialization, rng=rng, name="input_weight"
        )
        self.recurrent_weight = Parameter(
            hidden_size, hidden_size, initialization=initialization, rng=rng, name="recurrent_weight"
        )
        self.bias = Parameter(hidden_size, 1, name="bias")
        self.initial_state_gradient: Tensor | None = None

    def inputs(self, reset_previous: bool) -> dict[str, LayerInput]:
        inputs = self._declare_input(self.input_size, 1)
        self.h_prev = Tensor(self.hidden_size, 1, name="h_prev")
        inputs["h_prev"] = self.h_prev
        return inputs

    def forward(self) -> Tensor:
        h = self.input_weight.dot(self.x).add(self.recurrent_weight.dot(self.h_prev)).add(self.bias)
        if self.activation is not None:
            h = h.apply(self.activation)
        self.h = h
        return h

    def recurrences(self) -> dict[str, Tensor]:
        return {"h_prev": self.h}

    def __call__(self, x: LayerInput, initial_state: Tensor | None = None) -> LayerInput:  # type: ignore[override]
        inputs: dict[str, LayerInput] = {"x": x}
        inputs["h_prev"] = initial_state if initial_state is not None else Tensor(self.hidden_size, 1)
        return self.procedure.forward(inputs)

    def backward(self, output_gradient: LayerInput) -> LayerInput:
        gradients = self.procedure.backward(output_gradient)
        self.initial_state_gradient = gradients["h_prev"]  # type: ignore[assignment]
        return gradients["x"]


class BatchNormalization(ProcedureLayer):
    """Normalizes a batch, given as sequence of samples, cell-wise.

    `y_t = gamma * (x_t - mean) / (std + epsilon) + beta` where mean and
    sample standard deviation are taken across the batch.

    Args:
        input_shape (tuple[int, int, int]): Shape of one sample.
        epsilon (float): Added to the standard deviation. Defaults to 1e-5.
    """

    def __init__(self, input_shape: tuple[int, int, int], *, epsilon: float = 1e-5) -> None:
        super().__init__(sequence=True)
        rows, columns, depth = input_shape
        _check_sizes(rows=rows, columns=columns, depth=depth)
        if epsilon <= 0:
            raise ConfigurationError(f"epsilon must be positive, got {epsilon}")
        self.input_shape = input_shape
        self.epsilon = epsilon
        self.gamma = Parameter(*input_shape, initialization=Initialization.ONE, name="gamma")
        self.beta = Parameter(*input_shape, name="beta")

    def inputs(self, reset_previous: bool) -> dict[str, LayerInput]:
        inputs = self._declare_input(*self.input_shape)
        self.batch = inputs["x"]
        return inputs

    def forward(self) -> Tensor:
        assert isinstance(self.batch, TensorSequence)
        mean = self.batch.mean()
        deviation = self.batch.standard_deviation().add(self.epsilon)
        normalized = self.x.subtract(mean).divide(deviation)
        return normalized.multiply(self.gamma).add(self.beta)


class Sequential(Layer):
    """Chains layers; the output of each layer is the input of the next."""

    def __init__(self, layers: list[Layer]) -> None:
        if not layers:
            raise ConfigurationError("Sequential needs at least one layer.")
        self.layers = layers

    def __call__(self, x: LayerInput) -> LayerInput:
        for layer in self.layers:
            x = layer(x)
        return x

    def backward(self, output_gradient: LayerInput) -> LayerInput:
        for layer in reversed(self.layers):
            output_gradient = layer.backward(output_gradient)
        return output_gradient

    def get_gradient(self, parameter: Tensor) -> Tensor:
        for layer in self.layers:
            if any(parameter is p for p in layer.parameters):
                return layer.get_gradient(parameter)
        raise UndefinedReferenceError(parameter.name or f"tensor {parameter.handle}", 0, "gradient")


__all__ = [
    "AveragePooling",
    "BatchNormalization",
    "Convolution",
    "Dense",
    "Dropout",
    "Layer",
    "MaxPooling",
    "ProcedureLayer",
    "Recurrent",
    "Sequential",
]
