"""Optimizers updating tensors in place from their gradients.

Every optimizer implements `optimize(tensor, gradient)`. Per-tensor state
(momentum, moments, step counts) is keyed by the tensor `handle`; call
`forget(tensor)` when a tensor is replaced, or `reset()` to drop all state.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Protocol

from .backend import xp
from .errors import ConfigurationError, DimensionMismatchError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .tensor import Tensor


logger = logging.getLogger(__name__)


class GradientSource(Protocol):
    """Anything exposing parameters and their gradients (procedures, layers)."""

    @property
    def parameters(self) -> Iterable[Tensor]: ...

    def get_gradient(self, tensor: Tensor) -> Tensor: ...


class Optimizer(ABC):
    """Abstract base class for all optimizers.

    **All optimizer states are dicts keyed by tensor handle**.

    Args:
        lr (float): The learning rate. Defaults to 1e-3.

    Raises:
        ConfigurationError: If the learning rate is not positive.
    """

    def __init__(self, *, lr: float = 1e-3) -> None:
        if lr <= 0:
            raise ConfigurationError(f"lr must be positive, got {lr}")
        self.lr = lr
        self.iterations: dict[int, int] = {}

    def _state(self, store: dict[int, xp.ndarray], tensor: Tensor) -> xp.ndarray:
        state = store.get(tensor.handle)
        if state is None:
            state = store[tensor.handle] = xp.zeros(tensor.shape)
        return state

    def _next_iteration(self, tensor: Tensor) -> int:
        self.iterations[tensor.handle] = self.iterations.get(tensor.handle, 0) + 1
        return self.iterations[tensor.handle]

    def optimize(self, tensor: Tensor, gradient: Tensor) -> None:
        """Update `tensor` in place from `gradient`.

        Raises:
            DimensionMismatchError: If the gradient has another shape.
        """
        if gradient.shape != tensor.shape:
            raise DimensionMismatchError(f"{type(self).__name__}.optimize", tensor.shape, gradient.shape)
        tensor.data[...] = self._update(tensor, tensor.data, gradient.data)

    @abstractmethod
    def _update(self, tensor: Tensor, value: xp.ndarray, gradient: xp.ndarray) -> xp.ndarray:
        """The new value of `tensor`.

        Must be implemented by the specific optimizer.
        """

    def step(self, source: GradientSource) -> None:
        """Optimize every parameter of `source` with its current gradient.

        Args:
            source (GradientSource): A procedure or layer after `backward`.
        """
        parameters = list(source.parameters)
        for parameter in parameters:
            self.optimize(parameter, source.get_gradient(parameter))
        logger.debug(f"{type(self).__name__} step over {len(parameters)} parameter(s)")

    def _stores(self) -> list[dict[int, xp.ndarray]]:
        return [value for value in vars(self).values() if isinstance(value, dict)]

    def forget(self, tensor: Tensor) -> None:
        """Drop all state kept for `tensor`."""
        for store in self._stores():
            store.pop(tensor.handle, None)

    def reset(self) -> None:
        """Drop the state of every tensor."""
        for store in self._stores():
            store.clear()


class SGD(Optimizer):
    """Stochastic gradient descent optimizer."""

    def __init__(
        self,
        *,
        lr: float = 1e-3,
        friction: float = 1,
        weight_decay: float = 0,
    ) -> None:
        """The stochastic gradient descent optimizer.

        Note: By default, vanilla SGD is used. However, when setting
        the arguments accordingly, it can become SGD with momentum and also
        apply weight decay.

        **Standard SGD:** `friction=1, weight_decay=0`
        **SGD w/ momentum:** `friction<1, weight_decay=0`
        **SGDW:** `friction<1, weight_decay>0`

        Args:
            lr (float, optional): The learing rate. Defaults to 1e-3.
            friction (float, optional): How much friction to apply on the
                momentum. If friction is 1 (100%), then we do not use momentum,
                as in every step all previous momentum is lost.
                If momentum is desired, set `friction<1`. A typical value is `0.1`,
                so 10% of momentum is lost every step due to friction.
                Defaults to 1.
            weight_decay (float, optional): Decay rate of the weights,
                equals the weight of L2-regularization on the loss.
                Defaults to `0`.
        """
        super().__init__(lr=lr)
        if not 0 <= friction <= 1:
            raise ConfigurationError(f"friction must be in [0, 1], got {friction}")
        self.friction = friction
        self.weight_decay = weight_decay
        self.m: dict[int, xp.ndarray] = {}

    def _update(self, tensor: Tensor, value: xp.ndarray, gradient: xp.ndarray) -> xp.ndarray:
        if self.friction < 1:
            # we lose momentum through "friction", the momentum remaining from the previous step
            # is (1-self.friction)
            m = (1 - self.friction) * self._state(self.m, tensor) + gradient
            self.m[tensor.handle] = m
            gradient = m
        return (1 - self.lr * self.weight_decay) * value - self.lr * gradient


class NesterovAcceleratedGradient(Optimizer):
    """Nesterov accelerated gradient.

    Uses the look-ahead free reformulation (Bengio et al., 2012):

        v_t = mu * v_{t-1} - lr * g_t
        theta_t = theta_{t-1} - mu * v_{t-1} + (1 + mu) * v_t

    Args:
        lr (float): The learning rate. Defaults to 1e-3.
        mu (float): Momentum coefficient in `[0, 1)`. Defaults to 0.9.
    """

    def __init__(self, *, lr: float = 1e-3, mu: float = 0.9) -> None:
        super().__init__(lr=lr)
        if not 0 <= mu < 1:
            raise ConfigurationError(f"mu must be in [0, 1), got {mu}")
        self.mu = mu
        self.v: dict[int, xp.ndarray] = {}

    def _update(self, tensor: Tensor, value: xp.ndarray, gradient: xp.ndarray) -> xp.ndarray:
        v_prev = self._state(self.v, tensor)
        v = self.mu * v_prev - self.lr * gradient
        self.v[tensor.handle] = v
        return value - self.mu * v_prev + (1 + self.mu) * v


class Adam(Optimizer):
    """Adam optimizer."""

    def __init__(
        self,
        *,
        lr: float = 1e-3,
        beta_1: float = 0.9,
        beta_2: float = 0.999,
        epsilon: float = 1e-8,
        weight_decay: float = 0,
    ) -> None:
        """The Adam optimizer.

        Note: By setting `weight_decay` > 0 this becomes `AdamW`.

        Args:
            lr (float, optional): The learning rate, also called `alpha`
                in the paper. Defaults to 1e-3.
            beta_1 (float, optional): Exponential decay rate for
                the momentum. Defaults to 0.9.
            beta_2 (float, optional): Exponential decay rate for
                the noise. Defaults to 0.999.
            epsilon (float, optional): Value added to `v` to improve
                numerical stability and avoid division by zero. Defaults to 1e-8.
            weight_decay (float, optional): Decay rate of the weights,
                equals the weight of L2-regularization on the loss.
                Defaults to `0`, meaning vanilla Adam is used.
        """
        super().__init__(lr=lr)
        self.beta_1 = beta_1
        self.beta_2 = beta_2
        self.epsilon = epsilon
        self.weight_decay = weight_decay
        self.m: dict[int, xp.ndarray] = {}
        self.v: dict[int, xp.ndarray] = {}

    def _update(self, tensor: Tensor, value: xp.ndarray, gradient: xp.ndarray) -> xp.ndarray:
        """Single Adam step.

        Uses the slightly more efficient variant, which
        can be found at the end of section 2 in the paper: https://arxiv.org/pdf/1412.6980
        """
        t = self._next_iteration(tensor)
        m = self.beta_1 * self._state(self.m, tensor) + (1 - self.beta_1) * gradient
        v = self.beta_2 * self._state(self.v, tensor) + (1 - self.beta_2) * gradient**2
        self.m[tensor.handle] = m
        self.v[tensor.handle] = v

        lr_t = self.lr * xp.sqrt(1 - self.beta_2**t) / (1 - self.beta_1**t)
        epsilon_hat = self.epsilon * xp.sqrt(1 - self.beta_2**t)
        return (
            (1 - self.lr * self.weight_decay) * value  # weight decay part
            - lr_t * m / (xp.sqrt(v) + epsilon_hat)  # gradient part
        )


class NAdam(Optimizer):
    """Adam with Nesterov momentum (Dozat, 2016).

    Args:
        lr (float): The learning rate. Defaults to 1e-3.
        beta_1 (float): Decay rate of the first moment. Defaults to 0.9.
        beta_2 (float): Decay rate of the second moment. Defaults to 0.999.
        epsilon (float): Added to the second moment before the square root.
            Defaults to 1e-7.
    """

    def __init__(
        self,
        *,
        lr: float = 1e-3,
        beta_1: float = 0.9,
        beta_2: float = 0.999,
        epsilon: float = 1e-7,
    ) -> None:
        super().__init__(lr=lr)
        self.beta_1 = beta_1
        self.beta_2 = beta_2
        self.epsilon = epsilon
        self.m: dict[int, xp.ndarray] = {}
        self.v: dict[int, xp.ndarray] = {}

    def _update(self, tensor: Tensor, value: xp.ndarray, gradient: xp.ndarray) -> xp.ndarray:
        t = self._next_iteration(tensor)
        m = self.beta_1 * self._state(self.m, tensor) + (1 - self.beta_1) * gradient
        v = self.beta_2 * self._state(self.v, tensor) + (1 - self.beta_2) * gradient**2
        self.m[tensor.handle] = m
        self.v[tensor.handle] = v

        bias_1 = 1 - self.beta_1**t
        m_hat = m / bias_1
        v_hat = v / (1 - self.beta_2**t)
        look_ahead = self.beta_1 * m_hat + (1 - self.beta_1) * gradient / bias_1
        return value - self.lr * look_ahead / xp.sqrt(v_hat + self.epsilon)


__all__ = [
    "SGD",
    "Adam",
    "GradientSource",
    "NAdam",
    "NesterovAcceleratedGradient",
    "Optimizer",
]
