"""Ordered index -> Tensor containers for time-indexed (multi-index) data."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Self

from .backend import xp
from .errors import DimensionMismatchError, TracingError, UndefinedReferenceError
from .tensor import Tensor, masked_data

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping, Sequence


logger = logging.getLogger(__name__)


def stack_sequence(op: str, tensors: Sequence[Tensor]) -> xp.ndarray:
    """Stack the values of equally shaped tensors along a new leading axis.

    Suppressed cells contribute zero.

    Raises:
        DimensionMismatchError: If the sequence is empty or shapes differ.
    """
    if not tensors:
        raise DimensionMismatchError(op, (0,), (1,), "Sequence is empty.")
    shape = tensors[0].shape
    for tensor in tensors[1:]:
        if tensor.shape != shape:
            raise DimensionMismatchError(op, shape, tensor.shape)
    return xp.stack([masked_data(t) for t in tensors])


def sequence_variance(values: xp.ndarray, center: xp.ndarray) -> xp.ndarray:
    """Cell-wise sample variance over the leading axis, zero for fewer than two entries."""
    count = values.shape[0]
    if count < 2:  # noqa: PLR2004
        return xp.zeros(values.shape[1:])
    return ((values - center) ** 2).sum(axis=0) / (count - 1)


class TensorSequence:
    """Tensors keyed by an integer index (e.g. a time step).

    Iteration and `indices()` follow ascending index order. Aggregates
    (`sum`, `mean`, `variance`, `standard_deviation`) work cell-wise across
    the indices and return one tensor with the shape of the entries.

    In a forward definition, a sequence input holds a single placeholder at
    index 0. Aggregates on such a sequence are traced as whole-sequence
    operations; `sequence[0]` yields the per-index placeholder.

    Args:
        tensors (Mapping[int, Tensor] | None): Initial entries.
    """

    def __init__(self, tensors: Mapping[int, Tensor] | None = None) -> None:
        self._tensors: dict[int, Tensor] = dict(sorted((tensors or {}).items()))

    @classmethod
    def of(cls, *tensors: Tensor) -> Self:
        """Sequence holding `tensors` at indices `0..n-1`."""
        return cls(dict(enumerate(tensors)))

    @classmethod
    def from_iterable(cls, tensors: Iterable[Tensor]) -> Self:
        return cls.of(*tensors)

    def __getitem__(self, index: int) -> Tensor:
        try:
            return self._tensors[index]
        except KeyError:
            raise UndefinedReferenceError("sequence", index) from None

    def __setitem__(self, index: int, tensor: Tensor) -> None:
        self._tensors[index] = tensor
        if len(self._tensors) > 1 and index < max(self._tensors):
            self._tensors = dict(sorted(self._tensors.items()))

    def __contains__(self, index: object) -> bool:
        return index in self._tensors

    def __len__(self) -> int:
        return len(self._tensors)

    def __iter__(self) -> Iterator[Tensor]:
        return iter(self._tensors.values())

    def indices(self) -> list[int]:
        return list(self._tensors)

    def items(self) -> list[tuple[int, Tensor]]:
        return list(self._tensors.items())

    def tensors(self) -> list[Tensor]:
        return list(self._tensors.values())

    @property
    def first(self) -> Tensor:
        return self[self.indices()[0]]

    @property
    def last(self) -> Tensor:
        return self[self.indices()[-1]]

    def _traced_representative(self) -> Tensor | None:
        traced = [t for t in self._tensors.values() if t.is_traced]
        if not traced:
            return None
        if len(self._tensors) != 1:
            raise TracingError("A traced sequence must hold exactly one placeholder.")
        return traced[0]

    def _aggregate(self, op: str, values: xp.ndarray, **context: Any) -> Tensor:
        result = Tensor.from_array(values)
        representative = self._traced_representative()
        if representative is not None:
            assert representative._builder is not None
            representative._builder.record(op, (representative,), result, context, as_sequence=True)
        return result

    def _center(self, values: xp.ndarray, mean: Tensor | None) -> xp.ndarray:
        if mean is None:
            return values.mean(axis=0)
        if mean.is_traced:
            raise TracingError("A sequence mean passed to variance must be a constant tensor.")
        return mean.data

    def sum(self) -> Tensor:
        """Cell-wise sum across all indices."""
        values = stack_sequence("sum", self.tensors())
        return self._aggregate("sum", values.sum(axis=0))

    def mean(self) -> Tensor:
        """Cell-wise mean across all indices."""
        values = stack_sequence("mean", self.tensors())
        return self._aggregate("mean", values.mean(axis=0))

    def variance(self, mean: Tensor | None = None) -> Tensor:
        """Cell-wise sample variance (`n - 1` denominator) across all indices.

        Args:
            mean (Tensor | None): Constant cell-wise mean. Defaults to None,
                meaning the mean across the indices.
        """
        values = stack_sequence("variance", self.tensors())
        variance = sequence_variance(values, self._center(values, mean))
        return self._aggregate("variance", variance, mean=mean)

    def standard_deviation(self, mean: Tensor | None = None) -> Tensor:
        """Cell-wise sample standard deviation across all indices.

        Args:
            mean (Tensor | None): Constant cell-wise mean. Defaults to None,
                meaning the mean across the indices.
        """
        values = stack_sequence("standard_deviation", self.tensors())
        variance = sequence_variance(values, self._center(values, mean))
        return self._aggregate("standard_deviation", xp.sqrt(variance), mean=mean)

    def __repr__(self) -> str:
        return f"TensorSequence(indices={self.indices()})"


__all__ = [
    "TensorSequence",
    "sequence_variance",
    "stack_sequence",
]
