"""Replayable computation graphs produced by tracing a forward definition."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .errors import DimensionMismatchError, TensorError, TracingError, UndefinedReferenceError
from .node import Node, NodeKind
from .sequence import TensorSequence
from .tensor import Tensor

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .expressions import Expression


logger = logging.getLogger(__name__)


@dataclass
class _Segment:
    """A run of per-index expressions, or one whole-sequence expression.

    Attributes:
        expressions (list[Expression]): Expressions in ascending ID order.
        sequence (bool): Whether this is a whole-sequence barrier.
        recurrences (dict[str, Node]): Recurrent input name -> source node,
            for sources produced inside this segment.
    """

    expressions: list[Expression]
    sequence: bool = False
    recurrences: dict[str, Node] = field(default_factory=dict)


class Procedure:
    """An ordered chain of expressions between named input nodes and one output node.

    The structure is fixed once traced; every `forward` call only replaces
    values, every `backward` call only replaces gradients. Sequences of any
    length run through the same procedure: a multi-index input simply holds
    more indices.

    Expressions are grouped into segments. A maximal run of per-index
    expressions runs index-major (every expression at index `t` before any
    at index `t + 1`), so a recurrent input at index `t` can be fed with the
    value of its source at the previous index. A whole-sequence expression
    forms its own segment and needs all indices of its argument first.
    Per-index expressions whose result is single-index run once, at the
    first index.

    Args:
        expressions (list[Expression]): Expressions, IDs ascending from 0.
        input_nodes (dict[str, Node]): Named input nodes.
        output_node (Node): The output node.
        input_shapes (dict[str, tuple[int, int, int]] | None): Placeholder
            shapes, used for zero initial states of recurrent inputs.
        recurrences (dict[str, Node] | None): Recurrent input name -> node
            whose value at the previous index feeds that input.

    Raises:
        TracingError: If a recurrent input is consumed outside the segment
            producing its source.
    """

    def __init__(
        self,
        expressions: list[Expression],
        input_nodes: dict[str, Node],
        output_node: Node,
        *,
        input_shapes: dict[str, tuple[int, int, int]] | None = None,
        recurrences: dict[str, Node] | None = None,
    ) -> None:
        self.expressions = expressions
        self.input_nodes = input_nodes
        self.output_node = output_node
        self.input_shapes = input_shapes or {}
        self.recurrences = recurrences or {}
        self.nodes = self._collect_nodes()
        self.segments = self._build_segments()
        self.indices: list[int] = []
        logger.debug(f"Built procedure:\n{self.describe()}")

    def _collect_nodes(self) -> list[Node]:
        nodes: dict[int, Node] = {}
        for node in (*self.input_nodes.values(), self.output_node):
            nodes.setdefault(id(node), node)
        for expression in self.expressions:
            for node in (*expression.arguments, expression.result):
                nodes.setdefault(id(node), node)
        return list(nodes.values())

    def _build_segments(self) -> list[_Segment]:
        segments: list[_Segment] = []
        current: list[Expression] = []
        for expression in self.expressions:
            if expression.as_sequence:
                if current:
                    segments.append(_Segment(current))
                    current = []
                segments.append(_Segment([expression], sequence=True))
            else:
                current.append(expression)
        if current:
            segments.append(_Segment(current))

        for name, source in self.recurrences.items():
            owner = self._segment_producing(segments, source)
            if owner is None or owner.sequence:
                raise TracingError(f'Source of recurrent input "{name}" is not a per-index result.')
            input_node = self.input_nodes[name]
            for segment in segments:
                consumes = any(input_node in e.arguments for e in segment.expressions)
                if consumes and segment is not owner:
                    raise TracingError(
                        f'Recurrent input "{name}" is consumed outside the segment producing its source.'
                    )
            owner.recurrences[name] = source
        return segments

    @staticmethod
    def _segment_producing(segments: list[_Segment], node: Node) -> _Segment | None:
        for segment in segments:
            if any(e.result is node for e in segment.expressions):
                return segment
        return None

    @property
    def parameter_nodes(self) -> list[Node]:
        return [node for node in self.nodes if node.kind is NodeKind.PARAMETER]

    @property
    def parameters(self) -> list[Tensor]:
        """Parameters captured while tracing, in order of first use."""
        return [node.reference for node in self.parameter_nodes if node.reference is not None]

    def _node_of(self, tensor: Tensor) -> Node | None:
        for node in self.nodes:
            if node.reference is tensor:
                return node
        return None

    def reset(self) -> None:
        """Clear all values, gradients and expression caches."""
        for node in self.nodes:
            node.reset()
        for expression in self.expressions:
            expression.reset()
        self.indices = []

    def clear_gradients(self) -> None:
        for node in self.nodes:
            node.clear_gradients()

    def forward(self, inputs: Mapping[str, Tensor | TensorSequence]) -> Tensor | TensorSequence:
        """Evaluate the procedure.

        Args:
            inputs (Mapping[str, Tensor | TensorSequence]): Value per input
                name. Multi-index inputs take a `TensorSequence` (a single
                tensor is treated as a one-element sequence). Recurrent inputs
                take their initial state and default to zeros.

        Raises:
            UndefinedReferenceError: If a non-recurrent input is missing.
            DimensionMismatchError: If operand shapes are incompatible, or
                multi-index inputs disagree on their indices.

        Returns:
            Tensor | TensorSequence: The output, a sequence if the output
                node is multi-index.
        """
        unknown = set(inputs) - set(self.input_nodes)
        if unknown:
            raise ValueError(f"Unknown procedure inputs: {sorted(unknown)}")

        self.reset()
        self.indices = self._bind_inputs(inputs)
        logger.debug(f"Forward run over {len(self.indices)} index(es)")

        for segment in self.segments:
            if segment.sequence:
                segment.expressions[0].calculate_expression()
            else:
                self._forward_segment(segment)
        return self._output()

    def _bind_inputs(self, inputs: Mapping[str, Tensor | TensorSequence]) -> list[int]:
        indices: list[int] | None = None
        for name, node in self.input_nodes.items():
            if name in self.recurrences:
                continue
            value = inputs.get(name)
            if value is None:
                raise UndefinedReferenceError(name, 0, "input")
            if not node.multi_index:
                if isinstance(value, TensorSequence):
                    raise TypeError(f'Input "{name}" takes a single tensor, got a sequence.')
                node.set_tensor(value)
                continue
            sequence = value if isinstance(value, TensorSequence) else TensorSequence.of(value)
            if indices is None:
                indices = sequence.indices()
            elif sequence.indices() != indices:
                raise DimensionMismatchError(
                    "forward", (len(indices),), (len(sequence),), f'Input "{name}" has other indices.'
                )
            for index, tensor in sequence.items():
                node.set_tensor(tensor, index)
        indices = indices or [0]

        for name in self.recurrences:
            initial = inputs.get(name)
            if initial is None:
                logger.warning(f'No initial value for recurrent input "{name}", using zeros')
                initial = Tensor(*self.input_shapes[name])
            elif isinstance(initial, TensorSequence):
                raise TypeError(f'Recurrent input "{name}" takes its initial state as a single tensor.')
            self.input_nodes[name].set_tensor(initial, indices[0])
        return indices

    def _forward_segment(self, segment: _Segment) -> None:
        first = self.indices[0]
        for position, index in enumerate(self.indices):
            if position > 0:
                previous = self.indices[position - 1]
                for name, source in segment.recurrences.items():
                    self.input_nodes[name].set_tensor(source.get_tensor(previous), index)
            for expression in segment.expressions:
                if expression.result.multi_index or index == first:
                    expression.calculate_expression(index)

    def _output(self) -> Tensor | TensorSequence:
        if self.output_node.multi_index:
            return TensorSequence({i: self.output_node.get_tensor(i) for i in self.indices})
        return self.output_node.get_tensor()

    def backward(self, output_gradient: Tensor | TensorSequence) -> dict[str, Tensor | TensorSequence]:
        """Propagate `output_gradient` back to every input and parameter.

        Args:
            output_gradient (Tensor | TensorSequence): Gradient of the output,
                a sequence with the same indices for a multi-index output.

        Raises:
            TracingError: If no forward run preceded.
            DimensionMismatchError: If the seed does not match the output.
            UndefinedReferenceError: If a gradient is read before it was
                written. On any error all gradients are cleared.

        Returns:
            dict[str, Tensor | TensorSequence]: Gradient per input name. A
                recurrent input maps to the gradient of its initial state.
                Inputs that received nothing map to zeros.
        """
        if not self.indices:
            raise TracingError("backward needs a preceding forward run.")
        self.clear_gradients()
        try:
            self._seed(output_gradient)
            for segment in reversed(self.segments):
                if segment.sequence:
                    segment.expressions[0].calculate_gradient()
                else:
                    self._backward_segment(segment)
        except TensorError:
            self.clear_gradients()
            raise
        return self._input_gradients()

    def _seed(self, output_gradient: Tensor | TensorSequence) -> None:
        node = self.output_node
        if node.multi_index:
            if not isinstance(output_gradient, TensorSequence):
                output_gradient = TensorSequence.of(output_gradient)
            if output_gradient.indices() != self.indices:
                raise DimensionMismatchError(
                    "backward", (len(self.indices),), (len(output_gradient),), "Seed indices differ."
                )
            seeds = output_gradient.items()
        else:
            if isinstance(output_gradient, TensorSequence):
                raise TypeError("A single-index output takes a single gradient tensor.")
            seeds = [(0, output_gradient)]
        for index, gradient in seeds:
            expected = node.get_tensor(index).shape
            if gradient.shape != expected:
                raise DimensionMismatchError("backward", expected, gradient.shape)
            node.update_gradient(Tensor.from_array(gradient.data), index)

    def _backward_segment(self, segment: _Segment) -> None:
        first = self.indices[0]
        for position in reversed(range(len(self.indices))):
            index = self.indices[position]
            for source in segment.recurrences.values():
                if not source.has_gradient(index):
                    source.update_gradient(Tensor(*source.get_tensor(index).shape), index)
            for expression in reversed(segment.expressions):
                if expression.result.multi_index or index == first:
                    expression.calculate_gradient(index)
            if position > 0:
                previous = self.indices[position - 1]
                for name, source in segment.recurrences.items():
                    input_node = self.input_nodes[name]
                    if input_node.has_gradient(index):
                        source.update_gradient(input_node.get_gradient(index), previous)

    def _gradient_or_zeros(self, node: Node, index: int) -> Tensor:
        if node.has_gradient(index):
            return node.get_gradient(index)
        return Tensor(*node.get_tensor(index).shape)

    def _input_gradients(self) -> dict[str, Tensor | TensorSequence]:
        gradients: dict[str, Tensor | TensorSequence] = {}
        for name, node in self.input_nodes.items():
            if name in self.recurrences:
                gradients[name] = self._gradient_or_zeros(node, self.indices[0])
            elif node.multi_index:
                gradients[name] = TensorSequence(
                    {i: self._gradient_or_zeros(node, i) for i in self.indices}
                )
            else:
                gradients[name] = self._gradient_or_zeros(node, 0)
        return gradients

    def get_gradient(self, tensor: Tensor) -> Tensor:
        """Gradient of a captured parameter or constant after `backward`.

        Raises:
            UndefinedReferenceError: If `tensor` is not part of this procedure.

        Returns:
            Tensor: The gradient, zeros if none reached the tensor.
        """
        node = self._node_of(tensor)
        if node is None:
            raise UndefinedReferenceError(tensor.name or f"tensor {tensor.handle}", 0, "gradient")
        return self._gradient_or_zeros(node, 0)

    def describe(self) -> str:
        """One line per expression in execution order."""
        inputs = ", ".join(
            f"{name}{' [recurrent]' if name in self.recurrences else ''}" for name in self.input_nodes
        )
        lines = [f"inputs: {inputs}", *(e.describe() for e in self.expressions)]
        lines.append(f"output: {self.output_node.name}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"Procedure(inputs={list(self.input_nodes)}, expressions={len(self.expressions)}, "
            f"output={self.output_node.name!r})"
        )


__all__ = [
    "Procedure",
]
