"""Turning forward definitions into procedures by tracing them once."""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from .errors import TracingError
from .expressions import Expression, create_expression
from .node import Node, NodeKind
from .procedure import Procedure
from .sequence import TensorSequence
from .tensor import Parameter, Tensor
from .utils import collect_attrs

if TYPE_CHECKING:
    from collections.abc import Mapping


logger = logging.getLogger(__name__)


class ForwardDefinition(ABC):
    """A computation written against the `Tensor` API, traced into a `Procedure`.

    `inputs` creates the placeholders (typically storing them as attributes),
    `forward` computes the output from them using only tensor operations, and
    the optional `recurrences` links recurrent inputs to the tensor whose
    previous-index value feeds them.

    Example:
        >>> class Affine(ForwardDefinition):
        ...     def __init__(self) -> None:
        ...         self.weight = Parameter(3, 4, initialization=Initialization.NORMAL_HE)
        ...
        ...     def inputs(self, reset_previous: bool) -> dict[str, Tensor]:
        ...         self.x = Tensor(4, 1)
        ...         return {"x": self.x}
        ...
        ...     def forward(self) -> Tensor:
        ...         return self.weight @ self.x
    """

    @abstractmethod
    def inputs(self, reset_previous: bool) -> Mapping[str, Tensor | TensorSequence]:
        """Create and return the named placeholders.

        Args:
            reset_previous (bool): Whether placeholders of an earlier trace
                should be discarded.

        Returns:
            Mapping[str, Tensor | TensorSequence]: Placeholder per input name.
                A `TensorSequence` holding one tensor declares a multi-index
                input.
        """

    @abstractmethod
    def forward(self) -> Tensor:
        """Compute the output from the placeholders."""

    def recurrences(self) -> Mapping[str, Tensor]:
        """Recurrent input name -> traced tensor feeding it at the next index."""
        return {}


class TraceBuilder:
    """Records tensor operations as expressions while a definition is traced.

    The builder is attached to every placeholder, to every parameter of the
    definition and, through `record`, to every result computed from them; an
    operation records itself when one of its operands carries a builder.
    Other captured tensors and Python numbers become constant leaf nodes the
    first time they are used. `close()` detaches all traced tensors again.
    """

    def __init__(self) -> None:
        self.input_nodes: dict[str, Node] = {}
        self.input_shapes: dict[str, tuple[int, int, int]] = {}
        self.expressions: list[Expression] = []
        self._nodes: dict[int, Node] = {}
        self._traced: list[Tensor] = []
        self._leaf_names = itertools.count()
        self.closed = False

    def _attach(self, tensor: Tensor, node: Node) -> None:
        tensor._builder = self
        self._nodes[tensor.handle] = node
        self._traced.append(tensor)

    def declare_input(self, name: str, placeholder: Tensor | TensorSequence) -> Node:
        """Bind a placeholder to a new input node.

        Raises:
            TracingError: If the placeholder is already traced, or a
                sequence placeholder does not hold exactly one tensor.
        """
        multi_index = isinstance(placeholder, TensorSequence)
        if isinstance(placeholder, TensorSequence):
            if len(placeholder) != 1:
                raise TracingError(f'Sequence input "{name}" must hold exactly one placeholder.')
            tensor = placeholder.first
        else:
            tensor = placeholder
        if tensor.is_traced:
            raise TracingError(f'Placeholder of input "{name}" is already traced.')
        node = Node(name, NodeKind.INPUT, multi_index=multi_index)
        self._attach(tensor, node)
        self.input_nodes[name] = node
        self.input_shapes[name] = tensor.shape
        return node

    def declare_parameter(self, parameter: Parameter, name: str | None = None) -> Node:
        """Bind a parameter to a parameter node so operations on it are recorded.

        Raises:
            TracingError: If the parameter belongs to another open trace.
        """
        node = self._nodes.get(parameter.handle)
        if node is not None:
            return node
        if parameter.is_traced:
            raise TracingError(f"{parameter!r} belongs to another trace.")
        node = Node(parameter.name or name or "parameter", NodeKind.PARAMETER, tensor=parameter)
        self._attach(parameter, node)
        return node

    def node_of(self, tensor: Tensor) -> Node | None:
        """The node of a traced or already captured tensor."""
        return self._nodes.get(tensor.handle)

    def _leaf(self, tensor: Tensor) -> Node:
        node = self._nodes.get(tensor.handle)
        if node is not None:
            return node
        if tensor.is_traced:
            raise TracingError(f"{tensor!r} belongs to another trace.")
        kind = NodeKind.PARAMETER if isinstance(tensor, Parameter) else NodeKind.CONSTANT
        name = tensor.name or f"{kind.value}_{next(self._leaf_names)}"
        node = Node(name, kind, tensor=tensor)
        self._nodes[tensor.handle] = node
        return node

    def record(
        self,
        op: str,
        operands: tuple[Tensor, ...],
        result: Tensor,
        context: dict[str, Any],
        *,
        as_sequence: bool = False,
    ) -> Expression:
        """Append the expression for one operation and attach the builder to its result.

        Args:
            op (str): Registered operation name.
            operands (tuple[Tensor, ...]): Tensor operands.
            result (Tensor): Placeholder result computed during tracing.
            context (dict[str, Any]): Non-tensor arguments of the operation.
            as_sequence (bool): Whether the whole-sequence rule is recorded.

        Raises:
            TracingError: If the builder is closed or the operation is unknown.

        Returns:
            Expression: The new expression.
        """
        if self.closed:
            raise TracingError(f'Cannot record "{op}" on a closed trace.')
        arguments = tuple(self._leaf(t) for t in operands)
        multi_index = not as_sequence and any(node.multi_index for node in arguments)
        expression_id = len(self.expressions)
        node = Node(
            result.name or f"{op}_{expression_id}",
            NodeKind.INTERMEDIATE,
            multi_index=multi_index,
        )
        expression = create_expression(
            op, expression_id, arguments, node, dict(context), as_sequence=as_sequence
        )
        self.expressions.append(expression)
        self._attach(result, node)
        logger.debug(f"Recorded {expression.describe()}")
        return expression

    def propagate_multi_index(self) -> None:
        """Mark every per-index result depending on a multi-index node as multi-index."""
        for expression in self.expressions:
            if not expression.as_sequence and any(n.multi_index for n in expression.arguments):
                expression.result.multi_index = True

    def close(self) -> None:
        """Detach every traced tensor; later operations on them are not recorded."""
        for tensor in self._traced:
            tensor._builder = None
        self._traced.clear()
        self.closed = True


def prune(expressions: list[Expression], targets: list[Node]) -> list[Expression]:
    """Keep the expressions some target depends on and renumber them from 0.

    Args:
        expressions (list[Expression]): Expressions in ascending ID order.
        targets (list[Node]): Nodes that must stay computable.

    Returns:
        list[Expression]: The kept expressions, IDs `0..n-1` in the same order.
    """
    needed = {id(node) for node in targets}
    kept: list[Expression] = []
    for expression in reversed(expressions):
        if id(expression.result) in needed:
            kept.append(expression)
            needed.update(id(node) for node in expression.arguments)
    kept.reverse()
    for expression_id, expression in enumerate(kept):
        expression.expression_id = expression_id
    return kept


class ProcedureFactory:
    """Traces forward definitions into procedures.

    Every call traces anew; callers wanting one procedure per weight tensor
    cache the results keyed by tensor handle.
    """

    def get_procedure(self, definition: ForwardDefinition) -> Procedure:
        """Trace `definition` once and return the resulting procedure.

        Args:
            definition (ForwardDefinition): The definition to trace.

        Raises:
            TracingError: If the output is not a traced result or input, or a
                recurrence names an unknown input or a source that is not
                a per-index result depending on a multi-index node.

        Returns:
            Procedure: The procedure.
        """
        builder = TraceBuilder()
        try:
            for name, placeholder in definition.inputs(reset_previous=True).items():
                builder.declare_input(name, placeholder)
            for path, parameter in collect_attrs(definition, Parameter, recurse_into=ForwardDefinition).items():
                builder.declare_parameter(parameter, path)
            output = definition.forward()
            output_node = builder.node_of(output) if isinstance(output, Tensor) else None
            if output_node is None or output_node.kind is NodeKind.PARAMETER:
                raise TracingError("The output of a forward definition must be a traced result or input.")
            recurrences = self._recurrences(builder, definition)
        finally:
            builder.close()
        assert output_node is not None

        expressions = prune(builder.expressions, [output_node, *recurrences.values()])
        logger.debug(
            f"Traced {type(definition).__name__}: {len(builder.expressions)} expressions, "
            f"{len(builder.expressions) - len(expressions)} pruned"
        )
        return Procedure(
            expressions,
            builder.input_nodes,
            output_node,
            input_shapes=builder.input_shapes,
            recurrences=recurrences,
        )

    @staticmethod
    def _recurrences(builder: TraceBuilder, definition: ForwardDefinition) -> dict[str, Node]:
        links: dict[str, Node] = {}
        for name, source in definition.recurrences().items():
            input_node = builder.input_nodes.get(name)
            if input_node is None:
                raise TracingError(f'Recurrence names unknown input "{name}".')
            source_node = builder.node_of(source)
            if source_node is None or source_node.kind is not NodeKind.INTERMEDIATE:
                raise TracingError(f'Source of recurrent input "{name}" is not a traced result.')
            input_node.multi_index = True
            links[name] = source_node
        if links:
            builder.propagate_multi_index()
            for name, source_node in links.items():
                if not source_node.multi_index:
                    raise TracingError(f'Source of recurrent input "{name}" is not multi-index.')
        return links


__all__ = [
    "ForwardDefinition",
    "ProcedureFactory",
    "TraceBuilder",
    "prune",
]
