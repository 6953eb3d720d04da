"""tracenet: trace-based automatic differentiation on 3D tensors.

Forward definitions written against the `Tensor` API are traced once into
replayable procedures, which compute values and gradients for any input,
including sequences with recurrent state.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("py-tracenet")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"  # Fallback for uninstalled package
from .backend import (
    DEFAULT_DTYPE,
    default_rng,
    xp,
)
from .config import (
    WindowConfig,
    validate_probability,
)
from .errors import (
    ConfigurationError,
    DimensionMismatchError,
    TensorError,
    TracingError,
    UndefinedReferenceError,
)
from .expressions import (
    Expression,
    ExpressionSpec,
    OpInputs,
    OpType,
    create_expression,
    get_expression_spec,
    register_expression,
    registered_expressions,
)
from .functions import (
    UnaryFunction,
    UnaryFunctionType,
    as_unary_function,
)
from .layers import (
    AveragePooling,
    BatchNormalization,
    Convolution,
    Dense,
    Dropout,
    Layer,
    MaxPooling,
    ProcedureLayer,
    Recurrent,
    Sequential,
)
from .mask import Mask
from .node import (
    Node,
    NodeKind,
)
from .normalization import WeightNormalization
from .optimizer import (
    SGD,
    Adam,
    NAdam,
    NesterovAcceleratedGradient,
    Optimizer,
)
from .procedure import Procedure
from .sequence import TensorSequence
from .tensor import (
    Initialization,
    Parameter,
    Tensor,
)
from .tracing import (
    ForwardDefinition,
    ProcedureFactory,
    TraceBuilder,
)

__all__ = [
    "DEFAULT_DTYPE",
    "SGD",
    "Adam",
    "AveragePooling",
    "BatchNormalization",
    "ConfigurationError",
    "Convolution",
    "Dense",
    "DimensionMismatchError",
    "Dropout",
    "Expression",
    "ExpressionSpec",
    "ForwardDefinition",
    "Initialization",
    "Layer",
    "Mask",
    "MaxPooling",
    "NAdam",
    "NesterovAcceleratedGradient",
    "Node",
    "NodeKind",
    "OpInputs",
    "OpType",
    "Optimizer",
    "Parameter",
    "Procedure",
    "ProcedureFactory",
    "ProcedureLayer",
    "Recurrent",
    "Sequential",
    "Tensor",
    "TensorError",
    "TensorSequence",
    "TraceBuilder",
    "TracingError",
    "UnaryFunction",
    "UnaryFunctionType",
    "UndefinedReferenceError",
    "WeightNormalization",
    "WindowConfig",
    "__version__",
    "as_unary_function",
    "create_expression",
    "default_rng",
    "get_expression_spec",
    "register_expression",
    "registered_expressions",
    "validate_probability",
    "xp",
]
