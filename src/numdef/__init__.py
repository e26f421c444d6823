from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _load_version

from .core.cache import CacheInfo, CacheManager
from .core.classifier import Classification
from .core.config import (
    CompilerConfig,
    default_options,
    register_compiler,
    registered_compilers,
    reset_default_options,
    set_default_options,
)
from .core.definition import Definition, DefinitionMode, defn, deftransform, deftransformp
from .core.dispatch import CompiledFunction, JitFunction, compile, debug_expr, jit
from .core.exceptions import (
    BackendError,
    CacheError,
    CompilationError,
    NumdefError,
    RestrictedSyntaxError,
    SessionError,
    ShapeOrTypeMismatch,
)
from .core.graph import Graph, Node
from .core.ops import (
    abs,
    add,
    argmax,
    argmin,
    as_type,
    broadcast_to,
    concatenate,
    cos,
    divide,
    dot,
    dtype,
    equal,
    exp,
    full,
    greater,
    greater_equal,
    less,
    less_equal,
    log,
    logical_and,
    logical_not,
    logical_or,
    maximum,
    mean,
    minimum,
    multiply,
    negate,
    new_axis,
    not_equal,
    ones,
    power,
    rank,
    reduce_max,
    reduce_min,
    remainder,
    reshape,
    shape,
    sigmoid,
    sign,
    sin,
    size,
    slice_tensor,
    sqrt,
    squeeze,
    subtract,
    sum,
    tanh,
    tensor,
    transpose,
    where,
    zeros,
)
from .core.tensor import TensorHandle, TensorTemplate, TensorView, template

try:
    __version__ = _load_version("numdef")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    # Declarations
    "defn",
    "deftransform",
    "deftransformp",
    "Definition",
    "DefinitionMode",
    "Classification",
    # Compilation
    "jit",
    "compile",
    "debug_expr",
    "JitFunction",
    "CompiledFunction",
    "template",
    "TensorTemplate",
    "TensorHandle",
    "TensorView",
    "Graph",
    "Node",
    "CacheInfo",
    "CacheManager",
    # Configuration
    "CompilerConfig",
    "default_options",
    "set_default_options",
    "reset_default_options",
    "register_compiler",
    "registered_compilers",
    # Errors
    "NumdefError",
    "RestrictedSyntaxError",
    "ShapeOrTypeMismatch",
    "SessionError",
    "BackendError",
    "CompilationError",
    "CacheError",
    # Operators
    "tensor",
    "full",
    "zeros",
    "ones",
    "add",
    "subtract",
    "multiply",
    "divide",
    "power",
    "remainder",
    "maximum",
    "minimum",
    "equal",
    "not_equal",
    "less",
    "less_equal",
    "greater",
    "greater_equal",
    "logical_and",
    "logical_or",
    "logical_not",
    "negate",
    "abs",
    "sign",
    "exp",
    "log",
    "sqrt",
    "tanh",
    "sigmoid",
    "sin",
    "cos",
    "where",
    "sum",
    "mean",
    "reduce_max",
    "reduce_min",
    "argmax",
    "argmin",
    "reshape",
    "new_axis",
    "squeeze",
    "transpose",
    "broadcast_to",
    "concatenate",
    "dot",
    "as_type",
    "slice_tensor",
    "shape",
    "rank",
    "size",
    "dtype",
    "__version__",
]
