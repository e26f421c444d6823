"""Tensor operators.

Every function here works in three places: inside a numerical definition it
records a node into the active session, inside a transform it records through
the views it is given, and anywhere else it evaluates eagerly with NumPy.
"""

from __future__ import annotations

import builtins
from typing import Any, Iterable, Optional, Sequence, Tuple

import numpy as np

from .context import current_context
from .evaluator_numpy import apply_kernel
from .exceptions import ShapeOrTypeMismatch
from .graph import encode_index_key
from .session import RecordingSession
from .shape_checker import Operand, check_dtype, infer
from .tensor import TensorHandle, TensorView, is_tensor_like, unwrap_view

# Dispatch -------------------------------------------------------------------


def _is_python_number(value: Any) -> bool:
    return isinstance(value, (bool, int, float, complex)) and not isinstance(value, np.generic)


def _locate_session(operands: Sequence[Any]) -> Optional[RecordingSession]:
    for value in operands:
        value = unwrap_view(value)
        if isinstance(value, TensorHandle):
            return value.session
    context = current_context()
    if context.is_recording:
        return context.session
    return None


def _apply(op: str, operands: Sequence[Any], attrs: Optional[dict] = None) -> Any:
    operands = tuple(operands)
    session = _locate_session(operands)
    if session is not None:
        handle = session.record(op, operands, attrs)
        if builtins.any(isinstance(value, TensorView) for value in operands):
            return TensorView(handle)
        return handle
    return _eager(op, operands, attrs)


def _eager_operand(value: Any) -> Tuple[Any, Operand]:
    if _is_python_number(value):
        return value, Operand((), np.result_type(value).name, is_weak=True, weak_value=value)
    if is_tensor_like(value):
        array = np.asarray(value)
        return array, Operand(tuple(array.shape), check_dtype(array.dtype))
    raise ShapeOrTypeMismatch(f"Expected a tensor or a number, got {type(value).__name__}")


def _eager(op: str, operands: Sequence[Any], attrs: Optional[dict]) -> np.ndarray:
    converted = [_eager_operand(value) for value in operands]
    inferred = infer(op, [meta for _, meta in converted], attrs)
    result = apply_kernel(op, [value for value, _ in converted], inferred.attrs)
    return np.asarray(result).astype(inferred.dtype, copy=False)


# Creation -------------------------------------------------------------------


def tensor(value: Any, dtype: Any = None) -> Any:
    """Build a tensor from nested Python data or an existing array.

    Inside a definition body the value becomes a literal constant of the graph.
    """
    inner = unwrap_view(value)
    if isinstance(inner, TensorHandle):
        return value if dtype is None else as_type(value, dtype)
    try:
        array = np.asarray(value, dtype=dtype)
    except (TypeError, ValueError) as exc:
        raise ShapeOrTypeMismatch(f"Cannot build a tensor from {type(value).__name__}: {exc}") from exc
    check_dtype(array.dtype)
    context = current_context()
    if context.is_recording:
        return context.session.constant(array)
    return array


def full(shape: Any, fill_value: Any, dtype: Any = None) -> Any:
    if isinstance(shape, (int, np.integer)):
        shape = (shape,)
    return tensor(np.full(tuple(shape), fill_value, dtype=dtype))


def zeros(shape: Any, dtype: Any = "float32") -> Any:
    return full(shape, 0, dtype=dtype)


def ones(shape: Any, dtype: Any = "float32") -> Any:
    return full(shape, 1, dtype=dtype)


# Element-wise ---------------------------------------------------------------


def add(a, b):
    return _apply("add", (a, b))


def subtract(a, b):
    return _apply("subtract", (a, b))


def multiply(a, b):
    return _apply("multiply", (a, b))


def divide(a, b):
    return _apply("divide", (a, b))


def power(a, b):
    return _apply("power", (a, b))


def remainder(a, b):
    return _apply("remainder", (a, b))


def maximum(a, b):
    return _apply("maximum", (a, b))


def minimum(a, b):
    return _apply("minimum", (a, b))


def equal(a, b):
    return _apply("equal", (a, b))


def not_equal(a, b):
    return _apply("not_equal", (a, b))


def less(a, b):
    return _apply("less", (a, b))


def less_equal(a, b):
    return _apply("less_equal", (a, b))


def greater(a, b):
    return _apply("greater", (a, b))


def greater_equal(a, b):
    return _apply("greater_equal", (a, b))


def logical_and(a, b):
    return _apply("logical_and", (a, b))


def logical_or(a, b):
    return _apply("logical_or", (a, b))


def logical_not(x):
    return _apply("logical_not", (x,))


def negate(x):
    return _apply("negate", (x,))


def abs(x):
    return _apply("abs", (x,))


def sign(x):
    return _apply("sign", (x,))


def exp(x):
    return _apply("exp", (x,))


def log(x):
    return _apply("log", (x,))


def sqrt(x):
    return _apply("sqrt", (x,))


def tanh(x):
    return _apply("tanh", (x,))


def sigmoid(x):
    return _apply("sigmoid", (x,))


def sin(x):
    return _apply("sin", (x,))


def cos(x):
    return _apply("cos", (x,))


def where(condition, on_true, on_false):
    """Select element-wise; the graph-safe replacement for ``if`` on tensor values."""
    return _apply("where", (condition, on_true, on_false))


# Reductions -----------------------------------------------------------------


def sum(x, axes=None, keepdims: bool = False):
    return _apply("sum", (x,), {"axes": axes, "keepdims": keepdims})


def mean(x, axes=None, keepdims: bool = False):
    return _apply("mean", (x,), {"axes": axes, "keepdims": keepdims})


def reduce_max(x, axes=None, keepdims: bool = False):
    return _apply("reduce_max", (x,), {"axes": axes, "keepdims": keepdims})


def reduce_min(x, axes=None, keepdims: bool = False):
    return _apply("reduce_min", (x,), {"axes": axes, "keepdims": keepdims})


def argmax(x, axis=None, keepdims: bool = False):
    return _apply("argmax", (x,), {"axis": axis, "keepdims": keepdims})


def argmin(x, axis=None, keepdims: bool = False):
    return _apply("argmin", (x,), {"axis": axis, "keepdims": keepdims})


# Shape manipulation ---------------------------------------------------------


def reshape(x, shape):
    return _apply("reshape", (x,), {"shape": shape})


def new_axis(x, axis: int = -1):
    return _apply("new_axis", (x,), {"axis": axis})


def squeeze(x, axes=None):
    return _apply("squeeze", (x,), {"axes": axes})


def transpose(x, axes=None):
    return _apply("transpose", (x,), {"axes": None if axes is None else tuple(axes)})


def broadcast_to(x, shape):
    return _apply("broadcast_to", (x,), {"shape": shape})


def concatenate(tensors: Iterable[Any], axis: int = 0):
    if isinstance(tensors, (TensorHandle, TensorView)) or is_tensor_like(tensors):
        raise ShapeOrTypeMismatch("concatenate expects a sequence of tensors, not a single tensor")
    return _apply("concatenate", tuple(tensors), {"axis": axis})


def dot(a, b):
    return _apply("dot", (a, b))


def as_type(x, dtype):
    return _apply("as_type", (x,), {"dtype": dtype})


def slice_tensor(x, key):
    """Functional form of ``x[key]``; only static keys are accepted."""
    try:
        encoded = encode_index_key(key)
    except TypeError as exc:
        raise ShapeOrTypeMismatch(str(exc)) from exc
    return _apply("getitem", (x,), {"key": encoded})


# Metadata -------------------------------------------------------------------
# Shape and dtype are static while a graph is recorded, so these are plain
# Python values that definitions and transforms may branch on.


def shape(x) -> Tuple[int, ...]:
    x = unwrap_view(x)
    if isinstance(x, TensorHandle):
        return x.shape
    if _is_python_number(x):
        return ()
    if is_tensor_like(x):
        return tuple(int(d) for d in np.shape(x))
    raise ShapeOrTypeMismatch(f"Expected a tensor or a number, got {type(x).__name__}")


def rank(x) -> int:
    return len(shape(x))


def size(x) -> int:
    total = 1
    for dim in shape(x):
        total *= dim
    return total


def dtype(x) -> np.dtype:
    x = unwrap_view(x)
    if isinstance(x, TensorHandle):
        return x.dtype
    if _is_python_number(x):
        return np.result_type(x)
    if is_tensor_like(x):
        return np.asarray(x).dtype
    raise ShapeOrTypeMismatch(f"Expected a tensor or a number, got {type(x).__name__}")
