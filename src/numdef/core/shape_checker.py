from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .evaluator_numpy import apply_kernel
from .exceptions import ShapeOrTypeMismatch
from .graph import decode_index_key

BINARY_ARITHMETIC = {
    "add",
    "subtract",
    "multiply",
    "divide",
    "power",
    "remainder",
    "maximum",
    "minimum",
}
COMPARISONS = {"equal", "not_equal", "less", "less_equal", "greater", "greater_equal"}
LOGICAL = {"logical_and", "logical_or", "logical_not"}
UNARY = {"negate", "abs", "sign", "exp", "log", "sqrt", "tanh", "sigmoid", "sin", "cos"}
REDUCTIONS = {"sum", "mean", "reduce_max", "reduce_min"}
ARG_REDUCTIONS = {"argmax", "argmin"}

ARITY = {
    **{op: 2 for op in BINARY_ARITHMETIC | COMPARISONS | {"logical_and", "logical_or", "dot"}},
    **{op: 1 for op in UNARY | REDUCTIONS | ARG_REDUCTIONS},
    "logical_not": 1,
    "where": 3,
    "reshape": 1,
    "new_axis": 1,
    "squeeze": 1,
    "transpose": 1,
    "broadcast_to": 1,
    "as_type": 1,
    "getitem": 1,
}

SUPPORTED_KINDS = {"b", "i", "u", "f", "c"}


@dataclass(frozen=True)
class Operand:
    shape: Tuple[int, ...]
    dtype: str
    is_weak: bool = False
    weak_value: Any = None

    @property
    def ndim(self) -> int:
        return len(self.shape)

    def probe(self, shape: Optional[Tuple[int, ...]] = None) -> Any:
        if self.is_weak:
            return self.weak_value
        return np.ones(shape if shape is not None else (), dtype=self.dtype)


@dataclass
class Inferred:
    shape: Tuple[int, ...]
    dtype: str
    compute_dtype: Optional[str] = None
    attrs: Dict[str, Any] = field(default_factory=dict)


def check_dtype(dtype: Any) -> str:
    try:
        resolved = np.dtype(dtype)
    except TypeError as exc:
        raise ShapeOrTypeMismatch(f"Unknown dtype {dtype!r}") from exc
    if resolved.kind not in SUPPORTED_KINDS:
        raise ShapeOrTypeMismatch(
            f"Unsupported dtype '{resolved}'; tensors hold booleans or numbers only"
        )
    return resolved.name


def infer(op: str, operands: Sequence[Operand], attrs: Optional[Dict[str, Any]] = None) -> Inferred:
    attrs = dict(attrs or {})
    expected = ARITY.get(op)
    if op == "concatenate":
        if not operands:
            raise ShapeOrTypeMismatch("concatenate needs at least one tensor")
    elif expected is None:
        raise ShapeOrTypeMismatch(f"Unknown operator '{op}'")
    elif len(operands) != expected:
        raise ShapeOrTypeMismatch(f"{op} takes {expected} operand(s), got {len(operands)}")

    if op in BINARY_ARITHMETIC or op in UNARY:
        shape = _broadcast(op, operands)
        dtype = _probe_dtype(op, operands, attrs)
        return Inferred(shape, dtype, compute_dtype=dtype)
    if op in COMPARISONS:
        shape = _broadcast(op, operands)
        dtype = _probe_dtype(op, operands, attrs)
        return Inferred(shape, dtype, compute_dtype=_common_dtype(op, operands))
    if op in LOGICAL:
        shape = _broadcast(op, operands)
        return Inferred(shape, "bool", compute_dtype="bool")
    if op == "where":
        shape = _broadcast(op, operands)
        dtype = _probe_dtype(op, operands, attrs)
        return Inferred(shape, dtype, compute_dtype=dtype)
    if op in REDUCTIONS:
        return _infer_reduction(op, operands[0], attrs)
    if op in ARG_REDUCTIONS:
        return _infer_arg_reduction(op, operands[0], attrs)
    if op == "reshape":
        return _infer_reshape(operands[0], attrs)
    if op == "new_axis":
        return _infer_new_axis(operands[0], attrs)
    if op == "squeeze":
        return _infer_squeeze(operands[0], attrs)
    if op == "transpose":
        return _infer_transpose(operands[0], attrs)
    if op == "broadcast_to":
        return _infer_broadcast_to(operands[0], attrs)
    if op == "concatenate":
        return _infer_concatenate(operands, attrs)
    if op == "dot":
        return _infer_dot(operands[0], operands[1])
    if op == "as_type":
        dtype = check_dtype(attrs.get("dtype"))
        return Inferred(operands[0].shape, dtype, attrs={"dtype": dtype})
    if op == "getitem":
        return _infer_getitem(operands[0], attrs)
    raise ShapeOrTypeMismatch(f"Unknown operator '{op}'")


# Helpers ----------------------------------------------------------------------


def _describe(operands: Sequence[Operand]) -> str:
    return ", ".join(f"{o.dtype}{list(o.shape)}" for o in operands)


def _broadcast(op: str, operands: Sequence[Operand]) -> Tuple[int, ...]:
    try:
        return tuple(int(d) for d in np.broadcast_shapes(*(o.shape for o in operands)))
    except ValueError as exc:
        raise ShapeOrTypeMismatch(
            f"{op}: operands with shapes {[list(o.shape) for o in operands]} cannot be broadcast together"
        ) from exc


def _probe_dtype(op: str, operands: Sequence[Operand], attrs: Dict[str, Any]) -> str:
    try:
        with np.errstate(all="ignore"):
            result = apply_kernel(op, [o.probe() for o in operands], attrs)
    except (TypeError, ValueError) as exc:
        raise ShapeOrTypeMismatch(f"{op}: unsupported operand types ({_describe(operands)})") from exc
    return np.asarray(result).dtype.name


def _common_dtype(op: str, operands: Sequence[Operand]) -> str:
    try:
        return np.result_type(*(o.probe() for o in operands)).name
    except TypeError as exc:
        raise ShapeOrTypeMismatch(f"{op}: operands cannot be promoted ({_describe(operands)})") from exc


def _normalize_axis(axis: Any, ndim: int, op: str) -> int:
    if isinstance(axis, (bool, np.bool_)) or not isinstance(axis, (int, np.integer)):
        raise ShapeOrTypeMismatch(f"{op}: axis must be an integer, got {axis!r}")
    axis = int(axis)
    if not -ndim <= axis < ndim:
        raise ShapeOrTypeMismatch(f"{op}: axis {axis} is out of range for rank {ndim}")
    return axis % ndim


def _normalize_axes(axes: Any, ndim: int, op: str) -> Optional[Tuple[int, ...]]:
    if axes is None:
        return None
    if isinstance(axes, (list, tuple)):
        normalized = tuple(_normalize_axis(a, ndim, op) for a in axes)
    else:
        normalized = (_normalize_axis(axes, ndim, op),)
    if len(set(normalized)) != len(normalized):
        raise ShapeOrTypeMismatch(f"{op}: repeated axes {list(axes)}")
    return tuple(sorted(normalized))


def _static_shape(shape: Any, op: str) -> Tuple[int, ...]:
    if isinstance(shape, (int, np.integer)) and not isinstance(shape, bool):
        shape = (shape,)
    if not isinstance(shape, (list, tuple)):
        raise ShapeOrTypeMismatch(f"{op}: shape must be a tuple of integers, got {shape!r}")
    dims = []
    for dim in shape:
        if isinstance(dim, (bool, np.bool_)) or not isinstance(dim, (int, np.integer)):
            raise ShapeOrTypeMismatch(f"{op}: shape entries must be integers, got {dim!r}")
        dims.append(int(dim))
    return tuple(dims)


def _infer_reduction(op: str, x: Operand, attrs: Dict[str, Any]) -> Inferred:
    axes = _normalize_axes(attrs.get("axes"), x.ndim, op) if x.ndim else None
    if attrs.get("axes") not in (None, (), []) and x.ndim == 0:
        raise ShapeOrTypeMismatch(f"{op}: cannot reduce axes of a scalar")
    keepdims = bool(attrs.get("keepdims", False))
    reduced = set(range(x.ndim)) if axes is None else set(axes)
    if keepdims:
        shape = tuple(1 if i in reduced else d for i, d in enumerate(x.shape))
    else:
        shape = tuple(d for i, d in enumerate(x.shape) if i not in reduced)
    norm_attrs = {"axes": axes, "keepdims": keepdims}
    probe = x.probe((1,) * x.ndim)
    try:
        dtype = np.asarray(apply_kernel(op, [probe], norm_attrs)).dtype.name
    except TypeError as exc:
        raise ShapeOrTypeMismatch(f"{op}: unsupported dtype {x.dtype}") from exc
    return Inferred(shape, dtype, compute_dtype=dtype, attrs=norm_attrs)


def _infer_arg_reduction(op: str, x: Operand, attrs: Dict[str, Any]) -> Inferred:
    axis = attrs.get("axis")
    keepdims = bool(attrs.get("keepdims", False))
    if x.ndim == 0:
        raise ShapeOrTypeMismatch(f"{op}: argument must have rank >= 1")
    if axis is None:
        shape: Tuple[int, ...] = (1,) * x.ndim if keepdims else ()
    else:
        axis = _normalize_axis(axis, x.ndim, op)
        if keepdims:
            shape = tuple(1 if i == axis else d for i, d in enumerate(x.shape))
        else:
            shape = tuple(d for i, d in enumerate(x.shape) if i != axis)
    if any(d == 0 for d in x.shape):
        raise ShapeOrTypeMismatch(f"{op}: attempt to take the arg of an empty tensor")
    return Inferred(shape, np.dtype(np.intp).name, attrs={"axis": axis, "keepdims": keepdims})


def _infer_reshape(x: Operand, attrs: Dict[str, Any]) -> Inferred:
    target = list(_static_shape(attrs.get("shape"), "reshape"))
    total = math.prod(x.shape)
    unknown = [i for i, d in enumerate(target) if d == -1]
    if len(unknown) > 1:
        raise ShapeOrTypeMismatch("reshape: only one dimension can be -1")
    if any(d < -1 for d in target):
        raise ShapeOrTypeMismatch(f"reshape: invalid dimension in {tuple(target)}")
    if unknown:
        known = math.prod(d for d in target if d != -1)
        if known == 0 or total % known:
            raise ShapeOrTypeMismatch(
                f"reshape: cannot reshape {list(x.shape)} into {tuple(target)}"
            )
        target[unknown[0]] = total // known
    if math.prod(target) != total:
        raise ShapeOrTypeMismatch(f"reshape: cannot reshape {list(x.shape)} into {tuple(target)}")
    shape = tuple(target)
    return Inferred(shape, x.dtype, attrs={"shape": shape})


def _infer_new_axis(x: Operand, attrs: Dict[str, Any]) -> Inferred:
    axis = _normalize_axis(attrs.get("axis", -1), x.ndim + 1, "new_axis")
    shape = x.shape[:axis] + (1,) + x.shape[axis:]
    return Inferred(shape, x.dtype, attrs={"axis": axis})


def _infer_squeeze(x: Operand, attrs: Dict[str, Any]) -> Inferred:
    axes = _normalize_axes(attrs.get("axes"), x.ndim, "squeeze") if x.ndim else ()
    if axes is None:
        axes = tuple(i for i, d in enumerate(x.shape) if d == 1)
    for axis in axes:
        if x.shape[axis] != 1:
            raise ShapeOrTypeMismatch(
                f"squeeze: axis {axis} has size {x.shape[axis]}, expected 1"
            )
    shape = tuple(d for i, d in enumerate(x.shape) if i not in axes)
    return Inferred(shape, x.dtype, attrs={"axes": tuple(axes)})


def _infer_transpose(x: Operand, attrs: Dict[str, Any]) -> Inferred:
    axes = attrs.get("axes")
    if axes is None:
        perm = tuple(reversed(range(x.ndim)))
    else:
        perm = tuple(_normalize_axis(a, x.ndim, "transpose") for a in axes)
        if sorted(perm) != list(range(x.ndim)):
            raise ShapeOrTypeMismatch(
                f"transpose: axes {list(axes)} are not a permutation of rank {x.ndim}"
            )
    shape = tuple(x.shape[a] for a in perm)
    return Inferred(shape, x.dtype, attrs={"axes": perm})


def _infer_broadcast_to(x: Operand, attrs: Dict[str, Any]) -> Inferred:
    target = _static_shape(attrs.get("shape"), "broadcast_to")
    try:
        merged = tuple(int(d) for d in np.broadcast_shapes(x.shape, target))
    except ValueError as exc:
        raise ShapeOrTypeMismatch(
            f"broadcast_to: cannot broadcast {list(x.shape)} to {list(target)}"
        ) from exc
    if merged != target:
        raise ShapeOrTypeMismatch(f"broadcast_to: cannot broadcast {list(x.shape)} to {list(target)}")
    return Inferred(target, x.dtype, attrs={"shape": target})


def _infer_concatenate(operands: Sequence[Operand], attrs: Dict[str, Any]) -> Inferred:
    first = operands[0]
    if first.ndim == 0:
        raise ShapeOrTypeMismatch("concatenate: zero-rank tensors cannot be concatenated")
    axis = _normalize_axis(attrs.get("axis", 0), first.ndim, "concatenate")
    size = 0
    for operand in operands:
        if operand.ndim != first.ndim:
            raise ShapeOrTypeMismatch(
                f"concatenate: all tensors need rank {first.ndim}, got {_describe(operands)}"
            )
        for i, (a, b) in enumerate(zip(first.shape, operand.shape)):
            if i != axis and a != b:
                raise ShapeOrTypeMismatch(
                    f"concatenate: shapes differ outside axis {axis}: {_describe(operands)}"
                )
        size += operand.shape[axis]
    shape = first.shape[:axis] + (size,) + first.shape[axis + 1 :]
    dtype = _common_dtype("concatenate", operands)
    return Inferred(shape, dtype, compute_dtype=dtype, attrs={"axis": axis})


def _infer_dot(a: Operand, b: Operand) -> Inferred:
    if a.ndim == 0 or b.ndim == 0:
        raise ShapeOrTypeMismatch("dot: operands must have rank >= 1; use multiply for scalars")
    a_shape = (1,) + a.shape if a.ndim == 1 else a.shape
    b_shape = b.shape + (1,) if b.ndim == 1 else b.shape
    if a_shape[-1] != b_shape[-2]:
        raise ShapeOrTypeMismatch(
            f"dot: contraction dimensions differ ({list(a.shape)} @ {list(b.shape)})"
        )
    try:
        batch = tuple(int(d) for d in np.broadcast_shapes(a_shape[:-2], b_shape[:-2]))
    except ValueError as exc:
        raise ShapeOrTypeMismatch(
            f"dot: batch dimensions differ ({list(a.shape)} @ {list(b.shape)})"
        ) from exc
    dims: List[int] = list(batch)
    if a.ndim > 1:
        dims.append(a_shape[-2])
    if b.ndim > 1:
        dims.append(b_shape[-1])
    try:
        probe = np.matmul(np.ones((1, 1), dtype=a.dtype), np.ones((1, 1), dtype=b.dtype))
    except TypeError as exc:
        raise ShapeOrTypeMismatch(f"dot: unsupported operand types ({_describe([a, b])})") from exc
    dtype = probe.dtype.name
    return Inferred(tuple(dims), dtype, compute_dtype=dtype)


def _infer_getitem(x: Operand, attrs: Dict[str, Any]) -> Inferred:
    # ``key`` arrives already encoded by ``graph.encode_index_key``.
    encoded = attrs.get("key")
    view = np.broadcast_to(np.empty((), dtype=bool), x.shape)
    try:
        shape = view[decode_index_key(encoded)].shape
    except IndexError as exc:
        raise ShapeOrTypeMismatch(f"getitem: {exc} (shape {list(x.shape)})") from exc
    return Inferred(tuple(int(d) for d in shape), x.dtype, attrs={"key": encoded})
