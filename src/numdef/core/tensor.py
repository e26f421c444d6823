from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Tuple

import numpy as np

from .exceptions import RestrictedSyntaxError, ShapeOrTypeMismatch
from .graph import Node, encode_index_key

if TYPE_CHECKING:
    from .session import RecordingSession


@dataclass(frozen=True)
class TensorTemplate:
    """Shape and dtype of a compiled-function input, without data."""

    shape: Tuple[int, ...]
    dtype: str

    @classmethod
    def from_value(cls, value: Any) -> "TensorTemplate":
        if isinstance(value, TensorTemplate):
            return value
        if isinstance(value, _OperatorMixin):
            return cls(shape=tuple(value.shape), dtype=np.dtype(value.dtype).name)
        array = np.asarray(value)
        return cls(shape=tuple(int(d) for d in array.shape), dtype=array.dtype.name)

    def __repr__(self) -> str:
        return f"TensorTemplate({self.dtype}{list(self.shape)})"


def template(shape: Any = (), dtype: Any = "float32") -> TensorTemplate:
    if isinstance(shape, (int, np.integer)):
        shape = (shape,)
    dims = tuple(int(d) for d in shape)
    if any(d < 0 for d in dims):
        raise ShapeOrTypeMismatch(f"Template dimensions must be non-negative, got {dims}")
    return TensorTemplate(shape=dims, dtype=np.dtype(dtype).name)


def is_tensor_like(value: Any) -> bool:
    """True for concrete array values (NumPy, JAX, Torch), never for handles or views."""
    if isinstance(value, _OperatorMixin):
        return False
    if isinstance(value, (np.ndarray, np.generic)):
        return True
    return hasattr(value, "__array__") and hasattr(value, "shape") and hasattr(value, "dtype")


class _OperatorMixin:
    """Python operator surface shared by handles and transform views.

    Subclasses provide ``shape``, ``dtype``, ``_apply`` and ``_data_access``.
    """

    __slots__ = ()
    # Make NumPy defer to our reflected operators instead of converting us.
    __array_ufunc__ = None
    __array_priority__ = 1000

    shape: Tuple[int, ...]

    def _apply(self, op: str, operands: Tuple[Any, ...], attrs: Any = None):
        raise NotImplementedError

    def _data_access(self, what: str):
        raise NotImplementedError

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> int:
        total = 1
        for dim in self.shape:
            total *= dim
        return total

    def __len__(self) -> int:
        if not self.shape:
            raise TypeError("len() of a zero-rank tensor")
        return self.shape[0]

    # Arithmetic ---------------------------------------------------------------
    def __add__(self, other):
        return self._apply("add", (self, other))

    def __radd__(self, other):
        return self._apply("add", (other, self))

    def __sub__(self, other):
        return self._apply("subtract", (self, other))

    def __rsub__(self, other):
        return self._apply("subtract", (other, self))

    def __mul__(self, other):
        return self._apply("multiply", (self, other))

    def __rmul__(self, other):
        return self._apply("multiply", (other, self))

    def __truediv__(self, other):
        return self._apply("divide", (self, other))

    def __rtruediv__(self, other):
        return self._apply("divide", (other, self))

    def __pow__(self, other):
        return self._apply("power", (self, other))

    def __rpow__(self, other):
        return self._apply("power", (other, self))

    def __mod__(self, other):
        return self._apply("remainder", (self, other))

    def __rmod__(self, other):
        return self._apply("remainder", (other, self))

    def __matmul__(self, other):
        return self._apply("dot", (self, other))

    def __rmatmul__(self, other):
        return self._apply("dot", (other, self))

    def __neg__(self):
        return self._apply("negate", (self,))

    def __pos__(self):
        return self

    def __abs__(self):
        return self._apply("abs", (self,))

    # Comparisons and logic ------------------------------------------------------
    def __lt__(self, other):
        return self._apply("less", (self, other))

    def __le__(self, other):
        return self._apply("less_equal", (self, other))

    def __gt__(self, other):
        return self._apply("greater", (self, other))

    def __ge__(self, other):
        return self._apply("greater_equal", (self, other))

    def __eq__(self, other):  # type: ignore[override]
        return self._apply("equal", (self, other))

    def __ne__(self, other):  # type: ignore[override]
        return self._apply("not_equal", (self, other))

    def __and__(self, other):
        return self._apply("logical_and", (self, other))

    def __rand__(self, other):
        return self._apply("logical_and", (other, self))

    def __or__(self, other):
        return self._apply("logical_or", (self, other))

    def __ror__(self, other):
        return self._apply("logical_or", (other, self))

    def __invert__(self):
        return self._apply("logical_not", (self,))

    __hash__ = object.__hash__

    # Indexing and methods -------------------------------------------------------
    def __getitem__(self, key):
        try:
            encoded = encode_index_key(key)
        except TypeError as exc:
            raise ShapeOrTypeMismatch(str(exc)) from exc
        return self._apply("getitem", (self,), {"key": encoded})

    def reshape(self, *shape):
        if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
            shape = tuple(shape[0])
        return self._apply("reshape", (self,), {"shape": shape})

    def astype(self, dtype):
        return self._apply("as_type", (self,), {"dtype": dtype})

    def sum(self, axis=None, keepdims: bool = False):
        return self._apply("sum", (self,), {"axes": axis, "keepdims": keepdims})

    def mean(self, axis=None, keepdims: bool = False):
        return self._apply("mean", (self,), {"axes": axis, "keepdims": keepdims})

    def max(self, axis=None, keepdims: bool = False):
        return self._apply("reduce_max", (self,), {"axes": axis, "keepdims": keepdims})

    def min(self, axis=None, keepdims: bool = False):
        return self._apply("reduce_min", (self,), {"axes": axis, "keepdims": keepdims})

    def argmax(self, axis=None, keepdims: bool = False):
        return self._apply("argmax", (self,), {"axis": axis, "keepdims": keepdims})

    def transpose(self, *axes):
        if len(axes) == 1 and isinstance(axes[0], (tuple, list)):
            axes = tuple(axes[0])
        return self._apply("transpose", (self,), {"axes": axes or None})

    @property
    def T(self):
        return self._apply("transpose", (self,), {"axes": None})

    def squeeze(self, axis=None):
        return self._apply("squeeze", (self,), {"axes": axis})

    # Data access is never available while a graph is being built -------------
    def __bool__(self):
        self._data_access("use the truth value of")

    def __int__(self):
        self._data_access("convert to int")

    def __float__(self):
        self._data_access("convert to float")

    def __complex__(self):
        self._data_access("convert to complex")

    def __index__(self):
        self._data_access("use as an index")

    def __array__(self, dtype=None, copy=None):
        self._data_access("convert to a NumPy array")

    def __iter__(self):
        self._data_access("iterate over")

    def item(self):
        self._data_access("read an element of")

    def tolist(self):
        self._data_access("convert to a list")


class TensorHandle(_OperatorMixin):
    """Symbolic tensor produced while a numerical definition is recorded."""

    __slots__ = ("session", "node")

    def __init__(self, session: "RecordingSession", node: Node):
        self.session = session
        self.node = node

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.node.shape

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.node.dtype)

    def _apply(self, op, operands, attrs=None):
        return self.session.record(op, operands, attrs)

    def _data_access(self, what: str):
        raise RestrictedSyntaxError(
            f"Cannot {what} a tensor inside numerical definition '{self.session.graph.name}': "
            "its value is only known when the compiled graph runs. Branch on shape metadata, "
            "use numdef.where, or move host logic into a transform"
        )

    def __repr__(self) -> str:
        return f"TensorHandle<{self.node.dtype}{list(self.shape)} %{self.node.id}>"


class TensorView(_OperatorMixin):
    """Metadata-only view of a recorded tensor, as seen by a transform.

    Transforms run once per graph construction, so they may read ``shape``,
    ``dtype``, ``ndim`` and ``size`` and may pass the view to tensor
    operators, but any attempt to read the data raises.
    """

    __slots__ = ("_handle",)

    def __init__(self, handle: TensorHandle):
        self._handle = handle

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._handle.shape

    @property
    def dtype(self) -> np.dtype:
        return self._handle.dtype

    def _apply(self, op, operands, attrs=None):
        return TensorView(self._handle.session.record(op, operands, attrs))

    def _data_access(self, what: str):
        transform = self._handle.session.active_transform or "<transform>"
        raise RestrictedSyntaxError(
            f"Transform '{transform}' cannot {what} a tensor: transforms run once while the "
            "graph is built and only see shape and dtype, never tensor contents"
        )

    def __repr__(self) -> str:
        return f"TensorView<{self._handle.node.dtype}{list(self.shape)}>"


def unwrap_view(value: Any) -> Any:
    if isinstance(value, TensorView):
        return value._handle
    return value
