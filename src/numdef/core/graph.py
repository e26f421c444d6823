import hashlib
import json as _json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .exceptions import SessionError
from .tree import TreeDef

PARAMETER = "parameter"
CONSTANT = "constant"
LEAF_OPS = {PARAMETER, CONSTANT}


@dataclass(eq=False)
class Node:
    id: int
    op: str
    inputs: Tuple[int, ...]
    shape: Tuple[int, ...]
    dtype: str
    attrs: Dict[str, Any] = field(default_factory=dict)
    compute_dtype: Optional[str] = None  # operand dtype backends cast to before the op

    @property
    def is_leaf(self) -> bool:
        return self.op in LEAF_OPS

    @property
    def is_injected(self) -> bool:
        return self.op == CONSTANT and self.attrs.get("origin") == "transform"

    @property
    def weak(self) -> bool:
        """Weakly typed literal (a bare Python number written in a definition body)."""
        return self.op == CONSTANT and bool(self.attrs.get("weak", False))

    def describe(self) -> str:
        shape = "x".join(str(d) for d in self.shape) or "scalar"
        head = f"%{self.id} = {self.op}"
        if self.inputs:
            head += "(" + ", ".join(f"%{i}" for i in self.inputs) + ")"
        details = [f"{self.dtype}[{shape}]"]
        if self.op == PARAMETER:
            details.append(f"index={self.attrs['index']}")
        elif self.op == CONSTANT:
            details.append(f"origin={self.attrs.get('origin', 'literal')}")
            if self.attrs.get("transform"):
                details.append(f"transform={self.attrs['transform']}")
            details.append(f"value={_preview(self.attrs['value'])}")
        else:
            for key, value in sorted(self.attrs.items()):
                details.append(f"{key}={value}")
        return f"{head} : {' '.join(details)}"


@dataclass
class Graph:
    """Closed DAG recorded by one session.

    Node ids are dense and assigned in recording order; every node's inputs
    carry smaller ids than the node itself.
    """

    name: str
    nodes: List[Node] = field(default_factory=list)
    parameters: List[int] = field(default_factory=list)
    outputs: List[int] = field(default_factory=list)
    output_tree: Optional[TreeDef] = None
    input_tree: Optional[TreeDef] = None

    def add_node(
        self,
        op: str,
        inputs: Tuple[int, ...],
        shape: Tuple[int, ...],
        dtype: str,
        attrs: Optional[Dict[str, Any]] = None,
        compute_dtype: Optional[str] = None,
    ) -> Node:
        node_id = len(self.nodes)
        for src in inputs:
            if not 0 <= src < node_id:
                raise SessionError(
                    f"Node {op} refers to %{src}, which was not recorded before it"
                )
        node = Node(
            id=node_id,
            op=op,
            inputs=tuple(inputs),
            shape=tuple(int(d) for d in shape),
            dtype=str(dtype),
            attrs=dict(attrs or {}),
            compute_dtype=compute_dtype,
        )
        self.nodes.append(node)
        return node

    def add_parameter(self, shape: Tuple[int, ...], dtype: str) -> Node:
        node = self.add_node(PARAMETER, (), shape, dtype, {"index": len(self.parameters)})
        self.parameters.append(node.id)
        return node

    def add_constant(
        self,
        value: Any,
        *,
        origin: str = "literal",
        transform: Optional[str] = None,
    ) -> Node:
        attrs: Dict[str, Any] = {"origin": origin}
        if transform is not None:
            attrs["transform"] = transform
        if isinstance(value, (bool, int, float, complex)) and not isinstance(value, np.generic):
            attrs["value"] = value
            attrs["weak"] = True
            dtype = np.result_type(value)
            return self.add_node(CONSTANT, (), (), dtype.name, attrs)
        array = np.asarray(value)
        if array.dtype == object:
            raise SessionError("Constants must be numeric arrays")
        attrs["value"] = array
        return self.add_node(CONSTANT, (), array.shape, array.dtype.name, attrs)

    def node(self, node_id: int) -> Node:
        return self.nodes[node_id]

    def injected_constants(self) -> List[Node]:
        return [node for node in self.nodes if node.is_injected]

    def output_nodes(self) -> List[Node]:
        return [self.nodes[idx] for idx in self.outputs]

    def validate(self) -> None:
        for position, node in enumerate(self.nodes):
            if node.id != position:
                raise SessionError(f"Graph '{self.name}' has non-dense node ids at {position}")
            for src in node.inputs:
                if not 0 <= src < node.id:
                    raise SessionError(
                        f"Graph '{self.name}' is not acyclic: %{node.id} depends on %{src}"
                    )
            if node.is_leaf and node.inputs:
                raise SessionError(f"Leaf node %{node.id} must not have inputs")
        for idx in self.parameters:
            if self.nodes[idx].op != PARAMETER:
                raise SessionError(f"Graph parameter %{idx} is not a parameter node")
        for idx in self.outputs:
            if not 0 <= idx < len(self.nodes):
                raise SessionError(f"Graph output %{idx} does not exist")

    def live_nodes(self) -> List[Node]:
        """Nodes reachable from the outputs, plus every parameter, in id order."""
        live = set(self.parameters)
        stack = list(self.outputs)
        while stack:
            idx = stack.pop()
            if idx in live:
                continue
            live.add(idx)
            stack.extend(self.nodes[idx].inputs)
        return [node for node in self.nodes if node.id in live]

    def to_dict(self) -> Dict[str, Any]:
        nodes = []
        for node in self.nodes:
            attrs = {k: v for k, v in node.attrs.items() if k != "value"}
            entry: Dict[str, Any] = {
                "id": node.id,
                "op": node.op,
                "inputs": list(node.inputs),
                "shape": list(node.shape),
                "dtype": node.dtype,
                "attrs": attrs,
            }
            if node.compute_dtype is not None:
                entry["compute_dtype"] = node.compute_dtype
            if node.op == CONSTANT:
                entry["value"] = node.attrs["value"]
            nodes.append(entry)
        return json_ready(
            {
                "name": self.name,
                "parameters": list(self.parameters),
                "outputs": list(self.outputs),
                "nodes": nodes,
            }
        )

    def digest(self) -> str:
        canonical = _json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def explain(self, *, json: bool = False) -> Any:
        if json:
            return self.to_dict()
        lines = [f"graph {self.name}"]
        for node in self.nodes:
            lines.append(f"  {node.describe()}")
        returned = ", ".join(f"%{idx}" for idx in self.outputs)
        lines.append(f"  return {returned}")
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.explain()


def encode_index_key(key: Any) -> Tuple[Tuple[Any, ...], ...]:
    """Encode a static ``__getitem__`` key into a hashable, JSON-friendly tuple."""
    items = key if isinstance(key, tuple) else (key,)
    encoded: List[Tuple[Any, ...]] = []
    for item in items:
        if item is None:
            encoded.append(("newaxis",))
        elif item is Ellipsis:
            encoded.append(("ellipsis",))
        elif isinstance(item, slice):
            parts = []
            for part in (item.start, item.stop, item.step):
                if part is not None and not _is_static_int(part):
                    raise TypeError(f"Slice bounds must be static integers, got {part!r}")
                parts.append(None if part is None else int(part))
            encoded.append(("slice", *parts))
        elif _is_static_int(item):
            encoded.append(("int", int(item)))
        else:
            raise TypeError(
                f"Only static integers, slices, None and Ellipsis can index a tensor, "
                f"got {type(item).__name__}"
            )
    return tuple(encoded)


def decode_index_key(encoded: Tuple[Tuple[Any, ...], ...]) -> Tuple[Any, ...]:
    decoded: List[Any] = []
    for item in encoded:
        kind = item[0]
        if kind == "newaxis":
            decoded.append(None)
        elif kind == "ellipsis":
            decoded.append(Ellipsis)
        elif kind == "slice":
            decoded.append(slice(item[1], item[2], item[3]))
        else:
            decoded.append(item[1])
    return tuple(decoded)


def _is_static_int(value: Any) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, (bool, np.bool_))


def _preview(value: Any, limit: int = 6) -> str:
    if not isinstance(value, np.ndarray):
        return repr(value)
    flat = value.reshape(-1)
    items = ", ".join(str(v) for v in flat[:limit].tolist())
    suffix = ", ..." if flat.size > limit else ""
    return f"[{items}{suffix}]"


def json_ready(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, complex):
        return [value.real, value.imag]
    if isinstance(value, (np.integer, np.floating, np.bool_)):
        return value.item()
    if isinstance(value, np.ndarray):
        return json_ready(value.tolist())
    if isinstance(value, dict):
        return {str(k): json_ready(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_ready(v) for v in value]
    return str(value)
