from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from .config import CompilerConfig
from .exceptions import CompilationError, ShapeOrTypeMismatch
from .graph import CONSTANT, PARAMETER, Graph, Node, decode_index_key, json_ready

logger = logging.getLogger(__name__)


# Kernels --------------------------------------------------------------------
# Every operator recorded into a graph has exactly one NumPy kernel here. The
# kernels define the reference semantics that the JAX and Torch lowerings match.


def _sigmoid(x):
    return 1.0 / (1.0 + np.exp(-x))


def _where(cond, a, b):
    return np.where(np.asarray(cond, dtype=bool), a, b)


def _sum(x, axes, keepdims):
    return np.sum(x, axis=axes, keepdims=keepdims)


def _mean(x, axes, keepdims):
    return np.mean(x, axis=axes, keepdims=keepdims)


def _reduce_max(x, axes, keepdims):
    return np.max(x, axis=axes, keepdims=keepdims)


def _reduce_min(x, axes, keepdims):
    return np.min(x, axis=axes, keepdims=keepdims)


def _argmax(x, axis, keepdims):
    return np.argmax(x, axis=axis, keepdims=keepdims)


def _argmin(x, axis, keepdims):
    return np.argmin(x, axis=axis, keepdims=keepdims)


def _reshape(x, shape):
    return np.reshape(x, shape)


def _new_axis(x, axis):
    return np.expand_dims(x, axis)


def _squeeze(x, axes):
    return np.squeeze(x, axis=axes)


def _transpose(x, axes):
    return np.transpose(x, axes)


def _broadcast_to(x, shape):
    return np.broadcast_to(x, shape)


def _concatenate(*xs, axis):
    return np.concatenate(xs, axis=axis)


def _as_type(x, dtype):
    return np.asarray(x).astype(dtype)


def _getitem(x, key):
    return np.asarray(x)[decode_index_key(key)]


KERNELS: Dict[str, Callable[..., Any]] = {
    "add": np.add,
    "subtract": np.subtract,
    "multiply": np.multiply,
    "divide": np.true_divide,
    "power": np.power,
    "remainder": np.remainder,
    "maximum": np.maximum,
    "minimum": np.minimum,
    "equal": np.equal,
    "not_equal": np.not_equal,
    "less": np.less,
    "less_equal": np.less_equal,
    "greater": np.greater,
    "greater_equal": np.greater_equal,
    "logical_and": np.logical_and,
    "logical_or": np.logical_or,
    "logical_not": np.logical_not,
    "negate": np.negative,
    "abs": np.abs,
    "sign": np.sign,
    "exp": np.exp,
    "log": np.log,
    "sqrt": np.sqrt,
    "tanh": np.tanh,
    "sigmoid": _sigmoid,
    "sin": np.sin,
    "cos": np.cos,
    "where": _where,
    "sum": _sum,
    "mean": _mean,
    "reduce_max": _reduce_max,
    "reduce_min": _reduce_min,
    "argmax": _argmax,
    "argmin": _argmin,
    "reshape": _reshape,
    "new_axis": _new_axis,
    "squeeze": _squeeze,
    "transpose": _transpose,
    "broadcast_to": _broadcast_to,
    "concatenate": _concatenate,
    "dot": np.matmul,
    "as_type": _as_type,
    "getitem": _getitem,
}


def apply_kernel(op: str, operands: Sequence[Any], attrs: Dict[str, Any]) -> Any:
    kernel = KERNELS.get(op)
    if kernel is None:
        raise NotImplementedError(f"No NumPy kernel for operator '{op}'")
    return kernel(*operands, **attrs)


# Interpreter ----------------------------------------------------------------


def compile(graph: Graph, templates: Sequence[Any], config: Optional[CompilerConfig] = None):
    cfg = (config or CompilerConfig()).normalized()
    if cfg.device not in {"auto", "cpu"}:
        raise CompilationError(
            f"The evaluator only supports CPU execution; received device='{cfg.device}'"
        )
    return GraphInterpreter(graph, templates, config=cfg)


class GraphInterpreter:
    """Evaluate a recorded graph node by node with NumPy.

    This is the built-in fallback compiler: no code generation happens, so
    results are the baseline every other compiler must reproduce.
    """

    def __init__(
        self,
        graph: Graph,
        templates: Sequence[Any],
        config: Optional[CompilerConfig] = None,
    ):
        graph.validate()
        self.graph = graph
        self.templates = list(templates)
        self.config = (config or CompilerConfig()).normalized()
        self.explain_timings = bool(self.config.backend_options.get("explain_timings", False))
        self.logs: List[Dict[str, Any]] = []
        self._schedule: List[Node] = graph.live_nodes()

    # Public API ----------------------------------------------------------------
    def __call__(self, *inputs: Any) -> List[np.ndarray]:
        return self.run(inputs)

    def run(self, inputs: Sequence[Any]) -> List[np.ndarray]:
        if len(inputs) != len(self.graph.parameters):
            raise ShapeOrTypeMismatch(
                f"Graph '{self.graph.name}' expects {len(self.graph.parameters)} inputs, "
                f"got {len(inputs)}"
            )
        values: Dict[int, Any] = {}
        logs: List[Dict[str, Any]] = []
        for node in self._schedule:
            start = time.perf_counter() if self.explain_timings else 0.0
            values[node.id] = self._eval_node(node, values, inputs)
            logs.append(self._log_entry(node, start))
        # Shared across threads: replaced whole, never mutated.
        self.logs = logs
        return [
            np.asarray(values[node_id], dtype=self.graph.nodes[node_id].dtype)
            for node_id in self.graph.outputs
        ]

    def explain(self, *, json: bool = False):
        if json:
            return {"logs": [json_ready(entry) for entry in self.logs]}
        lines = []
        for entry in self.logs:
            shape = "x".join(str(d) for d in entry["shape"]) or "scalar"
            line = f"[node {entry['id']:03d}] {entry['op']} {entry['dtype']}[{shape}]"
            if "elapsed_ms" in entry:
                line += f" {entry['elapsed_ms']:.3f}ms"
            lines.append(line)
        return "\n".join(lines)

    # Evaluation ----------------------------------------------------------------
    def _eval_node(self, node: Node, values: Dict[int, Any], inputs: Sequence[Any]) -> Any:
        if node.op == PARAMETER:
            return np.asarray(inputs[node.attrs["index"]])
        if node.op == CONSTANT:
            return node.attrs["value"]
        operands = [values[src] for src in node.inputs]
        result = apply_kernel(node.op, operands, node.attrs)
        return np.asarray(result).astype(node.dtype, copy=False)

    def _log_entry(self, node: Node, start: float) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "kind": "node",
            "id": node.id,
            "op": node.op,
            "shape": list(node.shape),
            "dtype": node.dtype,
        }
        if self.explain_timings:
            entry["elapsed_ms"] = (time.perf_counter() - start) * 1000.0
        return entry
