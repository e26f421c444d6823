from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..core.config import CompilerConfig
from ..core.exceptions import CompilationError, ShapeOrTypeMismatch
from ..core.graph import CONSTANT, PARAMETER, Graph, Node, decode_index_key, json_ready
from ..core.tensor import TensorTemplate

try:
    import torch
    from torch.fx import Graph as FxGraph
    from torch.fx import GraphModule
except Exception:  # pragma: no cover - torch optional
    torch = None
    FxGraph = None
    GraphModule = None

logger = logging.getLogger(__name__)


def compile(graph: Graph, templates: Sequence[TensorTemplate], config: Optional[CompilerConfig] = None):
    cfg = (config or CompilerConfig(compiler="torch")).normalized()
    if torch is None:
        raise CompilationError(
            "The 'torch' compiler needs PyTorch; install it with `pip install numdef[torch]`"
        )
    return TorchGraphRunner(graph, templates, config=cfg)


# --------------------------------------------------------------------------- #
# Devices and dtypes
# --------------------------------------------------------------------------- #


def _resolve_device(device_spec: str) -> "torch.device":
    if torch is None:
        raise RuntimeError("PyTorch is not available")
    spec = device_spec or "auto"
    if spec == "auto":
        return torch.device("cpu")
    if spec == "tpu":
        raise CompilationError("The torch compiler does not target TPUs")
    device = torch.device(spec)
    if device.type == "cuda" and not torch.cuda.is_available():
        raise CompilationError("Requested CUDA device but torch.cuda.is_available() is False")
    if device.type == "mps":
        mps_backend = getattr(torch.backends, "mps", None)
        if mps_backend is None or not mps_backend.is_available():
            raise CompilationError(
                "Requested MPS device but torch.backends.mps.is_available() is False"
            )
    return device


_DTYPE_NAMES = (
    "bool",
    "uint8",
    "int8",
    "int16",
    "int32",
    "int64",
    "float16",
    "float32",
    "float64",
    "complex64",
    "complex128",
)


def _torch_dtype(name: str) -> "torch.dtype":
    if name not in _DTYPE_NAMES:
        raise CompilationError(f"The torch compiler does not support dtype '{name}'")
    return getattr(torch, name)


# Torch Inductor helpers ------------------------------------------------------
_TORCH_COMPILE = getattr(torch, "compile", None) if torch is not None else None


def _maybe_torch_compile(fn):
    if _TORCH_COMPILE is None:
        return fn
    try:
        return _TORCH_COMPILE(fn, dynamic=False)
    except Exception as exc:
        logger.warning("torch.compile unavailable (%s); running the FX module directly", exc)
        return fn


# --------------------------------------------------------------------------- #
# Kernels
# --------------------------------------------------------------------------- #
# Module-level functions so FX nodes print readable targets.


def _all_dims(x: "torch.Tensor", axes: Optional[Tuple[int, ...]]) -> Tuple[int, ...]:
    return tuple(range(x.dim())) if axes is None else tuple(axes)


def _torch_sum(x, axes, keepdims):
    dims = _all_dims(x, axes)
    if not dims:
        return x
    return torch.sum(x, dim=dims, keepdim=keepdims)


def _torch_mean(x, axes, keepdims):
    dims = _all_dims(x, axes)
    if not dims:
        return x
    return torch.mean(x, dim=dims, keepdim=keepdims)


def _torch_reduce_max(x, axes, keepdims):
    dims = _all_dims(x, axes)
    if not dims:
        return x
    return torch.amax(x, dim=dims, keepdim=keepdims)


def _torch_reduce_min(x, axes, keepdims):
    dims = _all_dims(x, axes)
    if not dims:
        return x
    return torch.amin(x, dim=dims, keepdim=keepdims)


def _torch_arg_reduce(fn: Callable[..., Any]):
    def reduce(x, axis, keepdims):
        if x.dtype == torch.bool:
            x = x.to(torch.uint8)
        if axis is None:
            flat = fn(x.reshape(-1))
            return flat.reshape((1,) * x.dim()) if keepdims else flat
        return fn(x, dim=axis, keepdim=keepdims)

    return reduce


def _torch_where(cond, a, b):
    return torch.where(cond, a, b)


def _torch_reshape(x, shape):
    return torch.reshape(x, shape)


def _torch_new_axis(x, axis):
    return torch.unsqueeze(x, axis)


def _torch_transpose(x, axes):
    return torch.permute(x, tuple(axes))


def _torch_broadcast_to(x, shape):
    return torch.broadcast_to(x, shape)


def _torch_concatenate(*xs, axis):
    return torch.cat(xs, dim=axis)


def _torch_take(x, index):
    return torch.take(x, index)


def _torch_as_type(x, dtype):
    return x.to(dtype)


def _kernels() -> Dict[str, Callable[..., Any]]:
    return {
        "add": torch.add,
        "subtract": torch.subtract,
        "multiply": torch.mul,
        "divide": torch.true_divide,
        "power": torch.pow,
        "remainder": torch.remainder,
        "maximum": torch.maximum,
        "minimum": torch.minimum,
        "equal": torch.eq,
        "not_equal": torch.ne,
        "less": torch.lt,
        "less_equal": torch.le,
        "greater": torch.gt,
        "greater_equal": torch.ge,
        "logical_and": torch.logical_and,
        "logical_or": torch.logical_or,
        "logical_not": torch.logical_not,
        "negate": torch.neg,
        "abs": torch.abs,
        "sign": torch.sign,
        "exp": torch.exp,
        "log": torch.log,
        "sqrt": torch.sqrt,
        "tanh": torch.tanh,
        "sigmoid": torch.sigmoid,
        "sin": torch.sin,
        "cos": torch.cos,
        "where": _torch_where,
        "sum": _torch_sum,
        "mean": _torch_mean,
        "reduce_max": _torch_reduce_max,
        "reduce_min": _torch_reduce_min,
        "argmax": _torch_arg_reduce(torch.argmax),
        "argmin": _torch_arg_reduce(torch.argmin),
        "reshape": _torch_reshape,
        "new_axis": _torch_new_axis,
        "transpose": _torch_transpose,
        "broadcast_to": _torch_broadcast_to,
        "concatenate": _torch_concatenate,
        "dot": torch.matmul,
    }


# --------------------------------------------------------------------------- #
# Torch runtime
# --------------------------------------------------------------------------- #


class TorchGraphRunner:
    """Lower a recorded graph to a ``torch.fx.GraphModule``.

    Array constants become buffers of the module; weak Python literals become
    scalar buffers in the dtype each consumer computes in. With
    ``backend_options={"compile": True}`` the module is wrapped with
    ``torch.compile``.
    """

    def __init__(
        self,
        graph: Graph,
        templates: Sequence[TensorTemplate],
        config: CompilerConfig,
    ):
        graph.validate()
        self.graph = graph
        self.templates = list(templates)
        self.config = config
        self.device = _resolve_device(config.device)
        self.logs: List[Dict[str, Any]] = []
        self._kernels = _kernels()
        self._root = torch.nn.Module()
        self._buffers: Dict[Tuple[int, str], str] = {}
        self.fx_module: GraphModule = self._build_fx()
        self._fx_callable = self.fx_module
        if config.backend_options.get("compile"):
            self._fx_callable = _maybe_torch_compile(self.fx_module)

    # Public API -------------------------------------------------------------
    def __call__(self, *inputs: Any) -> List[np.ndarray]:
        return self.run(inputs)

    def run(self, inputs: Sequence[Any]) -> List[np.ndarray]:
        if len(inputs) != len(self.graph.parameters):
            raise ShapeOrTypeMismatch(
                f"Graph '{self.graph.name}' expects {len(self.graph.parameters)} inputs, got {len(inputs)}"
            )
        start = time.perf_counter()
        tensors = [self._to_tensor(value) for value in inputs]
        with torch.no_grad():
            outputs = self._fx_callable(*tensors)
        results = [
            np.asarray(value.detach().cpu().numpy()).astype(node.dtype, copy=False)
            for value, node in zip(outputs, self.graph.output_nodes())
        ]
        self.logs = [
            {
                "kind": "run",
                "graph": self.graph.name,
                "device": str(self.device),
                "compiled": self._fx_callable is not self.fx_module,
                "elapsed_ms": (time.perf_counter() - start) * 1000.0,
            }
        ]
        return results

    def lowered_text(self) -> str:
        return self.fx_module.code

    def explain(self, *, json: bool = False):
        if json:
            return {"logs": [json_ready(entry) for entry in self.logs]}
        lines = []
        for entry in self.logs:
            suffix = " (torch.compile)" if entry["compiled"] else ""
            lines.append(
                f"[run] {entry['graph']} on {entry['device']}{suffix} {entry['elapsed_ms']:.3f}ms"
            )
        return "\n".join(lines)

    # FX construction ----------------------------------------------------------
    def _build_fx(self) -> GraphModule:
        fx_graph = FxGraph()
        env: Dict[int, Any] = {}
        for node in self.graph.live_nodes():
            _torch_dtype(node.dtype)
            if node.op == PARAMETER:
                env[node.id] = fx_graph.placeholder(f"input_{node.attrs['index']}")
            elif node.op == CONSTANT:
                if not node.weak:
                    env[node.id] = self._constant(fx_graph, node.id, node.attrs["value"], node.dtype)
            else:
                env[node.id] = self._lower(fx_graph, node, env)
        outputs = []
        for idx in self.graph.outputs:
            source = self.graph.nodes[idx]
            if source.weak:
                outputs.append(self._constant(fx_graph, idx, source.attrs["value"], source.dtype))
            else:
                outputs.append(env[idx])
        fx_graph.output(tuple(outputs))
        module = GraphModule(self._root, fx_graph)
        module.to(self.device)
        logger.debug("FX module for %s:\n%s", self.graph.name, module.code)
        return module

    def _constant(self, fx_graph, node_id: int, value: Any, dtype: str):
        key = (node_id, dtype)
        name = self._buffers.get(key)
        if name is None:
            name = f"const_{node_id}_{dtype}"
            array = np.ascontiguousarray(np.asarray(value, dtype=dtype))
            self._root.register_buffer(name, torch.as_tensor(array))
            self._buffers[key] = name
        return fx_graph.get_attr(name)

    def _operand(self, fx_graph, node: Node, position: int, src: int, env: Dict[int, Any]):
        source = self.graph.nodes[src]
        target = node.compute_dtype
        if node.op == "where" and position == 0:
            target = "bool"
        elif node.op in {"logical_and", "logical_or", "logical_not"}:
            target = "bool"
        if target is None:
            target = source.dtype
        if source.weak:
            return self._constant(fx_graph, src, source.attrs["value"], target)
        proxy = env[src]
        if source.dtype != target:
            proxy = fx_graph.call_method("to", (proxy, _torch_dtype(target)))
        return proxy

    def _lower(self, fx_graph, node: Node, env: Dict[int, Any]):
        operands = [
            self._operand(fx_graph, node, position, src, env)
            for position, src in enumerate(node.inputs)
        ]
        if node.op == "squeeze":
            return fx_graph.call_function(_torch_reshape, (operands[0], node.shape))
        if node.op == "as_type":
            return fx_graph.call_function(
                _torch_as_type, (operands[0], _torch_dtype(node.attrs["dtype"]))
            )
        if node.op == "getitem":
            # torch slicing rejects negative steps; gather through static flat indices instead.
            source_shape = self.graph.nodes[node.inputs[0]].shape
            flat = np.arange(int(np.prod(source_shape, dtype=np.int64)), dtype=np.int64)
            index = flat.reshape(source_shape)[decode_index_key(node.attrs["key"])]
            index_proxy = self._constant(fx_graph, node.id, index, "int64")
            return fx_graph.call_function(_torch_take, (operands[0], index_proxy))
        kernel = self._kernels.get(node.op)
        if kernel is None:
            raise CompilationError(f"The torch compiler has no lowering for '{node.op}'")
        return fx_graph.call_function(kernel, tuple(operands), dict(node.attrs))

    def _to_tensor(self, value: Any) -> "torch.Tensor":
        if isinstance(value, torch.Tensor):
            return value.to(self.device)
        array = np.ascontiguousarray(np.asarray(value))
        return torch.as_tensor(array).to(self.device)
