from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from ..core.config import CompilerConfig
from ..core.exceptions import CompilationError, ShapeOrTypeMismatch
from ..core.graph import CONSTANT, PARAMETER, Graph, Node, decode_index_key, json_ready
from ..core.tensor import TensorTemplate

try:
    import jax
    import jax.nn as jnn
    import jax.numpy as jnp
except Exception:  # pragma: no cover - jax optional
    jax = None
    jnp = None
    jnn = None

logger = logging.getLogger(__name__)


def compile(graph: Graph, templates: Sequence[TensorTemplate], config: Optional[CompilerConfig] = None):
    cfg = (config or CompilerConfig(compiler="jax")).normalized()
    if jax is None:
        raise CompilationError(
            "The 'jax' compiler needs JAX; install it with `pip install numdef[jax]`"
        )
    if cfg.backend_options.get("enable_x64"):
        # Process-wide JAX flag; 64-bit graphs otherwise compute in 32 bits.
        jax.config.update("jax_enable_x64", True)
    return JaxGraphRunner(graph, templates, config=cfg)


# Devices ----------------------------------------------------------------------


def _resolve_device(device_spec: str):
    if jax is None:
        raise RuntimeError("JAX is not available")
    spec = (device_spec or "auto").strip().lower()
    if not spec or spec == "auto":
        return None
    index: Optional[int] = None
    if ":" in spec:
        base, index_str = spec.split(":", 1)
        spec = base
        if index_str:
            try:
                index = int(index_str)
            except ValueError as exc:
                raise CompilationError(f"Invalid device index in '{device_spec}'") from exc
    if spec in {"cuda", "gpu", "mps"}:
        platform = "gpu"
    elif spec in {"cpu", "tpu"}:
        platform = spec
    else:
        raise CompilationError(f"Unsupported JAX device spec '{device_spec}'")
    try:
        devices = jax.devices(platform)
    except RuntimeError as exc:
        raise CompilationError(f"No JAX devices available for platform '{platform}'") from exc
    if index is not None:
        for dev in devices:
            if getattr(dev, "id", None) == index:
                return dev
        raise CompilationError(f"JAX device index {index} not found for platform '{platform}'")
    return devices[0]


def _canonical(dtype: str):
    return jax.dtypes.canonicalize_dtype(np.dtype(dtype))


# Kernels ----------------------------------------------------------------------


def _jax_reduce(fn: Callable[..., Any]):
    def reduce(x, axes, keepdims):
        return fn(x, axis=axes, keepdims=keepdims)

    return reduce


def _jax_arg_reduce(fn: Callable[..., Any]):
    def reduce(x, axis, keepdims):
        return fn(x, axis=axis, keepdims=keepdims)

    return reduce


def _kernels() -> Dict[str, Callable[..., Any]]:
    return {
        "add": jnp.add,
        "subtract": jnp.subtract,
        "multiply": jnp.multiply,
        "divide": jnp.true_divide,
        "power": jnp.power,
        "remainder": jnp.remainder,
        "maximum": jnp.maximum,
        "minimum": jnp.minimum,
        "equal": jnp.equal,
        "not_equal": jnp.not_equal,
        "less": jnp.less,
        "less_equal": jnp.less_equal,
        "greater": jnp.greater,
        "greater_equal": jnp.greater_equal,
        "logical_and": jnp.logical_and,
        "logical_or": jnp.logical_or,
        "logical_not": jnp.logical_not,
        "negate": jnp.negative,
        "abs": jnp.abs,
        "sign": jnp.sign,
        "exp": jnp.exp,
        "log": jnp.log,
        "sqrt": jnp.sqrt,
        "tanh": jnp.tanh,
        "sigmoid": jnn.sigmoid,
        "sin": jnp.sin,
        "cos": jnp.cos,
        "where": jnp.where,
        "sum": _jax_reduce(jnp.sum),
        "mean": _jax_reduce(jnp.mean),
        "reduce_max": _jax_reduce(jnp.max),
        "reduce_min": _jax_reduce(jnp.min),
        "argmax": _jax_arg_reduce(jnp.argmax),
        "argmin": _jax_arg_reduce(jnp.argmin),
        "reshape": lambda x, shape: jnp.reshape(x, shape),
        "new_axis": lambda x, axis: jnp.expand_dims(x, axis),
        "squeeze": lambda x, axes: jnp.squeeze(x, axis=axes),
        "transpose": lambda x, axes: jnp.transpose(x, axes),
        "broadcast_to": lambda x, shape: jnp.broadcast_to(x, shape),
        "concatenate": lambda *xs, axis: jnp.concatenate(xs, axis=axis),
        "dot": jnp.matmul,
        "as_type": lambda x, dtype: jnp.asarray(x).astype(_canonical(dtype)),
        "getitem": lambda x, key: x[decode_index_key(key)],
    }


# Runner -----------------------------------------------------------------------


class JaxGraphRunner:
    """Lower a recorded graph to ``jax.numpy`` and run it under ``jax.jit``."""

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
        self._schedule: List[Node] = graph.live_nodes()
        for node in self._schedule:
            if not node.is_leaf and node.op not in self._kernels:
                raise CompilationError(f"The JAX compiler has no lowering for '{node.op}'")
        self._constants: Dict[int, Any] = {
            node.id: (node.attrs["value"] if node.weak else jnp.asarray(node.attrs["value"]))
            for node in self._schedule
            if node.op == CONSTANT
        }
        self._jitted = jax.jit(self._forward)

    # Public API -------------------------------------------------------------
    def __call__(self, *inputs: Any) -> List[np.ndarray]:
        return self.run(inputs)

    def run(self, inputs: Sequence[Any]) -> List[np.ndarray]:
        if len(inputs) != len(self.graph.parameters):
            raise ShapeOrTypeMismatch(
                f"Graph '{self.graph.name}' expects {len(self.graph.parameters)} inputs, got {len(inputs)}"
            )
        start = time.perf_counter()
        arrays = [jnp.asarray(np.asarray(value)) for value in inputs]
        if self.device is not None:
            arrays = [jax.device_put(arr, self.device) for arr in arrays]
        outputs = self._jitted(*arrays)
        results = [
            np.asarray(jax.device_get(value)).astype(node.dtype, copy=False)
            for value, node in zip(outputs, self.graph.output_nodes())
        ]
        self.logs = [
            {
                "kind": "run",
                "graph": self.graph.name,
                "device": str(self.device or jax.default_backend()),
                "elapsed_ms": (time.perf_counter() - start) * 1000.0,
            }
        ]
        return results

    def lowered_text(self) -> str:
        specs = [jax.ShapeDtypeStruct(t.shape, _canonical(t.dtype)) for t in self.templates]
        return str(jax.make_jaxpr(self._forward)(*specs))

    def explain(self, *, json: bool = False):
        if json:
            return {"logs": [json_ready(entry) for entry in self.logs]}
        lines = []
        for entry in self.logs:
            lines.append(
                f"[run] {entry['graph']} on {entry['device']} {entry['elapsed_ms']:.3f}ms"
            )
        return "\n".join(lines)

    # Lowering ---------------------------------------------------------------
    def _forward(self, *inputs):
        values: Dict[int, Any] = {}
        for node in self._schedule:
            if node.op == PARAMETER:
                values[node.id] = inputs[node.attrs["index"]]
            elif node.op == CONSTANT:
                values[node.id] = self._constants[node.id]
            else:
                operands = self._operands(node, values)
                values[node.id] = self._kernels[node.op](*operands, **node.attrs)
        return tuple(values[idx] for idx in self.graph.outputs)

    def _operands(self, node: Node, values: Dict[int, Any]) -> List[Any]:
        operands = []
        for position, src in enumerate(node.inputs):
            value = values[src]
            target = node.compute_dtype
            if node.op == "where" and position == 0:
                target = "bool"
            elif node.op in {"logical_and", "logical_or", "logical_not"}:
                target = "bool"
            if target is None:
                target = self.graph.nodes[src].dtype
            operands.append(jnp.asarray(value, dtype=_canonical(target)))
        return operands
