"""Top-level calls of numerical definitions: trace, compile, cache and run."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Hashable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .cache import CacheManager, cache_fingerprint, cache_key_from_fingerprint
from .config import CompilerConfig, resolve_compiler, resolve_config
from .context import ExecutionContext, use_context
from .exceptions import CompilationError, SessionError, ShapeOrTypeMismatch
from .graph import Graph
from .session import RecordingSession
from .shape_checker import check_dtype
from .tensor import TensorHandle, TensorTemplate, TensorView, is_tensor_like, unwrap_view
from .tree import TreeDef, flatten, unflatten

if TYPE_CHECKING:
    from .definition import Definition

logger = logging.getLogger(__name__)

# Python numbers passed at the top level become tensors of these types.
PYTHON_SCALAR_DTYPES = {
    bool: "bool",
    int: "int64",
    float: "float32",
    complex: "complex64",
}


@dataclass
class CompiledEntry:
    graph: Graph
    executable: Callable[..., Sequence[Any]]
    config: CompilerConfig
    templates: Tuple[TensorTemplate, ...]
    compile_ms: float = 0.0


# Inputs -----------------------------------------------------------------------


def _python_scalar_dtype(value: Any) -> Optional[str]:
    if isinstance(value, np.generic):
        return None
    for kind in (bool, int, float, complex):
        if isinstance(value, kind):
            return PYTHON_SCALAR_DTYPES[kind]
    return None


def to_array(value: Any) -> np.ndarray:
    """Convert one top-level argument to a NumPy array, or raise ShapeOrTypeMismatch."""
    scalar_dtype = _python_scalar_dtype(value)
    if scalar_dtype is not None:
        return np.asarray(value, dtype=scalar_dtype)
    if isinstance(value, (TensorHandle, TensorView)):
        raise SessionError("Tensor handles cannot be passed to a separate top-level call")
    if not is_tensor_like(value):
        raise ShapeOrTypeMismatch(
            f"Numerical definitions take tensors or numbers, got {type(value).__name__}"
        )
    array = np.asarray(value)
    check_dtype(array.dtype)
    return array


def check_tree(value: Any, where: str) -> None:
    if isinstance(value, list):
        raise ShapeOrTypeMismatch(
            f"{where}: lists are not tensors; convert them with numdef.tensor "
            "(inside a transform if they need validation) or pass a tuple"
        )
    if isinstance(value, tuple):
        for item in value:
            check_tree(item, where)
    elif isinstance(value, dict):
        for item in value.values():
            check_tree(item, where)
    elif value is None or isinstance(value, (str, bytes)):
        raise ShapeOrTypeMismatch(f"{where}: expected a tensor or a number, got {type(value).__name__}")


def flatten_inputs(
    args: Tuple[Any, ...],
    *,
    allow_templates: bool = False,
) -> Tuple[List[Any], TreeDef]:
    check_tree(args, "argument")
    leaves, treedef = flatten(args)
    converted: List[Any] = []
    for leaf in leaves:
        if allow_templates and isinstance(leaf, TensorTemplate):
            converted.append(leaf)
        else:
            converted.append(to_array(leaf))
    return converted, treedef


def static_key(static: Mapping[str, Any]) -> Tuple[Tuple[str, Any], ...]:
    items = tuple(sorted(static.items(), key=lambda item: item[0]))
    bad = [name for name, value in items if not _is_hashable(value)]
    if bad:
        raise ShapeOrTypeMismatch(
            f"Static options must be hashable; got unhashable value(s) for {', '.join(bad)}"
        )
    # 1, 1.0 and True hash alike but may trace differently.
    return tuple((name, _typed(value)) for name, value in items)


def _typed(value: Any) -> Any:
    if isinstance(value, tuple):
        return (type(value), tuple(_typed(item) for item in value))
    return (type(value), value)


def _is_hashable(value: Any) -> bool:
    try:
        hash(value)
    except TypeError:
        return False
    return True


# Outputs ----------------------------------------------------------------------


def collect_outputs(session: RecordingSession, result: Any) -> Tuple[List[TensorHandle], TreeDef]:
    """Turn a definition's return value into graph outputs."""
    check_tree(result, "return value")
    leaves, treedef = flatten(result)
    handles: List[TensorHandle] = []
    for leaf in leaves:
        leaf = unwrap_view(leaf)
        if isinstance(leaf, TensorHandle):
            if leaf.session is not session:
                leaf.session.check_usable()
                raise SessionError(
                    f"'{session.graph.name}' returned a tensor recorded by '{leaf.session.graph.name}'"
                )
            handles.append(leaf)
        else:
            handles.append(session.constant(to_array(leaf)))
    return handles, treedef


# Tracing ----------------------------------------------------------------------


def trace(
    definition: "Definition",
    templates: Sequence[TensorTemplate],
    treedef: TreeDef,
    static: Mapping[str, Any],
) -> Graph:
    """Record ``definition`` into a fresh graph.

    The session is closed whatever happens, so handles never outlive the call
    and a failing transform leaves nothing behind.
    """
    session = RecordingSession(definition.name)
    try:
        with use_context(ExecutionContext.recording(session)):
            params = [session.parameter(t) for t in templates]
            args = unflatten(treedef, params)
            result = definition.fn(*args, **dict(static))
            outputs, out_tree = collect_outputs(session, result)
    finally:
        session.close()
    graph = session.graph
    graph.outputs = [handle.node.id for handle in outputs]
    graph.output_tree = out_tree
    graph.input_tree = treedef
    graph.validate()
    return graph


# Compilation ------------------------------------------------------------------


def build(
    definition: "Definition",
    templates: Sequence[TensorTemplate],
    treedef: TreeDef,
    static: Mapping[str, Any],
    config: CompilerConfig,
) -> CompiledEntry:
    start = time.perf_counter()
    graph = trace(definition, templates, treedef, static)
    compile_fn = resolve_compiler(config)
    try:
        executable = compile_fn(graph, list(templates), config)
    except CompilationError:
        raise
    except Exception as exc:
        raise CompilationError(
            f"Compiler '{config.compiler_name}' failed on '{definition.name}': {exc}"
        ) from exc
    if not callable(executable):
        raise CompilationError(
            f"Compiler '{config.compiler_name}' returned a non-callable {type(executable).__name__}"
        )
    elapsed_ms = (time.perf_counter() - start) * 1000.0
    if config.cache_dir:
        _write_record(definition, graph, templates, config, elapsed_ms)
    logger.info(
        "Compiled %s with %s for (%s) in %.1fms",
        definition.name,
        config.compiler_name,
        ", ".join(f"{t.dtype}{list(t.shape)}" for t in templates),
        elapsed_ms,
    )
    return CompiledEntry(graph, executable, config, tuple(templates), elapsed_ms)


def _write_record(
    definition: "Definition",
    graph: Graph,
    templates: Sequence[TensorTemplate],
    config: CompilerConfig,
    elapsed_ms: float,
) -> None:
    digest = graph.digest()
    signature = tuple((t.shape, t.dtype) for t in templates)
    fingerprint = cache_fingerprint(
        graph_digest=digest,
        compiler=config.compiler_name,
        device=config.device,
        signature=signature,
        backend_options=dict(config.backend_options),
    )
    key = cache_key_from_fingerprint(fingerprint)
    path = CacheManager(config.cache_dir).write_metadata(
        config.compiler_name,
        key,
        {
            "definition": definition.name,
            "graph_digest": digest,
            "compiler": config.compiler_name,
            "device": config.device,
            "shapes": [list(t.shape) for t in templates],
            "dtypes": [t.dtype for t in templates],
            "nodes": len(graph.nodes),
            "injected_constants": len(graph.injected_constants()),
            "compile_ms": elapsed_ms,
            "versions": fingerprint["versions"],
        },
    )
    logger.debug("Wrote compilation record %s", path)


def cache_key(
    templates: Sequence[TensorTemplate],
    treedef: TreeDef,
    static: Tuple[Tuple[str, Any], ...],
    config: CompilerConfig,
) -> Hashable:
    return (
        tuple(t.shape for t in templates),
        tuple(t.dtype for t in templates),
        static,
        treedef,
        config.fingerprint(),
    )


def lookup(
    definition: "Definition",
    templates: Sequence[TensorTemplate],
    treedef: TreeDef,
    static: Mapping[str, Any],
    config: CompilerConfig,
) -> CompiledEntry:
    key = cache_key(templates, treedef, static_key(static), config)
    cache = definition.compilation_cache
    if key in cache:
        logger.debug("Cache hit for %s", definition.name)
    return cache.get_or_compile(key, lambda: build(definition, templates, treedef, static, config))


# Execution --------------------------------------------------------------------


def run_entry(entry: CompiledEntry, arrays: Sequence[np.ndarray]) -> Any:
    outputs = entry.executable(*arrays)
    results = [
        np.asarray(value, dtype=entry.graph.nodes[node_id].dtype)
        for value, node_id in zip(outputs, entry.graph.outputs)
    ]
    return unflatten(entry.graph.output_tree, results)


def call(
    definition: "Definition",
    args: Tuple[Any, ...],
    static: Mapping[str, Any],
    call_options: Optional[Mapping[str, Any]] = None,
) -> Any:
    arrays, treedef = flatten_inputs(args)
    templates = [TensorTemplate.from_value(a) for a in arrays]
    config = resolve_config(
        call_options=call_options,
        definition_options=definition.options,
        module_globals=definition.module_globals,
    )
    entry = lookup(definition, templates, treedef, static, config)
    return run_entry(entry, arrays)


# Public entry points ----------------------------------------------------------


class JitFunction:
    """A numerical definition bound to call-site compiler options."""

    def __init__(self, definition: "Definition", options: Mapping[str, Any]):
        self.definition = definition
        self.options = dict(options)
        self.__name__ = definition.__name__
        self.__qualname__ = definition.name
        self.__doc__ = definition.__doc__
        # Fail fast on unknown compilers.
        if "compiler" in self.options:
            CompilerConfig(compiler=self.options["compiler"]).normalized()

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.definition.invoke(args, kwargs, call_options=self.options)

    def __repr__(self) -> str:
        return f"JitFunction({self.definition.name}, {self.options})"


class CompiledFunction:
    """Ahead-of-time compilation of a definition for fixed input templates."""

    def __init__(
        self,
        definition: "Definition",
        entry: CompiledEntry,
        treedef: TreeDef,
        static: Mapping[str, Any],
    ):
        self.definition = definition
        self.entry = entry
        self.treedef = treedef
        self.static = dict(static)

    @property
    def graph(self) -> Graph:
        return self.entry.graph

    @property
    def templates(self) -> Tuple[TensorTemplate, ...]:
        return self.entry.templates

    @property
    def config(self) -> CompilerConfig:
        return self.entry.config

    def __call__(self, *args: Any) -> Any:
        arrays, treedef = flatten_inputs(args)
        if treedef != self.treedef:
            raise ShapeOrTypeMismatch(
                f"{self.definition.name} was compiled for arguments {self.treedef.describe()}, "
                f"got {treedef.describe()}"
            )
        for position, (array, expected) in enumerate(zip(arrays, self.templates)):
            actual = TensorTemplate.from_value(array)
            if actual != expected:
                raise ShapeOrTypeMismatch(
                    f"{self.definition.name} input {position} was compiled for "
                    f"{expected.dtype}{list(expected.shape)}, got {actual.dtype}{list(actual.shape)}"
                )
        return run_entry(self.entry, arrays)

    def explain(self, *, json: bool = False) -> Any:
        explain_fn = getattr(self.entry.executable, "explain", None)
        if json:
            data: Dict[str, Any] = {
                "definition": self.definition.name,
                "compiler": self.config.compiler_name,
                "graph": self.graph.explain(json=True),
            }
            if callable(explain_fn):
                data["execution"] = explain_fn(json=True)
            return data
        text = f"# compiler: {self.config.compiler_name}\n{self.graph.explain()}"
        if callable(explain_fn):
            logs = explain_fn()
            if logs:
                text += "\n# last run\n" + logs
        return text

    def __repr__(self) -> str:
        signature = ", ".join(f"{t.dtype}{list(t.shape)}" for t in self.templates)
        return f"CompiledFunction({self.definition.name}({signature}), compiler={self.config.compiler_name})"


def _as_definition(fn: Any) -> "Definition":
    from .definition import Definition, DefinitionMode, defn

    if isinstance(fn, JitFunction):
        return fn.definition
    if isinstance(fn, Definition):
        if fn.mode is not DefinitionMode.GRAPH:
            raise TypeError(f"{fn.name} is a transform; only numerical definitions can be compiled")
        return fn
    if not callable(fn):
        raise TypeError(f"Expected a function, got {type(fn).__name__}")
    return defn(fn)


def jit(fn: Any, **options: Any) -> JitFunction:
    """Bind call-site compiler options to ``fn``; plain functions are wrapped with ``defn``."""
    definition = _as_definition(fn)
    if isinstance(fn, JitFunction):
        options = {**fn.options, **options}
    return JitFunction(definition, options)


def compile(fn: Any, *templates: Any, static: Optional[Mapping[str, Any]] = None, **options: Any) -> CompiledFunction:
    """Compile ``fn`` ahead of time for ``templates`` (``numdef.template`` values or arrays)."""
    definition = _as_definition(fn)
    if isinstance(fn, JitFunction):
        options = {**fn.options, **options}
    static = dict(static or {})
    definition.check_static(static)
    leaves, treedef = flatten_inputs(tuple(templates), allow_templates=True)
    leaf_templates = [TensorTemplate.from_value(leaf) for leaf in leaves]
    config = resolve_config(
        call_options=options,
        definition_options=definition.options,
        module_globals=definition.module_globals,
    )
    entry = lookup(definition, leaf_templates, treedef, static, config)
    return CompiledFunction(definition, entry, treedef, static)


def debug_expr(fn: Any) -> Callable[..., Graph]:
    """Return a function that records ``fn`` for the given arguments and returns the graph."""
    definition = _as_definition(fn)

    def record(*args: Any, **kwargs: Any) -> Graph:
        tensor_args, static = definition.bind(args, kwargs)
        static_key(static)
        leaves, treedef = flatten_inputs(tensor_args, allow_templates=True)
        leaf_templates = [TensorTemplate.from_value(leaf) for leaf in leaves]
        return trace(definition, leaf_templates, treedef, static)

    record.__name__ = f"debug_expr_{definition.__name__}"
    return record
