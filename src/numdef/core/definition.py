"""Declaration surface: ``defn``, ``deftransform`` and ``deftransformp``."""

from __future__ import annotations

import functools
import inspect
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from . import dispatch
from .cache import CacheInfo, CompilationCache
from .classifier import Classification, DefinitionMode, classify
from .config import CompilerConfig
from .context import ExecutionContext, current_context, use_context
from .exceptions import ShapeOrTypeMismatch
from .session import RecordingSession
from .tensor import TensorHandle, TensorTemplate, TensorView, unwrap_view
from .tree import flatten, tree_map, unflatten

logger = logging.getLogger(__name__)

__all__ = ["Definition", "DefinitionMode", "defn", "deftransform", "deftransformp"]


class Definition:
    """A function declared as a numerical definition or as a transform.

    Numerical definitions record their body into a graph the first time they
    are called with a given input signature; the compiled graph is cached on
    the definition. Transforms are ordinary Python that runs while a graph is
    being recorded, seeing tensors only through metadata views.
    """

    def __init__(
        self,
        fn: Callable[..., Any],
        mode: DefinitionMode,
        *,
        options: Optional[Mapping[str, Any]] = None,
        private: bool = False,
    ):
        if isinstance(fn, Definition):
            fn = fn.fn
        if not callable(fn):
            raise TypeError(f"Expected a function, got {type(fn).__name__}")
        functools.update_wrapper(self, fn)
        self.fn = fn
        self.mode = mode
        self.options: Dict[str, Any] = dict(options or {})
        self.private = private
        self.name: str = getattr(fn, "__qualname__", getattr(fn, "__name__", repr(fn)))
        if "compiler" in self.options:
            CompilerConfig(compiler=self.options["compiler"]).normalized()
        self.classification: Classification = classify(fn, mode, private=private)
        self.signature = inspect.signature(fn)
        self.compilation_cache = CompilationCache()

    # Introspection ----------------------------------------------------------------
    @property
    def module_globals(self) -> Mapping[str, Any]:
        return getattr(self.fn, "__globals__", {})

    def cache_info(self) -> CacheInfo:
        return self.compilation_cache.info()

    def clear_cache(self) -> None:
        self.compilation_cache.clear()

    def __get__(self, instance: Any, owner: Any = None) -> Any:
        if instance is None:
            return self
        return functools.partial(self, instance)

    def __repr__(self) -> str:
        kind = "defn" if self.mode is DefinitionMode.GRAPH else "deftransform"
        if self.private:
            kind += "p"
        return f"<{kind} {self.name}>"

    # Calls ------------------------------------------------------------------------
    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.invoke(args, kwargs)

    def invoke(
        self,
        args: Tuple[Any, ...],
        kwargs: Mapping[str, Any],
        *,
        call_options: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        if self.mode is DefinitionMode.TRANSFORM:
            return self._call_transform(args, kwargs)
        tensor_args, static = self.bind(args, kwargs)
        session = _owning_session((tensor_args, static))
        if session is not None:
            return self._inline(session, tensor_args, static)
        return dispatch.call(self, tensor_args, static, call_options=call_options)

    def bind(self, args: Tuple[Any, ...], kwargs: Mapping[str, Any]) -> Tuple[Tuple[Any, ...], Dict[str, Any]]:
        """Split a call into positional tensor arguments and static options."""
        bound = self.signature.bind(*args, **kwargs)
        bound.apply_defaults()
        classification = self.classification
        tensors = tuple(bound.arguments[name] for name in classification.tensor_params)
        static = {name: bound.arguments[name] for name in classification.static_params}
        self.check_static(static)
        return tensors, static

    def check_static(self, static: Mapping[str, Any]) -> None:
        for name, value in static.items():
            leaves, _ = flatten(value)
            if any(isinstance(unwrap_view(leaf), TensorHandle) for leaf in leaves):
                raise ShapeOrTypeMismatch(
                    f"Static option '{name}' of {self.name} must be a host value, not a tensor"
                )
        dispatch.static_key(static)

    def _inline(
        self,
        session: RecordingSession,
        tensor_args: Tuple[Any, ...],
        static: Mapping[str, Any],
    ) -> Any:
        """Record the body into ``session``, as part of the caller's graph."""
        from_transform = session.active_transform is not None

        def to_handle(leaf: Any) -> Any:
            leaf = unwrap_view(leaf)
            if isinstance(leaf, TensorHandle):
                return leaf
            if isinstance(leaf, TensorTemplate):
                raise ShapeOrTypeMismatch("Templates can only be passed to top-level calls")
            return session.constant(dispatch.to_array(leaf))

        dispatch.check_tree(tensor_args, "argument")
        handles = tree_map(to_handle, tensor_args)
        logger.debug("Inlining %s into %s", self.name, session.graph.name)
        with use_context(ExecutionContext.recording(session)):
            result = self.fn(*handles, **dict(static))
            outputs, out_tree = dispatch.collect_outputs(session, result)

        if from_transform:
            return unflatten(out_tree, [TensorView(h) for h in outputs])
        return unflatten(out_tree, outputs)

    def _call_transform(self, args: Tuple[Any, ...], kwargs: Mapping[str, Any]) -> Any:
        session = _owning_session((args, dict(kwargs)))
        if session is None:
            return self.fn(*args, **kwargs)
        if session.active_transform is not None and not current_context().is_recording:
            # Called from another transform: stay host code, inject at the outermost boundary.
            result = self.fn(*session.views(args), **session.views(dict(kwargs)))
            return session.views(result)
        logger.debug("Running transform %s while recording %s", self.name, session.graph.name)
        with session.suspended(self.name):
            result = self.fn(*session.views(args), **session.views(dict(kwargs)))
        return session.inject(result, self.name)


def _owning_session(tree: Any) -> Optional[RecordingSession]:
    leaves, _ = flatten(tree)
    for leaf in leaves:
        leaf = unwrap_view(leaf)
        if isinstance(leaf, TensorHandle):
            return leaf.session
    context = current_context()
    if context.is_recording:
        return context.session
    return None


# Decorators -------------------------------------------------------------------


def defn(fn: Optional[Callable[..., Any]] = None, **options: Any) -> Any:
    """Declare a numerical definition.

    Usable bare (``@defn``) or with compiler options
    (``@defn(compiler="jax", enable_x64=True)``).
    """
    if fn is None:
        return lambda f: Definition(f, DefinitionMode.GRAPH, options=options)
    return Definition(fn, DefinitionMode.GRAPH, options=options)


def deftransform(fn: Optional[Callable[..., Any]] = None, **options: Any) -> Any:
    """Declare a transform: host code that runs while a graph is recorded."""
    if fn is None:
        return lambda f: Definition(f, DefinitionMode.TRANSFORM, options=options)
    return Definition(fn, DefinitionMode.TRANSFORM, options=options)


def deftransformp(fn: Optional[Callable[..., Any]] = None, **options: Any) -> Any:
    """Declare a private transform, left out of its module's exports."""
    if fn is None:
        return lambda f: Definition(f, DefinitionMode.TRANSFORM, options=options, private=True)
    return Definition(fn, DefinitionMode.TRANSFORM, options=options, private=True)
