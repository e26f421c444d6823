"""Compiler configuration and its resolution across configuration sources.

Options are plain keyword mappings. ``compiler``, ``device`` and ``cache_dir``
are understood by numdef itself; every other key is forwarded to the selected
compiler as a backend option. A key is taken from the most specific source
that sets it, in this order:

1. call-site options (``numdef.jit(fn, compiler=...)``, ``numdef.compile``)
2. definition options (``@defn(compiler=...)``)
3. the defining module's ``__numdef_options__`` attribute
4. process-wide defaults (``set_default_options``, seeded from the
   ``NUMDEF_COMPILER`` / ``NUMDEF_DEVICE`` environment variables)
5. the built-in ``"evaluator"`` interpreter
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .exceptions import CompilationError

logger = logging.getLogger(__name__)

FALLBACK_COMPILER = "evaluator"
MODULE_ATTRIBUTE = "__numdef_options__"
ENV_COMPILER = "NUMDEF_COMPILER"
ENV_DEVICE = "NUMDEF_DEVICE"
RESERVED_KEYS = ("compiler", "device", "cache_dir")

CompilerFn = Callable[..., Callable[..., Any]]


def _normalize_device_spec(spec: str) -> str:
    device = (spec or "").strip()
    if not device:
        return "auto"
    lowered = device.lower()
    if lowered == "gpu":
        return "cuda"
    if lowered.startswith("gpu:"):
        return "cuda:" + lowered.split(":", 1)[1]
    if lowered in {"auto", "cpu", "mps", "tpu"}:
        return lowered
    if lowered.startswith("cuda"):
        return lowered
    if lowered.startswith("mps"):
        return "mps"
    raise ValueError(f"Unsupported device specification: {spec}")


@dataclass(frozen=True)
class CompilerConfig:
    """
    Resolved compiler selection for one call.

    * ``compiler`` is a registered compiler name (``"evaluator"``, ``"jax"``,
      ``"torch"`` or a name added with ``register_compiler``) or a callable
      implementing ``compile(graph, templates, config)``.
    * ``device`` tracks the desired target (``"cpu"``, ``"cuda"``, ``"mps"``,
      ``"tpu"`` or ``"auto"``); the evaluator only runs on the CPU.
    * ``backend_options`` holds every compiler-specific option.
    * ``cache_dir`` enables on-disk compilation metadata records.
    """

    compiler: Any = FALLBACK_COMPILER
    device: str = "auto"
    backend_options: Mapping[str, Any] = field(default_factory=dict)
    cache_dir: Optional[str] = None

    def normalized(self) -> "CompilerConfig":
        compiler = self.compiler
        if compiler is None:
            compiler = FALLBACK_COMPILER
        if isinstance(compiler, str):
            compiler = compiler.strip().lower()
            if compiler not in _COMPILERS:
                known = ", ".join(sorted(_COMPILERS))
                raise CompilationError(f"Unknown compiler '{self.compiler}' (known: {known})")
        elif not callable(compiler):
            raise CompilationError(
                f"compiler must be a registered name or a callable, got {type(compiler).__name__}"
            )
        device = _normalize_device_spec(self.device)
        cache_dir = self.cache_dir
        if cache_dir is not None:
            cache_dir = str(Path(cache_dir).expanduser())
        return replace(
            self,
            compiler=compiler,
            device=device,
            backend_options=dict(self.backend_options or {}),
            cache_dir=cache_dir,
        )

    @property
    def compiler_name(self) -> str:
        if isinstance(self.compiler, str):
            return self.compiler
        return getattr(self.compiler, "__qualname__", repr(self.compiler))

    def fingerprint(self) -> Tuple[Any, ...]:
        """Hashable identity of this configuration for compiled-artifact cache keys."""
        compiler_id: Any = self.compiler if isinstance(self.compiler, str) else id(self.compiler)
        options = tuple(
            sorted((str(key), _hashable(value)) for key, value in self.backend_options.items())
        )
        return (compiler_id, self.device, options)

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "CompilerConfig":
        backend_options = {k: v for k, v in options.items() if k not in RESERVED_KEYS}
        return cls(
            compiler=options.get("compiler", FALLBACK_COMPILER),
            device=options.get("device", "auto"),
            backend_options=backend_options,
            cache_dir=options.get("cache_dir"),
        ).normalized()


def _hashable(value: Any) -> Any:
    try:
        hash(value)
    except TypeError:
        if isinstance(value, Mapping):
            return tuple(sorted((str(k), _hashable(v)) for k, v in value.items()))
        if isinstance(value, (list, tuple, set)):
            return tuple(_hashable(v) for v in value)
        return repr(value)
    return value


# Process-wide defaults ----------------------------------------------------------

_DEFAULTS_LOCK = threading.Lock()
_DEFAULTS: Optional[Dict[str, Any]] = None


def _options_from_environment() -> Dict[str, Any]:
    options: Dict[str, Any] = {}
    compiler = os.environ.get(ENV_COMPILER)
    if compiler:
        options["compiler"] = compiler
    device = os.environ.get(ENV_DEVICE)
    if device:
        options["device"] = device
    return options


def default_options() -> Dict[str, Any]:
    global _DEFAULTS
    with _DEFAULTS_LOCK:
        if _DEFAULTS is None:
            _DEFAULTS = _options_from_environment()
        return dict(_DEFAULTS)


def set_default_options(**options: Any) -> Dict[str, Any]:
    """Merge ``options`` into the process-wide defaults and return the previous ones."""
    global _DEFAULTS
    if "compiler" in options and options["compiler"] is not None:
        CompilerConfig(compiler=options["compiler"]).normalized()
    with _DEFAULTS_LOCK:
        if _DEFAULTS is None:
            _DEFAULTS = _options_from_environment()
        previous = dict(_DEFAULTS)
        for key, value in options.items():
            if value is None:
                _DEFAULTS.pop(key, None)
            else:
                _DEFAULTS[key] = value
    logger.debug("Default numdef options set to %s", _DEFAULTS)
    return previous


def reset_default_options() -> None:
    global _DEFAULTS
    with _DEFAULTS_LOCK:
        _DEFAULTS = None


def module_options(module_globals: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if not module_globals:
        return {}
    options = module_globals.get(MODULE_ATTRIBUTE)
    if options is None:
        return {}
    if not isinstance(options, Mapping):
        raise TypeError(f"{MODULE_ATTRIBUTE} must be a mapping, got {type(options).__name__}")
    return dict(options)


def resolve_config(
    *,
    call_options: Optional[Mapping[str, Any]] = None,
    definition_options: Optional[Mapping[str, Any]] = None,
    module_globals: Optional[Mapping[str, Any]] = None,
) -> CompilerConfig:
    merged: Dict[str, Any] = {}
    # Lowest priority first; later sources override key by key.
    for source in (
        default_options(),
        module_options(module_globals),
        dict(definition_options or {}),
        dict(call_options or {}),
    ):
        merged.update(source)
    return CompilerConfig.from_options(merged)


# Compiler registry ------------------------------------------------------------


def _load_evaluator() -> CompilerFn:
    from .evaluator_numpy import compile as evaluator_compile

    return evaluator_compile


def _load_jax() -> CompilerFn:
    from ..jax_backend.compile import compile as jax_compile

    return jax_compile


def _load_torch() -> CompilerFn:
    from ..torch_backend.compile import compile as torch_compile

    return torch_compile


_COMPILERS: Dict[str, Callable[[], CompilerFn]] = {
    "evaluator": _load_evaluator,
    "jax": _load_jax,
    "torch": _load_torch,
}


def register_compiler(name: str, compile_fn: CompilerFn) -> None:
    """Register ``compile_fn(graph, templates, config) -> callable`` under ``name``."""
    key = name.strip().lower()
    if not key:
        raise ValueError("Compiler name must be non-empty")
    if not callable(compile_fn):
        raise TypeError("compile_fn must be callable")
    _COMPILERS[key] = lambda: compile_fn


def registered_compilers() -> Tuple[str, ...]:
    return tuple(sorted(_COMPILERS))


def resolve_compiler(config: CompilerConfig) -> CompilerFn:
    if callable(config.compiler):
        return config.compiler
    loader = _COMPILERS.get(config.compiler)
    if loader is None:
        raise CompilationError(f"Unknown compiler '{config.compiler}'")
    return loader()
