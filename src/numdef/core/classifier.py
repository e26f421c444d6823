"""Static analysis of definition bodies.

Numerical definitions are parsed once, when they are decorated, and checked
for host constructs that cannot be recorded into a graph. The pass tracks
which local names hold tensors: positional parameters do, as does anything
computed from a tensor, except metadata (``x.shape``, ``len(x)``,
``numdef.rank(x)``...) and the results of transform calls, which are ordinary
host values known while the graph is built.
"""

from __future__ import annotations

import ast
import builtins
import enum
import inspect
import logging
import textwrap
import threading
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from .exceptions import RestrictedSyntaxError

logger = logging.getLogger(__name__)


class DefinitionMode(enum.Enum):
    GRAPH = "graph"
    TRANSFORM = "transform"


@dataclass(frozen=True)
class Classification:
    name: str
    mode: DefinitionMode
    tensor_params: Tuple[str, ...]
    static_params: Tuple[str, ...]
    private: bool = False
    source_checked: bool = False


METADATA_ATTRIBUTES = {"shape", "ndim", "dtype", "size"}
METADATA_FUNCTIONS = {"shape", "rank", "size", "dtype"}
STATIC_BUILTINS = (len, isinstance, type, callable, hasattr, id, repr, str)

_FORBIDDEN: Dict[type, str] = {
    ast.While: "while loops",
    ast.Try: "try statements",
    ast.With: "with statements",
    ast.AsyncWith: "async with statements",
    ast.AsyncFor: "async for loops",
    ast.Raise: "raise statements (validate inputs in a transform instead)",
    ast.Global: "global declarations",
    ast.Nonlocal: "nonlocal declarations",
    ast.Import: "imports",
    ast.ImportFrom: "imports",
    ast.Delete: "del statements",
    ast.ClassDef: "class definitions",
    ast.FunctionDef: "nested function definitions",
    ast.AsyncFunctionDef: "nested function definitions",
    ast.Lambda: "lambda expressions",
    ast.Yield: "yield expressions",
    ast.YieldFrom: "yield expressions",
    ast.Await: "await expressions",
}
if hasattr(ast, "TryStar"):
    _FORBIDDEN[ast.TryStar] = "try statements"
if hasattr(ast, "Match"):
    _FORBIDDEN[ast.Match] = "match statements"

# Keyed by function object: closures of one factory share code but not callees.
_CACHE: "weakref.WeakKeyDictionary[Any, Dict[Tuple[DefinitionMode, bool], Classification]]" = (
    weakref.WeakKeyDictionary()
)
_CACHE_LOCK = threading.Lock()


# Public API -------------------------------------------------------------------


def classify(fn: Callable[..., Any], mode: DefinitionMode, *, private: bool = False) -> Classification:
    """Classify ``fn`` for ``mode``; results are cached per function object."""
    key = (mode, private)
    with _CACHE_LOCK:
        cached = _cached_entries(fn).get(key)
    if cached is not None:
        return cached
    result = _classify(fn, mode, private)
    with _CACHE_LOCK:
        result = _cached_entries(fn, create=True).setdefault(key, result)
    return result


def _cached_entries(
    fn: Callable[..., Any], *, create: bool = False
) -> Dict[Tuple[DefinitionMode, bool], Classification]:
    try:
        entries = _CACHE.get(fn)
        if entries is None and create:
            entries = _CACHE[fn] = {}
    except TypeError:
        # Not weakly referenceable; classified again on every call.
        return {}
    return entries if entries is not None else {}


def clear_classification_cache() -> None:
    with _CACHE_LOCK:
        _CACHE.clear()


# Implementation ---------------------------------------------------------------


def _classify(fn: Callable[..., Any], mode: DefinitionMode, private: bool) -> Classification:
    name = getattr(fn, "__qualname__", getattr(fn, "__name__", repr(fn)))
    tensor_params, static_params = _split_parameters(fn, name, mode)
    if mode is DefinitionMode.TRANSFORM:
        logger.debug("Classified %s as a transform", name)
        return Classification(name, mode, tensor_params, static_params, private=private)

    source = _function_source(fn)
    if source is None:
        logger.warning(
            "Source of numerical definition %s is unavailable; skipping static checks "
            "(tensor handles still reject value-dependent control flow when recorded)",
            name,
        )
        return Classification(name, mode, tensor_params, static_params, source_checked=False)

    text, first_line = source
    func_node: Optional[Union[ast.FunctionDef, ast.Lambda]]
    if getattr(getattr(fn, "__code__", None), "co_name", None) == "<lambda>":
        func_node = _find_lambda(text, tensor_params + static_params)
        if func_node is None:
            logger.warning(
                "Cannot locate the lambda %s in its source line; skipping static checks "
                "(tensor handles still reject value-dependent control flow when recorded)",
                name,
            )
            return Classification(name, mode, tensor_params, static_params, source_checked=False)
    else:
        func_node = _parse_function(text, name)
    checker = _BodyChecker(
        fn,
        name,
        tensor_params,
        raw_lines=text.splitlines(),
        line_offset=first_line - 1,
    )
    checker.check(func_node)
    logger.debug("Classified %s as a numerical definition (tensor parameters: %s)", name, tensor_params)
    return Classification(name, mode, tensor_params, static_params, source_checked=True)


def _split_parameters(
    fn: Callable[..., Any],
    name: str,
    mode: DefinitionMode,
) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return (), ()
    tensors: List[str] = []
    static: List[str] = []
    for param in signature.parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            if mode is DefinitionMode.GRAPH:
                raise RestrictedSyntaxError(
                    f"Numerical definition '{name}' cannot take variadic parameter "
                    f"'{param.name}'; pass a tuple or dict of tensors instead"
                )
            continue
        if param.kind is param.KEYWORD_ONLY:
            static.append(param.name)
        else:
            tensors.append(param.name)
    return tuple(tensors), tuple(static)


def _function_source(fn: Callable[..., Any]) -> Optional[Tuple[str, int]]:
    try:
        lines, first_line = inspect.getsourcelines(fn)
    except (OSError, TypeError):
        return None
    return "".join(lines), max(first_line, 1)


def _parse_function(text: str, name: str) -> ast.FunctionDef:
    try:
        module = ast.parse(textwrap.dedent(text))
    except SyntaxError:
        raise RestrictedSyntaxError(f"Could not parse the source of '{name}'") from None
    for node in module.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            if isinstance(node, ast.AsyncFunctionDef):
                raise RestrictedSyntaxError(
                    f"Numerical definition '{name}' cannot be async",
                    line=node.lineno,
                )
            return node
    raise RestrictedSyntaxError(
        f"'{name}' is not a plain function; numerical definitions must be written with def"
    )


def _find_lambda(text: str, params: Tuple[str, ...]) -> Optional[ast.Lambda]:
    """The only lambda in ``text`` whose parameters are ``params``, if unambiguous."""
    try:
        module = ast.parse(textwrap.dedent(text))
    except SyntaxError:
        return None
    found = []
    for node in ast.walk(module):
        if isinstance(node, ast.Lambda):
            args = node.args
            names = tuple(a.arg for a in (*args.posonlyargs, *args.args, *args.kwonlyargs))
            if names == params:
                found.append(node)
    return found[0] if len(found) == 1 else None


class _BodyChecker:
    """Taint pass over one function body."""

    def __init__(
        self,
        fn: Callable[..., Any],
        name: str,
        tensor_params: Iterable[str],
        *,
        raw_lines: List[str],
        line_offset: int,
    ):
        self.fn = fn
        self.name = name
        self.tensors: Set[str] = set(tensor_params)
        self.raw_lines = raw_lines
        self.line_offset = line_offset
        self.indent = 0
        if raw_lines:
            first = raw_lines[0]
            self.indent = len(first) - len(first.lstrip())

    def check(self, func: Union[ast.FunctionDef, ast.Lambda]) -> None:
        if isinstance(func, ast.Lambda):
            self._expr(func.body)
        else:
            self._block(func.body)

    # Errors ---------------------------------------------------------------------
    def _reject(self, node: ast.AST, message: str) -> RestrictedSyntaxError:
        lineno = getattr(node, "lineno", None)
        col = getattr(node, "col_offset", None)
        line_text = None
        if lineno is not None and 0 < lineno <= len(self.raw_lines):
            line_text = self.raw_lines[lineno - 1].rstrip("\n")
        return RestrictedSyntaxError(
            f"In numerical definition '{self.name}': {message}",
            line=None if lineno is None else lineno + self.line_offset,
            column=None if col is None else col + self.indent + 1,
            line_text=line_text,
        )

    def _forbid_tensor(self, node: ast.AST, what: str) -> None:
        if self._expr(node):
            raise self._reject(
                node,
                f"{what} depends on a tensor value, which is only known when the compiled "
                "graph runs; branch on shapes or static options, use numdef.where, "
                "or move the logic into a transform",
            )

    # Statements -----------------------------------------------------------------
    def _block(self, body: List[ast.stmt]) -> None:
        for stmt in body:
            self._stmt(stmt)

    def _stmt(self, stmt: ast.stmt) -> None:
        reason = _FORBIDDEN.get(type(stmt))
        if reason is not None:
            raise self._reject(stmt, f"{reason} are not supported")
        if isinstance(stmt, ast.Assign):
            tainted = self._expr(stmt.value)
            for target in stmt.targets:
                self._assign(target, stmt.value, tainted)
        elif isinstance(stmt, ast.AnnAssign):
            if stmt.value is not None:
                self._assign(stmt.target, stmt.value, self._expr(stmt.value))
        elif isinstance(stmt, ast.AugAssign):
            tainted = self._expr(stmt.value) or self._expr(stmt.target)
            self._bind(stmt.target, tainted)
        elif isinstance(stmt, ast.If):
            self._forbid_tensor(stmt.test, "if condition")
            before = set(self.tensors)
            self._block(stmt.body)
            after_body = self.tensors
            self.tensors = set(before)
            self._block(stmt.orelse)
            self.tensors |= after_body
        elif isinstance(stmt, ast.For):
            self._forbid_tensor(stmt.iter, "for loop iterable")
            self._bind(stmt.target, False)
            # Twice, so names that become tensors late in the body are seen at the top.
            for _ in range(2):
                self._block(stmt.body)
            self._block(stmt.orelse)
        elif isinstance(stmt, ast.Assert):
            self._forbid_tensor(stmt.test, "assert condition")
            if stmt.msg is not None:
                self._expr(stmt.msg)
        elif isinstance(stmt, (ast.Return, ast.Expr)):
            if stmt.value is not None:
                self._expr(stmt.value)
        elif isinstance(stmt, (ast.Pass, ast.Break, ast.Continue)):
            return
        else:
            raise self._reject(stmt, f"{type(stmt).__name__} statements are not supported")

    def _assign(self, target: ast.expr, value: ast.expr, tainted: bool) -> None:
        if isinstance(target, (ast.Tuple, ast.List)) and isinstance(value, (ast.Tuple, ast.List)):
            if len(target.elts) == len(value.elts) and not any(
                isinstance(e, ast.Starred) for e in target.elts
            ):
                for sub_target, sub_value in zip(target.elts, value.elts):
                    self._assign(sub_target, sub_value, self._expr(sub_value))
                return
        self._bind(target, tainted)

    def _bind(self, target: ast.expr, tainted: bool) -> None:
        if isinstance(target, ast.Name):
            if tainted:
                self.tensors.add(target.id)
            else:
                self.tensors.discard(target.id)
        elif isinstance(target, (ast.Tuple, ast.List)):
            for element in target.elts:
                self._bind(element, tainted)
        elif isinstance(target, ast.Starred):
            self._bind(target.value, tainted)
        elif isinstance(target, (ast.Subscript, ast.Attribute)):
            raise self._reject(target, "item and attribute assignment are not supported")

    # Expressions ----------------------------------------------------------------
    def _expr(self, node: Optional[ast.AST]) -> bool:
        """Check ``node`` and return True when it evaluates to a tensor."""
        if node is None:
            return False
        reason = _FORBIDDEN.get(type(node))
        if reason is not None:
            raise self._reject(node, f"{reason} are not supported")
        if isinstance(node, ast.Name):
            return node.id in self.tensors
        if isinstance(node, ast.Constant):
            return False
        if isinstance(node, ast.Attribute):
            tainted = self._expr(node.value)
            if node.attr in METADATA_ATTRIBUTES:
                return False
            return tainted
        if isinstance(node, ast.Subscript):
            tainted = self._expr(node.value)
            self._forbid_tensor(node.slice, "index")
            return tainted
        if isinstance(node, ast.Slice):
            parts = [self._expr(p) for p in (node.lower, node.upper, node.step)]
            return any(parts)
        if isinstance(node, ast.BinOp):
            left = self._expr(node.left)
            right = self._expr(node.right)
            return left or right
        if isinstance(node, ast.UnaryOp):
            tainted = self._expr(node.operand)
            if isinstance(node.op, ast.Not) and tainted:
                raise self._reject(
                    node, "'not' on a tensor needs its value; use numdef.logical_not"
                )
            return tainted
        if isinstance(node, ast.BoolOp):
            for value in node.values:
                if self._expr(value):
                    raise self._reject(
                        node,
                        "'and'/'or' on a tensor needs its value; use numdef.logical_and "
                        "or numdef.logical_or",
                    )
            return False
        if isinstance(node, ast.Compare):
            operands = [node.left, *node.comparators]
            tainted = [self._expr(operand) for operand in operands]
            if any(tainted):
                if len(node.ops) > 1:
                    raise self._reject(node, "chained comparisons of tensors are not supported")
                if isinstance(node.ops[0], (ast.In, ast.NotIn)):
                    raise self._reject(node, "membership tests on tensors are not supported")
                if isinstance(node.ops[0], (ast.Is, ast.IsNot)):
                    return False
                return True
            return False
        if isinstance(node, ast.IfExp):
            self._forbid_tensor(node.test, "conditional expression")
            body = self._expr(node.body)
            orelse = self._expr(node.orelse)
            return body or orelse
        if isinstance(node, ast.Call):
            return self._call(node)
        if isinstance(node, (ast.Tuple, ast.List, ast.Set)):
            return any([self._expr(e) for e in node.elts])
        if isinstance(node, ast.Dict):
            keys = [self._expr(k) for k in node.keys if k is not None]
            values = [self._expr(v) for v in node.values]
            return any(keys) or any(values)
        if isinstance(node, ast.Starred):
            return self._expr(node.value)
        if isinstance(node, (ast.ListComp, ast.SetComp, ast.GeneratorExp, ast.DictComp)):
            return self._comprehension(node)
        if isinstance(node, ast.JoinedStr):
            for value in node.values:
                self._expr(value)
            return False
        if isinstance(node, ast.FormattedValue):
            self._forbid_tensor(node.value, "string formatting")
            return False
        if isinstance(node, ast.NamedExpr):
            tainted = self._expr(node.value)
            self._bind(node.target, tainted)
            return tainted
        raise self._reject(node, f"{type(node).__name__} expressions are not supported")

    def _comprehension(self, node: ast.AST) -> bool:
        saved = set(self.tensors)
        try:
            for generator in node.generators:  # type: ignore[attr-defined]
                if generator.is_async:
                    raise self._reject(node, "async comprehensions are not supported")
                self._forbid_tensor(generator.iter, "comprehension iterable")
                self._bind(generator.target, False)
                for condition in generator.ifs:
                    self._forbid_tensor(condition, "comprehension condition")
            if isinstance(node, ast.DictComp):
                return self._expr(node.key) or self._expr(node.value)
            return self._expr(node.elt)  # type: ignore[attr-defined]
        finally:
            self.tensors = saved

    def _call(self, node: ast.Call) -> bool:
        args = [self._expr(arg) for arg in node.args]
        kwargs = [self._expr(kw.value) for kw in node.keywords]
        tainted = any(args) or any(kwargs)
        callee_tainted = self._expr(node.func) if not isinstance(node.func, ast.Name) else False
        target = self._resolve(node.func)
        if target is not None:
            if _is_transform(target):
                return False
            if _is_metadata_function(target) or any(target is b for b in STATIC_BUILTINS):
                return False
        if isinstance(node.func, ast.Attribute) and node.func.attr in METADATA_FUNCTIONS and target is None:
            # ``nd.shape(x)`` through an alias we could not resolve.
            return False
        return tainted or callee_tainted

    def _resolve(self, func: ast.expr) -> Any:
        """Resolve a dotted callee against the function's globals, if possible."""
        parts: List[str] = []
        node = func
        while isinstance(node, ast.Attribute):
            parts.append(node.attr)
            node = node.value
        if not isinstance(node, ast.Name) or node.id in self.tensors:
            return None
        parts.append(node.id)
        parts.reverse()
        scope = getattr(self.fn, "__globals__", {})
        sentinel = object()
        value = scope.get(parts[0], sentinel)
        if value is sentinel:
            closure = _closure_vars(self.fn)
            value = closure.get(parts[0], sentinel)
        if value is sentinel:
            value = getattr(builtins, parts[0], sentinel)
        if value is sentinel:
            return None
        for attr in parts[1:]:
            try:
                value = getattr(value, attr)
            except AttributeError:
                return None
        return value


def _closure_vars(fn: Callable[..., Any]) -> Dict[str, Any]:
    try:
        return dict(inspect.getclosurevars(fn).nonlocals)
    except (TypeError, ValueError):
        return {}


def _is_transform(value: Any) -> bool:
    classification = getattr(value, "classification", None)
    return isinstance(classification, Classification) and classification.mode is DefinitionMode.TRANSFORM


def _is_metadata_function(value: Any) -> bool:
    return getattr(value, "__module__", None) == "numdef.core.ops" and getattr(
        value, "__name__", None
    ) in METADATA_FUNCTIONS
