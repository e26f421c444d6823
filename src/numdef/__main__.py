from __future__ import annotations

import argparse
import importlib
import importlib.util
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .core.definition import Definition
from .core.dispatch import debug_expr, jit
from .core.exceptions import NumdefError


def _load_target(spec: str) -> Any:
    if ":" not in spec:
        raise SystemExit(f"Expected module:function, got '{spec}'")
    module_ref, _, attr = spec.rpartition(":")
    path = Path(module_ref)
    if module_ref.endswith(".py") or path.exists():
        if not path.exists():
            raise SystemExit(f"Module file not found: {path}")
        module_name = f"_numdef_cli_{path.stem}"
        module_spec = importlib.util.spec_from_file_location(module_name, path)
        if module_spec is None or module_spec.loader is None:
            raise SystemExit(f"Cannot import {path}")
        module = importlib.util.module_from_spec(module_spec)
        sys.modules[module_name] = module
        module_spec.loader.exec_module(module)
    else:
        module = importlib.import_module(module_ref)
    target: Any = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError:
            raise SystemExit(f"'{module_ref}' has no attribute '{attr}'") from None
    if not isinstance(target, Definition):
        raise SystemExit(f"'{spec}' is not declared with @defn")
    return target


def _load_argument(text: str) -> Any:
    path = Path(text)
    suffix = path.suffix.lower()
    if suffix in {".npy", ".npz", ".json"} and not path.exists():
        raise SystemExit(f"Argument file not found: {path}")
    if suffix == ".npy":
        return np.load(path, allow_pickle=False)
    if suffix == ".npz":
        with np.load(path, allow_pickle=False) as data:
            return {name: data[name] for name in data.files}
    if suffix == ".json":
        value = json.loads(path.read_text(encoding="utf-8"))
    else:
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            raise SystemExit(f"Cannot interpret argument '{text}' as a file or a JSON value") from None
    return _json_to_inputs(value)


def _json_to_inputs(value: Any) -> Any:
    if isinstance(value, list):
        return np.asarray(value)
    if isinstance(value, dict):
        return {key: _json_to_inputs(item) for key, item in value.items()}
    return value


def _parse_static(items: List[str]) -> Dict[str, Any]:
    static: Dict[str, Any] = {}
    for item in items:
        name, sep, raw = item.partition("=")
        if not sep or not name:
            raise SystemExit(f"Static options take the form name=value, got '{item}'")
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        static[name] = _freeze(value)
    return static


def _freeze(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_freeze(item) for item in value)
    return value


def _flatten_result(result: Any, prefix: str = "output") -> List[Tuple[str, np.ndarray]]:
    if isinstance(result, dict):
        items: List[Tuple[str, np.ndarray]] = []
        for key, value in result.items():
            items.extend(_flatten_result(value, f"{prefix}.{key}"))
        return items
    if isinstance(result, tuple):
        items = []
        for index, value in enumerate(result):
            items.extend(_flatten_result(value, f"{prefix}.{index}"))
        return items
    return [(prefix, np.asarray(result))]


def _write_output(path: Path, outputs: List[Tuple[str, np.ndarray]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    suffix = path.suffix.lower()
    if suffix == ".json":
        data = {name: value.tolist() for name, value in outputs}
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    elif suffix == ".npz" or len(outputs) > 1:
        np.savez(path, **{name: value for name, value in outputs})
    else:
        np.save(path, outputs[0][1])


def _run(args: argparse.Namespace) -> None:
    definition = _load_target(args.target)
    inputs = [_load_argument(text) for text in args.arg]
    static = _parse_static(args.static)
    options: Dict[str, Any] = {}
    if args.compiler:
        options["compiler"] = args.compiler
    if args.device:
        options["device"] = args.device
    result = jit(definition, **options)(*inputs, **static)
    outputs = _flatten_result(result)
    if args.out is not None:
        _write_output(args.out, outputs)
        return
    np.set_printoptions(suppress=True)
    for name, value in outputs:
        print(f"# {name}: {value.dtype}{list(value.shape)}")
        print(value)


def _explain(args: argparse.Namespace) -> None:
    definition = _load_target(args.target)
    inputs = [_load_argument(text) for text in args.arg]
    static = _parse_static(args.static)
    graph = debug_expr(definition)(*inputs, **static)
    if args.json:
        print(json.dumps(graph.explain(json=True), indent=2))
    else:
        print(graph.explain())


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="numdef command line utilities")
    subparsers = parser.add_subparsers(dest="cmd")

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("target", help="Definition to call, as module:function or path.py:function")
        sub.add_argument(
            "--verbose", "-v", action="count", default=0, help="Log compilations (-vv for debug logs)"
        )
        sub.add_argument(
            "--arg",
            action="append",
            default=[],
            help="Positional argument: a .npy/.npz/.json file or a JSON literal (repeatable)",
        )
        sub.add_argument(
            "--static",
            action="append",
            default=[],
            help="Static option as name=value with a JSON value (repeatable)",
        )

    run_parser = subparsers.add_parser("run", help="Compile and run a numerical definition")
    add_common(run_parser)
    run_parser.add_argument("--compiler", default=None, help="Compiler to use (evaluator, jax, torch)")
    run_parser.add_argument("--device", default=None, help="Target device (auto, cpu, cuda, ...)")
    run_parser.add_argument(
        "--out",
        type=Path,
        default=None,
        help="Optional output path (.npy/.npz/.json). If omitted, prints the outputs",
    )

    explain_parser = subparsers.add_parser("explain", help="Print the recorded graph of a definition")
    add_common(explain_parser)
    explain_parser.add_argument("--json", action="store_true", help="Emit the graph as JSON")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    verbose = getattr(args, "verbose", 0)
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG if verbose > 1 else logging.INFO,
            format="%(levelname)s %(name)s: %(message)s",
        )

    try:
        if args.cmd == "run":
            _run(args)
            return
        if args.cmd == "explain":
            _explain(args)
            return
    except NumdefError as exc:
        raise SystemExit(f"error: {exc}") from exc

    parser.print_help()


if __name__ == "__main__":  # pragma: no cover
    main(sys.argv[1:])
