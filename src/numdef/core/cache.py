import hashlib
import importlib
import importlib.metadata
import json
import logging
import os
import re
import sys
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

import numpy as np

from .exceptions import CacheError

logger = logging.getLogger(__name__)

CACHE_VERSION = "1"
_SHA256_KEY_RE = re.compile(r"[0-9a-f]{64}")


# In-memory compiled artifacts -------------------------------------------------


@dataclass(frozen=True)
class CacheInfo:
    hits: int
    misses: int
    compiles: int
    size: int


class _InFlight:
    __slots__ = ("event", "failed")

    def __init__(self):
        self.event = threading.Event()
        self.failed = False


class CompilationCache:
    """Thread-safe map from call signatures to compiled artifacts.

    At most one build runs per key: concurrent callers with the same key wait
    for the in-flight build and reuse its artifact. A failed build stores
    nothing; its error goes to the caller that ran it and waiters retry.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, Any] = {}
        self._in_flight: Dict[Hashable, _InFlight] = {}
        self._hits = 0
        self._misses = 0
        self._compiles = 0

    def get_or_compile(self, key: Hashable, builder: Callable[[], Any]) -> Any:
        counted_miss = False
        while True:
            with self._lock:
                if key in self._entries:
                    if not counted_miss:
                        self._hits += 1
                    return self._entries[key]
                if not counted_miss:
                    self._misses += 1
                    counted_miss = True
                pending = self._in_flight.get(key)
                if pending is None:
                    pending = _InFlight()
                    self._in_flight[key] = pending
                    owner = True
                else:
                    owner = False
            if not owner:
                logger.debug("Waiting for in-flight compilation of %s", _short(key))
                pending.event.wait()
                continue
            try:
                artifact = builder()
            except BaseException:
                with self._lock:
                    pending.failed = True
                    self._in_flight.pop(key, None)
                pending.event.set()
                raise
            with self._lock:
                self._entries[key] = artifact
                self._compiles += 1
                self._in_flight.pop(key, None)
            pending.event.set()
            return artifact

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def info(self) -> CacheInfo:
        with self._lock:
            return CacheInfo(self._hits, self._misses, self._compiles, len(self._entries))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._compiles = 0


def _short(key: Any, limit: int = 80) -> str:
    text = repr(key)
    return text if len(text) <= limit else text[: limit - 3] + "..."


# On-disk compilation records --------------------------------------------------


@dataclass
class CacheRecord:
    metadata: dict


class CacheManager:
    """JSON records describing past compilations, one file per cache key."""

    def __init__(self, cache_dir: str):
        self.root = Path(cache_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, compiler: str, key: str) -> Path:
        if not _SHA256_KEY_RE.fullmatch(key):
            raise CacheError(
                f"Invalid cache key '{key}'. Expected 64-character lowercase hex digest."
            )
        safe_compiler = compiler.replace("/", "_").replace("<", "_").replace(">", "_")
        return self.root / safe_compiler / f"{key}.json"

    def load(self, compiler: str, key: str) -> Optional[CacheRecord]:
        path = self.path_for(compiler, key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except json.JSONDecodeError:
            return None
        if data.get("cache_version") != CACHE_VERSION:
            return None
        return CacheRecord(metadata=data.get("metadata", {}))

    def write_metadata(self, compiler: str, key: str, metadata: dict) -> Path:
        path = self.path_for(compiler, key)
        _write_json(
            path,
            {
                "cache_version": CACHE_VERSION,
                "metadata": _sanitize_for_json(metadata),
            },
        )
        return path


def _sanitize_for_json(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (np.integer, np.floating, np.bool_)):
        return value.item()
    if isinstance(value, dict):
        return {str(k): _sanitize_for_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_sanitize_for_json(item) for item in value]
    return repr(value)


def _write_json(path: Path, payload: Dict[str, Any]) -> None:
    tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    tmp_path.parent.mkdir(parents=True, exist_ok=True)
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, sort_keys=True)
    os.replace(tmp_path, path)


def _module_version(name: str) -> Optional[str]:
    module = sys.modules.get(name)
    if module is None:
        try:
            module = importlib.import_module(name)
        except Exception:
            return None
    return getattr(module, "__version__", None)


def _numdef_version() -> str:
    try:
        return importlib.metadata.version("numdef")
    except importlib.metadata.PackageNotFoundError:
        return "0.0.0"


def _dependency_versions() -> Dict[str, Optional[str]]:
    return {
        "numdef": _numdef_version(),
        "numpy": getattr(np, "__version__", None),
        "torch": _module_version("torch"),
        "jax": _module_version("jax"),
    }


def cache_fingerprint(
    *,
    graph_digest: str,
    compiler: str,
    device: Optional[str] = None,
    signature: Optional[Tuple[Any, ...]] = None,
    backend_options: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "cache_version": CACHE_VERSION,
        "graph": graph_digest,
        "compiler": compiler,
        "device": device,
        "signature": _sanitize_for_json(signature),
        "versions": _dependency_versions(),
        "backend_options": _sanitize_for_json(backend_options) if backend_options else None,
    }


def cache_key_from_fingerprint(fingerprint: Dict[str, Any]) -> str:
    canonical = json.dumps(fingerprint, sort_keys=True, separators=(",", ":"), default=str).encode(
        "utf-8"
    )
    return hashlib.sha256(canonical).hexdigest()


def build_cache_key(
    *,
    graph_digest: str,
    compiler: str,
    device: Optional[str] = None,
    signature: Optional[Tuple[Any, ...]] = None,
    backend_options: Optional[Dict[str, Any]] = None,
) -> str:
    fingerprint = cache_fingerprint(
        graph_digest=graph_digest,
        compiler=compiler,
        device=device,
        signature=signature,
        backend_options=backend_options,
    )
    return cache_key_from_fingerprint(fingerprint)
