from __future__ import annotations

import itertools
import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional

import numpy as np

from .context import EAGER, current_context, use_context
from .exceptions import SessionError, ShapeOrTypeMismatch
from .graph import Graph, Node
from .shape_checker import Operand, check_dtype, infer
from .tensor import TensorHandle, TensorTemplate, TensorView, is_tensor_like, unwrap_view
from .tree import tree_map

logger = logging.getLogger(__name__)

_SESSION_IDS = itertools.count(1)


def _is_python_number(value: Any) -> bool:
    return isinstance(value, (bool, int, float, complex)) and not isinstance(value, np.generic)


class RecordingSession:
    """Accumulates the graph of one top-level numerical-definition call.

    Nested numerical definitions join the session of their caller. A session
    is bound to the thread that opened it and becomes unusable once closed.
    """

    def __init__(self, name: str):
        self.id = next(_SESSION_IDS)
        self.graph = Graph(name=name)
        self.owner_thread = threading.get_ident()
        self._closed = False
        self._transforms: List[str] = []
        logger.debug("Opened recording session %d for %s", self.id, name)

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def active_transform(self) -> Optional[str]:
        return self._transforms[-1] if self._transforms else None

    def check_usable(self) -> None:
        if self._closed:
            raise SessionError(
                f"Tensor belongs to the finished recording of '{self.graph.name}'; "
                "handles cannot escape the numerical definition that created them"
            )
        if threading.get_ident() != self.owner_thread:
            raise SessionError(
                f"Recording of '{self.graph.name}' is owned by another thread; "
                "recording sessions are single-threaded"
            )

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            logger.debug("Closed recording session %d (%d nodes)", self.id, len(self.graph.nodes))

    # Leaves ---------------------------------------------------------------------
    def parameter(self, template: TensorTemplate) -> TensorHandle:
        self.check_usable()
        node = self.graph.add_parameter(template.shape, template.dtype)
        return TensorHandle(self, node)

    def constant(self, value: Any, *, origin: Optional[str] = None) -> TensorHandle:
        self.check_usable()
        transform = self.active_transform
        if origin is None:
            # Definitions inlined from a transform record under a recording context.
            host_code = transform is not None and not current_context().is_recording
            origin = "transform" if host_code else "literal"
        if not _is_python_number(value):
            value = np.asarray(value)
            check_dtype(value.dtype)
        node = self.graph.add_constant(
            value,
            origin=origin,
            transform=transform if origin == "transform" else None,
        )
        return TensorHandle(self, node)

    # Operators ------------------------------------------------------------------
    def record(self, op: str, operands: Any, attrs: Optional[dict] = None) -> TensorHandle:
        self.check_usable()
        nodes = [self._operand_node(value) for value in operands]
        inferred = infer(op, [_operand_meta(node) for node in nodes], attrs)
        node = self.graph.add_node(
            op,
            tuple(n.id for n in nodes),
            inferred.shape,
            inferred.dtype,
            inferred.attrs,
            inferred.compute_dtype,
        )
        return TensorHandle(self, node)

    def _operand_node(self, value: Any) -> Node:
        value = unwrap_view(value)
        if isinstance(value, TensorHandle):
            if value.session is not self:
                value.session.check_usable()
                raise SessionError(
                    f"Cannot combine a tensor recorded for '{value.session.graph.name}' "
                    f"with the recording of '{self.graph.name}'"
                )
            return value.node
        if _is_python_number(value) or is_tensor_like(value):
            return self.constant(value).node
        raise ShapeOrTypeMismatch(
            f"Expected a tensor or a number, got {type(value).__name__}; "
            "convert nested data with numdef.tensor, for example inside a transform"
        )

    # Transforms -----------------------------------------------------------------
    @contextmanager
    def suspended(self, transform: str) -> Iterator["RecordingSession"]:
        """Run host code for ``transform`` with recording suspended."""
        self.check_usable()
        self._transforms.append(transform)
        try:
            with use_context(EAGER):
                yield self
        finally:
            self._transforms.pop()

    def views(self, value: Any) -> Any:
        return tree_map(lambda leaf: TensorView(leaf) if isinstance(leaf, TensorHandle) else leaf, value)

    def inject(self, value: Any, transform: str) -> Any:
        """Splice a transform's result into the graph.

        Views become their handles again, concrete arrays become injected
        constants, and any other host value is returned unchanged.
        """
        self._transforms.append(transform)
        try:
            return tree_map(self._inject_leaf, value)
        finally:
            self._transforms.pop()

    def _inject_leaf(self, leaf: Any) -> Any:
        leaf = unwrap_view(leaf)
        if isinstance(leaf, TensorHandle):
            if leaf.session is not self:
                leaf.session.check_usable()
                raise SessionError(
                    f"Transform '{self.active_transform}' returned a tensor from another recording"
                )
            return leaf
        if is_tensor_like(leaf):
            handle = self.constant(leaf, origin="transform")
            logger.debug(
                "Injected constant %%%d %s%s from transform %s",
                handle.node.id,
                handle.node.dtype,
                list(handle.shape),
                self.active_transform,
            )
            return handle
        return leaf


def _operand_meta(node: Node) -> Operand:
    if node.weak:
        return Operand(node.shape, node.dtype, is_weak=True, weak_value=node.attrs["value"])
    return Operand(node.shape, node.dtype)
