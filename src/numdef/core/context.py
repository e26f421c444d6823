"""Execution context: either recording into a session or evaluating eagerly.

The current context lives in a ``ContextVar`` so that every thread and every
asyncio task sees its own value; concurrent top-level calls never share a
recording session. Handles carry their session explicitly, so the context is
only consulted for operations that have no handle operand (literals,
``numdef.tensor``) and for deciding whether a definition call starts a new
session or joins the active one.
"""

from __future__ import annotations

import enum
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, Optional

if TYPE_CHECKING:
    from .session import RecordingSession


class ContextKind(enum.Enum):
    EAGER = "eager"
    RECORDING = "recording"


@dataclass(frozen=True)
class ExecutionContext:
    kind: ContextKind
    session: Optional["RecordingSession"] = None

    @property
    def is_recording(self) -> bool:
        return self.kind is ContextKind.RECORDING

    @classmethod
    def recording(cls, session: "RecordingSession") -> "ExecutionContext":
        return cls(ContextKind.RECORDING, session)


EAGER = ExecutionContext(ContextKind.EAGER)

_CURRENT: ContextVar[ExecutionContext] = ContextVar("numdef_execution_context", default=EAGER)


def current_context() -> ExecutionContext:
    return _CURRENT.get()


@contextmanager
def use_context(context: ExecutionContext) -> Iterator[ExecutionContext]:
    token = _CURRENT.set(context)
    try:
        yield context
    finally:
        _CURRENT.reset(token)
