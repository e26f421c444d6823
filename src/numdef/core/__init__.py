"""Core runtime modules for numdef."""

__all__ = [
    "cache",
    "classifier",
    "config",
    "context",
    "definition",
    "dispatch",
    "evaluator_numpy",
    "exceptions",
    "graph",
    "ops",
    "session",
    "shape_checker",
    "tensor",
    "tree",
]
