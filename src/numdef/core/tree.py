"""Flattening of the containers accepted as definition arguments and results."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple


@dataclass(frozen=True)
class TreeDef:
    kind: str  # "leaf" | "tuple" | "list" | "dict" | "namedtuple"
    children: Tuple["TreeDef", ...] = ()
    meta: Any = None

    @property
    def num_leaves(self) -> int:
        if self.kind == "leaf":
            return 1
        return sum(child.num_leaves for child in self.children)

    def describe(self) -> str:
        if self.kind == "leaf":
            return "*"
        inner = ", ".join(child.describe() for child in self.children)
        if self.kind == "tuple":
            return f"({inner}{',' if len(self.children) == 1 else ''})"
        if self.kind == "list":
            return f"[{inner}]"
        if self.kind == "dict":
            items = ", ".join(
                f"{key!r}: {child.describe()}" for key, child in zip(self.meta, self.children)
            )
            return "{" + items + "}"
        return f"{self.meta.__name__}({inner})"


LEAF = TreeDef("leaf")


def _is_namedtuple(value: Any) -> bool:
    return isinstance(value, tuple) and hasattr(type(value), "_fields")


def flatten(
    tree: Any, *, is_leaf: Optional[Callable[[Any], bool]] = None
) -> Tuple[List[Any], TreeDef]:
    leaves: List[Any] = []
    treedef = _flatten_into(tree, leaves, is_leaf)
    return leaves, treedef


def _flatten_into(
    tree: Any, leaves: List[Any], is_leaf: Optional[Callable[[Any], bool]]
) -> TreeDef:
    if is_leaf is not None and is_leaf(tree):
        leaves.append(tree)
        return LEAF
    if _is_namedtuple(tree):
        children = tuple(_flatten_into(item, leaves, is_leaf) for item in tree)
        return TreeDef("namedtuple", children, type(tree))
    if isinstance(tree, tuple):
        return TreeDef("tuple", tuple(_flatten_into(item, leaves, is_leaf) for item in tree))
    if isinstance(tree, list):
        return TreeDef("list", tuple(_flatten_into(item, leaves, is_leaf) for item in tree))
    if isinstance(tree, dict):
        keys = tuple(tree.keys())
        children = tuple(_flatten_into(tree[key], leaves, is_leaf) for key in keys)
        return TreeDef("dict", children, keys)
    leaves.append(tree)
    return LEAF


def unflatten(treedef: TreeDef, leaves: Sequence[Any]) -> Any:
    iterator = iter(leaves)
    result = _build(treedef, iterator)
    remaining = sum(1 for _ in iterator)
    if remaining:
        raise ValueError(f"Too many leaves for tree {treedef.describe()}: {remaining} left over")
    return result


def _build(treedef: TreeDef, iterator) -> Any:
    if treedef.kind == "leaf":
        try:
            return next(iterator)
        except StopIteration:
            raise ValueError("Not enough leaves to rebuild tree") from None
    items = [_build(child, iterator) for child in treedef.children]
    if treedef.kind == "tuple":
        return tuple(items)
    if treedef.kind == "list":
        return items
    if treedef.kind == "dict":
        return dict(zip(treedef.meta, items))
    return treedef.meta(*items)


def tree_map(fn: Callable[[Any], Any], tree: Any, **kwargs) -> Any:
    leaves, treedef = flatten(tree, **kwargs)
    return unflatten(treedef, [fn(leaf) for leaf in leaves])
