from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from .errors import NotFound
from .quantize import DataType


@dataclass(frozen=True)
class TensorDesc:
    shape: tuple[int, ...]
    dtype: DataType

    @property
    def n_elements(self) -> int:
        count = 1
        for dim in self.shape:
            count *= dim
        return count


@dataclass
class Leaf:
    value: Any


@dataclass
class Group:
    children: dict[str, "Leaf | Group"] = field(default_factory=dict)


Node = Leaf | Group


def _split(path: str) -> list[str]:
    parts = path.split("/")
    if not path or any(not part for part in parts):
        raise ValueError(f"Invalid tensor path: {path!r}")
    return parts


def _walk(node: Node, prefix: str | None) -> Iterator[tuple[str, Any]]:
    if isinstance(node, Leaf):
        yield prefix or "", node.value
        return
    for name in sorted(node.children):
        path = name if prefix is None else f"{prefix}/{name}"
        yield from _walk(node.children[name], path)


def flatten_tree(node: Node) -> dict[str, Any]:
    """Slash-joined path -> leaf value, in sorted path order."""
    return dict(_walk(node, None))


def map_tree(node: Node, fn: Callable[[str, Any], Any], prefix: str | None = None) -> Node:
    if isinstance(node, Leaf):
        return Leaf(fn(prefix or "", node.value))
    return Group({
        name: map_tree(child, fn, name if prefix is None else f"{prefix}/{name}")
        for name, child in node.children.items()
    })


class WeightRegistry:
    """Hierarchical named-tensor store, e.g. ``model/h3/attn/c_attn/w``.

    Tensors are inserted while a model is loaded and only read afterwards,
    so one registry may back any number of completion cursors.
    """

    def __init__(self, root: Group | None = None):
        self.root = root if root is not None else Group()

    def insert(self, path: str, tensor: Any) -> None:
        *parents, name = _split(path)
        node = self.root
        for part in parents:
            child = node.children.setdefault(part, Group())
            if isinstance(child, Leaf):
                raise ValueError(f"Cannot insert {path}: {part} is a tensor")
            node = child

        existing = node.children.get(name)
        if isinstance(existing, Group):
            raise ValueError(f"Cannot insert {path}: path is a group")
        node.children[name] = Leaf(tensor)

    def get(self, path: str) -> Any:
        node: Node = self.root
        for part in _split(path):
            if not isinstance(node, Group) or part not in node.children:
                raise NotFound(f"Tensor {path} not found in weight registry")
            node = node.children[part]
        if not isinstance(node, Leaf):
            raise NotFound(f"{path} is a group, not a tensor")
        return node.value

    def flatten(self) -> dict[str, Any]:
        return flatten_tree(self.root)

    def paths(self) -> list[str]:
        return list(self.flatten())

    def __contains__(self, path: str) -> bool:
        try:
            self.get(path)
        except (NotFound, ValueError):
            return False
        return True

    def __len__(self) -> int:
        return len(self.flatten())
