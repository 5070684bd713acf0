"""Immutable, id-keyed story graph."""
from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Mapping

from storyloom.domain.defs import StoryNodeDef


class StoryGraph:
    """Read-only view over validated story nodes.

    Nodes refer to each other by id only, so cyclic stories need no special
    handling. Construction does not validate; use the story loaders or
    ``ensure_valid_graph`` for that.
    """

    __slots__ = ("_initial_node_id", "_nodes")

    def __init__(self, initial_node_id: str, nodes: Iterable[StoryNodeDef] | Mapping[str, StoryNodeDef]) -> None:
        if isinstance(nodes, Mapping):
            node_map = dict(nodes)
        else:
            node_map = {node.id: node for node in nodes}
        self._initial_node_id = initial_node_id
        self._nodes: Mapping[str, StoryNodeDef] = MappingProxyType(node_map)

    @property
    def initial_node_id(self) -> str:
        return self._initial_node_id

    @property
    def nodes(self) -> Mapping[str, StoryNodeDef]:
        return self._nodes

    def get(self, node_id: str) -> StoryNodeDef:
        """Return a node by id."""
        try:
            return self._nodes[node_id]
        except KeyError as exc:
            raise KeyError(node_id) from exc

    def has(self, node_id: str) -> bool:
        return node_id in self._nodes

    def all(self) -> list[StoryNodeDef]:
        """Return all nodes sorted deterministically by id."""
        return [self._nodes[key] for key in sorted(self._nodes.keys())]

    def node_ids(self) -> list[str]:
        return list(self._nodes.keys())

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __repr__(self) -> str:
        return f"StoryGraph(initial_node_id={self._initial_node_id!r}, nodes={len(self._nodes)})"
