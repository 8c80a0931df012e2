from __future__ import annotations

from typing import Iterable, Sequence

from ..schemas.state import NodeState, StateSnapshot


class StateSnapshotReader:
    """Read-only source of supply-chain node state."""

    async def read_state(self, node_ids: Sequence[str]) -> StateSnapshot:
        raise NotImplementedError


class InMemoryStateReader(StateSnapshotReader):
    def __init__(self, nodes: Iterable[NodeState] = ()) -> None:
        self._nodes: dict[str, NodeState] = {node.node_id: node for node in nodes}

    def upsert(self, node: NodeState) -> None:
        self._nodes[node.node_id] = node

    async def read_state(self, node_ids: Sequence[str]) -> StateSnapshot:
        found = [self._nodes[node_id] for node_id in node_ids if node_id in self._nodes]
        missing = [node_id for node_id in node_ids if node_id not in self._nodes]
        return StateSnapshot(nodes=tuple(found), missing_node_ids=tuple(missing))
