"""
Node directory interface.

The surrounding platform knows which agents are connected and which mesh
each belongs to; the scheduler only consumes that view.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional


@dataclass(frozen=True)
class NodeInfo:
    node_id: str
    mesh_id: Optional[str] = None


class NodeDirectory(ABC):
    """Read-only view of reachable nodes and their mesh membership"""

    @abstractmethod
    def online_nodes(self) -> List[NodeInfo]:
        """Nodes currently reachable for dispatch"""
        pass

    def get_node(self, node_id: str) -> Optional[NodeInfo]:
        for node in self.online_nodes():
            if node.node_id == node_id:
                return node
        return None

    def mesh_of(self, node_id: str) -> Optional[str]:
        node = self.get_node(node_id)
        return node.mesh_id if node else None


class StaticNodeDirectory(NodeDirectory):
    """In-memory directory, fed by the platform's connection events"""

    def __init__(self, nodes: Optional[Dict[str, Optional[str]]] = None):
        # node_id -> mesh_id
        self._nodes: Dict[str, Optional[str]] = dict(nodes or {})
        self._offline: set = set()

    def add_node(self, node_id: str, mesh_id: Optional[str] = None) -> None:
        self._nodes[node_id] = mesh_id
        self._offline.discard(node_id)

    def remove_node(self, node_id: str) -> None:
        self._nodes.pop(node_id, None)
        self._offline.discard(node_id)

    def set_offline(self, node_ids: Iterable[str]) -> None:
        self._offline.update(node_ids)

    def set_online(self, node_ids: Iterable[str]) -> None:
        self._offline.difference_update(node_ids)

    def online_nodes(self) -> List[NodeInfo]:
        return [
            NodeInfo(node_id=node_id, mesh_id=mesh_id)
            for node_id, mesh_id in self._nodes.items()
            if node_id not in self._offline
        ]
