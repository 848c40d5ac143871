"""
Ownership dependency graph.

Entities depend on their owners: an owner must be inserted and updated
before the entities it owns, and deleted after them. This module orders a set
of entities accordingly and reports ownership cycles, which no order can
satisfy.
"""
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from enum import Enum
import logging

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("OwnershipGraph")


class CycleStatus(Enum):
    """Status of cycle detection."""
    NO_CYCLE = 0
    CYCLE_DETECTED = 1


class GraphNode(BaseModel):
    """Represents a node in the ownership graph."""
    entity: Any = Field(exclude=True)
    entity_id: Any
    dependencies: Set[Any] = Field(default_factory=set)  # owners

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def add_dependency(self, dep_id: Any) -> None:
        self.dependencies.add(dep_id)

    def __str__(self) -> str:
        return f"Node({self.entity_id}, deps={len(self.dependencies)})"

    def __repr__(self) -> str:
        return self.__str__()


def _node_id(entity: Any) -> Any:
    return getattr(entity, "live_id", id(entity))


class EntityDependencyGraph(BaseModel):
    """
    Ownership graph over a set of entities.

    Nodes are keyed by live_id. Owners outside the set are recorded as nodes
    too, so depths stay correct when only part of a tree is being flushed.
    """
    nodes: Dict[Any, GraphNode] = Field(default_factory=dict)
    cycles: List[List[Any]] = Field(default_factory=list)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @classmethod
    def from_owned(cls, pairs: Iterable[Tuple[Any, Optional[Any]]]) -> "EntityDependencyGraph":
        """Build the graph from (entity, owner) pairs."""
        graph = cls()
        for entity, owner in pairs:
            graph.add_entity(entity, [owner] if owner is not None else None)
        return graph

    def add_entity(self, entity: Any, dependencies: Optional[List[Any]] = None) -> None:
        """
        Add an entity to the graph with optional dependencies.

        Args:
            entity: The entity to add
            dependencies: Optional list of entities this entity depends on
        """
        entity_id = _node_id(entity)
        if entity_id not in self.nodes:
            self.nodes[entity_id] = GraphNode(entity=entity, entity_id=entity_id)

        if dependencies:
            for dep in dependencies:
                if dep is not None:
                    dep_id = _node_id(dep)
                    if dep_id not in self.nodes:
                        self.nodes[dep_id] = GraphNode(entity=dep, entity_id=dep_id)
                    self.nodes[entity_id].add_dependency(dep_id)

    def detect_cycles(self) -> CycleStatus:
        """Find ownership cycles with a depth first search over the owner links."""
        self.cycles.clear()
        visited: Set[Any] = set()
        path: List[Any] = []

        def find_cycles(node_id: Any) -> None:
            if node_id in visited:
                return
            if node_id in path:
                cycle = path[path.index(node_id):] + [node_id]
                logger.warning(f"Detected ownership cycle: {cycle}")
                self.cycles.append(cycle)
                return
            path.append(node_id)
            node = self.nodes.get(node_id)
            if node:
                for dep_id in node.dependencies:
                    find_cycles(dep_id)
            path.pop()
            visited.add(node_id)

        for node_id in list(self.nodes):
            find_cycles(node_id)

        if self.cycles:
            logger.warning(f"Detected {len(self.cycles)} cycles in the ownership graph")
            return CycleStatus.CYCLE_DETECTED
        return CycleStatus.NO_CYCLE

    def get_depths(self) -> Dict[Any, int]:
        """Number of owner hops from each node to a root of the graph."""
        depths: Dict[Any, int] = {}

        def calculate_depth(node_id: Any, path: Set[Any]) -> int:
            if node_id in path:
                return 0
            if node_id in depths:
                return depths[node_id]
            node = self.nodes.get(node_id)
            if not node or not node.dependencies:
                depths[node_id] = 0
                return 0
            path = path | {node_id}
            max_depth = 0
            for dep_id in node.dependencies:
                if dep_id in self.nodes:
                    max_depth = max(max_depth, calculate_depth(dep_id, path) + 1)
            depths[node_id] = max_depth
            return max_depth

        for node_id in self.nodes:
            if node_id not in depths:
                calculate_depth(node_id, set())
        return depths

    def order(self, entities: Iterable[Any], reverse: bool = False) -> List[Any]:
        """Sort `entities`, which must be nodes of the graph, by ownership depth."""
        depths = self.get_depths()
        sign = -1 if reverse else 1
        return sorted(entities, key=lambda e: sign * depths.get(_node_id(e), 0))
