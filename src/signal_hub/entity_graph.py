from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import networkx as nx

from src.signal_hub.models import Signal

DEFAULT_MAX_DEPTH = 4
CO_OCCURRENCE = "mentioned_with"


@dataclass
class Entity:
    id: str
    name: str = ""
    type: str = "unknown"
    attributes: Dict[str, Any] = field(default_factory=dict)


class EntityGraph:
    """
    Undirected relationship graph between entities (people, places, projects)
    backed by a NetworkX MultiGraph. Signals that reference several entities
    link them with weighted "mentioned_with" edges.
    """

    def __init__(self):
        self.graph = nx.MultiGraph()

    def upsert_entity(self, entity: Entity):
        self.graph.add_node(entity.id, data=entity)

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        if entity_id not in self.graph:
            return None
        return self.graph.nodes[entity_id].get("data") or Entity(id=entity_id)

    def relate(self, source_id: str, target_id: str, type: str = "related_to", weight: float = 1.0):
        for node_id in (source_id, target_id):
            if node_id not in self.graph:
                self.upsert_entity(Entity(id=node_id))
        existing = self.graph.get_edge_data(source_id, target_id, key=type)
        if existing is not None:
            existing["weight"] += weight
        else:
            self.graph.add_edge(source_id, target_id, key=type, weight=weight)

    def ingest_signals(self, signals: Iterable[Signal]):
        for signal in signals:
            ids = list(dict.fromkeys(signal.entity_ids))
            for i, source_id in enumerate(ids):
                if source_id not in self.graph:
                    self.upsert_entity(Entity(id=source_id))
                for target_id in ids[i + 1:]:
                    self.relate(source_id, target_id, CO_OCCURRENCE)

    def related(self, entity_id: str, types: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        if entity_id not in self.graph:
            return []
        found = []
        for _, neighbor, key, data in self.graph.edges(entity_id, keys=True, data=True):
            if types is None or key in types:
                found.append({"entity": self.get_entity(neighbor), "type": key, "weight": data.get("weight", 1.0)})
        return found

    def find_path(self, from_id: str, to_id: str, max_depth: int = DEFAULT_MAX_DEPTH) -> Optional[List[Entity]]:
        """Shortest path by hop count, or None if none exists within `max_depth` hops."""
        if from_id not in self.graph or to_id not in self.graph:
            return None
        paths = nx.single_source_shortest_path(self.graph, from_id, cutoff=max_depth)
        path = paths.get(to_id)
        if path is None:
            return None
        return [self.get_entity(node_id) for node_id in path]
