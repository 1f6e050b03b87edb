"""
Database Analyser - Dependency graph engine
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
from collections import deque
from typing import Dict, Iterable, List, Optional

import networkx as nx

from ..errors import MalformedGraph
from ..models import ForeignKeyInfo, ObjectDependency, ObjectType, TableDependency


class DependencyGraph:
    """Directed graph of schema objects built from edge facts.

    An edge ``a -> b`` means ``a`` depends on ``b`` (FK source to FK target,
    view to the table it selects from). Only objects that take part in at
    least one edge become nodes; the rest are reported as standalone.
    """

    def __init__(self):
        """Initialize empty graph."""
        self.graph = nx.DiGraph()
        self._standalone: List[str] = []

    def build(self, objects: Iterable, foreign_keys: Iterable[ForeignKeyInfo],
              dependencies: Iterable[ObjectDependency]) -> "DependencyGraph":
        """Build the graph.

        Args:
            objects: Schema objects exposing ``full_name`` and ``obj_type``
            foreign_keys: Declared foreign keys
            dependencies: Catalog, parsed and synonym edge facts

        Raises:
            MalformedGraph: an edge endpoint is not a known object (cross-database
                targets excepted, they become External placeholders)
        """
        self.graph.clear()
        known: Dict[str, ObjectType] = {obj.full_name: obj.obj_type for obj in objects}

        def endpoint(key: str, external_database: Optional[str] = None):
            if key in known:
                if not self.graph.has_node(key):
                    self.graph.add_node(key, obj_type=known[key], external_database=None)
                return
            if external_database is None:
                raise MalformedGraph(f"Edge endpoint '{key}' is not a known schema object")
            if not self.graph.has_node(key):
                self.graph.add_node(key, obj_type=ObjectType.EXTERNAL,
                                    external_database=external_database)

        for fk in foreign_keys:
            endpoint(fk.from_key)
            endpoint(fk.to_key)
            self._add_edge(fk.from_key, fk.to_key, 'foreign_key')

        for dep in dependencies:
            endpoint(dep.from_key)
            endpoint(dep.to_key, dep.to_database if dep.is_cross_database else None)
            self._add_edge(dep.from_key, dep.to_key, dep.detected_via.value)

        self._standalone = sorted(key for key in known if not self.graph.has_node(key))
        return self

    def _add_edge(self, source: str, target: str, detected_via: str):
        if self.graph.has_edge(source, target):
            self.graph.edges[source, target]['detected_via'].add(detected_via)
        else:
            self.graph.add_edge(source, target, detected_via={detected_via})

    @property
    def standalone(self) -> List[str]:
        """Objects without any edge."""
        return list(self._standalone)

    def depends_on(self, node: str) -> List[str]:
        return sorted(self.graph.successors(node))

    def referenced_by(self, node: str) -> List[str]:
        return sorted(self.graph.predecessors(node))

    def transitive_impact(self, node: str) -> List[str]:
        """Every node reachable from ``node`` through outbound edges.

        ``node`` itself is included only when it lies on a cycle.
        """
        visited = set()
        queue = deque(self.graph.successors(node))
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            queue.extend(n for n in self.graph.successors(current) if n not in visited)
        return sorted(visited)

    def find_cycles(self) -> List[List[str]]:
        """Strongly connected components of size > 1, plus self-loops."""
        cycles = []
        for component in nx.strongly_connected_components(self.graph):
            if len(component) > 1:
                cycles.append(sorted(component))
            else:
                node = next(iter(component))
                if self.graph.has_edge(node, node):
                    cycles.append([node])
        return sorted(cycles)

    def dependencies(self) -> List[TableDependency]:
        """One TableDependency per node, most important first."""
        result = []
        for node, data in self.graph.nodes(data=True):
            result.append(TableDependency(
                name=node,
                object_type=data['obj_type'],
                depends_on=self.depends_on(node),
                referenced_by=self.referenced_by(node),
                transitive_impact=self.transitive_impact(node),
                external_database=data['external_database'],
            ))
        result.sort(key=lambda d: (-d.importance_score, d.name))
        return result
