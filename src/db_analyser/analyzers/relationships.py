"""
Database Analyser - Relationship analysis
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from ..errors import PrecursorMissing
from ..graph import DependencyGraph, ReferenceParser, edge_key, infer_implicit_relationships, parse_object_type
from ..models import (
    DatabaseSchema, DetectedVia, ForeignKeyInfo, ObjectDependency, ObjectType, RelationshipMap,
)
from ..providers.rows import ObjectDependencyRow
from .base import AnalysisContext, Analyzer

logger = logging.getLogger(__name__)


def catalog_dependencies(rows: Iterable[ObjectDependencyRow], schema: DatabaseSchema) -> List[ObjectDependency]:
    """Convert catalog-declared dependencies into edge facts.

    Rows naming the current database as target are local edges.
    """
    parser = ReferenceParser(schema)
    local_database = parser.object_database
    current = (schema.database_name or '').lower()
    edges = []
    for row in rows:
        cross = row.to_database and row.to_database.lower() != current
        edges.append(ObjectDependency(
            from_schema=row.from_schema,
            from_name=row.from_name,
            from_type=parse_object_type(row.from_type),
            to_schema=row.to_schema,
            to_name=row.to_name,
            to_type=ObjectType.EXTERNAL if cross else parse_object_type(row.to_type),
            detected_via=DetectedVia.CATALOG,
            from_database=local_database,
            to_database=row.to_database if cross else local_database,
        ))
    return edges


def _known_types(objects) -> Dict[str, ObjectType]:
    return {obj.full_name: obj.obj_type for obj in objects}


def usable_edges(dependencies: Iterable[ObjectDependency],
                 known: Dict[str, ObjectType]) -> List[ObjectDependency]:
    """Deduplicate edge facts and drop those with an endpoint outside the schema.

    The first fact for a ``from -> to`` pair wins. A target in another
    database is kept; a target in another database that is part of
    ``known`` takes the known object's type.
    """
    seen = set()
    edges = []
    for dep in dependencies:
        if dep.from_key not in known:
            logger.debug(f"Skipping edge from unknown object {dep.from_key}")
            continue
        if dep.to_key in known:
            if dep.to_type is ObjectType.EXTERNAL:
                dep = replace(dep, to_type=known[dep.to_key])
        elif not dep.is_cross_database:
            logger.debug(f"Skipping edge to unknown object {dep.to_key}")
            continue
        key = edge_key(dep)
        # A view's rewrite rule lists the view itself in pg_depend
        if key in seen or dep.from_key == dep.to_key and dep.detected_via is DetectedVia.CATALOG:
            continue
        seen.add(key)
        edges.append(dep)
    return edges


def usable_foreign_keys(foreign_keys: Iterable[ForeignKeyInfo],
                        known: Dict[str, ObjectType]) -> List[ForeignKeyInfo]:
    return [fk for fk in foreign_keys if fk.from_key in known and fk.to_key in known]


def build_relationship_map(schema: DatabaseSchema, foreign_keys: List[ForeignKeyInfo],
                           dependencies: List[ObjectDependency],
                           implicit: Optional[list] = None) -> RelationshipMap:
    """Run the graph engine over one (possibly unioned) schema."""
    objects = schema.graph_objects()
    known = _known_types(objects)
    foreign_keys = usable_foreign_keys(foreign_keys, known)
    dependencies = usable_edges(dependencies, known)

    graph = DependencyGraph().build(objects, foreign_keys, dependencies)
    if implicit is None:
        implicit = infer_implicit_relationships(schema.tables)
    return RelationshipMap(
        explicit_relationships=foreign_keys,
        object_dependencies=dependencies,
        implicit_relationships=implicit,
        dependencies=graph.dependencies(),
        cycles=graph.find_cycles(),
        standalone=graph.standalone,
    )


def structural_edges(schema: DatabaseSchema,
                     catalog_edges: Optional[List[ObjectDependency]] = None) -> List[ObjectDependency]:
    """Catalog, parsed and synonym edge facts in precedence order."""
    parser = ReferenceParser(schema)
    return [*(catalog_edges or []), *parser.parse_dependencies(), *parser.synonym_dependencies()]


def merge_relationship_maps(union: DatabaseSchema, maps: Iterable[RelationshipMap]) -> RelationshipMap:
    """Recompute the graph over several databases' edge facts.

    Cross-database targets that were analysed themselves stop being
    External placeholders and connect to the real node.
    """
    maps = list(maps)
    foreign_keys = [fk for m in maps for fk in m.explicit_relationships]
    dependencies = [dep for m in maps for dep in m.object_dependencies]
    implicit = [rel for m in maps for rel in m.implicit_relationships]
    implicit.sort(key=lambda r: (-r.confidence, r.from_database or '', r.from_schema,
                                 r.from_table, r.from_column))
    return build_relationship_map(union, foreign_keys, dependencies, implicit)


class RelationshipAnalyzer(Analyzer):
    """Dependency graph, cycles, importance and implicit FK candidates."""

    name = 'relationships'

    def analyze(self, context: AnalysisContext, snapshot, token) -> RelationshipMap:
        schema = snapshot.schema
        if schema is None:
            raise PrecursorMissing("Schema analysis must run before relationship analysis")

        rows = context.catalog.get_object_dependencies(context.provider, token)
        token.raise_if_cancelled()
        edges = structural_edges(schema, catalog_dependencies(rows, schema))
        foreign_keys = [fk for table in schema.tables for fk in table.foreign_keys]

        result = build_relationship_map(schema, foreign_keys, edges)
        logger.info(f"Relationships of '{schema.database_name}': {len(result.explicit_relationships)} "
                    f"foreign keys, {len(result.object_dependencies)} object dependencies, "
                    f"{len(result.cycles)} cycles, {len(result.implicit_relationships)} implicit candidates")
        return result
