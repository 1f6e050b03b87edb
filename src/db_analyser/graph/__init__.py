"""Dependency graph construction and relationship inference."""
from .builder import DependencyGraph
from .implicit import infer_implicit_relationships
from .references import ReferenceParser, edge_key, parse_object_type

__all__ = [
    'DependencyGraph', 'ReferenceParser', 'edge_key', 'infer_implicit_relationships',
    'parse_object_type',
]
