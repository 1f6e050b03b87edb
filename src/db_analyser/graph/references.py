"""
Extraction of object references from SQL bodies (views, routines, triggers, job steps).
"""
import re
from typing import Dict, List, NamedTuple, Optional, Set, Tuple

import sqlparse

from ..models import DatabaseSchema, DetectedVia, ObjectDependency, ObjectType

# FROM/JOIN followed by a 1- to 4-part name, optionally bracketed or quoted
FROM_JOIN_PATTERN = re.compile(
    r'\b(?:FROM|JOIN)\s+((?:[\[\"]?\w+[\]\"]?\.){0,3}[\[\"]?\w+[\]\"]?)',
    re.IGNORECASE)

# EXEC/EXECUTE/CALL followed by a 1- to 3-part routine name
EXEC_PATTERN = re.compile(
    r'\b(?:EXEC|EXECUTE|CALL)\s+((?:[\[\"]?\w+[\]\"]?\.){0,2}[\[\"]?\w+[\]\"]?)',
    re.IGNORECASE)


class Reference(NamedTuple):
    schema: str
    name: str
    obj_type: ObjectType
    database: Optional[str] = None


def strip_comments(sql: str) -> str:
    """Remove comments so commented-out FROM/JOIN clauses are ignored."""
    return sqlparse.format(sql, strip_comments=True)


def split_name(reference: str) -> List[str]:
    return [part.strip('[]"') for part in reference.strip().split('.')]


def _ref_order(ref: Reference):
    return ref.database or '', ref.schema, ref.name, ref.obj_type.value


class ReferenceParser:
    """Resolves names found in SQL bodies against the objects of one schema.

    Bare names resolve only when they are unambiguous across schemas;
    three- and four-part names pointing at another database become
    External references tagged with that database.
    """

    def __init__(self, schema: DatabaseSchema):
        self.schema = schema
        self.current_database = schema.database_name or ''
        # Database tag carried by the objects (set once the schema is qualified)
        self.object_database = next(
            (obj.database for obj in schema.graph_objects() if getattr(obj, 'database', None)), None)
        self._qualified: Dict[str, Reference] = {}
        self._bare: Dict[str, Set[Reference]] = {}
        for obj in [*schema.tables, *schema.views, *schema.procedures,
                    *schema.functions, *schema.synonyms]:
            ref = Reference(obj.schema, obj.name, obj.obj_type)
            self._qualified[f"{obj.schema}.{obj.name}".lower()] = ref
            self._bare.setdefault(obj.name.lower(), set()).add(ref)

    def resolve(self, parts: List[str]) -> Optional[Reference]:
        """Resolve a split name; None when it does not name a known local object."""
        if len(parts) >= 4:
            return Reference(parts[-2], parts[-1], ObjectType.EXTERNAL, parts[-3])
        if len(parts) == 3:
            database, schema, name = parts
            if database.lower() == self.current_database.lower():
                local = self._qualified.get(f"{schema}.{name}".lower())
                if local is not None:
                    return local
            return Reference(schema, name, ObjectType.EXTERNAL, database)
        if len(parts) == 2:
            return self._qualified.get(f"{parts[0]}.{parts[1]}".lower())
        matches = self._bare.get(parts[0].lower(), set())
        if len(matches) == 1:
            return next(iter(matches))
        return None

    def _extract(self, pattern: re.Pattern, sql: str) -> Set[Reference]:
        found = set()
        for match in pattern.finditer(strip_comments(sql)):
            ref = self.resolve(split_name(match.group(1)))
            if ref is not None:
                found.add(ref)
        return found

    def table_references(self, sql: str) -> Set[Reference]:
        return self._extract(FROM_JOIN_PATTERN, sql)

    def exec_references(self, sql: str) -> Set[Reference]:
        return {ref for ref in self._extract(EXEC_PATTERN, sql)
                if ref.obj_type in (ObjectType.PROCEDURE, ObjectType.FUNCTION,
                                    ObjectType.SYNONYM, ObjectType.EXTERNAL)}

    def _edge(self, from_schema: str, from_name: str, from_type: ObjectType,
              ref: Reference, from_database: Optional[str],
              default_database: Optional[str] = None) -> ObjectDependency:
        local_database = from_database if from_database is not None else default_database
        return ObjectDependency(
            from_schema=from_schema,
            from_name=from_name,
            from_type=from_type,
            to_schema=ref.schema,
            to_name=ref.name,
            to_type=ref.obj_type,
            detected_via=DetectedVia.PARSED,
            from_database=from_database,
            to_database=ref.database if ref.database is not None else local_database,
        )

    def parse_dependencies(self) -> List[ObjectDependency]:
        """Parsed edges for every object with a SQL body."""
        edges: List[ObjectDependency] = []

        def add(obj, refs: Set[Reference]):
            for ref in sorted(refs, key=_ref_order):
                is_self = (ref.database is None and ref.schema == obj.schema
                           and ref.name == obj.name)
                if not is_self:
                    edges.append(self._edge(obj.schema, obj.name, obj.obj_type, ref, obj.database))

        for obj in [*self.schema.views, *self.schema.procedures, *self.schema.functions]:
            if obj.definition and obj.definition.strip():
                refs = self.table_references(obj.definition)
                if obj.obj_type is not ObjectType.VIEW:
                    refs |= self.exec_references(obj.definition)
                add(obj, refs)

        for trigger in self.schema.triggers:
            parent = Reference(trigger.schema, trigger.parent_table, ObjectType.TABLE)
            edges.append(self._edge(trigger.schema, trigger.name, ObjectType.TRIGGER,
                                    parent, trigger.database))
            if trigger.definition and trigger.definition.strip():
                refs = self.table_references(trigger.definition) | self.exec_references(trigger.definition)
                refs.discard(parent)
                add(trigger, refs)

        for job in self.schema.jobs:
            refs: Set[Reference] = set()
            for step in job.steps:
                if step.command and step.command.strip():
                    refs |= self.table_references(step.command) | self.exec_references(step.command)
            for ref in sorted(refs, key=_ref_order):
                edges.append(self._edge(job.schema, job.name, ObjectType.JOB, ref, None,
                                        default_database=self.object_database))
        return edges

    def synonym_dependencies(self) -> List[ObjectDependency]:
        """Edges from each synonym to its base object."""
        edges = []
        for synonym in self.schema.synonyms:
            database, schema, name = synonym.parse_base_object(default_schema=synonym.schema)
            if database is not None and database.lower() != self.current_database.lower():
                ref = Reference(schema, name, ObjectType.EXTERNAL, database)
            else:
                ref = self.resolve([schema, name])
                if ref is None:
                    continue
            edges.append(self._edge(synonym.schema, synonym.name, ObjectType.SYNONYM,
                                    ref, synonym.database))
        return edges


def parse_object_type(value: str) -> ObjectType:
    """Map a catalog type label onto ObjectType; unknown labels are tables."""
    normalized = (value or '').strip().lower()
    for obj_type in ObjectType:
        if obj_type.value.lower() == normalized:
            return obj_type
    if 'view' in normalized:
        return ObjectType.VIEW
    return ObjectType.TABLE


def edge_key(dep: ObjectDependency) -> Tuple[str, str]:
    return dep.from_key.lower(), dep.to_key.lower()
