"""
Database Analyser - Schema extraction
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging
from collections import defaultdict
from typing import Dict, List, Tuple

from ..models import (
    ColumnInfo, DatabaseSchema, ForeignKeyInfo, FunctionInfo, IndexInfo, JobInfo, JobStepInfo,
    ProcedureInfo, SequenceInfo, SynonymInfo, TableInfo, TriggerInfo, UserDefinedTypeInfo,
    ViewInfo,
)
from .base import AnalysisContext, Analyzer, fan_out

logger = logging.getLogger(__name__)


def _column(row) -> ColumnInfo:
    return ColumnInfo(
        name=row.name,
        data_type=row.data_type,
        max_length=row.max_length,
        precision=row.precision,
        scale=row.scale,
        is_nullable=row.is_nullable,
        is_primary_key=row.is_primary_key,
        is_identity=row.is_identity,
        is_computed=row.is_computed,
        default_value=row.default_value,
        ordinal_position=row.ordinal_position,
    )


def _split_columns(value: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in value.split(',') if part.strip())


def assemble_schema(database_name: str, rows: Dict[str, list]) -> DatabaseSchema:
    """Join the catalog result sets into a DatabaseSchema."""
    table_columns: Dict[Tuple[str, str], List[ColumnInfo]] = defaultdict(list)
    view_columns: Dict[Tuple[str, str], List[ColumnInfo]] = defaultdict(list)
    table_order: List[Tuple[str, str]] = []
    for row in rows['columns']:
        key = (row.schema, row.table)
        if row.table_type == 'BASE TABLE':
            if key not in table_columns:
                table_order.append(key)
            table_columns[key].append(_column(row))
        else:
            view_columns[key].append(_column(row))

    indexes: Dict[Tuple[str, str], List[IndexInfo]] = defaultdict(list)
    for row in rows['indexes']:
        indexes[(row.schema, row.table)].append(IndexInfo(
            row.index_name, row.index_type, row.is_unique, row.is_clustered,
            _split_columns(row.columns)))

    foreign_keys: Dict[Tuple[str, str], List[ForeignKeyInfo]] = defaultdict(list)
    for row in rows['foreign_keys']:
        foreign_keys[(row.from_schema, row.from_table)].append(ForeignKeyInfo(
            name=row.name,
            from_schema=row.from_schema,
            from_table=row.from_table,
            from_column=row.from_column,
            to_schema=row.to_schema,
            to_table=row.to_table,
            to_column=row.to_column,
            delete_rule=row.delete_rule,
            update_rule=row.update_rule,
        ))

    tables = [
        TableInfo(
            schema=schema,
            name=name,
            columns=tuple(sorted(table_columns[(schema, name)], key=lambda c: c.ordinal_position)),
            indexes=tuple(indexes.get((schema, name), ())),
            foreign_keys=tuple(foreign_keys.get((schema, name), ())),
        )
        for schema, name in table_order
    ]

    views = [
        ViewInfo(row.schema, row.name, row.definition or '',
                 tuple(sorted(view_columns.get((row.schema, row.name), ()),
                              key=lambda c: c.ordinal_position)))
        for row in rows['views']
    ]

    jobs = [
        JobInfo(
            name=row.name,
            description=row.description or '',
            is_enabled=row.is_enabled,
            steps=tuple(JobStepInfo(s.step_id, s.step_name, s.subsystem, s.database, s.command or '')
                        for s in row.steps),
            last_run=row.last_run,
            schedule=row.schedule,
        )
        for row in rows['jobs']
    ]

    return DatabaseSchema(
        database_name=database_name,
        tables=tables,
        views=views,
        procedures=[ProcedureInfo(r.schema, r.name, r.definition or '', r.last_modified)
                    for r in rows['procedures']],
        functions=[FunctionInfo(r.schema, r.name, r.function_type, r.definition or '', r.last_modified)
                   for r in rows['functions']],
        triggers=[TriggerInfo(r.schema, r.name, r.parent_table, r.trigger_type, r.trigger_events,
                              r.is_enabled, r.definition or '')
                  for r in rows['triggers']],
        synonyms=[SynonymInfo(r.schema, r.name, r.base_object_name) for r in rows['synonyms']],
        sequences=[SequenceInfo(r.schema, r.name, r.data_type, r.current_value, r.increment,
                                r.min_value, r.max_value, r.is_cycling)
                   for r in rows['sequences']],
        user_defined_types=[UserDefinedTypeInfo(r.schema, r.name, r.base_type, r.is_table_type,
                                                r.is_nullable, r.max_length)
                            for r in rows['user_defined_types']],
        jobs=jobs,
    )


class SchemaAnalyzer(Analyzer):
    """Extracts the schema snapshot every other analyzer consumes."""

    name = 'schema'
    requires_schema = False

    def analyze(self, context: AnalysisContext, snapshot, token) -> DatabaseSchema:
        catalog, provider = context.catalog, context.provider
        calls = {
            'columns': lambda t: catalog.get_columns(provider, t),
            'indexes': lambda t: catalog.get_indexes(provider, t),
            'foreign_keys': lambda t: catalog.get_foreign_keys(provider, t),
            'views': lambda t: catalog.get_views(provider, t),
            'procedures': lambda t: catalog.get_procedures(provider, t),
            'functions': lambda t: catalog.get_functions(provider, t),
            'triggers': lambda t: catalog.get_triggers(provider, t),
            'synonyms': lambda t: catalog.get_synonyms(provider, t),
            'sequences': lambda t: catalog.get_sequences(provider, t),
            'user_defined_types': lambda t: catalog.get_user_defined_types(provider, t),
            'jobs': lambda t: catalog.get_jobs(provider, provider.database_name, t),
        }
        rows = fan_out(calls, context.config.max_workers, token)
        schema = assemble_schema(provider.database_name, rows)
        logger.info(f"Schema of '{provider.database_name}': {len(schema.tables)} tables, "
                    f"{len(schema.views)} views, {len(schema.procedures)} procedures, "
                    f"{len(schema.functions)} functions")
        return schema
