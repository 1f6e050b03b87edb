"""
Database Analyser - Data profiling
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging
from typing import List

from ..errors import PrecursorMissing
from ..models import ColumnInfo, ColumnProfile, TableInfo, TableProfile
from .base import AnalysisContext, Analyzer, fan_out

logger = logging.getLogger(__name__)

# Types for which distinct counts are meaningful (both dialects)
PROFILEABLE_TYPES = {
    'int', 'bigint', 'smallint', 'tinyint', 'integer', 'decimal', 'numeric', 'float', 'real',
    'double precision', 'money', 'smallmoney',
    'char', 'varchar', 'nchar', 'nvarchar', 'text', 'ntext', 'character', 'character varying',
    'citext',
    'date', 'datetime', 'datetime2', 'smalldatetime', 'datetimeoffset', 'time',
    'timestamp', 'timestamp without time zone', 'timestamp with time zone',
    'time without time zone', 'time with time zone', 'interval',
    'bit', 'boolean', 'uniqueidentifier', 'uuid',
}

# Profileable, but MIN/MAX is rejected by the engine or meaningless
NO_MIN_MAX_TYPES = {'bit', 'boolean', 'text', 'ntext', 'uniqueidentifier', 'uuid'}


def _int(value) -> int:
    return int(value) if value is not None else 0


def _text(value):
    return str(value) if value is not None else None


class ProfilingAnalyzer(Analyzer):
    """Row counts and per-column null/distinct/min/max statistics."""

    name = 'profiling'

    def analyze(self, context: AnalysisContext, snapshot, token) -> List[TableProfile]:
        if snapshot.schema is None:
            raise PrecursorMissing("Schema analysis must run before profiling")

        tables = snapshot.schema.tables
        calls = {table.full_name: (lambda t, table=table: self.profile_table(context, table, t))
                 for table in tables}
        profiles = fan_out(calls, context.config.max_workers, token)
        return [profiles[table.full_name] for table in tables]

    def profile_table(self, context: AnalysisContext, table: TableInfo, token) -> TableProfile:
        catalog, provider = context.catalog, context.provider
        row_count = _int(provider.execute_scalar(catalog.build_count_sql(table.schema, table.name),
                                                 token=token))
        profile = TableProfile(table.schema, table.name, row_count, database=table.database)

        columns = list(table.columns)
        limit = context.config.max_profile_columns
        if len(columns) > limit:
            logger.info(f"Profiling first {limit} of {len(columns)} columns of {table.full_name}")
            columns = columns[:limit]

        if row_count == 0:
            profile.column_profiles = [ColumnProfile(c.name, c.data_type) for c in columns]
            return profile

        for column in columns:
            token.raise_if_cancelled()
            profile.column_profiles.append(self.profile_column(context, table, column, row_count, token))
        return profile

    def profile_column(self, context: AnalysisContext, table: TableInfo, column: ColumnInfo,
                       row_count: int, token) -> ColumnProfile:
        catalog, provider = context.catalog, context.provider
        result = ColumnProfile(column.name, column.data_type, total_count=row_count)
        base_type = column.data_type.lower()

        if base_type not in PROFILEABLE_TYPES:
            if column.is_nullable:
                result.null_count = _int(provider.execute_scalar(
                    catalog.build_null_count_sql(table.schema, table.name, column.name), token=token))
            return result

        rows = provider.execute_query(
            catalog.build_column_profile_sql(table.schema, table.name, column.name,
                                             base_type not in NO_MIN_MAX_TYPES),
            token=token)
        if rows:
            row = rows[0]
            result.null_count = _int(row.get('null_count'))
            result.distinct_count = _int(row.get('distinct_count'))
            result.min_value = _text(row.get('min_value'))
            result.max_value = _text(row.get('max_value'))
        return result
