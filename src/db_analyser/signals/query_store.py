"""Persisted query telemetry (SQL Server Query Store, pg_stat_statements).

Survives restarts, so it is the only source that can vouch for objects
used rarely (monthly reports, yearly jobs).
"""
import logging
import re
from typing import Dict, List, Optional, Pattern

from ..errors import QueryError, SignalUnavailable
from ..models import ObjectType, SignalResult, TableInfo
from .base import SignalContext, UsageSignal, stat_key
from .execution import format_last

logger = logging.getLogger(__name__)

# Characters that may continue an identifier on either supported dialect
_IDENT = r'\w$#@'

# Any single identifier, bare or delimited
_ANY_IDENTIFIER = r'(?:\[[^\]]+\]|"[^"]+"|`[^`]+`|[\w$#@]+)'


def _quoted(identifier: str) -> str:
    escaped = re.escape(identifier)
    return rf'(?:\[{escaped}\]|"{escaped}"|`{escaped}`|{escaped})'


def table_reference_pattern(schema: str, name: str) -> Pattern:
    """Whole-identifier match of ``name``, optionally qualified by ``schema``.

    A schema-qualified name may carry a database prefix
    (``ShopDb.dbo.orders``). A hit inside a longer or delimited identifier
    (``orders`` in ``orders_archive`` or ``[orders archive]``) or qualified
    by another schema (``sales.orders`` for ``dbo.orders``) is rejected.
    """
    return re.compile(
        rf'(?<![{_IDENT}.\[\"`])(?:(?:{_ANY_IDENTIFIER}\.)?{_quoted(schema)}\.)?'
        rf'{_quoted(name)}(?![{_IDENT}])',
        re.IGNORECASE)


class QueryStoreSignal(UsageSignal):
    name = "Query Store"

    EXECUTED_WEIGHT = 1.0
    NOT_EXECUTED_WEIGHT = -0.6
    QUERY_TEXT_WEIGHT = 0.8

    def evaluate(self, context: SignalContext, token) -> List[SignalResult]:
        if not context.performance.is_query_store_enabled(context.provider, token):
            raise SignalUnavailable("Persisted query telemetry is not enabled")

        results = self._routine_results(context, token)
        results.extend(self._table_results(context, token))
        return results

    def _routine_results(self, context: SignalContext, token) -> List[SignalResult]:
        try:
            rows = context.performance.get_query_store_object_stats(context.provider, token)
        except QueryError as e:
            logger.warning(f"Query Store object statistics unavailable: {e}")
            return []

        routines = {stat_key(r.schema, r.name): r
                    for r in [*context.schema.procedures, *context.schema.functions]}
        results = []
        for row in rows:
            routine = routines.get(stat_key(row.schema, row.name))
            if routine is None:
                continue
            if row.total_executions > 0:
                results.append(SignalResult(
                    routine.full_name, routine.obj_type, self.EXECUTED_WEIGHT,
                    f"Query Store: {row.total_executions:,} executions, "
                    f"last at {format_last(row.last_execution)}"))
            else:
                results.append(SignalResult(
                    routine.full_name, routine.obj_type, self.NOT_EXECUTED_WEIGHT,
                    "Query Store: no executions recorded"))
        return results

    def _table_results(self, context: SignalContext, token) -> List[SignalResult]:
        try:
            queries = context.performance.get_query_store_top_queries(
                context.provider, context.config.query_text_sample_size, token)
        except QueryError as e:
            logger.warning(f"Query Store query texts unavailable: {e}")
            return []

        patterns: Dict[str, Pattern] = {}
        tables: Dict[str, TableInfo] = {}
        for table in context.schema.tables:
            patterns[table.full_name] = table_reference_pattern(table.schema, table.name)
            tables[table.full_name] = table

        executions: Dict[str, int] = {}
        last_seen: Dict[str, Optional[object]] = {}
        for query in queries:
            token.raise_if_cancelled()
            if not query.query_text:
                continue
            for full_name, pattern in patterns.items():
                if not pattern.search(query.query_text):
                    continue
                executions[full_name] = executions.get(full_name, 0) + query.total_executions
                previous = last_seen.get(full_name)
                if previous is None or (query.last_execution is not None
                                        and query.last_execution > previous):
                    last_seen[full_name] = query.last_execution

        return [
            SignalResult(full_name, ObjectType.TABLE, self.QUERY_TEXT_WEIGHT,
                         f"Query Store: referenced in ad-hoc queries with {count:,} total executions, "
                         f"last at {format_last(last_seen.get(full_name))}")
            for full_name, count in sorted(executions.items()) if count > 0
        ]
