"""
Database Analyser - PostgreSQL dialect
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import psycopg2
import psycopg2.errors
from psycopg2.extensions import make_dsn, parse_dsn
from psycopg2.extras import RealDictCursor

from ..cancellation import CancellationToken, ensure_token
from ..errors import (
    AnalysisCancelled, ConnectionFailure, FeatureUnavailable, PrivilegeDenied, QueryError,
)
from .base import (
    CatalogQueries, DbProvider, PerformanceQueries, ProviderBundle, ProviderFactory,
    ServerQueries,
)
from .rows import (
    ColumnRow, ForeignKeyRow, FunctionRow, IndexRow, IndexUsageRow, ObjectDependencyRow,
    ProcedureRow, QueryStoreObjectRow, QueryTextRow, RoutineUsageRow, RowCountRow, SequenceRow,
    TableUsageRow, TriggerRow, UdtRow, ViewRow,
)

logger = logging.getLogger(__name__)

APPLICATION_NAME = 'db-analyser'
SYSTEM_SCHEMAS = "('pg_catalog', 'information_schema')"

_FEATURE_ERRORS = (
    psycopg2.errors.UndefinedTable,
    psycopg2.errors.UndefinedFunction,
    psycopg2.errors.UndefinedObject,
    psycopg2.errors.ObjectNotInPrerequisiteState,
)


def map_error(error: psycopg2.Error, sql: Optional[str] = None) -> QueryError:
    """Translate a driver error into the provider error taxonomy."""
    message = (error.pgerror or str(error)).strip()
    if isinstance(error, psycopg2.errors.InsufficientPrivilege):
        return PrivilegeDenied(message, sql)
    if isinstance(error, _FEATURE_ERRORS):
        return FeatureUnavailable(message, sql)
    return QueryError(message, sql)


class PostgreSqlProvider(DbProvider):
    """psycopg2 provider; every statement runs on its own read-only connection."""

    def _open(self):
        try:
            conn = psycopg2.connect(self.connection_string)
        except psycopg2.OperationalError as e:
            raise ConnectionFailure(str(e).strip()) from e
        conn.set_session(readonly=True, autocommit=True)
        return conn

    def connect(self, token: Optional[CancellationToken] = None):
        ensure_token(token).raise_if_cancelled()
        conn = self._open()
        try:
            self.server_name = conn.info.host or ''
            self.database_name = conn.info.dbname or ''
        finally:
            conn.close()
        logger.info(f"Connected to PostgreSQL {self.server_name}/{self.database_name}")

    def change_database(self, database_name: str):
        self.connection_string = make_dsn(self.connection_string, dbname=database_name)
        self.database_name = database_name

    def execute_query(self, sql: str, params: Optional[Sequence[Any]] = None,
                      token: Optional[CancellationToken] = None) -> List[Dict[str, Any]]:
        token = ensure_token(token)
        token.raise_if_cancelled()
        conn = self._open()
        try:
            with token.on_cancel(conn.cancel):
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(sql, params)
                    if cur.description is None:
                        return []
                    return [dict(row) for row in cur.fetchall()]
        except psycopg2.extensions.QueryCanceledError as e:
            if token.cancelled:
                raise AnalysisCancelled() from e
            raise QueryError(f"Statement timed out: {str(e).strip()}", sql) from e
        except psycopg2.Error as e:
            raise map_error(e, sql) from e
        finally:
            conn.close()


class PostgreSqlProviderFactory(ProviderFactory):
    provider_type = 'postgresql'
    default_system_database = 'postgres'

    def __init__(self, query_timeout_seconds: int = 300):
        self.query_timeout_seconds = query_timeout_seconds

    def _parse(self, connection_string: str) -> Dict[str, str]:
        try:
            return parse_dsn(connection_string)
        except psycopg2.ProgrammingError as e:
            raise ConnectionFailure(f"Invalid PostgreSQL connection string: {e}") from e

    def create(self, connection_string: str,
               token: Optional[CancellationToken] = None) -> PostgreSqlProvider:
        provider = PostgreSqlProvider(self.normalize_connection_string(connection_string))
        provider.connect(token)
        return provider

    def normalize_connection_string(self, connection_string: str) -> str:
        params = self._parse(connection_string)
        params.setdefault('application_name', APPLICATION_NAME)
        params.setdefault('connect_timeout', '15')
        if 'options' not in params:
            params['options'] = f"-c statement_timeout={self.query_timeout_seconds * 1000}"
        return make_dsn(**params)

    def is_server_mode(self, connection_string: str) -> bool:
        return not self._parse(connection_string).get('dbname')

    def set_database(self, connection_string: str, database_name: str) -> str:
        self._parse(connection_string)
        return make_dsn(connection_string, dbname=database_name)


class PostgreSqlCatalogQueries(CatalogQueries):
    text_type = "VARCHAR(500)"

    def quote_identifier(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    def get_columns(self, provider, token) -> List[ColumnRow]:
        rows = provider.execute_query(f"""
            SELECT
                c.table_schema, c.table_name, t.table_type, c.column_name, c.data_type,
                c.character_maximum_length, c.numeric_precision, c.numeric_scale,
                c.is_nullable, c.column_default, c.ordinal_position,
                pk.column_name IS NOT NULL AS is_primary_key,
                (c.column_default LIKE 'nextval(%' OR c.is_identity = 'YES') AS is_identity,
                c.is_generated = 'ALWAYS' AS is_computed
            FROM information_schema.columns c
            JOIN information_schema.tables t
                ON c.table_schema = t.table_schema AND c.table_name = t.table_name
            LEFT JOIN (
                SELECT tc.table_schema, tc.table_name, ku.column_name
                FROM information_schema.table_constraints tc
                JOIN information_schema.key_column_usage ku
                    ON tc.constraint_name = ku.constraint_name
                    AND tc.table_schema = ku.table_schema
                WHERE tc.constraint_type = 'PRIMARY KEY'
            ) pk ON c.table_schema = pk.table_schema
                AND c.table_name = pk.table_name
                AND c.column_name = pk.column_name
            WHERE c.table_schema NOT IN {SYSTEM_SCHEMAS}
            ORDER BY c.table_schema, c.table_name, c.ordinal_position
        """, token=token)
        return [
            ColumnRow(
                schema=r['table_schema'],
                table=r['table_name'],
                table_type='BASE TABLE' if r['table_type'] == 'BASE TABLE' else 'VIEW',
                name=r['column_name'],
                data_type=r['data_type'],
                max_length=r['character_maximum_length'],
                precision=r['numeric_precision'],
                scale=r['numeric_scale'],
                is_nullable=r['is_nullable'] == 'YES',
                is_primary_key=bool(r['is_primary_key']),
                is_identity=bool(r['is_identity']),
                is_computed=bool(r['is_computed']),
                default_value=r['column_default'],
                ordinal_position=r['ordinal_position'],
            )
            for r in rows
        ]

    def get_indexes(self, provider, token) -> List[IndexRow]:
        rows = provider.execute_query(f"""
            SELECT
                n.nspname AS schema_name, t.relname AS table_name, i.relname AS index_name,
                am.amname AS index_type, ix.indisunique AS is_unique,
                ix.indisclustered AS is_clustered,
                string_agg(a.attname, ', ' ORDER BY array_position(ix.indkey, a.attnum)) AS columns
            FROM pg_index ix
            JOIN pg_class i ON ix.indexrelid = i.oid
            JOIN pg_class t ON ix.indrelid = t.oid
            JOIN pg_namespace n ON t.relnamespace = n.oid
            JOIN pg_am am ON i.relam = am.oid
            JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(ix.indkey)
            WHERE n.nspname NOT IN {SYSTEM_SCHEMAS}
            GROUP BY n.nspname, t.relname, i.relname, am.amname, ix.indisunique, ix.indisclustered
            ORDER BY n.nspname, t.relname, i.relname
        """, token=token)
        return [
            IndexRow(r['schema_name'], r['table_name'], r['index_name'], r['index_type'],
                     bool(r['is_unique']), bool(r['is_clustered']), r['columns'] or '')
            for r in rows
        ]

    def get_foreign_keys(self, provider, token) -> List[ForeignKeyRow]:
        rows = provider.execute_query(f"""
            SELECT
                rc.constraint_name AS fk_name,
                kcu1.table_schema AS from_schema, kcu1.table_name AS from_table,
                kcu1.column_name AS from_column,
                kcu2.table_schema AS to_schema, kcu2.table_name AS to_table,
                kcu2.column_name AS to_column,
                rc.delete_rule, rc.update_rule
            FROM information_schema.referential_constraints rc
            JOIN information_schema.key_column_usage kcu1
                ON rc.constraint_name = kcu1.constraint_name
                AND rc.constraint_schema = kcu1.constraint_schema
            JOIN information_schema.key_column_usage kcu2
                ON rc.unique_constraint_name = kcu2.constraint_name
                AND rc.unique_constraint_schema = kcu2.constraint_schema
                AND kcu1.ordinal_position = kcu2.ordinal_position
            WHERE kcu1.table_schema NOT IN {SYSTEM_SCHEMAS}
            ORDER BY kcu1.table_schema, kcu1.table_name, rc.constraint_name
        """, token=token)
        return [
            ForeignKeyRow(r['fk_name'], r['from_schema'], r['from_table'], r['from_column'],
                          r['to_schema'], r['to_table'], r['to_column'],
                          r['delete_rule'], r['update_rule'])
            for r in rows
        ]

    def get_views(self, provider, token) -> List[ViewRow]:
        rows = provider.execute_query(f"""
            SELECT n.nspname AS schema_name, c.relname AS view_name,
                   COALESCE(pg_get_viewdef(c.oid, true), '') AS definition
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE c.relkind IN ('v', 'm')
              AND n.nspname NOT IN {SYSTEM_SCHEMAS}
            ORDER BY n.nspname, c.relname
        """, token=token)
        return [ViewRow(r['schema_name'], r['view_name'], r['definition']) for r in rows]

    def get_procedures(self, provider, token) -> List[ProcedureRow]:
        rows = provider.execute_query(f"""
            SELECT n.nspname AS schema_name, p.proname AS procedure_name,
                   COALESCE(pg_get_functiondef(p.oid), '') AS definition
            FROM pg_proc p
            JOIN pg_namespace n ON p.pronamespace = n.oid
            WHERE p.prokind = 'p'
              AND n.nspname NOT IN {SYSTEM_SCHEMAS}
            ORDER BY n.nspname, p.proname
        """, token=token)
        return [ProcedureRow(r['schema_name'], r['procedure_name'], r['definition'], None)
                for r in rows]

    def get_functions(self, provider, token) -> List[FunctionRow]:
        rows = provider.execute_query(f"""
            SELECT n.nspname AS schema_name, p.proname AS function_name,
                   CASE WHEN p.proretset THEN 'Set-Returning' ELSE 'Scalar' END AS function_type,
                   COALESCE(pg_get_functiondef(p.oid), '') AS definition
            FROM pg_proc p
            JOIN pg_namespace n ON p.pronamespace = n.oid
            LEFT JOIN pg_depend d ON d.objid = p.oid AND d.deptype = 'e'
            WHERE p.prokind = 'f'
              AND d.objid IS NULL
              AND n.nspname NOT IN {SYSTEM_SCHEMAS}
            ORDER BY n.nspname, p.proname
        """, token=token)
        return [FunctionRow(r['schema_name'], r['function_name'], r['function_type'],
                            r['definition'], None)
                for r in rows]

    def get_triggers(self, provider, token) -> List[TriggerRow]:
        rows = provider.execute_query(f"""
            SELECT
                t.trigger_schema AS schema_name, t.trigger_name,
                t.event_object_table AS parent_table, t.action_timing AS trigger_type,
                string_agg(t.event_manipulation, ', ' ORDER BY t.event_manipulation) AS trigger_events,
                tg.tgenabled <> 'D' AS is_enabled,
                COALESCE(pg_get_triggerdef(tg.oid), '') AS definition
            FROM information_schema.triggers t
            JOIN pg_trigger tg ON tg.tgname = t.trigger_name
            JOIN pg_class c ON c.oid = tg.tgrelid AND c.relname = t.event_object_table
            JOIN pg_namespace n ON n.oid = c.relnamespace AND n.nspname = t.trigger_schema
            WHERE t.trigger_schema NOT IN {SYSTEM_SCHEMAS}
              AND NOT tg.tgisinternal
            GROUP BY t.trigger_schema, t.trigger_name, t.event_object_table,
                     t.action_timing, tg.oid, tg.tgenabled
            ORDER BY t.trigger_schema, t.event_object_table, t.trigger_name
        """, token=token)
        return [
            TriggerRow(r['schema_name'], r['trigger_name'], r['parent_table'],
                       r['trigger_type'], r['trigger_events'], bool(r['is_enabled']),
                       r['definition'])
            for r in rows
        ]

    def get_sequences(self, provider, token) -> List[SequenceRow]:
        rows = provider.execute_query(f"""
            SELECT
                s.sequence_schema AS schema_name, s.sequence_name, s.data_type,
                COALESCE(s.start_value::bigint, 0) AS current_value,
                COALESCE(s.increment::bigint, 1) AS increment,
                COALESCE(s.minimum_value::bigint, 0) AS min_value,
                COALESCE(s.maximum_value::bigint, 0) AS max_value,
                s.cycle_option = 'YES' AS is_cycling
            FROM information_schema.sequences s
            WHERE s.sequence_schema NOT IN {SYSTEM_SCHEMAS}
            ORDER BY s.sequence_schema, s.sequence_name
        """, token=token)
        return [
            SequenceRow(r['schema_name'], r['sequence_name'], r['data_type'],
                        r['current_value'], r['increment'], r['min_value'], r['max_value'],
                        bool(r['is_cycling']))
            for r in rows
        ]

    def get_user_defined_types(self, provider, token) -> List[UdtRow]:
        rows = provider.execute_query(f"""
            SELECT n.nspname AS schema_name, t.typname AS type_name,
                   CASE t.typtype WHEN 'c' THEN 'composite' WHEN 'e' THEN 'enum'
                        WHEN 'd' THEN format_type(t.typbasetype, t.typtypmod)
                        ELSE t.typtype::text END AS base_type,
                   NOT t.typnotnull AS is_nullable
            FROM pg_type t
            JOIN pg_namespace n ON t.typnamespace = n.oid
            WHERE t.typtype IN ('c', 'e', 'd')
              AND n.nspname NOT IN {SYSTEM_SCHEMAS}
              AND NOT EXISTS (
                  SELECT 1 FROM pg_class c
                  WHERE c.reltype = t.oid AND c.relkind IN ('r', 'v', 'm', 'p', 'f')
              )
            ORDER BY n.nspname, t.typname
        """, token=token)
        return [UdtRow(r['schema_name'], r['type_name'], r['base_type'], False,
                       bool(r['is_nullable']), None)
                for r in rows]

    def get_object_dependencies(self, provider, token) -> List[ObjectDependencyRow]:
        rows = provider.execute_query(f"""
            SELECT DISTINCT
                src_ns.nspname AS from_schema, src_cl.relname AS from_name,
                CASE src_cl.relkind WHEN 'r' THEN 'Table' ELSE 'View' END AS from_type,
                dep_ns.nspname AS to_schema, dep_cl.relname AS to_name,
                CASE dep_cl.relkind WHEN 'r' THEN 'Table' WHEN 'p' THEN 'Table'
                     ELSE 'View' END AS to_type
            FROM pg_depend d
            JOIN pg_rewrite rw ON d.objid = rw.oid
            JOIN pg_class src_cl ON rw.ev_class = src_cl.oid
            JOIN pg_namespace src_ns ON src_cl.relnamespace = src_ns.oid
            JOIN pg_class dep_cl ON d.refobjid = dep_cl.oid
            JOIN pg_namespace dep_ns ON dep_cl.relnamespace = dep_ns.oid
            WHERE d.classid = 'pg_rewrite'::regclass
              AND d.deptype = 'n'
              AND src_cl.oid <> dep_cl.oid
              AND dep_cl.relkind IN ('r', 'p', 'v', 'm')
              AND src_ns.nspname NOT IN {SYSTEM_SCHEMAS}
              AND dep_ns.nspname NOT IN {SYSTEM_SCHEMAS}
            ORDER BY from_schema, from_name, to_schema, to_name
        """, token=token)
        return [
            ObjectDependencyRow(r['from_schema'], r['from_name'], r['from_type'],
                                r['to_schema'], r['to_name'], r['to_type'])
            for r in rows
        ]


class PostgreSqlPerformanceQueries(PerformanceQueries):

    def get_table_usage_stats(self, provider, token) -> List[TableUsageRow]:
        rows = provider.execute_query("""
            SELECT schemaname AS schema_name, relname AS table_name,
                   COALESCE(seq_scan, 0) + COALESCE(idx_scan, 0) AS total_reads,
                   COALESCE(n_tup_ins, 0) + COALESCE(n_tup_upd, 0)
                       + COALESCE(n_tup_del, 0) AS total_writes
            FROM pg_stat_user_tables
            ORDER BY schemaname, relname
        """, token=token)
        return [TableUsageRow(r['schema_name'], r['table_name'],
                              int(r['total_reads']), int(r['total_writes']))
                for r in rows]

    def _routine_stats(self, provider, token, prokind: str) -> List[RoutineUsageRow]:
        tracking = provider.execute_scalar("SELECT current_setting('track_functions')",
                                           token=token)
        if tracking == 'none':
            raise FeatureUnavailable("track_functions is disabled; routine statistics are not collected")
        rows = provider.execute_query("""
            SELECT s.schemaname AS schema_name, s.funcname AS name, s.calls AS execution_count
            FROM pg_stat_user_functions s
            JOIN pg_proc p ON p.oid = s.funcid
            WHERE p.prokind = %s
        """, (prokind,), token=token)
        return [RoutineUsageRow(r['schema_name'], r['name'], int(r['execution_count']))
                for r in rows]

    def get_procedure_execution_stats(self, provider, token) -> List[RoutineUsageRow]:
        return self._routine_stats(provider, token, 'p')

    def get_function_execution_stats(self, provider, token) -> List[RoutineUsageRow]:
        return self._routine_stats(provider, token, 'f')

    def is_query_store_enabled(self, provider, token) -> bool:
        return bool(provider.execute_scalar(
            "SELECT EXISTS (SELECT 1 FROM pg_extension WHERE extname = 'pg_stat_statements')",
            token=token))

    def get_query_store_object_stats(self, provider, token) -> List[QueryStoreObjectRow]:
        # pg_stat_statements is keyed by statement, not by routine; routine
        # executions come from pg_stat_user_functions instead
        return []

    def get_query_store_top_queries(self, provider, top_n, token) -> List[QueryTextRow]:
        rows = provider.execute_query("""
            SELECT LEFT(s.query, 4000) AS query_text, s.calls AS total_executions
            FROM pg_stat_statements s
            JOIN pg_database d ON d.oid = s.dbid
            WHERE d.datname = current_database()
              AND s.query !~* '^\\s*call\\s'
            ORDER BY s.calls DESC
            LIMIT %s
        """, (top_n,), token=token)
        return [QueryTextRow(r['query_text'] or '', int(r['total_executions'])) for r in rows]

    def get_table_row_counts(self, provider, token) -> List[RowCountRow]:
        rows = provider.execute_query("""
            SELECT schemaname AS schema_name, relname AS table_name,
                   GREATEST(n_live_tup, 0) AS row_count
            FROM pg_stat_user_tables
        """, token=token)
        return [RowCountRow(r['schema_name'], r['table_name'], int(r['row_count'])) for r in rows]

    def get_index_usage_stats(self, provider, token) -> List[IndexUsageRow]:
        # PostgreSQL only counts index scans; every table write maintains each index
        rows = provider.execute_query("""
            SELECT
                s.schemaname AS schema_name, s.relname AS table_name,
                s.indexrelname AS index_name, am.amname AS index_type,
                ix.indisunique AS is_unique, ix.indisclustered AS is_clustered,
                (SELECT string_agg(a.attname, ', ' ORDER BY k.ord)
                 FROM unnest(ix.indkey) WITH ORDINALITY AS k(attnum, ord)
                 JOIN pg_attribute a ON a.attrelid = ix.indrelid AND a.attnum = k.attnum
                ) AS columns,
                COALESCE(s.idx_scan, 0) AS user_seeks,
                COALESCE(t.n_tup_ins, 0) + COALESCE(t.n_tup_upd, 0)
                    + COALESCE(t.n_tup_del, 0) AS user_updates,
                pg_relation_size(s.indexrelid) / 1024 AS size_kb
            FROM pg_stat_user_indexes s
            JOIN pg_index ix ON ix.indexrelid = s.indexrelid
            JOIN pg_class i ON i.oid = s.indexrelid
            JOIN pg_am am ON am.oid = i.relam
            JOIN pg_stat_user_tables t ON t.relid = s.relid
            ORDER BY s.schemaname, s.relname, s.indexrelname
        """, token=token)
        return [
            IndexUsageRow(r['schema_name'], r['table_name'], r['index_name'], r['index_type'],
                          bool(r['is_unique']), bool(r['is_clustered']), r['columns'] or '',
                          int(r['user_seeks']), 0, 0, int(r['user_updates']), int(r['size_kb'] or 0))
            for r in rows
        ]


class PostgreSqlServerQueries(ServerQueries):

    def enumerate_databases(self, provider, token) -> List[str]:
        rows = provider.execute_query("""
            SELECT datname FROM pg_database
            WHERE datistemplate = false
              AND datallowconn
              AND datname NOT IN ('postgres')
            ORDER BY datname
        """, token=token)
        return [r['datname'] for r in rows]

    def get_server_uptime(self, provider, token) -> Tuple[Optional[datetime], Optional[int]]:
        start_time = provider.execute_scalar("SELECT pg_postmaster_start_time()", token=token)
        if not isinstance(start_time, datetime):
            return None, None
        if start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=timezone.utc)
        return start_time, (datetime.now(timezone.utc) - start_time).days


def create_bundle(query_timeout_seconds: int = 300) -> ProviderBundle:
    return ProviderBundle(
        provider_type='postgresql',
        factory=PostgreSqlProviderFactory(query_timeout_seconds),
        catalog=PostgreSqlCatalogQueries(),
        performance=PostgreSqlPerformanceQueries(),
        server=PostgreSqlServerQueries(),
    )
