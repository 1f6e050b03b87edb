"""
Database Analyser - SQL Server dialect
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pyodbc

from ..cancellation import CancellationToken, ensure_token
from ..errors import (
    AnalysisCancelled, ConnectionFailure, FeatureUnavailable, PrivilegeDenied, QueryError,
)
from .base import (
    CatalogQueries, DbProvider, PerformanceQueries, ProviderBundle, ProviderFactory,
    ServerQueries,
)
from .rows import (
    ColumnRow, ForeignKeyRow, FunctionRow, IndexRow, IndexUsageRow, JobRow, JobStepRow,
    MissingIndexRow, ObjectDependencyRow, ProcedureRow, QueryStoreObjectRow, QueryTextRow,
    RoutineUsageRow, RowCountRow, SequenceRow, SynonymRow, TableUsageRow, TriggerRow, UdtRow, ViewRow,
)

logger = logging.getLogger(__name__)

DEFAULT_DRIVER = '{ODBC Driver 18 for SQL Server}'
APPLICATION_NAME = 'db-analyser'

_DATABASE_KEYS = ('database', 'initial catalog')
_SERVER_KEYS = ('server', 'data source', 'address', 'addr')

# Native error numbers
_PRIVILEGE_ERRORS = {229, 230, 262, 297, 300, 916}
_MISSING_OBJECT_ERRORS = {208, 2812, 4121}
_NATIVE_ERROR = re.compile(r'\((\d+)\)\s*(?:\(SQL\w+\))?\s*$')


def parse_connection_string(connection_string: str) -> Dict[str, str]:
    """Split an ODBC ``key=value;`` string. Keys are lower-cased; braced values may hold ';'."""
    params: Dict[str, str] = {}
    i, length = 0, len(connection_string)
    while i < length:
        eq = connection_string.find('=', i)
        if eq < 0:
            if connection_string[i:].strip():
                raise ConnectionFailure(f"Malformed connection string segment: {connection_string[i:]!r}")
            break
        key = connection_string[i:eq].strip().lower()
        i = eq + 1
        if i < length and connection_string[i] == '{':
            end = i + 1
            while True:
                end = connection_string.find('}', end)
                if end < 0:
                    raise ConnectionFailure("Unterminated '{' in connection string")
                if connection_string[end + 1:end + 2] == '}':
                    end += 2
                    continue
                break
            value = connection_string[i:end + 1]
            i = connection_string.find(';', end)
            i = length if i < 0 else i + 1
        else:
            end = connection_string.find(';', i)
            end = length if end < 0 else end
            value = connection_string[i:end].strip()
            i = end + 1
        if key:
            params[key] = value
    return params


def build_connection_string(params: Dict[str, str]) -> str:
    return ''.join(f"{key}={value};" for key, value in params.items())


def _native_error(error: pyodbc.Error) -> Optional[int]:
    message = str(error.args[1]) if len(error.args) > 1 else str(error)
    match = _NATIVE_ERROR.search(message)
    return int(match.group(1)) if match else None


def map_error(error: pyodbc.Error, sql: Optional[str] = None) -> QueryError:
    """Translate a pyodbc error into the provider error taxonomy."""
    sqlstate = error.args[0] if error.args else ''
    message = str(error.args[1]) if len(error.args) > 1 else str(error)
    native = _native_error(error)
    if native in _PRIVILEGE_ERRORS:
        return PrivilegeDenied(message, sql)
    if native in _MISSING_OBJECT_ERRORS or sqlstate in ('42S02', '42S22'):
        return FeatureUnavailable(message, sql)
    return QueryError(message, sql)


class SqlServerProvider(DbProvider):
    """pyodbc provider; every statement runs on its own autocommit connection."""

    def __init__(self, connection_string: str, query_timeout_seconds: int = 300):
        super().__init__(connection_string)
        self.query_timeout_seconds = query_timeout_seconds

    def _open(self):
        try:
            conn = pyodbc.connect(self.connection_string, autocommit=True, readonly=True, timeout=15)
        except pyodbc.Error as e:
            raise ConnectionFailure(str(e)) from e
        conn.timeout = self.query_timeout_seconds
        return conn

    def connect(self, token: Optional[CancellationToken] = None):
        row = self.execute_query(
            "SELECT @@SERVERNAME AS server_name, DB_NAME() AS database_name", token=token)[0]
        params = parse_connection_string(self.connection_string)
        self.server_name = row['server_name'] or next(
            (params[k] for k in _SERVER_KEYS if k in params), '')
        self.database_name = row['database_name'] or ''
        logger.info(f"Connected to SQL Server {self.server_name}/{self.database_name}")

    def change_database(self, database_name: str):
        params = parse_connection_string(self.connection_string)
        for key in _DATABASE_KEYS:
            params.pop(key, None)
        params['database'] = database_name
        self.connection_string = build_connection_string(params)
        self.database_name = database_name

    def execute_query(self, sql: str, params: Optional[Sequence[Any]] = None,
                      token: Optional[CancellationToken] = None) -> List[Dict[str, Any]]:
        token = ensure_token(token)
        token.raise_if_cancelled()
        conn = self._open()
        try:
            cursor = conn.cursor()
            with token.on_cancel(cursor.cancel):
                if params:
                    cursor.execute(sql, *params)
                else:
                    cursor.execute(sql)
                # Skip row counts of leading statements (e.g. ';WITH' batches)
                while cursor.description is None and cursor.nextset():
                    pass
                if cursor.description is None:
                    return []
                columns = [col[0] for col in cursor.description]
                return [dict(zip(columns, row)) for row in cursor.fetchall()]
        except pyodbc.Error as e:
            sqlstate = e.args[0] if e.args else ''
            if sqlstate == 'HY008' and token.cancelled:
                raise AnalysisCancelled() from e
            if sqlstate in ('HYT00', 'HYT01'):
                raise QueryError(f"Statement timed out after {self.query_timeout_seconds}s", sql) from e
            raise map_error(e, sql) from e
        finally:
            conn.close()


class SqlServerProviderFactory(ProviderFactory):
    provider_type = 'sqlserver'
    default_system_database = 'master'

    def __init__(self, query_timeout_seconds: int = 300):
        self.query_timeout_seconds = query_timeout_seconds

    def create(self, connection_string: str,
               token: Optional[CancellationToken] = None) -> SqlServerProvider:
        provider = SqlServerProvider(self.normalize_connection_string(connection_string),
                                     self.query_timeout_seconds)
        provider.connect(token)
        return provider

    def normalize_connection_string(self, connection_string: str) -> str:
        params = parse_connection_string(connection_string)
        params.setdefault('driver', DEFAULT_DRIVER)
        params.setdefault('app', APPLICATION_NAME)
        params.setdefault('applicationintent', 'ReadOnly')
        return build_connection_string(params)

    def is_server_mode(self, connection_string: str) -> bool:
        params = parse_connection_string(connection_string)
        return not any(params.get(key) for key in _DATABASE_KEYS)

    def set_database(self, connection_string: str, database_name: str) -> str:
        params = parse_connection_string(connection_string)
        for key in _DATABASE_KEYS:
            params.pop(key, None)
        params['database'] = database_name
        return build_connection_string(params)


class SqlServerCatalogQueries(CatalogQueries):
    text_type = "NVARCHAR(500)"

    def quote_identifier(self, name: str) -> str:
        return '[' + name.replace(']', ']]') + ']'

    def get_columns(self, provider, token) -> List[ColumnRow]:
        rows = provider.execute_query("""
            SELECT
                c.TABLE_SCHEMA, c.TABLE_NAME, t.TABLE_TYPE, c.COLUMN_NAME, c.DATA_TYPE,
                c.CHARACTER_MAXIMUM_LENGTH, c.NUMERIC_PRECISION, c.NUMERIC_SCALE,
                c.IS_NULLABLE, c.COLUMN_DEFAULT, c.ORDINAL_POSITION,
                CASE WHEN pk.COLUMN_NAME IS NOT NULL THEN 1 ELSE 0 END AS IS_PRIMARY_KEY,
                COLUMNPROPERTY(OBJECT_ID(QUOTENAME(c.TABLE_SCHEMA) + '.' + QUOTENAME(c.TABLE_NAME)),
                               c.COLUMN_NAME, 'IsIdentity') AS IS_IDENTITY,
                COLUMNPROPERTY(OBJECT_ID(QUOTENAME(c.TABLE_SCHEMA) + '.' + QUOTENAME(c.TABLE_NAME)),
                               c.COLUMN_NAME, 'IsComputed') AS IS_COMPUTED
            FROM INFORMATION_SCHEMA.COLUMNS c
            JOIN INFORMATION_SCHEMA.TABLES t
                ON c.TABLE_SCHEMA = t.TABLE_SCHEMA AND c.TABLE_NAME = t.TABLE_NAME
            LEFT JOIN (
                SELECT tc.TABLE_SCHEMA, tc.TABLE_NAME, ku.COLUMN_NAME
                FROM INFORMATION_SCHEMA.TABLE_CONSTRAINTS tc
                JOIN INFORMATION_SCHEMA.KEY_COLUMN_USAGE ku
                    ON tc.CONSTRAINT_NAME = ku.CONSTRAINT_NAME
                    AND tc.TABLE_SCHEMA = ku.TABLE_SCHEMA
                WHERE tc.CONSTRAINT_TYPE = 'PRIMARY KEY'
            ) pk ON c.TABLE_SCHEMA = pk.TABLE_SCHEMA
                AND c.TABLE_NAME = pk.TABLE_NAME
                AND c.COLUMN_NAME = pk.COLUMN_NAME
            ORDER BY c.TABLE_SCHEMA, c.TABLE_NAME, c.ORDINAL_POSITION
        """, token=token)
        return [
            ColumnRow(
                schema=r['TABLE_SCHEMA'],
                table=r['TABLE_NAME'],
                table_type='BASE TABLE' if r['TABLE_TYPE'] == 'BASE TABLE' else 'VIEW',
                name=r['COLUMN_NAME'],
                data_type=r['DATA_TYPE'],
                max_length=r['CHARACTER_MAXIMUM_LENGTH'],
                precision=r['NUMERIC_PRECISION'],
                scale=r['NUMERIC_SCALE'],
                is_nullable=r['IS_NULLABLE'] == 'YES',
                is_primary_key=r['IS_PRIMARY_KEY'] == 1,
                is_identity=r['IS_IDENTITY'] == 1,
                is_computed=r['IS_COMPUTED'] == 1,
                default_value=r['COLUMN_DEFAULT'],
                ordinal_position=r['ORDINAL_POSITION'],
            )
            for r in rows
        ]

    def get_indexes(self, provider, token) -> List[IndexRow]:
        rows = provider.execute_query("""
            SELECT
                s.name AS schema_name, t.name AS table_name, i.name AS index_name,
                i.type_desc AS index_type, i.is_unique,
                CASE WHEN i.type = 1 THEN 1 ELSE 0 END AS is_clustered,
                STRING_AGG(c.name, ', ') WITHIN GROUP (ORDER BY ic.key_ordinal) AS columns
            FROM sys.indexes i
            JOIN sys.tables t ON i.object_id = t.object_id
            JOIN sys.schemas s ON t.schema_id = s.schema_id
            JOIN sys.index_columns ic ON i.object_id = ic.object_id AND i.index_id = ic.index_id
            JOIN sys.columns c ON ic.object_id = c.object_id AND ic.column_id = c.column_id
            WHERE i.name IS NOT NULL
            GROUP BY s.name, t.name, i.name, i.type_desc, i.is_unique, i.type
            ORDER BY s.name, t.name, i.name
        """, token=token)
        return [
            IndexRow(r['schema_name'], r['table_name'], r['index_name'], r['index_type'],
                     bool(r['is_unique']), bool(r['is_clustered']), r['columns'] or '')
            for r in rows
        ]

    def get_foreign_keys(self, provider, token) -> List[ForeignKeyRow]:
        rows = provider.execute_query("""
            SELECT
                fk.name AS fk_name,
                OBJECT_SCHEMA_NAME(fk.parent_object_id) AS from_schema,
                OBJECT_NAME(fk.parent_object_id) AS from_table,
                cp.name AS from_column,
                OBJECT_SCHEMA_NAME(fk.referenced_object_id) AS to_schema,
                OBJECT_NAME(fk.referenced_object_id) AS to_table,
                cr.name AS to_column,
                fk.delete_referential_action_desc AS delete_rule,
                fk.update_referential_action_desc AS update_rule
            FROM sys.foreign_keys fk
            JOIN sys.foreign_key_columns fkc ON fk.object_id = fkc.constraint_object_id
            JOIN sys.columns cp
                ON fkc.parent_object_id = cp.object_id AND fkc.parent_column_id = cp.column_id
            JOIN sys.columns cr
                ON fkc.referenced_object_id = cr.object_id AND fkc.referenced_column_id = cr.column_id
            ORDER BY from_schema, from_table, fk.name
        """, token=token)
        return [
            ForeignKeyRow(r['fk_name'], r['from_schema'], r['from_table'], r['from_column'],
                          r['to_schema'], r['to_table'], r['to_column'],
                          r['delete_rule'].replace('_', ' '), r['update_rule'].replace('_', ' '))
            for r in rows
        ]

    def get_views(self, provider, token) -> List[ViewRow]:
        rows = provider.execute_query("""
            SELECT s.name AS schema_name, v.name AS view_name,
                   ISNULL(m.definition, '') AS definition
            FROM sys.views v
            JOIN sys.schemas s ON v.schema_id = s.schema_id
            LEFT JOIN sys.sql_modules m ON m.object_id = v.object_id
            WHERE v.is_ms_shipped = 0
            ORDER BY s.name, v.name
        """, token=token)
        return [ViewRow(r['schema_name'], r['view_name'], r['definition']) for r in rows]

    def get_procedures(self, provider, token) -> List[ProcedureRow]:
        rows = provider.execute_query("""
            SELECT s.name AS schema_name, p.name AS procedure_name,
                   ISNULL(m.definition, '') AS definition, p.modify_date AS last_modified
            FROM sys.procedures p
            JOIN sys.schemas s ON p.schema_id = s.schema_id
            LEFT JOIN sys.sql_modules m ON p.object_id = m.object_id
            WHERE p.is_ms_shipped = 0
            ORDER BY s.name, p.name
        """, token=token)
        return [ProcedureRow(r['schema_name'], r['procedure_name'], r['definition'],
                             r['last_modified'])
                for r in rows]

    def get_functions(self, provider, token) -> List[FunctionRow]:
        rows = provider.execute_query("""
            SELECT s.name AS schema_name, o.name AS function_name,
                   CASE o.type WHEN 'FN' THEN 'Scalar' WHEN 'IF' THEN 'Inline Table'
                        WHEN 'TF' THEN 'Table' ELSE o.type_desc END AS function_type,
                   ISNULL(m.definition, '') AS definition, o.modify_date AS last_modified
            FROM sys.objects o
            JOIN sys.schemas s ON o.schema_id = s.schema_id
            LEFT JOIN sys.sql_modules m ON o.object_id = m.object_id
            WHERE o.type IN ('FN', 'IF', 'TF')
              AND o.is_ms_shipped = 0
            ORDER BY s.name, o.name
        """, token=token)
        return [FunctionRow(r['schema_name'], r['function_name'], r['function_type'],
                            r['definition'], r['last_modified'])
                for r in rows]

    def get_triggers(self, provider, token) -> List[TriggerRow]:
        rows = provider.execute_query("""
            SELECT
                s.name AS schema_name, tr.name AS trigger_name,
                OBJECT_NAME(tr.parent_id) AS parent_table,
                CASE WHEN tr.is_instead_of_trigger = 1 THEN 'INSTEAD OF' ELSE 'AFTER' END AS trigger_type,
                STUFF((
                    SELECT ', ' + te.type_desc
                    FROM sys.trigger_events te
                    WHERE te.object_id = tr.object_id
                    FOR XML PATH(''), TYPE
                ).value('.', 'NVARCHAR(MAX)'), 1, 2, '') AS trigger_events,
                CASE WHEN tr.is_disabled = 0 THEN 1 ELSE 0 END AS is_enabled,
                ISNULL(m.definition, '') AS definition
            FROM sys.triggers tr
            JOIN sys.objects o ON tr.parent_id = o.object_id
            JOIN sys.schemas s ON o.schema_id = s.schema_id
            LEFT JOIN sys.sql_modules m ON tr.object_id = m.object_id
            WHERE tr.parent_class = 1
            ORDER BY s.name, parent_table, tr.name
        """, token=token)
        return [
            TriggerRow(r['schema_name'], r['trigger_name'], r['parent_table'], r['trigger_type'],
                       r['trigger_events'] or '', bool(r['is_enabled']), r['definition'])
            for r in rows
        ]

    def get_synonyms(self, provider, token) -> List[SynonymRow]:
        rows = provider.execute_query("""
            SELECT s.name AS schema_name, syn.name AS synonym_name,
                   syn.base_object_name
            FROM sys.synonyms syn
            JOIN sys.schemas s ON syn.schema_id = s.schema_id
            ORDER BY s.name, syn.name
        """, token=token)
        return [SynonymRow(r['schema_name'], r['synonym_name'], r['base_object_name'])
                for r in rows]

    def get_sequences(self, provider, token) -> List[SequenceRow]:
        rows = provider.execute_query("""
            SELECT s.name AS schema_name, seq.name AS sequence_name,
                   TYPE_NAME(seq.system_type_id) AS data_type,
                   CAST(seq.current_value AS BIGINT) AS current_value,
                   CAST(seq.increment AS BIGINT) AS increment,
                   CAST(seq.minimum_value AS BIGINT) AS min_value,
                   CAST(seq.maximum_value AS BIGINT) AS max_value,
                   seq.is_cycling
            FROM sys.sequences seq
            JOIN sys.schemas s ON seq.schema_id = s.schema_id
            ORDER BY s.name, seq.name
        """, token=token)
        return [
            SequenceRow(r['schema_name'], r['sequence_name'], r['data_type'], r['current_value'],
                        r['increment'], r['min_value'], r['max_value'], bool(r['is_cycling']))
            for r in rows
        ]

    def get_user_defined_types(self, provider, token) -> List[UdtRow]:
        rows = provider.execute_query("""
            SELECT s.name AS schema_name, t.name AS type_name,
                   CASE WHEN t.is_table_type = 1 THEN 'table'
                        ELSE TYPE_NAME(t.system_type_id) END AS base_type,
                   t.is_table_type, t.is_nullable, t.max_length
            FROM sys.types t
            JOIN sys.schemas s ON t.schema_id = s.schema_id
            WHERE t.is_user_defined = 1
            ORDER BY s.name, t.name
        """, token=token)
        return [UdtRow(r['schema_name'], r['type_name'], r['base_type'],
                       bool(r['is_table_type']), bool(r['is_nullable']), r['max_length'])
                for r in rows]

    def get_jobs(self, provider, database_name, token) -> List[JobRow]:
        rows = provider.execute_query("""
            SELECT
                j.name AS job_name, ISNULL(j.description, '') AS description,
                j.enabled AS is_enabled, js.step_id, js.step_name, js.subsystem,
                js.database_name, ISNULL(js.command, '') AS command,
                jh.last_run_date,
                STUFF((
                    SELECT ', ' + ss.name
                    FROM msdb.dbo.sysjobschedules jsc
                    JOIN msdb.dbo.sysschedules ss ON jsc.schedule_id = ss.schedule_id
                    WHERE jsc.job_id = j.job_id
                    FOR XML PATH(''), TYPE
                ).value('.', 'NVARCHAR(MAX)'), 1, 2, '') AS schedule
            FROM msdb.dbo.sysjobs j
            JOIN msdb.dbo.sysjobsteps js ON j.job_id = js.job_id
            LEFT JOIN (
                SELECT job_id,
                       MAX(CAST(CAST(run_date AS VARCHAR(8)) AS DATETIME)) AS last_run_date
                FROM msdb.dbo.sysjobhistory
                WHERE step_id = 0
                GROUP BY job_id
            ) jh ON j.job_id = jh.job_id
            WHERE js.database_name = ?
               OR js.command LIKE '%' + ? + '%'
            ORDER BY j.name, js.step_id
        """, (database_name, database_name), token=token)
        jobs: Dict[str, JobRow] = {}
        for r in rows:
            step = JobStepRow(r['step_id'], r['step_name'], r['subsystem'],
                              r['database_name'], r['command'])
            job = jobs.get(r['job_name'])
            if job is None:
                jobs[r['job_name']] = JobRow(r['job_name'], r['description'],
                                             bool(r['is_enabled']), [step],
                                             r['last_run_date'], r['schedule'])
            else:
                job.steps.append(step)
        return list(jobs.values())

    def get_object_dependencies(self, provider, token) -> List[ObjectDependencyRow]:
        rows = provider.execute_query("""
            SELECT DISTINCT
                OBJECT_SCHEMA_NAME(d.referencing_id) AS from_schema,
                OBJECT_NAME(d.referencing_id) AS from_name,
                CASE o1.type WHEN 'V' THEN 'View' WHEN 'P' THEN 'Procedure'
                     WHEN 'FN' THEN 'Function' WHEN 'IF' THEN 'Function'
                     WHEN 'TF' THEN 'Function' WHEN 'TR' THEN 'Trigger'
                     ELSE o1.type_desc END AS from_type,
                ISNULL(d.referenced_schema_name, 'dbo') AS to_schema,
                d.referenced_entity_name AS to_name,
                CASE ISNULL(o2.type, 'U') WHEN 'U' THEN 'Table' WHEN 'V' THEN 'View'
                     WHEN 'P' THEN 'Procedure' WHEN 'FN' THEN 'Function'
                     WHEN 'IF' THEN 'Function' WHEN 'TF' THEN 'Function'
                     WHEN 'SN' THEN 'Synonym'
                     ELSE 'Table' END AS to_type,
                d.referenced_database_name AS to_database
            FROM sys.sql_expression_dependencies d
            JOIN sys.objects o1 ON d.referencing_id = o1.object_id
            LEFT JOIN sys.objects o2
                ON d.referenced_database_name IS NULL
                AND o2.object_id = OBJECT_ID(
                    QUOTENAME(ISNULL(d.referenced_schema_name, 'dbo')) + '.'
                    + QUOTENAME(d.referenced_entity_name))
            WHERE o1.type IN ('V', 'P', 'FN', 'IF', 'TF', 'TR')
              AND d.referenced_entity_name IS NOT NULL
              AND OBJECT_NAME(d.referencing_id) IS NOT NULL
            ORDER BY from_schema, from_name, to_schema, to_name
        """, token=token)
        return [
            ObjectDependencyRow(r['from_schema'], r['from_name'], r['from_type'],
                                r['to_schema'], r['to_name'], r['to_type'], r['to_database'])
            for r in rows
        ]


class SqlServerPerformanceQueries(PerformanceQueries):

    def get_table_usage_stats(self, provider, token) -> List[TableUsageRow]:
        rows = provider.execute_query("""
            SELECT
                SCHEMA_NAME(t.schema_id) AS schema_name, t.name AS table_name,
                COALESCE(SUM(s.user_seeks + s.user_scans + s.user_lookups), 0) AS total_reads,
                COALESCE(SUM(s.user_updates), 0) AS total_writes
            FROM sys.tables t
            LEFT JOIN sys.dm_db_index_usage_stats s
                ON t.object_id = s.object_id AND s.database_id = DB_ID()
            GROUP BY t.schema_id, t.name
        """, token=token)
        return [TableUsageRow(r['schema_name'], r['table_name'],
                              int(r['total_reads']), int(r['total_writes']))
                for r in rows]

    def get_procedure_execution_stats(self, provider, token) -> List[RoutineUsageRow]:
        rows = provider.execute_query("""
            SELECT SCHEMA_NAME(p.schema_id) AS schema_name, p.name,
                   ISNULL(SUM(ps.execution_count), 0) AS execution_count,
                   MAX(ps.last_execution_time) AS last_execution
            FROM sys.procedures p
            LEFT JOIN sys.dm_exec_procedure_stats ps
                ON p.object_id = ps.object_id AND ps.database_id = DB_ID()
            GROUP BY p.schema_id, p.name
        """, token=token)
        return [RoutineUsageRow(r['schema_name'], r['name'], int(r['execution_count']),
                                r['last_execution'])
                for r in rows]

    def get_function_execution_stats(self, provider, token) -> List[RoutineUsageRow]:
        rows = provider.execute_query("""
            SELECT SCHEMA_NAME(o.schema_id) AS schema_name, o.name,
                   ISNULL(SUM(fs.execution_count), 0) AS execution_count,
                   MAX(fs.last_execution_time) AS last_execution
            FROM sys.objects o
            LEFT JOIN sys.dm_exec_function_stats fs
                ON o.object_id = fs.object_id AND fs.database_id = DB_ID()
            WHERE o.type IN ('FN', 'IF', 'TF')
            GROUP BY o.schema_id, o.name
        """, token=token)
        return [RoutineUsageRow(r['schema_name'], r['name'], int(r['execution_count']),
                                r['last_execution'])
                for r in rows]

    def is_query_store_enabled(self, provider, token) -> bool:
        state = provider.execute_scalar(
            "SELECT actual_state_desc FROM sys.database_query_store_options", token=token)
        return state in ('READ_WRITE', 'READ_ONLY')

    def get_query_store_object_stats(self, provider, token) -> List[QueryStoreObjectRow]:
        rows = provider.execute_query("""
            ;WITH query_agg AS (
                SELECT q.object_id,
                       SUM(rs.count_executions) AS total_executions,
                       MAX(rs.last_execution_time) AS last_execution
                FROM sys.query_store_query q
                JOIN sys.query_store_plan p ON q.query_id = p.query_id
                JOIN sys.query_store_runtime_stats rs ON p.plan_id = rs.plan_id
                WHERE q.object_id <> 0
                GROUP BY q.object_id
            )
            SELECT SCHEMA_NAME(o.schema_id) AS schema_name, o.name,
                   CASE WHEN o.type IN ('FN', 'IF', 'TF', 'FS', 'FT') THEN 'Function'
                        ELSE 'Procedure' END AS object_type,
                   a.total_executions, a.last_execution
            FROM query_agg a
            JOIN sys.objects o ON a.object_id = o.object_id
        """, token=token)
        return [QueryStoreObjectRow(r['schema_name'], r['name'], r['object_type'],
                                    int(r['total_executions'] or 0), r['last_execution'])
                for r in rows]

    def get_query_store_top_queries(self, provider, top_n, token) -> List[QueryTextRow]:
        rows = provider.execute_query("""
            ;WITH text_agg AS (
                SELECT TOP (?) q.query_text_id,
                       SUM(rs.count_executions) AS total_executions,
                       MAX(rs.last_execution_time) AS last_execution
                FROM sys.query_store_query q
                JOIN sys.query_store_plan p ON q.query_id = p.query_id
                JOIN sys.query_store_runtime_stats rs ON p.plan_id = rs.plan_id
                WHERE q.object_id = 0
                GROUP BY q.query_text_id
                ORDER BY SUM(rs.count_executions) DESC
            )
            SELECT LEFT(qt.query_sql_text, 4000) AS query_text,
                   a.total_executions, a.last_execution
            FROM text_agg a
            JOIN sys.query_store_query_text qt ON a.query_text_id = qt.query_text_id
        """, (top_n,), token=token)
        return [QueryTextRow(r['query_text'] or '', int(r['total_executions'] or 0),
                             r['last_execution'])
                for r in rows]

    def get_table_row_counts(self, provider, token) -> List[RowCountRow]:
        rows = provider.execute_query("""
            SELECT s.name AS schema_name, t.name AS table_name,
                   SUM(p.row_count) AS row_count
            FROM sys.tables t
            JOIN sys.schemas s ON t.schema_id = s.schema_id
            JOIN sys.dm_db_partition_stats p
                ON p.object_id = t.object_id AND p.index_id IN (0, 1)
            GROUP BY s.name, t.name
        """, token=token)
        return [RowCountRow(r['schema_name'], r['table_name'], int(r['row_count'] or 0))
                for r in rows]

    def get_index_usage_stats(self, provider, token) -> List[IndexUsageRow]:
        rows = provider.execute_query("""
            SELECT
                s.name AS schema_name, t.name AS table_name, i.name AS index_name,
                i.type_desc AS index_type, i.is_unique,
                CASE WHEN i.type = 1 THEN 1 ELSE 0 END AS is_clustered,
                (SELECT STRING_AGG(c.name, ', ') WITHIN GROUP (ORDER BY ic.key_ordinal)
                 FROM sys.index_columns ic
                 JOIN sys.columns c ON ic.object_id = c.object_id AND ic.column_id = c.column_id
                 WHERE ic.object_id = i.object_id AND ic.index_id = i.index_id
                   AND ic.is_included_column = 0) AS columns,
                ISNULL(us.user_seeks, 0) AS user_seeks,
                ISNULL(us.user_scans, 0) AS user_scans,
                ISNULL(us.user_lookups, 0) AS user_lookups,
                ISNULL(us.user_updates, 0) AS user_updates,
                (SELECT SUM(ps.used_page_count) * 8
                 FROM sys.dm_db_partition_stats ps
                 WHERE ps.object_id = i.object_id AND ps.index_id = i.index_id) AS size_kb
            FROM sys.indexes i
            JOIN sys.tables t ON i.object_id = t.object_id
            JOIN sys.schemas s ON t.schema_id = s.schema_id
            LEFT JOIN sys.dm_db_index_usage_stats us
                ON us.object_id = i.object_id AND us.index_id = i.index_id
               AND us.database_id = DB_ID()
            WHERE i.name IS NOT NULL AND t.is_ms_shipped = 0
            ORDER BY s.name, t.name, i.name
        """, token=token)
        return [
            IndexUsageRow(r['schema_name'], r['table_name'], r['index_name'], r['index_type'],
                          bool(r['is_unique']), bool(r['is_clustered']), r['columns'] or '',
                          int(r['user_seeks']), int(r['user_scans']), int(r['user_lookups']),
                          int(r['user_updates']), int(r['size_kb'] or 0))
            for r in rows
        ]

    def get_missing_indexes(self, provider, token) -> List[MissingIndexRow]:
        rows = provider.execute_query("""
            SELECT
                OBJECT_SCHEMA_NAME(d.object_id) AS schema_name,
                OBJECT_NAME(d.object_id) AS table_name,
                gs.avg_total_user_cost * gs.avg_user_impact
                    * (gs.user_seeks + gs.user_scans) AS impact_score,
                d.equality_columns, d.inequality_columns, d.included_columns,
                gs.user_seeks, gs.user_scans
            FROM sys.dm_db_missing_index_details d
            JOIN sys.dm_db_missing_index_groups g ON d.index_handle = g.index_handle
            JOIN sys.dm_db_missing_index_group_stats gs ON g.index_group_handle = gs.group_handle
            WHERE d.database_id = DB_ID()
            ORDER BY impact_score DESC
        """, token=token)
        return [
            MissingIndexRow(r['schema_name'], r['table_name'], float(r['impact_score'] or 0),
                            r['equality_columns'], r['inequality_columns'], r['included_columns'],
                            r['user_seeks'], r['user_scans'])
            for r in rows
        ]


class SqlServerServerQueries(ServerQueries):

    def enumerate_databases(self, provider, token) -> List[str]:
        rows = provider.execute_query("""
            SELECT name FROM sys.databases
            WHERE name NOT IN ('master', 'tempdb', 'model', 'msdb')
              AND state_desc = 'ONLINE'
            ORDER BY name
        """, token=token)
        return [r['name'] for r in rows]

    def get_server_uptime(self, provider, token) -> Tuple[Optional[datetime], Optional[int]]:
        row = provider.execute_query("""
            SELECT sqlserver_start_time,
                   DATEDIFF(DAY, sqlserver_start_time, SYSDATETIME()) AS uptime_days
            FROM sys.dm_os_sys_info
        """, token=token)
        if not row or row[0]['sqlserver_start_time'] is None:
            return None, None
        start_time = row[0]['sqlserver_start_time']
        if start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=timezone.utc)
        return start_time, int(row[0]['uptime_days'])


def create_bundle(query_timeout_seconds: int = 300) -> ProviderBundle:
    return ProviderBundle(
        provider_type='sqlserver',
        factory=SqlServerProviderFactory(query_timeout_seconds),
        catalog=SqlServerCatalogQueries(),
        performance=SqlServerPerformanceQueries(),
        server=SqlServerServerQueries(),
    )
