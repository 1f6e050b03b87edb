"""
Dialect provider contracts.

Each database engine (PostgreSQL, SQL Server) implements these interfaces to
execute read-only SQL and map its catalog and telemetry views onto the
dialect-neutral rows in ``rows.py``.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..cancellation import CancellationToken
from .rows import (
    ColumnRow, ForeignKeyRow, FunctionRow, IndexRow, IndexUsageRow, JobRow, MissingIndexRow,
    ObjectDependencyRow, ProcedureRow, QueryStoreObjectRow, QueryTextRow, RoutineUsageRow,
    RowCountRow, SequenceRow, SynonymRow, TableUsageRow, TriggerRow, UdtRow, ViewRow,
)


class DbProvider(ABC):
    """Executes SQL against one database.

    Implementations open a connection per statement, so a provider may be
    shared by concurrently running analyzers without two queries ever
    sharing a driver connection.
    """

    def __init__(self, connection_string: str):
        self.connection_string = connection_string
        self.server_name = ""
        self.database_name = ""

    @abstractmethod
    def connect(self, token: Optional[CancellationToken] = None):
        """Verify connectivity and resolve server and database names.

        Raises:
            ConnectionFailure: backend unreachable or login rejected
        """

    @abstractmethod
    def change_database(self, database_name: str):
        """Point subsequent statements at another database on the same server."""

    @abstractmethod
    def execute_query(self, sql: str, params: Optional[Sequence[Any]] = None,
                      token: Optional[CancellationToken] = None) -> List[Dict[str, Any]]:
        """Run a statement and return its rows as dicts keyed by column name."""

    def execute_scalar(self, sql: str, params: Optional[Sequence[Any]] = None,
                       token: Optional[CancellationToken] = None) -> Any:
        rows = self.execute_query(sql, params, token)
        if not rows:
            return None
        return next(iter(rows[0].values()), None)

    def close(self):
        """Release pooled resources. Safe to call more than once."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ProviderFactory(ABC):
    """Creates providers and manipulates connection strings of one dialect."""

    provider_type: str = ""
    default_system_database: str = ""

    @abstractmethod
    def create(self, connection_string: str,
               token: Optional[CancellationToken] = None) -> DbProvider:
        """Create a connected provider."""

    @abstractmethod
    def normalize_connection_string(self, connection_string: str) -> str:
        """Apply read-only, timeout and application-name defaults."""

    @abstractmethod
    def is_server_mode(self, connection_string: str) -> bool:
        """True when the connection string names no database."""

    @abstractmethod
    def set_database(self, connection_string: str, database_name: str) -> str:
        """Return a copy of the connection string targeting ``database_name``."""


class CatalogQueries(ABC):
    """Schema metadata extraction."""

    @abstractmethod
    def quote_identifier(self, name: str) -> str:
        pass

    def quote_table(self, schema: str, table: str) -> str:
        return f"{self.quote_identifier(schema)}.{self.quote_identifier(table)}"

    @abstractmethod
    def get_columns(self, provider: DbProvider, token: CancellationToken) -> List[ColumnRow]:
        pass

    @abstractmethod
    def get_indexes(self, provider: DbProvider, token: CancellationToken) -> List[IndexRow]:
        pass

    @abstractmethod
    def get_foreign_keys(self, provider: DbProvider, token: CancellationToken) -> List[ForeignKeyRow]:
        pass

    @abstractmethod
    def get_views(self, provider: DbProvider, token: CancellationToken) -> List[ViewRow]:
        pass

    @abstractmethod
    def get_procedures(self, provider: DbProvider, token: CancellationToken) -> List[ProcedureRow]:
        pass

    @abstractmethod
    def get_functions(self, provider: DbProvider, token: CancellationToken) -> List[FunctionRow]:
        pass

    @abstractmethod
    def get_triggers(self, provider: DbProvider, token: CancellationToken) -> List[TriggerRow]:
        pass

    def get_synonyms(self, provider: DbProvider, token: CancellationToken) -> List[SynonymRow]:
        """Dialects without synonyms report none."""
        return []

    @abstractmethod
    def get_sequences(self, provider: DbProvider, token: CancellationToken) -> List[SequenceRow]:
        pass

    @abstractmethod
    def get_user_defined_types(self, provider: DbProvider, token: CancellationToken) -> List[UdtRow]:
        pass

    def get_jobs(self, provider: DbProvider, database_name: str,
                 token: CancellationToken) -> List[JobRow]:
        """Dialects without a scheduler catalog report none."""
        return []

    @abstractmethod
    def get_object_dependencies(self, provider: DbProvider,
                                token: CancellationToken) -> List[ObjectDependencyRow]:
        pass

    def build_count_sql(self, schema: str, table: str) -> str:
        return f"SELECT COUNT(*) AS row_count FROM {self.quote_table(schema, table)}"

    def build_column_profile_sql(self, schema: str, table: str, column: str,
                                 can_min_max: bool) -> str:
        col = self.quote_identifier(column)
        min_max = (f"CAST(MIN({col}) AS {self.text_type}) AS min_value, "
                   f"CAST(MAX({col}) AS {self.text_type}) AS max_value"
                   if can_min_max else "NULL AS min_value, NULL AS max_value")
        return (f"SELECT COUNT(*) AS total_count, "
                f"COUNT(*) - COUNT({col}) AS null_count, "
                f"COUNT(DISTINCT {col}) AS distinct_count, {min_max} "
                f"FROM {self.quote_table(schema, table)}")

    def build_null_count_sql(self, schema: str, table: str, column: str) -> str:
        col = self.quote_identifier(column)
        return (f"SELECT COUNT(*) - COUNT({col}) AS null_count "
                f"FROM {self.quote_table(schema, table)}")

    text_type = "VARCHAR(4000)"


class PerformanceQueries(ABC):
    """Usage telemetry."""

    @abstractmethod
    def get_table_usage_stats(self, provider: DbProvider,
                              token: CancellationToken) -> List[TableUsageRow]:
        pass

    @abstractmethod
    def get_procedure_execution_stats(self, provider: DbProvider,
                                      token: CancellationToken) -> List[RoutineUsageRow]:
        pass

    @abstractmethod
    def get_function_execution_stats(self, provider: DbProvider,
                                     token: CancellationToken) -> List[RoutineUsageRow]:
        pass

    @abstractmethod
    def is_query_store_enabled(self, provider: DbProvider, token: CancellationToken) -> bool:
        pass

    @abstractmethod
    def get_query_store_object_stats(self, provider: DbProvider,
                                     token: CancellationToken) -> List[QueryStoreObjectRow]:
        pass

    @abstractmethod
    def get_query_store_top_queries(self, provider: DbProvider, top_n: int,
                                    token: CancellationToken) -> List[QueryTextRow]:
        pass

    @abstractmethod
    def get_table_row_counts(self, provider: DbProvider,
                             token: CancellationToken) -> List[RowCountRow]:
        """Catalog row-count estimates; no table scans."""

    @abstractmethod
    def get_index_usage_stats(self, provider: DbProvider,
                              token: CancellationToken) -> List[IndexUsageRow]:
        """Every index with seek/scan/lookup/update counters."""

    def get_missing_indexes(self, provider: DbProvider,
                            token: CancellationToken) -> List[MissingIndexRow]:
        """Indexes the optimizer asked for. Dialects without such telemetry return none."""
        return []


class ServerQueries(ABC):
    """Server-level operations."""

    @abstractmethod
    def enumerate_databases(self, provider: DbProvider, token: CancellationToken) -> List[str]:
        pass

    @abstractmethod
    def get_server_uptime(self, provider: DbProvider,
                          token: CancellationToken) -> Tuple[Optional[datetime], Optional[int]]:
        """Return (start time, whole days of uptime)."""


@dataclass(frozen=True)
class ProviderBundle:
    """Everything the core needs from one dialect."""
    provider_type: str
    factory: ProviderFactory
    catalog: CatalogQueries
    performance: PerformanceQueries
    server: ServerQueries
