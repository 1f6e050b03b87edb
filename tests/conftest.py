"""Shared fixtures: an in-memory provider bundle standing in for a live server."""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from db_analyser.config import AnalysisConfig
from db_analyser.errors import ConnectionFailure, PrivilegeDenied
from db_analyser.models import ColumnInfo, ForeignKeyInfo, IndexInfo, TableInfo
from db_analyser.providers.base import (
    CatalogQueries, DbProvider, PerformanceQueries, ProviderBundle, ProviderFactory, ServerQueries,
)
from db_analyser.providers.rows import ColumnRow, ForeignKeyRow, IndexRow, ViewRow
from db_analyser.session import SessionManager


def column_rows(schema, table, columns, table_type='BASE TABLE'):
    """columns: (name, data_type, is_primary_key) tuples."""
    return [
        ColumnRow(schema, table, table_type, name, data_type, None, None, None,
                  not pk, pk, pk, False, None, position)
        for position, (name, data_type, pk) in enumerate(columns, start=1)
    ]


def shop_catalog():
    """Order/OrderLine/Customer plus a view and an unused backup table."""
    return {
        'columns': [
            *column_rows('dbo', 'Order', [('Id', 'int', True), ('CustomerId', 'int', False)]),
            *column_rows('dbo', 'OrderLine', [('Id', 'int', True), ('OrderId', 'int', False)]),
            *column_rows('dbo', 'Customer', [('Id', 'int', True), ('Name', 'nvarchar', False)]),
            *column_rows('dbo', 'tmp_OrderBackup', [('Id', 'int', False)]),
            *column_rows('dbo', 'OrderSummary', [('OrderId', 'int', False)], table_type='VIEW'),
        ],
        'indexes': [
            IndexRow('dbo', 'OrderLine', 'IX_OrderLine_OrderId', 'NONCLUSTERED', False, False, 'OrderId'),
        ],
        'foreign_keys': [
            ForeignKeyRow('FK_OrderLine_Order', 'dbo', 'OrderLine', 'OrderId', 'dbo', 'Order', 'Id',
                          'NO_ACTION', 'NO_ACTION'),
        ],
        'views': [
            ViewRow('dbo', 'OrderSummary',
                    'CREATE VIEW dbo.OrderSummary AS SELECT o.Id FROM dbo.[Order] o '
                    'JOIN dbo.OrderLine l ON l.OrderId = o.Id'),
        ],
    }


class FakeProvider(DbProvider):
    def __init__(self, connection_string, server_name='fake-server', database_name=''):
        super().__init__(connection_string)
        self.server_name = server_name
        self.database_name = database_name
        self.closed = False
        self.queries = []

    def connect(self, token=None):
        pass

    def change_database(self, database_name):
        self.database_name = database_name

    def execute_query(self, sql, params=None, token=None):
        self.queries.append(sql)
        if 'COUNT(DISTINCT' in sql:
            return [{'total_count': 3, 'null_count': 0, 'distinct_count': 3,
                     'min_value': '1', 'max_value': '3'}]
        return [{'row_count': 3}]

    def close(self):
        self.closed = True


class FakeCatalog(CatalogQueries):
    """Serves catalog rows per database.

    ``block_on`` names a database whose column query waits until the token
    is cancelled, to exercise in-flight cancellation.
    """

    def __init__(self, data, denied=(), block_on=None):
        self.data = data
        self.denied = set(denied)
        self.block_on = block_on
        self.blocking = threading.Event()

    def quote_identifier(self, name):
        return f"[{name}]"

    def _rows(self, provider, kind):
        if provider.database_name in self.denied:
            raise PrivilegeDenied(f"The SELECT permission was denied on database '{provider.database_name}'")
        return list(self.data.get(provider.database_name, {}).get(kind, []))

    def get_columns(self, provider, token):
        if provider.database_name == self.block_on:
            self.blocking.set()
            token.wait(timeout=10)
            token.raise_if_cancelled()
        return self._rows(provider, 'columns')

    def get_indexes(self, provider, token):
        return self._rows(provider, 'indexes')

    def get_foreign_keys(self, provider, token):
        return self._rows(provider, 'foreign_keys')

    def get_views(self, provider, token):
        return self._rows(provider, 'views')

    def get_procedures(self, provider, token):
        return self._rows(provider, 'procedures')

    def get_functions(self, provider, token):
        return self._rows(provider, 'functions')

    def get_triggers(self, provider, token):
        return self._rows(provider, 'triggers')

    def get_sequences(self, provider, token):
        return self._rows(provider, 'sequences')

    def get_user_defined_types(self, provider, token):
        return self._rows(provider, 'user_defined_types')

    def get_object_dependencies(self, provider, token):
        return self._rows(provider, 'object_dependencies')


class FakePerformance(PerformanceQueries):
    def __init__(self, data=None, query_store=False):
        self.data = data or {}
        self.query_store = query_store

    def _rows(self, provider, kind):
        value = self.data.get(provider.database_name, {}).get(kind, [])
        if isinstance(value, Exception):
            raise value
        return list(value)

    def get_table_usage_stats(self, provider, token):
        return self._rows(provider, 'table_usage')

    def get_procedure_execution_stats(self, provider, token):
        return self._rows(provider, 'procedure_stats')

    def get_function_execution_stats(self, provider, token):
        return self._rows(provider, 'function_stats')

    def is_query_store_enabled(self, provider, token):
        return self.query_store

    def get_query_store_object_stats(self, provider, token):
        return self._rows(provider, 'query_store_objects')

    def get_query_store_top_queries(self, provider, top_n, token):
        return self._rows(provider, 'query_texts')[:top_n]

    def get_table_row_counts(self, provider, token):
        return self._rows(provider, 'row_counts')

    def get_index_usage_stats(self, provider, token):
        return self._rows(provider, 'index_usage')

    def get_missing_indexes(self, provider, token):
        return self._rows(provider, 'missing_indexes')


class FakeServer(ServerQueries):
    def __init__(self, databases=(), uptime_days=45):
        self.databases = list(databases)
        self.uptime_days = uptime_days

    def enumerate_databases(self, provider, token):
        return list(self.databases)

    def get_server_uptime(self, provider, token):
        if self.uptime_days is None:
            return None, None
        start = datetime.now(timezone.utc) - timedelta(days=self.uptime_days)
        return start, self.uptime_days


class FakeFactory(ProviderFactory):
    """Connection strings look like ``server=fake;database=Shop``."""

    provider_type = 'fake'
    default_system_database = 'master'

    def __init__(self, unreachable=()):
        self.unreachable = set(unreachable)
        self.created = []

    @staticmethod
    def _parse(connection_string):
        return dict(part.split('=', 1) for part in connection_string.split(';') if '=' in part)

    def create(self, connection_string, token=None):
        params = self._parse(connection_string)
        if params.get('server') in self.unreachable:
            raise ConnectionFailure(f"Cannot reach server '{params.get('server')}'")
        provider = FakeProvider(connection_string, params.get('server', 'fake-server'),
                                params.get('database', ''))
        self.created.append(provider)
        return provider

    def normalize_connection_string(self, connection_string):
        return connection_string

    def is_server_mode(self, connection_string):
        return not self._parse(connection_string).get('database')

    def set_database(self, connection_string, database_name):
        params = self._parse(connection_string)
        params['database'] = database_name
        return ';'.join(f"{k}={v}" for k, v in params.items())


def make_bundle(catalog_data=None, performance_data=None, databases=(), denied=(),
                uptime_days=45, query_store=False, block_on=None, unreachable=()):
    return ProviderBundle(
        provider_type='fake',
        factory=FakeFactory(unreachable),
        catalog=FakeCatalog(catalog_data or {}, denied, block_on),
        performance=FakePerformance(performance_data, query_store),
        server=FakeServer(databases, uptime_days),
    )


@pytest.fixture
def config():
    return AnalysisConfig(max_workers=4, max_parallel_databases=2)


@pytest.fixture
def shop_bundle():
    return make_bundle({'Shop': shop_catalog()})


@pytest.fixture
def manager_for(config):
    """Build a SessionManager whose dialect lookup returns the given bundle."""
    managers = []

    def build(bundle):
        manager = SessionManager(config, bundle_resolver=lambda dialect, timeout: bundle)
        managers.append(manager)
        return manager

    yield build
    for manager in managers:
        manager.close()


def make_table(name, columns, schema='dbo', foreign_keys=(), indexes=(), database=None):
    """columns: (name, data_type, is_primary_key) tuples, or ColumnInfo."""
    infos = tuple(
        c if isinstance(c, ColumnInfo) else ColumnInfo(c[0], c[1], is_primary_key=c[2],
                                                       ordinal_position=i)
        for i, c in enumerate(columns, start=1))
    return TableInfo(schema, name, infos, tuple(indexes), tuple(foreign_keys), database)


def make_fk(from_table, from_column, to_table, to_column='Id', schema='dbo'):
    return ForeignKeyInfo(f"FK_{from_table}_{to_table}", schema, from_table, from_column,
                          schema, to_table, to_column)


def make_index(name, *columns):
    return IndexInfo(name, 'NONCLUSTERED', False, False, tuple(columns))
