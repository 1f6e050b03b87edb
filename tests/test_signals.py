"""Tests for the individual usage signals."""
from datetime import datetime

import pytest

from conftest import FakePerformance, FakeProvider, make_fk, make_table
from db_analyser.cancellation import CancellationToken
from db_analyser.config import AnalysisConfig
from db_analyser.errors import FeatureUnavailable, SignalUnavailable
from db_analyser.models import (
    DatabaseSchema, DetectedVia, FunctionInfo, ObjectDependency, ObjectType, ProcedureInfo,
    TableProfile, ViewInfo,
)
from db_analyser.providers.rows import (
    QueryStoreObjectRow, QueryTextRow, RoutineUsageRow, RowCountRow, TableUsageRow,
)
from db_analyser.signals import (
    AccessSignal, ExecutionSignal, NamingSignal, OrphanSignal, QueryStoreSignal, RowCountSignal,
    SignalContext,
)
from db_analyser.signals.naming import suspicious_reason
from db_analyser.signals.query_store import table_reference_pattern

LAST_RUN = datetime(2025, 3, 1, 8, 30)


@pytest.fixture
def schema():
    return DatabaseSchema(
        database_name='Shop',
        tables=[
            make_table('Order', [('Id', 'int', True)]),
            make_table('OrderArchive', [('Id', 'int', True)]),
            make_table('Customer', [('Id', 'int', True)]),
        ],
        views=[ViewInfo('dbo', 'OrderSummary', 'SELECT Id FROM dbo.[Order]')],
        procedures=[ProcedureInfo('dbo', 'usp_Daily'), ProcedureInfo('dbo', 'usp_Unused')],
        functions=[FunctionInfo('dbo', 'fn_Total')],
    )


def context_for(schema, performance=None, query_store=False, uptime_days=45, **kwargs):
    return SignalContext(
        provider=FakeProvider('server=x;database=Shop', database_name='Shop'),
        performance=FakePerformance({'Shop': performance or {}}, query_store),
        schema=schema,
        config=AnalysisConfig(),
        uptime_days=uptime_days,
        **kwargs,
    )


def weights(results):
    return {r.object_name: r.weight for r in results}


def evaluate(signal, context):
    return signal.evaluate(context, CancellationToken())


class TestAccessSignal:
    def test_reads_are_positive_and_idle_tables_negative(self, schema):
        context = context_for(schema, {'table_usage': [
            TableUsageRow('dbo', 'Order', 120, 4),
            TableUsageRow('dbo', 'OrderArchive', 0, 0),
        ]})

        results = evaluate(AccessSignal(), context)
        assert weights(results) == {'dbo.Order': 1.0, 'dbo.OrderArchive': -0.8, 'dbo.Customer': -0.8}
        assert results[0].evidence == "Table has 120 reads and 4 writes since server start"

    def test_silent_without_uptime(self, schema):
        context = context_for(schema, {'table_usage': []}, uptime_days=None)
        assert evaluate(AccessSignal(), context) == []

    def test_short_uptime_gives_no_negative(self, schema):
        context = context_for(schema, {'table_usage': [TableUsageRow('dbo', 'Order', 5, 0)]},
                              uptime_days=10)
        assert weights(evaluate(AccessSignal(), context)) == {'dbo.Order': 1.0}


class TestExecutionSignal:
    def test_executed_and_never_executed_routines(self, schema):
        context = context_for(schema, {
            'procedure_stats': [RoutineUsageRow('dbo', 'usp_Daily', 1500, LAST_RUN)],
            'function_stats': [RoutineUsageRow('DBO', 'FN_TOTAL', 3, None)],
        })

        results = evaluate(ExecutionSignal(), context)
        assert weights(results) == {'dbo.usp_Daily': 1.0, 'dbo.usp_Unused': -0.8, 'dbo.fn_Total': 1.0}
        assert results[0].evidence == "Executed 1,500 times, last at 2025-03-01 08:30"
        assert results[1].evidence == "Never executed in 45 days of uptime"

    def test_missing_function_statistics_skip_functions(self, schema):
        context = context_for(schema, {
            'procedure_stats': [],
            'function_stats': FeatureUnavailable("sys.dm_exec_function_stats does not exist"),
        })

        assert weights(evaluate(ExecutionSignal(), context)) == {
            'dbo.usp_Daily': -0.8, 'dbo.usp_Unused': -0.8}


class TestQueryStoreSignal:
    def test_disabled_store_is_unavailable(self, schema):
        with pytest.raises(SignalUnavailable):
            evaluate(QueryStoreSignal(), context_for(schema))

    def test_routine_statistics(self, schema):
        context = context_for(schema, {
            'query_store_objects': [
                QueryStoreObjectRow('dbo', 'usp_Daily', 'Procedure', 40, LAST_RUN),
                QueryStoreObjectRow('dbo', 'usp_Unused', 'Procedure', 0),
                QueryStoreObjectRow('dbo', 'usp_Dropped', 'Procedure', 12),
            ],
        }, query_store=True)

        results = evaluate(QueryStoreSignal(), context)
        assert weights(results) == {'dbo.usp_Daily': 1.0, 'dbo.usp_Unused': -0.6}
        assert results[1].evidence == "Query Store: no executions recorded"

    def test_query_texts_match_whole_identifiers(self, schema):
        context = context_for(schema, {'query_texts': [
            QueryTextRow('SELECT * FROM [Order] WHERE Id = @p', 5, LAST_RUN),
            QueryTextRow('SELECT * FROM sales.Order', 100),
            QueryTextRow('SELECT * FROM dbo.OrderArchive', 7),
            QueryTextRow('', 50),
        ]}, query_store=True)

        results = evaluate(QueryStoreSignal(), context)
        assert weights(results) == {'dbo.Order': 0.8, 'dbo.OrderArchive': 0.8}
        assert results[0].evidence == ("Query Store: referenced in ad-hoc queries with 5 total executions, "
                                       "last at 2025-03-01 08:30")

    @pytest.mark.parametrize('text, matches', [
        ('select * from orders', True),
        ('select * from dbo.orders o', True),
        ('select * from [dbo].[orders]', True),
        ('select * from "dbo"."orders"', True),
        ('select * from orders_archive', False),
        ('select * from sales.orders', False),
        ('select * from #orders', False),
        ('select ordersCount from x', False),
        ('select * from [sales].[orders]', False),
        ('select * from "sales"."orders"', False),
        ('select * from [orders archive]', False),
        ('select * from ShopDb.dbo.orders', True),
        ('select * from [ShopDb].[dbo].[orders]', True),
        ('select * from ShopDb.sales.orders', False),
    ])
    def test_table_reference_pattern(self, text, matches):
        assert bool(table_reference_pattern('dbo', 'orders').search(text)) is matches


class TestRowCountSignal:
    def test_profiles_take_precedence(self, schema):
        profiles = [TableProfile('dbo', 'Order', 2500), TableProfile('dbo', 'OrderArchive', 0)]
        context = context_for(schema, {'row_counts': [RowCountRow('dbo', 'Customer', 9)]},
                              profiles=profiles)

        results = evaluate(RowCountSignal(), context)
        assert weights(results) == {'dbo.Order': 0.2, 'dbo.OrderArchive': -0.3}
        assert results[0].evidence == "Table has 2,500 rows"

    def test_falls_back_to_estimates(self, schema):
        context = context_for(schema, {'row_counts': [RowCountRow('dbo', 'Customer', 9)]})

        [result] = evaluate(RowCountSignal(), context)
        assert result.object_name == 'dbo.Customer'
        assert result.evidence == "Table has 9 rows (estimated)"


def test_orphan_signal_counts_roles(schema):
    view_edge = ObjectDependency('dbo', 'OrderSummary', ObjectType.VIEW, 'dbo', 'Order', ObjectType.TABLE,
                                 DetectedVia.PARSED)
    archive_fk = make_fk('OrderArchive', 'OrderId', 'Order')
    context = context_for(schema, foreign_keys=[archive_fk], dependencies=[view_edge])

    results = weights(evaluate(OrphanSignal(), context))
    assert results['dbo.Order'] == 0.3
    assert results['dbo.Customer'] == -0.5
    assert results['dbo.usp_Daily'] == -0.5
    assert 'dbo.OrderArchive' not in results
    assert 'dbo.OrderSummary' not in results


def test_naming_signal(schema):
    schema.tables.append(make_table('tmp_OrderBackup', [('Id', 'int', False)]))

    results = weights(evaluate(NamingSignal(), context_for(schema)))
    assert results == {'dbo.OrderArchive': -0.4, 'dbo.tmp_OrderBackup': -0.4}


@pytest.mark.parametrize('name, reason', [
    ('tmp_Orders', "Name starts with 'tmp', may be temporary or deprecated"),
    ('zzOld', "Name starts with 'zz', may be temporary or deprecated"),
    ('Orders_Deprecated', "Name contains 'deprecated', may be deprecated or archived"),
    ('Customer', None),
])
def test_suspicious_reason(name, reason):
    assert suspicious_reason(name) == reason
