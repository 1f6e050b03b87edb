"""Tests for the index inventory and index recommendations."""
import pytest

from conftest import FakeProvider, make_bundle, make_index, make_table, shop_catalog
from db_analyser.analyzers import IndexingAnalyzer
from db_analyser.analyzers.base import AnalysisContext
from db_analyser.analyzers.indexing import split_columns
from db_analyser.cancellation import CancellationToken
from db_analyser.config import AnalysisConfig
from db_analyser.errors import AnalysisCancelled, FeatureUnavailable, PrecursorMissing, PrivilegeDenied
from db_analyser.models import AnalysisResult, DatabaseSchema, IndexCategory, IndexInfo, Severity
from db_analyser.orchestrator import AnalysisOrchestrator
from db_analyser.providers.rows import IndexUsageRow, MissingIndexRow


def usage_row(table, index, columns, seeks=0, updates=0, unique=False, clustered=False):
    return IndexUsageRow('dbo', table, index, 'CLUSTERED' if clustered else 'NONCLUSTERED',
                         unique, clustered, columns, seeks, 0, 0, updates, 64)


@pytest.fixture
def schema():
    return DatabaseSchema('Shop', tables=[
        make_table('Order', [('Id', 'int', True), ('CustomerId', 'int', False)], indexes=[
            IndexInfo('PK_Order', 'CLUSTERED', True, True, ('Id',)),
            make_index('IX_Order_CustomerId', 'CustomerId'),
            make_index('IX_Order_CustomerId_Date', 'customerid', 'OrderDate'),
        ]),
        make_table('OrderLine', [('Id', 'int', True), ('OrderId', 'int', False)], indexes=[
            make_index('IX_OrderLine_OrderId', 'OrderId'),
            make_index('IX_OrderLine_Status_OrderId', 'Status', 'OrderId'),
        ]),
    ])


@pytest.fixture
def index_usage():
    return [
        usage_row('Order', 'PK_Order', 'Id', updates=50, unique=True, clustered=True),
        usage_row('Order', 'IX_Order_CustomerId', 'CustomerId', updates=1200),
        usage_row('Order', 'IX_Order_CustomerId_Date', 'CustomerId, OrderDate', seeks=40, updates=1200),
        usage_row('OrderLine', 'IX_OrderLine_OrderId', 'OrderId'),
        usage_row('OrderLine', 'UQ_OrderLine_Id', 'Id', updates=8, unique=True),
    ]


def analyze(schema, performance, token=None):
    bundle = make_bundle(performance_data={'Shop': performance})
    context = AnalysisContext(FakeProvider('server=x;database=Shop', database_name='Shop'),
                              bundle, AnalysisConfig())
    snapshot = AnalysisResult(database_name='Shop', schema=schema)
    return IndexingAnalyzer().analyze(context, snapshot, token or CancellationToken())


def by_category(analysis, category):
    return [r for r in analysis.recommendations if r.category is category]


class TestInventory:
    def test_counters_come_from_usage_statistics(self, schema, index_usage):
        analysis = analyze(schema, {'index_usage': index_usage})

        assert analysis.has_usage_stats
        assert [i.index_name for i in analysis.inventory] == [
            'PK_Order', 'IX_Order_CustomerId', 'IX_Order_CustomerId_Date',
            'IX_OrderLine_OrderId', 'UQ_OrderLine_Id']
        composite = analysis.inventory[2]
        assert composite.columns == ('CustomerId', 'OrderDate')
        assert composite.total_reads == 40
        assert composite.table_full_name == 'dbo.Order'

    def test_unreadable_statistics_fall_back_to_catalog(self, schema):
        analysis = analyze(schema, {
            'index_usage': PrivilegeDenied("VIEW SERVER STATE permission was denied"),
        })

        assert analysis.has_usage_stats is False
        assert [i.index_name for i in analysis.inventory] == [
            'PK_Order', 'IX_Order_CustomerId', 'IX_Order_CustomerId_Date',
            'IX_OrderLine_OrderId', 'IX_OrderLine_Status_OrderId']
        assert all(i.total_reads == 0 and i.user_updates == 0 for i in analysis.inventory)
        assert by_category(analysis, IndexCategory.UNUSED) == []
        assert len(by_category(analysis, IndexCategory.DUPLICATE)) == 1

    def test_requires_schema(self):
        with pytest.raises(PrecursorMissing):
            analyze(None, {})

    def test_cancelled_token_stops_the_analysis(self, schema, index_usage):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AnalysisCancelled):
            analyze(schema, {'index_usage': index_usage}, token)


class TestUnusedIndexes:
    def test_written_but_never_read(self, schema, index_usage):
        [unused] = by_category(analyze(schema, {'index_usage': index_usage}), IndexCategory.UNUSED)

        assert unused.severity is Severity.WARNING
        assert unused.index_name == 'IX_Order_CustomerId'
        assert unused.description == ("Index 'IX_Order_CustomerId' has 1,200 writes and no reads "
                                       "since the last server restart.")
        assert unused.recommendation == "DROP INDEX [IX_Order_CustomerId] ON [dbo].[Order]"

    def test_clustered_unique_and_idle_indexes_are_kept(self, schema, index_usage):
        names = {r.index_name for r in
                 by_category(analyze(schema, {'index_usage': index_usage}), IndexCategory.UNUSED)}
        assert 'PK_Order' not in names
        assert 'UQ_OrderLine_Id' not in names
        assert 'IX_OrderLine_OrderId' not in names


class TestMissingIndexes:
    def test_create_statement(self, schema):
        row = MissingIndexRow('dbo', 'OrderLine', 12345.678, '[OrderId]', '[Status]',
                              '[Quantity], [Price]', 310, 2)
        [missing] = by_category(analyze(schema, {'missing_indexes': [row]}), IndexCategory.MISSING)

        assert missing.severity is Severity.ERROR
        assert missing.impact_score == 12345.68
        assert missing.index_name == 'IX_OrderLine_OrderId_Status'
        assert missing.recommendation == (
            "CREATE NONCLUSTERED INDEX [IX_OrderLine_OrderId_Status] ON [dbo].[OrderLine] "
            "([OrderId], [Status]) INCLUDE ([Quantity], [Price])")
        assert missing.equality_columns == '[OrderId]'
        assert missing.include_columns == '[Quantity], [Price]'

    def test_statement_without_included_columns(self, schema):
        row = MissingIndexRow('dbo', 'Order', 12.5, None, '[OrderDate]', None)
        [missing] = by_category(analyze(schema, {'missing_indexes': [row]}), IndexCategory.MISSING)
        assert missing.recommendation == ("CREATE NONCLUSTERED INDEX [IX_Order_OrderDate] "
                                          "ON [dbo].[Order] ([OrderDate])")

    @pytest.mark.parametrize('impact, severity', [
        (10000.5, Severity.ERROR),
        (10000, Severity.WARNING),
        (1000.01, Severity.WARNING),
        (1000, Severity.INFO),
        (3.2, Severity.INFO),
    ])
    def test_severity_follows_impact(self, schema, impact, severity):
        row = MissingIndexRow('dbo', 'Order', impact, '[CustomerId]', None, None)
        [missing] = by_category(analyze(schema, {'missing_indexes': [row]}), IndexCategory.MISSING)
        assert missing.severity is severity

    def test_unavailable_statistics_give_no_suggestions(self, schema, index_usage):
        analysis = analyze(schema, {
            'index_usage': index_usage,
            'missing_indexes': FeatureUnavailable("Invalid object name 'sys.dm_db_missing_index_details'"),
        })
        assert by_category(analysis, IndexCategory.MISSING) == []
        assert analysis.has_usage_stats


class TestDuplicateIndexes:
    def test_leading_columns_covered_by_a_wider_index(self, schema):
        [duplicate] = by_category(analyze(schema, {}), IndexCategory.DUPLICATE)

        assert duplicate.severity is Severity.INFO
        assert duplicate.table_full_name == 'dbo.Order'
        assert duplicate.index_name == 'IX_Order_CustomerId'
        assert duplicate.recommendation == ("Consider dropping [IX_Order_CustomerId] if "
                                            "[IX_Order_CustomerId_Date] covers the same queries.")

    def test_same_columns_in_another_order_are_not_duplicates(self):
        schema = DatabaseSchema('Shop', tables=[make_table('OrderLine', [('Id', 'int', True)], indexes=[
            make_index('IX_OrderLine_OrderId_Status', 'OrderId', 'Status'),
            make_index('IX_OrderLine_Status_OrderId', 'Status', 'OrderId'),
        ])])
        assert by_category(analyze(schema, {}), IndexCategory.DUPLICATE) == []


def test_recommendations_carry_the_database(schema, index_usage):
    qualified = schema.qualified('Shop')
    analysis = analyze(qualified, {
        'index_usage': index_usage,
        'missing_indexes': [MissingIndexRow('dbo', 'Order', 5.0, '[CustomerId]', None, None)],
    })

    assert {r.database for r in analysis.recommendations} == {'Shop'}
    assert {i.table_full_name for i in analysis.inventory} == {'Shop.dbo.Order', 'Shop.dbo.OrderLine'}


def test_server_mode_concatenates_databases(config):
    bundle = make_bundle(
        {'Shop': shop_catalog(), 'Crm': shop_catalog()},
        performance_data={
            'Shop': {'index_usage': [usage_row('OrderLine', 'IX_OrderLine_OrderId', 'OrderId', updates=9)]},
            'Crm': {'index_usage': PrivilegeDenied("VIEW DATABASE STATE permission was denied")},
        },
        databases=['Crm', 'Shop'])

    result = AnalysisOrchestrator(bundle, config).run_server('server=srv', 'srv').result

    assert [i.table_full_name for i in result.indexing.inventory] == [
        'Crm.dbo.OrderLine', 'Shop.dbo.OrderLine']
    assert result.indexing.has_usage_stats is False
    [unused] = result.indexing.recommendations
    assert unused.category is IndexCategory.UNUSED
    assert unused.table_full_name == 'Shop.dbo.OrderLine'


@pytest.mark.parametrize('columns, expected', [
    ('[OrderId], [Status]', ['OrderId', 'Status']),
    ('CustomerId', ['CustomerId']),
    (None, []),
])
def test_split_columns(columns, expected):
    assert split_columns(columns) == expected
