"""Tests for the schema, profiling, relationship and quality analyzers."""
import pytest

from conftest import FakeProvider, make_bundle, make_fk, make_index, make_table, shop_catalog
from db_analyser.analyzers import ProfilingAnalyzer, QualityAnalyzer, SchemaAnalyzer
from db_analyser.analyzers.base import AnalysisContext
from db_analyser.analyzers.quality import (
    check_missing_primary_key, check_naming, check_tables_without_relationships,
    check_unbounded_text, check_unindexed_foreign_keys,
)
from db_analyser.analyzers.relationships import (
    build_relationship_map, catalog_dependencies, structural_edges, usable_edges,
)
from db_analyser.cancellation import CancellationToken
from db_analyser.config import AnalysisConfig
from db_analyser.errors import PrecursorMissing
from db_analyser.models import (
    AnalysisResult, ColumnInfo, DatabaseSchema, DetectedVia, ObjectType, Severity, ViewInfo,
)
from db_analyser.providers.rows import ObjectDependencyRow


def shop_context(config=None, provider=None):
    return AnalysisContext(provider or FakeProvider('server=srv;database=Shop', database_name='Shop'),
                           make_bundle({'Shop': shop_catalog()}), config or AnalysisConfig())


def shop_schema():
    return SchemaAnalyzer().analyze(shop_context(), AnalysisResult(), CancellationToken())


class EmptyTableProvider(FakeProvider):
    def execute_query(self, sql, params=None, token=None):
        self.queries.append(sql)
        return [{'row_count': 0}]


class TestSchemaAnalyzer:
    def test_catalog_rows_are_assembled(self):
        schema = shop_schema()

        tables = {t.name: t for t in schema.tables}
        assert set(tables) == {'Order', 'OrderLine', 'Customer', 'tmp_OrderBackup'}
        assert [c.name for c in tables['Order'].columns] == ['Id', 'CustomerId']
        assert tables['OrderLine'].indexes[0].columns == ('OrderId',)
        assert tables['OrderLine'].foreign_keys[0].to_table == 'Order'
        [view] = schema.views
        assert view.name == 'OrderSummary'
        assert [c.name for c in view.columns] == ['OrderId']
        assert schema.database_name == 'Shop'

    def test_qualified_copy_tags_every_object(self):
        schema = shop_schema().qualified('Shop')

        assert all(t.database == 'Shop' for t in schema.tables)
        fk = next(t for t in schema.tables if t.name == 'OrderLine').foreign_keys[0]
        assert (fk.from_key, fk.to_key) == ('Shop.dbo.OrderLine', 'Shop.dbo.Order')
        assert schema.views[0].full_name == 'Shop.dbo.OrderSummary'


class TestProfilingAnalyzer:
    def test_profiles_every_table(self):
        snapshot = AnalysisResult(schema=shop_schema())
        profiles = ProfilingAnalyzer().analyze(shop_context(), snapshot, CancellationToken())

        assert [p.name for p in profiles] == ['Order', 'OrderLine', 'Customer', 'tmp_OrderBackup']
        column = profiles[0].column_profiles[0]
        assert (column.total_count, column.distinct_count, column.min_value) == (3, 3, '1')
        assert column.null_percentage == 0

    def test_unprofileable_column_only_counts_nulls(self):
        provider = FakeProvider('server=srv;database=Shop', database_name='Shop')
        table = make_table('Document', [ColumnInfo('Body', 'xml', is_nullable=True),
                                        ColumnInfo('Flag', 'bit')])

        profile = ProfilingAnalyzer().profile_table(shop_context(provider=provider), table, CancellationToken())
        body, flag = profile.column_profiles
        assert body.distinct_count == 0
        assert any('COUNT(*) - COUNT([Body]) AS null_count FROM' in q and 'DISTINCT' not in q
                   for q in provider.queries)
        assert any('NULL AS min_value' in q for q in provider.queries)
        assert flag.distinct_count == 3

    def test_column_limit(self):
        table = make_table('Wide', [(f'c{i}', 'int', False) for i in range(5)])
        context = shop_context(AnalysisConfig(max_profile_columns=2))

        profile = ProfilingAnalyzer().profile_table(context, table, CancellationToken())
        assert [c.column_name for c in profile.column_profiles] == ['c0', 'c1']

    def test_empty_table_skips_column_queries(self):
        provider = EmptyTableProvider('server=srv;database=Shop', database_name='Shop')
        table = make_table('Empty', [('Id', 'int', True), ('Name', 'nvarchar', False)])

        profile = ProfilingAnalyzer().profile_table(shop_context(provider=provider), table, CancellationToken())
        assert profile.row_count == 0
        assert [c.total_count for c in profile.column_profiles] == [0, 0]
        assert len(provider.queries) == 1

    def test_requires_schema(self):
        with pytest.raises(PrecursorMissing):
            ProfilingAnalyzer().analyze(shop_context(), AnalysisResult(), CancellationToken())


class TestRelationshipFacts:
    @pytest.fixture
    def schema(self):
        return DatabaseSchema('Shop', tables=[
            make_table('Order', [('Id', 'int', True)]),
            make_table('OrderLine', [('Id', 'int', True)], foreign_keys=[make_fk('OrderLine', 'OrderId', 'Order')]),
        ], views=[ViewInfo('dbo', 'OrderTotals', 'SELECT * FROM dbo.[Order]')])

    def test_catalog_rows(self, schema):
        rows = [
            ObjectDependencyRow('dbo', 'OrderTotals', 'VIEW', 'dbo', 'Order', 'TABLE'),
            ObjectDependencyRow('dbo', 'OrderTotals', 'VIEW', 'dbo', 'Rates', 'TABLE', 'Finance'),
            ObjectDependencyRow('dbo', 'OrderTotals', 'VIEW', 'dbo', 'OrderLine', 'TABLE', 'shop'),
        ]

        edges = catalog_dependencies(rows, schema)
        assert [(e.to_key, e.to_type) for e in edges] == [
            ('dbo.Order', ObjectType.TABLE),
            ('Finance.dbo.Rates', ObjectType.EXTERNAL),
            ('dbo.OrderLine', ObjectType.TABLE),
        ]
        assert all(e.detected_via is DetectedVia.CATALOG for e in edges)

    def test_usable_edges_dedupe_and_filter(self, schema):
        rows = [
            ObjectDependencyRow('dbo', 'OrderTotals', 'VIEW', 'dbo', 'Order', 'TABLE'),
            ObjectDependencyRow('dbo', 'OrderTotals', 'VIEW', 'dbo', 'OrderTotals', 'VIEW'),
            ObjectDependencyRow('dbo', 'Dropped', 'VIEW', 'dbo', 'Order', 'TABLE'),
            ObjectDependencyRow('dbo', 'OrderTotals', 'VIEW', 'dbo', 'Gone', 'TABLE'),
        ]
        known = {obj.full_name: obj.obj_type for obj in schema.graph_objects()}

        edges = usable_edges(structural_edges(schema, catalog_dependencies(rows, schema)), known)
        assert [(e.from_key, e.to_key, e.detected_via) for e in edges] == [
            ('dbo.OrderTotals', 'dbo.Order', DetectedVia.CATALOG),
        ]

    def test_relationship_map(self, schema):
        relationships = build_relationship_map(
            schema, [fk for t in schema.tables for fk in t.foreign_keys], structural_edges(schema))

        assert len(relationships.explicit_relationships) == 1
        assert relationships.cycles == []
        assert relationships.standalone == []
        order = next(d for d in relationships.dependencies if d.name == 'dbo.Order')
        assert order.referenced_by == ['dbo.OrderLine', 'dbo.OrderTotals']


class TestQualityChecks:
    def test_missing_primary_key(self):
        [issue] = check_missing_primary_key(make_table('Staging', [('Id', 'int', False)]))
        assert issue.severity is Severity.ERROR
        assert issue.object_name == 'dbo.Staging'
        assert check_missing_primary_key(make_table('Order', [('Id', 'int', True)])) == []

    def test_unindexed_foreign_keys(self):
        fk = make_fk('OrderLine', 'OrderId', 'Order')
        unindexed = make_table('OrderLine', [('Id', 'int', True)], foreign_keys=[fk])
        indexed = make_table('OrderLine', [('Id', 'int', True)], foreign_keys=[fk],
                             indexes=[make_index('IX_OrderLine_OrderId', 'OrderId', 'Id')])

        [issue] = check_unindexed_foreign_keys(unindexed)
        assert issue.severity is Severity.WARNING
        assert issue.object_name == 'dbo.OrderLine.OrderId'
        assert check_unindexed_foreign_keys(indexed) == []

    def test_naming(self):
        issues = check_naming(make_table('Order_Line', [('Id', 'int', True), ('Status', 'int', False)]))
        assert [(i.severity, i.object_name) for i in issues] == [
            (Severity.INFO, 'dbo.Order_Line'),
            (Severity.WARNING, 'dbo.Order_Line.Status'),
        ]
        assert check_naming(make_table('order_line', [('Id', 'int', True)])) == []

    @pytest.mark.parametrize('column, flagged', [
        (ColumnInfo('Notes', 'nvarchar', max_length=-1), True),
        (ColumnInfo('Notes', 'nvarchar', max_length=200), False),
        (ColumnInfo('Notes', 'text'), True),
        (ColumnInfo('Notes', 'character varying'), True),
        (ColumnInfo('Notes', 'character varying', max_length=80), False),
    ])
    def test_unbounded_text(self, column, flagged):
        assert bool(check_unbounded_text(make_table('Memo', [column]))) is flagged

    def test_tables_without_relationships(self):
        order = make_table('Order', [('Id', 'int', True)])
        line = make_table('OrderLine', [('Id', 'int', True)], foreign_keys=[make_fk('OrderLine', 'OrderId', 'Order')])
        audit = make_table('Audit', [('Id', 'int', True)])

        assert check_tables_without_relationships([audit]) == []
        [issue] = check_tables_without_relationships([order, line, audit])
        assert issue.object_name == 'dbo.Audit'

    def test_analyzer_over_shop_schema(self):
        issues = QualityAnalyzer().analyze(shop_context(), AnalysisResult(schema=shop_schema()),
                                           CancellationToken())

        by_object = {(i.object_name, i.category) for i in issues}
        assert ('dbo.tmp_OrderBackup', 'Design') in by_object
        assert not any(i.object_name == 'dbo.OrderLine.OrderId' for i in issues)
        assert ('dbo.Customer.Name', 'Naming') in by_object
