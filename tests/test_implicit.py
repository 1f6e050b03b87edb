"""Tests for implicit relationship inference."""
import json
import os

import pytest

from conftest import make_fk, make_index, make_table
from db_analyser.graph.implicit import (
    EXACT_STEM_CONFIDENCE, MIN_CONFIDENCE, column_stem, infer_implicit_relationships,
    match_confidence, plural_forms, singular_forms, types_compatible,
)
from db_analyser.models import ColumnInfo, to_jsonable

GOLDEN = os.path.join(os.path.dirname(__file__), 'golden', 'implicit_relationships.json')


@pytest.fixture
def catalog_tables():
    return [
        make_table('Customer', [('Id', 'int', True)]),
        make_table('Categories', [('Id', 'int', True)]),
        make_table('order_line', [('Id', 'int', True)]),
        make_table('Product', [('Id', 'int', True), ('CategoryId', 'int', False),
                               ('Name', 'nvarchar', False)]),
        make_table('Order', [('Id', 'int', True), ('CustomerId', 'int', False),
                             ('Status', 'nvarchar', False)],
                   indexes=[make_index('IX_Order_CustomerId', 'CustomerId')]),
        make_table('Shipment', [('Id', 'int', True), ('OrderLineId', 'int', False),
                                ('FK_Order', 'int', False)],
                   indexes=[make_index('IX_Shipment_OrderLineId', 'OrderLineId')]),
        make_table('Review', [('Id', 'int', True), ('ProductId', 'uniqueidentifier', False),
                              ('CustomerId', 'int', False)],
                   foreign_keys=[make_fk('Review', 'CustomerId', 'Customer')]),
    ]


def test_matches_golden_file(catalog_tables):
    with open(GOLDEN, encoding='utf-8') as f:
        expected = json.load(f)

    assert to_jsonable(infer_implicit_relationships(catalog_tables)) == expected


def test_declared_foreign_key_is_never_shadowed(catalog_tables):
    candidates = infer_implicit_relationships(catalog_tables)
    assert not any(c.from_table == 'Review' and c.from_column == 'CustomerId' for c in candidates)


def test_incompatible_key_type_is_rejected(catalog_tables):
    candidates = infer_implicit_relationships(catalog_tables)
    assert not any(c.from_column == 'ProductId' for c in candidates)


def test_sorted_by_confidence_and_above_threshold(catalog_tables):
    confidences = [c.confidence for c in infer_implicit_relationships(catalog_tables)]
    assert confidences == sorted(confidences, reverse=True)
    assert all(MIN_CONFIDENCE <= c <= 1 for c in confidences)


def test_identity_column_is_a_target_without_primary_key():
    legacy = make_table('Region', [ColumnInfo('RegionNo', 'int', is_identity=True)])
    store = make_table('Store', [('Id', 'int', True), ('RegionId', 'int', False)],
                       indexes=[make_index('IX_Store_RegionId', 'RegionId')])

    [candidate] = infer_implicit_relationships([legacy, store])
    assert candidate.to_column == 'RegionNo'
    assert candidate.confidence == EXACT_STEM_CONFIDENCE


def test_matching_stays_within_one_database():
    customer = make_table('Customer', [('Id', 'int', True)], database='Crm')
    order = make_table('Order', [('Id', 'int', True), ('CustomerId', 'int', False)], database='Sales')
    assert infer_implicit_relationships([customer, order]) == []


def test_same_schema_target_is_preferred():
    sales_customer = make_table('Customer', [('Id', 'int', True)], schema='sales')
    dbo_customer = make_table('Customer', [('Id', 'int', True)])
    order = make_table('Order', [('Id', 'int', True), ('CustomerId', 'int', False)], schema='sales',
                       indexes=[make_index('IX', 'CustomerId')])

    [candidate] = infer_implicit_relationships([dbo_customer, sales_customer, order])
    assert candidate.to_schema == 'sales'


@pytest.mark.parametrize('column, stem, via_prefix', [
    ('CustomerId', 'customer', False),
    ('customer_id', 'customer', False),
    ('FK_Customer', 'customer', True),
    ('Id', None, False),
    ('Paid', 'pa', False),
    ('Name', None, False),
])
def test_column_stem(column, stem, via_prefix):
    assert column_stem(column) == (stem, via_prefix)


def test_pluralisation_rules():
    assert singular_forms('categories') >= {'category'}
    assert singular_forms('boxes') >= {'box'}
    assert 'address' not in singular_forms('address')
    assert plural_forms('category') == {'categories'}
    assert plural_forms('day') == {'days'}
    assert plural_forms('box') == {'boxes'}


def test_match_confidence_tiers():
    assert match_confidence('customer', 'Customer')[1] == 'exact'
    assert match_confidence('customer', 'Customers')[1] == 'plural'
    assert match_confidence('orderline', 'order_line')[1] == 'fuzzy'
    assert match_confidence('customer', 'Supplier') is None


def test_type_families():
    assert types_compatible('int', 'bigint')
    assert types_compatible('integer', 'int4')
    assert types_compatible('nvarchar(50)', 'varchar')
    assert not types_compatible('uuid', 'int')
