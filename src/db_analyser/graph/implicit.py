"""
Inference of undeclared (implicit) foreign-key relationships from naming conventions.

Policy constants
----------------
EXACT_STEM_CONFIDENCE
    Column stem equals the table name (``CustomerId`` -> ``Customer``).
PLURAL_STEM_CONFIDENCE
    Column stem equals a singular or plural form of the table name
    (``CategoryId`` -> ``Categories``).
FUZZY_STEM_CONFIDENCE
    Column stem matches only once underscores are ignored
    (``OrderLineId`` -> ``order_line``), or the column carries an ``FK_``
    prefix instead of an id suffix (``FK_Customer`` -> ``Customer``).
MISSING_INDEX_PENALTY
    Subtracted when the column is not the leading column of any index.
MIN_CONFIDENCE
    Candidates scoring below this are dropped.

Stemming: a trailing ``_id`` or ``id`` is stripped (case-insensitive), or a
leading ``fk_``. Pluralisation handles ``-s``, ``-es`` and ``-y``/``-ies``.
A target must have a single-column primary key (or, lacking one, a single
identity column) whose type family matches the candidate column.
"""
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..models import ColumnInfo, ImplicitRelationship, TableInfo, object_key

EXACT_STEM_CONFIDENCE = 0.9
PLURAL_STEM_CONFIDENCE = 0.8
FUZZY_STEM_CONFIDENCE = 0.7
MISSING_INDEX_PENALTY = 0.1
MIN_CONFIDENCE = 0.5

ID_SUFFIXES = ('_id', 'id')
FK_PREFIX = 'fk_'

TYPE_FAMILIES: Dict[str, str] = {
    **dict.fromkeys(('int', 'integer', 'bigint', 'smallint', 'tinyint', 'int2', 'int4', 'int8',
                     'serial', 'bigserial', 'smallserial', 'numeric', 'decimal'), 'integer'),
    **dict.fromkeys(('uuid', 'uniqueidentifier'), 'uuid'),
    **dict.fromkeys(('char', 'varchar', 'nchar', 'nvarchar', 'text', 'ntext', 'citext',
                     'character', 'character varying'), 'string'),
}

_VOWELS = set('aeiou')


def type_family(data_type: str) -> str:
    base = data_type.lower().split('(')[0].strip()
    return TYPE_FAMILIES.get(base, base)


def types_compatible(a: str, b: str) -> bool:
    return type_family(a) == type_family(b)


def singular_forms(word: str) -> Set[str]:
    forms = set()
    if len(word) > 3 and word.endswith('ies'):
        forms.add(word[:-3] + 'y')
    if word.endswith(('ses', 'xes', 'zes', 'ches', 'shes')):
        forms.add(word[:-2])
    if len(word) > 1 and word.endswith('s') and not word.endswith('ss'):
        forms.add(word[:-1])
    return forms


def plural_forms(word: str) -> Set[str]:
    if len(word) > 1 and word.endswith('y') and word[-2] not in _VOWELS:
        return {word[:-1] + 'ies'}
    if word.endswith(('s', 'x', 'z', 'ch', 'sh')):
        return {word + 'es'}
    return {word + 's'}


def column_stem(column_name: str) -> Tuple[Optional[str], bool]:
    """Return (stem, via_prefix). Stem is None when the column is not id-like."""
    lower = column_name.lower()
    if lower.startswith(FK_PREFIX) and len(lower) > len(FK_PREFIX):
        return lower[len(FK_PREFIX):], True
    for suffix in ID_SUFFIXES:
        if lower.endswith(suffix) and len(lower) > len(suffix):
            return lower[:-len(suffix)].rstrip('_'), False
    return None, False


def match_confidence(stem: str, table_name: str) -> Optional[Tuple[float, str]]:
    """Confidence and match kind of ``stem`` against ``table_name``, or None."""
    table = table_name.lower()
    if stem == table:
        return EXACT_STEM_CONFIDENCE, 'exact'
    if stem in singular_forms(table) | plural_forms(table):
        return PLURAL_STEM_CONFIDENCE, 'plural'
    squashed = stem.replace('_', '')
    squashed_table = table.replace('_', '')
    if squashed == squashed_table or squashed in singular_forms(squashed_table) | plural_forms(squashed_table):
        return FUZZY_STEM_CONFIDENCE, 'fuzzy'
    return None


def target_key_column(table: TableInfo) -> Optional[ColumnInfo]:
    pks = table.primary_key_columns
    if len(pks) == 1:
        return pks[0]
    if not pks:
        identities = [c for c in table.columns if c.is_identity]
        if len(identities) == 1:
            return identities[0]
    return None


def _indexed_leading_columns(table: TableInfo) -> Set[str]:
    return {index.columns[0].lower() for index in table.indexes if index.columns}


def _reason(column: str, target: TableInfo, kind: str, via_prefix: bool) -> str:
    if via_prefix:
        return f"Column '{column}' has FK_ prefix matching table '{target.name}'"
    if kind == 'exact':
        return f"Column '{column}' matches table '{target.name}'"
    if kind == 'plural':
        return f"Column '{column}' matches singular/plural form of table '{target.name}'"
    return f"Column '{column}' loosely matches table '{target.name}'"


def suggestion_sql(source: TableInfo, column: str, target: TableInfo, target_column: str) -> str:
    return (f"ALTER TABLE {source.schema}.{source.name} "
            f"ADD CONSTRAINT FK_{source.name}_{target.name} "
            f"FOREIGN KEY ({column}) "
            f"REFERENCES {target.schema}.{target.name} ({target_column});")


def infer_implicit_relationships(tables: Iterable[TableInfo]) -> List[ImplicitRelationship]:
    """Suggest FK-like relationships the schema does not declare.

    Columns that are primary keys or already the source of a declared FK are
    never candidates. Matching stays within one database. The result is
    sorted by confidence descending, then by source column.
    """
    tables = list(tables)
    targets = [(t, col) for t in tables for col in [target_key_column(t)] if col is not None]
    candidates = []

    for table in tables:
        declared = {fk.from_column.lower() for fk in table.foreign_keys}
        indexed = _indexed_leading_columns(table)
        for column in table.columns:
            if column.is_primary_key or column.name.lower() in declared:
                continue
            stem, via_prefix = column_stem(column.name)
            if not stem:
                continue

            best = None
            for target, key_column in targets:
                if target.database != table.database or target is table:
                    continue
                if not types_compatible(column.data_type, key_column.data_type):
                    continue
                match = match_confidence(stem, target.name)
                if match is None:
                    continue
                confidence, kind = match
                if via_prefix:
                    confidence = min(confidence, FUZZY_STEM_CONFIDENCE)
                rank = (-confidence, target.schema != table.schema, target.schema, target.name)
                if best is None or rank < best[0]:
                    best = (rank, target, key_column, confidence, kind)
            if best is None:
                continue

            _, target, key_column, confidence, kind = best
            reason = _reason(column.name, target, kind, via_prefix)
            if column.name.lower() not in indexed:
                confidence -= MISSING_INDEX_PENALTY
                reason += " (no supporting index)"
            confidence = round(confidence, 2)
            if confidence < MIN_CONFIDENCE:
                continue
            candidates.append(ImplicitRelationship(
                from_schema=table.schema,
                from_table=table.name,
                from_column=column.name,
                to_schema=target.schema,
                to_table=target.name,
                to_column=key_column.name,
                confidence=confidence,
                reason=reason,
                suggestion=suggestion_sql(table, column.name, target, key_column.name),
                from_database=table.database,
                to_database=target.database,
            ))

    candidates.sort(key=lambda r: (-r.confidence, object_key(r.from_schema, r.from_table, r.from_database),
                                   r.from_column))
    return candidates
