"""
Database Analyser - Index usage and recommendations
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging
import re
from typing import Dict, List, Optional, Tuple

from ..errors import AnalysisCancelled, PrecursorMissing, QueryError
from ..models import (
    DatabaseSchema, IndexAnalysis, IndexCategory, IndexInventoryItem, IndexRecommendation,
    Severity,
)
from ..providers.rows import IndexUsageRow, MissingIndexRow
from .base import AnalysisContext, Analyzer

logger = logging.getLogger(__name__)

HIGH_IMPACT = 10000
MEDIUM_IMPACT = 1000


def split_columns(columns: Optional[str]) -> List[str]:
    """``"[a], [b]"`` -> ``['a', 'b']``"""
    if not columns:
        return []
    return [part.strip().strip('[]"') for part in columns.split(',') if part.strip()]


def impact_severity(impact: float) -> Severity:
    if impact > HIGH_IMPACT:
        return Severity.ERROR
    if impact > MEDIUM_IMPACT:
        return Severity.WARNING
    return Severity.INFO


def suggested_index_name(table: str, columns: List[str]) -> str:
    return re.sub(r'\W', '_', '_'.join(['IX', table, *columns]))


def is_unused(item: IndexInventoryItem) -> bool:
    # Clustered and unique indexes carry the table or a constraint
    if item.is_clustered or item.is_unique:
        return False
    return item.total_reads == 0 and item.user_updates > 0


def find_unused(inventory: List[IndexInventoryItem], quote) -> List[IndexRecommendation]:
    return [
        IndexRecommendation(
            IndexCategory.UNUSED, Severity.WARNING, item.schema, item.table,
            f"Index '{item.index_name}' has {item.user_updates:,} writes and no reads "
            f"since the last server restart.",
            f"DROP INDEX {quote(item.index_name)} ON {quote(item.schema)}.{quote(item.table)}",
            index_name=item.index_name, database=item.database)
        for item in inventory if is_unused(item)
    ]


def recommend_missing(row: MissingIndexRow, quote,
                      database: Optional[str] = None) -> IndexRecommendation:
    key_columns = split_columns(row.equality_columns) + split_columns(row.inequality_columns)
    included = split_columns(row.included_columns)
    impact = round(row.impact_score, 2)
    name = suggested_index_name(row.table, key_columns)

    statement = (f"CREATE NONCLUSTERED INDEX {quote(name)} ON {quote(row.schema)}.{quote(row.table)} "
                 f"({', '.join(quote(c) for c in key_columns)})")
    if included:
        statement += f" INCLUDE ({', '.join(quote(c) for c in included)})"

    return IndexRecommendation(
        IndexCategory.MISSING, impact_severity(impact), row.schema, row.table,
        f"The optimizer requested an index on ({', '.join(key_columns)}) "
        f"with an estimated impact of {impact:,.2f}.",
        statement,
        index_name=name,
        impact_score=impact,
        equality_columns=row.equality_columns,
        inequality_columns=row.inequality_columns,
        include_columns=row.included_columns,
        database=database,
    )


def find_duplicates(schema: DatabaseSchema) -> List[IndexRecommendation]:
    """Non-clustered indexes whose key columns lead another index on the same table."""
    recommendations = []
    for table in schema.tables:
        indexes = [i for i in table.indexes if not i.is_clustered and i.columns]
        for i, first in enumerate(indexes):
            for second in indexes[i + 1:]:
                shorter, longer = sorted((first, second), key=lambda idx: len(idx.columns))
                prefix = [c.lower() for c in longer.columns[:len(shorter.columns)]]
                if prefix != [c.lower() for c in shorter.columns]:
                    continue
                recommendations.append(IndexRecommendation(
                    IndexCategory.DUPLICATE, Severity.INFO, table.schema, table.name,
                    f"Index '{shorter.name}' ({', '.join(shorter.columns)}) is covered by "
                    f"'{longer.name}' ({', '.join(longer.columns)}).",
                    f"Consider dropping [{shorter.name}] if [{longer.name}] covers the same queries.",
                    index_name=shorter.name, database=table.database))
    return recommendations


def catalog_inventory(schema: DatabaseSchema) -> List[IndexInventoryItem]:
    return [
        IndexInventoryItem(table.schema, table.name, index.name, index.index_type, index.is_unique,
                           index.is_clustered, tuple(index.columns), database=table.database)
        for table in schema.tables for index in table.indexes
    ]


class IndexingAnalyzer(Analyzer):
    """Index inventory with unused, missing and duplicate index recommendations.

    Usage counters reset with the server, so an "unused" index is only
    unused since the last restart. When the counters cannot be read the
    inventory falls back to the indexes in the schema snapshot.
    """

    name = 'indexing'

    def analyze(self, context: AnalysisContext, snapshot, token) -> IndexAnalysis:
        schema = snapshot.schema
        if schema is None:
            raise PrecursorMissing("Schema analysis must run before indexing analysis")

        databases: Dict[Tuple[str, str], Optional[str]] = {
            (t.schema.lower(), t.name.lower()): t.database for t in schema.tables}

        def database_of(schema_name, table):
            return databases.get((schema_name.lower(), table.lower()))

        quote = context.catalog.quote_identifier
        analysis = IndexAnalysis()

        try:
            rows = context.performance.get_index_usage_stats(context.provider, token)
            analysis.inventory = [self._inventory_item(r, database_of(r.schema, r.table)) for r in rows]
        except AnalysisCancelled:
            raise
        except QueryError as e:
            logger.warning(f"Index usage statistics unavailable, using catalog indexes: {e}")
            analysis.inventory = catalog_inventory(schema)
            analysis.has_usage_stats = False

        token.raise_if_cancelled()
        if analysis.has_usage_stats:
            analysis.recommendations.extend(find_unused(analysis.inventory, quote))

        try:
            missing = context.performance.get_missing_indexes(context.provider, token)
        except AnalysisCancelled:
            raise
        except QueryError as e:
            logger.warning(f"Missing index statistics unavailable: {e}")
            missing = []
        analysis.recommendations.extend(
            recommend_missing(row, quote, database_of(row.schema, row.table)) for row in missing)

        token.raise_if_cancelled()
        analysis.recommendations.extend(find_duplicates(schema))
        logger.info(f"Indexing analysis: {len(analysis.inventory)} indexes, "
                    f"{len(analysis.recommendations)} recommendations")
        return analysis

    @staticmethod
    def _inventory_item(row: IndexUsageRow, database: Optional[str]) -> IndexInventoryItem:
        return IndexInventoryItem(
            row.schema, row.table, row.index_name, row.index_type, row.is_unique, row.is_clustered,
            tuple(split_columns(row.columns)), row.user_seeks, row.user_scans, row.user_lookups,
            row.user_updates, row.size_kb, database=database)
