"""
Database Analyser - Schema quality checks
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import re
from typing import List

from ..errors import PrecursorMissing
from ..models import ColumnInfo, QualityIssue, Severity, TableInfo
from .base import AnalysisContext, Analyzer

MIXED_CASE = re.compile(r'[A-Z][a-z]')

SQL_RESERVED_WORDS = {
    'SELECT', 'INSERT', 'UPDATE', 'DELETE', 'FROM', 'WHERE', 'ORDER', 'GROUP', 'BY',
    'TABLE', 'INDEX', 'VIEW', 'CREATE', 'ALTER', 'DROP', 'KEY', 'PRIMARY', 'FOREIGN',
    'COLUMN', 'DATABASE', 'SCHEMA', 'USER', 'ROLE', 'GRANT', 'REVOKE', 'TYPE',
    'NAME', 'VALUE', 'VALUES', 'STATUS', 'DATE', 'TIME', 'TIMESTAMP', 'LEVEL',
    'COMMENT', 'ACTION', 'CONDITION', 'RESULT', 'FUNCTION', 'PROCEDURE',
}


def is_unbounded_text(column: ColumnInfo) -> bool:
    data_type = column.data_type.lower()
    if data_type in ('varchar', 'nvarchar', 'varbinary') and column.max_length == -1:
        return True
    if data_type in ('text', 'ntext'):
        return True
    return data_type == 'character varying' and column.max_length is None


def check_missing_primary_key(table: TableInfo) -> List[QualityIssue]:
    if table.primary_key_columns:
        return []
    return [QualityIssue(
        "Design", Severity.ERROR, table.full_name, "Table has no primary key.",
        "Add a primary key to ensure entity integrity and improve query performance.")]


def check_unindexed_foreign_keys(table: TableInfo) -> List[QualityIssue]:
    leading = {index.columns[0].lower() for index in table.indexes if index.columns}
    return [
        QualityIssue(
            "Performance", Severity.WARNING, f"{table.full_name}.{fk.from_column}",
            f"Foreign key column '{fk.from_column}' has no index.",
            "Add an index on the FK column to improve JOIN and DELETE performance.")
        for fk in table.foreign_keys if fk.from_column.lower() not in leading
    ]


def check_naming(table: TableInfo) -> List[QualityIssue]:
    issues = []
    if MIXED_CASE.search(table.name) and '_' in table.name:
        issues.append(QualityIssue(
            "Naming", Severity.INFO, table.full_name,
            "Table name mixes PascalCase and snake_case.",
            "Choose a consistent naming convention."))
    for column in table.columns:
        if column.name.upper() in SQL_RESERVED_WORDS:
            issues.append(QualityIssue(
                "Naming", Severity.WARNING, f"{table.full_name}.{column.name}",
                f"Column name '{column.name}' is a SQL reserved word.",
                "Rename the column to avoid potential issues with queries."))
    return issues


def check_unbounded_text(table: TableInfo) -> List[QualityIssue]:
    return [
        QualityIssue(
            "Design", Severity.INFO, f"{table.full_name}.{column.name}",
            f"Column '{column.name}' has an unbounded text type ({column.data_type}).",
            "Consider whether a bounded length would be more appropriate.")
        for column in table.columns if is_unbounded_text(column)
    ]


def check_tables_without_relationships(tables: List[TableInfo]) -> List[QualityIssue]:
    if len(tables) < 2:
        return []
    connected = set()
    for table in tables:
        for fk in table.foreign_keys:
            connected.add(fk.from_key.lower())
            connected.add(fk.to_key.lower())
    return [
        QualityIssue(
            "Design", Severity.INFO, table.full_name,
            "Table has no foreign key relationships (orphaned).",
            "Verify this table is intentionally standalone.")
        for table in tables if table.full_name.lower() not in connected
    ]


class QualityAnalyzer(Analyzer):
    name = 'quality'

    def analyze(self, context: AnalysisContext, snapshot, token) -> List[QualityIssue]:
        if snapshot.schema is None:
            raise PrecursorMissing("Schema analysis must run before quality analysis")

        issues: List[QualityIssue] = []
        for table in snapshot.schema.tables:
            token.raise_if_cancelled()
            issues.extend(check_missing_primary_key(table))
            issues.extend(check_unindexed_foreign_keys(table))
            issues.extend(check_naming(table))
            issues.extend(check_unbounded_text(table))
        issues.extend(check_tables_without_relationships(snapshot.schema.tables))
        return issues
