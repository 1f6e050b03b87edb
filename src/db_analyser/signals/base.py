"""
Database Analyser - Usage signal contract
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from ..cancellation import CancellationToken
from ..config import AnalysisConfig
from ..models import DatabaseSchema, ForeignKeyInfo, ObjectDependency, SignalResult, TableProfile
from ..providers.base import DbProvider, PerformanceQueries


def stat_key(schema: str, name: str) -> Tuple[str, str]:
    """Telemetry rows carry no database; match them to objects by schema and name."""
    return schema.lower(), name.lower()


@dataclass
class SignalContext:
    """Everything a signal may read. Signals never write to it."""
    provider: DbProvider
    performance: PerformanceQueries
    schema: DatabaseSchema
    config: AnalysisConfig
    uptime_days: Optional[int] = None
    profiles: Optional[List[TableProfile]] = None
    foreign_keys: List[ForeignKeyInfo] = field(default_factory=list)
    dependencies: List[ObjectDependency] = field(default_factory=list)


class UsageSignal(ABC):
    """One independent source of evidence about object usage.

    A signal that finds nothing applicable returns no result for that
    object; it never emits a zero weight as a placeholder.
    """

    name: str = ""

    @abstractmethod
    def evaluate(self, context: SignalContext, token: CancellationToken) -> List[SignalResult]:
        """Return observations.

        Raises:
            SignalUnavailable: the telemetry source is disabled
            QueryError: the provider rejected a statement
        """


def index_rows(rows: Iterable, name_attr: str = 'name') -> Dict[Tuple[str, str], object]:
    return {stat_key(row.schema, getattr(row, name_attr)): row for row in rows}
