"""Analyzers producing the slices of an AnalysisResult."""
from typing import Dict

from ..errors import UnknownAnalyzer
from .base import AnalysisContext, Analyzer, fan_out
from .indexing import IndexingAnalyzer
from .profiling import ProfilingAnalyzer
from .quality import QualityAnalyzer
from .relationships import RelationshipAnalyzer
from .schema import SchemaAnalyzer
from .usage import UsageAnalyzer


def default_analyzers() -> Dict[str, Analyzer]:
    """Analyzer instances keyed by name, in execution order."""
    analyzers = [
        SchemaAnalyzer(),
        ProfilingAnalyzer(),
        RelationshipAnalyzer(),
        QualityAnalyzer(),
        UsageAnalyzer(),
        IndexingAnalyzer(),
    ]
    return {analyzer.name: analyzer for analyzer in analyzers}


def validate_names(names, registry: Dict[str, Analyzer]):
    for name in names:
        if name not in registry:
            raise UnknownAnalyzer(f"Unknown analyzer '{name}'. Available: {', '.join(registry)}")


__all__ = [
    'AnalysisContext', 'Analyzer', 'IndexingAnalyzer', 'ProfilingAnalyzer', 'QualityAnalyzer',
    'RelationshipAnalyzer', 'SchemaAnalyzer', 'UsageAnalyzer', 'default_analyzers', 'fan_out',
    'validate_names',
]
