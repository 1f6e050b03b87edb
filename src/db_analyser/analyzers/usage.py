"""
Database Analyser - Usage classification
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import AnalysisConfig
from ..errors import AnalysisCancelled, PrecursorMissing, QueryError, SignalUnavailable
from ..models import ObjectUsage, SignalResult, UsageAnalysis, UsageLevel
from ..signals import SignalContext, UsageSignal, default_signals
from .base import AnalysisContext, Analyzer, fan_out
from .relationships import structural_edges, usable_edges, usable_foreign_keys

logger = logging.getLogger(__name__)

LEVEL_ORDER = {
    UsageLevel.UNUSED: 0,
    UsageLevel.LOW: 1,
    UsageLevel.UNKNOWN: 2,
    UsageLevel.ACTIVE: 3,
}


def classify(score: float, config: AnalysisConfig) -> UsageLevel:
    if score >= config.active_threshold:
        return UsageLevel.ACTIVE
    if score >= config.low_threshold:
        return UsageLevel.LOW
    return UsageLevel.UNUSED


def aggregate(objects: Iterable, results: Iterable[SignalResult],
              config: AnalysisConfig) -> List[ObjectUsage]:
    """Fold signal results into one ObjectUsage per object.

    The score is the sum of the weights that fired. Objects no signal
    fired for are Unknown, which is not the same as a neutral score.
    """
    usages: Dict[Tuple[str, str], ObjectUsage] = {}
    for obj in objects:
        usages[(obj.full_name.lower(), obj.obj_type.value)] = ObjectUsage(
            obj.full_name, obj.obj_type, database=getattr(obj, 'database', None))

    fired: Dict[Tuple[str, str], List[SignalResult]] = {}
    for result in results:
        key = (result.object_name.lower(), result.object_type.value)
        fired.setdefault(key, []).append(result)
        if key not in usages:
            usages[key] = ObjectUsage(result.object_name, result.object_type)

    for key, usage in usages.items():
        signals = fired.get(key)
        if not signals:
            continue
        score = sum(s.weight for s in signals)
        usage.score = round(score, 3)
        usage.usage_level = classify(score, config)
        usage.evidence = [s.evidence for s in signals]

    return sorted(usages.values(),
                  key=lambda u: (LEVEL_ORDER[u.usage_level], u.score, u.object_name.lower()))


class UsageAnalyzer(Analyzer):
    """Combines independent usage signals into per-object classifications."""

    name = 'usage'

    def __init__(self, signals: Optional[Sequence[UsageSignal]] = None):
        self.signals = list(signals) if signals is not None else default_signals()

    def analyze(self, context: AnalysisContext, snapshot, token) -> UsageAnalysis:
        schema = snapshot.schema
        if schema is None:
            raise PrecursorMissing("Schema analysis must run before usage analysis")

        analysis = UsageAnalysis()
        try:
            analysis.server_start_time, analysis.server_uptime_days = \
                context.server.get_server_uptime(context.provider, token)
        except QueryError as e:
            logger.warning(f"Server uptime unavailable, uptime-gated signals stay silent: {e}")

        if snapshot.relationships is not None:
            foreign_keys = snapshot.relationships.explicit_relationships
            dependencies = snapshot.relationships.object_dependencies
        else:
            known = {obj.full_name: obj.obj_type for obj in schema.graph_objects()}
            foreign_keys = usable_foreign_keys(
                [fk for table in schema.tables for fk in table.foreign_keys], known)
            dependencies = usable_edges(structural_edges(schema), known)

        signal_context = SignalContext(
            provider=context.provider,
            performance=context.performance,
            schema=schema,
            config=context.config,
            uptime_days=analysis.server_uptime_days,
            profiles=snapshot.profiles,
            foreign_keys=list(foreign_keys),
            dependencies=list(dependencies),
        )

        calls = {signal.name: (lambda t, signal=signal: self._evaluate(signal, signal_context, t))
                 for signal in self.signals}
        outcomes = fan_out(calls, context.config.max_workers, token)

        results: List[SignalResult] = []
        for signal in self.signals:
            signal_results, unavailable = outcomes[signal.name]
            results.extend(signal_results)
            if unavailable is not None:
                analysis.unavailable_signals.append(unavailable)

        analysis.objects = aggregate(schema.usage_objects(), results, context.config)
        return analysis

    def _evaluate(self, signal: UsageSignal, context: SignalContext,
                  token) -> Tuple[List[SignalResult], Optional[str]]:
        try:
            return signal.evaluate(context, token), None
        except AnalysisCancelled:
            raise
        except SignalUnavailable as e:
            logger.info(f"Signal '{signal.name}' unavailable: {e}")
            return [], signal.name
        except QueryError as e:
            logger.warning(f"Signal '{signal.name}' degraded: {e}")
            return [], signal.name
        except Exception:
            logger.error(f"Signal '{signal.name}' failed", exc_info=True)
            return [], signal.name
