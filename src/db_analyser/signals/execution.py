"""Execution counters of procedures and functions since server start."""
import logging
from typing import List

from ..errors import QueryError
from ..models import SignalResult
from .base import SignalContext, UsageSignal, index_rows, stat_key

logger = logging.getLogger(__name__)


def format_last(value) -> str:
    return value.strftime('%Y-%m-%d %H:%M') if value is not None else 'unknown'


class ExecutionSignal(UsageSignal):
    name = "Execution Statistics"

    POSITIVE_WEIGHT = 1.0
    NEGATIVE_WEIGHT = -0.8

    def evaluate(self, context: SignalContext, token) -> List[SignalResult]:
        procedure_stats = index_rows(
            context.performance.get_procedure_execution_stats(context.provider, token))
        try:
            function_stats = index_rows(
                context.performance.get_function_execution_stats(context.provider, token))
        except QueryError as e:
            # Older engines lack function statistics; procedures still count
            logger.warning(f"Function execution statistics unavailable: {e}")
            function_stats = None

        results = []
        routines = [(proc, procedure_stats) for proc in context.schema.procedures]
        if function_stats is not None:
            routines += [(func, function_stats) for func in context.schema.functions]

        for routine, stats in routines:
            row = stats.get(stat_key(routine.schema, routine.name))
            executions = row.execution_count if row is not None else 0
            if executions > 0:
                results.append(SignalResult(
                    routine.full_name, routine.obj_type, self.POSITIVE_WEIGHT,
                    f"Executed {executions:,} times, last at {format_last(row.last_execution)}"))
            elif (context.uptime_days is not None
                  and context.uptime_days >= context.config.min_uptime_days_negative):
                results.append(SignalResult(
                    routine.full_name, routine.obj_type, self.NEGATIVE_WEIGHT,
                    f"Never executed in {context.uptime_days} days of uptime"))
        return results
