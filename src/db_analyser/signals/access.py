"""Table read/write counters since server start."""
from typing import List

from ..models import SignalResult
from .base import SignalContext, UsageSignal, index_rows, stat_key


class AccessSignal(UsageSignal):
    name = "Table Access Statistics"

    READ_WEIGHT = 1.0
    IDLE_WEIGHT = -0.8

    def evaluate(self, context: SignalContext, token) -> List[SignalResult]:
        uptime = context.uptime_days
        if uptime is None:
            # Counters reset on restart; without uptime they cannot be judged
            return []

        stats = index_rows(context.performance.get_table_usage_stats(context.provider, token),
                           name_attr='table')
        config = context.config
        results = []
        for table in context.schema.tables:
            row = stats.get(stat_key(table.schema, table.name))
            reads = row.total_reads if row is not None else 0
            writes = row.total_writes if row is not None else 0
            if reads > 0 and uptime >= config.min_uptime_days_positive:
                results.append(SignalResult(
                    table.full_name, table.obj_type, self.READ_WEIGHT,
                    f"Table has {reads:,} reads and {writes:,} writes since server start"))
            elif reads == 0 and writes == 0 and uptime >= config.min_uptime_days_negative:
                results.append(SignalResult(
                    table.full_name, table.obj_type, self.IDLE_WEIGHT,
                    f"No reads or writes detected in {uptime} days of uptime"))
        return results
