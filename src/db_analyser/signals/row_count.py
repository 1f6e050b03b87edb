"""Empty tables are weak evidence of disuse; populated ones of use."""
from typing import Dict, List

from ..models import SignalResult
from .base import SignalContext, UsageSignal, stat_key


class RowCountSignal(UsageSignal):
    name = "Row Count"

    EMPTY_WEIGHT = -0.3
    POPULATED_WEIGHT = 0.2

    def evaluate(self, context: SignalContext, token) -> List[SignalResult]:
        if context.profiles is not None:
            counts: Dict = {stat_key(p.schema, p.name): p.row_count for p in context.profiles}
            source = "rows"
        else:
            rows = context.performance.get_table_row_counts(context.provider, token)
            counts = {stat_key(r.schema, r.table): r.row_count for r in rows}
            source = "rows (estimated)"

        results = []
        for table in context.schema.tables:
            count = counts.get(stat_key(table.schema, table.name))
            if count is None:
                continue
            if count == 0:
                results.append(SignalResult(table.full_name, table.obj_type, self.EMPTY_WEIGHT,
                                            "Table has 0 rows"))
            else:
                results.append(SignalResult(table.full_name, table.obj_type, self.POPULATED_WEIGHT,
                                            f"Table has {count:,} {source}"))
        return results
