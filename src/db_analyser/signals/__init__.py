"""Usage signal evaluators."""
from .access import AccessSignal
from .base import SignalContext, UsageSignal
from .execution import ExecutionSignal
from .naming import NamingSignal
from .orphan import OrphanSignal
from .query_store import QueryStoreSignal
from .row_count import RowCountSignal


def default_signals():
    """Signal instances in registration order."""
    return [
        AccessSignal(),
        ExecutionSignal(),
        QueryStoreSignal(),
        RowCountSignal(),
        OrphanSignal(),
        NamingSignal(),
    ]


__all__ = [
    'AccessSignal', 'ExecutionSignal', 'NamingSignal', 'OrphanSignal', 'QueryStoreSignal',
    'RowCountSignal', 'SignalContext', 'UsageSignal', 'default_signals',
]
