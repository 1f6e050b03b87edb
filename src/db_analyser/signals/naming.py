"""Names that look temporary, backed-up or retired."""
from typing import List

from ..models import SignalResult
from .base import SignalContext, UsageSignal

SUSPICIOUS_PREFIXES = ('tmp', 'temp', 'bak', 'backup', 'old', 'test', '_', 'zz')
SUSPICIOUS_SUBSTRINGS = ('deprecated', 'archive')


def suspicious_reason(name: str):
    """Return the first matching reason, or None."""
    lower = name.lower()
    for prefix in SUSPICIOUS_PREFIXES:
        if lower.startswith(prefix):
            return f"Name starts with '{prefix}', may be temporary or deprecated"
    for pattern in SUSPICIOUS_SUBSTRINGS:
        if pattern in lower:
            return f"Name contains '{pattern}', may be deprecated or archived"
    return None


class NamingSignal(UsageSignal):
    name = "Naming Pattern"

    WEIGHT = -0.4

    def evaluate(self, context: SignalContext, token) -> List[SignalResult]:
        results = []
        for obj in context.schema.usage_objects():
            reason = suspicious_reason(obj.name)
            if reason is not None:
                results.append(SignalResult(obj.full_name, obj.obj_type, self.WEIGHT, reason))
        return results
