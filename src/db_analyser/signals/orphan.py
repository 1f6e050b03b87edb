"""Structural isolation in the dependency fact set."""
from typing import List

from ..models import SignalResult
from .base import SignalContext, UsageSignal


class OrphanSignal(UsageSignal):
    """Counts the relationship roles an object plays.

    Roles: FK target, FK source, dependency target, dependency source.
    Implicit relationship candidates are not facts and are ignored.
    """

    name = "Dependency Orphan"

    ORPHAN_WEIGHT = -0.5
    CONNECTED_WEIGHT = 0.3
    CONNECTED_MIN_ROLES = 2

    def evaluate(self, context: SignalContext, token) -> List[SignalResult]:
        fk_targets = {fk.to_key.lower() for fk in context.foreign_keys}
        fk_sources = {fk.from_key.lower() for fk in context.foreign_keys}
        dep_targets = {dep.to_key.lower() for dep in context.dependencies}
        dep_sources = {dep.from_key.lower() for dep in context.dependencies}

        results = []
        for obj in context.schema.usage_objects():
            key = obj.full_name.lower()
            roles = sum(key in group for group in (fk_targets, fk_sources, dep_targets, dep_sources))
            if roles == 0:
                results.append(SignalResult(
                    obj.full_name, obj.obj_type, self.ORPHAN_WEIGHT,
                    f"{obj.obj_type.value} is not referenced by and does not reference any object"))
            elif roles >= self.CONNECTED_MIN_ROLES:
                results.append(SignalResult(
                    obj.full_name, obj.obj_type, self.CONNECTED_WEIGHT,
                    f"Takes part in {roles} relationship types"))
        return results
