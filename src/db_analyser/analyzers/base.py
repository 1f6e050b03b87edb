"""
Database Analyser - Analyzer contract
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging
from abc import ABC, abstractmethod
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, TypeVar

from ..cancellation import CancellationToken
from ..config import AnalysisConfig
from ..models import AnalysisResult
from ..providers.base import (
    CatalogQueries, DbProvider, PerformanceQueries, ProviderBundle, ServerQueries,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class AnalysisContext:
    """Provider and settings shared by the analyzers of one database."""
    provider: DbProvider
    bundle: ProviderBundle
    config: AnalysisConfig

    @property
    def provider_type(self) -> str:
        return self.bundle.provider_type

    @property
    def catalog(self) -> CatalogQueries:
        return self.bundle.catalog

    @property
    def performance(self) -> PerformanceQueries:
        return self.bundle.performance

    @property
    def server(self) -> ServerQueries:
        return self.bundle.server


class Analyzer(ABC):
    """Produces one slice of AnalysisResult.

    ``analyze`` reads the snapshot and returns the new slice; it never
    assigns into the snapshot, so analyzers can run side by side.
    """

    name: str = ""
    # False for analyzers that can run before (or without) a schema snapshot
    requires_schema: bool = True

    @abstractmethod
    def analyze(self, context: AnalysisContext, snapshot: AnalysisResult,
                token: CancellationToken) -> Any:
        pass


def fan_out(calls: Dict[str, Callable[[CancellationToken], T]], max_workers: int,
            token: CancellationToken) -> Dict[str, T]:
    """Run independent calls concurrently and join them.

    Each call receives a child token. The first failure cancels the
    siblings (aborting their in-flight queries) and is re-raised.
    """
    if not calls:
        return {}
    child = CancellationToken(parent=token)
    try:
        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(calls))),
                                thread_name_prefix='db-analyser') as pool:
            futures = {pool.submit(call, child): key for key, call in calls.items()}
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            failed = next((f for f in done if f.exception() is not None), None)
            if failed is not None:
                child.cancel()
                for future in pending:
                    future.cancel()
                wait(pending)
                raise failed.exception()
            return {futures[future]: future.result() for future in futures}
    finally:
        child.detach()
