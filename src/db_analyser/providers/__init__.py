"""Dialect provider bundles for multi-database support."""
import importlib
from typing import Tuple

from ..errors import UnknownDialect
from .base import (
    CatalogQueries, DbProvider, PerformanceQueries, ProviderBundle, ProviderFactory,
    ServerQueries,
)

# Dialect -> module exposing create_bundle(); imported on first use so the
# ODBC driver manager is only required when SQL Server is actually used
_BUNDLES = {
    'postgresql': 'db_analyser.providers.postgresql',
    'sqlserver': 'db_analyser.providers.sqlserver',
}

_ALIASES = {
    'postgres': 'postgresql',
    'pg': 'postgresql',
    'mssql': 'sqlserver',
}


def resolve_dialect(dialect_name: str) -> str:
    """Map a dialect name or alias onto its registered name."""
    key = (dialect_name or '').strip().lower()
    key = _ALIASES.get(key, key)
    if key not in _BUNDLES:
        raise UnknownDialect(
            f"Unsupported dialect '{dialect_name}'. Supported: {', '.join(supported_dialects())}")
    return key


def get_bundle(dialect_name: str, query_timeout_seconds: int = 300) -> ProviderBundle:
    """Get the provider bundle for the given dialect name.

    Args:
        dialect_name: Dialect name or alias (postgresql, postgres, pg, sqlserver, mssql)
        query_timeout_seconds: Per-statement timeout applied by the factory

    Raises:
        UnknownDialect: no bundle is registered under that name
    """
    module = importlib.import_module(_BUNDLES[resolve_dialect(dialect_name)])
    return module.create_bundle(query_timeout_seconds)


def supported_dialects() -> Tuple[str, ...]:
    """Return tuple of supported dialect names."""
    return tuple(_BUNDLES.keys())


__all__ = [
    'CatalogQueries', 'DbProvider', 'PerformanceQueries', 'ProviderBundle', 'ProviderFactory',
    'ServerQueries', 'get_bundle', 'resolve_dialect', 'supported_dialects',
]
