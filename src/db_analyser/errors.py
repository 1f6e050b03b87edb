"""
Database Analyser - Error taxonomy
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
from typing import Optional


class AnalysisError(Exception):
    """Base class for errors surfaced to callers of the analysis core."""


class ConfigError(AnalysisError):
    """Configuration file contains a malformed value."""


class ConnectionFailure(AnalysisError):
    """Cannot reach or authenticate to the backend."""


class UnknownDialect(AnalysisError, ValueError):
    """No provider bundle is registered under the requested dialect name."""


class UnknownSession(AnalysisError, KeyError):
    """Operation against a missing or expired session."""

    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self):
        return f"Session '{self.session_id}' not found. Connect first."


class SessionBusy(AnalysisError):
    """Another analysis is already running against the session."""


class UnknownAnalyzer(AnalysisError, ValueError):
    """Analyzer name is not registered."""


class UnknownDatabase(AnalysisError, ValueError):
    """A server-mode run named a database the server does not list."""


class PrecursorMissing(AnalysisError):
    """A downstream analyzer was requested before a schema snapshot exists."""


class QueryError(AnalysisError):
    """A dialect provider failed to execute a statement."""

    def __init__(self, message: str, sql: Optional[str] = None):
        super().__init__(message)
        self.sql = sql


class PrivilegeDenied(QueryError):
    """The login lacks permission for a catalog or telemetry view."""


class FeatureUnavailable(QueryError):
    """The view or function does not exist on this engine version."""


class SignalUnavailable(AnalysisError):
    """A telemetry source is disabled or unsupported; the signal contributes nothing."""


class AnalyzerFailed(AnalysisError):
    """An analyzer raised during a single-database run."""

    def __init__(self, analyzer: str, cause: BaseException):
        super().__init__(f"Analyzer '{analyzer}' failed: {cause}")
        self.analyzer = analyzer
        self.cause = cause


class AnalysisCancelled(Exception):
    """The run was cancelled. An outcome, not an error."""


class MalformedGraph(AssertionError):
    """Edge facts reference an object missing from the node set."""
