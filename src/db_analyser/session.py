"""
Database Analyser - Analysis sessions
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .cancellation import CancellationToken
from .config import AnalysisConfig
from .errors import AnalysisCancelled, SessionBusy, UnknownAnalyzer, UnknownSession
from .models import AnalysisResult, DatabaseError
from .orchestrator import AnalysisOrchestrator
from .progress import ProgressSink
from .providers import get_bundle
from .providers.base import DbProvider, ProviderBundle

logger = logging.getLogger(__name__)


class SessionState(Enum):
    CONNECTED = "Connected"
    ANALYZING = "Analyzing"
    READY = "Ready"
    DISCONNECTED = "Disconnected"


@dataclass
class AnalysisSession:
    """One connection and its cached analysis.

    ``result`` is only ever replaced by a finished run, never filled in
    place, so readers always see a complete snapshot.
    """
    session_id: str
    provider: DbProvider
    bundle: ProviderBundle
    connection_string: str
    is_server_mode: bool
    server_name: str
    database_name: Optional[str]
    orchestrator: AnalysisOrchestrator
    state: SessionState = SessionState.CONNECTED
    result: Optional[AnalysisResult] = None
    per_database: Dict[str, AnalysisResult] = field(default_factory=dict)
    failed_databases: Dict[str, DatabaseError] = field(default_factory=dict)
    analyzer_status: Dict[str, str] = field(default_factory=dict)
    last_activity: float = field(default_factory=time.monotonic)
    token: Optional[CancellationToken] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def provider_type(self) -> str:
        return self.bundle.provider_type

    def touch(self):
        self.last_activity = time.monotonic()


class SessionManager:
    """Concurrency-safe registry of analysis sessions.

    Each session is single-flight: a second analysis request while one is
    running is rejected with SessionBusy. Sessions are independent; no
    lock is shared between them.
    """

    def __init__(self, config: Optional[AnalysisConfig] = None,
                 bundle_resolver: Callable[..., ProviderBundle] = get_bundle):
        self.config = config or AnalysisConfig()
        self._bundle_resolver = bundle_resolver
        self._sessions: Dict[str, AnalysisSession] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._cleanup_thread: Optional[threading.Thread] = None

    # -- Lifecycle -----------------------------------------------------------

    def connect(self, connection_string: str, dialect: str) -> Dict[str, Any]:
        """Open a session.

        Raises:
            UnknownDialect: no provider for ``dialect``
            ConnectionFailure: backend unreachable or login rejected
        """
        bundle = self._bundle_resolver(dialect, self.config.query_timeout_seconds)
        factory = bundle.factory
        connection_string = factory.normalize_connection_string(connection_string)
        is_server_mode = factory.is_server_mode(connection_string)
        target = (factory.set_database(connection_string, factory.default_system_database)
                  if is_server_mode else connection_string)
        provider = factory.create(target)

        session = AnalysisSession(
            session_id=uuid.uuid4().hex,
            provider=provider,
            bundle=bundle,
            connection_string=connection_string,
            is_server_mode=is_server_mode,
            server_name=provider.server_name,
            database_name=None if is_server_mode else provider.database_name,
            orchestrator=AnalysisOrchestrator(bundle, self.config),
        )
        with self._lock:
            self._sessions[session.session_id] = session

        mode = "server mode" if is_server_mode else f"database '{session.database_name}'"
        logger.info(f"Session {session.session_id} connected to {bundle.provider_type} "
                    f"{session.server_name} ({mode})")
        return {
            'session_id': session.session_id,
            'is_server_mode': is_server_mode,
            'server_name': session.server_name,
            'database_name': session.database_name,
        }

    def disconnect(self, session_id: str):
        """Close a session. Unknown or already closed sessions are ignored."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return
        self._close_session(session)
        logger.info(f"Session {session_id} disconnected")

    def _close_session(self, session: AnalysisSession):
        token = session.token
        if token is not None:
            token.cancel()
        session.state = SessionState.DISCONNECTED
        session.provider.close()

    def get_session(self, session_id: str) -> AnalysisSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        session.touch()
        return session

    def list_sessions(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    # -- Analysis ------------------------------------------------------------

    def run_analysis(self, session_id: str, analyzer_names: Optional[Sequence[str]] = None,
                     progress: Optional[ProgressSink] = None) -> AnalysisResult:
        """Run the given analyzers (all when omitted), schema first.

        Raises:
            UnknownSession, SessionBusy, UnknownAnalyzer, AnalyzerFailed
            AnalysisCancelled: the run was cancelled; the previous result is kept
        """
        session = self.get_session(session_id)
        return self._run(session, analyzer_names, progress, force=True, auto_schema=True)

    def run_single_analyzer(self, session_id: str, analyzer_name: str, force: bool = False,
                            database: Optional[str] = None,
                            progress: Optional[ProgressSink] = None) -> Any:
        """(Re)compute one analyzer's slice and return it.

        Without ``force`` an already cached slice is returned as is. In server
        mode ``database`` limits the run to that database.

        Raises:
            PrecursorMissing: no schema is cached for a downstream analyzer
        """
        session = self.get_session(session_id)
        name = (analyzer_name or '').strip().lower()
        if name not in session.orchestrator.analyzers:
            raise UnknownAnalyzer(f"Unknown analyzer '{analyzer_name}'. "
                                  f"Available: {', '.join(session.orchestrator.analyzers)}")
        result = self._run(session, [name], progress, force=force, auto_schema=False,
                           database=database if session.is_server_mode else None)
        return result.get_slice(name)

    def get_cached_result(self, session_id: str) -> Optional[AnalysisResult]:
        """Most recent complete result, or None when nothing ran yet."""
        return self.get_session(session_id).result

    def cancel(self, session_id: str) -> bool:
        """Cancel the in-flight run. Returns False when nothing is running."""
        session = self.get_session(session_id)
        token = session.token
        if token is None:
            return False
        logger.info(f"Cancelling analysis of session {session_id}")
        token.cancel()
        return True

    def _run(self, session: AnalysisSession, names: Optional[Sequence[str]],
             progress: Optional[ProgressSink], force: bool, auto_schema: bool,
             database: Optional[str] = None) -> AnalysisResult:
        if not session.lock.acquire(blocking=False):
            raise SessionBusy(f"Session '{session.session_id}' is already running an analysis")
        # Reaped or disconnected between lookup and lock; its provider is closed
        with self._lock:
            registered = self._sessions.get(session.session_id) is session
        if not registered:
            session.lock.release()
            raise UnknownSession(session.session_id)
        token = CancellationToken()
        previous_state = session.state
        try:
            session.token = token
            session.state = SessionState.ANALYZING
            requested = session.orchestrator.resolve_names(names)
            for name in requested:
                session.analyzer_status[name] = 'running'
            logger.info(f"Session {session.session_id}: analysis started [{', '.join(requested)}]")
            started = time.monotonic()

            if session.is_server_mode:
                run = session.orchestrator.run_server(
                    session.connection_string, session.server_name, requested,
                    previous=session.per_database, previous_failed=session.failed_databases,
                    token=token, progress=progress, force=force, auto_schema=auto_schema,
                    database=database)
                session.per_database = run.per_database
                session.failed_databases = run.failed
                session.result = run.result
            else:
                session.result = session.orchestrator.run_database(
                    session.provider, requested, session.result, token, progress,
                    force=force, auto_schema=auto_schema)

            for name in requested:
                session.analyzer_status[name] = 'completed'
            session.state = SessionState.READY
            logger.info(f"Session {session.session_id}: analysis finished in "
                        f"{time.monotonic() - started:.1f}s")
            return session.result
        except AnalysisCancelled:
            logger.info(f"Session {session.session_id}: analysis cancelled, previous result kept")
            self._revert(session, previous_state, 'cancelled')
            raise
        except Exception:
            self._revert(session, previous_state, 'failed')
            raise
        finally:
            session.token = None
            session.touch()
            session.lock.release()

    def _revert(self, session: AnalysisSession, previous_state: SessionState, status: str):
        for name, value in session.analyzer_status.items():
            if value == 'running':
                session.analyzer_status[name] = status
        if session.state is not SessionState.DISCONNECTED:
            session.state = previous_state if session.result is None else SessionState.READY

    # -- Idle cleanup --------------------------------------------------------

    def cleanup_idle(self, now: Optional[float] = None) -> List[str]:
        """Remove sessions idle longer than the configured timeout.

        Sessions with an analysis in flight are never removed.
        """
        now = time.monotonic() if now is None else now
        timeout = self.config.session_idle_timeout_minutes * 60
        removed = []
        with self._lock:
            for session_id, session in list(self._sessions.items()):
                if now - session.last_activity < timeout:
                    continue
                if not session.lock.acquire(blocking=False):
                    continue
                try:
                    del self._sessions[session_id]
                finally:
                    session.lock.release()
                removed.append(session)
        for session in removed:
            self._close_session(session)
            logger.info(f"Session {session.session_id} removed after idle timeout")
        return [session.session_id for session in removed]

    def start_cleanup(self):
        """Start the background idle-session reaper."""
        if self._cleanup_thread is not None:
            return
        interval = self.config.cleanup_interval_minutes * 60

        def loop():
            while not self._stop.wait(interval):
                try:
                    self.cleanup_idle()
                except Exception:
                    logger.error("Idle session cleanup failed", exc_info=True)

        self._cleanup_thread = threading.Thread(target=loop, name='db-analyser-cleanup', daemon=True)
        self._cleanup_thread.start()

    def close(self):
        """Stop the reaper and disconnect every session."""
        self._stop.set()
        if self._cleanup_thread is not None:
            self._cleanup_thread.join(timeout=5)
            self._cleanup_thread = None
        for session_id in self.list_sessions():
            self.disconnect(session_id)
