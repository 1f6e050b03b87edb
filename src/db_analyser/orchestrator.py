"""
Database Analyser - Analysis orchestration
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .analyzers import AnalysisContext, Analyzer, default_analyzers, fan_out, validate_names
from .analyzers.relationships import merge_relationship_maps
from .analyzers.usage import LEVEL_ORDER
from .cancellation import CancellationToken, ensure_token
from .config import AnalysisConfig
from .errors import AnalysisCancelled, AnalyzerFailed, PrecursorMissing, UnknownDatabase
from .models import AnalysisResult, DatabaseError, DatabaseSchema, IndexAnalysis, UsageAnalysis
from .progress import ProgressSink, ProgressTracker
from .providers.base import DbProvider, ProviderBundle

logger = logging.getLogger(__name__)

SCHEMA = 'schema'


@dataclass
class RunPlan:
    """Which analyzers a run executes."""
    run_schema: bool = False
    downstream: List[str] = field(default_factory=list)

    @property
    def steps(self) -> int:
        return int(self.run_schema) + len(self.downstream)


@dataclass
class ServerRun:
    """Outcome of a server-mode run: the merged view plus per-database results."""
    result: AnalysisResult
    per_database: Dict[str, AnalysisResult]
    failed: Dict[str, DatabaseError]


class AnalysisOrchestrator:
    """Runs analyzers in dependency order against one database or a whole server.

    Schema extraction runs first; the remaining analyzers are independent and
    run concurrently on the resulting snapshot. Work happens on a copy of the
    previous result, so a failed or cancelled run leaves the caller's cached
    result untouched.
    """

    def __init__(self, bundle: ProviderBundle, config: AnalysisConfig,
                 analyzers: Optional[Dict[str, Analyzer]] = None):
        self.bundle = bundle
        self.config = config
        self.analyzers = analyzers if analyzers is not None else default_analyzers()

    def resolve_names(self, names: Optional[Sequence[str]]) -> List[str]:
        if not names:
            return list(self.analyzers)
        requested = [name.strip().lower() for name in names]
        validate_names(requested, self.analyzers)
        return [name for name in self.analyzers if name in requested]

    def needs_schema(self, names: Sequence[str]) -> bool:
        return any(self.analyzers[name].requires_schema for name in names if name != SCHEMA)

    def plan(self, names: Sequence[str], cached: Optional[AnalysisResult], force: bool,
             auto_schema: bool) -> RunPlan:
        """Decide what to (re)compute.

        A schema refresh recomputes every cached slice derived from the schema.

        Raises:
            PrecursorMissing: an analyzer that requires the schema was
                requested, no schema is cached and ``auto_schema`` is off
        """
        has_schema = cached is not None and cached.schema is not None
        needs_schema = self.needs_schema(names)
        plan = RunPlan()
        plan.run_schema = (SCHEMA in names and (force or not has_schema)) or \
            (not has_schema and auto_schema and needs_schema)

        if not plan.run_schema and not has_schema and needs_schema:
            raise PrecursorMissing("Schema analysis must run first. Run 'schema' or a full analysis.")

        for name, analyzer in self.analyzers.items():
            if name == SCHEMA:
                continue
            requested = name in names
            cached_slice = cached is not None and cached.has_slice(name)
            if plan.run_schema and analyzer.requires_schema and (requested or cached_slice):
                plan.downstream.append(name)
            elif requested and (force or not cached_slice):
                plan.downstream.append(name)
        return plan

    def run_database(self, provider: DbProvider, names: Optional[Sequence[str]] = None,
                     previous: Optional[AnalysisResult] = None,
                     token: Optional[CancellationToken] = None,
                     progress: Optional[ProgressSink] = None, force: bool = True,
                     auto_schema: bool = True, database_tag: Optional[str] = None) -> AnalysisResult:
        """Run the pipeline against the database ``provider`` points at.

        Args:
            provider: Connected provider
            names: Analyzers to run; None means all
            previous: Cached result to start from (never mutated)
            token: Cancellation token
            progress: Optional progress sink
            force: Recompute slices that are already cached
            auto_schema: Run schema first when no schema is cached
            database_tag: Qualify every object with this database (server mode)

        Raises:
            AnalysisCancelled: the token was cancelled
            AnalyzerFailed: an analyzer raised
            PrecursorMissing: see ``plan``
        """
        token = ensure_token(token)
        names = self.resolve_names(names)
        plan = self.plan(names, previous, force, auto_schema)
        tracker = ProgressTracker(plan.steps, progress)

        working = previous.copy() if previous is not None else AnalysisResult(
            database_name=database_tag or provider.database_name)
        context = AnalysisContext(provider, self.bundle, self.config)

        if plan.run_schema:
            schema = self._run_analyzer(self.analyzers[SCHEMA], context, working, token)
            if database_tag:
                schema = schema.qualified(database_tag)
            working.schema = schema
            for name in plan.downstream:
                working.set_slice(name, None)
            tracker.step_done('schema')

        if plan.downstream:
            snapshot = working.copy()

            def call(name):
                def run(child_token):
                    value = self._run_analyzer(self.analyzers[name], context, snapshot, child_token)
                    tracker.step_done(name)
                    return value
                return run

            slices = fan_out({name: call(name) for name in plan.downstream},
                             self.config.max_workers, token)
            for name in plan.downstream:
                working.set_slice(name, slices[name])

        token.raise_if_cancelled()
        return working

    def _run_analyzer(self, analyzer: Analyzer, context: AnalysisContext,
                      snapshot: AnalysisResult, token: CancellationToken):
        token.raise_if_cancelled()
        logger.info(f"Running analyzer '{analyzer.name}' on '{context.provider.database_name}'")
        try:
            return analyzer.analyze(context, snapshot, token)
        except (AnalysisCancelled, PrecursorMissing):
            raise
        except Exception as e:
            if token.cancelled:
                raise AnalysisCancelled() from e
            raise AnalyzerFailed(analyzer.name, e) from e

    # -- Server mode ---------------------------------------------------------

    def run_server(self, connection_string: str, server_name: str,
                   names: Optional[Sequence[str]] = None,
                   previous: Optional[Dict[str, AnalysisResult]] = None,
                   previous_failed: Optional[Dict[str, DatabaseError]] = None,
                   token: Optional[CancellationToken] = None,
                   progress: Optional[ProgressSink] = None, force: bool = True,
                   auto_schema: bool = True, database: Optional[str] = None) -> ServerRun:
        """Run the pipeline for every database on the server.

        One database's failure is recorded in ``failed_databases`` and does not
        abort the others. With ``database`` only that database is recomputed;
        the other per-database results are carried over.

        Raises:
            AnalysisCancelled: the token was cancelled
            PrecursorMissing: a downstream analyzer was requested without any
                cached schema
            UnknownDatabase: ``database`` is not among the server's databases
        """
        token = ensure_token(token)
        names = self.resolve_names(names)
        previous = dict(previous or {})
        failed = dict(previous_failed or {})
        factory = self.bundle.factory

        if not auto_schema and SCHEMA not in names and self.needs_schema(names) and not any(
                result is not None and result.schema is not None for result in previous.values()):
            raise PrecursorMissing("Schema analysis must run first. Run 'schema' or a full analysis.")

        available = self.enumerate_databases(connection_string, token)
        if database:
            match = next((db for db in available if db.lower() == database.lower()), None)
            if match is None:
                raise UnknownDatabase(f"Database '{database}' not found on {server_name}. "
                                      f"Available: {', '.join(available)}")
            databases = [match]
        else:
            databases = available
            # Databases that disappeared since the previous run
            for stale in set(previous) - set(databases):
                previous.pop(stale)
            failed = {db: err for db, err in failed.items() if db in databases}
        logger.info(f"Server analysis on {server_name}: {len(databases)} databases "
                    f"[{', '.join(databases)}]")

        tracker = ProgressTracker(len(databases) + 1, progress)

        def analyze_database(db: str) -> Tuple[str, Optional[AnalysisResult], Optional[DatabaseError]]:
            try:
                token.raise_if_cancelled()
                provider = factory.create(factory.set_database(connection_string, db), token)
                try:
                    result = self.run_database(provider, names, previous.get(db), token,
                                               force=force, auto_schema=auto_schema, database_tag=db)
                finally:
                    provider.close()
            except AnalysisCancelled:
                tracker.step_done(f"Analyzed {db}", status="cancelled")
                raise
            except Exception as e:
                logger.error(f"Failed to analyze database {db}", exc_info=True)
                tracker.step_done(f"Analyzed {db}", status="failed")
                return db, None, DatabaseError(db, str(e))
            tracker.step_done(f"Analyzed {db}")
            return db, result, None

        workers = max(1, min(self.config.max_parallel_databases, len(databases) or 1))
        outcomes = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='db-analyser-server') as pool:
            futures = [pool.submit(analyze_database, db) for db in databases]
            for future in futures:
                try:
                    outcomes.append(future.result())
                except AnalysisCancelled:
                    continue
        token.raise_if_cancelled()

        for db, result, error in outcomes:
            if error is not None:
                failed[db] = error
                # The cached result may predate a schema change; never merge it
                previous.pop(db, None)
            else:
                failed.pop(db, None)
                previous[db] = result

        merged = merge_results(server_name, previous, list(failed.values()))
        tracker.step_done('merge')
        logger.info(f"Server analysis completed: {len(merged.databases)} succeeded, "
                    f"{len(merged.failed_databases)} failed")
        return ServerRun(merged, previous, failed)

    def enumerate_databases(self, connection_string: str, token: CancellationToken) -> List[str]:
        factory = self.bundle.factory
        system = factory.set_database(connection_string, factory.default_system_database)
        provider = factory.create(system, token)
        try:
            return list(self.bundle.server.enumerate_databases(provider, token))
        finally:
            provider.close()


def merge_results(server_name: str, per_database: Dict[str, AnalysisResult],
                  failed: List[DatabaseError]) -> AnalysisResult:
    """Union of per-database results with database-qualified object keys.

    The dependency graph is recomputed over the union so cross-database
    edges between analysed databases connect.
    """
    databases = sorted(per_database)
    results = [per_database[db] for db in databases]
    merged = AnalysisResult(
        database_name=server_name,
        is_server_mode=True,
        databases=databases,
        failed_databases=sorted(failed, key=lambda e: e.database),
    )

    schemas = [r.schema for r in results if r.schema is not None]
    if schemas:
        union = DatabaseSchema(database_name=server_name)
        for schema in schemas:
            union.tables.extend(schema.tables)
            union.views.extend(schema.views)
            union.procedures.extend(schema.procedures)
            union.functions.extend(schema.functions)
            union.triggers.extend(schema.triggers)
            union.synonyms.extend(schema.synonyms)
            union.sequences.extend(schema.sequences)
            union.user_defined_types.extend(schema.user_defined_types)
            seen_jobs = {job.name for job in union.jobs}
            union.jobs.extend(job for job in schema.jobs if job.name not in seen_jobs)
        merged.schema = union

    if any(r.profiles is not None for r in results):
        merged.profiles = [p for r in results for p in (r.profiles or [])]

    if any(r.quality_issues is not None for r in results):
        merged.quality_issues = [i for r in results for i in (r.quality_issues or [])]

    maps = [r.relationships for r in results if r.relationships is not None]
    if maps and merged.schema is not None:
        merged.relationships = merge_relationship_maps(merged.schema, maps)

    usages = [r.usage for r in results if r.usage is not None]
    if usages:
        usage = UsageAnalysis()
        for item in usages:
            usage.server_start_time = usage.server_start_time or item.server_start_time
            if usage.server_uptime_days is None:
                usage.server_uptime_days = item.server_uptime_days
            usage.objects.extend(item.objects)
            usage.unavailable_signals.extend(
                s for s in item.unavailable_signals if s not in usage.unavailable_signals)
        usage.objects.sort(key=lambda u: (LEVEL_ORDER[u.usage_level], u.score, u.object_name.lower()))
        merged.usage = usage

    indexing = [r.indexing for r in results if r.indexing is not None]
    if indexing:
        merged.indexing = IndexAnalysis(
            inventory=[item for analysis in indexing for item in analysis.inventory],
            recommendations=[rec for analysis in indexing for rec in analysis.recommendations],
            has_usage_stats=all(analysis.has_usage_stats for analysis in indexing),
        )

    return merged
