"""
Database Analyser - Data model
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import copy
from dataclasses import dataclass, field, fields, is_dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ObjectType(Enum):
    """Types of database objects."""
    TABLE = "Table"
    VIEW = "View"
    PROCEDURE = "Procedure"
    FUNCTION = "Function"
    TRIGGER = "Trigger"
    SYNONYM = "Synonym"
    SEQUENCE = "Sequence"
    TYPE = "Type"
    JOB = "Job"
    EXTERNAL = "External"


def object_key(schema: str, name: str, database: Optional[str] = None) -> str:
    """Canonical graph and usage key.

    ``schema.name`` for a single database, ``database.schema.name`` once
    the object is tagged with its database (server mode). The graph engine
    and the usage engine both key objects through this function.
    """
    if database:
        return f"{database}.{schema}.{name}"
    return f"{schema}.{name}"


# -- Schema -----------------------------------------------------------------

@dataclass(frozen=True)
class ColumnInfo:
    name: str
    data_type: str
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    is_nullable: bool = True
    is_primary_key: bool = False
    is_identity: bool = False
    is_computed: bool = False
    default_value: Optional[str] = None
    ordinal_position: int = 0


@dataclass(frozen=True)
class IndexInfo:
    name: str
    index_type: str
    is_unique: bool
    is_clustered: bool
    columns: Tuple[str, ...]


@dataclass(frozen=True)
class ForeignKeyInfo:
    name: str
    from_schema: str
    from_table: str
    from_column: str
    to_schema: str
    to_table: str
    to_column: str
    delete_rule: str = "NO ACTION"
    update_rule: str = "NO ACTION"
    from_database: Optional[str] = None
    to_database: Optional[str] = None

    @property
    def from_key(self) -> str:
        return object_key(self.from_schema, self.from_table, self.from_database)

    @property
    def to_key(self) -> str:
        return object_key(self.to_schema, self.to_table, self.to_database)


@dataclass(frozen=True)
class TableInfo:
    schema: str
    name: str
    columns: Tuple[ColumnInfo, ...] = ()
    indexes: Tuple[IndexInfo, ...] = ()
    foreign_keys: Tuple[ForeignKeyInfo, ...] = ()
    database: Optional[str] = None

    obj_type = ObjectType.TABLE

    @property
    def full_name(self) -> str:
        return object_key(self.schema, self.name, self.database)

    @property
    def primary_key_columns(self) -> List[ColumnInfo]:
        return [c for c in self.columns if c.is_primary_key]


@dataclass(frozen=True)
class ViewInfo:
    schema: str
    name: str
    definition: str = ""
    columns: Tuple[ColumnInfo, ...] = ()
    database: Optional[str] = None

    obj_type = ObjectType.VIEW

    @property
    def full_name(self) -> str:
        return object_key(self.schema, self.name, self.database)


@dataclass(frozen=True)
class ProcedureInfo:
    schema: str
    name: str
    definition: str = ""
    last_modified: Optional[datetime] = None
    database: Optional[str] = None

    obj_type = ObjectType.PROCEDURE

    @property
    def full_name(self) -> str:
        return object_key(self.schema, self.name, self.database)


@dataclass(frozen=True)
class FunctionInfo:
    schema: str
    name: str
    function_type: str = ""
    definition: str = ""
    last_modified: Optional[datetime] = None
    database: Optional[str] = None

    obj_type = ObjectType.FUNCTION

    @property
    def full_name(self) -> str:
        return object_key(self.schema, self.name, self.database)


@dataclass(frozen=True)
class TriggerInfo:
    schema: str
    name: str
    parent_table: str
    trigger_type: str = ""
    trigger_events: str = ""
    is_enabled: bool = True
    definition: str = ""
    database: Optional[str] = None

    obj_type = ObjectType.TRIGGER

    @property
    def full_name(self) -> str:
        return object_key(self.schema, self.name, self.database)

    @property
    def parent_full_name(self) -> str:
        return object_key(self.schema, self.parent_table, self.database)


@dataclass(frozen=True)
class SynonymInfo:
    schema: str
    name: str
    base_object_name: str
    database: Optional[str] = None

    obj_type = ObjectType.SYNONYM

    @property
    def full_name(self) -> str:
        return object_key(self.schema, self.name, self.database)

    def parse_base_object(self, default_schema: str = "dbo") -> Tuple[Optional[str], str, str]:
        """Split the base object into (database, schema, name)."""
        parts = self.base_object_name.replace("[", "").replace("]", "").split(".")
        if len(parts) >= 3:
            return parts[-3], parts[-2], parts[-1]
        if len(parts) == 2:
            return None, parts[0], parts[1]
        return None, default_schema, parts[0]


@dataclass(frozen=True)
class SequenceInfo:
    schema: str
    name: str
    data_type: str
    current_value: int = 0
    increment: int = 1
    min_value: int = 0
    max_value: int = 0
    is_cycling: bool = False
    database: Optional[str] = None

    obj_type = ObjectType.SEQUENCE

    @property
    def full_name(self) -> str:
        return object_key(self.schema, self.name, self.database)


@dataclass(frozen=True)
class UserDefinedTypeInfo:
    schema: str
    name: str
    base_type: str
    is_table_type: bool = False
    is_nullable: bool = True
    max_length: Optional[int] = None
    database: Optional[str] = None

    obj_type = ObjectType.TYPE

    @property
    def full_name(self) -> str:
        return object_key(self.schema, self.name, self.database)


@dataclass(frozen=True)
class JobStepInfo:
    step_id: int
    step_name: str
    subsystem: str
    database: Optional[str]
    command: str


@dataclass(frozen=True)
class JobInfo:
    name: str
    description: str = ""
    is_enabled: bool = True
    steps: Tuple[JobStepInfo, ...] = ()
    last_run: Optional[datetime] = None
    schedule: Optional[str] = None

    obj_type = ObjectType.JOB
    schema = "job"

    @property
    def full_name(self) -> str:
        return object_key(self.schema, self.name)


@dataclass
class DatabaseSchema:
    """Schema snapshot produced by metadata extraction; treated as read-only."""
    database_name: str = ""
    tables: List[TableInfo] = field(default_factory=list)
    views: List[ViewInfo] = field(default_factory=list)
    procedures: List[ProcedureInfo] = field(default_factory=list)
    functions: List[FunctionInfo] = field(default_factory=list)
    triggers: List[TriggerInfo] = field(default_factory=list)
    synonyms: List[SynonymInfo] = field(default_factory=list)
    sequences: List[SequenceInfo] = field(default_factory=list)
    user_defined_types: List[UserDefinedTypeInfo] = field(default_factory=list)
    jobs: List[JobInfo] = field(default_factory=list)

    def graph_objects(self) -> list:
        """Objects that can take part in dependency edges."""
        return [*self.tables, *self.views, *self.procedures, *self.functions,
                *self.triggers, *self.synonyms, *self.jobs]

    def usage_objects(self) -> list:
        """Objects that receive a usage classification."""
        return [*self.tables, *self.views, *self.procedures, *self.functions]

    def qualified(self, database: str) -> "DatabaseSchema":
        """Copy with every object tagged with ``database``."""
        def tag(items):
            return [replace(item, database=database) for item in items]

        tables = [
            replace(t, database=database, foreign_keys=tuple(
                replace(fk, from_database=database, to_database=fk.to_database or database)
                for fk in t.foreign_keys))
            for t in self.tables
        ]
        return DatabaseSchema(
            database_name=database,
            tables=tables,
            views=tag(self.views),
            procedures=tag(self.procedures),
            functions=tag(self.functions),
            triggers=tag(self.triggers),
            synonyms=tag(self.synonyms),
            sequences=tag(self.sequences),
            user_defined_types=tag(self.user_defined_types),
            jobs=list(self.jobs),
        )


# -- Relationships ----------------------------------------------------------

class DetectedVia(Enum):
    FOREIGN_KEY = "foreign_key"
    CATALOG = "catalog"
    PARSED = "parsed"
    SYNONYM = "synonym"


@dataclass(frozen=True)
class ObjectDependency:
    """Directed edge fact ``from -> to``."""
    from_schema: str
    from_name: str
    from_type: ObjectType
    to_schema: str
    to_name: str
    to_type: ObjectType
    detected_via: DetectedVia
    from_database: Optional[str] = None
    to_database: Optional[str] = None

    @property
    def from_key(self) -> str:
        return object_key(self.from_schema, self.from_name, self.from_database)

    @property
    def to_key(self) -> str:
        return object_key(self.to_schema, self.to_name, self.to_database)

    @property
    def is_cross_database(self) -> bool:
        return self.to_database is not None and self.to_database != self.from_database


@dataclass(frozen=True)
class ImplicitRelationship:
    """Suggested, undeclared FK-like relationship. Never merged into the edge set."""
    from_schema: str
    from_table: str
    from_column: str
    to_schema: str
    to_table: str
    to_column: str
    confidence: float
    reason: str
    suggestion: str
    from_database: Optional[str] = None
    to_database: Optional[str] = None


@dataclass
class TableDependency:
    """Graph engine output for one node."""
    name: str
    object_type: ObjectType
    depends_on: List[str] = field(default_factory=list)
    referenced_by: List[str] = field(default_factory=list)
    transitive_impact: List[str] = field(default_factory=list)
    external_database: Optional[str] = None

    json_properties = ("importance_score",)

    @property
    def importance_score(self) -> int:
        return importance_score(len(self.referenced_by), len(self.depends_on),
                                len(self.transitive_impact))


def importance_score(referenced_by: int, depends_on: int, transitive_impact: int) -> int:
    """Being a dependency target is the strongest centrality signal."""
    return 3 * referenced_by + depends_on + transitive_impact


@dataclass
class RelationshipMap:
    explicit_relationships: List[ForeignKeyInfo] = field(default_factory=list)
    object_dependencies: List[ObjectDependency] = field(default_factory=list)
    implicit_relationships: List[ImplicitRelationship] = field(default_factory=list)
    dependencies: List[TableDependency] = field(default_factory=list)
    cycles: List[List[str]] = field(default_factory=list)
    standalone: List[str] = field(default_factory=list)


# -- Profiling --------------------------------------------------------------

@dataclass
class ColumnProfile:
    column_name: str
    data_type: str
    total_count: int = 0
    null_count: int = 0
    distinct_count: int = 0
    min_value: Optional[str] = None
    max_value: Optional[str] = None

    json_properties = ("null_percentage",)

    @property
    def null_percentage(self) -> float:
        return 0.0 if self.total_count == 0 else self.null_count / self.total_count * 100


@dataclass
class TableProfile:
    schema: str
    name: str
    row_count: int = 0
    column_profiles: List[ColumnProfile] = field(default_factory=list)
    database: Optional[str] = None

    @property
    def full_name(self) -> str:
        return object_key(self.schema, self.name, self.database)


# -- Quality ----------------------------------------------------------------

class Severity(Enum):
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"


@dataclass(frozen=True)
class QualityIssue:
    category: str
    severity: Severity
    object_name: str
    description: str
    recommendation: Optional[str] = None


# -- Usage ------------------------------------------------------------------

class UsageLevel(Enum):
    ACTIVE = "Active"
    LOW = "Low"
    UNUSED = "Unused"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class SignalResult:
    """One observation from one signal evaluator."""
    object_name: str
    object_type: ObjectType
    weight: float
    evidence: str


@dataclass
class ObjectUsage:
    object_name: str
    object_type: ObjectType
    score: float = 0.0
    usage_level: UsageLevel = UsageLevel.UNKNOWN
    evidence: List[str] = field(default_factory=list)
    database: Optional[str] = None


@dataclass
class UsageAnalysis:
    server_start_time: Optional[datetime] = None
    server_uptime_days: Optional[int] = None
    objects: List[ObjectUsage] = field(default_factory=list)
    unavailable_signals: List[str] = field(default_factory=list)


# -- Indexing ---------------------------------------------------------------

@dataclass(frozen=True)
class IndexInventoryItem:
    """One index with its usage counters since the last server restart."""
    schema: str
    table: str
    index_name: str
    index_type: str
    is_unique: bool
    is_clustered: bool
    columns: Tuple[str, ...]
    user_seeks: int = 0
    user_scans: int = 0
    user_lookups: int = 0
    user_updates: int = 0
    size_kb: int = 0
    database: Optional[str] = None

    json_properties = ("total_reads",)

    @property
    def table_full_name(self) -> str:
        return object_key(self.schema, self.table, self.database)

    @property
    def total_reads(self) -> int:
        return self.user_seeks + self.user_scans + self.user_lookups


class IndexCategory(Enum):
    UNUSED = "Unused"
    MISSING = "Missing"
    DUPLICATE = "Duplicate"


@dataclass(frozen=True)
class IndexRecommendation:
    category: IndexCategory
    severity: Severity
    schema: str
    table: str
    description: str
    recommendation: Optional[str] = None
    index_name: Optional[str] = None
    impact_score: Optional[float] = None
    equality_columns: Optional[str] = None
    inequality_columns: Optional[str] = None
    include_columns: Optional[str] = None
    database: Optional[str] = None

    @property
    def table_full_name(self) -> str:
        return object_key(self.schema, self.table, self.database)


@dataclass
class IndexAnalysis:
    inventory: List[IndexInventoryItem] = field(default_factory=list)
    recommendations: List[IndexRecommendation] = field(default_factory=list)
    # False when usage counters were unreadable and the inventory comes from the catalog
    has_usage_stats: bool = True


# -- Results ----------------------------------------------------------------

@dataclass(frozen=True)
class DatabaseError:
    database: str
    error: str


# analyzer name -> AnalysisResult attribute
SLICE_ATTRIBUTES: Dict[str, str] = {
    'schema': 'schema',
    'profiling': 'profiles',
    'relationships': 'relationships',
    'quality': 'quality_issues',
    'usage': 'usage',
    'indexing': 'indexing',
}


@dataclass
class AnalysisResult:
    """Cache of every analyzer output for one session."""
    database_name: str = ""
    analyzed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    schema: Optional[DatabaseSchema] = None
    profiles: Optional[List[TableProfile]] = None
    relationships: Optional[RelationshipMap] = None
    quality_issues: Optional[List[QualityIssue]] = None
    usage: Optional[UsageAnalysis] = None
    indexing: Optional[IndexAnalysis] = None
    is_server_mode: bool = False
    databases: List[str] = field(default_factory=list)
    failed_databases: List[DatabaseError] = field(default_factory=list)

    def get_slice(self, analyzer: str) -> Any:
        return getattr(self, SLICE_ATTRIBUTES[analyzer])

    def set_slice(self, analyzer: str, value: Any):
        setattr(self, SLICE_ATTRIBUTES[analyzer], value)

    def has_slice(self, analyzer: str) -> bool:
        return self.get_slice(analyzer) is not None

    def copy(self) -> "AnalysisResult":
        """Working copy for a run; slices are shared, containers are not."""
        clone = copy.copy(self)
        clone.databases = list(self.databases)
        clone.failed_databases = list(self.failed_databases)
        return clone

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


def to_jsonable(value: Any) -> Any:
    """Plain JSON-compatible structure for dataclasses, enums and datetimes."""
    if is_dataclass(value) and not isinstance(value, type):
        data = {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
        for name in getattr(value, "json_properties", ()):
            data[name] = to_jsonable(getattr(value, name))
        return data
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value
