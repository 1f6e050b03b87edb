"""Dialect-neutral row types returned by the query capability interfaces."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


# Catalog

@dataclass(frozen=True)
class ColumnRow:
    schema: str
    table: str
    table_type: str
    name: str
    data_type: str
    max_length: Optional[int]
    precision: Optional[int]
    scale: Optional[int]
    is_nullable: bool
    is_primary_key: bool
    is_identity: bool
    is_computed: bool
    default_value: Optional[str]
    ordinal_position: int


@dataclass(frozen=True)
class IndexRow:
    schema: str
    table: str
    index_name: str
    index_type: str
    is_unique: bool
    is_clustered: bool
    columns: str


@dataclass(frozen=True)
class ForeignKeyRow:
    name: str
    from_schema: str
    from_table: str
    from_column: str
    to_schema: str
    to_table: str
    to_column: str
    delete_rule: str
    update_rule: str


@dataclass(frozen=True)
class ViewRow:
    schema: str
    name: str
    definition: str


@dataclass(frozen=True)
class ProcedureRow:
    schema: str
    name: str
    definition: str
    last_modified: Optional[datetime]


@dataclass(frozen=True)
class FunctionRow:
    schema: str
    name: str
    function_type: str
    definition: str
    last_modified: Optional[datetime]


@dataclass(frozen=True)
class TriggerRow:
    schema: str
    name: str
    parent_table: str
    trigger_type: str
    trigger_events: str
    is_enabled: bool
    definition: str


@dataclass(frozen=True)
class SynonymRow:
    schema: str
    name: str
    base_object_name: str


@dataclass(frozen=True)
class SequenceRow:
    schema: str
    name: str
    data_type: str
    current_value: int
    increment: int
    min_value: int
    max_value: int
    is_cycling: bool


@dataclass(frozen=True)
class UdtRow:
    schema: str
    name: str
    base_type: str
    is_table_type: bool
    is_nullable: bool
    max_length: Optional[int]


@dataclass(frozen=True)
class JobStepRow:
    step_id: int
    step_name: str
    subsystem: str
    database: Optional[str]
    command: str


@dataclass(frozen=True)
class JobRow:
    name: str
    description: str
    is_enabled: bool
    steps: List[JobStepRow] = field(default_factory=list)
    last_run: Optional[datetime] = None
    schedule: Optional[str] = None


@dataclass(frozen=True)
class ObjectDependencyRow:
    from_schema: str
    from_name: str
    from_type: str
    to_schema: str
    to_name: str
    to_type: str
    to_database: Optional[str] = None


# Performance

@dataclass(frozen=True)
class TableUsageRow:
    schema: str
    table: str
    total_reads: int
    total_writes: int
    last_read: Optional[datetime] = None


@dataclass(frozen=True)
class RoutineUsageRow:
    schema: str
    name: str
    execution_count: int
    last_execution: Optional[datetime] = None


@dataclass(frozen=True)
class QueryStoreObjectRow:
    schema: str
    name: str
    object_type: str
    total_executions: int
    last_execution: Optional[datetime] = None


@dataclass(frozen=True)
class QueryTextRow:
    query_text: str
    total_executions: int
    last_execution: Optional[datetime] = None


@dataclass(frozen=True)
class RowCountRow:
    schema: str
    table: str
    row_count: int


@dataclass(frozen=True)
class IndexUsageRow:
    schema: str
    table: str
    index_name: str
    index_type: str
    is_unique: bool
    is_clustered: bool
    columns: str
    user_seeks: int
    user_scans: int
    user_lookups: int
    user_updates: int
    size_kb: int = 0


@dataclass(frozen=True)
class MissingIndexRow:
    schema: str
    table: str
    impact_score: float
    equality_columns: Optional[str]
    inequality_columns: Optional[str]
    included_columns: Optional[str]
    user_seeks: Optional[int] = None
    user_scans: Optional[int] = None
