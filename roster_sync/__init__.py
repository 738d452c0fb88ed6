"""
Roster Sync
===========

Offline roster copies for multiple photographers, reconciled into one
authoritative table.

Modules:
- config: Alias tables, column conventions and job configuration
- errors: Exception types
- logger_module: Structured session logging
- tabular_codec: Delimited text (and Excel) parsing and serialization
- schema: Column role resolution and table classification
- record_store: In-memory records with dedup, placeholders and audit trail
- placeholder_distributor: Placeholder blocks across per-worker copies
- merge_engine: Pairwise merge with conflict audit and review
- merge_session: Folding all worker copies back into the master
- conflict_report: Conflict report reading/writing
- automation_payload: Payload strings for the capture application
- file_utils: Job folders, worker copy naming, atomic and debounced writes
- cli: Command line interface
"""

from .config import (
    Config, config, JobConfig, CollaborationMode, parse_team_ids,
)
from .errors import (
    RosterSyncError, SchemaError, ValidationError, DuplicateIdentifierError,
    RecordNotFoundError, MergeCancelled,
)
from .logger_module import RosterSyncLogger, LogAction
from .tabular_codec import (
    Table, parse, serialize, read_table, write_table, convert_excel_to_csv,
)
from .schema import (
    Role, TableMode, AliasTable, ResolvedSchema, SchemaResolver,
    parse_boolean, is_valid_header, is_valid_table_file, additional_fields,
)
from .record_store import Record, RecordStore, generate_identifier
from .placeholder_distributor import (
    PlaceholderDistributor, DistributionResult, CopyAssignment,
    plan_distribution, distribute, create_worker_copies,
)
from .merge_engine import (
    MergeEngine, MergeResult, MergeConflict, ConflictType,
    ResolutionChoice, ConflictResolution, default_resolutions, apply_resolutions, merge,
)
from .merge_session import MergeSession, MergeSessionResult
from .conflict_report import (
    write_conflict_report, read_conflict_report, conflicts_to_dataframe,
    format_conflict_table,
)
from .automation_payload import (
    format_payload, record_payload, buddy_payload, roster_label,
)
from .file_utils import (
    atomic_write_text, worker_copy_path, is_worker_copy, original_for_copy,
    find_worker_copies, scan_job_folder, is_system_generated, DebouncedWriter,
)

__version__ = "0.9.0"
__all__ = [
    'Config', 'config', 'JobConfig', 'CollaborationMode', 'parse_team_ids',
    'RosterSyncError', 'SchemaError', 'ValidationError', 'DuplicateIdentifierError',
    'RecordNotFoundError', 'MergeCancelled',
    'RosterSyncLogger', 'LogAction',
    'Table', 'parse', 'serialize', 'read_table', 'write_table', 'convert_excel_to_csv',
    'Role', 'TableMode', 'AliasTable', 'ResolvedSchema', 'SchemaResolver',
    'parse_boolean', 'is_valid_header', 'is_valid_table_file', 'additional_fields',
    'Record', 'RecordStore', 'generate_identifier',
    'PlaceholderDistributor', 'DistributionResult', 'CopyAssignment',
    'plan_distribution', 'distribute', 'create_worker_copies',
    'MergeEngine', 'MergeResult', 'MergeConflict', 'ConflictType',
    'ResolutionChoice', 'ConflictResolution', 'default_resolutions', 'apply_resolutions',
    'merge',
    'MergeSession', 'MergeSessionResult',
    'write_conflict_report', 'read_conflict_report', 'conflicts_to_dataframe',
    'format_conflict_table',
    'format_payload', 'record_payload', 'buddy_payload', 'roster_label',
    'atomic_write_text', 'worker_copy_path', 'is_worker_copy', 'original_for_copy',
    'find_worker_copies', 'scan_job_folder', 'is_system_generated', 'DebouncedWriter',
]
