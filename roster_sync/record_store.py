"""
In-memory record store for one roster table.

Owns identity resolution, load-time dedup, placeholder creation and the
original-value audit trail. Every mutating call returns a fresh copy of the
affected record; callers never hold references into the store.
"""
import logging
import random
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from .config import (
    PHOTOGRAPHED_BY, PHOTOGRAPHED_AT, LAST_EDITED_BY, LAST_EDITED_AT,
    AUDIT_SUFFIX, SYNTHETIC_PREFIX, PLACEHOLDER_FIRST_NAME, PLACEHOLDER_LAST_NAME,
    DEFAULT_GROUP, CANONICAL_YES, TIMESTAMP_FORMAT, DEFAULT_IDENTIFIER_HEADER,
    DEFAULT_FIRST_NAME_HEADER, DEFAULT_LAST_NAME_HEADER, DEFAULT_GROUP_HEADER,
)
from .errors import (
    DuplicateIdentifierError, RecordNotFoundError, SchemaError, ValidationError,
)
from .schema import (
    Role, TableMode, ResolvedSchema, SchemaResolver, TRACKED_ROLES,
    audit_column_for, is_audit_column, is_real_identifier, parse_boolean,
)
from .tabular_codec import Table, read_table, write_table

logger = logging.getLogger(__name__)

_TRAILING_NUMBER_RE = re.compile(r"(\d+)$")

# Header written for each metadata role when a table does not have one
METADATA_DEFAULTS = {
    Role.PHOTOGRAPHER: PHOTOGRAPHED_BY,
    Role.PHOTOGRAPHED_AT: PHOTOGRAPHED_AT,
    Role.EDITED_BY: LAST_EDITED_BY,
    Role.EDITED_AT: LAST_EDITED_AT,
}


@dataclass
class Record:
    """
    One roster row.

    `fields` maps header name to value. Values of repeated header names
    beyond the first occurrence live in `shadow`, keyed by column position.
    `audit` maps a header to the value it held before its first edit.
    """
    key: str
    fields: Dict[str, str] = field(default_factory=dict)
    photographed: bool = False
    audit: Dict[str, str] = field(default_factory=dict)
    shadow: Dict[int, str] = field(default_factory=dict)
    uid: str = field(default_factory=lambda: uuid.uuid4().hex)

    def get(self, header: Optional[str], default: str = "") -> str:
        if header is None:
            return default
        return self.fields.get(header, default)

    def copy(self) -> 'Record':
        return Record(
            key=self.key,
            fields=dict(self.fields),
            photographed=self.photographed,
            audit=dict(self.audit),
            shadow=dict(self.shadow),
            uid=self.uid,
        )


def normalize_group(group: str) -> str:
    group = (group or "").strip().lower()
    return "" if group == DEFAULT_GROUP.lower() else group


def composite_key(first: str, last: str, group: str) -> str:
    """Identity for records without a real identifier."""
    parts = [(first or "").strip().lower(), (last or "").strip().lower(), normalize_group(group)]
    return SYNTHETIC_PREFIX + "|".join(parts)


def placeholder_number(last_name: str) -> Optional[int]:
    """Trailing integer of a placeholder last name ('Subject12' -> 12)."""
    match = _TRAILING_NUMBER_RE.search(last_name or "")
    return int(match.group(1)) if match else None


def generate_identifier(existing: Sequence[str], rng: Optional[random.Random] = None) -> str:
    """Random 15-digit numeric identifier not present in `existing`."""
    rng = rng or random.Random()
    taken = set(existing)
    while True:
        candidate = str(rng.randint(10 ** 14, 10 ** 15 - 1))
        if candidate not in taken:
            return candidate


class RecordStore:
    """
    Records of one table, keyed by resolved identity.

    Usage:
        store = RecordStore.from_file(path)
        store.mark_done(key, worker_id="Ann")
        store.save(path)
    """

    def __init__(self, resolver: Optional[SchemaResolver] = None, source: Optional[str] = None):
        self.resolver = resolver or SchemaResolver()
        self.source = source or "<memory>"
        self._headers: List[str] = []
        self._records: List[Record] = []
        self._by_key: Dict[str, Record] = {}
        self.schema = ResolvedSchema(headers=[])
        self.mode: Optional[TableMode] = None
        self.skipped_rows: List[Tuple[int, str]] = []
        self.duplicates_merged = 0
        self.rng = random.Random()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_table(cls, table: Table, source: Optional[str] = None) -> 'RecordStore':
        store = cls(source=source)
        store.load(table.headers, table.rows)
        return store

    @classmethod
    def from_file(cls, path: Path) -> 'RecordStore':
        """Parse a roster file into a store. Raises OSError or SchemaError."""
        path = Path(path)
        store = cls.from_table(read_table(path), source=path.name)
        logger.info(f"Loaded {path.name}: {len(store)} records ({store.mode.value} mode)")
        return store

    @classmethod
    def from_records(cls, headers: Sequence[str], records: Sequence[Record],
                     source: Optional[str] = None) -> 'RecordStore':
        """Build a store from already-resolved records (used by merge and distribution)."""
        store = cls(source=source)
        store._headers = list(headers)
        store._refresh_schema()
        store._records = [r.copy() for r in records]
        store._reindex()
        store._refresh_mode()
        return store

    def load(self, headers: Sequence[str], rows: Sequence[Sequence[str]]) -> 'RecordStore':
        """
        Build records from parsed headers and positional rows.

        Audit columns are folded into each record's audit map, missing
        metadata columns are added, and rows sharing an identity are merged.

        Raises:
            SchemaError: if the table has neither identifiers nor name + group
        """
        file_headers = list(headers)
        audit_positions = {i for i, h in enumerate(file_headers) if is_audit_column(h)}
        spacer_positions = set()
        if audit_positions:
            first_audit = min(audit_positions)
            if first_audit > 0 and not file_headers[first_audit - 1].strip():
                spacer_positions.add(first_audit - 1)

        # file position -> store position for data columns
        data_positions: Dict[int, int] = {}
        self._headers = []
        for i, h in enumerate(file_headers):
            if i in audit_positions or i in spacer_positions:
                continue
            data_positions[i] = len(self._headers)
            self._headers.append(h)
        self._refresh_schema()
        missing = [default for role, default in METADATA_DEFAULTS.items()
                   if not self.schema.has(role) and default not in self._headers]
        if missing:
            self._headers.extend(missing)
            self._refresh_schema()
        self.mode = self.resolver.classify(self.schema, self._project_rows(rows, data_positions))

        self._records = []
        self._by_key = {}
        self.skipped_rows = []
        self.duplicates_merged = 0
        dropped_audit = set()
        role_positions = [
            file_headers.index(self.schema.header(role))
            for role in (Role.FIRST_NAME, Role.LAST_NAME, Role.FULL_NAME, Role.IDENTIFIER)
            if self.schema.header(role) in file_headers
        ]
        width = max(role_positions) + 1 if role_positions else 0

        for row_number, row in enumerate(rows, start=2):
            if len(row) < width:
                self._skip_row(row_number, f"row has {len(row)} fields, needs {width}")
                continue

            record = Record(key="")
            for i, value in enumerate(row):
                if i in audit_positions:
                    if not value:
                        continue
                    base = file_headers[i][:-len(AUDIT_SUFFIX)]
                    if base in self._headers:
                        record.audit.setdefault(base, value)
                    else:
                        dropped_audit.add(file_headers[i])
                    continue
                if i not in data_positions:
                    continue
                header = file_headers[i]
                if header in record.fields:
                    record.shadow[data_positions[i]] = value
                else:
                    record.fields[header] = value
            for h in self._headers:
                record.fields.setdefault(h, "")

            record.photographed = (
                parse_boolean(record.get(self.schema.header(Role.PHOTOGRAPHED)))
                or bool(record.get(self.meta_header(Role.PHOTOGRAPHER)).strip())
                or bool(record.get(self.meta_header(Role.PHOTOGRAPHED_AT)).strip())
            )

            if not is_real_identifier(self.identifier(record)) \
                    and not self.first_name(record) and not self.last_name(record):
                self._skip_row(row_number, "no identifier and no name")
                continue

            record.key = self._identity(record)
            existing = self._by_key.get(record.key)
            if existing is not None:
                self._merge_duplicate(existing, record)
                self.duplicates_merged += 1
                logger.info(f"{self.source}: merged duplicate row {row_number} into {existing.key}")
                continue

            self._records.append(record)
            self._by_key[record.key] = record

        for header in sorted(dropped_audit):
            logger.warning(f"{self.source}: audit column {header} has no matching data column")

        return self

    def _project_rows(self, rows, data_positions: Dict[int, int]):
        for row in rows:
            projected = [""] * len(self._headers)
            for i, value in enumerate(row):
                pos = data_positions.get(i)
                if pos is not None:
                    projected[pos] = value
            yield projected

    def _skip_row(self, row_number: int, reason: str):
        self.skipped_rows.append((row_number, reason))
        logger.warning(f"{self.source}: skipping malformed row {row_number} ({reason})")

    def _merge_duplicate(self, existing: Record, incoming: Record):
        """Fold a duplicate row into the record already loaded."""
        if incoming.photographed and not existing.photographed:
            existing.photographed = True
            flag_header = self.schema.header(Role.PHOTOGRAPHED)
            if flag_header is not None:
                flag = incoming.get(flag_header)
                existing.fields[flag_header] = flag if parse_boolean(flag) else CANONICAL_YES
            for role in (Role.PHOTOGRAPHER, Role.PHOTOGRAPHED_AT):
                header = self.meta_header(role)
                existing.fields[header] = incoming.get(header)
        for header, value in incoming.fields.items():
            if value and not existing.fields.get(header):
                existing.fields[header] = value
        for header, value in incoming.audit.items():
            existing.audit.setdefault(header, value)

    # ------------------------------------------------------------------
    # Schema helpers
    # ------------------------------------------------------------------

    def _refresh_schema(self):
        self.schema = self.resolver.resolve(self._headers)

    def _refresh_mode(self):
        try:
            self.mode = self.resolver.classify(
                self.schema,
                ([r.get(h) for h in self._headers] for r in self._records),
            )
        except SchemaError:
            # Stores built in memory may not yet be classifiable
            self.mode = None

    def meta_header(self, role: Role) -> str:
        """Header holding a metadata role, or the default name when it is absent."""
        return self.schema.header(role) or METADATA_DEFAULTS[role]

    def _reindex(self):
        self._by_key = {r.key: r for r in self._records}

    def _ensure_column(self, role: Role, default_header: str) -> str:
        header = self.schema.header(role)
        if header is None:
            header = default_header
            if header not in self._headers:
                self._headers.append(header)
                for r in self._records:
                    r.fields.setdefault(header, "")
            self._refresh_schema()
        return header

    def _identity(self, record: Record) -> str:
        identifier = self.identifier(record)
        if is_real_identifier(identifier):
            return identifier
        return composite_key(self.first_name(record), self.last_name(record), self.group(record))

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def headers(self) -> List[str]:
        return list(self._headers)

    @property
    def records(self) -> List[Record]:
        """Snapshot of all records in store order."""
        return [r.copy() for r in self._records]

    @property
    def keys(self) -> List[str]:
        return [r.key for r in self._records]

    def __len__(self):
        return len(self._records)

    def __contains__(self, key: str) -> bool:
        return key in self._by_key

    def get(self, key: str) -> Record:
        record = self._by_key.get(key)
        if record is None:
            raise RecordNotFoundError(key)
        return record.copy()

    def find(self, uid: str) -> Optional[Record]:
        for record in self._records:
            if record.uid == uid:
                return record.copy()
        return None

    def _split_full_name(self, record: Record) -> Tuple[str, str]:
        full = record.get(self.schema.header(Role.FULL_NAME)).strip()
        if " " in full:
            first, last = full.split(" ", 1)
            return first, last.strip()
        return full, ""

    def first_name(self, record: Record) -> str:
        if self.schema.has(Role.FIRST_NAME):
            return record.get(self.schema.header(Role.FIRST_NAME)).strip()
        return self._split_full_name(record)[0]

    def last_name(self, record: Record) -> str:
        if self.schema.has(Role.LAST_NAME):
            return record.get(self.schema.header(Role.LAST_NAME)).strip()
        return self._split_full_name(record)[1]

    def full_name(self, record: Record) -> str:
        if not self.schema.has_split_names and self.schema.has(Role.FULL_NAME):
            return record.get(self.schema.header(Role.FULL_NAME)).strip()
        return f"{self.first_name(record)} {self.last_name(record)}".strip()

    def group(self, record: Record) -> str:
        return record.get(self.schema.header(Role.GROUP)).strip()

    def display_group(self, record: Record) -> str:
        return self.group(record) or DEFAULT_GROUP

    def identifier(self, record: Record) -> str:
        return record.get(self.schema.header(Role.IDENTIFIER)).strip()

    def is_placeholder(self, record: Record) -> bool:
        return (self.first_name(record) == PLACEHOLDER_FIRST_NAME
                and self.last_name(record).startswith(PLACEHOLDER_LAST_NAME))

    def placeholder_number(self, record: Record) -> Optional[int]:
        return placeholder_number(self.last_name(record))

    def placeholders(self) -> List[Record]:
        return [r.copy() for r in self._records if self.is_placeholder(r)]

    def identifiers(self) -> List[str]:
        return [i for i in (self.identifier(r) for r in self._records) if i]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def validate_identifier(self, identifier: str, exclude_uid: Optional[str] = None):
        """Raise DuplicateIdentifierError if another record already uses `identifier`."""
        if not identifier:
            return
        for record in self._records:
            if record.uid != exclude_uid and self.identifier(record) == identifier:
                raise DuplicateIdentifierError(identifier)

    def _stamp_edit(self, record: Record, worker_id: str, now: Optional[datetime]):
        now = now or datetime.now()
        record.fields[self.meta_header(Role.EDITED_BY)] = worker_id
        record.fields[self.meta_header(Role.EDITED_AT)] = now.strftime(TIMESTAMP_FORMAT)

    def update(self, record: Record, worker_id: str, now: Optional[datetime] = None) -> Record:
        """
        Apply an edited copy of a record.

        Prior values of tracked columns (names, group, identifier) are kept
        in the audit map the first time they change. The edit is stamped
        with the worker ID and local time.

        Raises:
            RecordNotFoundError: if the record's uid is not in the store
            ValidationError: on missing names or identifier
            DuplicateIdentifierError: if the identifier belongs to another record
        """
        stored = next((r for r in self._records if r.uid == record.uid), None)
        if stored is None:
            raise RecordNotFoundError(record.key)

        for header in record.fields:
            if header not in self._headers and not is_audit_column(header):
                self._headers.append(header)
                for r in self._records:
                    r.fields.setdefault(header, "")
        self._refresh_schema()

        new_first = record.get(self.schema.header(Role.FIRST_NAME)).strip()
        new_last = record.get(self.schema.header(Role.LAST_NAME)).strip()
        is_placeholder = self.is_placeholder(record)
        if self.schema.has_split_names and not is_placeholder and not (new_first and new_last):
            raise ValidationError("First and last name are required")

        id_header = self.schema.header(Role.IDENTIFIER)
        new_identifier = record.get(id_header).strip()
        if id_header is not None and self.mode == TableMode.IDENTIFIER and not new_identifier:
            raise ValidationError("Identifier is required")
        self.validate_identifier(new_identifier, exclude_uid=stored.uid)

        updated = stored.copy()
        for role in TRACKED_ROLES:
            header = self.schema.header(role)
            if header is None:
                continue
            old = stored.get(header)
            if old != record.get(header) and old and header not in updated.audit:
                updated.audit[header] = old

        for header, value in record.audit.items():
            if header in self._headers:
                updated.audit.setdefault(header, value)

        updated.fields.update(record.fields)
        updated.shadow = dict(record.shadow)
        updated.photographed = record.photographed
        updated.key = self._identity(updated)
        clash = self._by_key.get(updated.key)
        if clash is not None and clash is not stored:
            raise ValidationError("Another record has the same name and group")

        self._stamp_edit(updated, worker_id, now)
        position = next(i for i, r in enumerate(self._records) if r is stored)
        self._records[position] = updated
        self._by_key.pop(stored.key, None)
        self._by_key[updated.key] = updated
        self._refresh_mode()
        return updated.copy()

    def clear_audit(self, key: str, header: Optional[str] = None) -> Record:
        """Drop one audit entry (or all of them) so the next edit is captured again."""
        record = self._by_key.get(key)
        if record is None:
            raise RecordNotFoundError(key)
        if header is None:
            record.audit.clear()
        else:
            record.audit.pop(header, None)
        return record.copy()

    def mark_done(self, key: str, worker_id: str, now: Optional[datetime] = None) -> Record:
        """
        Mark a record photographed.

        The first photographer credited stays credited: photographer and
        time are only written if not already set.
        """
        record = self._by_key.get(key)
        if record is None:
            raise RecordNotFoundError(key)
        record.photographed = True
        flag_header = self.schema.header(Role.PHOTOGRAPHED)
        if flag_header is not None:
            record.fields[flag_header] = CANONICAL_YES
        photographer_header = self.meta_header(Role.PHOTOGRAPHER)
        if not record.get(photographer_header).strip():
            now = now or datetime.now()
            record.fields[photographer_header] = worker_id
            record.fields[self.meta_header(Role.PHOTOGRAPHED_AT)] = now.strftime(TIMESTAMP_FORMAT)
        return record.copy()

    def mark_undone(self, key: str) -> Record:
        """Clear the photographed flag and its photographer credit."""
        record = self._by_key.get(key)
        if record is None:
            raise RecordNotFoundError(key)
        record.photographed = False
        flag_header = self.schema.header(Role.PHOTOGRAPHED)
        if flag_header is not None:
            record.fields[flag_header] = ""
        record.fields[self.meta_header(Role.PHOTOGRAPHER)] = ""
        record.fields[self.meta_header(Role.PHOTOGRAPHED_AT)] = ""
        return record.copy()

    def create_placeholder(self, identifier: Optional[str] = None) -> Record:
        """
        Insert an 'Add' / 'Subject<N>' placeholder at the head of the store.

        N continues after the highest existing placeholder number. Without
        an explicit identifier a unique 15-digit one is generated.

        Raises:
            DuplicateIdentifierError: if `identifier` is already used
        """
        id_header = self._ensure_column(Role.IDENTIFIER, DEFAULT_IDENTIFIER_HEADER)
        if self.schema.has(Role.FULL_NAME) and not self.schema.has_split_names:
            name_headers = None
        else:
            name_headers = (
                self._ensure_column(Role.FIRST_NAME, DEFAULT_FIRST_NAME_HEADER),
                self._ensure_column(Role.LAST_NAME, DEFAULT_LAST_NAME_HEADER),
            )
        group_header = self._ensure_column(Role.GROUP, DEFAULT_GROUP_HEADER)

        if identifier is None:
            identifier = generate_identifier(self.identifiers(), self.rng)
        identifier = identifier.strip()
        if not identifier:
            raise ValidationError("Identifier is required")
        self.validate_identifier(identifier)

        numbers = [n for n in (self.placeholder_number(r) for r in self._records
                               if self.is_placeholder(r)) if n is not None]
        last_name = f"{PLACEHOLDER_LAST_NAME}{max(numbers, default=0) + 1}"

        record = Record(key=identifier)
        for h in self._headers:
            record.fields[h] = ""
        record.fields[id_header] = identifier
        if name_headers is None:
            record.fields[self.schema.header(Role.FULL_NAME)] = f"{PLACEHOLDER_FIRST_NAME} {last_name}"
        else:
            record.fields[name_headers[0]] = PLACEHOLDER_FIRST_NAME
            record.fields[name_headers[1]] = last_name
        record.fields[group_header] = DEFAULT_GROUP

        self._records.insert(0, record)
        self._by_key[record.key] = record
        self._refresh_mode()
        logger.info(f"{self.source}: created placeholder {last_name} ({identifier})")
        return record.copy()

    def add_record(self, fields: Dict[str, str], worker_id: Optional[str] = None,
                   now: Optional[datetime] = None) -> Record:
        """
        Append a single new record.

        Raises:
            ValidationError: on missing names
            DuplicateIdentifierError: if the identifier is already used
        """
        for header in fields:
            if header not in self._headers and not is_audit_column(header):
                self._headers.append(header)
                for r in self._records:
                    r.fields.setdefault(header, "")
        self._refresh_schema()

        record = Record(key="")
        for h in self._headers:
            record.fields[h] = str(fields.get(h, ""))
        if not self.is_placeholder(record) and not (self.first_name(record) and self.last_name(record)):
            raise ValidationError("First and last name are required")
        self.validate_identifier(self.identifier(record))

        record.photographed = parse_boolean(record.get(self.schema.header(Role.PHOTOGRAPHED)))
        record.key = self._identity(record)
        if record.key in self._by_key:
            raise ValidationError("Another record has the same name and group")
        if worker_id:
            self._stamp_edit(record, worker_id, now)

        self._records.append(record)
        self._by_key[record.key] = record
        self._refresh_mode()
        return record.copy()

    def set_field(self, key: str, header: str, value: str) -> Record:
        """Overwrite one field without audit capture or edit stamp (merge review)."""
        record = self._by_key.get(key)
        if record is None:
            raise RecordNotFoundError(key)
        if header not in self._headers:
            self._headers.append(header)
            for r in self._records:
                r.fields.setdefault(header, "")
            self._refresh_schema()
        record.fields[header] = value
        return record.copy()

    def remove(self, key: str) -> Record:
        record = self._by_key.pop(key, None)
        if record is None:
            raise RecordNotFoundError(key)
        self._records.remove(record)
        return record

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def audited_headers(self) -> List[str]:
        """Headers with at least one audit entry, in header order."""
        audited = set()
        for record in self._records:
            audited.update(record.audit)
        return [h for h in self._headers if h in audited]

    def to_rows(self) -> Tuple[List[str], List[List[str]]]:
        """
        Headers and rows for serialization.

        Audited headers get a `<header>_O` column after an empty spacer
        column at the end of the table.
        """
        audited = self.audited_headers()
        headers = list(self._headers)
        if audited:
            headers.append("")
            headers.extend(audit_column_for(h) for h in audited)

        rows = []
        for record in self._records:
            row = [record.shadow.get(pos, record.fields.get(h, ""))
                   for pos, h in enumerate(self._headers)]
            if audited:
                row.append("")
                row.extend(record.audit.get(h, "") for h in audited)
            rows.append(row)
        return headers, rows

    def save(self, path: Path):
        """Atomically write the store to `path`."""
        headers, rows = self.to_rows()
        write_table(path, headers, rows)
        logger.info(f"Saved {len(rows)} records to {Path(path).name}")

    def to_dataframe(self) -> pd.DataFrame:
        """One row per record with resolved role values, for summaries."""
        data = []
        for record in self._records:
            data.append({
                'key': record.key,
                'identifier': self.identifier(record),
                'first_name': self.first_name(record),
                'last_name': self.last_name(record),
                'group': self.display_group(record),
                'photographed': record.photographed,
                'photographed_by': record.get(self.meta_header(Role.PHOTOGRAPHER)),
                'photographed_at': record.get(self.meta_header(Role.PHOTOGRAPHED_AT)),
                'last_edited_by': record.get(self.meta_header(Role.EDITED_BY)),
                'last_edited_at': record.get(self.meta_header(Role.EDITED_AT)),
                'placeholder': self.is_placeholder(record),
            })
        columns = ['key', 'identifier', 'first_name', 'last_name', 'group', 'photographed',
                   'photographed_by', 'photographed_at', 'last_edited_by',
                   'last_edited_at', 'placeholder']
        return pd.DataFrame(data, columns=columns)

    def summary(self) -> Dict[str, object]:
        """Counts of records, photographed records and placeholders, per group."""
        df = self.to_dataframe()
        if df.empty:
            return {'total': 0, 'photographed': 0, 'placeholders': 0, 'by_group': {}}
        by_group = (
            df.groupby('group')['photographed']
            .agg(['count', 'sum'])
            .rename(columns={'count': 'total', 'sum': 'photographed'})
        )
        return {
            'total': int(len(df)),
            'photographed': int(df['photographed'].sum()),
            'placeholders': int(df['placeholder'].sum()),
            'by_group': {
                group: {'total': int(row['total']), 'photographed': int(row['photographed'])}
                for group, row in by_group.iterrows()
            },
        }
