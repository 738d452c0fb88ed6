"""
Schema resolution for roster tables.

Maps semantic roles (names, group, identifier, photographed flag and the
photographer metadata columns) onto the concrete headers of a table using
ordered alias tables, and classifies a table as identifier-based or roster.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .config import (
    FIRST_NAME_ALIASES, LAST_NAME_ALIASES, FULL_NAME_ALIASES,
    GROUP_ALIASES, GROUP_CONTAINS, IDENTIFIER_ALIASES, IDENTIFIER_CONTAINS,
    PHOTOGRAPHED_ALIASES, HAS_PHOTO_ALIASES,
    PHOTOGRAPHED_BY, PHOTOGRAPHED_AT, LAST_EDITED_BY, LAST_EDITED_AT,
    METADATA_COLUMNS, AUDIT_SUFFIX, SYNTHETIC_PREFIX, TRUTHY_VALUES,
)
from .errors import SchemaError

logger = logging.getLogger(__name__)

# First headers that identify a roster file on their own
WELL_KNOWN_FIRST_HEADERS = frozenset({
    "child id", "barcode", "id",
    "first name", "firstname", "first", "name", "player", "student",
})


class Role(Enum):
    """Semantic column roles."""
    FIRST_NAME = "first_name"
    LAST_NAME = "last_name"
    FULL_NAME = "full_name"
    GROUP = "group"
    IDENTIFIER = "identifier"
    PHOTOGRAPHED = "photographed"
    HAS_PHOTO = "has_photo"
    PHOTOGRAPHER = "photographer"
    PHOTOGRAPHED_AT = "photographed_at"
    EDITED_BY = "edited_by"
    EDITED_AT = "edited_at"


class TableMode(Enum):
    """How records in a table are identified."""
    IDENTIFIER = "identifier"
    ROSTER = "roster"


@dataclass(frozen=True)
class AliasTable:
    """
    Ordered aliases for one role.

    `exact` aliases are compared case-insensitively in priority order;
    `contains` substrings are only a fallback when no exact alias matches.
    """
    exact: Sequence[str]
    contains: Sequence[str] = ()

    def match_exact(self, headers: Sequence[str]) -> Optional[str]:
        lowered = [(h, h.strip().lower()) for h in headers]
        for alias in self.exact:
            target = alias.lower()
            for header, low in lowered:
                if low == target:
                    return header
        return None

    def match_contains(self, headers: Sequence[str]) -> Optional[str]:
        lowered = [(h, h.strip().lower()) for h in headers]
        for token in self.contains:
            for header, low in lowered:
                if token in low:
                    return header
        return None

    def resolve(self, headers: Sequence[str]) -> Optional[str]:
        return self.match_exact(headers) or self.match_contains(headers)


ALIAS_TABLES: Dict[Role, AliasTable] = {
    Role.IDENTIFIER: AliasTable(IDENTIFIER_ALIASES, IDENTIFIER_CONTAINS),
    Role.FIRST_NAME: AliasTable(FIRST_NAME_ALIASES),
    Role.LAST_NAME: AliasTable(LAST_NAME_ALIASES),
    Role.GROUP: AliasTable(GROUP_ALIASES, GROUP_CONTAINS),
    Role.FULL_NAME: AliasTable(FULL_NAME_ALIASES),
    Role.PHOTOGRAPHED: AliasTable(PHOTOGRAPHED_ALIASES),
    Role.HAS_PHOTO: AliasTable(HAS_PHOTO_ALIASES),
    Role.PHOTOGRAPHER: AliasTable([PHOTOGRAPHED_BY]),
    Role.PHOTOGRAPHED_AT: AliasTable([PHOTOGRAPHED_AT]),
    Role.EDITED_BY: AliasTable([LAST_EDITED_BY]),
    Role.EDITED_AT: AliasTable([LAST_EDITED_AT]),
}

# Roles that only ever match their metadata column name exactly
METADATA_ROLES = (Role.PHOTOGRAPHER, Role.PHOTOGRAPHED_AT, Role.EDITED_BY, Role.EDITED_AT)

# Roles whose values are tracked in the audit map when edited
TRACKED_ROLES = (Role.FIRST_NAME, Role.LAST_NAME, Role.GROUP, Role.IDENTIFIER)

_METADATA_LOWER = frozenset(m.lower() for m in METADATA_COLUMNS)


def is_audit_column(header: str) -> bool:
    """Columns ending in the audit suffix hold original values, not data."""
    return header.endswith(AUDIT_SUFFIX)


def audit_column_for(header: str) -> str:
    return f"{header}{AUDIT_SUFFIX}"


def is_metadata_column(header: str) -> bool:
    return header.strip().lower() in _METADATA_LOWER


def is_synthetic(identifier: str) -> bool:
    """True for identifiers generated by the system rather than the source data."""
    return identifier.startswith(SYNTHETIC_PREFIX)


def is_real_identifier(identifier: Optional[str]) -> bool:
    return bool(identifier) and not is_synthetic(identifier)


def parse_boolean(value) -> bool:
    """Interpret a flag cell ('yes', 'x', '✓', '1', 'done', ...)."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if not text:
        return False
    if text in TRUTHY_VALUES:
        return True
    try:
        return int(text) != 0
    except ValueError:
        return False


@dataclass
class ResolvedSchema:
    """Role -> header mapping for one header list."""
    headers: List[str]
    roles: Dict[Role, str] = field(default_factory=dict)

    def header(self, role: Role) -> Optional[str]:
        return self.roles.get(role)

    def has(self, role: Role) -> bool:
        return role in self.roles

    def index(self, role: Role) -> Optional[int]:
        """Position of the role's column (first occurrence of the name)."""
        header = self.roles.get(role)
        if header is None:
            return None
        return self.headers.index(header)

    @property
    def has_split_names(self) -> bool:
        return self.has(Role.FIRST_NAME) and self.has(Role.LAST_NAME)

    @property
    def has_name(self) -> bool:
        return self.has_split_names or self.has(Role.FULL_NAME)

    def role_headers(self) -> List[str]:
        return list(self.roles.values())


class SchemaResolver:
    """
    Resolves semantic roles against a header list.

    All exact alias matches are claimed before any "contains" fallback runs,
    so a substring match never takes a column another role matched exactly.
    """

    def __init__(self, alias_tables: Optional[Dict[Role, AliasTable]] = None):
        self.alias_tables = alias_tables or ALIAS_TABLES

    def resolve(self, headers: Sequence[str]) -> ResolvedSchema:
        headers = list(headers)
        candidates = [h for h in headers if h.strip() and not is_audit_column(h)]
        data_candidates = [h for h in candidates if not is_metadata_column(h)]

        roles: Dict[Role, str] = {}
        claimed = set()

        for role, table in self.alias_tables.items():
            pool = candidates if role in METADATA_ROLES else data_candidates
            header = table.match_exact([h for h in pool if h not in claimed])
            if header is not None:
                roles[role] = header
                claimed.add(header)

        for role, table in self.alias_tables.items():
            if role in roles or not table.contains:
                continue
            header = table.match_contains([h for h in data_candidates if h not in claimed])
            if header is not None:
                roles[role] = header
                claimed.add(header)

        # A full-name column only matters when split names are missing
        if Role.FIRST_NAME in roles and Role.LAST_NAME in roles:
            roles.pop(Role.FULL_NAME, None)

        return ResolvedSchema(headers=headers, roles=roles)

    def classify(self, schema: ResolvedSchema, rows: Iterable[Sequence[str]]) -> TableMode:
        """
        Decide whether a table is identifier-based or a name+group roster.

        Raises:
            SchemaError: if neither an identifier nor name+group resolve
        """
        id_index = schema.index(Role.IDENTIFIER)
        if id_index is not None:
            for row in rows:
                if id_index < len(row) and is_real_identifier(row[id_index].strip()):
                    return TableMode.IDENTIFIER

        if schema.has_name and schema.has(Role.GROUP):
            return TableMode.ROSTER

        raise SchemaError(
            "Unrecognized format: no identifier values and no name + group columns"
        )


def is_valid_header(headers: Sequence[str]) -> bool:
    """
    Cheap check used to filter candidate files before full classification.

    Accepts a well-known identifier/name first header, or any header row
    with at least two non-empty cells.
    """
    if not headers:
        return False
    first = headers[0].strip().strip('"').lower()
    if first in WELL_KNOWN_FIRST_HEADERS:
        return True
    return sum(1 for h in headers if h.strip()) >= 2


def is_valid_table_file(path: Path) -> bool:
    """Apply is_valid_header() to a file on disk; unreadable files are invalid."""
    from .tabular_codec import read_table
    try:
        table = read_table(path)
    except (OSError, UnicodeDecodeError, ValueError) as e:
        logger.info(f"Cannot read {Path(path).name}: {e}")
        return False
    return is_valid_header(table.headers)


def additional_fields(headers: Sequence[str], schema: Optional[ResolvedSchema] = None) -> List[str]:
    """Headers that carry extra data: not a role, metadata, audit or blank."""
    schema = schema or SchemaResolver().resolve(headers)
    role_headers = set(schema.role_headers())
    result = []
    for h in headers:
        if not h.strip() or is_audit_column(h) or is_metadata_column(h):
            continue
        if h in role_headers or h in result:
            continue
        result.append(h)
    return result
