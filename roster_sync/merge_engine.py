"""
Merge Engine
============

Combines two record stores (a base and an incoming copy) into one. Every
difference is resolved automatically and recorded as a conflict for audit:

- Records only in the incoming copy are added ("new-record" conflict).
- The photographed flag is OR-combined, adopting the incoming credit.
- "Last edited by/at" always take the incoming value.
- Other fields prefer the non-empty side, then the side with the strictly
  later last-edit timestamp; missing, unparsable or equal timestamps let
  the incoming side win.

Merging is pairwise so it can be folded left-to-right over N copies (see
merge_session). Conflicts can be reviewed afterwards and selectively
overridden with apply_resolutions().
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .config import CANONICAL_YES, TIMESTAMP_FORMAT
from .errors import SchemaError
from .logger_module import RosterSyncLogger
from .record_store import Record, RecordStore
from .schema import Role, parse_boolean

logger = logging.getLogger(__name__)

NEW_RECORD_FIELD = "NEW_RECORD"
DELETED_FIELD = "DELETED"
NEW_RECORD_OTHER_VALUE = "New record added"

RESOLUTION_ADDED = "Added from other file"
RESOLUTION_KEPT_BASE = "Kept base value (newer timestamp)"
RESOLUTION_USED_OTHER = "Used other value (newer timestamp)"
RESOLUTION_USED_OTHER_DEFAULT = "Used other value (default)"

# Roles merged by the photographed OR rule instead of field by field
_CREDIT_ROLES = (Role.PHOTOGRAPHED, Role.PHOTOGRAPHER, Role.PHOTOGRAPHED_AT)
_PROVENANCE_ROLES = (Role.EDITED_BY, Role.EDITED_AT)


class ConflictType(Enum):
    """Classification of a recorded merge difference."""
    FIELD_CHANGED = "field-changed"
    NEW_RECORD = "new-record"
    DELETED = "deleted"


@dataclass
class MergeConflict:
    """One recorded difference between base and other, already resolved."""
    record_id: str
    field: str
    base_value: str
    other_value: str
    resolution: str
    conflict_type: ConflictType = ConflictType.FIELD_CHANGED
    first_name: str = ""
    last_name: str = ""
    group: str = ""

    @property
    def winner(self) -> str:
        """'base' or 'other', according to the resolution text."""
        return "base" if "base" in self.resolution.lower() else "other"

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.record_id

    def to_dict(self) -> dict:
        return {
            'record_id': self.record_id,
            'field': self.field,
            'base_value': self.base_value,
            'other_value': self.other_value,
            'resolution': self.resolution,
            'conflict_type': self.conflict_type.value,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'group': self.group,
        }


@dataclass
class MergeResult:
    store: RecordStore
    conflicts: List[MergeConflict] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)

    @property
    def new_records(self) -> List[MergeConflict]:
        return [c for c in self.conflicts if c.conflict_type == ConflictType.NEW_RECORD]

    @property
    def field_conflicts(self) -> List[MergeConflict]:
        return [c for c in self.conflicts if c.conflict_type == ConflictType.FIELD_CHANGED]


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 or 'YYYY-MM-DD HH:MM:SS' timestamp; None if absent or invalid."""
    if not value or not value.strip():
        return None
    value = value.strip()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = datetime.strptime(value, TIMESTAMP_FORMAT)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        # Compare everything as naive local time
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


class MergeEngine:
    """Pairwise merge of two record stores."""

    def merge(self, base: RecordStore, other: RecordStore) -> MergeResult:
        """
        Merge `other` into `base` without modifying either.

        Output order is every base record in base order, followed by records
        only present in `other` in the order they appear there.

        Raises:
            SchemaError: if neither store has an identifier column
        """
        if not base.schema.has(Role.IDENTIFIER) and not other.schema.has(Role.IDENTIFIER):
            raise SchemaError("No identifier column found in either file")

        header_map = self._header_map(base, other)
        headers = base.headers
        for h in other.headers:
            target = header_map.get(h, h)
            if target not in headers:
                headers.append(target)

        stats = {
            'matched': 0,
            'added': 0,
            'fields_updated': 0,
            'photographed_adopted': 0,
            'conflicts': 0,
        }
        conflicts: List[MergeConflict] = []

        merged_records = base.records
        for record in merged_records:
            for h in headers:
                record.fields.setdefault(h, "")
        by_key = {r.key: r for r in merged_records}

        for incoming in other.records:
            existing = by_key.get(incoming.key)
            if existing is None:
                added = self._remap(incoming, header_map, headers)
                merged_records.append(added)
                by_key[added.key] = added
                stats['added'] += 1
                conflicts.append(MergeConflict(
                    record_id=incoming.key,
                    field=NEW_RECORD_FIELD,
                    base_value="",
                    other_value=NEW_RECORD_OTHER_VALUE,
                    resolution=RESOLUTION_ADDED,
                    conflict_type=ConflictType.NEW_RECORD,
                    first_name=other.first_name(incoming),
                    last_name=other.last_name(incoming),
                    group=other.display_group(incoming),
                ))
                continue

            stats['matched'] += 1
            self._merge_record(existing, incoming, base, other, header_map, conflicts, stats)

        stats['conflicts'] = len(conflicts)
        store = RecordStore.from_records(
            headers, merged_records, source=f"{base.source}+{other.source}")
        logger.info(
            f"Merged {other.source} into {base.source}: {stats['matched']} matched, "
            f"{stats['added']} added, {stats['conflicts']} conflicts"
        )
        return MergeResult(store=store, conflicts=conflicts, stats=stats)

    @staticmethod
    def _header_map(base: RecordStore, other: RecordStore) -> Dict[str, str]:
        """Map other's role headers onto base's header names for the same role."""
        mapping = {}
        for role in Role:
            b_header = base.schema.header(role)
            o_header = other.schema.header(role)
            if b_header and o_header and b_header != o_header:
                mapping[o_header] = b_header
        return mapping

    @staticmethod
    def _remap(record: Record, header_map: Dict[str, str], headers: Sequence[str]) -> Record:
        added = record.copy()
        added.fields = {}
        for h, value in record.fields.items():
            added.fields.setdefault(header_map.get(h, h), value)
        for h in headers:
            added.fields.setdefault(h, "")
        added.audit = {header_map.get(h, h): v for h, v in record.audit.items()}
        added.shadow = {}
        return added

    def _merge_record(self, merged: Record, incoming: Record, base: RecordStore,
                      other: RecordStore, header_map: Dict[str, str],
                      conflicts: List[MergeConflict], stats: Dict[str, int]):
        base_edited = parse_timestamp(merged.get(base.meta_header(Role.EDITED_AT)))
        other_edited = parse_timestamp(incoming.get(other.meta_header(Role.EDITED_AT)))

        if incoming.photographed and not merged.photographed:
            merged.photographed = True
            other_flag_header = other.schema.header(Role.PHOTOGRAPHED)
            flag_header = base.schema.header(Role.PHOTOGRAPHED)
            if flag_header is None and other_flag_header is not None:
                flag_header = header_map.get(other_flag_header, other_flag_header)
            if flag_header is not None:
                other_flag = incoming.get(other_flag_header)
                merged.fields[flag_header] = other_flag if parse_boolean(other_flag) else CANONICAL_YES
            for role in (Role.PHOTOGRAPHER, Role.PHOTOGRAPHED_AT):
                merged.fields[base.meta_header(role)] = incoming.get(other.meta_header(role))
            stats['photographed_adopted'] += 1

        skip = {base.meta_header(Role.PHOTOGRAPHER), base.meta_header(Role.PHOTOGRAPHED_AT)}
        for schema in (base.schema, other.schema):
            for role in (Role.IDENTIFIER,) + _CREDIT_ROLES:
                header = schema.header(role)
                if header is not None:
                    skip.add(header)
        provenance = {base.meta_header(role) for role in _PROVENANCE_ROLES}

        seen = set()
        for h in other.headers:
            target = header_map.get(h, h)
            if h in skip or target in skip or target in seen:
                continue
            seen.add(target)

            other_value = incoming.get(h)
            base_value = merged.get(target)

            if target in provenance:
                merged.fields[target] = other_value
                continue
            if other_value == base_value:
                continue
            if not base_value:
                merged.fields[target] = other_value
                stats['fields_updated'] += 1
                continue
            if not other_value:
                continue

            if base_edited and other_edited and base_edited > other_edited:
                resolution = RESOLUTION_KEPT_BASE
            elif base_edited and other_edited and other_edited > base_edited:
                resolution = RESOLUTION_USED_OTHER
            else:
                resolution = RESOLUTION_USED_OTHER_DEFAULT

            if resolution != RESOLUTION_KEPT_BASE:
                merged.fields[target] = other_value
                stats['fields_updated'] += 1

            conflicts.append(MergeConflict(
                record_id=merged.key,
                field=target,
                base_value=base_value,
                other_value=other_value,
                resolution=resolution,
                conflict_type=ConflictType.FIELD_CHANGED,
                first_name=base.first_name(merged),
                last_name=base.last_name(merged),
                group=base.display_group(merged),
            ))

        for h, value in incoming.audit.items():
            merged.audit.setdefault(header_map.get(h, h), value)


def merge(base: RecordStore, other: RecordStore) -> MergeResult:
    """Merge `other` into `base`; see MergeEngine.merge()."""
    return MergeEngine().merge(base, other)


# ----------------------------------------------------------------------
# Conflict review
# ----------------------------------------------------------------------

class ResolutionChoice(Enum):
    """Operator decision for a recorded conflict."""
    KEEP_BASE = "keep_base"
    USE_OTHER = "use_other"
    USER_DECIDED = "user_decided"


@dataclass
class ConflictResolution:
    """A reviewed conflict. Only approved resolutions are applied."""
    conflict: MergeConflict
    choice: ResolutionChoice
    custom_value: str = ""
    approved: bool = True

    @property
    def automatic_choice(self) -> ResolutionChoice:
        if self.conflict.winner == "base":
            return ResolutionChoice.KEEP_BASE
        return ResolutionChoice.USE_OTHER

    @property
    def is_override(self) -> bool:
        if self.conflict.conflict_type == ConflictType.NEW_RECORD:
            return self.approved and self.choice == ResolutionChoice.KEEP_BASE
        return self.approved and (
            self.choice == ResolutionChoice.USER_DECIDED
            or self.choice != self.automatic_choice
        )

    def resolution_text(self) -> str:
        if not self.is_override:
            return self.conflict.resolution
        if self.conflict.conflict_type == ConflictType.NEW_RECORD:
            return "Rejected new record (reviewed)"
        if self.choice == ResolutionChoice.KEEP_BASE:
            return "Kept base value (reviewed)"
        if self.choice == ResolutionChoice.USE_OTHER:
            return "Used other value (reviewed)"
        return f"Custom value: {self.custom_value}"


def default_resolutions(conflicts: Sequence[MergeConflict]) -> List[ConflictResolution]:
    """Resolutions that confirm every automatic decision."""
    resolutions = []
    for conflict in conflicts:
        choice = (ResolutionChoice.KEEP_BASE if conflict.winner == "base"
                  else ResolutionChoice.USE_OTHER)
        resolutions.append(ConflictResolution(conflict=conflict, choice=choice))
    return resolutions


def apply_resolutions(store: RecordStore, resolutions: Sequence[ConflictResolution],
                      session_logger: Optional[RosterSyncLogger] = None
                      ) -> Tuple[RecordStore, List[MergeConflict]]:
    """
    Apply approved overrides to a merged store.

    Returns the store and the conflict list with final resolution texts.
    Rejecting a new record (keep_base) removes it from the store.
    """
    final: List[MergeConflict] = []
    for resolution in resolutions:
        conflict = resolution.conflict
        if resolution.is_override:
            if conflict.record_id not in store:
                logger.warning(f"Cannot apply resolution, record gone: {conflict.record_id}")
            elif conflict.conflict_type == ConflictType.NEW_RECORD:
                if resolution.choice == ResolutionChoice.KEEP_BASE:
                    store.remove(conflict.record_id)
            elif conflict.conflict_type == ConflictType.FIELD_CHANGED:
                if resolution.choice == ResolutionChoice.KEEP_BASE:
                    value = conflict.base_value
                elif resolution.choice == ResolutionChoice.USE_OTHER:
                    value = conflict.other_value
                else:
                    value = resolution.custom_value
                store.set_field(conflict.record_id, conflict.field, value)
            if session_logger:
                session_logger.conflict_overridden(
                    conflict.record_id, conflict.field, resolution.choice.value)

        final.append(MergeConflict(
            record_id=conflict.record_id,
            field=conflict.field,
            base_value=conflict.base_value,
            other_value=conflict.other_value,
            resolution=resolution.resolution_text(),
            conflict_type=conflict.conflict_type,
            first_name=conflict.first_name,
            last_name=conflict.last_name,
            group=conflict.group,
        ))
    return store, final
