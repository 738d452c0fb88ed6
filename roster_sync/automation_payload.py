"""
Text payloads handed to the external capture application.

A payload is `"<Group>_<Name>_" TAB "<identifier(s)>"`; roster-mode
records, which have no identifier, get the label part only.
"""
from collections import Counter
from typing import List, Sequence

from .config import AUTOMATION_DEFAULT_GROUP, DEFAULT_GROUP
from .errors import ValidationError
from .record_store import Record, RecordStore

BUDDY_NAME = "Buddy"


def payload_group(group: str) -> str:
    group = (group or "").strip()
    if not group or group == DEFAULT_GROUP:
        return AUTOMATION_DEFAULT_GROUP
    return group


def format_label(group: str, name: str) -> str:
    return f"{payload_group(group)}_{name.strip()}_"


def format_payload(group: str, name: str, identifiers: Sequence[str]) -> str:
    """Build a payload for one or more identifiers."""
    return f"{format_label(group, name)}\t{','.join(identifiers)}"


def record_payload(store: RecordStore, record: Record) -> str:
    """Payload for a single identified record."""
    identifier = store.identifier(record)
    if not identifier:
        raise ValidationError(f"Record {store.full_name(record)} has no identifier")
    return format_payload(store.group(record), store.full_name(record), [identifier])


def roster_label(store: RecordStore, record: Record) -> str:
    """Label for a roster-mode record (no identifier part)."""
    return format_label(store.group(record), store.full_name(record))


def buddy_payload(store: RecordStore, records: Sequence[Record]) -> str:
    """
    Payload for several subjects photographed together.

    The group is the most common group among them; ties go to the group
    seen first.
    """
    if not records:
        raise ValidationError("No records selected")
    identifiers: List[str] = [store.identifier(r) for r in records if store.identifier(r)]
    groups = Counter(payload_group(store.group(r)) for r in records)
    group = groups.most_common(1)[0][0]
    return format_payload(group, BUDDY_NAME, identifiers)
