"""
Placeholder Distributor
=======================

Splits the anonymous "Add / Subject<N>" placeholder rows of a base roster
across per-worker copies in contiguous numeric blocks, so each worker owns
an easy-to-read range ("Subjects 1-40 are mine").

Usage:
    result = create_worker_copies(Path("roster.csv"), ["Ann", "Ben", "Cy"])
    for assignment in result.assignments:
        print(assignment.path.name, assignment.label)
"""
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .config import SENTINEL_WORKER_IDS
from .errors import SchemaError
from .file_utils import find_worker_copies, worker_copy_path
from .logger_module import RosterSyncLogger
from .record_store import Record, RecordStore

logger = logging.getLogger(__name__)


@dataclass
class CopyAssignment:
    """The placeholder block planned for one worker copy."""
    path: Path
    placeholders: List[Record] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    written: bool = False
    skipped_reason: str = ""

    @property
    def count(self) -> int:
        return len(self.placeholders)

    @property
    def label(self) -> str:
        if not self.labels:
            return "(none)"
        if len(self.labels) == 1:
            return self.labels[0]
        return f"{self.labels[0]} .. {self.labels[-1]}"


@dataclass
class DistributionResult:
    assignments: List[CopyAssignment] = field(default_factory=list)
    total_placeholders: int = 0

    @property
    def written(self) -> List[CopyAssignment]:
        return [a for a in self.assignments if a.written]

    @property
    def skipped(self) -> List[CopyAssignment]:
        return [a for a in self.assignments if not a.written]

    @property
    def assigned_total(self) -> int:
        return sum(a.count for a in self.assignments)


def plan_distribution(placeholders: Sequence, copy_count: int) -> List[list]:
    """
    Cut an ordered placeholder list into `copy_count` contiguous blocks.

    The first `len % copy_count` blocks get one extra item.
    """
    if copy_count < 1:
        raise ValueError(f"copy_count must be at least 1, got {copy_count}")
    base_count, remainder = divmod(len(placeholders), copy_count)
    blocks = []
    start = 0
    for i in range(copy_count):
        size = base_count + (1 if i < remainder else 0)
        blocks.append(list(placeholders[start:start + size]))
        start += size
    return blocks


class PlaceholderDistributor:
    """Distributes a base store's placeholders over worker copies."""

    def __init__(self, base_store: RecordStore, session_logger: Optional[RosterSyncLogger] = None):
        self.base_store = base_store
        self.session_logger = session_logger

    def split(self) -> Tuple[List[Record], List[Record]]:
        """Return (real records, placeholders sorted by trailing number then identifier)."""
        store = self.base_store
        real, placeholders = [], []
        for record in store.records:
            (placeholders if store.is_placeholder(record) else real).append(record)

        def sort_key(record: Record):
            number = store.placeholder_number(record)
            return (math.inf if number is None else number, store.identifier(record))

        placeholders.sort(key=sort_key)
        return real, placeholders

    def plan(self, copy_count: int) -> List[List[Record]]:
        _, placeholders = self.split()
        return plan_distribution(placeholders, copy_count)

    def _load_existing(self, path: Path) -> Optional[RecordStore]:
        try:
            return RecordStore.from_file(path)
        except (OSError, UnicodeDecodeError, SchemaError) as e:
            logger.warning(f"Cannot read existing copy {path.name}: {e}")
            return None

    def distribute(self, target_copies: Sequence[Path]) -> DistributionResult:
        """
        Write each target copy with the real records plus its placeholder block.

        Copies that already hold placeholders are never rewritten. An
        existing copy without placeholders keeps its own records and gets
        its block appended.
        """
        targets = [Path(p) for p in target_copies]
        real, placeholders = self.split()
        blocks = plan_distribution(placeholders, len(targets))
        store = self.base_store
        result = DistributionResult(total_placeholders=len(placeholders))

        for path, block in zip(targets, blocks):
            assignment = CopyAssignment(
                path=path,
                placeholders=block,
                labels=[store.last_name(r) for r in block],
            )
            result.assignments.append(assignment)

            headers = store.headers
            records = real
            if path.exists():
                existing = self._load_existing(path)
                if existing is None:
                    assignment.skipped_reason = "existing copy is unreadable"
                elif existing.placeholders():
                    assignment.skipped_reason = "copy already has placeholders"
                elif not block:
                    assignment.skipped_reason = "copy exists and no placeholders to add"
                if assignment.skipped_reason:
                    if self.session_logger:
                        self.session_logger.copy_skipped(path, assignment.skipped_reason)
                    logger.info(f"Keeping {path.name}: {assignment.skipped_reason}")
                    continue
                headers = existing.headers + [h for h in store.headers if h not in existing.headers]
                records = [r for r in existing.records if r.key not in {b.key for b in block}]

            copy_store = RecordStore.from_records(headers, list(records) + block, source=path.name)
            copy_store.save(path)
            assignment.written = True

            if self.session_logger:
                self.session_logger.copy_written(path, len(copy_store), len(block))
                if block:
                    self.session_logger.placeholder_assigned(
                        path, assignment.labels[0], assignment.labels[-1], len(block))
            logger.info(f"Wrote {path.name}: {len(copy_store)} records, placeholders {assignment.label}")

        return result


def distribute(base_store: RecordStore, target_copies: Sequence[Path],
               session_logger: Optional[RosterSyncLogger] = None) -> DistributionResult:
    """Distribute `base_store`'s placeholders over `target_copies`."""
    return PlaceholderDistributor(base_store, session_logger).distribute(target_copies)


def copy_targets(original: Path, worker_ids: Sequence[str]) -> List[Path]:
    """
    Ordered copy paths for a roster: the given workers first, then any
    copies already on disk that belong to other workers.
    """
    original = Path(original)
    targets: List[Path] = []
    for worker_id in worker_ids:
        worker_id = worker_id.strip()
        if not worker_id or worker_id in SENTINEL_WORKER_IDS:
            continue
        path = worker_copy_path(original, worker_id)
        if path not in targets:
            targets.append(path)
    for path in find_worker_copies(original):
        if path not in targets:
            targets.append(path)
    return targets


def create_worker_copies(original: Path, worker_ids: Sequence[str],
                         session_logger: Optional[RosterSyncLogger] = None) -> DistributionResult:
    """
    Create (or top up) one copy of `original` per worker.

    Raises:
        ValueError: if no worker copy would be created
        SchemaError: if the original is not a recognized roster
    """
    original = Path(original)
    targets = copy_targets(original, worker_ids)
    if not targets:
        raise ValueError("No worker IDs given for distribution")

    base_store = RecordStore.from_file(original)
    if session_logger:
        session_logger.file_loaded(original, len(base_store), base_store.mode.value)
    return distribute(base_store, targets, session_logger)
