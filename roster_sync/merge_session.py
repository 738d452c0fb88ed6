"""
Merge session: folds every worker copy back into the master roster.

Copies are merged strictly in order, each step's output being the base for
the next. Intermediates are written to the job folder as `merged_*.csv`.
The master is only replaced after the whole fold and the review step have
succeeded; cancelling between steps leaves the master untouched.
"""
import logging
import shutil
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .conflict_report import write_conflict_report
from .errors import MergeCancelled
from .file_utils import find_worker_copies
from .logger_module import RosterSyncLogger
from .merge_engine import (
    ConflictResolution, MergeConflict, MergeEngine, apply_resolutions, default_resolutions,
)
from .record_store import RecordStore
from .tabular_codec import EXCEL_EXTENSIONS

logger = logging.getLogger(__name__)

ReviewCallback = Callable[[List[MergeConflict]], List[ConflictResolution]]


def intermediate_name(now: datetime) -> str:
    return f"merged_{now.strftime('%Y-%m-%d_%H-%M-%S-%f')}_{uuid.uuid4().hex[:8]}.csv"


def report_name(now: datetime) -> str:
    return f"merge_conflicts_{now.strftime('%Y-%m-%d_%H-%M-%S')}.csv"


def backup_name(master: Path, now: datetime) -> str:
    return f"backup_{master.stem}_{now.strftime('%Y-%m-%d_%H-%M-%S')}.csv"


@dataclass
class MergeSessionResult:
    master: Path
    store: Optional[RecordStore] = None
    conflicts: List[MergeConflict] = field(default_factory=list)
    steps: int = 0
    report_path: Optional[Path] = None
    backup_path: Optional[Path] = None
    deleted_copies: List[Path] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)
    committed: bool = False


class MergeSession:
    """
    Reconciles a master roster with its worker copies.

    Usage:
        session = MergeSession(Path("roster.csv"))
        result = session.run()
    """

    def __init__(
        self,
        master: Path,
        copies: Optional[Sequence[Path]] = None,
        work_dir: Optional[Path] = None,
        backup: bool = True,
        delete_copies: bool = True,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
        review: Optional[ReviewCallback] = None,
        session_logger: Optional[RosterSyncLogger] = None,
        engine: Optional[MergeEngine] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the session.

        Args:
            master: The authoritative roster file (CSV)
            copies: Worker copies to fold in order (auto-detected if None)
            work_dir: Folder for intermediates and the report (default: master's folder)
            backup: Copy the master to backup_*.csv before replacing it
            delete_copies: Delete the merged worker copies after success
            dry_run: Fold and review without writing anything
            cancel_event: Checked between fold steps
            review: Callback turning conflicts into resolutions (default: accept all)
        """
        self.master = Path(master)
        if self.master.suffix.lower() in EXCEL_EXTENSIONS:
            raise ValueError(f"Convert {self.master.name} to CSV before merging")
        self.copies = [Path(c) for c in copies] if copies is not None \
            else find_worker_copies(self.master)
        self.work_dir = Path(work_dir) if work_dir else self.master.parent
        self.backup = backup
        self.delete_copies = delete_copies
        self.dry_run = dry_run
        self.cancel_event = cancel_event
        self.review = review
        self.session_logger = session_logger
        self.engine = engine or MergeEngine()
        self.clock = clock

        self.stats = {
            'copies_merged': 0,
            'records_added': 0,
            'fields_updated': 0,
            'photographed_adopted': 0,
            'conflicts': 0,
        }

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _log(self, method: str, *args):
        if self.session_logger:
            getattr(self.session_logger, method)(*args)

    def _load(self, path: Path) -> RecordStore:
        store = RecordStore.from_file(path)
        for row_number, reason in store.skipped_rows:
            self._log('row_skipped', path.name, row_number, reason)
        return store

    def run(self) -> MergeSessionResult:
        """
        Fold all copies into the master, review, then commit.

        Raises:
            MergeCancelled: if cancelled between steps (master untouched)
            OSError: on unreadable or unwritable files
            SchemaError: if a file is not a recognized roster
        """
        result = MergeSessionResult(master=self.master)
        base = self._load(self.master)
        self._log('file_loaded', self.master, len(base), base.mode.value)
        self._log('stage_start', "MERGE", f"{len(self.copies)} copies into {self.master.name}")

        intermediate: Optional[Path] = None
        conflicts: List[MergeConflict] = []
        total = len(self.copies)

        for step, copy_path in enumerate(self.copies, start=1):
            if self._cancelled():
                self._log('merge_cancelled', step - 1, intermediate)
                raise MergeCancelled(step - 1, intermediate)

            other = self._load(copy_path)
            merged = self.engine.merge(base, other)
            conflicts.extend(merged.conflicts)

            self.stats['copies_merged'] += 1
            self.stats['records_added'] += merged.stats['added']
            self.stats['fields_updated'] += merged.stats['fields_updated']
            self.stats['photographed_adopted'] += merged.stats['photographed_adopted']

            if not self.dry_run:
                next_intermediate = self.work_dir / intermediate_name(self.clock())
                merged.store.save(next_intermediate)
                if intermediate is not None and intermediate.exists():
                    intermediate.unlink()
                intermediate = next_intermediate

            base = merged.store
            self._log('merge_step', step, total, copy_path,
                      merged.stats['added'], len(merged.conflicts))
            for conflict in merged.conflicts:
                self._log('conflict_recorded', conflict.record_id, conflict.field,
                          conflict.resolution)

        if self._cancelled():
            self._log('merge_cancelled', total, intermediate)
            raise MergeCancelled(total, intermediate)

        resolutions = self.review(conflicts) if self.review else default_resolutions(conflicts)
        store, final_conflicts = apply_resolutions(base, resolutions, self.session_logger)
        self.stats['conflicts'] = len(final_conflicts)
        self._log('stage_end', "MERGE", f"{len(store)} records, {len(final_conflicts)} conflicts")

        result.store = store
        result.conflicts = final_conflicts
        result.steps = total
        result.stats = dict(self.stats)

        if self.dry_run:
            return result

        now = self.clock()
        if self.backup:
            backup_path = self.work_dir / backup_name(self.master, now)
            shutil.copy2(self.master, backup_path)
            result.backup_path = backup_path
            self._log('backup_created', self.master, backup_path)

        store.save(self.master)
        result.committed = True
        self._log('file_replaced', self.master, len(store))

        if final_conflicts:
            result.report_path = write_conflict_report(
                final_conflicts, self.work_dir / report_name(now))
            self._log('file_written', result.report_path, len(final_conflicts))

        if intermediate is not None and intermediate.exists():
            intermediate.unlink()
            self._log('file_deleted', intermediate, "intermediate")

        if self.delete_copies:
            for copy_path in self.copies:
                if copy_path.exists():
                    copy_path.unlink()
                    result.deleted_copies.append(copy_path)
                    self._log('file_deleted', copy_path, "merged")

        logger.info(
            f"Merged {total} copies into {self.master.name}: {len(store)} records, "
            f"{len(final_conflicts)} conflicts"
        )
        return result
