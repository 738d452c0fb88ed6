#!/usr/bin/env python
"""
Roster Sync - Command Line Interface
====================================

Distribute a roster to several photographers and merge their copies back.

Usage:
    roster-sync scan ./job
    roster-sync distribute ./job/roster.csv --workers Ann Ben Cy
    roster-sync merge ./job/roster.csv --auto
"""
import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .automation_payload import buddy_payload, record_payload, roster_label
from .config import config, JobConfig
from .conflict_report import format_conflict_table, read_conflict_report
from .errors import MergeCancelled, RosterSyncError
from .file_utils import find_worker_copies, scan_job_folder
from .logger_module import RosterSyncLogger
from .merge_engine import (
    ConflictResolution, ConflictType, MergeConflict, ResolutionChoice, default_resolutions,
)
from .merge_session import MergeSession
from .placeholder_distributor import create_worker_copies
from .record_store import RecordStore
from .schema import TableMode, is_valid_table_file
from .tabular_codec import EXCEL_EXTENSIONS, convert_excel_to_csv

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="roster-sync",
        description="Distribute subject rosters to photographers and reconcile their copies",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List rosters and worker copies in a job folder
  roster-sync scan ./job

  # Create one copy per photographer, splitting the placeholders
  roster-sync distribute ./job/roster.csv --workers Ann Ben Cy

  # Merge every copy back, reviewing each conflict
  roster-sync merge ./job/roster.csv

  # Merge without prompts, keeping the copies
  roster-sync merge ./job/roster.csv --auto --keep-copies
        """
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output'
    )
    parser.add_argument(
        '--log-dir',
        type=Path,
        default=config.log_dir,
        help='Write a session log for distribute/merge into this directory'
    )

    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('scan', help='List rosters and worker copies in a job folder')
    p.add_argument('folder', type=Path)

    p = sub.add_parser('status', help='Show photographed counts for a roster')
    p.add_argument('file', type=Path)

    p = sub.add_parser('distribute', help='Create per-worker copies with placeholder blocks')
    p.add_argument('original', type=Path)
    p.add_argument(
        '--workers', nargs='+',
        help='Worker IDs (default: team list from job.json)'
    )

    p = sub.add_parser('placeholder', help='Add placeholder subjects to a roster')
    p.add_argument('file', type=Path)
    p.add_argument('--count', '-n', type=int, default=1)
    p.add_argument('--identifier', help='Identifier for a single placeholder')

    p = sub.add_parser('mark', help='Mark a record photographed (or undo)')
    p.add_argument('file', type=Path)
    p.add_argument('key', help='Identifier or record key')
    p.add_argument('--undo', action='store_true')
    p.add_argument('--worker', help='Worker ID to credit (default: job.json / environment)')

    p = sub.add_parser('payload', help='Print the automation payload for records')
    p.add_argument('file', type=Path)
    p.add_argument('keys', nargs='+')

    p = sub.add_parser('merge', help='Merge worker copies back into the master roster')
    p.add_argument('original', type=Path)
    p.add_argument('copies', nargs='*', type=Path,
                   help='Copies to merge, in order (default: all copies of the original)')
    p.add_argument('--auto', action='store_true',
                   help='Accept every automatic resolution without prompting')
    p.add_argument('--dry-run', action='store_true',
                   help='Preview the merge without writing anything')
    p.add_argument('--no-backup', action='store_true',
                   help='Do not back up the master before replacing it')
    p.add_argument('--keep-copies', action='store_true',
                   help='Keep worker copies after a successful merge')

    p = sub.add_parser('report', help='Show a conflict report')
    p.add_argument('file', type=Path)

    return parser


def _worker_id(args, folder: Path) -> str:
    if getattr(args, 'worker', None):
        return args.worker
    job = JobConfig.load(folder)
    if job.my_worker_id:
        return job.effective_worker_id()
    return config.job_config().effective_worker_id()


def _working_csv(path: Path) -> Path:
    if path.suffix.lower() in EXCEL_EXTENSIONS:
        converted = convert_excel_to_csv(path)
        print(f"Using converted copy: {converted.name}")
        return converted
    return path


def _session_logger(args, name: str) -> Optional[RosterSyncLogger]:
    if args.log_dir:
        return RosterSyncLogger(args.log_dir, name)
    return None


# ----------------------------------------------------------------------
# Conflict review prompts
# ----------------------------------------------------------------------

def _ask_resolution(conflict: MergeConflict) -> Optional[ConflictResolution]:
    """
    Prompt for one conflict.

    Returns None when the operator accepts everything that is left.
    """
    print(f"\n{'─'*60}")
    print(f"CONFLICT: {conflict.display_name} ({conflict.record_id})")
    print(f"{'─'*60}")
    print(format_conflict_table([conflict]))
    print()

    if conflict.conflict_type == ConflictType.NEW_RECORD:
        print("  [1] Keep the new record (default)")
        print("  [0] Reject the new record")
        print("  [a] Accept all remaining resolutions")
        options = {'': ResolutionChoice.USE_OTHER, '1': ResolutionChoice.USE_OTHER,
                   '0': ResolutionChoice.KEEP_BASE}
    else:
        print("  [Enter] Accept automatic resolution")
        print("  [0] Keep base value")
        print("  [1] Use other value")
        print("  [2] Enter custom value")
        print("  [a] Accept all remaining resolutions")
        options = {'0': ResolutionChoice.KEEP_BASE, '1': ResolutionChoice.USE_OTHER,
                   '2': ResolutionChoice.USER_DECIDED}

    automatic = default_resolutions([conflict])[0]
    while True:
        try:
            choice = input("\nEnter choice: ").strip().lower()
        except (KeyboardInterrupt, EOFError):
            print("\nAccepting remaining resolutions.")
            return None
        if choice == 'a':
            return None
        if choice == '' and conflict.conflict_type != ConflictType.NEW_RECORD:
            return automatic
        if choice in options:
            resolution = ConflictResolution(conflict=conflict, choice=options[choice])
            if resolution.choice == ResolutionChoice.USER_DECIDED:
                resolution.custom_value = input(f"  Value for '{conflict.field}': ").strip()
            return resolution
        print("Invalid input.")


def review_conflicts(conflicts: List[MergeConflict]) -> List[ConflictResolution]:
    """Interactively review conflicts; unreviewed ones keep their automatic resolution."""
    resolutions: List[ConflictResolution] = []
    for i, conflict in enumerate(conflicts):
        resolution = _ask_resolution(conflict)
        if resolution is None:
            resolutions.extend(default_resolutions(conflicts[i:]))
            break
        resolutions.append(resolution)
    return resolutions


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

def cmd_scan(args) -> int:
    if not args.folder.is_dir():
        print(f"Error: Not a directory: {args.folder}")
        return 1
    files = scan_job_folder(args.folder, validator=is_valid_table_file)
    job = JobConfig.load(args.folder)
    print(f"Job folder: {args.folder}")
    print(f"  Mode: {job.collaboration_mode.value}  Worker: {job.effective_worker_id()}")
    if job.team_ids:
        print(f"  Team: {', '.join(job.team_ids)}")
    if not files:
        print("  No rosters found")
    for path in files:
        print(f"  {path.name}")
        for copy_path in find_worker_copies(path):
            print(f"    └ {copy_path.name}")
    return 0


def cmd_status(args) -> int:
    store = RecordStore.from_file(args.file)
    summary = store.summary()
    print(f"{args.file.name}: {summary['total']} records ({store.mode.value} mode)")
    print(f"  Photographed: {summary['photographed']}/{summary['total']}")
    print(f"  Placeholders: {summary['placeholders']}")
    for group, counts in summary['by_group'].items():
        print(f"    {group:<20} {counts['photographed']}/{counts['total']}")
    if store.skipped_rows:
        print(f"  Skipped rows: {len(store.skipped_rows)}")
    return 0


def cmd_distribute(args) -> int:
    original = _working_csv(args.original)
    workers = args.workers
    if not workers:
        job = JobConfig.load(original.parent)
        workers = job.team_ids
        if job.my_worker_id and job.my_worker_id not in workers:
            workers = [job.my_worker_id] + workers
    if not workers:
        print("Error: No workers given and job.json has no team list")
        return 1

    session_logger = _session_logger(args, "distribute")
    try:
        result = create_worker_copies(original, workers, session_logger)
    finally:
        if session_logger:
            session_logger.close()

    print(f"\nPlaceholders: {result.total_placeholders}")
    for assignment in result.assignments:
        status = "written" if assignment.written else f"kept ({assignment.skipped_reason})"
        print(f"  {assignment.path.name:<40} {assignment.count:>4}  {assignment.label}  [{status}]")
    return 0


def cmd_placeholder(args) -> int:
    if args.identifier and args.count != 1:
        print("Error: --identifier can only be used with a single placeholder")
        return 1
    path = _working_csv(args.file)
    store = RecordStore.from_file(path)
    for _ in range(args.count):
        record = store.create_placeholder(args.identifier)
        print(f"  {store.full_name(record)}  {store.identifier(record)}")
    store.save(path)
    return 0


def cmd_mark(args) -> int:
    store = RecordStore.from_file(args.file)
    if args.undo:
        record = store.mark_undone(args.key)
    else:
        record = store.mark_done(args.key, _worker_id(args, args.file.parent))
    store.save(args.file)
    state = "photographed" if record.photographed else "not photographed"
    print(f"{store.full_name(record)}: {state}")
    return 0


def cmd_payload(args) -> int:
    store = RecordStore.from_file(args.file)
    records = [store.get(key) for key in args.keys]
    if store.mode == TableMode.ROSTER:
        for record in records:
            print(roster_label(store, record))
    elif len(records) == 1:
        print(record_payload(store, records[0]))
    else:
        print(buddy_payload(store, records))
    return 0


def cmd_merge(args) -> int:
    master = _working_csv(args.original)
    copies = args.copies or find_worker_copies(master)
    if not copies:
        print(f"No worker copies found for {master.name}")
        return 0

    print(f"Merging {len(copies)} copies into {master.name}:")
    for copy_path in copies:
        print(f"  {copy_path.name}")

    session_logger = _session_logger(args, "merge")
    session = MergeSession(
        master,
        copies=copies,
        backup=not args.no_backup,
        delete_copies=not args.keep_copies,
        dry_run=args.dry_run,
        review=None if args.auto else review_conflicts,
        session_logger=session_logger,
    )
    try:
        result = session.run()
    finally:
        if session_logger:
            session_logger.close()

    print("\n" + "=" * 60)
    print("MERGE SUMMARY" + (" (dry run)" if args.dry_run else ""))
    print("=" * 60)
    print(f"  Copies merged:          {result.stats['copies_merged']}")
    print(f"  Records added:          {result.stats['records_added']}")
    print(f"  Fields updated:         {result.stats['fields_updated']}")
    print(f"  Photographed adopted:   {result.stats['photographed_adopted']}")
    print(f"  Conflicts:              {result.stats['conflicts']}")
    if result.backup_path:
        print(f"  Backup:                 {result.backup_path.name}")
    if result.report_path:
        print(f"  Conflict report:        {result.report_path.name}")
    if result.deleted_copies:
        print(f"  Copies deleted:         {len(result.deleted_copies)}")
    return 0


def cmd_report(args) -> int:
    conflicts = read_conflict_report(args.file)
    if not conflicts:
        print("No conflicts in report")
        return 0
    print(format_conflict_table(conflicts, title=f"{args.file.name}: {len(conflicts)} conflicts"))
    return 0


COMMANDS = {
    'scan': cmd_scan,
    'status': cmd_status,
    'distribute': cmd_distribute,
    'placeholder': cmd_placeholder,
    'mark': cmd_mark,
    'payload': cmd_payload,
    'merge': cmd_merge,
    'report': cmd_report,
}


def run_cli(argv: Optional[List[str]] = None) -> int:
    """Parse arguments and run a command; returns the exit code."""
    parser = create_parser()
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=log_level, format='%(levelname)s: %(message)s')

    try:
        return COMMANDS[args.command](args)
    except MergeCancelled as e:
        print(f"\n{e}; master file was not changed")
        return 1
    except (RosterSyncError, OSError, ValueError) as e:
        print(f"\nError: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


def main():
    """Main entry point."""
    try:
        sys.exit(run_cli())
    except KeyboardInterrupt:
        print("\n\nInterrupted!")
        sys.exit(130)


if __name__ == "__main__":
    main()
