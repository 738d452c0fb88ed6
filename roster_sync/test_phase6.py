"""
Phase 6: Merge Session, CLI and Payload Tests
End-to-end distribute -> edit -> merge runs against a temporary job folder.
"""
import io
import sys
import shutil
import tempfile
import threading
from contextlib import redirect_stdout
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from roster_sync.automation_payload import (
    format_payload, record_payload, roster_label, buddy_payload,
)
from roster_sync.cli import run_cli
from roster_sync.conflict_report import read_conflict_report, write_conflict_report
from roster_sync.errors import MergeCancelled, ValidationError
from roster_sync.merge_engine import (
    MergeEngine, ConflictResolution, ConflictType, ResolutionChoice, default_resolutions,
)
from roster_sync.merge_session import MergeSession
from roster_sync.placeholder_distributor import create_worker_copies
from roster_sync.record_store import RecordStore
from roster_sync.tabular_codec import parse

MASTER_TEXT = (
    "Barcode,First Name,Last Name,Group\n"
    "1,Amy,Lee,Red\n"
    "2,Ben,Ng,Blue\n"
    "101,Add,Subject1,No Group\n"
    "102,Add,Subject2,No Group\n"
)

T1 = datetime(2024, 5, 1, 10, 0, 0)


class CancellingEngine(MergeEngine):
    """Sets the cancel flag after the first merge step."""

    def __init__(self, event: threading.Event):
        self.event = event

    def merge(self, base, other):
        result = super().merge(base, other)
        self.event.set()
        return result


def prepare_job(folder: Path) -> Path:
    """Master plus two edited worker copies (Ann, Ben)."""
    master = folder / "roster.csv"
    master.write_text(MASTER_TEXT, encoding='utf-8')
    create_worker_copies(master, ["Ann", "Ben"])

    ann_path = folder / "roster_Ann.csv"
    ann = RecordStore.from_file(ann_path)
    ann.mark_done("1", "Ann", now=T1)
    placeholder = ann.get("101")
    placeholder.fields["First Name"] = "Zoe"
    placeholder.fields["Last Name"] = "Park"
    placeholder.fields["Group"] = "Blue"
    ann.update(placeholder, "Ann", now=T1)
    ann.save(ann_path)

    ben_path = folder / "roster_Ben.csv"
    ben = RecordStore.from_file(ben_path)
    ben.mark_done("2", "Ben", now=T1)
    ben.add_record({"Barcode": "3", "First Name": "Cy", "Last Name": "Ortiz", "Group": "Red"},
                   worker_id="Ben", now=T1)
    ben.save(ben_path)
    return master


def run_quiet(argv):
    """Run the CLI, returning (exit code, captured stdout)."""
    buffer = io.StringIO()
    with redirect_stdout(buffer):
        code = run_cli(argv)
    return code, buffer.getvalue()


def test_full_merge_session():
    """Both copies fold into the master; artifacts are cleaned up."""
    print("\nTesting full merge session...")
    temp_dir = Path(tempfile.mkdtemp())
    try:
        master = prepare_job(temp_dir)
        copies = [temp_dir / "roster_Ann.csv", temp_dir / "roster_Ben.csv"]

        session = MergeSession(master)
        assert session.copies == copies
        result = session.run()

        assert result.committed
        assert result.steps == 2
        assert result.stats['copies_merged'] == 2
        assert result.stats['records_added'] == 1
        assert result.stats['photographed_adopted'] == 2

        store = RecordStore.from_file(master)
        assert store.keys == ["1", "2", "101", "102", "3"]
        assert store.get("1").fields["Photographed By"] == "Ann"
        assert store.get("2").fields["Photographed By"] == "Ben"
        zoe = store.get("101")
        assert zoe.fields["First Name"] == "Zoe"
        assert zoe.audit == {"First Name": "Add", "Last Name": "Subject1", "Group": "No Group"}
        assert store.get("3").fields["Last Edited By"] == "Ben"

        # Backup and report written, copies and intermediates gone
        assert result.backup_path.exists()
        assert result.backup_path.name.startswith("backup_roster_")
        assert RecordStore.from_file(result.backup_path).keys == ["1", "2", "101", "102"]
        assert result.report_path.exists()
        report = read_conflict_report(result.report_path)
        assert len(report) == 4
        assert [c.conflict_type for c in report].count(ConflictType.NEW_RECORD) == 1
        assert result.deleted_copies == copies
        assert not any(p.exists() for p in copies)
        assert list(temp_dir.glob("merged_*.csv")) == []
        print("✓ Full merge session works")
    finally:
        shutil.rmtree(temp_dir)


def test_cancel_leaves_master_untouched():
    """Cancelling between steps never replaces the master."""
    print("\nTesting cancellation...")
    temp_dir = Path(tempfile.mkdtemp())
    try:
        master = prepare_job(temp_dir)
        original_bytes = master.read_bytes()

        event = threading.Event()
        event.set()
        try:
            MergeSession(master, cancel_event=event).run()
            assert False, "Should have raised MergeCancelled"
        except MergeCancelled as e:
            assert e.completed_steps == 0
            assert e.intermediate is None

        event = threading.Event()
        session = MergeSession(master, cancel_event=event, engine=CancellingEngine(event))
        try:
            session.run()
            assert False, "Should have raised MergeCancelled"
        except MergeCancelled as e:
            assert e.completed_steps == 1
            assert e.intermediate.exists()
            assert e.intermediate.name.startswith("merged_")

        assert master.read_bytes() == original_bytes
        assert (temp_dir / "roster_Ann.csv").exists()
        assert (temp_dir / "roster_Ben.csv").exists()
        assert list(temp_dir.glob("backup_*.csv")) == []
        print("✓ Cancellation works")
    finally:
        shutil.rmtree(temp_dir)


def test_dry_run_and_review():
    """Dry runs write nothing; the review callback can reject new records."""
    print("\nTesting dry run and review...")
    temp_dir = Path(tempfile.mkdtemp())
    try:
        master = prepare_job(temp_dir)
        original_bytes = master.read_bytes()
        before = sorted(p.name for p in temp_dir.iterdir())

        result = MergeSession(master, dry_run=True).run()
        assert not result.committed
        assert "3" in result.store
        assert master.read_bytes() == original_bytes
        assert sorted(p.name for p in temp_dir.iterdir()) == before

        def reject_new(conflicts):
            resolutions = []
            for conflict in conflicts:
                if conflict.conflict_type == ConflictType.NEW_RECORD:
                    resolutions.append(ConflictResolution(conflict, ResolutionChoice.KEEP_BASE))
                else:
                    resolutions.extend(default_resolutions([conflict]))
            return resolutions

        result = MergeSession(master, review=reject_new, backup=False,
                              delete_copies=False).run()
        assert result.committed
        assert result.backup_path is None
        store = RecordStore.from_file(master)
        assert "3" not in store
        assert store.get("2").photographed
        assert (temp_dir / "roster_Ben.csv").exists()
        resolutions = [c.resolution for c in read_conflict_report(result.report_path)]
        assert "Rejected new record (reviewed)" in resolutions

        try:
            MergeSession(temp_dir / "roster.xlsx")
            assert False, "Should have raised ValueError"
        except ValueError:
            pass
        print("✓ Dry run and review work")
    finally:
        shutil.rmtree(temp_dir)


def test_payloads():
    """Test automation payload strings."""
    print("\nTesting payloads...")
    assert format_payload("Red", "Amy Lee", ["1"]) == "Red_Amy Lee_\t1"
    assert format_payload("No Group", "Amy Lee", ["1"]) == "Manual Sort_Amy Lee_\t1"
    assert format_payload("", "Buddy", ["1", "2"]) == "Manual Sort_Buddy_\t1,2"

    store = RecordStore.from_table(parse(MASTER_TEXT))
    assert record_payload(store, store.get("1")) == "Red_Amy Lee_\t1"
    assert record_payload(store, store.get("101")) == "Manual Sort_Add Subject1_\t101"
    records = [store.get("1"), store.get("2"), store.get("101"), store.get("102")]
    assert buddy_payload(store, records) == "Manual Sort_Buddy_\t1,2,101,102"
    assert buddy_payload(store, records[:2]) == "Red_Buddy_\t1,2"

    roster = RecordStore.from_table(parse("Name,Team\nAmy Lee,Red\n"))
    amy = roster.records[0]
    assert roster_label(roster, amy) == "Red_Amy Lee_"
    try:
        record_payload(roster, amy)
        assert False, "Should have raised ValidationError"
    except ValidationError:
        pass
    try:
        buddy_payload(store, [])
        assert False, "Should have raised ValidationError"
    except ValidationError:
        pass
    print("✓ Payloads work")


def test_cli_workflow():
    """Drive a whole job through the command line."""
    print("\nTesting CLI workflow...")
    temp_dir = Path(tempfile.mkdtemp())
    log_dir = Path(tempfile.mkdtemp())
    try:
        master = temp_dir / "roster.csv"
        master.write_text(MASTER_TEXT, encoding='utf-8')

        code, out = run_quiet(["scan", str(temp_dir)])
        assert code == 0
        assert "roster.csv" in out

        code, out = run_quiet(["status", str(master)])
        assert code == 0
        assert "4 records" in out
        assert "Placeholders: 2" in out

        code, out = run_quiet(["placeholder", str(master), "-n", "2"])
        assert code == 0
        assert len(RecordStore.from_file(master).placeholders()) == 4

        code, out = run_quiet(["--log-dir", str(log_dir), "distribute", str(master),
                               "--workers", "Ann", "Ben"])
        assert code == 0
        assert (temp_dir / "roster_Ann.csv").exists()
        assert (temp_dir / "roster_Ben.csv").exists()
        assert (log_dir / "session_distribute.log").exists()

        code, out = run_quiet(["scan", str(temp_dir)])
        assert "roster_Ann.csv" in out

        code, out = run_quiet(["mark", str(temp_dir / "roster_Ann.csv"), "1", "--worker", "Ann"])
        assert code == 0
        assert "photographed" in out

        code, out = run_quiet(["payload", str(master), "1"])
        assert out.strip("\n") == "Red_Amy Lee_\t1"
        code, out = run_quiet(["payload", str(master), "1", "2"])
        assert out.strip("\n") == "Red_Buddy_\t1,2"

        code, out = run_quiet(["merge", str(master), "--auto"])
        assert code == 0
        assert "MERGE SUMMARY" in out
        assert not (temp_dir / "roster_Ann.csv").exists()
        assert RecordStore.from_file(master).get("1").fields["Photographed By"] == "Ann"

        code, out = run_quiet(["merge", str(master), "--auto"])
        assert code == 0
        assert "No worker copies found" in out

        store = RecordStore.from_file(master)
        conflicts = MergeEngine().merge(
            store, RecordStore.from_table(parse("Barcode,First Name,Last Name,Group\n1,Amy,Lee,Blue\n"))
        ).conflicts
        report = write_conflict_report(conflicts, temp_dir / "merge_conflicts_manual.csv")
        code, out = run_quiet(["report", str(report)])
        assert code == 0
        assert "Amy Lee" in out

        # Failures map to exit code 1
        assert run_quiet(["status", str(temp_dir / "missing.csv")])[0] == 1
        assert run_quiet(["mark", str(master), "no-such-id", "--worker", "Ann"])[0] == 1
        assert run_quiet(["scan", str(master)])[0] == 1
        print("✓ CLI workflow works")
    finally:
        shutil.rmtree(temp_dir)
        shutil.rmtree(log_dir)


def run_all_tests():
    """Run all Phase 6 tests."""
    print("=" * 50)
    print("Phase 6: Merge Session, CLI and Payload Tests")
    print("=" * 50)

    tests = [
        test_full_merge_session,
        test_cancel_leaves_master_untouched,
        test_dry_run_and_review,
        test_payloads,
        test_cli_workflow,
    ]

    passed = 0
    failed = 0

    for test in tests:
        try:
            test()
            passed += 1
        except Exception as e:
            print(f"✗ {test.__name__} failed with exception: {e}")
            failed += 1

    print("\n" + "=" * 50)
    print(f"Results: {passed} passed, {failed} failed")
    print("=" * 50)

    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
