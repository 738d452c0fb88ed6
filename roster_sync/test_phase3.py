"""
Phase 3: Record Store Tests
Loading, dedup, edits with audit trail, placeholders and persistence.
"""
import sys
import time
import random
import shutil
import tempfile
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from roster_sync.errors import (
    DuplicateIdentifierError, RecordNotFoundError, ValidationError,
)
from roster_sync.file_utils import DebouncedWriter
from roster_sync.record_store import RecordStore, composite_key, generate_identifier
from roster_sync.schema import TableMode
from roster_sync.tabular_codec import parse, read_table

ROSTER_TEXT = (
    "Barcode,First Name,Last Name,Group,Photographed\n"
    "111,Amy,Lee,Red,yes\n"
    "222,Ben,Ng,Blue,\n"
)

T1 = datetime(2024, 5, 1, 10, 0, 0)
T2 = datetime(2024, 5, 1, 11, 30, 0)


def make_store(text: str = ROSTER_TEXT) -> RecordStore:
    return RecordStore.from_table(parse(text), source="test.csv")


def test_load():
    """Test basic loading and metadata columns."""
    print("\nTesting load...")
    store = make_store()
    assert store.mode == TableMode.IDENTIFIER
    assert len(store) == 2
    assert store.keys == ["111", "222"]
    assert store.headers[-4:] == [
        "Photographed By", "Photographed At", "Last Edited By", "Last Edited At",
    ]
    assert store.get("111").photographed
    assert not store.get("222").photographed

    try:
        store.get("999")
        assert False, "Should have raised RecordNotFoundError"
    except RecordNotFoundError:
        pass

    # Photographer metadata alone marks a record photographed
    store = make_store("Barcode,First Name,Photographed By\n5,Cy,Ann\n")
    assert store.get("5").photographed
    print("✓ Load works")


def test_roster_dedup():
    """Rows with the same name and group collapse into one record."""
    print("\nTesting roster dedup...")
    text = (
        "First Name,Last Name,Group,Note\n"
        "Amy,Lee,Red,\n"
        "amy ,LEE,red,second\n"
        "Amy,Lee,No Group,\n"
        "Amy,Lee,,\n"
    )
    store = make_store(text)
    assert store.mode == TableMode.ROSTER
    assert len(store) == 2
    assert store.duplicates_merged == 2

    red = store.get(composite_key("Amy", "Lee", "Red"))
    # Empty fields are filled from the duplicate
    assert red.fields["Note"] == "second"
    assert composite_key("Amy", "Lee", "No Group") == composite_key("amy", "lee", "")
    print("✓ Roster dedup works")


def test_dedup_photographed_survives_reload():
    """A duplicate marked photographed wins over a 'no' cell, on disk too."""
    print("\nTesting dedup photographed reload...")
    temp_dir = Path(tempfile.mkdtemp())
    try:
        store = make_store(
            "First Name,Last Name,Group,Photographed,Photographed By\n"
            "Amy,Lee,Red,no,\n"
            "Amy,Lee,Red,yes,Ann\n"
        )
        amy = store.get(composite_key("Amy", "Lee", "Red"))
        assert amy.photographed
        assert amy.fields["Photographed"] == "yes"
        assert amy.fields["Photographed By"] == "Ann"

        path = temp_dir / "roster.csv"
        store.save(path)
        reloaded = RecordStore.from_file(path)
        assert reloaded.get(composite_key("Amy", "Lee", "Red")).photographed

        store = make_store(
            "Barcode,First Name,Last Name,Group,Photographed\n"
            "1,Amy,Lee,Red,0\n"
            "1,Amy,Lee,Red,x\n"
        )
        assert store.get("1").fields["Photographed"] == "x"
        store.save(path)
        assert RecordStore.from_file(path).get("1").photographed
        print("✓ Dedup photographed survives reload")
    finally:
        shutil.rmtree(temp_dir)


def test_metadata_headers_any_case():
    """Metadata columns are found case-insensitively and never duplicated."""
    print("\nTesting metadata header case...")
    store = make_store(
        "Barcode,First Name,Last Name,Group,photographed by,last edited at\n"
        "1,Amy,Lee,Red,Ann,2024-05-01 09:00:00\n"
        "2,Ben,Ng,Blue,,\n"
    )
    assert store.headers == [
        "Barcode", "First Name", "Last Name", "Group", "photographed by",
        "last edited at", "Photographed At", "Last Edited By",
    ]
    assert store.get("1").photographed
    assert not store.get("2").photographed

    store.mark_done("2", "Cy", now=T1)
    assert store.get("2").fields["photographed by"] == "Cy"
    assert store.get("2").fields["Photographed At"] == "2024-05-01 10:00:00"

    record = store.get("1")
    record.fields["Group"] = "Blue"
    updated = store.update(record, "Ben", now=T2)
    assert updated.fields["last edited at"] == "2024-05-01 11:30:00"
    assert updated.fields["Last Edited By"] == "Ben"

    store.mark_undone("1")
    assert store.get("1").fields["photographed by"] == ""
    assert not store.get("1").photographed
    assert store.to_dataframe()['last_edited_at'].tolist() == ["2024-05-01 11:30:00", ""]
    print("✓ Metadata header case works")


def test_load_is_idempotent():
    """Doubling rows, or differing only in audit columns, adds no records."""
    print("\nTesting idempotent load...")
    once = make_store()
    lines = ROSTER_TEXT.strip().split("\n")
    doubled = make_store("\n".join(lines + lines[1:]) + "\n")
    assert len(doubled) == len(once)
    assert doubled.to_rows() == once.to_rows()

    text = (
        "Barcode,First Name,Last Name,Group,,First Name_O\n"
        "1,Amy,Lee,Red,,Amie\n"
        "1,Amy,Lee,Red,,Aimee\n"
    )
    store = make_store(text)
    assert len(store) == 1
    assert store.get("1").audit == {"First Name": "Amie"}
    assert "" not in store.headers
    assert "First Name_O" not in store.headers
    print("✓ Idempotent load works")


def test_malformed_rows_skipped():
    """Short rows and rows with neither identifier nor name are skipped."""
    print("\nTesting malformed rows...")
    text = (
        "Barcode,First Name,Last Name,Group\n"
        "1,Amy\n"
        "2,Ben,Ng,Blue\n"
        ",,,Red\n"
    )
    store = make_store(text)
    assert len(store) == 1
    assert store.keys == ["2"]
    assert [n for n, _ in store.skipped_rows] == [2, 4]
    print("✓ Malformed rows skipped")


def test_update_audit_trail():
    """The first original value of a tracked column is kept across edits."""
    print("\nTesting update audit...")
    store = make_store()

    record = store.get("111")
    record.fields["First Name"] = "Amie"
    updated = store.update(record, "Ann", now=T1)
    assert updated.audit == {"First Name": "Amy"}
    assert updated.fields["Last Edited By"] == "Ann"
    assert updated.fields["Last Edited At"] == "2024-05-01 10:00:00"

    record = store.get("111")
    record.fields["First Name"] = "Aimee"
    updated = store.update(record, "Ben", now=T2)
    assert updated.audit == {"First Name": "Amy"}
    assert updated.fields["Last Edited By"] == "Ben"

    # Returned records are copies
    updated.fields["First Name"] = "Mutated"
    assert store.get("111").fields["First Name"] == "Aimee"

    # Clearing the audit lets the next edit be captured again
    store.clear_audit("111", "First Name")
    record = store.get("111")
    record.fields["First Name"] = "Amy"
    assert store.update(record, "Ann").audit == {"First Name": "Aimee"}

    # Audit entries only exist for columns the table has
    record = store.get("111")
    record.audit["Nickname"] = "Ames"
    assert "Nickname" not in store.update(record, "Ann").audit
    assert "Nickname" not in store.headers
    print("✓ Update audit works")


def test_identifier_change_and_validation():
    """Identifier edits re-key the record; invalid edits leave the store untouched."""
    print("\nTesting identifier change...")
    store = make_store()

    record = store.get("111")
    record.fields["Barcode"] = "333"
    updated = store.update(record, "Ann", now=T1)
    assert updated.key == "333"
    assert "111" not in store
    assert "333" in store
    assert updated.audit["Barcode"] == "111"
    assert store.keys == ["333", "222"]

    headers_before = store.headers
    rows_before = store.to_rows()
    record = store.get("333")
    record.fields["Barcode"] = "222"
    try:
        store.update(record, "Ann")
        assert False, "Should have raised DuplicateIdentifierError"
    except DuplicateIdentifierError as e:
        assert e.identifier == "222"
    assert store.headers == headers_before
    assert store.to_rows() == rows_before

    record = store.get("333")
    record.fields["Last Name"] = " "
    try:
        store.update(record, "Ann")
        assert False, "Should have raised ValidationError"
    except ValidationError:
        pass

    record = store.get("333")
    record.fields["Barcode"] = ""
    try:
        store.update(record, "Ann")
        assert False, "Should have raised ValidationError"
    except ValidationError:
        pass
    assert store.to_rows() == rows_before
    print("✓ Identifier change works")


def test_mark_done_keeps_first_photographer():
    """Test that the first photographer credit is sticky."""
    print("\nTesting mark done...")
    store = make_store()

    done = store.mark_done("222", "Ann", now=T1)
    assert done.photographed
    assert done.fields["Photographed"] == "yes"
    assert done.fields["Photographed By"] == "Ann"
    assert done.fields["Photographed At"] == "2024-05-01 10:00:00"

    done = store.mark_done("222", "Ben", now=T2)
    assert done.fields["Photographed By"] == "Ann"
    assert done.fields["Photographed At"] == "2024-05-01 10:00:00"

    undone = store.mark_undone("222")
    assert not undone.photographed
    assert undone.fields["Photographed"] == ""
    assert undone.fields["Photographed By"] == ""

    assert store.mark_done("222", "Ben", now=T2).fields["Photographed By"] == "Ben"

    try:
        store.mark_done("nope", "Ann")
        assert False, "Should have raised RecordNotFoundError"
    except RecordNotFoundError:
        pass
    print("✓ Mark done works")


def test_create_placeholder():
    """Placeholders go to the head of the store with increasing numbers."""
    print("\nTesting placeholders...")
    store = make_store()
    store.rng = random.Random(7)

    first = store.create_placeholder()
    assert store.keys[0] == first.key
    assert first.fields["First Name"] == "Add"
    assert first.fields["Last Name"] == "Subject1"
    assert first.fields["Group"] == "No Group"
    identifier = first.fields["Barcode"]
    assert len(identifier) == 15 and identifier.isdigit()

    second = store.create_placeholder()
    assert second.fields["Last Name"] == "Subject2"
    assert store.keys[:2] == [second.key, first.key]
    assert len(store.placeholders()) == 2

    try:
        store.create_placeholder("111")
        assert False, "Should have raised DuplicateIdentifierError"
    except DuplicateIdentifierError:
        pass
    assert len(store) == 4

    # Numbering continues after the highest existing placeholder
    store = make_store("Barcode,First Name,Last Name,Group\n9,Add,Subject7,No Group\n")
    assert store.create_placeholder("10").fields["Last Name"] == "Subject8"

    # Roster without an identifier column gains one
    store = make_store("First Name,Last Name,Group\nAmy,Lee,Red\n")
    placeholder = store.create_placeholder()
    assert "Barcode" in store.headers
    assert store.identifier(placeholder) == placeholder.key

    # Full-name tables get the placeholder name in the single name column
    store = make_store("Name,Team\nAmy Lee,Red\n")
    placeholder = store.create_placeholder("42")
    assert placeholder.fields["Name"] == "Add Subject1"
    assert store.is_placeholder(placeholder)
    assert store.first_name(store.get(composite_key("Amy", "Lee", "Red"))) == "Amy"

    assert len(generate_identifier([], random.Random(1))) == 15
    print("✓ Placeholders work")


def test_serialize_with_audit_columns():
    """Audit columns follow a spacer column and are restored on reload."""
    print("\nTesting audit serialization...")
    temp_dir = Path(tempfile.mkdtemp())
    try:
        store = make_store()
        record = store.get("111")
        record.fields["First Name"] = "Amie"
        record.fields["Group"] = "Green"
        store.update(record, "Ann", now=T1)

        headers, rows = store.to_rows()
        assert headers[-3:] == ["", "First Name_O", "Group_O"]
        assert rows[0][-3:] == ["", "Amy", "Red"]
        assert rows[1][-3:] == ["", "", ""]

        path = temp_dir / "roster.csv"
        store.save(path)
        reloaded = RecordStore.from_file(path)
        assert reloaded.headers == store.headers
        assert reloaded.get("111").audit == {"First Name": "Amy", "Group": "Red"}
        assert reloaded.get("111").fields["First Name"] == "Amie"
        assert reloaded.to_rows() == store.to_rows()

        # Repeated header names keep their own values
        store = make_store("ID,Note,First Name,Last Name,Group,Note\n1,a,Amy,Lee,Red,b\n")
        store.save(path)
        table = read_table(path)
        assert table.headers[:6] == ["ID", "Note", "First Name", "Last Name", "Group", "Note"]
        assert table.rows[0][:6] == ["1", "a", "Amy", "Lee", "Red", "b"]
        print("✓ Audit serialization works")
    finally:
        shutil.rmtree(temp_dir)


def test_summary():
    """Test the pandas summary view."""
    print("\nTesting summary...")
    store = make_store()
    df = store.to_dataframe()
    assert len(df) == 2
    assert list(df['identifier']) == ["111", "222"]

    summary = store.summary()
    assert summary['total'] == 2
    assert summary['photographed'] == 1
    assert summary['placeholders'] == 0
    assert summary['by_group']["Red"] == {'total': 1, 'photographed': 1}
    assert summary['by_group']["Blue"] == {'total': 1, 'photographed': 0}
    print("✓ Summary works")


def test_debounced_writer():
    """Rapid saves coalesce into one write."""
    print("\nTesting debounced writer...")
    temp_dir = Path(tempfile.mkdtemp())
    try:
        store = make_store()
        path = temp_dir / "roster.csv"

        writer = DebouncedWriter(delay=10)
        writer.schedule(store, path)
        assert writer.pending
        assert not path.exists()
        writer.flush()
        assert path.exists()
        assert writer.writes == 1
        assert not writer.pending

        writer.schedule(store, path)
        writer.cancel()
        assert not writer.pending
        assert writer.writes == 1

        path.unlink()
        writer = DebouncedWriter(delay=0.05)
        for _ in range(5):
            writer.schedule(store, path)
        time.sleep(0.5)
        assert path.exists()
        assert writer.writes == 1
        print("✓ Debounced writer works")
    finally:
        shutil.rmtree(temp_dir)


def run_all_tests():
    """Run all Phase 3 tests."""
    print("=" * 50)
    print("Phase 3: Record Store Tests")
    print("=" * 50)

    tests = [
        test_load,
        test_roster_dedup,
        test_dedup_photographed_survives_reload,
        test_metadata_headers_any_case,
        test_load_is_idempotent,
        test_malformed_rows_skipped,
        test_update_audit_trail,
        test_identifier_change_and_validation,
        test_mark_done_keeps_first_photographer,
        test_create_placeholder,
        test_serialize_with_audit_columns,
        test_summary,
        test_debounced_writer,
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
