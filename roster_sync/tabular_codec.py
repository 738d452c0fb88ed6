"""
Delimited text codec for roster tables.

Parses comma- or semicolon-delimited text into an ordered header list plus
rows of values, and serializes them back with every field quoted. Header
names may repeat; rows stay positional so duplicates survive a round trip.
"""
import csv
import io
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

import pandas as pd

from .file_utils import atomic_write_text

logger = logging.getLogger(__name__)

BOM = "\ufeff"
EXCEL_EXTENSIONS = {".xlsx", ".xls"}


@dataclass
class Table:
    """A parsed table: headers plus positional rows."""
    headers: List[str] = field(default_factory=list)
    rows: List[List[str]] = field(default_factory=list)
    delimiter: str = ","

    def field_map(self, row: List[str]) -> Dict[str, str]:
        """Map header -> value for one row (first occurrence of a name wins)."""
        mapping: Dict[str, str] = {}
        for header, value in zip(self.headers, row):
            mapping.setdefault(header, value)
        return mapping

    def __len__(self):
        return len(self.rows)


def detect_delimiter(header_line: str) -> str:
    """Comma if the header line contains one, otherwise semicolon."""
    return "," if "," in header_line else ";"


def split_respecting_quotes(line: str, delimiter: str) -> List[str]:
    """
    Split a line on `delimiter`, ignoring delimiters inside quoted segments.

    Quote characters are kept in the captured fields; clean_field() strips
    them afterwards.
    """
    fields = []
    current = []
    in_quotes = False
    for ch in line:
        if ch == '"':
            in_quotes = not in_quotes
            current.append(ch)
        elif ch == delimiter and not in_quotes:
            fields.append("".join(current))
            current = []
        else:
            current.append(ch)
    fields.append("".join(current))
    return fields


def clean_field(raw: str) -> str:
    """Trim whitespace and surrounding quotes from a raw field."""
    value = raw.strip()
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return value[1:-1].replace('""', '"')
    return value.strip('"')


def parse(text: str) -> Table:
    """
    Parse delimited text into a Table.

    A leading byte-order mark is stripped, blank lines are skipped, and the
    delimiter is inferred from the header line. Values beyond the header
    count are dropped; short rows are kept as they are.
    """
    if text.startswith(BOM):
        text = text[len(BOM):]

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [line for line in text.split("\n") if line.strip()]
    if not lines:
        return Table()

    header_line = lines[0]
    delimiter = detect_delimiter(header_line)
    headers = [clean_field(h) for h in split_respecting_quotes(header_line, delimiter)]

    rows = []
    for line in lines[1:]:
        values = [clean_field(v) for v in split_respecting_quotes(line, delimiter)]
        rows.append(values[:len(headers)])

    return Table(headers=headers, rows=rows, delimiter=delimiter)


def serialize(headers: List[str], rows: List[List[str]], delimiter: str = ",") -> str:
    """Serialize headers and rows with every field quoted, newline-terminated."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=delimiter, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow([str(h) for h in headers])
    for row in rows:
        writer.writerow([str(v) for v in row])
    return buffer.getvalue()


def read_excel_table(path: Path) -> Table:
    """Load the first sheet of a workbook as a Table of strings."""
    df = pd.read_excel(path, dtype=str, keep_default_na=False)
    headers = [str(c) for c in df.columns]
    rows = [[str(v).strip() for v in row] for row in df.itertuples(index=False, name=None)]
    return Table(headers=headers, rows=rows)


def read_table(path: Path) -> Table:
    """
    Read a roster file from disk.

    CSV files are decoded as UTF-8 (a BOM is accepted); Excel workbooks are
    read through pandas.
    """
    path = Path(path)
    if path.suffix.lower() in EXCEL_EXTENSIONS:
        return read_excel_table(path)
    with open(path, 'r', encoding='utf-8', newline='') as f:
        return parse(f.read())


def write_table(path: Path, headers: List[str], rows: List[List[str]],
                delimiter: str = ","):
    """Serialize and atomically write a table."""
    atomic_write_text(path, serialize(headers, rows, delimiter))


def convert_excel_to_csv(path: Path) -> Path:
    """
    Convert a workbook to `<stem>_converted.csv` next to it.

    Returns the CSV path. An existing conversion is left as it is so edits
    made to it are not lost.
    """
    path = Path(path)
    target = path.with_name(f"{path.stem}_converted.csv")
    if target.exists():
        logger.info(f"Using existing conversion: {target.name}")
        return target
    table = read_excel_table(path)
    write_table(target, table.headers, table.rows)
    logger.info(f"Converted {path.name} -> {target.name} ({len(table.rows)} rows)")
    return target


def table_to_pairs(table: Table) -> List[List[Tuple[str, str]]]:
    """Per-row (header, value) pairs, positional."""
    return [list(zip(table.headers, row)) for row in table.rows]
