"""CSV and paste import of clients, sub-clients and work entries.

Input arrives as a Table: rows of either named columns (``header`` mode, one
dict per CSV row) or positional columns (``positional`` CSV mode, or
``paste`` mode for tab-separated text). Each semantic field is located through
the FieldRule tables below, evaluated once per run into a ColumnMap.

Every row yields exactly one outcome: a creation draft, a RowRejection with
the row's 1-based number in the source, or (for client and sub-client
imports) a silent drop as a duplicate. A failure inside one row never stops
the rest of the batch.

Row numbering:
    header / positional CSV with a header row: data index + 2
    positional CSV without a header row:       data index + 1
    paste:                                     line index + 1
"""

import csv
import io
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Generic, Iterable, TypeVar, Union

from .billing import calculate_bill
from .models import (
    Client,
    ClientDraft,
    SubClient,
    SubClientDraft,
    WorkEntryDraft,
    to_local_naive,
)

logger = logging.getLogger("hourbook.importer")

# A raw cell as it comes out of a reader: text, a number, a native boolean, or empty.
Cell = Union[str, int, float, bool, None]
Row = Union[dict, list]

MODES = ("header", "positional", "paste")
PREVIEW_LIMIT = 10
SPREADSHEET_EPOCH = datetime(1899, 12, 30)

# Sub-client paste tolerates columns aligned with runs of spaces
SUB_CLIENT_PASTE_SPLIT = r"\t| {2,}"

T = TypeVar("T")


class ImportFileError(ValueError):
    """The input file could not be read or parsed; nothing was imported."""


class _RowRejected(Exception):
    """Raised by row handlers to reject the current row with a reason."""


# =============================================================================
# Column resolution
# =============================================================================


@dataclass(frozen=True)
class FieldRule:
    """How to find one semantic field: header synonyms, then fixed positions."""
    name: str
    synonyms: tuple[str, ...] = ()
    csv_position: int | None = None    # column index in positional CSV mode (A=0)
    paste_position: int | None = None  # column index in pasted text


# Positional CSV columns: B=date, C=client, D=sub-client, E=project, F=notes,
# H=hours, I=bill, J=invoiced, K=rate, L=paid
WORK_ENTRY_FIELDS = (
    FieldRule("date", ("date", "date/time", "datetime"), 1, 0),
    FieldRule("client", ("client", "clients", "client name"), 2, 1),
    FieldRule("sub_client", ("sub client", "subclient", "sub-client", "sub client name"), 3, 2),
    FieldRule("project", ("project",), 4, 3),
    FieldRule("description", ("task description", "description", "task", "notes"), 5, 4),
    FieldRule("hours", ("hours", "hrs"), 7, 5),
    FieldRule("bill", ("bill", "amount"), 8, 6),
    FieldRule("invoiced", ("invoiced",), 9, 7),
    FieldRule("rate", ("rate", "hourly rate"), 10, 8),
    FieldRule("paid", ("paid",), 11, 9),
)

# Positional client/sub-client extraction reads the same timesheet layout
CLIENT_FIELDS = (
    FieldRule("name", ("name", "client", "client name", "clients"), 2, 0),
    FieldRule("rate", ("rate", "default rate", "hourly rate"), 10, 1),
)

SUB_CLIENT_FIELDS = (
    FieldRule("client", ("client", "clients", "client name"), 2, 0),
    FieldRule("sub_client", ("sub client", "subclient", "sub-client", "sub client name"), 3, 1),
)

WORK_ENTRY_REQUIRED = ("date", "client", "sub_client", "hours")
WORK_ENTRY_PASTE_REQUIRED = ("date", "client", "sub_client", "project", "description", "hours")


def normalize_header(header: str) -> str:
    return " ".join(str(header or "").strip().lower().split())


@dataclass
class ColumnMap:
    """Resolved location of each field: a header key or a column index."""
    mode: str
    columns: dict[str, Union[str, int]] = field(default_factory=dict)

    def get(self, row: Row, name: str) -> Cell:
        key = self.columns.get(name)
        if key is None:
            return None
        if isinstance(row, dict):
            return row.get(key)
        if isinstance(key, int) and 0 <= key < len(row):
            return row[key]
        return None

    def has(self, name: str) -> bool:
        return name in self.columns


def resolve_columns(
    rules: Iterable[FieldRule],
    mode: str,
    headers: Iterable[str] | None = None,
) -> ColumnMap:
    """Map each field to its column for the given mode.

    Header mode: the first synonym (in rule order) with an exact,
    case-insensitive header match wins. Positional and paste modes use the
    rule's fixed column index. Fields with no match are absent.
    """
    if mode not in MODES:
        raise ValueError(f"Unknown import mode: {mode}")

    column_map = ColumnMap(mode=mode)
    normalized: dict[str, str] = {}
    for header in headers or []:
        if header is None:
            continue
        normalized.setdefault(normalize_header(header), header)

    for rule in rules:
        if mode == "header":
            for synonym in rule.synonyms:
                if synonym in normalized:
                    column_map.columns[rule.name] = normalized[synonym]
                    break
        elif mode == "positional":
            if rule.csv_position is not None:
                column_map.columns[rule.name] = rule.csv_position
        elif rule.paste_position is not None:
            column_map.columns[rule.name] = rule.paste_position

    return column_map


# =============================================================================
# Cell coercion
# =============================================================================

_NUMBER_PREFIX = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_TRUE_PATTERN = re.compile(r"true|yes|y|1", re.IGNORECASE)
_TIME_PATTERN = re.compile(r"(\d{1,2}):(\d{2})")

_GENERIC_DATE_FORMATS = (
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %I:%M %p",
    "%B %d, %Y",
    "%b %d, %Y",
    "%B %d %Y",
    "%b %d %Y",
    "%d %B %Y",
    "%d %b %Y",
)


def is_blank(value: Cell) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def cell_text(value: Cell) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_number(value: Cell) -> float | None:
    """Parse a finite number from a cell, reading a leading numeric prefix of text.

    "120" and "5 hrs" parse; "$120", "", booleans and non-finite values do not.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    match = _NUMBER_PREFIX.match(str(value))
    if not match:
        return None
    number = float(match.group(0))
    return number if math.isfinite(number) else None


def parse_hours(value: Cell) -> float | None:
    """Hours must be a finite number > 0; a decimal comma is accepted."""
    if isinstance(value, str):
        value = value.replace(",", ".", 1)
    hours = parse_number(value)
    if hours is None or hours <= 0:
        return None
    return hours


def parse_bool(value: Cell) -> bool:
    """True for native True, 1, or text true/yes/y/1 (any case); otherwise False."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value == 1
    return bool(_TRUE_PATTERN.fullmatch(str(value).strip()))


@dataclass(frozen=True)
class ParsedDate:
    value: datetime
    fallback: bool = False  # True when the cell was unreadable and "now" was used


def _parse_generic_date(text: str) -> datetime | None:
    iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return to_local_naive(datetime.fromisoformat(iso_text))
    except ValueError:
        pass
    for fmt in _GENERIC_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _parse_slash_date(text: str) -> datetime | None:
    """Parse "25/03/2025 7:30 (GMT)" style values.

    A first component above 12 can only be a day, so the value is read as
    DD/MM/YYYY; otherwise MM/DD/YYYY. A two-digit year is 20YY, and any
    other year that is not four digits is unreadable. A trailing HH:MM token
    sets the time.
    """
    tokens = text.split()
    parts = tokens[0].split("/")
    if len(parts) < 3 or len(parts[2]) not in (2, 4):
        return None
    try:
        first, second, year = (int(p) for p in parts[:3])
    except ValueError:
        return None
    if len(parts[2]) == 2:
        year += 2000
    if first > 12:
        day, month = first, second
    else:
        month, day = first, second
    try:
        result = datetime(year, month, day)
    except ValueError:
        return None

    if len(tokens) > 1:
        time_text = tokens[1].strip("()")
        match = _TIME_PATTERN.match(time_text)
        if match:
            hour, minute = int(match.group(1)), int(match.group(2))
            if hour < 24 and minute < 60:
                result = result.replace(hour=hour, minute=minute)
    return result


def _parse_dashed_date(text: str) -> datetime | None:
    date_part = text.split()[0].split("T")[0]
    parts = date_part.split("-")
    if len(parts) != 3:
        return None
    try:
        year, month, day = (int(p) for p in parts)
        return datetime(year, month, day)
    except ValueError:
        return None


def _parse_serial_date(value: Union[str, int, float]) -> datetime | None:
    """Spreadsheet serial day count (days since 1899-12-30)."""
    try:
        serial = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(serial):
        return None
    try:
        return SPREADSHEET_EPOCH + timedelta(days=serial)
    except OverflowError:
        return None


def parse_date_value(value: Cell, now: datetime | None = None) -> ParsedDate:
    """Parse a date cell, first success wins:

    1. ISO-8601 or a common US-locale format
    2. text with "/": day-first when the first component is > 12, else month-first
    3. text with "-": literal year-month-day
    4. spreadsheet serial day count
    5. otherwise the current date/time, flagged as a fallback
    """
    result: datetime | None = None
    if isinstance(value, datetime):
        result = to_local_naive(value)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        result = _parse_serial_date(value)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        result = _parse_generic_date(text)
        if result is None:
            if "/" in text:
                result = _parse_slash_date(text)
            elif "-" in text:
                result = _parse_dashed_date(text)
            else:
                result = _parse_serial_date(text)

    if result is None:
        return ParsedDate(value=now or datetime.now(), fallback=True)
    return ParsedDate(value=result)


# =============================================================================
# Input tables
# =============================================================================


@dataclass
class Table:
    """Rows read from one CSV file or paste, plus how to number them."""
    mode: str
    rows: list[Row] = field(default_factory=list)
    headers: list[str] | None = None
    first_row_number: int = 2


def parse_csv_text(
    text: str,
    mode: str = "header",
    has_header: bool = True,
    delimiter: str = ",",
) -> Table:
    """Parse CSV text. Raises ImportFileError for malformed input."""
    if mode not in ("header", "positional"):
        raise ValueError(f"CSV mode must be 'header' or 'positional', got {mode!r}")
    try:
        if mode == "header":
            reader = csv.DictReader(io.StringIO(text, newline=""), delimiter=delimiter, strict=True)
            rows: list[Row] = [dict(row) for row in reader]
            headers = list(reader.fieldnames or [])
            return Table(mode=mode, rows=rows, headers=headers, first_row_number=2)

        all_rows = list(csv.reader(io.StringIO(text, newline=""), delimiter=delimiter, strict=True))
    except csv.Error as e:
        raise ImportFileError(f"Malformed CSV: {e}") from e

    if has_header and all_rows:
        return Table(mode=mode, rows=all_rows[1:], headers=all_rows[0], first_row_number=2)
    return Table(mode=mode, rows=all_rows, first_row_number=1)


def read_csv_rows(
    path: Path,
    mode: str = "header",
    has_header: bool = True,
    encoding: str = "utf-8-sig",
    delimiter: str = ",",
) -> Table:
    """Read a CSV file fully before any row is processed."""
    try:
        with open(path, newline="", encoding=encoding) as f:
            text = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise ImportFileError(f"Could not read {path}: {e}") from e
    table = parse_csv_text(text, mode=mode, has_header=has_header, delimiter=delimiter)
    logger.debug("Read %d rows from %s (%s mode)", len(table.rows), path, mode)
    return table


def parse_paste_text(text: str, split_pattern: str = "\t") -> Table:
    """Split pasted text into one positional row per line.

    Blank lines before the first and after the last data line are dropped;
    cells themselves are kept as-is so a leading empty column stays in place.
    """
    lines = (text or "").splitlines()
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    rows: list[Row] = [re.split(split_pattern, line) for line in lines]
    return Table(mode="paste", rows=rows, first_row_number=1)


# =============================================================================
# Results
# =============================================================================


@dataclass
class RowRejection:
    row: int
    reason: str


@dataclass
class ImportResult(Generic[T]):
    """Outcome of one import batch."""
    kind: str
    accepted: list[T] = field(default_factory=list)
    rejected: list[RowRejection] = field(default_factory=list)
    date_fallback_rows: list[int] = field(default_factory=list)
    duplicates: int = 0

    @property
    def status(self) -> str:
        if not self.accepted:
            return "failed"
        if self.rejected:
            return "partial"
        return "ok"

    @property
    def rejected_rows(self) -> list[int]:
        return [r.row for r in self.rejected]

    def rejected_rows_preview(self, limit: int = PREVIEW_LIMIT) -> str:
        return format_row_list(self.rejected_rows, limit)

    def messages(self) -> list[tuple[str, str]]:
        """(level, text) pairs for display: success/error, warning, info."""
        messages = []
        if self.accepted:
            messages.append(("success", f"Imported {len(self.accepted)} {self.kind}"))
        else:
            messages.append(("error", f"No valid {self.kind} found"))
        if self.rejected:
            messages.append((
                "warning",
                f"Skipped {len(self.rejected)} invalid rows "
                f"(e.g., rows: {self.rejected_rows_preview()})",
            ))
        if self.date_fallback_rows:
            messages.append((
                "info",
                f"Unreadable dates set to the current date "
                f"(rows: {format_row_list(self.date_fallback_rows)})",
            ))
        return messages

    def to_dict(self) -> dict:
        return {
            "outcome": self.status,
            "accepted": len(self.accepted),
            "rejected": len(self.rejected),
            "rejected_rows": self.rejected_rows,
            "rejections": [{"row": r.row, "reason": r.reason} for r in self.rejected],
            "date_fallback_rows": list(self.date_fallback_rows),
            "duplicates": self.duplicates,
            "messages": [{"level": level, "text": text} for level, text in self.messages()],
        }


def format_row_list(rows: list[int], limit: int = PREVIEW_LIMIT) -> str:
    """"2, 5, 9" or, beyond ``limit`` rows, the first ``limit`` followed by "..."."""
    shown = ", ".join(str(r) for r in rows[:limit])
    if len(rows) > limit:
        return shown + "..."
    return shown


def _is_empty_row(row: Row) -> bool:
    if not row:
        return True
    values = row.values() if isinstance(row, dict) else row
    return all(is_blank(v) if not isinstance(v, list) else not v for v in values)


def _process_rows(
    table: Table,
    result: ImportResult,
    handler: Callable[[Row, int], object],
) -> ImportResult:
    """Run handler on each row in isolation and collect its outcome.

    The handler returns a draft to accept, None to drop the row silently, or
    raises _RowRejected. Any other exception rejects only the current row.
    """
    for offset, row in enumerate(table.rows):
        row_number = table.first_row_number + offset
        try:
            if _is_empty_row(row):
                raise _RowRejected("empty row")
            draft = handler(row, row_number)
        except _RowRejected as e:
            logger.info("Row %d rejected: %s", row_number, e)
            result.rejected.append(RowRejection(row=row_number, reason=str(e)))
            continue
        except Exception as e:
            logger.warning("Row %d failed: %s", row_number, e)
            result.rejected.append(RowRejection(row=row_number, reason=f"unexpected error: {e}"))
            continue
        if draft is None:
            result.duplicates += 1
            continue
        result.accepted.append(draft)

    logger.info(
        "Import of %s: %d accepted, %d rejected, %d duplicates dropped",
        result.kind, len(result.accepted), len(result.rejected), result.duplicates,
    )
    return result


# =============================================================================
# Name lookup
# =============================================================================


class NameLookup:
    """Case-insensitive client and (client, sub-client) name resolution."""

    def __init__(self, clients: Iterable[Client], sub_clients: Iterable[SubClient] = ()) -> None:
        self._clients: dict[str, Client] = {}
        for client in clients:
            self._clients.setdefault(client.name.strip().lower(), client)
        self._sub_clients: dict[tuple[str, str], SubClient] = {}
        for sub in sub_clients:
            self._sub_clients.setdefault((sub.client_id, sub.name.strip().lower()), sub)

    def client(self, name: str) -> Client | None:
        return self._clients.get(name.strip().lower())

    def sub_client(self, client: Client, name: str) -> SubClient | None:
        return self._sub_clients.get((client.id, name.strip().lower()))


# =============================================================================
# Importers
# =============================================================================


def import_work_entries(
    table: Table,
    clients: Iterable[Client],
    sub_clients: Iterable[SubClient],
    now: datetime | None = None,
) -> ImportResult[WorkEntryDraft]:
    """Resolve rows into work entry drafts against known clients and sub-clients.

    Unknown client or sub-client names reject the row; nothing is created.
    A missing or unparseable rate falls back to the client's default rate,
    and a missing or unparseable bill is computed as hours * rate.
    """
    clients = list(clients)
    lookup = NameLookup(clients, sub_clients)
    columns = resolve_columns(WORK_ENTRY_FIELDS, table.mode, table.headers)
    required = WORK_ENTRY_PASTE_REQUIRED if table.mode == "paste" else WORK_ENTRY_REQUIRED
    result: ImportResult[WorkEntryDraft] = ImportResult(kind="work entries")

    def handle(row: Row, row_number: int) -> WorkEntryDraft:
        missing = [name for name in required if is_blank(columns.get(row, name))]
        if missing:
            raise _RowRejected(f"missing required field(s): {', '.join(missing)}")

        client_name = cell_text(columns.get(row, "client"))
        client = lookup.client(client_name)
        if client is None:
            raise _RowRejected(f'unknown client "{client_name}"')

        sub_client_name = cell_text(columns.get(row, "sub_client"))
        sub_client = lookup.sub_client(client, sub_client_name)
        if sub_client is None:
            raise _RowRejected(f'unknown sub-client "{sub_client_name}" for client "{client_name}"')

        raw_hours = columns.get(row, "hours")
        hours = parse_hours(raw_hours)
        if hours is None:
            raise _RowRejected(f"invalid hours {raw_hours!r}")

        rate = parse_number(columns.get(row, "rate"))
        if rate is None:
            rate = client.rate or 0.0
            logger.debug("Row %d: using client default rate %s", row_number, rate)
        elif rate < 0:
            raise _RowRejected(f"invalid rate {rate}")

        bill = parse_number(columns.get(row, "bill"))
        if bill is None:
            bill = calculate_bill(hours, rate)

        parsed_date = parse_date_value(columns.get(row, "date"), now)
        if parsed_date.fallback:
            logger.warning(
                "Row %d: unreadable date %r, using current date",
                row_number, columns.get(row, "date"),
            )
            result.date_fallback_rows.append(row_number)

        return WorkEntryDraft(
            date=parsed_date.value,
            client_id=client.id,
            sub_client_id=sub_client.id,
            project=cell_text(columns.get(row, "project")),
            task_description=cell_text(columns.get(row, "description")),
            file_attachments=[],
            hours=hours,
            rate=rate,
            bill=bill,
            invoiced=parse_bool(columns.get(row, "invoiced")),
            paid=parse_bool(columns.get(row, "paid")),
        )

    return _process_rows(table, result, handle)


def import_clients(
    table: Table,
    existing: Iterable[Client] = (),
) -> ImportResult[ClientDraft]:
    """Resolve rows into client drafts, dropping case-insensitive duplicate names."""
    columns = resolve_columns(CLIENT_FIELDS, table.mode, table.headers)
    seen = {client.name.strip().lower() for client in existing}
    result: ImportResult[ClientDraft] = ImportResult(kind="clients")

    def handle(row: Row, row_number: int) -> ClientDraft | None:
        name = cell_text(columns.get(row, "name"))
        if not name:
            raise _RowRejected("missing client name")

        raw_rate = columns.get(row, "rate")
        rate = parse_number(raw_rate)
        if rate is None:
            rate = 0.0
        elif rate < 0:
            raise _RowRejected(f"invalid rate {raw_rate!r}")

        key = name.lower()
        if key in seen:
            return None
        seen.add(key)
        return ClientDraft(name=name, rate=rate)

    return _process_rows(table, result, handle)


def import_sub_clients(
    table: Table,
    clients: Iterable[Client],
    existing: Iterable[SubClient] = (),
) -> ImportResult[SubClientDraft]:
    """Resolve rows into sub-client drafts under known clients.

    Duplicates by (client, sub-client name), case-insensitive, are dropped
    silently, including pairs that already exist.
    """
    lookup = NameLookup(clients)
    columns = resolve_columns(SUB_CLIENT_FIELDS, table.mode, table.headers)
    seen = {(sub.client_id, sub.name.strip().lower()) for sub in existing}
    result: ImportResult[SubClientDraft] = ImportResult(kind="sub-clients")

    def handle(row: Row, row_number: int) -> SubClientDraft | None:
        client_name = cell_text(columns.get(row, "client"))
        sub_client_name = cell_text(columns.get(row, "sub_client"))
        if not client_name or not sub_client_name:
            raise _RowRejected("missing client name or sub-client name")

        client = lookup.client(client_name)
        if client is None:
            raise _RowRejected(f'unknown client "{client_name}"')

        key = (client.id, sub_client_name.lower())
        if key in seen:
            return None
        seen.add(key)
        return SubClientDraft(name=sub_client_name, client_id=client.id)

    return _process_rows(table, result, handle)
