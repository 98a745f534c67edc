"""CSV bank statement import: parse, normalize, validate and correct rows.

Everything here is pure and works on in-memory values. Persisting an
:class:`ImportSession` between requests lives in ``import_staging`` and
writing the final rows lives in ``ledger``.
"""

import csv
import io
import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime

logger = logging.getLogger(__name__)

DATE_ALIASES = ("Date", "date", "Transaction Date", "Posting Date", "DATE")
DESCRIPTION_ALIASES = (
    "Description",
    "description",
    "Particulars",
    "particulars",
    "Details",
    "details",
    "DESCRIPTION",
)
AMOUNT_ALIASES = ("Amount", "amount", "AMOUNT", "Debit", "debit", "Credit", "credit")
TYPE_ALIASES = ("Type", "type", "TYPE")
DEBIT_ALIASES = ("Debit", "debit")
CREDIT_ALIASES = ("Credit", "credit")

CREDIT_KEYWORDS = ("salary", "deposit", "transfer in", "refund", "cr", "income")
DEBIT_KEYWORDS = ("withdrawal", "payment", "purchase", "transfer out", "dr", "expense")

# Priority order matters: the first matching pattern wins.
DATE_PATTERNS = (
    ("dmy", re.compile(r"(\d{2})/(\d{2})/(\d{4})")),
    ("dmy", re.compile(r"(\d{2})-(\d{2})-(\d{4})")),
    ("iso", re.compile(r"(\d{4})-(\d{2})-(\d{2})")),
)
DESCRIPTION_DISALLOWED = re.compile(r"[^\w\s\-.,&()']", re.ASCII)
ISO_DATE = re.compile(r"\d{4}-\d{2}-\d{2}", re.ASCII)
AMOUNT_DISALLOWED = re.compile(r"[^0-9.\-]")
LEADING_NUMBER = re.compile(r"-?(?:\d+(?:\.\d*)?|\.\d+)")

TRANSACTION_TYPES = ("credit", "debit")
EDITABLE_FIELDS = ("date", "description", "amount", "type", "category_id")
HEADER_LINE_COUNT = 1
MAX_CLEAN_DESCRIPTION_LENGTH = 500
IMPORT_DESCRIPTION_MAX_LENGTH = 200
MANUAL_DESCRIPTION_MAX_LENGTH = 500
AMOUNT_UPPER_BOUND = 1_000_000_000_000
DEFAULT_PROGRESS_INTERVAL = 100
SOURCE_ENCODINGS = ("utf-8-sig", "utf-8", "cp1252", "latin-1")

MESSAGES = {
    "date_invalid": "Date must be a valid date",
    "date_future": "Transaction date cannot be in the future",
    "description_required": "Description is required",
    "description_too_long": "Description must be less than {limit} characters",
    "amount_invalid": "Amount must be greater than zero",
    "amount_too_large": "Amount too large",
    "amount_decimals": "Amount must have at most 2 decimal places",
    "type_invalid": "Type must be 'credit' or 'debit'",
}


class StatementImportError(Exception):
    """A statement could not be turned into rows at all."""


class StatementReadError(StatementImportError):
    pass


class StatementParseError(StatementImportError):
    pass


class ImportSessionError(Exception):
    pass


class UnknownRowError(ImportSessionError, KeyError):
    def __str__(self):
        return f"Unknown row: {self.args[0]}"


class NoActiveEditError(ImportSessionError):
    pass


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str

    def to_dict(self):
        return {"field": self.field, "message": self.message}


@dataclass
class ParsedTransaction:
    """A candidate transaction that has not been persisted yet."""

    temp_id: str
    date: str
    description: str
    amount: float
    type: str
    original_particulars: str
    row_number: int
    category_id: int | None = None
    is_selected: bool = True
    validation_errors: list[ValidationError] = field(default_factory=list)

    @property
    def is_valid(self):
        return not self.validation_errors

    def revalidate(self, now=None):
        self.validation_errors = validate_transaction(
            self.date, self.description, self.amount, self.type, now=now
        )
        return self.validation_errors

    def signed_amount(self):
        return self.amount if self.type == "credit" else -self.amount

    def commit_payload(self):
        return {
            "date": self.date,
            "description": self.description,
            "amount": self.amount,
            "type": self.type,
            "category_id": self.category_id,
        }

    def to_dict(self):
        return {
            "temp_id": self.temp_id,
            "date": self.date,
            "description": self.description,
            "amount": self.amount,
            "type": self.type,
            "category_id": self.category_id,
            "original_particulars": self.original_particulars,
            "is_selected": self.is_selected,
            "row_number": self.row_number,
            "validation_errors": [error.to_dict() for error in self.validation_errors],
            "is_valid": self.is_valid,
        }

    @classmethod
    def from_dict(cls, payload):
        return cls(
            temp_id=payload["temp_id"],
            date=payload.get("date", ""),
            description=payload.get("description", ""),
            amount=payload.get("amount", 0.0),
            type=payload.get("type", ""),
            original_particulars=payload.get("original_particulars", ""),
            row_number=payload.get("row_number", 0),
            category_id=payload.get("category_id"),
            is_selected=bool(payload.get("is_selected", True)),
            validation_errors=[
                ValidationError(item["field"], item["message"])
                for item in payload.get("validation_errors") or []
            ],
        )


def decode_statement_bytes(file_bytes):
    for encoding in SOURCE_ENCODINGS:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def read_statement(stream):
    """Read an uploaded file object into text, raising on unreadable input."""
    try:
        file_bytes = stream.read()
    except (OSError, ValueError) as exc:
        raise StatementReadError("Failed to read file") from exc
    if isinstance(file_bytes, str):
        return file_bytes
    content = decode_statement_bytes(file_bytes or b"")
    if content is None:
        raise StatementReadError("Failed to read file")
    return content


def first_value(raw_row, aliases):
    for alias in aliases:
        value = raw_row.get(alias)
        if value is not None and value.strip():
            return value.strip()
    return ""


def parse_raw_rows(content):
    """Split delimited text into header-keyed dicts, skipping blank lines."""
    try:
        reader = csv.DictReader(io.StringIO(content, newline=""))
        if reader.fieldnames is not None:
            reader.fieldnames = [(name or "").strip() for name in reader.fieldnames]
        raw_rows = []
        for record in reader:
            values = {
                key: value
                for key, value in record.items()
                if key is not None and isinstance(value, str)
            }
            if not any(value.strip() for value in values.values()):
                continue
            raw_rows.append(values)
    except csv.Error as exc:
        raise StatementParseError("Failed to parse CSV file") from exc
    return raw_rows


def parse_statement_date(value, today=None, strict=False):
    cleaned = (value or "").strip()
    for layout, pattern in DATE_PATTERNS:
        match = pattern.search(cleaned)
        if not match:
            continue
        if layout == "iso":
            return match.group(0)
        day, month, year = match.groups()
        return f"{year}-{month}-{day}"

    if strict:
        return cleaned
    fallback = (today or date.today()).isoformat()
    logger.warning("Unrecognized statement date %r, falling back to %s", cleaned, fallback)
    return fallback


def clean_description(text):
    collapsed = re.sub(r"\s+", " ", text or "")
    return DESCRIPTION_DISALLOWED.sub("", collapsed).strip()[:MAX_CLEAN_DESCRIPTION_LENGTH]


def parse_raw_amount(value):
    """Return the signed amount found in ``value``, or None when there is none."""
    cleaned = AMOUNT_DISALLOWED.sub("", value or "")
    match = LEADING_NUMBER.match(cleaned)
    if not match:
        return None
    return float(match.group(0))


def infer_type_from_description(description):
    lowered = (description or "").lower()
    if any(keyword in lowered for keyword in CREDIT_KEYWORDS):
        return "credit"
    if any(keyword in lowered for keyword in DEBIT_KEYWORDS):
        return "debit"
    return "debit"


def resolve_transaction_type(raw_row, raw_amount, description):
    type_value = first_value(raw_row, TYPE_ALIASES).lower()
    if type_value in TRANSACTION_TYPES:
        return type_value
    if "credit" in type_value:
        return "credit"
    if "debit" in type_value:
        return "debit"

    if first_value(raw_row, DEBIT_ALIASES):
        return "debit"
    if first_value(raw_row, CREDIT_ALIASES):
        return "credit"

    if raw_amount is not None and raw_amount < 0:
        return "debit"

    return infer_type_from_description(description)


def normalize_row(raw_row, index, today=None, strict_dates=False):
    """Build exactly one :class:`ParsedTransaction` from one raw row."""
    date_value = first_value(raw_row, DATE_ALIASES)
    description_value = first_value(raw_row, DESCRIPTION_ALIASES)
    amount_value = first_value(raw_row, AMOUNT_ALIASES)

    raw_amount = parse_raw_amount(amount_value)
    amount = abs(raw_amount) if raw_amount is not None else 0.0

    row = ParsedTransaction(
        temp_id=str(uuid.uuid4()),
        date=parse_statement_date(date_value, today=today, strict=strict_dates),
        description=clean_description(description_value),
        amount=amount,
        type=resolve_transaction_type(raw_row, raw_amount, description_value),
        original_particulars=description_value,
        row_number=HEADER_LINE_COUNT + index + 1,
    )
    row.revalidate(now=today)
    return row


def _parse_iso_date(value):
    if not isinstance(value, str) or not ISO_DATE.fullmatch(value.strip()):
        return None
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        return None


def validate_transaction(
    txn_date,
    description,
    amount,
    txn_type,
    now=None,
    max_description_length=IMPORT_DESCRIPTION_MAX_LENGTH,
):
    """Return every rule violation for one candidate transaction.

    Rules are independent, so a row can carry up to four errors at once.
    ``now`` may be a date or datetime; today's date is accepted.
    """
    today = now or date.today()
    if isinstance(today, datetime):
        today = today.date()
    errors = []

    parsed_date = _parse_iso_date(txn_date)
    if parsed_date is None:
        errors.append(ValidationError("date", MESSAGES["date_invalid"]))
    elif parsed_date > today:
        errors.append(ValidationError("date", MESSAGES["date_future"]))

    trimmed = description.strip() if isinstance(description, str) else ""
    if not trimmed:
        errors.append(ValidationError("description", MESSAGES["description_required"]))
    elif len(trimmed) > max_description_length:
        errors.append(
            ValidationError(
                "description",
                MESSAGES["description_too_long"].format(limit=max_description_length),
            )
        )

    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or not math.isfinite(amount) or amount <= 0:
        errors.append(ValidationError("amount", MESSAGES["amount_invalid"]))
    elif amount >= AMOUNT_UPPER_BOUND:
        errors.append(ValidationError("amount", MESSAGES["amount_too_large"]))
    elif round(amount * 100) / 100 != amount:
        errors.append(ValidationError("amount", MESSAGES["amount_decimals"]))

    if txn_type not in TRANSACTION_TYPES:
        errors.append(ValidationError("type", MESSAGES["type_invalid"]))

    return errors


def summarize_transactions(rows, today=None):
    dates = sorted(row.date for row in rows)
    fallback = (today or date.today()).isoformat()
    return {
        "total_transactions": len(rows),
        "total_credits": round(sum(row.amount for row in rows if row.type == "credit"), 2),
        "total_debits": round(sum(row.amount for row in rows if row.type == "debit"), 2),
        "date_range": {
            "start": dates[0] if dates else fallback,
            "end": dates[-1] if dates else fallback,
        },
    }


def parse_statement(
    content,
    today=None,
    strict_dates=False,
    progress_callback=None,
    progress_interval=DEFAULT_PROGRESS_INTERVAL,
):
    """Turn statement text into validated rows.

    Raises :class:`StatementImportError` when the file yields no rows at all;
    row-level problems are attached to the rows instead.
    """
    raw_rows = parse_raw_rows(content)
    total = len(raw_rows)
    rows = []
    for index, raw_row in enumerate(raw_rows):
        rows.append(normalize_row(raw_row, index, today=today, strict_dates=strict_dates))
        if progress_callback and progress_interval and (index + 1) % progress_interval == 0:
            progress_callback(index + 1, total)

    if not rows:
        raise StatementParseError("No valid transactions found in CSV file")

    if progress_callback:
        progress_callback(total, total)
    invalid = sum(1 for row in rows if not row.is_valid)
    logger.info("Parsed %s statement rows (%s with validation errors)", len(rows), invalid)
    return rows


def pluralize(count, word):
    return f"{count} {word}{'' if count == 1 else 's'}"


class ImportSession:
    """Rows of one upload plus their selection and correction state."""

    def __init__(self, rows, import_id=None, editing_id=None, edit_values=None):
        self.import_id = import_id
        self.rows = list(rows)
        self._by_id = {row.temp_id: row for row in self.rows}
        self.editing_id = editing_id if editing_id in self._by_id else None
        self.edit_values = dict(edit_values or {}) if self.editing_id else {}

    def get(self, temp_id):
        try:
            return self._by_id[temp_id]
        except KeyError:
            raise UnknownRowError(temp_id) from None

    def toggle_selection(self, temp_id):
        row = self.get(temp_id)
        row.is_selected = not row.is_selected
        return row

    def toggle_select_all(self):
        select = not all(row.is_selected for row in self.rows)
        for row in self.rows:
            row.is_selected = select
        return select

    def begin_edit(self, temp_id):
        row = self.get(temp_id)
        self.editing_id = temp_id
        self.edit_values = {name: getattr(row, name) for name in EDITABLE_FIELDS}
        return dict(self.edit_values)

    def cancel_edit(self):
        if self.editing_id is None:
            raise NoActiveEditError("No row is being edited")
        self.editing_id = None
        self.edit_values = {}

    def commit_edit(self, changes=None, now=None):
        """Apply the scratch buffer to the edited row and re-validate it.

        Returns ``(row, fixed)`` where ``fixed`` is True when the row was
        invalid before the edit and is valid after it.
        """
        if self.editing_id is None:
            raise NoActiveEditError("No row is being edited")
        row = self.get(self.editing_id)
        for name, value in (changes or {}).items():
            if name in EDITABLE_FIELDS:
                self.edit_values[name] = value

        was_valid = row.is_valid
        for name in EDITABLE_FIELDS:
            if name == "category_id":
                row.category_id = self.edit_values.get("category_id")
            elif self.edit_values.get(name) is not None:
                setattr(row, name, self.edit_values[name])
        row.revalidate(now=now)

        self.editing_id = None
        self.edit_values = {}
        return row, (not was_valid and row.is_valid)

    def revalidate_all(self, now=None):
        for row in self.rows:
            row.revalidate(now=now)

    @property
    def selected_rows(self):
        return [row for row in self.rows if row.is_selected]

    @property
    def eligible_rows(self):
        return [row for row in self.rows if row.is_selected and row.is_valid]

    @property
    def selected_count(self):
        return len(self.selected_rows)

    @property
    def selected_total(self):
        return round(sum(row.signed_amount() for row in self.selected_rows), 2)

    @property
    def valid_count(self):
        return sum(1 for row in self.rows if row.is_valid)

    @property
    def invalid_count(self):
        return sum(1 for row in self.rows if not row.is_valid)

    @property
    def blocking_count(self):
        return sum(1 for row in self.rows if row.is_selected and not row.is_valid)

    def error_summary(self):
        return [
            {
                "row_number": row.row_number,
                "temp_id": row.temp_id,
                "field": error.field,
                "message": error.message,
                "label": f"Row {row.row_number} - {error.field}",
            }
            for row in self.rows
            for error in row.validation_errors
        ]

    def commit_button(self, importing=False):
        if importing:
            return {"label": "Importing...", "disabled": True, "loading": True}
        blocking = self.blocking_count
        if blocking:
            return {
                "label": f"Fix {pluralize(blocking, 'Error')} to Import",
                "disabled": True,
                "loading": False,
            }
        selected = self.selected_count
        return {
            "label": f"Import {pluralize(selected, 'Transaction')}",
            "disabled": selected == 0,
            "loading": False,
        }

    def summary(self, today=None):
        return summarize_transactions(self.rows, today=today)

    def to_state(self):
        return {
            "import_id": self.import_id,
            "rows": [row.to_dict() for row in self.rows],
            "editing_id": self.editing_id,
            "edit_values": dict(self.edit_values),
        }

    @classmethod
    def from_state(cls, state):
        return cls(
            [ParsedTransaction.from_dict(item) for item in state.get("rows") or []],
            import_id=state.get("import_id"),
            editing_id=state.get("editing_id"),
            edit_values=state.get("edit_values"),
        )

    def to_view(self, importing=False):
        net = self.selected_total
        return {
            "import_id": self.import_id,
            "transactions": [row.to_dict() for row in self.rows],
            "editing_id": self.editing_id,
            "edit_values": dict(self.edit_values),
            "summary": self.summary(),
            "validation": {
                "valid_count": self.valid_count,
                "error_count": self.invalid_count,
                "total_rows": len(self.rows),
            },
            "selected_count": self.selected_count,
            "selected_total": net,
            "selected_direction": "credit" if net >= 0 else "debit",
            "errors": self.error_summary(),
            "commit_button": self.commit_button(importing=importing),
        }
