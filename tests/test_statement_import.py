import io
from datetime import date, timedelta
from pathlib import Path

import pytest

from finance_tracker.statement_import import (
    ImportSession,
    NoActiveEditError,
    ParsedTransaction,
    StatementParseError,
    StatementReadError,
    UnknownRowError,
    clean_description,
    infer_type_from_description,
    normalize_row,
    parse_raw_amount,
    parse_statement,
    parse_statement_date,
    read_statement,
    validate_transaction,
)

FIXTURES = Path(__file__).parent / "fixtures"
TODAY = date(2025, 10, 19)


def load_fixture(name):
    return (FIXTURES / name).read_text(encoding="utf-8")


def make_row(temp_id, amount=10.0, txn_type="debit", txn_date="2025-10-01", description="Row", row_number=2):
    row = ParsedTransaction(
        temp_id=temp_id,
        date=txn_date,
        description=description,
        amount=amount,
        type=txn_type,
        original_particulars=description,
        row_number=row_number,
    )
    row.revalidate(now=TODAY)
    return row


class _BrokenStream:
    def read(self):
        raise OSError("connection reset")


def test_salary_row_with_type_column_is_valid_credit():
    rows = parse_statement(load_fixture("basic_statement.csv"), today=TODAY)

    salary = rows[0]
    assert salary.date == "2025-10-01"
    assert salary.amount == 5000.00
    assert salary.type == "credit"
    assert salary.is_valid is True
    assert salary.validation_errors == []
    assert salary.category_id is None
    assert salary.is_selected is True
    assert salary.row_number == 2


def test_negative_amount_without_type_becomes_debit():
    rows = parse_statement(load_fixture("basic_statement.csv"), today=TODAY)

    grocery = rows[1]
    assert grocery.description == "Grocery Shopping"
    assert grocery.amount == 150.50
    assert grocery.type == "debit"
    assert grocery.is_valid is True


def test_debit_and_credit_columns_drive_amount_and_type():
    rows = parse_statement(load_fixture("debit_credit_columns.csv"), today=TODAY)

    assert [row.date for row in rows] == ["2024-03-15", "2024-03-16", "2024-03-18"]
    assert [row.type for row in rows] == ["debit", "credit", "debit"]
    assert [row.amount for row in rows] == [200.0, 3000.0, 49.99]
    assert rows[0].description == "ATM WITHDRAWAL 1234"
    assert rows[0].original_particulars == "ATM WITHDRAWAL   #1234"
    assert [row.row_number for row in rows] == [2, 3, 4]


def test_every_raw_row_yields_exactly_one_parsed_row():
    rows = parse_statement(load_fixture("rows_with_errors.csv"), today=TODAY)

    assert len(rows) == 4
    errors_by_row = {row.row_number: [(e.field, e.message) for e in row.validation_errors] for row in rows}
    assert errors_by_row[2] == [("amount", "Amount must be greater than zero")]
    assert errors_by_row[3] == [("description", "Description is required")]
    assert errors_by_row[4] == [("amount", "Amount must have at most 2 decimal places")]
    assert errors_by_row[5] == []


def test_header_only_file_is_rejected():
    with pytest.raises(StatementParseError, match="No valid transactions found in CSV file"):
        parse_statement(load_fixture("header_only.csv"), today=TODAY)


def test_empty_content_is_rejected():
    with pytest.raises(StatementParseError):
        parse_statement("", today=TODAY)


def test_csv_library_failure_is_reported_as_parse_error():
    content = "Date,Description,Amount\n01/10/2025," + "a" * 200_000 + ",5\n"

    with pytest.raises(StatementParseError, match="Failed to parse CSV file"):
        parse_statement(content, today=TODAY)


def test_read_statement_decodes_legacy_encoding():
    content = read_statement(io.BytesIO((FIXTURES / "basic_statement.csv").read_bytes()))
    assert content.startswith("Date,Description")

    cp1252 = "Date,Description,Amount\n01/10/2025,Café Dépôt,4.50\n".encode("cp1252")
    assert "Café" in read_statement(io.BytesIO(cp1252))


def test_read_statement_wraps_stream_failures():
    with pytest.raises(StatementReadError, match="Failed to read file"):
        read_statement(_BrokenStream())


def test_progress_callback_reports_every_interval_and_completion():
    lines = ["Date,Description,Amount"] + [f"01/10/2025,Item {i},1.00" for i in range(250)]
    calls = []

    parse_statement("\n".join(lines), today=TODAY, progress_callback=lambda done, total: calls.append((done, total)))

    assert calls == [(100, 250), (200, 250), (250, 250)]


def test_date_formats_round_trip_to_iso():
    assert parse_statement_date("15/03/2024", today=TODAY) == "2024-03-15"
    assert parse_statement_date("15-03-2024", today=TODAY) == "2024-03-15"
    assert parse_statement_date("2024-03-15", today=TODAY) == "2024-03-15"


def test_unrecognized_date_falls_back_to_today_unless_strict():
    assert parse_statement_date("March 5th", today=TODAY) == "2025-10-19"
    assert parse_statement_date("", today=TODAY) == "2025-10-19"
    assert parse_statement_date("March 5th", today=TODAY, strict=True) == "March 5th"

    row = normalize_row({"Date": "March 5th", "Description": "Gym", "Amount": "30"}, 0, today=TODAY, strict_dates=True)
    assert [error.field for error in row.validation_errors] == ["date"]


def test_description_cleanup_collapses_whitespace_and_strips_symbols():
    assert clean_description("  Coffee\t\tat  Joe's  (Main St.) & Co, #12 ") == "Coffee at Joe's (Main St.) & Co, 12"
    assert len(clean_description("x" * 600)) == 500
    assert clean_description("Café Dépôt") == "Caf Dpt"


def test_amount_parsing_keeps_leading_numeric_prefix():
    assert parse_raw_amount("$1,234.56") == 1234.56
    assert parse_raw_amount("-150.50") == -150.50
    assert parse_raw_amount("12.5.3") == 12.5
    assert parse_raw_amount("abc") is None

    row = normalize_row({"Date": "01/10/2025", "Description": "Refund", "Amount": "n/a"}, 0, today=TODAY)
    assert row.amount == 0.0
    assert row.type == "credit"
    assert [error.field for error in row.validation_errors] == ["amount"]


def test_keyword_scan_matches_substrings():
    assert infer_type_from_description("Transfer into savings") == "credit"
    assert infer_type_from_description("Credit card bill payment") == "credit"
    assert infer_type_from_description("ACME CR") == "credit"
    assert infer_type_from_description("Microsoft payment") == "credit"
    assert infer_type_from_description("Card purchase") == "debit"
    assert infer_type_from_description("Something else") == "debit"


def test_type_column_containing_keyword_wins():
    row = normalize_row(
        {"Date": "01/10/2025", "Description": "Card", "Amount": "-5", "Type": "Credit Card Refund"}, 0, today=TODAY
    )
    assert row.type == "credit"


def test_amount_boundaries():
    assert validate_transaction("2025-10-01", "Big", 999999999999.99, "credit", now=TODAY) == []

    too_large = validate_transaction("2025-10-01", "Big", 1000000000000, "credit", now=TODAY)
    assert [error.message for error in too_large] == ["Amount too large"]

    too_precise = validate_transaction("2025-10-01", "Lunch", 10.005, "debit", now=TODAY)
    assert [error.message for error in too_precise] == ["Amount must have at most 2 decimal places"]


def test_description_length_boundary():
    assert validate_transaction("2025-10-01", "a" * 200, 1.0, "debit", now=TODAY) == []

    errors = validate_transaction("2025-10-01", "a" * 201, 1.0, "debit", now=TODAY)
    assert [error.message for error in errors] == ["Description must be less than 200 characters"]
    assert validate_transaction("2025-10-01", "a" * 201, 1.0, "debit", now=TODAY, max_description_length=500) == []


def test_today_is_accepted_and_tomorrow_is_rejected():
    assert validate_transaction("2025-10-19", "Today", 1.0, "debit", now=TODAY) == []

    errors = validate_transaction("2025-10-20", "Tomorrow", 1.0, "debit", now=TODAY)
    assert [(error.field, error.message) for error in errors] == [
        ("date", "Transaction date cannot be in the future")
    ]


@pytest.mark.parametrize("value", ["2024-3-5", "2024-03-5", "24-03-05", "2024/03/05", "2024-03-05T00:00"])
def test_dates_must_be_zero_padded_iso(value):
    errors = validate_transaction(value, "Coffee", 3.0, "debit", now=TODAY)
    assert [(error.field, error.message) for error in errors] == [("date", "Date must be a valid date")]


def test_validator_reports_every_rule_and_is_idempotent():
    first = validate_transaction("2025-02-30", "   ", -1, "transfer", now=TODAY)
    second = validate_transaction("2025-02-30", "   ", -1, "transfer", now=TODAY)

    assert first == second
    assert [error.field for error in first] == ["date", "description", "amount", "type"]


def test_future_row_is_excluded_from_commit_eligibility():
    tomorrow = (date.today() + timedelta(days=1)).strftime("%d/%m/%Y")
    content = f"Date,Description,Amount\n{tomorrow},Prepaid rent,900.00\n01/10/2025,Coffee,3.00\n"

    session = ImportSession(parse_statement(content))
    future_row = session.rows[0]

    assert [error.field for error in future_row.validation_errors] == ["date"]
    assert future_row.is_selected is True
    assert future_row not in session.eligible_rows
    assert session.blocking_count == 1


def test_commit_edit_fixes_zero_amount_row():
    session = ImportSession(parse_statement(load_fixture("rows_with_errors.csv"), today=TODAY))
    broken = session.rows[0]
    assert broken.is_valid is False

    snapshot = session.begin_edit(broken.temp_id)
    assert snapshot["amount"] == 0.0
    row, fixed = session.commit_edit({"amount": 42.50}, now=TODAY)

    assert row is broken
    assert fixed is True
    assert row.amount == 42.50
    assert row.validation_errors == []
    assert row.is_valid is True
    assert session.editing_id is None
    assert session.edit_values == {}


def test_commit_edit_reports_not_fixed_when_errors_remain():
    session = ImportSession([make_row("a", amount=0.0, description="")])

    session.begin_edit("a")
    row, fixed = session.commit_edit({"amount": 5.0}, now=TODAY)

    assert fixed is False
    assert [error.field for error in row.validation_errors] == ["description"]


def test_toggling_never_changes_validity_and_editing_never_changes_selection():
    valid = make_row("a")
    invalid = make_row("b", amount=0.0, row_number=3)
    session = ImportSession([valid, invalid])

    session.toggle_selection("b")
    assert invalid.is_selected is False
    assert invalid.is_valid is False
    assert len(invalid.validation_errors) == 1

    session.begin_edit("b")
    session.commit_edit({"amount": 3.0}, now=TODAY)
    assert invalid.is_selected is False
    assert invalid.is_valid is True


def test_toggle_select_all_selects_everything_unless_all_selected():
    session = ImportSession([make_row("a"), make_row("b"), make_row("c")])
    session.toggle_selection("b")

    assert session.toggle_select_all() is True
    assert session.selected_count == 3

    assert session.toggle_select_all() is False
    assert session.selected_count == 0


def test_begin_edit_on_another_row_replaces_buffer():
    session = ImportSession([make_row("a", description="First"), make_row("b", description="Second")])

    session.begin_edit("a")
    session.begin_edit("b")

    assert session.editing_id == "b"
    assert session.edit_values["description"] == "Second"


def test_edit_misuse_raises():
    session = ImportSession([make_row("a")])

    with pytest.raises(UnknownRowError):
        session.toggle_selection("missing")
    with pytest.raises(NoActiveEditError):
        session.cancel_edit()
    with pytest.raises(NoActiveEditError):
        session.commit_edit({"amount": 1.0})


def test_cancel_edit_discards_buffer():
    session = ImportSession([make_row("a", amount=10.0)])

    session.begin_edit("a")
    session.cancel_edit()

    assert session.rows[0].amount == 10.0
    assert session.editing_id is None


def test_commit_button_states():
    valid = make_row("a", amount=5000.0, txn_type="credit")
    other = make_row("b", amount=150.5, txn_type="debit", row_number=3)
    invalid = make_row("c", amount=0.0, row_number=4)
    session = ImportSession([valid, other, invalid])

    assert session.commit_button()["label"] == "Fix 1 Error to Import"
    assert session.commit_button()["disabled"] is True

    session.toggle_selection("c")
    assert session.commit_button() == {"label": "Import 2 Transactions", "disabled": False, "loading": False}
    assert session.selected_total == 4849.5

    session.toggle_selection("b")
    assert session.commit_button()["label"] == "Import 1 Transaction"

    session.toggle_select_all()
    session.toggle_select_all()
    assert session.selected_count == 0
    assert session.commit_button() == {"label": "Import 0 Transactions", "disabled": True, "loading": False}

    assert session.commit_button(importing=True)["label"] == "Importing..."


def test_summary_and_error_listing():
    session = ImportSession(parse_statement(load_fixture("rows_with_errors.csv"), today=TODAY))
    view = session.to_view()

    assert view["validation"] == {"valid_count": 1, "error_count": 3, "total_rows": 4}
    assert [error["label"] for error in view["errors"]] == [
        "Row 2 - amount",
        "Row 3 - description",
        "Row 4 - amount",
    ]
    assert view["summary"]["date_range"] == {"start": "2025-10-01", "end": "2025-10-04"}


def test_state_round_trip_keeps_edit_buffer():
    session = ImportSession([make_row("a"), make_row("b")], import_id="imp-1")
    session.toggle_selection("a")
    session.begin_edit("b")

    restored = ImportSession.from_state(session.to_state())

    assert restored.import_id == "imp-1"
    assert restored.editing_id == "b"
    assert restored.rows[0].is_selected is False
    assert restored.edit_values == session.edit_values
