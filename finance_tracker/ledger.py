"""Reads and writes of the persisted ledger: categories and transactions.

Every function takes the acting ``user_id`` explicitly; nothing here looks at
the request or the login session.
"""

import logging
import re
from datetime import date

from .db import DB_ERRORS, insert_many
from .statement_import import (
    IMPORT_DESCRIPTION_MAX_LENGTH,
    MANUAL_DESCRIPTION_MAX_LENGTH,
    ParsedTransaction,
    validate_transaction,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_LIMIT = 1000
DEFAULT_CATEGORY_COLOR = "#6b7280"
HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")
MONTH_PATTERN = re.compile(r"^\d{4}-\d{2}$")
SORTABLE_COLUMNS = {"date": "t.date", "amount": "t.amount", "description": "t.description"}
UPDATABLE_FIELDS = ("date", "description", "amount", "type", "category_id")
TRANSACTION_COLUMNS = (
    "user_id",
    "date",
    "description",
    "amount",
    "type",
    "category_id",
    "original_particulars",
    "import_id",
)


def failure(message):
    return {"success": False, "error": message}


def coerce_category_id(value):
    if value in (None, "", "none"):
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid category id: {value!r}")
    return int(value)


def list_categories(db, user_id):
    return db.execute(
        """
        SELECT id, user_id, name, type, color, icon FROM categories
        WHERE type = 'system' OR user_id = ?
        ORDER BY type DESC, name ASC
        """,
        (user_id,),
    ).fetchall()


def category_choices(db, user_id):
    return [
        {"id": row["id"], "name": row["name"], "icon": row["icon"]}
        for row in list_categories(db, user_id)
    ]


def accessible_category_ids(db, user_id, category_ids):
    wanted = sorted({category_id for category_id in category_ids if category_id is not None})
    if not wanted:
        return set()
    placeholders = ",".join(["?"] * len(wanted))
    rows = db.execute(
        f"""
        SELECT id FROM categories
        WHERE id IN ({placeholders}) AND (type = 'system' OR user_id = ?)
        """,
        (*wanted, user_id),
    ).fetchall()
    return {row["id"] for row in rows}


def create_category(db, user_id, name, color=DEFAULT_CATEGORY_COLOR, icon=None):
    name = re.sub(r"\s+", " ", (name or "").strip())
    if not name:
        return failure("Category name is required")
    if len(name) > 50:
        return failure("Category name must be less than 50 characters")
    color = (color or DEFAULT_CATEGORY_COLOR).strip()
    if not HEX_COLOR.match(color):
        return failure("Invalid color format")

    duplicate = db.execute(
        """
        SELECT 1 FROM categories
        WHERE LOWER(name) = LOWER(?) AND (type = 'system' OR user_id = ?)
        """,
        (name, user_id),
    ).fetchone()
    if duplicate is not None:
        return failure("This category already exists")

    try:
        category_id = insert_many(
            db,
            "categories",
            ("user_id", "name", "type", "color", "icon"),
            [(user_id, name, "custom", color, (icon or "").strip() or None)],
        )[0]
        db.commit()
    except DB_ERRORS as exc:
        db.rollback()
        logger.exception("Creating category %r for user %s failed", name, user_id)
        return failure(f"Failed to create category: {exc}")
    return {"success": True, "category": {"id": category_id, "name": name, "color": color, "icon": icon}}


def update_category(db, user_id, category_id, name=None, color=None, icon=None, cache=None):
    """Rename or restyle a custom category; ``icon=""`` clears the icon."""
    if not name and not color and icon is None:
        return failure("At least one field must be provided for update")
    existing = db.execute("SELECT id, user_id, type FROM categories WHERE id = ?", (category_id,)).fetchone()
    if existing is None:
        return failure("Category not found")
    if existing["type"] == "system":
        return failure("Cannot edit system category")
    if existing["user_id"] != user_id:
        return failure("Unauthorized")

    assignments = []
    params = []
    if name:
        name = re.sub(r"\s+", " ", name.strip())
        if not name or len(name) > 50:
            return failure("Category name must be between 1 and 50 characters")
        duplicate = db.execute(
            """
            SELECT 1 FROM categories
            WHERE LOWER(name) = LOWER(?) AND id != ? AND (type = 'system' OR user_id = ?)
            """,
            (name, category_id, user_id),
        ).fetchone()
        if duplicate is not None:
            return failure("Category name already exists")
        assignments.append("name = ?")
        params.append(name)
    if color:
        color = color.strip()
        if not HEX_COLOR.match(color):
            return failure("Invalid color format")
        assignments.append("color = ?")
        params.append(color)
    if icon is not None:
        assignments.append("icon = ?")
        params.append(icon.strip() or None)
    assignments.append("updated_at = CURRENT_TIMESTAMP")

    try:
        db.execute(
            f"UPDATE categories SET {', '.join(assignments)} WHERE id = ? AND user_id = ?",
            (*params, category_id, user_id),
        )
        db.commit()
    except DB_ERRORS as exc:
        db.rollback()
        logger.exception("Updating category %s for user %s failed", category_id, user_id)
        return failure(f"Failed to update category: {exc}")
    if cache is not None:
        cache.invalidate(user_id)
    row = db.execute("SELECT id, name, color, icon FROM categories WHERE id = ?", (category_id,)).fetchone()
    return {"success": True, "category": dict(row)}


def delete_category(db, user_id, category_id):
    category = db.execute(
        "SELECT id, type FROM categories WHERE id = ? AND user_id = ? AND type = 'custom'",
        (category_id, user_id),
    ).fetchone()
    if category is None:
        return failure("Category not found")
    in_use = db.execute(
        "SELECT COUNT(*) AS c FROM transactions WHERE category_id = ? AND user_id = ?",
        (category_id, user_id),
    ).fetchone()["c"]
    if in_use:
        return failure("Cannot delete category with existing transactions. Please reassign transactions first.")
    db.execute("DELETE FROM categories WHERE id = ?", (category_id,))
    db.commit()
    return {"success": True}


def create_transaction(db, user_id, values, cache=None, now=None):
    """Record one manually entered transaction."""
    try:
        category_id = coerce_category_id(values.get("category_id"))
    except (TypeError, ValueError):
        return failure("Category not found")
    description = (values.get("description") or "").strip()
    errors = validate_transaction(
        values.get("date"),
        description,
        values.get("amount"),
        values.get("type"),
        now=now,
        max_description_length=MANUAL_DESCRIPTION_MAX_LENGTH,
    )
    if errors:
        return {"success": False, "error": errors[0].message, "errors": [error.to_dict() for error in errors]}

    result = bulk_create_transactions(
        db,
        user_id,
        [
            {
                "date": values["date"],
                "description": description,
                "amount": values["amount"],
                "type": values["type"],
                "category_id": category_id,
            }
        ],
        cache=cache,
        now=now,
    )
    if not result["success"]:
        return result
    return {"success": True, "transaction_id": result["transaction_ids"][0]}


def bulk_create_transactions(
    db,
    user_id,
    transactions,
    import_id=None,
    cache=None,
    now=None,
    batch_limit=DEFAULT_BATCH_LIMIT,
):
    """Insert ``transactions`` as one batch owned by ``user_id``.

    The batch is either written completely or not at all; the caller only
    learns one aggregate error message on failure.
    """
    if not transactions:
        return failure("No transactions to import")
    if len(transactions) > batch_limit:
        return failure(f"Batch size exceeds limit of {batch_limit}")

    records = []
    for index, txn in enumerate(transactions, start=1):
        errors = validate_transaction(
            txn.get("date"),
            txn.get("description"),
            txn.get("amount"),
            txn.get("type"),
            now=now,
            max_description_length=MANUAL_DESCRIPTION_MAX_LENGTH,
        )
        if errors:
            return failure(f"Transaction {index}: {errors[0].message}")
        try:
            category_id = coerce_category_id(txn.get("category_id"))
        except (TypeError, ValueError):
            return failure("Category not found")
        records.append(
            (
                user_id,
                txn["date"].strip(),
                txn["description"].strip(),
                float(txn["amount"]),
                txn["type"],
                category_id,
                txn.get("original_particulars"),
                import_id,
            )
        )

    requested_categories = {record[5] for record in records if record[5] is not None}
    if requested_categories - accessible_category_ids(db, user_id, requested_categories):
        return failure("Category not found")

    try:
        transaction_ids = insert_many(db, "transactions", TRANSACTION_COLUMNS, records)
        db.commit()
    except DB_ERRORS as exc:
        db.rollback()
        logger.exception("Batch insert of %s transactions for user %s failed", len(records), user_id)
        result = failure(f"Failed to import transactions: {exc}")
        result["database_error"] = True
        return result

    if cache is not None:
        cache.invalidate(user_id)
    logger.info("Created %s transactions for user %s", len(transaction_ids), user_id)
    return {"success": True, "created_count": len(transaction_ids), "transaction_ids": transaction_ids}


def commit_import(db, user_id, rows, import_id=None, cache=None, now=None, batch_limit=DEFAULT_BATCH_LIMIT):
    """Persist the selected rows of an import session.

    Rows are re-validated here instead of trusting the ``is_valid`` flag the
    client saw, so an invalid row can never be committed.
    """
    rows = list(rows)
    if not rows:
        return failure("No transactions to import")
    if len(rows) > batch_limit:
        return failure(f"Batch size exceeds limit of {batch_limit}")

    invalid_rows = []
    for row in rows:
        if not isinstance(row, ParsedTransaction):
            row = ParsedTransaction.from_dict(row)
        errors = validate_transaction(
            row.date,
            row.description,
            row.amount,
            row.type,
            now=now,
            max_description_length=IMPORT_DESCRIPTION_MAX_LENGTH,
        )
        if errors:
            invalid_rows.append(row.row_number)
    if invalid_rows:
        listed = ", ".join(str(number) for number in invalid_rows)
        return failure(f"Fix validation errors before importing (rows {listed})")

    payloads = []
    for row in rows:
        if not isinstance(row, ParsedTransaction):
            row = ParsedTransaction.from_dict(row)
        payload = row.commit_payload()
        payload["original_particulars"] = row.original_particulars
        payloads.append(payload)
    return bulk_create_transactions(
        db,
        user_id,
        payloads,
        import_id=import_id,
        cache=cache,
        now=now,
        batch_limit=batch_limit,
    )


def update_transaction(db, user_id, transaction_id, changes, cache=None, now=None):
    """Apply ``changes`` to one transaction; the merged row must still validate."""
    changes = {key: value for key, value in changes.items() if key in UPDATABLE_FIELDS}
    if not changes:
        return failure("At least one field must be provided for update")
    existing = db.execute(
        "SELECT id, date, description, amount, type, category_id FROM transactions WHERE id = ? AND user_id = ?",
        (transaction_id, user_id),
    ).fetchone()
    if existing is None:
        return failure("Transaction not found")

    merged = dict(existing)
    merged.update(changes)
    if isinstance(merged["description"], str):
        merged["description"] = merged["description"].strip()
    try:
        merged["category_id"] = coerce_category_id(merged["category_id"])
    except (TypeError, ValueError):
        return failure("Category not found")
    errors = validate_transaction(
        merged["date"],
        merged["description"],
        merged["amount"],
        merged["type"],
        now=now,
        max_description_length=MANUAL_DESCRIPTION_MAX_LENGTH,
    )
    if errors:
        return {"success": False, "error": errors[0].message, "errors": [error.to_dict() for error in errors]}
    category_id = merged["category_id"]
    if category_id is not None and category_id not in accessible_category_ids(db, user_id, [category_id]):
        return failure("Category not found")

    try:
        db.execute(
            """
            UPDATE transactions
            SET date = ?, description = ?, amount = ?, type = ?, category_id = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND user_id = ?
            """,
            (
                merged["date"].strip(),
                merged["description"],
                float(merged["amount"]),
                merged["type"],
                category_id,
                transaction_id,
                user_id,
            ),
        )
        db.commit()
    except DB_ERRORS as exc:
        db.rollback()
        logger.exception("Updating transaction %s for user %s failed", transaction_id, user_id)
        return failure(f"Failed to update transaction: {exc}")
    if cache is not None:
        cache.invalidate(user_id)
    return {"success": True, "transaction": merged}


def delete_transaction(db, user_id, transaction_id, cache=None):
    deleted = db.execute(
        "DELETE FROM transactions WHERE id = ? AND user_id = ?",
        (transaction_id, user_id),
    ).rowcount
    db.commit()
    if deleted != 1:
        return failure("Transaction not found")
    if cache is not None:
        cache.invalidate(user_id)
    return {"success": True}


def _totals(rows):
    credits = round(sum(row["amount"] for row in rows if row["type"] == "credit"), 2)
    debits = round(sum(row["amount"] for row in rows if row["type"] == "debit"), 2)
    return {"total_credits": credits, "total_debits": debits, "net_amount": round(credits - debits, 2)}


def list_transactions(
    db,
    user_id,
    month=None,
    txn_type=None,
    category_id=None,
    limit=50,
    offset=0,
    sort_by="date",
    sort_order="desc",
):
    filters = ["t.user_id = ?"]
    params = [user_id]
    if month:
        if not MONTH_PATTERN.match(month):
            raise ValueError("Month must be in format YYYY-MM")
        filters.append("t.date LIKE ?")
        params.append(f"{month}%")
    if txn_type:
        if txn_type not in ("credit", "debit"):
            raise ValueError("Type must be 'credit' or 'debit'")
        filters.append("t.type = ?")
        params.append(txn_type)
    if category_id is not None:
        filters.append("t.category_id = ?")
        params.append(category_id)

    order_column = SORTABLE_COLUMNS.get(sort_by, "t.date")
    direction = "ASC" if sort_order == "asc" else "DESC"
    where = " AND ".join(filters)

    total = db.execute(f"SELECT COUNT(*) AS c FROM transactions t WHERE {where}", tuple(params)).fetchone()["c"]
    rows = db.execute(
        f"""
        SELECT t.id, t.date, t.description, t.amount, t.type, t.category_id, t.import_id,
               c.name AS category_name, c.color AS category_color, c.icon AS category_icon
        FROM transactions t
        LEFT JOIN categories c ON c.id = t.category_id
        WHERE {where}
        ORDER BY {order_column} {direction}, t.id DESC
        LIMIT ? OFFSET ?
        """,
        (*params, int(limit), int(offset)),
    ).fetchall()
    transactions = [dict(row) for row in rows]
    return {"transactions": transactions, "total": total, "summary": _totals(transactions)}


def monthly_totals(db, user_id, month):
    if not MONTH_PATTERN.match(month or ""):
        raise ValueError("Month must be in format YYYY-MM")
    rows = db.execute(
        "SELECT type, amount FROM transactions WHERE user_id = ? AND date LIKE ?",
        (user_id, f"{month}%"),
    ).fetchall()
    totals = _totals(rows)
    totals["month"] = month
    totals["transaction_count"] = len(rows)
    return totals


def dashboard_summary(db, user_id, month=None):
    month = month or date.today().strftime("%Y-%m")
    totals = monthly_totals(db, user_id, month)
    spending = db.execute(
        """
        SELECT COALESCE(c.name, 'Uncategorized') AS category, SUM(t.amount) AS total
        FROM transactions t
        LEFT JOIN categories c ON c.id = t.category_id
        WHERE t.user_id = ? AND t.type = 'debit' AND t.date LIKE ?
        GROUP BY COALESCE(c.name, 'Uncategorized')
        ORDER BY total DESC
        LIMIT 5
        """,
        (user_id, f"{month}%"),
    ).fetchall()
    recent = db.execute(
        """
        SELECT id, date, description, amount, type FROM transactions
        WHERE user_id = ?
        ORDER BY date DESC, id DESC
        LIMIT 5
        """,
        (user_id,),
    ).fetchall()
    totals["top_categories"] = [{"category": row["category"], "total": round(row["total"], 2)} for row in spending]
    totals["recent_transactions"] = [dict(row) for row in recent]
    return totals
