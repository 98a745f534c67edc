"""Monthly spending limits per category and how much of each is used."""

import logging
import math
import re
from datetime import date

from .db import DB_ERRORS, insert_many
from .ledger import accessible_category_ids, coerce_category_id, failure

logger = logging.getLogger(__name__)

BUDGET_MONTH = re.compile(r"^(\d{4})-(\d{2})(?:-\d{2})?$")
WARNING_PERCENTAGE = 80
EXCEEDED_PERCENTAGE = 100


def budget_month(value=None, today=None):
    """Return ``value`` as the first day of its month (``YYYY-MM-01``)."""
    if not value:
        today = today or date.today()
        return today.strftime("%Y-%m-01")
    match = BUDGET_MONTH.match(value.strip())
    if not match or not 1 <= int(match.group(2)) <= 12:
        raise ValueError("Month must be in format YYYY-MM")
    return f"{match.group(1)}-{match.group(2)}-01"


def budget_status(percentage_used):
    if percentage_used > EXCEEDED_PERCENTAGE:
        return "exceeded"
    if percentage_used >= WARNING_PERCENTAGE:
        return "warning"
    return "on_track"


def money_error(value, label):
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
        return f"{label} must be greater than zero"
    if round(value * 100) / 100 != value:
        return f"{label} must have at most 2 decimal places"
    return None


def _spending_by_category(db, user_id, month):
    rows = db.execute(
        """
        SELECT category_id, SUM(amount) AS total FROM transactions
        WHERE user_id = ? AND type = 'debit' AND category_id IS NOT NULL AND date LIKE ?
        GROUP BY category_id
        """,
        (user_id, f"{month[:7]}%"),
    ).fetchall()
    return {row["category_id"]: row["total"] or 0.0 for row in rows}


def _usage(monthly_limit, spent):
    remaining = round(monthly_limit - spent, 2)
    percentage = (spent / monthly_limit) * 100 if monthly_limit > 0 else 0.0
    return {
        "monthly_limit": monthly_limit,
        "current_spending": round(spent, 2),
        "remaining_amount": remaining,
        "percentage_used": round(percentage, 2),
        "status": budget_status(percentage),
    }


def get_budgets(db, user_id, month=None, today=None):
    month = budget_month(month, today=today)
    rows = db.execute(
        """
        SELECT b.id, b.category_id, b.monthly_limit, b.created_at, b.updated_at,
               c.name AS category_name, c.color AS category_color
        FROM budgets b
        JOIN categories c ON c.id = b.category_id
        WHERE b.user_id = ? AND b.month = ?
        ORDER BY c.name ASC
        """,
        (user_id, month),
    ).fetchall()
    spending = _spending_by_category(db, user_id, month)

    budgets = []
    for row in rows:
        budget = {
            "id": row["id"],
            "category_id": row["category_id"],
            "category_name": row["category_name"],
            "category_color": row["category_color"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
        budget.update(_usage(row["monthly_limit"], spending.get(row["category_id"], 0.0)))
        budgets.append(budget)

    total_budgeted = round(sum(b["monthly_limit"] for b in budgets), 2)
    total_spent = round(sum(b["current_spending"] for b in budgets), 2)
    summary = {
        "total_budgeted": total_budgeted,
        "total_spent": total_spent,
        "total_remaining": round(sum(b["remaining_amount"] for b in budgets), 2),
        "overall_percentage": round(total_spent / total_budgeted * 100, 2) if total_budgeted > 0 else 0.0,
        "categories_exceeded": sum(1 for b in budgets if b["status"] == "exceeded"),
    }
    return {"month": month, "budgets": budgets, "summary": summary}


def get_budget_alerts(db, user_id, month=None, today=None):
    """Budgets at or above the warning threshold, most used first."""
    overview = get_budgets(db, user_id, month=month, today=today)
    alerts = [
        {
            "budget_id": budget["id"],
            "category_name": budget["category_name"],
            "category_color": budget["category_color"],
            "monthly_limit": budget["monthly_limit"],
            "current_spending": budget["current_spending"],
            "percentage_used": budget["percentage_used"],
            "status": budget["status"],
            "severity": "high" if budget["status"] == "exceeded" else "medium",
        }
        for budget in overview["budgets"]
        if budget["percentage_used"] >= WARNING_PERCENTAGE
    ]
    alerts.sort(key=lambda alert: alert["percentage_used"], reverse=True)
    return {"month": overview["month"], "alerts": alerts}


def create_budget(db, user_id, category_id, monthly_limit, month=None, cache=None, today=None):
    error = money_error(monthly_limit, "Budget limit")
    if error:
        return failure(error)
    try:
        month = budget_month(month, today=today)
    except ValueError as exc:
        return failure(str(exc))
    try:
        category_id = coerce_category_id(category_id)
    except (TypeError, ValueError):
        return failure("Category not found")
    if category_id is None or category_id not in accessible_category_ids(db, user_id, [category_id]):
        return failure("Category not found")

    existing = db.execute(
        "SELECT 1 FROM budgets WHERE user_id = ? AND category_id = ? AND month = ?",
        (user_id, category_id, month),
    ).fetchone()
    if existing is not None:
        return failure("Budget already exists for this category this month")

    try:
        budget_id = insert_many(
            db,
            "budgets",
            ("user_id", "category_id", "month", "monthly_limit"),
            [(user_id, category_id, month, float(monthly_limit))],
        )[0]
        db.commit()
    except DB_ERRORS as exc:
        db.rollback()
        logger.exception("Creating budget for category %s user %s failed", category_id, user_id)
        return failure(f"Failed to create budget: {exc}")
    if cache is not None:
        cache.invalidate(user_id)
    return {"success": True, "budget_id": budget_id, "month": month}


def update_budget(db, user_id, budget_id, monthly_limit, cache=None):
    error = money_error(monthly_limit, "Budget limit")
    if error:
        return failure(error)
    existing = db.execute(
        "SELECT id, category_id, month FROM budgets WHERE id = ? AND user_id = ?",
        (budget_id, user_id),
    ).fetchone()
    if existing is None:
        return failure("Budget not found")

    db.execute(
        "UPDATE budgets SET monthly_limit = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ? AND user_id = ?",
        (float(monthly_limit), budget_id, user_id),
    )
    db.commit()
    if cache is not None:
        cache.invalidate(user_id)
    spent = _spending_by_category(db, user_id, existing["month"]).get(existing["category_id"], 0.0)
    budget = {"id": budget_id, "category_id": existing["category_id"], "month": existing["month"]}
    budget.update(_usage(float(monthly_limit), spent))
    return {"success": True, "budget": budget}


def delete_budget(db, user_id, budget_id, cache=None):
    deleted = db.execute("DELETE FROM budgets WHERE id = ? AND user_id = ?", (budget_id, user_id)).rowcount
    db.commit()
    if deleted != 1:
        return failure("Budget not found")
    if cache is not None:
        cache.invalidate(user_id)
    return {"success": True}
