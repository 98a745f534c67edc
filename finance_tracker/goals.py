"""Savings goals.

Moving money into or out of a goal also records a ledger transaction
(a debit when allocating, a credit when releasing) so balances on the
dashboard stay truthful. The goal update and that transaction are written
in the same database transaction.
"""

import calendar
import logging
import math
from datetime import date, datetime

from .budgets import money_error
from .db import DB_ERRORS, insert_many
from .ledger import DEFAULT_CATEGORY_COLOR, HEX_COLOR, bulk_create_transactions, failure
from .statement_import import ISO_DATE

logger = logging.getLogger(__name__)

GOAL_STATUSES = ("active", "completed")
GOAL_SORT_COLUMNS = {"created_at": "created_at", "target_date": "target_date"}
NAME_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500
NOTE_MAX_LENGTH = 200
FALLBACK_GOAL_NAME = "Savings"


def calculate_progress(current_amount, target_amount):
    if target_amount == 0:
        return 100.0
    return round(min(current_amount / target_amount * 100, 100.0), 2)


def add_months(start, months):
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _today(today):
    today = today or date.today()
    if isinstance(today, datetime):
        today = today.date()
    return today


def _goal_dict(row):
    goal = dict(row)
    goal["progress"] = calculate_progress(goal["current_amount"], goal["target_amount"])
    return goal


def _load_goal(db, user_id, goal_id):
    return db.execute(
        """
        SELECT id, name, description, target_amount, current_amount, target_date, color, icon,
               status, created_at, updated_at
        FROM goals WHERE id = ? AND user_id = ?
        """,
        (goal_id, user_id),
    ).fetchone()


def _clean_text(value, max_length, label):
    text = (value or "").strip()
    if len(text) > max_length:
        raise ValueError(f"{label} must be less than {max_length} characters")
    return text


def _target_date_error(value, today):
    if not ISO_DATE.fullmatch(value):
        return "Target date must be a valid date"
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return "Target date must be a valid date"
    if parsed <= today:
        return "Target date must be in the future"
    return None


def list_goals(db, user_id, status="active", sort_by="created_at", sort_order="desc"):
    filters = ["user_id = ?"]
    params = [user_id]
    if status != "all":
        if status not in GOAL_STATUSES:
            raise ValueError("Status must be 'active', 'completed' or 'all'")
        filters.append("status = ?")
        params.append(status)
    descending = sort_order != "asc"
    order_column = GOAL_SORT_COLUMNS.get(sort_by, "created_at")
    rows = db.execute(
        f"""
        SELECT id, name, description, target_amount, current_amount, target_date, color, icon,
               status, created_at, updated_at
        FROM goals WHERE {' AND '.join(filters)}
        ORDER BY {order_column} {'DESC' if descending else 'ASC'}, id {'DESC' if descending else 'ASC'}
        """,
        tuple(params),
    ).fetchall()
    goals = [_goal_dict(row) for row in rows]
    if sort_by == "progress":
        goals.sort(key=lambda goal: goal["progress"], reverse=descending)

    total_target = round(sum(goal["target_amount"] for goal in goals), 2)
    total_saved = round(sum(goal["current_amount"] for goal in goals), 2)
    summary = {
        "total_goals": len(goals),
        "active_goals": sum(1 for goal in goals if goal["status"] == "active"),
        "completed_goals": sum(1 for goal in goals if goal["status"] == "completed"),
        "total_target_amount": total_target,
        "total_saved": total_saved,
        "overall_progress": round(total_saved / total_target * 100, 2) if total_target > 0 else 0.0,
    }
    return {"goals": goals, "summary": summary}


def create_goal(db, user_id, values, today=None):
    today = _today(today)
    try:
        name = _clean_text(values.get("name"), NAME_MAX_LENGTH, "Goal name")
        description = _clean_text(values.get("description"), DESCRIPTION_MAX_LENGTH, "Description")
    except ValueError as exc:
        return failure(str(exc))
    if not name:
        return failure("Goal name is required")
    target_amount = values.get("target_amount")
    error = money_error(target_amount, "Target amount")
    if error:
        return failure(error)
    target_date = (values.get("target_date") or "").strip() or None
    if target_date is not None:
        error = _target_date_error(target_date, today)
        if error:
            return failure(error)
    color = (values.get("color") or DEFAULT_CATEGORY_COLOR).strip()
    if not HEX_COLOR.match(color):
        return failure("Invalid hex color format")

    try:
        goal_id = insert_many(
            db,
            "goals",
            ("user_id", "name", "description", "target_amount", "current_amount", "target_date", "color", "icon", "status"),
            [
                (
                    user_id,
                    name,
                    description or None,
                    float(target_amount),
                    0.0,
                    target_date,
                    color,
                    (values.get("icon") or "").strip() or None,
                    "active",
                )
            ],
        )[0]
        db.commit()
    except DB_ERRORS as exc:
        db.rollback()
        logger.exception("Creating goal %r for user %s failed", name, user_id)
        return failure(f"Failed to create goal: {exc}")
    return {"success": True, "goal_id": goal_id}


def update_goal(db, user_id, goal_id, values, today=None):
    """Change the editable fields of an active goal.

    Only keys present in ``values`` are touched; an empty string clears the
    optional description, target date and icon.
    """
    today = _today(today)
    editable = ("name", "description", "target_amount", "target_date", "color", "icon")
    values = {key: value for key, value in values.items() if key in editable}
    if not values:
        return failure("At least one field must be provided for update")
    existing = _load_goal(db, user_id, goal_id)
    if existing is None:
        return failure("Goal not found")
    if existing["status"] == "completed":
        return failure("Cannot update completed goal")

    assignments = []
    params = []
    try:
        if "name" in values:
            name = _clean_text(values["name"], NAME_MAX_LENGTH, "Goal name")
            if not name:
                return failure("Goal name is required")
            assignments.append("name = ?")
            params.append(name)
        if "description" in values:
            assignments.append("description = ?")
            params.append(_clean_text(values["description"], DESCRIPTION_MAX_LENGTH, "Description") or None)
    except ValueError as exc:
        return failure(str(exc))
    if "target_amount" in values:
        error = money_error(values["target_amount"], "Target amount")
        if error:
            return failure(error)
        assignments.append("target_amount = ?")
        params.append(float(values["target_amount"]))
    if "target_date" in values:
        target_date = (values["target_date"] or "").strip() or None
        if target_date is not None and target_date != existing["target_date"]:
            error = _target_date_error(target_date, today)
            if error:
                return failure(error)
        assignments.append("target_date = ?")
        params.append(target_date)
    if "color" in values:
        color = (values["color"] or "").strip()
        if not HEX_COLOR.match(color):
            return failure("Invalid hex color format")
        assignments.append("color = ?")
        params.append(color)
    if "icon" in values:
        assignments.append("icon = ?")
        params.append((values["icon"] or "").strip() or None)
    assignments.append("updated_at = CURRENT_TIMESTAMP")

    db.execute(
        f"UPDATE goals SET {', '.join(assignments)} WHERE id = ? AND user_id = ?",
        (*params, goal_id, user_id),
    )
    db.commit()
    return {"success": True, "goal": _goal_dict(_load_goal(db, user_id, goal_id))}


def delete_goal(db, user_id, goal_id):
    existing = _load_goal(db, user_id, goal_id)
    if existing is None:
        return failure("Goal not found")
    if existing["current_amount"] > 0:
        return failure("Cannot delete goal with allocated funds")
    db.execute("DELETE FROM goals WHERE id = ? AND user_id = ?", (goal_id, user_id))
    db.commit()
    return {"success": True}


def _move_funds(db, user_id, goal_id, amount, note, direction, cache, today):
    error = money_error(amount, "Amount")
    if error:
        return failure(error)
    try:
        note = _clean_text(note, NOTE_MAX_LENGTH, "Note")
    except ValueError as exc:
        return failure(str(exc))
    existing = _load_goal(db, user_id, goal_id)
    if existing is None:
        return failure("Goal not found")

    previous_amount = existing["current_amount"]
    target_amount = existing["target_amount"]
    goal_name = existing["name"] or FALLBACK_GOAL_NAME
    if direction == "allocate":
        new_amount = round(previous_amount + amount, 2)
        new_status = "completed" if new_amount >= target_amount else "active"
        txn_type = "debit"
        description = f"Allocated to goal: {goal_name}"
    else:
        if amount > previous_amount:
            return failure("Insufficient funds")
        new_amount = round(previous_amount - amount, 2)
        new_status = "active"
        txn_type = "credit"
        description = f"Removed from goal: {goal_name}"
    if note:
        description = f"Goal: {goal_name} - {note}"

    try:
        db.execute(
            "UPDATE goals SET current_amount = ?, status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ? AND user_id = ?",
            (new_amount, new_status, goal_id, user_id),
        )
    except DB_ERRORS as exc:
        db.rollback()
        logger.exception("Updating goal %s for user %s failed", goal_id, user_id)
        return failure(f"Failed to {direction} funds: {exc}")

    written = bulk_create_transactions(
        db,
        user_id,
        [
            {
                "date": today.isoformat(),
                "description": description,
                "amount": amount,
                "type": txn_type,
                "category_id": None,
            }
        ],
        cache=cache,
        now=today,
    )
    if not written["success"]:
        db.rollback()
        logger.warning("Goal %s %s for user %s rolled back: %s", goal_id, direction, user_id, written["error"])
        return written

    logger.info("Goal %s %s %.2f for user %s", goal_id, direction, amount, user_id)
    return {
        "success": True,
        "goal_id": goal_id,
        "previous_amount": previous_amount,
        "new_amount": new_amount,
        "amount": amount,
        "new_progress": calculate_progress(new_amount, target_amount),
        "status": new_status,
        "transaction_id": written["transaction_ids"][0],
    }


def allocate_funds(db, user_id, goal_id, amount, note=None, cache=None, today=None):
    return _move_funds(db, user_id, goal_id, amount, note, "allocate", cache, _today(today))


def deallocate_funds(db, user_id, goal_id, amount, note=None, cache=None, today=None):
    return _move_funds(db, user_id, goal_id, amount, note, "deallocate", cache, _today(today))


def goal_projection(db, user_id, goal_id, monthly_contribution=None, today=None):
    """Estimate when a goal completes at a steady monthly contribution."""
    goal = _load_goal(db, user_id, goal_id)
    if goal is None:
        return failure("Goal not found")
    today = _today(today)
    remaining = round(goal["target_amount"] - goal["current_amount"], 2)
    rate = monthly_contribution or 0

    projected = None
    if rate > 0 and remaining > 0:
        months = math.ceil(remaining / rate)
        projected = {
            "estimated_date": add_months(today, months).isoformat(),
            "months_remaining": months,
            "assumed_monthly_rate": rate,
        }

    on_track = not goal["target_date"] or projected is None or projected["estimated_date"] <= goal["target_date"]
    return {
        "success": True,
        "goal_id": goal_id,
        "current_amount": goal["current_amount"],
        "target_amount": goal["target_amount"],
        "remaining_amount": remaining,
        "target_date": goal["target_date"],
        "projected_completion": projected,
        "is_on_track": on_track,
    }
