import json
import logging
import uuid
from datetime import datetime, timedelta, timezone

from .statement_import import ImportSession, ParsedTransaction

logger = logging.getLogger(__name__)

ACTIVE_IMPORT_STATUSES = ("parsed", "committing")


def utc_now_text(delta=None):
    moment = datetime.now(timezone.utc)
    if delta is not None:
        moment = moment - delta
    return moment.isoformat(timespec="seconds")


def cleanup_expired_import_staging(db, max_age_hours=24):
    cutoff = utc_now_text(timedelta(hours=max_age_hours))
    deleted = db.execute("DELETE FROM import_staging WHERE created_at < ?", (cutoff,)).rowcount
    if deleted and deleted > 0:
        logger.info("Removed %s expired staged import rows", deleted)


def stage_import_session(db, user_id, filename, rows):
    """Record a new upload and stage its rows; returns the import id."""
    import_id = str(uuid.uuid4())
    created_at = utc_now_text()
    db.execute(
        """
        INSERT INTO statement_imports (id, user_id, filename, uploaded_at, parsed_at, status, transaction_count)
        VALUES (?, ?, ?, ?, ?, 'parsed', ?)
        """,
        (import_id, user_id, filename, created_at, created_at, len(rows)),
    )
    for row in rows:
        db.execute(
            """
            INSERT INTO import_staging (import_id, user_id, temp_id, created_at, row_json, status)
            VALUES (?, ?, ?, ?, ?, 'preview')
            """,
            (import_id, user_id, row.temp_id, created_at, json.dumps(row.to_dict())),
        )
    return import_id


def record_failed_import(db, user_id, filename, error_message):
    import_id = str(uuid.uuid4())
    created_at = utc_now_text()
    db.execute(
        """
        INSERT INTO statement_imports (id, user_id, filename, uploaded_at, status, error_message)
        VALUES (?, ?, ?, ?, 'failed', ?)
        """,
        (import_id, user_id, filename, created_at, error_message),
    )
    return import_id


def get_statement_import(db, import_id, user_id):
    return db.execute(
        "SELECT * FROM statement_imports WHERE id = ? AND user_id = ?",
        (import_id, user_id),
    ).fetchone()


def list_statement_imports(db, user_id, limit=20):
    return db.execute(
        """
        SELECT id, filename, uploaded_at, status, error_message, transaction_count
        FROM statement_imports
        WHERE user_id = ?
        ORDER BY uploaded_at DESC
        LIMIT ?
        """,
        (user_id, limit),
    ).fetchall()


def load_import_session(db, import_id, user_id, edit_state=None, now=None):
    """Rebuild the staged session, or return None when it has expired."""
    if not import_id:
        return None
    record = get_statement_import(db, import_id, user_id)
    if record is None or record["status"] not in ACTIVE_IMPORT_STATUSES:
        return None

    staged_rows = db.execute(
        "SELECT row_json FROM import_staging WHERE import_id = ? AND user_id = ? ORDER BY id ASC",
        (import_id, user_id),
    ).fetchall()
    if not staged_rows:
        return None

    rows = []
    for staged in staged_rows:
        try:
            rows.append(ParsedTransaction.from_dict(json.loads(staged["row_json"])))
        except (KeyError, TypeError, ValueError):
            logger.warning("Skipping unreadable staged row for import %s", import_id)
            continue

    edit_state = edit_state or {}
    session = ImportSession(
        rows,
        import_id=import_id,
        editing_id=edit_state.get("editing_id"),
        edit_values=edit_state.get("edit_values"),
    )
    session.revalidate_all(now=now)
    return session


def save_import_session(db, session, user_id, temp_ids=None):
    """Write rows back to staging; ``temp_ids`` limits the update to those rows."""
    for row in session.rows:
        if temp_ids is not None and row.temp_id not in temp_ids:
            continue
        db.execute(
            "UPDATE import_staging SET row_json = ? WHERE import_id = ? AND user_id = ? AND temp_id = ?",
            (json.dumps(row.to_dict()), session.import_id, user_id, row.temp_id),
        )


def update_import_status(db, import_id, user_id, status, expected_status=None, error_message=None, transaction_count=None):
    """Move an import to ``status``; returns False if ``expected_status`` did not match."""
    assignments = ["status = ?", "error_message = ?"]
    params = [status, error_message]
    if transaction_count is not None:
        assignments.append("transaction_count = ?")
        params.append(transaction_count)
    sql = f"UPDATE statement_imports SET {', '.join(assignments)} WHERE id = ? AND user_id = ?"
    params.extend([import_id, user_id])
    if expected_status is not None:
        sql += " AND status = ?"
        params.append(expected_status)
    return db.execute(sql, tuple(params)).rowcount == 1


def delete_staged_rows(db, import_id, user_id):
    db.execute("DELETE FROM import_staging WHERE import_id = ? AND user_id = ?", (import_id, user_id))


def discard_import_session(db, import_id, user_id):
    if not update_import_status(db, import_id, user_id, "discarded", expected_status="parsed"):
        return False
    delete_staged_rows(db, import_id, user_id)
    return True
