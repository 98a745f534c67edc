import io
import os
from datetime import date
from functools import wraps

from flask import (
    Flask,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from werkzeug.security import check_password_hash, generate_password_hash

from .budgets import create_budget, delete_budget, get_budget_alerts, get_budgets, update_budget
from .db import DB_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .goals import (
    allocate_funds,
    create_goal,
    deallocate_funds,
    delete_goal,
    goal_projection,
    list_goals,
    update_goal,
)
from .import_staging import (
    cleanup_expired_import_staging,
    delete_staged_rows,
    discard_import_session,
    list_statement_imports,
    load_import_session,
    record_failed_import,
    save_import_session,
    stage_import_session,
    update_import_status,
)
from .ledger import (
    SORTABLE_COLUMNS,
    accessible_category_ids,
    category_choices,
    coerce_category_id,
    commit_import,
    create_category,
    create_transaction,
    dashboard_summary,
    delete_category,
    delete_transaction,
    list_categories,
    list_transactions,
    update_category,
    update_transaction,
)
from .statement_import import (
    NoActiveEditError,
    StatementImportError,
    UnknownRowError,
    parse_statement,
    read_statement,
)
from .view_cache import DASHBOARD_VIEW, TRANSACTIONS_VIEW, ViewCache


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


IMPORT_PREVIEW_DEFAULT_LIMIT = 25
MIN_PASSWORD_LENGTH = 8
PREVIEW_EXPIRED_MESSAGE = "Preview expired. Please re-upload the file."


def get_import_edit_state(user_id, import_id):
    by_user = session.get("import_edit_state_by_user") or {}
    user_values = by_user.get(str(user_id)) or {}
    return user_values.get(import_id) or {}


def save_import_edit_state(user_id, import_id, import_session):
    if not import_id:
        return
    by_user = session.get("import_edit_state_by_user") or {}
    user_values = by_user.get(str(user_id)) or {}
    if import_session.editing_id is None:
        user_values.pop(import_id, None)
    else:
        user_values[import_id] = {
            "editing_id": import_session.editing_id,
            "edit_values": import_session.edit_values,
        }
    by_user[str(user_id)] = user_values
    session["import_edit_state_by_user"] = by_user
    session.modified = True


def clear_import_edit_state(user_id, import_id):
    by_user = session.get("import_edit_state_by_user") or {}
    user_values = by_user.get(str(user_id)) or {}
    if import_id in user_values:
        user_values.pop(import_id, None)
        by_user[str(user_id)] = user_values
        session["import_edit_state_by_user"] = by_user
        session.modified = True


def preview_rows_for_display(rows, show_all=False, limit=IMPORT_PREVIEW_DEFAULT_LIMIT):
    total_rows = len(rows)
    if show_all:
        return rows, total_rows, total_rows
    displayed_rows = rows[:limit]
    return displayed_rows, len(displayed_rows), total_rows


def parse_edit_changes(payload):
    """Turn submitted edit fields into typed values; raises ValueError on bad input."""
    changes = {}
    for name in ("date", "description", "type"):
        if name in payload and payload[name] is not None:
            changes[name] = str(payload[name]).strip()
    if "amount" in payload and payload["amount"] not in (None, ""):
        try:
            changes["amount"] = float(payload["amount"])
        except (TypeError, ValueError):
            raise ValueError("Amount must be a number") from None
    if "category_id" in payload:
        try:
            changes["category_id"] = coerce_category_id(payload["category_id"])
        except (TypeError, ValueError):
            raise ValueError("Category not found") from None
    return changes


def form_amount(value):
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def form_changes(form, fields):
    """Keep only the submitted ``fields`` whose value is not blank."""
    return {name: form[name] for name in fields if name in form and form[name].strip() != ""}


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "finance_tracker.sqlite"),
        LOG_LEVEL="INFO",
        MAX_IMPORT_FILE_BYTES=10 * 1024 * 1024,
        IMPORT_BATCH_LIMIT=1000,
        IMPORT_STAGING_MAX_AGE_HOURS=24,
        IMPORT_STRICT_DATES=False,
        IMPORT_PROGRESS_INTERVAL=100,
        PREVIEW_ROW_LIMIT=IMPORT_PREVIEW_DEFAULT_LIMIT,
        VIEW_CACHE_MAX_ENTRIES=512,
    )
    app.config.from_prefixed_env("FINANCE_TRACKER")

    if test_config is not None:
        app.config.update(test_config)

    app.logger.setLevel(str(app.config["LOG_LEVEL"]).upper())
    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)
    app.extensions["view_cache"] = ViewCache(app.config["VIEW_CACHE_MAX_ENTRIES"])

    def view_cache():
        return app.extensions["view_cache"]

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(parse_database_config(app.config["DATABASE"]))
            except DB_ERRORS + (OSError, RuntimeError) as exc:
                message = f"Unable to open database at {app.config['DATABASE']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(parse_database_config(app.config["DATABASE"]))
            app.config["DB_INIT_ERROR"] = None
        except DB_ERRORS + (OSError, RuntimeError) as exc:
            message = f"Failed to initialize database at {app.config['DATABASE']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(parse_database_config(app.config["DATABASE"])))
        except DB_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                if request.path.startswith("/import/") and request.method == "POST":
                    return jsonify({"success": False, "error": "Unauthorized"}), 401
                return redirect(url_for("login"))
            return view(**kwargs)

        return wrapped_view

    def render_db_init_error_response():
        message = app.config.get("DB_INIT_ERROR") or "Database initialization failed."
        return f"<h1>Database initialization failed</h1><p>{message}</p>", 500

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR"):
            return render_db_init_error_response()

        user_id = session.get("user_id")
        if user_id is None:
            g.user = None
        else:
            g.user = get_db().execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()

    @app.route("/")
    def index():
        if g.user:
            return redirect(url_for("dashboard"))
        return redirect(url_for("login"))

    @app.route("/register", methods=("GET", "POST"))
    def register():
        if request.method == "POST":
            username = request.form.get("username", "").strip()
            password = request.form.get("password", "")
            error = None
            if not username:
                error = "Username is required."
            elif len(password) < MIN_PASSWORD_LENGTH:
                error = f"Password must be at least {MIN_PASSWORD_LENGTH} characters."

            db = get_db()
            if error is None:
                existing = db.execute("SELECT 1 FROM users WHERE username = ?", (username,)).fetchone()
                if existing is not None:
                    error = "User already exists."

            if error is None:
                try:
                    db.execute(
                        "INSERT INTO users (username, password_hash) VALUES (?, ?)",
                        (username, generate_password_hash(password)),
                    )
                    db.commit()
                    app.logger.info("Registered user %s", username)
                    flash("Registration successful. Please login.")
                    return redirect(url_for("login"))
                except DB_ERRORS:
                    db.rollback()
                    error = "User already exists."

            flash(error)
        return render_template("register.html")

    @app.route("/login", methods=("GET", "POST"))
    def login():
        if request.method == "POST":
            username = request.form.get("username", "").strip()
            password = request.form.get("password", "")
            db = get_db()
            user = db.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
            error = None

            if user is None or not check_password_hash(user["password_hash"], password):
                error = "Incorrect username or password."

            if error is None:
                session.clear()
                session["user_id"] = user["id"]
                return redirect(url_for("dashboard"))

            flash(error)

        return render_template("login.html")

    @app.route("/logout")
    def logout():
        session.clear()
        return redirect(url_for("login"))

    @app.route("/dashboard")
    @login_required
    def dashboard():
        month = (request.args.get("month") or "").strip() or date.today().strftime("%Y-%m")
        db = get_db()
        user_id = g.user["id"]
        try:
            summary = view_cache().get_or_compute(
                user_id, DASHBOARD_VIEW, month, lambda: dashboard_summary(db, user_id, month)
            )
            alerts = get_budget_alerts(db, user_id, month=month)["alerts"]
        except ValueError as exc:
            flash(str(exc))
            return redirect(url_for("dashboard"))
        recent_imports = list_statement_imports(db, user_id, limit=5)
        return render_template(
            "dashboard.html", summary=summary, month=month, recent_imports=recent_imports, alerts=alerts
        )

    @app.get("/transactions")
    @login_required
    def transactions():
        args = request.args
        try:
            category_id = coerce_category_id(args.get("category_id"))
            limit = min(max(int(args.get("limit", 50)), 1), 100)
            offset = max(int(args.get("offset", 0)), 0)
        except ValueError:
            flash("Invalid filter value.")
            return redirect(url_for("transactions"))
        sort_by = args.get("sort_by", "date")
        filters = {
            "month": (args.get("month") or "").strip() or None,
            "txn_type": (args.get("type") or "").strip() or None,
            "category_id": category_id,
            "sort_by": sort_by if sort_by in SORTABLE_COLUMNS else "date",
            "sort_order": "asc" if args.get("sort_order") == "asc" else "desc",
            "limit": limit,
            "offset": offset,
        }
        db = get_db()
        user_id = g.user["id"]
        cache_key = tuple(sorted(filters.items()))
        try:
            result = view_cache().get_or_compute(
                user_id, TRANSACTIONS_VIEW, cache_key, lambda: list_transactions(db, user_id, **filters)
            )
        except ValueError as exc:
            flash(str(exc))
            return redirect(url_for("transactions"))
        return render_template(
            "transactions.html",
            result=result,
            filters=filters,
            categories=list_categories(db, user_id),
            today=date.today().isoformat(),
        )

    @app.post("/transactions/new")
    @login_required
    def new_transaction():
        form = request.form
        result = create_transaction(
            get_db(),
            g.user["id"],
            {
                "date": form.get("date", "").strip(),
                "description": form.get("description", ""),
                "amount": form_amount(form.get("amount")),
                "type": form.get("type", ""),
                "category_id": form.get("category_id"),
            },
            cache=view_cache(),
        )
        if result["success"]:
            flash("Transaction added.")
        else:
            flash(result["error"])
        return redirect(url_for("transactions"))

    @app.post("/transactions/<int:transaction_id>/delete")
    @login_required
    def remove_transaction(transaction_id):
        result = delete_transaction(get_db(), g.user["id"], transaction_id, cache=view_cache())
        if not result["success"]:
            app.logger.warning("Delete failed for transaction_id=%s user_id=%s: %s", transaction_id, g.user["id"], result["error"])
            flash(result["error"])
        else:
            flash("Transaction deleted.")
        return redirect(url_for("transactions"))

    @app.post("/transactions/<int:transaction_id>/edit")
    @login_required
    def edit_transaction(transaction_id):
        form = request.form
        changes = form_changes(form, ("date", "description", "type"))
        if (form.get("amount") or "").strip():
            changes["amount"] = form_amount(form["amount"])
        if "category_id" in form:
            changes["category_id"] = form["category_id"]
        result = update_transaction(get_db(), g.user["id"], transaction_id, changes, cache=view_cache())
        flash("Transaction updated." if result["success"] else result["error"])
        return redirect(url_for("transactions"))

    @app.route("/categories", methods=("GET", "POST"))
    @login_required
    def categories():
        db = get_db()
        if request.method == "POST":
            result = create_category(
                db,
                g.user["id"],
                request.form.get("name", ""),
                color=request.form.get("color") or None,
                icon=request.form.get("icon"),
            )
            flash("Category added." if result["success"] else result["error"])
            return redirect(url_for("categories"))

        items = list_categories(db, g.user["id"])
        return render_template("categories.html", categories=items)

    @app.post("/categories/<int:category_id>/delete")
    @login_required
    def remove_category(category_id):
        result = delete_category(get_db(), g.user["id"], category_id)
        flash("Category deleted." if result["success"] else result["error"])
        return redirect(url_for("categories"))

    @app.post("/categories/<int:category_id>/edit")
    @login_required
    def edit_category(category_id):
        form = request.form
        result = update_category(
            get_db(),
            g.user["id"],
            category_id,
            name=form.get("name") or None,
            color=form.get("color") or None,
            icon=form.get("icon"),
            cache=view_cache(),
        )
        flash("Category updated." if result["success"] else result["error"])
        return redirect(url_for("categories"))

    @app.route("/budgets", methods=("GET", "POST"))
    @login_required
    def budgets():
        db = get_db()
        user_id = g.user["id"]
        if request.method == "POST":
            form = request.form
            result = create_budget(
                db,
                user_id,
                form.get("category_id"),
                form_amount(form.get("monthly_limit")),
                month=(form.get("month") or "").strip() or None,
                cache=view_cache(),
            )
            flash("Budget added." if result["success"] else result["error"])
            month = result["month"][:7] if result["success"] else None
            return redirect(url_for("budgets", month=month))

        try:
            overview = get_budgets(db, user_id, month=(request.args.get("month") or "").strip() or None)
        except ValueError as exc:
            flash(str(exc))
            return redirect(url_for("budgets"))
        return render_template("budgets.html", overview=overview, categories=list_categories(db, user_id))

    @app.get("/budgets/alerts")
    @login_required
    def budget_alerts():
        try:
            alerts = get_budget_alerts(get_db(), g.user["id"], month=(request.args.get("month") or "").strip() or None)
        except ValueError as exc:
            return jsonify({"success": False, "error": str(exc)}), 400
        return jsonify({"success": True, **alerts})

    @app.post("/budgets/<int:budget_id>/edit")
    @login_required
    def edit_budget(budget_id):
        result = update_budget(
            get_db(), g.user["id"], budget_id, form_amount(request.form.get("monthly_limit")), cache=view_cache()
        )
        flash("Budget updated." if result["success"] else result["error"])
        month = result["budget"]["month"][:7] if result["success"] else None
        return redirect(url_for("budgets", month=month))

    @app.post("/budgets/<int:budget_id>/delete")
    @login_required
    def remove_budget(budget_id):
        result = delete_budget(get_db(), g.user["id"], budget_id, cache=view_cache())
        flash("Budget deleted." if result["success"] else result["error"])
        return redirect(url_for("budgets"))

    @app.route("/goals", methods=("GET", "POST"))
    @login_required
    def goals():
        db = get_db()
        user_id = g.user["id"]
        if request.method == "POST":
            values = request.form.to_dict()
            values["target_amount"] = form_amount(values.get("target_amount"))
            result = create_goal(db, user_id, values)
            flash("Goal added." if result["success"] else result["error"])
            return redirect(url_for("goals"))

        status = request.args.get("status", "active")
        try:
            overview = list_goals(
                db,
                user_id,
                status=status,
                sort_by=request.args.get("sort_by", "created_at"),
                sort_order=request.args.get("sort_order", "desc"),
            )
        except ValueError as exc:
            flash(str(exc))
            return redirect(url_for("goals"))
        return render_template("goals.html", overview=overview, status=status, today=date.today().isoformat())

    @app.post("/goals/<int:goal_id>/edit")
    @login_required
    def edit_goal(goal_id):
        values = form_changes(request.form, ("name", "description", "target_amount", "target_date", "color", "icon"))
        if "target_amount" in values:
            values["target_amount"] = form_amount(values["target_amount"])
        for name in ("description", "target_date"):
            if name in request.form and name not in values:
                values[name] = ""
        result = update_goal(get_db(), g.user["id"], goal_id, values)
        flash("Goal updated." if result["success"] else result["error"])
        return redirect(url_for("goals"))

    @app.post("/goals/<int:goal_id>/delete")
    @login_required
    def remove_goal(goal_id):
        result = delete_goal(get_db(), g.user["id"], goal_id)
        flash("Goal deleted." if result["success"] else result["error"])
        return redirect(url_for("goals"))

    def move_goal_funds(goal_id, move, done_message):
        result = move(
            get_db(),
            g.user["id"],
            goal_id,
            form_amount(request.form.get("amount")),
            note=request.form.get("note"),
            cache=view_cache(),
        )
        if not result["success"]:
            app.logger.warning("Goal funds change failed for goal_id=%s user_id=%s: %s", goal_id, g.user["id"], result["error"])
        flash(done_message if result["success"] else result["error"])
        return redirect(url_for("goals", status="all"))

    @app.post("/goals/<int:goal_id>/allocate")
    @login_required
    def allocate_goal_funds(goal_id):
        return move_goal_funds(goal_id, allocate_funds, "Funds added to goal.")

    @app.post("/goals/<int:goal_id>/deallocate")
    @login_required
    def deallocate_goal_funds(goal_id):
        return move_goal_funds(goal_id, deallocate_funds, "Funds removed from goal.")

    @app.get("/goals/<int:goal_id>/projection")
    @login_required
    def goal_projection_view(goal_id):
        contribution = form_amount(request.args.get("monthly_contribution"))
        result = goal_projection(get_db(), g.user["id"], goal_id, monthly_contribution=contribution)
        if not result["success"]:
            return jsonify(result), 404
        return jsonify(result)

    def open_import_session(import_id):
        user_id = g.user["id"]
        return load_import_session(
            get_db(),
            import_id,
            user_id,
            edit_state=get_import_edit_state(user_id, import_id),
        )

    def expired_response():
        return jsonify({"success": False, "error": PREVIEW_EXPIRED_MESSAGE}), 404

    def session_response(import_session, **extra):
        payload = {"success": True}
        payload.update(import_session.to_view())
        payload.update(extra)
        return jsonify(payload)

    @app.route("/import/csv", methods=("GET", "POST"))
    @login_required
    def import_csv():
        db = get_db()
        user_id = g.user["id"]

        if request.method == "POST":
            upload = request.files.get("file")
            if upload is None or not upload.filename:
                flash("Please choose a CSV file to upload.")
                return redirect(url_for("import_csv"))
            filename = upload.filename
            if not filename.lower().endswith(".csv"):
                flash("Only CSV files are supported.")
                return redirect(url_for("import_csv"))

            file_bytes = upload.read()
            max_bytes = app.config["MAX_IMPORT_FILE_BYTES"]
            if len(file_bytes) > max_bytes:
                if max_bytes >= 1024 * 1024:
                    limit = f"{max_bytes // (1024 * 1024)}MB"
                else:
                    limit = f"{max_bytes} bytes"
                flash(f"File size must be less than {limit}.")
                return redirect(url_for("import_csv"))

            def log_progress(processed, total):
                app.logger.debug("Parsed %s/%s rows of %s", processed, total, filename)

            try:
                rows = parse_statement(
                    read_statement(io.BytesIO(file_bytes)),
                    strict_dates=app.config["IMPORT_STRICT_DATES"],
                    progress_callback=log_progress,
                    progress_interval=app.config["IMPORT_PROGRESS_INTERVAL"],
                )
            except StatementImportError as exc:
                app.logger.warning("Import of %s failed for user_id=%s: %s", filename, user_id, exc)
                record_failed_import(db, user_id, filename, str(exc))
                db.commit()
                flash(str(exc))
                return redirect(url_for("import_csv"))

            cleanup_expired_import_staging(db, app.config["IMPORT_STAGING_MAX_AGE_HOURS"])
            import_id = stage_import_session(db, user_id, filename, rows)
            db.commit()
            invalid = sum(1 for row in rows if not row.is_valid)
            app.logger.info("Staged import %s for user_id=%s rows=%s invalid=%s", import_id, user_id, len(rows), invalid)
            flash(f"Parsed {len(rows)} transaction(s) from {filename}.")
            return redirect(url_for("import_csv", import_id=import_id))

        import_id = (request.args.get("import_id") or "").strip()
        if import_id:
            import_session = open_import_session(import_id)
            if import_session is None:
                flash(PREVIEW_EXPIRED_MESSAGE)
                return redirect(url_for("import_csv"))
            view = import_session.to_view()
            show_all = request.args.get("show_all") == "1"
            displayed, displayed_count, total_rows = preview_rows_for_display(
                view["transactions"], show_all=show_all, limit=app.config["PREVIEW_ROW_LIMIT"]
            )
            return render_template(
                "import_csv.html",
                view=view,
                rows=displayed,
                displayed_count=displayed_count,
                total_rows=total_rows,
                categories=category_choices(db, user_id),
            )

        return render_template("import_csv.html", view=None, imports=list_statement_imports(db, user_id))

    @app.get("/import/<import_id>")
    @login_required
    def import_session_state(import_id):
        import_session = open_import_session(import_id)
        if import_session is None:
            return expired_response()
        return session_response(import_session)

    @app.post("/import/<import_id>/rows/<temp_id>/toggle")
    @login_required
    def toggle_import_row(import_id, temp_id):
        import_session = open_import_session(import_id)
        if import_session is None:
            return expired_response()
        try:
            import_session.toggle_selection(temp_id)
        except UnknownRowError as exc:
            return jsonify({"success": False, "error": str(exc)}), 404
        db = get_db()
        save_import_session(db, import_session, g.user["id"], temp_ids={temp_id})
        db.commit()
        return session_response(import_session)

    @app.post("/import/<import_id>/toggle-all")
    @login_required
    def toggle_all_import_rows(import_id):
        import_session = open_import_session(import_id)
        if import_session is None:
            return expired_response()
        selected = import_session.toggle_select_all()
        db = get_db()
        save_import_session(db, import_session, g.user["id"])
        db.commit()
        return session_response(import_session, all_selected=selected)

    @app.post("/import/<import_id>/rows/<temp_id>/edit")
    @login_required
    def begin_import_row_edit(import_id, temp_id):
        import_session = open_import_session(import_id)
        if import_session is None:
            return expired_response()
        try:
            import_session.begin_edit(temp_id)
        except UnknownRowError as exc:
            return jsonify({"success": False, "error": str(exc)}), 404
        save_import_edit_state(g.user["id"], import_id, import_session)
        return session_response(import_session)

    @app.post("/import/<import_id>/edit/save")
    @login_required
    def save_import_row_edit(import_id):
        user_id = g.user["id"]
        import_session = open_import_session(import_id)
        if import_session is None:
            return expired_response()
        payload = request.get_json(silent=True) or request.form.to_dict()
        try:
            changes = parse_edit_changes(payload)
        except ValueError as exc:
            return jsonify({"success": False, "error": str(exc)}), 400

        db = get_db()
        category_id = changes.get("category_id")
        if category_id is not None and category_id not in accessible_category_ids(db, user_id, [category_id]):
            return jsonify({"success": False, "error": "Category not found"}), 400

        try:
            row, fixed = import_session.commit_edit(changes)
        except NoActiveEditError as exc:
            return jsonify({"success": False, "error": str(exc)}), 409

        save_import_session(db, import_session, user_id, temp_ids={row.temp_id})
        db.commit()
        save_import_edit_state(user_id, import_id, import_session)
        message = f"Row {row.row_number} is now valid" if fixed else None
        return session_response(import_session, message=message, row=row.to_dict())

    @app.post("/import/<import_id>/edit/cancel")
    @login_required
    def cancel_import_row_edit(import_id):
        import_session = open_import_session(import_id)
        if import_session is None:
            return expired_response()
        try:
            import_session.cancel_edit()
        except NoActiveEditError as exc:
            return jsonify({"success": False, "error": str(exc)}), 409
        save_import_edit_state(g.user["id"], import_id, import_session)
        return session_response(import_session)

    @app.post("/import/<import_id>/commit")
    @login_required
    def commit_import_session(import_id):
        user_id = g.user["id"]
        import_session = open_import_session(import_id)
        if import_session is None:
            return expired_response()

        db = get_db()
        if not update_import_status(db, import_id, user_id, "committing", expected_status="parsed"):
            db.rollback()
            return jsonify({"success": False, "error": "This import is already being committed."}), 409
        db.commit()

        try:
            result = commit_import(
                db,
                user_id,
                import_session.selected_rows,
                import_id=import_id,
                cache=view_cache(),
                batch_limit=app.config["IMPORT_BATCH_LIMIT"],
            )
        except Exception as exc:
            db.rollback()
            app.logger.exception("Commit of import %s crashed for user_id=%s", import_id, user_id)
            result = {"success": False, "error": f"Failed to import transactions: {exc}", "database_error": True}

        if not result["success"]:
            update_import_status(
                db, import_id, user_id, "parsed", expected_status="committing", error_message=result["error"]
            )
            db.commit()
            app.logger.warning("Commit of import %s failed for user_id=%s: %s", import_id, user_id, result["error"])
            return jsonify(result), 500 if result.get("database_error") else 400

        update_import_status(
            db,
            import_id,
            user_id,
            "confirmed",
            expected_status="committing",
            transaction_count=result["created_count"],
        )
        delete_staged_rows(db, import_id, user_id)
        db.commit()
        clear_import_edit_state(user_id, import_id)
        app.logger.info("Committed import %s for user_id=%s created=%s", import_id, user_id, result["created_count"])
        result["redirect"] = url_for("transactions")
        return jsonify(result)

    @app.post("/import/<import_id>/discard")
    @login_required
    def discard_import(import_id):
        user_id = g.user["id"]
        db = get_db()
        discarded = discard_import_session(db, import_id, user_id)
        db.commit()
        clear_import_edit_state(user_id, import_id)
        if not discarded:
            return expired_response()
        return jsonify({"success": True, "redirect": url_for("import_csv")})

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
