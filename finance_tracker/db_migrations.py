import argparse
from datetime import datetime

from .db import connect_db, parse_database_config


REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "username", "password_hash", "created_at"},
        "indexes": set(),
    },
    "categories": {
        "columns": {"id", "user_id", "name", "type", "color", "icon", "created_at", "updated_at"},
        "indexes": {"idx_categories_user_id", "uq_categories_system_name", "uq_categories_user_name"},
    },
    "transactions": {
        "columns": {
            "id",
            "user_id",
            "date",
            "description",
            "amount",
            "type",
            "category_id",
            "original_particulars",
            "import_id",
            "created_at",
            "updated_at",
        },
        "indexes": {
            "idx_transactions_user_date",
            "idx_transactions_user_category",
            "idx_transactions_import_id",
        },
    },
    "statement_imports": {
        "columns": {
            "id",
            "user_id",
            "filename",
            "uploaded_at",
            "parsed_at",
            "status",
            "error_message",
            "transaction_count",
        },
        "indexes": {"idx_statement_imports_user_status"},
    },
    "import_staging": {
        "columns": {"id", "import_id", "user_id", "temp_id", "created_at", "row_json", "status"},
        "indexes": {"idx_import_staging_import_id", "idx_import_staging_created_at"},
    },
    "budgets": {
        "columns": {"id", "user_id", "category_id", "month", "monthly_limit", "created_at", "updated_at"},
        "indexes": {"uq_budgets_user_category_month"},
    },
    "goals": {
        "columns": {
            "id",
            "user_id",
            "name",
            "description",
            "target_amount",
            "current_amount",
            "target_date",
            "color",
            "icon",
            "status",
            "created_at",
            "updated_at",
        },
        "indexes": {"idx_goals_user_status"},
    },
}

SYSTEM_CATEGORIES = [
    ("Salary", "#10b981", "banknote"),
    ("Freelance", "#10b981", "briefcase"),
    ("Bonus", "#10b981", "gift"),
    ("Refund", "#10b981", "arrow-uturn-left"),
    ("Other Income", "#10b981", "currency-dollar"),
    ("Rent", "#f59e0b", "home"),
    ("Mortgage", "#f59e0b", "home-modern"),
    ("Utilities", "#f59e0b", "bolt"),
    ("Maintenance", "#f59e0b", "wrench-screwdriver"),
    ("Groceries", "#8b5cf6", "shopping-cart"),
    ("Restaurants", "#8b5cf6", "utensils"),
    ("Coffee", "#8b5cf6", "coffee"),
    ("Gas", "#ef4444", "fuel"),
    ("Public Transit", "#ef4444", "bus"),
    ("Parking", "#ef4444", "parking"),
    ("Car Maintenance", "#ef4444", "wrench"),
    ("Movies", "#ec4899", "film"),
    ("Subscriptions", "#ec4899", "rectangle-stack"),
    ("Hobbies", "#ec4899", "puzzle-piece"),
    ("Sports", "#ec4899", "football"),
    ("Clothing", "#06b6d4", "shopping-bag"),
    ("Electronics", "#06b6d4", "device-phone-mobile"),
    ("Home Goods", "#06b6d4", "home"),
    ("Books", "#06b6d4", "book-open"),
]


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def column_exists(conn, table, column):
    if not table_exists(conn, table):
        return False
    return column in get_table_columns(conn, table)


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def add_column_if_missing(conn, table, col_def_sql):
    column = col_def_sql.split()[0]
    if backend_name(conn) == "postgres":
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col_def_sql}")
    elif not column_exists(conn, table, column):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            name TEXT NOT NULL,
            type TEXT NOT NULL CHECK(type IN ('system', 'custom')),
            color TEXT NOT NULL DEFAULT '#6b7280',
            icon TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            date TEXT NOT NULL,
            description TEXT NOT NULL,
            amount REAL NOT NULL CHECK(amount > 0),
            type TEXT NOT NULL CHECK(type IN ('credit', 'debit')),
            category_id INTEGER,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories (id) ON DELETE SET NULL
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_categories_user_id",
        "CREATE INDEX idx_categories_user_id ON categories(user_id)",
    )
    create_index_if_missing(
        conn,
        "uq_categories_system_name",
        "CREATE UNIQUE INDEX uq_categories_system_name ON categories(name) WHERE type = 'system'",
    )
    create_index_if_missing(
        conn,
        "uq_categories_user_name",
        "CREATE UNIQUE INDEX uq_categories_user_name ON categories(user_id, name) WHERE type = 'custom'",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_user_date",
        "CREATE INDEX idx_transactions_user_date ON transactions(user_id, date DESC)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_user_category",
        "CREATE INDEX idx_transactions_user_category ON transactions(user_id, category_id)",
    )


def migration_002(conn):
    existing = {
        row[0] for row in conn.execute("SELECT name FROM categories WHERE type = 'system'").fetchall()
    }
    for name, color, icon in SYSTEM_CATEGORIES:
        if name in existing:
            continue
        conn.execute(
            "INSERT INTO categories (user_id, name, type, color, icon) VALUES (NULL, ?, 'system', ?, ?)",
            (name, color, icon),
        )


def migration_003(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS statement_imports (
            id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            filename TEXT NOT NULL,
            uploaded_at TEXT NOT NULL,
            parsed_at TEXT,
            status TEXT NOT NULL CHECK(status IN ('parsed', 'committing', 'confirmed', 'failed', 'discarded')),
            error_message TEXT,
            transaction_count INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS import_staging (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            import_id TEXT NOT NULL,
            user_id INTEGER NOT NULL,
            temp_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            row_json TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'preview'
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_statement_imports_user_status",
        "CREATE INDEX idx_statement_imports_user_status ON statement_imports(user_id, status)",
    )
    create_index_if_missing(
        conn,
        "idx_import_staging_import_id",
        "CREATE INDEX idx_import_staging_import_id ON import_staging(import_id)",
    )
    create_index_if_missing(
        conn,
        "idx_import_staging_created_at",
        "CREATE INDEX idx_import_staging_created_at ON import_staging(created_at)",
    )


def migration_004(conn):
    # Imported rows keep the raw statement text and a link back to their upload.
    add_column_if_missing(conn, "transactions", "original_particulars TEXT")
    add_column_if_missing(conn, "transactions", "import_id TEXT")
    create_index_if_missing(
        conn,
        "idx_transactions_import_id",
        "CREATE INDEX idx_transactions_import_id ON transactions(import_id)",
    )


def migration_005(conn):
    add_column_if_missing(conn, "categories", "updated_at TEXT")
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS budgets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            category_id INTEGER NOT NULL,
            month TEXT NOT NULL,
            monthly_limit REAL NOT NULL CHECK(monthly_limit > 0),
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS goals (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            target_amount REAL NOT NULL CHECK(target_amount > 0),
            current_amount REAL NOT NULL DEFAULT 0 CHECK(current_amount >= 0),
            target_date TEXT,
            color TEXT NOT NULL DEFAULT '#6b7280',
            icon TEXT,
            status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'completed')),
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    # Budget months are stored as the first day of the month (YYYY-MM-01).
    create_index_if_missing(
        conn,
        "uq_budgets_user_category_month",
        "CREATE UNIQUE INDEX uq_budgets_user_category_month ON budgets(user_id, category_id, month)",
    )
    create_index_if_missing(
        conn,
        "idx_goals_user_status",
        "CREATE INDEX idx_goals_user_status ON goals(user_id, status)",
    )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
    (4, migration_004),
    (5, migration_005),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)

    applied_versions = {
        row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()
    }

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.utcnow().isoformat(timespec="seconds") + "Z"),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        missing_columns[table_name] = sorted(col for col in table_spec["columns"] if col not in table_cols)

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description="Check finance tracker DB schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file")
    args = parser.parse_args()
    print(get_db_health(args.db_path))


if __name__ == "__main__":
    main()
