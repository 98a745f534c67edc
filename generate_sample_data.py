import argparse
import csv
import random
from datetime import date, timedelta

from werkzeug.security import generate_password_hash

from finance_tracker import create_app
from finance_tracker.ledger import bulk_create_transactions

SAMPLE_DEBITS = [
    ("Groceries", "Grocery purchase METRO"),
    ("Restaurants", "Card purchase SUSHI BAR"),
    ("Gas", "Fuel purchase SHELL"),
    ("Utilities", "Hydro bill payment"),
    ("Subscriptions", "Streaming payment NETFLIX"),
]


def write_statement(path, rows=60):
    """Write a bank-style CSV statement that exercises the import pipeline."""
    start = date.today() - timedelta(days=rows)
    with open(path, "w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(["Transaction Date", "Particulars", "Debit", "Credit"])
        for i in range(rows):
            day = (start + timedelta(days=i)).strftime("%d/%m/%Y")
            if i % 14 == 0:
                writer.writerow([day, "MONTHLY SALARY DEPOSIT", "", "3200.00"])
            else:
                _, particulars = random.choice(SAMPLE_DEBITS)
                writer.writerow([day, particulars, f"{random.uniform(5, 200):.2f}", ""])


def main():
    parser = argparse.ArgumentParser(description="Seed a demo user and optionally write a sample statement")
    parser.add_argument("--statement", metavar="PATH", help="Also write a sample CSV statement to PATH")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        db.execute(
            "INSERT INTO users (username, password_hash) VALUES (?, ?)",
            ("demo", generate_password_hash("demo1234")),
        )
        db.commit()
        user_id = db.execute("SELECT id FROM users WHERE username = 'demo'").fetchone()["id"]

        category_ids = {
            row["name"]: row["id"]
            for row in db.execute("SELECT id, name FROM categories WHERE type = 'system'").fetchall()
        }

        start = date.today() - timedelta(days=90)
        transactions = []
        for i in range(40):
            category, description = random.choice(SAMPLE_DEBITS)
            transactions.append({
                "date": (start + timedelta(days=i * 2)).isoformat(),
                "description": description,
                "amount": round(random.uniform(5, 200), 2),
                "type": "debit",
                "category_id": category_ids.get(category),
            })
        for month_offset in range(3):
            transactions.append({
                "date": (start + timedelta(days=month_offset * 30)).isoformat(),
                "description": "Monthly salary",
                "amount": 3200.0,
                "type": "credit",
                "category_id": category_ids.get("Salary"),
            })

        result = bulk_create_transactions(db, user_id, transactions)
        if not result["success"]:
            raise SystemExit(result["error"])

    if args.statement:
        write_statement(args.statement)
        print(f"Sample statement written to {args.statement}")
    print("Sample data generated. Login with demo / demo1234")


if __name__ == "__main__":
    main()
