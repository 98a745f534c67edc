from datetime import date
from pathlib import Path

import pytest

from finance_tracker import create_app
from finance_tracker.budgets import budget_month, budget_status, get_budgets
from finance_tracker.goals import (
    add_months,
    allocate_funds,
    create_goal,
    goal_projection,
    list_goals,
    update_goal,
)


@pytest.fixture()
def app(tmp_path: Path):
    app = create_app({"TESTING": True, "SECRET_KEY": "test", "DATABASE": str(tmp_path / "test.sqlite")})

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


def signed_in(client, username="user1"):
    client.post("/register", data={"username": username, "password": "password"})
    client.post("/login", data={"username": username, "password": "password"})
    return client


def query_one(client, sql, params=()):
    with client.application.app_context():
        return client.application.get_db().execute(sql, params).fetchone()


def category_id(client, name):
    return query_one(client, "SELECT id FROM categories WHERE name = ?", (name,))["id"]


def add_transaction(client, txn_date, description, amount, txn_type="debit", category=None):
    data = {"date": txn_date, "description": description, "amount": str(amount), "type": txn_type}
    if category is not None:
        data["category_id"] = str(category)
    client.post("/transactions/new", data=data)


def test_budget_month_and_status_helpers():
    assert budget_month("2025-01") == "2025-01-01"
    assert budget_month("2025-01-15") == "2025-01-01"
    assert budget_month(None, today=date(2025, 3, 9)) == "2025-03-01"
    with pytest.raises(ValueError):
        budget_month("2025-13")
    with pytest.raises(ValueError):
        budget_month("2025-1")

    assert budget_status(79.99) == "on_track"
    assert budget_status(80) == "warning"
    assert budget_status(100) == "warning"
    assert budget_status(100.01) == "exceeded"


def test_budget_usage_summary_and_alerts(app, client):
    signed_in(client)
    groceries = category_id(client, "Groceries")
    restaurants = category_id(client, "Restaurants")
    coffee = category_id(client, "Coffee")
    for category, limit in ((groceries, "200"), (restaurants, "100"), (coffee, "50")):
        response = client.post(
            "/budgets", data={"category_id": str(category), "monthly_limit": limit, "month": "2025-01"}, follow_redirects=True
        )
        assert b"Budget added." in response.data

    add_transaction(client, "2025-01-05", "Supermarket", 170, category=groceries)
    add_transaction(client, "2025-01-07", "Dinner out", 120, category=restaurants)
    add_transaction(client, "2025-01-08", "Latte", 10, category=coffee)
    add_transaction(client, "2025-01-09", "Store refund", 500, txn_type="credit", category=groceries)
    add_transaction(client, "2025-02-01", "Next month shop", 90, category=groceries)

    user_id = query_one(client, "SELECT id FROM users WHERE username = 'user1'")["id"]
    with app.app_context():
        overview = get_budgets(app.get_db(), user_id, month="2025-01")

    by_name = {budget["category_name"]: budget for budget in overview["budgets"]}
    assert overview["month"] == "2025-01-01"
    assert (by_name["Groceries"]["current_spending"], by_name["Groceries"]["remaining_amount"]) == (170.0, 30.0)
    assert (by_name["Groceries"]["percentage_used"], by_name["Groceries"]["status"]) == (85.0, "warning")
    assert (by_name["Restaurants"]["remaining_amount"], by_name["Restaurants"]["status"]) == (-20.0, "exceeded")
    assert by_name["Coffee"]["status"] == "on_track"
    assert overview["summary"]["total_budgeted"] == 350.0
    assert overview["summary"]["total_spent"] == 300.0
    assert overview["summary"]["categories_exceeded"] == 1

    body = client.get("/budgets/alerts?month=2025-01").get_json()
    assert [alert["category_name"] for alert in body["alerts"]] == ["Restaurants", "Groceries"]
    assert [alert["severity"] for alert in body["alerts"]] == ["high", "medium"]

    page = client.get("/dashboard?month=2025-01")
    assert b'id="budget-alerts"' in page.data
    page = client.get("/budgets?month=2025-01")
    assert b'<span id="total-budgeted">350.00</span>' in page.data


def test_budget_validation_update_and_delete(client):
    signed_in(client)
    groceries = category_id(client, "Groceries")

    response = client.post("/budgets", data={"category_id": str(groceries), "monthly_limit": "0"}, follow_redirects=True)
    assert b"Budget limit must be greater than zero" in response.data
    response = client.post("/budgets", data={"category_id": str(groceries), "monthly_limit": "10.555"}, follow_redirects=True)
    assert b"Budget limit must have at most 2 decimal places" in response.data
    response = client.post("/budgets", data={"category_id": "99999", "monthly_limit": "10"}, follow_redirects=True)
    assert b"Category not found" in response.data

    client.post("/budgets", data={"category_id": str(groceries), "monthly_limit": "100", "month": "2025-01"})
    response = client.post(
        "/budgets", data={"category_id": str(groceries), "monthly_limit": "50", "month": "2025-01-20"}, follow_redirects=True
    )
    assert b"Budget already exists for this category this month" in response.data

    budget = query_one(client, "SELECT id, month FROM budgets")
    assert budget["month"] == "2025-01-01"
    response = client.post(f"/budgets/{budget['id']}/edit", data={"monthly_limit": "400"}, follow_redirects=True)
    assert b"Budget updated." in response.data
    assert query_one(client, "SELECT monthly_limit FROM budgets")["monthly_limit"] == 400.0

    signed_in(client, "user2")
    response = client.post(f"/budgets/{budget['id']}/delete", follow_redirects=True)
    assert b"Budget not found" in response.data

    signed_in(client, "user1")
    response = client.post(f"/budgets/{budget['id']}/delete", follow_redirects=True)
    assert b"Budget deleted." in response.data
    assert query_one(client, "SELECT COUNT(*) AS c FROM budgets")["c"] == 0


def test_goal_fund_moves_write_transactions(client):
    signed_in(client)
    today = date.today().isoformat()
    response = client.post(
        "/goals", data={"name": "Emergency fund", "target_amount": "1000", "color": "#10b981"}, follow_redirects=True
    )
    assert b"Goal added." in response.data
    goal_id = query_one(client, "SELECT id FROM goals WHERE name = 'Emergency fund'")["id"]

    response = client.post(f"/goals/{goal_id}/allocate", data={"amount": "400"}, follow_redirects=True)
    assert b"Funds added to goal." in response.data
    goal = query_one(client, "SELECT current_amount, status FROM goals WHERE id = ?", (goal_id,))
    assert (goal["current_amount"], goal["status"]) == (400.0, "active")
    txn = query_one(client, "SELECT date, description, amount, type, category_id FROM transactions ORDER BY id DESC")
    assert (txn["date"], txn["description"], txn["amount"]) == (today, "Allocated to goal: Emergency fund", 400.0)
    assert (txn["type"], txn["category_id"]) == ("debit", None)

    client.post(f"/goals/{goal_id}/allocate", data={"amount": "600", "note": "Bonus"})
    goal = query_one(client, "SELECT current_amount, status FROM goals WHERE id = ?", (goal_id,))
    assert (goal["current_amount"], goal["status"]) == (1000.0, "completed")
    txn = query_one(client, "SELECT description FROM transactions ORDER BY id DESC")
    assert txn["description"] == "Goal: Emergency fund - Bonus"

    response = client.post(f"/goals/{goal_id}/deallocate", data={"amount": "1500"}, follow_redirects=True)
    assert b"Insufficient funds" in response.data
    assert query_one(client, "SELECT COUNT(*) AS c FROM transactions")["c"] == 2

    response = client.post(f"/goals/{goal_id}/deallocate", data={"amount": "250"}, follow_redirects=True)
    assert b"Funds removed from goal." in response.data
    goal = query_one(client, "SELECT current_amount, status FROM goals WHERE id = ?", (goal_id,))
    assert (goal["current_amount"], goal["status"]) == (750.0, "active")
    txn = query_one(client, "SELECT description, type FROM transactions ORDER BY id DESC")
    assert (txn["description"], txn["type"]) == ("Removed from goal: Emergency fund", "credit")

    response = client.post(f"/goals/{goal_id}/delete", follow_redirects=True)
    assert b"Cannot delete goal with allocated funds" in response.data
    assert b"Emergency fund" in client.get("/goals?status=all").data


def test_failed_allocation_leaves_goal_untouched(app, client, monkeypatch):
    signed_in(client)
    user_id = query_one(client, "SELECT id FROM users WHERE username = 'user1'")["id"]
    monkeypatch.setattr(
        "finance_tracker.goals.bulk_create_transactions",
        lambda *args, **kwargs: {"success": False, "error": "Failed to import transactions: disk full", "database_error": True},
    )

    with app.app_context():
        db = app.get_db()
        goal_id = create_goal(db, user_id, {"name": "Trip", "target_amount": 500.0})["goal_id"]
        result = allocate_funds(db, user_id, goal_id, 50.0)
        goal = db.execute("SELECT current_amount FROM goals WHERE id = ?", (goal_id,)).fetchone()

    assert result == {"success": False, "error": "Failed to import transactions: disk full", "database_error": True}
    assert goal["current_amount"] == 0
    assert query_one(client, "SELECT COUNT(*) AS c FROM transactions")["c"] == 0


def test_goal_validation_and_completed_goals_are_frozen(app, client):
    signed_in(client)
    user_id = query_one(client, "SELECT id FROM users WHERE username = 'user1'")["id"]
    today = date(2025, 1, 1)

    with app.app_context():
        db = app.get_db()
        assert create_goal(db, user_id, {"name": " ", "target_amount": 10.0}, today=today)["error"] == "Goal name is required"
        assert create_goal(db, user_id, {"name": "Car", "target_amount": 0}, today=today)["error"] == (
            "Target amount must be greater than zero"
        )
        assert create_goal(db, user_id, {"name": "Car", "target_amount": 10.0, "target_date": "2024-12-31"}, today=today)[
            "error"
        ] == "Target date must be in the future"
        assert create_goal(db, user_id, {"name": "Car", "target_amount": 10.0, "target_date": "2025-3-5"}, today=today)[
            "error"
        ] == "Target date must be a valid date"
        assert create_goal(db, user_id, {"name": "Car", "target_amount": 10.0, "color": "red"}, today=today)["error"] == (
            "Invalid hex color format"
        )

        goal_id = create_goal(db, user_id, {"name": "Car", "target_amount": 100.0}, today=today)["goal_id"]
        assert update_goal(db, user_id, goal_id, {})["error"] == "At least one field must be provided for update"
        updated = update_goal(db, user_id, goal_id, {"name": "New car", "target_amount": 200.0})
        assert (updated["goal"]["name"], updated["goal"]["target_amount"]) == ("New car", 200.0)

        allocate_funds(db, user_id, goal_id, 200.0, today=date(2025, 1, 2))
        assert update_goal(db, user_id, goal_id, {"name": "Boat"})["error"] == "Cannot update completed goal"
        assert update_goal(db, user_id, 99999, {"name": "Boat"})["error"] == "Goal not found"


def test_goal_listing_progress_and_projection(app, client):
    signed_in(client)
    user_id = query_one(client, "SELECT id FROM users WHERE username = 'user1'")["id"]
    created = date(2025, 1, 1)

    with app.app_context():
        db = app.get_db()
        house = create_goal(
            db, user_id, {"name": "House", "target_amount": 1000.0, "target_date": "2025-12-31"}, today=created
        )["goal_id"]
        bike = create_goal(db, user_id, {"name": "Bike", "target_amount": 100.0}, today=created)["goal_id"]
        allocate_funds(db, user_id, house, 400.0, today=date(2025, 1, 15))
        allocate_funds(db, user_id, bike, 90.0, today=date(2025, 1, 15))

        overview = list_goals(db, user_id, status="all", sort_by="progress", sort_order="desc")
        steady = goal_projection(db, user_id, house, monthly_contribution=100, today=date(2025, 1, 31))
        slow = goal_projection(db, user_id, house, monthly_contribution=50, today=date(2025, 1, 31))
        unknown = goal_projection(db, user_id, house, today=date(2025, 1, 31))

    assert [goal["name"] for goal in overview["goals"]] == ["Bike", "House"]
    assert [goal["progress"] for goal in overview["goals"]] == [90.0, 40.0]
    assert overview["summary"]["total_saved"] == 490.0
    assert overview["summary"]["overall_progress"] == pytest.approx(44.55, abs=0.01)

    assert steady["remaining_amount"] == 600.0
    assert steady["projected_completion"] == {
        "estimated_date": "2025-07-31",
        "months_remaining": 6,
        "assumed_monthly_rate": 100,
    }
    assert steady["is_on_track"] is True
    assert slow["projected_completion"]["estimated_date"] == "2026-01-31"
    assert slow["is_on_track"] is False
    assert unknown["projected_completion"] is None
    assert unknown["is_on_track"] is True

    response = client.get(f"/goals/{house}/projection?monthly_contribution=100")
    assert response.get_json()["projected_completion"]["months_remaining"] == 6
    assert client.get("/goals/99999/projection").status_code == 404


def test_add_months_clamps_to_month_end():
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2025, 11, 15), 3) == date(2026, 2, 15)
