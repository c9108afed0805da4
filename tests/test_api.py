from sqlalchemy import select

from config import get_settings
from models import EmailVerification, SavingsInstrument
from sessions import issue_session_token, read_session_token


def create_source(client, name: str = "Salary") -> int:
    resp = client.post("/api/masters/income-sources", json={"name": name})
    assert resp.status_code == 201
    return resp.json()["source"]["id"]


def test_requests_without_session_are_unauthorized(client) -> None:
    for method, path in [
        ("get", "/api/income"),
        ("post", "/api/expenses"),
        ("get", "/api/dashboard?from=2024-01&to=2024-03"),
        ("delete", "/api/auth/delete-account"),
    ]:
        resp = getattr(client, method)(path)
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}


def test_session_token_round_trip() -> None:
    assert read_session_token(issue_session_token(42)) == 42
    assert read_session_token(issue_session_token(42) + "x") is None
    assert read_session_token(None) is None


def test_salary_dashboard_end_to_end(client, login) -> None:
    login()
    source_id = create_source(client)

    resp = client.post(
        "/api/income", json={"month": "2024-03", "amount": 50000, "sourceId": source_id}
    )
    assert resp.status_code == 201
    entry = resp.json()["entry"]
    assert entry["amount"] == 50000
    assert entry["month"] == "2024-03"
    assert entry["source"]["name"] == "Salary"

    resp = client.get("/api/dashboard", params={"from": "2024-03", "to": "2024-03"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["summary"]["totalIncome"] == 50000
    assert data["breakdowns"]["incomeBySource"] == [{"name": "Salary", "amount": 50000}]


def test_validation_errors_use_first_message(client, login) -> None:
    login()
    source_id = create_source(client)

    resp = client.post(
        "/api/income", json={"month": "2024-03", "amount": -5, "sourceId": source_id}
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "Amount must be greater than 0"}

    resp = client.post(
        "/api/income", json={"month": "March", "amount": 5, "sourceId": source_id}
    )
    assert resp.json() == {"error": "Month must be in YYYY-MM format"}

    resp = client.post("/api/income", content=b"not json")
    assert resp.status_code == 400

    resp = client.get("/api/income", params={"month": "2024-3"})
    assert resp.json() == {"error": "Invalid month format. Use YYYY-MM"}

    resp = client.get("/api/dashboard", params={"from": "2024-03"})
    assert resp.json() == {"error": "Both from and to parameters are required"}


def test_entries_of_other_users_look_missing(client, login) -> None:
    login("alice@example.com")
    source_id = create_source(client)
    entry_id = client.post(
        "/api/income", json={"month": "2024-03", "amount": 10, "sourceId": source_id}
    ).json()["entry"]["id"]

    login("bob@example.com")
    assert client.get(f"/api/income/{entry_id}").status_code == 404
    resp = client.put(f"/api/income/{entry_id}", json={"amount": 99})
    assert resp.status_code == 404
    assert resp.json() == {"error": "Entry not found"}
    assert client.delete(f"/api/income/{entry_id}").status_code == 404
    assert client.get("/api/income").json() == {"entries": []}

    resp = client.post(
        "/api/income", json={"month": "2024-03", "amount": 10, "sourceId": source_id}
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid income source"}


def test_entry_update_and_delete(client, login) -> None:
    login()
    resp = client.post("/api/masters/expense-verticals", json={"name": "Rent"})
    vertical_id = resp.json()["vertical"]["id"]
    entry_id = client.post(
        "/api/expenses",
        json={"month": "2024-03", "amount": "1200.5", "verticalId": vertical_id},
    ).json()["entry"]["id"]

    resp = client.put(f"/api/expenses/{entry_id}", json={"notes": "March rent"})
    assert resp.status_code == 200
    assert resp.json()["entry"]["notes"] == "March rent"
    assert resp.json()["entry"]["amount"] == 1200.5

    resp = client.delete(f"/api/masters/expense-verticals/{vertical_id}")
    assert resp.status_code == 400
    assert resp.json()["error"].startswith("Cannot delete: 1 entry is using this vertical")

    assert client.delete(f"/api/expenses/{entry_id}").json() == {
        "message": "Entry deleted successfully"
    }
    assert client.delete(f"/api/masters/expense-verticals/{vertical_id}").status_code == 200


def test_category_lists_carry_usage_counts(client, login, session_factory) -> None:
    login()
    source_id = create_source(client)
    client.post("/api/income", json={"month": "2024-03", "amount": 1, "sourceId": source_id})

    sources = client.get("/api/masters/income-sources").json()["sources"]
    assert [(s["name"], s["entryCount"]) for s in sources] == [("Salary", 1)]

    with session_factory() as session:
        instrument = session.scalars(select(SavingsInstrument)).first()
    client.post(
        "/api/savings",
        json={"month": "2024-03", "amount": 100, "instrumentId": instrument.id},
    )
    listed = client.get("/api/masters/savings-instruments").json()
    counts = {i["id"]: i["entryCount"] for i in listed["instruments"]}
    assert counts[instrument.id] == 1
    assert {c["label"] for c in listed["categories"]} == {
        "Bank Deposits",
        "Retirement & Tax",
        "Equities",
        "Mutual Funds",
    }


def test_export_returns_csv_attachment(client, login) -> None:
    login()
    source_id = create_source(client)
    client.post(
        "/api/income",
        json={"month": "2024-03", "amount": 10, "sourceId": source_id, "notes": "a,b"},
    )

    resp = client.get("/api/export", params={"month": "2024-03", "type": "income"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert (
        resp.headers["content-disposition"] == 'attachment; filename="income_2024-03.csv"'
    )
    assert '"a,b"' in resp.text

    resp = client.get("/api/export", params={"month": "2024-03"})
    assert resp.json() == {"error": "Both month and type parameters are required"}
    resp = client.get("/api/export", params={"month": "2024-03", "type": "budget"})
    assert resp.status_code == 400


def test_onboarding_and_insights(client, login) -> None:
    login()
    assert client.get("/api/user/onboarding").json() == {"onboardingCompleted": False}
    resp = client.post("/api/user/onboarding")
    assert resp.status_code == 200
    assert client.get("/api/user/onboarding").json() == {"onboardingCompleted": True}

    source_id = client.get("/api/masters/income-sources").json()["sources"][0]["id"]
    client.post("/api/income", json={"month": "2024-03", "amount": 10, "sourceId": source_id})
    resp = client.get("/api/ai/insights", params={"month": "2024-03"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["insights"]["summary"].startswith("Unable to generate AI insights")
    assert "error" in body


def test_registration_flow(client, session_factory) -> None:
    resp = client.post("/api/auth/otp/send", json={"email": "New@Example.com"})
    assert resp.status_code == 200

    resp = client.post(
        "/api/auth/otp/verify", json={"email": "new@example.com", "otp": "999999"}
    )
    with session_factory() as session:
        code = session.scalars(select(EmailVerification)).one().otp
    if code != "999999":
        assert resp.status_code == 400
        assert resp.json()["remainingAttempts"] == 4
        resp = client.post(
            "/api/auth/otp/verify", json={"email": "new@example.com", "otp": code}
        )
    assert resp.json()["verified"] is True

    resp = client.post(
        "/api/auth/register",
        json={
            "email": "new@example.com",
            "name": "New",
            "password": "s3cret-pass",
            "securityQuestion": "City?",
            "securityAnswer": "Porto",
        },
    )
    assert resp.status_code == 201
    assert resp.json()["user"]["email"] == "new@example.com"

    resp = client.post("/api/auth/otp/send", json={"email": "new@example.com"})
    assert resp.status_code == 400

    resp = client.post(
        "/api/auth/login", json={"email": "new@example.com", "password": "s3cret-pass"}
    )
    assert resp.status_code == 200
    assert client.get("/api/auth/me").json()["user"]["name"] == "New"


def test_otp_send_rate_limit(client) -> None:
    for _ in range(3):
        assert client.post("/api/auth/otp/send", json={"email": "x@example.com"}).status_code == 200
    resp = client.post("/api/auth/otp/send", json={"email": "x@example.com"})
    assert resp.status_code == 429


def test_login_lockout_over_http(client, login) -> None:
    login("lock@example.com", "right-pass")
    client.post("/api/auth/logout")
    for _ in range(4):
        resp = client.post(
            "/api/auth/login", json={"email": "lock@example.com", "password": "wrong"}
        )
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid email or password"}
    resp = client.post(
        "/api/auth/login", json={"email": "lock@example.com", "password": "wrong"}
    )
    assert resp.status_code == 423
    resp = client.post(
        "/api/auth/login", json={"email": "lock@example.com", "password": "right-pass"}
    )
    assert resp.status_code == 423
    assert "temporarily locked" in resp.json()["error"]


def test_forgot_password_and_delete_account(client, login) -> None:
    login("reset@example.com", "old-pass")
    resp = client.post(
        "/api/auth/forgot-password/verify-email", json={"email": "reset@example.com"}
    )
    assert resp.json() == {"securityQuestion": "First pet?"}
    resp = client.post(
        "/api/auth/forgot-password/reset",
        json={"email": "reset@example.com", "securityAnswer": "rex", "newPassword": "new-pass"},
    )
    assert resp.status_code == 401
    resp = client.post(
        "/api/auth/forgot-password/reset",
        json={"email": "reset@example.com", "securityAnswer": "Fluffy", "newPassword": "new-pass"},
    )
    assert resp.json() == {"message": "Password reset successfully"}

    resp = client.delete("/api/auth/delete-account")
    assert resp.json() == {"message": "Account deleted successfully"}
    assert client.get("/api/income").status_code == 401
    resp = client.post(
        "/api/auth/login", json={"email": "reset@example.com", "password": "new-pass"}
    )
    assert resp.status_code == 401


def test_dashboard_range_bounds(client, login) -> None:
    login()
    resp = client.get("/api/dashboard", params={"from": "9999-12", "to": "9999-12"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["monthlyData"] == [
        {"month": "9999-12", "income": 0, "expenses": 0, "savings": 0, "netCashFlow": 0}
    ]
    assert data["summary"]["totalIncome"] == 0

    resp = client.get("/api/dashboard", params={"months": "100000"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Lookback cannot exceed 1200 months"}

    resp = client.get("/api/dashboard", params={"from": "0001-01", "to": "9998-12"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Range cannot exceed 1200 months"}

    resp = client.get("/api/ai/insights", params={"month": "0000-01"})
    assert resp.status_code == 400


def test_main_serves_on_configured_host_and_port(monkeypatch) -> None:
    import uvicorn

    import main

    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setenv("FINLOG_HOST", "0.0.0.0")
    monkeypatch.setenv("FINLOG_PORT", "9100")
    get_settings.cache_clear()
    try:
        main.main()
    finally:
        monkeypatch.undo()
        get_settings.cache_clear()
    assert calls == [("main:app", {"host": "0.0.0.0", "port": 9100})]
