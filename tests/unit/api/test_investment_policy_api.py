from fastapi.testclient import TestClient

from src.api.main import app
from tests.factories import policy_payload, position, snapshot_api_payload


def test_get_policy_before_any_version_is_not_found():
    with TestClient(app) as client:
        response = client.get("/wealth/investment-policy", params={"account_id": "acct_001"})

    assert response.status_code == 404
    assert response.json()["detail"] == "INVESTMENT_POLICY_NOT_FOUND"


def test_put_creates_versions_and_get_returns_history():
    with TestClient(app) as client:
        first = client.put("/wealth/investment-policy", json=policy_payload())
        second = client.put(
            "/wealth/investment-policy",
            json=policy_payload(
                target_allocation={
                    "equities": {"target_percent": "70"},
                    "fixed_income": {"target_percent": "30"},
                }
            ),
        )
        current = client.get(
            "/wealth/investment-policy",
            params={"account_id": "acct_001", "include_history": "true"},
        )
        original = client.get(
            "/wealth/investment-policy", params={"account_id": "acct_001", "version": 1}
        )
        missing = client.get(
            "/wealth/investment-policy", params={"account_id": "acct_001", "version": 9}
        )
        invalid = client.get(
            "/wealth/investment-policy", params={"account_id": "acct_001", "version": 0}
        )

    assert first.status_code == 200
    assert (first.json()["version_no"], second.json()["version_no"]) == (1, 2)
    body = current.json()
    assert body["version_no"] == 2
    assert sorted(body["policy"]["target_allocation"]) == ["equities", "fixed_income"]
    assert [row["version_no"] for row in body["history"]] == [1, 2]
    assert original.json()["policy_id"] == first.json()["policy_id"]
    assert len(original.json()["policy"]["target_allocation"]) == 4
    assert missing.status_code == 404
    assert missing.json()["detail"] == "INVESTMENT_POLICY_VERSION_NOT_FOUND"
    assert invalid.status_code == 422


def test_put_rejects_allocation_that_does_not_sum_to_100():
    with TestClient(app) as client:
        response = client.put(
            "/wealth/investment-policy",
            json=policy_payload(
                target_allocation={
                    "equities": {"target_percent": "70"},
                    "fixed_income": {"target_percent": "20"},
                }
            ),
        )
        lookup = client.get("/wealth/investment-policy", params={"account_id": "acct_001"})

    assert response.status_code == 422
    assert response.json()["detail"].startswith("INVESTMENT_POLICY_INCONSISTENT")
    assert lookup.status_code == 404


def test_put_with_idempotency_key_replays_same_version():
    headers = {"Idempotency-Key": "ips-put-001"}
    with TestClient(app) as client:
        first = client.put("/wealth/investment-policy", json=policy_payload(), headers=headers)
        second = client.put("/wealth/investment-policy", json=policy_payload(), headers=headers)
        current = client.get(
            "/wealth/investment-policy",
            params={"account_id": "acct_001", "include_history": "true"},
        )

    assert first.json() == second.json()
    assert len(current.json()["history"]) == 1


def test_validate_portfolio_reports_drift_and_actions():
    with TestClient(app) as client:
        client.put("/wealth/investment-policy", json=policy_payload())
        response = client.post(
            "/wealth/investment-policy/validate",
            json={"account_id": "acct_001", "portfolio_snapshot": snapshot_api_payload()},
        )

    assert response.status_code == 200
    body = response.json()
    assert body["needs_rebalancing"] is True
    assert body["is_compliant"] is False
    assert [action["asset_class"] for action in body["recommended_actions"]] == ["equities"]
    assert body["liquidity_compliance"]["compliant"] is True


def test_validate_portfolio_without_policy_is_not_found():
    with TestClient(app) as client:
        response = client.post(
            "/wealth/investment-policy/validate",
            json={"account_id": "acct_001", "portfolio_snapshot": snapshot_api_payload()},
        )

    assert response.status_code == 404


def test_policy_apis_can_be_disabled(monkeypatch):
    monkeypatch.setenv("INVESTMENT_POLICY_APIS_ENABLED", "false")
    with TestClient(app) as client:
        response = client.get("/wealth/investment-policy", params={"account_id": "acct_001"})

    assert response.status_code == 404
    assert response.json()["detail"] == "INVESTMENT_POLICY_APIS_DISABLED"


def test_insights_combine_drift_liquidity_and_tax_signals():
    constraints = {
        "liquidity_requirements": {"minimum_cash_percent": "5"},
        "tax_considerations": {"tax_loss_harvesting": True},
        "rebalancing_policy": {"threshold_percent": "5"},
    }
    snapshot = snapshot_api_payload(
        positions=[position("VTI", market_value="800", cost_basis="1000")]
    )
    with TestClient(app) as client:
        client.put("/wealth/investment-policy", json=policy_payload(constraints=constraints))
        response = client.post(
            "/wealth/insights",
            json={"account_id": "acct_001", "portfolio_snapshot": snapshot},
        )

    assert response.status_code == 200
    body = response.json()
    assert body["as_of"] == "2026-01-15T12:00:00+00:00"
    assert [(row["category"], row["priority"]) for row in body["insights"]] == [
        ("liquidity", "high"),
        ("rebalancing", "medium"),
        ("tax_loss_harvesting", "medium"),
    ]
    assert body["total_count"] == 3


def test_insights_without_policy_returns_empty_list():
    with TestClient(app) as client:
        response = client.post(
            "/wealth/insights",
            json={"account_id": "acct_new", "portfolio_snapshot": snapshot_api_payload()},
        )

    assert response.status_code == 200
    assert response.json()["insights"] == []


def test_insights_can_be_disabled(monkeypatch):
    monkeypatch.setenv("INSIGHTS_APIS_ENABLED", "false")
    with TestClient(app) as client:
        response = client.post(
            "/wealth/insights",
            json={"account_id": "acct_001", "portfolio_snapshot": snapshot_api_payload()},
        )

    assert response.status_code == 404
    assert response.json()["detail"] == "INSIGHTS_APIS_DISABLED"
