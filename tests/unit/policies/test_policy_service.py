from datetime import timedelta

import pytest

from src.core.common.errors import ConsistencyError, IdempotencyConflictError, NotFoundError
from src.core.policies.service import InvestmentPolicyService
from tests.factories import FIXED_NOW, policy_request, snapshot


def _service(store, clock):
    return InvestmentPolicyService(store=store, clock=clock)


def test_put_appends_versions_and_get_returns_latest(store, clock):
    service = _service(store, clock)

    first = service.put(payload=policy_request())
    clock.advance(days=1)
    second = service.put(
        payload=policy_request(
            target_allocation={
                "equities": {"target_percent": "50"},
                "fixed_income": {"target_percent": "50"},
            }
        )
    )

    current = service.get_current(account_id="acct_001")
    assert (first.version_no, second.version_no) == (1, 2)
    assert current.policy_id == second.policy_id
    assert sorted(current.policy.target_allocation) == ["equities", "fixed_income"]
    assert current.history is None
    assert current.created_at == (FIXED_NOW + timedelta(days=1)).isoformat()


def test_get_with_history_lists_versions_oldest_first(store, clock):
    service = _service(store, clock)
    service.put(payload=policy_request())
    service.put(payload=policy_request())

    current = service.get_current(account_id="acct_001", include_history=True)

    assert [row.version_no for row in current.history] == [1, 2]
    assert {row.created_by for row in current.history} == {"advisor_1"}


def test_get_specific_version(store, clock):
    service = _service(store, clock)
    first = service.put(payload=policy_request())
    service.put(payload=policy_request())

    older = service.get_current(account_id="acct_001", version_no=1)

    assert older.policy_id == first.policy_id
    with pytest.raises(NotFoundError) as exc:
        service.get_current(account_id="acct_001", version_no=7)
    assert str(exc.value) == "INVESTMENT_POLICY_VERSION_NOT_FOUND"


def test_get_without_policy_is_not_found(store, clock):
    with pytest.raises(NotFoundError) as exc:
        _service(store, clock).get_current(account_id="acct_001")

    assert str(exc.value) == "INVESTMENT_POLICY_NOT_FOUND"


def test_put_rejects_inconsistent_allocation_without_writing(store, clock):
    service = _service(store, clock)

    with pytest.raises(ConsistencyError) as exc:
        service.put(
            payload=policy_request(
                target_allocation={
                    "equities": {"target_percent": "70"},
                    "fixed_income": {"target_percent": "20"},
                }
            )
        )

    assert str(exc.value).startswith("INVESTMENT_POLICY_INCONSISTENT: target_allocation:")
    assert store.list_policy_versions(account_id="acct_001") == []


def test_put_with_idempotency_key_replays_and_detects_conflicts(store, clock):
    service = _service(store, clock)

    first = service.put(payload=policy_request(), idempotency_key="idem-ips-1")
    replay = service.put(payload=policy_request(), idempotency_key="idem-ips-1")

    assert replay == first
    assert len(store.list_policy_versions(account_id="acct_001")) == 1
    with pytest.raises(IdempotencyConflictError):
        service.put(
            payload=policy_request(
                target_allocation={
                    "equities": {"target_percent": "50"},
                    "fixed_income": {"target_percent": "50"},
                }
            ),
            idempotency_key="idem-ips-1",
        )


def test_policies_are_scoped_per_account(store, clock):
    service = _service(store, clock)
    service.put(payload=policy_request(account_id="acct_001"))

    with pytest.raises(NotFoundError):
        service.get_current(account_id="acct_002")


def test_validate_against_portfolio_uses_current_policy(store, clock):
    service = _service(store, clock)
    service.put(payload=policy_request())

    result = service.validate_against_portfolio(account_id="acct_001", snapshot=snapshot())

    assert result.needs_rebalancing is True
    assert [a.asset_class for a in result.recommended_actions] == ["equities"]


def test_validate_against_portfolio_without_policy_is_not_found(store, clock):
    with pytest.raises(NotFoundError):
        _service(store, clock).validate_against_portfolio(
            account_id="acct_001", snapshot=snapshot()
        )
