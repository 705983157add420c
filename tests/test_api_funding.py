"""
tests/test_api_funding.py — funding ledger HTTP API.

Covers: accounts / allocations CRUD, order commit → receive / cancel,
        status trigger, duplicate commits, unknown orders, adjustments,
        rebuild, funds check, non-finite money values.
"""

import pytest

BASE = "/api/v1/funding"


def _commit(client, account, allocation=None, order_id="ord-1", amount=400):
    body = {"account_id": account.id, "amount": amount, "created_by": "alice"}
    if allocation is not None:
        body["allocation_id"] = allocation.id
    return client.post(f"{BASE}/orders/{order_id}/commit", json=body)


class TestAccounts:
    def test_create_and_get(self, client, project):
        res = client.post(f"{BASE}/accounts", json={
            "name": "DFG grant", "project_id": project.id, "total_budget": 2500, "currency": "EUR",
        })
        assert res.status_code == 201
        account = res.get_json()
        assert account["remaining_budget"] == 2500

        fetched = client.get(f"{BASE}/accounts/{account['id']}").get_json()
        assert fetched["name"] == "DFG grant"

        listing = client.get(f"{BASE}/accounts?project_id={project.id}").get_json()
        assert listing["total"] == 1

    def test_negative_budget_rejected(self, client):
        res = client.post(f"{BASE}/accounts", json={"name": "Bad", "total_budget": -1})
        assert res.status_code == 422

    def test_unknown_account(self, client):
        assert client.get(f"{BASE}/accounts/missing").status_code == 404

    def test_funds_check(self, client, account):
        ok = client.get(f"{BASE}/accounts/{account.id}/funds-check?amount=500").get_json()
        assert ok["sufficient"] is True
        short = client.get(f"{BASE}/accounts/{account.id}/funds-check?amount=20000").get_json()
        assert short["sufficient"] is False
        assert "Insufficient funds" in short["message"]

    def test_funds_check_needs_number(self, client, account):
        res = client.get(f"{BASE}/accounts/{account.id}/funds-check?amount=lots")
        assert res.status_code == 400


class TestAllocations:
    def test_create_and_list(self, client, account):
        res = client.post(f"{BASE}/allocations", json={
            "funding_account_id": account.id, "type": "PERSON", "person_id": "u-7", "allocated_amount": 300,
        })
        assert res.status_code == 201
        allocation = res.get_json()
        assert allocation["status"] == "active"
        assert allocation["remaining_budget"] == 300

        listing = client.get(f"{BASE}/allocations?account_id={account.id}").get_json()
        assert listing["total"] == 1
        assert client.get(f"{BASE}/allocations/{allocation['id']}").status_code == 200

    def test_invalid_type(self, client, account):
        res = client.post(f"{BASE}/allocations", json={"funding_account_id": account.id, "type": "TEAM"})
        assert res.status_code == 422


class TestOrders:
    def test_commit_then_receive(self, client, account, allocation):
        res = _commit(client, account, allocation)
        assert res.status_code == 201
        assert res.get_json()["account"]["committed_amount"] == 400

        res = client.post(f"{BASE}/orders/ord-1/receive", json={"actual_cost": 380})
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "applied"
        assert body["account"]["spent_amount"] == 380
        assert body["account"]["committed_amount"] == 0
        assert body["allocation"]["current_spent"] == 380

        again = client.post(f"{BASE}/orders/ord-1/receive", json={"actual_cost": 380})
        assert again.get_json()["status"] == "noop"

        txns = client.get(f"{BASE}/transactions?order_id=ord-1").get_json()
        assert txns["total"] == 2

    def test_commit_then_cancel(self, client, account, allocation):
        _commit(client, account, allocation, amount=300)
        res = client.post(f"{BASE}/orders/ord-1/cancel")
        assert res.status_code == 200
        body = res.get_json()
        assert body["event"] == "cancelled"
        assert body["allocation"]["remaining_budget"] == 1000

    def test_duplicate_commit_conflict(self, client, account):
        assert _commit(client, account).status_code == 201
        res = _commit(client, account)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_commit_validation(self, client, account):
        assert client.post(f"{BASE}/orders/ord-1/commit", json={"amount": 10}).status_code == 400
        assert client.post(
            f"{BASE}/orders/ord-1/commit", json={"account_id": account.id, "amount": "ten"},
        ).status_code == 400
        assert client.post(
            f"{BASE}/orders/ord-1/commit", json={"account_id": account.id, "amount": 0},
        ).status_code == 422

    def test_commit_enforced_budget(self, client, account):
        res = client.post(f"{BASE}/orders/ord-1/commit", json={
            "account_id": account.id, "amount": 50000, "enforce_budget": True,
        })
        assert res.status_code == 422

    def test_receive_unknown_order(self, client, account):
        res = client.post(f"{BASE}/orders/ghost/receive", json={"actual_cost": 5})
        assert res.status_code == 404
        assert res.get_json()["details"]["order_id"] == "ghost"

    def test_status_trigger(self, client, account):
        _commit(client, account, amount=120)
        res = client.post(f"{BASE}/orders/ord-1/status", json={
            "before_status": "ordered", "after_status": "received", "actual_cost": 110,
        })
        assert res.status_code == 200
        assert res.get_json()["outcome"]["account"]["spent_amount"] == 110

    def test_status_trigger_swallows_unknown_order(self, client, account):
        res = client.post(f"{BASE}/orders/ghost/status", json={
            "before_status": "ordered", "after_status": "cancelled",
        })
        assert res.status_code == 200
        assert res.get_json() == {"outcome": None}

    def test_status_trigger_requires_after_status(self, client):
        res = client.post(f"{BASE}/orders/ord-1/status", json={"before_status": "ordered"})
        assert res.status_code == 400


class TestAdjustmentsAndRebuild:
    def test_adjustment(self, client, account, allocation):
        res = client.post(f"{BASE}/adjustments", json={
            "account_id": account.id, "allocation_id": allocation.id, "amount": 25, "description": "customs",
        })
        assert res.status_code == 201
        assert res.get_json()["account"]["spent_amount"] == 25

    def test_refund_type_validated(self, client, account):
        res = client.post(f"{BASE}/adjustments", json={"account_id": account.id, "amount": 5, "type": "GIFT"})
        assert res.status_code == 422

    def test_rebuild_and_summary(self, client, account, allocation):
        _commit(client, account, allocation, amount=200)
        res = client.post(f"{BASE}/accounts/{account.id}/rebuild")
        assert res.status_code == 200
        body = res.get_json()
        assert body["transactions_processed"] == 1
        assert body["account"]["committed_amount"] == 200

        summary = client.get(f"{BASE}/accounts/{account.id}/summary").get_json()
        assert summary["available"] == 9800
        assert summary["allocations"][0]["committed"] == 200

    def test_transactions_filter_validation(self, client):
        assert client.get(f"{BASE}/transactions?status=OPEN").status_code == 422


class TestNonFiniteAmounts:
    @pytest.mark.parametrize("amount", ["inf", "-inf", "nan", "NaN"])
    def test_commit_rejected(self, client, account, amount):
        res = _commit(client, account, amount=amount)
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"
        assert client.get(f"{BASE}/transactions?order_id=ord-1").get_json()["total"] == 0

    @pytest.mark.parametrize("actual_cost", ["inf", "-inf", "nan"])
    def test_receive_rejected_and_ledger_untouched(self, client, account, allocation, actual_cost):
        _commit(client, account, allocation, amount=100)

        res = client.post(f"{BASE}/orders/ord-1/receive", json={"actual_cost": actual_cost})
        assert res.status_code == 400

        fetched = client.get(f"{BASE}/accounts/{account.id}").get_json()
        assert (fetched["committed_amount"], fetched["spent_amount"], fetched["remaining_budget"]) == (100, 0, 9900)
        assert client.get(f"{BASE}/allocations/{allocation.id}").get_json()["status"] == "active"

    def test_trigger_rejects_non_finite_cost(self, client, account):
        _commit(client, account, amount=100)
        res = client.post(f"{BASE}/orders/ord-1/status", json={"after_status": "received", "actual_cost": "inf"})
        assert res.status_code == 400

    @pytest.mark.parametrize("amount", ["inf", "-inf", "nan"])
    def test_adjustment_rejected(self, client, account, amount):
        res = client.post(f"{BASE}/adjustments", json={"account_id": account.id, "amount": amount})
        assert res.status_code == 400
        assert client.get(f"{BASE}/accounts/{account.id}").get_json()["spent_amount"] == 0

    def test_funds_check_rejected(self, client, account):
        assert client.get(f"{BASE}/accounts/{account.id}/funds-check?amount=inf").status_code == 400

    def test_account_budget_rejected(self, client):
        res = client.post(f"{BASE}/accounts", json={"name": "Bad", "total_budget": "nan"})
        assert res.status_code == 422
