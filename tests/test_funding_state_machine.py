"""
tests/test_funding_state_machine.py — funding transaction lifecycle.

Covers: transition table, terminal states, finalize / cancel of an order
        commit, pending-commit lookup edge cases.
"""

from datetime import datetime, timezone

import pytest

from labops.core.exceptions import InconsistentStateError, InvalidTransitionError, TransactionNotFoundError
from labops.models import db
from labops.models.funding import TRANSACTION_TRANSITIONS, validate_transaction_transition
from labops.services import funding_lifecycle, repository

NOW = datetime(2026, 5, 4, 9, 30, tzinfo=timezone.utc)


def _commit_txn(account, order_id="ord-1", amount=100.0, status="PENDING", txn_type="ORDER_COMMIT"):
    txn_id = repository.create_transaction({
        "funding_account_id": account.id,
        "order_id": order_id,
        "amount": amount,
        "type": txn_type,
        "status": status,
        "created_by": "alice",
    })
    db.session.commit()
    return repository.get_transaction(txn_id)


class TestTransitionTable:
    @pytest.mark.parametrize("old,new,valid", [
        ("PENDING", "FINAL", True),
        ("PENDING", "CANCELLED", True),
        ("FINAL", "CANCELLED", False),
        ("FINAL", "PENDING", False),
        ("CANCELLED", "FINAL", False),
        ("CANCELLED", "PENDING", False),
        ("PENDING", "PENDING", False),
        ("UNKNOWN", "FINAL", False),
    ])
    def test_edges(self, old, new, valid):
        assert validate_transaction_transition(old, new) is valid

    def test_terminal_states_have_no_exits(self):
        assert TRANSACTION_TRANSITIONS["FINAL"] == []
        assert TRANSACTION_TRANSITIONS["CANCELLED"] == []


class TestTransition:
    def test_pending_to_final_stamps_finalized_at(self, account):
        txn = _commit_txn(account)
        funding_lifecycle.transition_transaction(txn, "FINAL", now=NOW)
        assert txn.status == "FINAL"
        assert txn.finalized_at is not None
        assert txn.is_terminal

    def test_terminal_transaction_rejects_change(self, account):
        txn = _commit_txn(account, status="CANCELLED")
        with pytest.raises(InvalidTransitionError) as exc:
            funding_lifecycle.transition_transaction(txn, "FINAL")
        assert exc.value.old_status == "CANCELLED"
        assert txn.status == "CANCELLED"


class TestFinalizeAndCancel:
    def test_finalize_creates_receipt(self, account):
        txn = _commit_txn(account, amount=120)
        receipt = funding_lifecycle.finalize_commit(txn, 99.5, "invoice 42", now=NOW)
        assert txn.status == "FINAL"
        assert receipt.type == "ORDER_RECEIVED"
        assert receipt.status == "FINAL"
        assert receipt.amount == 99.5
        assert receipt.order_id == "ord-1"
        assert receipt.created_by == "alice"
        assert receipt.description == "Order received: invoice 42"

    def test_finalize_without_cost_uses_committed_amount(self, account):
        txn = _commit_txn(account, amount=120)
        assert funding_lifecycle.finalize_commit(txn).amount == 120

    def test_finalize_with_zero_cost(self, account):
        txn = _commit_txn(account, amount=120)
        assert funding_lifecycle.finalize_commit(txn, 0).amount == 0

    def test_cancel_creates_release(self, account):
        txn = _commit_txn(account, amount=75)
        cancellation = funding_lifecycle.cancel_commit(txn, "supplier out of stock", now=NOW)
        assert txn.status == "CANCELLED"
        assert cancellation.type == "ORDER_CANCELLED"
        assert cancellation.status == "FINAL"
        assert cancellation.amount == 75

    def test_cancel_twice_rejected(self, account):
        txn = _commit_txn(account)
        funding_lifecycle.cancel_commit(txn)
        with pytest.raises(InvalidTransitionError):
            funding_lifecycle.cancel_commit(txn)


class TestFindPendingCommit:
    def test_unknown_order(self, account):
        with pytest.raises(TransactionNotFoundError):
            funding_lifecycle.find_pending_commit("never-committed")

    def test_resolved_order_returns_none(self, account):
        _commit_txn(account, status="FINAL")
        assert funding_lifecycle.find_pending_commit("ord-1") is None

    def test_returns_open_commit(self, account):
        txn = _commit_txn(account)
        assert funding_lifecycle.find_pending_commit("ord-1").id == txn.id

    def test_two_open_commits_is_inconsistent(self, account):
        _commit_txn(account)
        _commit_txn(account)
        with pytest.raises(InconsistentStateError):
            funding_lifecycle.find_pending_commit("ord-1")
