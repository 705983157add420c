"""
Funding ledger service.

Entry points for everything that moves money through the ledger:

    commit_order               order placed     → PENDING ORDER_COMMIT, committed += amount
    on_order_received          order received   → commit FINAL, committed → spent
    on_order_cancelled         order cancelled  → commit CANCELLED, committed released
    handle_order_status_change trigger dispatch for the two handlers above
    record_adjustment          manual ADJUSTMENT / REFUND entry
    rebuild_ledger             recompute account + allocation totals from transactions

Each ledger mutation (transaction status write, new transaction, account
update, allocation update, audit row) runs as one unit of work and is
committed once. A concurrent writer on the same account, allocation or
transaction makes the whole unit roll back and re-run, up to
``LEDGER_MAX_RETRIES`` attempts.

A missing account or allocation is logged and skipped; the other entity is
still updated.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select

from labops.core.exceptions import (
    ConflictError,
    InconsistentStateError,
    NotFoundError,
    ValidationError,
)
from labops.models import db
from labops.models.audit import write_audit
from labops.models.funding import (
    ACCOUNT_STATUSES,
    ALLOCATION_STATUSES,
    ALLOCATION_TYPES,
    TRANSACTION_STATUSES,
    TRANSACTION_TYPES,
    FundingAccount,
    FundingAllocation,
    FundingTransaction,
)
from labops.services import funding_lifecycle, repository
from labops.services.allocation_reconciliation import (
    AccountTotals,
    AllocationTotals,
    ThresholdCheck,
    account_after_adjustment,
    account_after_cancellation,
    account_after_commit,
    account_after_receipt,
    allocation_after_adjustment,
    allocation_after_cancellation,
    allocation_after_commit,
    allocation_after_receipt,
    check_thresholds,
    settle_allocation_status,
    usage_percent,
)
from labops.services.helpers.unit_of_work import run_in_unit_of_work

logger = logging.getLogger(__name__)

# Account statuses that accept new commitments.
_OPEN_ACCOUNT_STATUSES = {"active", "pending"}


@dataclass(frozen=True)
class LedgerOutcome:
    """Result of one ledger handler call.

    ``status`` is ``applied`` when the ledger changed and ``noop`` when the
    event had already been processed. ``skipped`` names the entities that
    did not exist and were left alone.
    """

    status: str
    event: str
    order_id: str | None = None
    transaction_id: str | None = None
    original_transaction_id: str | None = None
    account: dict | None = None
    allocation: dict | None = None
    threshold: ThresholdCheck | None = None
    skipped: tuple[str, ...] = field(default_factory=tuple)

    @property
    def applied(self) -> bool:
        return self.status == "applied"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "event": self.event,
            "order_id": self.order_id,
            "transaction_id": self.transaction_id,
            "original_transaction_id": self.original_transaction_id,
            "account": self.account,
            "allocation": self.allocation,
            "threshold": self.threshold.to_dict() if self.threshold else None,
            "skipped": list(self.skipped),
        }


def _max_attempts() -> int:
    return int(current_app.config.get("LEDGER_MAX_RETRIES", 3))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_amount(value, field: str = "amount", *, allow_zero: bool = False) -> float:
    """Return *value* as a finite positive float (or non-negative with *allow_zero*)."""
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", details={field: value}) from None
    if not math.isfinite(amount):
        raise ValidationError(f"{field} must be a finite number", details={field: str(value)})
    if amount < 0:
        raise ValidationError(f"{field} must not be negative", details={field: amount})
    if amount == 0 and not allow_zero:
        raise ValidationError(f"{field} must be positive", details={field: amount})
    return amount


def _account_totals(row: FundingAccount) -> AccountTotals:
    return AccountTotals(
        total_budget=row.total_budget or 0.0,
        committed=row.committed_amount or 0.0,
        spent=row.spent_amount or 0.0,
    )


def _allocation_totals(row: FundingAllocation) -> AllocationTotals:
    return AllocationTotals(
        allocated=row.allocated_amount or 0.0,
        spent=row.current_spent or 0.0,
        committed=row.current_committed or 0.0,
        status=row.status,
    )


# ── Entity updates ───────────────────────────────────────────────────────────

def _update_account(account_id, apply, *, order_id=None):
    """Apply *apply* to the account's totals. Returns the new row dict or None."""
    try:
        row = repository.get_account(account_id)
    except NotFoundError:
        logger.warning(
            "Funding account %s not found; account totals not updated", account_id,
            extra={"account_id": account_id, "order_id": order_id},
        )
        return None

    totals = apply(_account_totals(row))
    repository.update_account(account_id, {
        "committed_amount": totals.committed,
        "spent_amount": totals.spent,
        "remaining_budget": totals.remaining,
    })
    logger.info(
        "Account %s: committed=%.2f spent=%.2f remaining=%.2f",
        account_id, totals.committed, totals.spent, totals.remaining,
        extra={"account_id": account_id, "order_id": order_id},
    )
    return row.to_dict()


def _update_allocation(allocation_id, apply, *, order_id=None, now=None):
    """Apply *apply* to the allocation's totals.

    Returns ``(row_dict, ThresholdCheck)`` or ``(None, None)`` when there is
    no allocation to update.
    """
    if not allocation_id:
        return None, None
    try:
        row = repository.get_allocation(allocation_id)
    except NotFoundError:
        logger.warning(
            "Funding allocation %s not found; allocation totals not updated", allocation_id,
            extra={"allocation_id": allocation_id, "order_id": order_id},
        )
        return None, None

    before = _allocation_totals(row)
    after = apply(before)
    repository.update_allocation(allocation_id, {
        "current_spent": after.spent,
        "current_committed": after.committed,
        "remaining_budget": after.remaining,
        "status": after.status,
        "last_transaction_at": now or _utcnow(),
    })

    threshold = check_thresholds(
        allocation_id, before, after,
        warning_threshold=row.low_balance_warning_threshold,
    )
    if before.status != after.status:
        logger.info(
            "Allocation %s: %s → %s", allocation_id, before.status, after.status,
            extra={"allocation_id": allocation_id, "order_id": order_id},
        )
    if threshold.threshold_crossed:
        logger.warning(
            "Allocation %s crossed %s (%.1f%% → %.1f%%)",
            allocation_id, ", ".join(threshold.thresholds_crossed),
            threshold.percent_before, threshold.percent_after,
            extra={"allocation_id": allocation_id, "order_id": order_id},
        )
    return row.to_dict(), threshold


def _skipped(account, allocation_id, allocation):
    skipped = []
    if account is None:
        skipped.append("account")
    if allocation_id and allocation is None:
        skipped.append("allocation")
    return tuple(skipped)


def _audit_transaction(txn: FundingTransaction, action: str, account: dict | None = None, **extra) -> None:
    write_audit(
        entity_type="funding_transaction",
        entity_id=txn.id,
        action=action,
        actor=txn.created_by,
        project_id=account.get("project_id") if account else None,
        diff={
            "type": txn.type,
            "status": txn.status,
            "amount": txn.amount,
            "order_id": txn.order_id,
            "allocation_id": txn.allocation_id,
            **extra,
        },
    )


# ═══════════════════════════════════════════════════════════════════════════
#  ORDER LIFECYCLE
# ═══════════════════════════════════════════════════════════════════════════

def check_sufficient_funds(account_id: str, amount: float) -> dict:
    """Compare *amount* against the account's uncommitted, unspent budget."""
    account = repository.get_account(account_id)
    totals = _account_totals(account)
    available = totals.remaining
    amount = _parse_amount(amount, allow_zero=True)
    result = {
        "sufficient": amount <= available,
        "available": available,
        "requested": amount,
        "currency": account.currency,
    }
    if not result["sufficient"]:
        result["message"] = (
            f"Insufficient funds. Available: {available:.2f} {account.currency}, "
            f"Required: {amount:.2f} {account.currency}"
        )
    return result


def commit_order(
    order_id: str,
    account_id: str,
    amount: float,
    *,
    allocation_id: str | None = None,
    currency: str | None = None,
    description: str = "",
    created_by: str = "system",
    enforce_budget: bool | None = None,
) -> LedgerOutcome:
    """Reserve *amount* for an order that has just been placed.

    Raises:
        NotFoundError: unknown account or allocation.
        ValidationError: non-positive amount, closed account, allocation of
            another account, or insufficient funds with ``enforce_budget``.
        ConflictError: the order already has an open commit.
    """
    if not order_id:
        raise ValidationError("order_id is required", details={"field": "order_id"})
    amount = _parse_amount(amount)
    if enforce_budget is None:
        enforce_budget = bool(current_app.config.get("ENFORCE_ACCOUNT_BUDGET", False))

    def _work():
        account = repository.get_account(account_id)
        if account.status not in _OPEN_ACCOUNT_STATUSES:
            raise ValidationError(
                f"Funding account is {account.status}",
                details={"account_id": account_id, "status": account.status},
            )
        if allocation_id:
            allocation = repository.get_allocation(allocation_id)
            if allocation.funding_account_id != account_id:
                raise ValidationError(
                    "Allocation belongs to another funding account",
                    details={"allocation_id": allocation_id, "account_id": account_id},
                )

        existing = repository.transactions_for_order(order_id)
        if any(t.type == "ORDER_COMMIT" and t.status == "PENDING" for t in existing):
            raise ConflictError("FundingTransaction", "order_id", order_id)

        if enforce_budget:
            funds = check_sufficient_funds(account_id, amount)
            if not funds["sufficient"]:
                raise ValidationError(funds["message"], details=funds)

        now = _utcnow()
        txn_id = repository.create_transaction({
            "funding_account_id": account_id,
            "allocation_id": allocation_id,
            "order_id": order_id,
            "amount": amount,
            "currency": currency or account.currency,
            "type": "ORDER_COMMIT",
            "status": "PENDING",
            "description": description,
            "created_by": created_by,
            "created_at": now,
        })
        txn = repository.get_transaction(txn_id)

        account_dict = _update_account(
            account_id, lambda t: account_after_commit(t, amount), order_id=order_id,
        )
        allocation_dict, threshold = _update_allocation(
            allocation_id, lambda t: allocation_after_commit(t, amount),
            order_id=order_id, now=now,
        )
        _audit_transaction(txn, "funding.transaction_created", account_dict)

        logger.info(
            "Order %s committed %.2f on account %s", order_id, amount, account_id,
            extra={"order_id": order_id, "account_id": account_id, "transaction_id": txn.id},
        )
        return LedgerOutcome(
            status="applied",
            event="commit",
            order_id=order_id,
            transaction_id=txn.id,
            account=account_dict,
            allocation=allocation_dict,
            threshold=threshold,
        )

    return run_in_unit_of_work(
        _work, resource="FundingTransaction", resource_id=order_id,
        max_attempts=_max_attempts(),
    )


def _noop(order_id: str, event: str) -> LedgerOutcome:
    logger.info(
        "Order %s already resolved; %s ignored", order_id, event,
        extra={"order_id": order_id, "event_type": event},
    )
    return LedgerOutcome(status="noop", event=event, order_id=order_id)


def on_order_received(
    order_id: str,
    actual_cost: float | None = None,
    description: str = "",
) -> LedgerOutcome:
    """Turn an order's commitment into spend.

    Raises:
        TransactionNotFoundError: the order was never committed.
    """
    if actual_cost is not None:
        actual_cost = _parse_amount(actual_cost, "actual_cost", allow_zero=True)

    def _work():
        txn = funding_lifecycle.find_pending_commit(order_id)
        if txn is None:
            return _noop(order_id, "received")

        now = _utcnow()
        original_amount = txn.amount
        receipt = funding_lifecycle.finalize_commit(txn, actual_cost, description, now=now)

        account_dict = _update_account(
            txn.funding_account_id,
            lambda t: account_after_receipt(t, original_amount, receipt.amount),
            order_id=order_id,
        )
        allocation_dict, threshold = _update_allocation(
            txn.allocation_id,
            lambda t: allocation_after_receipt(t, original_amount, receipt.amount),
            order_id=order_id, now=now,
        )
        _audit_transaction(receipt, "funding.order_received", account_dict, committed_amount=original_amount)

        return LedgerOutcome(
            status="applied",
            event="received",
            order_id=order_id,
            transaction_id=receipt.id,
            original_transaction_id=txn.id,
            account=account_dict,
            allocation=allocation_dict,
            threshold=threshold,
            skipped=_skipped(account_dict, txn.allocation_id, allocation_dict),
        )

    return run_in_unit_of_work(
        _work, resource="FundingTransaction", resource_id=order_id,
        max_attempts=_max_attempts(),
    )


def on_order_cancelled(order_id: str, description: str = "") -> LedgerOutcome:
    """Release an order's commitment.

    Raises:
        TransactionNotFoundError: the order was never committed.
    """

    def _work():
        txn = funding_lifecycle.find_pending_commit(order_id)
        if txn is None:
            return _noop(order_id, "cancelled")

        now = _utcnow()
        original_amount = txn.amount
        cancellation = funding_lifecycle.cancel_commit(txn, description, now=now)

        account_dict = _update_account(
            txn.funding_account_id,
            lambda t: account_after_cancellation(t, original_amount),
            order_id=order_id,
        )
        allocation_dict, threshold = _update_allocation(
            txn.allocation_id,
            lambda t: allocation_after_cancellation(t, original_amount),
            order_id=order_id, now=now,
        )
        _audit_transaction(cancellation, "funding.order_cancelled", account_dict)

        return LedgerOutcome(
            status="applied",
            event="cancelled",
            order_id=order_id,
            transaction_id=cancellation.id,
            original_transaction_id=txn.id,
            account=account_dict,
            allocation=allocation_dict,
            threshold=threshold,
            skipped=_skipped(account_dict, txn.allocation_id, allocation_dict),
        )

    return run_in_unit_of_work(
        _work, resource="FundingTransaction", resource_id=order_id,
        max_attempts=_max_attempts(),
    )


def handle_order_status_change(
    order_id: str,
    before_status: str | None,
    after_status: str | None,
    actual_cost: float | None = None,
    description: str = "",
) -> LedgerOutcome | None:
    """Dispatch an order status change to the matching ledger handler.

    Only the edges into ``received`` and ``cancelled`` touch the ledger.
    Inconsistent ledger data is logged and swallowed so the trigger that
    called in does not fail.
    """
    try:
        if before_status != "received" and after_status == "received":
            return on_order_received(order_id, actual_cost, description)
        if before_status != "cancelled" and after_status == "cancelled":
            return on_order_cancelled(order_id, description)
    except InconsistentStateError as exc:
        logger.warning(
            "Ledger not updated for order %s: %s", order_id, exc,
            extra={"order_id": order_id, "event_type": after_status},
        )
        return None

    logger.debug(
        "Order %s: %s → %s does not affect the ledger", order_id, before_status, after_status,
        extra={"order_id": order_id},
    )
    return None


# ═══════════════════════════════════════════════════════════════════════════
#  ADJUSTMENTS & REBUILD
# ═══════════════════════════════════════════════════════════════════════════

def record_adjustment(
    account_id: str,
    amount: float,
    *,
    allocation_id: str | None = None,
    type: str = "ADJUSTMENT",
    description: str = "",
    created_by: str = "system",
    order_id: str | None = None,
) -> LedgerOutcome:
    """Book a manual correction. ADJUSTMENT adds to spend, REFUND subtracts."""
    if type not in ("ADJUSTMENT", "REFUND"):
        raise ValidationError("type must be ADJUSTMENT or REFUND", details={"type": type})
    amount = _parse_amount(amount)

    def _work():
        account = repository.get_account(account_id)
        if allocation_id:
            allocation = repository.get_allocation(allocation_id)
            if allocation.funding_account_id != account_id:
                raise ValidationError(
                    "Allocation belongs to another funding account",
                    details={"allocation_id": allocation_id, "account_id": account_id},
                )

        now = _utcnow()
        txn_id = repository.create_transaction({
            "funding_account_id": account_id,
            "allocation_id": allocation_id,
            "order_id": order_id,
            "amount": amount,
            "currency": account.currency,
            "type": type,
            "status": "FINAL",
            "description": description,
            "created_by": created_by,
            "created_at": now,
            "finalized_at": now,
        })
        txn = repository.get_transaction(txn_id)

        account_dict = _update_account(
            account_id, lambda t: account_after_adjustment(t, amount, type), order_id=order_id,
        )
        allocation_dict, threshold = _update_allocation(
            allocation_id, lambda t: allocation_after_adjustment(t, amount, type),
            order_id=order_id, now=now,
        )
        _audit_transaction(txn, "funding.transaction_created", account_dict)

        return LedgerOutcome(
            status="applied",
            event=type.lower(),
            order_id=order_id,
            transaction_id=txn.id,
            account=account_dict,
            allocation=allocation_dict,
            threshold=threshold,
        )

    return run_in_unit_of_work(
        _work, resource="FundingAccount", resource_id=account_id,
        max_attempts=_max_attempts(),
    )


def _sum_ledger(transactions) -> tuple[float, float]:
    """Return ``(spent, committed)`` implied by a list of transactions."""
    spent = 0.0
    committed = 0.0
    for txn in transactions:
        if txn.type == "ORDER_COMMIT" and txn.status == "PENDING":
            committed += txn.amount
        elif txn.status == "FINAL" and txn.type in ("ORDER_RECEIVED", "ADJUSTMENT"):
            spent += txn.amount
        elif txn.status == "FINAL" and txn.type == "REFUND":
            spent -= txn.amount
    return max(0.0, round(spent, 2)), max(0.0, round(committed, 2))


def rebuild_ledger(account_id: str) -> dict:
    """Recompute the account's and its allocations' totals from the transactions.

    Used to repair a ledger corrupted by a crash or a hand edit. Allocation
    status is re-derived for active / exhausted allocations only.
    """

    def _work():
        account = repository.get_account(account_id)
        transactions = repository.transactions_for_account(account_id)

        before = {
            "committed_amount": account.committed_amount,
            "spent_amount": account.spent_amount,
        }
        spent, committed = _sum_ledger(transactions)
        totals = AccountTotals(total_budget=account.total_budget or 0.0, committed=committed, spent=spent)
        repository.update_account(account_id, {
            "committed_amount": totals.committed,
            "spent_amount": totals.spent,
            "remaining_budget": totals.remaining,
        })

        allocations = []
        for allocation in repository.allocations_for_account(account_id):
            a_spent, a_committed = _sum_ledger(t for t in transactions if t.allocation_id == allocation.id)
            a_totals = settle_allocation_status(AllocationTotals(
                allocated=allocation.allocated_amount or 0.0,
                spent=a_spent,
                committed=a_committed,
                status=allocation.status,
            ))
            repository.update_allocation(allocation.id, {
                "current_spent": a_totals.spent,
                "current_committed": a_totals.committed,
                "remaining_budget": a_totals.remaining,
                "status": a_totals.status,
            })
            allocations.append(allocation.to_dict())

        write_audit(
            entity_type="funding_account",
            entity_id=account_id,
            action="funding.ledger_rebuilt",
            project_id=account.project_id,
            diff={
                "committed_amount": {"old": before["committed_amount"], "new": totals.committed},
                "spent_amount": {"old": before["spent_amount"], "new": totals.spent},
            },
        )
        logger.info(
            "Ledger rebuilt for account %s from %d transactions", account_id, len(transactions),
            extra={"account_id": account_id},
        )
        return {
            "account": account.to_dict(),
            "allocations": allocations,
            "transactions_processed": len(transactions),
        }

    return run_in_unit_of_work(
        _work, resource="FundingAccount", resource_id=account_id,
        max_attempts=_max_attempts(),
    )


def budget_summary(account_id: str) -> dict:
    account = repository.get_account(account_id)
    totals = _account_totals(account)
    allocations = repository.allocations_for_account(account_id)
    return {
        "account_id": account.id,
        "currency": account.currency,
        "total": totals.total_budget,
        "committed": totals.committed,
        "spent": totals.spent,
        "available": totals.remaining,
        "usage_percent": round(usage_percent(totals.spent, totals.committed, totals.total_budget), 2),
        "allocations": [
            {
                "id": a.id,
                "type": a.type,
                "status": a.status,
                "allocated": a.allocated_amount,
                "spent": a.current_spent,
                "committed": a.current_committed,
                "remaining": a.remaining_budget,
                "usage_percent": round(
                    usage_percent(a.current_spent, a.current_committed, a.allocated_amount), 2,
                ),
            }
            for a in allocations
        ],
    }


# ═══════════════════════════════════════════════════════════════════════════
#  ACCOUNTS & ALLOCATIONS
# ═══════════════════════════════════════════════════════════════════════════

def _non_negative(data: dict, key: str, default: float = 0.0) -> float:
    value = data.get(key, default)
    return _parse_amount(default if value is None else value, key, allow_zero=True)


def create_account(data: dict) -> FundingAccount:
    """Create a funding account. Flushes only; the caller commits."""
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"field": "name"})
    status = data.get("status") or "active"
    if status not in ACCOUNT_STATUSES:
        raise ValidationError("Invalid account status", details={"status": status})
    if data.get("project_id"):
        repository.get_project(data["project_id"])

    total = _non_negative(data, "total_budget")
    account = FundingAccount(
        name=name,
        account_number=data.get("account_number"),
        project_id=data.get("project_id"),
        account_type=data.get("account_type") or "main",
        total_budget=total,
        remaining_budget=total,
        currency=data.get("currency") or "EUR",
        status=status,
    )
    if data.get("id"):
        account.id = str(data["id"])
    db.session.add(account)
    db.session.flush()
    logger.info("Funding account %s created", account.id, extra={"account_id": account.id})
    return account


def list_accounts(project_id: str | None = None) -> list[FundingAccount]:
    stmt = select(FundingAccount).order_by(FundingAccount.created_at)
    if project_id:
        stmt = stmt.where(FundingAccount.project_id == project_id)
    return list(db.session.execute(stmt).scalars())


def create_allocation(data: dict) -> FundingAllocation:
    """Create an allocation inside an existing account. Flushes only."""
    account_id = data.get("funding_account_id")
    if not account_id:
        raise ValidationError("funding_account_id is required", details={"field": "funding_account_id"})
    account = repository.get_account(account_id)

    alloc_type = data.get("type") or "PROJECT"
    if alloc_type not in ALLOCATION_TYPES:
        raise ValidationError("Invalid allocation type", details={"type": alloc_type})
    if alloc_type == "PERSON" and not data.get("person_id"):
        raise ValidationError("person_id is required for PERSON allocations", details={"field": "person_id"})
    status = data.get("status") or "active"
    if status not in ALLOCATION_STATUSES:
        raise ValidationError("Invalid allocation status", details={"status": status})

    allocated = _non_negative(data, "allocated_amount")
    threshold = data.get("low_balance_warning_threshold")
    if threshold is not None:
        threshold = _parse_amount(threshold, "low_balance_warning_threshold", allow_zero=True)
    soft_limit = data.get("soft_limit")
    if soft_limit is not None:
        soft_limit = _parse_amount(soft_limit, "soft_limit", allow_zero=True)
    allocation = FundingAllocation(
        funding_account_id=account.id,
        type=alloc_type,
        person_id=data.get("person_id"),
        project_id=data.get("project_id"),
        allocated_amount=allocated,
        soft_limit=soft_limit,
        remaining_budget=allocated,
        currency=data.get("currency") or account.currency,
        status=status,
        low_balance_warning_threshold=threshold,
    )
    if data.get("id"):
        allocation.id = str(data["id"])
    db.session.add(allocation)
    db.session.flush()
    logger.info(
        "Allocation %s created on account %s", allocation.id, account.id,
        extra={"allocation_id": allocation.id, "account_id": account.id},
    )
    return allocation


def list_transactions(order_id: str | None = None, account_id: str | None = None,
                      status: str | None = None, txn_type: str | None = None):
    """Build a transaction query; the caller paginates."""
    if status and status not in TRANSACTION_STATUSES:
        raise ValidationError("Invalid transaction status", details={"status": status})
    if txn_type and txn_type not in TRANSACTION_TYPES:
        raise ValidationError("Invalid transaction type", details={"type": txn_type})

    query = FundingTransaction.query
    if order_id:
        query = query.filter(FundingTransaction.order_id == order_id)
    if account_id:
        query = query.filter(FundingTransaction.funding_account_id == account_id)
    if status:
        query = query.filter(FundingTransaction.status == status)
    if txn_type:
        query = query.filter(FundingTransaction.type == txn_type)
    return query.order_by(FundingTransaction.created_at, FundingTransaction.id)
