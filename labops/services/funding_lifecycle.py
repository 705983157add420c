"""
Funding transaction lifecycle.

An order commit is recorded as a PENDING / ORDER_COMMIT transaction and is
resolved exactly once:

    PENDING ──order received──▶ FINAL       (+ FINAL / ORDER_RECEIVED for the actual cost)
    PENDING ──order cancelled─▶ CANCELLED   (+ FINAL / ORDER_CANCELLED for the committed amount)

FINAL and CANCELLED are terminal. Every function here flushes and leaves
commit to the caller.

Telling "already processed" apart from "never committed":
    - no transaction at all for the order   → TransactionNotFoundError
    - only terminal transactions for it      → None (idempotent no-op)
"""

import logging
from datetime import datetime, timezone

from labops.core.exceptions import InconsistentStateError, InvalidTransitionError, TransactionNotFoundError
from labops.models import db
from labops.models.funding import FundingTransaction, validate_transaction_transition
from labops.services import repository

logger = logging.getLogger(__name__)


def find_pending_commit(order_id: str) -> FundingTransaction | None:
    """Return the order's open ORDER_COMMIT, or None if it was already resolved.

    Raises:
        TransactionNotFoundError: no transaction of any kind exists for the order.
        InconsistentStateError: more than one open commit exists for the order.
    """
    transactions = repository.transactions_for_order(order_id)
    if not transactions:
        raise TransactionNotFoundError(order_id)

    pending = [t for t in transactions if t.type == "ORDER_COMMIT" and t.status == "PENDING"]
    if len(pending) > 1:
        raise InconsistentStateError(
            f"Order {order_id} has {len(pending)} pending commits",
        )
    return pending[0] if pending else None


def transition_transaction(
    txn: FundingTransaction,
    new_status: str,
    *,
    now: datetime | None = None,
) -> FundingTransaction:
    """Move *txn* along the transition table and stamp ``finalized_at``.

    Raises:
        InvalidTransitionError: the edge is not in ``TRANSACTION_TRANSITIONS``.
    """
    if not validate_transaction_transition(txn.status, new_status):
        raise InvalidTransitionError("FundingTransaction", txn.status, new_status)

    old_status = txn.status
    txn.status = new_status
    txn.finalized_at = now or datetime.now(timezone.utc)
    db.session.flush()
    logger.info(
        "Transaction %s: %s → %s", txn.id, old_status, new_status,
        extra={"transaction_id": txn.id, "order_id": txn.order_id},
    )
    return txn


def finalize_commit(
    txn: FundingTransaction,
    actual_cost: float | None = None,
    description: str = "",
    *,
    now: datetime | None = None,
) -> FundingTransaction:
    """Record the receipt of an order.

    Creates a FINAL / ORDER_RECEIVED transaction for ``actual_cost`` (the
    committed amount when no cost is given) and marks *txn* FINAL.

    Returns the new receipt transaction.
    """
    now = now or datetime.now(timezone.utc)
    amount = txn.amount if actual_cost is None else float(actual_cost)

    transition_transaction(txn, "FINAL", now=now)
    receipt_id = repository.create_transaction({
        "funding_account_id": txn.funding_account_id,
        "allocation_id": txn.allocation_id,
        "order_id": txn.order_id,
        "amount": amount,
        "currency": txn.currency,
        "type": "ORDER_RECEIVED",
        "status": "FINAL",
        "description": f"Order received: {description or ''}".rstrip(),
        "created_by": txn.created_by,
        "created_at": now,
        "finalized_at": now,
    })
    return repository.get_transaction(receipt_id)


def cancel_commit(
    txn: FundingTransaction,
    description: str = "",
    *,
    now: datetime | None = None,
) -> FundingTransaction:
    """Record the cancellation of an order.

    Creates a FINAL / ORDER_CANCELLED transaction for the committed amount
    and marks *txn* CANCELLED.

    Returns the new cancellation transaction.
    """
    now = now or datetime.now(timezone.utc)

    transition_transaction(txn, "CANCELLED", now=now)
    cancel_id = repository.create_transaction({
        "funding_account_id": txn.funding_account_id,
        "allocation_id": txn.allocation_id,
        "order_id": txn.order_id,
        "amount": txn.amount,
        "currency": txn.currency,
        "type": "ORDER_CANCELLED",
        "status": "FINAL",
        "description": f"Order cancelled: {description or ''}".rstrip(),
        "created_by": txn.created_by,
        "created_at": now,
        "finalized_at": now,
    })
    return repository.get_transaction(cancel_id)
