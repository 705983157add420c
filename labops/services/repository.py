"""
Persistence layer.

The only module that turns snapshots into rows and back. Every write
``flush``es and leaves ``commit`` to the caller, so a service can group
several writes into one database transaction.

Workpackage writes are compare-and-swap on ``Workpackage.version``:
passing ``expected_version`` rejects the write up front when the row has
moved on, and a concurrent commit that lands between load and flush makes
SQLAlchemy raise ``StaleDataError``, which is surfaced as
``StaleWriteError`` as well.
"""

import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from labops.core.exceptions import NotFoundError, StaleWriteError, ValidationError
from labops.models import db
from labops.models.funding import (
    TRANSACTION_STATUSES,
    TRANSACTION_TYPES,
    FundingAccount,
    FundingAllocation,
    FundingTransaction,
)
from labops.models.project import Project, Workpackage as WorkpackageRow
from labops.services.snapshots import ProjectTree, Workpackage, tasks_to_document, tasks_from_document

logger = logging.getLogger(__name__)

# Columns a partial update may touch.
_ACCOUNT_FIELDS = frozenset({
    "committed_amount", "spent_amount", "remaining_budget", "status",
})
_ALLOCATION_FIELDS = frozenset({
    "current_spent", "current_committed", "remaining_budget", "status", "last_transaction_at",
})


def _iso(value):
    return value.isoformat() if isinstance(value, date) else value


def _parse_date(value):
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError("Invalid date", details={"value": value}) from None


# ── Row ↔ snapshot ───────────────────────────────────────────────────────────

def workpackage_snapshot(row: WorkpackageRow) -> Workpackage:
    return Workpackage(
        id=row.id,
        project_id=row.project_id,
        name=row.name,
        status=row.status,
        progress=row.progress or 0,
        tasks=tasks_from_document(row.tasks or []),
        owner_id=row.owner_id,
        start=_iso(row.start_date),
        end=_iso(row.end_date),
        version=row.version,
    )


def project_snapshot(row: Project) -> ProjectTree:
    return ProjectTree(
        id=row.id,
        name=row.name,
        status=row.status,
        progress=row.progress or 0,
        workpackages=tuple(workpackage_snapshot(wp) for wp in row.workpackages),
        team_member_ids=tuple(row.team_member_ids or ()),
        total_budget=row.total_budget,
        currency=row.currency,
    )


# ═══════════════════════════════════════════════════════════════════════════
#  PROJECTS & WORKPACKAGES
# ═══════════════════════════════════════════════════════════════════════════

def _workpackage_row(workpackage_id: str) -> WorkpackageRow:
    row = db.session.get(WorkpackageRow, workpackage_id)
    if row is None:
        raise NotFoundError("Workpackage", workpackage_id)
    return row


def _project_row(project_id: str) -> Project:
    row = db.session.get(Project, project_id)
    if row is None:
        raise NotFoundError("Project", project_id)
    return row


def get_workpackage(workpackage_id: str) -> Workpackage:
    return workpackage_snapshot(_workpackage_row(workpackage_id))


def update_workpackage_with_progress(
    workpackage_id: str,
    wp: Workpackage,
    expected_version: int | None = None,
) -> int:
    """Write the task document, progress and status of one workpackage.

    Returns the new version.

    Raises:
        NotFoundError: no such workpackage.
        StaleWriteError: the row's version differs from ``expected_version``
            or changed underneath this session.
    """
    row = _workpackage_row(workpackage_id)
    if expected_version is not None and row.version != expected_version:
        raise StaleWriteError("Workpackage", workpackage_id, expected_version, row.version)

    loaded_version = row.version
    row.tasks = tasks_to_document(wp.tasks)
    row.progress = wp.progress
    row.status = wp.status
    try:
        db.session.flush()
    except StaleDataError as exc:
        raise StaleWriteError("Workpackage", workpackage_id, loaded_version) from exc

    logger.debug(
        "Workpackage %s written (v%s → v%s, progress=%d)",
        workpackage_id, loaded_version, row.version, row.progress,
        extra={"workpackage_id": workpackage_id, "project_id": row.project_id},
    )
    return row.version


def get_project(project_id: str) -> ProjectTree:
    return project_snapshot(_project_row(project_id))


def update_project_progress(project_id: str, progress: int) -> None:
    row = _project_row(project_id)
    if row.progress != progress:
        row.progress = progress
        db.session.flush()


def all_project_ids() -> list[str]:
    return list(db.session.execute(select(Project.id).order_by(Project.created_at)).scalars())


def create_project_row(data: dict) -> Project:
    row = Project(
        name=data["name"],
        status=data.get("status") or "planning",
        team_member_ids=list(data.get("team_member_ids") or []),
        total_budget=data.get("total_budget"),
        currency=data.get("currency") or "EUR",
        start_date=_parse_date(data.get("start_date")),
        end_date=_parse_date(data.get("end_date")),
    )
    if data.get("id"):
        row.id = str(data["id"])
    db.session.add(row)
    db.session.flush()
    return row


def create_workpackage_row(project_id: str, data: dict, wp: Workpackage) -> WorkpackageRow:
    project = _project_row(project_id)
    row = WorkpackageRow(
        project=project,
        name=data["name"],
        status=wp.status,
        importance=data.get("importance") or "medium",
        progress=wp.progress,
        owner_id=data.get("owner_id"),
        start_date=_parse_date(data.get("start") or data.get("start_date")),
        end_date=_parse_date(data.get("end") or data.get("end_date")),
        position=len(project.workpackages),
        tasks=tasks_to_document(wp.tasks),
    )
    if data.get("id"):
        row.id = str(data["id"])
    db.session.add(row)
    db.session.flush()
    return row


# ═══════════════════════════════════════════════════════════════════════════
#  FUNDING
# ═══════════════════════════════════════════════════════════════════════════

def get_account(account_id: str) -> FundingAccount:
    row = db.session.get(FundingAccount, account_id)
    if row is None:
        raise NotFoundError("FundingAccount", account_id)
    return row


def update_account(account_id: str, partial: dict) -> FundingAccount:
    row = get_account(account_id)
    _apply_partial(row, partial, _ACCOUNT_FIELDS, "FundingAccount")
    return row


def get_allocation(allocation_id: str) -> FundingAllocation:
    row = db.session.get(FundingAllocation, allocation_id)
    if row is None:
        raise NotFoundError("FundingAllocation", allocation_id)
    return row


def update_allocation(allocation_id: str, partial: dict) -> FundingAllocation:
    row = get_allocation(allocation_id)
    _apply_partial(row, partial, _ALLOCATION_FIELDS, "FundingAllocation")
    return row


def allocations_for_account(account_id: str) -> list[FundingAllocation]:
    stmt = (
        select(FundingAllocation)
        .where(FundingAllocation.funding_account_id == account_id)
        .order_by(FundingAllocation.created_at)
    )
    return list(db.session.execute(stmt).scalars())


def _apply_partial(row, partial: dict, allowed: frozenset, resource: str) -> None:
    unknown = set(partial) - allowed
    if unknown:
        raise ValidationError(
            f"{resource} fields cannot be updated here",
            details={"fields": sorted(unknown)},
        )
    for key, value in partial.items():
        setattr(row, key, value)
    db.session.flush()


def create_transaction(data: dict) -> str:
    """Insert one ledger entry and return its id."""
    txn_type = data.get("type")
    status = data.get("status", "PENDING")
    if txn_type not in TRANSACTION_TYPES:
        raise ValidationError("Invalid transaction type", details={"type": txn_type})
    if status not in TRANSACTION_STATUSES:
        raise ValidationError("Invalid transaction status", details={"status": status})

    txn = FundingTransaction(
        funding_account_id=data["funding_account_id"],
        allocation_id=data.get("allocation_id"),
        order_id=data.get("order_id"),
        amount=float(data["amount"]),
        currency=data.get("currency") or "EUR",
        type=txn_type,
        status=status,
        description=data.get("description") or "",
        created_by=data.get("created_by") or "system",
        finalized_at=data.get("finalized_at"),
    )
    if data.get("created_at") is not None:
        txn.created_at = data["created_at"]
    db.session.add(txn)
    db.session.flush()
    return txn.id


def get_transaction(transaction_id: str) -> FundingTransaction:
    row = db.session.get(FundingTransaction, transaction_id)
    if row is None:
        raise NotFoundError("FundingTransaction", transaction_id)
    return row


def transactions_for_order(order_id: str) -> list[FundingTransaction]:
    stmt = (
        select(FundingTransaction)
        .where(FundingTransaction.order_id == order_id)
        .order_by(FundingTransaction.created_at, FundingTransaction.id)
    )
    return list(db.session.execute(stmt).scalars())


def transactions_for_account(account_id: str) -> list[FundingTransaction]:
    stmt = (
        select(FundingTransaction)
        .where(FundingTransaction.funding_account_id == account_id)
        .order_by(FundingTransaction.created_at, FundingTransaction.id)
    )
    return list(db.session.execute(stmt).scalars())
