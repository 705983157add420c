"""
LabOps Reconciliation Service
Funding ledger models.

Models:
    - FundingAccount: a grant or budget line with running committed/spent totals
    - FundingAllocation: a per-person or per-project envelope drawn from an account
    - FundingTransaction: one ledger entry; an order commit starts PENDING and
      is resolved exactly once to FINAL or CANCELLED

Architecture chain: FundingAccount → FundingAllocation → FundingTransaction

Accounts, allocations and transactions carry a ``version`` column used by
SQLAlchemy's optimistic-concurrency check, so two ledger writers racing on
the same row cannot both commit.
"""

from datetime import datetime, timezone

from labops.models import db
from labops.models.project import new_id


# ── Constants ────────────────────────────────────────────────────────────────

ACCOUNT_STATUSES = {"active", "closed", "suspended", "pending"}

ALLOCATION_TYPES = {"PERSON", "PROJECT"}

ALLOCATION_STATUSES = {"active", "exhausted", "suspended", "archived"}

TRANSACTION_TYPES = {"ORDER_COMMIT", "ORDER_RECEIVED", "ORDER_CANCELLED", "ADJUSTMENT", "REFUND"}

TRANSACTION_STATUSES = {"PENDING", "FINAL", "CANCELLED"}

# PENDING is the only non-terminal state.
TRANSACTION_TRANSITIONS = {
    "PENDING":   ["FINAL", "CANCELLED"],
    "FINAL":     [],
    "CANCELLED": [],
}

# Usage percentages that raise a low-balance warning when crossed upwards.
FUNDING_WARNING_THRESHOLDS = {
    "LOW": 50,
    "MEDIUM": 70,
    "HIGH": 80,
    "CRITICAL": 90,
}

# Money comparisons are done within half a cent.
MONEY_TOLERANCE = 0.005


def validate_transaction_transition(old_status, new_status):
    """Return True if transition is valid, False otherwise."""
    allowed = TRANSACTION_TRANSITIONS.get(old_status, [])
    return new_status in allowed


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
#  FUNDING ACCOUNT
# ═══════════════════════════════════════════════════════════════════════════

class FundingAccount(db.Model):
    """
    A funding account. ``remaining_budget`` is kept equal to
    ``total_budget - committed_amount - spent_amount``.
    """

    __tablename__ = "funding_accounts"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    account_number = db.Column(db.String(60), nullable=True, index=True)
    project_id = db.Column(
        db.String(36), db.ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    account_type = db.Column(db.String(20), nullable=False, default="main",
                             comment="main | equipment | consumables | travel | personnel | other")
    total_budget = db.Column(db.Float, nullable=False, default=0.0)
    committed_amount = db.Column(db.Float, nullable=False, default=0.0)
    spent_amount = db.Column(db.Float, nullable=False, default=0.0)
    remaining_budget = db.Column(db.Float, nullable=False, default=0.0)
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    status = db.Column(db.String(20), nullable=False, default="active")
    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    allocations = db.relationship(
        "FundingAllocation", back_populates="account",
        cascade="all, delete-orphan", lazy="select",
    )

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "account_number": self.account_number,
            "project_id": self.project_id,
            "account_type": self.account_type,
            "total_budget": self.total_budget,
            "committed_amount": self.committed_amount,
            "spent_amount": self.spent_amount,
            "remaining_budget": self.remaining_budget,
            "currency": self.currency,
            "status": self.status,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<FundingAccount {self.id}: {self.name[:40]}>"


# ═══════════════════════════════════════════════════════════════════════════
#  FUNDING ALLOCATION
# ═══════════════════════════════════════════════════════════════════════════

class FundingAllocation(db.Model):
    """
    A budget envelope for one person or one project.

    ``remaining_budget`` is kept equal to
    ``allocated_amount - current_spent - current_committed``; an allocation
    whose remaining budget reaches 0 is marked ``exhausted``.
    """

    __tablename__ = "funding_allocations"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    funding_account_id = db.Column(
        db.String(36), db.ForeignKey("funding_accounts.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    type = db.Column(db.String(10), nullable=False, default="PROJECT", comment="PERSON | PROJECT")
    person_id = db.Column(db.String(36), nullable=True, index=True)
    project_id = db.Column(db.String(36), nullable=True, index=True)
    allocated_amount = db.Column(db.Float, nullable=False, default=0.0)
    soft_limit = db.Column(db.Float, nullable=True)
    current_spent = db.Column(db.Float, nullable=False, default=0.0)
    current_committed = db.Column(db.Float, nullable=False, default=0.0)
    remaining_budget = db.Column(db.Float, nullable=False, default=0.0)
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    status = db.Column(db.String(20), nullable=False, default="active", index=True)
    low_balance_warning_threshold = db.Column(db.Float, nullable=True, comment="percent used")
    last_transaction_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    account = db.relationship("FundingAccount", back_populates="allocations")

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self):
        return {
            "id": self.id,
            "funding_account_id": self.funding_account_id,
            "type": self.type,
            "person_id": self.person_id,
            "project_id": self.project_id,
            "allocated_amount": self.allocated_amount,
            "soft_limit": self.soft_limit,
            "current_spent": self.current_spent,
            "current_committed": self.current_committed,
            "remaining_budget": self.remaining_budget,
            "currency": self.currency,
            "status": self.status,
            "low_balance_warning_threshold": self.low_balance_warning_threshold,
            "last_transaction_at": _iso(self.last_transaction_at),
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<FundingAllocation {self.id}: {self.type} {self.status}>"


# ═══════════════════════════════════════════════════════════════════════════
#  FUNDING TRANSACTION
# ═══════════════════════════════════════════════════════════════════════════

class FundingTransaction(db.Model):
    """
    One ledger entry.

    Only ``status`` and ``finalized_at`` change after creation, and only
    along ``TRANSACTION_TRANSITIONS``.
    """

    __tablename__ = "funding_transactions"
    __table_args__ = (
        db.Index("idx_ftx_order_type_status", "order_id", "type", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    funding_account_id = db.Column(
        db.String(36), db.ForeignKey("funding_accounts.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    # Plain reference: ledger history outlives archived or deleted allocations.
    allocation_id = db.Column(db.String(36), nullable=True, index=True)
    order_id = db.Column(db.String(36), nullable=True, index=True)
    amount = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    type = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(12), nullable=False, default="PENDING")
    description = db.Column(db.Text, nullable=False, default="")
    created_by = db.Column(db.String(150), nullable=False, default="system")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    finalized_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return not TRANSACTION_TRANSITIONS.get(self.status)

    def to_dict(self):
        return {
            "id": self.id,
            "funding_account_id": self.funding_account_id,
            "allocation_id": self.allocation_id,
            "order_id": self.order_id,
            "amount": self.amount,
            "currency": self.currency,
            "type": self.type,
            "status": self.status,
            "description": self.description,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "finalized_at": _iso(self.finalized_at),
        }

    def __repr__(self):
        return f"<FundingTransaction {self.id}: {self.type} {self.status} {self.amount}>"
