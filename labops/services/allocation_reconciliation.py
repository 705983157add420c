"""
Allocation reconciliation.

Pure arithmetic that applies one ledger event to the running totals of a
funding account and of an allocation:

    commit        committed += amount
    receipt       committed -= original amount (floored at 0), spent += actual cost
    cancellation  committed -= original amount (floored at 0)
    adjustment    spent += amount  (REFUND: spent -= amount, floored at 0)

``remaining`` is always derived as ``budget - committed - spent`` so the
conservation invariant cannot drift. Allocation status follows remaining:
``active`` ↔ ``exhausted``; ``suspended`` and ``archived`` are only ever
changed by a person.

Threshold checks compute the before/after usage percentages. Delivering a
warning is the caller's job.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace

from labops.core.exceptions import ValidationError
from labops.models.funding import FUNDING_WARNING_THRESHOLDS


def _money(value: float) -> float:
    return round(float(value or 0.0), 2)


def _positive(amount: float, field: str) -> float:
    if not math.isfinite(float(amount or 0.0)):
        raise ValidationError(f"{field} must be a finite number", details={field: str(amount)})
    amount = _money(amount)
    if amount < 0:
        raise ValidationError(f"{field} must not be negative", details={field: amount})
    return amount


# ── Value types ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AccountTotals:
    total_budget: float
    committed: float = 0.0
    spent: float = 0.0

    @property
    def remaining(self) -> float:
        return _money(self.total_budget - self.committed - self.spent)


@dataclass(frozen=True)
class AllocationTotals:
    allocated: float
    spent: float = 0.0
    committed: float = 0.0
    status: str = "active"

    @property
    def remaining(self) -> float:
        return _money(self.allocated - self.spent - self.committed)

    @property
    def usage_percent(self) -> float:
        return usage_percent(self.spent, self.committed, self.allocated)


def settle_allocation_status(totals: AllocationTotals) -> AllocationTotals:
    """Flip between ``active`` and ``exhausted`` according to remaining budget."""
    if totals.status not in ("active", "exhausted"):
        return totals
    status = "exhausted" if totals.remaining <= 0 else "active"
    if status == totals.status:
        return totals
    return replace(totals, status=status)


# ── Account ──────────────────────────────────────────────────────────────────

def account_after_commit(totals: AccountTotals, amount: float) -> AccountTotals:
    amount = _positive(amount, "amount")
    return replace(totals, committed=_money(totals.committed + amount))


def account_after_receipt(totals: AccountTotals, original_amount: float, actual_cost: float) -> AccountTotals:
    original_amount = _positive(original_amount, "original_amount")
    actual_cost = _positive(actual_cost, "actual_cost")
    return replace(
        totals,
        committed=max(0.0, _money(totals.committed - original_amount)),
        spent=_money(totals.spent + actual_cost),
    )


def account_after_cancellation(totals: AccountTotals, original_amount: float) -> AccountTotals:
    original_amount = _positive(original_amount, "original_amount")
    return replace(totals, committed=max(0.0, _money(totals.committed - original_amount)))


def account_after_adjustment(totals: AccountTotals, amount: float, txn_type: str = "ADJUSTMENT") -> AccountTotals:
    amount = _positive(amount, "amount")
    if txn_type == "REFUND":
        return replace(totals, spent=max(0.0, _money(totals.spent - amount)))
    return replace(totals, spent=_money(totals.spent + amount))


# ── Allocation ───────────────────────────────────────────────────────────────

def allocation_after_commit(totals: AllocationTotals, amount: float) -> AllocationTotals:
    amount = _positive(amount, "amount")
    return settle_allocation_status(replace(totals, committed=_money(totals.committed + amount)))


def allocation_after_receipt(
    totals: AllocationTotals, original_amount: float, actual_cost: float,
) -> AllocationTotals:
    """Convert a commitment into spend.

    Remaining at or below zero exhausts the allocation; an exhausted
    allocation left with budget is active again.
    """
    original_amount = _positive(original_amount, "original_amount")
    actual_cost = _positive(actual_cost, "actual_cost")
    return settle_allocation_status(replace(
        totals,
        committed=max(0.0, _money(totals.committed - original_amount)),
        spent=_money(totals.spent + actual_cost),
    ))


def allocation_after_cancellation(totals: AllocationTotals, original_amount: float) -> AllocationTotals:
    """Release a commitment. Spend is untouched."""
    original_amount = _positive(original_amount, "original_amount")
    return settle_allocation_status(replace(
        totals, committed=max(0.0, _money(totals.committed - original_amount)),
    ))


def allocation_after_adjustment(
    totals: AllocationTotals, amount: float, txn_type: str = "ADJUSTMENT",
) -> AllocationTotals:
    amount = _positive(amount, "amount")
    if txn_type == "REFUND":
        spent = max(0.0, _money(totals.spent - amount))
    else:
        spent = _money(totals.spent + amount)
    return settle_allocation_status(replace(totals, spent=spent))


# ── Thresholds ───────────────────────────────────────────────────────────────

def usage_percent(spent: float, committed: float, allocated: float) -> float:
    """Share of the allocation that is spent or committed, in percent."""
    return ((spent or 0.0) + (committed or 0.0)) / (allocated or 1) * 100


@dataclass(frozen=True)
class ThresholdCheck:
    allocation_id: str
    percent_before: float
    percent_after: float
    thresholds_crossed: tuple[str, ...] = ()
    became_exhausted: bool = False

    @property
    def threshold_crossed(self) -> bool:
        return bool(self.thresholds_crossed)

    @property
    def highest_crossed(self) -> str | None:
        return self.thresholds_crossed[-1] if self.thresholds_crossed else None

    def to_dict(self) -> dict:
        return {
            "allocation_id": self.allocation_id,
            "percent_before": round(self.percent_before, 2),
            "percent_after": round(self.percent_after, 2),
            "thresholds_crossed": list(self.thresholds_crossed),
            "threshold_crossed": self.threshold_crossed,
            "became_exhausted": self.became_exhausted,
        }


def check_thresholds(
    allocation_id: str,
    before: AllocationTotals,
    after: AllocationTotals,
    *,
    warning_threshold: float | None = None,
) -> ThresholdCheck:
    """Report which warning levels usage crossed on the way up.

    A level ``t`` is crossed when ``before < t <= after``. An allocation's
    own ``warning_threshold`` is reported as ``CUSTOM``.
    """
    pct_before = before.usage_percent
    pct_after = after.usage_percent

    levels = sorted(FUNDING_WARNING_THRESHOLDS.items(), key=lambda kv: kv[1])
    if warning_threshold is not None:
        levels.append(("CUSTOM", float(warning_threshold)))
        levels.sort(key=lambda kv: kv[1])

    crossed = tuple(name for name, level in levels if pct_before < level <= pct_after)
    return ThresholdCheck(
        allocation_id=allocation_id,
        percent_before=pct_before,
        percent_after=pct_after,
        thresholds_crossed=crossed,
        became_exhausted=before.status != "exhausted" and after.status == "exhausted",
    )
