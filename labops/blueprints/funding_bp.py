"""
Funding ledger blueprint.

Endpoint groups:
  Accounts       POST/GET /api/v1/funding/accounts
                 GET      /api/v1/funding/accounts/<account_id>
                 GET      /api/v1/funding/accounts/<account_id>/summary
                 GET      /api/v1/funding/accounts/<account_id>/funds-check?amount=
                 POST     /api/v1/funding/accounts/<account_id>/rebuild
  Allocations    POST/GET /api/v1/funding/allocations
                 GET      /api/v1/funding/allocations/<allocation_id>
  Transactions   GET      /api/v1/funding/transactions?order_id=&account_id=&status=&type=
  Orders         POST     /api/v1/funding/orders/<order_id>/commit
                 POST     /api/v1/funding/orders/<order_id>/receive
                 POST     /api/v1/funding/orders/<order_id>/cancel
                 POST     /api/v1/funding/orders/<order_id>/status   (order-status trigger)
  Adjustments    POST     /api/v1/funding/adjustments

The ``status`` trigger never fails on inconsistent ledger data: it logs and
answers 200 with a null outcome. ``receive`` / ``cancel`` report the same
condition as 409.
"""

import logging
import math

from flask import Blueprint, jsonify, request

from labops.blueprints import json_body, paginate_query, register_error_handlers
from labops.models import db
from labops.models.funding import FundingAllocation
from labops.services import funding_service as fs
from labops.services import repository
from labops.utils.errors import E, api_error

logger = logging.getLogger(__name__)

funding_bp = Blueprint("funding", __name__, url_prefix="/api/v1/funding")
register_error_handlers(funding_bp)


def _amount(value, field="amount"):
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None, api_error(E.VALIDATION_INVALID, f"{field} must be a number", details={field: value})
    if not math.isfinite(number):
        return None, api_error(E.VALIDATION_INVALID, f"{field} must be a finite number", details={field: str(value)})
    return number, None


# ═════════════════════════════════════════════════════════════════════════
# Accounts
# ═════════════════════════════════════════════════════════════════════════


@funding_bp.route("/accounts", methods=["POST"])
def create_account():
    data, err = json_body()
    if err:
        return err
    account = fs.create_account(data)
    db.session.commit()
    return jsonify(account.to_dict()), 201


@funding_bp.route("/accounts", methods=["GET"])
def list_accounts():
    accounts = fs.list_accounts(project_id=request.args.get("project_id"))
    return jsonify({"items": [a.to_dict() for a in accounts], "total": len(accounts)})


@funding_bp.route("/accounts/<account_id>", methods=["GET"])
def get_account(account_id):
    return jsonify(repository.get_account(account_id).to_dict())


@funding_bp.route("/accounts/<account_id>/summary", methods=["GET"])
def account_summary(account_id):
    return jsonify(fs.budget_summary(account_id))


@funding_bp.route("/accounts/<account_id>/funds-check", methods=["GET"])
def funds_check(account_id):
    amount, err = _amount(request.args.get("amount"))
    if err:
        return err
    return jsonify(fs.check_sufficient_funds(account_id, amount))


@funding_bp.route("/accounts/<account_id>/rebuild", methods=["POST"])
def rebuild_account(account_id):
    return jsonify(fs.rebuild_ledger(account_id))


# ═════════════════════════════════════════════════════════════════════════
# Allocations
# ═════════════════════════════════════════════════════════════════════════


@funding_bp.route("/allocations", methods=["POST"])
def create_allocation():
    data, err = json_body()
    if err:
        return err
    allocation = fs.create_allocation(data)
    db.session.commit()
    return jsonify(allocation.to_dict()), 201


@funding_bp.route("/allocations", methods=["GET"])
def list_allocations():
    query = FundingAllocation.query.order_by(FundingAllocation.created_at)
    account_id = request.args.get("account_id")
    if account_id:
        query = query.filter(FundingAllocation.funding_account_id == account_id)
    items, total = paginate_query(query)
    return jsonify({"items": [a.to_dict() for a in items], "total": total})


@funding_bp.route("/allocations/<allocation_id>", methods=["GET"])
def get_allocation(allocation_id):
    return jsonify(repository.get_allocation(allocation_id).to_dict())


# ═════════════════════════════════════════════════════════════════════════
# Transactions
# ═════════════════════════════════════════════════════════════════════════


@funding_bp.route("/transactions", methods=["GET"])
def list_transactions():
    query = fs.list_transactions(
        order_id=request.args.get("order_id"),
        account_id=request.args.get("account_id"),
        status=request.args.get("status"),
        txn_type=request.args.get("type"),
    )
    items, total = paginate_query(query)
    return jsonify({"items": [t.to_dict() for t in items], "total": total})


# ═════════════════════════════════════════════════════════════════════════
# Orders
# ═════════════════════════════════════════════════════════════════════════


@funding_bp.route("/orders/<order_id>/commit", methods=["POST"])
def commit_order(order_id):
    """Body: {account_id, amount, allocation_id?, currency?, description?, created_by?, enforce_budget?}"""
    data, err = json_body()
    if err:
        return err
    if not data.get("account_id"):
        return api_error(E.VALIDATION_REQUIRED, "account_id is required")
    amount, err = _amount(data.get("amount"))
    if err:
        return err

    outcome = fs.commit_order(
        order_id,
        data["account_id"],
        amount,
        allocation_id=data.get("allocation_id"),
        currency=data.get("currency"),
        description=data.get("description", ""),
        created_by=data.get("created_by") or "system",
        enforce_budget=data.get("enforce_budget"),
    )
    return jsonify(outcome.to_dict()), 201


@funding_bp.route("/orders/<order_id>/receive", methods=["POST"])
def receive_order(order_id):
    """Body (optional): {actual_cost?, description?}"""
    data, err = json_body(required=False)
    if err:
        return err
    actual_cost = data.get("actual_cost")
    if actual_cost is not None:
        actual_cost, err = _amount(actual_cost, "actual_cost")
        if err:
            return err
    outcome = fs.on_order_received(order_id, actual_cost, data.get("description", ""))
    return jsonify(outcome.to_dict())


@funding_bp.route("/orders/<order_id>/cancel", methods=["POST"])
def cancel_order(order_id):
    data, err = json_body(required=False)
    if err:
        return err
    outcome = fs.on_order_cancelled(order_id, data.get("description", ""))
    return jsonify(outcome.to_dict())


@funding_bp.route("/orders/<order_id>/status", methods=["POST"])
def order_status_changed(order_id):
    """Order-status trigger. Body: {before_status, after_status, actual_cost?, description?}"""
    data, err = json_body()
    if err:
        return err
    if not data.get("after_status"):
        return api_error(E.VALIDATION_REQUIRED, "after_status is required")
    actual_cost = data.get("actual_cost")
    if actual_cost is not None:
        actual_cost, err = _amount(actual_cost, "actual_cost")
        if err:
            return err

    outcome = fs.handle_order_status_change(
        order_id,
        data.get("before_status"),
        data["after_status"],
        actual_cost=actual_cost,
        description=data.get("description", ""),
    )
    return jsonify({"outcome": outcome.to_dict() if outcome else None})


# ═════════════════════════════════════════════════════════════════════════
# Adjustments
# ═════════════════════════════════════════════════════════════════════════


@funding_bp.route("/adjustments", methods=["POST"])
def create_adjustment():
    """Body: {account_id, amount, type?: ADJUSTMENT|REFUND, allocation_id?, description?}"""
    data, err = json_body()
    if err:
        return err
    if not data.get("account_id"):
        return api_error(E.VALIDATION_REQUIRED, "account_id is required")
    amount, err = _amount(data.get("amount"))
    if err:
        return err

    outcome = fs.record_adjustment(
        data["account_id"],
        amount,
        allocation_id=data.get("allocation_id"),
        type=data.get("type") or "ADJUSTMENT",
        description=data.get("description", ""),
        created_by=data.get("created_by") or "system",
        order_id=data.get("order_id"),
    )
    return jsonify(outcome.to_dict()), 201
