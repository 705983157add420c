"""
LabOps Reconciliation Service
Blueprint registry.
"""

import logging

from flask import request
from sqlalchemy.exc import SQLAlchemyError

from labops.core.exceptions import (
    ConflictError,
    InconsistentStateError,
    InvalidTransitionError,
    NotFoundError,
    StaleWriteError,
    TransactionNotFoundError,
    ValidationError,
)
from labops.models import db
from labops.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def json_body(required=True):
    """Return ``(data, None)`` or ``(None, error_response)`` for the request body."""
    data = request.get_json(silent=True)
    if data is None and not required and not request.data:
        return {}, None
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_REQUIRED, "Request body must be a JSON object")
    return data, None


def optional_int(value, field):
    """Parse an optional integer parameter; ``(value, None)`` or ``(None, error)``."""
    if value is None or value == "":
        return None, None
    try:
        return int(value), None
    except (TypeError, ValueError):
        return None, api_error(E.VALIDATION_INVALID, f"{field} must be an integer", details={field: value})


def register_error_handlers(bp):
    """Map service exceptions onto JSON error responses for *bp*.

    Every handler rolls back first so a failed request leaves nothing
    half-flushed in the session.
    """

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        db.session.rollback()
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        db.session.rollback()
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(StaleWriteError)
    def _handle_stale(error: StaleWriteError):
        db.session.rollback()
        return api_error(
            E.CONFLICT_VERSION, str(error),
            details={
                "expected_version": error.expected_version,
                "actual_version": error.actual_version,
            },
        )

    @bp.errorhandler(InvalidTransitionError)
    def _handle_transition(error: InvalidTransitionError):
        db.session.rollback()
        return api_error(
            E.CONFLICT_STATE, str(error),
            details={"from": error.old_status, "to": error.new_status},
        )

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        db.session.rollback()
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={error.field: error.value})

    @bp.errorhandler(TransactionNotFoundError)
    def _handle_unknown_order(error: TransactionNotFoundError):
        db.session.rollback()
        return api_error(E.NOT_FOUND, str(error), details={"order_id": error.order_id})

    @bp.errorhandler(InconsistentStateError)
    def _handle_inconsistent(error: InconsistentStateError):
        db.session.rollback()
        logger.warning("Inconsistent ledger state on %s: %s", request.path, error)
        return api_error(E.INCONSISTENT_STATE, str(error))

    @bp.errorhandler(SQLAlchemyError)
    def _handle_db_error(error: SQLAlchemyError):
        db.session.rollback()
        logger.exception("Database error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.DATABASE, "Database error")
