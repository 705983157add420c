"""
Unit-of-work helper.

Runs a block of flush-only service code and commits it once. On an
optimistic-concurrency conflict (SQLAlchemy ``StaleDataError``) the session
is rolled back and the whole block runs again from a fresh read, up to
``max_attempts`` times; after that the conflict surfaces as
``StaleWriteError``.

Any other exception rolls back and propagates unchanged.

Usage:
    from labops.services.helpers.unit_of_work import run_in_unit_of_work

    outcome = run_in_unit_of_work(
        lambda: _apply_receipt(order_id, actual_cost),
        resource="FundingTransaction", resource_id=order_id, max_attempts=3,
    )
"""

import logging
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.orm.exc import StaleDataError

from labops.core.exceptions import StaleWriteError
from labops.models import db

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_in_unit_of_work(
    work: Callable[[], T],
    *,
    resource: str,
    resource_id: str,
    max_attempts: int = 1,
) -> T:
    max_attempts = max(1, int(max_attempts))
    last_error = None

    for attempt in range(1, max_attempts + 1):
        try:
            result = work()
            db.session.commit()
            return result
        except StaleDataError as exc:
            db.session.rollback()
            last_error = exc
            logger.warning(
                "Concurrent update on %s %s (attempt %d/%d)",
                resource, resource_id, attempt, max_attempts,
            )
        except Exception:
            db.session.rollback()
            raise

    raise StaleWriteError(resource, resource_id) from last_error
