"""
Service-wide exception hierarchy.

Every service raises these types; blueprints register handlers against them
once and get consistent HTTP status codes everywhere.

Usage:
    from labops.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Subtask", resource_id="st-1")
    raise ValidationError("amount must be positive", details={"amount": -3})
"""


class NotFoundError(Exception):
    """Raised when a referenced entity does not exist within the expected scope.

    Used for Task/Subtask/Todo ids missing from a workpackage document as
    well as for missing Project, Workpackage, Account, Allocation and
    Transaction rows.

    Args:
        resource: Human-readable entity name (e.g. "Todo", "FundingAccount").
        resource_id: The id that was looked up.
        scope: Optional — the enclosing id the lookup was limited to.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        scope: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.scope = scope
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if scope is not None:
            msg += f" (in {scope})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique resource.

    Maps to HTTP 409.

    Args:
        resource: Entity name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class StaleWriteError(ConflictError):
    """Raised when a version-stamped row changed between read and write.

    Carries the version the caller expected and the version found, when
    known. Maps to HTTP 409 so the client reloads and retries.
    """

    def __init__(
        self,
        resource: str,
        resource_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        Exception.__init__(
            self,
            f"{resource} id={resource_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
        )
        self.resource = resource
        self.field = "version"
        self.value = str(expected_version)


class InvalidTransitionError(ConflictError):
    """Raised when a state machine rejects a status change."""

    def __init__(self, resource: str, old_status: str, new_status: str) -> None:
        self.old_status = old_status
        self.new_status = new_status
        Exception.__init__(self, f"Invalid {resource} transition: {old_status} → {new_status}")
        self.resource = resource
        self.field = "status"
        self.value = new_status


class InconsistentStateError(Exception):
    """Raised when persisted data contradicts itself (an upstream bug).

    Trigger-driven callers log these and carry on; they are never retried.
    """


class TransactionNotFoundError(InconsistentStateError):
    """No funding transaction of any kind exists for an order being resolved."""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"No funding transaction found for order {order_id}")
