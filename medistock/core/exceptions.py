"""
Transfer engine error taxonomy.

Every error carries a machine-readable ``code``, the HTTP status the API layer
should answer with, and a ``context`` dict with the ids, statuses and
quantities needed to render a precise message.
"""
from typing import Any, Dict, Optional


class TransferEngineError(Exception):
    """Base class for all errors raised by the transfer engine."""

    code: str = "TRANSFER_ENGINE_ERROR"
    status_code: int = 400

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "detail": {k: _jsonable(v) for k, v in self.context.items()},
        }


class InvalidTransition(TransferEngineError):
    """Transition not legal from the item's (or transfer's) current status."""

    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(
        self,
        current_status: str,
        requested_status: str,
        message: Optional[str] = None,
        **context: Any,
    ):
        message = message or f"Cannot move from '{current_status}' to '{requested_status}'"
        super().__init__(
            message,
            current_status=current_status,
            requested_status=requested_status,
            **context,
        )


class InsufficientStock(TransferEngineError):
    """A batch or ledger cannot cover the requested quantity."""

    code = "INSUFFICIENT_STOCK"
    status_code = 422

    def __init__(self, message: str, requested: Optional[int] = None, available: Optional[int] = None, **context: Any):
        super().__init__(message, requested=requested, available=available, **context)


class ValidationError(TransferEngineError):
    """Missing or malformed input: empty reason, bad quantity, foreign department."""

    code = "VALIDATION_ERROR"
    status_code = 400


class ConcurrencyConflict(TransferEngineError):
    """Optimistic version check failed; retry the whole operation with fresh data."""

    code = "CONCURRENCY_CONFLICT"
    status_code = 409


class NotFound(TransferEngineError):
    """Id does not resolve under the caller's organization/department scope."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any = None, message: Optional[str] = None, **context: Any):
        super().__init__(message or f"{resource} not found", resource=resource, resource_id=resource_id, **context)


class PermissionDenied(TransferEngineError):
    """Actor's role or department does not allow the operation."""

    code = "PERMISSION_DENIED"
    status_code = 403


class DuplicateResource(TransferEngineError):
    """Unique key (transfer code, lot number, ledger) already taken."""

    code = "DUPLICATE_RESOURCE"
    status_code = 409


class LedgerIntegrityError(TransferEngineError):
    """Counters would break ``available + reserved == total``. Indicates a bug, never user input."""

    code = "LEDGER_INTEGRITY"
    status_code = 500


class ImmutableRecordError(TransferEngineError):
    """Attempt to update or delete an append-only record."""

    code = "IMMUTABLE_RECORD"
    status_code = 500


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)
