"""
Engine error taxonomy.

Services raise these; main.py maps each to an HTTP status. ConflictError
subclasses mean the state already moved on: callers should re-read instead of
retrying the mutation. InternalError is safe to retry because every money
operation runs in one transaction.
"""


class EngineError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        body = {"error": self.code, "detail": self.message}
        if self.context:
            body["context"] = {k: str(v) for k, v in self.context.items()}
        return body


class ValidationError(EngineError):
    status_code = 400
    code = "validation_error"


class PermissionDeniedError(EngineError):
    status_code = 403
    code = "permission_denied"


class NotFoundError(EngineError):
    status_code = 404
    code = "not_found"


class ConflictError(EngineError):
    status_code = 409
    code = "conflict"


class DuplicateOrderError(ConflictError):
    code = "duplicate_order"


class AlreadyResolvedError(ConflictError):
    code = "already_resolved"


class AlreadyReleasedError(AlreadyResolvedError):
    code = "already_released"


class StaleWriteError(ConflictError):
    code = "stale_write"


class InsufficientFundsError(EngineError):
    status_code = 422
    code = "insufficient_funds"


class ExternalGatewayError(EngineError):
    status_code = 502
    code = "gateway_error"


class InternalError(EngineError):
    status_code = 500
    code = "internal_error"
