class RefundAccountingError(Exception):
    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(RefundAccountingError):
    """Malformed or policy-violating input. Nothing was written."""

    status_code = 400


class NotFoundError(RefundAccountingError):
    status_code = 404


class ConflictError(RefundAccountingError):
    """Optimistic concurrency mismatch. The whole batch was rejected."""

    status_code = 409


class ConsistencyError(RefundAccountingError):
    """Refund details do not add up to the order's buyer refund amount."""

    status_code = 422
