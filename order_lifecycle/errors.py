class OrderEngineError(Exception):
    """Base class for errors the API reports to the caller as {"error": ...}."""

    status_code = 500
    code = "error"

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self):
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(OrderEngineError):
    status_code = 400
    code = "validation_failed"


class NotFoundError(OrderEngineError):
    status_code = 404
    code = "not_found"


class ForbiddenError(OrderEngineError):
    status_code = 403
    code = "forbidden"


class ConflictError(OrderEngineError):
    status_code = 409
    code = "conflict"


class UpstreamError(OrderEngineError):
    """The payment gateway call failed."""

    status_code = 502
    code = "upstream_error"


class PartialFailure(OrderEngineError):
    """Some lines of a settlement failed while their siblings were applied."""

    status_code = 500
    code = "partial_failure"


class StorageError(OrderEngineError):
    status_code = 500
    code = "storage_error"
