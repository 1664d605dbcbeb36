"""Typed failures raised by the service layer.

Every service operation checks its preconditions before writing anything and
raises one of these; the app turns them into JSON responses.
"""


class ServiceError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"


class Forbidden(ServiceError):
    status_code = 403
    code = "forbidden"


class InvalidState(ServiceError):
    status_code = 400
    code = "invalid_state"


class Conflict(ServiceError):
    status_code = 409
    code = "conflict"


class ValidationFailed(ServiceError):
    status_code = 422
    code = "validation_failed"

    def __init__(self, message: str | None = None, fields: dict | None = None):
        super().__init__(message or "Invalid input.")
        self.fields = fields or {}

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.fields:
            data["fields"] = self.fields
        return data


class UpstreamFailure(ServiceError):
    status_code = 502
    code = "upstream_failure"


class InvalidSignature(ServiceError):
    status_code = 400
    code = "invalid_signature"
