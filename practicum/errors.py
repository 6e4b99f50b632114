"""Domain errors raised by the practicum services.

Routes do not catch these; the handler registered in practicum.server
renders them as JSON with the HTTP status and category below.
"""


class PracticumError(Exception):
    status_code = 400
    category = "error"

    def __init__(self, detail: str, fields: dict | None = None):
        super().__init__(detail)
        self.detail = detail
        self.fields = fields or {}

    def to_dict(self) -> dict:
        body = {"detail": self.detail, "category": self.category}
        if self.fields:
            body["fields"] = self.fields
        return body


class NotFound(PracticumError):
    status_code = 404
    category = "not_found"


class InvalidState(PracticumError):
    status_code = 409
    category = "invalid_state"

    def __init__(self, current: str, requested: str, detail: str | None = None):
        super().__init__(
            detail or f"Cannot {requested} session with status '{current}'",
            {"current_state": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


class Conflict(PracticumError):
    status_code = 409
    category = "conflict"


class ValidationFailure(PracticumError):
    status_code = 422
    category = "validation_failure"


class UpstreamUnavailable(PracticumError):
    status_code = 503
    category = "upstream_unavailable"


class ConfigurationError(PracticumError):
    status_code = 422
    category = "configuration_error"
