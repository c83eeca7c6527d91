from typing import Optional


class BudgetEngineError(ValueError):
    """Base for failures the API reports to clients.

    ``reason`` is a stable, machine-readable token; the message is for humans.
    """

    status_code = 400
    default_reason = "error"

    def __init__(self, message: str, *, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason

    def to_detail(self) -> dict[str, str]:
        return {"message": self.message, "reason": self.reason}


class ValidationError(BudgetEngineError):
    status_code = 400
    default_reason = "validation_error"


class NotFoundError(BudgetEngineError):
    status_code = 404
    default_reason = "not_found"


class AuthorizationError(BudgetEngineError):
    status_code = 403
    default_reason = "forbidden"
