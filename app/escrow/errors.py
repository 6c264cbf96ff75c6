# app/escrow/errors.py
from __future__ import annotations

from typing import Any


class EscrowError(Exception):
    """
    Base for errors that reach the HTTP layer with a user-safe message.
    `extra` is merged into the JSON body (e.g. hours_left).
    """

    status_code = 400
    code = "ESCROW_ERROR"
    default_message = "Request could not be completed"

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        code: str | None = None,
        extra: dict[str, Any] | None = None,
    ):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.extra = extra or {}
        super().__init__(self.message)

    def to_body(self) -> dict[str, Any]:
        body = {"detail": self.code, "message": self.message}
        body.update(self.extra)
        return body


class AlreadyProcessed(EscrowError):
    # Normal idempotency outcome: the atomic claim found nothing to claim.
    status_code = 409
    code = "ALREADY_PROCESSED"
    default_message = "This has already been processed"


class NotAuthorized(EscrowError):
    # Deliberately vague so callers cannot probe which invoices exist.
    status_code = 401
    code = "NOT_AUTHORIZED"
    default_message = "Invalid or unrecognised credentials"


class NotFound(EscrowError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class PreconditionFailed(EscrowError):
    status_code = 400
    code = "PRECONDITION_FAILED"
    default_message = "This action is not possible yet"


class GatewayFailure(EscrowError):
    status_code = 502
    code = "GATEWAY_FAILURE"
    default_message = "The payment could not be completed. Please try again or contact support."


class NotificationFailure(Exception):
    """Raised inside the notification layer only; always caught and logged there."""
