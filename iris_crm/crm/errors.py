from __future__ import annotations

from typing import Any

from fastapi import status


class CRMError(Exception):
    """Base error for CRM domain failures, rendered as the JSON error envelope."""

    code = "crm_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundError(CRMError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class BadRequestError(CRMError):
    code = "bad_request"


class InvalidTransitionError(CRMError):
    """Raised when a requested lead status is not reachable from the current one."""

    code = "invalid_transition"

    def __init__(
        self,
        current_status: str,
        requested_status: str,
        allowed_statuses: list[str],
        reason: str,
    ) -> None:
        self.current_status = current_status
        self.requested_status = requested_status
        self.allowed_statuses = list(allowed_statuses)
        super().__init__(
            reason,
            {
                "current_status": current_status,
                "requested_status": requested_status,
                "allowed_statuses": self.allowed_statuses,
                "reason": reason,
            },
        )


class NotConvertibleError(CRMError):
    code = "not_convertible"

    def __init__(self, current_status: str) -> None:
        self.current_status = current_status
        reason = f'Lead status is "{current_status}" and cannot be converted'
        super().__init__("Lead cannot be converted", {"current_status": current_status, "reason": reason})


class NotReversibleError(CRMError):
    code = "not_reversible"


class InvalidUserError(CRMError):
    code = "invalid_user"


class ConflictError(CRMError):
    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class InternalError(CRMError):
    code = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
