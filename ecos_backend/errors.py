"""
Domain errors raised by the ECOS core and rendered by the API layer.
"""
from typing import Any, Dict, Optional


class EcosError(Exception):
    """Base error of the ECOS backend"""

    status_code = 500
    error_code = "ECOS_ERROR"

    def __init__(self, detail: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.extra = extra or {}


class NotFoundError(EcosError):
    """Unknown scenario or session"""

    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, kind: str, object_id: Any):
        super().__init__(
            f"{kind.capitalize()} '{object_id}' not found",
            extra={"kind": kind, "id": str(object_id)},
        )


class InvalidStateError(EcosError):
    """Operation not allowed in the current session state"""

    status_code = 409
    error_code = "INVALID_STATE"

    def __init__(self, session_id: str, status: str, action: str):
        super().__init__(
            f"Cannot {action}: session '{session_id}' is {status}",
            extra={"session_id": session_id, "status": status},
        )


class QuotaExceededError(EcosError):
    """Daily question limit reached; the counter was not incremented"""

    status_code = 429
    error_code = "QUOTA_EXCEEDED"

    def __init__(self, user_id: str, used: int, limit: int):
        super().__init__(
            f"Daily question limit reached ({used}/{limit})",
            extra={"user_id": user_id, "used": used, "remaining": 0, "limitReached": True},
        )


class LanguageModelError(EcosError):
    """Patient simulation call failed or timed out"""

    status_code = 502
    error_code = "LANGUAGE_MODEL_ERROR"


class EvaluationFailedError(EcosError):
    """Grader call failed; the session stays completed and can be re-evaluated"""

    status_code = 502
    error_code = "EVALUATION_FAILED"

    def __init__(self, session_id: str, reason: str):
        super().__init__(
            f"Evaluation of session '{session_id}' failed: {reason}",
            extra={"session_id": session_id},
        )


class ForbiddenError(EcosError):
    status_code = 403
    error_code = "FORBIDDEN"
