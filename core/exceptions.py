from typing import Optional, Any, Dict
from http import HTTPStatus

class ChallengeException(Exception):
    """Base exception class for challenge solving errors"""
    def __init__(
        self,
        message: str,
        status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR,
        error_code: str = "CHALLENGE_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to response body format.

        Client errors carry only a message (plus details); server errors
        also carry the machine-readable code.
        """
        body: Dict[str, Any] = {}
        if self.status_code >= HTTPStatus.INTERNAL_SERVER_ERROR:
            body["code"] = self.error_code
        body["message"] = self.message
        body.update(self.details)
        return body

class ValidationError(ChallengeException):
    """Raised when the request body is missing or has invalid fields"""
    def __init__(self, reason: str):
        super().__init__(
            message=f"Bad Request: {reason}",
            status_code=HTTPStatus.BAD_REQUEST,
            error_code="VALIDATION_ERROR"
        )

class Unauthorized(ChallengeException):
    """Raised when the configured auth token does not match"""
    def __init__(self):
        super().__init__(
            message="Unauthorized",
            status_code=HTTPStatus.UNAUTHORIZED,
            error_code="UNAUTHORIZED"
        )

class QueueFull(ChallengeException):
    """Raised when every browser slot is busy and the wait queue is full"""
    def __init__(self, active: int, queued: int):
        super().__init__(
            message="Too Many Requests",
            status_code=HTTPStatus.TOO_MANY_REQUESTS,
            error_code="QUEUE_FULL",
            details={
                "active": active,
                "queued": queued
            }
        )

class BrowserUnavailable(ChallengeException):
    """Raised when no working browser handle can be obtained"""
    def __init__(self, reason: str):
        super().__init__(
            message=f"Browser not available: {reason}",
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            error_code="BROWSER_UNAVAILABLE"
        )

class TimedOut(ChallengeException):
    """Raised when a solver deadline passes without a result"""
    def __init__(self, reason: str, timeout_ms: int):
        super().__init__(
            message=f"Timeout Error: {reason} after {timeout_ms}ms",
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            error_code="TIMED_OUT"
        )
        self.timeout_ms = timeout_ms

class InvalidToken(ChallengeException):
    """Raised when a captured Turnstile token is absent or too short"""
    def __init__(self, length: int, minimum: int):
        super().__init__(
            message=f"Failed to get token: got {length} characters, need at least {minimum}",
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            error_code="INVALID_TOKEN"
        )

class SolverError(ChallengeException):
    """Raised when the browser fails mid-solve for any other reason"""
    def __init__(self, mode: str, reason: str):
        super().__init__(
            message=f"{mode} solver failed: {reason}",
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            error_code="SOLVER_ERROR"
        )
