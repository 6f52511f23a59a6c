"""Error taxonomy shared by every conversation command.

Each error is an ``HTTPException`` so FastAPI renders it without extra wiring;
the ``detail`` carries a stable machine-checkable ``code`` plus a human
readable ``message``.
"""

from fastapi import HTTPException, status


class MessagingError(HTTPException):
    """Base exception for the conversations domain"""

    code = "INTERNAL"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "", **extra):
        self.message = message or self.code.replace("_", " ").capitalize()
        self.extra = extra
        super().__init__(
            status_code=type(self).status_code,
            detail={"code": self.code, "message": self.message, **extra},
        )

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class Unauthenticated(MessagingError):
    """No acting user"""

    code = "UNAUTHENTICATED"
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(MessagingError):
    """Authenticated but not permitted"""

    code = "FORBIDDEN"
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(MessagingError):
    """Absent, or present but hidden from a non-member"""

    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidArgument(MessagingError):
    code = "INVALID_ARGUMENT"
    status_code = status.HTTP_400_BAD_REQUEST


class Conflict(MessagingError):
    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT


class AlreadyMember(Conflict):
    def __init__(self, user_id=None):
        if user_id is None:
            super().__init__("User is already a participant")
        else:
            super().__init__(f"User {user_id} is already a participant", user_id=user_id)
        self.user_id = user_id


class RateLimited(MessagingError):
    code = "RATE_LIMITED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str = "", retry_after_seconds: int = 1):
        super().__init__(message or "Too many requests")
        self.retry_after_seconds = retry_after_seconds
        self.headers = {"Retry-After": str(retry_after_seconds)}


class Internal(MessagingError):
    code = "INTERNAL"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
