from __future__ import annotations


class AppError(Exception):
    """Base application error."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail)


class AuthError(AppError):
    """Invalid credential, expired token or no signed-in identity."""


class NetworkError(AppError):
    """Directory unreachable or call exceeded its deadline."""


class ConflictError(AppError):
    pass


class ValidationError(AppError):
    pass


class NotFoundError(AppError):
    pass


class ForbiddenError(AppError):
    pass


_MESSAGES: dict[type[AppError], str] = {
    AuthError: "Invalid email or password",
    NetworkError: "Connection problem. Please try again",
    ConflictError: "This email is already registered",
    NotFoundError: "Resource not found",
    ForbiddenError: "You are not allowed to do that",
}


def describe_error(exc: BaseException) -> str:
    """User-facing text for an error raised by the engine."""
    if isinstance(exc, ValidationError) and exc.detail:
        return exc.detail
    for error_type, message in _MESSAGES.items():
        if isinstance(exc, error_type):
            return message
    return "An error occurred"
