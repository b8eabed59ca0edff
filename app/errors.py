class AppError(Exception):
    """Base error carrying the HTTP status it maps to."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    status_code = 400


class AuthError(AppError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class NotFoundError(AppError):
    """Record is absent or not visible to the caller; the two are not distinguished."""

    status_code = 404


class UpstreamError(AppError):
    """A database or storage call failed for a reason other than the above.

    Persistence failures are reported as 400, storage and rendering failures as 500.
    """

    def __init__(self, message: str, origin: str = "persistence"):
        super().__init__(message, 400 if origin == "persistence" else 500)
        self.origin = origin
