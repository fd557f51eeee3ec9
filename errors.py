"""
Application error taxonomy.

Service functions raise these; main.py turns them into JSON responses of the
form {"message": ...} with the matching status code.
"""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    status_code = 400


class InvalidTransitionError(AppError):
    """Order cannot move from its current status to the requested one."""
    status_code = 400


class AuthenticationError(AppError):
    status_code = 401


class AuthorizationError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 409


class ExternalServiceError(AppError):
    status_code = 502
