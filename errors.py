"""
Error taxonomy shared by every service.

Each error carries the HTTP status the API layer renders it with. Services
raise them; the FastAPI app turns them into ``{"success": false, "message": ...}``.
"""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str = "Something went wrong, try again later"):
        super().__init__(message)
        self.message = message


class BadRequest(AppError):
    status_code = 400


class Unauthenticated(AppError):
    status_code = 401


class NotFound(AppError):
    status_code = 404


class ServiceUnavailable(AppError):
    status_code = 503
