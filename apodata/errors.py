"""
Error taxonomy shared by the engine and the HTTP layer.
"""


class AnalyticsError(Exception):
    """Base class; ``status_code`` is the HTTP status the API answers with."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequest(AnalyticsError):
    status_code = 400


class Unauthorized(AnalyticsError):
    status_code = 401


class Forbidden(AnalyticsError):
    status_code = 403


class InternalServerError(AnalyticsError):
    status_code = 500
