"""Error shapes shared by the ledger, the resolver and the poller.

Every error carries an HTTP-style `code` and a human readable `message`. The app
renders them as `{"success": false, "code": ..., "error": message}`.
"""


class SuiteCError(Exception):
    code = 500

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(SuiteCError):
    code = 400


class AuthorizationError(SuiteCError):
    code = 401


class NotFoundError(SuiteCError):
    code = 404


class StorageError(SuiteCError):
    code = 500


class ExternalServiceError(SuiteCError):
    """The LMS (or another upstream) failed or answered with a non-success status."""

    code = 502
