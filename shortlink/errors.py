"""Exception taxonomy for the shortlink service.

Resolution outcomes (not found, banned, password required, expired) are plain
values returned by the resolver, never exceptions. The classes here cover the
management API and infrastructure failures; each one carries the HTTP status
and the public message rendered by the exception handler in ``shortlink.main``.
"""

__all__ = [
    "AddressConflictError",
    "AuthenticationError",
    "BannedError",
    "GenerationExhaustedError",
    "NotFoundError",
    "PasswordMismatchError",
    "PermissionDeniedError",
    "RateLimitedError",
    "ShortlinkError",
    "StoreUnavailableError",
    "ValidationFailedError",
]


class ShortlinkError(Exception):
    status_code: int = 400
    default_message: str = "Request could not be processed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFoundError(ShortlinkError):
    status_code = 404
    default_message = "Link could not be found."


class BannedError(ShortlinkError):
    status_code = 403
    default_message = "This resource has been banned."


class PasswordMismatchError(ShortlinkError):
    status_code = 401
    default_message = "Password is not correct."


class RateLimitedError(ShortlinkError):
    status_code = 429
    default_message = "You have reached the limit. Please wait and try again."


class AddressConflictError(ShortlinkError):
    status_code = 409
    default_message = "Custom address is already in use."


class GenerationExhaustedError(ShortlinkError):
    """No free short code found within the retry budget."""

    status_code = 500
    default_message = "Could not allocate a short address. Please try again later."


class AuthenticationError(ShortlinkError):
    status_code = 401
    default_message = "Authentication is required."


class PermissionDeniedError(ShortlinkError):
    status_code = 403
    default_message = "You are not allowed to do this."


class ValidationFailedError(ShortlinkError):
    status_code = 400


class StoreUnavailableError(ShortlinkError):
    status_code = 503
    default_message = "Service is temporarily unavailable."
