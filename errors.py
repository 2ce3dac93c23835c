"""
Domain errors raised by the settlement modules.

Route handlers in main.py translate these into HTTP responses; nothing in
the domain modules knows about FastAPI.
"""


class MarketplaceError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    """Rejected input: empty cart, bad quantity, illegal transition, ..."""
    status_code = 400


class PermissionDenied(MarketplaceError):
    status_code = 403


class NotFound(MarketplaceError):
    status_code = 404


class ConfigurationError(MarketplaceError):
    """Settings that would make later computations meaningless."""
    status_code = 400


class InvalidSignature(MarketplaceError):
    status_code = 400
