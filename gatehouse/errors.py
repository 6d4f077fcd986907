"""Error taxonomy shared by services and routes.

Services raise these; the application installs a single handler that renders
them with the matching HTTP status. Messages are safe to show to callers.
"""


class GatehouseError(Exception):
    """Base exception for Gatehouse errors"""

    status_code = 500

    def __init__(self, message: str = "Internal error"):
        super().__init__(message)
        self.message = message


class NotFoundError(GatehouseError):
    """Entity absent or soft-deleted"""

    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class ConflictError(GatehouseError):
    """Uniqueness violation or state conflict"""

    status_code = 409

    def __init__(self, message: str = "Conflict"):
        super().__init__(message)


class UnauthorizedError(GatehouseError):
    """Bad credentials, bad token, locked account or invalid 2FA code"""

    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class InvalidTokenError(UnauthorizedError):
    """Token signature, type or revocation check failed"""

    def __init__(self, message: str = "Invalid token"):
        super().__init__(message)


class TokenExpiredError(UnauthorizedError):
    """Token was well-formed but is past its expiry"""

    def __init__(self, message: str = "Token has expired"):
        super().__init__(message)


class AccountLockedError(UnauthorizedError):
    """Account is temporarily locked after repeated failures"""

    def __init__(self, message: str = "Account is locked due to multiple failed login attempts"):
        super().__init__(message)


class ForbiddenError(GatehouseError):
    """Authenticated but not allowed"""

    status_code = 403

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message)


class InvalidInputError(GatehouseError):
    """Malformed or no-longer-usable input"""

    status_code = 400

    def __init__(self, message: str = "Invalid input"):
        super().__init__(message)


class ServiceUnavailableError(GatehouseError):
    """A backing service needed to answer safely is down"""

    status_code = 503

    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__(message)
