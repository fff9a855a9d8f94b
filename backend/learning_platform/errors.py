"""Error taxonomy shared by repositories, services and the HTTP layer.

Every failure raised by a manager is one of the classes below. Each error
carries a `kind` (its class name) and a human readable `message`; the
`status_code` attribute is the only HTTP-specific knowledge encoded here and
is used by the exception handlers registered in `main`.
"""


class PlatformError(Exception):
    """Base exception for all platform errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(PlatformError):
    """Raised when input is malformed or a required field is missing."""

    status_code = 400


class NotFoundError(PlatformError):
    """Raised when a referenced entity id does not exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        """Initialize the exception.

        Args:
            entity: Human readable entity name, e.g. ``"Student"``.
            entity_id: The id that could not be resolved.
        """
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class ConflictError(PlatformError):
    """Raised on uniqueness violations (duplicate e-mail, duplicate grant)."""

    status_code = 409


class InternalError(PlatformError):
    """Raised on unexpected persistence failures or invariant violations."""

    status_code = 500


class AuthenticationError(PlatformError):
    """Raised when credentials or a bearer token cannot be verified."""

    status_code = 401


class AccessDeniedError(PlatformError):
    """Raised by the access policy when a student may not act on a resource."""

    status_code = 403


class RateLimitedError(PlatformError):
    """Raised when a client exceeds the authentication attempt budget."""

    status_code = 429

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(f"too many attempts; retry after {retry_after}s")
