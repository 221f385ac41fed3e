"""
Error taxonomy shared by the gateways, the workflows and the HTTP layer.

Each error carries the HTTP status it is reported with; the FastAPI handlers
in main.py turn any of them into a `{"message", "status": "failed"}` body.
"""


class PortalError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthError(PortalError):
    """Bad credentials, unknown token or expired session."""
    status_code = 401


class Forbidden(AuthError):
    """Signed in, but not allowed to touch this record."""
    status_code = 403


class ValidationError(PortalError):
    """Missing or malformed input, detected before any store call."""
    status_code = 422


class NotFound(PortalError):
    status_code = 404


class InvalidTransition(PortalError):
    status_code = 409

    def __init__(self, kind: str, current: str, requested: str):
        super().__init__(f"Cannot move {kind} from '{current}' to '{requested}'")
        self.kind = kind
        self.current = current
        self.requested = requested


class StoreUnavailable(PortalError):
    status_code = 503


class AIUnavailable(PortalError):
    status_code = 503
