"""Error kinds raised by the grant and token engine."""

from typing import Dict, Optional


class IdpError(Exception):
    """Base class, carries an OAuth style error code and an HTTP status."""

    error = "server_error"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidGrantType(IdpError):
    error = "unsupported_response_type"
    status_code = 400
    default_message = "Response type expected to be 'code' or 'token'"


class InvalidRedirect(IdpError):
    error = "invalid_request"
    status_code = 400
    default_message = "Redirect URI invalid"


class InvalidScope(IdpError):
    error = "invalid_scope"
    status_code = 400
    default_message = "Invalid scope"


class InvalidClient(IdpError):
    error = "invalid_client"
    status_code = 401
    default_message = "Wrong client id or client secret"


class InvalidCredentials(IdpError):
    error = "access_denied"
    status_code = 401
    default_message = "Wrong login or password"


class InvalidGrant(IdpError):
    error = "invalid_grant"
    status_code = 400
    default_message = "Invalid grant"


class NotFound(IdpError):
    error = "not_found"
    status_code = 404
    default_message = "Not found"


class StorageFault(IdpError):
    """Repository failure. The message never carries database detail."""


class ValidationError(IdpError):
    """Malformed request parameters, with one message per offending field."""

    error = "invalid_request"
    status_code = 400
    default_message = "Invalid request parameters"

    def __init__(self, field_errors: Dict[str, str], message: Optional[str] = None):
        self.field_errors = dict(field_errors)
        super().__init__(message)
