"""Typed failures raised by the OAuth components.

Components raise these; only the HTTP-facing layer turns them into status
codes, headers and bodies.
"""


class AuthError(Exception):
    """Base class for bearer-token rejections (rendered as 401)."""

    error_code = "invalid_token"
    reason = "authentication failed"

    def __init__(self, message: str = None):
        self.message = message or self.reason
        super().__init__(self.message)


class MissingCredentials(AuthError):
    error_code = "invalid_request"
    reason = "missing credentials"


class MalformedCredentials(AuthError):
    error_code = "invalid_request"
    reason = "malformed credentials"


class InvalidToken(AuthError):
    reason = "invalid or expired token"


class UpstreamUnavailable(Exception):
    """The identity authority could not be reached or answered with a server error.

    Retryable by the client; never cached and never reported as an invalid token.
    """

    def __init__(self, message: str = "identity provider unavailable"):
        self.message = message
        super().__init__(message)


class TokenExchangeError(Exception):
    """The authority rejected an authorization-code exchange."""

    def __init__(self, error: str, description: str = ""):
        self.error = error
        self.description = description
        super().__init__(f"{error}: {description}" if description else error)
