"""Authentication failures. Messages are deliberately generic."""

INVALID_TOKEN_MESSAGE = "Invalid or expired token"
AUTH_FAILED_MESSAGE = "Authentication failed"


class AuthenticationError(Exception):
    """Bad credentials, unusable token, or a failed credential lookup."""

    def __init__(self, message: str = AUTH_FAILED_MESSAGE):
        super().__init__(message)
        self.message = message
