"""Error taxonomy shared by the WebSocket gateway and the HTTP fallback.

Every error carries a client-safe ``message`` and the HTTP ``status_code``
used when it surfaces through the fallback API. On the persistent channel
the message becomes the ``error`` field of a negative acknowledgement.
"""


class ChatGatewayError(Exception):
    """Base exception for chat gateway errors."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ValidationError(ChatGatewayError):
    """Raised when a request is missing required fields or has bad content."""
    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class AuthorizationError(ChatGatewayError):
    """Raised when a user may not join, read or post to a room."""
    def __init__(self, message: str = "not a member of this chapter"):
        super().__init__(message, status_code=403)


class TransientUpstreamError(ChatGatewayError):
    """Raised when the membership oracle is unreachable or answers badly.

    Callers never retry; they fold this into an authorization failure.
    """
    def __init__(self, message: str = "membership check failed"):
        super().__init__(message, status_code=502)


class NotFoundError(ChatGatewayError):
    """Raised when a message to delete does not exist."""
    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404)


class InternalError(ChatGatewayError):
    """Raised for unexpected store or registry failures."""
    def __init__(self, message: str = "internal error"):
        super().__init__(message, status_code=500)


class ConflictError(ChatGatewayError):
    """Raised when a message id in the room already belongs to another sender."""
    def __init__(self, message: str = "duplicate message id"):
        super().__init__(message, status_code=409)
