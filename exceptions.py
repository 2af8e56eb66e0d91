"""Exceptions raised across the OAuth, protocol and calendar layers."""


class OAuthError(Exception):
    """Base class for errors rendered as RFC 6749 error responses."""

    error = "server_error"
    status_code = 400

    def __init__(self, description: str = "", headers: dict = None):
        self.description = description
        self.headers = headers or {}
        super().__init__(description or self.error)

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequest(OAuthError):
    error = "invalid_request"


class InvalidClient(OAuthError):
    error = "invalid_client"
    status_code = 401


class UnknownClient(InvalidClient):
    """Raised when a client_id is not in the registry."""

    status_code = 400

    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Unknown client_id: {client_id}")


class InvalidGrant(OAuthError):
    error = "invalid_grant"


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"


class UnsupportedResponseType(OAuthError):
    error = "unsupported_response_type"


class InvalidClientMetadata(OAuthError):
    error = "invalid_client_metadata"


class TokenInvalid(Exception):
    """Raised when a bearer token is missing, unknown or expired."""

    pass


class McpError(Exception):
    """Protocol-level failure carrying a JSON-RPC error code."""

    code = -32603

    def __init__(self, message: str, code: int = None):
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(message)


class InvalidEnvelope(McpError):
    code = -32600


class UnknownMethod(McpError):
    code = -32601

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Unknown MCP method: {method}")


class InvalidParams(McpError):
    code = -32602


class PromptNotFound(InvalidParams):
    def __init__(self, name: str = None):
        self.name = name
        super().__init__("Prompt not found")


class ToolValidationError(Exception):
    """Raised when tool arguments fail validation, before any calendar call."""

    pass


class CalendarError(Exception):
    """Base exception for calendar adapter failures."""

    pass


class CalendarNotAuthorized(CalendarError):
    """Raised when the user has no stored calendar authorization."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("Google Calendar is not connected for this user.")


class CalendarAuthExpired(CalendarError):
    def __init__(self, message: str = "Authentication expired. Please re-authenticate."):
        super().__init__(message)


class EventNotFound(CalendarError):
    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__("Event not found. It may have been cancelled or deleted.")
