"""
Error taxonomy for Bot Builder.
Every error that can cross the relay boundary derives from BotBuilderError
and carries the HTTP status the relay should answer with.
"""
from typing import Any, Dict, List, Optional


class BotBuilderError(Exception):
    """Base class for all domain errors."""

    http_status = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(BotBuilderError):
    """Bad caller input. Never retried."""

    http_status = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field_errors: Optional[List[str]] = None):
        super().__init__(message, {"fields": field_errors} if field_errors else None)
        self.field_errors = field_errors or []


class AuthenticationError(BotBuilderError):
    """Bad or missing credentials. Never retried, surfaced verbatim."""

    http_status = 401
    code = "UNAUTHORIZED"


class RequestTimeoutError(BotBuilderError):
    """A single attempt was cancelled by its deadline."""

    http_status = 504
    code = "TIMEOUT"

    def __init__(self, url: str, timeout: float):
        super().__init__(f"Request to {url} timed out after {timeout:g}s")
        self.url = url
        self.timeout = timeout


class ExhaustedRetriesError(BotBuilderError):
    """All attempts failed with transport errors or timeouts."""

    http_status = 504
    code = "RETRIES_EXHAUSTED"

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        super().__init__(f"Request failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class NonRetriableHttpError(BotBuilderError):
    """A terminal status code with no further attempts."""

    code = "HTTP_ERROR"

    def __init__(self, status: int, message: str):
        super().__init__(message, {"status": status})
        self.status = status
        self.http_status = status if 400 <= status < 600 else 502


class ServiceUnavailableError(BotBuilderError):
    """502/503/504 class failure from an upstream service."""

    http_status = 503
    code = "SERVICE_UNAVAILABLE"

    def __init__(self, status: int, message: str):
        super().__init__(message, {"status": status})
        self.status = status


class MalformedResponseError(BotBuilderError):
    """Upstream answered with a non-JSON body or an HTML error page."""

    http_status = 502
    code = "MALFORMED_RESPONSE"

    def __init__(self, message: str, excerpt: str = "", status: Optional[int] = None):
        super().__init__(message, {"excerpt": excerpt, "status": status})
        self.excerpt = excerpt
        self.status = status


class ProvisioningError(BotBuilderError):
    """The panel refused or failed to create a resource."""

    code = "PROVISIONING_FAILED"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, {"status": status} if status else None)
        self.status = status


class AccountExistsError(BotBuilderError):
    http_status = 409
    code = "ACCOUNT_EXISTS"


class TerminalRemoteStateError(BotBuilderError):
    """The provisioned server reached a suspended or error state."""

    http_status = 409
    code = "SERVER_FAILED"

    def __init__(self, server_id: str, status: str):
        super().__init__(
            f"Server installation failed with status: {status}. "
            "Check the server in the hosting panel or deploy a new one."
        )
        self.server_id = server_id
        self.status = status


class InstallationTimeoutError(BotBuilderError):
    http_status = 504
    code = "INSTALLATION_TIMEOUT"


class StatusCheckFailedError(BotBuilderError):
    """Status polling failed too many times in a row."""

    http_status = 502
    code = "STATUS_CHECK_FAILED"

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Failed to check server status after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class ServerNotReadyError(BotBuilderError):
    http_status = 409
    code = "SERVER_NOT_READY"


class ChatCompletionError(BotBuilderError):
    http_status = 502
    code = "CHAT_FAILED"


class ContextTooLongError(ChatCompletionError):
    http_status = 400
    code = "CONTEXT_TOO_LONG"


class RateLimitedError(ChatCompletionError):
    http_status = 429
    code = "RATE_LIMITED"


class InvalidChatRequestError(ChatCompletionError):
    http_status = 400
    code = "INVALID_REQUEST"


class AccountError(BotBuilderError):
    http_status = 400
    code = "ACCOUNT_ERROR"


class UserNotFoundError(AccountError):
    http_status = 404
    code = "USER_NOT_FOUND"


class ProjectNotFoundError(AccountError):
    http_status = 404
    code = "PROJECT_NOT_FOUND"


class ProjectLimitError(AccountError):
    http_status = 403
    code = "PROJECT_LIMIT"


class InsufficientTokensError(AccountError):
    http_status = 403
    code = "INSUFFICIENT_TOKENS"


class BalanceConflictError(AccountError):
    http_status = 409
    code = "BALANCE_CONFLICT"


class DeploymentNotFoundError(BotBuilderError):
    http_status = 404
    code = "DEPLOYMENT_NOT_FOUND"
