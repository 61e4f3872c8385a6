"""Error types and status normalization for SkyProxy."""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    """Client-facing error types.

    These are the only values allowed in the ``error.type`` field of a
    JSON error response.
    """
    INVALID_REQUEST = "invalid_request_error"
    API_ERROR = "api_error"
    RATE_LIMIT = "rate_limit_error"

    @classmethod
    def from_http_status(cls, status_code: int) -> "ErrorType":
        """Map HTTP status code to error type."""
        if status_code == 429:
            return cls.RATE_LIMIT
        elif status_code in (400, 404, 413):
            return cls.INVALID_REQUEST
        else:
            return cls.API_ERROR


class UpstreamStatus(str, Enum):
    """Normalized upstream status codes for metrics.

    Upstream status codes are normalized to reduce Prometheus cardinality.
    Actual status codes are preserved in logs and response bodies.
    """
    OK = "200"

    BAD_REQUEST = "400"
    UNAUTHORIZED = "401"
    FORBIDDEN = "403"
    NOT_FOUND = "404"
    TOO_MANY_REQUESTS = "429"
    CLIENT_ERROR_OTHER = "4xx"

    INTERNAL_SERVER_ERROR = "500"
    BAD_GATEWAY = "502"
    SERVICE_UNAVAILABLE = "503"
    GATEWAY_TIMEOUT = "504"
    SERVER_ERROR_OTHER = "5xx"

    NETWORK_ERROR = "network_error"

    @classmethod
    def normalize(cls, status_code: Optional[int]) -> str:
        """Normalize HTTP status code to enum value.

        Args:
            status_code: HTTP status code or None for network failures

        Returns:
            Normalized status string for metrics
        """
        if status_code is None:
            return cls.NETWORK_ERROR.value

        exact = {
            200: cls.OK,
            400: cls.BAD_REQUEST,
            401: cls.UNAUTHORIZED,
            403: cls.FORBIDDEN,
            404: cls.NOT_FOUND,
            429: cls.TOO_MANY_REQUESTS,
            500: cls.INTERNAL_SERVER_ERROR,
            502: cls.BAD_GATEWAY,
            503: cls.SERVICE_UNAVAILABLE,
            504: cls.GATEWAY_TIMEOUT,
        }
        if status_code in exact:
            return exact[status_code].value
        if 400 <= status_code < 500:
            return cls.CLIENT_ERROR_OTHER.value
        if 500 <= status_code < 600:
            return cls.SERVER_ERROR_OTHER.value
        return cls.OK.value


class ProxyError(Exception):
    """Base error for everything the proxy reports to a client."""

    status_code: int = 500
    error_type: ErrorType = ErrorType.API_ERROR
    code: Optional[str] = None

    def __init__(
        self,
        message: str,
        error_type: Optional[ErrorType] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if error_type is not None:
            self.error_type = ErrorType(error_type)
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code

    @property
    def client_status(self) -> int:
        """HTTP status to send to the client."""
        return self.status_code

    def to_payload(self) -> Dict[str, Any]:
        """Render the error in the OpenAI-compatible error shape."""
        error: Dict[str, Any] = {
            "message": self.message,
            "type": self.error_type.value,
            "param": None,
        }
        if self.code:
            error["code"] = self.code
        return {"error": error}


class InvalidRequestError(ProxyError):
    """Malformed JSON or missing required request fields."""

    status_code = 400
    error_type = ErrorType.INVALID_REQUEST


class RequestTooLargeError(ProxyError):
    """Request body exceeded the configured size limit."""

    status_code = 413
    error_type = ErrorType.INVALID_REQUEST
    code = "request_too_large"

    def __init__(self, max_bytes: int):
        super().__init__(f"Request body too large (max {max_bytes} bytes)")
        self.max_bytes = max_bytes


class RoutingError(ProxyError):
    """Model alias could not be resolved to a provider.

    ``invalid_request_error`` means the client asked for something unknown;
    ``api_error`` means the routing table points at a provider that does
    not exist (deployment misconfiguration).
    """

    def __init__(self, message: str, error_type: ErrorType = ErrorType.INVALID_REQUEST):
        error_type = ErrorType(error_type)
        status = 400 if error_type == ErrorType.INVALID_REQUEST else 500
        super().__init__(message, error_type=error_type, status_code=status)


class ConfigurationError(ProxyError):
    """Invalid configuration or missing provider credential."""

    status_code = 500
    error_type = ErrorType.API_ERROR
    code = "config_error"

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(message)
        self.config_key = config_key


class SerializationError(ProxyError):
    """A request or response failed to round-trip through JSON."""

    status_code = 500
    error_type = ErrorType.API_ERROR
    code = "serialization_error"


class UpstreamError(ProxyError):
    """Upstream provider failed.

    ``status_code`` is the status observed from the provider (504 for
    timeouts) or None when the request never got a response.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: bytes = b"",
        code: Optional[str] = None,
    ):
        if code is None:
            if status_code is None:
                code = "upstream_unreachable"
            elif status_code == 504:
                code = "upstream_timeout"
            else:
                code = "upstream_error"
        super().__init__(message, code=code)
        self.status_code = status_code  # type: ignore[assignment]
        self.body = body
        self.error_type = (
            ErrorType.RATE_LIMIT if status_code == 429 else ErrorType.API_ERROR
        )

    @property
    def client_status(self) -> int:
        if self.status_code is None:
            return 502
        return self.status_code
