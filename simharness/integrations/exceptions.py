"""
Exception hierarchy for calls against the simulated trading platform.

httpx failures are translated into these types at the client boundary so the
rest of the harness never handles transport-library exceptions directly.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Union


class IntegrationError(Exception):
    """
    Base exception for failures talking to a platform service.

    Attributes:
        service_name: Logical service name (``identity``, ``trading`` ...)
        operation: Operation being performed, e.g. ``POST /order``
        error_code: HTTP status or service error code
        error_context: Extra structured context
        timestamp: When the error was raised
    """

    def __init__(
        self,
        message: str,
        service_name: str,
        operation: str,
        error_code: Optional[Union[str, int]] = None,
        error_context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.service_name = service_name
        self.operation = operation
        self.error_code = error_code
        self.error_context = error_context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error_type': self.__class__.__name__,
            'message': super().__str__(),
            'service_name': self.service_name,
            'operation': self.operation,
            'error_code': self.error_code,
            'error_context': self.error_context,
            'timestamp': self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        base_msg = super().__str__()
        context_parts = [f"service={self.service_name}", f"operation={self.operation}"]
        if self.error_code:
            context_parts.append(f"code={self.error_code}")
        return f"{base_msg} ({', '.join(context_parts)})"


class HTTPClientError(IntegrationError):
    """Transport-level failure issuing an HTTP request."""

    def __init__(
        self,
        message: str,
        service_name: str,
        operation: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs: Any
    ):
        super().__init__(message, service_name, operation, error_code=status_code, **kwargs)
        self.url = url
        self.status_code = status_code
        self.error_context.setdefault('url', url)


class ServiceConnectionError(HTTPClientError):
    """The service could not be reached."""


class ServiceTimeoutError(HTTPClientError):
    """The request exceeded the client timeout."""

    def __init__(self, message: str, service_name: str, operation: str, timeout: Optional[float] = None, **kwargs: Any):
        super().__init__(message, service_name, operation, **kwargs)
        self.timeout = timeout
        self.error_context['timeout'] = timeout


class HTTPResponseError(HTTPClientError):
    """The service answered with a non-success status."""

    def __init__(self, message: str, service_name: str, operation: str, response_text: str = "", **kwargs: Any):
        super().__init__(message, service_name, operation, **kwargs)
        self.response_text = response_text
        self.error_context['response_text'] = response_text[:500]


class EnvelopeParseError(IntegrationError):
    """No parse strategy accepted a response body."""

    def __init__(self, message: str, service_name: str = "unknown", operation: str = "parse", **kwargs: Any):
        super().__init__(message, service_name, operation, **kwargs)


class ProvisioningError(IntegrationError):
    """Simulated users could not be registered or logged in."""

    def __init__(self, message: str, requested: int = 0, provisioned: int = 0, **kwargs: Any):
        super().__init__(message, service_name="identity", operation="provision", **kwargs)
        self.requested = requested
        self.provisioned = provisioned
        self.error_context.update({'requested': requested, 'provisioned': provisioned})


class ServiceUnavailableError(IntegrationError):
    """Required services failed their health probe."""

    def __init__(self, services: Iterable[str]):
        self.services = sorted(services)
        super().__init__(
            f"Required services unavailable: {', '.join(self.services)}",
            service_name=",".join(self.services),
            operation="GET /health",
        )
