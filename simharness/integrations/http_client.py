"""
httpx-based clients for the simulated trading platform's services.

``ServiceClientFactory`` owns one ``httpx.AsyncClient`` per service plus one per
(user, service) pair carrying that user's bearer token, so virtual users never
share authorization state. ``ServiceClient`` wraps a client, translating httpx
exceptions into the :mod:`simharness.integrations.exceptions` hierarchy.
``ServiceConnectivityChecker`` probes ``GET /health`` on each service before a
run.
"""

import asyncio
import time
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import httpx
import structlog

from .exceptions import (
    EnvelopeParseError,
    HTTPClientError,
    HTTPResponseError,
    ServiceConnectionError,
    ServiceTimeoutError,
    ServiceUnavailableError,
)

logger = structlog.get_logger(__name__)

SERVICE_NAMES: Tuple[str, ...] = (
    "identity",
    "trading",
    "market-data",
    "account",
    "risk",
    "notification",
    "match-making",
)

DEFAULT_SERVICE_URLS: Dict[str, str] = {
    "identity": "http://localhost:5001",
    "trading": "http://localhost:5002",
    "market-data": "http://localhost:5003",
    "account": "http://localhost:5004",
    "risk": "http://localhost:5005",
    "notification": "http://localhost:5006",
    "match-making": "http://localhost:5007",
}

JSON_HEADERS = {"Accept": "application/json", "Content-Type": "application/json"}


class ServiceClient:
    """
    Thin async wrapper over one ``httpx.AsyncClient`` bound to a service.

    Example:
        response = await client.post("/order", json=payload)
        body = await client.request_json("GET", "/market/symbols")
    """

    def __init__(self, service_name: str, client: httpx.AsyncClient):
        self.service_name = service_name
        self.client = client

    @property
    def base_url(self) -> str:
        return str(self.client.base_url)

    def set_token(self, token: Optional[str]) -> None:
        if token:
            self.client.headers["Authorization"] = f"Bearer {token}"
        else:
            self.client.headers.pop("Authorization", None)

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """
        Issue a request and return the raw response, whatever its status.

        Raises:
            ServiceConnectionError: The service could not be reached
            ServiceTimeoutError: The client timeout expired
            HTTPClientError: Any other transport failure
        """
        operation = f"{method.upper()} {path}"
        start_time = time.perf_counter()
        try:
            response = await self.client.request(method.upper(), path, json=json, params=params)
        except httpx.TimeoutException as e:
            raise ServiceTimeoutError(
                f"Request timeout to {self.service_name}",
                service_name=self.service_name,
                operation=operation,
                url=self._url(path),
                timeout=self.client.timeout.read,
            ) from e
        except httpx.ConnectError as e:
            raise ServiceConnectionError(
                f"Connection failed to {self.service_name}",
                service_name=self.service_name,
                operation=operation,
                url=self._url(path),
            ) from e
        except httpx.HTTPError as e:
            raise HTTPClientError(
                f"HTTP client error: {e}",
                service_name=self.service_name,
                operation=operation,
                url=self._url(path),
            ) from e

        logger.debug(
            "HTTP request completed",
            service=self.service_name,
            operation=operation,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
        return response

    async def request_json(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Issue a request and decode its JSON body.

        Raises:
            HTTPResponseError: For non-2xx responses
            EnvelopeParseError: When the body is not JSON
        """
        response = await self.request(method, path, json=json, params=params)
        operation = f"{method.upper()} {path}"
        if not response.is_success:
            raise HTTPResponseError(
                f"HTTP error {response.status_code} from {self.service_name}",
                service_name=self.service_name,
                operation=operation,
                url=self._url(path),
                status_code=response.status_code,
                response_text=response.text,
            )
        try:
            return response.json()
        except ValueError as e:
            raise EnvelopeParseError(
                f"Response body is not JSON: {e}",
                service_name=self.service_name,
                operation=operation,
            ) from e

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", path, **kwargs)

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


class ServiceClientFactory:
    """
    Creates and caches service clients.

    Args:
        service_urls: Base URL per service name
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (``httpx.MockTransport`` in tests)
        max_connections: Connection pool ceiling per client
    """

    def __init__(
        self,
        service_urls: Optional[Mapping[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_connections: int = 100,
    ):
        self.service_urls = dict(DEFAULT_SERVICE_URLS if service_urls is None else service_urls)
        self.timeout = httpx.Timeout(timeout)
        self.limits = httpx.Limits(max_connections=max_connections)
        self.transport = transport
        self._clients: Dict[str, ServiceClient] = {}
        self._user_clients: Dict[Tuple[str, str], ServiceClient] = {}
        self._user_tokens: Dict[str, str] = {}

    def _build(self, service_name: str, token: Optional[str] = None) -> ServiceClient:
        try:
            base_url = self.service_urls[service_name]
        except KeyError:
            raise KeyError(f"No URL configured for service '{service_name}'") from None

        headers = dict(JSON_HEADERS)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=self.timeout,
            limits=self.limits,
            transport=self.transport,
        )
        return ServiceClient(service_name, client)

    def service(self, service_name: str) -> ServiceClient:
        """Shared, unauthenticated client for a service."""
        if service_name not in self._clients:
            self._clients[service_name] = self._build(service_name)
        return self._clients[service_name]

    def for_user(self, user_id: str, service_name: str) -> ServiceClient:
        """Client for one user, authenticated with the user's current token."""
        key = (user_id, service_name)
        if key not in self._user_clients:
            self._user_clients[key] = self._build(service_name, self._user_tokens.get(user_id))
        return self._user_clients[key]

    def set_user_token(self, user_id: str, token: str) -> None:
        """Store a user's token and apply it to that user's existing clients."""
        self._user_tokens[user_id] = token
        for (owner, _), client in self._user_clients.items():
            if owner == user_id:
                client.set_token(token)

    def user_token(self, user_id: str) -> Optional[str]:
        return self._user_tokens.get(user_id)

    async def aclose(self) -> None:
        clients = list(self._clients.values()) + list(self._user_clients.values())
        self._clients.clear()
        self._user_clients.clear()
        await asyncio.gather(*(client.client.aclose() for client in clients))
        logger.debug("Service clients closed", clients=len(clients))

    async def __aenter__(self) -> "ServiceClientFactory":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class ServiceConnectivityChecker:
    """
    Probes ``GET /health`` on each configured service.

    Services listed in ``unprobed`` are reported available without a request;
    the match-making engine exposes no health endpoint.
    """

    def __init__(self, factory: ServiceClientFactory, unprobed: Iterable[str] = ("match-making",)):
        self.factory = factory
        self.unprobed = frozenset(unprobed)

    async def check(self, service_name: str) -> bool:
        if service_name in self.unprobed:
            return True
        try:
            response = await self.factory.service(service_name).get("/health")
        except HTTPClientError as e:
            logger.warning("Service health probe failed", service=service_name, error=str(e))
            return False

        if not response.is_success:
            logger.warning(
                "Service reported unhealthy",
                service=service_name,
                status_code=response.status_code,
            )
            return False
        return True

    async def check_all(self, services: Optional[Iterable[str]] = None) -> Dict[str, bool]:
        names = list(services or self.factory.service_urls)
        results = await asyncio.gather(*(self.check(name) for name in names))
        status = dict(zip(names, results))
        logger.info(
            "Service connectivity checked",
            available=[name for name, ok in status.items() if ok],
            unavailable=[name for name, ok in status.items() if not ok],
        )
        return status

    async def require(self, services: Iterable[str]) -> Dict[str, bool]:
        """
        Check the given services and fail when any is unavailable.

        Raises:
            ServiceUnavailableError: Listing every unavailable service
        """
        status = await self.check_all(services)
        unavailable = [name for name, ok in status.items() if not ok]
        if unavailable:
            raise ServiceUnavailableError(unavailable)
        return status
