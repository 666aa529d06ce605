"""
Provisioning of simulated users against the identity service.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from .envelopes import get_field, parse_envelope
from .exceptions import HTTPResponseError, IntegrationError, ProvisioningError
from .http_client import ServiceClientFactory

logger = structlog.get_logger(__name__)

IDENTITY_SERVICE = "identity"
TOKEN_KEYS = ("userId", "token")


@dataclass(frozen=True)
class UserCredential:
    """Registered user with the token used for authenticated calls."""

    user_id: str
    username: str
    email: str
    password: str
    token: str
    refresh_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        # Secrets stay out of reports
        return {'user_id': self.user_id, 'username': self.username, 'email': self.email}


def generate_identity() -> Tuple[str, str, str]:
    """Return ``(username, email, password)`` for a fresh simulated user."""
    username = f"testuser_{uuid.uuid4().hex[:8]}"
    return username, f"{username}@example.com", f"Password1!{uuid.uuid4().hex[:8]}"


class UserProvisioner:
    """
    Registers simulated users, logging in instead when the account exists.

    Tokens are applied to ``factory`` so per-user clients are authenticated.

    Args:
        factory: Client factory for the identity service and per-user clients
        concurrency: Maximum registrations in flight
        identity_factory: Produces ``(username, email, password)`` tuples
    """

    def __init__(
        self,
        factory: ServiceClientFactory,
        concurrency: int = 10,
        identity_factory: Callable[[], Tuple[str, str, str]] = generate_identity,
    ):
        self.factory = factory
        self.concurrency = max(1, concurrency)
        self.identity_factory = identity_factory

    async def register(
        self,
        username: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> UserCredential:
        """
        Register one user.

        Raises:
            HTTPResponseError: Registration rejected for a reason other than a duplicate
            EnvelopeParseError: The response carried no user id and token
        """
        if username is None or email is None or password is None:
            username, email, password = self.identity_factory()

        client = self.factory.service(IDENTITY_SERVICE)
        response = await client.post(
            "/auth/register",
            json={'username': username, 'email': email, 'password': password},
        )

        if not response.is_success:
            if "already exists" in response.text:
                logger.info("User already exists, logging in", username=username)
                return await self.login(email, password, username=username)
            raise HTTPResponseError(
                f"Registration rejected with HTTP {response.status_code}",
                service_name=IDENTITY_SERVICE,
                operation="POST /auth/register",
                status_code=response.status_code,
                response_text=response.text,
            )

        return self._credential_from(response.content, username, email, password, "POST /auth/register")

    async def login(self, email: str, password: str, username: Optional[str] = None) -> UserCredential:
        client = self.factory.service(IDENTITY_SERVICE)
        response = await client.post("/auth/login", json={'email': email, 'password': password})
        if not response.is_success:
            raise HTTPResponseError(
                f"Login rejected with HTTP {response.status_code}",
                service_name=IDENTITY_SERVICE,
                operation="POST /auth/login",
                status_code=response.status_code,
                response_text=response.text,
            )
        return self._credential_from(response.content, username or email.split("@")[0], email, password, "POST /auth/login")

    def _credential_from(
        self,
        body: bytes,
        username: str,
        email: str,
        password: str,
        operation: str,
    ) -> UserCredential:
        result = parse_envelope(body, TOKEN_KEYS)
        if not result.ok:
            raise ProvisioningError(
                f"No user id and token in response: {result.error}",
                requested=1,
                error_context={'operation': operation, 'username': username},
            )

        payload = result.payload
        credential = UserCredential(
            user_id=str(get_field(payload, "userId")),
            username=get_field(payload, "username") or username,
            email=email,
            password=password,
            token=str(get_field(payload, "token")),
            refresh_token=get_field(payload, "refreshToken"),
        )
        self.factory.set_user_token(credential.user_id, credential.token)
        return credential

    async def provision(self, count: int) -> List[UserCredential]:
        """
        Register ``count`` users concurrently.

        Individual failures are logged and skipped.

        Raises:
            ProvisioningError: When not a single user could be provisioned
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def provision_one(index: int) -> Optional[UserCredential]:
            async with semaphore:
                try:
                    return await self.register()
                except IntegrationError as e:
                    logger.warning("User provisioning failed", index=index, error=str(e))
                    return None

        results = await asyncio.gather(*(provision_one(index) for index in range(count)))
        users = [user for user in results if user is not None]

        logger.info("Users provisioned", requested=count, provisioned=len(users), failed=count - len(users))
        if count and not users:
            raise ProvisioningError("No users could be provisioned", requested=count, provisioned=0)
        return users
