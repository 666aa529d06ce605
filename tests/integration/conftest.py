"""
In-process fake of the simulated trading platform served through
``httpx.MockTransport``.

The fake answers every endpoint the harness uses with the envelope shapes the
real services produce: wrapped ``{"success", "data"}`` envelopes for identity,
account and trading, a bare ``{"data": [...]}`` list for symbols and a bare
object for tickers.
"""

import json
import uuid
from typing import Dict, Optional, Set
from urllib.parse import urlparse

import httpx
import pytest

from simharness.config.settings import HarnessSettings
from simharness.integrations.http_client import DEFAULT_SERVICE_URLS, ServiceClientFactory

PORT_TO_SERVICE = {urlparse(url).port: name for name, url in DEFAULT_SERVICE_URLS.items()}


def wrapped(data, status_code=200):
    return httpx.Response(status_code, json={'success': True, 'data': data, 'message': 'OK', 'code': status_code})


class FakePlatform:
    """Request handler emulating the platform's HTTP services."""

    def __init__(self):
        self.users: Dict[str, dict] = {}
        self.tokens: Dict[str, str] = {}
        self.orders: Dict[str, dict] = {}
        self.unhealthy: Set[str] = set()
        self.unreachable: Set[str] = set()
        self.reject_orders_with: Optional[int] = None
        self.registration_status: Optional[int] = None
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        service = PORT_TO_SERVICE.get(request.url.port)
        if service in self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        method = request.method

        if path == "/health":
            return httpx.Response(503 if service in self.unhealthy else 200, json={'status': 'ok'})
        if path == "/auth/register" and method == "POST":
            return self._register(json.loads(request.content))
        if path == "/auth/login" and method == "POST":
            return self._login(json.loads(request.content))
        if path.startswith("/market/"):
            return self._market(path, request)

        user = self._authenticated_user(request)
        if user is None:
            return httpx.Response(401, json={'success': False, 'message': 'Unauthorized', 'code': 401})

        if path == "/auth/user":
            return wrapped({'userId': user['userId'], 'username': user['username'], 'email': user['email']})
        if path == "/account/balance":
            return wrapped([{'asset': 'USDT', 'free': 10000.0, 'locked': 0.0}])
        if path == "/order" and method == "POST":
            return self._create_order(user, json.loads(request.content))
        if path.startswith("/order/"):
            return self._order(method, path.rsplit("/", 1)[-1])
        return httpx.Response(404, json={'success': False, 'message': 'Not found'})

    def _register(self, body):
        if self.registration_status is not None:
            return httpx.Response(self.registration_status, text="Registration unavailable")
        if body['email'] in self.users:
            return httpx.Response(409, json={'success': False, 'message': 'User already exists'})

        user = {'userId': uuid.uuid4().hex, 'username': body['username'], 'email': body['email'],
                'password': body['password']}
        self.users[body['email']] = user
        return self._issue_token(user)

    def _login(self, body):
        user = self.users.get(body['email'])
        if user is None or user['password'] != body['password']:
            return httpx.Response(401, json={'success': False, 'message': 'Invalid credentials', 'code': 401})
        return self._issue_token(user)

    def _issue_token(self, user):
        token = uuid.uuid4().hex
        self.tokens[token] = user['email']
        return wrapped({'userId': user['userId'], 'username': user['username'], 'token': token,
                        'refreshToken': uuid.uuid4().hex})

    def _authenticated_user(self, request):
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return None
        email = self.tokens.get(header[len("Bearer "):])
        return self.users.get(email) if email else None

    def _market(self, path, request):
        if path == "/market/symbols":
            return httpx.Response(200, json={'data': [{'symbol': 'ETH-USDT'}, {'symbol': 'BTC-USDT'}]})
        if path == "/market/ticker":
            symbol = request.url.params.get("symbol")
            return httpx.Response(200, json={'symbol': symbol, 'lastPrice': 2500.0})
        if path == "/market/summary":
            return wrapped({'symbols': 2, 'volume24h': 1234.5})
        return httpx.Response(404)

    def _create_order(self, user, body):
        if self.reject_orders_with is not None:
            return httpx.Response(self.reject_orders_with, text="Insufficient balance")
        order_id = f"ord-{len(self.orders) + 1}"
        self.orders[order_id] = dict(body, id=order_id, userId=user['userId'], status='NEW')
        return wrapped(self.orders[order_id], status_code=201)

    def _order(self, method, order_id):
        order = self.orders.get(order_id)
        if order is None:
            return httpx.Response(404, json={'success': False, 'message': 'Order not found'})
        if method == "DELETE":
            order['status'] = 'CANCELED'
        return wrapped(order)


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def transport(platform):
    return httpx.MockTransport(platform)


@pytest.fixture
async def factory(transport):
    clients = ServiceClientFactory(transport=transport, timeout=5.0)
    yield clients
    await clients.aclose()


@pytest.fixture
def settings(tmp_path):
    return HarnessSettings(
        test_timeout_seconds=5.0,
        max_attempts=2,
        retry_backoff_seconds=0.0,
        virtual_users=3,
        orders_per_user=4,
        delay_max_ms=0.0,
        refresh_interval=0.05,
        log_dir=str(tmp_path / "logs"),
    )
