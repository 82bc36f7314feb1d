"""Shared fixtures: simulated remote services and an in-memory order store."""

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

import httpx
import pytest

from app.clients import PaymentGatewayClient, ShipmentRequestClient
from app.config import OrdersSettings
from app.fetcher import HttpResourceFetcher
from app.models import CustomerOrder
from app.orchestrator import OrderAssemblyOrchestrator
from app.pool import BoundedTaskPool

ADDRESS_URI = "http://user/addresses/a1"
CUSTOMER_URI = "http://user/customers/c1"
CARD_URI = "http://user/cards/k1"
ITEMS_URI = "http://carts/carts/c1/items"
PAYMENT_URI = "http://payment/paymentAuth"
SHIPPING_URI = "http://shipping/shipping"


def hal(entity: dict, href: str) -> dict:
    return {**entity, "_links": {"self": {"href": href}}}


ADDRESS = {
    "id": "a1",
    "number": "1",
    "street": "Main Street",
    "city": "Springfield",
    "postcode": "12345",
    "country": "US",
}
CUSTOMER = {"id": "c1", "firstName": "Ada", "lastName": "Lovelace", "username": "ada"}
CARD = {"id": "k1", "longNum": "4111111111111111", "expires": "12/30", "ccv": "123"}
ITEMS = [
    {"id": "i1", "itemId": "sock-1", "quantity": 2, "unitPrice": "9.99"},
    {"id": "i2", "itemId": "sock-2", "quantity": 1, "unitPrice": "15.00"},
]
PAYMENT_OK = {"authorised": True, "message": "Payment authorised"}


def echo_shipment(request: httpx.Request) -> httpx.Response:
    return httpx.Response(201, json=json.loads(request.content))


@dataclass
class Route:
    respond: Callable[[httpx.Request], httpx.Response]
    delay: float = 0.0


class FakeServices:
    """Routes (method, url) to canned responses and records every call."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Route] = {}
        self.requests: list[httpx.Request] = []
        self.completed: list[str] = []

    def on(
        self,
        method: str,
        url: str,
        *,
        status: int = 200,
        json_body: object = None,
        content: bytes | None = None,
        respond: Callable[[httpx.Request], httpx.Response] | None = None,
        delay: float = 0.0,
    ) -> None:
        if respond is None:
            if content is not None:
                respond = lambda request: httpx.Response(status, content=content)  # noqa: E731
            else:
                respond = lambda request: httpx.Response(status, json=json_body)  # noqa: E731
        self.routes[(method, url)] = Route(respond=respond, delay=delay)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, str(request.url)))
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        if route.delay:
            await asyncio.sleep(route.delay)
        response = route.respond(request)
        self.completed.append(str(request.url))
        return response

    def calls_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def default_services() -> FakeServices:
    services = FakeServices()
    services.on("GET", ADDRESS_URI, json_body=hal(ADDRESS, ADDRESS_URI))
    services.on("GET", CUSTOMER_URI, json_body=hal(CUSTOMER, CUSTOMER_URI))
    services.on("GET", CARD_URI, json_body=hal(CARD, CARD_URI))
    services.on("GET", ITEMS_URI, json_body=ITEMS)
    services.on("POST", PAYMENT_URI, json_body=PAYMENT_OK)
    services.on("POST", SHIPPING_URI, respond=echo_shipment)
    return services


class RecordingOrderStore:
    """Dict-backed order store that records every save."""

    def __init__(self) -> None:
        self.orders: dict[str, CustomerOrder] = {}
        self.saved: list[CustomerOrder] = []
        self._next_id = 0

    async def save(self, order: CustomerOrder) -> CustomerOrder:
        self._next_id += 1
        stored = order.model_copy(update={"id": order.id or f"order-{self._next_id}"})
        self.orders[stored.id] = stored
        self.saved.append(stored)
        return stored

    async def find_by_id(self, order_id: str) -> CustomerOrder | None:
        return self.orders.get(order_id)

    async def find_by_customer_id(self, customer_id: str) -> list[CustomerOrder]:
        return [o for o in self.orders.values() if o.customer_id == customer_id]

    async def find_all(self) -> list[CustomerOrder]:
        return list(self.orders.values())

    async def delete_by_id(self, order_id: str) -> None:
        self.orders.pop(order_id, None)

    async def count(self) -> int:
        return len(self.orders)


@pytest.fixture()
def settings() -> OrdersSettings:
    return OrdersSettings(
        http_timeout=0.5,
        payment_uri=PAYMENT_URI,
        shipping_uri=SHIPPING_URI,
        shipping_fee=Decimal("4.99"),
    )


@pytest.fixture()
def services() -> FakeServices:
    return default_services()


@pytest.fixture()
def store() -> RecordingOrderStore:
    return RecordingOrderStore()


@pytest.fixture()
def pool():
    return BoundedTaskPool(max_workers=10, queue_capacity=20)


@pytest.fixture()
async def fetcher(services, pool):
    client = services.client()
    yield HttpResourceFetcher(client, pool)
    await pool.aclose()
    await client.aclose()


@pytest.fixture()
def orchestrator(fetcher, store, settings) -> OrderAssemblyOrchestrator:
    return OrderAssemblyOrchestrator(
        fetcher,
        PaymentGatewayClient(fetcher, settings.payment_uri),
        ShipmentRequestClient(fetcher, settings.shipping_uri),
        store,
        settings,
    )
