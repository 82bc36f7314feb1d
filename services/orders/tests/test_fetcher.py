"""Tests for the HTTP resource fetcher and its join semantics."""

import asyncio
import json

import httpx
import pytest

from app.fetcher import FetchFailed, TimedOut, unwrap_resource
from app.models import Address, Customer, Item, PaymentResponse, Shipment
from app.tracing import TraceContext
from conftest import ADDRESS_URI, CUSTOMER_URI, ITEMS_URI, PAYMENT_URI, SHIPPING_URI


@pytest.fixture()
def trace() -> TraceContext:
    return TraceContext.new_root()


class TestUnwrapResource:
    """Tests for HAL envelope handling."""

    def test_strips_links(self) -> None:
        """Test navigational links are dropped from the entity."""
        payload = {"id": "a1", "city": "Springfield", "_links": {"self": {"href": "x"}}}
        assert unwrap_resource(payload) == {"id": "a1", "city": "Springfield"}

    def test_rejects_non_object(self) -> None:
        """Test an array is not a single resource."""
        with pytest.raises(ValueError):
            unwrap_resource([{"id": "a1"}])


class TestFetchOne:
    """Tests for single resource fetches."""

    async def test_returns_entity_from_envelope(self, fetcher, trace) -> None:
        """Test a HAL resource is parsed into the requested shape."""
        handle = await fetcher.fetch_one(ADDRESS_URI, Address, trace)
        address = await handle.join(1.0)
        assert address.city == "Springfield"
        assert address.id == "a1"

    async def test_requests_hal_json(self, fetcher, services, trace) -> None:
        """Test single resources are requested as application/hal+json."""
        await (await fetcher.fetch_one(ADDRESS_URI, Address, trace)).join(1.0)
        assert services.calls_to(ADDRESS_URI)[0].headers["accept"] == "application/hal+json"

    async def test_propagates_child_span(self, fetcher, services, trace) -> None:
        """Test each request carries a child span of the issuing trace."""
        await (await fetcher.fetch_one(ADDRESS_URI, Address, trace)).join(1.0)
        await (await fetcher.fetch_one(CUSTOMER_URI, Customer, trace)).join(1.0)
        first, second = services.requests
        assert first.headers["X-B3-TraceId"] == trace.trace_id
        assert first.headers["X-B3-ParentSpanId"] == trace.span_id
        assert first.headers["X-B3-SpanId"] != second.headers["X-B3-SpanId"]
        assert first.headers["traceparent"].split("-")[1] == trace.trace_id

    async def test_http_error_is_fetch_failure(self, fetcher, services, trace) -> None:
        """Test a non-2xx status fails the join with FetchFailed."""
        services.on("GET", ADDRESS_URI, status=503, json_body={"error": "down"})
        handle = await fetcher.fetch_one(ADDRESS_URI, Address, trace)
        with pytest.raises(FetchFailed) as exc_info:
            await handle.join(1.0)
        assert isinstance(exc_info.value.cause, httpx.HTTPStatusError)

    async def test_shape_mismatch_is_fetch_failure(self, fetcher, services, trace) -> None:
        """Test a payload that does not match the shape fails the join."""
        services.on("GET", CUSTOMER_URI, json_body={"firstName": "no id"})
        handle = await fetcher.fetch_one(CUSTOMER_URI, Customer, trace)
        with pytest.raises(FetchFailed):
            await handle.join(1.0)

    async def test_transport_error_is_fetch_failure(self, fetcher, services, trace) -> None:
        """Test connection errors surface as FetchFailed."""

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        services.on("GET", ADDRESS_URI, respond=refuse)
        handle = await fetcher.fetch_one(ADDRESS_URI, Address, trace)
        with pytest.raises(FetchFailed):
            await handle.join(1.0)


class TestJoinTimeout:
    """Tests for bounded-wait joins."""

    async def test_times_out(self, fetcher, services, trace) -> None:
        """Test a slow response fails the join with TimedOut."""
        services.on("GET", ADDRESS_URI, json_body={"id": "a1"}, delay=0.3)
        handle = await fetcher.fetch_one(ADDRESS_URI, Address, trace)
        with pytest.raises(TimedOut):
            await handle.join(0.05)

    async def test_timed_out_fetch_keeps_running(self, fetcher, services, trace) -> None:
        """Test a timed out join leaves the request running to completion."""
        services.on("GET", ADDRESS_URI, json_body={"id": "a1"}, delay=0.1)
        handle = await fetcher.fetch_one(ADDRESS_URI, Address, trace)
        with pytest.raises(TimedOut):
            await handle.join(0.01)
        address = await handle.join(1.0)
        assert address.id == "a1"
        assert ADDRESS_URI in services.completed

    async def test_issue_does_not_wait_for_response(self, fetcher, services, trace) -> None:
        """Test issuing returns before the remote call completes."""
        services.on("GET", ADDRESS_URI, json_body={"id": "a1"}, delay=0.2)
        handle = await fetcher.fetch_one(ADDRESS_URI, Address, trace)
        assert not handle.done()
        await handle.join(1.0)


class TestFetchList:
    """Tests for list fetches."""

    async def test_returns_items_in_order(self, fetcher, trace) -> None:
        """Test a plain JSON array is parsed in order."""
        items = await (await fetcher.fetch_list(ITEMS_URI, Item, trace)).join(1.0)
        assert [i.item_id for i in items] == ["sock-1", "sock-2"]

    async def test_object_instead_of_list_fails(self, fetcher, services, trace) -> None:
        """Test a non-array body is a shape mismatch."""
        services.on("GET", ITEMS_URI, json_body={"items": []})
        handle = await fetcher.fetch_list(ITEMS_URI, Item, trace)
        with pytest.raises(FetchFailed):
            await handle.join(1.0)


class TestPostOne:
    """Tests for POST calls."""

    async def test_posts_json_body_by_alias(self, fetcher, services, trace) -> None:
        """Test pydantic bodies are sent camelCase and the reply parsed."""
        handle = await fetcher.post_one(SHIPPING_URI, Shipment(name="c1"), Shipment, trace)
        shipment = await handle.join(1.0)
        sent = json.loads(services.calls_to(SHIPPING_URI)[0].content)
        assert sent["name"] == "c1"
        assert shipment.name == "c1"
        assert shipment.id == sent["id"]

    @pytest.mark.parametrize("content", [b"", b"null", b"<html>oops</html>", b'{"unexpected": 1}'])
    async def test_optional_absent_or_unparseable_is_none(
        self, fetcher, services, trace, content: bytes
    ) -> None:
        """Test optional responses degrade to None instead of failing."""
        services.on("POST", PAYMENT_URI, content=content)
        handle = await fetcher.post_one(PAYMENT_URI, {}, PaymentResponse, trace, optional=True)
        assert await handle.join(1.0) is None

    async def test_required_empty_body_fails(self, fetcher, services, trace) -> None:
        """Test a required response shape rejects an empty body."""
        services.on("POST", SHIPPING_URI, content=b"")
        handle = await fetcher.post_one(SHIPPING_URI, Shipment(name="c1"), Shipment, trace)
        with pytest.raises(FetchFailed):
            await handle.join(1.0)

    async def test_optional_still_fails_on_http_error(self, fetcher, services, trace) -> None:
        """Test optional only relaxes parsing, not transport failures."""
        services.on("POST", PAYMENT_URI, status=500, json_body={"error": "boom"})
        handle = await fetcher.post_one(PAYMENT_URI, {}, PaymentResponse, trace, optional=True)
        with pytest.raises(FetchFailed):
            await handle.join(1.0)


async def test_concurrent_fetches_overlap(fetcher, services, trace) -> None:
    """Test issued fetches run in parallel rather than one after another."""
    services.on("GET", ADDRESS_URI, json_body={"id": "a1"}, delay=0.2)
    services.on("GET", CUSTOMER_URI, json_body={"id": "c1"}, delay=0.2)
    loop = asyncio.get_running_loop()
    started = loop.time()
    first = await fetcher.fetch_one(ADDRESS_URI, Address, trace)
    second = await fetcher.fetch_one(CUSTOMER_URI, Customer, trace)
    await first.join(1.0)
    await second.join(1.0)
    assert loop.time() - started < 0.35
