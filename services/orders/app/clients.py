"""
Orders Service — 決済 / 配送クライアント

ResourceFetcher.post_one の薄いラッパー。ペイロードと応答の形を
決めるだけで、業務ロジックは持たない。失敗の扱いは Fetcher のまま。
"""

from .fetcher import FetchHandle, ResourceFetcher
from .models import PaymentRequest, PaymentResponse, Shipment
from .tracing import TraceContext


class PaymentGatewayClient:
    def __init__(self, fetcher: ResourceFetcher, payment_uri: str):
        self.fetcher = fetcher
        self.payment_uri = payment_uri

    async def authorize(
        self, request: PaymentRequest, trace: TraceContext
    ) -> FetchHandle[PaymentResponse | None]:
        """決済の承認を依頼する。応答が空・解釈不能なら None になる。"""
        return await self.fetcher.post_one(
            self.payment_uri, request, PaymentResponse, trace, optional=True
        )


class ShipmentRequestClient:
    def __init__(self, fetcher: ResourceFetcher, shipping_uri: str):
        self.fetcher = fetcher
        self.shipping_uri = shipping_uri

    async def request_shipment(
        self, customer_id: str, trace: TraceContext
    ) -> FetchHandle[Shipment]:
        return await self.fetcher.post_one(
            self.shipping_uri, Shipment(name=customer_id), Shipment, trace
        )
