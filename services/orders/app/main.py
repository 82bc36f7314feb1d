"""
Orders Service — FastAPI エントリーポイント

注文作成 (POST /orders) を受け付け、Order Assembly Orchestrator を実行する。

  ┌────────┐  POST /orders  ┌──────────────┐──▶ address / customer / card
  │ Client │ ─────────────▶ │ Orders       │──▶ items
  │        │ ◀───────────── │ Orchestrator │──▶ payment ─▶ shipping
  └────────┘  201 / 406 /500 └──────┬───────┘
                                    │ save
                             ┌──────▼───────┐
                             │ Order Store  │
                             └──────────────┘

境界での応答:
  成功                          → 201 + CustomerOrder
  InvalidOrder / PaymentDeclined → 406 + 個別メッセージ
  それ以外                        → 500 + 汎用メッセージ (詳細はログのみ)
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .clients import PaymentGatewayClient, ShipmentRequestClient
from .config import OrdersSettings, load_settings
from .errors import OrderFailure
from .fetcher import HttpResourceFetcher
from .logging_config import configure_logging
from .models import CustomerOrder, OrderRequest
from .orchestrator import INVALID_ORDER_MESSAGE, OrderAssemblyOrchestrator
from .pool import BoundedTaskPool
from .store import SqlOrderStore, create_schema
from .tracing import TraceContext

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Unable to create order"


def create_app(
    settings: OrdersSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """transport を渡すと外部サービスへの通信をそれに差し替える。"""
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        engine = create_async_engine(settings.database_url, echo=False)
        await create_schema(engine)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        pool = BoundedTaskPool(
            max_workers=settings.pool_max_workers,
            queue_capacity=settings.pool_queue_capacity,
            saturation_policy=settings.pool_saturation_policy,
        )
        client = httpx.AsyncClient(
            timeout=settings.client_timeout,
            proxy=settings.proxy_url,
            transport=transport,
        )
        fetcher = HttpResourceFetcher(client, pool)
        app.state.store = SqlOrderStore(async_session)
        app.state.orchestrator = OrderAssemblyOrchestrator(
            fetcher,
            PaymentGatewayClient(fetcher, settings.payment_uri),
            ShipmentRequestClient(fetcher, settings.shipping_uri),
            app.state.store,
            settings,
        )
        logger.info(
            "Orders service started (timeout=%ss, payment=%s, shipping=%s)",
            settings.http_timeout, settings.payment_uri, settings.shipping_uri,
        )
        yield
        await pool.aclose()
        await client.aclose()
        await engine.dispose()

    app = FastAPI(title="Orders Service", lifespan=lifespan)
    app.state.settings = settings

    @app.exception_handler(OrderFailure)
    async def order_failure_handler(request: Request, exc: OrderFailure):
        if exc.is_business_error:
            return JSONResponse(status_code=406, content={"detail": exc.message})
        # Timeout / UpstreamFailure / ResourceExhausted / InternalFault は区別しない
        return JSONResponse(status_code=500, content={"detail": GENERIC_FAILURE_MESSAGE})

    @app.exception_handler(RequestValidationError)
    async def invalid_body_handler(request: Request, exc: RequestValidationError):
        # 参照の型違いや空ボディも InvalidOrder と同じく 406
        logger.error("Order request rejected: %s", exc.errors())
        return JSONResponse(status_code=406, content={"detail": INVALID_ORDER_MESSAGE})

    @app.post("/orders", status_code=201)
    async def new_order(req: OrderRequest, request: Request):
        """注文を作成する。"""
        trace = TraceContext.from_headers(request.headers) or TraceContext.new_root()
        orchestrator: OrderAssemblyOrchestrator = request.app.state.orchestrator
        order: CustomerOrder = await orchestrator.create_order(req, trace)
        return order.model_dump(mode="json", by_alias=True)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "orders-service"}

    return app


app = create_app()
