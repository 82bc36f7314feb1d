"""
Order Assembly Orchestrator — 注文組み立てワークフロー

1 回の注文作成リクエストにつき 1 つのワークフローを実行する。

  状態遷移:
  ┌──────────────────────────────────────────────────────────────┐
  │  Validating ─▶ Fetching ─▶ ItemsResolved ─▶ ReferencesResolved │
  │     ─▶ PaymentAuthorized ─▶ ShipmentObtained ─▶ Persisted      │
  │                                                              │
  │  どの状態からでも ─▶ Failed(reason)                           │
  └──────────────────────────────────────────────────────────────┘

  1. 参照 (address / customer / card / items) を検証
  2. 4 つのフェッチを待たずに同時発行
  3. items を join して合計金額を計算
  4. address → card → customer の順に、それぞれ独立した上限で join
  5. 決済を承認
  6. 配送を依頼
  7. CustomerOrder を組み立てて保存

リトライも補償トランザクションも行わない。最初に失敗した join で
ワークフローは終了し、何も保存されない。すでに承認された決済や
依頼済みの配送は取り消されない。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TypeVar

from .clients import PaymentGatewayClient, ShipmentRequestClient
from .config import OrdersSettings
from .errors import (
    FailureReason,
    InternalFaultError,
    InvalidOrderError,
    OrderFailure,
    OrderTimeoutError,
    PaymentDeclinedError,
    ResourceExhaustedError,
    UpstreamFailureError,
)
from .fetcher import FetchFailed, FetchHandle, ResourceFetcher, TimedOut
from .models import (
    Address,
    Card,
    Customer,
    CustomerOrder,
    Item,
    OrderRequest,
    PaymentRequest,
    ResolvedInputs,
    calculate_total,
)
from .pool import ResourceExhausted
from .store import OrderStore
from .tracing import TraceContext, bind_trace

logger = logging.getLogger(__name__)

T = TypeVar("T")

INVALID_ORDER_MESSAGE = (
    "Invalid order request. Order requires customer, address, card and items."
)
UNPARSEABLE_PAYMENT_MESSAGE = "unable to parse authorisation response"


class OrderState(str, Enum):
    VALIDATING = "Validating"
    FETCHING = "Fetching"
    ITEMS_RESOLVED = "ItemsResolved"
    REFERENCES_RESOLVED = "ReferencesResolved"
    PAYMENT_AUTHORIZED = "PaymentAuthorized"
    SHIPMENT_OBTAINED = "ShipmentObtained"
    PERSISTED = "Persisted"
    FAILED = "Failed"


@dataclass
class WorkflowRun:
    """1 回のワークフロー実行の状態と遷移ログ（他の実行とは共有しない）"""

    trace: TraceContext
    state: OrderState = OrderState.VALIDATING
    failure_reason: FailureReason | None = None
    log: list[dict] = field(default_factory=list)

    def advance(self, state: OrderState, **detail: object) -> None:
        self.state = state
        self.log.append(
            {
                "state": state.value,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **detail,
            }
        )
        logger.info("Order workflow -> %s %s", state.value, detail or "")

    def fail(self, reason: FailureReason, error: str) -> None:
        self.failure_reason = reason
        self.advance(OrderState.FAILED, reason=reason.value, error=error)


@dataclass
class _PendingFetches:
    address: FetchHandle[Address]
    customer: FetchHandle[Customer]
    card: FetchHandle[Card]
    items: FetchHandle[list[Item]]


class OrderAssemblyOrchestrator:
    """注文組み立てワークフローのオーケストレーター"""

    def __init__(
        self,
        fetcher: ResourceFetcher,
        payment_client: PaymentGatewayClient,
        shipment_client: ShipmentRequestClient,
        store: OrderStore,
        settings: OrdersSettings,
    ):
        self.fetcher = fetcher
        self.payment_client = payment_client
        self.shipment_client = shipment_client
        self.store = store
        self.timeout = settings.http_timeout
        self.shipping_fee = settings.shipping_fee

    async def create_order(
        self,
        request: OrderRequest,
        trace: TraceContext | None = None,
    ) -> CustomerOrder:
        """
        ワークフローを実行し、保存済みの CustomerOrder を返す。

        失敗時は OrderFailure のサブクラスを送出する。
        分類できない例外は InternalFaultError に包む。
        """
        run = WorkflowRun(trace=trace or TraceContext.new_root())
        with bind_trace(run.trace):
            try:
                return await self._execute(run, request)
            except OrderFailure as e:
                run.fail(e.reason, e.message)
                if e.is_business_error:
                    logger.error("Order creation rejected (%s): %s", e.reason.value, e.message)
                else:
                    logger.error(
                        "Order creation failed (%s): %s", e.reason.value, e.message,
                        exc_info=e.__cause__,
                    )
                raise
            except Exception as e:
                run.fail(FailureReason.INTERNAL_FAULT, str(e))
                logger.exception("Order creation failed with an unexpected error")
                raise InternalFaultError(
                    f"Unable to create order due to unexpected error: {e}"
                ) from e

    async def _execute(self, run: WorkflowRun, request: OrderRequest) -> CustomerOrder:
        # ── 1. 検証 ─────────────────────────────────
        run.advance(OrderState.VALIDATING)
        self._validate(request)

        # ── 2. 4 つのフェッチを同時発行 ─────────────
        run.advance(OrderState.FETCHING)
        pending = await self._issue_fetches(request, run.trace)

        # ── 3. items を先に join して合計を計算 ───────
        items = await self._join(pending.items)
        total = calculate_total(items, self.shipping_fee)
        run.advance(OrderState.ITEMS_RESOLVED, item_count=len(items), total=str(total))

        # ── 4. address → card → customer (各々独立した上限) ──
        address = await self._join(pending.address)
        card = await self._join(pending.card)
        customer = await self._join(pending.customer)
        resolved = ResolvedInputs(address=address, customer=customer, card=card, items=items)
        run.advance(OrderState.REFERENCES_RESOLVED, customer_id=customer.id)

        # ── 5. 決済 ────────────────────────────────
        payment_request = PaymentRequest(
            address=resolved.address,
            card=resolved.card,
            customer=resolved.customer,
            amount=total,
        )
        payment = await self._join(
            await self._guard(self.payment_client.authorize(payment_request, run.trace))
        )
        if payment is None:
            raise PaymentDeclinedError(UNPARSEABLE_PAYMENT_MESSAGE)
        if not payment.authorized:
            raise PaymentDeclinedError(payment.message)
        run.advance(OrderState.PAYMENT_AUTHORIZED)

        # ── 6. 配送 ────────────────────────────────
        shipment = await self._join(
            await self._guard(
                self.shipment_client.request_shipment(resolved.customer.id, run.trace)
            )
        )
        run.advance(OrderState.SHIPMENT_OBTAINED, shipment_id=shipment.id)

        # ── 7. 保存 ────────────────────────────────
        order = CustomerOrder(
            id=None,
            customer_id=resolved.customer.id,
            customer=resolved.customer,
            address=resolved.address,
            card=resolved.card,
            items=resolved.items,
            shipment=shipment,
            date=datetime.now(timezone.utc),
            total=total,
        )
        try:
            saved = await self.store.save(order)
        except Exception as e:
            raise InternalFaultError(f"Unable to persist order: {e}") from e
        run.advance(OrderState.PERSISTED, order_id=saved.id)
        return saved

    @staticmethod
    def _validate(request: OrderRequest) -> None:
        references = (request.address, request.customer, request.card, request.items)
        if any(ref is None or not ref.strip() for ref in references):
            logger.error(
                "Validation failed - address=%s, customer=%s, card=%s, items=%s",
                request.address, request.customer, request.card, request.items,
            )
            raise InvalidOrderError(INVALID_ORDER_MESSAGE)

    async def _issue_fetches(
        self, request: OrderRequest, trace: TraceContext
    ) -> _PendingFetches:
        """join の順番とは無関係に、4 つすべてを先に発行する。"""
        address = await self._guard(self.fetcher.fetch_one(request.address, Address, trace))
        customer = await self._guard(
            self.fetcher.fetch_one(request.customer, Customer, trace)
        )
        card = await self._guard(self.fetcher.fetch_one(request.card, Card, trace))
        items = await self._guard(self.fetcher.fetch_list(request.items, Item, trace))
        return _PendingFetches(address=address, customer=customer, card=card, items=items)

    @staticmethod
    async def _guard(issue) -> FetchHandle:
        """発行がプールに拒否された場合を ResourceExhaustedError に変換する。"""
        try:
            return await issue
        except ResourceExhausted as e:
            raise ResourceExhaustedError(str(e)) from e

    async def _join(self, handle: FetchHandle[T]) -> T:
        try:
            return await handle.join(self.timeout)
        except TimedOut as e:
            raise OrderTimeoutError(
                "Unable to create order due to timeout from one of the services."
            ) from e
        except FetchFailed as e:
            raise UpstreamFailureError(f"Unable to create order due to error: {e}") from e
