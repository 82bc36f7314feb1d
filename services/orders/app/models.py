"""
Orders Service — データモデル

注文リクエスト、リモートサービスから取得するリソース、
決済・配送のメッセージ、永続化される CustomerOrder を定義する。

ワイヤ上のフィールド名は camelCase（リモートサービスの形式）、
Python 側は snake_case。リモートのペイロードに含まれる
未知のフィールドは無視する。
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

# 決済サービスは金額を JSON の数値として受け取る
Amount = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class WireModel(BaseModel):
    """camelCase でシリアライズされるモデルの基底クラス"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ── 注文リクエスト ───────────────────────────────


class OrderRequest(WireModel):
    """
    注文作成リクエスト

    各フィールドはリソースの URI への参照のみを持つ。
    欠けている参照は FastAPI の 422 ではなく InvalidOrder として
    扱うため、すべて Optional にしてある。
    """

    address: str | None = None
    customer: str | None = None
    card: str | None = None
    items: str | None = None


# ── リモートリソース ─────────────────────────────


class Address(WireModel):
    id: str | None = None
    number: str | None = None
    street: str | None = None
    city: str | None = None
    postcode: str | None = None
    country: str | None = None


class Customer(WireModel):
    id: str
    first_name: str | None = None
    last_name: str | None = None
    username: str | None = None


class Card(WireModel):
    id: str | None = None
    long_num: str | None = None
    expires: str | None = None
    ccv: str | None = None


class Item(WireModel):
    """カート内の商品。quantity と unit_price は負にならない。"""

    id: str | None = None
    item_id: str | None = None
    quantity: int = Field(ge=0)
    unit_price: Decimal = Field(ge=0)


class ResolvedInputs(BaseModel):
    """4 つのフェッチがすべて成功した後にだけ組み立てられる。"""

    address: Address
    customer: Customer
    card: Card
    items: list[Item]


# ── 決済 / 配送 ──────────────────────────────────


class PaymentRequest(WireModel):
    address: Address
    card: Card
    customer: Customer
    amount: Amount


class PaymentResponse(WireModel):
    """決済サービスの応答。ワイヤ上は authorised / authorized の両方を受け付ける。"""

    authorized: bool = Field(
        validation_alias=AliasChoices("authorised", "authorized"),
        serialization_alias="authorised",
    )
    message: str = ""


class Shipment(WireModel):
    """
    配送レコード

    配送サービスへのリクエストでは name に customerId を入れて送る。
    応答は同じ形のレコードで、中身はこのサービスでは解釈しない。
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str


# ── 永続化される注文 ─────────────────────────────


class CustomerOrder(WireModel):
    """
    組み立て済みの注文

    id は Order Store が採番する。save されるまでは None。
    """

    id: str | None = None
    customer_id: str
    customer: Customer
    address: Address
    card: Card
    items: list[Item]
    shipment: Shipment
    date: datetime
    total: Amount


def calculate_total(items: list[Item], shipping_fee: Decimal) -> Decimal:
    """商品小計の合計に一律の送料を一度だけ加算する。"""
    subtotal = sum((item.unit_price * item.quantity for item in items), Decimal("0"))
    return subtotal + shipping_fee
