"""
Orders Service — 設定

環境変数 (大文字小文字を区別しない) から OrdersSettings を組み立てる。
値が不正な場合は起動時に pydantic の ValidationError になる。
"""

from decimal import Decimal
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrdersSettings(BaseSettings):
    """Orders Service settings."""

    # 空文字の環境変数は未設定として既定値を使う
    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_ignore_empty=True,
        frozen=True,
    )

    # join 1 回ごとの待ち時間 (秒)。全体の締め切りではない
    http_timeout: float = Field(default=5.0, gt=0)
    client_timeout: float = Field(default=30.0, gt=0)
    payment_uri: str = "http://payment/paymentAuth"
    shipping_uri: str = "http://shipping/shipping"
    shipping_fee: Decimal = Field(default=Decimal("4.99"), ge=0)
    database_url: str = "sqlite+aiosqlite:///./orders.db"
    pool_max_workers: int = Field(default=50, ge=1)
    pool_queue_capacity: int = Field(default=100, ge=0)
    pool_saturation_policy: Literal["reject", "block"] = "reject"
    proxy_url: str | None = None
    log_level: str = "INFO"


def load_settings() -> OrdersSettings:
    return OrdersSettings()
