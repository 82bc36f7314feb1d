"""
Orders Service — Order Store

注文を customer_orders テーブルにドキュメント (JSON テキスト) として保存する。
キーは store が採番する id。オーケストレーターが使うのは save だけで、
ほかの操作は永続化境界として提供する。

各操作は traced_operation で明示的に包み、所要時間と失敗をログに残す。
"""

from datetime import datetime, timezone
from typing import Protocol
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from .models import CustomerOrder
from .tracing import traced_operation

COLLECTION = "customer_orders"


class OrderStore(Protocol):
    async def save(self, order: CustomerOrder) -> CustomerOrder: ...

    async def find_by_id(self, order_id: str) -> CustomerOrder | None: ...

    async def find_by_customer_id(self, customer_id: str) -> list[CustomerOrder]: ...

    async def find_all(self) -> list[CustomerOrder]: ...

    async def delete_by_id(self, order_id: str) -> None: ...

    async def count(self) -> int: ...


async def create_schema(engine: AsyncEngine) -> None:
    """customer_orders テーブルが無ければ作る。"""
    async with engine.begin() as conn:
        await conn.execute(
            text("""
                CREATE TABLE IF NOT EXISTS customer_orders (
                    id VARCHAR(64) PRIMARY KEY,
                    customer_id VARCHAR(255) NOT NULL,
                    document TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
            """)
        )
        await conn.execute(
            text("""
                CREATE INDEX IF NOT EXISTS ix_customer_orders_customer_id
                ON customer_orders (customer_id)
            """)
        )


def _to_document(order: CustomerOrder) -> str:
    # id は列で持つのでドキュメントには含めない
    return order.model_dump_json(by_alias=True, exclude={"id"})


def _from_row(row) -> CustomerOrder:
    order = CustomerOrder.model_validate_json(row.document)
    return order.model_copy(update={"id": row.id})


class SqlOrderStore:
    """SQLAlchemy (AsyncSession + text()) による OrderStore の実装"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def save(self, order: CustomerOrder) -> CustomerOrder:
        """
        id が無ければ採番して INSERT、あれば UPDATE する。
        採番済みの注文を返す。
        """
        async with traced_operation(
            "db.order.save", db_operation="insert", collection=COLLECTION
        ):
            async with self.session_factory() as session:
                saved = await self._save(session, order)
                await session.commit()
                return saved

    async def _save(self, session: AsyncSession, order: CustomerOrder) -> CustomerOrder:
        if order.id is not None:
            result = await session.execute(
                text("""
                    UPDATE customer_orders
                    SET customer_id = :customer_id, document = :document
                    WHERE id = :id
                """),
                {
                    "id": order.id,
                    "customer_id": order.customer_id,
                    "document": _to_document(order),
                },
            )
            if result.rowcount:
                return order
            saved = order
        else:
            saved = order.model_copy(update={"id": uuid4().hex})

        await session.execute(
            text("""
                INSERT INTO customer_orders (id, customer_id, document, created_at)
                VALUES (:id, :customer_id, :document, :now)
            """),
            {
                "id": saved.id,
                "customer_id": saved.customer_id,
                "document": _to_document(saved),
                "now": datetime.now(timezone.utc),
            },
        )
        return saved

    async def find_by_id(self, order_id: str) -> CustomerOrder | None:
        async with traced_operation(
            "db.order.findById", db_operation="findOne", collection=COLLECTION,
            order_id=order_id,
        ):
            async with self.session_factory() as session:
                result = await session.execute(
                    text("SELECT id, document FROM customer_orders WHERE id = :id"),
                    {"id": order_id},
                )
                row = result.fetchone()
                return _from_row(row) if row else None

    async def find_by_customer_id(self, customer_id: str) -> list[CustomerOrder]:
        async with traced_operation(
            "db.order.findByCustomerId", db_operation="find", collection=COLLECTION,
            customer_id=customer_id,
        ):
            async with self.session_factory() as session:
                result = await session.execute(
                    text("""
                        SELECT id, document FROM customer_orders
                        WHERE customer_id = :customer_id
                        ORDER BY created_at ASC
                    """),
                    {"customer_id": customer_id},
                )
                return [_from_row(row) for row in result.fetchall()]

    async def find_all(self) -> list[CustomerOrder]:
        async with traced_operation(
            "db.order.findAll", db_operation="find", collection=COLLECTION
        ):
            async with self.session_factory() as session:
                result = await session.execute(
                    text("SELECT id, document FROM customer_orders ORDER BY created_at ASC"),
                )
                return [_from_row(row) for row in result.fetchall()]

    async def delete_by_id(self, order_id: str) -> None:
        async with traced_operation(
            "db.order.delete", db_operation="delete", collection=COLLECTION,
            order_id=order_id,
        ):
            async with self.session_factory() as session:
                await session.execute(
                    text("DELETE FROM customer_orders WHERE id = :id"),
                    {"id": order_id},
                )
                await session.commit()

    async def count(self) -> int:
        async with traced_operation(
            "db.order.count", db_operation="count", collection=COLLECTION
        ):
            async with self.session_factory() as session:
                result = await session.execute(text("SELECT COUNT(*) FROM customer_orders"))
                return int(result.scalar_one())
