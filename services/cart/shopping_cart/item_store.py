"""
Cart Service — Item Store (SQLAlchemy)

カート明細の永続化。ワーカーは ports.ItemStore 経由でのみ利用する。
SQLAlchemy の例外は StoreError に変換する。
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    insert,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .domain import Item, ItemStatus
from .errors import ItemNotFoundError, StoreError

metadata = MetaData()

items = Table(
    "items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("reservation_id", String(255), nullable=True),
    Column("status", String(32), nullable=False, default=ItemStatus.PENDING.value),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    """items テーブルが無ければ作成する (ローカル起動・テスト用)。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


class SqlItemStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_item(self, item: Item) -> Item:
        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    insert(items).values(
                        name=item.name,
                        quantity=item.quantity,
                        reservation_id=item.reservation_id,
                        status=item.status.value,
                        created_at=now,
                        updated_at=now,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"error creating item: {e}") from e

        return item.model_copy(
            update={"id": result.inserted_primary_key[0], "created_at": now, "updated_at": now}
        )

    async def update_item_status(self, item_id: int, status: ItemStatus) -> None:
        await self._update(item_id, status=status.value)

    async def update_item_reservation(self, item_id: int, reservation_id: str) -> None:
        """予約 ID を記録し、状態を RESERVED にする。"""
        await self._update(
            item_id,
            reservation_id=reservation_id,
            status=ItemStatus.RESERVED.value,
        )

    async def get_item(self, item_id: int) -> Item | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(items).where(items.c.id == item_id))
                row = result.fetchone()
        except SQLAlchemyError as e:
            raise StoreError(f"error getting item {item_id}: {e}") from e
        if not row:
            return None
        return _to_item(row)

    async def list_items(self) -> list[Item]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(items).order_by(items.c.id))
                rows = result.fetchall()
        except SQLAlchemyError as e:
            raise StoreError(f"error listing items: {e}") from e
        return [_to_item(row) for row in rows]

    async def _update(self, item_id: int, **values) -> None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(items)
                    .where(items.c.id == item_id)
                    .values(updated_at=datetime.now(timezone.utc), **values)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"error updating item {item_id}: {e}") from e
        if result.rowcount == 0:
            raise ItemNotFoundError(item_id)


def _to_item(row) -> Item:
    return Item(
        id=row.id,
        name=row.name,
        quantity=row.quantity,
        reservation_id=row.reservation_id,
        status=ItemStatus(row.status),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
