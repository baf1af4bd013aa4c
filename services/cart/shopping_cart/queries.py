"""
Cart Service — クエリハンドラ (Read 側)
"""

from .domain import Item
from .ports import ItemStore


async def list_cart_items(store: ItemStore) -> list[Item]:
    return await store.list_items()


async def get_cart_item(store: ItemStore, item_id: int) -> Item | None:
    return await store.get_item(item_id)
