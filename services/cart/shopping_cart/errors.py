"""
Cart Service — 例外定義

アダプタはライブラリ固有の例外 (redis / SQLAlchemy / httpx) を
ここで定義した例外に変換して送出する。
"""


class CartError(Exception):
    """カートサービスの基底例外"""


class QueueError(CartError):
    """ジョブキューのバックエンドとの通信に失敗した"""


class StoreError(CartError):
    """Item Store の永続化に失敗した"""


class ItemNotFoundError(StoreError):
    def __init__(self, item_id: int) -> None:
        super().__init__(f"item {item_id} not found")
        self.item_id = item_id


class ProviderError(CartError):
    """外部の予約サービス呼び出しに失敗した (ネットワーク / タイムアウト / 非 200)"""


class UnknownJobTypeError(CartError):
    """プロデューサとワーカーのスキーマ不一致。リトライしてはならない。"""

    def __init__(self, job_type: str) -> None:
        super().__init__(f"unknown job type: {job_type}")
        self.job_type = job_type
