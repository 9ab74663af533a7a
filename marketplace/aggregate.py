"""
Marketplace — 注文ステータスの状態機械

状態遷移 (前進のみ):
    pending → confirmed → preparing → completed
    cancelled は終端 (外部から設定されたら以後は一切変更しない)

ランク表で現在と目標の順位を比べ、目標が現在以下なら何もしない。
同じステップが 2 回届いても、順番が入れ替わって届いても結果は変わらない。
"""

from dataclasses import dataclass

from .models import OrderRecord

PENDING = "pending"
CONFIRMED = "confirmed"
PREPARING = "preparing"
COMPLETED = "completed"
CANCELLED = "cancelled"

STATUS_RANK: dict[str, int] = {
    PENDING: 0,
    CONFIRMED: 1,
    PREPARING: 2,
    COMPLETED: 3,
    CANCELLED: 99,
}


@dataclass(frozen=True)
class ProgressionStep:
    status: str
    delay: float  # 注文作成時点からの秒数


STATUS_SEQUENCE: tuple[ProgressionStep, ...] = (
    ProgressionStep(CONFIRMED, 10.0),
    ProgressionStep(PREPARING, 20.0),
    ProgressionStep(COMPLETED, 40.0),
)


def rank(status: str) -> int:
    return STATUS_RANK.get(status, -1)


class OrderStatusMachine:
    """
    1 件の注文レコードに対するステータス前進ロジック。

    読み取り境界で変換済みの OrderRecord を受け取り、書き込むべき
    フィールドを返す。書き込み不要なら None。
    """

    def __init__(self, order: OrderRecord) -> None:
        self.status: str = order.status
        self.timeline: list[dict] = [entry.model_dump() for entry in order.timeline]

    def can_advance_to(self, target: str) -> bool:
        if self.status == CANCELLED:
            return False
        return rank(target) > rank(self.status)

    def advance(self, target: str, at: str) -> dict | None:
        if not self.can_advance_to(target):
            return None
        self.timeline.append({"status": target, "at": at})
        self.status = target
        return {"status": target, "timeline": self.timeline}
