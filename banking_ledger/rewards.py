"""
Loyalty reward accrual.

Users earn floor(settled amount * reward rate) points for every completed
transaction they request. Accrual is a side effect of settlement: it never
rolls back or fails a completed transaction.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_FLOOR
from typing import Optional, Union

from .config import get_config
from .currency import to_decimal
from .locking import AccountLocks
from .storage import StorageInterface


class RewardAccrual:
    """Per-user reward point balances"""

    def __init__(
        self,
        storage: StorageInterface,
        rate: Optional[Union[Decimal, str]] = None,
        lock_timeout: Optional[float] = None
    ):
        cfg = get_config()
        self.storage = storage
        self.rate = to_decimal(rate if rate is not None else cfg.reward_rate)
        self.table_name = "reward_balances"
        self._locks = AccountLocks(lock_timeout if lock_timeout is not None else cfg.lock_timeout_seconds)

    def points_for(self, settled_amount: Union[Decimal, str]) -> int:
        """floor(settled_amount * rate), never negative"""
        points = (to_decimal(settled_amount) * self.rate).to_integral_value(rounding=ROUND_FLOOR)
        return max(int(points), 0)

    def accrue(self, user_id: str, settled_amount: Union[Decimal, str]) -> int:
        """
        Add points for a settled amount to the user's balance.

        Returns:
            Points added by this call
        """
        points = self.points_for(settled_amount)
        if points == 0:
            return 0

        with self._locks.hold(user_id):
            record = self.storage.load(self.table_name, user_id) or {
                "user_id": user_id,
                "points": 0,
            }
            record["points"] = int(record["points"]) + points
            record["updated_at"] = datetime.now(timezone.utc).isoformat()
            self.storage.save(self.table_name, user_id, record)
        return points

    def get_balance(self, user_id: str) -> int:
        record = self.storage.load(self.table_name, user_id)
        return int(record["points"]) if record else 0
