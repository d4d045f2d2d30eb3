"""积分账本 - 生成前预检，生成成功后原子扣费"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.core.errors import CreditError
from imagegen.core.timeutil import utcnow
from imagegen.models.account import UserCredits
from imagegen.services.context import CreditBalances

logger = logging.getLogger(__name__)


class SettlementConflict(Exception):
    """扣费时可用积分已不足（并发请求先扣走了）"""

    def __init__(self, required: float, available: float):
        super().__init__(f"Insufficient credits at settlement: required={required}, available={available}")
        self.required = required
        self.available = available


class CreditLedger:
    """积分账本"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_balances(self, user_id: UUID) -> CreditBalances:
        """当前余额，没有积分记录时视为 0"""
        result = await self.db.execute(
            select(UserCredits)
            .where(UserCredits.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        credits: Optional[UserCredits] = result.scalar_one_or_none()
        if credits is None:
            return CreditBalances(balance=0, daily_credits=0)
        return CreditBalances(balance=credits.balance or 0, daily_credits=credits.daily_credits or 0)

    async def precheck(self, user_id: UUID, cost: float) -> CreditBalances:
        """
        生成前检查可用积分，不做任何修改

        Raises:
            CreditError: daily_credits + balance < cost
        """
        balances = await self.get_balances(user_id)
        available = balances.daily_credits + balances.balance
        if available < cost:
            raise CreditError(required=cost, available=available)
        return balances

    async def debit(self, user_id: UUID, cost: float) -> CreditBalances:
        """
        原子扣费（不提交，由调用方控制事务）

        单条条件 UPDATE：只有 daily_credits + balance >= cost 时才生效，
        拆分规则在 SQL 中计算，SET 子句中引用的都是更新前的值。

        Raises:
            SettlementConflict: 没有行被更新
        """
        daily = UserCredits.daily_credits
        balance = UserCredits.balance
        daily_covers = daily >= cost

        stmt = (
            update(UserCredits)
            .where(UserCredits.user_id == user_id, (daily + balance) >= cost)
            .values(
                daily_credits=case((daily_covers, daily - cost), else_=0),
                balance=case((daily_covers, balance), else_=balance - (cost - daily)),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)

        if result.rowcount != 1:
            current = await self.get_balances(user_id)
            available = current.daily_credits + current.balance
            logger.warning(f"Settlement conflict for user {user_id}: required={cost}, available={available}")
            raise SettlementConflict(required=cost, available=available)

        return await self.get_balances(user_id)
