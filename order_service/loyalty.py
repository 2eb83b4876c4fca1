"""Loyalty Ledger.

The append-only ``points_transactions`` table is the source of truth for
whether an order already earned points. Awarding is safe to call from any
number of triggers: the existence check skips known awards and the unique
constraint on (order_id, user_id, reason) rejects a racing duplicate.
"""
from decimal import ROUND_FLOOR, Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config
from .metrics import LOYALTY_POINTS_AWARDED
from .models import ORDER_EARNED, LoyaltyAccount, Order, PointsTransaction
from .logs import get_logger

logger = get_logger("loyalty")


class LoyaltyLedger:
    def __init__(self, rate: Decimal = config.LOYALTY_POINTS_RATE):
        self.rate = Decimal(rate)

    def points_for(self, total) -> int:
        earned = Decimal(total) * self.rate
        return int(earned.to_integral_value(rounding=ROUND_FLOOR))

    def get_account(self, session: Session, user_id: int) -> Optional[LoyaltyAccount]:
        return session.query(LoyaltyAccount).filter(LoyaltyAccount.user_id == user_id).first()

    def ensure_account(self, session: Session, user_id: int) -> LoyaltyAccount:
        account = self.get_account(session, user_id)
        if account is not None:
            return account
        try:
            with session.begin_nested():
                account = LoyaltyAccount(user_id=user_id, points=0, total_spent_this_period=Decimal("0"))
                session.add(account)
        except IntegrityError:
            # created by a concurrent request
            account = self.get_account(session, user_id)
        return account

    def has_award(self, session: Session, order_id: int, user_id: int) -> bool:
        return (
            session.query(PointsTransaction.id)
            .filter(
                PointsTransaction.order_id == order_id,
                PointsTransaction.user_id == user_id,
                PointsTransaction.reason == ORDER_EARNED,
            )
            .first()
            is not None
        )

    def balance(self, session: Session, user_id: int) -> int:
        account = self.get_account(session, user_id)
        return account.points if account is not None else 0

    def award_if_eligible(self, session: Session, order: Order, user_id: Optional[int] = None) -> int:
        """Credit ORDER_EARNED points for ``order`` unless already credited.

        ``user_id`` defaults to the order owner. Runs in a savepoint of the
        caller's transaction, so the ledger row, balance and period spend
        change together or not at all. Returns the number of points credited
        (0 when skipped).
        """
        user_id = order.user_id if user_id is None else user_id
        if user_id is None:
            return 0
        if self.has_award(session, order.id, user_id):
            logger.info(f"Points for order {order.id} already awarded to user {user_id}")
            return 0

        points = self.points_for(order.total)
        try:
            with session.begin_nested():
                account = self.ensure_account(session, user_id)
                session.add(
                    PointsTransaction(
                        user_id=user_id,
                        account_id=account.id,
                        points=points,
                        reason=ORDER_EARNED,
                        order_id=order.id,
                        details=f"Points earned from order #{order.id}",
                    )
                )
                session.flush()
                (
                    session.query(LoyaltyAccount)
                    .filter(LoyaltyAccount.id == account.id)
                    .update(
                        {
                            LoyaltyAccount.points: LoyaltyAccount.points + points,
                            LoyaltyAccount.total_spent_this_period: (
                                LoyaltyAccount.total_spent_this_period + order.total
                            ),
                        },
                        synchronize_session=False,
                    )
                )
        except IntegrityError:
            logger.info(f"Concurrent award for order {order.id} won the race, skipping")
            return 0

        session.expire(account)
        LOYALTY_POINTS_AWARDED.inc(points)
        logger.info(f"Awarded {points} loyalty points to user {user_id} for order {order.id}")
        return points
