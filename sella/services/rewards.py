"""Reward points ledger.

Every balance change is a single conditional UPDATE on the wallet row plus
one ledger row, committed together, so concurrent callers can never take the
balance below zero and the ledger always sums to the balance.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sella import config
from sella.models.order import Order
from sella.models.rewards import RewardTransaction, RewardWallet
from sella.utils.enums import RewardTxType

logger = logging.getLogger(__name__)

REDEEM_STEP = 100          # points, R10 increments in the UI
MIN_REDEMPTION = 100


@dataclass
class RedemptionResult:
    success: bool
    discount_amount: Decimal = Decimal("0")
    error: Optional[str] = None


class RewardError(Exception):
    pass


def _wallet_for(db: Session, customer_id: int) -> RewardWallet:
    wallet = db.query(RewardWallet).filter(RewardWallet.customer_id == customer_id).first()
    if wallet is None:
        wallet = RewardWallet(customer_id=customer_id, balance_points=0)
        db.add(wallet)
        db.flush()
    return wallet


def get_or_create_wallet(db: Session, customer_id: int) -> RewardWallet:
    try:
        wallet = _wallet_for(db, customer_id)
        db.commit()
    except IntegrityError:
        # created concurrently by another request
        db.rollback()
        return db.query(RewardWallet).filter(RewardWallet.customer_id == customer_id).one()
    db.refresh(wallet)
    return wallet


def _apply_delta(db: Session, wallet_id: int, points: int) -> bool:
    """Move the balance by `points`; refused if it would end below zero."""
    stmt = (
        update(RewardWallet)
        .where(RewardWallet.id == wallet_id)
        .where(RewardWallet.balance_points + points >= 0)
        .values(balance_points=RewardWallet.balance_points + points)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


def redeem_points(db: Session, wallet_id: int, order_id: Optional[str], points: int) -> RedemptionResult:
    if points < MIN_REDEMPTION:
        return RedemptionResult(success=False, error="Minimum redemption is 100 points")
    if points % REDEEM_STEP != 0:
        return RedemptionResult(success=False, error="Points must be a multiple of 100")

    wallet = db.get(RewardWallet, wallet_id)
    if wallet is None:
        return RedemptionResult(success=False, error="Wallet not found")

    if not _apply_delta(db, wallet_id, -points):
        db.rollback()
        logger.info("Redemption of %s points refused for wallet %s: insufficient balance", points, wallet_id)
        return RedemptionResult(success=False, error="Insufficient balance")

    db.add(RewardTransaction(
        wallet_id=wallet_id,
        type=RewardTxType.REDEEM.value,
        points=-points,
        memo=f"Redeemed on order {order_id}" if order_id else "Redeemed",
        order_id=order_id,
    ))
    db.commit()

    return RedemptionResult(success=True, discount_amount=Decimal(points) / Decimal(100))


def points_for_total(order_total, rate=config.REWARD_EARN_RATE) -> int:
    # points are cents-equivalent
    raw = Decimal(str(order_total)) * Decimal(str(rate)) * 100
    return int(raw.to_integral_value(rounding=ROUND_FLOOR))


def accrual_key(order_id: str) -> str:
    return f"earn:{order_id}"


def accrue_for_order(
    db: Session,
    order_id: str,
    order_total,
    rate=config.REWARD_EARN_RATE,
    commit: bool = True,
) -> int:
    """Award points for a paid order once. Returns the points awarded by this call."""
    points = points_for_total(order_total, rate)
    if points <= 0:
        return 0

    key = accrual_key(order_id)
    exists = db.query(RewardTransaction.id).filter(RewardTransaction.idempotency_key == key).first()
    if exists:
        return 0

    order = db.get(Order, order_id)
    if order is None:
        raise RewardError(f"Order {order_id} not found")
    wallet = _wallet_for(db, order.customer_id)

    _apply_delta(db, wallet.id, points)
    db.add(RewardTransaction(
        wallet_id=wallet.id,
        type=RewardTxType.EARN.value,
        points=points,
        memo=f"Earned on order {order_id}",
        order_id=order_id,
        idempotency_key=key,
    ))
    if commit:
        db.commit()
    else:
        db.flush()
    return points


def adjust_points(
    db: Session,
    wallet_id: int,
    points: int,
    memo: str,
    tx_type: RewardTxType = RewardTxType.ADJUST,
) -> RewardTransaction:
    """Manual correction or expiry. Expiry is always a debit."""
    if tx_type not in (RewardTxType.ADJUST, RewardTxType.EXPIRE):
        raise RewardError(f"Unsupported adjustment type: {tx_type}")
    if tx_type == RewardTxType.EXPIRE:
        points = -abs(points)
    if points == 0:
        raise RewardError("Adjustment must change the balance")

    if not _apply_delta(db, wallet_id, points):
        db.rollback()
        raise RewardError("Insufficient balance")

    tx = RewardTransaction(wallet_id=wallet_id, type=tx_type.value, points=points, memo=memo)
    db.add(tx)
    db.commit()
    db.refresh(tx)
    return tx


def ledger_total(db: Session, wallet_id: int) -> int:
    rows = db.query(RewardTransaction.points).filter(RewardTransaction.wallet_id == wallet_id).all()
    return sum(p for (p,) in rows)
