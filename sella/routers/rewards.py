from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from sella.db import get_db
from sella.deps import get_current_customer_id
from sella.models.rewards import RewardTransaction
from sella.services.rewards import get_or_create_wallet

router = APIRouter(prefix="/api/rewards", tags=["rewards"])


@router.get("/wallet")
def wallet(
    limit: int = Query(10, ge=1, le=100),
    customer_id: int = Depends(get_current_customer_id),
    db: Session = Depends(get_db),
):
    w = get_or_create_wallet(db, customer_id)
    txs = (
        db.query(RewardTransaction)
        .filter(RewardTransaction.wallet_id == w.id)
        .order_by(RewardTransaction.id.desc())
        .limit(limit)
        .all()
    )
    return {
        "balance_points": w.balance_points,
        "balance_value": w.balance_points / 100,
        "transactions": [
            {
                "id": t.id,
                "type": t.type,
                "points": t.points,
                "memo": t.memo,
                "order_id": t.order_id,
                "created_at": t.created_at.isoformat(),
            }
            for t in txs
        ],
    }
