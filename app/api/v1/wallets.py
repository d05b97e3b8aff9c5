import logging
from fastapi import APIRouter, HTTPException, Query
from app.models.read_models import Wallet, WalletTransaction
from app.schemas.read_models import WalletResponse, WalletTransactionResponse
from app.schemas.response import SuccessResponse

log = logging.getLogger("uvicorn")

router = APIRouter()


@router.get("/{wallet_id}", response_model=SuccessResponse)
async def get_wallet(wallet_id: str, history: int = Query(20, ge=0, le=200)):
    """Reads a wallet from the projected read model, with its most recent transactions."""
    try:
        wallet = await Wallet.get_or_none(wallet_id=wallet_id)
        if not wallet:
            raise HTTPException(status_code=404, detail="Wallet not found.")

        transactions = await WalletTransaction.filter(wallet_id=wallet_id).order_by("-occurred_at").limit(history) if history else []

        data = WalletResponse(
            wallet_id=wallet.wallet_id,
            user_id=wallet.user_id,
            wallet_name=wallet.wallet_name,
            cached_balance=wallet.cached_balance,
            status=wallet.status,
            frozen_reason=wallet.frozen_reason,
            updated_at=str(wallet.updated_at),
            transactions=[
                WalletTransactionResponse(
                    ledger_tx_id=t.ledger_tx_id,
                    direction=t.direction,
                    counterparty=t.counterparty,
                    amount=t.amount,
                    fee=t.fee,
                    remark=t.remark,
                    block_number=t.block_number,
                    occurred_at=str(t.occurred_at),
                )
                for t in transactions
            ],
        ).model_dump(mode="json")
        return SuccessResponse(data=data)
    except HTTPException:
        # Re-raise explicit HTTP exceptions (like 404)
        raise
    except Exception as e:
        log.error(f"Error fetching wallet {wallet_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to fetch wallet.")
