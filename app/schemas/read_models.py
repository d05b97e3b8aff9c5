from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

from app.models.read_models import TransactionDirection, WalletStatus


class WalletTransactionResponse(BaseModel):
    """Schema for one projected wallet history row."""
    ledger_tx_id: str
    direction: TransactionDirection
    counterparty: str
    amount: Decimal
    fee: Decimal
    remark: Optional[str] = None
    block_number: int
    occurred_at: str


class WalletResponse(BaseModel):
    """Schema for a projected wallet. Balances are cached from the ledger and may lag it."""
    wallet_id: str
    user_id: str
    wallet_name: str
    cached_balance: Decimal
    status: WalletStatus
    frozen_reason: Optional[str] = None
    updated_at: str
    transactions: List[WalletTransactionResponse] = []
