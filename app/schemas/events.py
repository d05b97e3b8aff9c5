from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Position(NamedTuple):
    """Ordering key of a ledger event within its channel."""
    block_number: int
    tx_index: int


class EventName(str, Enum):
    USER_CREATED = "UserCreated"
    WALLET_CREATED = "WalletCreated"
    GENESIS_DISTRIBUTED = "GenesisDistributed"
    TRANSFER_COMPLETED = "TransferCompleted"
    WALLET_FROZEN = "WalletFrozen"
    WALLET_UNFROZEN = "WalletUnfrozen"


class LedgerEvent(BaseModel):
    """A committed chaincode event as delivered by the event source."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_id: str = Field(..., min_length=1)
    event_name: str
    event_version: str = "1.0"
    block_number: int = Field(..., ge=0)
    tx_id: str
    tx_index: int = Field(..., ge=0, description="Sequence of the transaction within its block.")
    chaincode_name: str
    channel_name: str
    timestamp: datetime
    payload: Dict[str, Any]

    @property
    def position(self) -> Position:
        return Position(self.block_number, self.tx_index)


class EventPayload(BaseModel):
    """Base for versioned event payloads. Wire form is camelCase, unknown keys are rejected."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    def upgrade(self) -> "EventPayload":
        """Returns the current-version shape of this payload."""
        return self


class UserCreatedV1(EventPayload):
    user_id: str = Field(..., min_length=1)
    country_code: str = Field(..., min_length=2, max_length=3)
    user_type: str
    created_at: Optional[datetime] = None


class WalletCreatedV1(EventPayload):
    wallet_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    account_id: str
    wallet_name: Optional[str] = None
    initial_balance: Decimal = Field(Decimal("0"), ge=0)


class GenesisDistributedV1(EventPayload):
    """Genesis allocation credited to a user's wallet by DistributeGenesis."""
    user_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    distribution_phase: Optional[str] = None


class TransferCompletedV1(EventPayload):
    transaction_id: str
    from_user_id: str
    to_user_id: str
    amount: Decimal = Field(..., gt=0)
    fee: Decimal = Field(Decimal("0"), ge=0)
    remark: Optional[str] = None


class TransferCompletedV0_9(EventPayload):
    """Pre-fee transfer event still emitted by older chaincode."""
    transfer_id: str
    from_user_id: str
    to_user_id: str
    amount: Decimal = Field(..., gt=0)

    def upgrade(self) -> TransferCompletedV1:
        return TransferCompletedV1(
            transaction_id=self.transfer_id,
            from_user_id=self.from_user_id,
            to_user_id=self.to_user_id,
            amount=self.amount,
        )


class WalletFrozenV1(EventPayload):
    user_id: str = Field(..., min_length=1)
    reason: str


class WalletUnfrozenV1(EventPayload):
    user_id: str = Field(..., min_length=1)
