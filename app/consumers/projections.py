"""
Read-model projections, one handler per event name.

Every handler runs inside the projector's transaction (`conn`) and must not
commit on its own: the checkpoint advance shares the same commit.
"""
import logging
from decimal import Decimal
from typing import Any, Tuple

from app.core.errors import ConsistencyViolation
from app.models.read_models import TransactionDirection, UserProfile, Wallet, WalletStatus, WalletTransaction
from app.schemas.events import (
    EventName,
    EventPayload,
    GenesisDistributedV1,
    LedgerEvent,
    TransferCompletedV1,
    UserCreatedV1,
    WalletCreatedV1,
    WalletFrozenV1,
    WalletUnfrozenV1,
)

log = logging.getLogger("projections")

# Counterparty recorded on wallet history rows for genesis credits
GENESIS_COUNTERPARTY = "GENESIS"


def transfer_balances(
    sender_balance: Decimal, receiver_balance: Decimal, amount: Decimal, fee: Decimal
) -> Tuple[Decimal, Decimal]:
    """
    New (sender, receiver) cached balances after a transfer. The sender also pays the fee.

    The ledger already committed the transfer, so a cached balance going negative
    means the cache missed a credit; it is logged and applied anyway.
    """
    new_sender = sender_balance - amount - fee
    if new_sender < 0:
        log.warning(
            f"Cached sender balance {sender_balance} is below transfer of {amount} (+{fee} fee); "
            f"cache now {new_sender}, ledger balance is authoritative."
        )
    return new_sender, receiver_balance + amount


async def _wallet_of(user_id: str, conn: Any) -> Wallet:
    wallet = await Wallet.filter(user_id=user_id).order_by("created_at").select_for_update().using_db(conn).first()
    if wallet is None:
        raise ConsistencyViolation(f"No wallet projected for user {user_id}")
    return wallet


async def project_user_created(payload: UserCreatedV1, event: LedgerEvent, conn: Any):
    await UserProfile.update_or_create(
        user_id=payload.user_id,
        defaults={
            "country_code": payload.country_code,
            "user_type": payload.user_type,
            "status": "ACTIVE",
            "created_at": payload.created_at or event.timestamp,
            "updated_at": event.timestamp,
        },
        using_db=conn,
    )
    log.info(f"UserProfile {payload.user_id} projected.")


async def project_wallet_created(payload: WalletCreatedV1, event: LedgerEvent, conn: Any):
    await Wallet.update_or_create(
        wallet_id=payload.wallet_id,
        defaults={
            "user_id": payload.user_id,
            "account_id": payload.account_id,
            "wallet_name": payload.wallet_name or "Primary Wallet",
            "cached_balance": payload.initial_balance,
            "created_at": event.timestamp,
            "updated_at": event.timestamp,
        },
        using_db=conn,
    )
    log.info(f"Wallet {payload.wallet_id} projected for user {payload.user_id}.")


async def project_genesis_distributed(payload: GenesisDistributedV1, event: LedgerEvent, conn: Any):
    wallet = await _wallet_of(payload.user_id, conn)
    wallet.cached_balance = wallet.cached_balance + payload.amount
    wallet.updated_at = event.timestamp
    await wallet.save(update_fields=["cached_balance", "updated_at"], using_db=conn)

    await WalletTransaction.create(
        wallet=wallet,
        ledger_tx_id=event.tx_id,
        direction=TransactionDirection.RECEIVE,
        counterparty=GENESIS_COUNTERPARTY,
        amount=payload.amount,
        fee=Decimal("0"),
        remark=payload.distribution_phase,
        block_number=event.block_number,
        occurred_at=event.timestamp,
        using_db=conn,
    )
    log.info(f"Genesis of {payload.amount} credited to wallet {wallet.wallet_id}.")


async def project_transfer_completed(payload: TransferCompletedV1, event: LedgerEvent, conn: Any):
    sender = await _wallet_of(payload.from_user_id, conn)
    receiver = sender if payload.to_user_id == payload.from_user_id else await _wallet_of(payload.to_user_id, conn)

    if sender is receiver:
        # Self-transfer only costs the fee
        sender.cached_balance, _ = transfer_balances(sender.cached_balance, sender.cached_balance, Decimal("0"), payload.fee)
    else:
        sender.cached_balance, receiver.cached_balance = transfer_balances(
            sender.cached_balance, receiver.cached_balance, payload.amount, payload.fee
        )

    for wallet in {sender.wallet_id: sender, receiver.wallet_id: receiver}.values():
        wallet.updated_at = event.timestamp
        await wallet.save(update_fields=["cached_balance", "updated_at"], using_db=conn)

    await WalletTransaction.create(
        wallet=sender,
        ledger_tx_id=event.tx_id,
        direction=TransactionDirection.SEND,
        counterparty=payload.to_user_id,
        amount=payload.amount,
        fee=payload.fee,
        remark=payload.remark,
        block_number=event.block_number,
        occurred_at=event.timestamp,
        using_db=conn,
    )
    await WalletTransaction.create(
        wallet=receiver,
        ledger_tx_id=event.tx_id,
        direction=TransactionDirection.RECEIVE,
        counterparty=payload.from_user_id,
        amount=payload.amount,
        fee=Decimal("0"),
        remark=payload.remark,
        block_number=event.block_number,
        occurred_at=event.timestamp,
        using_db=conn,
    )
    log.info(f"Transfer {payload.transaction_id} projected: {payload.from_user_id} -> {payload.to_user_id} ({payload.amount}).")


async def project_wallet_status(user_id: str, status: WalletStatus, reason, event: LedgerEvent, conn: Any):
    wallet = await _wallet_of(user_id, conn)
    wallet.status = status
    wallet.frozen_reason = reason
    wallet.updated_at = event.timestamp
    await wallet.save(update_fields=["status", "frozen_reason", "updated_at"], using_db=conn)
    log.info(f"Wallet {wallet.wallet_id} status -> {status.value}.")


async def project_wallet_frozen(payload: WalletFrozenV1, event: LedgerEvent, conn: Any):
    await project_wallet_status(payload.user_id, WalletStatus.FROZEN, payload.reason, event, conn)


async def project_wallet_unfrozen(payload: WalletUnfrozenV1, event: LedgerEvent, conn: Any):
    await project_wallet_status(payload.user_id, WalletStatus.ACTIVE, None, event, conn)


async def apply_event(event_name: EventName, payload: EventPayload, event: LedgerEvent, conn: Any):
    """Routes a validated event to the projection for its name."""
    if event_name == EventName.USER_CREATED:
        await project_user_created(payload, event, conn)

    elif event_name == EventName.WALLET_CREATED:
        await project_wallet_created(payload, event, conn)

    elif event_name == EventName.GENESIS_DISTRIBUTED:
        await project_genesis_distributed(payload, event, conn)

    elif event_name == EventName.TRANSFER_COMPLETED:
        await project_transfer_completed(payload, event, conn)

    elif event_name == EventName.WALLET_FROZEN:
        await project_wallet_frozen(payload, event, conn)

    elif event_name == EventName.WALLET_UNFROZEN:
        await project_wallet_unfrozen(payload, event, conn)

    else:
        raise ConsistencyViolation(f"No projection registered for event {event_name}")
