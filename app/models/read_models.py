from enum import Enum
from tortoise import fields, models
import uuid


class WalletStatus(str, Enum):
    ACTIVE = "ACTIVE"
    FROZEN = "FROZEN"


class TransactionDirection(str, Enum):
    SEND = "SEND"
    RECEIVE = "RECEIVE"


class UserProfile(models.Model):
    user_id = fields.CharField(max_length=64, primary_key=True)
    country_code = fields.CharField(max_length=8)
    user_type = fields.CharField(max_length=32)
    status = fields.CharField(max_length=16, default="ACTIVE")
    created_at = fields.DatetimeField()
    updated_at = fields.DatetimeField()

    class Meta:
        table = "user_profiles"
        indexes = [
            ("country_code",),
        ]


class Wallet(models.Model):
    wallet_id = fields.CharField(max_length=64, primary_key=True)
    user_id = fields.CharField(max_length=64)
    account_id = fields.CharField(max_length=64)
    wallet_name = fields.CharField(max_length=128, default="Primary Wallet")
    # Cached from the ledger, the authoritative balance lives on-chain
    cached_balance = fields.DecimalField(max_digits=30, decimal_places=9, default=0)
    status = fields.CharEnumField(WalletStatus, default=WalletStatus.ACTIVE, max_length=16)
    frozen_reason = fields.TextField(null=True)
    created_at = fields.DatetimeField()
    updated_at = fields.DatetimeField()

    class Meta:
        table = "wallets"
        indexes = [
            ("user_id",),  # Transfers address wallets by owner
        ]


class WalletTransaction(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    wallet = fields.ForeignKeyField("models.Wallet", related_name="transactions")
    ledger_tx_id = fields.CharField(max_length=128)
    direction = fields.CharEnumField(TransactionDirection, max_length=16)
    counterparty = fields.CharField(max_length=64)
    amount = fields.DecimalField(max_digits=30, decimal_places=9)
    fee = fields.DecimalField(max_digits=30, decimal_places=9, default=0)
    remark = fields.TextField(null=True)
    block_number = fields.BigIntField()
    occurred_at = fields.DatetimeField()

    class Meta:
        table = "wallet_transactions"
        unique_together = (("wallet", "ledger_tx_id", "direction"),)
        indexes = [
            ("wallet_id", "occurred_at"),  # Wallet history, newest first
        ]
