from enum import Enum
from tortoise import fields, models
import uuid


class CommandStatus(str, Enum):
    PENDING = "PENDING"  # Waiting to be claimed (new, or retry after backoff)
    SUBMITTING = "SUBMITTING"  # Claimed by a worker holding a lease
    SUCCESS = "SUCCESS"  # Ledger returned a transaction id
    FAILED = "FAILED"  # Permanent failure, dead-lettered


class CommandType(str, Enum):
    CREATE_USER = "CREATE_USER"
    DISTRIBUTE_GENESIS = "DISTRIBUTE_GENESIS"
    TRANSFER_TOKENS = "TRANSFER_TOKENS"
    FREEZE_WALLET = "FREEZE_WALLET"
    UNFREEZE_WALLET = "UNFREEZE_WALLET"


class OutboxCommand(models.Model):
    """
    Durable write intent waiting to be delivered to the ledger.
    Rows are never deleted; only the status moves forward.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    tenant_id = fields.CharField(max_length=64)
    service = fields.CharField(max_length=64) # e.g., 'svc-identity', 'svc-tokenomics'
    request_id = fields.CharField(max_length=128) # Client-supplied idempotency key
    command_type = fields.CharEnumField(CommandType, max_length=32)
    payload = fields.JSONField()
    status = fields.CharEnumField(CommandStatus, default=CommandStatus.PENDING, max_length=16)
    attempts = fields.IntField(default=0)
    last_error = fields.TextField(null=True)
    ledger_tx_id = fields.CharField(max_length=128, null=True)
    submitted_at = fields.DatetimeField(null=True)
    next_attempt_at = fields.DatetimeField()
    # Lease: who holds the claim, until when, and the token proving it
    lease_owner = fields.CharField(max_length=128, null=True)
    lease_token = fields.UUIDField(null=True)
    lease_expires_at = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField()
    updated_at = fields.DatetimeField()

    class Meta:
        table = "outbox_commands"
        unique_together = (("tenant_id", "service", "request_id"),)
        indexes = [
            ("status", "next_attempt_at"),   # Claim scan for PENDING rows
            ("status", "lease_expires_at"),  # Claim scan for expired leases
            ("lease_token",),
        ]

    def __str__(self):
        return f"OutboxCommand({self.id}, {self.command_type}, {self.status})"
