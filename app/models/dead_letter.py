from enum import Enum
from tortoise import fields, models
import uuid


class DeadLetterSource(str, Enum):
    COMMAND = "COMMAND"
    EVENT = "EVENT"


class DeadLetterEntry(models.Model):
    """
    Permanent failure record kept for operators. The core never retries these;
    replay tooling sets resolved_at once an entry has been handled.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    source_type = fields.CharEnumField(DeadLetterSource, max_length=16)
    source_id = fields.CharField(max_length=128) # Command id or ledger event id
    reason = fields.TextField()
    payload_snapshot = fields.JSONField()
    created_at = fields.DatetimeField(auto_now_add=True)
    resolved_at = fields.DatetimeField(null=True)

    class Meta:
        table = "dead_letters"
        unique_together = (("source_type", "source_id"),)
        indexes = [
            ("resolved_at",),  # Unresolved count for readiness
        ]
