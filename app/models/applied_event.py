from tortoise import fields, models
import uuid


class AppliedEvent(models.Model):
    """
    Apply log used for idempotency in the projector. Stores the id of every
    ledger event reflected in the read models so a redelivery is a no-op.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    event_id = fields.CharField(max_length=64, unique=True)
    event_name = fields.CharField(max_length=64)
    channel_name = fields.CharField(max_length=128)
    block_number = fields.BigIntField()
    tx_index = fields.IntField()
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "applied_events"
        indexes = [
            ("channel_name", "block_number", "tx_index"),
        ]
