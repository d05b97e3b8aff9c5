from tortoise import fields, models


class ProjectorCheckpoint(models.Model):
    """
    Last ledger position reflected in the read models of one channel.
    Written only inside the transaction that applies the event at that position.
    """
    channel_name = fields.CharField(max_length=128, primary_key=True)
    last_block_number = fields.BigIntField()
    last_tx_index = fields.IntField()
    last_event_id = fields.CharField(max_length=64)
    updated_at = fields.DatetimeField()

    class Meta:
        table = "projector_checkpoints"
