import logging
from typing import Any, Dict, Tuple

from app.models.dead_letter import DeadLetterEntry, DeadLetterSource

log = logging.getLogger("dead_letters")


async def record_dead_letter(
    source_type: DeadLetterSource,
    source_id: str,
    reason: str,
    payload_snapshot: Dict[str, Any],
    conn: Any = None
) -> Tuple[DeadLetterEntry, bool]:
    """
    Creates a DeadLetterEntry using the provided database connection (transaction).

    Passing 'conn' makes the entry part of the same commit as the status change it explains.
    A source that was already dead-lettered keeps its first entry.
    """
    entry, created = await DeadLetterEntry.get_or_create(
        source_type=source_type,
        source_id=str(source_id),
        defaults={"reason": reason, "payload_snapshot": payload_snapshot},
        using_db=conn
    )
    if created:
        log.error(f"DEAD LETTER: {source_type.value} {source_id} - {reason}")
    return entry, created
