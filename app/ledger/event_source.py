from typing import AsyncIterator, Optional, Protocol

from app.schemas.events import LedgerEvent, Position


class EventSource(Protocol):
    """
    Ordered, resumable feed of committed ledger events for one channel.

    `stream` yields events positioned strictly after `after` (or from the start of
    the channel when `after` is None) in (block_number, tx_index) order. Delivery is
    at-least-once: an event may be yielded again after a reconnect.

    Every event must carry its real `tx_index`. Two transactions of one block share
    a block number, and an event without its index would sort onto the checkpoint
    and be taken for a duplicate; `LedgerEvent` refuses to build without one.
    """

    def stream(self, channel_name: str, after: Optional[Position]) -> AsyncIterator[LedgerEvent]: ...
