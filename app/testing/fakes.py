import asyncio
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, List, Optional, Union

from app.ledger.adapter import LedgerReceipt
from app.models.outbox import CommandType
from app.schemas.commands import CommandPayload
from app.schemas.events import LedgerEvent, Position


class ScriptedLedgerAdapter:
    """
    LedgerAdapter stand-in that plays back a script of results.

    Each entry is a ledger tx id (str), an exception instance to raise, or a
    number of seconds to hang (to exercise the submit timeout). Once the script
    is exhausted every call succeeds with a generated tx id.
    """

    def __init__(self, script: Optional[List[Union[str, Exception, float]]] = None):
        self.script = list(script or [])
        self.calls: List[tuple] = []

    async def submit(self, command_type: CommandType, payload: CommandPayload, idempotency_key: str) -> LedgerReceipt:
        self.calls.append((command_type, payload, idempotency_key))
        step = self.script.pop(0) if self.script else f"0x{len(self.calls):04x}"
        if isinstance(step, Exception):
            raise step
        if isinstance(step, (int, float)):
            await asyncio.sleep(step)
            return LedgerReceipt(ledger_tx_id=f"0xlate{len(self.calls)}")
        return LedgerReceipt(ledger_tx_id=step)


class InMemoryEventSource:
    """
    EventSource over a fixed list. Replays every event positioned after the
    resume point in list order, duplicates included.
    """

    def __init__(self, events: Optional[List[LedgerEvent]] = None):
        self.events = list(events or [])
        self.subscriptions: List[Optional[Position]] = []

    async def stream(self, channel_name: str, after: Optional[Position]) -> AsyncIterator[LedgerEvent]:
        self.subscriptions.append(after)
        for event in self.events:
            if event.channel_name != channel_name:
                continue
            if after is not None and event.position <= after:
                continue
            yield event


class FakeGateway:
    """Fabric gateway stand-in for ChaincodeLedgerAdapter: records calls, raises a queued error or returns a receipt."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: List[tuple] = []

    async def submit_transaction(self, contract: str, function: str, *args: str, transient: Any = None) -> dict:
        self.calls.append((contract, function, args, transient))
        if self.error is not None:
            raise self.error
        return {"transactionId": f"tx-{len(self.calls)}", "blockNumber": 42}


class GatewayError(Exception):
    """Coded gateway error, the shape the Fabric SDK raises for endorsement and commit failures."""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


class ManualClock:
    """Callable clock for tests that need leases, backoff or lag to move deterministically."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now
