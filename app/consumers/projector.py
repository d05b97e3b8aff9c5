import asyncio
import logging
import signal
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional

from tortoise import timezone
from tortoise.exceptions import DBConnectionError, IntegrityError, OperationalError
from tortoise.transactions import in_transaction

from app.consumers.projections import apply_event
from app.core.config import EVENT_SOURCE_FACTORY, PROJECTOR_CHANNELS, PoisonPillPolicy, ProjectorConfig, load_factory
from app.core.db import close_db, init_db
from app.core.errors import CheckpointConflict, ConsistencyViolation, TransientInfrastructureError, ValidationError
from app.events.dead_letter_utility import record_dead_letter
from app.ledger.event_source import EventSource
from app.models.applied_event import AppliedEvent
from app.models.checkpoint import ProjectorCheckpoint
from app.models.dead_letter import DeadLetterSource
from app.schemas.events import EventName, EventPayload, LedgerEvent, Position
from app.services.schema_validator import SchemaValidator

log = logging.getLogger("projector")


class ApplyResult(str, Enum):
    APPLIED = "APPLIED"
    SKIPPED = "SKIPPED"  # Already reflected in the read models
    DEAD_LETTERED = "DEAD_LETTERED"  # Rejected and stepped over (skip policy)
    HALTED = "HALTED"  # Rejected, channel stopped (halt policy or consistency violation)


class Projector:
    """
    Single writer for the read models of one channel.

    Events are applied strictly in (block_number, tx_index) order. The read-model
    change, the apply-log row and the checkpoint advance commit together, so the
    checkpoint can never run ahead of or behind what the read models reflect.
    """

    def __init__(
        self,
        channel_name: str,
        source: EventSource,
        validator: Optional[SchemaValidator] = None,
        config: Optional[ProjectorConfig] = None,
        clock: Callable = timezone.now,
    ):
        self.channel_name = channel_name
        self.source = source
        self.validator = validator or SchemaValidator()
        self.config = config or ProjectorConfig()
        self.clock = clock
        self.position: Optional[Position] = None
        self.halted = False
        self._stopping = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self):
        """Stops reading new events; the event being applied is allowed to finish."""
        self._stopping.set()

    async def load_checkpoint(self) -> Optional[Position]:
        checkpoint = await ProjectorCheckpoint.get_or_none(channel_name=self.channel_name)
        self.position = self._position_of(checkpoint)
        return self.position

    @staticmethod
    def _position_of(checkpoint: Optional[ProjectorCheckpoint]) -> Optional[Position]:
        if checkpoint is None:
            return None
        return Position(checkpoint.last_block_number, checkpoint.last_tx_index)

    async def _already_applied(self, event: LedgerEvent) -> bool:
        if self.position is not None and event.position <= self.position:
            return True
        return await AppliedEvent.filter(event_id=event.event_id).exists()

    async def handle_event(self, event: LedgerEvent) -> ApplyResult:
        """Validates and applies one event, or decides it is a duplicate or a poison pill."""
        if self.halted:
            return ApplyResult.HALTED

        if event.channel_name != self.channel_name:
            log.warning(f"Event {event.event_id} belongs to channel {event.channel_name}, not {self.channel_name}; ignored.")
            return ApplyResult.SKIPPED

        if await self._already_applied(event):
            log.info(f"Idempotency: event {event.event_id} at {tuple(event.position)} already applied.")
            return ApplyResult.SKIPPED

        try:
            payload = self.validator.validate(event.event_name, event.event_version, event.payload)
        except ValidationError as e:
            return await self._reject(event, f"{e}: {'; '.join(e.errors)}")

        try:
            await self._apply(EventName(event.event_name), payload, event)
        except CheckpointConflict as e:
            return await self._halt(event, f"Checkpoint conflict: {e}", dead_letter=False)
        except ConsistencyViolation as e:
            return await self._halt(event, f"Consistency violation: {e}")
        except IntegrityError as e:
            return await self._reject(event, f"Apply failed: {e}")
        except (DBConnectionError, OperationalError) as e:
            raise TransientInfrastructureError(f"Database unavailable while applying {event.event_id}: {e}") from e
        except Exception as e:
            log.exception(f"Projection of event {event.event_id} failed")
            return await self._reject(event, f"Apply failed: {type(e).__name__}: {e}")

        log.info(f"Event {event.event_name} {event.event_id} applied at {tuple(event.position)}.")
        return ApplyResult.APPLIED

    async def _locked_checkpoint(self, conn) -> Optional[ProjectorCheckpoint]:
        checkpoint = await (
            ProjectorCheckpoint.filter(channel_name=self.channel_name).select_for_update().using_db(conn).first()
        )
        stored = self._position_of(checkpoint)
        if stored != self.position:
            raise CheckpointConflict(
                f"Checkpoint of {self.channel_name} is {stored}, projector expected {self.position}; "
                f"is another projector writing this channel?"
            )
        return checkpoint

    async def _advance(self, checkpoint: Optional[ProjectorCheckpoint], event: LedgerEvent, conn):
        now = self.clock()
        if checkpoint is None:
            await ProjectorCheckpoint.create(
                channel_name=self.channel_name,
                last_block_number=event.block_number,
                last_tx_index=event.tx_index,
                last_event_id=event.event_id,
                updated_at=now,
                using_db=conn,
            )
            return
        checkpoint.last_block_number = event.block_number
        checkpoint.last_tx_index = event.tx_index
        checkpoint.last_event_id = event.event_id
        checkpoint.updated_at = now
        await checkpoint.save(using_db=conn)

    async def _apply(self, event_name: EventName, payload: EventPayload, event: LedgerEvent):
        async with in_transaction() as conn:
            checkpoint = await self._locked_checkpoint(conn)
            await apply_event(event_name, payload, event, conn)
            await AppliedEvent.create(
                event_id=event.event_id,
                event_name=event.event_name,
                channel_name=self.channel_name,
                block_number=event.block_number,
                tx_index=event.tx_index,
                using_db=conn,
            )
            await self._advance(checkpoint, event, conn)
        self.position = event.position

    async def _reject(self, event: LedgerEvent, reason: str) -> ApplyResult:
        if self.config.poison_pill_policy != PoisonPillPolicy.SKIP:
            return await self._halt(event, reason)

        try:
            async with in_transaction() as conn:
                checkpoint = await self._locked_checkpoint(conn)
                await record_dead_letter(
                    DeadLetterSource.EVENT, event.event_id, reason, event.model_dump(mode="json", by_alias=True), conn=conn
                )
                await self._advance(checkpoint, event, conn)
        except CheckpointConflict as e:
            return await self._halt(event, f"Checkpoint conflict: {e}", dead_letter=False)
        self.position = event.position
        log.warning(f"Event {event.event_id} at {tuple(event.position)} dead-lettered and skipped: {reason}")
        return ApplyResult.DEAD_LETTERED

    async def _halt(self, event: LedgerEvent, reason: str, dead_letter: bool = True) -> ApplyResult:
        """
        Stops the channel before `event`. The event is dead-lettered unless the halt is
        a checkpoint conflict, where the event itself is fine and applies after a restart.
        """
        if dead_letter:
            await record_dead_letter(
                DeadLetterSource.EVENT, event.event_id, reason, event.model_dump(mode="json", by_alias=True)
            )
        self.halted = True
        self.stop()
        log.critical(
            f"Projection of channel {self.channel_name} HALTED at event {event.event_id} "
            f"{tuple(event.position)}; checkpoint stays at {self.position}. Reason: {reason}"
        )
        return ApplyResult.HALTED

    async def _next_event(self, iterator: AsyncIterator[LedgerEvent]) -> Optional[LedgerEvent]:
        """Next event from the feed, or None when the feed ends or a stop is requested."""
        next_task = asyncio.ensure_future(iterator.__anext__())
        stop_task = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({next_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
        if not next_task.done():
            next_task.cancel()
            # Let the feed unwind before it is closed
            await asyncio.gather(next_task, return_exceptions=True)
            return None
        try:
            return next_task.result()
        except StopAsyncIteration:
            return None

    async def run_once(self) -> int:
        """Subscribes from the stored checkpoint and drains the feed. Returns the number of events applied."""
        await self.load_checkpoint()
        iterator = self.source.stream(self.channel_name, self.position).__aiter__()
        applied = 0
        try:
            while not self.stopping:
                event = await self._next_event(iterator)
                if event is None:
                    break
                result = await self.handle_event(event)
                if result == ApplyResult.APPLIED:
                    applied += 1
                elif result == ApplyResult.HALTED:
                    break
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        return applied

    async def run(self):
        """Main loop: resubscribe from the checkpoint whenever the feed ends or fails, until stopped or halted."""
        log.info(f"--- Projector for channel {self.channel_name} Started ---")
        while not self.stopping:
            try:
                await self.run_once()
            except TransientInfrastructureError as e:
                log.warning(f"Projector {self.channel_name}: {e}. Resuming from checkpoint.")
            except Exception as e:
                log.exception(f"Projector {self.channel_name}: event stream error: {e}. Resubscribing.")

            if not self.stopping:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.config.poll_interval)
                except asyncio.TimeoutError:
                    pass

        if self.halted:
            log.critical(f"--- Projector for channel {self.channel_name} Halted; operator action required ---")
        else:
            log.info(f"--- Projector for channel {self.channel_name} Stopped ---")


async def start_projectors(source: EventSource, channels: List[str], config: Optional[ProjectorConfig] = None):
    """Process entry point: one projector per channel, stopped together on SIGINT/SIGTERM."""
    await init_db()
    projectors = [Projector(channel, source, config=config) for channel in channels]
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: [p.stop() for p in projectors])
    try:
        await asyncio.gather(*(p.run() for p in projectors))
    finally:
        await close_db()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    if not EVENT_SOURCE_FACTORY:
        raise SystemExit("EVENT_SOURCE_FACTORY must name a 'module:callable' returning an event source.")
    asyncio.run(start_projectors(load_factory(EVENT_SOURCE_FACTORY)(), PROJECTOR_CHANNELS))
