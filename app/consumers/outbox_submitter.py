import asyncio
import logging
import signal
from typing import Callable, List, Optional

from tortoise import timezone

from app.core.config import LEDGER_ADAPTER_FACTORY, SubmitterConfig, load_factory
from app.core.db import close_db, init_db
from app.core.errors import PermanentLedgerRejection, TransientInfrastructureError, ValidationError
from app.ledger.adapter import LedgerAdapter
from app.models.outbox import OutboxCommand
from app.schemas.commands import parse_command_payload
from app.services.command_store import (
    RetryPolicy,
    SubmissionOutcome,
    build_idempotency_key,
    claim_pending,
    mark_result,
    release,
    renew_lease,
)

log = logging.getLogger("outbox_submitter")


class OutboxSubmitter:
    """
    Delivers outbox commands to the ledger.

    Any number of submitters may run side by side; the lease taken by
    claim_pending is the only thing keeping two of them off the same command.
    No database transaction is held open while the ledger call is in flight.
    """

    def __init__(
        self,
        adapter: LedgerAdapter,
        config: Optional[SubmitterConfig] = None,
        clock: Callable = timezone.now,
    ):
        self.adapter = adapter
        self.config = config or SubmitterConfig()
        self.clock = clock
        self.policy = RetryPolicy(
            max_attempts=self.config.max_attempts,
            backoff_base=self.config.backoff_base,
            backoff_cap=self.config.backoff_cap,
        )
        self._stopping = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self):
        """Stops claiming new commands; the command in flight is allowed to finish."""
        if not self._stopping.is_set():
            log.info(f"Submitter {self.config.worker_id} stopping.")
        self._stopping.set()

    async def submit_command(self, command: OutboxCommand) -> Optional[OutboxCommand]:
        """
        Runs one submission attempt for a claimed command and records the outcome.

        The lease is renewed first, so every ledger call starts with a full lease
        ahead of it however long the batch has been running. Returns None without
        calling the ledger if the command was reclaimed in the meantime.
        """
        if not await renew_lease(command.id, command.lease_token, self.config.lease_duration, now=self.clock()):
            return None
        outcome = await self._attempt(command)
        return await mark_result(command.id, command.lease_token, outcome, self.policy, now=self.clock())

    async def _attempt(self, command: OutboxCommand) -> SubmissionOutcome:
        try:
            payload = parse_command_payload(command.command_type, command.payload)
        except ValidationError as e:
            return SubmissionOutcome.permanent(f"{e}: {'; '.join(e.errors)}")

        log.info(f"Submitting command {command.id} ({command.command_type.value}, attempt {command.attempts + 1})")
        try:
            receipt = await asyncio.wait_for(
                self.adapter.submit(command.command_type, payload, build_idempotency_key(command)),
                timeout=self.config.submit_timeout,
            )
        except asyncio.TimeoutError:
            # The ledger may still commit; the retry reuses the same idempotency key
            return SubmissionOutcome.transient(f"Ledger call timed out after {self.config.submit_timeout}s")
        except TransientInfrastructureError as e:
            return SubmissionOutcome.transient(str(e))
        except PermanentLedgerRejection as e:
            return SubmissionOutcome.permanent(e.reason)
        except ValidationError as e:
            return SubmissionOutcome.permanent(str(e))
        except Exception as e:
            log.exception(f"Unclassified adapter error for command {command.id}")
            return SubmissionOutcome.transient(f"{type(e).__name__}: {e}")

        return SubmissionOutcome.confirmed(receipt.ledger_tx_id)

    async def process_batch(self) -> int:
        """Claims one batch and submits it command by command. Returns the number claimed."""
        if self.stopping:
            return 0

        commands: List[OutboxCommand] = await claim_pending(
            limit=self.config.batch_size,
            lease_duration=self.config.lease_duration,
            worker_id=self.config.worker_id,
            now=self.clock(),
        )
        if not commands:
            return 0

        log.info(f"Processing batch of {len(commands)} command(s)")
        for index, command in enumerate(commands):
            if self.stopping:
                await release(commands[index:])
                break
            await self.submit_command(command)
        return len(commands)

    async def run(self):
        """Main loop: poll until stop() is called, sleeping only when there was nothing to do."""
        log.info(
            f"--- Outbox Submitter {self.config.worker_id} Started "
            f"(batch={self.config.batch_size}, lease={self.config.lease_duration}s) ---"
        )
        while not self.stopping:
            try:
                claimed = await self.process_batch()
            except Exception as e:
                log.exception(f"Submitter encountered a critical DB error: {e}.")
                claimed = 0

            if not claimed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.config.poll_interval)
                except asyncio.TimeoutError:
                    pass
        log.info(f"--- Outbox Submitter {self.config.worker_id} Stopped ---")


async def start_outbox_submitter(adapter: LedgerAdapter, config: Optional[SubmitterConfig] = None):
    """Process entry point: connects the database, runs until SIGINT/SIGTERM, then disconnects."""
    await init_db()
    submitter = OutboxSubmitter(adapter, config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, submitter.stop)
    try:
        await submitter.run()
    finally:
        await close_db()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    if not LEDGER_ADAPTER_FACTORY:
        raise SystemExit("LEDGER_ADAPTER_FACTORY must name a 'module:callable' returning a ledger adapter.")
    asyncio.run(start_outbox_submitter(load_factory(LEDGER_ADAPTER_FACTORY)()))
