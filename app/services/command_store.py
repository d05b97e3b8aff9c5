import logging
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel
from tortoise import timezone
from tortoise.expressions import Q
from tortoise.transactions import in_transaction

from app.events.dead_letter_utility import record_dead_letter
from app.models.dead_letter import DeadLetterSource
from app.models.outbox import CommandStatus, CommandType, OutboxCommand
from app.schemas.commands import parse_command_payload

log = logging.getLogger("command_store")


class OutcomeKind(str, Enum):
    CONFIRMED = "CONFIRMED"  # Ledger returned a transaction id
    TRANSIENT = "TRANSIENT"  # Timeout, network error, retry-safe rejection
    PERMANENT = "PERMANENT"  # Validation or business rejection


class SubmissionOutcome(BaseModel):
    kind: OutcomeKind
    ledger_tx_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def confirmed(cls, ledger_tx_id: str) -> "SubmissionOutcome":
        return cls(kind=OutcomeKind.CONFIRMED, ledger_tx_id=ledger_tx_id)

    @classmethod
    def transient(cls, error: str) -> "SubmissionOutcome":
        return cls(kind=OutcomeKind.TRANSIENT, error=error)

    @classmethod
    def permanent(cls, error: str) -> "SubmissionOutcome":
        return cls(kind=OutcomeKind.PERMANENT, error=error)


class RetryPolicy(BaseModel):
    max_attempts: int
    backoff_base: float
    backoff_cap: float

    def delay_for(self, attempts: int) -> float:
        """Backoff in seconds after the given number of failed attempts."""
        if attempts <= 0:
            return 0.0
        return min(self.backoff_base * (2 ** (attempts - 1)), self.backoff_cap)


def build_idempotency_key(command: OutboxCommand) -> str:
    """Key the ledger-side handler deduplicates on. Stable across every retry of a command."""
    return f"{command.tenant_id}:{command.service}:{command.request_id}"


def _claimable(now: datetime) -> Q:
    return Q(status=CommandStatus.PENDING, next_attempt_at__lte=now) | Q(
        status=CommandStatus.SUBMITTING, lease_expires_at__lt=now
    )


async def enqueue(
    tenant_id: str,
    service: str,
    request_id: str,
    command_type: CommandType,
    payload: Dict[str, Any],
) -> OutboxCommand:
    """
    Durably records a command in status PENDING.

    A repeated (tenant_id, service, request_id) returns the row created by the first
    call unchanged, so callers can retry their own network calls safely.
    Raises ValidationError if the payload does not match the command type.
    """
    typed_payload = parse_command_payload(command_type, payload)
    now = timezone.now()
    command, created = await OutboxCommand.get_or_create(
        tenant_id=tenant_id,
        service=service,
        request_id=request_id,
        defaults={
            "command_type": CommandType(command_type),
            "payload": typed_payload.model_dump(mode="json", by_alias=True),
            "status": CommandStatus.PENDING,
            "attempts": 0,
            "next_attempt_at": now,
            "created_at": now,
            "updated_at": now,
        },
    )
    if created:
        log.info(f"Command {command.id} ({command.command_type.value}) enqueued -> {command.status.value}")
    else:
        log.info(f"Idempotency: request {tenant_id}/{service}/{request_id} already stored as {command.id}")
    return command


async def get_command(command_id: UUID) -> Optional[OutboxCommand]:
    return await OutboxCommand.get_or_none(id=command_id)


async def claim_pending(
    limit: int,
    lease_duration: float,
    worker_id: str,
    now: Optional[datetime] = None,
) -> List[OutboxCommand]:
    """
    Atomically moves up to `limit` claimable commands to SUBMITTING under a fresh lease.

    Claimable means PENDING and due, or SUBMITTING with an expired lease (the previous
    owner died). The update re-checks the claim predicate, so two workers racing for the
    same row cannot both win it even where row locks are unavailable.
    """
    now = now or timezone.now()
    token = uuid.uuid4()
    async with in_transaction() as conn:
        # Lock candidate rows; concurrent workers skip them instead of waiting
        candidates = await (
            OutboxCommand.filter(_claimable(now))
            .order_by("created_at")
            .limit(limit)
            .select_for_update(skip_locked=True)
            .using_db(conn)
        )
        if not candidates:
            return []

        await OutboxCommand.filter(id__in=[c.id for c in candidates]).filter(_claimable(now)).using_db(conn).update(
            status=CommandStatus.SUBMITTING,
            lease_owner=worker_id,
            lease_token=token,
            lease_expires_at=now + timedelta(seconds=lease_duration),
            updated_at=now,
        )
        claimed = await OutboxCommand.filter(lease_token=token).order_by("created_at").using_db(conn)

    for command in claimed:
        log.info(f"Command {command.id} claimed by {worker_id} -> {command.status.value} (attempts={command.attempts})")
    return claimed


async def mark_result(
    command_id: UUID,
    lease_token: UUID,
    outcome: SubmissionOutcome,
    policy: RetryPolicy,
    now: Optional[datetime] = None,
) -> Optional[OutboxCommand]:
    """
    Records the result of one submission attempt.

    SUBMITTING -> SUCCESS on confirmation. Failures increment attempts and go back to
    PENDING with backoff, or to FAILED with a DeadLetterEntry when the failure is
    permanent or the attempt ceiling is reached.

    Returns None without touching the row if the lease token no longer matches, i.e.
    the lease expired and another worker reclaimed the command.
    """
    now = now or timezone.now()
    async with in_transaction() as conn:
        command = await (
            OutboxCommand.filter(id=command_id, lease_token=lease_token, status=CommandStatus.SUBMITTING)
            .select_for_update()
            .using_db(conn)
            .first()
        )
        if command is None:
            log.warning(f"Command {command_id}: lease {lease_token} no longer held, result {outcome.kind.value} dropped.")
            return None

        command.lease_owner = None
        command.lease_token = None
        command.lease_expires_at = None
        command.updated_at = now

        if outcome.kind == OutcomeKind.CONFIRMED:
            command.status = CommandStatus.SUCCESS
            command.ledger_tx_id = outcome.ledger_tx_id
            command.submitted_at = now
            command.last_error = None
            await command.save(using_db=conn)
            log.info(f"Command {command.id} -> {command.status.value} (ledger tx {command.ledger_tx_id})")
            return command

        command.attempts += 1
        command.last_error = outcome.error
        exhausted = command.attempts >= policy.max_attempts

        if outcome.kind == OutcomeKind.TRANSIENT and not exhausted:
            delay = policy.delay_for(command.attempts)
            command.status = CommandStatus.PENDING
            command.next_attempt_at = now + timedelta(seconds=delay)
            await command.save(using_db=conn)
            log.warning(
                f"Command {command.id} -> {command.status.value} "
                f"(attempt {command.attempts}/{policy.max_attempts} failed: {outcome.error}; retry in {delay:.1f}s)"
            )
            return command

        command.status = CommandStatus.FAILED
        await command.save(using_db=conn)
        reason = outcome.error if outcome.kind == OutcomeKind.PERMANENT else (
            f"Max attempts ({policy.max_attempts}) exceeded. Last error: {outcome.error}"
        )
        await record_dead_letter(
            source_type=DeadLetterSource.COMMAND,
            source_id=str(command.id),
            reason=reason or "unknown error",
            payload_snapshot={
                "tenantId": command.tenant_id,
                "service": command.service,
                "requestId": command.request_id,
                "commandType": command.command_type.value,
                "payload": command.payload,
                "attempts": command.attempts,
            },
            conn=conn,
        )
        log.error(f"Command {command.id} -> {command.status.value} after {command.attempts} attempt(s): {reason}")
    return command


async def renew_lease(
    command_id: UUID,
    lease_token: UUID,
    lease_duration: float,
    now: Optional[datetime] = None,
) -> bool:
    """
    Extends a held lease to `now + lease_duration` just before the ledger call.

    Compare-and-set on the lease token: returns False once another worker has
    reclaimed the command, in which case it must not be submitted again.
    """
    now = now or timezone.now()
    renewed = await OutboxCommand.filter(
        id=command_id, lease_token=lease_token, status=CommandStatus.SUBMITTING
    ).update(
        lease_expires_at=now + timedelta(seconds=lease_duration),
        updated_at=now,
    )
    if not renewed:
        log.warning(f"Command {command_id}: lease {lease_token} was reclaimed before submission; skipped.")
    return bool(renewed)


async def release(commands: List[OutboxCommand]) -> int:
    """Hands claimed-but-unstarted commands back to PENDING, keeping their attempt count."""
    if not commands:
        return 0
    now = timezone.now()
    released = 0
    for command in commands:
        released += await OutboxCommand.filter(
            id=command.id, lease_token=command.lease_token, status=CommandStatus.SUBMITTING
        ).update(
            status=CommandStatus.PENDING,
            lease_owner=None,
            lease_token=None,
            lease_expires_at=None,
            next_attempt_at=now,
            updated_at=now,
        )
        log.info(f"Command {command.id} released -> {CommandStatus.PENDING.value}")
    return released
