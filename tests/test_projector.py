import asyncio
from decimal import Decimal
from unittest.mock import patch

import pydantic
import pytest

from app.consumers.projector import ApplyResult, Projector
from app.core.config import PoisonPillPolicy, ProjectorConfig
from app.models.applied_event import AppliedEvent
from app.models.checkpoint import ProjectorCheckpoint
from app.models.dead_letter import DeadLetterEntry, DeadLetterSource
from app.models.read_models import UserProfile, Wallet, WalletStatus, WalletTransaction
from app.schemas.events import LedgerEvent, Position
from app.testing.fakes import InMemoryEventSource

CHANNEL = "gxchannel"


async def checkpoint_position():
    checkpoint = await ProjectorCheckpoint.get_or_none(channel_name=CHANNEL)
    if checkpoint is None:
        return None
    return Position(checkpoint.last_block_number, checkpoint.last_tx_index)


def wallet_event(make_event, block, user_id, balance="0"):
    return make_event(block, name="WalletCreated", payload={
        "walletId": f"w-{user_id}",
        "userId": user_id,
        "accountId": f"acc-{user_id}",
        "initialBalance": balance,
    })


def transfer_event(make_event, block, sender, receiver, amount, fee="0"):
    return make_event(block, name="TransferCompleted", payload={
        "transactionId": f"t-{block}",
        "fromUserId": sender,
        "toUserId": receiver,
        "amount": amount,
        "fee": fee,
    })


class TestIdempotency:

    @pytest.mark.asyncio
    async def test_redelivered_event_is_applied_once(self, db, make_event):
        projector = Projector(CHANNEL, InMemoryEventSource())
        await projector.load_checkpoint()
        event = make_event(10, 0, payload={"userId": "alice", "countryCode": "US", "userType": "individual"})

        assert await projector.handle_event(event) == ApplyResult.APPLIED
        assert await projector.handle_event(event) == ApplyResult.SKIPPED

        assert await checkpoint_position() == Position(10, 0)
        assert await UserProfile.all().count() == 1
        assert await AppliedEvent.all().count() == 1

    @pytest.mark.asyncio
    async def test_restarted_projector_skips_what_is_already_projected(self, db, make_event):
        event = make_event(3)
        first = Projector(CHANNEL, InMemoryEventSource())
        await first.load_checkpoint()
        await first.handle_event(event)

        restarted = Projector(CHANNEL, InMemoryEventSource())
        assert await restarted.load_checkpoint() == Position(3, 0)
        assert await restarted.handle_event(event) == ApplyResult.SKIPPED

    @pytest.mark.asyncio
    async def test_known_event_id_at_a_later_position_is_skipped(self, db, make_event):
        projector = Projector(CHANNEL, InMemoryEventSource())
        await projector.load_checkpoint()
        await projector.handle_event(make_event(1, event_id="evt-1"))

        replayed = make_event(2, event_id="evt-1")
        assert await projector.handle_event(replayed) == ApplyResult.SKIPPED
        assert await checkpoint_position() == Position(1, 0)

    @pytest.mark.asyncio
    async def test_event_from_another_channel_is_ignored(self, db, make_event):
        projector = Projector(CHANNEL, InMemoryEventSource())
        await projector.load_checkpoint()

        assert await projector.handle_event(make_event(1, channel="otherchannel")) == ApplyResult.SKIPPED
        assert await checkpoint_position() is None


class TestOrdering:

    @pytest.mark.asyncio
    async def test_checkpoint_ends_on_last_applied_position(self, db, make_event):
        events = [make_event(block, tx) for block in (1, 2) for tx in (0, 1, 2)]
        projector = Projector(CHANNEL, InMemoryEventSource(events))

        assert await projector.run_once() == 6
        assert await checkpoint_position() == Position(2, 2)
        assert await UserProfile.all().count() == 6

    @pytest.mark.asyncio
    async def test_duplicates_in_feed_and_resubscription_from_checkpoint(self, db, make_event):
        first, second = make_event(1), make_event(2)
        source = InMemoryEventSource([first, first, second])
        projector = Projector(CHANNEL, source)

        assert await projector.run_once() == 2
        assert await projector.run_once() == 0
        assert source.subscriptions == [None, Position(2, 0)]

    @pytest.mark.asyncio
    async def test_second_writer_on_the_channel_halts_the_projector(self, db, make_event):
        stale = Projector(CHANNEL, InMemoryEventSource())
        await stale.load_checkpoint()
        other = Projector(CHANNEL, InMemoryEventSource())
        await other.load_checkpoint()
        await other.handle_event(make_event(1))
        valid = make_event(2)

        assert await stale.handle_event(valid) == ApplyResult.HALTED
        assert stale.halted
        assert await checkpoint_position() == Position(1, 0)
        # The event is fine; only the writer was wrong
        assert await DeadLetterEntry.all().count() == 0

        restarted = Projector(CHANNEL, InMemoryEventSource())
        await restarted.load_checkpoint()
        assert await restarted.handle_event(valid) == ApplyResult.APPLIED

    @pytest.mark.asyncio
    async def test_second_writer_under_skip_policy_halts_without_dead_letter(self, db, make_event):
        config = ProjectorConfig(poison_pill_policy=PoisonPillPolicy.SKIP)
        stale = Projector(CHANNEL, InMemoryEventSource(), config=config)
        await stale.load_checkpoint()
        other = Projector(CHANNEL, InMemoryEventSource())
        await other.load_checkpoint()
        await other.handle_event(make_event(1))

        assert await stale.handle_event(make_event(2, version="9.9")) == ApplyResult.HALTED
        assert await DeadLetterEntry.all().count() == 0
        assert await checkpoint_position() == Position(1, 0)

    @pytest.mark.asyncio
    async def test_transactions_sharing_a_block_are_all_applied(self, db, make_event):
        events = [
            make_event(10, 0, payload={"userId": "alice", "countryCode": "US", "userType": "individual"}),
            make_event(10, 1, payload={"userId": "bob", "countryCode": "US", "userType": "individual"}),
        ]

        assert await Projector(CHANNEL, InMemoryEventSource(events)).run_once() == 2
        assert await UserProfile.all().count() == 2
        assert await checkpoint_position() == Position(10, 1)


def test_event_without_tx_index_is_refused(make_event):
    wire = make_event(10).model_dump(mode="json", by_alias=True)
    del wire["txIndex"]

    with pytest.raises(pydantic.ValidationError):
        LedgerEvent.model_validate(wire)


class TestPoisonPills:

    @pytest.mark.asyncio
    async def test_unknown_version_halts_before_the_event(self, db, make_event):
        poison = make_event(2, version="9.9")
        source = InMemoryEventSource([make_event(1), poison, make_event(3)])
        projector = Projector(CHANNEL, source)

        assert await projector.run_once() == 1

        assert projector.halted
        assert await checkpoint_position() == Position(1, 0)
        assert await UserProfile.all().count() == 1
        entry = await DeadLetterEntry.get(source_type=DeadLetterSource.EVENT)
        assert entry.source_id == poison.event_id
        assert "9.9" in entry.reason
        assert entry.payload_snapshot["eventVersion"] == "9.9"

    @pytest.mark.asyncio
    async def test_halted_projector_ignores_further_events(self, db, make_event):
        projector = Projector(CHANNEL, InMemoryEventSource())
        await projector.load_checkpoint()
        await projector.handle_event(make_event(1, version="9.9"))

        assert await projector.handle_event(make_event(2)) == ApplyResult.HALTED
        assert await UserProfile.all().count() == 0

    @pytest.mark.asyncio
    async def test_halting_again_after_restart_keeps_one_dead_letter(self, db, make_event):
        source = InMemoryEventSource([make_event(1, version="9.9")])
        await Projector(CHANNEL, source).run_once()

        restarted = Projector(CHANNEL, source)
        await restarted.run_once()

        assert restarted.halted
        assert await DeadLetterEntry.all().count() == 1

    @pytest.mark.asyncio
    async def test_skip_policy_dead_letters_and_moves_past(self, db, make_event):
        config = ProjectorConfig(poison_pill_policy=PoisonPillPolicy.SKIP)
        poison = make_event(2, payload={"userId": "bob"})
        projector = Projector(CHANNEL, InMemoryEventSource([make_event(1), poison, make_event(3)]), config=config)

        assert await projector.run_once() == 2

        assert not projector.halted
        assert await checkpoint_position() == Position(3, 0)
        assert await DeadLetterEntry.filter(source_id=poison.event_id).count() == 1

    @pytest.mark.asyncio
    async def test_skip_policy_still_halts_on_consistency_violation(self, db, make_event):
        config = ProjectorConfig(poison_pill_policy=PoisonPillPolicy.SKIP)
        projector = Projector(CHANNEL, InMemoryEventSource(), config=config)
        await projector.load_checkpoint()

        result = await projector.handle_event(transfer_event(make_event, 1, "ghost", "nobody", "5"))

        assert result == ApplyResult.HALTED
        assert await checkpoint_position() is None


class TestAtomicity:

    @pytest.mark.asyncio
    async def test_failure_after_read_model_write_rolls_everything_back(self, db, make_event):
        projector = Projector(CHANNEL, InMemoryEventSource())
        await projector.load_checkpoint()

        with patch("app.consumers.projector.AppliedEvent.create", side_effect=RuntimeError("disk full")):
            result = await projector.handle_event(make_event(1, payload={"userId": "alice", "countryCode": "US", "userType": "individual"}))

        assert result == ApplyResult.HALTED
        assert await UserProfile.get_or_none(user_id="alice") is None
        assert await checkpoint_position() is None
        assert projector.position is None


class TestWalletProjections:

    async def _seed(self, make_event):
        projector = Projector(CHANNEL, InMemoryEventSource())
        await projector.load_checkpoint()
        await projector.handle_event(wallet_event(make_event, 1, "alice", "100"))
        await projector.handle_event(wallet_event(make_event, 2, "bob"))
        return projector

    @pytest.mark.asyncio
    async def test_transfer_moves_cached_balances_and_records_history(self, db, make_event):
        projector = await self._seed(make_event)

        result = await projector.handle_event(transfer_event(make_event, 3, "alice", "bob", "30", fee="1"))

        assert result == ApplyResult.APPLIED
        assert (await Wallet.get(wallet_id="w-alice")).cached_balance == Decimal("69")
        assert (await Wallet.get(wallet_id="w-bob")).cached_balance == Decimal("30")
        history = await WalletTransaction.all().order_by("direction")
        assert [(row.direction.value, row.counterparty) for row in history] == [("RECEIVE", "alice"), ("SEND", "bob")]
        assert {row.ledger_tx_id for row in history} == {"tx-3-0"}

    @pytest.mark.asyncio
    async def test_legacy_transfer_version_is_projected(self, db, make_event):
        projector = await self._seed(make_event)
        legacy = make_event(3, name="TransferCompleted", version="0.9", payload={
            "transferId": "t-old", "fromUserId": "alice", "toUserId": "bob", "amount": "10",
        })

        assert await projector.handle_event(legacy) == ApplyResult.APPLIED
        assert (await Wallet.get(wallet_id="w-alice")).cached_balance == Decimal("90")

    @pytest.mark.asyncio
    async def test_transfer_beyond_cached_balance_is_applied(self, db, make_event):
        """The ledger committed it; the cache goes negative instead of halting the channel."""
        projector = await self._seed(make_event)

        result = await projector.handle_event(transfer_event(make_event, 3, "alice", "bob", "500"))

        assert result == ApplyResult.APPLIED
        assert (await Wallet.get(wallet_id="w-alice")).cached_balance == Decimal("-400")
        assert (await Wallet.get(wallet_id="w-bob")).cached_balance == Decimal("500")
        assert await WalletTransaction.all().count() == 2
        assert await checkpoint_position() == Position(3, 0)

    @pytest.mark.asyncio
    async def test_genesis_credit_funds_the_first_transfer(self, db, make_event):
        projector = Projector(CHANNEL, InMemoryEventSource())
        await projector.load_checkpoint()
        await projector.handle_event(wallet_event(make_event, 1, "alice"))
        await projector.handle_event(wallet_event(make_event, 2, "bob"))

        genesis = make_event(3, name="GenesisDistributed", payload={"userId": "alice", "amount": "50", "distributionPhase": "phase-1"})
        assert await projector.handle_event(genesis) == ApplyResult.APPLIED
        assert await projector.handle_event(transfer_event(make_event, 4, "alice", "bob", "10")) == ApplyResult.APPLIED

        assert (await Wallet.get(wallet_id="w-alice")).cached_balance == Decimal("40")
        assert (await Wallet.get(wallet_id="w-bob")).cached_balance == Decimal("10")
        credit = await WalletTransaction.get(ledger_tx_id="tx-3-0")
        assert credit.counterparty == "GENESIS"
        assert credit.amount == Decimal("50")

    @pytest.mark.asyncio
    async def test_transfer_to_unknown_wallet_halts(self, db, make_event):
        projector = await self._seed(make_event)

        result = await projector.handle_event(transfer_event(make_event, 3, "alice", "carol", "5"))

        assert result == ApplyResult.HALTED
        assert (await Wallet.get(wallet_id="w-alice")).cached_balance == Decimal("100")

    @pytest.mark.asyncio
    async def test_freeze_and_unfreeze(self, db, make_event):
        projector = await self._seed(make_event)

        await projector.handle_event(make_event(3, name="WalletFrozen", payload={"userId": "bob", "reason": "kyc review"}))
        wallet = await Wallet.get(wallet_id="w-bob")
        assert wallet.status == WalletStatus.FROZEN
        assert wallet.frozen_reason == "kyc review"

        await projector.handle_event(make_event(4, name="WalletUnfrozen", payload={"userId": "bob"}))
        wallet = await Wallet.get(wallet_id="w-bob")
        assert wallet.status == WalletStatus.ACTIVE
        assert wallet.frozen_reason is None


class BlockingSource:
    """Delivers its events, then waits forever like a live subscription."""

    def __init__(self, events):
        self.events = events

    async def stream(self, channel_name, after):
        for event in self.events:
            if after is None or event.position > after:
                yield event
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_stop_interrupts_a_waiting_feed(db, make_event):
    projector = Projector(CHANNEL, BlockingSource([make_event(1)]), config=ProjectorConfig(poll_interval=0.01))

    task = asyncio.create_task(projector.run())
    for _ in range(200):
        if await checkpoint_position() is not None:
            break
        await asyncio.sleep(0.01)
    projector.stop()
    await asyncio.wait_for(task, timeout=1)

    assert await checkpoint_position() == Position(1, 0)
    assert not projector.halted
