import uuid
from datetime import datetime, timezone as dt_timezone

import pytest
import pytest_asyncio

from app.core.db import init_db, close_db
from app.schemas.events import LedgerEvent

CHANNEL = "gxchannel"


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database per test."""
    await init_db("sqlite://:memory:")
    yield
    await close_db()


@pytest.fixture
def make_event():
    """Factory for ledger events; positions and ids are the only things most tests care about."""
    def _make(block, tx=0, name="UserCreated", payload=None, version="1.0", event_id=None, channel=CHANNEL):
        return LedgerEvent(
            event_id=event_id or str(uuid.uuid4()),
            event_name=name,
            event_version=version,
            block_number=block,
            tx_id=f"tx-{block}-{tx}",
            tx_index=tx,
            chaincode_name="gxtv3",
            channel_name=channel,
            timestamp=datetime(2026, 1, 1, 12, 0, tzinfo=dt_timezone.utc),
            payload=payload if payload is not None else {"userId": f"user-{block}-{tx}", "countryCode": "US", "userType": "individual"},
        )
    return _make
