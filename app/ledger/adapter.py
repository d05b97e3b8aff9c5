"""
Contract between the submitter and the ledger SDK wrapper.

`submit` either returns a LedgerReceipt or raises TransientInfrastructureError /
PermanentLedgerRejection. The idempotency key is identical on every retry of a
command; the ledger-side handler is expected to deduplicate on it so that a
retry after a lost acknowledgment does not apply the transaction twice.
"""
import asyncio
from typing import Any, List, NamedTuple, Optional, Protocol

from pydantic import BaseModel

from app.core.errors import PermanentLedgerRejection, TransientInfrastructureError, ValidationError
from app.models.outbox import CommandType
from app.schemas.commands import COMMAND_PAYLOADS, CommandPayload

# Fabric validation codes after which resubmitting the same proposal is safe
RETRY_SAFE_CODES = {"MVCC_READ_CONFLICT", "PHANTOM_READ_CONFLICT", "SERVICE_UNAVAILABLE"}


class LedgerReceipt(BaseModel):
    ledger_tx_id: str
    block_number: Optional[int] = None


class LedgerAdapter(Protocol):
    async def submit(
        self, command_type: CommandType, payload: CommandPayload, idempotency_key: str
    ) -> LedgerReceipt: ...


class ChaincodeCall(NamedTuple):
    contract: str
    function: str
    args: List[str]


def chaincode_call(command_type: CommandType, payload: CommandPayload) -> ChaincodeCall:
    """
    Maps a command to the chaincode contract function that executes it.

    Raises ValidationError if the payload is not the model registered for the command type.
    """
    expected = COMMAND_PAYLOADS.get(command_type)
    if expected is None or not isinstance(payload, expected):
        raise ValidationError(f"{type(payload).__name__} is not a payload for {command_type}")

    if command_type == CommandType.CREATE_USER:
        return ChaincodeCall("IdentityContract", "CreateUser", [payload.user_id, payload.country_code, payload.user_type])

    elif command_type == CommandType.DISTRIBUTE_GENESIS:
        return ChaincodeCall("TokenomicsContract", "DistributeGenesis", [payload.user_id, payload.user_type, payload.country_code])

    elif command_type == CommandType.TRANSFER_TOKENS:
        return ChaincodeCall(
            "TokenomicsContract",
            "TransferTokens",
            [payload.from_user_id, payload.to_user_id, str(payload.amount), payload.remark or ""],
        )

    elif command_type == CommandType.FREEZE_WALLET:
        return ChaincodeCall("TokenomicsContract", "FreezeWallet", [payload.user_id, payload.reason])

    elif command_type == CommandType.UNFREEZE_WALLET:
        return ChaincodeCall("TokenomicsContract", "UnfreezeWallet", [payload.user_id])

    raise ValueError(f"Unknown command type: {command_type}")


class ChaincodeLedgerAdapter:
    """
    LedgerAdapter over a Fabric gateway client.

    The gateway must expose
    `async submit_transaction(contract, function, *args, transient=dict) -> dict`
    returning at least {"transactionId": ...}. Errors carrying a `code` attribute
    are ledger answers; anything else is treated as an infrastructure failure.
    """

    def __init__(self, gateway: Any):
        self.gateway = gateway

    async def submit(
        self, command_type: CommandType, payload: CommandPayload, idempotency_key: str
    ) -> LedgerReceipt:
        call = chaincode_call(command_type, payload)
        try:
            result = await self.gateway.submit_transaction(
                call.contract,
                call.function,
                *call.args,
                transient={"idempotencyKey": idempotency_key},
            )
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            raise TransientInfrastructureError(f"{call.contract}.{call.function}: {e}") from e
        except Exception as e:
            code = getattr(e, "code", None)
            if code is None or code in RETRY_SAFE_CODES:
                raise TransientInfrastructureError(f"{call.contract}.{call.function}: {e}") from e
            raise PermanentLedgerRejection(str(e), code=code) from e

        return LedgerReceipt(ledger_tx_id=result["transactionId"], block_number=result.get("blockNumber"))
