import uuid
from decimal import Decimal
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from app.core.errors import ValidationError
from app.models.outbox import CommandStatus, CommandType


class CommandPayload(BaseModel):
    """Base for per-command payloads. Wire form is camelCase, unknown keys are rejected."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class CreateUserPayload(CommandPayload):
    user_id: str = Field(..., min_length=1)
    country_code: str = Field(..., min_length=2, max_length=3)
    user_type: str = Field(..., min_length=1)


class DistributeGenesisPayload(CommandPayload):
    user_id: str = Field(..., min_length=1)
    user_type: str = Field(..., min_length=1)
    country_code: str = Field(..., min_length=2, max_length=3)


class TransferTokensPayload(CommandPayload):
    from_user_id: str = Field(..., min_length=1)
    to_user_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    remark: Optional[str] = None


class FreezeWalletPayload(CommandPayload):
    user_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class UnfreezeWalletPayload(CommandPayload):
    user_id: str = Field(..., min_length=1)


# One payload shape per command type
COMMAND_PAYLOADS: Dict[CommandType, Type[CommandPayload]] = {
    CommandType.CREATE_USER: CreateUserPayload,
    CommandType.DISTRIBUTE_GENESIS: DistributeGenesisPayload,
    CommandType.TRANSFER_TOKENS: TransferTokensPayload,
    CommandType.FREEZE_WALLET: FreezeWalletPayload,
    CommandType.UNFREEZE_WALLET: UnfreezeWalletPayload,
}


def parse_command_payload(command_type: CommandType, payload: Dict[str, Any]) -> CommandPayload:
    """Validates a raw payload against the shape registered for its command type."""
    try:
        model = COMMAND_PAYLOADS[CommandType(command_type)]
    except (KeyError, ValueError):
        raise ValidationError(f"Unknown command type: {command_type}")
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ValidationError(f"Invalid payload for {command_type}", errors=errors)


class CommandRequest(BaseModel):
    """Schema for the command intake request body."""
    tenant_id: str = Field(..., min_length=1)
    service: str = Field(..., min_length=1)
    request_id: str = Field(..., min_length=1, max_length=128, description="Client-supplied idempotency key.")
    command_type: CommandType
    payload: Dict[str, Any]


class CommandAcceptedResponse(BaseModel):
    """Response schema for an accepted command (202 Accepted)."""
    command_id: uuid.UUID
    status: CommandStatus
    message: str


class CommandDetailResponse(BaseModel):
    """Schema for polling the delivery state of a command."""
    id: uuid.UUID
    tenant_id: str
    service: str
    request_id: str
    command_type: CommandType
    status: CommandStatus
    attempts: int
    last_error: Optional[str] = None
    ledger_tx_id: Optional[str] = None
    created_at: str
    updated_at: str
