import logging
from fastapi import APIRouter, HTTPException, status
from app.core.errors import ValidationError
from app.schemas.response import SuccessResponse
from app.schemas.commands import CommandRequest, CommandAcceptedResponse, CommandDetailResponse
from app.services.command_store import enqueue, get_command
from uuid import UUID

router = APIRouter()
log = logging.getLogger("uvicorn")


@router.post("/", status_code=status.HTTP_202_ACCEPTED, response_model=SuccessResponse)
async def submit_command_endpoint(request_data: CommandRequest):
    """
    Records a command for asynchronous delivery to the ledger.
    Returns 202 Accepted immediately; the outcome shows up in the read models.
    Repeating a request_id returns the command created the first time.
    """
    try:
        command = await enqueue(
            tenant_id=request_data.tenant_id,
            service=request_data.service,
            request_id=request_data.request_id,
            command_type=request_data.command_type,
            payload=request_data.payload,
        )
    except ValidationError:
        # Rendered as 422 by the registered exception handler
        raise
    except Exception as e:
        log.error(f"Error enqueuing command {request_data.request_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to accept command.")

    data = CommandAcceptedResponse(
        command_id=command.id,
        status=command.status,
        message="Command accepted and queued for ledger submission.",
    ).model_dump(mode="json")
    return SuccessResponse(data=data)


@router.get("/{command_id}", response_model=SuccessResponse)
async def get_command_endpoint(command_id: UUID):
    """Fetches the delivery state of a command."""
    try:
        command = await get_command(command_id)
    except Exception as e:
        log.error(f"Error fetching command {command_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to fetch command.")

    if not command:
        raise HTTPException(status_code=404, detail="Command not found")

    data = CommandDetailResponse(
        id=command.id,
        tenant_id=command.tenant_id,
        service=command.service,
        request_id=command.request_id,
        command_type=command.command_type,
        status=command.status,
        attempts=command.attempts,
        last_error=command.last_error,
        ledger_tx_id=command.ledger_tx_id,
        created_at=str(command.created_at),
        updated_at=str(command.updated_at),
    ).model_dump(mode="json")
    return SuccessResponse(data=data)
