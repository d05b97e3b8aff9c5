from pydantic import BaseModel, Field
from typing import Any, List, Optional
import uuid


def new_request_id() -> str:
    return uuid.uuid4().hex


class SuccessResponse(BaseModel):
    """Envelope for successful API responses."""
    success: bool = True
    request_id: str = Field(default_factory=new_request_id)
    data: Optional[Any] = None


class ErrorDetail(BaseModel):
    code: str  # http_error, validation_error, payload_validation_error, server_error
    message: Any
    details: Optional[List[Any]] = None


class ErrorResponse(BaseModel):
    """Envelope for every error the API returns."""
    success: bool = False
    error: ErrorDetail
    request_id: str = Field(default_factory=new_request_id)

    @classmethod
    def build(cls, code: str, message: Any, details: Optional[List[Any]] = None) -> dict:
        """JSON-ready body; `details` is omitted when there are none."""
        return cls(error=ErrorDetail(code=code, message=message, details=details)).model_dump(
            mode="json", exclude_none=True
        )
