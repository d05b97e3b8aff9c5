from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ComponentStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProjectionLag(_CamelModel):
    channel: Optional[str] = None
    lag_ms: Optional[float] = None  # None until the channel has a checkpoint
    threshold_ms: int


class DeadLetterBacklog(_CamelModel):
    count: int
    ceiling: int


class ReadinessReport(_CamelModel):
    """Structured readiness breakdown for deployment tooling."""
    ready: bool
    database: ComponentStatus
    projection_lag: ProjectionLag
    dead_letters: DeadLetterBacklog
    channels: Dict[str, Optional[float]] = {}
