import os
from enum import Enum
from importlib import import_module
from typing import Any, Callable, List

from pydantic import BaseModel, Field, model_validator

# Database Configuration
# Uses default credentials for local Docker Compose setup
DB_URL = os.getenv("DATABASE_URL", "postgres://user:password@db:5432/ledger_outbox")

# Application Metadata
PROJECT_NAME = "Ledger Outbox & Projection Service"
VERSION = "1.0.0"

# Submitter Worker Configuration
WORKER_ID = os.getenv("WORKER_ID", f"submitter-{os.getpid()}")
POLLING_INTERVAL = float(os.getenv("POLLING_INTERVAL", 1)) # Idle workers check for new work every N seconds
BATCH_SIZE = int(os.getenv("BATCH_SIZE", 10)) # How many commands to claim per poll
LEASE_DURATION = float(os.getenv("LEASE_DURATION", 30)) # Seconds a claim stays valid
SUBMIT_TIMEOUT = float(os.getenv("SUBMIT_TIMEOUT", 10)) # Bound on a single ledger call
MAX_ATTEMPTS = int(os.getenv("MAX_ATTEMPTS", 5)) # Failures before a command is FAILED
BACKOFF_BASE = float(os.getenv("BACKOFF_BASE", 1))
BACKOFF_CAP = float(os.getenv("BACKOFF_CAP", 60))

# Projector Configuration
PROJECTOR_CHANNELS = [c.strip() for c in os.getenv("PROJECTOR_CHANNELS", "gxchannel").split(",") if c.strip()]
POISON_PILL_POLICY = os.getenv("POISON_PILL_POLICY", "halt")

# Readiness Configuration
PROJECTION_LAG_THRESHOLD_MS = int(os.getenv("PROJECTION_LAG_THRESHOLD_MS", 5000))
DEAD_LETTER_CEILING = int(os.getenv("DEAD_LETTER_CEILING", 100))

# External collaborators, given as "package.module:factory"
LEDGER_ADAPTER_FACTORY = os.getenv("LEDGER_ADAPTER_FACTORY")
EVENT_SOURCE_FACTORY = os.getenv("EVENT_SOURCE_FACTORY")


class PoisonPillPolicy(str, Enum):
    HALT = "halt"  # Stop the channel, keep the checkpoint on the event before the poison pill
    SKIP = "skip"  # Dead-letter the event and advance past it


class SubmitterConfig(BaseModel):
    worker_id: str = WORKER_ID
    poll_interval: float = Field(POLLING_INTERVAL, ge=0)
    batch_size: int = Field(BATCH_SIZE, gt=0)
    lease_duration: float = Field(LEASE_DURATION, gt=0)
    submit_timeout: float = Field(SUBMIT_TIMEOUT, gt=0)
    max_attempts: int = Field(MAX_ATTEMPTS, gt=0)
    backoff_base: float = Field(BACKOFF_BASE, ge=0)
    backoff_cap: float = Field(BACKOFF_CAP, ge=0)

    @model_validator(mode="after")
    def check_timeout_fits_lease(self):
        # A submission that outlives its lease can be reclaimed and sent twice while still in flight.
        if self.submit_timeout >= self.lease_duration:
            raise ValueError("submit_timeout must be shorter than lease_duration")
        return self


class ProjectorConfig(BaseModel):
    poll_interval: float = Field(POLLING_INTERVAL, ge=0)
    poison_pill_policy: PoisonPillPolicy = PoisonPillPolicy(POISON_PILL_POLICY)


class HealthConfig(BaseModel):
    channels: List[str] = Field(default_factory=lambda: list(PROJECTOR_CHANNELS))
    lag_threshold_ms: int = Field(PROJECTION_LAG_THRESHOLD_MS, gt=0)
    dead_letter_ceiling: int = Field(DEAD_LETTER_CEILING, ge=0)


def load_factory(path: str) -> Callable[..., Any]:
    """Resolves a 'package.module:callable' path to the callable."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Factory path must look like 'package.module:callable', got {path!r}")
    return getattr(import_module(module_name), attr)
