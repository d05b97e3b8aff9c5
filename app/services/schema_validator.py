"""
Versioned event schema registry.

Each ledger event is trusted only after its payload validates against the
model registered for its exact (event name, event version). Unknown versions
are never coerced onto a neighbouring one.
"""
import logging
from typing import Dict, List, NamedTuple, Optional, Tuple, Type

from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ValidationError
from app.schemas.events import (
    EventName,
    EventPayload,
    GenesisDistributedV1,
    TransferCompletedV0_9,
    TransferCompletedV1,
    UserCreatedV1,
    WalletCreatedV1,
    WalletFrozenV1,
    WalletUnfrozenV1,
)

log = logging.getLogger("schema_validator")


class SchemaEntry(NamedTuple):
    model: Type[EventPayload]
    deprecated: bool = False


SchemaKey = Tuple[str, str]

DEFAULT_SCHEMAS: Dict[SchemaKey, SchemaEntry] = {
    (EventName.USER_CREATED.value, "1.0"): SchemaEntry(UserCreatedV1),
    (EventName.WALLET_CREATED.value, "1.0"): SchemaEntry(WalletCreatedV1),
    (EventName.GENESIS_DISTRIBUTED.value, "1.0"): SchemaEntry(GenesisDistributedV1),
    (EventName.TRANSFER_COMPLETED.value, "0.9"): SchemaEntry(TransferCompletedV0_9, deprecated=True),
    (EventName.TRANSFER_COMPLETED.value, "1.0"): SchemaEntry(TransferCompletedV1),
    (EventName.WALLET_FROZEN.value, "1.0"): SchemaEntry(WalletFrozenV1),
    (EventName.WALLET_UNFROZEN.value, "1.0"): SchemaEntry(WalletUnfrozenV1),
}


class SchemaValidator:
    def __init__(self, schemas: Optional[Dict[SchemaKey, SchemaEntry]] = None):
        self._schemas = dict(DEFAULT_SCHEMAS if schemas is None else schemas)

    def versions_for(self, event_name: str) -> List[str]:
        return sorted(version for name, version in self._schemas if name == event_name)

    def validate(self, event_name: str, event_version: str, payload: dict) -> EventPayload:
        """
        Returns the payload as its typed, current-version model.

        Raises ValidationError for unknown (name, version) pairs and for
        payloads that do not match the registered shape.
        """
        entry = self._schemas.get((event_name, event_version))
        if entry is None:
            known = ", ".join(self.versions_for(event_name)) or "none"
            raise ValidationError(
                f"No schema registered for {event_name}@{event_version}. Known versions: {known}"
            )

        if entry.deprecated:
            log.warning(f"Event {event_name}@{event_version} uses a deprecated schema version.")

        try:
            typed = entry.model.model_validate(payload)
        except PydanticValidationError as e:
            errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationError(f"Payload of {event_name}@{event_version} failed validation", errors=errors)

        return typed.upgrade()
