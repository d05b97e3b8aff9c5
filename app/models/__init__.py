# app/models/__init__.py
from .outbox import OutboxCommand, CommandStatus, CommandType
from .dead_letter import DeadLetterEntry, DeadLetterSource
from .checkpoint import ProjectorCheckpoint
from .applied_event import AppliedEvent
from .read_models import UserProfile, Wallet, WalletStatus, WalletTransaction, TransactionDirection

# Export all models
__all__ = [
    "AppliedEvent",
    "CommandStatus",
    "CommandType",
    "DeadLetterEntry",
    "DeadLetterSource",
    "OutboxCommand",
    "ProjectorCheckpoint",
    "TransactionDirection",
    "UserProfile",
    "Wallet",
    "WalletStatus",
    "WalletTransaction",
]
