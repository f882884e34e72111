"""retrace persistence layer."""

from retrace.store.conversation import (
    ConversationStore,
    DuplicateIDError,
    InvalidMessageRoleError,
    InvalidParentError,
    MessageNotFoundError,
    RetraceStoreError,
    Session,
    SessionNotFoundError,
)
from retrace.store.pool import StorePool

__all__ = [
    "ConversationStore",
    "StorePool",
    "Session",
    "RetraceStoreError",
    "SessionNotFoundError",
    "MessageNotFoundError",
    "InvalidParentError",
    "InvalidMessageRoleError",
    "DuplicateIDError",
]
