"""Database module for topic sync."""

from .models import ConversationRecord, EnrichmentPatch, HarvestedRecord
from .connection import get_connection, init_db
from .conversation_store import ConversationStore, RecordNotFoundError

__all__ = [
    "ConversationRecord",
    "EnrichmentPatch",
    "HarvestedRecord",
    "ConversationStore",
    "RecordNotFoundError",
    "get_connection",
    "init_db",
]
