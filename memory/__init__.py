from .processed_messages import ProcessedMessageRegistry
from .session_memory import SessionMemoryStore
from .thread_cache import AssistantThreadCache

__all__ = ["AssistantThreadCache", "ProcessedMessageRegistry", "SessionMemoryStore"]
