"""Per-conversation advisory locking."""

from support_pipeline.locking.conversation_lock import RedisConversationLock

__all__ = ["RedisConversationLock"]
