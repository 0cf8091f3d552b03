from app.models.chat import (
    Conversation,
    ConversationMember,
    ConversationState,
    SequenceCounter,
    Message,
    MessageTombstone,
    ConversationType,
    MemberRole,
)

__all__ = [
    "Conversation",
    "ConversationMember",
    "ConversationState",
    "SequenceCounter",
    "Message",
    "MessageTombstone",
    "ConversationType",
    "MemberRole",
]
