"""Authoritative message log.

Every write takes the next value of the tenant's sequence counter. A message
keeps the sequence it was appended with as ``sequence_number`` and records the
sequence of its latest write as ``change_sequence``, so edits, reactions and
soft deletes show up in a "newer than cursor" scan. Hard deletes leave a
tombstone carrying its own sequence.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.exceptions import StaleMessageVersionError
from app.models.chat import (
    Conversation,
    ConversationMember,
    ConversationState,
    ConversationType,
    MemberRole,
    Message,
    MessageTombstone,
    SequenceCounter,
)
from app.schemas.sync import (
    AttachmentSnapshot,
    ConversationSnapshot,
    DeletedItem,
    MessageSnapshot,
    ParticipantSnapshot,
)

logger = logging.getLogger(__name__)


class MessageLog:
    def __init__(self, db: Session, clock: Clock = system_clock):
        self.db = db
        self.clock = clock

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    # Sequence allocation
    def _next_sequence(self, tenant_id: str) -> int:
        counter = self.db.query(SequenceCounter).filter(
            SequenceCounter.scope == tenant_id
        ).with_for_update().first()
        if not counter:
            counter = SequenceCounter(scope=tenant_id, value=0)
            self.db.add(counter)
        counter.value += 1
        self.db.flush()
        return counter.value

    def current_sequence(self, tenant_id: str) -> int:
        """Watermark: highest sequence durable in the tenant's log"""
        counter = self.db.query(SequenceCounter).filter(
            SequenceCounter.scope == tenant_id
        ).first()
        return counter.value if counter else 0

    def conversation_last_sequence(self, conversation_id: str) -> Optional[int]:
        """Last sequence written to a conversation, None for unknown conversations"""
        state = self.db.query(ConversationState).filter(
            ConversationState.conversation_id == conversation_id
        ).first()
        return state.last_seq if state else None

    # Conversations
    def create_conversation(
        self,
        tenant_id: str,
        name: Optional[str] = None,
        type: ConversationType = ConversationType.GROUP,
        member_ids: Optional[List[str]] = None,
        conversation_id: Optional[str] = None,
    ) -> Conversation:
        conversation = Conversation(tenant_id=tenant_id, name=name, type=type)
        if conversation_id:
            conversation.id = conversation_id
        conversation.state = ConversationState(last_seq=0)
        for index, user_id in enumerate(member_ids or []):
            conversation.members.append(ConversationMember(
                user_id=user_id,
                role=MemberRole.OWNER if index == 0 else MemberRole.MEMBER,
                joined_at=self.clock.now(),
            ))
        self.db.add(conversation)
        self._commit()
        self.db.refresh(conversation)
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self.db.query(Conversation).filter(Conversation.id == conversation_id).first()

    def get_conversations(self, tenant_id: str, conversation_ids: List[str]) -> List[Conversation]:
        if not conversation_ids:
            return []
        return self.db.query(Conversation).filter(
            Conversation.tenant_id == tenant_id,
            Conversation.id.in_(conversation_ids),
        ).order_by(Conversation.created_at).all()

    def add_member(self, conversation_id: str, user_id: str) -> Optional[ConversationMember]:
        member = self._get_member(conversation_id, user_id)
        if member:
            return member
        if not self.get_conversation(conversation_id):
            return None
        member = ConversationMember(
            conversation_id=conversation_id,
            user_id=user_id,
            joined_at=self.clock.now(),
        )
        self.db.add(member)
        self._commit()
        return member

    def remove_member(self, conversation_id: str, user_id: str) -> bool:
        member = self._get_member(conversation_id, user_id)
        if not member:
            return False
        self.db.delete(member)
        self._commit()
        return True

    def mark_read(self, conversation_id: str, user_id: str, sequence_number: int) -> Optional[ConversationMember]:
        """Advance a member's read marker; never moves it backwards"""
        member = self._get_member(conversation_id, user_id)
        if not member:
            return None
        if member.last_read_sequence is None or sequence_number > member.last_read_sequence:
            member.last_read_sequence = sequence_number
            self._commit()
        return member

    def _get_member(self, conversation_id: str, user_id: str) -> Optional[ConversationMember]:
        return self.db.query(ConversationMember).filter(
            ConversationMember.conversation_id == conversation_id,
            ConversationMember.user_id == user_id,
        ).first()

    # Messages
    def get_message(self, message_id: str) -> Optional[Message]:
        return self.db.query(Message).filter(Message.id == message_id).first()

    def append_message(
        self,
        tenant_id: str,
        conversation_id: str,
        sender_id: Optional[str],
        content: str,
        message_type: str = "text",
        client_message_id: Optional[str] = None,
    ) -> Message:
        """Append a message; replays of the same client message id return the original"""
        if client_message_id:
            existing = self.db.query(Message).filter(
                Message.conversation_id == conversation_id,
                Message.sender_id == sender_id,
                Message.client_message_id == client_message_id,
            ).first()
            if existing:
                return existing

        sequence = self._next_sequence(tenant_id)
        now = self.clock.now()
        message = Message(
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            message_type=message_type,
            client_message_id=client_message_id,
            sequence_number=sequence,
            change_sequence=sequence,
            reactions={},
            attachments=[],
            created_at=now,
        )
        self.db.add(message)

        state = self.db.query(ConversationState).filter(
            ConversationState.conversation_id == conversation_id
        ).first()
        if not state:
            state = ConversationState(conversation_id=conversation_id, last_seq=0)
            self.db.add(state)
        state.last_seq = sequence

        conversation = self.get_conversation(conversation_id)
        if conversation:
            conversation.last_message_at = now

        self._commit()
        self.db.refresh(message)
        return message

    def apply_message_state(
        self,
        message_id: str,
        content: Optional[str] = None,
        edited_at: Optional[datetime] = None,
        is_deleted: Optional[bool] = None,
        expected_version: Optional[int] = None,
    ) -> Optional[Message]:
        """Set a message's fields by id.

        Applying the same state twice is a no-op, so resolved conflicts can be
        re-applied safely. With ``expected_version`` the write is a single-row
        conditional update that only lands while the row still has that
        version; otherwise StaleMessageVersionError is raised and nothing is
        written.
        """
        message = self.get_message(message_id)
        if not message:
            return None

        values = {}
        if content is not None and content != message.content:
            values[Message.content] = content
            values[Message.edited_at] = edited_at or self.clock.now()
        if is_deleted is not None and is_deleted != (message.deleted_at is not None):
            values[Message.deleted_at] = self.clock.now() if is_deleted else None
        if not values:
            return message

        if expected_version is not None and message.version != expected_version:
            raise StaleMessageVersionError(
                f"Message {message_id} is at version {message.version}, expected {expected_version}"
            )

        values[Message.version] = Message.version + 1
        values[Message.change_sequence] = self._next_sequence(message.tenant_id)
        query = self.db.query(Message).filter(Message.id == message_id)
        if expected_version is not None:
            query = query.filter(Message.version == expected_version)
        if not query.update(values, synchronize_session=False):
            self.db.rollback()
            raise StaleMessageVersionError(f"Message {message_id} changed while it was being updated")

        self._commit()
        self.db.refresh(message)
        return message

    def set_reaction(self, message_id: str, user_id: str, emoji: str, remove: bool = False) -> Optional[Message]:
        message = self.get_message(message_id)
        if not message or message.deleted_at is not None:
            return None

        reactions = {key: list(users) for key, users in (message.reactions or {}).items()}
        users = reactions.get(emoji, [])
        if remove and user_id in users:
            users.remove(user_id)
        elif not remove and user_id not in users:
            users.append(user_id)
        else:
            return message

        if users:
            reactions[emoji] = users
        else:
            reactions.pop(emoji, None)
        message.reactions = reactions
        message.version += 1
        message.change_sequence = self._next_sequence(message.tenant_id)
        self._commit()
        self.db.refresh(message)
        return message

    def hard_delete_message(self, message_id: str) -> Optional[MessageTombstone]:
        message = self.get_message(message_id)
        if not message:
            return None

        tombstone = MessageTombstone(
            tenant_id=message.tenant_id,
            entity_type="message",
            entity_id=message.id,
            conversation_id=message.conversation_id,
            sequence_number=self._next_sequence(message.tenant_id),
            deleted_at=self.clock.now(),
        )
        self.db.add(tombstone)
        self.db.delete(message)
        self._commit()
        logger.info(f"Hard-deleted message {message_id}")
        return tombstone

    # Range reads
    def messages_since(
        self,
        tenant_id: str,
        cursor: int,
        conversation_ids: Optional[List[str]] = None,
        limit: int = 100,
    ) -> List[Message]:
        query = self.db.query(Message).filter(
            Message.tenant_id == tenant_id,
            Message.change_sequence > cursor,
        )
        if conversation_ids:
            query = query.filter(Message.conversation_id.in_(conversation_ids))
        return query.order_by(Message.change_sequence.asc()).limit(limit).all()

    def tombstones_since(
        self,
        tenant_id: str,
        cursor: int,
        conversation_ids: Optional[List[str]] = None,
        limit: int = 100,
    ) -> List[MessageTombstone]:
        query = self.db.query(MessageTombstone).filter(
            MessageTombstone.tenant_id == tenant_id,
            MessageTombstone.sequence_number > cursor,
        )
        if conversation_ids:
            query = query.filter(MessageTombstone.conversation_id.in_(conversation_ids))
        return query.order_by(MessageTombstone.sequence_number.asc()).limit(limit).all()

    # Snapshots
    @staticmethod
    def message_snapshot(message: Message) -> MessageSnapshot:
        return MessageSnapshot(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            content=message.content,
            message_type=message.message_type,
            sequence_number=message.sequence_number,
            change_sequence=message.change_sequence,
            created_at=message.created_at,
            edited_at=message.edited_at,
            is_deleted=message.deleted_at is not None,
            version=message.version,
            reactions=message.reactions or {},
            attachments=[AttachmentSnapshot(**att) for att in (message.attachments or [])],
        )

    @staticmethod
    def conversation_snapshot(conversation: Conversation) -> ConversationSnapshot:
        return ConversationSnapshot(
            id=conversation.id,
            name=conversation.name,
            type=conversation.type.value,
            participants=[
                ParticipantSnapshot(
                    user_id=member.user_id,
                    role=member.role.value,
                    joined_at=member.joined_at,
                    last_read_sequence=member.last_read_sequence,
                )
                for member in conversation.members
            ],
            last_message_at=conversation.last_message_at,
            last_sequence_number=conversation.state.last_seq if conversation.state else 0,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )

    @staticmethod
    def tombstone_item(tombstone: MessageTombstone) -> DeletedItem:
        return DeletedItem(
            entity_type=tombstone.entity_type,
            entity_id=tombstone.entity_id,
            conversation_id=tombstone.conversation_id,
            sequence_number=tombstone.sequence_number,
            deleted_at=tombstone.deleted_at,
        )
