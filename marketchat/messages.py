"""
Message Log: append-only, per-conversation ordered messages.

Ordering is (created_at, id) ascending. The integer id doubles as the
ordinal callers use to resume listing. An append writes the message and
bumps the conversation's updated_at in one transaction, then publishes the
committed message on the conversation's live channel.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from marketchat import identity
from marketchat.channels import broker, conversation_channel
from marketchat.conversations import get_conversation
from marketchat.errors import InvalidInput, NotAParticipant
from marketchat.metrics import record_message_outcome
from marketchat.models import ChatMessage, Conversation
from marketchat.schemas import LiveEvent, MessageResponse
from marketchat.storage import translate_store_errors, utc_now

logger = logging.getLogger(__name__)


def _resolve_participant(db: Session, conversation: Conversation, user_id: str) -> str:
    """
    Participant id that user_id acts as in this conversation.

    The buyer and vendor ids are accepted as-is. A principal that operates
    the conversation's vendor acts as that vendor, so vendor-side messages
    are stored under the vendor id whichever id the caller used.
    """
    if user_id in (conversation.buyer_id, conversation.vendor_id):
        return user_id
    with translate_store_errors(db):
        vendor_id = identity.resolve_vendor_id_for_user(db, user_id)
    if vendor_id is not None and vendor_id == conversation.vendor_id:
        return vendor_id
    raise NotAParticipant(f"{user_id} is not a participant in conversation {conversation.id}")


def append_message(db: Session, conversation_id: str, sender_id: str, content: str) -> ChatMessage:
    """
    Append a message to a conversation and push it to live subscribers.

    Args:
        db: Database session
        conversation_id: Target conversation
        sender_id: Buyer or vendor of that conversation, or the user
            operating that vendor
        content: Message text; must not be blank

    Returns:
        The stored message

    Raises:
        InvalidInput: content is empty after trimming
        ConversationNotFound: unknown conversation
        NotAParticipant: sender is neither participant
    """
    if content is None or not content.strip():
        record_message_outcome("invalid_input")
        raise InvalidInput("message content must not be empty")

    conversation = get_conversation(db, conversation_id)
    try:
        sender_id = _resolve_participant(db, conversation, sender_id)
    except NotAParticipant:
        record_message_outcome("not_a_participant")
        raise

    logger.info(f"Appending message: conversation={conversation_id}, sender={sender_id}")

    with translate_store_errors(db):
        now = utc_now()
        message = ChatMessage(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            is_read=False,
            created_at=now,
        )
        db.add(message)
        # updated_at only moves forward, whichever append commits last
        db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id, Conversation.updated_at < now)
            .values(updated_at=now)
        )
        db.commit()
        db.refresh(message)

    logger.info(f"Message appended: id={message.id}, conversation={conversation_id}")
    record_message_outcome("appended")

    event = LiveEvent(
        type="message.created",
        data=MessageResponse.model_validate(message).model_dump(mode="json"),
    )
    broker.publish(conversation_channel(conversation_id), event.model_dump(mode="json"))
    return message


def list_messages(db: Session, conversation_id: str, since: Optional[int] = None) -> list[ChatMessage]:
    """
    Messages of a conversation in display order.

    Args:
        since: Ordinal to resume after; only messages with a larger id are
            returned. None returns the whole history.
    """
    get_conversation(db, conversation_id)

    query = select(ChatMessage).where(ChatMessage.conversation_id == conversation_id)
    if since is not None:
        query = query.where(ChatMessage.id > since)
    query = query.order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())

    with translate_store_errors(db):
        messages = list(db.execute(query).scalars())
    logger.debug(f"Listed {len(messages)} messages for conversation={conversation_id}, since={since}")
    return messages


def mark_messages_read(db: Session, conversation_id: str, reader_id: str) -> int:
    """
    Mark the reader's incoming messages as read.

    Only messages sent by the other participant are touched, and only
    those still unread, so repeated calls change nothing.

    Returns:
        Number of messages flipped to read
    """
    conversation = get_conversation(db, conversation_id)
    reader_id = _resolve_participant(db, conversation, reader_id)

    with translate_store_errors(db):
        result = db.execute(
            update(ChatMessage)
            .where(
                ChatMessage.conversation_id == conversation_id,
                ChatMessage.sender_id != reader_id,
                ChatMessage.is_read.is_(False),
            )
            .values(is_read=True)
        )
        db.commit()

    logger.info(f"Marked {result.rowcount} messages read: conversation={conversation_id}, reader={reader_id}")
    return result.rowcount


def count_unread_messages(db: Session, reader_by_conversation: dict[str, str]) -> dict[str, int]:
    """
    Unread incoming message counts for several conversations in one query.

    Args:
        reader_by_conversation: conversation id -> id of the viewing participant
    """
    if not reader_by_conversation:
        return {}
    rows = db.execute(
        select(ChatMessage.conversation_id, ChatMessage.sender_id, func.count(ChatMessage.id))
        .where(
            ChatMessage.conversation_id.in_(reader_by_conversation.keys()),
            ChatMessage.is_read.is_(False),
        )
        .group_by(ChatMessage.conversation_id, ChatMessage.sender_id)
    ).all()

    counts = {conversation_id: 0 for conversation_id in reader_by_conversation}
    for conversation_id, sender_id, count in rows:
        if sender_id != reader_by_conversation[conversation_id]:
            counts[conversation_id] += count
    return counts


def latest_messages(db: Session, conversation_ids: Iterable[str]) -> dict[str, ChatMessage]:
    """Most recent message per conversation, one query for the whole batch."""
    ids = set(conversation_ids)
    if not ids:
        return {}
    newest = (
        select(ChatMessage.conversation_id, func.max(ChatMessage.id).label("max_id"))
        .where(ChatMessage.conversation_id.in_(ids))
        .group_by(ChatMessage.conversation_id)
        .subquery()
    )
    rows = db.execute(
        select(ChatMessage).join(newest, ChatMessage.id == newest.c.max_id)
    ).scalars()
    return {message.conversation_id: message for message in rows}
