"""
Conversation Registry: exactly one conversation per (buyer, vendor) pair.

Creation races are settled by the store's unique constraint on the pair.
A losing insert surfaces as IntegrityError, which is read as "another
caller just created it" and answered by re-fetching the winner's row.
"""

import logging
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketchat import identity
from marketchat.errors import ConversationNotFound, ParticipantNotFound
from marketchat.metrics import record_conversation_outcome
from marketchat.models import Conversation, Role
from marketchat.storage import translate_store_errors, utc_now

logger = logging.getLogger(__name__)


def _find_pair(db: Session, buyer_id: str, vendor_id: str) -> Optional[Conversation]:
    return db.execute(
        select(Conversation).where(
            Conversation.buyer_id == buyer_id,
            Conversation.vendor_id == vendor_id,
        )
    ).scalar_one_or_none()


def get_or_create_conversation(
    db: Session,
    buyer_id: str,
    vendor_id: str,
    service_id: Optional[str] = None,
) -> Tuple[Conversation, bool]:
    """
    Find or create the conversation between a buyer and a vendor.

    Args:
        db: Database session
        buyer_id: Buyer identity, must exist in the user directory
        vendor_id: Vendor identity, must exist in the vendor directory
        service_id: Originating service, recorded on first creation only

    Returns:
        Tuple of (conversation, created)

    Raises:
        ParticipantNotFound: either id does not resolve; nothing is stored
        StoreUnavailable / StoreUnreachable: persistence failure
    """
    logger.info(f"Get-or-create conversation: buyer={buyer_id}, vendor={vendor_id}")

    with translate_store_errors(db):
        if not identity.buyer_exists(db, buyer_id):
            raise ParticipantNotFound(f"buyer {buyer_id} not found")
        if not identity.vendor_exists(db, vendor_id):
            raise ParticipantNotFound(f"vendor {vendor_id} not found")

        existing = _find_pair(db, buyer_id, vendor_id)
        if existing is not None:
            logger.debug(f"Conversation already exists: {existing.id}")
            record_conversation_outcome(created=False)
            return existing, False

        now = utc_now()
        conversation = Conversation(
            buyer_id=buyer_id,
            vendor_id=vendor_id,
            service_id=service_id,
            created_at=now,
            updated_at=now,
        )
        db.add(conversation)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(f"Lost creation race for buyer={buyer_id}, vendor={vendor_id}; re-fetching")
            winner = _find_pair(db, buyer_id, vendor_id)
            if winner is None:
                # The violation was not the pair constraint
                raise
            record_conversation_outcome(created=False)
            return winner, False

    logger.info(f"Conversation created: {conversation.id}")
    record_conversation_outcome(created=True)
    return conversation, True


def get_conversation(db: Session, conversation_id: str) -> Conversation:
    with translate_store_errors(db):
        conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise ConversationNotFound(conversation_id)
    return conversation


def list_conversations_for_user(db: Session, user_id: str, role: Role) -> list[Conversation]:
    """
    Conversations visible to a user, most recently active first.

    BUYER sees conversations where they are the buyer, VENDOR sees the
    conversations of the vendor they operate (none if they operate no
    vendor), SUPER_ADMIN sees everything.
    """
    logger.info(f"Listing conversations for user={user_id}, role={role.value}")

    query = select(Conversation).order_by(Conversation.updated_at.desc(), Conversation.id.desc())

    with translate_store_errors(db):
        if role == Role.BUYER:
            query = query.where(Conversation.buyer_id == user_id)
        elif role == Role.VENDOR:
            vendor_id = identity.resolve_vendor_id_for_user(db, user_id)
            if vendor_id is None:
                logger.info(f"No vendor profile for user {user_id}")
                return []
            query = query.where(Conversation.vendor_id == vendor_id)

        conversations = list(db.execute(query).scalars())

    logger.debug(f"Found {len(conversations)} conversations")
    return conversations
