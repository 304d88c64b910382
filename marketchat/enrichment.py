"""
Read-side decoration of conversations and notifications with display data.

Lookups are batched: one query per distinct id set, never one per record.
A lookup that fails or finds nothing degrades to a placeholder instead of
failing the listing.
"""

import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketchat import identity
from marketchat.conversations import list_conversations_for_user
from marketchat.identity import DisplayProfile
from marketchat.messages import count_unread_messages, latest_messages
from marketchat.models import Conversation, Notification, Role
from marketchat.schemas import (
    ConversationResponse,
    ConversationSummary,
    NotificationResponse,
    NotificationSummary,
    ParticipantDisplay,
)

logger = logging.getLogger(__name__)

UNKNOWN_VENDOR = "Unknown Vendor"
ANONYMOUS = "Anonymous"

T = TypeVar("T")


def _best_effort(db: Session, what: str, lookup: Callable[[], T], fallback: T) -> T:
    try:
        return lookup()
    except SQLAlchemyError as e:
        logger.warning(f"Enrichment lookup for {what} failed, using placeholders: {e}")
        db.rollback()
        return fallback


def _display(profile: Optional[DisplayProfile], placeholder: str) -> ParticipantDisplay:
    if profile is None:
        return ParticipantDisplay(name=placeholder)
    return ParticipantDisplay(name=profile.name or placeholder, avatar_url=profile.avatar_url)


def enrich_conversations(
    db: Session,
    conversations: list[Conversation],
    viewer_id: Optional[str] = None,
) -> list[ConversationSummary]:
    """
    Attach participant display data, last message preview and, when a
    viewer is given, the viewer's unread count.

    viewer_id is the participant id of the viewer (buyer id or vendor id).
    """
    if not conversations:
        return []

    # Snapshot first: a failed lookup rolls back and expires the ORM rows
    bases = [ConversationResponse.model_validate(c) for c in conversations]
    conversation_ids = [c.id for c in bases]
    vendors = _best_effort(
        db, "vendors",
        lambda: identity.get_vendor_profiles(db, (c.vendor_id for c in bases)), {},
    )
    buyers = _best_effort(
        db, "buyers",
        lambda: identity.get_buyer_profiles(db, (c.buyer_id for c in bases)), {},
    )
    previews = _best_effort(
        db, "last messages",
        lambda: {cid: m.content for cid, m in latest_messages(db, conversation_ids).items()}, {},
    )

    unread: dict[str, int] = {}
    if viewer_id is not None:
        readers = {
            c.id: viewer_id for c in bases
            if viewer_id in (c.buyer_id, c.vendor_id)
        }
        unread = _best_effort(db, "unread counts", lambda: count_unread_messages(db, readers), {})

    summaries = []
    for base in bases:
        summaries.append(ConversationSummary(
            **base.model_dump(),
            buyer=_display(buyers.get(base.buyer_id), ANONYMOUS),
            vendor=_display(vendors.get(base.vendor_id), UNKNOWN_VENDOR),
            last_message=previews.get(base.id),
            unread_count=unread.get(base.id, 0),
        ))
    return summaries


def enrich_notifications(db: Session, notifications: list[Notification]) -> list[NotificationSummary]:
    """Attach the recipient's display data to each notification."""
    if not notifications:
        return []
    bases = [NotificationResponse.model_validate(n) for n in notifications]
    recipients = _best_effort(
        db, "recipients",
        lambda: identity.get_buyer_profiles(db, (n.user_id for n in bases)), {},
    )
    return [
        NotificationSummary(
            **n.model_dump(),
            recipient=_display(recipients.get(n.user_id), ANONYMOUS),
        )
        for n in bases
    ]


def inbox_for_user(db: Session, user_id: str, role: Role) -> list[ConversationSummary]:
    """The enriched conversation list a user sees, most recently active first."""
    conversations = list_conversations_for_user(db, user_id, role)
    viewer_id = None
    if role == Role.BUYER:
        viewer_id = user_id
    elif role == Role.VENDOR and conversations:
        # Already filtered down to the single vendor this user operates
        viewer_id = conversations[0].vendor_id
    return enrich_conversations(db, conversations, viewer_id=viewer_id)
