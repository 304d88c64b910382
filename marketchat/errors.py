"""
Error taxonomy for the conversation and notification core.

Validation errors (ParticipantNotFound, NotAParticipant, InvalidInput) are
deterministic and must reach the caller unchanged. StoreUnreachable is the
only transient kind; the core never retries it. StoreUnavailable means the
backend is missing its schema or is misconfigured.
"""


class MarketChatError(Exception):
    """Base class for every error raised by the core."""

    code = "error"
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ParticipantNotFound(MarketChatError):
    code = "participant_not_found"
    status_code = 404


class ConversationNotFound(MarketChatError):
    code = "conversation_not_found"
    status_code = 404

    def __init__(self, conversation_id: str):
        super().__init__(f"conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class NotificationNotFound(MarketChatError):
    code = "notification_not_found"
    status_code = 404

    def __init__(self, notification_id: str):
        super().__init__(f"notification {notification_id} not found")
        self.notification_id = notification_id


class NotAParticipant(MarketChatError):
    code = "not_a_participant"
    status_code = 403


class InvalidInput(MarketChatError):
    code = "invalid_input"
    status_code = 422


class StoreUnavailable(MarketChatError):
    """Schema missing or backend misconfigured; retrying will not help."""

    code = "store_unavailable"
    status_code = 503


class StoreUnreachable(MarketChatError):
    """Transient connectivity failure; safe for the caller to retry."""

    code = "store_unreachable"
    status_code = 503
