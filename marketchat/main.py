import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

import anyio
from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from marketchat.channels import Subscription, broker, conversation_channel, notification_channel
from marketchat.config import settings
from marketchat.conversations import get_conversation, get_or_create_conversation
from marketchat.enrichment import enrich_conversations, enrich_notifications, inbox_for_user
from marketchat.errors import ConversationNotFound, MarketChatError, StoreUnreachable
from marketchat.logging_utils import RequestLoggingMiddleware, log_chat_event, setup_logging
from marketchat.messages import append_message, list_messages, mark_messages_read
from marketchat.metrics import get_metrics, get_metrics_content_type
from marketchat.models import Role
from marketchat.notifications import (
    count_unread_notifications,
    create_notification,
    list_unread_notifications,
    mark_all_notifications_read,
    mark_notification_read,
)
from marketchat.schemas import (
    ConversationCreateRequest,
    ConversationsListResponse,
    ConversationSummary,
    ErrorResponse,
    HealthResponse,
    LiveEvent,
    MarkReadRequest,
    MarkReadResponse,
    MessageCreateRequest,
    MessageResponse,
    MessagesListResponse,
    NotificationCreateRequest,
    NotificationResponse,
    NotificationsListResponse,
)
from marketchat.storage import SessionLocal, check_db_health, get_db, init_db


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Application close codes for the live sockets
WS_CLOSE_NOT_FOUND = 4404
WS_CLOSE_STORE_ERROR = 1011
WS_CLOSE_TRY_AGAIN = 1013


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="Marketplace Chat API",
    description="Buyer/vendor conversations, ordered chat delivery and user notifications",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

ERROR_RESPONSES = {
    403: {"model": ErrorResponse, "description": "Not a participant"},
    404: {"model": ErrorResponse, "description": "Unknown participant, conversation or notification"},
    422: {"model": ErrorResponse, "description": "Validation error"},
    503: {"model": ErrorResponse, "description": "Store not configured or unreachable"},
}


@app.exception_handler(MarketChatError)
async def market_chat_error_handler(request: Request, exc: MarketChatError) -> JSONResponse:
    """Render core errors with their stable code; transient store failures get Retry-After."""
    log_chat_event(request, result=exc.code)
    headers = {"Retry-After": "5"} if isinstance(exc, StoreUnreachable) else None
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(detail=exc.detail, code=exc.code).model_dump(),
        headers=headers,
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the chat
    schema is applied, 503 otherwise.
    """
    reason = check_db_health()
    if reason is not None:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason=reason)
    return HealthResponse(status="ready")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.post(
    "/conversations",
    response_model=ConversationSummary,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
def open_conversation(
    body: ConversationCreateRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> ConversationSummary:
    """
    Get or create the conversation between a buyer and a vendor.

    Returns 201 when this call created it, 200 when it already existed.
    service_id is only recorded on creation.
    """
    conversation, created = get_or_create_conversation(
        db,
        buyer_id=body.buyer_id,
        vendor_id=body.vendor_id,
        service_id=body.service_id,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    log_chat_event(request, conversation_id=conversation.id, result="created" if created else "existing")
    return enrich_conversations(db, [conversation], viewer_id=body.buyer_id)[0]


@app.get("/conversations/{conversation_id}", response_model=ConversationSummary, responses=ERROR_RESPONSES)
def read_conversation(
    conversation_id: str,
    viewer_id: Annotated[Optional[str], Query(description="Participant whose unread count to include")] = None,
    db: Session = Depends(get_db),
) -> ConversationSummary:
    conversation = get_conversation(db, conversation_id)
    return enrich_conversations(db, [conversation], viewer_id=viewer_id)[0]


@app.get("/users/{user_id}/conversations", response_model=ConversationsListResponse, responses=ERROR_RESPONSES)
def list_user_conversations(
    user_id: str,
    role: Annotated[Role, Query(description="BUYER, VENDOR or SUPER_ADMIN")],
    db: Session = Depends(get_db),
) -> ConversationsListResponse:
    """
    Inbox for a user, most recently active conversation first.

    - BUYER: conversations where user_id is the buyer
    - VENDOR: conversations of the vendor operated by user_id
    - SUPER_ADMIN: every conversation
    """
    logger.info(f"GET /users/{user_id}/conversations: role={role.value}")
    return ConversationsListResponse(data=inbox_for_user(db, user_id, role))


# =============================================================================
# Message Routes
# =============================================================================

@app.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
def send_message(
    conversation_id: str,
    body: MessageCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> MessageResponse:
    message = append_message(db, conversation_id, body.sender_id, body.content)
    log_chat_event(request, conversation_id=conversation_id, message_id=message.id, result="appended")
    return MessageResponse.model_validate(message)


@app.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagesListResponse,
    responses=ERROR_RESPONSES,
)
def read_messages(
    conversation_id: str,
    since: Annotated[Optional[int], Query(ge=0, description="Only messages after this ordinal")] = None,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """
    Messages of a conversation in display order (created_at, then id).

    high_water in the response is the ordinal to resume from.
    """
    messages = list_messages(db, conversation_id, since=since)
    data = [MessageResponse.model_validate(m) for m in messages]
    high_water = data[-1].id if data else since
    return MessagesListResponse(data=data, high_water=high_water)


@app.post(
    "/conversations/{conversation_id}/read",
    response_model=MarkReadResponse,
    responses=ERROR_RESPONSES,
)
def read_conversation_messages(
    conversation_id: str,
    body: MarkReadRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> MarkReadResponse:
    """Mark every message the reader received in this conversation as read."""
    updated = mark_messages_read(db, conversation_id, body.reader_id)
    log_chat_event(request, conversation_id=conversation_id, result="marked_read")
    return MarkReadResponse(updated=updated)


# =============================================================================
# Notification Routes
# =============================================================================

@app.post(
    "/notifications",
    response_model=NotificationResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
def post_notification(
    body: NotificationCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> NotificationResponse:
    notification = create_notification(db, body.user_id, body.type, body.title, body.body, body.link)
    log_chat_event(request, notification_id=notification.id, result="created")
    return NotificationResponse.model_validate(notification)


@app.get(
    "/users/{user_id}/notifications",
    response_model=NotificationsListResponse,
    responses=ERROR_RESPONSES,
)
def list_user_notifications(
    user_id: str,
    limit: Annotated[Optional[int], Query(ge=1, le=100, description="Page size")] = None,
    db: Session = Depends(get_db),
) -> NotificationsListResponse:
    """Unread notifications, most recent first, with the exact unread total."""
    if limit is None:
        limit = settings.NOTIFICATION_PAGE_SIZE
    notifications = list_unread_notifications(db, user_id, limit=limit)
    unread_count = count_unread_notifications(db, user_id)
    return NotificationsListResponse(
        data=enrich_notifications(db, notifications),
        unread_count=unread_count,
        limit=limit,
    )


@app.post(
    "/notifications/{notification_id}/read",
    response_model=MarkReadResponse,
    responses=ERROR_RESPONSES,
)
def read_notification(
    notification_id: str,
    request: Request,
    db: Session = Depends(get_db),
) -> MarkReadResponse:
    flipped = mark_notification_read(db, notification_id)
    log_chat_event(request, notification_id=notification_id, result="marked_read")
    return MarkReadResponse(updated=1 if flipped else 0)


@app.post(
    "/users/{user_id}/notifications/read",
    response_model=MarkReadResponse,
    responses=ERROR_RESPONSES,
)
def read_all_notifications(user_id: str, db: Session = Depends(get_db)) -> MarkReadResponse:
    return MarkReadResponse(updated=mark_all_notifications_read(db, user_id))


# =============================================================================
# Live Channels
# =============================================================================

def _ensure_conversation(conversation_id: str) -> None:
    with SessionLocal() as db:
        get_conversation(db, conversation_id)


def _backlog_events(conversation_id: str, since: int) -> list[dict]:
    with SessionLocal() as db:
        return [
            LiveEvent(
                type="message.created",
                data=MessageResponse.model_validate(m).model_dump(mode="json"),
            ).model_dump(mode="json")
            for m in list_messages(db, conversation_id, since=since)
        ]


async def _pump(websocket: WebSocket, subscription: Subscription, skip_through: Optional[int] = None) -> None:
    """
    Forward subscription events to the socket until either side goes away.

    Events whose id is at or below skip_through were already sent as
    backlog and are dropped.
    """

    async def forward(scope: anyio.CancelScope) -> None:
        try:
            async for event in subscription:
                if skip_through is not None and event["data"].get("id", 0) <= skip_through:
                    continue
                await websocket.send_json(event)
            # Evicted for falling behind: tell the client to catch up via list
            await websocket.send_json(LiveEvent(type="channel.closed").model_dump())
            await websocket.close(code=WS_CLOSE_TRY_AGAIN)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"Live channel {subscription.channel} failed: {e}")
        scope.cancel()

    async def watch_client(scope: anyio.CancelScope) -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
        scope.cancel()

    try:
        async with anyio.create_task_group() as group:
            group.start_soon(forward, group.cancel_scope)
            group.start_soon(watch_client, group.cancel_scope)
    finally:
        subscription.close()


@app.websocket("/ws/conversations/{conversation_id}")
async def conversation_stream(
    websocket: WebSocket,
    conversation_id: str,
    since: Optional[int] = None,
) -> None:
    """
    Live messages appended to a conversation after the socket opened.

    Without `since` there is no replay. With `since` (usually high_water
    from the last listing) the backlog after that ordinal is sent first.
    """
    subscription: Optional[Subscription] = None
    backlog_events: list[dict] = []
    try:
        await run_in_threadpool(_ensure_conversation, conversation_id)
        # Subscribe before reading the backlog and before accepting so
        # nothing appended in between is missed
        subscription = broker.subscribe(conversation_channel(conversation_id))
        if since is not None:
            backlog_events = await run_in_threadpool(_backlog_events, conversation_id, since)
    except ConversationNotFound:
        logger.info(f"Live subscription refused, unknown conversation {conversation_id}")
        await websocket.close(code=WS_CLOSE_NOT_FOUND)
        return
    except MarketChatError as e:
        if subscription is not None:
            subscription.close()
        logger.error(f"Live subscription to {conversation_id} failed: {e.detail}")
        await websocket.close(code=WS_CLOSE_STORE_ERROR)
        return

    await websocket.accept()
    logger.info(f"Live subscription opened: conversation={conversation_id}, since={since}")

    last_sent = since
    try:
        for event in backlog_events:
            await websocket.send_json(event)
            last_sent = event["data"]["id"]
    except WebSocketDisconnect:
        subscription.close()
        return

    await _pump(websocket, subscription, skip_through=last_sent)
    logger.info(f"Live subscription closed: conversation={conversation_id}")


@app.websocket("/ws/notifications/{user_id}")
async def notification_stream(websocket: WebSocket, user_id: str) -> None:
    """Notifications created for a user while the socket is open."""
    subscription = broker.subscribe(notification_channel(user_id))
    await websocket.accept()
    logger.info(f"Notification stream opened: user={user_id}")
    await _pump(websocket, subscription)
    logger.info(f"Notification stream closed: user={user_id}")


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
