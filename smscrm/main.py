import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from smscrm.config import settings
from smscrm.conversations import (
    apply_status_update,
    delete_conversation,
    ingest_inbound,
    list_conversations,
    resolution_http_status,
    resolve_conversation,
    send_sms,
    thread_messages,
)
from smscrm.logging_utils import setup_logging, RequestLoggingMiddleware, log_route_data
from smscrm.message_index import message_timestamp_raw
from smscrm.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from smscrm.phone import normalize_phone
from smscrm.provider import ProviderFactory, create_provider_factory
from smscrm.resolver import ResolutionError
from smscrm.schemas import (
    ContactCreate,
    ContactResponse,
    ConversationResponse,
    ConversationsListResponse,
    DeleteConversationResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    ResolutionErrorDetail,
    ResolutionErrorResponse,
    ResolveConversationRequest,
    ResolveConversationResponse,
    SendSmsRequest,
    SendSmsResponse,
    SenderAccountCreate,
    SenderAccountResponse,
    SenderPhoneNumberCreate,
    SenderPhoneNumberResponse,
    StatusUpdateResponse,
)
from smscrm.storage import (
    check_db_health,
    create_contact,
    create_sender_account,
    create_sender_phone_number,
    get_db,
    get_sender_account,
    init_db,
    list_contacts,
    list_sender_accounts,
    list_sender_phone_numbers,
)
from smscrm.utils import parse_form_body, verify_twilio_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="SMS CRM API",
    description="SMS CRM backend with Twilio Conversations identity resolution",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@lru_cache()
def get_provider_factory() -> ProviderFactory:
    """Provider factory for the configured backend, shared by all requests."""
    return create_provider_factory(settings.CONVERSATION_PROVIDER, settings.REMOTE_TIMEOUT_SECONDS)


def _resolution_exception(error: ResolutionError) -> HTTPException:
    detail = ResolutionErrorDetail(
        kind=error.kind.value,
        code=error.code,
        message=error.message,
        provider_code=error.provider_code,
        retryable=error.retryable,
    )
    return HTTPException(status_code=resolution_http_status(error), detail=detail.model_dump())


def _message_response(message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        direction=message.direction,
        from_number=message.from_number,
        to_number=message.to_number,
        body=message.body,
        status=message.status,
        conversation_id=message.conversation_id,
        provider_message_sid=message.provider_message_sid,
        media_count=message.media_count or 0,
        timestamp=message_timestamp_raw(message),
    )


def _webhook_url(request: Request) -> str:
    if settings.PUBLIC_BASE_URL:
        return settings.PUBLIC_BASE_URL.rstrip("/") + request.url.path
    return str(request.url)


async def _verified_form(request: Request, x_twilio_signature: str | None, webhook: str) -> dict[str, str]:
    raw_body = await request.body()
    params = parse_form_body(raw_body)

    if settings.WEBHOOK_SIGNATURE_MODE.strip().lower() == "off":
        return params

    if not verify_twilio_signature(_webhook_url(request), params, x_twilio_signature, settings.TWILIO_AUTH_TOKEN):
        logger.error(f"Invalid Twilio signature on {webhook}")
        record_webhook_outcome("invalid_signature")
        log_route_data(request, result="invalid_signature", message_sid=params.get("MessageSid"))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="invalid signature"
        )
    return params


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness check: always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness check: returns 200 only if:
    1. DB is reachable and schema is applied
    2. TWILIO_AUTH_TOKEN is set, unless webhook signatures are switched off

    Otherwise returns 503 (Service Unavailable).
    """
    signatures_enforced = settings.WEBHOOK_SIGNATURE_MODE.strip().lower() != "off"
    if signatures_enforced and not settings.TWILIO_AUTH_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="TWILIO_AUTH_TOKEN not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.post(
    "/conversations/resolve",
    response_model=ResolveConversationResponse,
    responses={
        409: {"model": ResolutionErrorResponse, "description": "Unresolvable binding conflict"},
        502: {"model": ResolutionErrorResponse, "description": "Provider error"},
        503: {"model": ResolutionErrorResponse, "description": "Provider configuration error"},
    }
)
def resolve(
    request: Request,
    payload: ResolveConversationRequest,
    db: Session = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
) -> ResolveConversationResponse:
    """
    Find or create the conversation for a customer and sender phone.

    The returned conversation always has the customer bound as a participant.
    """
    resolution = resolve_conversation(db, provider_factory, payload.customer_phone, payload.sender_phone_number_id)
    log_route_data(request, resolution=resolution.outcome, conversation_id=resolution.conversation_key)

    if not resolution.ok:
        raise _resolution_exception(resolution.error)

    return ResolveConversationResponse(
        conversation_id=resolution.conversation_key,
        participants_added=resolution.participants_added,
        created=resolution.created,
    )


@app.get("/conversations", response_model=ConversationsListResponse)
def get_conversations(
    sender_phone: Annotated[str | None, Query(description="Only conversations involving this sender phone")] = None,
    db: Session = Depends(get_db),
) -> ConversationsListResponse:
    """
    List conversations, most recent activity first.

    Built from the full message log on every call.
    """
    logger.info(f"GET /conversations: sender_phone={sender_phone}")
    conversations = list_conversations(db, sender_phone_filter=sender_phone)
    return ConversationsListResponse(
        conversations=[ConversationResponse.model_validate(c) for c in conversations]
    )


@app.delete("/conversations/{conversation_key:path}", response_model=DeleteConversationResponse)
def remove_conversation(
    request: Request,
    conversation_key: str,
    db: Session = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
) -> DeleteConversationResponse:
    """
    Delete every local message of a conversation and the remote conversation.

    deleted_count counts local messages actually deleted; a failed remote
    delete does not change it.
    """
    result = delete_conversation(db, provider_factory, conversation_key)
    log_route_data(request, conversation_id=conversation_key, deleted_count=result.deleted_count)
    return DeleteConversationResponse(
        deleted_count=result.deleted_count,
        remote_deleted=result.remote_deleted,
    )


# =============================================================================
# Message Routes
# =============================================================================

@app.get("/messages/{phone_or_key:path}", response_model=MessagesListResponse)
def get_thread(
    phone_or_key: str,
    use_conversation_id: Annotated[bool, Query(description="Treat the path value as a conversation key")] = False,
    sender_phone: Annotated[str | None, Query(description="Only messages exchanged with this sender phone")] = None,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """Messages of one thread, oldest first."""
    messages = thread_messages(db, phone_or_key, use_conversation_id=use_conversation_id, sender_phone=sender_phone)
    logger.info(f"GET /messages/{phone_or_key}: {len(messages)} messages")
    return MessagesListResponse(messages=[_message_response(m) for m in messages])


@app.post(
    "/send-sms",
    response_model=SendSmsResponse,
    responses={
        409: {"model": ResolutionErrorResponse},
        502: {"model": ResolutionErrorResponse},
        503: {"model": ResolutionErrorResponse},
    }
)
def post_send_sms(
    request: Request,
    payload: SendSmsRequest,
    db: Session = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
) -> SendSmsResponse:
    """
    Send an SMS to a customer through their conversation.

    Resolution errors are returned as-is; nothing is retried here.
    """
    result = send_sms(db, provider_factory, payload.to, payload.message, payload.sender_phone_number_id)
    log_route_data(request, conversation_id=result.conversation_key, message_sid=result.provider_message_sid)

    if not result.ok:
        raise _resolution_exception(result.error)

    return SendSmsResponse(
        conversation_id=result.conversation_key,
        message_sid=result.provider_message_sid,
        participants_added=result.participants_added,
        message=_message_response(result.message) if result.message is not None else None,
    )


# =============================================================================
# Twilio Webhook Routes
# =============================================================================

@app.post(
    "/twilio/webhook",
    responses={
        403: {"model": ErrorResponse, "description": "Invalid signature"},
    }
)
async def twilio_webhook(
    request: Request,
    x_twilio_signature: Annotated[str | None, Header(alias="X-Twilio-Signature")] = None,
    db: Session = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
) -> Response:
    """
    Ingest an inbound SMS.

    - Verifies X-Twilio-Signature (unless WEBHOOK_SIGNATURE_MODE=off)
    - Idempotent: a redelivered MessageSid is not stored twice
    - Replies with empty TwiML
    """
    logger.info("Inbound webhook received")
    params = await _verified_form(request, x_twilio_signature, "inbound webhook")

    if not params.get("From") or not params.get("To"):
        record_webhook_outcome("validation_error")
        log_route_data(request, result="validation_error", message_sid=params.get("MessageSid"))
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="From and To are required"
        )

    try:
        result = await run_in_threadpool(ingest_inbound, db, provider_factory, params)
    except RuntimeError as e:
        logger.error(f"Failed to store inbound message: {e}")
        record_webhook_outcome("error")
        log_route_data(request, result="error", message_sid=params.get("MessageSid"))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store message"
        )

    outcome = "duplicate" if result.duplicate else "created"
    record_webhook_outcome(outcome)
    log_route_data(
        request,
        result=outcome,
        dup=result.duplicate,
        message_sid=params.get("MessageSid"),
        conversation_id=result.conversation_key,
        resolution=result.resolution.outcome if result.resolution is not None else None,
    )
    return Response(content=EMPTY_TWIML, media_type="text/xml")


@app.post("/twilio/status", response_model=StatusUpdateResponse)
async def twilio_status(
    request: Request,
    x_twilio_signature: Annotated[str | None, Header(alias="X-Twilio-Signature")] = None,
    db: Session = Depends(get_db),
) -> StatusUpdateResponse:
    """
    Delivery status callback: queued, sending, sent, failed, delivered, undelivered.
    """
    params = await _verified_form(request, x_twilio_signature, "status callback")
    message_sid = params.get("MessageSid")
    message_status = params.get("MessageStatus")

    if not message_sid or not message_status:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="MessageSid and MessageStatus are required"
        )

    updated = await run_in_threadpool(
        apply_status_update,
        db,
        message_sid,
        message_status,
        params.get("ErrorCode") or None,
        params.get("ErrorMessage") or None,
    )
    log_route_data(request, message_sid=message_sid, result=message_status)
    if updated is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return StatusUpdateResponse()


# =============================================================================
# Configuration Routes
# =============================================================================

@app.get("/sender-accounts", response_model=list[SenderAccountResponse])
def get_sender_accounts(db: Session = Depends(get_db)):
    return list_sender_accounts(db)


@app.post("/sender-accounts", response_model=SenderAccountResponse, status_code=status.HTTP_201_CREATED)
def post_sender_account(payload: SenderAccountCreate, db: Session = Depends(get_db)):
    created, account = create_sender_account(
        db,
        account_name=payload.account_name,
        account_sid=payload.account_sid,
        auth_token=payload.auth_token,
        conversation_service_sid=payload.conversation_service_sid,
        is_active=payload.is_active,
    )
    if not created:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="An account with this SID already exists")
    return account


@app.get("/sender-phone-numbers", response_model=list[SenderPhoneNumberResponse])
def get_sender_phone_numbers(
    active_only: Annotated[bool, Query()] = False,
    db: Session = Depends(get_db),
):
    return list_sender_phone_numbers(db, active_only=active_only)


@app.post("/sender-phone-numbers", response_model=SenderPhoneNumberResponse, status_code=status.HTTP_201_CREATED)
def post_sender_phone_number(payload: SenderPhoneNumberCreate, db: Session = Depends(get_db)):
    if get_sender_account(db, payload.account_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return create_sender_phone_number(
        db,
        account_id=payload.account_id,
        phone_number=normalize_phone(payload.phone_number),
        friendly_name=payload.friendly_name,
        is_primary=payload.is_primary,
        is_active=payload.is_active,
    )


@app.get("/contacts", response_model=list[ContactResponse])
def get_contacts(db: Session = Depends(get_db)):
    return list_contacts(db)


@app.post("/contacts", response_model=ContactResponse, status_code=status.HTTP_201_CREATED)
def post_contact(payload: ContactCreate, db: Session = Depends(get_db)):
    return create_contact(db, phone=payload.phone, name=payload.name, crm_id=payload.crm_id)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
