"""
Conversation operations used by the HTTP routes.

Each function takes an explicit session and provider factory so routes,
background callers and tests drive the same code.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from smscrm.aggregator import ConversationView, build_conversations, index_contacts
from smscrm.message_index import (
    customer_phone_of,
    find_by_conversation_key,
    find_by_customer_phone,
    is_remote_key,
    message_timestamp,
    pick_cached_key,
)
from smscrm.phone import normalize_phone, phone_variants, phones_match
from smscrm.provider import ProviderError, ProviderFactory
from smscrm.resolver import ConversationResolver, ErrorKind, Resolution, ResolutionError
from smscrm.storage import (
    create_message,
    delete_message,
    find_sender_phone_by_number,
    get_message_by_provider_sid,
    get_sender_account,
    get_sender_phone_number,
    list_contacts,
    list_messages,
    list_sender_phone_numbers,
    update_message,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

FAILED_STATUSES = ("failed", "undelivered")


@dataclass(frozen=True)
class DeleteResult:
    deleted_count: int
    matched_count: int
    remote_deleted: bool


@dataclass(frozen=True)
class InboundResult:
    message: object
    duplicate: bool
    conversation_key: Optional[str]
    resolution: Optional[Resolution] = None


@dataclass(frozen=True)
class SendResult:
    message: object = None
    conversation_key: Optional[str] = None
    provider_message_sid: Optional[str] = None
    participants_added: int = 0
    error: Optional[ResolutionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# =============================================================================
# Resolve / list / delete
# =============================================================================

def resolve_conversation(
    db: Session,
    provider_factory: ProviderFactory,
    customer_phone: str,
    sender_binding_id: str,
) -> Resolution:
    return ConversationResolver(db, provider_factory).resolve(customer_phone, sender_binding_id)


def list_conversations(db: Session, sender_phone_filter: Optional[str] = None) -> list[ConversationView]:
    """
    Rebuild the conversation list from the full message log.

    A failing contact lookup only costs the contact names.
    """
    messages = list_messages(db)
    active = {p.id: p.phone_number for p in list_sender_phone_numbers(db, active_only=True)}

    try:
        contacts_by_phone = index_contacts(list_contacts(db))
    except Exception as e:
        logger.warning(f"Could not load contacts, listing conversations without them: {e}")
        contacts_by_phone = {}

    conversations = build_conversations(
        messages,
        active_sender_phones=active,
        contacts_by_phone=contacts_by_phone,
        sender_phone_filter=sender_phone_filter,
    )
    logger.info(f"Built {len(conversations)} conversations from {len(messages)} messages")
    return conversations


def _messages_for_key(db: Session, key: str) -> list:
    matched = {m.id: m for m in find_by_conversation_key(db, key)}
    if not is_remote_key(key):
        # Legacy groups are keyed by the customer phone itself
        for message in find_by_customer_phone(db, key):
            if message.conversation_id is None and phones_match(customer_phone_of(message), key):
                matched.setdefault(message.id, message)
    return list(matched.values())


def _provider_for_messages(db: Session, provider_factory: ProviderFactory, messages: list):
    for message in messages:
        if not message.sender_phone_number_id:
            continue
        sender = get_sender_phone_number(db, message.sender_phone_number_id)
        if sender is None:
            continue
        account = get_sender_account(db, sender.account_id)
        if account is not None and account.account_sid and account.auth_token:
            return provider_factory(account)
    return None


def delete_conversation(db: Session, provider_factory: ProviderFactory, key: str) -> DeleteResult:
    """
    Delete a conversation's local messages and, for remote keys, the remote conversation.

    Local deletion is per message and best-effort; the remote delete is
    independent of it and its failure is only logged.

    Returns:
        DeleteResult with the number of local messages actually deleted
    """
    messages = _messages_for_key(db, key)
    provider = _provider_for_messages(db, provider_factory, messages) if is_remote_key(key) else None
    message_ids = [m.id for m in messages]

    deleted = 0
    for message_id in message_ids:
        try:
            if delete_message(db, message_id):
                deleted += 1
        except Exception as e:
            logger.error(f"Error deleting message {message_id}: {e}")

    remote_deleted = False
    if provider is not None:
        try:
            remote_deleted = bool(provider.delete_conversation(key))
        except ProviderError as e:
            logger.warning(f"Remote delete of {key} failed: code={e.code} message={e.message}")
    elif is_remote_key(key):
        logger.warning(f"No provider credentials found for {key}; remote conversation left in place")

    logger.info(f"Deleted conversation {key}: {deleted}/{len(message_ids)} messages, remote={remote_deleted}")
    return DeleteResult(deleted_count=deleted, matched_count=len(message_ids), remote_deleted=remote_deleted)


def thread_messages(
    db: Session,
    phone_or_key: str,
    use_conversation_id: bool = False,
    sender_phone: Optional[str] = None,
) -> list:
    """Messages of one thread, oldest first."""
    if use_conversation_id:
        messages = find_by_conversation_key(db, phone_or_key)
    else:
        messages = find_by_customer_phone(db, phone_or_key, sender_phone=sender_phone)
    return sorted(messages, key=message_timestamp)


# =============================================================================
# Inbound / outbound / status
# =============================================================================

def _legacy_key(db: Session, customer_phone: str, sender_phone: Optional[str]) -> Optional[str]:
    return pick_cached_key(find_by_customer_phone(db, customer_phone, sender_phone=sender_phone))


def ingest_inbound(db: Session, provider_factory: ProviderFactory, params: dict[str, str]) -> InboundResult:
    """
    Store an inbound SMS delivered by the provider webhook.

    The message is always stored. When resolution fails it falls back to the
    thread's known key or, for a first message, its own id.

    Args:
        db: Database session
        provider_factory: Builds a provider for the receiving sender phone's account
        params: Decoded webhook form fields (From, To, Body, MessageSid, ...)

    Returns:
        InboundResult; duplicate is True when MessageSid was already stored
    """
    from_number = normalize_phone(params.get("From"))
    to_number = normalize_phone(params.get("To"))
    message_sid = params.get("MessageSid") or None

    if message_sid:
        existing = get_message_by_provider_sid(db, message_sid)
        if existing is not None:
            logger.info(f"Inbound message {message_sid} already stored")
            return InboundResult(message=existing, duplicate=True, conversation_key=existing.conversation_id)

    sender = find_sender_phone_by_number(db, phone_variants(to_number)) if to_number else None
    if sender is None:
        logger.warning(f"Inbound message to unconfigured number {to_number}")

    resolution = None
    conversation_key = None
    if sender is not None and from_number:
        resolution = resolve_conversation(db, provider_factory, from_number, sender.id)
        if resolution.ok:
            conversation_key = resolution.conversation_key
        else:
            logger.warning(f"Inbound resolution failed ({resolution.error.code}); using local key")

    if conversation_key is None and from_number:
        conversation_key = _legacy_key(db, from_number, to_number)

    try:
        media_count = int(params.get("NumMedia") or 0)
    except ValueError:
        media_count = 0

    success, is_duplicate, message = create_message(
        db=db,
        direction="inbound",
        from_number=from_number or None,
        to_number=to_number or None,
        body=params.get("Body"),
        status=params.get("SmsStatus") or "received",
        provider_message_sid=message_sid,
        conversation_id=conversation_key,
        sender_phone_number_id=sender.id if sender is not None else None,
        media_count=media_count,
        received_at=utc_now_iso(),
    )
    if not success:
        raise RuntimeError(f"Failed to store inbound message {message_sid}")
    if is_duplicate:
        return InboundResult(message=message, duplicate=True, conversation_key=message.conversation_id if message else None)

    if conversation_key is None:
        # First message of a thread without a remote conversation roots it
        message = update_message(db, message.id, conversation_id=message.id)
        conversation_key = message.id

    return InboundResult(message=message, duplicate=False, conversation_key=conversation_key, resolution=resolution)


def send_sms(
    db: Session,
    provider_factory: ProviderFactory,
    to: str,
    body: str,
    sender_binding_id: str,
) -> SendResult:
    """
    Send an SMS through the customer's conversation and record it.

    Returns:
        SendResult; error is set when resolution or the send itself failed
    """
    resolution = resolve_conversation(db, provider_factory, to, sender_binding_id)
    if not resolution.ok:
        return SendResult(error=resolution.error)

    sender = get_sender_phone_number(db, sender_binding_id)
    account = get_sender_account(db, sender.account_id)
    provider = provider_factory(account)
    sender_phone = normalize_phone(sender.phone_number)
    customer = normalize_phone(to)

    try:
        message_sid = provider.send_message(resolution.conversation_key, body=body, author=sender_phone)
    except ProviderError as e:
        logger.error(f"Sending to {customer} via {resolution.conversation_key} failed: {e.message}")
        return SendResult(
            conversation_key=resolution.conversation_key,
            error=ResolutionError.from_provider(e, "send_failed"),
        )

    success, _, message = create_message(
        db=db,
        direction="outbound",
        from_number=sender_phone,
        to_number=customer,
        body=body,
        status="sent",
        provider_message_sid=message_sid,
        conversation_id=resolution.conversation_key,
        sender_phone_number_id=sender.id,
        sent_at=utc_now_iso(),
    )
    if not success:
        # Already sent; losing the local record must not look like a failed send
        logger.error(f"Message {message_sid} sent but could not be stored locally")

    return SendResult(
        message=message,
        conversation_key=resolution.conversation_key,
        provider_message_sid=message_sid,
        participants_added=resolution.participants_added,
    )


def apply_status_update(
    db: Session,
    message_sid: str,
    status: str,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
):
    """
    Record a delivery status callback.

    Returns:
        Updated message, or None if no message has that provider SID
    """
    message = get_message_by_provider_sid(db, message_sid)
    if message is None:
        logger.warning(f"Status update for unknown message {message_sid}")
        return None

    changes = {"status": status}
    if error_code:
        changes["error_code"] = str(error_code)
    if error_message:
        changes["error_message"] = error_message

    now = utc_now_iso()
    if status == "delivered":
        changes["delivered_at"] = now
    elif status in FAILED_STATUSES:
        changes["failed_at"] = now
        logger.error(f"Message {message_sid} {status}: code={error_code} message={error_message}")

    return update_message(db, message.id, **changes)


def resolution_http_status(error: ResolutionError) -> int:
    """HTTP status a route answers with for a resolution error."""
    if error.kind == ErrorKind.CONFIGURATION:
        return 503
    if error.kind == ErrorKind.CONFLICT:
        return 409
    return 502
