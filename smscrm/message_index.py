"""
Read-only queries over the local message log.

The log is keyed loosely: phone numbers appear in several formats, older rows
lack conversation_id, and some lack sender_phone_number_id. Every lookup here
tolerates that.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from smscrm.phone import phone_suffix, phone_variants, phones_match
from smscrm.storage import list_messages

logger = logging.getLogger(__name__)

# Twilio Conversation SIDs look like "CH" + 32 hex chars
REMOTE_KEY_PREFIX = "CH"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def is_remote_key(key: Optional[str]) -> bool:
    """True if the conversation key is a remote-authoritative conversation SID."""
    return bool(key) and key.startswith(REMOTE_KEY_PREFIX)


def customer_phone_of(message) -> Optional[str]:
    """The customer-side counterpart: sender of inbound, recipient of outbound."""
    if message.direction == "inbound":
        return message.from_number
    return message.to_number


def sender_phone_of(message) -> Optional[str]:
    """Our side of the exchange, the opposite counterpart of customer_phone_of."""
    if message.direction == "inbound":
        return message.to_number
    return message.from_number


def message_timestamp_raw(message) -> Optional[str]:
    return message.received_at or message.sent_at or message.created_at


def parse_timestamp(value: Optional[str]) -> datetime:
    """Parse an ISO-8601 timestamp; anything unparseable sorts as the epoch."""
    if not value:
        return _EPOCH
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def message_timestamp(message) -> datetime:
    """received_at, then sent_at, then created_at."""
    return parse_timestamp(message_timestamp_raw(message))


def _candidates(db: Session, customer_phone: str) -> list:
    # Formatted rows like "(555) 123-4567" miss an exact IN lookup; phones_match does the real comparison
    suffix = phone_suffix(customer_phone)
    if suffix:
        return list_messages(db, phone_fragment=suffix)
    return list_messages(db, phone_numbers=phone_variants(customer_phone))


def find_by_customer_and_sender(
    db: Session,
    customer_phone: str,
    sender_binding_id: Optional[str],
    sender_phone: Optional[str] = None,
) -> list:
    """
    Messages exchanged between a customer and one configured sender phone.

    A message matches when its customer-side counterpart matches the customer
    phone AND either its sender binding id matches or, for rows without a
    binding id, its sender-side counterpart matches the sender phone.

    Args:
        db: Database session
        customer_phone: Customer phone, any format
        sender_binding_id: Configured sender phone id
        sender_phone: Sender phone number, used for rows missing the binding id

    Returns:
        Matching messages, oldest first
    """
    candidates = _candidates(db, customer_phone)

    matches = []
    for message in candidates:
        if not phones_match(customer_phone_of(message), customer_phone):
            continue
        if sender_binding_id and message.sender_phone_number_id == sender_binding_id:
            matches.append(message)
        elif sender_phone and phones_match(sender_phone_of(message), sender_phone):
            matches.append(message)

    logger.debug(
        f"Local index: {len(matches)} of {len(candidates)} messages match "
        f"customer={customer_phone} sender={sender_binding_id}/{sender_phone}"
    )
    return matches


def find_by_customer_phone(db: Session, customer_phone: str, sender_phone: Optional[str] = None) -> list:
    """Messages whose customer-side counterpart matches, optionally narrowed to one sender phone."""
    candidates = _candidates(db, customer_phone)
    matches = [m for m in candidates if phones_match(customer_phone_of(m), customer_phone)]
    if sender_phone:
        matches = [m for m in matches if phones_match(sender_phone_of(m), sender_phone)]
    return matches


def find_by_conversation_key(db: Session, conversation_key: str) -> list:
    return list_messages(db, conversation_id=conversation_key)


def pick_cached_key(messages: Iterable) -> Optional[str]:
    """
    Choose the conversation key a thread is already using.

    A remote key beats any legacy key; among keys of the same kind the most
    recent message wins.

    Returns:
        Conversation key, or None if no message carries one
    """
    ordered = sorted(messages, key=message_timestamp, reverse=True)
    for message in ordered:
        if is_remote_key(message.conversation_id):
            return message.conversation_id
    for message in ordered:
        if message.conversation_id:
            return message.conversation_id
    return None
