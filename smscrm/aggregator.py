"""
Group the message log into display-level conversations.

Pure functions over explicit inputs: nothing is cached between calls, so
re-running on every poll reflects whatever the writers have stored since.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Union

from smscrm.message_index import (
    customer_phone_of,
    message_timestamp,
    message_timestamp_raw,
)
from smscrm.phone import normalize_phone, phone_variants

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LastMessage:
    body: Optional[str]
    timestamp: Optional[str]
    direction: Optional[str]


@dataclass
class ConversationView:
    conversation_id: str
    phone_number: str
    last_message: Optional[LastMessage]
    sender_phones: list[str]
    contact: Optional[Any] = None
    message_count: int = 0


@dataclass
class _Group:
    key: str
    phone_counts: Counter = field(default_factory=Counter)
    sender_phones: list = field(default_factory=list)
    last: Any = None
    last_at: Optional[datetime] = None
    count: int = 0

    def add_sender_phone(self, phone: str) -> None:
        if phone not in self.sender_phones:
            self.sender_phones.append(phone)


def index_contacts(contacts: Iterable[Any]) -> dict[str, Any]:
    """
    Map every useful representation of each contact's phone to the contact.

    Contacts without a phone are skipped. The first contact wins when two
    share a number.
    """
    index: dict[str, Any] = {}
    for contact in contacts:
        phone = getattr(contact, "phone", None)
        if not phone or not isinstance(phone, str):
            continue
        for variant in phone_variants(phone):
            index.setdefault(variant, contact)
    return index


def _conversation_key(message) -> Optional[str]:
    # Legacy rows group under the normalized customer phone so formatting drift does not split them
    return message.conversation_id or normalize_phone(customer_phone_of(message)) or None


def _sender_phone_for(message, active_sender_phones: Mapping[str, str], active_numbers: set[str]) -> Optional[str]:
    binding_id = getattr(message, "sender_phone_number_id", None)
    if binding_id and binding_id in active_sender_phones:
        return active_sender_phones[binding_id]

    candidate = message.from_number if message.direction == "outbound" else message.to_number
    if candidate and normalize_phone(candidate) in active_numbers:
        return candidate
    return None


def _canonical_phone(group: _Group) -> str:
    if not group.phone_counts:
        return group.key
    # Counter preserves first-seen order, so ties go to the earliest phone
    phone, _ = group.phone_counts.most_common(1)[0]
    return phone


def _find_contact(canonical: str, group: _Group, contacts_by_phone: Mapping[str, Any]) -> Optional[Any]:
    for phone in [canonical, *group.phone_counts]:
        for variant in [phone, *sorted(phone_variants(phone))]:
            contact = contacts_by_phone.get(variant)
            if contact is not None:
                return contact
    return None


def build_conversations(
    messages: Iterable[Any],
    active_sender_phones: Mapping[str, str],
    contacts_by_phone: Optional[Mapping[str, Any]] = None,
    sender_phone_filter: Optional[Union[str, Iterable[str]]] = None,
) -> list[ConversationView]:
    """
    Build conversation views from raw messages.

    Args:
        messages: Message records (ORM rows or anything with the same attributes)
        active_sender_phones: Active sender phone id -> phone number
        contacts_by_phone: Phone -> contact, see index_contacts
        sender_phone_filter: Keep only conversations involving these sender phones

    Returns:
        Conversations, most recent activity first
    """
    contacts_by_phone = contacts_by_phone or {}
    active_numbers = {normalize_phone(p) for p in active_sender_phones.values() if p}

    groups: dict[str, _Group] = {}
    skipped = 0

    for message in messages:
        try:
            key = _conversation_key(message)
            customer_phone = customer_phone_of(message)
            sender_phone = _sender_phone_for(message, active_sender_phones, active_numbers)
            at = message_timestamp(message)
        except (AttributeError, TypeError) as e:
            logger.warning(f"Skipping malformed message record: {e}")
            skipped += 1
            continue
        if not key:
            skipped += 1
            continue

        group = groups.get(key)
        if group is None:
            group = groups[key] = _Group(key=key)
        group.count += 1

        if customer_phone:
            group.phone_counts[customer_phone] += 1
        if sender_phone:
            group.add_sender_phone(sender_phone)

        if group.last is None or at > group.last_at:
            group.last = message
            group.last_at = at

    if skipped:
        logger.debug(f"Aggregation skipped {skipped} message(s) without a conversation key or phone")

    views = []
    for group in groups.values():
        if group.count == 0:
            continue
        canonical = _canonical_phone(group)
        views.append(ConversationView(
            conversation_id=group.key,
            phone_number=canonical,
            last_message=LastMessage(
                body=group.last.body,
                timestamp=message_timestamp_raw(group.last),
                direction=group.last.direction,
            ),
            sender_phones=list(group.sender_phones),
            contact=_find_contact(canonical, group, contacts_by_phone),
            message_count=group.count,
        ))

    views.sort(key=lambda v: groups[v.conversation_id].last_at, reverse=True)

    if sender_phone_filter:
        wanted = (
            {normalize_phone(sender_phone_filter)}
            if isinstance(sender_phone_filter, str)
            else {normalize_phone(p) for p in sender_phone_filter}
        )
        views = [v for v in views if wanted & {normalize_phone(p) for p in v.sender_phones}]

    return views
