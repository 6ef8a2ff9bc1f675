"""
Bind a customer phone into a remote conversation with a sender phone as proxy.

The provider allows an (address, proxy address) pair in one conversation
only. When the pair already lives elsewhere, the provider says so in the
error text; parse_conflicting_conversation is the single place that reads it.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from smscrm.phone import normalize_phone, phones_match
from smscrm.provider import ConversationProvider, ProviderError

logger = logging.getLogger(__name__)

# "A binding for this participant and proxy address already exists in Conversation CHxxxx"
_CONFLICT_PATTERN = re.compile(r"already exists in Conversation\s+(CH[0-9a-fA-F]+)")


class BindStatus(str, Enum):
    BOUND = "bound"
    ALREADY_BOUND = "already_bound"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass(frozen=True)
class BindResult:
    status: BindStatus
    conversation_key: str
    conflicting_key: Optional[str] = None
    error: Optional[ProviderError] = None

    @property
    def ok(self) -> bool:
        return self.status in (BindStatus.BOUND, BindStatus.ALREADY_BOUND)

    @property
    def added(self) -> bool:
        return self.status == BindStatus.BOUND


def parse_conflicting_conversation(message: Optional[str]) -> Optional[str]:
    """
    Extract the conversation SID named in a binding-exists error.

    Returns:
        The SID, or None if the text does not name one
    """
    if not message:
        return None
    match = _CONFLICT_PATTERN.search(message)
    return match.group(1) if match else None


def ensure_participant(
    provider: ConversationProvider,
    conversation_key: str,
    customer_phone: str,
    proxy_phone: str,
) -> BindResult:
    """
    Make sure the customer is a participant of the conversation.

    Args:
        provider: Remote provider
        conversation_key: Remote conversation SID
        customer_phone: Participant address
        proxy_phone: Sender phone used as proxy address

    Returns:
        BindResult; provider failures are folded into its status
    """
    customer = normalize_phone(customer_phone)
    proxy = normalize_phone(proxy_phone)

    try:
        participants = provider.list_participants(conversation_key)
    except ProviderError as e:
        if e.is_not_found:
            logger.warning(f"Conversation {conversation_key} not found on provider")
            return BindResult(status=BindStatus.NOT_FOUND, conversation_key=conversation_key, error=e)
        logger.error(f"Listing participants of {conversation_key} failed: {e.message}")
        return BindResult(status=BindStatus.FAILED, conversation_key=conversation_key, error=e)

    if any(phones_match(p.address, customer) for p in participants):
        logger.debug(f"{customer} already in {conversation_key}")
        return BindResult(status=BindStatus.ALREADY_BOUND, conversation_key=conversation_key)

    try:
        provider.add_participant(conversation_key, address=customer, proxy_address=proxy)
    except ProviderError as e:
        return _classify_add_failure(provider, e, conversation_key, customer, proxy)

    logger.info(f"Added participant {customer} via proxy {proxy} to {conversation_key}")
    return BindResult(status=BindStatus.BOUND, conversation_key=conversation_key)


def _classify_add_failure(
    provider: ConversationProvider,
    error: ProviderError,
    conversation_key: str,
    customer: str,
    proxy: str,
) -> BindResult:
    if error.is_not_found:
        return BindResult(status=BindStatus.NOT_FOUND, conversation_key=conversation_key, error=error)

    if not error.mentions_existing_binding:
        logger.error(f"Adding {customer} to {conversation_key} failed: {error.message}")
        return BindResult(status=BindStatus.FAILED, conversation_key=conversation_key, error=error)

    conflicting = parse_conflicting_conversation(error.message)
    if conflicting == conversation_key:
        logger.info(f"{customer} via {proxy} already bound to {conversation_key}")
        return BindResult(status=BindStatus.ALREADY_BOUND, conversation_key=conversation_key)

    if conflicting is None:
        return _confirm_binding(provider, error, conversation_key, customer, proxy)

    logger.warning(f"{customer} via {proxy} is bound to {conflicting}, not {conversation_key}")
    return BindResult(
        status=BindStatus.CONFLICT,
        conversation_key=conversation_key,
        conflicting_key=conflicting,
        error=error,
    )


def _confirm_binding(
    provider: ConversationProvider,
    error: ProviderError,
    conversation_key: str,
    customer: str,
    proxy: str,
) -> BindResult:
    """
    The provider says the binding exists without naming where. Only a
    participant list that actually contains the customer counts as bound.
    """
    try:
        participants = provider.list_participants(conversation_key)
    except ProviderError as e:
        logger.error(f"Re-listing participants of {conversation_key} failed: {e.message}")
        return BindResult(status=BindStatus.FAILED, conversation_key=conversation_key, error=error)

    if any(phones_match(p.address, customer) for p in participants):
        logger.info(f"{customer} via {proxy} already bound to {conversation_key}")
        return BindResult(status=BindStatus.ALREADY_BOUND, conversation_key=conversation_key)

    logger.error(
        f"Provider reports an existing binding for {customer} via {proxy} but it is not in "
        f"{conversation_key} and no owning conversation was named"
    )
    return BindResult(status=BindStatus.FAILED, conversation_key=conversation_key, error=error)
