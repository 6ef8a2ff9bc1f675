"""
Search the remote provider for conversations a customer phone takes part in.

A customer may sit in several conversations, one per sender phone (proxy
address). All of them are returned; callers prefer exact matches, where the
same participant binding carries both the customer and the proxy phone.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from smscrm.phone import normalize_phone, phones_match
from smscrm.provider import ConversationProvider, ProviderError, RemoteParticipant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteConversation:
    key: str
    participants: tuple[RemoteParticipant, ...]
    exact: bool


@dataclass(frozen=True)
class SearchResult:
    """
    Outcome of a remote search.

    Exactly one of these holds:
    - error is set: listing or a participant fetch failed
    - found == 0: nothing matched
    - found >= 1: conversations holds every match in listing order
    """
    found: int = 0
    conversations: tuple[RemoteConversation, ...] = field(default_factory=tuple)
    searched: int = 0
    error: Optional[ProviderError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def exact_matches(self) -> list[RemoteConversation]:
        return [c for c in self.conversations if c.exact]

    @property
    def customer_only_matches(self) -> list[RemoteConversation]:
        return [c for c in self.conversations if not c.exact]


def find_by_phone(
    provider: ConversationProvider,
    customer_phone: str,
    proxy_phone: Optional[str],
    limit: int = 1000,
) -> SearchResult:
    """
    List conversations and keep those with the customer as a participant.

    Args:
        provider: Remote provider, already scoped to the account's service
        customer_phone: Customer phone, any format
        proxy_phone: Sender phone; when given, marks exact matches
        limit: Maximum number of conversations to inspect

    Returns:
        SearchResult; never raises for provider failures
    """
    customer = normalize_phone(customer_phone)
    proxy = normalize_phone(proxy_phone) if proxy_phone else None

    try:
        listed = provider.list_conversations(limit=limit)
    except ProviderError as e:
        logger.error(f"Remote search: listing conversations failed: {e.message}")
        return SearchResult(error=e)

    matches = []
    for conversation in listed:
        try:
            participants = provider.list_participants(conversation.sid)
        except ProviderError as e:
            logger.error(f"Remote search: participants of {conversation.sid} unavailable: {e.message}")
            return SearchResult(searched=len(listed), error=e)

        customer_bindings = [p for p in participants if phones_match(p.address, customer)]
        if not customer_bindings:
            continue

        exact = proxy is not None and any(phones_match(p.proxy_address, proxy) for p in customer_bindings)
        matches.append(RemoteConversation(key=conversation.sid, participants=tuple(participants), exact=exact))

    logger.info(
        f"Remote search for {customer} via {proxy}: {len(matches)} match(es) "
        f"in {len(listed)} conversation(s), {sum(1 for m in matches if m.exact)} exact"
    )
    return SearchResult(found=len(matches), conversations=tuple(matches), searched=len(listed))


def select_best(result: SearchResult) -> Optional[RemoteConversation]:
    """First exact match, else first customer-only match, else None."""
    if not result.ok or result.found == 0:
        return None
    exact = result.exact_matches
    if exact:
        if len(exact) > 1:
            logger.warning(f"{len(exact)} exact matches; using {exact[0].key}")
        return exact[0]
    return result.customer_only_matches[0]
