"""
Conversation identity resolution.

Given a customer phone and a configured sender phone, find or create the one
remote conversation that carries their exchange and make sure the customer is
bound into it. Sources are tried cheapest first: the local message log, a
remote search, then creation.

Concurrent first contacts for the same pair may both create a conversation.
The provider accepts only one (address, proxy) binding, so the loser sees a
conflict naming the winner, deletes its own empty conversation and joins the
winner. Only one conflict redirect is followed per resolution.
"""

import logging
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Iterator, Optional

from sqlalchemy.orm import Session

from smscrm.binder import BindStatus, ensure_participant
from smscrm.config import settings
from smscrm.finder import find_by_phone, select_best
from smscrm.message_index import find_by_customer_and_sender, is_remote_key, pick_cached_key
from smscrm.metrics import record_participant_conflict, record_resolution_outcome
from smscrm.phone import normalize_phone
from smscrm.provider import ConversationProvider, ProviderError, ProviderFactory
from smscrm.storage import get_sender_account, get_sender_phone_number

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    CONFLICT = "conflict"
    TRANSIENT = "transient"
    REMOTE = "remote"
    INCONSISTENCY = "inconsistency"


@dataclass(frozen=True)
class ResolutionError:
    kind: ErrorKind
    code: str
    message: str
    provider_code: Optional[int] = None

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT

    @classmethod
    def from_provider(cls, error: ProviderError, code: str) -> "ResolutionError":
        """Map a provider failure onto the error taxonomy."""
        if error.is_authentication:
            return cls(ErrorKind.CONFIGURATION, "invalid_credentials", error.message, error.code)
        if error.is_not_found and error.operation in ("list_conversations", "create_conversation"):
            # Conversations collection itself is missing: bad Conversation Service SID
            return cls(ErrorKind.CONFIGURATION, "service_not_found", error.message, error.code)
        if error.is_retryable:
            return cls(ErrorKind.TRANSIENT, code, error.message, error.code)
        return cls(ErrorKind.REMOTE, code, error.message, error.code)


@dataclass(frozen=True)
class Resolution:
    conversation_key: Optional[str] = None
    participants_added: int = 0
    created: bool = False
    redirected: bool = False
    error: Optional[ResolutionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.conversation_key is not None

    @property
    def outcome(self) -> str:
        if self.error is not None:
            return f"error_{self.error.kind.value}"
        if self.created:
            return "created"
        if self.redirected:
            return "redirected"
        return "existing"


@dataclass
class _PairLock:
    lock: Lock = field(default_factory=Lock)
    holders: int = 0


class PairLocks:
    """
    One lock per normalized (customer, sender) pair.

    An entry lives only while some resolution holds or waits for it, so the
    map stays as small as the number of pairs currently being resolved.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[tuple[str, str], _PairLock] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, customer_phone: str, sender_phone: str) -> Iterator[None]:
        key = (customer_phone, sender_phone)
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _PairLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]


pair_locks = PairLocks()


def _fatal(error: ResolutionError) -> Resolution:
    logger.error(f"Resolution failed: kind={error.kind.value} code={error.code} message={error.message}")
    return Resolution(error=error)


class ConversationResolver:
    def __init__(
        self,
        db: Session,
        provider_factory: ProviderFactory,
        search_limit: Optional[int] = None,
        use_pair_lock: Optional[bool] = None,
        locks: Optional[PairLocks] = None,
    ) -> None:
        self.db = db
        self.provider_factory = provider_factory
        self.search_limit = search_limit or settings.CONVERSATION_SEARCH_LIMIT
        self.use_pair_lock = settings.RESOLVER_PAIR_LOCK if use_pair_lock is None else use_pair_lock
        self.locks = locks if locks is not None else pair_locks

    def resolve(self, customer_phone: str, sender_binding_id: str) -> Resolution:
        """
        Find or create the conversation for a customer and a sender phone.

        Args:
            customer_phone: Customer phone, any format
            sender_binding_id: Id of the configured sender phone

        Returns:
            Resolution with conversation_key set once the customer binding is
            confirmed, or with error set
        """
        customer = normalize_phone(customer_phone)
        if not customer:
            raise ValueError("customer_phone is required")

        sender = get_sender_phone_number(self.db, sender_binding_id)
        if sender is None:
            resolution = _fatal(ResolutionError(
                ErrorKind.CONFIGURATION,
                "sender_phone_not_found",
                f"Sender phone number {sender_binding_id} is not configured",
            ))
            record_resolution_outcome(resolution.outcome)
            return resolution

        account = get_sender_account(self.db, sender.account_id)
        if account is None or not account.account_sid or not account.auth_token:
            resolution = _fatal(ResolutionError(
                ErrorKind.CONFIGURATION,
                "credentials_missing",
                f"No provider credentials for sender phone {sender.phone_number}",
            ))
            record_resolution_outcome(resolution.outcome)
            return resolution

        provider = self.provider_factory(account)
        sender_phone = normalize_phone(sender.phone_number)

        lock = self.locks.hold(customer, sender_phone) if self.use_pair_lock else nullcontext()
        with lock:
            resolution = self._resolve(provider, customer, sender.id, sender_phone)

        record_resolution_outcome(resolution.outcome)
        if resolution.ok:
            logger.info(
                f"Resolved {customer} via {sender_phone} -> {resolution.conversation_key} "
                f"(outcome={resolution.outcome}, participants_added={resolution.participants_added})"
            )
        return resolution

    def _resolve(
        self,
        provider: ConversationProvider,
        customer: str,
        sender_id: str,
        sender_phone: str,
    ) -> Resolution:
        # LocalLookup
        messages = find_by_customer_and_sender(self.db, customer, sender_id, sender_phone)
        cached = pick_cached_key(messages)
        if is_remote_key(cached):
            logger.debug(f"Local index has conversation {cached} for {customer}")
            verified = self._verify(provider, cached, customer, sender_phone)
            if verified is not None:
                return verified
            logger.warning(
                f"Local messages reference {cached}, which the provider no longer has; searching remotely"
            )
        elif cached:
            logger.debug(f"Only legacy key {cached} known locally for {customer}")

        # RemoteSearch
        search = find_by_phone(provider, customer, sender_phone, limit=self.search_limit)
        if not search.ok:
            return _fatal(ResolutionError.from_provider(search.error, "remote_search_failed"))

        best = select_best(search)
        if best is not None:
            verified = self._verify(provider, best.key, customer, sender_phone)
            if verified is None:
                return _fatal(ResolutionError(
                    ErrorKind.TRANSIENT,
                    "conversation_vanished",
                    f"Conversation {best.key} disappeared during resolution",
                ))
            return verified

        return self._create_new(provider, customer, sender_phone)

    def _verify(
        self,
        provider: ConversationProvider,
        key: str,
        customer: str,
        sender_phone: str,
        redirected: bool = False,
    ) -> Optional[Resolution]:
        """
        Bind the customer into an existing conversation.

        Returns:
            Resolution, or None when the conversation does not exist remotely
        """
        bind = ensure_participant(provider, key, customer, sender_phone)

        if bind.ok:
            return Resolution(
                conversation_key=key,
                participants_added=1 if bind.added else 0,
                redirected=redirected,
            )

        if bind.status == BindStatus.NOT_FOUND:
            return None

        if bind.status == BindStatus.CONFLICT:
            record_participant_conflict("verify")
            if redirected:
                return _fatal(ResolutionError(
                    ErrorKind.CONFLICT,
                    "double_conflict",
                    f"{customer} via {sender_phone} conflicts with {bind.conflicting_key} "
                    f"after redirecting to {key}",
                    bind.error.code if bind.error else None,
                ))
            return self._redirect(provider, bind.conflicting_key, customer, sender_phone)

        return _fatal(ResolutionError.from_provider(bind.error, "participant_bind_failed"))

    def _redirect(self, provider: ConversationProvider, key: str, customer: str, sender_phone: str) -> Resolution:
        logger.warning(f"Redirecting {customer} via {sender_phone} to owning conversation {key}")
        redirected = self._verify(provider, key, customer, sender_phone, redirected=True)
        if redirected is None:
            return _fatal(ResolutionError(
                ErrorKind.CONFLICT,
                "conflicting_conversation_missing",
                f"Provider reported {key} as owner of the binding but it does not exist",
            ))
        return redirected

    def _create_new(self, provider: ConversationProvider, customer: str, sender_phone: str) -> Resolution:
        logger.info(f"Creating remote conversation for {customer} via {sender_phone}")
        try:
            conversation = provider.create_conversation(friendly_name=f"Conversation with {customer}")
        except ProviderError as e:
            return _fatal(ResolutionError.from_provider(e, "conversation_create_failed"))

        bind = ensure_participant(provider, conversation.sid, customer, sender_phone)
        if bind.ok:
            return Resolution(
                conversation_key=conversation.sid,
                participants_added=1 if bind.added else 0,
                created=True,
            )

        if bind.status == BindStatus.CONFLICT:
            # Lost a creation race; the conversation just created stays empty
            record_participant_conflict("create")
            self._discard_orphan(provider, conversation.sid)
            return self._redirect(provider, bind.conflicting_key, customer, sender_phone)

        if bind.error is not None:
            return _fatal(ResolutionError.from_provider(bind.error, "participant_bind_failed"))
        return _fatal(ResolutionError(
            ErrorKind.REMOTE,
            "participant_bind_failed",
            f"Could not bind {customer} into new conversation {conversation.sid}",
        ))

    def _discard_orphan(self, provider: ConversationProvider, key: str) -> None:
        try:
            provider.delete_conversation(key)
            logger.info(f"Deleted orphaned conversation {key}")
        except ProviderError as e:
            logger.warning(f"Could not delete orphaned conversation {key}: {e.message}")
