"""
Remote conversation provider.

ConversationProvider is the narrow surface the finder, binder and resolver
use. TwilioConversationProvider talks to Twilio Conversations, optionally
scoped under a Conversation Service. InMemoryConversationProvider keeps the
same contract in process, including the (address, proxy address) uniqueness
rule and Twilio's error codes and wording, for local runs and tests.

Every failure crosses this boundary as a ProviderError.
"""

import logging
import uuid
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Optional, Protocol

import requests
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

logger = logging.getLogger(__name__)

# Twilio error codes this service cares about
ERROR_AUTHENTICATION = 20003
ERROR_NOT_FOUND = 20404
ERROR_BINDING_EXISTS = 50416


class ProviderError(Exception):
    """A remote provider call failed."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        status: Optional[int] = None,
        operation: Optional[str] = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status
        self.operation = operation
        self.transient = transient

    @property
    def is_not_found(self) -> bool:
        return self.status == 404 or self.code == ERROR_NOT_FOUND

    @property
    def is_authentication(self) -> bool:
        return self.status == 401 or self.code == ERROR_AUTHENTICATION

    @property
    def is_retryable(self) -> bool:
        if self.transient:
            return True
        return self.status is not None and (self.status >= 500 or self.status == 429)

    @property
    def mentions_existing_binding(self) -> bool:
        return self.code == ERROR_BINDING_EXISTS or "already exists" in (self.message or "").lower()

    def __repr__(self) -> str:
        return (
            f"ProviderError(operation={self.operation!r}, code={self.code!r}, "
            f"status={self.status!r}, message={self.message!r})"
        )


@dataclass(frozen=True)
class RemoteParticipant:
    sid: str
    address: Optional[str]
    proxy_address: Optional[str]
    identity: Optional[str] = None


@dataclass(frozen=True)
class RemoteConversationInfo:
    sid: str
    friendly_name: Optional[str] = None
    date_created: Optional[str] = None


class ConversationProvider(Protocol):
    service_sid: Optional[str]

    def create_conversation(self, friendly_name: str) -> RemoteConversationInfo: ...

    def list_conversations(self, limit: int) -> list[RemoteConversationInfo]: ...

    def delete_conversation(self, conversation_sid: str) -> bool: ...

    def list_participants(self, conversation_sid: str) -> list[RemoteParticipant]: ...

    def add_participant(self, conversation_sid: str, address: str, proxy_address: str) -> RemoteParticipant: ...

    def send_message(self, conversation_sid: str, body: str, author: str) -> str: ...


# =============================================================================
# Twilio Conversations
# =============================================================================

class TwilioConversationProvider:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        service_sid: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[Client] = None,
    ) -> None:
        self.service_sid = service_sid
        self._client = client or Client(
            account_sid,
            auth_token,
            http_client=TwilioHttpClient(timeout=timeout),
        )

    def _conversations(self):
        v1 = self._client.conversations.v1
        if self.service_sid:
            return v1.services(self.service_sid).conversations
        return v1.conversations

    def _call(self, operation: str, fn: Callable):
        logger.debug(f"Twilio call: {operation} (service={self.service_sid})")
        try:
            return fn()
        except TwilioRestException as e:
            logger.warning(f"Twilio {operation} failed: code={e.code} status={e.status} msg={e.msg}")
            raise ProviderError(e.msg, code=e.code, status=e.status, operation=operation) from e
        except requests.exceptions.RequestException as e:
            logger.warning(f"Twilio {operation} transport error: {e}")
            raise ProviderError(str(e), operation=operation, transient=True) from e

    def create_conversation(self, friendly_name: str) -> RemoteConversationInfo:
        conversation = self._call(
            "create_conversation",
            lambda: self._conversations().create(friendly_name=friendly_name),
        )
        return _conversation_info(conversation)

    def list_conversations(self, limit: int) -> list[RemoteConversationInfo]:
        conversations = self._call(
            "list_conversations",
            lambda: self._conversations().list(limit=limit),
        )
        return [_conversation_info(c) for c in conversations]

    def delete_conversation(self, conversation_sid: str) -> bool:
        return self._call(
            "delete_conversation",
            lambda: self._conversations()(conversation_sid).delete(),
        )

    def list_participants(self, conversation_sid: str) -> list[RemoteParticipant]:
        participants = self._call(
            "list_participants",
            lambda: self._conversations()(conversation_sid).participants.list(),
        )
        return [_participant(p) for p in participants]

    def add_participant(self, conversation_sid: str, address: str, proxy_address: str) -> RemoteParticipant:
        participant = self._call(
            "add_participant",
            lambda: self._conversations()(conversation_sid).participants.create(
                messaging_binding_address=address,
                messaging_binding_proxy_address=proxy_address,
            ),
        )
        return _participant(participant)

    def send_message(self, conversation_sid: str, body: str, author: str) -> str:
        message = self._call(
            "send_message",
            lambda: self._conversations()(conversation_sid).messages.create(author=author, body=body),
        )
        return message.sid


def _conversation_info(conversation) -> RemoteConversationInfo:
    created = getattr(conversation, "date_created", None)
    return RemoteConversationInfo(
        sid=conversation.sid,
        friendly_name=getattr(conversation, "friendly_name", None),
        date_created=created.isoformat() if created is not None else None,
    )


def _participant(participant) -> RemoteParticipant:
    binding = getattr(participant, "messaging_binding", None) or {}
    return RemoteParticipant(
        sid=participant.sid,
        address=binding.get("address"),
        proxy_address=binding.get("proxy_address"),
        identity=getattr(participant, "identity", None),
    )


# =============================================================================
# In-memory provider
# =============================================================================

@dataclass
class _StoredConversation:
    info: RemoteConversationInfo
    participants: list = field(default_factory=list)
    messages: list = field(default_factory=list)


class InMemoryConversationProvider:
    """
    Process-local stand-in for Twilio Conversations.

    Enforces that an (address, proxy_address) binding belongs to at most one
    conversation and reports violations with Twilio's 50416 wording.
    """

    def __init__(self, service_sid: Optional[str] = None) -> None:
        self.service_sid = service_sid
        self._lock = Lock()
        self._conversations: dict[str, _StoredConversation] = {}
        self._bindings: dict[tuple[str, str], str] = {}

    def _enter(self, operation: str) -> None:
        """Called under the provider lock at the start of every operation."""

    def _get(self, conversation_sid: str, operation: str) -> _StoredConversation:
        stored = self._conversations.get(conversation_sid)
        if stored is None:
            raise ProviderError(
                f"The requested resource /Conversations/{conversation_sid} was not found",
                code=ERROR_NOT_FOUND,
                status=404,
                operation=operation,
            )
        return stored

    def create_conversation(self, friendly_name: str) -> RemoteConversationInfo:
        with self._lock:
            self._enter("create_conversation")
            info = RemoteConversationInfo(sid=f"CH{uuid.uuid4().hex}", friendly_name=friendly_name)
            self._conversations[info.sid] = _StoredConversation(info=info)
            return info

    def list_conversations(self, limit: int) -> list[RemoteConversationInfo]:
        with self._lock:
            self._enter("list_conversations")
            return [c.info for c in self._conversations.values()][:limit]

    def delete_conversation(self, conversation_sid: str) -> bool:
        with self._lock:
            self._enter("delete_conversation")
            self._get(conversation_sid, "delete_conversation")
            del self._conversations[conversation_sid]
            self._bindings = {k: v for k, v in self._bindings.items() if v != conversation_sid}
            return True

    def list_participants(self, conversation_sid: str) -> list[RemoteParticipant]:
        with self._lock:
            self._enter("list_participants")
            return list(self._get(conversation_sid, "list_participants").participants)

    def add_participant(self, conversation_sid: str, address: str, proxy_address: str) -> RemoteParticipant:
        with self._lock:
            self._enter("add_participant")
            stored = self._get(conversation_sid, "add_participant")
            owner = self._bindings.get((address, proxy_address))
            if owner is not None:
                raise ProviderError(
                    f"A binding for this participant and proxy address already exists in Conversation {owner}",
                    code=ERROR_BINDING_EXISTS,
                    status=409,
                    operation="add_participant",
                )
            participant = RemoteParticipant(
                sid=f"MB{uuid.uuid4().hex}",
                address=address,
                proxy_address=proxy_address,
            )
            stored.participants.append(participant)
            self._bindings[(address, proxy_address)] = conversation_sid
            return participant

    def send_message(self, conversation_sid: str, body: str, author: str) -> str:
        with self._lock:
            self._enter("send_message")
            stored = self._get(conversation_sid, "send_message")
            message_sid = f"IM{uuid.uuid4().hex}"
            stored.messages.append({"sid": message_sid, "author": author, "body": body})
            return message_sid

    def conversation_sids(self) -> list[str]:
        with self._lock:
            return list(self._conversations)


# =============================================================================
# Provider factories
# =============================================================================

class TwilioProviderFactory:
    """Builds a Twilio-backed provider from a sender account's credentials."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout

    def __call__(self, account) -> ConversationProvider:
        return TwilioConversationProvider(
            account.account_sid,
            account.auth_token,
            service_sid=account.conversation_service_sid,
            timeout=self.timeout,
        )


class InMemoryProviderFactory:
    """One shared in-memory provider per (account SID, service SID)."""

    def __init__(self, provider_class: type = InMemoryConversationProvider) -> None:
        self.provider_class = provider_class
        self._lock = Lock()
        self._providers: dict[tuple[str, Optional[str]], InMemoryConversationProvider] = {}

    def __call__(self, account) -> ConversationProvider:
        key = (account.account_sid, account.conversation_service_sid)
        with self._lock:
            if key not in self._providers:
                self._providers[key] = self.provider_class(service_sid=account.conversation_service_sid)
            return self._providers[key]


ProviderFactory = Callable[[object], ConversationProvider]


def create_provider_factory(backend: str, timeout: float) -> ProviderFactory:
    normalized = backend.strip().lower()
    if normalized == "memory":
        return InMemoryProviderFactory()
    if normalized == "twilio":
        return TwilioProviderFactory(timeout=timeout)
    raise ValueError(f"Unknown CONVERSATION_PROVIDER: {backend}")
