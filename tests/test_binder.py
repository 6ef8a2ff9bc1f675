"""
Tests for participant binding and conflict detection.
"""

import pytest

from smscrm.binder import BindStatus, ensure_participant, parse_conflicting_conversation
from smscrm.provider import ERROR_BINDING_EXISTS, ProviderError

from tests.fakes import ScriptedConversationProvider


CUSTOMER = "+15551234567"
PROXY = "+15550009999"
OWNER_SID = "CH0123456789abcdef0123456789abcdef"

# Exact wording Twilio returns for error 50416
BINDING_EXISTS_MESSAGE = (
    f"A binding for this participant and proxy address already exists in Conversation {OWNER_SID}"
)


class ConcurrentAddProvider(ScriptedConversationProvider):
    """Someone else adds the participant first; our add sees an unnamed binding error."""

    def add_participant(self, conversation_sid, address, proxy_address):
        super().add_participant(conversation_sid, address, proxy_address)
        raise ProviderError(
            "A binding for this participant and proxy address already exists",
            code=ERROR_BINDING_EXISTS,
            status=409,
            operation="add_participant",
        )


@pytest.fixture
def provider():
    return ScriptedConversationProvider()


class TestConflictParsing:
    """Test extraction of the owning conversation from the provider error."""

    def test_parses_twilio_error_text(self):
        assert parse_conflicting_conversation(BINDING_EXISTS_MESSAGE) == OWNER_SID

    def test_no_sid_in_text(self):
        assert parse_conflicting_conversation("A binding for this participant already exists") is None

    def test_empty(self):
        assert parse_conflicting_conversation(None) is None
        assert parse_conflicting_conversation("") is None


class TestEnsureParticipant:
    """Test binding outcomes against the in-memory provider."""

    def test_binds_new_participant(self, provider):
        conversation = provider.create_conversation("test")

        result = ensure_participant(provider, conversation.sid, CUSTOMER, PROXY)

        assert result.status == BindStatus.BOUND
        assert result.ok and result.added
        participants = provider.list_participants(conversation.sid)
        assert [(p.address, p.proxy_address) for p in participants] == [(CUSTOMER, PROXY)]

    def test_normalizes_phones_before_binding(self, provider):
        conversation = provider.create_conversation("test")

        ensure_participant(provider, conversation.sid, "(555) 123-4567", "5550009999")

        participant = provider.list_participants(conversation.sid)[0]
        assert participant.address == CUSTOMER
        assert participant.proxy_address == PROXY

    def test_already_bound(self, provider):
        conversation = provider.create_conversation("test")
        ensure_participant(provider, conversation.sid, CUSTOMER, PROXY)

        result = ensure_participant(provider, conversation.sid, "15551234567", PROXY)

        assert result.status == BindStatus.ALREADY_BOUND
        assert result.ok and not result.added
        assert len(provider.list_participants(conversation.sid)) == 1

    def test_conflict_names_owning_conversation(self, provider):
        owner = provider.create_conversation("owner")
        other = provider.create_conversation("other")
        ensure_participant(provider, owner.sid, CUSTOMER, PROXY)

        result = ensure_participant(provider, other.sid, CUSTOMER, PROXY)

        assert result.status == BindStatus.CONFLICT
        assert result.conflicting_key == owner.sid
        assert result.error.code == ERROR_BINDING_EXISTS
        assert not result.ok

    def test_binding_exists_for_same_conversation_is_already_bound(self, provider):
        conversation = provider.create_conversation("test")
        provider.fail_next("add_participant", ProviderError(
            f"A binding for this participant and proxy address already exists in Conversation {conversation.sid}",
            code=ERROR_BINDING_EXISTS,
            status=409,
        ))

        result = ensure_participant(provider, conversation.sid, CUSTOMER, PROXY)

        assert result.status == BindStatus.ALREADY_BOUND

    def test_binding_exists_without_sid_and_customer_absent_fails(self, provider):
        conversation = provider.create_conversation("test")
        provider.fail_next("add_participant", ProviderError(
            "A binding for this participant and proxy address already exists",
            code=ERROR_BINDING_EXISTS,
            status=409,
        ))

        result = ensure_participant(provider, conversation.sid, CUSTOMER, PROXY)

        assert result.status == BindStatus.FAILED
        assert not result.ok
        assert result.error.code == ERROR_BINDING_EXISTS
        assert provider.list_participants(conversation.sid) == []

    def test_binding_exists_without_sid_and_customer_present_is_already_bound(self):
        provider = ConcurrentAddProvider()
        conversation = provider.create_conversation("test")

        result = ensure_participant(provider, conversation.sid, CUSTOMER, PROXY)

        assert result.status == BindStatus.ALREADY_BOUND
        assert not result.added
        assert provider.calls.count("list_participants") == 2

    def test_missing_conversation(self, provider):
        result = ensure_participant(provider, OWNER_SID, CUSTOMER, PROXY)

        assert result.status == BindStatus.NOT_FOUND
        assert result.error.is_not_found

    def test_other_failure(self, provider):
        conversation = provider.create_conversation("test")
        provider.fail_next("add_participant", ProviderError("Service unavailable", status=503))

        result = ensure_participant(provider, conversation.sid, CUSTOMER, PROXY)

        assert result.status == BindStatus.FAILED
        assert result.error.is_retryable
