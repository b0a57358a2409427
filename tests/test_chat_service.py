import httpx
import pytest

from tutorbridge.service.chat import (
    ConversationService,
    ConversationWithFirstMessage,
    EmptyConversation,
    conversation_title,
    seed_from_request,
)
from tutorbridge.service.errors import ForbiddenError, NotFoundError, ValidationError
from tutorbridge.service.generation import FALLBACK_MESSAGE, HttpGenerationAdapter, fallback_result


@pytest.fixture
def owner(store):
    return store.create_account("demo@example.com", "Demo User", "hash", "argon2id")


@pytest.fixture
def intruder(store):
    return store.create_account("other@example.com", "Other", "hash", "argon2id")


@pytest.fixture
def chat(store, generator):
    return ConversationService(store, generator)


class TestTitles:
    def test_short_message_is_the_title(self):
        assert conversation_title("Hello!") == "Hello!"

    def test_long_message_is_truncated_with_ellipsis(self):
        text = "x" * 60
        assert conversation_title(text) == "x" * 50 + "..."

    def test_exactly_fifty_chars_not_truncated(self):
        assert conversation_title("y" * 50) == "y" * 50

    def test_blank_message_gets_default(self):
        assert conversation_title("   ") == "New Conversation"

    def test_seed_from_request_variants(self):
        """The HTTP body resolves to exactly one seed variant."""
        assert seed_from_request(None, None) == EmptyConversation("New Conversation")
        assert seed_from_request("Algebra", None) == EmptyConversation("Algebra")
        assert seed_from_request(None, "What is a prime?") == ConversationWithFirstMessage(
            "What is a prime?", "What is a prime?"
        )
        assert seed_from_request("Maths", "hi") == ConversationWithFirstMessage("Maths", "hi")


class TestSendMessage:
    async def test_first_message_creates_conversation(self, chat, owner, generator):
        result = await chat.send_message(owner.id, "Hello!")
        assert result.conversation.title == "Hello!"
        assert result.conversation.account_id == owner.id
        assert (result.user_message.role, result.user_message.seq) == ("user", 1)
        assert (result.assistant_message.role, result.assistant_message.seq) == ("assistant", 2)
        assert result.user_message.status == "sent"
        call = generator.calls[0]
        assert call["history"] == []
        assert call["message"] == "Hello!"
        assert call["caller"].email == "demo@example.com"
        assert call["caller"].display_name == "Demo User"

    async def test_follow_up_sends_prior_history_in_order(self, chat, owner, generator):
        first = await chat.send_message(owner.id, "Hello!")
        await chat.send_message(owner.id, "Tell me more", first.conversation.id)
        assert generator.calls[1]["history"] == [
            ("user", "Hello!"),
            ("assistant", generator.reply),
        ]

    async def test_append_bumps_updated_at(self, chat, owner, store):
        first = await chat.send_message(owner.id, "Hello!")
        before = store.get_conversation(first.conversation.id).updated_at
        await chat.send_message(owner.id, "Again", first.conversation.id)
        assert store.get_conversation(first.conversation.id).updated_at >= before

    async def test_generation_failure_still_persists_both_turns(self, store, owner):
        """A dead generation service yields a stored fallback turn."""
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )
        chat = ConversationService(store, HttpGenerationAdapter("http://gen.test/chat", client=client))
        result = await chat.send_message(owner.id, "Hello!")
        assert result.assistant_message.content == FALLBACK_MESSAGE
        assert result.assistant_message.meta["fallback"] is True
        stored = store.list_messages(result.conversation.id)
        assert [m.role for m in stored] == ["user", "assistant"]
        assert stored[0].content == "Hello!"

    async def test_seq_never_reused_after_delete(self, chat, owner):
        first = await chat.send_message(owner.id, "one")
        await chat.delete_message(owner.id, first.assistant_message.id)
        second = await chat.send_message(owner.id, "two", first.conversation.id)
        assert (second.user_message.seq, second.assistant_message.seq) == (3, 4)

    async def test_unknown_conversation(self, chat, owner):
        with pytest.raises(NotFoundError):
            await chat.send_message(owner.id, "hi", "3f1b6b0e-1111-4c4c-9d9d-000000000000")

    async def test_someone_elses_conversation(self, chat, owner, intruder, generator):
        """Sending into another account's conversation is forbidden."""
        first = await chat.send_message(owner.id, "private")
        with pytest.raises(ForbiddenError):
            await chat.send_message(intruder.id, "let me in", first.conversation.id)
        assert len(generator.calls) == 1

    async def test_vanished_account(self, chat, store):
        with pytest.raises(NotFoundError):
            await chat.send_message("no-such-account", "hi")

    async def test_conversation_deleted_during_generation(self, store, owner):
        """A conversation removed mid-generation reports not found, leaving nothing behind."""

        class DeletingGenerator:
            async def generate(self, history, message, *, caller):
                for conversation in store.list_conversations(owner.id):
                    store.delete_conversation(conversation.id)
                return fallback_result("fake-model")

            async def aclose(self):
                pass

        chat = ConversationService(store, DeletingGenerator())
        with pytest.raises(NotFoundError):
            await chat.send_message(owner.id, "Hello!")
        assert store.count_conversations(owner.id) == 0


class TestConversationManagement:
    async def test_create_with_first_message_skips_generation(self, chat, owner, generator):
        seed = seed_from_request(None, "What is photosynthesis?")
        detail = await chat.create_conversation(owner.id, seed)
        assert detail.conversation.title == "What is photosynthesis?"
        assert [(m.role, m.seq) for m in detail.messages] == [("user", 1)]
        assert generator.calls == []

    async def test_create_empty(self, chat, owner):
        detail = await chat.create_conversation(owner.id, EmptyConversation())
        assert detail.conversation.title == "New Conversation"
        assert detail.messages == []

    async def test_get_orders_by_seq_and_checks_owner(self, chat, owner, intruder):
        first = await chat.send_message(owner.id, "Hello!")
        detail = await chat.get_conversation(owner.id, first.conversation.id)
        assert [m.seq for m in detail.messages] == [1, 2]
        with pytest.raises(ForbiddenError):
            await chat.get_conversation(intruder.id, first.conversation.id)

    async def test_list_is_paginated_most_recent_first(self, chat, owner, intruder):
        a = await chat.create_conversation(owner.id, EmptyConversation("a"))
        await chat.create_conversation(owner.id, EmptyConversation("b"))
        await chat.create_conversation(owner.id, EmptyConversation("c"))
        await chat.create_conversation(intruder.id, EmptyConversation("not mine"))
        await chat.send_message(owner.id, "bump", a.conversation.id)

        page = await chat.list_conversations(owner.id, page=1, limit=2)
        assert page.total == 3
        assert len(page.items) == 2
        assert page.items[0].id == a.conversation.id
        second = await chat.list_conversations(owner.id, page=2, limit=2)
        assert len(second.items) == 1

    async def test_limit_is_capped(self, chat, owner):
        page = await chat.list_conversations(owner.id, limit=500)
        assert page.limit == 100

    async def test_invalid_page(self, chat, owner):
        with pytest.raises(ValidationError):
            await chat.list_conversations(owner.id, page=0)

    async def test_rename(self, chat, owner, intruder):
        detail = await chat.create_conversation(owner.id, EmptyConversation())
        renamed = await chat.rename_conversation(owner.id, detail.conversation.id, "  Biology  ")
        assert renamed.title == "Biology"
        with pytest.raises(ValidationError):
            await chat.rename_conversation(owner.id, detail.conversation.id, "   ")
        with pytest.raises(ForbiddenError):
            await chat.rename_conversation(intruder.id, detail.conversation.id, "mine now")

    async def test_delete_conversation_cascades(self, chat, owner, store):
        first = await chat.send_message(owner.id, "Hello!")
        await chat.delete_conversation(owner.id, first.conversation.id)
        assert store.get_conversation(first.conversation.id) is None
        assert store.get_message(first.user_message.id) is None
        with pytest.raises(NotFoundError):
            await chat.get_conversation(owner.id, first.conversation.id)

    async def test_delete_message_checks_parent_owner(self, chat, owner, intruder):
        first = await chat.send_message(owner.id, "Hello!")
        with pytest.raises(ForbiddenError):
            await chat.delete_message(intruder.id, first.user_message.id)
        await chat.delete_message(owner.id, first.user_message.id)
        with pytest.raises(NotFoundError):
            await chat.delete_message(owner.id, first.user_message.id)

