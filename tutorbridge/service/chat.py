from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Union

from tutorbridge.logging import get_logger
from tutorbridge.service.errors import ForbiddenError, NotFoundError, ValidationError
from tutorbridge.service.generation import CallerIdentity, GenerationAdapter
from tutorbridge.storage.errors import ConstraintViolation
from tutorbridge.storage.models import (
    DEFAULT_CONVERSATION_TITLE,
    FORMAT_TEXT,
    ROLE_ASSISTANT,
    ROLE_USER,
    STATUS_SENT,
    Conversation,
    Message,
)

logger = get_logger(__name__)

TITLE_MAX_LENGTH = 50
MAX_PAGE_SIZE = 100


def conversation_title(text: str) -> str:
    """Derive a title from the opening message: 50 chars, ellipsis if cut."""
    stripped = text.strip()
    if not stripped:
        return DEFAULT_CONVERSATION_TITLE
    if len(stripped) > TITLE_MAX_LENGTH:
        return stripped[:TITLE_MAX_LENGTH] + "..."
    return stripped


@dataclass(frozen=True)
class EmptyConversation:
    title: str = DEFAULT_CONVERSATION_TITLE


@dataclass(frozen=True)
class ConversationWithFirstMessage:
    title: str
    first_message: str


ConversationSeed = Union[EmptyConversation, ConversationWithFirstMessage]


def seed_from_request(title: Optional[str], first_message: Optional[str]) -> ConversationSeed:
    clean_title = title.strip() if title else ""
    if first_message and first_message.strip():
        return ConversationWithFirstMessage(
            title=clean_title or conversation_title(first_message),
            first_message=first_message,
        )
    return EmptyConversation(title=clean_title or DEFAULT_CONVERSATION_TITLE)


@dataclass
class SendResult:
    conversation: Conversation
    user_message: Message
    assistant_message: Message


@dataclass
class ConversationDetail:
    conversation: Conversation
    messages: List[Message]


@dataclass
class ConversationPage:
    items: List[Conversation]
    total: int
    page: int
    limit: int


class ConversationService:
    """Owns the chat log and the message-send pipeline.

    The user turn is committed before the generation call and the adapter
    never raises, so a send always ends with both turns persisted, the second
    being a fallback reply when generation fails.
    """

    def __init__(self, store, generator: GenerationAdapter) -> None:
        self.store = store
        self.generator = generator

    def _owned_conversation(self, account_id: str, conversation_id: str) -> Conversation:
        conversation = self.store.get_conversation(conversation_id)
        if not conversation:
            raise NotFoundError("conversation not found", detail={"conversation_id": conversation_id})
        if conversation.account_id != account_id:
            logger.warning(
                "conversation_access_denied",
                account_id=account_id,
                conversation_id=conversation_id,
            )
            raise ForbiddenError("conversation belongs to another account")
        return conversation

    def _caller(self, account_id: str) -> CallerIdentity:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        return CallerIdentity(
            account_id=account.id,
            display_name=account.display_name,
            email=account.email,
        )

    async def send_message(
        self,
        account_id: str,
        content: str,
        conversation_id: Optional[str] = None,
    ) -> SendResult:
        caller = self._caller(account_id)
        if conversation_id:
            conversation = self._owned_conversation(account_id, conversation_id)
            history = self.store.list_messages(conversation.id)
        else:
            conversation = self.store.create_conversation(account_id, conversation_title(content))
            history = []
            logger.info("conversation_created", account_id=account_id, conversation_id=conversation.id)

        user_message = self.store.append_message(
            conversation.id, ROLE_USER, content, format=FORMAT_TEXT, status=STATUS_SENT
        )

        result = await self.generator.generate(history, content, caller=caller)

        try:
            assistant_message = self.store.append_message(
                conversation.id,
                ROLE_ASSISTANT,
                result.content,
                format=result.format,
                status=STATUS_SENT,
                meta=result.metadata,
            )
        except ConstraintViolation:
            # deleted by a concurrent request while generation was running
            logger.info(
                "conversation_deleted_during_generation",
                account_id=account_id,
                conversation_id=conversation.id,
            )
            raise NotFoundError(
                "conversation not found", detail={"conversation_id": conversation.id}
            )
        logger.info(
            "chat_message_sent",
            account_id=account_id,
            conversation_id=conversation.id,
            user_seq=user_message.seq,
            assistant_seq=assistant_message.seq,
            fallback=result.fallback,
        )
        refreshed = self.store.get_conversation(conversation.id) or conversation
        return SendResult(
            conversation=refreshed,
            user_message=user_message,
            assistant_message=assistant_message,
        )

    async def create_conversation(self, account_id: str, seed: ConversationSeed) -> ConversationDetail:
        conversation = self.store.create_conversation(account_id, seed.title)
        messages: List[Message] = []
        if isinstance(seed, ConversationWithFirstMessage):
            messages.append(
                self.store.append_message(
                    conversation.id,
                    ROLE_USER,
                    seed.first_message,
                    format=FORMAT_TEXT,
                    status=STATUS_SENT,
                )
            )
            conversation = self.store.get_conversation(conversation.id) or conversation
        logger.info(
            "conversation_created",
            account_id=account_id,
            conversation_id=conversation.id,
            seeded=bool(messages),
        )
        return ConversationDetail(conversation=conversation, messages=messages)

    async def get_conversation(self, account_id: str, conversation_id: str) -> ConversationDetail:
        conversation = self._owned_conversation(account_id, conversation_id)
        return ConversationDetail(
            conversation=conversation,
            messages=self.store.list_messages(conversation.id),
        )

    async def list_conversations(
        self, account_id: str, *, page: int = 1, limit: int = 20
    ) -> ConversationPage:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        limit = min(limit, MAX_PAGE_SIZE)
        items = self.store.list_conversations(
            account_id, limit=limit, offset=(page - 1) * limit
        )
        total = self.store.count_conversations(account_id)
        return ConversationPage(items=items, total=total, page=page, limit=limit)

    async def rename_conversation(
        self, account_id: str, conversation_id: str, title: str
    ) -> Conversation:
        self._owned_conversation(account_id, conversation_id)
        clean = title.strip()
        if not clean:
            raise ValidationError("title must not be blank", detail={"field": "title"})
        updated = self.store.update_conversation_title(conversation_id, clean)
        if not updated:
            raise NotFoundError("conversation not found", detail={"conversation_id": conversation_id})
        return updated

    async def delete_conversation(self, account_id: str, conversation_id: str) -> None:
        self._owned_conversation(account_id, conversation_id)
        if not self.store.delete_conversation(conversation_id):
            raise NotFoundError("conversation not found", detail={"conversation_id": conversation_id})
        logger.info("conversation_deleted", account_id=account_id, conversation_id=conversation_id)

    async def delete_message(self, account_id: str, message_id: str) -> None:
        message = self.store.get_message(message_id)
        if not message:
            raise NotFoundError("message not found", detail={"message_id": message_id})
        self._owned_conversation(account_id, message.conversation_id)
        if not self.store.delete_message(message_id):
            raise NotFoundError("message not found", detail={"message_id": message_id})
        logger.info(
            "message_deleted",
            account_id=account_id,
            conversation_id=message.conversation_id,
            message_id=message_id,
        )
